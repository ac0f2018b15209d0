"""
Ghost Net - signed peer-to-peer overlay

Nodes exchange signed state messages ("transmissions"), keep a routing
table ranked by resonance (a [0, 1] affinity score between node states)
and heartbeat each other to prune dead links.

Quick Start:
    >>> import asyncio
    >>> from p2p.node import GhostNode
    >>>
    >>> async def main():
    ...     async with GhostNode() as node:
    ...         await node.connect("127.0.0.1:3001")
    ...         tx = await node.transmit(b"hello")
    ...         print(node.get_peers())
    >>>
    >>> asyncio.run(main())

Packages:
    - core: identity, signatures, resonance, compression, metrics, config
    - p2p: wire protocol, routing, transmissions, peer manager, transports
"""

__version__ = "0.1.0"
