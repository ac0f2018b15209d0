#!/usr/bin/env python3
"""
Ghost Net Node CLI

Command-line interface for running a Ghost Net node over TCP.

Commands:
- run: Start a node, connect to peers, log stats until interrupted
- identity: Show (or create) the node identity stored in the data dir
"""

import sys
import argparse
import asyncio
import logging
from typing import List, Optional

from core.config import GhostNetConfig, setup_logging
from core.errors import ConfigError
from core.identity import Identity
from p2p.node import GhostNode

logger = logging.getLogger(__name__)


class GhostNetCLI:
    """
    CLI for Ghost Net node operation.

    Configuration comes from GHOSTNET_* environment variables; command-line
    flags override them.
    """

    def __init__(self):
        """Initialize CLI."""
        self.node: Optional[GhostNode] = None

    def build_config(self, args) -> GhostNetConfig:
        base = GhostNetConfig.from_env().model_dump()

        if getattr(args, "data_dir", None):
            base["data_dir"] = args.data_dir
        if getattr(args, "log_level", None):
            base["log_level"] = args.log_level
        if getattr(args, "persist", False):
            base["persist"] = True
        if getattr(args, "host", None):
            base["peer"]["listen_host"] = args.host
        if getattr(args, "port", None) is not None:
            base["peer"]["listen_port"] = args.port

        return GhostNetConfig.load(base)

    async def run_node(self, args) -> int:
        """Run a node until interrupted."""
        config = self.build_config(args)
        setup_logging(config)

        identity = Identity.load_or_generate(config.data_dir, config.resonance.baseline_range)
        self.node = GhostNode(config, identity=identity)

        print("🚀 Starting Ghost Net node...")
        await self.node.start()

        print(f"Node ID: {identity.id[:16]}...")
        print(f"Listening on: {self.node.transport.address}")
        print(f"Affinity base: {identity.affinity_base:.3f}")

        for address in args.peer or []:
            entanglement = await self.node.connect(address)
            if entanglement is not None:
                print(f"🔗 Entangled with {entanglement.peer_id[:16]}... at {address}")
            else:
                print(f"❌ Could not connect to {address}")

        try:
            while True:
                await asyncio.sleep(args.stats_interval)
                state = self.node.get_state()
                logger.info(
                    f"peers={state['peers']} "
                    f"resonance={state['network']['average_resonance']:.3f} "
                    f"stability={state['network']['stability']:.3f} "
                    f"verified={state['buffer']['verified']} "
                    f"archived={state['buffer']['archive']}"
                )
        except asyncio.CancelledError:
            pass
        finally:
            await self.node.shutdown()
            print("✅ Node stopped")

        return 0

    def show_identity(self, args) -> int:
        """Print the node identity, creating it if missing."""
        config = self.build_config(args)
        identity = Identity.load_or_generate(config.data_dir, config.resonance.baseline_range)

        print("Node Identity:")
        print(f"  Peer ID:    {identity.id}")
        print(f"  Public key: {identity.public_key_bytes.hex()}")
        print(f"  Key file:   {config.data_dir}")
        return 0

    def create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            description="Ghost Net Node CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter
        )

        subparsers = parser.add_subparsers(dest="command", help="Commands")

        run_parser = subparsers.add_parser("run", help="Run a node")
        run_parser.add_argument("--host", default=None, help="Listen host")
        run_parser.add_argument("--port", type=int, default=None, help="Listen port (0 = any)")
        run_parser.add_argument(
            "--peer", action="append", metavar="ADDR", help="Peer address host:port (repeatable)"
        )
        run_parser.add_argument("--data-dir", default=None, help="Identity and snapshot directory")
        run_parser.add_argument("--persist", action="store_true", help="Flush transmissions to disk")
        run_parser.add_argument("--log-level", default=None, help="Logging level")
        run_parser.add_argument(
            "--stats-interval", type=float, default=10.0, help="Stats log interval (seconds)"
        )

        identity_parser = subparsers.add_parser("identity", help="Show node identity")
        identity_parser.add_argument("--data-dir", default=None, help="Identity directory")

        return parser

    def run(self, argv: Optional[List[str]] = None) -> int:
        """Run CLI (entry point)."""
        parser = self.create_parser()
        args = parser.parse_args(argv)

        if not args.command:
            parser.print_help()
            return 1

        try:
            if args.command == "identity":
                return self.show_identity(args)
            return asyncio.run(self.run_node(args))
        except ConfigError as e:
            print(f"❌ {e.message}")
            return 2
        except KeyboardInterrupt:
            return 0


def main():
    """CLI entry point."""
    cli = GhostNetCLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
