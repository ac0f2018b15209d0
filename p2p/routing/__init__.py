"""
Resonance Routing

Weighted routing table ranked by peer affinity strength.
"""

from .table import (
    RoutingTable,
    RoutingEntry,
    PATH_SEPARATOR,
)

__all__ = [
    "RoutingTable",
    "RoutingEntry",
    "PATH_SEPARATOR",
]
