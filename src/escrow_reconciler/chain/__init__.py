"""Chain access layer - read-only block and escrow event queries."""

from escrow_reconciler.chain.client import (
    ChainClient,
    ChainClientError,
    RPCError,
    Web3ChainClient,
)
from escrow_reconciler.chain.models import (
    ESCROW_EVENT_NAMES,
    Block,
    ChainLog,
    DisputeResolution,
    EscrowEvent,
)

__all__ = [
    "ESCROW_EVENT_NAMES",
    "Block",
    "ChainClient",
    "ChainClientError",
    "ChainLog",
    "DisputeResolution",
    "EscrowEvent",
    "RPCError",
    "Web3ChainClient",
]
