"""Data models for chain blocks, decoded escrow logs and the escrow ABI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any


class EscrowEvent(str, Enum):
    """Events emitted by the escrow contract."""

    ESCROW_CREATED = "EscrowCreated"
    FUNDS_LOCKED = "FundsLocked"
    FUNDS_RELEASED = "FundsReleased"
    FUNDS_REFUNDED = "FundsRefunded"
    DISPUTE_OPENED = "DisputeOpened"
    DISPUTE_RESOLVED = "DisputeResolved"


ESCROW_EVENT_NAMES: tuple[str, ...] = tuple(e.value for e in EscrowEvent)


class DisputeResolution(IntEnum):
    """Outcome code carried by DisputeResolved."""

    RELEASE_TO_SELLER = 1
    REFUND_TO_BUYER = 2


def _event_abi(name: str, inputs: list[tuple[str, str, bool]]) -> dict[str, Any]:
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [{"name": n, "type": t, "indexed": indexed} for n, t, indexed in inputs],
    }


ESCROW_EVENTS_ABI: list[dict[str, Any]] = [
    _event_abi(
        EscrowEvent.ESCROW_CREATED.value,
        [("escrowId", "address", True), ("seller", "address", False), ("buyer", "address", False), ("amount", "uint256", False)],
    ),
    _event_abi(EscrowEvent.FUNDS_LOCKED.value, [("escrowId", "address", True), ("amount", "uint256", False)]),
    _event_abi(
        EscrowEvent.FUNDS_RELEASED.value,
        [("escrowId", "address", True), ("recipient", "address", False), ("amount", "uint256", False)],
    ),
    _event_abi(
        EscrowEvent.FUNDS_REFUNDED.value,
        [("escrowId", "address", True), ("recipient", "address", False), ("amount", "uint256", False)],
    ),
    _event_abi(EscrowEvent.DISPUTE_OPENED.value, [("escrowId", "address", True), ("initiator", "address", False)]),
    _event_abi(
        EscrowEvent.DISPUTE_RESOLVED.value,
        [("escrowId", "address", True), ("resolver", "address", False), ("resolution", "uint8", False)],
    ),
]


@dataclass(frozen=True)
class Block:
    """Header fields of a chain block used for validation."""

    number: int
    hash: str
    parent_hash: str
    timestamp: int
    transaction_count: int = 0


@dataclass(frozen=True)
class ChainLog:
    """A decoded escrow contract log.

    Attributes:
        event_name: Contract event name (see EscrowEvent).
        contract_address: Emitting contract.
        tx_hash: Transaction hash, 0x-prefixed.
        log_index: Position of the log within its block.
        block_number: Block containing the log.
        block_hash: Hash of that block.
        args: Decoded event arguments, JSON-safe.
    """

    event_name: str
    contract_address: str
    tx_hash: str
    log_index: int
    block_number: int
    block_hash: str
    args: dict[str, Any] = field(default_factory=dict)

    @property
    def tx_id(self) -> str:
        """Globally unique identity of this log, used as the idempotency key."""
        return f"{self.tx_hash.lower()}-{self.log_index}"

    @property
    def escrow_ref(self) -> str | None:
        value = self.args.get("escrowId")
        if value is None:
            return None
        return str(value).lower()
