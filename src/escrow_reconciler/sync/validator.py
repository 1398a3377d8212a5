"""Block integrity and parent-link validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from escrow_reconciler.chain.client import ChainClient
from escrow_reconciler.chain.models import Block

logger = logging.getLogger(__name__)


@dataclass
class BlockValidation:
    """Result of validating a single block."""

    block_number: int
    is_valid: bool
    block: Block | None = None
    errors: list[str] = field(default_factory=list)


@dataclass
class ChainValidation:
    """Result of validating a contiguous block range."""

    from_block: int
    to_block: int
    is_valid: bool
    validated_count: int
    errors: list[str] = field(default_factory=list)
    head_hash: str | None = None

    @property
    def error_summary(self) -> str:
        if not self.errors:
            return ""
        shown = "; ".join(self.errors[:5])
        more = len(self.errors) - 5
        return f"{shown} (+{more} more)" if more > 0 else shown


class BlockValidator:
    """Checks block headers and the parent-hash chain over a range.

    A range walk never stops at the first problem: every break is collected
    so a reorg or gap is reported in full.
    """

    def __init__(self, chain: ChainClient) -> None:
        self._chain = chain

    async def validate_block(self, block_number: int) -> BlockValidation:
        """Validate a single block header.

        Raises:
            ChainClientError: If the block cannot be fetched.
        """
        block = await self._chain.get_block(block_number)
        if block is None:
            return BlockValidation(block_number, False, None, [f"Block {block_number} not found"])

        errors: list[str] = []
        if not block.hash:
            errors.append(f"Block {block_number} has no hash")
        if block.number != block_number:
            errors.append(f"Block number mismatch: requested {block_number}, got {block.number}")
        if not block.timestamp:
            errors.append(f"Block {block_number} has no timestamp")
        if block_number > 0 and not block.parent_hash:
            errors.append(f"Block {block_number} has no parent hash")

        return BlockValidation(block_number, not errors, block, errors)

    async def validate_block_chain(
        self,
        from_block: int,
        to_block: int,
        *,
        expected_first_hash: str | None = None,
    ) -> ChainValidation:
        """Walk from_block..to_block inclusive checking headers and linkage.

        Args:
            from_block: First block of the range.
            to_block: Last block of the range.
            expected_first_hash: Hash from_block must still have, typically
                the stored checkpoint hash; a mismatch means a reorg below it.

        Raises:
            ChainClientError: If a block cannot be fetched.
        """
        if from_block > to_block:
            return ChainValidation(from_block, to_block, False, 0, [f"Invalid range {from_block}-{to_block}"])

        errors: list[str] = []
        validated = 0
        previous_hash: str | None = None
        head_hash: str | None = None

        for number in range(from_block, to_block + 1):
            result = await self.validate_block(number)
            validated += 1
            if not result.is_valid or result.block is None:
                errors.extend(result.errors)
                # No hash to link the next block against.
                previous_hash = None
                continue

            block = result.block
            if number == from_block and expected_first_hash and block.hash.lower() != expected_first_hash.lower():
                errors.append(
                    f"Block {number} hash {block.hash} differs from checkpoint hash {expected_first_hash}"
                )
            if previous_hash is not None and block.parent_hash.lower() != previous_hash.lower():
                errors.append(
                    f"Chain break at block {number}: parent hash {block.parent_hash} "
                    f"does not match block {number - 1} hash {previous_hash}"
                )
            previous_hash = block.hash
            head_hash = block.hash

        is_valid = not errors
        if not is_valid:
            logger.error(
                "Chain validation failed for %d-%d with %d error(s): %s",
                from_block,
                to_block,
                len(errors),
                errors[0],
            )
        return ChainValidation(from_block, to_block, is_valid, validated, errors, head_hash if is_valid else None)

    async def latest_block_number(self) -> int:
        return await self._chain.get_latest_block_number()

    async def latest_block(self) -> Block | None:
        return await self._chain.get_latest_block()

    async def confirmed_head(self, confirmation_blocks: int) -> int:
        """Highest block old enough to be processed."""
        return max(0, await self.latest_block_number() - confirmation_blocks)
