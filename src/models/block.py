# Block models
"""
Block-level models.

A Block is a bounded batch of records sharing one BlockParameters
selection and one earliest-time anchor. Its dedup tables are scoped to
the block: indices restart at 0 in every block.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional, Tuple

from .parameters import BlockParameters
from .records import AddressEventCount, MalformedMessage, QueryResponse, Timestamp


@dataclass(frozen=True)
class BlockPreamble:
    """Earliest timestamp of the block and its BlockParameters index."""
    earliest_time: Optional[Timestamp] = None
    block_parameters_index: int = 0
    extra: Dict[int, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class BlockStatistics:
    """Counters collected while the block was being filled."""
    processed_messages: Optional[int] = None
    qr_data_items: Optional[int] = None
    unmatched_queries: Optional[int] = None
    unmatched_responses: Optional[int] = None
    discarded_opcode: Optional[int] = None
    malformed_items: Optional[int] = None
    extra: Dict[int, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class Block:
    """
    A decoded block.

    tables holds the block's read-only dedup tables (None when the block
    had none); records are already resolved against them.
    """
    preamble: BlockPreamble
    parameters: BlockParameters
    statistics: Optional[BlockStatistics] = None
    tables: Optional[Any] = None
    query_responses: Tuple[QueryResponse, ...] = ()
    address_event_counts: Tuple[AddressEventCount, ...] = ()
    malformed_messages: Tuple[MalformedMessage, ...] = ()
    extra: Dict[int, Any] = field(default_factory=dict, hash=False)

    @property
    def item_count(self) -> int:
        """Total records across the three record collections."""
        return (len(self.query_responses)
                + len(self.address_event_counts)
                + len(self.malformed_messages))

    def records(self) -> Iterator[Any]:
        """Iterate over every record: Q/R items, event counts, malformed messages."""
        yield from self.query_responses
        yield from self.address_event_counts
        yield from self.malformed_messages
