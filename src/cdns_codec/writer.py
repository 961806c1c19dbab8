"""
C-DNS block writer and segmenter.

File layout written by CdnsWriter:
- Definite 3-element outer array
- "C-DNS" file type tag
- File preamble map
- Indefinite-length block array, one block map per flush, closed by a
  break byte

Blocks are flushed when their item count (Q/R items + address event
counts + malformed messages) reaches max_block_items, when the selected
BlockParameters change, and on close().
"""

from __future__ import annotations

import logging
import os
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import cbor2

from models.block import Block, BlockStatistics
from models.parameters import BlockParameters, FilePreamble, MINOR_FORMAT_VERSION
from models.records import (
    AddressEventCount,
    MalformedMessage,
    QueryResponse,
    Timestamp,
    TransportFlags,
    is_present,
)

from .exceptions import PolicyViolationError
from .keys import (
    FILE_ARRAY_LENGTH,
    FILE_TYPE_ID,
    AddressEventCountKeys,
    BlockKeys,
    BlockPreambleKeys,
    BlockStatisticsKeys,
    MalformedMessageKeys,
    QueryResponseKeys,
)
from .preamble import block_parameters_for, encode_preamble
from .records import RecordEncoder
from .tables import BlockTables
from .wire import BREAK, INDEFINITE_ARRAY, MAJOR_ARRAY, encode_head, put, with_extra

logger = logging.getLogger(__name__)

_STATISTICS_FIELDS: Tuple[Tuple[str, int], ...] = (
    ("processed_messages", BlockStatisticsKeys.PROCESSED_MESSAGES),
    ("qr_data_items", BlockStatisticsKeys.QR_DATA_ITEMS),
    ("unmatched_queries", BlockStatisticsKeys.UNMATCHED_QUERIES),
    ("unmatched_responses", BlockStatisticsKeys.UNMATCHED_RESPONSES),
    ("discarded_opcode", BlockStatisticsKeys.DISCARDED_OPCODE),
    ("malformed_items", BlockStatisticsKeys.MALFORMED_ITEMS),
)


class BlockBuilder:
    """
    One open block: its tables, encoded records and statistics.

    Records are checked, then encoded and interned as they arrive, so
    table order follows record order. Time offsets are computed in
    build(), against the earliest timestamp of the whole block.
    """

    def __init__(self, parameters: BlockParameters, block_parameters_index: int = 0):
        """
        Args:
            parameters: The BlockParameters this block selects
            block_parameters_index: Position of parameters in the file preamble
        """
        self.parameters = parameters
        self.block_parameters_index = block_parameters_index
        self.ticks_per_second = parameters.storage_parameters.ticks_per_second
        self.tables = BlockTables()
        self.encoder = RecordEncoder(self.tables, parameters)

        # Encoded records with their timestamp (or None)
        self._query_responses: List[Tuple[Dict[Any, Any], Optional[Timestamp]]] = []
        self._address_event_counts: List[Dict[Any, Any]] = []
        self._malformed_messages: List[Tuple[Dict[Any, Any], Optional[Timestamp]]] = []

        # (type, code, address, transport flags) -> encoded AddressEventCount
        self._address_events: Dict[Tuple[Any, ...], Dict[Any, Any]] = {}

        self.earliest_time: Optional[Timestamp] = None
        self.statistics: Dict[str, int] = {name: 0 for name, _ in _STATISTICS_FIELDS}
        self._built = False

    @property
    def item_count(self) -> int:
        """Total records across the three record collections."""
        return (len(self._query_responses)
                + len(self._address_event_counts)
                + len(self._malformed_messages))

    def __len__(self) -> int:
        return self.item_count

    # ========== ADDING RECORDS ==========

    def add(self, record: Any) -> None:
        """
        Check, encode and append one record.

        Raises:
            PolicyViolationError: If the record cannot be stored under the
                block's parameters; nothing is added to the block
            TypeError: For objects that are not C-DNS records
        """
        if isinstance(record, QueryResponse):
            self.add_query_response(record)
        elif isinstance(record, AddressEventCount):
            self.add_address_event_count(record)
        elif isinstance(record, MalformedMessage):
            self.add_malformed_message(record)
        else:
            raise TypeError(f"Not a C-DNS record: {type(record).__name__}")

    def add_query_response(self, qr: QueryResponse) -> None:
        self._ensure_open()
        try:
            self.encoder.check_query_response(qr)
        except PolicyViolationError as e:
            if e.field == "opcode":
                self.statistics["discarded_opcode"] += 1
            raise
        wire = self.encoder.encode_query_response(qr)
        timestamp = qr.timestamp if is_present(qr.timestamp) else None
        self._query_responses.append((wire, timestamp))
        self._note_time(timestamp)
        self._count_query_response(qr)

    def add_address_event_count(self, aec: AddressEventCount) -> None:
        self._ensure_open()
        self.encoder.check_address_event_count(aec)
        wire = self.encoder.encode_address_event_count(aec)
        self._address_event_counts.append(wire)
        self._address_events.setdefault(_event_key(aec), wire)

    def count_address_event(self, aec: AddressEventCount) -> None:
        """
        Add aec.count occurrences of an address event.

        Events with the same type, code, address and transport flags are
        aggregated into one AddressEventCount of this block.
        """
        self._ensure_open()
        self.encoder.check_address_event_count(aec)
        wire = self._address_events.get(_event_key(aec))
        if wire is None:
            self.add_address_event_count(aec)
        else:
            wire[AddressEventCountKeys.AE_COUNT] += aec.count

    def add_malformed_message(self, mm: MalformedMessage) -> None:
        self._ensure_open()
        self.encoder.check_malformed_message(mm)
        wire = self.encoder.encode_malformed_message(mm)
        timestamp = mm.timestamp if is_present(mm.timestamp) else None
        self._malformed_messages.append((wire, timestamp))
        self._note_time(timestamp)
        self.statistics["processed_messages"] += 1
        self.statistics["malformed_items"] += 1

    def _ensure_open(self) -> None:
        if self._built:
            raise RuntimeError("Block has already been built")

    def _note_time(self, timestamp: Optional[Timestamp]) -> None:
        if timestamp is None:
            return
        if (self.earliest_time is None
                or timestamp.to_ticks(self.ticks_per_second)
                < self.earliest_time.to_ticks(self.ticks_per_second)):
            self.earliest_time = timestamp

    def _count_query_response(self, qr: QueryResponse) -> None:
        stats = self.statistics
        stats["qr_data_items"] += 1
        signature = qr.signature
        if not is_present(signature) or not is_present(signature.qr_sig_flags):
            stats["processed_messages"] += 1
            return
        has_query, has_response = signature.has_query, signature.has_response
        stats["processed_messages"] += int(has_query) + int(has_response) or 1
        if has_query and not has_response:
            stats["unmatched_queries"] += 1
        elif has_response and not has_query:
            stats["unmatched_responses"] += 1

    # ========== BUILDING ==========

    def build(self, statistics: Optional[BlockStatistics] = None,
              include_statistics: bool = True,
              earliest_time: Optional[Timestamp] = None,
              extra: Optional[Dict[Any, Any]] = None) -> Dict[Any, Any]:
        """
        Freeze the tables and return the block map.

        Args:
            statistics: Statistics to write instead of the counters kept
                by this builder
            include_statistics: Whether to write a statistics map at all
            earliest_time: Anchor to use if it is not later than the
                earliest record timestamp
            extra: Preserved extension keys of the block and its preamble,
                as {"block": ..., "preamble": ..., "statistics": ...}
        """
        self._ensure_open()
        self._built = True
        self.tables.freeze()
        extra = extra or {}

        anchor = self.earliest_time
        if earliest_time is not None and (
                anchor is None
                or earliest_time.to_ticks(self.ticks_per_second)
                <= anchor.to_ticks(self.ticks_per_second)):
            anchor = earliest_time

        preamble: Dict[Any, Any] = {}
        if anchor is not None:
            preamble[BlockPreambleKeys.EARLIEST_TIME] = [anchor.seconds, anchor.ticks]
        if self.block_parameters_index != 0:
            preamble[BlockPreambleKeys.BLOCK_PARAMETERS_INDEX] = self.block_parameters_index

        wire: Dict[Any, Any] = {
            BlockKeys.BLOCK_PREAMBLE: with_extra(preamble, extra.get("preamble", {})),
        }
        if include_statistics:
            stats_wire = self._statistics_wire(statistics)
            wire[BlockKeys.BLOCK_STATISTICS] = with_extra(stats_wire, extra.get("statistics", {}))
        if not self.tables.is_empty:
            wire[BlockKeys.BLOCK_TABLES] = self.tables.to_wire()

        base = anchor.to_ticks(self.ticks_per_second) if anchor is not None else 0
        if self._query_responses:
            wire[BlockKeys.QUERY_RESPONSES] = [
                self._with_offset(record, timestamp, QueryResponseKeys.TIME_OFFSET, base)
                for record, timestamp in self._query_responses]
        if self._address_event_counts:
            wire[BlockKeys.ADDRESS_EVENT_COUNTS] = list(self._address_event_counts)
        if self._malformed_messages:
            wire[BlockKeys.MALFORMED_MESSAGES] = [
                self._with_offset(record, timestamp, MalformedMessageKeys.TIME_OFFSET, base)
                for record, timestamp in self._malformed_messages]
        return with_extra(wire, extra.get("block", {}))

    def _with_offset(self, record: Dict[Any, Any], timestamp: Optional[Timestamp],
                     key: int, base: int) -> Dict[Any, Any]:
        if timestamp is None:
            return record
        wire = {key: timestamp.to_ticks(self.ticks_per_second) - base}
        wire.update(record)
        return wire

    def _statistics_wire(self, statistics: Optional[BlockStatistics]) -> Dict[Any, Any]:
        if statistics is None:
            return {key: self.statistics[name] for name, key in _STATISTICS_FIELDS}
        wire: Dict[Any, Any] = {}
        for name, key in _STATISTICS_FIELDS:
            put(wire, key, getattr(statistics, name))
        return wire


def _event_key(aec: AddressEventCount) -> Tuple[Any, ...]:
    return (int(aec.ae_type), aec.ae_code, aec.address, aec.transport_flags)


def encode_block(block: Block) -> Dict[Any, Any]:
    """
    Re-encode a decoded Block, keeping its statistics, earliest time and
    preserved extension keys.

    The decoded tables seed the new ones: entries keep their order and
    indices, including entries no record references. Records that were
    not changed re-encode to the same index maps.
    """
    builder = BlockBuilder(block.parameters, block.preamble.block_parameters_index)
    if block.tables is not None:
        builder.tables.seed(block.tables)
    for record in block.records():
        builder.add(record)
    statistics = block.statistics
    return builder.build(
        statistics=statistics,
        include_statistics=statistics is not None,
        earliest_time=block.preamble.earliest_time,
        extra={
            "block": block.extra,
            "preamble": block.preamble.extra,
            "statistics": statistics.extra if statistics is not None else {},
        },
    )


def encode_file(preamble: FilePreamble, blocks: Iterable[Block]) -> bytes:
    """
    Encode a complete in-memory file with definite-length arrays.

    Every block must select its parameters from this preamble.
    """
    encoded_blocks = []
    for block in blocks:
        block_parameters_for(preamble, block.preamble.block_parameters_index)
        encoded_blocks.append(encode_block(block))
    return cbor2.dumps([FILE_TYPE_ID, encode_preamble(preamble), encoded_blocks])


# ========== STREAMING WRITER ==========

class CdnsWriter:
    """
    Streams C-DNS blocks to a file or binary file object.

    Example:
        with CdnsWriter("capture.cdns") as writer:
            for qr in query_responses:
                writer.add_record(qr)
    """

    def __init__(self, target: Union[str, os.PathLike, BinaryIO],
                 block_parameters: Optional[Sequence[BlockParameters]] = None,
                 private_version: Optional[int] = None):
        """
        Args:
            target: Output path, or a binary file object (left open by close())
            block_parameters: BlockParameters sets for the file preamble;
                blocks use the first one until select_block_parameters()
            private_version: Optional private version number for the preamble
        """
        if block_parameters is None:
            block_parameters = (BlockParameters(),)
        self.preamble = FilePreamble(
            block_parameters=tuple(block_parameters),
            minor_format_version=MINOR_FORMAT_VERSION,
            private_version=private_version,
        )
        if not self.preamble.block_parameters:
            raise ValueError("At least one BlockParameters set is required")

        self.target = target
        self.file_handle: Optional[BinaryIO] = None
        self._owns_file = False
        self._encoder: Optional[cbor2.CBOREncoder] = None
        self._block_parameters_index = 0
        self._builder: Optional[BlockBuilder] = None
        self._closed = False

        self.blocks_written = 0
        self.records_written = 0

    # ========== LIFECYCLE ==========

    def open(self):
        """Open the target and write the file header and preamble."""
        if self.file_handle is not None:
            return
        if self._closed:
            raise RuntimeError("C-DNS writer is closed")

        if hasattr(self.target, "write"):
            self.file_handle = self.target
        else:
            self.file_handle = open(self.target, "wb")
            self._owns_file = True
        self._encoder = cbor2.CBOREncoder(self.file_handle)

        self.file_handle.write(encode_head(MAJOR_ARRAY, FILE_ARRAY_LENGTH))
        self._encoder.encode(FILE_TYPE_ID)
        self._encoder.encode(encode_preamble(self.preamble))
        self.file_handle.write(INDEFINITE_ARRAY)
        self._builder = self._new_builder()
        logger.debug("Opened C-DNS writer with %d block parameter set(s)",
                     len(self.preamble.block_parameters))

    def close(self):
        """
        Flush the final partial block and terminate the file.
        Safe to call multiple times.
        """
        if self._closed:
            return
        try:
            if self.file_handle is not None:
                builder = self._builder
                if self.flush() is None and builder.statistics["discarded_opcode"]:
                    # Only rejected records: keep their count in a block of its own
                    self._emit(builder)
                self.file_handle.write(BREAK)
                self.file_handle.flush()
        finally:
            self._closed = True
            if self._owns_file and self.file_handle is not None:
                self.file_handle.close()
            self.file_handle = None
            self._encoder = None
            self._builder = None

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _require_open(self) -> BlockBuilder:
        if self._builder is None:
            raise RuntimeError("C-DNS writer not opened. Call open() or use 'with' statement.")
        return self._builder

    def _new_builder(self) -> BlockBuilder:
        parameters = self.preamble.block_parameters[self._block_parameters_index]
        return BlockBuilder(parameters, self._block_parameters_index)

    # ========== RECORDS ==========

    @property
    def block_parameters(self) -> BlockParameters:
        """The BlockParameters used by the open block."""
        return self.preamble.block_parameters[self._block_parameters_index]

    @property
    def pending_items(self) -> int:
        """Records in the open (not yet flushed) block."""
        return self._builder.item_count if self._builder is not None else 0

    def add_record(self, record: Any) -> None:
        """
        Add a QueryResponse, AddressEventCount or MalformedMessage.

        Raises:
            PolicyViolationError: If the record cannot be stored under the
                active StorageParameters; the writer stays usable
        """
        self._require_open().add(record)
        self._record_added()

    def add_query_response(self, qr: QueryResponse) -> None:
        self._require_open().add_query_response(qr)
        self._record_added()

    def add_address_event_count(self, aec: AddressEventCount) -> None:
        self._require_open().add_address_event_count(aec)
        self._record_added()

    def add_malformed_message(self, mm: MalformedMessage) -> None:
        self._require_open().add_malformed_message(mm)
        self._record_added()

    def count_address_event(self, ae_type: int, address: Any, ae_code: Optional[int] = None,
                            transport_flags: Optional[TransportFlags] = None,
                            count: int = 1) -> None:
        """Aggregate address events into the open block's AddressEventCounts."""
        builder = self._require_open()
        before = builder.item_count
        builder.count_address_event(AddressEventCount(
            ae_type=ae_type,
            address=address,
            count=count,
            ae_code=ae_code,
            transport_flags=transport_flags,
        ))
        if builder.item_count > before:
            self._record_added()

    def _record_added(self) -> None:
        self.records_written += 1
        builder = self._builder
        if builder.item_count >= builder.parameters.storage_parameters.max_block_items:
            self.flush()

    # ========== BLOCKS ==========

    def select_block_parameters(self, index: int) -> None:
        """
        Flush the open block and use BlockParameters[index] from now on.

        Raises:
            IndexOutOfRangeError: If index is not in the preamble
        """
        block_parameters_for(self.preamble, index)
        self._require_open()
        if index == self._block_parameters_index:
            return
        builder = self._builder
        carried = 0 if self.flush() is not None else builder.statistics["discarded_opcode"]
        self._block_parameters_index = index
        self._builder = self._new_builder()
        self._builder.statistics["discarded_opcode"] += carried

    def flush(self) -> Optional[Dict[Any, Any]]:
        """
        Emit the open block, if it holds any record.

        Returns:
            The block map written, or None for an empty block
        """
        builder = self._require_open()
        if builder.item_count == 0:
            return None
        return self._emit(builder)

    def _emit(self, builder: BlockBuilder) -> Dict[Any, Any]:
        wire = builder.build()
        self._encoder.encode(wire)
        self.blocks_written += 1
        logger.debug("Flushed C-DNS block %d: %d items, %d table entries",
                     self.blocks_written, builder.item_count, len(builder.tables))
        self._builder = self._new_builder()
        return wire
