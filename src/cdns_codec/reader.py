"""
C-DNS file reader (RFC 8618).

File structure:
- Outer array of 3 items (definite or indefinite length)
  - "C-DNS" file type tag
  - File preamble map
  - Block array (definite or indefinite length) of block maps

Blocks are read lazily, one at a time: only the current block and its
tables are held in memory. Container heads are parsed here; every item
body is decoded by cbor2.
"""

from __future__ import annotations

import io
import logging
import os
from contextlib import contextmanager
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Tuple, Union

import cbor2

from models.block import Block, BlockPreamble, BlockStatistics
from models.parameters import FilePreamble
from models.records import Timestamp

from .block_source import IBlockSource
from .exceptions import CdnsError, CdnsFormatError
from .keys import (
    FILE_ARRAY_LENGTH,
    FILE_TYPE_ID,
    BlockKeys,
    BlockPreambleKeys,
    BlockStatisticsKeys,
    known_keys,
)
from .preamble import block_parameters_for, decode_preamble
from .records import RecordDecoder, decode_records
from .tables import BlockTables
from .wire import (
    INDEFINITE,
    MAJOR_ARRAY,
    MAJOR_MAP,
    WireMap,
    decode_item,
    read_head,
    read_map_key,
)

logger = logging.getLogger(__name__)

Source = Union[str, os.PathLike, bytes, bytearray, memoryview, BinaryIO]


class CdnsReader(IBlockSource):
    """
    Reads C-DNS files block by block.

    Example:
        with CdnsReader("capture.cdns") as reader:
            print(reader.preamble.block_parameters[0])
            for block in reader:
                for qr in block.query_responses:
                    ...
    """

    def __init__(self, source: Source):
        """
        Args:
            source: Path to a C-DNS file, the file's bytes, or a binary
                file object (left open by close())
        """
        self.source = source
        self.file_handle: Optional[BinaryIO] = None
        self._owns_file = False
        self._decoder: Optional[cbor2.CBORDecoder] = None

        self.preamble: Optional[FilePreamble] = None

        # Items left in the outer and block arrays (INDEFINITE = None)
        self._outer_remaining: Optional[int] = None
        self._blocks_remaining: Optional[int] = None

        self._blocks_read = 0
        self._records_read = 0
        self._failed = False
        self._finished = False

    # ========== OPEN / CLOSE ==========

    def open(self):
        """Open the source, check the file tag and read the preamble."""
        if self._decoder is not None:
            return

        # 1. Wrap the source in a binary file object
        if isinstance(self.source, (bytes, bytearray, memoryview)):
            self.file_handle = io.BytesIO(bytes(self.source))
        elif hasattr(self.source, "read"):
            self.file_handle = self.source
        else:
            if not os.path.exists(self.source):
                raise FileNotFoundError(f"C-DNS file not found: {self.source}")
            self.file_handle = open(self.source, "rb")
            self._owns_file = True
        self._decoder = cbor2.CBORDecoder(self.file_handle)

        with self._guard():
            # 2. Outer array: 3 items, or indefinite
            major, length = read_head(self._decoder, "File")
            if major != MAJOR_ARRAY:
                raise CdnsFormatError("File: expected an array")
            if length is not INDEFINITE and length != FILE_ARRAY_LENGTH:
                raise CdnsFormatError(
                    f"File: expected {FILE_ARRAY_LENGTH} items, got {length}")
            self._outer_remaining = length

            # 3. File type tag
            tag = decode_item(self._decoder, "File type")
            if tag != FILE_TYPE_ID:
                raise CdnsFormatError(f"File: not a C-DNS file (type tag {tag!r})")

            # 4. Preamble
            self.preamble = decode_preamble(decode_item(self._decoder, "FilePreamble"))

            # 5. Block array head
            head = read_head(self._decoder, "Blocks", allow_break=length is INDEFINITE)
            if head is None:
                raise CdnsFormatError("File: missing block array")
            major, count = head
            if major != MAJOR_ARRAY:
                raise CdnsFormatError("Blocks: expected an array")
            self._blocks_remaining = count

        logger.debug("Opened C-DNS file: format %d.%d, %d block parameter set(s)",
                     self.preamble.major_format_version, self.preamble.minor_format_version,
                     len(self.preamble.block_parameters))

    def close(self):
        """
        Close the source and release resources.
        Safe to call multiple times.
        """
        if self._owns_file and self.file_handle is not None:
            self.file_handle.close()
        self.file_handle = None
        self._owns_file = False
        self._decoder = None

    # ========== ITERATION ==========

    def __iter__(self) -> Iterator[Block]:
        if self._decoder is None and not self._finished:
            raise RuntimeError("C-DNS file not opened. Call open() or use 'with' statement.")
        return self

    def __next__(self) -> Block:
        block = self.read_block()
        if block is None:
            raise StopIteration
        return block

    def read_block(self) -> Optional[Block]:
        """
        Read, validate and decode the next block.

        Returns:
            The next Block, or None at the end of the block array

        Raises:
            CdnsFormatError: If the block is malformed, or if an earlier
                call failed (the reader cannot advance past a failure)
        """
        if self._failed:
            raise CdnsFormatError("C-DNS reader cannot advance after a decode failure")
        if self._finished:
            return None
        if self._decoder is None:
            raise RuntimeError("C-DNS file not opened. Call open() or use 'with' statement.")

        with self._guard():
            value = self._read_block_map()
            if value is None:
                self._finish()
                return None
            block = self._decode_block(value)

        self._blocks_read += 1
        self._records_read += block.item_count
        logger.debug("Read C-DNS block %d: %d items", self._blocks_read, block.item_count)
        return block

    @contextmanager
    def _guard(self):
        """Mark the reader failed when a decode or I/O error escapes."""
        try:
            yield
        except (CdnsError, OSError):
            self._failed = True
            raise

    def _read_block_map(self) -> Optional[Dict[Any, Any]]:
        """
        Read one block map, or return None at the end of the block array.

        Keys are read from their heads so that duplicate keys are detected
        and the end of an indefinite array can be told from a block.
        """
        what = f"Block[{self._blocks_read}]"
        if self._blocks_remaining is not INDEFINITE:
            if self._blocks_remaining == 0:
                return None
            self._blocks_remaining -= 1
        head = read_head(self._decoder, what, allow_break=self._blocks_remaining is INDEFINITE)
        if head is None:
            return None
        major, size = head
        if major != MAJOR_MAP:
            raise CdnsFormatError(f"{what}: expected a map")

        value: Dict[Any, Any] = {}
        position = 0
        while size is INDEFINITE or position < size:
            key = read_map_key(self._decoder, what, allow_break=size is INDEFINITE)
            if key is None:
                break
            if key in value:
                raise CdnsFormatError(f"{what}: duplicate key {key}")
            value[key] = decode_item(self._decoder, f"{what}[{key}]")
            position += 1
        return value

    def _finish(self) -> None:
        if self._outer_remaining is INDEFINITE:
            if read_head(self._decoder, "File", allow_break=True) is not None:
                raise CdnsFormatError("File: unexpected item after the block array")
        self._finished = True
        logger.debug("Finished C-DNS file: %d blocks, %d records",
                     self._blocks_read, self._records_read)

    def _decode_block(self, value: Dict[Any, Any]) -> Block:
        what = f"Block[{self._blocks_read}]"
        wire = WireMap(value, what, known_keys(BlockKeys))

        # 1. Block preamble and the parameters it selects
        preamble_wire = wire.map(BlockKeys.BLOCK_PREAMBLE, f"{what}.BlockPreamble",
                                 known_keys(BlockPreambleKeys), required=True)
        index = preamble_wire.uint(BlockPreambleKeys.BLOCK_PARAMETERS_INDEX)
        index = 0 if index is None else index
        parameters = block_parameters_for(self.preamble, index)
        earliest_time = self._decode_earliest_time(
            preamble_wire, parameters.storage_parameters.ticks_per_second)
        preamble = BlockPreamble(
            earliest_time=earliest_time,
            block_parameters_index=index,
            extra=preamble_wire.extra(),
        )

        # 2. Statistics
        statistics = None
        stats_wire = wire.map(BlockKeys.BLOCK_STATISTICS, f"{what}.BlockStatistics",
                              known_keys(BlockStatisticsKeys))
        if stats_wire is not None:
            statistics = _decode_statistics(stats_wire)

        # 3. Tables, validated before any record is resolved
        tables = None
        if BlockKeys.BLOCK_TABLES in wire:
            tables = BlockTables.from_wire(wire.value[BlockKeys.BLOCK_TABLES])
        decoder = RecordDecoder(tables if tables is not None else BlockTables({}),
                                parameters, earliest_time)

        # 4. Records
        return Block(
            preamble=preamble,
            parameters=parameters,
            statistics=statistics,
            tables=tables,
            query_responses=decode_records(
                decoder, wire.array(BlockKeys.QUERY_RESPONSES, non_empty=True),
                "decode_query_response"),
            address_event_counts=decode_records(
                decoder, wire.array(BlockKeys.ADDRESS_EVENT_COUNTS, non_empty=True),
                "decode_address_event_count"),
            malformed_messages=decode_records(
                decoder, wire.array(BlockKeys.MALFORMED_MESSAGES, non_empty=True),
                "decode_malformed_message"),
            extra=wire.extra(),
        )

    @staticmethod
    def _decode_earliest_time(wire: WireMap, ticks_per_second: int) -> Optional[Timestamp]:
        items = wire.array(BlockPreambleKeys.EARLIEST_TIME)
        if items is None:
            return None
        if len(items) != 2:
            raise CdnsFormatError(f"{wire.what}: earliest time must be [seconds, ticks]")
        seconds, ticks = items
        for item in items:
            if isinstance(item, bool) or not isinstance(item, int) or item < 0:
                raise CdnsFormatError(f"{wire.what}: invalid earliest time {items!r}")
        if ticks >= ticks_per_second:
            raise CdnsFormatError(
                f"{wire.what}: earliest time ticks {ticks} exceed {ticks_per_second} per second")
        return Timestamp(seconds=seconds, ticks=ticks)

    # ========== METADATA ==========

    def get_file_info(self) -> Dict[str, Any]:
        preamble = self.preamble
        return {
            'format': 'c-dns',
            'major_format_version': preamble.major_format_version if preamble else None,
            'minor_format_version': preamble.minor_format_version if preamble else None,
            'private_version': preamble.private_version if preamble else None,
            'block_parameters_count': len(preamble.block_parameters) if preamble else 0,
            'blocks_read': self._blocks_read,
            'records_read': self._records_read,
            'finished': self._finished,
        }


def _decode_statistics(wire: WireMap) -> BlockStatistics:
    return BlockStatistics(
        processed_messages=wire.uint(BlockStatisticsKeys.PROCESSED_MESSAGES),
        qr_data_items=wire.uint(BlockStatisticsKeys.QR_DATA_ITEMS),
        unmatched_queries=wire.uint(BlockStatisticsKeys.UNMATCHED_QUERIES),
        unmatched_responses=wire.uint(BlockStatisticsKeys.UNMATCHED_RESPONSES),
        discarded_opcode=wire.uint(BlockStatisticsKeys.DISCARDED_OPCODE),
        malformed_items=wire.uint(BlockStatisticsKeys.MALFORMED_ITEMS),
        extra=wire.extra(),
    )


def read_file(source: Source) -> Tuple[FilePreamble, List[Block]]:
    """Read a whole C-DNS file into memory."""
    with CdnsReader(source) as reader:
        blocks = list(reader)
        return reader.preamble, blocks
