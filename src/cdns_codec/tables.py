"""
Per-block dedup tables.

Each block owns its own BlockTables: indices start at 0 in every block
and are never valid across block boundaries. Tables are append-only:
once an index has been handed out its entry never changes, and after
the block is flushed (or when decoded from a file) the table is frozen.

CRITICAL: interning must be deterministic. Identical input in identical
order produces identical tables, byte for byte.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from .exceptions import CdnsFormatError, IndexOutOfRangeError
from .keys import (
    BlockTablesKeys,
    ClassTypeKeys,
    MalformedMessageDataKeys,
    QueryResponseSignatureKeys,
    QuestionKeys,
    RRKeys,
    known_keys,
)
from .wire import WireMap, check_uint, freeze, with_extra

logger = logging.getLogger(__name__)


class DedupTable:
    """
    Append-only table of wire values with dedup by structural equality.

    Example:
        table = DedupTable("name_rdata")
        table.intern(b"\\x07example\\x03com\\x00")  -> 0
        table.intern(b"\\x07example\\x03com\\x00")  -> 0 (same entry)
        table.resolve(0)                           -> the bytes
    """

    def __init__(self, name: str, entries: Optional[List[Any]] = None,
                 key: Callable[[Any], Any] = freeze):
        """
        Args:
            name: Table name used in error messages
            entries: Existing entries (decoded tables); the table is frozen
            key: Function returning the hashable dedup key of a value
        """
        self.name = name
        self._key = key
        self._entries: List[Any] = []
        self._index: Dict[Any, int] = {}
        self._frozen = False
        if entries is not None:
            self._entries = list(entries)
            self._frozen = True

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Any]:
        return iter(self._entries)

    def __repr__(self) -> str:
        state = "frozen" if self._frozen else "open"
        return f"DedupTable({self.name!r}, {len(self._entries)} entries, {state})"

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        """Make the table read-only."""
        self._frozen = True
        self._index = {}

    def intern(self, value: Any) -> int:
        """
        Return the index of an entry equal to value, appending it if new.

        Raises:
            RuntimeError: If the table is frozen
        """
        if self._frozen:
            raise RuntimeError(f"Table {self.name} is read-only")
        key = self._key(value)
        index = self._index.get(key)
        if index is None:
            index = len(self._entries)
            self._entries.append(value)
            self._index[key] = index
        return index

    def resolve(self, index: Any) -> Any:
        """
        Return the entry at index.

        Raises:
            IndexOutOfRangeError: If index is not a valid position
        """
        if isinstance(index, bool) or not isinstance(index, int) or index < 0:
            raise IndexOutOfRangeError(f"{self.name}: invalid index {index!r}")
        if index >= len(self._entries):
            raise IndexOutOfRangeError(
                f"{self.name}: index {index} out of range (table length {len(self._entries)})")
        return self._entries[index]

    def extend(self, entries: Iterable[Any]) -> None:
        """
        Append entries as they are, without dedup.

        Later interns of an equal value return the first such entry.
        """
        if self._frozen:
            raise RuntimeError(f"Table {self.name} is read-only")
        for value in entries:
            self._index.setdefault(self._key(value), len(self._entries))
            self._entries.append(value)

    def check(self, index: Any) -> int:
        """Validate index against the table and return it."""
        self.resolve(index)
        return index

    def to_wire(self) -> List[Any]:
        return list(self._entries)


class BlockTables:
    """
    The nine dedup tables of one block.

    name_rdata is shared by NAMEs and RDATA: equal byte strings collapse to
    one entry whichever role they play.
    """

    TABLE_KEYS: Tuple[Tuple[str, int], ...] = (
        ("ip_address", BlockTablesKeys.IP_ADDRESS),
        ("classtype", BlockTablesKeys.CLASSTYPE),
        ("name_rdata", BlockTablesKeys.NAME_RDATA),
        ("qr_sig", BlockTablesKeys.QR_SIG),
        ("qlist", BlockTablesKeys.QLIST),
        ("qrr", BlockTablesKeys.QRR),
        ("rrlist", BlockTablesKeys.RRLIST),
        ("rr", BlockTablesKeys.RR),
        ("malformed_message_data", BlockTablesKeys.MALFORMED_MESSAGE_DATA),
    )

    def __init__(self, entries: Optional[Dict[str, List[Any]]] = None,
                 extra: Optional[Dict[Any, Any]] = None):
        """
        Args:
            entries: Decoded table contents by name; when given, every
                table is created frozen (missing tables are empty)
            extra: Unrecognised keys of the tables map
        """
        self.extra = dict(extra or {})
        for name, _ in self.TABLE_KEYS:
            if entries is None:
                table = DedupTable(name)
            else:
                table = DedupTable(name, entries.get(name, []))
            setattr(self, name, table)

    # Typed attribute declarations for readers of the code
    ip_address: DedupTable
    classtype: DedupTable
    name_rdata: DedupTable
    qr_sig: DedupTable
    qlist: DedupTable
    qrr: DedupTable
    rrlist: DedupTable
    rr: DedupTable
    malformed_message_data: DedupTable

    def tables(self) -> Iterator[DedupTable]:
        for name, _ in self.TABLE_KEYS:
            yield getattr(self, name)

    def __len__(self) -> int:
        return sum(len(table) for table in self.tables())

    @property
    def is_empty(self) -> bool:
        return len(self) == 0 and not self.extra

    def freeze(self) -> None:
        for table in self.tables():
            table.freeze()

    def seed(self, other: 'BlockTables') -> None:
        """
        Start these (empty, open) tables with every entry of other, in
        order, so that records re-encoded against them keep their indices
        and unreferenced entries survive.
        """
        if not self.is_empty:
            raise RuntimeError("Only empty tables can be seeded")
        for name, _ in self.TABLE_KEYS:
            getattr(self, name).extend(getattr(other, name))
        self.extra.update(other.extra)

    # ========== SERIALIZATION ==========

    def to_wire(self) -> Dict[Any, Any]:
        """Build the block-tables map; empty tables are omitted."""
        wire: Dict[Any, Any] = {}
        for name, key in self.TABLE_KEYS:
            table = getattr(self, name)
            if len(table):
                wire[key] = table.to_wire()
        return with_extra(wire, self.extra)

    @classmethod
    def from_wire(cls, value: Any) -> 'BlockTables':
        """
        Decode and validate a block-tables map.

        Entries are type-checked here; cross-table references are checked
        by validate().

        Raises:
            CdnsFormatError: On mistyped tables or entries
        """
        wire = WireMap(value, "BlockTables", known_keys(BlockTablesKeys))
        entries: Dict[str, List[Any]] = {}
        for name, key in cls.TABLE_KEYS:
            items = wire.array(key, non_empty=True)
            if items is None:
                continue
            checker = _ENTRY_CHECKS[name]
            entries[name] = [checker(item, f"BlockTables.{name}[{position}]")
                             for position, item in enumerate(items)]
        tables = cls(entries, wire.extra())
        tables.validate()
        return tables

    def validate(self) -> None:
        """
        Check every index stored inside the tables themselves.

        Raises:
            IndexOutOfRangeError: If any reference is past the end of its table
        """
        for qlist in self.qlist:
            for index in qlist:
                self.qrr.check(index)
        for rrlist in self.rrlist:
            for index in rrlist:
                self.rr.check(index)
        for question in self.qrr:
            self.name_rdata.check(question[QuestionKeys.NAME_INDEX])
            self.classtype.check(question[QuestionKeys.CLASSTYPE_INDEX])
        for rr in self.rr:
            self.name_rdata.check(rr[RRKeys.NAME_INDEX])
            self.classtype.check(rr[RRKeys.CLASSTYPE_INDEX])
            if RRKeys.RDATA_INDEX in rr:
                self.name_rdata.check(rr[RRKeys.RDATA_INDEX])
        for sig in self.qr_sig:
            for key, table in ((QueryResponseSignatureKeys.SERVER_ADDRESS_INDEX, self.ip_address),
                               (QueryResponseSignatureKeys.QUERY_CLASSTYPE_INDEX, self.classtype),
                               (QueryResponseSignatureKeys.QUERY_OPT_RDATA_INDEX, self.name_rdata)):
                if key in sig:
                    table.check(sig[key])
        for data in self.malformed_message_data:
            if MalformedMessageDataKeys.SERVER_ADDRESS_INDEX in data:
                self.ip_address.check(data[MalformedMessageDataKeys.SERVER_ADDRESS_INDEX])
        logger.debug("Validated block tables (%d entries)", len(self))


# ========== ENTRY TYPE CHECKS ==========

def _check_bytes(value: Any, what: str) -> bytes:
    if not isinstance(value, (bytes, bytearray)):
        raise CdnsFormatError(f"{what}: expected byte string, got {type(value).__name__}")
    return bytes(value)


def _check_index_list(value: Any, what: str) -> List[int]:
    if not isinstance(value, list) or not value:
        raise CdnsFormatError(f"{what}: expected non-empty array of indices")
    return [check_uint(item, what) for item in value]


def _check_map(keys_cls, *required: int, uints: Tuple[int, ...] = (),
               byte_fields: Tuple[int, ...] = ()):
    known = known_keys(keys_cls)

    def check(value: Any, what: str) -> Dict[Any, Any]:
        wire = WireMap(value, what, known)
        for key in required:
            wire.uint(key, required=True)
        for key in uints:
            wire.uint(key)
        for key in byte_fields:
            wire.bytes(key)
        return value
    return check


_ENTRY_CHECKS: Dict[str, Callable[[Any, str], Any]] = {
    "ip_address": _check_bytes,
    "classtype": _check_map(ClassTypeKeys, ClassTypeKeys.TYPE, ClassTypeKeys.CLASS),
    "name_rdata": _check_bytes,
    "qr_sig": _check_map(QueryResponseSignatureKeys,
                         uints=tuple(known_keys(QueryResponseSignatureKeys))),
    "qlist": _check_index_list,
    "qrr": _check_map(QuestionKeys, QuestionKeys.NAME_INDEX, QuestionKeys.CLASSTYPE_INDEX),
    "rrlist": _check_index_list,
    "rr": _check_map(RRKeys, RRKeys.NAME_INDEX, RRKeys.CLASSTYPE_INDEX,
                     uints=(RRKeys.TTL, RRKeys.RDATA_INDEX)),
    "malformed_message_data": _check_map(
        MalformedMessageDataKeys,
        uints=(MalformedMessageDataKeys.SERVER_ADDRESS_INDEX,
               MalformedMessageDataKeys.SERVER_PORT,
               MalformedMessageDataKeys.MM_TRANSPORT_FLAGS),
        byte_fields=(MalformedMessageDataKeys.MM_PAYLOAD,)),
}
