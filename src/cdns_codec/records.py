"""
Record encoder/decoder.

Transforms application records (models.records) to and from their
table-indexed wire maps:

    QueryResponse --encode--> {1: client-address-index, 4: qr-signature-index, ...}
                  <--decode--

Encoding interns every referenced value into the block's tables and
omits absent fields. Decoding resolves every index (question and RR
lists take two hops: list table, then entry table) and reports a missing
field as NOT_COLLECTED when the StorageHints say the producer never
collects it, or None when it was merely absent on this record.

Field layouts are declared as tables of FieldSpec so that every map type
keeps its own key space.
"""

from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Address, IPv6Address
from typing import Any, Dict, List, Optional, Tuple

from models.flags import (
    DNS_FLAGS,
    FlagEnumeration,
    FlagSet,
    QUERY_RESPONSE_FLAGS,
    QUERY_RESPONSE_TRANSPORT_FLAGS,
    RESPONSE_PROCESSING_FLAGS,
    TRANSPORT_FLAGS,
)
from models.parameters import BlockParameters
from models.records import (
    NOT_COLLECTED,
    AddressEventCount,
    AddressEventType,
    ClassType,
    MalformedMessage,
    MalformedMessageData,
    MessageSections,
    Question,
    QueryResponse,
    QueryResponseType,
    QuerySignature,
    ResourceRecord,
    ResponseProcessingData,
    Timestamp,
    TransportFlags,
    coerce_enum,
    is_present,
)

from .exceptions import CdnsFormatError, PolicyViolationError
from .keys import (
    AddressEventCountKeys,
    ClassTypeKeys,
    MalformedMessageDataKeys,
    MalformedMessageKeys,
    QueryResponseExtendedKeys,
    QueryResponseKeys,
    QueryResponseSignatureKeys,
    QuestionKeys,
    ResponseProcessingDataKeys,
    RRKeys,
    known_keys,
)
from .tables import BlockTables
from .wire import WireMap, put, with_extra


@dataclass(frozen=True)
class FieldSpec:
    """
    One scalar or table-referencing field of a wire map.

    kind is a value kind name ("uint16", "address", "name_rdata", ...)
    or a FlagEnumeration for bitfields. hint is the StorageHints flag name
    governing the field, or None if the field has no hint.
    """
    attr: str
    key: int
    kind: Any
    hint: Optional[str] = None


_UINT_LIMITS = {
    "uint": None,
    "uint8": 0xFF,
    "uint16": 0xFFFF,
    "uint32": 0xFFFFFFFF,
    "opcode": 15,
    "qr_type": None,
    "ae_type": None,
}

# Only Q/R signatures may carry the trailing-data bit
_TRANSPORT_ENUMERATIONS = {
    "transport": TRANSPORT_FLAGS,
    "qr_transport": QUERY_RESPONSE_TRANSPORT_FLAGS,
}

_SIG = QueryResponseSignatureKeys
_QR = QueryResponseKeys

SIGNATURE_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("server_address", _SIG.SERVER_ADDRESS_INDEX, "server_address", "server_address_index"),
    FieldSpec("server_port", _SIG.SERVER_PORT, "uint16", "server_port"),
    FieldSpec("transport_flags", _SIG.QR_TRANSPORT_FLAGS, "qr_transport", "qr_transport_flags"),
    FieldSpec("qr_type", _SIG.QR_TYPE, "qr_type", "qr_type"),
    FieldSpec("qr_sig_flags", _SIG.QR_SIG_FLAGS, QUERY_RESPONSE_FLAGS, "qr_sig_flags"),
    FieldSpec("query_opcode", _SIG.QUERY_OPCODE, "opcode", "query_opcode"),
    FieldSpec("qr_dns_flags", _SIG.QR_DNS_FLAGS, DNS_FLAGS, "qr_dns_flags"),
    FieldSpec("query_rcode", _SIG.QUERY_RCODE, "uint16", "query_rcode"),
    FieldSpec("query_classtype", _SIG.QUERY_CLASSTYPE_INDEX, "classtype", "query_classtype_index"),
    FieldSpec("query_qdcount", _SIG.QUERY_QDCOUNT, "uint", "query_qdcount"),
    FieldSpec("query_ancount", _SIG.QUERY_ANCOUNT, "uint", "query_ancount"),
    FieldSpec("query_nscount", _SIG.QUERY_NSCOUNT, "uint", "query_nscount"),
    FieldSpec("query_arcount", _SIG.QUERY_ARCOUNT, "uint", "query_arcount"),
    FieldSpec("query_edns_version", _SIG.QUERY_EDNS_VERSION, "uint8", "query_edns_version"),
    FieldSpec("query_udp_size", _SIG.QUERY_UDP_SIZE, "uint16", "query_udp_size"),
    FieldSpec("query_opt_rdata", _SIG.QUERY_OPT_RDATA_INDEX, "name_rdata", "query_opt_rdata_index"),
    FieldSpec("response_rcode", _SIG.RESPONSE_RCODE, "uint16", "response_rcode"),
)

QUERY_RESPONSE_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("client_address", _QR.CLIENT_ADDRESS_INDEX, "client_address", "client_address_index"),
    FieldSpec("client_port", _QR.CLIENT_PORT, "uint16", "client_port"),
    FieldSpec("transaction_id", _QR.TRANSACTION_ID, "uint16", "transaction_id"),
    FieldSpec("client_hoplimit", _QR.CLIENT_HOPLIMIT, "uint8", "client_hoplimit"),
    FieldSpec("response_delay", _QR.RESPONSE_DELAY, "sint", "response_delay"),
    FieldSpec("query_name", _QR.QUERY_NAME_INDEX, "name_rdata", "query_name_index"),
    FieldSpec("query_size", _QR.QUERY_SIZE, "uint", "query_size"),
    FieldSpec("response_size", _QR.RESPONSE_SIZE, "uint", "response_size"),
)

RESPONSE_PROCESSING_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("bailiwick", ResponseProcessingDataKeys.BAILIWICK_INDEX, "name_rdata"),
    FieldSpec("processing_flags", ResponseProcessingDataKeys.PROCESSING_FLAGS,
              RESPONSE_PROCESSING_FLAGS),
)

RR_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("ttl", RRKeys.TTL, "uint32", "ttl"),
    FieldSpec("rdata", RRKeys.RDATA_INDEX, "name_rdata", "rdata_index"),
)

MALFORMED_DATA_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("server_address", MalformedMessageDataKeys.SERVER_ADDRESS_INDEX, "server_address"),
    FieldSpec("server_port", MalformedMessageDataKeys.SERVER_PORT, "uint16"),
    FieldSpec("transport_flags", MalformedMessageDataKeys.MM_TRANSPORT_FLAGS, "transport"),
    FieldSpec("payload", MalformedMessageDataKeys.MM_PAYLOAD, "bytes"),
)

MALFORMED_MESSAGE_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("client_address", MalformedMessageKeys.CLIENT_ADDRESS_INDEX, "client_address"),
    FieldSpec("client_port", MalformedMessageKeys.CLIENT_PORT, "uint16"),
)

ADDRESS_EVENT_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("ae_code", AddressEventCountKeys.AE_CODE, "uint"),
    FieldSpec("transport_flags", AddressEventCountKeys.AE_TRANSPORT_FLAGS, "transport"),
)

# (attribute, extended-map key, hint suffix); the Response question list has no hint
SECTION_FIELDS: Tuple[Tuple[str, int, Optional[str]], ...] = (
    ("questions", QueryResponseExtendedKeys.QUESTION_INDEX, "question_sections"),
    ("answers", QueryResponseExtendedKeys.ANSWER_INDEX, "answer_sections"),
    ("authority", QueryResponseExtendedKeys.AUTHORITY_INDEX, "authority_sections"),
    ("additional", QueryResponseExtendedKeys.ADDITIONAL_INDEX, "additional_sections"),
)


def _section_hint(prefix: str, attr: str, suffix: str) -> Optional[str]:
    if prefix == "response" and attr == "questions":
        return None
    return f"{prefix}_{suffix}"


def _hint_collected(hints: FlagSet, hint: Optional[str]) -> bool:
    return hint is None or hint in hints


def _address_bytes(address: Any, prefix: Optional[int]) -> bytes:
    """Network-order address bytes, truncated to the prefix when one is set."""
    packed = address.packed
    if prefix is None:
        return packed
    size = (prefix + 7) // 8
    truncated = bytearray(packed[:size])
    if prefix % 8:
        truncated[-1] &= (0xFF << (8 - prefix % 8)) & 0xFF
    return bytes(truncated)


def decode_address(raw: bytes, ipv6: Optional[bool], what: str):
    """
    Rebuild an address from (possibly prefix-truncated) bytes.

    The family comes from the transport flags when known, otherwise
    from the length (more than 4 bytes means IPv6).
    """
    if not raw:
        raise CdnsFormatError(f"{what}: empty address")
    if ipv6 is None:
        ipv6 = len(raw) > 4
    size = 16 if ipv6 else 4
    if len(raw) > size:
        raise CdnsFormatError(f"{what}: {len(raw)} address bytes for IPv{6 if ipv6 else 4}")
    padded = raw + bytes(size - len(raw))
    return IPv6Address(padded) if ipv6 else IPv4Address(padded)


def _transport_ipv6(flags: Any) -> Optional[bool]:
    if isinstance(flags, TransportFlags):
        return flags.ipv6
    return None


# ========== ENCODER ==========

class RecordEncoder:
    """
    Encodes application records into wire maps for ONE block.

    check_*() validates a record against the active StorageParameters
    without touching the tables; encode_*() interns and builds the map.
    The writer always checks before encoding, so a rejected record
    leaves no entries behind.
    """

    def __init__(self, tables: BlockTables, parameters: BlockParameters):
        self.tables = tables
        self.parameters = parameters
        self.storage = parameters.storage_parameters
        self.hints = self.storage.storage_hints
        self._opcodes = frozenset(self.storage.opcodes)
        self._rr_types = frozenset(self.storage.rr_types)

    # ---------- policy checks ----------

    def check_query_response(self, qr: QueryResponse) -> None:
        """
        Raises:
            PolicyViolationError: If qr cannot be stored under these parameters
        """
        qr_hints = self.hints.query_response_hints
        self._check_timestamp(qr.timestamp, qr_hints, "time_offset", "QueryResponse")

        signature = qr.signature
        self._check_hint(signature, qr_hints, "qr_signature_index", "QueryResponse.signature")
        ipv6 = None
        if is_present(signature):
            if not isinstance(signature, QuerySignature):
                raise PolicyViolationError("QueryResponse.signature must be a QuerySignature")
            self._check_fields(signature, SIGNATURE_FIELDS,
                               self.hints.query_response_signature_hints, "QuerySignature")
            ipv6 = _transport_ipv6(signature.transport_flags)
            self._check_address_family(signature.server_address, ipv6, "server",
                                       "QuerySignature.server_address")
        self._check_fields(qr, QUERY_RESPONSE_FIELDS, qr_hints, "QueryResponse")
        self._check_address_family(qr.client_address, ipv6, "client", "QueryResponse.client_address")

        processing = qr.response_processing
        self._check_hint(processing, qr_hints, "response_processing_data",
                         "QueryResponse.response_processing")
        if is_present(processing):
            if not isinstance(processing, ResponseProcessingData):
                raise PolicyViolationError(
                    "QueryResponse.response_processing must be ResponseProcessingData")
            self._check_fields(processing, RESPONSE_PROCESSING_FIELDS, qr_hints,
                               "ResponseProcessingData")

        self._check_sections(qr.query_sections, "query")
        self._check_sections(qr.response_sections, "response")

    def check_address_event_count(self, aec: AddressEventCount) -> None:
        if "address_event_counts" not in self.hints.other_data_hints:
            raise PolicyViolationError(
                "Address event counts are not collected under these parameters",
                field="address_event_counts")
        self._check_uint(aec.ae_type, "uint", "AddressEventCount.ae_type")
        self._check_uint(aec.count, "uint", "AddressEventCount.count")
        if not isinstance(aec.address, (IPv4Address, IPv6Address)):
            raise PolicyViolationError("AddressEventCount.address must be an IP address")
        self._check_fields(aec, ADDRESS_EVENT_FIELDS, None, "AddressEventCount")
        self._check_address_family(aec.address, _transport_ipv6(aec.transport_flags), "client",
                                   "AddressEventCount.address")

    def check_malformed_message(self, mm: MalformedMessage) -> None:
        if "malformed_messages" not in self.hints.other_data_hints:
            raise PolicyViolationError(
                "Malformed messages are not collected under these parameters",
                field="malformed_messages")
        self._check_timestamp(mm.timestamp, None, None, "MalformedMessage")
        self._check_fields(mm, MALFORMED_MESSAGE_FIELDS, None, "MalformedMessage")
        ipv6 = None
        data = mm.message_data
        if is_present(data):
            if not isinstance(data, MalformedMessageData):
                raise PolicyViolationError(
                    "MalformedMessage.message_data must be MalformedMessageData")
            self._check_fields(data, MALFORMED_DATA_FIELDS, None, "MalformedMessageData")
            ipv6 = _transport_ipv6(data.transport_flags)
            self._check_address_family(data.server_address, ipv6, "server",
                                       "MalformedMessageData.server_address")
        self._check_address_family(mm.client_address, ipv6, "client", "MalformedMessage.client_address")

    def _check_hint(self, value: Any, hints: Optional[FlagSet], hint: Optional[str],
                    what: str) -> None:
        if hints is None or hint is None:
            if value is NOT_COLLECTED:
                raise PolicyViolationError(f"{what} has no storage hint and cannot be NOT_COLLECTED")
            return
        if hint in hints:
            if value is NOT_COLLECTED:
                raise PolicyViolationError(
                    f"{what} is NOT_COLLECTED but the storage hints declare it collected",
                    field=hint)
        elif value is not NOT_COLLECTED:
            state = "present" if is_present(value) else "None"
            raise PolicyViolationError(
                f"{what} is {state} but the storage hints declare it never collected",
                field=hint)

    def _check_fields(self, record: Any, fields: Tuple[FieldSpec, ...],
                      hints: Optional[FlagSet], what: str) -> None:
        for spec in fields:
            value = getattr(record, spec.attr)
            name = f"{what}.{spec.attr}"
            self._check_hint(value, hints, spec.hint, name)
            if is_present(value):
                self._check_value(spec.kind, value, name)

    def _check_value(self, kind: Any, value: Any, what: str) -> None:
        if isinstance(kind, FlagEnumeration):
            if not isinstance(value, FlagSet):
                raise PolicyViolationError(f"{what} must be a FlagSet")
            try:
                kind.encode(value)
            except ValueError as e:
                raise PolicyViolationError(f"{what}: {e}") from e
        elif kind in _UINT_LIMITS:
            self._check_uint(value, kind, what)
            if kind == "opcode" and value not in self._opcodes:
                raise PolicyViolationError(
                    f"{what}: OPCODE {value} is not in the recorded opcodes "
                    f"{sorted(self._opcodes)}", field="opcode")
        elif kind == "sint":
            if isinstance(value, bool) or not isinstance(value, int):
                raise PolicyViolationError(f"{what} must be an integer, got {value!r}")
        elif kind in ("bytes", "name_rdata"):
            if not isinstance(value, (bytes, bytearray)):
                raise PolicyViolationError(f"{what} must be bytes, got {type(value).__name__}")
        elif kind in ("client_address", "server_address"):
            if not isinstance(value, (IPv4Address, IPv6Address)):
                raise PolicyViolationError(f"{what} must be an IP address, got {value!r}")
        elif kind in _TRANSPORT_ENUMERATIONS:
            if not isinstance(value, TransportFlags):
                raise PolicyViolationError(f"{what} must be TransportFlags")
            try:
                value.encode(_TRANSPORT_ENUMERATIONS[kind])
            except ValueError as e:
                raise PolicyViolationError(f"{what}: {e}") from e
        elif kind == "classtype":
            self._check_classtype(value, what)
        else:
            raise ValueError(f"Unknown field kind {kind!r}")

    def _check_uint(self, value: Any, kind: str, what: str) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise PolicyViolationError(f"{what} must be an unsigned integer, got {value!r}")
        limit = _UINT_LIMITS[kind]
        if limit is not None and value > limit:
            raise PolicyViolationError(f"{what} value {value} exceeds {limit}")

    def _check_classtype(self, value: Any, what: str) -> None:
        if not isinstance(value, ClassType):
            raise PolicyViolationError(f"{what} must be a ClassType")
        self._check_uint(value.rr_type, "uint16", f"{what}.rr_type")
        self._check_uint(value.rr_class, "uint16", f"{what}.rr_class")
        if value.rr_type not in self._rr_types:
            raise PolicyViolationError(
                f"{what}: RR TYPE {value.rr_type} is not in the recorded RR types",
                field="rr_type")

    def _check_timestamp(self, value: Any, hints: Optional[FlagSet], hint: Optional[str],
                         what: str) -> None:
        self._check_hint(value, hints, hint, f"{what}.timestamp")
        if not is_present(value):
            return
        if not isinstance(value, Timestamp):
            raise PolicyViolationError(f"{what}.timestamp must be a Timestamp")
        if isinstance(value.seconds, bool) or not isinstance(value.seconds, int) \
                or value.seconds < 0:
            raise PolicyViolationError(
                f"{what}.timestamp seconds must be a non-negative integer, got {value.seconds!r}")
        if isinstance(value.ticks, bool) or not isinstance(value.ticks, int) \
                or not 0 <= value.ticks < self.storage.ticks_per_second:
            raise PolicyViolationError(
                f"{what}.timestamp ticks {value.ticks} out of range for "
                f"{self.storage.ticks_per_second} ticks per second")

    def _check_address_family(self, address: Any, ipv6: Optional[bool], role: str,
                              what: str) -> None:
        if not is_present(address):
            return
        if ipv6 is None:
            # Without transport flags the family is read back from the stored length
            prefix = self.storage.client_address_prefix_ipv6 if role == "client" \
                else self.storage.server_address_prefix_ipv6
            if isinstance(address, IPv6Address) and prefix is not None and prefix <= 32:
                raise PolicyViolationError(
                    f"{what}: an IPv6 /{prefix} prefix needs transport flags to be decoded")
            return
        if isinstance(address, IPv6Address) != ipv6:
            raise PolicyViolationError(f"{what}: address family does not match transport flags")

    def _check_sections(self, sections: Any, prefix: str) -> None:
        what = f"QueryResponse.{prefix}_sections"
        hints = self.hints.query_response_hints
        section_hints = [_section_hint(prefix, attr, suffix) for attr, _, suffix in SECTION_FIELDS]
        declared = [hint for hint in section_hints if hint is not None]
        if sections is NOT_COLLECTED:
            if any(hint in hints for hint in declared):
                raise PolicyViolationError(
                    f"{what} is NOT_COLLECTED but the storage hints declare it collected")
            return
        if sections is None:
            if declared and not any(hint in hints for hint in declared):
                raise PolicyViolationError(
                    f"{what} is None but the storage hints declare it never collected")
            return
        if not isinstance(sections, MessageSections):
            raise PolicyViolationError(f"{what} must be MessageSections")
        for (attr, _, _), hint in zip(SECTION_FIELDS, section_hints):
            value = getattr(sections, attr)
            self._check_hint(value, hints, hint, f"{what}.{attr}")
            if not is_present(value):
                continue
            # Wire lists are never empty, so an empty section has no encoding
            if not isinstance(value, (tuple, list)) or not value:
                raise PolicyViolationError(
                    f"{what}.{attr} must be a non-empty sequence or None")
            for position, item in enumerate(value):
                item_what = f"{what}.{attr}[{position}]"
                if attr == "questions":
                    if not isinstance(item, Question):
                        raise PolicyViolationError(f"{item_what} must be a Question")
                    self._check_value("name_rdata", item.name, f"{item_what}.name")
                    self._check_classtype(item.classtype, f"{item_what}.classtype")
                else:
                    self._check_rr(item, item_what)

    def _check_rr(self, rr: Any, what: str) -> None:
        if not isinstance(rr, ResourceRecord):
            raise PolicyViolationError(f"{what} must be a ResourceRecord")
        self._check_value("name_rdata", rr.name, f"{what}.name")
        self._check_classtype(rr.classtype, f"{what}.classtype")
        self._check_fields(rr, RR_FIELDS, self.hints.rr_hints, what)

    # ---------- encoding ----------

    def encode_query_response(self, qr: QueryResponse) -> Dict[Any, Any]:
        """
        Encode a checked QueryResponse. The time offset is NOT included:
        it depends on the block's earliest time, known only at flush.
        """
        wire: Dict[Any, Any] = {}
        if is_present(qr.signature):
            wire[_QR.QR_SIGNATURE_INDEX] = self.tables.qr_sig.intern(
                self._encode_signature(qr.signature))
        self._encode_fields(wire, qr, QUERY_RESPONSE_FIELDS)
        if is_present(qr.response_processing):
            processing: Dict[Any, Any] = {}
            self._encode_fields(processing, qr.response_processing, RESPONSE_PROCESSING_FIELDS)
            wire[_QR.RESPONSE_PROCESSING_DATA] = with_extra(
                processing, qr.response_processing.extra)
        if is_present(qr.query_sections):
            wire[_QR.QUERY_EXTENDED] = self._encode_sections(qr.query_sections)
        if is_present(qr.response_sections):
            wire[_QR.RESPONSE_EXTENDED] = self._encode_sections(qr.response_sections)
        return dict(sorted(with_extra(wire, qr.extra).items(), key=_key_order))

    def encode_address_event_count(self, aec: AddressEventCount) -> Dict[Any, Any]:
        wire: Dict[Any, Any] = {
            AddressEventCountKeys.AE_TYPE: int(aec.ae_type),
        }
        put(wire, AddressEventCountKeys.AE_CODE,
            aec.ae_code if is_present(aec.ae_code) else None)
        wire[AddressEventCountKeys.AE_ADDRESS_INDEX] = self._intern_address(aec.address, "client")
        if is_present(aec.transport_flags):
            wire[AddressEventCountKeys.AE_TRANSPORT_FLAGS] = \
                aec.transport_flags.encode(TRANSPORT_FLAGS)
        wire[AddressEventCountKeys.AE_COUNT] = aec.count
        return with_extra(wire, aec.extra)

    def encode_malformed_message(self, mm: MalformedMessage) -> Dict[Any, Any]:
        """Encode a checked MalformedMessage (time offset added at flush)."""
        wire: Dict[Any, Any] = {}
        self._encode_fields(wire, mm, MALFORMED_MESSAGE_FIELDS)
        if is_present(mm.message_data):
            data: Dict[Any, Any] = {}
            self._encode_fields(data, mm.message_data, MALFORMED_DATA_FIELDS)
            wire[MalformedMessageKeys.MESSAGE_DATA_INDEX] = \
                self.tables.malformed_message_data.intern(with_extra(data, mm.message_data.extra))
        return dict(sorted(with_extra(wire, mm.extra).items(), key=_key_order))

    def _encode_signature(self, signature: QuerySignature) -> Dict[Any, Any]:
        wire: Dict[Any, Any] = {}
        self._encode_fields(wire, signature, SIGNATURE_FIELDS)
        return with_extra(wire, signature.extra)

    def _encode_fields(self, wire: Dict[Any, Any], record: Any,
                       fields: Tuple[FieldSpec, ...]) -> None:
        for spec in fields:
            value = getattr(record, spec.attr)
            if is_present(value):
                wire[spec.key] = self._encode_value(spec.kind, value)

    def _encode_value(self, kind: Any, value: Any) -> Any:
        if isinstance(kind, FlagEnumeration):
            return kind.encode(value)
        if kind in _UINT_LIMITS or kind == "sint":
            return int(value)
        if kind == "bytes":
            return bytes(value)
        if kind == "name_rdata":
            return self.tables.name_rdata.intern(bytes(value))
        if kind == "client_address":
            return self._intern_address(value, "client")
        if kind == "server_address":
            return self._intern_address(value, "server")
        if kind in _TRANSPORT_ENUMERATIONS:
            return value.encode(_TRANSPORT_ENUMERATIONS[kind])
        if kind == "classtype":
            return self._intern_classtype(value)
        raise ValueError(f"Unknown field kind {kind!r}")

    def _intern_address(self, address: Any, role: str) -> int:
        family = "ipv6" if isinstance(address, IPv6Address) else "ipv4"
        prefix = getattr(self.storage, f"{role}_address_prefix_{family}")
        return self.tables.ip_address.intern(_address_bytes(address, prefix))

    def _intern_classtype(self, classtype: ClassType) -> int:
        wire = {ClassTypeKeys.TYPE: classtype.rr_type, ClassTypeKeys.CLASS: classtype.rr_class}
        return self.tables.classtype.intern(with_extra(wire, classtype.extra))

    def _encode_sections(self, sections: MessageSections) -> Dict[Any, Any]:
        wire: Dict[Any, Any] = {}
        for attr, key, _ in SECTION_FIELDS:
            items = getattr(sections, attr)
            if not is_present(items):
                continue
            if attr == "questions":
                indices = [self.tables.qrr.intern(self._encode_question(q)) for q in items]
                wire[key] = self.tables.qlist.intern(indices)
            else:
                indices = [self.tables.rr.intern(self._encode_rr(rr)) for rr in items]
                wire[key] = self.tables.rrlist.intern(indices)
        return with_extra(wire, sections.extra)

    def _encode_question(self, question: Question) -> Dict[Any, Any]:
        wire = {
            QuestionKeys.NAME_INDEX: self.tables.name_rdata.intern(bytes(question.name)),
            QuestionKeys.CLASSTYPE_INDEX: self._intern_classtype(question.classtype),
        }
        return with_extra(wire, question.extra)

    def _encode_rr(self, rr: ResourceRecord) -> Dict[Any, Any]:
        wire = {
            RRKeys.NAME_INDEX: self.tables.name_rdata.intern(bytes(rr.name)),
            RRKeys.CLASSTYPE_INDEX: self._intern_classtype(rr.classtype),
        }
        self._encode_fields(wire, rr, RR_FIELDS)
        return with_extra(wire, rr.extra)


def _key_order(item: Tuple[Any, Any]) -> Tuple[int, Any]:
    """Known (non-negative) keys ascending, then extension keys."""
    key = item[0]
    if isinstance(key, int) and not isinstance(key, bool) and key >= 0:
        return (0, key)
    return (1, repr(key))


# ========== DECODER ==========

class RecordDecoder:
    """
    Decodes the wire records of ONE block against that block's tables.

    Args:
        tables: The block's (frozen, validated) tables
        parameters: The BlockParameters the block selects
        earliest_time: The block's earliest-time anchor, if any
    """

    def __init__(self, tables: BlockTables, parameters: BlockParameters,
                 earliest_time: Optional[Timestamp]):
        self.tables = tables
        self.parameters = parameters
        self.storage = parameters.storage_parameters
        self.hints = self.storage.storage_hints
        self.earliest_time = earliest_time

    def decode_query_response(self, value: Any) -> QueryResponse:
        wire = WireMap(value, "QueryResponse", known_keys(QueryResponseKeys))
        qr_hints = self.hints.query_response_hints
        fields: Dict[str, Any] = {}
        fields["timestamp"] = self._decode_time(wire, _QR.TIME_OFFSET, qr_hints, "time_offset")

        signature = self._missing(qr_hints, "qr_signature_index")
        ipv6 = None
        signature_index = wire.uint(_QR.QR_SIGNATURE_INDEX)
        if signature_index is not None:
            signature = self._decode_signature(self.tables.qr_sig.resolve(signature_index))
            ipv6 = _transport_ipv6(signature.transport_flags)
        fields["signature"] = signature

        fields.update(self._decode_fields(wire, QUERY_RESPONSE_FIELDS, qr_hints, ipv6))

        processing = wire.map(_QR.RESPONSE_PROCESSING_DATA, "ResponseProcessingData",
                              known_keys(ResponseProcessingDataKeys))
        if processing is None:
            fields["response_processing"] = self._missing(qr_hints, "response_processing_data")
        else:
            fields["response_processing"] = ResponseProcessingData(
                extra=processing.extra(),
                **self._decode_fields(processing, RESPONSE_PROCESSING_FIELDS, qr_hints, None))

        fields["query_sections"] = self._decode_sections(wire, _QR.QUERY_EXTENDED, "query")
        fields["response_sections"] = self._decode_sections(wire, _QR.RESPONSE_EXTENDED, "response")
        return QueryResponse(extra=wire.extra(), **fields)

    def decode_address_event_count(self, value: Any) -> AddressEventCount:
        wire = WireMap(value, "AddressEventCount", known_keys(AddressEventCountKeys))
        ae_type = wire.uint(AddressEventCountKeys.AE_TYPE, required=True)
        count = wire.uint(AddressEventCountKeys.AE_COUNT, required=True)
        fields = self._decode_fields(wire, ADDRESS_EVENT_FIELDS, None, None)
        address_raw = self.tables.ip_address.resolve(
            wire.uint(AddressEventCountKeys.AE_ADDRESS_INDEX, required=True))
        address = decode_address(address_raw, _transport_ipv6(fields["transport_flags"]),
                                 "AddressEventCount")
        return AddressEventCount(
            ae_type=coerce_enum(AddressEventType, ae_type),
            address=address,
            count=count,
            extra=wire.extra(),
            **fields,
        )

    def decode_malformed_message(self, value: Any) -> MalformedMessage:
        wire = WireMap(value, "MalformedMessage", known_keys(MalformedMessageKeys))
        timestamp = self._decode_time(wire, MalformedMessageKeys.TIME_OFFSET, None, None)
        message_data = None
        ipv6 = None
        data_index = wire.uint(MalformedMessageKeys.MESSAGE_DATA_INDEX)
        if data_index is not None:
            data_wire = WireMap(self.tables.malformed_message_data.resolve(data_index),
                                "MalformedMessageData", known_keys(MalformedMessageDataKeys))
            transport = data_wire.uint(MalformedMessageDataKeys.MM_TRANSPORT_FLAGS)
            ipv6 = _transport_ipv6(TransportFlags.decode(transport, TRANSPORT_FLAGS)) \
                if transport is not None else None
            message_data = MalformedMessageData(
                extra=data_wire.extra(),
                **self._decode_fields(data_wire, MALFORMED_DATA_FIELDS, None, ipv6))
        return MalformedMessage(
            timestamp=timestamp,
            message_data=message_data,
            extra=wire.extra(),
            **self._decode_fields(wire, MALFORMED_MESSAGE_FIELDS, None, ipv6),
        )

    # ---------- helpers ----------

    @staticmethod
    def _missing(hints: Optional[FlagSet], hint: Optional[str]) -> Any:
        """Value of a field absent on the wire: NOT_COLLECTED if hinted out."""
        if hints is None or _hint_collected(hints, hint):
            return None
        return NOT_COLLECTED

    def _decode_time(self, wire: WireMap, key: int, hints: Optional[FlagSet],
                     hint: Optional[str]) -> Any:
        offset = wire.uint(key)
        if offset is None:
            return self._missing(hints, hint)
        if self.earliest_time is None:
            raise CdnsFormatError(f"{wire.what}: time offset present but block has no earliest time")
        tps = self.storage.ticks_per_second
        return Timestamp.from_ticks(self.earliest_time.to_ticks(tps) + offset, tps)

    def _decode_signature(self, value: Any) -> QuerySignature:
        wire = WireMap(value, "QuerySignature", known_keys(QueryResponseSignatureKeys))
        hints = self.hints.query_response_signature_hints
        transport = wire.uint(_SIG.QR_TRANSPORT_FLAGS)
        ipv6 = _transport_ipv6(TransportFlags.decode(transport)) if transport is not None else None
        return QuerySignature(extra=wire.extra(),
                              **self._decode_fields(wire, SIGNATURE_FIELDS, hints, ipv6))

    def _decode_fields(self, wire: WireMap, fields: Tuple[FieldSpec, ...],
                       hints: Optional[FlagSet], ipv6: Optional[bool]) -> Dict[str, Any]:
        decoded: Dict[str, Any] = {}
        for spec in fields:
            if spec.key not in wire:
                decoded[spec.attr] = self._missing(hints, spec.hint)
            else:
                decoded[spec.attr] = self._decode_value(wire, spec, ipv6)
        return decoded

    def _decode_value(self, wire: WireMap, spec: FieldSpec, ipv6: Optional[bool]) -> Any:
        kind = spec.kind
        what = f"{wire.what}.{spec.attr}"
        if isinstance(kind, FlagEnumeration):
            return kind.decode(wire.uint(spec.key))
        if kind in _UINT_LIMITS:
            value = wire.uint(spec.key, maximum=_UINT_LIMITS[kind])
            if kind == "qr_type":
                return coerce_enum(QueryResponseType, value)
            return value
        if kind == "sint":
            return wire.sint(spec.key)
        if kind == "bytes":
            return wire.bytes(spec.key)
        index = wire.uint(spec.key)
        if kind == "name_rdata":
            return self.tables.name_rdata.resolve(index)
        if kind in ("client_address", "server_address"):
            return decode_address(self.tables.ip_address.resolve(index), ipv6, what)
        if kind in _TRANSPORT_ENUMERATIONS:
            return TransportFlags.decode(index, _TRANSPORT_ENUMERATIONS[kind])
        if kind == "classtype":
            return self._decode_classtype(self.tables.classtype.resolve(index))
        raise ValueError(f"Unknown field kind {kind!r}")

    def _decode_classtype(self, value: Any) -> ClassType:
        wire = WireMap(value, "ClassType", known_keys(ClassTypeKeys))
        return ClassType(
            rr_type=wire.uint(ClassTypeKeys.TYPE, required=True, maximum=0xFFFF),
            rr_class=wire.uint(ClassTypeKeys.CLASS, required=True, maximum=0xFFFF),
            extra=wire.extra(),
        )

    def _decode_sections(self, parent: WireMap, key: int, prefix: str) -> Any:
        hints = self.hints.query_response_hints
        section_hints = [_section_hint(prefix, attr, suffix) for attr, _, suffix in SECTION_FIELDS]
        wire = parent.map(key, f"{prefix}-extended", known_keys(QueryResponseExtendedKeys))
        if wire is None:
            declared = [hint for hint in section_hints if hint is not None]
            if declared and not any(hint in hints for hint in declared):
                return NOT_COLLECTED
            return None

        fields: Dict[str, Any] = {}
        for (attr, field_key, _), hint in zip(SECTION_FIELDS, section_hints):
            index = wire.uint(field_key)
            if index is None:
                fields[attr] = self._missing(hints, hint)
            elif attr == "questions":
                fields[attr] = tuple(self._decode_question(self.tables.qrr.resolve(i))
                                     for i in self.tables.qlist.resolve(index))
            else:
                fields[attr] = tuple(self._decode_rr(self.tables.rr.resolve(i))
                                     for i in self.tables.rrlist.resolve(index))
        return MessageSections(extra=wire.extra(), **fields)

    def _decode_question(self, value: Any) -> Question:
        wire = WireMap(value, "Question", known_keys(QuestionKeys))
        return Question(
            name=self.tables.name_rdata.resolve(wire.uint(QuestionKeys.NAME_INDEX, required=True)),
            classtype=self._decode_classtype(self.tables.classtype.resolve(
                wire.uint(QuestionKeys.CLASSTYPE_INDEX, required=True))),
            extra=wire.extra(),
        )

    def _decode_rr(self, value: Any) -> ResourceRecord:
        wire = WireMap(value, "RR", known_keys(RRKeys))
        return ResourceRecord(
            name=self.tables.name_rdata.resolve(wire.uint(RRKeys.NAME_INDEX, required=True)),
            classtype=self._decode_classtype(self.tables.classtype.resolve(
                wire.uint(RRKeys.CLASSTYPE_INDEX, required=True))),
            extra=wire.extra(),
            **self._decode_fields(wire, RR_FIELDS, self.hints.rr_hints, None),
        )


def decode_records(decoder: RecordDecoder, items: Optional[List[Any]],
                   method: str) -> Tuple[Any, ...]:
    """Decode one record collection of a block with the named decoder method."""
    if not items:
        return ()
    decode = getattr(decoder, method)
    return tuple(decode(item) for item in items)
