# DNS observation record models
"""
Application-level C-DNS records.

THESE MODELS ARE IMMUTABLE - records are frozen dataclasses, all
collections are tuples. Table indices never appear here: every reference
(address, name, signature, question/RR lists) is already resolved.

Optional fields take one of three values:
- NOT_COLLECTED: the producer declared (via StorageHints) that it never
  records this field
- None: the field was collected but is absent on this record
- a value: present (zero and empty values are present, never "absent")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from ipaddress import IPv4Address, IPv6Address
from typing import Any, Dict, Optional, Tuple, TypeVar, Union

from .flags import (
    FlagEnumeration,
    FlagSet,
    QUERY_RESPONSE_TRANSPORT_FLAGS,
    TRANSPORT_VALUE_MASK,
    TRANSPORT_VALUE_SHIFT,
)


class _NotCollected:
    """Marker for fields the producer never collects."""

    _instance: Optional['_NotCollected'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_COLLECTED"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_NotCollected, ())


NOT_COLLECTED = _NotCollected()

T = TypeVar("T")
Field = Union[T, None, _NotCollected]
IPAddress = Union[IPv4Address, IPv6Address]


def is_present(value: Any) -> bool:
    """True unless value is None or NOT_COLLECTED."""
    return value is not None and value is not NOT_COLLECTED


def _extra():
    return field(default_factory=dict, hash=False)


# ========== ENUMERATIONS ==========

class Transport(IntEnum):
    """Transport value stored in bits 1-4 of the transport flags."""
    UDP = 0
    TCP = 1
    TLS = 2
    DTLS = 3
    HTTPS = 4
    NON_STANDARD = 15


class QueryResponseType(IntEnum):
    """Q/R transaction type (dnstap definitions)."""
    STUB = 0
    CLIENT = 1
    RESOLVER = 2
    AUTHORITATIVE = 3
    FORWARDER = 4
    TOOL = 5


class AddressEventType(IntEnum):
    """
    Address event types.

    The enumeration is open: values a reader does not know are passed
    through as plain integers.
    """
    TCP_RESET = 0
    ICMP_TIME_EXCEEDED = 1
    ICMP_DEST_UNREACHABLE = 2
    ICMPV6_TIME_EXCEEDED = 3
    ICMPV6_DEST_UNREACHABLE = 4
    ICMPV6_PACKET_TOO_BIG = 5


def coerce_enum(enum_cls, value: int) -> int:
    """Return the enum member for value, or value itself if unknown."""
    try:
        return enum_cls(value)
    except ValueError:
        return value


# ========== BASIC TYPES ==========

@dataclass(frozen=True)
class Timestamp:
    """
    Seconds since the POSIX epoch plus sub-second ticks.

    Ticks are expressed in the ticks-per-second of the active
    BlockParameters.
    """
    seconds: int
    ticks: int = 0

    def to_ticks(self, ticks_per_second: int) -> int:
        return self.seconds * ticks_per_second + self.ticks

    @classmethod
    def from_ticks(cls, total_ticks: int, ticks_per_second: int) -> 'Timestamp':
        seconds, ticks = divmod(total_ticks, ticks_per_second)
        return cls(seconds=seconds, ticks=ticks)

    @classmethod
    def from_seconds(cls, value: float, ticks_per_second: int) -> 'Timestamp':
        """Convert float seconds, rounding to the nearest tick."""
        return cls.from_ticks(round(value * ticks_per_second), ticks_per_second)

    def to_seconds(self, ticks_per_second: int) -> float:
        return self.seconds + self.ticks / ticks_per_second


@dataclass(frozen=True)
class ClassType:
    """RR TYPE and CLASS pair."""
    rr_type: int
    rr_class: int = 1
    extra: Dict[int, Any] = _extra()


@dataclass(frozen=True)
class TransportFlags:
    """
    Transport description: IP version, transport protocol and, for Q/R
    signatures only, whether the query carried trailing bytes.
    """
    ipv6: bool = False
    transport: int = Transport.UDP
    trailing_data: bool = False
    unknown_bits: int = 0

    def encode(self, enumeration: FlagEnumeration = QUERY_RESPONSE_TRANSPORT_FLAGS) -> int:
        """
        Raises:
            ValueError: If the transport value is out of range, or if
                trailing_data is set and enumeration has no such bit
        """
        if not 0 <= int(self.transport) <= 15:
            raise ValueError(f"Transport value out of range: {self.transport}")
        names = set()
        if self.ipv6:
            names.add("ipv6")
        if self.trailing_data:
            names.add("query_trailing_data")
        value = enumeration.encode(
            FlagSet(flags=frozenset(names), unknown_bits=self.unknown_bits))
        return value | (int(self.transport) << TRANSPORT_VALUE_SHIFT)

    @classmethod
    def decode(cls, value: int,
               enumeration: FlagEnumeration = QUERY_RESPONSE_TRANSPORT_FLAGS) -> 'TransportFlags':
        """Bits outside enumeration are kept in unknown_bits."""
        decoded = enumeration.decode(value)
        transport = (value & TRANSPORT_VALUE_MASK) >> TRANSPORT_VALUE_SHIFT
        return cls(
            ipv6="ipv6" in decoded,
            transport=coerce_enum(Transport, transport),
            trailing_data="query_trailing_data" in decoded,
            unknown_bits=decoded.unknown_bits,
        )


# ========== QUESTIONS & RESOURCE RECORDS ==========

@dataclass(frozen=True)
class Question:
    """A Question: QNAME in wire format plus its CLASS and TYPE."""
    name: bytes
    classtype: ClassType
    extra: Dict[int, Any] = _extra()


@dataclass(frozen=True)
class ResourceRecord:
    """A resource record. NAME and RDATA are wire-format byte strings."""
    name: bytes
    classtype: ClassType
    ttl: Field[int] = None
    rdata: Field[bytes] = None
    extra: Dict[int, Any] = _extra()


@dataclass(frozen=True)
class MessageSections:
    """
    Extended Query or Response data.

    questions holds the second and subsequent Questions; the first is
    described by the signature and QueryResponse.query_name.
    """
    questions: Field[Tuple[Question, ...]] = None
    answers: Field[Tuple[ResourceRecord, ...]] = None
    authority: Field[Tuple[ResourceRecord, ...]] = None
    additional: Field[Tuple[ResourceRecord, ...]] = None
    extra: Dict[int, Any] = _extra()


# ========== QUERY/RESPONSE ==========

@dataclass(frozen=True)
class QuerySignature:
    """Elements of a Q/R item that are often shared by many Q/R items."""
    server_address: Field[IPAddress] = None
    server_port: Field[int] = None
    transport_flags: Field[TransportFlags] = None
    qr_type: Field[int] = None
    qr_sig_flags: Field[FlagSet] = None
    query_opcode: Field[int] = None
    qr_dns_flags: Field[FlagSet] = None
    query_rcode: Field[int] = None
    query_classtype: Field[ClassType] = None
    query_qdcount: Field[int] = None
    query_ancount: Field[int] = None
    query_nscount: Field[int] = None
    query_arcount: Field[int] = None
    query_edns_version: Field[int] = None
    query_udp_size: Field[int] = None
    query_opt_rdata: Field[bytes] = None
    response_rcode: Field[int] = None
    extra: Dict[int, Any] = _extra()

    @property
    def has_query(self) -> bool:
        return is_present(self.qr_sig_flags) and "has_query" in self.qr_sig_flags

    @property
    def has_response(self) -> bool:
        return is_present(self.qr_sig_flags) and "has_response" in self.qr_sig_flags


@dataclass(frozen=True)
class ResponseProcessingData:
    """Information on the server processing that produced the Response."""
    bailiwick: Field[bytes] = None
    processing_flags: Field[FlagSet] = None
    extra: Dict[int, Any] = _extra()


@dataclass(frozen=True)
class QueryResponse:
    """
    A single Query/Response pair, or either half alone.

    timestamp is the time of the Query, or of the Response if there is no
    Query. response_delay is in ticks and may be negative.
    """
    timestamp: Field[Timestamp] = None
    client_address: Field[IPAddress] = None
    client_port: Field[int] = None
    transaction_id: Field[int] = None
    signature: Field[QuerySignature] = None
    client_hoplimit: Field[int] = None
    response_delay: Field[int] = None
    query_name: Field[bytes] = None
    query_size: Field[int] = None
    response_size: Field[int] = None
    response_processing: Field[ResponseProcessingData] = None
    query_sections: Field[MessageSections] = None
    response_sections: Field[MessageSections] = None
    extra: Dict[int, Any] = _extra()


# ========== ADDRESS EVENTS ==========

@dataclass(frozen=True)
class AddressEventCount:
    """Count of one IP-level event type for one client address."""
    ae_type: int
    address: IPAddress
    count: int
    ae_code: Field[int] = None
    transport_flags: Field[TransportFlags] = None
    extra: Dict[int, Any] = _extra()


# ========== MALFORMED MESSAGES ==========

@dataclass(frozen=True)
class MalformedMessageData:
    """Server side details and raw payload of a malformed message."""
    server_address: Field[IPAddress] = None
    server_port: Field[int] = None
    transport_flags: Field[TransportFlags] = None
    payload: Field[bytes] = None
    extra: Dict[int, Any] = _extra()


@dataclass(frozen=True)
class MalformedMessage:
    """A DNS message that failed parsing."""
    timestamp: Field[Timestamp] = None
    client_address: Field[IPAddress] = None
    client_port: Field[int] = None
    message_data: Field[MalformedMessageData] = None
    extra: Dict[int, Any] = _extra()


Record = Union[QueryResponse, AddressEventCount, MalformedMessage]
