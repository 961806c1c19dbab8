# Bitfield flag models
"""
Bitfield flag codec for C-DNS.

C-DNS packs sets of named boolean flags into a single unsigned integer.
Each enumeration fixes the bit position of every flag name
(bit 0 = least significant bit).

Two rules matter for interoperability:
1. Unknown set bits are PRESERVED on decode (future minor versions may add
   flags) and written back unchanged on encode.
2. Composite enumerations (e.g. Q/R transport flags extending transport
   flags) are ONE flat enumeration, never nested codecs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Iterator, Union


@dataclass(frozen=True)
class FlagSet:
    """
    Immutable set of named flags plus any opaque unknown bits.

    Behaves like a frozenset of flag names for membership and iteration.
    """
    flags: FrozenSet[str] = field(default_factory=frozenset)
    """Names of the set flags known to the enumeration."""

    unknown_bits: int = 0
    """Set bits the enumeration does not define (kept for re-encoding)."""

    def __contains__(self, name: str) -> bool:
        return name in self.flags

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.flags))

    def __len__(self) -> int:
        return len(self.flags)

    @classmethod
    def of(cls, *names: str) -> 'FlagSet':
        return cls(flags=frozenset(names))


FlagsLike = Union[FlagSet, Iterable[str]]


class FlagEnumeration:
    """
    Flat mapping of flag names to bit positions.

    Example:
        DNS_FLAGS.encode({'query_rd', 'response_ra'})  -> 0x0810
        DNS_FLAGS.decode(0x0810).flags                 -> {'query_rd', 'response_ra'}
    """

    def __init__(self, name: str, bits: Dict[str, int], reserved_mask: int = 0):
        """
        Args:
            name: Enumeration name (used in error messages)
            bits: Flag name -> bit position
            reserved_mask: Bits owned by a multi-bit value stored alongside
                the flags (never reported as unknown)
        """
        positions = list(bits.values())
        if len(set(positions)) != len(positions):
            raise ValueError(f"{name}: duplicate bit positions")
        for flag, bit in bits.items():
            if bit < 0:
                raise ValueError(f"{name}: negative bit position for {flag!r}")
            if reserved_mask & (1 << bit):
                raise ValueError(f"{name}: flag {flag!r} overlaps reserved bits")

        self.name = name
        self.bits = dict(bits)
        self.reserved_mask = reserved_mask
        self.mask = 0
        for bit in positions:
            self.mask |= 1 << bit

    def __repr__(self) -> str:
        return f"FlagEnumeration({self.name!r}, {len(self.bits)} flags)"

    def __contains__(self, name: str) -> bool:
        return name in self.bits

    def extend(self, name: str, bits: Dict[str, int]) -> 'FlagEnumeration':
        """
        Build a composite enumeration as a flat union.

        Raises:
            ValueError: If a new flag reuses a name or bit of this enumeration
        """
        for flag, bit in bits.items():
            if flag in self.bits:
                raise ValueError(f"{name}: flag {flag!r} already defined in {self.name}")
            if (self.mask | self.reserved_mask) & (1 << bit):
                raise ValueError(f"{name}: bit {bit} already used by {self.name}")
        merged = dict(self.bits)
        merged.update(bits)
        return FlagEnumeration(name, merged, self.reserved_mask)

    def all(self) -> FlagSet:
        """Every flag of the enumeration set."""
        return FlagSet(flags=frozenset(self.bits))

    def encode(self, flags: FlagsLike) -> int:
        """
        Encode a set of flag names into an unsigned integer.

        Raises:
            ValueError: For names not defined by this enumeration
        """
        unknown_bits = 0
        if isinstance(flags, FlagSet):
            unknown_bits = flags.unknown_bits
            names: Iterable[str] = flags.flags
        else:
            names = flags

        value = 0
        for flag in names:
            bit = self.bits.get(flag)
            if bit is None:
                raise ValueError(f"Unknown flag {flag!r} for {self.name}")
            value |= 1 << bit

        if unknown_bits < 0:
            raise ValueError(f"{self.name}: negative unknown bits")
        if unknown_bits & (self.mask | self.reserved_mask):
            raise ValueError(f"{self.name}: unknown bits overlap defined flags")
        return value | unknown_bits

    def decode(self, value: int) -> FlagSet:
        """
        Decode an unsigned integer into a FlagSet.

        Bits outside the enumeration are kept in FlagSet.unknown_bits.
        Reserved bits are ignored here (their owner decodes them).
        """
        if value < 0:
            raise ValueError(f"{self.name}: bitfield value must be unsigned, got {value}")
        names = frozenset(flag for flag, bit in self.bits.items() if value & (1 << bit))
        unknown = value & ~(self.mask | self.reserved_mask)
        return FlagSet(flags=names, unknown_bits=unknown)


def _enumerate(*names: str, start: int = 0) -> Dict[str, int]:
    return {name: start + position for position, name in enumerate(names)}


# ========== STORAGE PARAMETERS ==========

STORAGE_FLAGS = FlagEnumeration("storage-flags", _enumerate(
    "anonymized_data",
    "sampled_data",
    "normalized_names",
))

# ========== STORAGE HINTS ==========
# A set bit means the field IS collected; an unset bit means never emitted.

QUERY_RESPONSE_HINTS = FlagEnumeration("query-response-hints", _enumerate(
    "time_offset",
    "client_address_index",
    "client_port",
    "transaction_id",
    "qr_signature_index",
    "client_hoplimit",
    "response_delay",
    "query_name_index",
    "query_size",
    "response_size",
    "response_processing_data",
    "query_question_sections",
    "query_answer_sections",
    "query_authority_sections",
    "query_additional_sections",
    "response_answer_sections",
    "response_authority_sections",
    "response_additional_sections",
))

QUERY_RESPONSE_SIGNATURE_HINTS = FlagEnumeration("query-response-signature-hints", _enumerate(
    "server_address_index",
    "server_port",
    "qr_transport_flags",
    "qr_type",
    "qr_sig_flags",
    "query_opcode",
    "qr_dns_flags",
    "query_rcode",
    "query_classtype_index",
    "query_qdcount",
    "query_ancount",
    "query_nscount",
    "query_arcount",
    "query_edns_version",
    "query_udp_size",
    "query_opt_rdata_index",
    "response_rcode",
))

RR_HINTS = FlagEnumeration("rr-hints", _enumerate("ttl", "rdata_index"))

OTHER_DATA_HINTS = FlagEnumeration("other-data-hints", _enumerate(
    "malformed_messages",
    "address_event_counts",
))

# ========== TRANSPORT ==========
# Bit 0 is the IP version, bits 1-4 hold the transport value.

TRANSPORT_VALUE_SHIFT = 1
TRANSPORT_VALUE_MASK = 0b1111 << TRANSPORT_VALUE_SHIFT

TRANSPORT_FLAGS = FlagEnumeration(
    "transport-flags", {"ipv6": 0}, reserved_mask=TRANSPORT_VALUE_MASK)

QUERY_RESPONSE_TRANSPORT_FLAGS = TRANSPORT_FLAGS.extend(
    "query-response-transport-flags", {"query_trailing_data": 5})

# ========== QUERY/RESPONSE SIGNATURE ==========

QUERY_RESPONSE_FLAGS = FlagEnumeration("query-response-flags", _enumerate(
    "has_query",
    "has_response",
    "query_has_opt",
    "response_has_opt",
    "query_has_no_question",
    "response_has_no_question",
))

DNS_FLAGS = FlagEnumeration("dns-flags", _enumerate(
    "query_cd",
    "query_ad",
    "query_z",
    "query_ra",
    "query_rd",
    "query_tc",
    "query_aa",
    "query_do",
    "response_cd",
    "response_ad",
    "response_z",
    "response_ra",
    "response_rd",
    "response_tc",
    "response_aa",
))

RESPONSE_PROCESSING_FLAGS = FlagEnumeration("response-processing-flags", {"from_cache": 0})

