# File preamble models
"""
File preamble and block parameter models.

A C-DNS file carries ONE preamble holding an ordered, non-empty list of
BlockParameters. Every block selects one entry by position, so the list
is immutable for the lifetime of the file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv6Address
from typing import Any, Dict, Optional, Tuple, Union

from .flags import (
    FlagSet,
    OTHER_DATA_HINTS,
    QUERY_RESPONSE_HINTS,
    QUERY_RESPONSE_SIGNATURE_HINTS,
    RR_HINTS,
)

MAJOR_FORMAT_VERSION = 1
MINOR_FORMAT_VERSION = 0

# Every OPCODE value (0-15)
ALL_OPCODES: Tuple[int, ...] = tuple(range(16))

# RR TYPEs recorded by default (IANA assigned data, meta and QTYPE values)
DEFAULT_RR_TYPES: Tuple[int, ...] = (
    1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 11, 12, 13, 14, 15, 16, 17, 18, 19, 20,
    21, 22, 23, 24, 25, 26, 27, 28, 29, 30, 31, 32, 33, 34, 35, 36, 37, 38,
    39, 40, 41, 42, 43, 44, 45, 46, 47, 48, 49, 50, 51, 52, 53, 55, 56, 57,
    58, 59, 60, 61, 62, 63, 64, 65, 99, 100, 101, 102, 103, 104, 105, 106,
    107, 108, 109, 249, 250, 251, 252, 253, 254, 255, 256, 257, 258, 32768,
    32769,
)


@dataclass(frozen=True)
class StorageHints:
    """
    Which optional fields the producer ever emits.

    A set flag means the field IS collected. An unset flag means the field
    is never emitted, so a decoder reports it as NOT_COLLECTED rather than
    absent.
    """
    query_response_hints: FlagSet = field(default_factory=QUERY_RESPONSE_HINTS.all)
    query_response_signature_hints: FlagSet = field(
        default_factory=QUERY_RESPONSE_SIGNATURE_HINTS.all)
    rr_hints: FlagSet = field(default_factory=RR_HINTS.all)
    other_data_hints: FlagSet = field(default_factory=OTHER_DATA_HINTS.all)
    extra: Dict[int, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def all_collected(cls) -> 'StorageHints':
        return cls()

    def without(self, *names: str) -> 'StorageHints':
        """
        Return a copy with the named hints cleared (fields never collected).

        Names are looked up in every hint enumeration.
        """
        groups = {
            "query_response_hints": (QUERY_RESPONSE_HINTS, self.query_response_hints),
            "query_response_signature_hints": (
                QUERY_RESPONSE_SIGNATURE_HINTS, self.query_response_signature_hints),
            "rr_hints": (RR_HINTS, self.rr_hints),
            "other_data_hints": (OTHER_DATA_HINTS, self.other_data_hints),
        }
        remaining = set(names)
        updated = {}
        for attr, (enumeration, current) in groups.items():
            cleared = remaining & set(enumeration.bits)
            remaining -= cleared
            updated[attr] = FlagSet(flags=current.flags - cleared,
                                    unknown_bits=current.unknown_bits)
        if remaining:
            raise ValueError(f"Unknown storage hints: {sorted(remaining)}")
        return StorageHints(extra=self.extra, **updated)


@dataclass(frozen=True)
class StorageParameters:
    """
    How data is stored in the blocks that select these parameters.

    ticks_per_second fixes the time resolution, max_block_items the block
    size threshold. opcodes and rr_types list what the producer records;
    the writer rejects records outside them.
    """
    ticks_per_second: int = 1_000_000
    max_block_items: int = 5000
    storage_hints: StorageHints = field(default_factory=StorageHints)
    opcodes: Tuple[int, ...] = ALL_OPCODES
    rr_types: Tuple[int, ...] = DEFAULT_RR_TYPES
    storage_flags: Optional[FlagSet] = None
    client_address_prefix_ipv4: Optional[int] = None
    client_address_prefix_ipv6: Optional[int] = None
    server_address_prefix_ipv4: Optional[int] = None
    server_address_prefix_ipv6: Optional[int] = None
    sampling_method: Optional[str] = None
    anonymization_method: Optional[str] = None
    extra: Dict[int, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self):
        if self.ticks_per_second <= 0:
            raise ValueError(f"ticks_per_second must be positive, got {self.ticks_per_second}")
        if self.max_block_items <= 0:
            raise ValueError(f"max_block_items must be positive, got {self.max_block_items}")
        for opcode in self.opcodes:
            if not 0 <= opcode <= 15:
                raise ValueError(f"OPCODE out of range 0-15: {opcode}")
        for rr_type in self.rr_types:
            if not 0 <= rr_type <= 0xFFFF:
                raise ValueError(f"RR TYPE out of range 0-65535: {rr_type}")
        for name, limit in (("client_address_prefix_ipv4", 32),
                            ("client_address_prefix_ipv6", 128),
                            ("server_address_prefix_ipv4", 32),
                            ("server_address_prefix_ipv6", 128)):
            value = getattr(self, name)
            if value is not None and not 1 <= value <= limit:
                raise ValueError(f"{name} must be in 1-{limit}, got {value}")


@dataclass(frozen=True)
class CollectionParameters:
    """
    How the data was collected.

    Informational only: nothing here affects decoding. None means
    "not stated", from which nothing can be inferred.
    """
    query_timeout: Optional[int] = None
    skew_timeout: Optional[int] = None
    snaplen: Optional[int] = None
    promisc: Optional[bool] = None
    interfaces: Optional[Tuple[str, ...]] = None
    server_addresses: Optional[Tuple[Union[IPv4Address, IPv6Address], ...]] = None
    vlan_ids: Optional[Tuple[int, ...]] = None
    filter: Optional[str] = None
    generator_id: Optional[str] = None
    host_id: Optional[str] = None
    extra: Dict[int, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class BlockParameters:
    """Storage (mandatory) and collection (optional) parameters."""
    storage_parameters: StorageParameters = field(default_factory=StorageParameters)
    collection_parameters: Optional[CollectionParameters] = None
    extra: Dict[int, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class FilePreamble:
    """Version and parameter information for the whole file."""
    block_parameters: Tuple[BlockParameters, ...] = (BlockParameters(),)
    major_format_version: int = MAJOR_FORMAT_VERSION
    minor_format_version: int = MINOR_FORMAT_VERSION
    private_version: Optional[int] = None
    extra: Dict[int, Any] = field(default_factory=dict, hash=False)
