"""
File preamble encoding, decoding and version checks.

The preamble is read once, before any block. Its BlockParameters list is
immutable for the life of the file; blocks select an entry by position.
"""

from __future__ import annotations

import logging
from ipaddress import IPv4Address, IPv6Address
from typing import Any, Dict

from models.flags import (
    OTHER_DATA_HINTS,
    QUERY_RESPONSE_HINTS,
    QUERY_RESPONSE_SIGNATURE_HINTS,
    RR_HINTS,
    STORAGE_FLAGS,
)
from models.parameters import (
    MAJOR_FORMAT_VERSION,
    MINOR_FORMAT_VERSION,
    BlockParameters,
    CollectionParameters,
    FilePreamble,
    StorageHints,
    StorageParameters,
)

from .exceptions import CdnsFormatError, IndexOutOfRangeError, UnsupportedVersionError
from .keys import (
    BlockParametersKeys,
    CollectionParametersKeys,
    FilePreambleKeys,
    StorageHintsKeys,
    StorageParametersKeys,
    known_keys,
)
from .wire import WireMap, put, with_extra

logger = logging.getLogger(__name__)

_HINT_FIELDS = (
    ("query_response_hints", StorageHintsKeys.QUERY_RESPONSE_HINTS, QUERY_RESPONSE_HINTS),
    ("query_response_signature_hints", StorageHintsKeys.QUERY_RESPONSE_SIGNATURE_HINTS,
     QUERY_RESPONSE_SIGNATURE_HINTS),
    ("rr_hints", StorageHintsKeys.RR_HINTS, RR_HINTS),
    ("other_data_hints", StorageHintsKeys.OTHER_DATA_HINTS, OTHER_DATA_HINTS),
)

_PREFIX_FIELDS = (
    ("client_address_prefix_ipv4", StorageParametersKeys.CLIENT_ADDRESS_PREFIX_IPV4, 32),
    ("client_address_prefix_ipv6", StorageParametersKeys.CLIENT_ADDRESS_PREFIX_IPV6, 128),
    ("server_address_prefix_ipv4", StorageParametersKeys.SERVER_ADDRESS_PREFIX_IPV4, 32),
    ("server_address_prefix_ipv6", StorageParametersKeys.SERVER_ADDRESS_PREFIX_IPV6, 128),
)


# ========== ENCODING ==========

def encode_preamble(preamble: FilePreamble) -> Dict[Any, Any]:
    """
    Build the file preamble map.

    Raises:
        ValueError: If the preamble has no BlockParameters
    """
    if not preamble.block_parameters:
        raise ValueError("A file preamble needs at least one BlockParameters")
    wire: Dict[Any, Any] = {
        FilePreambleKeys.MAJOR_FORMAT_VERSION: preamble.major_format_version,
        FilePreambleKeys.MINOR_FORMAT_VERSION: preamble.minor_format_version,
    }
    put(wire, FilePreambleKeys.PRIVATE_VERSION, preamble.private_version)
    wire[FilePreambleKeys.BLOCK_PARAMETERS] = [
        encode_block_parameters(parameters) for parameters in preamble.block_parameters
    ]
    return with_extra(wire, preamble.extra)


def encode_block_parameters(parameters: BlockParameters) -> Dict[Any, Any]:
    wire: Dict[Any, Any] = {
        BlockParametersKeys.STORAGE_PARAMETERS: _encode_storage(parameters.storage_parameters),
    }
    if parameters.collection_parameters is not None:
        wire[BlockParametersKeys.COLLECTION_PARAMETERS] = _encode_collection(
            parameters.collection_parameters)
    return with_extra(wire, parameters.extra)


def _encode_storage(storage: StorageParameters) -> Dict[Any, Any]:
    hints = storage.storage_hints
    hints_wire = {key: enumeration.encode(getattr(hints, attr))
                  for attr, key, enumeration in _HINT_FIELDS}
    wire: Dict[Any, Any] = {
        StorageParametersKeys.TICKS_PER_SECOND: storage.ticks_per_second,
        StorageParametersKeys.MAX_BLOCK_ITEMS: storage.max_block_items,
        StorageParametersKeys.STORAGE_HINTS: with_extra(hints_wire, hints.extra),
        StorageParametersKeys.OPCODES: list(storage.opcodes),
        StorageParametersKeys.RR_TYPES: list(storage.rr_types),
    }
    if storage.storage_flags is not None:
        wire[StorageParametersKeys.STORAGE_FLAGS] = STORAGE_FLAGS.encode(storage.storage_flags)
    for attr, key, _ in _PREFIX_FIELDS:
        put(wire, key, getattr(storage, attr))
    put(wire, StorageParametersKeys.SAMPLING_METHOD, storage.sampling_method)
    put(wire, StorageParametersKeys.ANONYMIZATION_METHOD, storage.anonymization_method)
    return with_extra(wire, storage.extra)


def _encode_collection(collection: CollectionParameters) -> Dict[Any, Any]:
    wire: Dict[Any, Any] = {}
    put(wire, CollectionParametersKeys.QUERY_TIMEOUT, collection.query_timeout)
    put(wire, CollectionParametersKeys.SKEW_TIMEOUT, collection.skew_timeout)
    put(wire, CollectionParametersKeys.SNAPLEN, collection.snaplen)
    put(wire, CollectionParametersKeys.PROMISC, collection.promisc)
    if collection.interfaces is not None:
        wire[CollectionParametersKeys.INTERFACES] = list(collection.interfaces)
    if collection.server_addresses is not None:
        wire[CollectionParametersKeys.SERVER_ADDRESSES] = [
            address.packed for address in collection.server_addresses]
    if collection.vlan_ids is not None:
        wire[CollectionParametersKeys.VLAN_IDS] = list(collection.vlan_ids)
    put(wire, CollectionParametersKeys.FILTER, collection.filter)
    put(wire, CollectionParametersKeys.GENERATOR_ID, collection.generator_id)
    put(wire, CollectionParametersKeys.HOST_ID, collection.host_id)
    return with_extra(wire, collection.extra)


# ========== DECODING ==========

def decode_preamble(value: Any) -> FilePreamble:
    """
    Decode and validate the file preamble map.

    Raises:
        UnsupportedVersionError: If the major format version is not 1
        CdnsFormatError: On missing or mistyped fields, or an empty
            BlockParameters list
    """
    wire = WireMap(value, "FilePreamble", known_keys(FilePreambleKeys))
    major = wire.uint(FilePreambleKeys.MAJOR_FORMAT_VERSION, required=True)
    minor = wire.uint(FilePreambleKeys.MINOR_FORMAT_VERSION, required=True)
    if major != MAJOR_FORMAT_VERSION:
        raise UnsupportedVersionError(
            f"Unsupported C-DNS major format version {major} "
            f"(supported: {MAJOR_FORMAT_VERSION})")
    if minor > MINOR_FORMAT_VERSION:
        logger.warning("C-DNS minor format version %d is newer than %d; "
                       "unknown fields will be preserved but not interpreted",
                       minor, MINOR_FORMAT_VERSION)

    items = wire.array(FilePreambleKeys.BLOCK_PARAMETERS, required=True)
    if not items:
        raise CdnsFormatError("FilePreamble: block parameters list is empty")
    block_parameters = tuple(
        decode_block_parameters(item, f"BlockParameters[{position}]")
        for position, item in enumerate(items))

    return FilePreamble(
        block_parameters=block_parameters,
        major_format_version=major,
        minor_format_version=minor,
        private_version=wire.uint(FilePreambleKeys.PRIVATE_VERSION),
        extra=wire.extra(),
    )


def decode_block_parameters(value: Any, what: str = "BlockParameters") -> BlockParameters:
    wire = WireMap(value, what, known_keys(BlockParametersKeys))
    storage = wire.map(BlockParametersKeys.STORAGE_PARAMETERS, f"{what}.StorageParameters",
                       known_keys(StorageParametersKeys), required=True)
    collection = wire.map(BlockParametersKeys.COLLECTION_PARAMETERS,
                          f"{what}.CollectionParameters",
                          known_keys(CollectionParametersKeys))
    return BlockParameters(
        storage_parameters=_decode_storage(storage),
        collection_parameters=_decode_collection(collection) if collection is not None else None,
        extra=wire.extra(),
    )


def _decode_storage(wire: WireMap) -> StorageParameters:
    hints_wire = wire.map(StorageParametersKeys.STORAGE_HINTS, f"{wire.what}.StorageHints",
                          known_keys(StorageHintsKeys), required=True)
    hints = StorageHints(
        extra=hints_wire.extra(),
        **{attr: enumeration.decode(hints_wire.uint(key, required=True))
           for attr, key, enumeration in _HINT_FIELDS})

    storage_flags = wire.uint(StorageParametersKeys.STORAGE_FLAGS)
    prefixes = {attr: wire.uint(key, maximum=limit) for attr, key, limit in _PREFIX_FIELDS}
    try:
        return StorageParameters(
            ticks_per_second=wire.uint(StorageParametersKeys.TICKS_PER_SECOND, required=True),
            max_block_items=wire.uint(StorageParametersKeys.MAX_BLOCK_ITEMS, required=True),
            storage_hints=hints,
            opcodes=wire.uint_array(StorageParametersKeys.OPCODES, required=True, maximum=15),
            rr_types=wire.uint_array(StorageParametersKeys.RR_TYPES, required=True,
                                     maximum=0xFFFF),
            storage_flags=STORAGE_FLAGS.decode(storage_flags) if storage_flags is not None else None,
            sampling_method=wire.text(StorageParametersKeys.SAMPLING_METHOD),
            anonymization_method=wire.text(StorageParametersKeys.ANONYMIZATION_METHOD),
            extra=wire.extra(),
            **prefixes,
        )
    except ValueError as e:
        raise CdnsFormatError(f"{wire.what}: {e}") from e


def _decode_collection(wire: WireMap) -> CollectionParameters:
    server_addresses = None
    items = wire.array(CollectionParametersKeys.SERVER_ADDRESSES)
    if items is not None:
        server_addresses = tuple(_decode_server_address(item, wire.what) for item in items)
    return CollectionParameters(
        query_timeout=wire.uint(CollectionParametersKeys.QUERY_TIMEOUT),
        skew_timeout=wire.uint(CollectionParametersKeys.SKEW_TIMEOUT),
        snaplen=wire.uint(CollectionParametersKeys.SNAPLEN),
        promisc=wire.bool(CollectionParametersKeys.PROMISC),
        interfaces=wire.text_array(CollectionParametersKeys.INTERFACES),
        server_addresses=server_addresses,
        vlan_ids=wire.uint_array(CollectionParametersKeys.VLAN_IDS, maximum=0xFFF),
        filter=wire.text(CollectionParametersKeys.FILTER),
        generator_id=wire.text(CollectionParametersKeys.GENERATOR_ID),
        host_id=wire.text(CollectionParametersKeys.HOST_ID),
        extra=wire.extra(),
    )


def _decode_server_address(value: Any, what: str):
    if isinstance(value, (bytes, bytearray)):
        if len(value) == 4:
            return IPv4Address(bytes(value))
        if len(value) == 16:
            return IPv6Address(bytes(value))
    raise CdnsFormatError(f"{what}: invalid server address {value!r}")


# ========== PARAMETER SELECTION ==========

def block_parameters_for(preamble: FilePreamble, index: int) -> BlockParameters:
    """
    Return the BlockParameters a block selects.

    Raises:
        IndexOutOfRangeError: If index is past the end of the list
    """
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise IndexOutOfRangeError(f"Invalid block parameters index {index!r}")
    if index >= len(preamble.block_parameters):
        raise IndexOutOfRangeError(
            f"Block parameters index {index} out of range "
            f"({len(preamble.block_parameters)} parameter sets)")
    return preamble.block_parameters[index]
