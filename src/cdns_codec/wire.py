"""
Helpers for untrusted wire values.

Everything coming out of cbor2 is untyped (dict, list, int, bytes, ...).
WireMap wraps one decoded map with typed accessors that raise
CdnsFormatError on missing or mistyped fields, so decoders never index
a raw dict directly.

This module also parses and emits CBOR heads (initial byte + argument) for
the few containers that are streamed item by item: the outer file array,
the block array and the block maps. Item bodies always go through cbor2.
"""

from __future__ import annotations

import struct
from typing import Any, Dict, Iterable, Optional, Tuple

import cbor2

from .exceptions import CdnsEOFError, CdnsFormatError

# CBOR major types
MAJOR_UINT = 0
MAJOR_NEGINT = 1
MAJOR_ARRAY = 4
MAJOR_MAP = 5

INDEFINITE = None
BREAK = b"\xff"
INDEFINITE_ARRAY = b"\x9f"

_ARGUMENT_SIZES = {24: 1, 25: 2, 26: 4, 27: 8}
_ARGUMENT_FORMATS = {1: ">B", 2: ">H", 4: ">I", 8: ">Q"}


class WireMap:
    """
    Typed read access to one decoded C-DNS map.

    Args:
        value: The decoded object (must be a dict)
        what: Map type name used in error messages, e.g. "QueryResponse"
        known: Keys this map type defines; everything else is "extra"
    """

    def __init__(self, value: Any, what: str, known: Iterable[int]):
        if not isinstance(value, dict):
            raise CdnsFormatError(f"{what}: expected map, got {type(value).__name__}")
        self.value = value
        self.what = what
        self.known = frozenset(known)

    def __contains__(self, key: int) -> bool:
        return key in self.value

    def _get(self, key: int, required: bool) -> Any:
        if key not in self.value:
            if required:
                raise CdnsFormatError(f"{self.what}: missing mandatory field {key}")
            return None
        return self.value[key]

    def uint(self, key: int, required: bool = False,
             maximum: Optional[int] = None) -> Optional[int]:
        value = self._get(key, required)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise CdnsFormatError(
                f"{self.what}: field {key} must be an unsigned integer, got {value!r}")
        if maximum is not None and value > maximum:
            raise CdnsFormatError(
                f"{self.what}: field {key} value {value} exceeds {maximum}")
        return value

    def sint(self, key: int, required: bool = False) -> Optional[int]:
        value = self._get(key, required)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise CdnsFormatError(
                f"{self.what}: field {key} must be an integer, got {value!r}")
        return value

    def bytes(self, key: int, required: bool = False) -> Optional[bytes]:
        value = self._get(key, required)
        if value is None:
            return None
        if not isinstance(value, (bytes, bytearray)):
            raise CdnsFormatError(
                f"{self.what}: field {key} must be a byte string, got {type(value).__name__}")
        return bytes(value)

    def text(self, key: int, required: bool = False) -> Optional[str]:
        value = self._get(key, required)
        if value is None:
            return None
        if not isinstance(value, str):
            raise CdnsFormatError(
                f"{self.what}: field {key} must be a text string, got {type(value).__name__}")
        return value

    def bool(self, key: int, required: bool = False) -> Optional[bool]:
        value = self._get(key, required)
        if value is None:
            return None
        if not isinstance(value, bool):
            raise CdnsFormatError(f"{self.what}: field {key} must be a boolean, got {value!r}")
        return value

    def map(self, key: int, what: str, known: Iterable[int],
            required: bool = False) -> Optional['WireMap']:
        value = self._get(key, required)
        if value is None:
            return None
        return WireMap(value, what, known)

    def array(self, key: int, required: bool = False, non_empty: bool = False) -> Optional[list]:
        value = self._get(key, required)
        if value is None:
            return None
        if not isinstance(value, list):
            raise CdnsFormatError(
                f"{self.what}: field {key} must be an array, got {type(value).__name__}")
        if non_empty and not value:
            raise CdnsFormatError(f"{self.what}: field {key} must not be an empty array")
        return value

    def uint_array(self, key: int, required: bool = False,
                   maximum: Optional[int] = None) -> Optional[Tuple[int, ...]]:
        items = self.array(key, required)
        if items is None:
            return None
        return tuple(check_uint(item, f"{self.what}[{key}]", maximum) for item in items)

    def text_array(self, key: int, required: bool = False) -> Optional[Tuple[str, ...]]:
        items = self.array(key, required)
        if items is None:
            return None
        for item in items:
            if not isinstance(item, str):
                raise CdnsFormatError(f"{self.what}[{key}]: expected text strings")
        return tuple(items)

    def extra(self) -> Dict[Any, Any]:
        """Unrecognised keys, preserved opaquely."""
        return {key: value for key, value in self.value.items() if key not in self.known}


def check_uint(value: Any, what: str, maximum: Optional[int] = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise CdnsFormatError(f"{what}: expected unsigned integer, got {value!r}")
    if maximum is not None and value > maximum:
        raise CdnsFormatError(f"{what}: value {value} exceeds {maximum}")
    return value


def put(wire: Dict[int, Any], key: int, value: Any) -> None:
    """Set key only when value is present (None is never written)."""
    if value is not None:
        wire[key] = value


def with_extra(wire: Dict[Any, Any], extra: Dict[Any, Any]) -> Dict[Any, Any]:
    """Append preserved extension keys that do not clash with known ones."""
    for key, value in extra.items():
        wire.setdefault(key, value)
    return wire


def freeze(value: Any) -> Any:
    """
    Hashable, structurally equal form of a wire value.

    Maps and arrays are tagged so that a map never compares equal to an
    array of pairs.
    """
    if isinstance(value, dict):
        items = [(freeze(k), freeze(v)) for k, v in value.items()]
        items.sort(key=repr)
        return ("map", tuple(items))
    if isinstance(value, (list, tuple)):
        return ("array", tuple(freeze(item) for item in value))
    if isinstance(value, bytearray):
        return bytes(value)
    return value


# ========== CBOR HEADS ==========

def read_head(decoder: cbor2.CBORDecoder, what: str,
              allow_break: bool = False) -> Optional[Tuple[int, Optional[int]]]:
    """
    Read one CBOR head.

    Returns:
        (major type, argument); argument is INDEFINITE (None) for
        indefinite-length containers. None for a break byte when
        allow_break is set (end of an indefinite-length container).

    Raises:
        CdnsEOFError: If the source ends before the head is complete
    """
    initial = read_exact(decoder, 1, what)[0]
    if initial == BREAK[0]:
        if allow_break:
            return None
        raise CdnsFormatError(f"{what}: unexpected break")
    major, info = initial >> 5, initial & 0x1F
    if info < 24:
        return major, info
    if info == 31:
        if major not in (2, 3, 4, 5, 7):
            raise CdnsFormatError(f"{what}: invalid indefinite length for major type {major}")
        return major, INDEFINITE
    size = _ARGUMENT_SIZES.get(info)
    if size is None:
        raise CdnsFormatError(f"{what}: reserved CBOR additional information {info}")
    (argument,) = struct.unpack(_ARGUMENT_FORMATS[size], read_exact(decoder, size, what))
    return major, argument


def read_exact(decoder: cbor2.CBORDecoder, amount: int, what: str) -> bytes:
    try:
        data = decoder.read(amount)
    except cbor2.CBORDecodeEOF as e:
        raise CdnsEOFError(f"{what}: unexpected end of data") from e
    if len(data) < amount:
        raise CdnsEOFError(f"{what}: unexpected end of data")
    return data


def decode_item(decoder: cbor2.CBORDecoder, what: str) -> Any:
    """Decode one complete CBOR item, mapping cbor2 errors to C-DNS errors."""
    try:
        return decoder.decode()
    except cbor2.CBORDecodeEOF as e:
        raise CdnsEOFError(f"{what}: unexpected end of data") from e
    except cbor2.CBORDecodeError as e:
        raise CdnsFormatError(f"{what}: invalid CBOR: {e}") from e


def read_map_key(decoder: cbor2.CBORDecoder, what: str,
                 allow_break: bool) -> Optional[int]:
    """
    Read an integer map key from its head.

    Returns None for a break byte when allow_break is set (end of an
    indefinite-length map).
    """
    initial = read_exact(decoder, 1, what)
    if initial == BREAK:
        if allow_break:
            return None
        raise CdnsFormatError(f"{what}: unexpected break")
    major, info = initial[0] >> 5, initial[0] & 0x1F
    if major not in (MAJOR_UINT, MAJOR_NEGINT):
        raise CdnsFormatError(f"{what}: map keys must be integers")
    if info < 24:
        argument = info
    else:
        size = _ARGUMENT_SIZES.get(info)
        if size is None:
            raise CdnsFormatError(f"{what}: invalid integer key encoding")
        (argument,) = struct.unpack(_ARGUMENT_FORMATS[size], read_exact(decoder, size, what))
    return argument if major == MAJOR_UINT else -1 - argument


def encode_head(major: int, argument: int) -> bytes:
    """Encode a CBOR head with a definite argument."""
    if argument < 24:
        return bytes([(major << 5) | argument])
    for info, size in sorted(_ARGUMENT_SIZES.items()):
        if argument < (1 << (8 * size)):
            return bytes([(major << 5) | info]) + struct.pack(_ARGUMENT_FORMATS[size], argument)
    raise ValueError(f"CBOR argument too large: {argument}")
