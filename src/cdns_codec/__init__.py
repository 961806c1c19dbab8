"""
C-DNS (RFC 8618) reading and writing.
"""

from .block_source import IBlockSource
from .exceptions import (
    CdnsEOFError,
    CdnsError,
    CdnsFormatError,
    IndexOutOfRangeError,
    PolicyViolationError,
    UnsupportedVersionError,
)
from .preamble import block_parameters_for, decode_preamble, encode_preamble
from .reader import CdnsReader, read_file
from .records import RecordDecoder, RecordEncoder
from .tables import BlockTables, DedupTable
from .writer import BlockBuilder, CdnsWriter, encode_block, encode_file

__all__ = [
    'IBlockSource',
    'CdnsReader',
    'CdnsWriter',
    'BlockBuilder',
    'BlockTables',
    'DedupTable',
    'RecordEncoder',
    'RecordDecoder',
    'read_file',
    'encode_file',
    'encode_block',
    'encode_preamble',
    'decode_preamble',
    'block_parameters_for',
    'CdnsError',
    'CdnsFormatError',
    'CdnsEOFError',
    'UnsupportedVersionError',
    'IndexOutOfRangeError',
    'PolicyViolationError',
]
