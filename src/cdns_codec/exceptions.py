# Custom exceptions

"""
Custom exceptions for C-DNS encoding and decoding.

Structural and index errors are fatal for the block being read; the
stream must not be advanced afterwards. Policy violations only occur on
the write path and leave the writer usable.
"""

class CdnsError(Exception):
    """Base exception for all C-DNS errors."""
    pass

class CdnsFormatError(CdnsError):
    """Raised when the file structure is invalid (missing or mistyped fields, bad framing)."""
    pass

class CdnsEOFError(CdnsFormatError):
    """Raised when the byte source ends inside an item (truncated file)."""
    pass

class UnsupportedVersionError(CdnsFormatError):
    """Raised when the file's major format version is not supported."""
    pass

class IndexOutOfRangeError(CdnsFormatError):
    """Raised when a table or block parameters index is past the end of its list."""
    pass

class PolicyViolationError(CdnsError):
    """Raised when a record cannot be stored under the active StorageParameters."""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field
