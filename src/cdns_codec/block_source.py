"""
IBlockSource Interface

The contract every C-DNS block source follows (file reader today, other
byte sources later).

All block sources must:
1. Consume exactly one file preamble in open(), before any block
2. Yield blocks in file order, forward only, one at a time
3. Refuse to advance once a block has failed to decode
4. Clean up resources properly
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator

from models.block import Block


class IBlockSource(ABC):
    """
    Abstract base class for all C-DNS block sources.

    Rules for implementers:
    1. The sequence is lazy and non-restartable
    2. A block is fully decoded and validated before it is yielded
    3. I/O errors from the byte source propagate unchanged
    """

    # =========================================================================
    # BLOCK ITERATION
    # =========================================================================
    @abstractmethod
    def __iter__(self) -> Iterator[Block]:
        """
        Iterate through blocks in file order.

        Yields:
            Block objects whose records are resolved against the block's
            own tables

        Raises:
            CdnsFormatError: If the block is malformed; the source is then
                unusable
            OSError: If the byte source cannot be read
        """
        pass

    # =========================================================================
    # FILE METADATA
    # =========================================================================
    @abstractmethod
    def get_file_info(self) -> Dict[str, Any]:
        """
        Return file metadata.

        Returns dictionary with AT LEAST:
        - 'major_format_version', 'minor_format_version'
        - 'block_parameters_count': Number of BlockParameters sets
        - 'blocks_read': Blocks yielded so far
        - 'records_read': Records in the blocks yielded so far
        """
        pass

    # =========================================================================
    # OPEN / CLOSE
    # =========================================================================
    @abstractmethod
    def open(self):
        """
        Open the source and read the file preamble.

        Raises:
            FileNotFoundError: If a path source does not exist
            CdnsFormatError: If the file tag or preamble is invalid
            UnsupportedVersionError: If the major format version is not supported
        """
        pass

    @abstractmethod
    def close(self):
        """
        Close the source and release resources.

        MUST be safe to call multiple times.
        """
        pass

    def __enter__(self):
        """
        Context manager entry: open the source.

            with CdnsReader("capture.cdns") as reader:
                for block in reader:
                    process(block)
        """
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        # Safety net for sources that were never closed
        try:
            self.close()
        except Exception:
            pass
