"""
Raw Binary Images
=================

Pass-through byte source and sink. A file name of '-' selects stdin or
stdout; stdin is an interactive source whose size is not known up front.
"""

import logging
import os
import sys
from typing import BinaryIO, Optional

from stmflasher.errors import ImageError

logger = logging.getLogger(__name__)

# File name selecting stdin/stdout
STDIO_NAME = "-"


class BinarySource:
    """
    Sequential reader over a raw binary stream.

    Attributes:
        name: File name for messages
        interactive: True for streamed input (stdin)
    """

    def __init__(self, stream: BinaryIO, name: str, interactive: bool = False):
        self.stream = stream
        self.name = name
        self.interactive = interactive

    @classmethod
    def open(cls, path: str) -> "BinarySource":
        """Open path, or stdin for '-'."""
        if path == STDIO_NAME:
            return cls(sys.stdin.buffer, "<stdin>", interactive=True)
        try:
            return cls(open(path, "rb"), path)
        except OSError as e:
            raise ImageError(f"Cannot open {path}: {e}") from e

    def size(self) -> Optional[int]:
        """Total size in bytes, None for interactive sources."""
        if self.interactive:
            return None
        return os.fstat(self.stream.fileno()).st_size

    def read(self, length: int) -> bytes:
        """Read up to length bytes; fewer only at end of data."""
        try:
            return self.stream.read(length)
        except OSError as e:
            raise ImageError(f"Failed to read {self.name}: {e}") from e

    def close(self) -> None:
        if not self.interactive:
            self.stream.close()


class BinarySink:
    """Sequential writer to a raw binary stream."""

    def __init__(self, stream: BinaryIO, name: str, owned: bool = True):
        self.stream = stream
        self.name = name
        self.owned = owned

    @classmethod
    def open(cls, path: str) -> "BinarySink":
        """Create path, or use stdout for '-'."""
        if path == STDIO_NAME:
            return cls(sys.stdout.buffer, "<stdout>", owned=False)
        try:
            return cls(open(path, "wb"), path)
        except OSError as e:
            raise ImageError(f"Cannot create {path}: {e}") from e

    def write(self, data: bytes) -> None:
        try:
            self.stream.write(data)
        except OSError as e:
            raise ImageError(f"Failed to write data to {self.name}: {e}") from e

    def close(self) -> None:
        if self.owned:
            self.stream.close()
        else:
            self.stream.flush()
