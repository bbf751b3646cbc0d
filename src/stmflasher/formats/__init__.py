"""
Image Sources and Sinks
=======================

Byte streams feeding writes and receiving reads. Input files are parsed as
Intel HEX first and fall back to raw binary when they are not valid HEX.
Output is Intel HEX when the file name ends in '.hex', raw binary
otherwise.

Source contract:
    interactive     True for streamed input whose size is unknown
    size()          total bytes, or None when interactive
    read(n)         up to n bytes, fewer only at end of data
    close()

Sink contract:
    write(data)
    close()
"""

import logging
from typing import Optional, Protocol

from stmflasher.formats.binary import STDIO_NAME, BinarySink, BinarySource
from stmflasher.formats.hex import HexSink, HexSource, load_hex

logger = logging.getLogger(__name__)

__all__ = [
    "ImageSource",
    "ImageSink",
    "BinarySource",
    "BinarySink",
    "HexSource",
    "HexSink",
    "open_image_source",
    "open_image_sink",
    "STDIO_NAME",
]


class ImageSource(Protocol):
    interactive: bool

    def size(self) -> Optional[int]:
        ...

    def read(self, length: int) -> bytes:
        ...

    def close(self) -> None:
        ...


class ImageSink(Protocol):
    def write(self, data: bytes) -> None:
        ...

    def close(self) -> None:
        ...


def open_image_source(path: str, force_binary: bool = False) -> ImageSource:
    """
    Open an input image.

    Args:
        path: File name, or '-' for stdin (always binary).
        force_binary: Skip Intel HEX detection.

    Raises:
        ImageError: If the file cannot be opened.
    """
    if path != STDIO_NAME and not force_binary:
        image = load_hex(path)
        if image is not None:
            logger.debug("Using Parser : Intel HEX")
            return HexSource(image, path)
    logger.debug("Using Parser : Raw BINARY")
    return BinarySource.open(path)


def open_image_sink(path: str, base_address: int = 0) -> ImageSink:
    """
    Create an output image.

    Args:
        path: File name, or '-' for stdout (always binary).
        base_address: Address of the first byte, recorded in HEX output.
    """
    if path != STDIO_NAME and path.lower().endswith(".hex"):
        return HexSink(path, base_address)
    return BinarySink.open(path)
