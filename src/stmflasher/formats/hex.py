"""
Intel HEX Images
================

Byte source and sink backed by the ``intelhex`` library.

A HEX input is flattened to one contiguous block from its lowest to its
highest address, with gaps filled with 0xFF (the erased flash value). The
addresses inside the file are not used for placement: the image is written
wherever the workspace starts, like a binary image.
"""

import io
import logging
from typing import Optional

from intelhex import IntelHex, IntelHexError

from stmflasher.errors import ImageError

logger = logging.getLogger(__name__)

# Value used for gaps between HEX segments
GAP_FILL = 0xFF


def load_hex(path: str) -> Optional[IntelHex]:
    """
    Try to parse path as Intel HEX.

    Returns:
        The parsed image, or None if the file is not valid Intel HEX.

    Raises:
        ImageError: If the file cannot be read at all.
    """
    try:
        with open(path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise ImageError(f"Cannot open {path}: {e}") from e

    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError:
        return None

    image = IntelHex()
    try:
        image.loadhex(io.StringIO(text))
    except IntelHexError as e:
        logger.debug("%s is not Intel HEX: %s", path, e)
        return None

    if not len(image):
        return None
    return image


class HexSource:
    """
    Sequential reader over a parsed HEX image.

    Attributes:
        name: File name for messages
        start_address: Lowest address in the file
        interactive: Always False
    """

    interactive = False

    def __init__(self, image: IntelHex, name: str):
        self.name = name
        self.start_address = image.minaddr()
        image.padding = GAP_FILL
        self._data = bytes(image.tobinarray())
        self._offset = 0
        segments = image.segments()
        logger.debug(
            "%s: %d bytes in %d segment(s) from 0x%08X",
            name, len(self._data), len(segments), self.start_address,
        )

    def size(self) -> int:
        return len(self._data)

    def read(self, length: int) -> bytes:
        chunk = self._data[self._offset:self._offset + length]
        self._offset += len(chunk)
        return chunk

    def close(self) -> None:
        pass


class HexSink:
    """
    Collects data at consecutive addresses and writes a HEX file on close.
    """

    def __init__(self, path: str, base_address: int):
        self.name = path
        self.base_address = base_address
        self._image = IntelHex()
        self._offset = 0

    def write(self, data: bytes) -> None:
        self._image.frombytes(data, offset=self.base_address + self._offset)
        self._offset += len(data)

    def close(self) -> None:
        try:
            self._image.write_hex_file(self.name)
        except OSError as e:
            raise ImageError(f"Failed to write data to {self.name}: {e}") from e
        logger.debug("Wrote %d bytes to %s", self._offset, self.name)
