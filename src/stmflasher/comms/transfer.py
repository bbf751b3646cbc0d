"""
Chunked Memory Transfer
=======================

This module drives the bootloader session across a whole resolved
workspace. The bootloader moves at most 256 bytes per command, so reads
and writes are split into chunks:

Read
----
```
    start                                                    end
      |── 256 ──|── 256 ──|── 256 ──| ... |── remainder ──|
        RM        RM        RM               RM
```
Each chunk is read and handed to the output sink. Any failure aborts the
transfer.

Write
-----
```
    ERASE pages (flash only)
      |
      v
    for each chunk:
        pull chunk from input
        WM chunk ──> [verify?] RM chunk, compare
                        |  mismatch: rewrite, up to `retries` times
                        v
                     next chunk
```
Chunks are the lesser of 256 bytes and what remains of the workspace. An
input that runs dry before the workspace is filled is an error, except
for interactive input (stdin), where it simply ends the transfer.

Verify Retries
--------------
The retry counter is per chunk: each chunk may be written at most
``retries + 1`` times, and the counter starts again at zero for the next
chunk. A chunk that still mismatches after the last attempt raises
VerifyError with the absolute address of the first differing byte.

Cancellation
------------
cancel() may be called from another thread or a signal handler. The
current exchange always runs to completion; the transfer stops before the
next chunk and raises TransferCancelledError.
"""

import logging
from typing import TYPE_CHECKING, Callable, Final, Optional

from stmflasher.comms.bootloader import MAX_TRANSFER_SIZE, EraseProtocol
from stmflasher.errors import (
    InvalidSelectorError,
    ShortInputError,
    TransferCancelledError,
    VerifyError,
)

if TYPE_CHECKING:
    from stmflasher.comms.bootloader import BootloaderSession
    from stmflasher.config import FlasherConfig
    from stmflasher.formats import ImageSink, ImageSource
    from stmflasher.workspace import ResolvedWorkspace

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Progress Callback Type
# =============================================================================

# Type alias for progress callback: (bytes_done, total_bytes) -> None
ProgressCallback = Callable[[int, int], None]

# Default number of rewrites allowed per chunk after a failed verify
DEFAULT_RETRIES: Final[int] = 10

# Pages addressable by the one-byte page numbers of the regular erase command
REGULAR_ERASE_PAGES: Final[int] = 0x100


def first_mismatch(expected: bytes, actual: bytes) -> Optional[int]:
    """Return the index of the first differing byte, or None if equal."""
    for index, (want, got) in enumerate(zip(expected, actual)):
        if want != got:
            return index
    return None


# =============================================================================
# Memory Transfer Class
# =============================================================================

class MemoryTransfer:
    """
    Read, erase and write whole workspaces through a connected session.

    Example:
        session.connect()
        workspace = resolve_workspace(session.device, spec)
        transfer = MemoryTransfer(session, verify=True, progress=show)
        transfer.write(workspace, open_image_source('firmware.hex'))
    """

    def __init__(
        self,
        session: "BootloaderSession",
        verify: bool = False,
        retries: int = DEFAULT_RETRIES,
        progress: Optional[ProgressCallback] = None,
    ):
        """
        Initialize the transfer.

        Args:
            session: Connected bootloader session.
            verify: Read back and compare every written chunk.
            retries: Rewrites allowed per chunk after a failed verify.
            progress: Called with (bytes_done, total_bytes) after each chunk.
        """
        self.session = session
        self.verify = verify
        self.retries = retries
        self.progress = progress
        self._cancelled = False

    @classmethod
    def from_config(
        cls,
        session: "BootloaderSession",
        config: "FlasherConfig",
        progress: Optional[ProgressCallback] = None,
    ) -> "MemoryTransfer":
        return cls(session, verify=config.verify, retries=config.retries, progress=progress)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop before the next chunk."""
        self._cancelled = True

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def read(self, workspace: "ResolvedWorkspace", sink: "ImageSink") -> int:
        """
        Read the workspace into sink.

        Returns:
            Number of bytes read.
        """
        self._check_alignment(workspace)
        total = workspace.length
        address = workspace.start

        logger.debug("Reading 0x%08X-0x%08X", workspace.start, workspace.end)
        while address < workspace.end:
            self._check_cancelled(address)
            length = min(MAX_TRANSFER_SIZE, workspace.end - address)
            sink.write(self.session.read_memory(address, length))
            address += length
            self._report(address - workspace.start, total)

        return total

    def erase(self, workspace: "ResolvedWorkspace") -> None:
        """
        Erase the workspace's flash pages. No-op outside flash.

        Raises:
            InvalidSelectorError: If the pages are beyond what the regular
                                  erase command can address.
        """
        if not workspace.is_flash:
            return
        self._check_erase_range(workspace)
        if workspace.is_full_flash:
            logger.debug("Erasing entire flash")
        else:
            logger.debug(
                "Erasing %d pages from page %d",
                workspace.page_count, workspace.start_page,
            )
        self.session.erase_memory(workspace.start_page, workspace.page_count)

    def write(self, workspace: "ResolvedWorkspace", source: "ImageSource") -> int:
        """
        Erase (flash only) and write source into the workspace.

        Returns:
            Number of bytes written.

        Raises:
            ShortInputError: If a non-interactive source runs dry early.
            VerifyError: If a chunk fails verification past the retries.
            TransferCancelledError: If cancel() was called.
            InvalidSelectorError: If the workspace cannot be erased.
        """
        self._check_alignment(workspace)
        self.erase(workspace)

        total = workspace.length
        address = workspace.start
        written = 0

        while address < workspace.end:
            self._check_cancelled(address)
            length = min(MAX_TRANSFER_SIZE, workspace.end - address, total - written)
            data = source.read(length)

            if not data:
                if source.interactive:
                    logger.debug("Input ended after %d bytes", written)
                    break
                raise ShortInputError(
                    f"Failed to read input file: ended after {written} of {total} bytes"
                )

            self._write_chunk(address, data)
            address += len(data)
            written += len(data)
            self._report(written, total)

        return written

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _write_chunk(self, address: int, data: bytes) -> None:
        """Write one chunk, verifying and rewriting as configured."""
        attempts = 0
        while True:
            attempts += 1
            self.session.write_memory(address, data)
            if not self.verify:
                return

            readback = self.session.read_memory(address, len(data))
            index = first_mismatch(data, readback)
            if index is None:
                return

            if attempts > self.retries:
                raise VerifyError(
                    address + index,
                    data[index],
                    readback[index],
                    attempts=attempts,
                )
            logger.warning(
                "Verify failed at 0x%08X (expected 0x%02X, found 0x%02X), retrying",
                address + index, data[index], readback[index],
            )

    def _check_erase_range(self, workspace: "ResolvedWorkspace") -> None:
        if workspace.is_full_flash or not workspace.page_count:
            return
        if self.session.erase_protocol is not EraseProtocol.REGULAR:
            return
        last_page = workspace.start_page + workspace.page_count - 1
        if last_page >= REGULAR_ERASE_PAGES:
            raise InvalidSelectorError(
                f"Pages {workspace.start_page}..{last_page} cannot be erased: "
                f"this bootloader only erases pages 0-{REGULAR_ERASE_PAGES - 1} "
                "individually, use a full erase instead"
            )

    def _check_cancelled(self, address: int) -> None:
        if self._cancelled:
            raise TransferCancelledError(f"Transfer cancelled at 0x{address:08X}")

    def _report(self, done: int, total: int) -> None:
        if self.progress:
            self.progress(done, total)

    @staticmethod
    def _check_alignment(workspace: "ResolvedWorkspace") -> None:
        if workspace.start % 4:
            raise InvalidSelectorError(
                f"Start address 0x{workspace.start:08X} must be word-aligned"
            )
