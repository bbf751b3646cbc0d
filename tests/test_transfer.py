"""
Tests for Workspace Transfers
=============================

This module tests MemoryTransfer against the simulated bootloader:
- Chunking of reads and writes at the 256-byte limit
- Erase before write (flash only)
- Verify with per-chunk retries
- Short and interactive input
- Cancellation between chunks
"""

import io
import logging

import pytest

from stmflasher.comms.transfer import MemoryTransfer, first_mismatch
from stmflasher.config import FlasherConfig
from stmflasher.errors import (
    InvalidSelectorError,
    ShortInputError,
    TransferCancelledError,
    VerifyError,
)
from stmflasher.formats.binary import BinarySink, BinarySource
from stmflasher.workspace import MemoryType, ResolvedWorkspace, WorkspaceSpec, resolve_workspace

from conftest import connect


def source(data, interactive=False):
    return BinarySource(io.BytesIO(data), "<test>", interactive=interactive)


def flash_workspace(session, length, address=0):
    spec = WorkspaceSpec(address=address, length=length)
    return resolve_workspace(session.device, spec)


# =============================================================================
# Helpers
# =============================================================================

class TestFirstMismatch:
    """Tests for first_mismatch."""

    def test_equal(self):
        """Equal buffers have no mismatch."""
        assert first_mismatch(b"abc", b"abc") is None

    def test_index(self):
        """The index of the first difference is returned."""
        assert first_mismatch(b"abcd", b"abXY") == 2


# =============================================================================
# Write
# =============================================================================

class TestWrite:
    """Tests for MemoryTransfer.write."""

    def test_chunking(self, session, fake_device):
        """300 bytes are written as 256 + 44."""
        data = bytes(i & 0xFF for i in range(300))
        ws = flash_workspace(session, len(data))
        written = MemoryTransfer(session).write(ws, source(data))
        assert written == 300
        assert [(addr, len(chunk)) for addr, chunk in fake_device.writes] == [
            (0x08000000, 256),
            (0x08000100, 44),
        ]
        assert fake_device.dump(0x08000000, 300) == data

    def test_trailing_byte_padded(self, session, fake_device):
        """257 bytes are 256 + 1, the last chunk padded with three 0xFF."""
        data = bytes(i & 0xFF for i in range(257))
        ws = flash_workspace(session, len(data))
        MemoryTransfer(session).write(ws, source(data))
        assert fake_device.writes[0] == (0x08000000, data[:256])
        assert fake_device.writes[1] == (0x08000100, b"\x00\xFF\xFF\xFF")

    def test_erases_pages_first(self, session, fake_device):
        """Flash writes erase the covered pages before writing."""
        fake_device.load(0x08000400, b"\x00" * 8)
        ws = flash_workspace(session, 1100)
        MemoryTransfer(session).write(ws, source(bytes(1100)))
        assert fake_device.erases == [[0, 1]]
        assert fake_device.opcodes.index(0x43) < fake_device.opcodes.index(0x31)

    def test_ram_write_skips_erase(self, session, fake_device):
        """RAM writes do not erase."""
        spec = WorkspaceSpec(memory_type=MemoryType.RAM, length=16)
        ws = resolve_workspace(session.device, spec)
        MemoryTransfer(session).write(ws, source(bytes(range(16))))
        assert fake_device.erases == []
        assert fake_device.dump(0x20000200, 16) == bytes(range(16))

    def test_progress(self, session):
        """Progress is reported after every chunk."""
        calls = []
        ws = flash_workspace(session, 600)
        MemoryTransfer(session, progress=lambda done, total: calls.append((done, total))).write(
            ws, source(bytes(600))
        )
        assert calls == [(256, 600), (512, 600), (600, 600)]

    def test_short_input(self, session):
        """A file shorter than the workspace is an error."""
        ws = flash_workspace(session, 512)
        with pytest.raises(ShortInputError):
            MemoryTransfer(session).write(ws, source(bytes(300)))

    def test_interactive_input_may_end_early(self, session, fake_device):
        """Streamed input stops the write quietly when it runs dry."""
        ws = flash_workspace(session, 1024)
        written = MemoryTransfer(session).write(ws, source(b"\x11" * 100, interactive=True))
        assert written == 100
        assert fake_device.dump(0x08000000, 100) == b"\x11" * 100

    def test_unaligned_start(self, session, fake_device):
        """Unaligned workspaces are rejected before anything is sent."""
        ws = ResolvedWorkspace(MemoryType.RAM, 0x20000202, 0x20000210)
        before = len(fake_device.received)
        with pytest.raises(InvalidSelectorError, match="word-aligned"):
            MemoryTransfer(session).write(ws, source(bytes(14)))
        assert len(fake_device.received) == before


class TestVerify:
    """Tests for verify and retries."""

    def test_verify_passes(self, session, fake_device):
        """Verified writes read every chunk back."""
        ws = flash_workspace(session, 300)
        MemoryTransfer(session, verify=True).write(ws, source(bytes(300)))
        assert fake_device.reads == [(0x08000000, 256), (0x08000100, 44)]

    def test_retry_recovers(self, caplog):
        """A chunk that verifies on the second attempt succeeds with a warning."""
        session, device = connect(corrupt_writes=1, corrupt_offset=3)
        ws = flash_workspace(session, 16)
        with caplog.at_level(logging.WARNING):
            MemoryTransfer(session, verify=True, retries=2).write(ws, source(bytes(range(16))))
        assert len(device.writes) == 2
        assert device.dump(0x08000000, 16) == bytes(range(16))
        assert "Verify failed at 0x08000003" in caplog.text

    def test_retries_exhausted(self):
        """retries + 1 failed attempts raise VerifyError at the bad byte."""
        session, device = connect(corrupt_writes=100, corrupt_offset=5)
        data = bytes(range(10))
        ws = flash_workspace(session, 10)
        with pytest.raises(VerifyError) as exc_info:
            MemoryTransfer(session, verify=True, retries=2).write(ws, source(data))
        error = exc_info.value
        assert error.address == 0x08000005
        assert error.expected == 0x05
        assert error.actual == 0x05 ^ 0xFF
        assert error.attempts == 3
        assert len(device.writes) == 3
        assert "expected 0x05 and found 0xFA" in str(error)

    def test_retry_counter_is_per_chunk(self):
        """Each chunk gets its own retry budget."""
        session, device = connect(corrupt_writes=1, corrupt_offset=0)
        ws = flash_workspace(session, 512)

        def corrupt_next(done, total):
            if done == 256:
                device.corrupt_writes = 1

        transfer = MemoryTransfer(session, verify=True, retries=1, progress=corrupt_next)
        assert transfer.write(ws, source(bytes(512))) == 512
        assert [addr for addr, _ in device.writes] == [
            0x08000000, 0x08000000, 0x08000100, 0x08000100,
        ]

    def test_no_retries(self):
        """retries=0 fails on the first mismatch."""
        session, device = connect(corrupt_writes=1)
        ws = flash_workspace(session, 4)
        with pytest.raises(VerifyError) as exc_info:
            MemoryTransfer(session, verify=True, retries=0).write(ws, source(bytes(4)))
        assert exc_info.value.attempts == 1

    def test_from_config(self, session):
        """Verify and retries come from the configuration."""
        config = FlasherConfig(port="/dev/null", verify=True, retries=4)
        transfer = MemoryTransfer.from_config(session, config)
        assert transfer.verify
        assert transfer.retries == 4


# =============================================================================
# Read and Erase
# =============================================================================

class TestRead:
    """Tests for MemoryTransfer.read."""

    def test_read_chunks(self, session, fake_device):
        """Reads are split into 256-byte commands."""
        data = bytes(i & 0xFF for i in range(600))
        fake_device.load(0x08000000, data)
        ws = flash_workspace(session, 600)
        out = io.BytesIO()
        count = MemoryTransfer(session).read(ws, BinarySink(out, "<test>", owned=False))
        assert count == 600
        assert out.getvalue() == data
        assert [n for _, n in fake_device.reads] == [256, 256, 88]

    def test_read_does_not_erase(self, session, fake_device):
        """Reading never erases."""
        ws = flash_workspace(session, 16)
        MemoryTransfer(session).read(ws, BinarySink(io.BytesIO(), "<test>", owned=False))
        assert fake_device.erases == []


class TestErase:
    """Tests for MemoryTransfer.erase."""

    def test_erase_full_flash(self, session, fake_device):
        """The whole-flash workspace uses mass erase."""
        ws = resolve_workspace(session.device, WorkspaceSpec())
        MemoryTransfer(session).erase(ws)
        assert fake_device.erases == ["mass"]

    def test_regular_erase_page_limit(self):
        """Regular erase cannot reach pages above 255; nothing is sent."""
        session, device = connect(product_id=0x430)
        ws = ResolvedWorkspace(MemoryType.FLASH, 0x08064000, 0x08096000, 200, 100)
        before = len(device.received)
        with pytest.raises(InvalidSelectorError, match="Pages 200..299"):
            MemoryTransfer(session).erase(ws)
        assert len(device.received) == before

    def test_regular_erase_last_addressable_page(self):
        """Page 255 is still erased individually."""
        session, device = connect(product_id=0x430)
        ws = ResolvedWorkspace(MemoryType.FLASH, 0x0807F800, 0x08080000, 255, 1)
        MemoryTransfer(session).erase(ws)
        assert device.erases == [[255]]

    def test_full_flash_beyond_255_pages(self):
        """Whole-flash erase on a 512-page chip uses mass erase."""
        session, device = connect(product_id=0x430)
        ws = resolve_workspace(session.device, WorkspaceSpec())
        MemoryTransfer(session).erase(ws)
        assert device.erases == ["mass"]

    def test_erase_non_flash_is_noop(self, session, fake_device):
        """Erasing RAM does nothing."""
        ws = resolve_workspace(session.device, WorkspaceSpec(memory_type=MemoryType.RAM))
        MemoryTransfer(session).erase(ws)
        assert fake_device.erases == []


# =============================================================================
# Cancellation
# =============================================================================

class TestCancel:
    """Tests for cancelling between chunks."""

    def test_cancel_stops_before_next_chunk(self, session, fake_device):
        """cancel() from the progress callback stops the transfer."""
        transfer = MemoryTransfer(session)
        transfer.progress = lambda done, total: transfer.cancel()
        ws = flash_workspace(session, 1024)
        with pytest.raises(TransferCancelledError, match="0x08000100"):
            transfer.write(ws, source(bytes(1024)))
        assert transfer.cancelled
        assert len(fake_device.writes) == 1
