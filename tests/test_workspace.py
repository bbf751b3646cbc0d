"""
Tests for Workspace Resolution
==============================

This module tests how user selectors become an absolute address range:
- Selector parsing (address, pages, execute address)
- Defaults per memory type
- Page coverage and whole-flash detection
- Bounds and conflict checks
"""

import pytest

from stmflasher.devices import find_device
from stmflasher.errors import InvalidSelectorError, RegionOutOfBoundsError
from stmflasher.workspace import (
    FULL_FLASH_PAGES,
    MemoryType,
    ResolvedWorkspace,
    WorkspaceSpec,
    allowed_region,
    parse_address_selector,
    parse_execute_address,
    parse_number,
    parse_page_selector,
    resolve_workspace,
)


@pytest.fixture
def f1():
    """STM32F Medium-density: 128 pages of 1 KiB."""
    return find_device(0x410)


# =============================================================================
# Parsing
# =============================================================================

class TestParsing:
    """Tests for the selector parsers."""

    @pytest.mark.parametrize("text,value", [("0", 0), ("100", 100), ("0x100", 256), ("0X1f", 31), ("0b101", 5)])
    def test_parse_number(self, text, value):
        """Decimal and prefixed numbers."""
        assert parse_number(text) == value

    @pytest.mark.parametrize("text", ["", "abc", "-4", "0xZZ"])
    def test_parse_number_invalid(self, text):
        """Garbage and negatives are rejected."""
        with pytest.raises(InvalidSelectorError):
            parse_number(text)

    def test_relative_address_with_length(self):
        """'+0x1000:100' is relative with a length."""
        assert parse_address_selector("+0x1000:100") == (0x1000, True, 100)

    def test_absolute_address(self):
        """A bare address is absolute."""
        assert parse_address_selector("0x08001000") == (0x08001000, False, None)

    def test_length_only(self):
        """':64' means offset 0 with a length."""
        assert parse_address_selector(":64") == (0, True, 64)

    def test_page_selector(self):
        """'start:count' and 'start'."""
        assert parse_page_selector("4:2") == (4, 2)
        assert parse_page_selector("10") == (10, None)

    def test_page_count_limit(self):
        """Page count is at most 0xFFFF."""
        with pytest.raises(InvalidSelectorError, match="between 0 and 65535"):
            parse_page_selector("0:65536")

    def test_execute_address(self):
        """Execute addresses may be relative and must be aligned."""
        assert parse_execute_address("0x08000000") == (0x08000000, False)
        assert parse_execute_address("+0x100") == (0x100, True)
        with pytest.raises(InvalidSelectorError, match="word-aligned"):
            parse_execute_address("0x08000002")

    def test_memory_type_codes(self):
        """Memory types are selected by their first letter."""
        assert MemoryType.from_code("f") is MemoryType.FLASH
        assert MemoryType.from_code("ram") is MemoryType.RAM
        assert MemoryType.from_code("E") is MemoryType.EEPROM
        assert MemoryType.from_code("a") is MemoryType.ANY
        with pytest.raises(InvalidSelectorError):
            MemoryType.from_code("x")


# =============================================================================
# Resolution
# =============================================================================

class TestDefaults:
    """Resolution with no selectors."""

    def test_flash_default_is_whole_flash(self, f1):
        """No selectors on flash means the entire flash."""
        ws = resolve_workspace(f1, WorkspaceSpec())
        assert ws.start == 0x08000000
        assert ws.end == 0x08020000
        assert ws.start_page == 0
        assert ws.page_count == FULL_FLASH_PAGES
        assert ws.is_full_flash
        assert ws.length // 1024 == 128

    def test_ram_default_skips_bootloader_area(self, f1):
        """RAM starts after the bootloader's reserved area."""
        ws = resolve_workspace(f1, WorkspaceSpec(memory_type=MemoryType.RAM))
        assert (ws.start, ws.end) == (0x20000200, 0x20005000)
        assert ws.start_page is None
        assert ws.page_count == 0
        assert not ws.is_flash

    def test_eeprom_on_l15(self):
        """EEPROM resolves to the data EEPROM range."""
        dev = find_device(0x416)
        ws = resolve_workspace(dev, WorkspaceSpec(memory_type=MemoryType.EEPROM))
        assert (ws.start, ws.end) == (0x08080000, 0x08081000)

    def test_eeprom_missing(self, f1):
        """EEPROM on a chip without it is rejected."""
        with pytest.raises(InvalidSelectorError, match="does not have EEPROM"):
            resolve_workspace(f1, WorkspaceSpec(memory_type=MemoryType.EEPROM))

    def test_any_region(self):
        """ANY allows the whole address space."""
        assert allowed_region(find_device(0x410), MemoryType.ANY) == (0, 0xFFFFFFFF)


class TestAddressSelector:
    """Resolution of address selectors."""

    def test_relative_ram(self, f1):
        """'+0x1000:100' in RAM is offset from the reserved boundary."""
        spec = WorkspaceSpec(memory_type=MemoryType.RAM, address=0x1000, relative=True, length=100)
        ws = resolve_workspace(f1, spec)
        assert (ws.start, ws.end) == (0x20001200, 0x20001264)
        assert ws.length == 100

    def test_absolute_flash_partial_pages(self, f1):
        """A range straddling page boundaries covers every touched page."""
        spec = WorkspaceSpec(address=0x08000410, relative=False, length=0x400)
        ws = resolve_workspace(f1, spec)
        assert ws.start == 0x08000410
        assert ws.end == 0x08000810
        assert ws.start_page == 1
        assert ws.page_count == 2

    def test_length_from_input(self, f1):
        """with_length fills in the input size."""
        spec = WorkspaceSpec().with_length(300)
        ws = resolve_workspace(f1, spec)
        assert (ws.start, ws.end) == (0x08000000, 0x0800012C)
        assert ws.page_count == 1

    def test_with_length_keeps_explicit(self):
        """An explicit length is not overridden."""
        spec = WorkspaceSpec(length=16)
        assert spec.with_length(300).length == 16

    def test_open_ended_range(self, f1):
        """Without a length the range runs to the end of the region."""
        ws = resolve_workspace(f1, WorkspaceSpec(address=0x800))
        assert ws.end == 0x08020000
        assert ws.page_count == 126

    def test_out_of_bounds(self, f1):
        """Ranges past the region end are rejected."""
        spec = WorkspaceSpec(address=0x1FF00, length=0x200)
        with pytest.raises(RegionOutOfBoundsError) as exc_info:
            resolve_workspace(f1, spec)
        assert exc_info.value.end == 0x08020100
        assert exc_info.value.allowed_end == 0x08020000

    def test_below_region(self, f1):
        """An absolute address below the region is rejected."""
        spec = WorkspaceSpec(memory_type=MemoryType.RAM, address=0x20000000, relative=False, length=4)
        with pytest.raises(RegionOutOfBoundsError):
            resolve_workspace(f1, spec)


class TestPageSelector:
    """Resolution of page selectors."""

    def test_page_range(self, f1):
        """Pages 4-5 map to their byte range."""
        ws = resolve_workspace(f1, WorkspaceSpec(start_page=4, page_count=2))
        assert (ws.start, ws.end) == (0x08001000, 0x08001800)
        assert ws.start_page == 4
        assert ws.page_count == 2

    def test_count_without_start(self, f1):
        """A page count alone starts at page 0."""
        ws = resolve_workspace(f1, WorkspaceSpec(page_count=3))
        assert ws.start == 0x08000000
        assert ws.page_count == 3

    def test_all_pages_collapse_to_full_flash(self, f1):
        """Covering every page from 0 becomes the whole-flash marker."""
        ws = resolve_workspace(f1, WorkspaceSpec(start_page=0, page_count=128))
        assert ws.page_count == FULL_FLASH_PAGES
        assert ws.is_full_flash

    def test_full_flash_marker(self, f1):
        """0xFFFF pages is the whole flash."""
        ws = resolve_workspace(f1, WorkspaceSpec(start_page=0, page_count=FULL_FLASH_PAGES))
        assert (ws.start, ws.end) == (0x08000000, 0x08020000)

    def test_pages_past_end(self, f1):
        """Pages past the end of flash are rejected."""
        with pytest.raises(RegionOutOfBoundsError):
            resolve_workspace(f1, WorkspaceSpec(start_page=127, page_count=2))

    def test_pages_outside_flash(self, f1):
        """Page selectors only apply to flash."""
        with pytest.raises(InvalidSelectorError, match="only for flash"):
            resolve_workspace(f1, WorkspaceSpec(memory_type=MemoryType.RAM, start_page=0))

    def test_conflicting_selectors(self, f1):
        """Pages and addresses cannot be combined."""
        with pytest.raises(InvalidSelectorError, match="Can't specify"):
            resolve_workspace(f1, WorkspaceSpec(start_page=1, address=0x100))


class TestExecuteAddress:
    """Resolution of the execute address."""

    def test_relative_execute(self, f1):
        """Relative execute addresses are offset from the region start."""
        ws = resolve_workspace(f1, WorkspaceSpec(execute=0x100, execute_relative=True))
        assert ws.execute == 0x08000100

    def test_zero_means_flash_start(self, f1):
        """Absolute execute address 0 jumps to the start of flash."""
        ws = resolve_workspace(f1, WorkspaceSpec(memory_type=MemoryType.RAM, execute=0))
        assert ws.execute == 0x08000000

    def test_execute_in_ram(self, f1):
        """Usable RAM is a valid execute target."""
        ws = resolve_workspace(f1, WorkspaceSpec(execute=0x20000400))
        assert ws.execute == 0x20000400

    def test_execute_outside(self, f1):
        """Execute targets outside flash and usable RAM are rejected."""
        with pytest.raises(RegionOutOfBoundsError, match="must be in flash or RAM"):
            resolve_workspace(f1, WorkspaceSpec(execute=0x20000100))


class TestIdempotence:
    """Resolving the selectors of an already resolved range is stable."""

    def test_same_selectors_same_result(self, f1):
        """Resolving the same selectors twice gives equal workspaces."""
        spec = WorkspaceSpec(memory_type=MemoryType.RAM, address=0x1000, length=100)
        assert resolve_workspace(f1, spec) == resolve_workspace(f1, spec)

    def test_resolve_twice(self, f1):
        """Feeding the resolved range back yields the same workspace."""
        first = resolve_workspace(f1, WorkspaceSpec(address=0x410, length=0x400))
        again = resolve_workspace(
            f1, WorkspaceSpec(address=first.start, relative=False, length=first.length)
        )
        assert again == first

    def test_describe(self):
        """describe() reports range and pages."""
        ws = ResolvedWorkspace(MemoryType.FLASH, 0x08000000, 0x08000800, 0, 2)
        assert "length is 2048 bytes" in ws.describe()
        assert "Affected 2 pages from page 0" in ws.describe()
