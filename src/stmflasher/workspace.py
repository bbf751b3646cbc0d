"""
Workspace Resolution
====================

Turns the user's memory-type and address/page selectors into a validated
absolute byte range (and, for flash, an erase page range) on a specific
device.

Allowed Regions
---------------
Each memory type limits the operation to one region of the device's
memory map:

    Memory Type   Allowed region
    -----------   -----------------------------------------------
    FLASH         [flash_start, flash_end)
    RAM           [ram_bootloader_reserved, ram_end)
    EEPROM        [eeprom_start, eeprom_end), error if empty
    ANY           [0x00000000, 0xFFFFFFFF)

The RAM region excludes the bootloader's own working memory.

Selectors
---------
A workspace is selected either by pages (flash only) or by address:

    -s start_page[:count]        pages relative to flash start
    -S [+]address[:length]       '+' or ':' prefix means relative to the
                                 start of the allowed region

With no selector, the workspace covers the whole allowed region. A page
count of 0xFFFF means "the whole flash" and a flash workspace that covers
every page starting at page 0 is collapsed to that value, so the erase
step can use mass erase instead of a page list.

Resolution is a pure function of the device and the selectors, and every
error is raised before any device I/O takes place.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Final, Optional

from stmflasher.devices import DeviceDescriptor
from stmflasher.errors import InvalidSelectorError, RegionOutOfBoundsError

logger = logging.getLogger(__name__)


# Page count meaning "the whole flash"
FULL_FLASH_PAGES: Final[int] = 0xFFFF

# Upper bound of the ANY region
ADDRESS_SPACE_END: Final[int] = 0xFFFFFFFF


# =============================================================================
# Memory Types
# =============================================================================

class MemoryType(Enum):
    """Target memory region, selected by a one-letter code."""

    FLASH = "f"
    RAM = "r"
    EEPROM = "e"
    ANY = "a"

    @classmethod
    def from_code(cls, code: str) -> "MemoryType":
        """
        Look up a memory type by its code ('f', 'r', 'e', 'a').

        Only the first letter matters, so 'flash' and 'ram' work too.
        """
        try:
            return cls(code[:1].lower())
        except ValueError:
            raise InvalidSelectorError(f"Memory type not known: {code!r}") from None

    @property
    def label(self) -> str:
        return {
            MemoryType.FLASH: "Flash",
            MemoryType.RAM: "RAM",
            MemoryType.EEPROM: "EEPROM",
            MemoryType.ANY: "entire memory space",
        }[self]


# =============================================================================
# Workspace Data
# =============================================================================

@dataclass(frozen=True)
class WorkspaceSpec:
    """
    Selectors as given by the user.

    Attributes:
        memory_type: Region the operation is confined to
        start_page: First flash page (page selector)
        page_count: Number of flash pages, 0xFFFF for the whole flash
        address: Start address (address selector)
        relative: Address is an offset from the start of the region
        length: Number of bytes
        execute: Address to start execution at afterwards
        execute_relative: Execute address is an offset from the region start
    """
    memory_type: MemoryType = MemoryType.FLASH
    start_page: Optional[int] = None
    page_count: Optional[int] = None
    address: Optional[int] = None
    relative: bool = True
    length: Optional[int] = None
    execute: Optional[int] = None
    execute_relative: bool = False

    @property
    def has_page_selector(self) -> bool:
        return self.start_page is not None or bool(self.page_count)

    @property
    def has_address_selector(self) -> bool:
        return self.address is not None

    def with_length(self, length: int) -> "WorkspaceSpec":
        """Return a copy with length set, unless one was already given."""
        if self.length:
            return self
        return replace(self, length=length)

    def check(self) -> None:
        """
        Reject selector combinations that cannot be resolved.

        Raises:
            InvalidSelectorError: On conflicting or out-of-range selectors.
        """
        if self.has_page_selector and self.memory_type is not MemoryType.FLASH:
            raise InvalidSelectorError(
                "Page-based addressing is available only for flash"
            )
        if self.has_page_selector and self.has_address_selector:
            raise InvalidSelectorError(
                "Can't specify start page / num pages and start address/length"
            )
        if self.page_count is not None and not 0 <= self.page_count <= FULL_FLASH_PAGES:
            raise InvalidSelectorError(
                "You need to specify a page count between 0 and 65535"
            )
        if self.start_page is not None and self.start_page < 0:
            raise InvalidSelectorError(f"Invalid start page: {self.start_page}")


@dataclass(frozen=True)
class ResolvedWorkspace:
    """
    Absolute range an operation acts on.

    Attributes:
        memory_type: Region the range was validated against
        start: First byte
        end: One past the last byte
        start_page: First flash page (None outside flash)
        page_count: Flash pages covered, 0xFFFF for the whole flash
        execute: Absolute execution address, if requested
    """
    memory_type: MemoryType
    start: int
    end: int
    start_page: Optional[int] = None
    page_count: int = 0
    execute: Optional[int] = None

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def is_flash(self) -> bool:
        return self.memory_type is MemoryType.FLASH

    @property
    def is_full_flash(self) -> bool:
        return self.is_flash and self.page_count == FULL_FLASH_PAGES

    def describe(self) -> str:
        """Human-readable summary of the range and pages."""
        text = (
            f"Starting at 0x{self.start:08X} stopping at 0x{self.end:08X}, "
            f"length is {self.length} bytes"
        )
        if self.is_full_flash:
            text += "\nAffected entire flash memory"
        elif self.is_flash:
            text += f"\nAffected {self.page_count} pages from page {self.start_page}"
        return text


# =============================================================================
# Resolution
# =============================================================================

def allowed_region(device: DeviceDescriptor, memory_type: MemoryType) -> tuple[int, int]:
    """
    Return the (start, end) bounds a memory type confines operations to.

    Raises:
        InvalidSelectorError: If EEPROM is requested on a chip without it.
    """
    if memory_type is MemoryType.FLASH:
        return device.flash_start, device.flash_end
    if memory_type is MemoryType.RAM:
        return device.ram_bootloader_reserved, device.ram_end
    if memory_type is MemoryType.EEPROM:
        if not device.has_eeprom:
            raise InvalidSelectorError(f"{device.name} does not have EEPROM")
        return device.eeprom_start, device.eeprom_end
    return 0, ADDRESS_SPACE_END


def resolve_workspace(device: DeviceDescriptor, spec: WorkspaceSpec) -> ResolvedWorkspace:
    """
    Resolve selectors into an absolute workspace on device.

    Args:
        device: Catalog entry of the connected device.
        spec: User selectors.

    Returns:
        Validated workspace.

    Raises:
        InvalidSelectorError: On conflicting selectors or missing EEPROM.
        RegionOutOfBoundsError: If the range or the execute address lies
                                outside its allowed region.
    """
    spec.check()
    allowed_start, allowed_end = allowed_region(device, spec.memory_type)
    is_flash = spec.memory_type is MemoryType.FLASH
    page_size = device.flash_page_size
    logger.debug("Working with %s", spec.memory_type.label)

    # Start address and start page
    start_page = spec.start_page
    if start_page is None and spec.page_count:
        start_page = 0

    if start_page is not None:
        start = allowed_start + start_page * page_size
    else:
        address = spec.address or 0
        start = allowed_start + address if spec.relative else address
        if is_flash:
            start_page = (start - device.flash_start) // page_size

    # Execution address
    execute = spec.execute
    if execute is not None:
        if spec.execute_relative:
            execute += allowed_start
        elif execute == 0:
            execute = device.flash_start

    # Length and end
    length = spec.length or 0
    page_count = spec.page_count or 0
    if not length and page_count:
        if page_count == FULL_FLASH_PAGES:
            length = allowed_end - allowed_start
        else:
            length = page_count * page_size
    if length:
        end = start + length
    else:
        end = allowed_end
        length = end - start

    # Pages covered
    if is_flash:
        if not page_count:
            offset = start - (device.flash_start + start_page * page_size)
            page_count = max(0, (offset + length + page_size - 1) // page_size)
        if start_page == 0 and page_count * page_size >= device.flash_size:
            page_count = FULL_FLASH_PAGES
    else:
        start_page = None

    # Validation
    if start < allowed_start or end > allowed_end:
        raise RegionOutOfBoundsError(
            "Can't fit input to selected region or specified start/length are "
            f"invalid: start 0x{start:08X} < 0x{allowed_start:08X} OR "
            f"end 0x{end:08X} > 0x{allowed_end:08X}",
            start=start,
            end=end,
            allowed_start=allowed_start,
            allowed_end=allowed_end,
        )
    if execute is not None and not (device.in_flash(execute) or device.in_usable_ram(execute)):
        raise RegionOutOfBoundsError(
            f"Execution address (0x{execute:08X}) must be in flash or RAM"
        )

    workspace = ResolvedWorkspace(
        memory_type=spec.memory_type,
        start=start,
        end=end,
        start_page=start_page,
        page_count=page_count if is_flash else 0,
        execute=execute,
    )
    logger.debug(workspace.describe())
    return workspace


# =============================================================================
# Selector Parsing
# =============================================================================

def parse_number(text: str) -> int:
    """
    Parse an unsigned number with a 0x/0o/0b prefix or in decimal.

    Raises:
        InvalidSelectorError: If text is not a non-negative number.
    """
    try:
        value = int(text.strip(), 0)
    except ValueError:
        raise InvalidSelectorError(f"Invalid number: {text!r}") from None
    if value < 0:
        raise InvalidSelectorError(f"Number must not be negative: {text!r}")
    return value


def parse_address_selector(text: str) -> tuple[int, bool, Optional[int]]:
    """
    Parse '[+]address[:length]'.

    A leading '+' or ':' makes the address relative to the start of the
    allowed region; an empty address means 0.

    Returns:
        (address, relative, length), length None when not given.

    Example:
        >>> parse_address_selector('+0x1000:100')
        (4096, True, 100)
        >>> parse_address_selector('0x08001000')
        (134221824, False, None)
    """
    relative = text.startswith(("+", ":"))
    address_text, sep, length_text = text.lstrip("+").partition(":")
    address = parse_number(address_text) if address_text else 0
    length = parse_number(length_text) if sep else None
    return address, relative, length


def parse_page_selector(text: str) -> tuple[int, Optional[int]]:
    """
    Parse 'start_page[:count]'.

    Returns:
        (start_page, page_count), page_count None when not given.
    """
    start_text, sep, count_text = text.partition(":")
    start_page = parse_number(start_text)
    page_count = parse_number(count_text) if sep else None
    if page_count is not None and page_count > FULL_FLASH_PAGES:
        raise InvalidSelectorError(
            "You need to specify a page count between 0 and 65535"
        )
    return start_page, page_count


def parse_execute_address(text: str) -> tuple[int, bool]:
    """
    Parse '[+]address' for execution.

    Returns:
        (address, relative)

    Raises:
        InvalidSelectorError: If the address is not word-aligned.
    """
    relative = text.startswith("+")
    address = parse_number(text.lstrip("+"))
    if address % 4:
        raise InvalidSelectorError("Execution address must be word-aligned")
    return address, relative
