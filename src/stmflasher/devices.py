"""
STM32 Device Catalog
====================

This module provides the memory geography of every chip the flasher knows
about. The table corresponds to the "Bootloader device-dependent parameters"
table in ST application note AN2606.

Device Identification
---------------------
During the handshake the bootloader answers GET-ID with a 16-bit product ID
(PID). The PID is looked up in DEVICES; an unknown PID is not supported
because the flasher would have no way to know where flash, RAM and the
bootloader's reserved RAM are.

Address Ranges
--------------
All ranges are half-open: [start, end). A zero-width EEPROM range means
the chip has no EEPROM. AN2606 lists the option byte upper bound
inclusively; it is stored here one past the last byte like every other
range.

Note that F2 and F4 devices have sectors of different page sizes and only
the first sectors (of one page size) are described here.

Reference
---------
- ST AN2606: STM32 microcontroller system memory boot mode
- ST AN3155: USART protocol used in the STM32 bootloader
"""

from dataclasses import dataclass
from typing import Optional


# =============================================================================
# Device Descriptor
# =============================================================================

@dataclass(frozen=True)
class DeviceDescriptor:
    """
    Memory map of one STM32 device family.

    Attributes:
        product_id: 12-bit product ID returned by GET-ID (e.g. 0x410)
        name: Human-readable family name
        ram_start: First byte of SRAM
        ram_bootloader_reserved: First byte of SRAM not used by the bootloader
        ram_end: One past the last byte of SRAM
        flash_start: First byte of main flash
        flash_end: One past the last byte of main flash
        flash_pages_per_sector: Pages grouped in one write-protection sector
        flash_page_size: Erase page size in bytes
        system_memory_start: First byte of system memory (bootloader ROM)
        system_memory_end: One past the last byte of system memory
        option_bytes_start: First option byte
        option_bytes_end: One past the last option byte
        eeprom_start: First byte of data EEPROM
        eeprom_end: One past the last byte of data EEPROM
    """
    product_id: int
    name: str
    ram_start: int
    ram_bootloader_reserved: int
    ram_end: int
    flash_start: int
    flash_end: int
    flash_pages_per_sector: int
    flash_page_size: int
    system_memory_start: int
    system_memory_end: int
    option_bytes_start: int
    option_bytes_end: int
    eeprom_start: int = 0
    eeprom_end: int = 0

    def __post_init__(self) -> None:
        """Validate that the memory map is self-consistent."""
        if not self.ram_start <= self.ram_bootloader_reserved <= self.ram_end:
            raise ValueError(
                f"{self.name}: bootloader RAM boundary "
                f"0x{self.ram_bootloader_reserved:08X} outside RAM"
            )
        if self.flash_start >= self.flash_end:
            raise ValueError(f"{self.name}: empty flash range")
        if self.flash_page_size <= 0:
            raise ValueError(f"{self.name}: invalid page size")
        if self.eeprom_end < self.eeprom_start:
            raise ValueError(f"{self.name}: inverted EEPROM range")

    @property
    def ram_size(self) -> int:
        """Total SRAM size in bytes."""
        return self.ram_end - self.ram_start

    @property
    def ram_reserved_size(self) -> int:
        """Bytes of SRAM reserved by the bootloader."""
        return self.ram_bootloader_reserved - self.ram_start

    @property
    def flash_size(self) -> int:
        """Maximum main flash size in bytes."""
        return self.flash_end - self.flash_start

    @property
    def flash_page_count(self) -> int:
        """Number of erase pages in main flash."""
        return self.flash_size // self.flash_page_size

    @property
    def flash_sector_count(self) -> int:
        """Number of write-protection sectors in main flash."""
        return self.flash_size // (self.flash_page_size * self.flash_pages_per_sector)

    @property
    def system_memory_size(self) -> int:
        return self.system_memory_end - self.system_memory_start

    @property
    def option_bytes_size(self) -> int:
        return self.option_bytes_end - self.option_bytes_start

    @property
    def eeprom_size(self) -> int:
        return self.eeprom_end - self.eeprom_start

    @property
    def has_eeprom(self) -> bool:
        """Return True if the device has data EEPROM."""
        return self.eeprom_size > 0

    def in_flash(self, address: int) -> bool:
        """Return True if address lies in main flash."""
        return self.flash_start <= address < self.flash_end

    def in_usable_ram(self, address: int) -> bool:
        """Return True if address lies in RAM not reserved by the bootloader."""
        return self.ram_bootloader_reserved <= address < self.ram_end


# =============================================================================
# Device Table
# =============================================================================

def _device(
    pid: int,
    name: str,
    ram: tuple[int, int, int],
    flash: tuple[int, int, int, int],
    system: tuple[int, int],
    option: tuple[int, int],
    eeprom: tuple[int, int] = (0, 0),
) -> DeviceDescriptor:
    return DeviceDescriptor(
        product_id=pid,
        name=name,
        ram_start=ram[0],
        ram_bootloader_reserved=ram[1],
        ram_end=ram[2],
        flash_start=flash[0],
        flash_end=flash[1],
        flash_pages_per_sector=flash[2],
        flash_page_size=flash[3],
        system_memory_start=system[0],
        system_memory_end=system[1],
        option_bytes_start=option[0],
        option_bytes_end=option[1],
        eeprom_start=eeprom[0],
        eeprom_end=eeprom[1],
    )


_CATALOG: tuple[DeviceDescriptor, ...] = (
    _device(0x412, "STM32F Low-density",
            (0x20000000, 0x20000200, 0x20002800),
            (0x08000000, 0x08008000, 4, 1024),
            (0x1FFFF000, 0x1FFFF800), (0x1FFFF800, 0x1FFFF810)),
    _device(0x410, "STM32F Medium-density",
            (0x20000000, 0x20000200, 0x20005000),
            (0x08000000, 0x08020000, 4, 1024),
            (0x1FFFF000, 0x1FFFF800), (0x1FFFF800, 0x1FFFF810)),
    _device(0x414, "STM32F High-density",
            (0x20000000, 0x20000200, 0x20010000),
            (0x08000000, 0x08080000, 2, 2048),
            (0x1FFFF000, 0x1FFFF800), (0x1FFFF800, 0x1FFFF810)),
    _device(0x418, "STM32F Connectivity line",
            (0x20000000, 0x20001000, 0x20010000),
            (0x08000000, 0x08040000, 2, 2048),
            (0x1FFFB000, 0x1FFFF800), (0x1FFFF800, 0x1FFFF810)),
    _device(0x420, "STM32F Low/Medium-density VL",
            (0x20000000, 0x20000200, 0x20002000),
            (0x08000000, 0x08020000, 4, 1024),
            (0x1FFFF000, 0x1FFFF800), (0x1FFFF800, 0x1FFFF810)),
    _device(0x428, "STM32F High-density VL",
            (0x20000000, 0x20000200, 0x20008000),
            (0x08000000, 0x08080000, 2, 2048),
            (0x1FFFF000, 0x1FFFF800), (0x1FFFF800, 0x1FFFF810)),
    _device(0x430, "STM32F XL-density",
            (0x20000000, 0x20000800, 0x20018000),
            (0x08000000, 0x08100000, 2, 2048),
            (0x1FFFE000, 0x1FFFF800), (0x1FFFF800, 0x1FFFF810)),
    _device(0x416, "STM32L Medium-density",
            (0x20000000, 0x20000800, 0x20004000),
            (0x08000000, 0x08020000, 16, 256),
            (0x1FF00000, 0x1FF01000), (0x1FF80000, 0x1FF80010),
            (0x08080000, 0x08081000)),
    _device(0x436, "STM32L High-density",
            (0x20000000, 0x20001000, 0x2000C000),
            (0x08000000, 0x08060000, 16, 256),
            (0x1FF00000, 0x1FF02000), (0x1FF80000, 0x1FF80020),
            (0x08080000, 0x08083000)),
    _device(0x440, "STM32F051x",
            (0x20000000, 0x20000800, 0x20002000),
            (0x08000000, 0x08010000, 4, 1024),
            (0x1FFFEC00, 0x1FFFF800), (0x1FFFF800, 0x1FFFF80C)),
    _device(0x411, "STM32F2xx",
            (0x20000000, 0x20002000, 0x20020000),
            (0x08000000, 0x08100000, 4, 16384),
            (0x1FFF0000, 0x1FFF7800), (0x1FFFC000, 0x1FFFC010)),
    _device(0x413, "STM32F4xx",
            (0x20000000, 0x20002000, 0x20020000),
            (0x08000000, 0x08100000, 4, 16384),
            (0x1FFF0000, 0x1FFF7800), (0x1FFFC000, 0x1FFFC010)),
    # Not (yet) in AN2606: bootloader-reserved RAM is a best guess
    _device(0x427, "STM32L Medium-density Plus",
            (0x20000000, 0x20000800, 0x2000C000),
            (0x08000000, 0x08040000, 16, 256),
            (0x1FF00000, 0x1FF02000), (0x1FF80000, 0x1FF80020),
            (0x08080000, 0x08082000)),
    _device(0x422, "STM32F30x & F31x",
            (0x20000000, 0x20002000, 0x20003000),
            (0x08000000, 0x08040000, 2, 2048),
            (0x1FFFE000, 0x1FFFF800), (0x1FFFF800, 0x1FFFF810)),
    _device(0x432, "STM32F37x & F38x",
            (0x20000000, 0x20002000, 0x20003000),
            (0x08000000, 0x08040000, 2, 2048),
            (0x1FFFE000, 0x1FFFF800), (0x1FFFF800, 0x1FFFF810)),
    _device(0x444, "STM32F050x",
            (0x20000000, 0x20000800, 0x20001000),
            (0x08000000, 0x08008000, 4, 1024),
            (0x1FFFEC00, 0x1FFFF800), (0x1FFFF800, 0x1FFFF80C)),
)

# Catalog keyed by product ID
DEVICES: dict[int, DeviceDescriptor] = {dev.product_id: dev for dev in _CATALOG}


# =============================================================================
# Lookup Functions
# =============================================================================

def find_device(product_id: int) -> Optional[DeviceDescriptor]:
    """
    Look up a device by its product ID.

    Args:
        product_id: 16-bit PID returned by the GET-ID command

    Returns:
        The matching DeviceDescriptor, or None if the PID is unknown

    Example:
        >>> find_device(0x410).name
        'STM32F Medium-density'
        >>> find_device(0x999) is None
        True
    """
    return DEVICES.get(product_id)


def get_supported_devices() -> list[DeviceDescriptor]:
    """Return all known devices sorted by product ID."""
    return sorted(DEVICES.values(), key=lambda dev: dev.product_id)
