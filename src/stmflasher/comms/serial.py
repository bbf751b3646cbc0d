"""
Serial Port Utilities for the STM32 Bootloader
==============================================

This module provides utilities for managing the serial port connected to
the target's USART bootloader. It handles:

- Port enumeration and detection
- Automatic detection of likely USB-serial adapters
- Port configuration for the bootloader (8 data bits, even parity)
- Friendly errors when a port cannot be opened

Hardware Requirements
---------------------
The target must be started in system memory boot mode (BOOT0 high,
BOOT1 low on most families) with its bootloader USART (usually USART1 on
PA9/PA10) wired to a 3.3V USB-serial adapter.

Serial Port Settings
--------------------
The bootloader auto-detects the baud rate from the first INIT byte and
requires:
- Data Bits: 8
- Parity: Even
- Stop Bits: 1
- Flow Control: None

Once the INIT byte has been acknowledged the baud rate is locked until the
device is reset, so a resumed connection (``--no-init``) must use the same
rate as the first one.
"""

import logging
from dataclasses import dataclass
from typing import Final, Optional

import serial
import serial.tools.list_ports

from stmflasher.errors import ConnectionError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Baud rates accepted by the command line
VALID_BAUD_RATES: Final[tuple[int, ...]] = (
    1200, 1800, 2400, 4800, 9600, 14400, 19200, 28800, 38400, 56000,
    57600, 76800, 115200, 128000, 230400, 256000, 460800, 500000,
    576000, 921600,
)

DEFAULT_BAUD_RATE: Final[int] = 57600

# Per-read deadline in seconds
DEFAULT_TIMEOUT: Final[float] = 3.0

# Adapter vendors, most preferred first when auto-detecting
KNOWN_VENDORS: Final[dict[int, str]] = {
    0x0403: "FTDI",
    0x10C4: "Silicon Labs",
    0x0483: "STMicroelectronics",   # ST-LINK virtual COM port
    0x067B: "Prolific",
    0x1A86: "QinHeng",              # CH340
}

# Vendors picked before any other USB adapter
PREFERRED_VENDORS: Final[tuple[int, ...]] = (0x0403, 0x10C4, 0x0483)

# pyserial error text -> friendlier message
_OPEN_ERRORS: Final[tuple[tuple[str, str], ...]] = (
    ("permission denied",
     "Permission denied accessing {device}. On Linux, add your user to the "
     "'dialout' group: sudo usermod -a -G dialout $USER"),
    ("no such file",
     "Serial port not found: {device}. Use 'stmflash ports' to list ports."),
    ("filenotfound",
     "Serial port not found: {device}. Use 'stmflash ports' to list ports."),
    ("busy",
     "Serial port {device} is busy. Close any other program using it."),
    ("in use",
     "Serial port {device} is busy. Close any other program using it."),
)


# =============================================================================
# Port Discovery
# =============================================================================

@dataclass(frozen=True)
class PortInfo:
    """
    A serial port reported by the operating system.

    Attributes:
        device: Path or name to open ('/dev/ttyUSB0', 'COM3')
        description: Driver description
        manufacturer: USB manufacturer string, if any
        product: USB product string, if any
        serial_number: USB serial number, if any
        vid: USB vendor ID, None for on-board UARTs
        pid: USB product ID, None for on-board UARTs
    """

    device: str
    description: str
    manufacturer: Optional[str]
    product: Optional[str]
    serial_number: Optional[str]
    vid: Optional[int]
    pid: Optional[int]

    @classmethod
    def from_comport(cls, port) -> "PortInfo":
        """Build from a pyserial ListPortInfo."""
        return cls(
            device=port.device,
            description=port.description or "",
            manufacturer=port.manufacturer,
            product=port.product,
            serial_number=port.serial_number,
            vid=port.vid,
            pid=port.pid,
        )

    @property
    def is_usb(self) -> bool:
        return self.vid is not None

    @property
    def vendor_name(self) -> Optional[str]:
        """Adapter vendor, for the vendors we know."""
        return KNOWN_VENDORS.get(self.vid) if self.is_usb else None

    @property
    def usb_id(self) -> str:
        """'VVVV:PPPP', or '' for non-USB ports."""
        if not self.is_usb:
            return ""
        return f"{self.vid:04X}:{self.pid or 0:04X}"

    def __str__(self) -> str:
        text = self.device
        if self.description:
            text += f" - {self.description}"
        if self.vendor_name:
            text += f" ({self.vendor_name})"
        return text


def list_serial_ports() -> list[PortInfo]:
    """Return every serial port pyserial can see."""
    ports = [PortInfo.from_comport(p) for p in serial.tools.list_ports.comports()]
    for port in ports:
        logger.debug("Found port %s [%s]", port.device, port.usb_id or "no USB id")
    return ports


def find_usb_port() -> Optional[str]:
    """
    Guess which port the target is wired to.

    USB adapters from PREFERRED_VENDORS win in the listed order; otherwise
    the first USB adapter is used. On-board UARTs are never picked.

    Returns:
        Device path, or None when no USB adapter is present.
    """
    candidates = [p for p in list_serial_ports() if p.is_usb]
    if not candidates:
        logger.debug("No USB serial adapter present")
        return None

    def rank(port: PortInfo) -> int:
        if port.vid in PREFERRED_VENDORS:
            return PREFERRED_VENDORS.index(port.vid)
        return len(PREFERRED_VENDORS)

    chosen = min(candidates, key=rank)
    logger.info("Auto-detected port: %s", chosen)
    return chosen.device


def format_port_list(ports: list[PortInfo], verbose: bool = False) -> str:
    """One port per line, or an indented block per port when verbose."""
    if not ports:
        return "No serial ports found."
    if not verbose:
        return "\n".join(f"  {port}" for port in ports)

    blocks = []
    for port in ports:
        fields = [
            ("Description", port.description),
            ("Manufacturer", port.manufacturer),
            ("Product", port.product),
            ("USB VID:PID", port.usb_id + (f" ({port.vendor_name})" if port.vendor_name else "")),
            ("Serial", port.serial_number),
        ]
        lines = [f"  {port.device}"]
        lines.extend(f"    {label}: {value}" for label, value in fields if value)
        blocks.append("\n".join(lines))
    return "\n".join(blocks)


# =============================================================================
# Opening and Closing
# =============================================================================

def open_serial_port(
    device: str,
    baud_rate: int = DEFAULT_BAUD_RATE,
    timeout: float = DEFAULT_TIMEOUT,
) -> serial.Serial:
    """
    Open device in the bootloader's line format: 8 data bits, even
    parity, 1 stop bit, no flow control. Pending input and output are
    discarded.

    Raises:
        ValueError: If baud_rate is not in VALID_BAUD_RATES.
        ConnectionError: If the port cannot be opened.
    """
    if baud_rate not in VALID_BAUD_RATES:
        raise ValueError(
            f"Invalid baud rate: {baud_rate}. "
            f"Valid rates: {', '.join(map(str, VALID_BAUD_RATES))}"
        )

    try:
        port = serial.Serial(
            port=device,
            baudrate=baud_rate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_EVEN,
            stopbits=serial.STOPBITS_ONE,
            timeout=timeout,
            xonxoff=False,
            rtscts=False,
            dsrdtr=False,
        )
    except serial.SerialException as e:
        reason = str(e).lower()
        for needle, message in _OPEN_ERRORS:
            if needle in reason:
                raise ConnectionError(message.format(device=device)) from e
        raise ConnectionError(f"Cannot open {device}: {e}") from e

    port.reset_input_buffer()
    port.reset_output_buffer()
    logger.debug("Opened %s at %s, timeout %.1fs", device, describe_port_settings(port), timeout)
    return port


def close_serial_port(port: Optional[serial.Serial]) -> None:
    """
    Close port if it is open.

    Failures are logged, not raised, so this is safe in finally blocks.
    """
    if port is None or not port.is_open:
        return
    try:
        port.reset_output_buffer()
        port.close()
    except (serial.SerialException, OSError) as e:
        logger.warning("Error closing serial port: %s", e)
    else:
        logger.debug("Serial port closed")


def describe_port_settings(port: serial.Serial) -> str:
    """Line settings in the usual short form, e.g. '57600 8E1'."""
    return f"{port.baudrate} {port.bytesize}{port.parity}{int(port.stopbits)}"
