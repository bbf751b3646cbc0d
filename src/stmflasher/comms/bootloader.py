"""
STM32 USART Bootloader Protocol Implementation
==============================================

This module implements the command/response protocol spoken by the
system-memory bootloader of STM32 microcontrollers (ST AN3155). It handles:

- Connection establishment (INIT handshake with retries)
- Capability discovery (GET, GET-VERSION, GET-ID)
- Command framing with complement and XOR checksums
- Memory primitives: read, write, erase, protect/unprotect, go

Protocol Overview
-----------------
Every exchange starts with the host sending an opcode followed by its
one's complement. The device answers with a single byte:

    ┌────────┬────────┐          ┌───────┐
    │ opcode │ ~opcode│   --->   │  ACK  │  0x79: accepted
    └────────┴────────┘          │ NACK  │  0x1F: rejected
                                 └───────┘

Commands that carry an address then send it big-endian followed by the
XOR of its four bytes, and wait for another ACK:

    ┌────┬────┬────┬────┬──────────┐
    │ A3 │ A2 │ A1 │ A0 │ A3^A2^A1^A0 │
    └────┴────┴────┴────┴──────────┘

Erase Sub-Protocols
-------------------
The opcode the device reports for "erase" selects one of two incompatible
framings:

- 0x43 (regular): page count and page numbers are single bytes, mass
  erase is the single command 0xFF.
- 0x44 (extended): page count and numbers are 16-bit MSB-first, mass
  erase is 0xFFFF followed by checksum 0x00.

The choice is computed once from the discovered command table
(CommandTable.erase_protocol) and never re-checked ad hoc.

Connection Handshake
--------------------
1. Host sends INIT (0x7F) up to 5 times until a byte comes back
2. ACK means the bootloader locked onto our baud rate; NACK means it
   already had (connection resumed)
3. GET lists the bootloader version and supported opcodes
4. GET-VERSION reports the version and two option bytes
5. GET-ID reports the product ID, matched against the device catalog

References
----------
- ST AN3155: USART protocol used in the STM32 bootloader
- ST AN2606: STM32 microcontroller system memory boot mode
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Final, Optional

from stmflasher.comms.checksum import (
    complement,
    encode_address,
    encode_command,
    xor_checksum,
)
from stmflasher.devices import DeviceDescriptor, find_device
from stmflasher.errors import (
    CommsError,
    NackError,
    ProtocolError,
    TimeoutError,
    UnexpectedReplyError,
    UnsupportedDeviceError,
)

if TYPE_CHECKING:
    from stmflasher.comms.transport import Transport

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Constants
# =============================================================================

# Positive acknowledgement
ACK: Final[int] = 0x79

# Negative acknowledgement
NACK: Final[int] = 0x1F

# Baud-rate detection byte sent to start the bootloader
CMD_INIT: Final[int] = 0x7F

# GET is the only opcode known before discovery
CMD_GET: Final[int] = 0x00

# Erase opcode value that selects the extended (16-bit) erase framing
CMD_EXTENDED_ERASE: Final[int] = 0x44

# Number of INIT bytes sent before giving up
INIT_ATTEMPTS: Final[int] = 5

# Number of opcodes in the GET reply that we understand
KNOWN_COMMAND_COUNT: Final[int] = 11

# Maximum bytes per read/write memory command
MAX_TRANSFER_SIZE: Final[int] = 256

# Page count meaning "erase the whole flash"
MASS_ERASE: Final[int] = 0xFFFF

# Padding byte appended to writes that are not a multiple of 4 bytes
FILL_BYTE: Final[int] = 0xFF

# Product ID whose extended erase does not support mass erase (STM32L15xx)
NO_MASS_ERASE_PID: Final[int] = 0x416


# =============================================================================
# Command Table
# =============================================================================

class EraseProtocol(Enum):
    """Erase framing selected by the opcode the device reported."""

    REGULAR = "regular"
    EXTENDED = "extended"

    @classmethod
    def from_opcode(cls, opcode: int) -> "EraseProtocol":
        return cls.EXTENDED if opcode == CMD_EXTENDED_ERASE else cls.REGULAR


@dataclass(frozen=True)
class CommandTable:
    """
    Opcodes discovered from the device's GET reply.

    The order of the fields matches the order of the opcodes in the reply.
    """

    get: int
    get_version: int
    get_id: int
    read_memory: int
    go: int
    write_memory: int
    erase: int
    write_protect: int
    write_unprotect: int
    read_protect: int
    read_unprotect: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "CommandTable":
        """
        Build the table from the 11 opcode bytes of a GET reply.

        Raises:
            ValueError: If data does not hold exactly 11 opcodes.
        """
        if len(data) != KNOWN_COMMAND_COUNT:
            raise ValueError(
                f"Expected {KNOWN_COMMAND_COUNT} opcodes, got {len(data)}"
            )
        return cls(*data)

    @property
    def erase_protocol(self) -> EraseProtocol:
        """Erase framing implied by the erase opcode."""
        return EraseProtocol.from_opcode(self.erase)

    def __str__(self) -> str:
        return " ".join(f"{op:02X}" for op in (
            self.get, self.get_version, self.get_id, self.read_memory,
            self.go, self.write_memory, self.erase, self.write_protect,
            self.write_unprotect, self.read_protect, self.read_unprotect,
        ))


# =============================================================================
# Frame Encoders
# =============================================================================

def write_padding(length: int) -> int:
    """Number of fill bytes needed to round length up to a multiple of 4."""
    return (4 - length % 4) % 4


def encode_write_payload(data: bytes) -> bytes:
    """
    Build the data stage of a WRITE MEMORY command.

    The frame is: length byte (count - 1, including padding), payload,
    padding with FILL_BYTE up to a 4-byte boundary, then the XOR of every
    preceding byte of the frame.

    Args:
        data: 1 to 256 bytes to write.

    Returns:
        Complete data-stage frame.

    Raises:
        ValueError: If data length is out of range.
    """
    if not 0 < len(data) <= MAX_TRANSFER_SIZE:
        raise ValueError(
            f"Write length must be 1-{MAX_TRANSFER_SIZE}, got {len(data)}"
        )
    pad = write_padding(len(data))
    frame = bytearray([len(data) - 1 + pad])
    frame.extend(data)
    frame.extend([FILL_BYTE] * pad)
    frame.append(xor_checksum(frame))
    return bytes(frame)


def encode_regular_erase(start_page: int, page_count: int) -> bytes:
    """
    Build the page list of a regular (0x43) ERASE command.

    Raises:
        ValueError: If a page number or the count does not fit in one byte.
    """
    last_page = start_page + page_count - 1
    if page_count > 0x100 or last_page > 0xFF or start_page < 0:
        raise ValueError(
            f"Regular erase addresses pages 0-255, got {start_page}..{last_page}"
        )
    frame = bytearray([page_count - 1])
    frame.extend(range(start_page, start_page + page_count))
    frame.append(xor_checksum(frame))
    return bytes(frame)


def encode_extended_erase(start_page: int, page_count: int) -> bytes:
    """
    Build the page list of an extended (0x44) ERASE command.

    Count and page numbers are sent as 16-bit MSB-first values and the
    checksum covers every byte, including the count.

    Raises:
        ValueError: If a page number does not fit in 16 bits.
    """
    last_page = start_page + page_count - 1
    if page_count >= MASS_ERASE or last_page > 0xFFFF or start_page < 0:
        raise ValueError(
            f"Extended erase addresses pages 0-65535, got {start_page}..{last_page}"
        )
    frame = bytearray((page_count - 1).to_bytes(2, "big"))
    for page in range(start_page, start_page + page_count):
        frame.extend(page.to_bytes(2, "big"))
    frame.append(xor_checksum(frame))
    return bytes(frame)


# Extended mass erase: 0xFFFF plus its XOR checksum
EXTENDED_MASS_ERASE_FRAME: Final[bytes] = bytes([0xFF, 0xFF, 0x00])


# =============================================================================
# Bootloader Session
# =============================================================================

class BootloaderSession:
    """
    Command/response engine bound to one transport.

    The session is created unconnected; connect() performs the handshake,
    discovers the command table and identifies the device. After that,
    the memory primitives can be used. All state discovered during the
    handshake is read-only afterwards.

    Error Handling
    --------------
    - NACK from the device: NackError
    - Reply that is neither ACK nor NACK: UnexpectedReplyError
    - Reply that never arrives: TimeoutError (retried only during INIT)
    - Transport I/O failure: TransportError

    Usage:
        transport = SerialTransport.open('/dev/ttyUSB0')
        with BootloaderSession(transport) as session:
            session.connect()
            data = session.read_memory(0x08000000, 256)
    """

    def __init__(self, transport: "Transport"):
        """
        Initialize the session.

        Args:
            transport: Byte transport. The session owns it and closes it
                       in close().
        """
        self.transport = transport
        self._connected = False
        self._commands: Optional[CommandTable] = None
        self._device: Optional[DeviceDescriptor] = None
        self.bootloader_version: int = 0
        self.version: int = 0
        self.option1: int = 0
        self.option2: int = 0
        self.product_id: int = 0

    @property
    def connected(self) -> bool:
        """Return True once the handshake has completed."""
        return self._connected

    @property
    def commands(self) -> CommandTable:
        """Command table discovered during the handshake."""
        self._require_connected()
        return self._commands

    @property
    def device(self) -> DeviceDescriptor:
        """Catalog entry of the connected device."""
        self._require_connected()
        return self._device

    @property
    def erase_protocol(self) -> EraseProtocol:
        """Erase framing selected during the handshake."""
        return self.commands.erase_protocol

    def __enter__(self) -> "BootloaderSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Connection Management
    # -------------------------------------------------------------------------

    def connect(self, send_init: bool = True) -> DeviceDescriptor:
        """
        Perform the handshake and identify the device.

        Args:
            send_init: Send the INIT byte first. Disable to resume a
                       connection to a bootloader that was already
                       initialized at the same baud rate.

        Returns:
            Catalog entry of the connected device.

        Raises:
            TimeoutError: If the device never answers INIT.
            UnexpectedReplyError: If INIT is answered with garbage.
            UnsupportedDeviceError: If the device ID is unknown.
            ProtocolError: If a discovery reply is malformed.
        """
        if send_init:
            self._initialize()

        self._get_commands()
        self._get_version()
        self._get_id()

        device = find_device(self.product_id)
        if device is None:
            raise UnsupportedDeviceError(
                f"Unknown/unsupported device (Device ID: 0x{self.product_id:03X})",
                product_id=self.product_id,
            )

        self._device = device
        self._connected = True
        logger.info(
            "Connected to %s (PID 0x%04X), bootloader v%d.%d",
            device.name, self.product_id,
            self.bootloader_version >> 4, self.bootloader_version & 0x0F,
        )
        return device

    def close(self) -> None:
        """Release the transport. Safe to call more than once."""
        self._connected = False
        self.transport.close()

    def _initialize(self) -> None:
        """Send INIT until the bootloader answers."""
        for attempt in range(INIT_ATTEMPTS):
            self._send(bytes([CMD_INIT]))
            try:
                reply = self._read_byte()
                break
            except TimeoutError:
                logger.debug("No reply to INIT (attempt %d)", attempt + 1)
        else:
            raise TimeoutError(
                f"No reply to INIT after {INIT_ATTEMPTS} attempts. "
                "Is the device in bootloader mode?"
            )

        if reply == NACK:
            logger.warning("Got NACK from INIT, resuming existing connection")
        elif reply != ACK:
            raise UnexpectedReplyError("INIT", reply)
        else:
            logger.debug("INIT acknowledged")

    def _get_commands(self) -> None:
        """Issue GET and record the bootloader version and opcodes."""
        self._command(CMD_GET, "GET")
        remaining = self._read_byte() + 1
        if remaining < 1 + KNOWN_COMMAND_COUNT:
            raise ProtocolError(
                f"GET reply too short: {remaining} bytes, "
                f"need {1 + KNOWN_COMMAND_COUNT}"
            )
        self.bootloader_version = self._read_byte()
        self._commands = CommandTable.from_bytes(self._read(KNOWN_COMMAND_COUNT))
        remaining -= 1 + KNOWN_COMMAND_COUNT
        if remaining > 0:
            extra = self._read(remaining)
            logger.warning(
                "Bootloader reports %d commands we do not understand, skipping: %s",
                remaining, extra.hex(" "),
            )
        self._expect_ack("GET")
        logger.debug("Commands: %s", self._commands)

    def _get_version(self) -> None:
        """Issue GET-VERSION and record version and option bytes."""
        self._command(self._commands.get_version, "GET-VERSION")
        self.version, self.option1, self.option2 = self._read(3)
        self._expect_ack("GET-VERSION")

    def _get_id(self) -> None:
        """Issue GET-ID and record the product ID."""
        self._command(self._commands.get_id, "GET-ID")
        length = self._read_byte() + 1
        if length < 2:
            raise UnsupportedDeviceError(
                f"Only {length} bytes sent in the PID, unknown/unsupported device"
            )
        pid = self._read(2)
        self.product_id = (pid[0] << 8) | pid[1]
        if length > 2:
            extra = self._read(length - 2)
            logger.warning(
                "Bootloader returns %d extra bytes in PID: %s",
                length - 2, extra.hex(" "),
            )
        self._expect_ack("GET-ID")

    # -------------------------------------------------------------------------
    # Memory Primitives
    # -------------------------------------------------------------------------

    def read_memory(self, address: int, length: int) -> bytes:
        """
        Read up to 256 bytes.

        Args:
            address: 4-byte aligned start address.
            length: Number of bytes, 1-256.

        Returns:
            The bytes read.

        Raises:
            ValueError: If address or length is invalid.
            NackError: If the device rejects the command (e.g. read
                       protection is active).
        """
        self._check_transfer(address, length)
        commands = self.commands

        logger.debug("Read memory 0x%08X (%d bytes)", address, length)
        self._command(commands.read_memory, "read memory")
        self._send(encode_address(address))
        self._expect_ack(f"read memory address 0x{address:08X}")
        self._send(bytes([length - 1, complement(length - 1)]))
        self._expect_ack(f"read memory length at 0x{address:08X}")
        return self._read(length)

    def write_memory(self, address: int, data: bytes) -> None:
        """
        Write up to 256 bytes.

        Lengths that are not a multiple of 4 are padded with 0xFF; the
        padding is included in the length byte and the checksum.

        Args:
            address: 4-byte aligned start address.
            data: Bytes to write, 1-256.

        Raises:
            ValueError: If address or length is invalid.
            NackError: If the device rejects the command or the data.
        """
        self._check_transfer(address, len(data))
        commands = self.commands

        logger.debug("Write memory 0x%08X (%d bytes)", address, len(data))
        self._command(commands.write_memory, "write memory")
        self._send(encode_address(address))
        self._expect_ack(f"write memory address 0x{address:08X}")
        self._send(encode_write_payload(data))
        self._expect_ack(f"write memory data at 0x{address:08X}")

    def erase_memory(self, start_page: int, page_count: int) -> None:
        """
        Erase flash pages.

        Args:
            start_page: First page to erase.
            page_count: Number of pages; MASS_ERASE erases the whole flash
                        and 0 does nothing.

        Raises:
            ValueError: If the pages cannot be expressed in the framing.
            NackError: If the device rejects the erase.
        """
        if page_count == 0:
            return

        commands = self.commands
        protocol = commands.erase_protocol

        if protocol is EraseProtocol.EXTENDED:
            if self.product_id == NO_MASS_ERASE_PID and page_count == MASS_ERASE:
                # This family rejects extended mass erase: list every page
                start_page = 0
                page_count = self.device.flash_page_count
                logger.debug("Mass erase unsupported, erasing %d pages", page_count)

            if page_count == MASS_ERASE:
                frame = EXTENDED_MASS_ERASE_FRAME
            else:
                frame = encode_extended_erase(start_page, page_count)
        elif page_count != MASS_ERASE:
            frame = encode_regular_erase(start_page, page_count)
        else:
            frame = None

        logger.debug(
            "%s erase: %s", protocol.value,
            "mass" if page_count == MASS_ERASE else f"{page_count} pages from {start_page}",
        )
        self._command(commands.erase, "erase")
        if frame is None:
            self._command(0xFF, "mass erase")
        else:
            self._send(frame)
            stage = "mass erase" if page_count == MASS_ERASE else "page erase"
            self._expect_ack(stage)

    def write_protect(self) -> None:
        """Enable flash write protection. The device resets afterwards."""
        self._protection_command(self.commands.write_protect, "write protect")

    def write_unprotect(self) -> None:
        """Disable flash write protection. The device resets afterwards."""
        self._protection_command(self.commands.write_unprotect, "write unprotect")

    def read_protect(self) -> None:
        """Enable flash read protection. The device resets afterwards."""
        self._protection_command(self.commands.read_protect, "read protect")

    def read_unprotect(self) -> None:
        """
        Disable flash read protection.

        The device mass-erases its flash and resets afterwards.
        """
        self._protection_command(self.commands.read_unprotect, "read unprotect")

    def go(self, address: int) -> None:
        """
        Jump to address.

        Once acknowledged, the device runs the code at address and no
        longer answers bootloader commands on this connection.
        """
        commands = self.commands
        logger.debug("Go 0x%08X", address)
        self._command(commands.go, "go")
        self._send(encode_address(address))
        self._expect_ack(f"go address 0x{address:08X}")
        self._connected = False
        logger.info("Device executing at 0x%08X", address)

    # -------------------------------------------------------------------------
    # Framing
    # -------------------------------------------------------------------------

    def _protection_command(self, opcode: int, stage: str) -> None:
        """Base exchange plus the second ACK that signals completion."""
        self._command(opcode, stage)
        self._expect_ack(f"{stage} completion")
        # The device resets itself after these commands
        self._connected = False

    def _command(self, opcode: int, stage: str) -> None:
        """Send opcode and complement, then require ACK."""
        self._send(encode_command(opcode))
        self._expect_ack(stage, opcode)

    def _expect_ack(self, stage: str, opcode: Optional[int] = None) -> None:
        reply = self._read_byte()
        if reply == ACK:
            return
        if reply == NACK:
            raise NackError(stage, opcode)
        raise UnexpectedReplyError(stage, reply, opcode)

    def _send(self, data: bytes) -> None:
        self.transport.write(data)

    def _read(self, length: int) -> bytes:
        return self.transport.read(length)

    def _read_byte(self) -> int:
        return self.transport.read(1)[0]

    def _require_connected(self) -> None:
        if not self._connected:
            raise CommsError("Not connected")

    @staticmethod
    def _check_transfer(address: int, length: int) -> None:
        if not 0 < length <= MAX_TRANSFER_SIZE:
            raise ValueError(
                f"Transfer length must be 1-{MAX_TRANSFER_SIZE}, got {length}"
            )
        if address % 4:
            raise ValueError(f"Address 0x{address:08X} is not 4-byte aligned")
