"""
STM Flasher Error Hierarchy
===========================

This module defines the exception hierarchy for the whole flasher.
All exceptions inherit from FlasherError, allowing callers to catch all
flasher-related errors with a single except clause if desired.

Exception Hierarchy
-------------------
FlasherError (base)
├── CommsError (serial communication)
│   ├── ConnectionError - cannot open or configure the serial port
│   ├── TransportError - underlying I/O failure while talking to the port
│   ├── TimeoutError - expected reply never arrived
│   └── ProtocolError - bootloader protocol violation
│       ├── NackError - device rejected a command or stage
│       └── UnexpectedReplyError - reply was neither ACK nor NACK
├── DeviceError (device identification)
│   └── UnsupportedDeviceError - unknown product ID or short ID reply
├── WorkspaceError (address/page resolution)
│   ├── InvalidSelectorError - selectors that cannot be combined
│   └── RegionOutOfBoundsError - range outside the allowed memory region
├── TransferError (chunked read/write)
│   ├── VerifyError - read-back mismatch past the retry ceiling
│   ├── ShortInputError - input ran out before the range was filled
│   └── TransferCancelledError - transfer cancelled between chunks
└── ImageError - input/output image cannot be opened or parsed

Design Philosophy
-----------------
Low-level byte primitives never terminate the process. Every failure is
raised as one of these exceptions and propagates up to the caller, so the
command-line layer can release the serial port and report cleanly.

Workspace errors are always raised before any device I/O occurs, so no
partial hardware state is touched when a selector is invalid.
"""

from typing import Optional


# =============================================================================
# Base Exception Class
# =============================================================================

class FlasherError(Exception):
    """
    Base exception for all flasher errors.

    All exceptions in the package inherit from this class, allowing callers
    to catch all flasher-related errors with a single except clause:

        try:
            session.connect()
        except FlasherError as e:
            print(f"Error: {e}")
    """
    pass


# =============================================================================
# Communication Exceptions
# =============================================================================

class CommsError(FlasherError):
    """Base exception for serial communication errors."""
    pass


class ConnectionError(CommsError):
    """
    Cannot open the serial port.

    Raised when:
    - Serial port not found
    - Permission denied
    - Port busy or cannot be configured
    """
    pass


class TransportError(CommsError):
    """
    Underlying I/O failure on the serial transport.

    Always fatal: the current operation is aborted and the error
    propagates to the caller.
    """
    pass


class TimeoutError(CommsError):
    """
    Communication timeout error.

    Raised when a read blocks past the transport's deadline without
    receiving the expected number of bytes. This could indicate:
    - Device not in bootloader mode (BOOT0 not set)
    - Cable disconnected or TX/RX swapped
    - Baud rate or parity mismatch

    Note:
        This is a flasher-specific TimeoutError, distinct from the
        Python builtin TimeoutError. It inherits from CommsError
        for consistent error handling in the comms module.

    Attributes:
        expected: Number of bytes that were requested
        received: Number of bytes that arrived before the deadline
    """

    def __init__(self, message: str, expected: int = 0, received: int = 0):
        self.expected = expected
        self.received = received
        super().__init__(message)


class ProtocolError(CommsError):
    """
    Bootloader protocol error.

    Raised when the device sends a reply that does not fit the
    command/response framing (for example a GET reply that is too short
    or a missing trailing ACK).
    """
    pass


class NackError(ProtocolError):
    """
    The device explicitly rejected a command (NACK).

    Attributes:
        opcode: Command opcode that was rejected (None for data stages)
        stage: Human-readable name of the stage that was rejected
    """

    def __init__(self, stage: str, opcode: Optional[int] = None):
        self.stage = stage
        self.opcode = opcode
        if opcode is not None:
            message = f"Got NACK from device on {stage} (command 0x{opcode:02X})"
        else:
            message = f"Got NACK from device on {stage}"
        super().__init__(message)


class UnexpectedReplyError(ProtocolError):
    """
    The device replied with a byte that is neither ACK nor NACK.

    Attributes:
        stage: Human-readable name of the stage
        reply: Raw byte received
        opcode: Command opcode involved (None for data stages)
    """

    def __init__(self, stage: str, reply: int, opcode: Optional[int] = None):
        self.stage = stage
        self.reply = reply
        self.opcode = opcode
        where = f" (command 0x{opcode:02X})" if opcode is not None else ""
        super().__init__(
            f"Unexpected reply 0x{reply:02X} from device on {stage}{where}"
        )


# =============================================================================
# Device Exceptions
# =============================================================================

class DeviceError(FlasherError):
    """Base exception for device identification errors."""
    pass


class UnsupportedDeviceError(DeviceError):
    """
    The device is not in the catalog, or its ID reply is unusable.

    Attributes:
        product_id: Product ID reported by the device (None if unreadable)
    """

    def __init__(self, message: str, product_id: Optional[int] = None):
        self.product_id = product_id
        super().__init__(message)


# =============================================================================
# Workspace Exceptions
# =============================================================================

class WorkspaceError(FlasherError):
    """Base exception for workspace resolution errors."""
    pass


class InvalidSelectorError(WorkspaceError):
    """
    Address/page selectors that cannot be used together.

    Examples:
        - Page-based selector with a non-flash memory type
        - Both a page selector and an address selector
        - Start address not aligned to 4 bytes
    """
    pass


class RegionOutOfBoundsError(WorkspaceError):
    """
    The resolved range does not fit in the allowed memory region.

    Attributes:
        start: Resolved absolute start address
        end: Resolved absolute end address (exclusive)
        allowed_start: Start of the allowed region
        allowed_end: End of the allowed region (exclusive)
    """

    def __init__(
        self,
        message: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
        allowed_start: Optional[int] = None,
        allowed_end: Optional[int] = None,
    ):
        self.start = start
        self.end = end
        self.allowed_start = allowed_start
        self.allowed_end = allowed_end
        super().__init__(message)


# =============================================================================
# Transfer Exceptions
# =============================================================================

class TransferError(FlasherError):
    """
    Error during a chunked memory transfer.

    Raised when:
    - Verification fails repeatedly
    - The input ends before the resolved range is filled
    - The transfer is cancelled
    """
    pass


class VerifyError(TransferError):
    """
    Read-back verification failed more often than the retry ceiling allows.

    Attributes:
        address: Absolute address of the first mismatching byte
        expected: Byte value that was written
        actual: Byte value that was read back
        attempts: Number of write attempts made for the chunk
    """

    def __init__(self, address: int, expected: int, actual: int, attempts: int = 0):
        self.address = address
        self.expected = expected
        self.actual = actual
        self.attempts = attempts
        super().__init__(
            f"Failed to verify at address 0x{address:08X}, "
            f"expected 0x{expected:02X} and found 0x{actual:02X}"
        )


class ShortInputError(TransferError):
    """The input image ended before the resolved range was written."""
    pass


class TransferCancelledError(TransferError):
    """The transfer was cancelled before completion."""
    pass


# =============================================================================
# Image Exceptions
# =============================================================================

class ImageError(FlasherError):
    """
    Input or output image cannot be used.

    Raised when:
    - The file cannot be opened
    - An Intel HEX file is malformed
    - Writing the output file fails
    """
    pass
