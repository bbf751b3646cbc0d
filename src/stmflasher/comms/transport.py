"""
Byte Transport for the Bootloader Session
=========================================

The bootloader session only needs three things from the link underneath
it: send bytes, receive exactly N bytes or time out, and close. This module
defines that contract as a ``typing.Protocol`` and provides the
pyserial-backed implementation used by the command-line tool.

Keeping the contract this small lets tests drive the session with a
simulated device instead of a serial port.
"""

import logging
from typing import TYPE_CHECKING, Optional, Protocol

import serial

from stmflasher.comms.serial import close_serial_port, open_serial_port
from stmflasher.errors import TimeoutError, TransportError

if TYPE_CHECKING:
    from stmflasher.config import FlasherConfig

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """
    Half-duplex byte channel with a read deadline.

    Implementations must raise TransportError on I/O failures and
    TimeoutError when read() cannot collect the requested number of
    bytes before the deadline.
    """

    def write(self, data: bytes) -> None:
        """Send all bytes, blocking until accepted."""
        ...

    def read(self, length: int) -> bytes:
        """Receive exactly length bytes."""
        ...

    def close(self) -> None:
        """Release the underlying channel."""
        ...


class SerialTransport:
    """
    Transport over a pyserial port.

    Example:
        transport = SerialTransport.open('/dev/ttyUSB0', baud_rate=115200)
        try:
            session = BootloaderSession(transport)
            session.connect()
        finally:
            transport.close()
    """

    def __init__(self, port: serial.Serial):
        """
        Args:
            port: Opened and configured serial port. Ownership passes to
                  the transport, which closes it in close().
        """
        self.port = port

    @classmethod
    def open(
        cls,
        device: str,
        baud_rate: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> "SerialTransport":
        """Open a serial device configured for the bootloader."""
        kwargs = {}
        if baud_rate is not None:
            kwargs["baud_rate"] = baud_rate
        if timeout is not None:
            kwargs["timeout"] = timeout
        return cls(open_serial_port(device, **kwargs))

    @classmethod
    def from_config(cls, config: "FlasherConfig") -> "SerialTransport":
        """Open the port named in a FlasherConfig."""
        return cls.open(config.port, baud_rate=config.baud_rate, timeout=config.timeout)

    def configure(
        self,
        baud_rate: int,
        bytesize: int = serial.EIGHTBITS,
        parity: str = serial.PARITY_EVEN,
        stopbits: float = serial.STOPBITS_ONE,
    ) -> None:
        """
        Reconfigure the line settings.

        Reconfiguring with the current settings is a no-op.
        """
        current = (self.port.baudrate, self.port.bytesize, self.port.parity, self.port.stopbits)
        if current == (baud_rate, bytesize, parity, stopbits):
            return
        try:
            self.port.baudrate = baud_rate
            self.port.bytesize = bytesize
            self.port.parity = parity
            self.port.stopbits = stopbits
        except (serial.SerialException, ValueError) as e:
            raise TransportError(f"Cannot configure serial port: {e}") from e
        logger.debug("Port reconfigured: %d %s%s%s", baud_rate, bytesize, parity, stopbits)

    def write(self, data: bytes) -> None:
        try:
            self.port.write(data)
            self.port.flush()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Failed to send {len(data)} bytes: {e}") from e
        logger.debug("TX %s", data.hex())

    def read(self, length: int) -> bytes:
        try:
            data = self.port.read(length)
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"Failed to read {length} bytes: {e}") from e
        if len(data) < length:
            raise TimeoutError(
                f"Read timeout: expected {length} bytes, got {len(data)}",
                expected=length,
                received=len(data),
            )
        logger.debug("RX %s", data.hex())
        return bytes(data)

    def close(self) -> None:
        close_serial_port(self.port)
