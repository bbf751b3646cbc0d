"""
STM32 Bootloader Communication Module
=====================================

This module talks to the system-memory bootloader of STM32
microcontrollers over a serial line. It implements the USART bootloader
protocol (ST AN3155) and the chunked transfers built on top of it.

Module Structure
----------------
- **checksum**: complement and XOR checksums used by every frame
- **serial**: serial port utilities (detection, configuration)
- **transport**: byte transport contract and its pyserial implementation
- **bootloader**: handshake and memory primitives
- **reset**: reset trampoline uploaded to RAM
- **transfer**: chunked read and write/verify over a whole workspace

Quick Start
-----------
    from stmflasher.comms import (
        BootloaderSession,
        MemoryTransfer,
        SerialTransport,
        reset_device,
    )
    from stmflasher.formats import open_image_source
    from stmflasher.workspace import WorkspaceSpec, resolve_workspace

    transport = SerialTransport.open('/dev/ttyUSB0', baud_rate=115200)
    with BootloaderSession(transport) as session:
        device = session.connect()
        source = open_image_source('firmware.hex')
        workspace = resolve_workspace(device, WorkspaceSpec().with_length(source.size()))
        MemoryTransfer(session, verify=True).write(workspace, source)
        reset_device(session)

Hardware Requirements
---------------------
- BOOT0 pulled high (and BOOT1 low where present) at reset
- Bootloader USART (usually USART1, PA9/PA10) wired to a 3.3V adapter
- 8 data bits, even parity, 1 stop bit, no flow control

Error Handling
--------------
All communication errors inherit from `CommsError`:

- `ConnectionError`: Cannot open the serial port
- `TransportError`: I/O failure on the open port
- `TimeoutError`: Device did not answer in time
- `ProtocolError`: Framing violation, including `NackError` and
  `UnexpectedReplyError`

These exceptions are defined in `stmflasher.errors`.

Thread Safety
-------------
The communication classes are NOT thread-safe. Use only from a single
thread; the one exception is MemoryTransfer.cancel().
"""

# =============================================================================
# Public API Exports
# =============================================================================

# Checksums
from stmflasher.comms.checksum import (
    address_checksum,
    complement,
    encode_address,
    encode_command,
    xor_checksum,
)

# Serial port utilities
from stmflasher.comms.serial import (
    DEFAULT_BAUD_RATE,
    DEFAULT_TIMEOUT,
    VALID_BAUD_RATES,
    PortInfo,
    close_serial_port,
    describe_port_settings,
    find_usb_port,
    format_port_list,
    list_serial_ports,
    open_serial_port,
)

# Byte transport
from stmflasher.comms.transport import SerialTransport, Transport

# Bootloader protocol
from stmflasher.comms.bootloader import (
    ACK,
    NACK,
    CMD_INIT,
    CMD_GET,
    CMD_EXTENDED_ERASE,
    MASS_ERASE,
    MAX_TRANSFER_SIZE,
    BootloaderSession,
    CommandTable,
    EraseProtocol,
    encode_extended_erase,
    encode_regular_erase,
    encode_write_payload,
)

# Reset trampoline
from stmflasher.comms.reset import (
    RESET_CODE,
    TRAMPOLINE_STACK_POINTER,
    build_trampoline,
    reset_device,
    run_raw_code,
)

# Chunked transfers
from stmflasher.comms.transfer import (
    DEFAULT_RETRIES,
    MemoryTransfer,
    ProgressCallback,
)

# Public API - what gets exported with "from stmflasher.comms import *"
__all__ = [
    # Checksums
    "address_checksum",
    "complement",
    "encode_address",
    "encode_command",
    "xor_checksum",
    # Serial
    "DEFAULT_BAUD_RATE",
    "DEFAULT_TIMEOUT",
    "VALID_BAUD_RATES",
    "PortInfo",
    "close_serial_port",
    "describe_port_settings",
    "find_usb_port",
    "format_port_list",
    "list_serial_ports",
    "open_serial_port",
    # Transport
    "SerialTransport",
    "Transport",
    # Bootloader
    "ACK",
    "NACK",
    "CMD_INIT",
    "CMD_GET",
    "CMD_EXTENDED_ERASE",
    "MASS_ERASE",
    "MAX_TRANSFER_SIZE",
    "BootloaderSession",
    "CommandTable",
    "EraseProtocol",
    "encode_extended_erase",
    "encode_regular_erase",
    "encode_write_payload",
    # Reset
    "RESET_CODE",
    "TRAMPOLINE_STACK_POINTER",
    "build_trampoline",
    "reset_device",
    "run_raw_code",
    # Transfer
    "DEFAULT_RETRIES",
    "MemoryTransfer",
    "ProgressCallback",
]
