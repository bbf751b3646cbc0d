"""
STM Flasher - Serial Bootloader Programmer for STM32 Microcontrollers
=====================================================================

This package reprograms STM32 microcontrollers through the USART
bootloader that ST burns into their system memory. No debug probe is
needed: a USB-serial adapter on the bootloader USART is enough.

Main Components
---------------
- **devices**: catalog of supported chips and their memory maps
- **workspace**: resolves memory type and address/page selectors into
  an absolute range
- **comms**: serial transport, bootloader protocol, reset trampoline and
  chunked transfers
- **formats**: raw binary and Intel HEX images
- **cli**: the ``stmflash`` command

Quick Start
-----------
Flash a firmware image and start it:

    $ stmflash -p /dev/ttyUSB0 write -v firmware.hex --go 0

Or from Python:

    >>> from stmflasher.comms import BootloaderSession, MemoryTransfer, SerialTransport
    >>> from stmflasher.formats import open_image_source
    >>> from stmflasher.workspace import WorkspaceSpec, resolve_workspace
    >>> with BootloaderSession(SerialTransport.open('/dev/ttyUSB0')) as session:
    ...     device = session.connect()
    ...     source = open_image_source('firmware.bin')
    ...     workspace = resolve_workspace(device, WorkspaceSpec().with_length(source.size()))
    ...     MemoryTransfer(session, verify=True).write(workspace, source)

Reference Documentation
-----------------------
- ST AN3155: USART protocol used in the STM32 bootloader
- ST AN2606: STM32 microcontroller system memory boot mode
"""

__version__ = "0.7.0"

# =============================================================================
# Public API Exports
# =============================================================================

from stmflasher.config import FlasherConfig
from stmflasher.devices import DEVICES, DeviceDescriptor, find_device, get_supported_devices
from stmflasher.errors import (
    FlasherError,
    CommsError,
    ConnectionError,
    TransportError,
    TimeoutError,
    ProtocolError,
    NackError,
    UnexpectedReplyError,
    DeviceError,
    UnsupportedDeviceError,
    WorkspaceError,
    InvalidSelectorError,
    RegionOutOfBoundsError,
    TransferError,
    VerifyError,
    ShortInputError,
    TransferCancelledError,
    ImageError,
)
from stmflasher.workspace import (
    MemoryType,
    ResolvedWorkspace,
    WorkspaceSpec,
    resolve_workspace,
)

__all__ = [
    "__version__",
    # Configuration
    "FlasherConfig",
    # Devices
    "DEVICES",
    "DeviceDescriptor",
    "find_device",
    "get_supported_devices",
    # Workspace
    "MemoryType",
    "ResolvedWorkspace",
    "WorkspaceSpec",
    "resolve_workspace",
    # Errors
    "FlasherError",
    "CommsError",
    "ConnectionError",
    "TransportError",
    "TimeoutError",
    "ProtocolError",
    "NackError",
    "UnexpectedReplyError",
    "DeviceError",
    "UnsupportedDeviceError",
    "WorkspaceError",
    "InvalidSelectorError",
    "RegionOutOfBoundsError",
    "TransferError",
    "VerifyError",
    "ShortInputError",
    "TransferCancelledError",
    "ImageError",
]
