"""
Reset Trampoline
================

The USART bootloader has no "reset" command. To restart the device
without a dedicated reset line, a tiny program is uploaded to RAM and
started with GO. The program requests a system reset through the Cortex-M
NVIC Application Interrupt and Reset Control Register (AIRCR) and then
spins until the reset takes effect.

Block Layout
------------
The uploaded block starts with two little-endian words followed by the
machine code:

    Offset  Content
    ------  ---------------------------------------
    0x00    Initial stack pointer (0x20002000)
    0x04    Entry point (target + 8)
    0x08    Code fragment

The bootloader's GO command treats the first two words at the target as
a vector table, so the code must start right after them.

Reset Fragment (Thumb)
----------------------
    ldr  r1, [pc, #4]    ; AIRCR address
    ldr  r2, [pc, #8]    ; VECTKEY | SYSRESETREQ
    str  r2, [r1, #0]
    b    .
    .word 0xE000ED0C
    .word 0x05FA0004

Works on ARMv7-M (Cortex-M3/M4) and ARMv6-M (Cortex-M0).
"""

import logging
import struct
from typing import TYPE_CHECKING, Final

from stmflasher.comms.bootloader import MAX_TRANSFER_SIZE

if TYPE_CHECKING:
    from stmflasher.comms.bootloader import BootloaderSession

logger = logging.getLogger(__name__)


# Initial stack pointer placed in the first word of the block
TRAMPOLINE_STACK_POINTER: Final[int] = 0x20002000

# Bytes preceding the code: stack pointer and entry point
TRAMPOLINE_HEADER_SIZE: Final[int] = 8

RESET_CODE: Final[bytes] = bytes([
    0x01, 0x49,                 # ldr r1, [pc, #4]
    0x02, 0x4A,                 # ldr r2, [pc, #8]
    0x0A, 0x60,                 # str r2, [r1, #0]
    0xFE, 0xE7,                 # b .
    0x0C, 0xED, 0x00, 0xE0,     # AIRCR address
    0x04, 0x00, 0xFA, 0x05,     # VECTKEY | SYSRESETREQ
])


def build_trampoline(target: int, code: bytes) -> bytes:
    """
    Build the block to upload at target.

    Args:
        target: Load address, 4-byte aligned.
        code: Machine code to run.

    Returns:
        Stack pointer word, entry word and code, concatenated.

    Raises:
        ValueError: If target is not aligned.
    """
    if target % 4:
        raise ValueError(f"Trampoline address 0x{target:08X} is not 4-byte aligned")
    header = struct.pack("<II", TRAMPOLINE_STACK_POINTER, target + TRAMPOLINE_HEADER_SIZE)
    return header + code


def run_raw_code(session: "BootloaderSession", target: int, code: bytes) -> None:
    """
    Upload code to target and start it.

    The block is written in chunks of at most 256 bytes, then GO is issued
    at target. After this returns the device no longer answers bootloader
    commands.
    """
    block = build_trampoline(target, code)
    logger.debug("Uploading %d byte trampoline to 0x%08X", len(block), target)

    for offset in range(0, len(block), MAX_TRANSFER_SIZE):
        session.write_memory(target + offset, block[offset:offset + MAX_TRANSFER_SIZE])

    session.go(target)


def reset_device(session: "BootloaderSession") -> None:
    """
    Reset the device through the trampoline.

    The code is placed at the first RAM address not used by the
    bootloader.
    """
    target = session.device.ram_bootloader_reserved
    logger.info("Resetting device")
    run_raw_code(session, target, RESET_CODE)
