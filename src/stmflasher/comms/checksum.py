"""
Checksums for the STM32 USART Bootloader Protocol
=================================================

The bootloader protects every frame with one of two trivial checks:

- **Complement**: single-byte fields (command opcodes, read lengths) are
  followed by their one's complement, so the pair XORs to $FF.
- **XOR checksum**: multi-byte fields (addresses, write payloads, erase
  page lists) are followed by the XOR of every byte in the field.

Usage
-----
    from stmflasher.comms.checksum import encode_address, xor_checksum

    frame = encode_address(0x08000000)   # b'\\x08\\x00\\x00\\x00\\x08'
    cs = xor_checksum(b'\\x03\\x01\\x02\\x03\\x04')
"""

from typing import Final, Iterable

# Byte mask
BYTE_MASK: Final[int] = 0xFF

# 32-bit address mask
ADDRESS_MASK: Final[int] = 0xFFFFFFFF


def xor_checksum(data: Iterable[int], initial: int = 0) -> int:
    """
    XOR every byte of data into a running checksum.

    Args:
        data: Bytes (or any iterable of 0-255 ints) to fold in.
        initial: Starting value, for computing a checksum incrementally.

    Returns:
        8-bit checksum.
    """
    checksum = initial & BYTE_MASK
    for byte in data:
        checksum ^= byte
    return checksum & BYTE_MASK


def complement(value: int) -> int:
    """Return the one's complement of a byte."""
    return (value ^ BYTE_MASK) & BYTE_MASK


def encode_command(opcode: int) -> bytes:
    """
    Frame a command opcode for transmission.

    Returns:
        Two bytes: opcode followed by its complement.
    """
    return bytes([opcode & BYTE_MASK, complement(opcode)])


def address_to_bytes(address: int) -> bytes:
    """Encode a 32-bit address big-endian."""
    if not 0 <= address <= ADDRESS_MASK:
        raise ValueError(f"Address out of 32-bit range: 0x{address:X}")
    return address.to_bytes(4, "big")


def address_checksum(address: int) -> int:
    """
    Checksum of a 32-bit address: XOR of its four bytes.

    Equivalent to ((a >> 24) ^ (a >> 16) ^ (a >> 8) ^ a) & 0xFF.
    """
    return xor_checksum(address_to_bytes(address))


def encode_address(address: int) -> bytes:
    """
    Frame an address for transmission.

    Returns:
        Five bytes: the big-endian address followed by its XOR checksum.
    """
    raw = address_to_bytes(address)
    return raw + bytes([xor_checksum(raw)])
