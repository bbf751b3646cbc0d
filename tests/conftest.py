"""
Test Configuration and Simulated Bootloader
===========================================

pytest fixtures shared by the flasher tests.

FakeBootloader implements the device side of the STM32 USART bootloader
protocol behind the Transport contract (write/read/close). Session,
trampoline, transfer and CLI tests drive it with real byte streams, so
the frames they produce are checked by an independent decoder rather
than by comparing against hand-written byte strings.

Faults can be injected:
- silent_inits: number of INIT bytes that get no reply
- init_reply: byte sent back to INIT (ACK by default)
- nack_opcodes: opcodes rejected with NACK
- corrupt_writes / corrupt_offset: flip one stored byte in the next N
  write-memory commands
"""

import pytest

from stmflasher.comms.bootloader import ACK, CMD_INIT, NACK, BootloaderSession
from stmflasher.comms.checksum import xor_checksum
from stmflasher.devices import DEVICES
from stmflasher.errors import TimeoutError

# Opcodes reported by a typical F1 bootloader (regular erase)
STANDARD_COMMANDS = (0x00, 0x01, 0x02, 0x11, 0x21, 0x31, 0x43, 0x63, 0x73, 0x82, 0x92)


class FakeBootloader:
    """Simulated STM32 system-memory bootloader."""

    def __init__(
        self,
        product_id=0x410,
        erase_opcode=0x43,
        bootloader_version=0x22,
        option1=0x00,
        option2=0x00,
        extra_commands=b"",
        pid_extra=b"",
        short_pid=False,
        initialized=False,
        silent_inits=0,
        init_reply=ACK,
        nack_opcodes=(),
        corrupt_writes=0,
        corrupt_offset=0,
    ):
        self.product_id = product_id
        self.device = DEVICES.get(product_id)
        self.commands = list(STANDARD_COMMANDS)
        self.commands[6] = erase_opcode
        self.bootloader_version = bootloader_version
        self.option1 = option1
        self.option2 = option2
        self.extra_commands = bytes(extra_commands)
        self.pid_extra = bytes(pid_extra)
        self.short_pid = short_pid
        self.initialized = initialized
        self.silent_inits = silent_inits
        self.init_reply = init_reply
        self.nack_opcodes = set(nack_opcodes)
        self.corrupt_writes = corrupt_writes
        self.corrupt_offset = corrupt_offset

        self.memory = {}
        self.received = bytearray()
        self.opcodes = []
        self.writes = []
        self.reads = []
        self.erases = []
        self.protections = []
        self.go_address = None
        self.init_count = 0
        self.closed = False

        self._rx = bytearray()
        self._tx = bytearray()
        self._engine = self._run()
        self._need = next(self._engine)

    # -------------------------------------------------------------------------
    # Transport contract
    # -------------------------------------------------------------------------

    def write(self, data):
        self.received.extend(data)
        self._rx.extend(data)
        while len(self._rx) >= self._need:
            chunk = bytes(self._rx[:self._need])
            del self._rx[:self._need]
            self._need = self._engine.send(chunk)

    def read(self, length):
        data = bytes(self._tx[:length])
        del self._tx[:length]
        if len(data) < length:
            raise TimeoutError(
                f"Read timeout: expected {length} bytes, got {len(data)}",
                expected=length,
                received=len(data),
            )
        return data

    def close(self):
        self.closed = True

    # -------------------------------------------------------------------------
    # Memory helpers
    # -------------------------------------------------------------------------

    def load(self, address, data):
        for offset, byte in enumerate(data):
            self.memory[address + offset] = byte

    def dump(self, address, length):
        return bytes(self.memory.get(address + i, 0xFF) for i in range(length))

    def _erase_pages(self, pages):
        dev = self.device
        for page in pages:
            base = dev.flash_start + page * dev.flash_page_size
            for addr in range(base, base + dev.flash_page_size):
                self.memory.pop(addr, None)

    def _mass_erase(self):
        dev = self.device
        for addr in [a for a in self.memory if dev.flash_start <= a < dev.flash_end]:
            del self.memory[addr]

    def _reply(self, *values):
        for value in values:
            if isinstance(value, (bytes, bytearray)):
                self._tx.extend(value)
            else:
                self._tx.append(value)

    # -------------------------------------------------------------------------
    # Protocol engine: yields the number of bytes it needs next
    # -------------------------------------------------------------------------

    def _run(self):
        while not self.initialized:
            byte = (yield 1)[0]
            if byte != CMD_INIT:
                continue
            self.init_count += 1
            if self.silent_inits:
                self.silent_inits -= 1
                continue
            self._reply(self.init_reply)
            self.initialized = self.init_reply == ACK

        while True:
            opcode = (yield 1)[0]
            if opcode == CMD_INIT:
                # Baud rate already locked
                self.init_count += 1
                self._reply(NACK)
                continue
            check = (yield 1)[0]
            if opcode ^ check != 0xFF or opcode in self.nack_opcodes:
                self._reply(NACK)
                continue
            self.opcodes.append(opcode)
            c = self.commands

            if opcode == c[0]:
                count = 1 + len(self.commands) + len(self.extra_commands)
                self._reply(ACK, count - 1, self.bootloader_version,
                            bytes(self.commands), self.extra_commands, ACK)

            elif opcode == c[1]:
                self._reply(ACK, self.bootloader_version, self.option1, self.option2, ACK)

            elif opcode == c[2]:
                if self.short_pid:
                    self._reply(ACK, 0, self.product_id >> 8)
                    continue
                self._reply(ACK, 1 + len(self.pid_extra),
                            self.product_id >> 8, self.product_id & 0xFF,
                            self.pid_extra, ACK)

            elif opcode == c[3]:
                self._reply(ACK)
                address = yield from self._address()
                if address is None:
                    continue
                length = yield 2
                if length[0] ^ length[1] != 0xFF:
                    self._reply(NACK)
                    continue
                self._reply(ACK, self.dump(address, length[0] + 1))
                self.reads.append((address, length[0] + 1))

            elif opcode == c[4]:
                self._reply(ACK)
                address = yield from self._address()
                if address is None:
                    continue
                self.go_address = address
                # Running user code: no more bootloader replies
                while True:
                    yield 1

            elif opcode == c[5]:
                self._reply(ACK)
                address = yield from self._address()
                if address is None:
                    continue
                count = (yield 1)[0]
                data = yield count + 1
                checksum = (yield 1)[0]
                if xor_checksum(data, count) != checksum:
                    self._reply(NACK)
                    continue
                stored = bytearray(data)
                if self.corrupt_writes:
                    self.corrupt_writes -= 1
                    stored[self.corrupt_offset] ^= 0xFF
                self.load(address, stored)
                self.writes.append((address, bytes(data)))
                self._reply(ACK)

            elif opcode == c[6] and opcode == 0x44:
                self._reply(ACK)
                header = yield 2
                count = int.from_bytes(header, "big")
                if count == 0xFFFF:
                    checksum = (yield 1)[0]
                    if checksum != 0x00 or self.product_id == 0x416:
                        self._reply(NACK)
                        continue
                    self._mass_erase()
                    self.erases.append("mass")
                    self._reply(ACK)
                    continue
                raw = yield 2 * (count + 1)
                checksum = (yield 1)[0]
                if xor_checksum(header + raw) != checksum:
                    self._reply(NACK)
                    continue
                pages = [int.from_bytes(raw[i:i + 2], "big") for i in range(0, len(raw), 2)]
                self._erase_pages(pages)
                self.erases.append(pages)
                self._reply(ACK)

            elif opcode == c[6]:
                self._reply(ACK)
                count = (yield 1)[0]
                if count == 0xFF:
                    if (yield 1)[0] != 0x00:
                        self._reply(NACK)
                        continue
                    self._mass_erase()
                    self.erases.append("mass")
                    self._reply(ACK)
                    continue
                pages = yield count + 1
                checksum = (yield 1)[0]
                if xor_checksum(pages, count) != checksum:
                    self._reply(NACK)
                    continue
                self._erase_pages(pages)
                self.erases.append(list(pages))
                self._reply(ACK)

            elif opcode in c[7:]:
                names = ("write_protect", "write_unprotect", "read_protect", "read_unprotect")
                self.protections.append(names[c.index(opcode) - 7])
                self._reply(ACK, ACK)

            else:
                self._reply(NACK)

    def _address(self):
        frame = yield 5
        if xor_checksum(frame[:4]) != frame[4]:
            self._reply(NACK)
            return None
        self._reply(ACK)
        return int.from_bytes(frame[:4], "big")


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fake_device():
    """Unconnected simulated STM32F Medium-density (PID 0x410)."""
    return FakeBootloader()


@pytest.fixture
def session(fake_device):
    """Session connected to fake_device."""
    s = BootloaderSession(fake_device)
    s.connect()
    return s


def connect(**kwargs):
    """Create a FakeBootloader and a session connected to it."""
    device = FakeBootloader(**kwargs)
    s = BootloaderSession(device)
    s.connect()
    return s, device
