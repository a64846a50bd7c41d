"""
rm16 System
===========
Wires together:
  - one CPU16 core (cpu16.py) and its flat 1 MiB memory
  - the BIOS teletype output device (INT 10h / AH=0Eh)
  - loader helpers that place a program and set CS:IP and SS:SP

The CPU never loads programs itself; everything goes through
``load_binary`` / ``load_program`` before ``boot``.
"""

from __future__ import annotations
import logging
from typing import Callable, Optional

from cpu16 import CPU16, Memory, ExitStatus, MEMORY_SIZE, physical, u16

log = logging.getLogger(__name__)
log.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
#  Memory map defaults
# ---------------------------------------------------------------------------

# Programs load at 0000:2000; the stack sits just below and grows downward.
DEFAULT_CS = 0x0000
DEFAULT_IP = 0x2000
DEFAULT_SS = 0x0000
DEFAULT_SP = 0x2000

DEFAULT_MAX_STEPS = 1_000_000

# ---------------------------------------------------------------------------
#  Teletype
# ---------------------------------------------------------------------------

class Teletype:
    """Character sink for the BIOS teletype service.

    Bytes are kept in ``tx_buffer`` until drained unless *buffered* is
    False; ``on_tx`` (if set) sees each byte immediately either way.
    """

    def __init__(self, on_tx: Optional[Callable[[int], None]] = None,
                 buffered: bool = True):
        self.on_tx = on_tx
        self.buffered = buffered
        self.tx_buffer = bytearray()

    def write(self, byte_val: int):
        byte_val &= 0xFF
        if self.buffered:
            self.tx_buffer.append(byte_val)
        if self.on_tx:
            self.on_tx(byte_val)

    def drain_tx(self) -> str:
        """Return buffered output as text and clear the buffer."""
        text = self.tx_buffer.decode("latin-1")
        self.tx_buffer.clear()
        return text

# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class RealModeSystem:
    """A CPU16, its memory and a teletype, ready to load and run."""

    def __init__(self, mem_size: int = MEMORY_SIZE,
                 on_output: Optional[Callable[[int], None]] = None,
                 buffer_output: bool = True):
        self.memory = Memory(mem_size)
        self.cpu = CPU16(self.memory)
        self.teletype = Teletype(on_tx=on_output, buffered=buffer_output)
        self.cpu.on_output = self.teletype.write

    # -- Loading --

    def load_binary(self, addr: int, data: bytes | bytearray):
        """Write raw bytes at a physical address."""
        self.memory.load(addr, data)
        log.info("Loaded %d bytes at %#07x", len(data), addr)

    def load_program(self, code: bytes | bytearray, cs: int = DEFAULT_CS,
                     ip: int = DEFAULT_IP) -> int:
        """Place *code* at CS:IP.  Returns the physical load address;
        ``boot(cs, ip)`` then points the CPU at it."""
        addr = physical(cs, ip)
        self.load_binary(addr, code)
        return addr

    def boot(self, cs: int = DEFAULT_CS, ip: int = DEFAULT_IP,
             ss: int = DEFAULT_SS, sp: int = DEFAULT_SP):
        """Reset all registers, then set the entry point and stack."""
        self.cpu._reset_state()
        self.cpu.cs, self.cpu.ip = u16(cs), u16(ip)
        self.cpu.ss, self.cpu.sp = u16(ss), u16(sp)
        log.info("Boot CS:IP=%04X:%04X SS:SP=%04X:%04X", cs, ip, ss, sp)

    # -- Execution --

    def step(self):
        return self.cpu.step()

    def run(self, max_steps: Optional[int] = DEFAULT_MAX_STEPS) -> ExitStatus:
        return self.cpu.run(max_steps)

    @property
    def halted(self) -> bool:
        return not self.cpu.running

    def get_tx_output(self) -> str:
        return self.teletype.drain_tx()

    def dump_state(self) -> str:
        lines = ["CPU:", self.cpu.dump_regs(),
                 f"  Steps: {self.cpu.steps}"]
        if self.cpu.fault is not None:
            lines.append(f"  Fault: {self.cpu.fault}")
        lines.append(f"Teletype: {len(self.teletype.tx_buffer)} bytes pending")
        return "\n".join(lines)
