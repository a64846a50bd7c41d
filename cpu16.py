"""
rm16 CPU Emulator
=================
A step emulator for a simplified 16-bit real-mode processor.

Every instruction is decoded from raw bytes in memory at CS:IP.  The
fetch/decode/execute loop mirrors the hardware: decode one instruction,
advance IP past it, then apply its effect.  Branch targets are therefore
always relative to the byte following the displacement.

Only four FLAGS bits are modelled (CF, ZF, SF, OF); every other bit of the
FLAGS word passes through instructions untouched.
"""

from __future__ import annotations
import logging
from enum import IntEnum
from typing import Callable, Optional

from isa16 import (
    MASK16, SIGN16, REG16, Op, Instruction, decode, physical, u8, u16,
    CPU16Error, UnmappedOpcode, AddressFault, HaltError,
)

log = logging.getLogger(__name__)
log.addHandler(logging.NullHandler())

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEMORY_SIZE = 1 << 20   # 1 MiB

FLAG_CF = 0x0001   # bit 0
FLAG_ZF = 0x0040   # bit 6
FLAG_SF = 0x0080   # bit 7
FLAG_OF = 0x0800   # bit 11
STATUS_FLAGS = FLAG_CF | FLAG_ZF | FLAG_SF | FLAG_OF

# BIOS video service: INT 10h, AH=0Eh writes AL as a teletype character
INT_VIDEO      = 0x10
VIDEO_TELETYPE = 0x0E

SEGMENT_REGS = ("cs", "ds", "es", "ss")
ALL_REGS = ("ax", "bx", "cx", "dx", "si", "di", "bp", "sp", "ip") + SEGMENT_REGS


class ExitStatus(IntEnum):
    """Why ``CPU16.run()`` stopped."""
    HALTED     = 0   # HLT executed
    FAULT      = 1   # decode or address fault; see CPU16.fault
    STEP_LIMIT = 2   # caller-imposed max_steps reached

# ---------------------------------------------------------------------------
#  Flag evaluation
# ---------------------------------------------------------------------------

def flags_after_cmp(flags: int, a: int, b: int) -> int:
    """FLAGS word after CMP a, b.  Bits other than CF/ZF/SF/OF are kept."""
    a, b = u16(a), u16(b)
    result = u16(a - b)
    flags &= ~STATUS_FLAGS & MASK16
    if result == 0:
        flags |= FLAG_ZF
    if result & SIGN16:
        flags |= FLAG_SF
    if a < b:
        flags |= FLAG_CF
    # operands of different sign and the result's sign differs from a
    if (a ^ b) & SIGN16 and (a ^ result) & SIGN16:
        flags |= FLAG_OF
    return flags

def flags_after_dec(flags: int, value: int) -> int:
    """FLAGS word after DEC leaves *value* in the register.

    Only ZF and SF are recomputed; CF and OF stay as they were.
    """
    value = u16(value)
    flags &= ~(FLAG_ZF | FLAG_SF) & MASK16
    if value == 0:
        flags |= FLAG_ZF
    if value & SIGN16:
        flags |= FLAG_SF
    return flags

# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class Memory:
    """Flat byte-addressable RAM.  Words are little-endian.

    Accesses that touch any byte outside the buffer raise AddressFault.
    """

    def __init__(self, size: int = MEMORY_SIZE):
        self.size = size
        self.data = bytearray(size)

    def _check(self, addr: int, size: int):
        if addr < 0 or addr + size > self.size:
            raise AddressFault(addr, size)

    def read8(self, addr: int) -> int:
        self._check(addr, 1)
        return self.data[addr]

    def write8(self, addr: int, value: int):
        self._check(addr, 1)
        self.data[addr] = u8(value)

    def read16(self, addr: int) -> int:
        self._check(addr, 2)
        return self.data[addr] | (self.data[addr + 1] << 8)

    def write16(self, addr: int, value: int):
        self._check(addr, 2)
        self.data[addr]     = value & 0xFF
        self.data[addr + 1] = (value >> 8) & 0xFF

    def load(self, addr: int, data: bytes | bytearray):
        """Write raw bytes into memory starting at *addr*."""
        self._check(addr, len(data))
        self.data[addr:addr + len(data)] = data

    def dump(self, addr: int, count: int) -> bytes:
        self._check(addr, count)
        return bytes(self.data[addr:addr + count])

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class CPU16:
    """Real-mode 16-bit CPU: register file, stack and execution loop."""

    def __init__(self, memory: Optional[Memory] = None,
                 mem_size: int = MEMORY_SIZE):
        self.mem = memory if memory is not None else Memory(mem_size)

        # Callbacks
        self.on_output: Optional[Callable[[int], None]] = None  # teletype char
        self.on_step: Optional[Callable[["CPU16", Instruction], None]] = None
        self.on_halt: Optional[Callable[[], None]] = None

        self._dispatch = {
            Op.MOV_R16: self._exec_mov_r16,
            Op.MOV_AH:  self._exec_mov_ah,
            Op.MOV_AL:  self._exec_mov_al,
            Op.INT:     self._exec_int,
            Op.PUSH_AX: self._exec_push_ax,
            Op.POP_AX:  self._exec_pop_ax,
            Op.CALL:    self._exec_call,
            Op.RET:     self._exec_ret,
            Op.HLT:     self._exec_hlt,
            Op.CMP_AX:  self._exec_cmp_ax,
            Op.JE:      self._exec_jcc,
            Op.JNE:     self._exec_jcc,
            Op.JMP:     self._exec_jcc,
            Op.JL:      self._exec_jcc,
            Op.JG:      self._exec_jcc,
            Op.DEC_CX:  self._exec_dec_cx,
        }
        self._reset_state()

    def _reset_state(self):
        for name in ALL_REGS:
            setattr(self, name, 0)
        self.flags: int = 0
        self.running: bool = True
        self.fault: Optional[CPU16Error] = None
        self.steps: int = 0

    # -- Register access --

    @property
    def ah(self) -> int:
        return self.ax >> 8

    @ah.setter
    def ah(self, value: int):
        self.ax = (u8(value) << 8) | (self.ax & 0x00FF)

    @property
    def al(self) -> int:
        return self.ax & 0xFF

    @al.setter
    def al(self, value: int):
        self.ax = (self.ax & 0xFF00) | u8(value)

    def get_reg(self, name: str) -> int:
        name = name.lower()
        if name == "flags":
            return self.flags
        if name not in ALL_REGS and name not in ("ah", "al"):
            raise KeyError(f"Unknown register: {name!r}")
        return getattr(self, name)

    def set_reg(self, name: str, value: int):
        name = name.lower()
        if name == "flags":
            self.flags = u16(value)
        elif name in ("ah", "al"):
            setattr(self, name, value)
        elif name in ALL_REGS:
            setattr(self, name, u16(value))
        else:
            raise KeyError(f"Unknown register: {name!r}")

    # -- Flag bits --

    @property
    def cf(self) -> int:
        return 1 if self.flags & FLAG_CF else 0

    @property
    def zf(self) -> int:
        return 1 if self.flags & FLAG_ZF else 0

    @property
    def sf(self) -> int:
        return 1 if self.flags & FLAG_SF else 0

    @property
    def of(self) -> int:
        return 1 if self.flags & FLAG_OF else 0

    def eval_cond(self, op: Op) -> bool:
        if op == Op.JMP: return True
        if op == Op.JE:  return self.zf == 1
        if op == Op.JNE: return self.zf == 0
        if op == Op.JL:  return self.sf != self.of
        if op == Op.JG:  return self.zf == 0 and self.sf == self.of
        return False

    # -- Stack helpers --

    def push16(self, value: int):
        self.sp = u16(self.sp - 2)
        self.mem.write16(physical(self.ss, self.sp), u16(value))

    def pop16(self) -> int:
        value = self.mem.read16(physical(self.ss, self.sp))
        self.sp = u16(self.sp + 2)
        return value

    # =====================================================================
    #  STEP: decode, advance IP, execute
    # =====================================================================

    def step(self) -> Instruction:
        """Execute one instruction and return it.

        Any fault stops the CPU (``running`` becomes False), is recorded on
        ``self.fault`` and is re-raised.
        """
        if not self.running:
            raise HaltError("CPU is halted")
        ip = self.ip
        try:
            try:
                instr = decode(self.mem, self.cs, ip)
            except UnmappedOpcode:
                self.ip = u16(ip + 1)
                raise
            self.ip = u16(ip + instr.size)
            self.execute(instr)
        except CPU16Error as e:
            self.running = False
            self.fault = e
            raise

        self.steps += 1
        if self.on_step:
            self.on_step(self, instr)
        return instr

    def execute(self, instr: Instruction):
        """Apply a decoded instruction.  IP must already point past it."""
        self._dispatch[instr.op](instr)

    # =====================================================================
    #  Executors
    # =====================================================================

    def _exec_mov_r16(self, instr: Instruction):
        setattr(self, instr.reg, u16(instr.operand))

    def _exec_mov_ah(self, instr: Instruction):
        self.ah = instr.operand

    def _exec_mov_al(self, instr: Instruction):
        self.al = instr.operand

    def _exec_int(self, instr: Instruction):
        vector = instr.operand
        if vector == INT_VIDEO and self.ah == VIDEO_TELETYPE:
            if self.on_output:
                self.on_output(self.al)
        else:
            log.debug("Unhandled interrupt %#04x with AH=%#04x", vector, self.ah)

    def _exec_push_ax(self, instr: Instruction):
        self.push16(self.ax)

    def _exec_pop_ax(self, instr: Instruction):
        self.ax = self.pop16()

    def _exec_call(self, instr: Instruction):
        self.push16(self.ip)   # return address = byte after the operand
        self.ip = u16(self.ip + instr.operand)

    def _exec_ret(self, instr: Instruction):
        self.ip = self.pop16()

    def _exec_hlt(self, instr: Instruction):
        self.running = False
        log.info("HLT at %04X:%04X after %d instructions",
                 self.cs, u16(self.ip - 1), self.steps + 1)
        if self.on_halt:
            self.on_halt()

    def _exec_cmp_ax(self, instr: Instruction):
        self.flags = flags_after_cmp(self.flags, self.ax, instr.operand)

    def _exec_jcc(self, instr: Instruction):
        if self.eval_cond(instr.op):
            self.ip = u16(self.ip + instr.operand)

    def _exec_dec_cx(self, instr: Instruction):
        self.cx = u16(self.cx - 1)
        self.flags = flags_after_dec(self.flags, self.cx)

    # -- Run loop --

    def run(self, max_steps: Optional[int] = None) -> ExitStatus:
        """Run until HLT, a fault, or *max_steps* instructions."""
        executed = 0
        while self.running:
            if max_steps is not None and executed >= max_steps:
                log.warning("Step limit %d reached at %04X:%04X",
                            max_steps, self.cs, self.ip)
                return ExitStatus.STEP_LIMIT
            try:
                self.step()
            except CPU16Error as e:
                log.error("CPU fault: %s", e)
                return ExitStatus.FAULT
            executed += 1
        return ExitStatus.FAULT if self.fault else ExitStatus.HALTED

    # -- Debug / introspection --

    def snapshot(self) -> dict:
        """Read-only copy of the register file and flag bits."""
        state = {name: getattr(self, name) for name in ALL_REGS}
        state.update(flags=self.flags, cf=self.cf, zf=self.zf, sf=self.sf,
                     of=self.of, running=self.running)
        return state

    def stack_window(self, count: int = 8) -> list[int]:
        """Words at SS:SP, SS:SP+2, ... without popping them."""
        return [self.mem.read16(physical(self.ss, u16(self.sp + 2 * i)))
                for i in range(count)]

    def dump_regs(self) -> str:
        lines = [
            f"  AX={self.ax:04X}  BX={self.bx:04X}  CX={self.cx:04X}  DX={self.dx:04X}",
            f"  SI={self.si:04X}  DI={self.di:04X}  BP={self.bp:04X}  SP={self.sp:04X}",
            f"  CS={self.cs:04X}  DS={self.ds:04X}  ES={self.es:04X}  SS={self.ss:04X}  IP={self.ip:04X}",
            f"  FLAGS={self.flags:04X}  C={self.cf} Z={self.zf} S={self.sf} O={self.of}"
            f"  {'RUNNING' if self.running else 'HALTED'}",
        ]
        return "\n".join(lines)

