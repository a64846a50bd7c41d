"""
rm16 Instruction Set
====================
Opcode tables, the decoder and a small disassembler for the rm16 real-mode
instruction subset.

Decoding is separate from execution: ``decode()`` reads an instruction at
CS:IP and returns an :class:`Instruction` value without touching any CPU
state.  The executor in cpu16.py dispatches on ``Instruction.op``.

Supported opcodes:

    B8-BF  MOV r16, imm16      B4  MOV AH, imm8      B0  MOV AL, imm8
    CD     INT imm8            50  PUSH AX           58  POP AX
    E8     CALL rel16          C3  RET               F4  HLT
    3D     CMP AX, imm16       49  DEC CX
    74 JE / 75 JNE / EB JMP / 7C JL / 7F JG   (rel8)
"""

from __future__ import annotations
from enum import IntEnum
from typing import NamedTuple, Optional

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MASK8  = 0xFF
MASK16 = 0xFFFF
SIGN16 = 0x8000

# Real-mode physical addresses are 20 bits wide.
ADDR_BITS = 20
ADDR_MASK = (1 << ADDR_BITS) - 1

# 16-bit registers in MOV r16,imm16 encoding order (opcode 0xB8 + index)
REG16 = ("ax", "cx", "dx", "bx", "sp", "bp", "si", "di")

OPC_MOV_R16  = 0xB8
OPC_MOV_AH   = 0xB4
OPC_MOV_AL   = 0xB0
OPC_INT      = 0xCD
OPC_PUSH_AX  = 0x50
OPC_POP_AX   = 0x58
OPC_CALL     = 0xE8
OPC_RET      = 0xC3
OPC_HLT      = 0xF4
OPC_CMP_AX   = 0x3D
OPC_JE       = 0x74
OPC_JNE      = 0x75
OPC_JMP      = 0xEB
OPC_JL       = 0x7C
OPC_JG       = 0x7F
OPC_DEC_CX   = 0x49

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u8(v: int) -> int:
    return v & MASK8

def u16(v: int) -> int:
    """Mask to unsigned 16 bits."""
    return v & MASK16

def sign_extend(val: int, bits: int) -> int:
    """Interpret the low *bits* of *val* as a signed integer."""
    mask = (1 << bits) - 1
    val &= mask
    if val & (1 << (bits - 1)):
        val -= (1 << bits)
    return val

def physical(segment: int, offset: int) -> int:
    """Real-mode address translation: segment * 16 + offset, wrapped to 20 bits."""
    return (u16(segment) * 16 + u16(offset)) & ADDR_MASK

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class CPU16Error(Exception):
    """Base for emulator-generated faults."""
    pass

class UnmappedOpcode(CPU16Error):
    def __init__(self, opcode: int, address: int):
        self.opcode = opcode
        self.address = address
        super().__init__(f"Unmapped opcode {opcode:#04x} @ {address:#07x}")

class AddressFault(CPU16Error):
    def __init__(self, address: int, size: int = 1):
        self.address = address
        self.size = size
        super().__init__(f"Address fault @ {address:#x} ({size} byte access)")

class HaltError(CPU16Error):
    pass

# ---------------------------------------------------------------------------
#  Decoded instructions
# ---------------------------------------------------------------------------

class Op(IntEnum):
    MOV_R16 = 0
    MOV_AH  = 1
    MOV_AL  = 2
    INT     = 3
    PUSH_AX = 4
    POP_AX  = 5
    CALL    = 6
    RET     = 7
    HLT     = 8
    CMP_AX  = 9
    JE      = 10
    JNE     = 11
    JMP     = 12
    JL      = 13
    JG      = 14
    DEC_CX  = 15

# Ops whose operand is a signed displacement relative to the next instruction
RELATIVE_OPS = frozenset({Op.CALL, Op.JE, Op.JNE, Op.JMP, Op.JL, Op.JG})

# opcode -> (op, operand width in bytes, register name)
OPCODE_TABLE: dict[int, tuple[Op, int, Optional[str]]] = {
    OPC_MOV_AH:  (Op.MOV_AH, 1, "ah"),
    OPC_MOV_AL:  (Op.MOV_AL, 1, "al"),
    OPC_INT:     (Op.INT, 1, None),
    OPC_PUSH_AX: (Op.PUSH_AX, 0, "ax"),
    OPC_POP_AX:  (Op.POP_AX, 0, "ax"),
    OPC_CALL:    (Op.CALL, 2, None),
    OPC_RET:     (Op.RET, 0, None),
    OPC_HLT:     (Op.HLT, 0, None),
    OPC_CMP_AX:  (Op.CMP_AX, 2, "ax"),
    OPC_JE:      (Op.JE, 1, None),
    OPC_JNE:     (Op.JNE, 1, None),
    OPC_JMP:     (Op.JMP, 1, None),
    OPC_JL:      (Op.JL, 1, None),
    OPC_JG:      (Op.JG, 1, None),
    OPC_DEC_CX:  (Op.DEC_CX, 0, "cx"),
}
for _i, _name in enumerate(REG16):
    OPCODE_TABLE[OPC_MOV_R16 + _i] = (Op.MOV_R16, 2, _name)
del _i, _name

MNEMONICS = {
    Op.MOV_R16: "MOV", Op.MOV_AH: "MOV", Op.MOV_AL: "MOV", Op.INT: "INT",
    Op.PUSH_AX: "PUSH", Op.POP_AX: "POP", Op.CALL: "CALL", Op.RET: "RET",
    Op.HLT: "HLT", Op.CMP_AX: "CMP", Op.JE: "JE", Op.JNE: "JNE",
    Op.JMP: "JMP", Op.JL: "JL", Op.JG: "JG", Op.DEC_CX: "DEC",
}


class Instruction(NamedTuple):
    """One decoded instruction.

    ``operand`` is the raw immediate for MOV/INT/CMP and the sign-extended
    displacement for CALL and the jumps.  ``size`` counts the opcode byte.
    ``address`` is the physical address the opcode was fetched from.
    """
    op: Op
    opcode: int
    reg: Optional[str]
    operand: int
    size: int
    address: int

    @property
    def mnemonic(self) -> str:
        return MNEMONICS[self.op]

    def target(self, ip: int) -> int:
        """Branch target offset for an instruction whose opcode sits at *ip*."""
        return u16(ip + self.size + self.operand)

    def text(self, ip: Optional[int] = None) -> str:
        """Render as assembly.  Relative targets are shown absolute when
        *ip* (the opcode's offset in CS) is given."""
        m = self.mnemonic
        if self.op in (Op.MOV_R16, Op.CMP_AX):
            return f"{m} {self.reg.upper()}, {self.operand:#06x}"
        if self.op in (Op.MOV_AH, Op.MOV_AL):
            return f"{m} {self.reg.upper()}, {self.operand:#04x}"
        if self.op == Op.INT:
            return f"{m} {self.operand:#04x}"
        if self.op in RELATIVE_OPS:
            if ip is None:
                return f"{m} {self.operand:+d}"
            return f"{m} {self.target(ip):#06x}"
        if self.reg:
            return f"{m} {self.reg.upper()}"
        return m

    def __str__(self) -> str:
        return self.text()

# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

def decode(mem, cs: int, ip: int) -> Instruction:
    """Decode the instruction at CS:IP.

    *mem* only needs ``read8(addr)``.  Operand bytes follow the opcode with
    the offset wrapping at 16 bits.  Raises :class:`UnmappedOpcode` for an
    unknown opcode byte; never modifies state.
    """
    address = physical(cs, ip)
    opcode = mem.read8(address)
    entry = OPCODE_TABLE.get(opcode)
    if entry is None:
        raise UnmappedOpcode(opcode, address)
    op, width, reg = entry

    operand = 0
    for i in range(width):
        operand |= mem.read8(physical(cs, u16(ip + 1 + i))) << (8 * i)
    if op in RELATIVE_OPS:
        operand = sign_extend(operand, 8 * width)

    return Instruction(op, opcode, reg, operand, 1 + width, address)

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def disasm_one(mem, cs: int, ip: int) -> tuple[str, int]:
    """Disassemble one instruction at CS:IP.  Returns (text, byte_count)."""
    try:
        instr = decode(mem, cs, ip)
    except UnmappedOpcode as e:
        return f"DB {e.opcode:#04x}", 1
    return instr.text(ip), instr.size


def disasm_range(mem, cs: int, ip: int, count: int) -> list[tuple[int, str, int]]:
    """Disassemble *count* instructions from CS:IP as (ip, text, size)."""
    out = []
    for _ in range(count):
        text, size = disasm_one(mem, cs, ip)
        out.append((ip, text, size))
        ip = u16(ip + size)
    return out
