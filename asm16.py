"""
rm16 Assembler
==============
Translates assembly text into machine code for the rm16 instruction set
(see isa16.py).  This is the loader side of the emulator: the CPU itself
only ever sees bytes.

Supports:
  - Labels (terminated with ':')
  - MOV r16/AH/AL, INT, PUSH/POP AX, CALL, RET, HLT, CMP AX, DEC CX
  - JE/JZ, JNE/JNZ, JMP, JL/JNGE, JG/JNLE (8-bit relative)
  - Immediates: decimal, hex with 0x prefix, character literals ('H')
  - Comments (';' to end of line)
  - .org, .db, .dw, .ascii, .asciiz directives

Usage:
  from asm16 import assemble
  code = assemble(source_text, base_addr=0x2000)

``base_addr`` is the IP offset the first byte will be loaded at; label
values and branch displacements are computed from it.
"""

from __future__ import annotations

from isa16 import (
    REG16, OPC_MOV_R16, OPC_MOV_AH, OPC_MOV_AL, OPC_INT, OPC_PUSH_AX,
    OPC_POP_AX, OPC_CALL, OPC_RET, OPC_HLT, OPC_CMP_AX, OPC_JE, OPC_JNE,
    OPC_JMP, OPC_JL, OPC_JG, OPC_DEC_CX,
)

# Relative 8-bit branches, including common aliases
JUMP_MAP = {
    "je": OPC_JE, "jz": OPC_JE,
    "jne": OPC_JNE, "jnz": OPC_JNE,
    "jmp": OPC_JMP,
    "jl": OPC_JL, "jnge": OPC_JL,
    "jg": OPC_JG, "jnle": OPC_JG,
}

# Single-byte instructions: mnemonic -> (required operand, opcode)
SIMPLE_MAP = {
    "push": ("ax", OPC_PUSH_AX),
    "pop":  ("ax", OPC_POP_AX),
    "dec":  ("cx", OPC_DEC_CX),
    "ret":  ("", OPC_RET),
    "hlt":  ("", OPC_HLT),
    "halt": ("", OPC_HLT),
}

HELLO_SOURCE = """\
; Print "Hello" through the BIOS teletype service, then halt.
        mov ah, 0x0E        ; teletype output
        mov al, 'H'
        int 0x10
        mov al, 'e'
        int 0x10
        mov al, 'l'
        int 0x10
        mov al, 'l'
        int 0x10
        mov al, 'o'
        int 0x10
        hlt
"""

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def _strip_comment(raw: str) -> str:
    """Drop a ';' comment, ignoring semicolons inside quotes."""
    quote = None
    for i, ch in enumerate(raw):
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        elif ch == ";":
            return raw[:i]
    return raw


def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, keeping quoted text intact."""
    ops, cur, quote = [], [], None
    for ch in rest:
        if quote:
            cur.append(ch)
            if ch == quote:
                quote = None
        elif ch in ("'", '"'):
            quote = ch
            cur.append(ch)
        elif ch == ",":
            ops.append("".join(cur).strip())
            cur = []
        else:
            cur.append(ch)
    if "".join(cur).strip():
        ops.append("".join(cur).strip())
    return ops


def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' -> (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def _parse_imm(lineno: int, tok: str) -> int:
    """Parse an immediate value (decimal, 0x hex, or 'c')."""
    tok = tok.strip()
    if len(tok) == 3 and tok[0] == tok[2] == "'":
        return ord(tok[1]) & 0xFF
    try:
        return int(tok, 0)
    except ValueError:
        raise AsmError(lineno, f"Invalid immediate: {tok!r}") from None


def _parse_string(lineno: int, text: str) -> bytes:
    """Parse a double-quoted string literal with escape sequences."""
    text = text.strip()
    if not (len(text) >= 2 and text.startswith('"') and text.endswith('"')):
        raise AsmError(lineno, f"Expected quoted string, got: {text}")
    escapes = {"n": 0x0A, "r": 0x0D, "t": 0x09, "0": 0x00, "\\": 0x5C, '"': 0x22}
    s = text[1:-1]
    result = bytearray()
    i = 0
    while i < len(s):
        if s[i] == "\\" and i + 1 < len(s):
            c = s[i + 1]
            result.append(escapes.get(c, ord(c) & 0xFF))
            i += 2
        else:
            result.append(ord(s[i]) & 0xFF)
            i += 1
    return bytes(result)


def _resolve(lineno: int, tok: str, labels: dict[str, int]) -> int:
    """Resolve a token that is either a label or an immediate."""
    tok = tok.strip()
    if tok in labels:
        return labels[tok]
    return _parse_imm(lineno, tok)


def _immediate(lineno: int, tok: str, labels: dict[str, int], bits: int) -> int:
    """Resolve an immediate operand and check that it fits *bits*.

    Negative values down to the signed minimum are accepted and encoded in
    two's complement.
    """
    value = _resolve(lineno, tok, labels)
    mask = (1 << bits) - 1
    if value < -(1 << (bits - 1)) or value > mask:
        raise AsmError(lineno, f"Immediate {tok.strip()} does not fit {bits} bits")
    return value & mask


def _relative(lineno: int, tok: str, labels: dict[str, int], next_ip: int,
              bits: int) -> int:
    """Encoded displacement for a branch operand.

    A label resolves relative to *next_ip* (the byte after the instruction);
    a number is taken as the raw displacement.
    """
    tok = tok.strip()
    mask = (1 << bits) - 1
    lo, hi = -(1 << (bits - 1)), (1 << (bits - 1)) - 1
    if tok in labels:
        disp = labels[tok] - next_ip
        if bits == 16:
            return disp & mask   # IP wraps at 16 bits, every offset is reachable
        if disp < lo or disp > hi:
            raise AsmError(lineno, f"Branch offset {disp} out of range [{lo}, {hi}] "
                                   f"for target '{tok}'")
        return disp & mask
    disp = _parse_imm(lineno, tok)
    if disp < lo or disp > mask:
        raise AsmError(lineno, f"Displacement {disp} does not fit rel{bits}")
    return disp & mask

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def assemble(source: str, base_addr: int = 0, listing: bool = False) -> bytearray:
    """
    Two-pass assembler.
    Pass 1: collect labels, compute instruction sizes.
    Pass 2: emit machine code with resolved addresses.
    If listing=True, print an address/hex/source listing to stdout.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = _strip_comment(raw).strip()
        if stripped:
            cleaned.append((i, stripped))

    # ---- Pass 1: label collection and size computation ----
    labels: dict[str, int] = {}
    sizes: list[tuple[int, str, int]] = []  # (line_no, text, size_bytes)
    pc = base_addr

    for lineno, text in cleaned:
        # A label may share its line with an instruction: "loop: dec cx"
        head, sep, tail = text.partition(":")
        if sep and head.strip().isidentifier():
            lbl = head.strip()
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            text = tail.strip()
            if not text:
                continue

        sz = _statement_size(lineno, text, pc)
        sizes.append((lineno, text, sz))
        pc += sz

    # ---- Pass 2: emit bytes ----
    code = bytearray()
    pc = base_addr
    listing_lines = []  # (addr, hex_bytes, source_text)

    for lineno, text, sz in sizes:
        emitted = _emit_statement(lineno, text, pc, labels)
        assert len(emitted) == sz, f"Size mismatch line {lineno}: expected {sz}, got {len(emitted)}"
        if listing:
            hexstr = " ".join(f"{b:02X}" for b in emitted[:8])
            if len(emitted) > 8:
                hexstr += " ..."
            listing_lines.append((pc, hexstr, text))
        code.extend(emitted)
        pc += sz

    if listing:
        addr_labels: dict[int, list[str]] = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, hexstr, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"                    {lbl}:")
            print(f"  {addr:04X}  {hexstr:<24s}  {src}")
        for addr in sorted(addr_labels):
            for lbl in addr_labels[addr]:
                print(f"                    {lbl}:")

    return code

# ---------------------------------------------------------------------------
#  Statement size computation (pass 1)
# ---------------------------------------------------------------------------

def _statement_size(lineno: int, text: str, pc: int) -> int:
    """Compute the byte size of one statement (instruction or directive)."""
    mnem, rest = _split_mnemonic(text)
    m = mnem.lower()
    ops = _split_ops(rest)

    if m == ".org":
        target = _parse_imm(lineno, rest)
        if target < pc:
            raise AsmError(lineno, f".org {target:#x} is behind current address {pc:#x}")
        return target - pc
    if m == ".db":
        return sum(len(_parse_string(lineno, o)) if o.startswith('"') else 1
                   for o in ops)
    if m == ".dw":
        return 2 * len(ops)
    if m == ".asciiz":
        return len(_parse_string(lineno, rest)) + 1
    if m == ".ascii":
        return len(_parse_string(lineno, rest))

    if m == "mov":
        if len(ops) != 2:
            raise AsmError(lineno, "MOV takes two operands")
        dst = ops[0].lower()
        if dst in ("ah", "al"):
            return 2
        if dst in REG16:
            return 3
        raise AsmError(lineno, f"Unsupported MOV destination: {ops[0]!r}")
    if m == "int":
        return 2
    if m == "call":
        return 3
    if m == "cmp":
        return 3
    if m in JUMP_MAP:
        return 2
    if m in SIMPLE_MAP:
        return 1

    raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")

# ---------------------------------------------------------------------------
#  Statement emission (pass 2)
# ---------------------------------------------------------------------------

def _emit_statement(lineno: int, text: str, pc: int,
                    labels: dict[str, int]) -> bytearray:
    """Emit machine code for one statement."""
    out = bytearray()
    mnem, rest = _split_mnemonic(text)
    m = mnem.lower()
    ops = _split_ops(rest)

    # ---- Directives ----
    if m == ".org":
        target = _parse_imm(lineno, rest)
        out.extend(bytes(target - pc))
        return out
    if m == ".db":
        for tok in ops:
            if tok.startswith('"'):
                out.extend(_parse_string(lineno, tok))
            else:
                out.append(_resolve(lineno, tok, labels) & 0xFF)
        return out
    if m == ".dw":
        for tok in ops:
            v = _resolve(lineno, tok, labels) & 0xFFFF
            out.append(v & 0xFF)
            out.append((v >> 8) & 0xFF)
        return out
    if m == ".asciiz":
        out.extend(_parse_string(lineno, rest))
        out.append(0)
        return out
    if m == ".ascii":
        out.extend(_parse_string(lineno, rest))
        return out

    # ---- MOV ----
    if m == "mov":
        dst = ops[0].lower()
        if dst == "ah":
            out.append(OPC_MOV_AH)
            out.append(_immediate(lineno, ops[1], labels, 8))
        elif dst == "al":
            out.append(OPC_MOV_AL)
            out.append(_immediate(lineno, ops[1], labels, 8))
        else:
            imm = _immediate(lineno, ops[1], labels, 16)
            out.append(OPC_MOV_R16 + REG16.index(dst))
            out.append(imm & 0xFF)
            out.append((imm >> 8) & 0xFF)
        return out

    # ---- INT ----
    if m == "int":
        if len(ops) != 1:
            raise AsmError(lineno, "INT takes one operand")
        out.append(OPC_INT)
        out.append(_immediate(lineno, ops[0], {}, 8))
        return out

    # ---- CMP AX, imm16 ----
    if m == "cmp":
        if len(ops) != 2 or ops[0].lower() != "ax":
            raise AsmError(lineno, "Only CMP AX, imm16 is supported")
        imm = _immediate(lineno, ops[1], labels, 16)
        out.append(OPC_CMP_AX)
        out.append(imm & 0xFF)
        out.append((imm >> 8) & 0xFF)
        return out

    # ---- CALL rel16 ----
    if m == "call":
        if len(ops) != 1:
            raise AsmError(lineno, "CALL takes one operand")
        disp = _relative(lineno, ops[0], labels, pc + 3, 16)
        out.append(OPC_CALL)
        out.append(disp & 0xFF)
        out.append((disp >> 8) & 0xFF)
        return out

    # ---- Jcc rel8 ----
    if m in JUMP_MAP:
        if len(ops) != 1:
            raise AsmError(lineno, f"{mnem.upper()} takes one operand")
        out.append(JUMP_MAP[m])
        out.append(_relative(lineno, ops[0], labels, pc + 2, 8))
        return out

    # ---- Single-byte instructions ----
    required, opcode = SIMPLE_MAP[m]
    given = ops[0].lower() if ops else ""
    if given != required or len(ops) > 1:
        if required:
            raise AsmError(lineno, f"{mnem.upper()} only supports {required.upper()}")
        raise AsmError(lineno, f"{mnem.upper()} takes no operands")
    out.append(opcode)
    return out
