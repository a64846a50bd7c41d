#!/usr/bin/env python3
"""
rm16 Monitor / CLI
==================
Command-line front end for the rm16 real-mode emulator.

Provides:
  - Assembly or raw binary loading
  - Run with a step ceiling, optional per-instruction trace
  - Interactive monitor: step / run / breakpoints
  - Register, flag, stack and memory inspection
  - Disassembly

Usage:
  python monitor16.py [PROGRAM.asm] [--load FILE@ADDR] [--cs N --ip N]
                      [--ss N --sp N] [--max-steps N] [--trace] [--monitor]
  python monitor16.py --assemble SRC OUT [--listing]

With no program the built-in "Hello" demo runs.
"""

from __future__ import annotations
import argparse
import cmd
import logging
import os
import shlex
import sys
from typing import Optional

from cpu16 import CPU16, CPU16Error, ExitStatus, HaltError, physical, u16
from isa16 import Instruction, disasm_range
from asm16 import assemble, AsmError, HELLO_SOURCE
from system16 import (
    RealModeSystem, DEFAULT_CS, DEFAULT_IP, DEFAULT_SS, DEFAULT_SP,
    DEFAULT_MAX_STEPS,
)

log = logging.getLogger("rm16")

EXIT_OK = 0
EXIT_LOAD_ERROR = 1
EXIT_FAULT = 2

# ---------------------------------------------------------------------------
#  Output helpers
# ---------------------------------------------------------------------------

def _tty_char(byte_val: int):
    """Print teletype output to the host terminal in real time."""
    ch = chr(byte_val) if 0x20 <= byte_val < 0x7F or byte_val in (10, 13, 9) else '.'
    print(ch, end='', flush=True)


def trace_instruction(cpu: CPU16, instr: Instruction):
    """on_step observer: one line per executed instruction."""
    ip = u16(instr.address - cpu.cs * 16)
    print(f"  {cpu.cs:04X}:{ip:04X}  {instr.text(ip):<20s} AX={cpu.ax:04X} "
          f"CX={cpu.cx:04X} SP={cpu.sp:04X} FL={cpu.flags:04X}", file=sys.stderr)

# ---------------------------------------------------------------------------
#  Interactive monitor
# ---------------------------------------------------------------------------

class MonitorCLI(cmd.Cmd):
    """Interactive monitor for the rm16 system."""

    intro = (
        "\n"
        "rm16 real-mode monitor.  Type 'help' for commands, 'quit' to exit.\n"
    )
    prompt = "RM16> "

    def __init__(self, system: RealModeSystem):
        super().__init__()
        self.sys = system
        self.breakpoints: set[int] = set()
        self.sys.teletype.on_tx = _tty_char

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse a physical address: number, register name, or SEG:OFF."""
        s = s.strip().lower()
        if ":" in s:
            seg, off = s.split(":", 1)
            return physical(self._parse_word(seg), self._parse_word(off))
        if s == "ip":
            return physical(self.sys.cpu.cs, self.sys.cpu.ip)
        if s == "sp":
            return physical(self.sys.cpu.ss, self.sys.cpu.sp)
        return int(s, 0)

    def _parse_word(self, s: str) -> int:
        s = s.strip().lower()
        try:
            return self.sys.cpu.get_reg(s)
        except KeyError:
            return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    # ================================================================
    #  Commands
    # ================================================================

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        cpu = self.sys.cpu
        for _ in range(count):
            cs, ip = cpu.cs, cpu.ip
            try:
                instr = self.sys.step()
            except HaltError:
                print("CPU is halted.")
                break
            except CPU16Error as e:
                print(f"Fault: {e}")
                break
            print(f"  {cs:04X}:{ip:04X}  {instr.text(ip)}")
            if not cpu.running:
                print("CPU halted.")
                break

    def do_run(self, arg):
        """Run until halt/fault/breakpoint: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else DEFAULT_MAX_STEPS
        cpu = self.sys.cpu
        total = 0
        while total < max_steps:
            if not cpu.running:
                break
            if total and physical(cpu.cs, cpu.ip) in self.breakpoints:
                print(f"\nBreakpoint hit at {cpu.cs:04X}:{cpu.ip:04X}")
                return
            try:
                self.sys.step()
            except CPU16Error as e:
                print(f"\nFault after {total} steps: {e}")
                return
            total += 1
        if cpu.running:
            print(f"\nStopped after {total} steps.")
        else:
            print(f"\nCPU halted after {total} steps.")

    def do_continue(self, arg):
        """Alias for 'run'."""
        self.do_run(arg)
    do_c = do_continue

    def do_boot(self, arg):
        """Reset registers and set entry: boot [cs ip [ss sp]]"""
        parts = shlex.split(arg)
        vals = [self._parse_int(p) for p in parts]
        cs, ip = (vals[0], vals[1]) if len(vals) >= 2 else (DEFAULT_CS, DEFAULT_IP)
        ss, sp = (vals[2], vals[3]) if len(vals) >= 4 else (DEFAULT_SS, DEFAULT_SP)
        self.sys.boot(cs, ip, ss, sp)
        print(f"Booted. CS:IP={cs:04X}:{ip:04X}  SS:SP={ss:04X}:{sp:04X}")

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address|seg:off>"""
        if not arg.strip():
            if self.breakpoints:
                print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    print(f"  {a:#07x}")
            else:
                print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        print(f"Breakpoint set at {addr:#07x}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        print(f"Breakpoint at {addr:#07x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show CPU registers."""
        print(self.sys.cpu.dump_regs())
        print(f"  Steps: {self.sys.cpu.steps}")

    def do_flags(self, arg):
        """Show CPU flags."""
        c = self.sys.cpu
        print(f"  CF={c.cf} ZF={c.zf} SF={c.sf} OF={c.of}  (FLAGS={c.flags:04X})")

    def do_stack(self, arg):
        """Show words on the stack: stack [count]"""
        count = self._parse_int(arg) if arg.strip() else 8
        c = self.sys.cpu
        try:
            words = c.stack_window(count)
        except CPU16Error as e:
            print(f"  {e}")
            return
        for i, w in enumerate(words):
            marker = "<SP" if i == 0 else ""
            print(f"  {c.ss:04X}:{u16(c.sp + 2 * i):04X}  {w:04X} {marker}")

    def do_setreg(self, arg):
        """Set register: setreg <reg> <value>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: setreg <reg> <value>")
            return
        try:
            self.sys.cpu.set_reg(parts[0], self._parse_int(parts[1]))
        except KeyError as e:
            print(e.args[0])
            return
        print(f"  {parts[0].upper()} = {self.sys.cpu.get_reg(parts[0]):04X}")

    def do_dump(self, arg):
        """Hex dump memory: dump <address|seg:off> [count]
        Count defaults to 128 bytes."""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 128
        count = max(0, min(count, self.sys.memory.size - addr))
        try:
            data = self.sys.memory.dump(addr, count)
        except CPU16Error as e:
            print(f"  {e}")
            return
        for row in range(0, count, 16):
            chunk = data[row:row + 16]
            hex_bytes = [f"{b:02x}" for b in chunk] + ["  "] * (16 - len(chunk))
            ascii_chars = "".join(chr(b) if 0x20 <= b < 0x7F else '.' for b in chunk)
            hex_str = ' '.join(hex_bytes[:8]) + '  ' + ' '.join(hex_bytes[8:])
            print(f"  {addr + row:05x}: {hex_str}  |{ascii_chars}|")

    def do_setmem(self, arg):
        """Set memory bytes: setmem <address> <byte> [byte] ..."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: setmem <addr> <byte...>")
            return
        addr = self._parse_addr(parts[0])
        data = bytes(self._parse_int(tok) & 0xFF for tok in parts[1:])
        try:
            self.sys.load_binary(addr, data)
        except CPU16Error as e:
            print(f"  {e}")
            return
        print(f"  Wrote {len(data)} bytes at {addr:#x}")

    def do_disasm(self, arg):
        """Disassemble: disasm [ip] [count]
        Defaults to current CS:IP, 16 instructions."""
        parts = shlex.split(arg)
        c = self.sys.cpu
        ip = self._parse_int(parts[0]) if parts else c.ip
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        for at, text, size in disasm_range(self.sys.memory, c.cs, ip, count):
            raw = ' '.join(f"{self.sys.memory.read8(physical(c.cs, u16(at + i))):02x}"
                           for i in range(size))
            marker = ">>>" if at == c.ip else "   "
            print(f"  {marker} {c.cs:04X}:{at:04X}  {raw:<9s} {text}")

    def do_status(self, arg):
        """Show full system status."""
        print(self.sys.dump_state())

    def do_quit(self, arg):
        """Exit the monitor."""
        print("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        print()
        return self.do_quit(arg)

    def default(self, line):
        """Handle unknown commands gracefully."""
        print(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass

# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def _env_max_steps() -> int:
    value = os.environ.get("RM16_MAX_STEPS")
    if not value:
        return DEFAULT_MAX_STEPS
    try:
        return int(value, 0)
    except ValueError:
        log.warning("Ignoring invalid RM16_MAX_STEPS=%r", value)
        return DEFAULT_MAX_STEPS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rm16",
        description="rm16 real-mode 16-bit emulator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  rm16                           # run the Hello demo\n"
               "  rm16 program.asm --trace\n"
               "  rm16 --load program.bin@0x2000 --monitor\n"
               "  rm16 --assemble program.asm program.bin --listing\n",
    )
    parser.add_argument("program", nargs="?", default=None,
                        help="assembly source to assemble at CS:IP and run")
    parser.add_argument("--load", type=str, action="append", default=[],
                        metavar="FILE@ADDR",
                        help="load a raw binary at a physical address")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="assemble SRC to raw binary OUT and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="print an assembly listing")
    parser.add_argument("--cs", type=lambda s: int(s, 0), default=DEFAULT_CS)
    parser.add_argument("--ip", type=lambda s: int(s, 0), default=DEFAULT_IP)
    parser.add_argument("--ss", type=lambda s: int(s, 0), default=DEFAULT_SS)
    parser.add_argument("--sp", type=lambda s: int(s, 0), default=DEFAULT_SP)
    parser.add_argument("--max-steps", type=int, default=_env_max_steps(),
                        help="instruction ceiling (env RM16_MAX_STEPS)")
    parser.add_argument("--trace", action="store_true",
                        help="print every executed instruction to stderr")
    parser.add_argument("--monitor", action="store_true",
                        help="enter the interactive monitor instead of running")
    parser.add_argument("--verbose", "-v", action="count", default=0,
                        help="log verbosity (-v info, -vv debug)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    level = (logging.WARNING, logging.INFO, logging.DEBUG)[min(args.verbose, 2)]
    logging.basicConfig(level=level, format="%(levelname)s: %(name)s: %(message)s")

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        try:
            with open(src_path, "r") as f:
                source = f.read()
            code = assemble(source, args.ip, listing=args.listing)
            with open(out_path, "wb") as f:
                f.write(code)
        except (AsmError, OSError) as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return EXIT_LOAD_ERROR
        print(f"Assembled {src_path} -> {out_path} ({len(code)} bytes)")
        return EXIT_OK

    system = RealModeSystem(on_output=_tty_char, buffer_output=False)

    try:
        for spec in args.load:
            if "@" in spec:
                path, addr_s = spec.rsplit("@", 1)
                addr = int(addr_s, 0)
            else:
                path, addr = spec, physical(args.cs, args.ip)
            with open(path, "rb") as f:
                data = f.read()
            system.load_binary(addr, data)

        if args.program or not args.load:
            if args.program:
                with open(args.program, "r") as f:
                    source = f.read()
            else:
                source = HELLO_SOURCE
            code = assemble(source, args.ip, listing=args.listing)
            system.load_program(code, args.cs, args.ip)
    except (AsmError, OSError, CPU16Error, ValueError) as e:
        print(f"Load error: {e}", file=sys.stderr)
        return EXIT_LOAD_ERROR

    system.boot(args.cs, args.ip, args.ss, args.sp)

    if args.monitor:
        cli = MonitorCLI(system)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return EXIT_OK

    if args.trace:
        system.cpu.on_step = trace_instruction

    status = system.run(args.max_steps)
    print()
    if status == ExitStatus.FAULT:
        print(f"CPU fault: {system.cpu.fault}", file=sys.stderr)
        print(system.cpu.dump_regs(), file=sys.stderr)
        return EXIT_FAULT
    if status == ExitStatus.STEP_LIMIT:
        print(f"Stopped after {args.max_steps} steps without HLT.", file=sys.stderr)
        return EXIT_FAULT
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
