"""
rm16 System Tests
=================
Loader, boot sequence, teletype buffering and the status dump.
Run with:  python -m pytest test_system16.py
"""

import unittest

from asm16 import assemble, HELLO_SOURCE
from cpu16 import ExitStatus, AddressFault
from system16 import (
    RealModeSystem, Teletype, DEFAULT_CS, DEFAULT_IP, DEFAULT_SS, DEFAULT_SP,
)


def make_system(source: str = HELLO_SOURCE, **boot) -> RealModeSystem:
    system = RealModeSystem()
    cs = boot.get("cs", DEFAULT_CS)
    ip = boot.get("ip", DEFAULT_IP)
    system.load_program(assemble(source, ip), cs, ip)
    system.boot(**boot)
    return system


class TestTeletype(unittest.TestCase):
    def test_buffer_and_drain(self):
        tty = Teletype()
        for ch in b"Hi":
            tty.write(ch)
        self.assertEqual(tty.drain_tx(), "Hi")
        self.assertEqual(tty.drain_tx(), "")

    def test_on_tx_sees_each_byte(self):
        seen = []
        tty = Teletype(on_tx=seen.append)
        tty.write(0x141)
        self.assertEqual(seen, [0x41])
        self.assertEqual(tty.tx_buffer, bytearray(b"A"))

    def test_unbuffered_only_forwards(self):
        seen = []
        tty = Teletype(on_tx=seen.append, buffered=False)
        for ch in b"Hi":
            tty.write(ch)
        self.assertEqual(bytes(seen), b"Hi")
        self.assertEqual(tty.tx_buffer, bytearray())
        self.assertEqual(tty.drain_tx(), "")


class TestRealModeSystem(unittest.TestCase):
    def test_hello(self):
        system = make_system()
        self.assertEqual(system.run(), ExitStatus.HALTED)
        self.assertTrue(system.halted)
        self.assertEqual(system.get_tx_output(), "Hello")
        self.assertEqual(system.get_tx_output(), "")

    def test_on_output_passthrough(self):
        seen = []
        system = RealModeSystem(on_output=seen.append)
        system.load_program(assemble(HELLO_SOURCE, DEFAULT_IP))
        system.boot()
        system.run()
        self.assertEqual(bytes(seen), b"Hello")

    def test_live_output_without_buffering(self):
        seen = []
        system = RealModeSystem(on_output=seen.append, buffer_output=False)
        system.load_program(assemble(HELLO_SOURCE, DEFAULT_IP))
        system.boot()
        system.run()
        self.assertEqual(bytes(seen), b"Hello")
        self.assertEqual(len(system.teletype.tx_buffer), 0)
        self.assertEqual(system.get_tx_output(), "")

    def test_load_program_returns_physical_address(self):
        system = RealModeSystem()
        addr = system.load_program(b"\xF4", cs=0x0100, ip=0x0010)
        self.assertEqual(addr, 0x1010)
        self.assertEqual(system.memory.read8(0x1010), 0xF4)

    def test_boot_resets_registers(self):
        system = make_system()
        system.cpu.bx = 0x1234
        system.cpu.flags = 0xFFFF
        system.run()
        system.boot(cs=0, ip=0x2000, ss=0x0050, sp=0x0100)
        cpu = system.cpu
        self.assertEqual((cpu.ax, cpu.bx, cpu.flags, cpu.steps), (0, 0, 0, 0))
        self.assertEqual((cpu.ss, cpu.sp), (0x0050, 0x0100))
        self.assertTrue(cpu.running)
        self.assertEqual(system.run(), ExitStatus.HALTED)

    def test_segmented_entry_point(self):
        system = make_system(cs=0x0100, ip=0x0000, ss=0x0000, sp=0x0800)
        self.assertEqual(system.run(), ExitStatus.HALTED)
        self.assertEqual(system.get_tx_output(), "Hello")
        self.assertEqual(system.cpu.cs, 0x0100)

    def test_defaults(self):
        system = make_system()
        cpu = system.cpu
        self.assertEqual((cpu.cs, cpu.ip, cpu.ss, cpu.sp),
                         (DEFAULT_CS, DEFAULT_IP, DEFAULT_SS, DEFAULT_SP))

    def test_load_outside_memory(self):
        system = RealModeSystem(mem_size=0x100)
        with self.assertRaises(AddressFault):
            system.load_binary(0xF0, bytes(0x20))

    def test_step_and_dump_state(self):
        system = make_system("mov ah, 0x0E\n.db 0xFF")
        system.step()
        text = system.dump_state()
        self.assertIn("AX=0E00", text)
        self.assertIn("Steps: 1", text)
        self.assertEqual(system.run(), ExitStatus.FAULT)
        self.assertIn("Fault: Unmapped opcode 0xff", system.dump_state())


if __name__ == "__main__":
    unittest.main()
