#!/usr/bin/env python3
"""
Integration tests for the LC-3 system emulator.

Tests the full stack: object image loading + CPU + console devices.
"""
import io
import os
import tempfile
import unittest
from contextlib import redirect_stderr

import numpy as np

from lc3 import ImageError, HaltError, MEMORY_SIZE, PC_START
from system import LC3System, read_image
from devices import Console, BufferedConsole, TerminalConsole, EOF_CHAR


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

HALT = 0xF025


def image(origin: int, *words: int) -> bytes:
    """Encode an object image: origin word, then the program words."""
    return np.array([origin, *words], dtype=">u2").tobytes()


def make_system(console: Console = None) -> LC3System:
    return LC3System(console if console is not None else BufferedConsole())


def run_until(sys_emu: LC3System, max_steps: int = 100_000):
    """Run until halted or step limit."""
    for i in range(max_steps):
        sys_emu.step()
        if sys_emu.halted:
            return i
    return max_steps


def write_temp(data: bytes) -> str:
    fd, path = tempfile.mkstemp(suffix=".obj")
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    return path


# Hello program: LEA R0, MSG ; PUTS ; HALT ; MSG "Hi!\n"
HELLO = (0xE002, 0xF022, HALT) + tuple(b"Hi!\n") + (0,)


# =========================================================================
#  Console devices
# =========================================================================

class TestBufferedConsole(unittest.TestCase):

    def test_input_queue(self):
        con = BufferedConsole()
        self.assertFalse(con.poll_ready())
        con.inject_input("ab")
        self.assertTrue(con.poll_ready())
        self.assertEqual(con.read_char(), ord("a"))
        self.assertEqual(con.read_char(), ord("b"))
        self.assertEqual(con.read_char(), EOF_CHAR)

    def test_inject_bytes(self):
        con = BufferedConsole()
        con.inject_input(b"\x00\xff")
        self.assertEqual(con.read_char(), 0)
        self.assertEqual(con.read_char(), 0xFF)

    def test_output_and_callback(self):
        con = BufferedConsole()
        seen = []
        con.on_tx = seen.append
        con.write_char(0x141)
        con.write_text("bc")
        self.assertEqual(seen, [0x41, ord("b"), ord("c")])
        self.assertEqual(con.drain_output(), "Abc")
        self.assertEqual(con.drain_output(), "")

    def test_flush_count(self):
        con = BufferedConsole()
        con.flush()
        con.flush()
        self.assertEqual(con.flush_count, 2)


class TestTerminalConsole(unittest.TestCase):

    def setUp(self):
        self.in_r, self.in_w = os.pipe()
        self.out_r, self.out_w = os.pipe()
        self.con = TerminalConsole(self.in_r, self.out_w, poll_timeout=0.0)

    def tearDown(self):
        for fd in (self.in_r, self.in_w, self.out_r, self.out_w):
            try:
                os.close(fd)
            except OSError:
                pass

    def test_poll_empty_pipe(self):
        self.assertFalse(self.con.poll_ready())

    def test_poll_and_read(self):
        os.write(self.in_w, b"k")
        self.assertTrue(self.con.poll_ready())
        self.assertEqual(self.con.read_char(), ord("k"))
        self.assertFalse(self.con.poll_ready())

    def test_end_of_input(self):
        os.close(self.in_w)
        self.assertEqual(self.con.read_char(), EOF_CHAR)
        self.assertTrue(self.con.eof)
        self.assertFalse(self.con.poll_ready())
        self.assertEqual(self.con.read_char(), EOF_CHAR)

    def test_output_waits_for_flush(self):
        self.con.write_text("ok")
        self.con.flush()
        self.assertEqual(os.read(self.out_r, 16), b"ok")

    def test_program_through_pipes(self):
        # GETC ; OUT ; HALT
        sys_emu = LC3System(self.con)
        sys_emu.load_words(PC_START, [0xF020, 0xF021, HALT])
        os.write(self.in_w, b"z")
        sys_emu.run(100)
        self.assertTrue(sys_emu.halted)
        self.assertEqual(os.read(self.out_r, 64), b"zHALT\n")


# =========================================================================
#  Image loader
# =========================================================================

class TestImageLoader(unittest.TestCase):

    def test_read_image(self):
        sys_emu = make_system()
        origin, count = read_image(sys_emu.mem, image(0x3000, 0x1234, 0xABCD))
        self.assertEqual((origin, count), (0x3000, 2))
        self.assertEqual(sys_emu.mem.dump(0x3000, 3), [0x1234, 0xABCD, 0])

    def test_big_endian(self):
        sys_emu = make_system()
        sys_emu.load_image(b"\x40\x00\x12\x34")
        self.assertEqual(sys_emu.mem.read(0x4000), 0x1234)

    def test_origin_only(self):
        sys_emu = make_system()
        self.assertEqual(sys_emu.load_image(image(0x3000)), (0x3000, 0))
        self.assertEqual(int(np.count_nonzero(sys_emu.mem.cells)), 0)

    def test_too_short(self):
        sys_emu = make_system()
        for data in (b"", b"\x30"):
            with self.assertRaises(ImageError):
                sys_emu.load_image(data)

    def test_trailing_odd_byte_ignored(self):
        sys_emu = make_system()
        origin, count = sys_emu.load_image(image(0x3000, 0x1111) + b"\x22")
        self.assertEqual(count, 1)
        self.assertEqual(sys_emu.mem.read(0x3001), 0)

    def test_truncated_at_top_of_memory(self):
        sys_emu = make_system()
        _, count = sys_emu.load_image(image(0xFFFE, 1, 2, 3))
        self.assertEqual(count, 2)
        self.assertEqual(sys_emu.mem.read(0xFFFF), 2)
        self.assertEqual(sys_emu.mem.read(0x0000), 0)

    def test_later_image_overwrites(self):
        sys_emu = make_system()
        sys_emu.load_image(image(0x3000, 1, 2, 3))
        sys_emu.load_image(image(0x3001, 9))
        self.assertEqual(sys_emu.mem.dump(0x3000, 3), [1, 9, 3])
        self.assertEqual([origin for _, origin, _ in sys_emu.images],
                         [0x3000, 0x3001])

    def test_file_object(self):
        sys_emu = make_system()
        origin, count = sys_emu.load_image(io.BytesIO(image(0x5000, 7)), name="mem")
        self.assertEqual((origin, count), (0x5000, 1))
        self.assertEqual(sys_emu.images[-1], ("mem", 0x5000, 1))

    def test_load_file(self):
        path = write_temp(image(0x3000, HALT))
        try:
            sys_emu = make_system()
            self.assertTrue(sys_emu.load_image_file(path))
            self.assertEqual(sys_emu.mem.read(0x3000), HALT)
        finally:
            os.unlink(path)

    def test_missing_file(self):
        sys_emu = make_system()
        err = io.StringIO()
        with redirect_stderr(err):
            ok = sys_emu.load_image_file("/nonexistent/prog.obj")
        self.assertFalse(ok)
        self.assertIn("/nonexistent/prog.obj", err.getvalue())
        self.assertEqual(sys_emu.images, [])

    def test_empty_file(self):
        path = write_temp(b"")
        try:
            sys_emu = make_system()
            with redirect_stderr(io.StringIO()):
                self.assertFalse(sys_emu.load_image_file(path))
        finally:
            os.unlink(path)

    def test_halt_image(self):
        sys_emu = make_system()
        sys_emu.load_image(image(0x3000, HALT))
        sys_emu.boot()
        sys_emu.step()
        self.assertTrue(sys_emu.halted)
        self.assertEqual(sys_emu.cpu.cycle_count, 1)
        self.assertEqual(int(np.count_nonzero(sys_emu.mem.cells)), 1)
        self.assertEqual(sys_emu.get_output(), "HALT\n")


# =========================================================================
#  System
# =========================================================================

class TestSystem(unittest.TestCase):

    def test_defaults(self):
        sys_emu = LC3System()
        self.assertIsInstance(sys_emu.console, BufferedConsole)
        self.assertIs(sys_emu.cpu.mem, sys_emu.mem)
        self.assertEqual(len(sys_emu.mem), MEMORY_SIZE)

    def test_hello(self):
        sys_emu = make_system()
        sys_emu.load_image(image(0x3000, *HELLO))
        sys_emu.boot()
        run_until(sys_emu)
        self.assertEqual(sys_emu.get_output(), "Hi!\nHALT\n")

    def test_run_returns_count(self):
        sys_emu = make_system()
        sys_emu.load_words(0x3000, HELLO)
        self.assertEqual(sys_emu.run(), 3)

    def test_run_step_limit(self):
        sys_emu = make_system()
        sys_emu.load_words(0x3000, [0x0FFF])
        self.assertEqual(sys_emu.run(max_steps=25), 25)
        self.assertFalse(sys_emu.halted)

        sys_emu.load_words(0x3000, [HALT])
        sys_emu.boot()
        self.assertEqual(sys_emu.run(), 1)
        self.assertEqual(sys_emu.run(), 0)

    def test_output_of_terminal_console(self):
        r, w = os.pipe()
        try:
            sys_emu = LC3System(TerminalConsole(r, w))
            self.assertEqual(sys_emu.get_output(), "")
        finally:
            os.close(r)
            os.close(w)

    def test_step_after_halt(self):
        sys_emu = make_system()
        sys_emu.load_words(0x3000, [HALT])
        sys_emu.run()
        with self.assertRaises(HaltError):
            sys_emu.step()

    def test_boot_entry_keeps_memory(self):
        sys_emu = make_system()
        sys_emu.load_image(image(0x4000, *HELLO))
        sys_emu.boot(0x4000)
        sys_emu.run()
        self.assertEqual(sys_emu.get_output(), "Hi!\nHALT\n")
        sys_emu.boot(0x4000)
        self.assertFalse(sys_emu.halted)
        sys_emu.run()
        self.assertEqual(sys_emu.get_output(), "Hi!\nHALT\n")

    def test_in_echo(self):
        # IN ; OUT ; HALT
        con = BufferedConsole()
        con.inject_input("7")
        sys_emu = make_system(con)
        sys_emu.load_words(0x3000, [0xF023, 0xF021, HALT])
        sys_emu.run()
        self.assertEqual(sys_emu.get_output(), "Enter a character:77HALT\n")

    def test_os_and_program_images(self):
        # A routine at x4000 that prints R0 twice; R7 is kept in R2 across the traps
        lib = image(0x4000, 0x15E0, 0xF021, 0xF021, 0xC080)
        # LD R1, ADDR ; JSRR R1 ; HALT ; ADDR .FILL x4000
        prog = image(0x3000, 0x2202, 0x4040, HALT, 0x4000)
        sys_emu = make_system()
        sys_emu.load_image(lib, name="lib")
        sys_emu.load_image(prog, name="prog")
        sys_emu.cpu.reg[0] = ord("#")
        sys_emu.run()
        self.assertEqual(sys_emu.get_output(), "##HALT\n")

    def test_dump_state(self):
        sys_emu = make_system()
        sys_emu.load_image(image(0x3000, HALT), name="halt.obj")
        sys_emu.run()
        text = sys_emu.dump_state()
        self.assertIn("=== Registers ===", text)
        self.assertIn("Instructions: 1", text)
        self.assertIn("Halted: True", text)
        self.assertIn("Nonzero words: 1 / 65536", text)
        self.assertIn("Image halt.obj: x3000..x3000 (1 words)", text)
        self.assertIn("Console: buffered", text)


if __name__ == "__main__":
    unittest.main()
