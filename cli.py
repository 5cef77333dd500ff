#!/usr/bin/env python3
"""
LC-3 Virtual Machine / CLI
==========================
Command-line front end for the LC-3 emulator.

Provides:
  - Object image loading (several images, later ones overwrite earlier)
  - Run mode with the host terminal wired to the console traps
  - Instruction trace and register dump for debugging
  - An interactive debug monitor (step, breakpoints, inspection)
  - Disassembly

Usage:
  python cli.py IMAGE [IMAGE ...] [--trace] [--max-steps N]
                [--poll-timeout SECONDS] [--origin ADDR] [--reg-dump]
  python cli.py --monitor [IMAGE ...]

Exit status: 0 after HALT, 1 if an image fails to load, 2 without images,
3 on an execution fault, 4 when --max-steps runs out, 130 on interrupt.
"""

from __future__ import annotations
import argparse
import cmd
import os
import shlex
import signal
import sys
from contextlib import contextmanager
from typing import Optional

from lc3 import (
    Opcode, TrapVector, Cond, FaultError, PC_START, u16, s16, sign_extend,
)
from system import LC3System
from devices import BufferedConsole, TerminalConsole, Console

EXIT_OK = 0
EXIT_LOAD_FAILED = 1
EXIT_USAGE = 2
EXIT_FAULT = 3
EXIT_STEP_LIMIT = 4
EXIT_INTERRUPT = 130

USAGE = "lc3 [image-file1] ..."

_TRAP_VECTORS = {t.value for t in TrapVector}

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

def _nzp(mask: int) -> str:
    return ("n" if mask & 4 else "") + ("z" if mask & 2 else "") + ("p" if mask & 1 else "")


def disasm_one(word: int, addr: int) -> str:
    """Disassemble the instruction *word* stored at *addr*."""
    word = u16(word)
    op = Opcode(word >> 12)
    r_hi = (word >> 9) & 0x7     # DR / SR / nzp
    r_mid = (word >> 6) & 0x7    # SR1 / BaseR
    next_pc = u16(addr + 1)

    if op in (Opcode.ADD, Opcode.AND):
        if word & 0x20:
            imm = s16(sign_extend(word & 0x1F, 5))
            return f"{op.name} R{r_hi}, R{r_mid}, #{imm}"
        return f"{op.name} R{r_hi}, R{r_mid}, R{word & 0x7}"

    elif op == Opcode.NOT:
        return f"NOT R{r_hi}, R{r_mid}"

    elif op == Opcode.BR:
        if r_hi == 0:
            return "NOP"
        target = u16(next_pc + sign_extend(word & 0x1FF, 9))
        return f"BR{_nzp(r_hi)} x{target:04X}"

    elif op == Opcode.JMP:
        return "RET" if r_mid == 7 else f"JMP R{r_mid}"

    elif op == Opcode.JSR:
        if word & 0x800:
            target = u16(next_pc + sign_extend(word & 0x7FF, 11))
            return f"JSR x{target:04X}"
        return f"JSRR R{r_mid}"

    elif op in (Opcode.LD, Opcode.LDI, Opcode.LEA, Opcode.ST, Opcode.STI):
        target = u16(next_pc + sign_extend(word & 0x1FF, 9))
        return f"{op.name} R{r_hi}, x{target:04X}"

    elif op in (Opcode.LDR, Opcode.STR):
        off = s16(sign_extend(word & 0x3F, 6))
        return f"{op.name} R{r_hi}, R{r_mid}, #{off}"

    elif op == Opcode.TRAP:
        vector = word & 0xFF
        if vector in _TRAP_VECTORS:
            return f"TRAP x{vector:02X} ({TrapVector(vector).name})"
        return f"TRAP x{vector:02X}"

    # RES / RTI
    return f"{op.name} (.FILL x{word:04X})"


def parse_word(s: str) -> int:
    """Parse a number: x3000 (LC-3 hex), #12 (decimal), or Python literal."""
    s = s.strip().lower()
    if s.startswith("x"):
        return int(s[1:], 16)
    if s.startswith("#"):
        return int(s[1:], 10)
    return int(s, 0)


# ---------------------------------------------------------------------------
#  Debug monitor
# ---------------------------------------------------------------------------

class LC3Monitor(cmd.Cmd):
    """Interactive monitor for an LC-3 machine."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════════╗\n"
        "║             LC-3 Debug Monitor                           ║\n"
        "║   Type 'help' for commands.  'quit' to exit.             ║\n"
        "╚══════════════════════════════════════════════════════════╝\n"
    )
    prompt = "LC3> "

    def __init__(self, system: LC3System, stdout=None):
        super().__init__(stdout=stdout)
        self.sys = system
        self.breakpoints: set[int] = set()

        # Echo guest output as it is written
        if isinstance(self.sys.console, BufferedConsole):
            self.sys.console.on_tx = self._tx_handler

    def _tx_handler(self, byte_val: int):
        """Print console output to the host terminal in real time."""
        ch = chr(byte_val) if 0x20 <= byte_val < 0x7F or byte_val in (10, 13, 9) else '.'
        self._out(ch, end='', flush=True)

    def _out(self, *args, **kwargs):
        print(*args, file=self.stdout, **kwargs)

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (x3000, 0x3000, #12, or register name)."""
        s = s.strip().lower()
        if s.startswith("r") and s[1:].isdigit():
            return self.sys.cpu.reg[int(s[1:]) & 0x7]
        if s == "pc":
            return self.sys.cpu.pc
        return u16(parse_word(s))

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load an object image: load <file>"""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: load <file>")
            return
        path = parts[0]
        if self.sys.load_image_file(path):
            _, origin, count = self.sys.images[-1]
            self._out(f"Loaded {count} words from '{path}' at x{origin:04X}")
        else:
            self._out(f"Failed to load image: {path}")

    # -- Boot --

    def do_boot(self, arg):
        """Reset the CPU: boot [entry_address]
        Entry defaults to x3000.  Memory is kept."""
        addr = self._parse_addr(arg) if arg.strip() else PC_START
        self.sys.boot(addr)
        self._out(f"CPU reset. PC=x{addr:04X}")

    # -- Execution --

    def _step_one(self) -> bool:
        cpu = self.sys.cpu
        addr = cpu.pc
        text = disasm_one(self.sys.mem.raw_read(addr), addr)
        try:
            cpu.step()
        except FaultError as e:
            self._out(f"\nFault: {e}")
            return False
        self._out(f"  x{addr:04X}: {text}")
        return True

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = parse_word(arg) if arg.strip() else 1
        for _ in range(count):
            if self.sys.cpu.halted:
                self._out("CPU is halted.")
                break
            if not self._step_one():
                break

    def do_run(self, arg):
        """Run until halt/breakpoint/fault: run [max_steps]"""
        max_steps = parse_word(arg) if arg.strip() else 10_000_000
        cpu = self.sys.cpu
        total = 0
        while total < max_steps:
            if cpu.halted:
                self._out(f"\nCPU halted after {total} instructions.")
                break
            if total and cpu.pc in self.breakpoints:
                self._out(f"\nBreakpoint hit at x{cpu.pc:04X}")
                break
            try:
                cpu.step()
            except FaultError as e:
                self._out(f"\nFault: {e}")
                break
            total += 1
        else:
            self._out(f"\nStopped after {total} instructions.")

    def do_continue(self, arg):
        """Alias for 'run'."""
        self.do_run(arg)
    do_c = do_continue

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                self._out("Breakpoints:")
                for a in sorted(self.breakpoints):
                    self._out(f"  x{a:04X}")
            else:
                self._out("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._out(f"Breakpoint set at x{addr:04X}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            self._out("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._out(f"Breakpoint at x{addr:04X} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show CPU registers."""
        self._out(self.sys.cpu.dump_regs())
        self._out(f"  Instructions: {self.sys.cpu.cycle_count}")

    def do_setreg(self, arg):
        """Set register: setreg <R0-R7|pc|cond> <value>
        cond takes n, z or p."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._out("Usage: setreg <reg> <value>")
            return
        reg_s = parts[0].lower()
        cpu = self.sys.cpu
        if reg_s == "cond":
            conds = {"n": Cond.NEG, "z": Cond.ZRO, "p": Cond.POS}
            if parts[1].lower() not in conds:
                self._out("COND must be n, z or p.")
                return
            cpu.reg.cond = conds[parts[1].lower()]
            self._out(f"  COND = {parts[1].upper()}")
            return
        val = u16(parse_word(parts[1]))
        if reg_s == "pc":
            cpu.pc = val
        elif reg_s.startswith("r") and reg_s[1:].isdigit() and int(reg_s[1:]) <= 7:
            cpu.reg[int(reg_s[1:])] = val
        else:
            self._out("Register must be R0-R7, pc or cond.")
            return
        self._out(f"  {reg_s.upper()} = x{val:04X}")

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [count]
        Count defaults to 64 words."""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = parse_word(parts[1]) if len(parts) > 1 else 64
        words = self.sys.mem.dump(addr, count)

        for row in range(0, count, 8):
            chunk = words[row:row + 8]
            hex_str = ' '.join(f"{w:04X}" for w in chunk)
            ascii_chars = ''.join(chr(w & 0xFF) if 0x20 <= (w & 0xFF) < 0x7F else '.'
                                  for w in chunk)
            self._out(f"  x{u16(addr + row):04X}: {hex_str:<39s}  |{ascii_chars}|")

    def do_setmem(self, arg):
        """Set memory words: setmem <address> <word> [word] ...
        Or: setmem <address> "string"   (one character per word)"""
        parts = shlex.split(arg, posix=False)
        if len(parts) < 2:
            self._out("Usage: setmem <addr> <word...> OR setmem <addr> \"string\"")
            return
        addr = self._parse_addr(parts[0])
        if parts[1][0] in "\"'":
            words = list(parts[1][1:-1].encode("ascii", errors="replace"))
        else:
            words = [u16(parse_word(tok)) for tok in parts[1:]]
        n = self.sys.mem.load(addr, words)
        self._out(f"  Wrote {n} words at x{addr:04X}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.sys.cpu.pc
        count = parse_word(parts[1]) if len(parts) > 1 else 16

        for _ in range(count):
            word = self.sys.mem.raw_read(addr)
            marker = ">>>" if addr == self.sys.cpu.pc else "   "
            self._out(f"  {marker} x{addr:04X}: {word:04X}  {disasm_one(word, addr)}")
            addr = u16(addr + 1)

    def do_status(self, arg):
        """Show full machine status."""
        self._out(self.sys.dump_state())

    # -- Console --

    def do_send(self, arg):
        """Send text to the keyboard: send <text>
        The program sees it through GETC/IN or KBSR/KBDR."""
        if not arg:
            self._out("Usage: send <text>")
            return
        console = self.sys.console
        if not isinstance(console, BufferedConsole):
            self._out("Console does not accept injected input.")
            return
        console.inject_input(arg + "\n")
        self._out(f"  Sent {len(arg) + 1} bytes to the keyboard.")

    def do_output(self, arg):
        """Show (and clear) everything the program has printed so far."""
        console = self.sys.console
        if not isinstance(console, BufferedConsole):
            self._out("Console output goes straight to the terminal.")
            return
        text = console.drain_output()
        self._out(text if text else "(no output)")

    # -- Misc --

    def do_quit(self, arg):
        """Exit the monitor."""
        self._out("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        self._out()
        return self.do_quit(arg)

    def default(self, line):
        """Handle unknown commands gracefully."""
        self._out(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except ValueError as e:
            self._out(f"Error: {e}")


# ---------------------------------------------------------------------------
#  Host terminal
# ---------------------------------------------------------------------------

@contextmanager
def terminal_mode(fd: Optional[int]):
    """Turn off line buffering and echo on *fd* for the duration.

    Pipes, files and fd=None are left alone.  The saved attributes are
    restored on the way out, including on KeyboardInterrupt.
    """
    if fd is None or not os.isatty(fd):
        yield
        return

    import termios

    old_settings = termios.tcgetattr(fd)
    new_settings = termios.tcgetattr(fd)
    new_settings[3] &= ~(termios.ICANON | termios.ECHO)
    termios.tcsetattr(fd, termios.TCSANOW, new_settings)
    termios.tcflush(fd, termios.TCIFLUSH)
    try:
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


def _sigterm(signum, frame):
    raise KeyboardInterrupt


def run_program(sys_emu: LC3System, max_steps: Optional[int] = None,
                trace: bool = False) -> int:
    """Run the loaded program until HALT.  Returns a process exit code."""
    cpu = sys_emu.cpu
    total = 0
    try:
        if trace:
            while not cpu.halted and (max_steps is None or total < max_steps):
                addr = cpu.pc
                text = disasm_one(sys_emu.mem.raw_read(addr), addr)
                print(f"[trace] x{addr:04X}: {text}", file=sys.stderr)
                cpu.step()
                total += 1
        else:
            total = cpu.run(max_steps)
    except FaultError as e:
        sys_emu.console.flush()
        print(f"\nFatal: {e}", file=sys.stderr)
        print(sys_emu.dump_state(), file=sys.stderr)
        return EXIT_FAULT

    if not cpu.halted:
        print(f"\n[lc3] stopped after {total} instructions (step limit)",
              file=sys.stderr)
        return EXIT_STEP_LIMIT
    return EXIT_OK


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def _env_number(name: str, kind, default=None):
    value = os.environ.get(name)
    if not value:
        return default
    return kind(value)


def main(argv: Optional[list[str]] = None,
         console: Optional[Console] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="lc3",
        description="LC-3 Virtual Machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py 2048.obj\n"
               "  python cli.py os.obj program.obj --trace\n"
               "  python cli.py --monitor program.obj\n"
               "\n"
               "Environment:\n"
               "  LC3_MAX_STEPS      default for --max-steps\n"
               "  LC3_POLL_TIMEOUT   default for --poll-timeout\n"
    )
    parser.add_argument("images", nargs="*", metavar="IMAGE",
                        help="Object image to load (can repeat; loaded in order)")
    parser.add_argument("--max-steps", type=int,
                        default=_env_number("LC3_MAX_STEPS", int),
                        help="Stop after N instructions (default: unlimited)")
    parser.add_argument("--poll-timeout", type=float,
                        default=_env_number("LC3_POLL_TIMEOUT", float, 0.0),
                        metavar="SECONDS",
                        help="How long a KBSR read waits for a key (default: 0)")
    parser.add_argument("--origin", type=parse_word, default=PC_START,
                        metavar="ADDR",
                        help="Start address (default: x3000)")
    parser.add_argument("--trace", action="store_true",
                        help="Print each executed instruction to stderr")
    parser.add_argument("--reg-dump", action="store_true",
                        help="Dump registers to stderr on exit")
    parser.add_argument("--monitor", action="store_true",
                        help="Enter the interactive debug monitor")
    args = parser.parse_args(argv)

    if not args.images and not args.monitor:
        print(USAGE)
        return EXIT_USAGE

    if console is None:
        if args.monitor:
            console = BufferedConsole()
        else:
            console = TerminalConsole(poll_timeout=args.poll_timeout)

    sys_emu = LC3System(console)
    for path in args.images:
        if not sys_emu.load_image_file(path):
            print(f"Failed to load image: {path}", file=sys.stderr)
            return EXIT_LOAD_FAILED
    sys_emu.boot(args.origin)

    # ---- Monitor mode ---------------------------------------------------
    if args.monitor:
        cli = LC3Monitor(sys_emu)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return EXIT_OK

    # ---- Run mode -------------------------------------------------------
    in_fd = console.in_fd if isinstance(console, TerminalConsole) else None
    previous = signal.signal(signal.SIGTERM, _sigterm)
    try:
        with terminal_mode(in_fd):
            code = run_program(sys_emu, args.max_steps, args.trace)
    except KeyboardInterrupt:
        console.flush()
        print()
        code = EXIT_INTERRUPT
    finally:
        signal.signal(signal.SIGTERM, previous)

    if args.reg_dump:
        print(sys_emu.cpu.dump_regs(), file=sys.stderr)
    return code


if __name__ == "__main__":
    sys.exit(main())
