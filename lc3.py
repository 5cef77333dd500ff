"""
LC-3 Bytecode Emulator
======================
A step emulator for the LC-3 instructional architecture.

Every instruction is one 16-bit word fetched from a flat 64Ki-word memory.
The fetch/decode/execute loop mirrors what the hardware does: read the
word at PC, advance PC, switch on the opcode nibble (bits 15..12), then
pull the operand fields out of the remaining twelve bits.

Memory map:
  0x0000 .. 0x2FFF  : trap vector table / OS space (unused here)
  0x3000 .. 0xFDFF  : user programs (PC starts at 0x3000)
  0xFE00            : KBSR keyboard status (bit 15 = key ready)
  0xFE02            : KBDR keyboard data
"""

from __future__ import annotations
from enum import IntEnum, IntFlag
from typing import Optional, TYPE_CHECKING

import numpy as np

from devices import BufferedConsole, EOF_CHAR

if TYPE_CHECKING:
    from devices import Console

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEMORY_SIZE = 1 << 16
MASK16 = 0xFFFF
SIGN16 = 0x8000

PC_START = 0x3000

# Memory-mapped registers
MR_KBSR = 0xFE00  # keyboard status
MR_KBDR = 0xFE02  # keyboard data

IN_PROMPT = "Enter a character:"
HALT_NOTICE = "HALT\n"


class Opcode(IntEnum):
    BR   = 0x0  # conditional branch
    ADD  = 0x1
    LD   = 0x2  # load PC-relative
    ST   = 0x3  # store PC-relative
    JSR  = 0x4  # jump to subroutine (JSR / JSRR)
    AND  = 0x5
    LDR  = 0x6  # load base+offset
    STR  = 0x7  # store base+offset
    RTI  = 0x8  # return from interrupt (unimplemented)
    NOT  = 0x9
    LDI  = 0xA  # load indirect
    STI  = 0xB  # store indirect
    JMP  = 0xC  # jump / RET
    RES  = 0xD  # reserved
    LEA  = 0xE  # load effective address
    TRAP = 0xF


class Cond(IntFlag):
    """Condition codes. Bit positions match the BR nzp mask."""
    POS = 1 << 0
    ZRO = 1 << 1
    NEG = 1 << 2


class TrapVector(IntEnum):
    GETC  = 0x20  # read a char, no echo
    OUT   = 0x21  # write a char
    PUTS  = 0x22  # write a word-per-char string
    IN    = 0x23  # prompt, read a char, echo it
    PUTSP = 0x24  # write a byte-packed string
    HALT  = 0x25


COND_NAMES = {Cond.POS: "P", Cond.ZRO: "Z", Cond.NEG: "N"}

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u16(v: int) -> int:
    """Mask to unsigned 16 bits."""
    return v & MASK16

def s16(v: int) -> int:
    """Interpret a 16-bit value as signed."""
    v = u16(v)
    return v - (1 << 16) if v >= SIGN16 else v

def sign_extend(val: int, bits: int) -> int:
    """Sign-extend a *bits*-wide value to 16 bits."""
    mask = (1 << bits) - 1
    val &= mask
    if val & (1 << (bits - 1)):
        val -= (1 << bits)
    return u16(val)

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class LC3Error(Exception):
    """Base for emulator-generated errors."""
    pass

class FaultError(LC3Error):
    """Unrecoverable execution fault: reserved opcode or unknown trap."""

    def __init__(self, address: int, instr: int, message: str = ""):
        self.address = address
        self.instr = instr
        self.opcode = Opcode(instr >> 12)
        super().__init__(message or
                         f"{self.opcode.name} fault @ x{address:04X} (instr x{instr:04X})")

class HaltError(LC3Error):
    pass

class ImageError(LC3Error):
    """Object image byte stream is malformed."""
    pass

# ---------------------------------------------------------------------------
#  Register file
# ---------------------------------------------------------------------------

class RegisterFile:
    """R0-R7, the program counter and the condition codes."""

    def __init__(self, pc: int = PC_START):
        self.gpr: list[int] = [0] * 8
        self._pc: int = u16(pc)
        self.cond: Cond = Cond.ZRO

    def __getitem__(self, r: int) -> int:
        return self.gpr[r]

    def __setitem__(self, r: int, value: int):
        self.gpr[r] = u16(value)

    @property
    def pc(self) -> int:
        return self._pc

    @pc.setter
    def pc(self, value: int):
        self._pc = u16(value)

    def update_flags(self, r: int):
        """Set COND from the sign of register *r*."""
        v = self.gpr[r]
        if v == 0:
            self.cond = Cond.ZRO
        elif v & SIGN16:
            self.cond = Cond.NEG
        else:
            self.cond = Cond.POS

    def reset(self, pc: int = PC_START):
        self.gpr = [0] * 8
        self.pc = pc
        self.cond = Cond.ZRO

# ---------------------------------------------------------------------------
#  Word memory
# ---------------------------------------------------------------------------

class WordMemory:
    """65536 sixteen-bit cells with the keyboard registers mapped in.

    Reading KBSR polls *keyboard*: when a character is waiting it is
    latched into KBDR and KBSR reads back with bit 15 set.  Every other
    read is plain storage.
    """

    def __init__(self, keyboard: Optional[Console] = None):
        self.cells = np.zeros(MEMORY_SIZE, dtype=np.uint16)
        self.keyboard = keyboard

    def __len__(self) -> int:
        return MEMORY_SIZE

    def read(self, addr: int) -> int:
        addr = u16(addr)
        if addr == MR_KBSR:
            self._poll_keyboard()
        return int(self.cells[addr])

    def write(self, addr: int, val: int):
        self.cells[u16(addr)] = u16(val)

    def raw_read(self, addr: int) -> int:
        """Read a cell without device side effects."""
        return int(self.cells[u16(addr)])

    def _poll_keyboard(self):
        if self.keyboard is not None and self.keyboard.poll_ready():
            self.cells[MR_KBSR] = SIGN16
            self.cells[MR_KBDR] = u16(self.keyboard.read_char())
        else:
            self.cells[MR_KBSR] = 0

    def load(self, addr: int, words) -> int:
        """Copy *words* into memory starting at *addr*.

        Words that would land past 0xFFFF are dropped.  Returns the number
        of words stored.
        """
        addr = u16(addr)
        block = np.asarray(words).astype(np.uint16)[:MEMORY_SIZE - addr]
        self.cells[addr:addr + len(block)] = block
        return len(block)

    def dump(self, addr: int, count: int) -> list[int]:
        """Return *count* words from *addr*, wrapping at the top of memory."""
        idx = (np.arange(count) + u16(addr)) & MASK16
        return self.cells.take(idx).tolist()

    def clear(self):
        self.cells.fill(0)

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class LC3:
    """LC-3 emulator, word level."""

    def __init__(self, console: Optional[Console] = None,
                 memory: Optional[WordMemory] = None):
        self.console = console if console is not None else BufferedConsole()
        self.mem = memory if memory is not None else WordMemory(self.console)
        self.reg = RegisterFile()

        # State
        self.halted: bool = False
        self.cycle_count: int = 0
        self.ir: int = 0        # last fetched instruction
        self.ir_addr: int = 0   # address it was fetched from

        # Callbacks
        self.on_halt: Optional[callable] = None

        self._dispatch = {
            Opcode.BR:   self._exec_br,
            Opcode.ADD:  self._exec_add,
            Opcode.LD:   self._exec_ld,
            Opcode.ST:   self._exec_st,
            Opcode.JSR:  self._exec_jsr,
            Opcode.AND:  self._exec_and,
            Opcode.LDR:  self._exec_ldr,
            Opcode.STR:  self._exec_str,
            Opcode.RTI:  self._exec_reserved,
            Opcode.NOT:  self._exec_not,
            Opcode.LDI:  self._exec_ldi,
            Opcode.STI:  self._exec_sti,
            Opcode.JMP:  self._exec_jmp,
            Opcode.RES:  self._exec_reserved,
            Opcode.LEA:  self._exec_lea,
            Opcode.TRAP: self._exec_trap,
        }
        self._traps = {
            TrapVector.GETC:  self._trap_getc,
            TrapVector.OUT:   self._trap_out,
            TrapVector.PUTS:  self._trap_puts,
            TrapVector.IN:    self._trap_in,
            TrapVector.PUTSP: self._trap_putsp,
            TrapVector.HALT:  self._trap_halt,
        }

    # -- Property shortcuts --

    @property
    def pc(self) -> int:
        return self.reg.pc

    @pc.setter
    def pc(self, value: int):
        self.reg.pc = value

    @property
    def cond(self) -> Cond:
        return self.reg.cond

    # -- Operand helpers --

    def _pc_relative(self, instr: int) -> int:
        """PC + sign-extended PCoffset9 (PC already points past instr)."""
        return u16(self.reg.pc + sign_extend(instr & 0x1FF, 9))

    def _base_offset(self, instr: int) -> int:
        """BaseR + sign-extended offset6."""
        return u16(self.reg[(instr >> 6) & 0x7] + sign_extend(instr & 0x3F, 6))

    def _alu_operand(self, instr: int) -> int:
        """Second ALU operand: imm5 when bit 5 is set, otherwise SR2."""
        if instr & 0x20:
            return sign_extend(instr & 0x1F, 5)
        return self.reg[instr & 0x7]

    # =====================================================================
    #  STEP: the core decode/execute loop
    # =====================================================================

    def step(self) -> int:
        """Execute one instruction. Returns the instruction word."""
        if self.halted:
            raise HaltError("CPU is halted")

        self.ir_addr = self.reg.pc
        self.ir = self.mem.read(self.ir_addr)
        self.reg.pc = self.ir_addr + 1

        self._dispatch[Opcode(self.ir >> 12)](self.ir)
        self.cycle_count += 1
        return self.ir

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until HALT or max_steps. Returns instructions executed."""
        total = 0
        while not self.halted:
            if max_steps is not None and total >= max_steps:
                break
            self.step()
            total += 1
        return total

    # =====================================================================
    #  Opcode executors
    # =====================================================================

    def _exec_add(self, instr: int):
        dr = (instr >> 9) & 0x7
        self.reg[dr] = self.reg[(instr >> 6) & 0x7] + self._alu_operand(instr)
        self.reg.update_flags(dr)

    def _exec_and(self, instr: int):
        dr = (instr >> 9) & 0x7
        self.reg[dr] = self.reg[(instr >> 6) & 0x7] & self._alu_operand(instr)
        self.reg.update_flags(dr)

    def _exec_not(self, instr: int):
        dr = (instr >> 9) & 0x7
        self.reg[dr] = ~self.reg[(instr >> 6) & 0x7]
        self.reg.update_flags(dr)

    def _exec_br(self, instr: int):
        if (instr >> 9) & 0x7 & self.reg.cond:
            self.reg.pc = self._pc_relative(instr)

    def _exec_jmp(self, instr: int):
        # JMP R7 is RET
        self.reg.pc = self.reg[(instr >> 6) & 0x7]

    def _exec_jsr(self, instr: int):
        if instr & 0x800:                   # JSR PCoffset11
            target = self.reg.pc + sign_extend(instr & 0x7FF, 11)
        else:                               # JSRR BaseR
            target = self.reg[(instr >> 6) & 0x7]
        self.reg[7] = self.reg.pc
        self.reg.pc = target

    def _exec_ld(self, instr: int):
        dr = (instr >> 9) & 0x7
        self.reg[dr] = self.mem.read(self._pc_relative(instr))
        self.reg.update_flags(dr)

    def _exec_ldi(self, instr: int):
        dr = (instr >> 9) & 0x7
        self.reg[dr] = self.mem.read(self.mem.read(self._pc_relative(instr)))
        self.reg.update_flags(dr)

    def _exec_ldr(self, instr: int):
        dr = (instr >> 9) & 0x7
        self.reg[dr] = self.mem.read(self._base_offset(instr))
        self.reg.update_flags(dr)

    def _exec_lea(self, instr: int):
        dr = (instr >> 9) & 0x7
        self.reg[dr] = self._pc_relative(instr)
        self.reg.update_flags(dr)

    def _exec_st(self, instr: int):
        self.mem.write(self._pc_relative(instr), self.reg[(instr >> 9) & 0x7])

    def _exec_sti(self, instr: int):
        self.mem.write(self.mem.read(self._pc_relative(instr)),
                       self.reg[(instr >> 9) & 0x7])

    def _exec_str(self, instr: int):
        self.mem.write(self._base_offset(instr), self.reg[(instr >> 9) & 0x7])

    def _exec_reserved(self, instr: int):
        raise FaultError(self.ir_addr, instr)

    def _exec_trap(self, instr: int):
        self.reg[7] = self.reg.pc
        vector = instr & 0xFF
        handler = self._traps.get(vector)
        if handler is None:
            raise FaultError(self.ir_addr, instr,
                             f"undefined trap vector x{vector:02X} @ x{self.ir_addr:04X}")
        handler()
        self.console.flush()

    # =====================================================================
    #  Trap service routines
    # =====================================================================

    def _trap_getc(self):
        self.reg[0] = self.console.read_char()
        self.reg.update_flags(0)

    def _trap_out(self):
        self.console.write_char(self.reg[0] & 0xFF)

    def _trap_puts(self):
        addr = self.reg[0]
        for _ in range(MEMORY_SIZE):
            w = self.mem.raw_read(addr)
            if w == 0:
                break
            self.console.write_char(w & 0xFF)
            addr = u16(addr + 1)

    def _trap_in(self):
        self.console.write_text(IN_PROMPT)
        self.console.flush()
        ch = self.console.read_char()
        if ch != EOF_CHAR:
            self.console.write_char(ch & 0xFF)
        self.reg[0] = ch
        self.reg.update_flags(0)

    def _trap_putsp(self):
        addr = self.reg[0]
        for _ in range(MEMORY_SIZE):
            w = self.mem.raw_read(addr)
            if w == 0:
                break
            self.console.write_char(w & 0xFF)
            if w >> 8:
                self.console.write_char(w >> 8)
            addr = u16(addr + 1)

    def _trap_halt(self):
        self.console.write_text(HALT_NOTICE)
        self.halted = True
        if self.on_halt:
            self.on_halt()

    # -- Reset helper --

    def _reset_state(self, entry: int = PC_START):
        self.reg.reset(entry)
        self.halted = False
        self.cycle_count = 0
        self.ir = 0
        self.ir_addr = 0
        # Memory is not cleared; images survive a reset

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for i in range(8):
            v = self.reg[i]
            lines.append(f"  R{i} = x{v:04X}  ({s16(v):6d})")
        lines.append(f"  PC = x{self.reg.pc:04X}  COND = {COND_NAMES[self.reg.cond]}  "
                     f"IR = x{self.ir:04X}")
        return "\n".join(lines)
