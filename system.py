"""
LC-3 System Emulator
====================
Wires together:
  - the LC3 CPU core (lc3.py)
  - a console device (devices.py) behind the keyboard registers and traps
  - the word memory, populated from one or more object images

Object image format: a stream of big-endian 16-bit words.  The first word
is the load origin; every following word is stored at origin, origin+1, …
until the stream ends or the top of memory is reached.
"""

from __future__ import annotations
import sys
from typing import Optional, TYPE_CHECKING

import numpy as np

from lc3 import (
    LC3, WordMemory, ImageError, PC_START, MEMORY_SIZE,
)
from devices import BufferedConsole

if TYPE_CHECKING:
    from devices import Console


# ---------------------------------------------------------------------------
#  Image loader
# ---------------------------------------------------------------------------

def read_image(mem: WordMemory, data: bytes | bytearray) -> tuple[int, int]:
    """Decode an object image into *mem*.

    Returns (origin, words_loaded).  A trailing odd byte is ignored.
    """
    if len(data) < 2:
        raise ImageError(f"image too short to hold an origin ({len(data)} bytes)")
    words = np.frombuffer(bytes(data), dtype=">u2", count=len(data) // 2)
    origin = int(words[0])
    return origin, mem.load(origin, words[1:])


# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class LC3System:
    """One LC-3 machine: console + memory + CPU."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console if console is not None else BufferedConsole()
        self.mem = WordMemory(self.console)
        self.cpu = LC3(self.console, self.mem)
        self.images: list[tuple[str, int, int]] = []  # (name, origin, words)

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_image(self, data, name: str = "<bytes>") -> tuple[int, int]:
        """Load an object image from bytes or a binary file object."""
        if hasattr(data, "read"):
            data = data.read()
        origin, count = read_image(self.mem, data)
        self.images.append((name, origin, count))
        return origin, count

    def load_image_file(self, path: str) -> bool:
        """Load an object image file.  Returns False (and reports why) on failure."""
        try:
            with open(path, "rb") as f:
                self.load_image(f, name=path)
        except (OSError, ImageError) as e:
            print(f"[load] {path}: {e}", file=sys.stderr)
            return False
        return True

    def load_words(self, addr: int, words) -> int:
        """Store raw instruction words at *addr* (no origin header)."""
        return self.mem.load(addr, words)

    # -----------------------------------------------------------------
    #  Boot
    # -----------------------------------------------------------------

    def boot(self, entry: int = PC_START):
        """Reset the CPU and point PC at *entry*.  Memory is kept."""
        self.cpu._reset_state(entry)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def step(self) -> int:
        """Execute one instruction.  Returns the instruction word."""
        return self.cpu.step()

    def run(self, max_steps: Optional[int] = None) -> int:
        """Run until HALT, or max_steps.  Returns instructions executed."""
        return self.cpu.run(max_steps)

    # -----------------------------------------------------------------
    #  State queries
    # -----------------------------------------------------------------

    @property
    def halted(self) -> bool:
        return self.cpu.halted

    # -----------------------------------------------------------------
    #  Convenience
    # -----------------------------------------------------------------

    def get_output(self) -> str:
        """Get any console output produced so far (buffered console only)."""
        if not isinstance(self.console, BufferedConsole):
            return ""
        return self.console.drain_output()

    def dump_state(self) -> str:
        """Full CPU + memory-map state dump."""
        lines = ["=== Registers ==="]
        lines.append(self.cpu.dump_regs())
        lines.append(f"  Instructions: {self.cpu.cycle_count}")
        lines.append(f"  Halted: {self.cpu.halted}")
        lines.append("")
        lines.append("=== Memory ===")
        used = int(np.count_nonzero(self.mem.cells))
        lines.append(f"  Nonzero words: {used} / {MEMORY_SIZE}")
        for name, origin, count in self.images:
            lines.append(f"  Image {name}: x{origin:04X}..x{origin + max(count, 1) - 1:04X} "
                         f"({count} words)")
        lines.append(f"  Console: {self.console.name}")
        return "\n".join(lines)
