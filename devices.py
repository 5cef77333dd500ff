"""
LC-3 Console Devices
====================
Character devices behind the keyboard registers and the TRAP service
routines.

  KBSR  0xFE00  : bit 15 set when poll_ready() reported a waiting key
  KBDR  0xFE02  : the character latched by that poll

Every console answers the same four calls:

  poll_ready()    is a character waiting?  Never blocks longer than the
                  device's own timeout policy.
  read_char()     block for one character; end of input reads as 0xFFFF
  write_char(b)   queue one output byte
  flush()         push queued output to the host

The CPU only ever talks to a console through these calls, so the same
machine runs against the host terminal, a pipe, or an in-memory buffer.
"""

from __future__ import annotations
import os
import select
import sys
from collections import deque
from typing import Optional

# getchar() EOF stored into a 16-bit register
EOF_CHAR = 0xFFFF


# ---------------------------------------------------------------------------
#  Console base class
# ---------------------------------------------------------------------------

class Console:
    """Abstract character device."""

    def __init__(self, name: str):
        self.name = name

    def poll_ready(self) -> bool:
        """True if read_char() would return immediately."""
        return False

    def read_char(self) -> int:
        """Read one character code, blocking if needed."""
        return EOF_CHAR

    def write_char(self, value: int):
        """Queue one output byte."""
        pass

    def write_text(self, text: str):
        for b in text.encode("ascii", errors="replace"):
            self.write_char(b)

    def flush(self):
        """Make all queued output visible."""
        pass


# ---------------------------------------------------------------------------
#  BufferedConsole: in-memory keyboard and screen
# ---------------------------------------------------------------------------

class BufferedConsole(Console):
    """Console backed by an input queue and an output buffer.

    Used by the test suite and the debug monitor: input is pushed with
    inject_input(), output is collected in tx_buffer and read back with
    drain_output().
    """

    def __init__(self):
        super().__init__("buffered")
        self.rx_buffer: deque[int] = deque()   # bytes from keyboard → CPU
        self.tx_buffer: bytearray = bytearray()  # bytes written by the CPU
        self.flush_count: int = 0

        # Callbacks
        self.on_tx: Optional[callable] = None  # called with byte on write

    def inject_input(self, data: bytes | str):
        """Push bytes into the keyboard queue."""
        if isinstance(data, str):
            data = data.encode("ascii", errors="replace")
        for b in data:
            self.rx_buffer.append(b & 0xFF)

    @property
    def has_rx_data(self) -> bool:
        return len(self.rx_buffer) > 0

    def poll_ready(self) -> bool:
        return self.has_rx_data

    def read_char(self) -> int:
        if self.rx_buffer:
            return self.rx_buffer.popleft()
        return EOF_CHAR

    def write_char(self, value: int):
        value &= 0xFF
        self.tx_buffer.append(value)
        if self.on_tx:
            self.on_tx(value)

    def flush(self):
        self.flush_count += 1

    def drain_output(self) -> str:
        """Return all pending output as a string and clear the buffer."""
        out = bytes(self.tx_buffer).decode("ascii", errors="replace")
        self.tx_buffer.clear()
        return out


# ---------------------------------------------------------------------------
#  TerminalConsole: host stdin / stdout
# ---------------------------------------------------------------------------

class TerminalConsole(Console):
    """Host terminal (or pipe) on raw file descriptors.

    poll_ready() is a select() with *poll_timeout* seconds of patience;
    0.0 makes every KBSR read a pure non-blocking check.  Output is queued
    and written with one os.write() per flush().
    """

    def __init__(self, in_fd: Optional[int] = None, out_fd: Optional[int] = None,
                 poll_timeout: float = 0.0):
        super().__init__("terminal")
        self.in_fd = sys.stdin.fileno() if in_fd is None else in_fd
        self.out_fd = sys.stdout.fileno() if out_fd is None else out_fd
        self.poll_timeout = poll_timeout
        self.eof = False
        self._out = bytearray()

    def poll_ready(self) -> bool:
        if self.eof:
            return False
        readable, _, _ = select.select([self.in_fd], [], [], self.poll_timeout)
        return bool(readable)

    def read_char(self) -> int:
        if self.eof:
            return EOF_CHAR
        data = os.read(self.in_fd, 1)
        if not data:
            self.eof = True
            return EOF_CHAR
        return data[0]

    def write_char(self, value: int):
        self._out.append(value & 0xFF)

    def flush(self):
        sys.stdout.flush()
        data = bytes(self._out)
        self._out.clear()
        while data:
            n = os.write(self.out_fd, data)
            data = data[n:]
