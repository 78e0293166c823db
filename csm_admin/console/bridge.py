"""
Console Bridge

Connects the local terminal to a node's remote console and relays raw
bytes both ways until either side closes.

Features:
- Two independent pump threads (keyboard -> console, console -> screen)
- Either side closing tears down the other
- A pump failing for any reason closes the session with an error
- Terminal put in raw mode only when stdin is a tty, always restored
- Window size sent on open and on SIGWINCH
- StreamClosed only when the console closed before any byte was exchanged

Usage:
    from csm_admin.console import ConsoleBridge, KubernetesExecOpener

    bridge = ConsoleBridge(KubernetesExecOpener.from_clients(clients))
    with bridge.open("x1000c0s0b0n0") as session:
        result = session.relay()
    print(result.reason, result.bytes_out)
"""

import fcntl
import logging
import os
import select
import signal
import struct
import termios
import threading
import tty
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from ..errors import CsmError, StreamClosed, TargetUnreachable
from ..log_context import run_in_context
from ..xname import Xname, parse

logger = logging.getLogger(__name__)

READ_SIZE = 1024


class RemoteStream(ABC):
    """Bidirectional byte stream to a remote console."""

    @abstractmethod
    def send(self, data: bytes) -> None:
        """Deliver keyboard bytes to the console."""

    @abstractmethod
    def recv(self, timeout: float = None) -> Optional[bytes]:
        """Next chunk of console output: None on timeout, b"" once closed."""

    def resize(self, columns: int, rows: int) -> None:
        """Tell the remote about the local window size."""

    @abstractmethod
    def close(self) -> None:
        """Close the stream; safe to call more than once."""


class ConsoleOpener(ABC):
    """Establishes the remote stream for one node."""

    @abstractmethod
    def open(self, xname: Xname) -> RemoteStream:
        """Raise TargetUnreachable (or any CsmError/OSError) on failure."""


class CloseReason(Enum):
    LOCAL_EOF = "local_eof"
    REMOTE_EOF = "remote_eof"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass
class ConsoleResult:
    xname: Xname
    reason: CloseReason
    bytes_in: int = 0  # keyboard -> console
    bytes_out: int = 0  # console -> screen
    error: Optional[str] = None

    @property
    def exchanged(self) -> bool:
        return self.bytes_in > 0 or self.bytes_out > 0


def terminal_size(fd: int) -> Optional[Tuple[int, int]]:
    """(columns, rows) of the terminal on fd, or None if fd is not a terminal."""
    try:
        packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, struct.pack("HHHH", 0, 0, 0, 0))
    except OSError:
        return None
    rows, columns, _, _ = struct.unpack("HHHH", packed)
    if not rows or not columns:
        return None
    return columns, rows


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


class ConsoleSession:
    """One open console; relay() runs it, close() ends it from any thread."""

    def __init__(self, xname: Xname, stream: RemoteStream, poll_interval: float = 0.1):
        self.xname = xname
        self.stream = stream
        self.poll_interval = poll_interval
        self.bytes_in = 0
        self.bytes_out = 0
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[CloseReason] = None
        self._error: Optional[str] = None

    def __enter__(self) -> "ConsoleSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def close(self) -> None:
        self._finish(CloseReason.DISCONNECTED)
        self.stream.close()

    def _finish(self, reason: CloseReason, error: str = None) -> None:
        """First caller decides the close reason."""
        with self._lock:
            if self._reason is None:
                self._reason = reason
                self._error = error
        self._stop.set()

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------

    def relay(self, stdin_fd: int = 0, stdout_fd: int = 1) -> ConsoleResult:
        """
        Relay bytes until either side closes.

        Raises:
            StreamClosed: the console closed before any byte was exchanged
        """
        saved_mode = None
        previous_winch = None
        if os.isatty(stdin_fd):
            saved_mode = termios.tcgetattr(stdin_fd)

        try:
            if saved_mode is not None:
                tty.setraw(stdin_fd)
            previous_winch = self._watch_window(stdout_fd)

            pumps = [
                run_in_context(self._run_pump, self._pump_input, stdin_fd, "input"),
                run_in_context(self._run_pump, self._pump_output, stdout_fd, "output"),
            ]
            while not self._stop.wait(0.5):
                pass
            self.stream.close()
            for pump in pumps:
                pump.join(max(1.0, self.poll_interval * 5))
        finally:
            if previous_winch is not None:
                signal.signal(signal.SIGWINCH, previous_winch)
            if saved_mode is not None:
                termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_mode)

        result = ConsoleResult(self.xname, self._reason, self.bytes_in, self.bytes_out, self._error)
        logger.info(
            f"Console {self.xname} closed ({result.reason.value}): "
            f"{result.bytes_in} byte(s) in, {result.bytes_out} byte(s) out"
        )
        if not result.exchanged and result.reason in (CloseReason.REMOTE_EOF, CloseReason.ERROR):
            raise StreamClosed(self.xname, result.error or "closed before any data was exchanged")
        return result

    def _watch_window(self, stdout_fd: int):
        """Send the window size now and on every SIGWINCH. Returns the replaced handler."""
        if not os.isatty(stdout_fd):
            return None

        def send_size(signum=None, frame=None):
            size = terminal_size(stdout_fd)
            if size is None:
                return
            try:
                self.stream.resize(*size)
            except (CsmError, OSError) as e:
                logger.debug(f"Console resize failed: {e}")

        send_size()
        if threading.current_thread() is not threading.main_thread():
            return None
        return signal.signal(signal.SIGWINCH, send_size)

    def _run_pump(self, pump, fd: int, side: str) -> None:
        """Run one pump; anything it raises ends the session with an error."""
        try:
            pump(fd)
        except Exception as e:
            logger.exception(f"Console {self.xname} {side} pump failed")
            self._finish(CloseReason.ERROR, f"{side}: {e}")

    def _pump_input(self, stdin_fd: int) -> None:
        while not self._stop.is_set():
            try:
                ready, _, _ = select.select([stdin_fd], [], [], self.poll_interval)
                if not ready:
                    continue
                data = os.read(stdin_fd, READ_SIZE)
            except OSError as e:
                self._finish(CloseReason.ERROR, f"local input: {e}")
                return
            if not data:
                self._finish(CloseReason.LOCAL_EOF)
                return
            try:
                self.stream.send(data)
            except (CsmError, OSError) as e:
                self._finish(CloseReason.ERROR, f"send: {e}")
                return
            self.bytes_in += len(data)

    def _pump_output(self, stdout_fd: int) -> None:
        while not self._stop.is_set():
            try:
                data = self.stream.recv(timeout=self.poll_interval)
            except (CsmError, OSError) as e:
                self._finish(CloseReason.ERROR, f"receive: {e}")
                return
            if data is None:
                continue
            if not data:
                self._finish(CloseReason.REMOTE_EOF)
                return
            try:
                _write_all(stdout_fd, data)
            except OSError as e:
                self._finish(CloseReason.ERROR, f"local output: {e}")
                return
            self.bytes_out += len(data)


class ConsoleBridge:
    """Opens console sessions through an opener."""

    def __init__(self, opener: ConsoleOpener, poll_interval: float = 0.1):
        self.opener = opener
        self.poll_interval = poll_interval

    def open(self, xname: Union[Xname, str]) -> ConsoleSession:
        """
        Open the console of a node.

        Raises:
            InvalidIdentifier: xname does not parse
            TargetUnreachable: the console could not be reached
        """
        if not isinstance(xname, Xname):
            xname = parse(xname)
        try:
            stream = self.opener.open(xname)
        except TargetUnreachable:
            raise
        except (CsmError, OSError) as e:
            raise TargetUnreachable(xname, str(e))
        logger.info(f"Console {xname} opened")
        return ConsoleSession(xname, stream, self.poll_interval)
