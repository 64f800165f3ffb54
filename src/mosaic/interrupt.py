"""Cancellation for in-flight turns.

A CancelToken is created per turn by the Orchestrator. The keyboard
monitor thread (Esc / Ctrl+C) or the host calls ``cancel()``; async
code either checks ``cancelled`` between steps or races its awaitable
against the token with ``run_cancellable``.
"""

import asyncio
import signal
import sys
import threading
from typing import Awaitable, Optional, TypeVar

from .errors import TurnCancelled

T = TypeVar("T")

POLL_INTERVAL = 0.05


class CancelToken:
    """Thread-safe cancellation flag for one turn."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self.reason)

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until cancelled or ``timeout`` elapses. Returns the flag."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while not self._event.is_set():
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(POLL_INTERVAL, remaining))
            else:
                await asyncio.sleep(POLL_INTERVAL)
        return self._event.is_set()


async def run_cancellable(
    awaitable: Awaitable[T],
    token: Optional[CancelToken],
    timeout: Optional[float] = None,
) -> T:
    """Await ``awaitable``, giving up on cancellation or timeout.

    Raises TurnCancelled or asyncio.TimeoutError; the underlying task is
    cancelled in both cases so nothing keeps running in the background.
    """
    if token is None:
        return await asyncio.wait_for(awaitable, timeout)

    token.raise_if_cancelled()
    work = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {work, watcher}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except BaseException:
        work.cancel()
        watcher.cancel()
        raise

    watcher.cancel()
    if work in done:
        return work.result()

    work.cancel()
    try:
        await work
    except (asyncio.CancelledError, Exception):
        pass
    if token.cancelled:
        raise TurnCancelled(token.reason)
    raise asyncio.TimeoutError()


class KeyboardMonitor:
    """Watch for Esc / Ctrl+C while a turn runs and cancel its token."""

    def __init__(self):
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._original_sigint = None
        self._token: Optional[CancelToken] = None

    def start(self, token: CancelToken):
        """Start monitoring on behalf of ``token``."""
        self._token = token
        if self._running and self._thread and self._thread.is_alive():
            return

        self._running = True
        self._stop_event.clear()

        if threading.current_thread() is threading.main_thread():
            self._original_sigint = signal.signal(signal.SIGINT, self._sigint_handler)

        self._thread = threading.Thread(target=self._monitor_loop, daemon=True)
        self._thread.start()

    def _sigint_handler(self, signum, frame):
        """First Ctrl+C cancels the turn, a second one exits."""
        if self._token is not None and not self._token.cancelled:
            self._token.cancel("ctrl-c")
            return
        raise KeyboardInterrupt()

    def stop(self):
        """Stop monitoring."""
        self._running = False
        self._stop_event.set()

        if self._original_sigint is not None:
            signal.signal(signal.SIGINT, self._original_sigint)
            self._original_sigint = None

        if self._thread:
            self._thread.join(timeout=0.2)
            self._thread = None
        self._token = None

    def _trigger(self, reason: str):
        if self._token is not None:
            self._token.cancel(reason)

    def _monitor_loop(self):
        if sys.platform == 'win32':
            self._monitor_windows()
        else:
            self._monitor_unix()

    def _monitor_windows(self):
        import msvcrt

        while self._running and not self._stop_event.is_set():
            if msvcrt.kbhit():
                key = msvcrt.getch()
                if key == b'\x1b':
                    self._trigger("escape")
                elif key == b'\x03':
                    self._trigger("ctrl-c")
            self._stop_event.wait(0.02)

    def _monitor_unix(self):
        import select
        import termios
        import tty

        if not sys.stdin.isatty():
            return
        old_settings = None
        try:
            old_settings = termios.tcgetattr(sys.stdin)
            tty.setcbreak(sys.stdin.fileno())

            while self._running and not self._stop_event.is_set():
                if select.select([sys.stdin], [], [], 0.02)[0]:
                    key = sys.stdin.read(1)
                    if key == '\x1b':
                        self._trigger("escape")
                    elif key == '\x03':
                        self._trigger("ctrl-c")
        except (OSError, termios.error, ValueError):
            pass
        finally:
            if old_settings:
                termios.tcsetattr(sys.stdin, termios.TCSADRAIN, old_settings)
