from __future__ import annotations

import logging
import queue
import signal
import subprocess
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Union

from protomock.errors import ServerRuntimeError

log = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGTERM, signal.SIGINT)


@dataclass(frozen=True)
class ChildExited:
    returncode: int


@dataclass(frozen=True)
class SignalReceived:
    signum: int

    @property
    def name(self) -> str:
        try:
            return signal.Signals(self.signum).name
        except ValueError:
            return str(self.signum)


Event = Union[ChildExited, SignalReceived]


class Supervisor:
    """Run one child process until it exits or we are told to stop.

    Child exit and signal delivery both end up as events on a single queue,
    which ``wait`` blocks on. SimpleQueue.put is reentrant, so the signal
    handlers may use it directly. The handlers are installed by ``start``
    before the child is spawned and restored when ``wait`` returns.
    """

    def __init__(self, argv: List[str], signals: Iterable[int] = DEFAULT_SIGNALS):
        self.argv = list(argv)
        self.signals = tuple(signals)
        self._events: queue.SimpleQueue = queue.SimpleQueue()
        self._proc: Optional[subprocess.Popen] = None
        self._waiter: Optional[threading.Thread] = None
        self._previous: Dict[int, object] = {}

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    def start(self) -> None:
        log.info("starting %s", " ".join(self.argv))
        self._install_handlers()
        try:
            # stdout/stderr are inherited: the server talks to the user directly.
            self._proc = subprocess.Popen(self.argv)
        except OSError as e:
            self._restore_handlers()
            raise ServerRuntimeError(f"starting server: {e}") from e
        self._waiter = threading.Thread(target=self._wait_child, name="protomock-waiter", daemon=True)
        self._waiter.start()

    def _wait_child(self) -> None:
        self._events.put(ChildExited(self._proc.wait()))

    def _on_signal(self, signum, frame) -> None:
        self._events.put(SignalReceived(signum))

    def _install_handlers(self) -> None:
        # Handlers can only be installed from the main thread.
        if threading.current_thread() is not threading.main_thread():
            return
        self._previous = {sig: signal.signal(sig, self._on_signal) for sig in self.signals}

    def _restore_handlers(self) -> None:
        previous, self._previous = self._previous, {}
        for sig, handler in previous.items():
            # None means the old handler was not installed from Python.
            signal.signal(sig, signal.SIG_DFL if handler is None else handler)

    def wait(self) -> Event:
        """Block until the child exits or a signal arrives.

        On a signal the child is killed and reaped before returning, so the
        caller never leaves a server behind. A signal that arrived between
        ``start`` and ``wait`` is already queued. Returns the first event seen.
        """
        if self._proc is None:
            raise RuntimeError("supervisor not started")

        try:
            event = self._events.get()
            if isinstance(event, SignalReceived):
                log.info("received %s, stopping server (pid %d)", event.name, self._proc.pid)
                self._proc.kill()
                while not isinstance(self._events.get(), ChildExited):
                    pass
        finally:
            self._restore_handlers()

        if isinstance(event, ChildExited):
            log.debug("server exited with status %d", event.returncode)
        return event
