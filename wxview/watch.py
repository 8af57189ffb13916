"""Polling file watchers whose change callbacks are debounced."""

from __future__ import annotations

import os
import threading
from typing import Callable, Iterable, NamedTuple

_DEFAULT_PERIOD = 1.0


class FileSignature(NamedTuple):
    """Size and nanosecond modification time; -1, -1 for a missing file."""

    size: int
    mtime_ns: int


class Debouncer:
    """Calls a function once, a delay after the last of a burst of triggers."""

    def __init__(self, delay: float, fire: Callable[[], None]) -> None:
        self.delay = delay
        self.fire = fire
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None

    def trigger(self) -> None:
        """Restart the delay; the function runs when it elapses untouched."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self.fire)
            self._timer.daemon = True
            self._timer.start()

    def stop(self) -> None:
        """Cancel a pending call."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


def stat_signature(path: str | os.PathLike[str]) -> FileSignature:
    """The file's signature, or (-1, -1) if it cannot be read."""
    try:
        info = os.stat(path)
    except OSError:
        return FileSignature(-1, -1)
    return FileSignature(info.st_size, info.st_mtime_ns)


def stat_file_set(paths: Iterable[str]) -> str:
    """One ``path|size|mtime`` line per file, sorted by path."""
    lines = []
    for path in sorted(paths):
        sig = stat_signature(path)
        lines.append(f"{path}|{sig.size}|{sig.mtime_ns}\n")
    return "".join(lines)


def _poll(
    snapshot: Callable[[], object],
    interval: float,
    debounce: float,
    on_change: Callable[[], None],
    stop_event: threading.Event | None,
) -> None:
    interval = interval if interval > 0 else _DEFAULT_PERIOD
    debounce = debounce if debounce > 0 else _DEFAULT_PERIOD
    stop_event = stop_event or threading.Event()
    debouncer = Debouncer(debounce, on_change)
    try:
        last = snapshot()
        while not stop_event.wait(interval):
            now = snapshot()
            if now != last:
                last = now
                debouncer.trigger()
    finally:
        debouncer.stop()


def watch_file(
    path: str | os.PathLike[str],
    interval: float,
    debounce: float,
    on_change: Callable[[], None],
    stop_event: threading.Event | None = None,
) -> None:
    """Poll one file until stop_event is set, calling on_change after it changes."""
    _poll(lambda: stat_signature(path), interval, debounce, on_change, stop_event)


def watch_files(
    paths: Callable[[], Iterable[str]],
    interval: float,
    debounce: float,
    on_change: Callable[[], None],
    stop_event: threading.Event | None = None,
) -> None:
    """Poll the set of files that paths() names, calling on_change after any changes."""
    _poll(lambda: stat_file_set(paths()), interval, debounce, on_change, stop_event)