"""
Continuous sync loop.

A watchdog observer thread only flags that something under an assistant
root changed. Parsing, persistence and publishing all run on the loop
thread, once per tick: either when the dirty flag is raised or when the
poll interval elapses.
"""

import logging
import platform
import signal
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers.polling import PollingObserver

# Use PollingObserver on macOS to avoid fsevents thread-safety crashes
# during rapid observer start/stop cycles
if platform.system() == "Darwin":  # macOS
    from watchdog.observers.polling import PollingObserver as Observer
else:
    from watchdog.observers import Observer

logger = logging.getLogger(__name__)

WATCHED_SUFFIXES = (".jsonl", ".json", ".md")


@dataclass
class WatchStats:
    """Counters for the running loop."""

    started_at: datetime = field(default_factory=datetime.now)
    ticks: int = 0
    dirty_ticks: int = 0
    failed_ticks: int = 0
    last_tick_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "ticks": self.ticks,
            "dirty_ticks": self.dirty_ticks,
            "failed_ticks": self.failed_ticks,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }


class DirtyFlagHandler(FileSystemEventHandler):
    """Raise a flag when a log file is created, modified or moved."""

    def __init__(self, dirty: threading.Event):
        super().__init__()
        self.dirty = dirty

    def _mark(self, path: str) -> None:
        if path.endswith(WATCHED_SUFFIXES):
            self.dirty.set()

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._mark(str(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._mark(str(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._mark(str(event.dest_path))


class WatchLoop:
    """
    Tick loop driven by file events and a poll interval.

    Example:
        >>> loop = WatchLoop([Path("~/.claude").expanduser()], tick=run_tick, poll_ms=2000)
        >>> loop.run()  # blocks until SIGINT/SIGTERM
    """

    def __init__(
        self,
        roots: list[Path],
        tick: Callable[[], Any],
        poll_ms: int = 2000,
        use_polling: bool = False,
    ):
        self.roots = [root for root in roots if root.is_dir()]
        self.tick = tick
        self.poll_seconds = max(poll_ms, 50) / 1000
        self.stats = WatchStats()
        self.dirty = threading.Event()
        self.shutdown_event = threading.Event()
        self.handler = DirtyFlagHandler(self.dirty)
        self.observer = PollingObserver() if use_polling else Observer()

    def _start_observer(self) -> None:
        for root in self.roots:
            self.observer.schedule(self.handler, str(root), recursive=True)
        try:
            self.observer.start()
        except OSError as e:
            # inotify watch limits and similar; fall back to polling the roots
            logger.warning(f"Native file watching unavailable ({e}), falling back to polling")
            self.observer = PollingObserver()
            for root in self.roots:
                self.observer.schedule(self.handler, str(root), recursive=True)
            self.observer.start()
        logger.info(f"Watching {len(self.roots)} directories")

    def run_once(self) -> None:
        """Run one tick; errors are logged and counted, never raised."""
        was_dirty = self.dirty.is_set()
        self.dirty.clear()
        self.stats.ticks += 1
        if was_dirty:
            self.stats.dirty_ticks += 1
        try:
            self.tick()
        except Exception:
            self.stats.failed_ticks += 1
            logger.exception("Sync tick failed")
        self.stats.last_tick_at = datetime.now()

    def run(self, install_signal_handlers: bool = True) -> None:
        """Block and tick until ``stop()`` or a shutdown signal."""
        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)

        self._start_observer()
        try:
            # Catch up on anything written while we were not running
            self.run_once()
            while not self.shutdown_event.is_set():
                self.dirty.wait(timeout=self.poll_seconds)
                if self.shutdown_event.is_set():
                    break
                self.run_once()
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def stop(self) -> None:
        self.shutdown_event.set()
        self.dirty.set()
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=3)
            if self.observer.is_alive():
                logger.warning("Observer thread did not stop cleanly")
        logger.info(f"Watch loop stopped after {self.stats.ticks} ticks")

    def _signal_handler(self, signum: int, frame: Any) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        self.shutdown_event.set()
        self.dirty.set()
