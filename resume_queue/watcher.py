"""
Watchdog-based monitoring of the queue directory.

Wakes the scheduler when another process changes queue.json or the
resume marker, so an idle or paused daemon reacts without waiting out
its poll interval.
"""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from resume_queue.backpressure import RESUME_MARKER_FILE_NAME
from resume_queue.persistence import QUEUE_FILE_NAME


logger = logging.getLogger(__name__)


class DebounceTracker:
    """
    Tracks file events with debouncing.

    Multiple events within the debounce window are coalesced into one.
    """

    def __init__(self, debounce_ms: int = 500):
        self.debounce_seconds = debounce_ms / 1000.0
        self._last_events: Dict[str, float] = {}

    def should_process(self, key: str) -> bool:
        """
        Check if an event should be processed.

        Returns:
            True if the event is outside the debounce window
        """
        now = time.time()
        if now - self._last_events.get(key, 0) < self.debounce_seconds:
            return False
        self._last_events[key] = now
        return True

    def cleanup_old_events(self, max_age_seconds: float = 60.0) -> None:
        cutoff = time.time() - max_age_seconds
        self._last_events = {k: ts for k, ts in self._last_events.items() if ts > cutoff}


class QueueWatcher(FileSystemEventHandler):
    """
    Watches a queue directory and calls `on_change` for relevant files.

    Only the live queue file and the resume marker count; temp files,
    backups and lock files are ignored.
    """

    def __init__(
        self,
        queue_dir: Path,
        on_change: Callable[[str], None],
        debounce_ms: int = 500,
        file_names: Iterable[str] = (QUEUE_FILE_NAME, RESUME_MARKER_FILE_NAME)
    ):
        """
        Initialize watcher.

        Args:
            queue_dir: Directory to watch (not recursive)
            on_change: Called with the changed file name
            debounce_ms: Debounce delay in milliseconds
            file_names: File names that trigger a callback
        """
        super().__init__()

        self.queue_dir = Path(queue_dir)
        self.on_change = on_change
        self.file_names = frozenset(file_names)
        self.debounce = DebounceTracker(debounce_ms)

        self._observer: Optional[Observer] = None

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        # Atomic writes land as a move from the temp file
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        for path in paths:
            name = Path(str(path)).name
            if name in self.file_names:
                self._handle(name, event.event_type)
                return

    def _handle(self, name: str, event_type: str) -> None:
        if not self.debounce.should_process(name):
            logger.debug(f"Debounced {event_type} event for: {name}")
            return

        logger.debug(f"Queue file {event_type}: {name}")
        try:
            self.on_change(name)
        except Exception as e:
            logger.error(f"Error in change callback for {name}: {e}", exc_info=True)

        self.debounce.cleanup_old_events()

    def start(self) -> None:
        """Start the watchdog observer on the queue directory."""
        if self._observer is not None:
            logger.warning(f"Observer already running for {self.queue_dir}")
            return

        self.queue_dir.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(self, str(self.queue_dir), recursive=False)
        self._observer.start()
        logger.info(f"Watching queue directory: {self.queue_dir}")

    def stop(self) -> None:
        if self._observer is None:
            return

        try:
            self._observer.stop()
            self._observer.join(timeout=5.0)
        finally:
            self._observer = None
        logger.debug(f"Stopped watching {self.queue_dir}")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()
