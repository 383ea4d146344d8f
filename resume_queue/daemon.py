"""
Background daemon for queue processing with watchdog support.

Runs as a systemd user service: honors a pause left by a previous run,
recovers tasks interrupted by a crash, then dispatches until stopped.
Changes made by other processes (CLI adds, manual resume) wake the loop
through the directory watcher.
"""

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from resume_queue.backoff import CancelToken
from resume_queue.config import ConfigManager
from resume_queue.errors import QueueError
from resume_queue.executor import Executor, create_executor
from resume_queue.scheduler import Scheduler
from resume_queue.task_queue import TaskQueue
from resume_queue.watcher import QueueWatcher


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


logger = logging.getLogger("resume-queue")


def configure_logging(level: str = "INFO") -> None:
    """Log to stdout (journald picks it up under systemd)."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Suppress verbose watchdog library logging
    logging.getLogger("watchdog.observers.inotify_buffer").setLevel(logging.WARNING)
    logging.getLogger("watchdog.observers").setLevel(logging.WARNING)


class QueueDaemon:
    """
    Continuous monitoring loop around a Scheduler.

    Single dispatch path; the cancel token is shared by the scheduler's
    waits, lock acquisition and the backpressure countdown, so a signal
    interrupts whichever one is blocking.
    """

    def __init__(
        self,
        config_file: Optional[Path] = None,
        queue_dir: Optional[Path] = None,
        executor: Optional[Executor] = None,
        install_signal_handlers: bool = True
    ):
        """
        Initialize daemon.

        Args:
            config_file: Path to configuration file
            queue_dir: Queue directory override
            executor: Executor to dispatch through (Claude SDK if None)
            install_signal_handlers: Register SIGTERM/SIGINT handlers
        """
        self.config_manager = ConfigManager(config_file)
        self.settings = self.config_manager.settings
        self.cancel = CancelToken()

        self.queue: TaskQueue = self.config_manager.create_queue(queue_dir, cancel=self.cancel)
        self.executor = executor or create_executor(
            self.config_manager.resolve_workspace(),
            model=self.settings.claude_model,
            clear_context_default=self.settings.clear_context_default,
        )
        self.scheduler = Scheduler(self.queue, self.executor)
        self.watcher: Optional[QueueWatcher] = None

        if install_signal_handlers:
            signal.signal(signal.SIGTERM, self._signal_handler)
            signal.signal(signal.SIGINT, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        self.cancel.cancel()

    def _on_queue_change(self, file_name: str) -> None:
        logger.debug(f"Queue change detected: {file_name}")
        self.cancel.wake()

    def _start_watcher(self) -> None:
        if not self.settings.watch_enabled:
            logger.info("Watchdog monitoring is disabled")
            return

        self.watcher = QueueWatcher(
            self.queue.queue_dir,
            self._on_queue_change,
            debounce_ms=self.settings.watch_debounce_ms,
        )
        try:
            self.watcher.start()
        except OSError as e:
            logger.error(f"Failed to start queue watcher, polling only: {e}")
            self.watcher = None

    def startup(self) -> None:
        """Honor an expired pause and recover interrupted tasks."""
        logger.info("=" * 60)
        logger.info("Resume Queue Daemon Starting")
        logger.info("=" * 60)
        logger.info(f"Queue directory: {self.queue.queue_dir}")
        logger.info(f"Project workspace: {self.config_manager.resolve_workspace()}")

        if self.queue.backpressure.try_auto_resume():
            logger.info("Pause from a previous run has expired")
        elif self.queue.backpressure.is_paused():
            remaining = self.queue.backpressure.remaining()
            if remaining is None:
                logger.info("Queue is paused until manually resumed")
            else:
                logger.info(f"Queue is paused, resuming in {remaining:.0f}s")

        self.scheduler.recover_interrupted()

    def start(self, max_cycles: Optional[int] = None) -> int:
        """
        Run the daemon until a signal arrives (or max_cycles have run).

        Returns:
            Process exit code
        """
        try:
            self.startup()
        except QueueError as e:
            logger.error(f"Startup failed: {e}")
            return 1

        self._start_watcher()
        try:
            cycles = self.scheduler.run(max_cycles=max_cycles)
            logger.info(f"Scheduler stopped after {cycles} cycle(s)")
        finally:
            self._shutdown()
        return 0

    def _shutdown(self) -> None:
        """Perform graceful shutdown."""
        logger.info("=" * 60)
        logger.info("Resume Queue Daemon Shutting Down")
        logger.info("=" * 60)

        if self.watcher is not None:
            logger.info("Stopping watchdog...")
            self.watcher.stop()
            self.watcher = None

        logger.info("Daemon stopped")


def main(argv=None) -> int:
    """Daemon entry point."""
    parser = argparse.ArgumentParser(
        description="Resume Queue Daemon"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--queue-dir",
        type=Path,
        default=None,
        help="Queue directory (overrides config and RESUME_QUEUE_DIR)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process eligible tasks until idle, then exit"
    )

    args = parser.parse_args(argv)

    daemon = QueueDaemon(config_file=args.config, queue_dir=args.queue_dir)
    configure_logging(daemon.settings.log_level)

    if args.once:
        logger.info("Running until idle...")
        # Large bound; run() stops at the first idle cycle when bounded
        return daemon.start(max_cycles=sys.maxsize)
    return daemon.start()


if __name__ == "__main__":
    sys.exit(main())
