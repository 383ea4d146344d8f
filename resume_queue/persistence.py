"""
Durable storage for the queue aggregate.

Every save goes through a validated temp file, backs up the previous live
file into backups/, and atomically renames the new file into place.
Loads fall back to the newest parseable backup when the live file is
corrupt, and fail loudly when nothing usable is left.
"""

import logging
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from resume_queue.atomic import AtomicFileWriter
from resume_queue.errors import PersistenceCorruptionError
from resume_queue.models import CompletedHistory, QueueState, Task, now_iso


QUEUE_FILE_NAME = "queue.json"
BACKUP_DIR_NAME = "backups"
ARCHIVE_FILE_NAME = "completed-history.json"
BACKUP_PREFIX = "queue-"
CORRUPT_PREFIX = "corrupt-"
BACKUP_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S-%f"


logger = logging.getLogger(__name__)


class PersistenceManager:
    """
    Atomic read/write of the persisted queue.

    Backups are named by timestamp so that lexical order is chronological.
    """

    def __init__(
        self,
        queue_dir: Path,
        max_backups: int = 10,
        backup_retention_days: int = 30
    ):
        """
        Initialize persistence for a queue directory.

        Args:
            queue_dir: Directory holding queue.json and backups/
            max_backups: Most backups kept after pruning
            backup_retention_days: Backups older than this are pruned
        """
        self.queue_dir = Path(queue_dir)
        self.queue_file = self.queue_dir / QUEUE_FILE_NAME
        self.backup_dir = self.queue_dir / BACKUP_DIR_NAME
        self.archive_file = self.queue_dir / ARCHIVE_FILE_NAME
        self.max_backups = max_backups
        self.backup_retention_days = backup_retention_days

        self.queue_dir.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self.queue_file.exists()

    def save(self, state: QueueState) -> QueueState:
        """
        Persist the queue atomically.

        Counts are recomputed and last_modified bumped before serializing.
        A failure before the rename leaves the live file untouched.
        """
        state.refresh_counts()
        state.last_modified = now_iso()
        data = state.model_dump(mode="json")

        AtomicFileWriter.write_json(
            self.queue_file,
            data,
            indent=2,
            before_replace=self._backup_live_file
        )
        logger.debug(f"Saved queue with {state.counts.total} task(s) to {self.queue_file}")

        self.prune_backups()
        return state

    def load(self) -> QueueState:
        """
        Load the queue, recovering from backups if needed.

        Returns a fresh empty queue when no live file exists yet.

        Raises:
            PersistenceCorruptionError: If neither the live file nor any
                backup parses. The corrupt file is left in place.
        """
        if not self.queue_file.exists():
            return QueueState()

        try:
            return self._parse(self.queue_file)
        except (OSError, ValueError, PydanticValidationError) as e:
            logger.error(f"Queue file {self.queue_file} is unreadable: {e}")
            live_error = e

        for backup in self.list_backups():
            try:
                state = self._parse(backup)
            except (OSError, ValueError, PydanticValidationError) as e:
                logger.warning(f"Skipping unusable backup {backup.name}: {e}")
                continue

            forensic = self._preserve_corrupt_file()
            logger.warning(
                f"Recovered queue from backup {backup.name} "
                f"(corrupt file kept as {forensic.name})"
            )
            return state

        raise PersistenceCorruptionError(self.queue_file, str(live_error))

    def _parse(self, path: Path) -> QueueState:
        data = AtomicFileWriter.read_json_strict(path)
        return QueueState.model_validate(data)

    def _backup_live_file(self) -> Optional[Path]:
        """Copy the current live file into backups/ before it is replaced."""
        if not self.queue_file.exists():
            return None

        if AtomicFileWriter.read_json(self.queue_file) is None:
            # Unparseable; keep it for inspection instead of as a restore point
            return self._preserve_corrupt_file()

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
        backup = self.backup_dir / f"{BACKUP_PREFIX}{stamp}.json"
        shutil.copy2(self.queue_file, backup)
        return backup

    def _preserve_corrupt_file(self) -> Path:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime(BACKUP_TIMESTAMP_FORMAT)
        forensic = self.backup_dir / f"{CORRUPT_PREFIX}{stamp}.json"
        shutil.copy2(self.queue_file, forensic)
        return forensic

    # Backups

    def list_backups(self) -> List[Path]:
        """List regular backups, newest first."""
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*.json"), reverse=True)

    @staticmethod
    def backup_time(backup: Path) -> Optional[datetime]:
        stamp = backup.stem[len(BACKUP_PREFIX):]
        try:
            return datetime.strptime(stamp, BACKUP_TIMESTAMP_FORMAT)
        except ValueError:
            return None

    def prune_backups(self, now: Optional[datetime] = None) -> int:
        """
        Enforce the backup count and age policy.

        Returns:
            Number of backups deleted
        """
        now = now or datetime.now()
        cutoff = now - timedelta(days=self.backup_retention_days)
        removed = 0

        for index, backup in enumerate(self.list_backups()):
            taken_at = self.backup_time(backup)
            too_old = taken_at is not None and taken_at < cutoff
            if index >= self.max_backups or too_old:
                try:
                    backup.unlink()
                    removed += 1
                except FileNotFoundError:
                    # Pruned concurrently by another process
                    pass

        if removed:
            logger.debug(f"Pruned {removed} backup(s)")
        return removed

    def restore(self, backup: Optional[Path] = None) -> QueueState:
        """
        Make a backup the live queue.

        Args:
            backup: Backup to restore; defaults to the newest valid one

        Raises:
            PersistenceCorruptionError: If no usable backup exists
        """
        candidates = [Path(backup)] if backup else self.list_backups()
        for candidate in candidates:
            try:
                state = self._parse(candidate)
            except (OSError, ValueError, PydanticValidationError) as e:
                logger.warning(f"Cannot restore from {candidate.name}: {e}")
                continue
            self.save(state)
            logger.info(f"Restored queue from {candidate.name}")
            return state

        raise PersistenceCorruptionError(self.queue_file, "no restorable backup")

    # Completed-history archive

    def load_archive(self) -> CompletedHistory:
        data = AtomicFileWriter.read_json(self.archive_file)
        if data is None:
            return CompletedHistory()
        try:
            return CompletedHistory.model_validate(data)
        except PydanticValidationError as e:
            raise PersistenceCorruptionError(self.archive_file, str(e)) from e

    def archive(self, tasks: List[Task]) -> int:
        """Append tasks to the completed-history file."""
        if not tasks:
            return 0

        history = self.load_archive()
        history.tasks.extend(tasks)
        history.updated_at = now_iso()
        AtomicFileWriter.write_json(self.archive_file, history.model_dump(mode="json"))
        logger.info(f"Archived {len(tasks)} task(s) to {self.archive_file.name}")
        return len(tasks)
