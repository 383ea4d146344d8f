"""
Operation surface of the queue.

Every mutating operation runs as a transaction: take the locks mapped to
the operation (always including the write lock), load the persisted queue
into a TaskStore, mutate it, save atomically, release. Read-only operations
load a snapshot without locking; writers never leave a partial file, so a
snapshot may be stale but is always valid.
"""

import csv
import io
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from resume_queue.backoff import CancelToken
from resume_queue.backpressure import RESUME_MARKER_FILE_NAME, BackpressureController
from resume_queue.errors import ValidationError
from resume_queue.locking import LOCK_DIR_NAME, LockManager
from resume_queue.models import (
    LockInfo,
    LockType,
    QueueSettings,
    QueueStatus,
    Task,
    TaskFilter,
    TaskStatus,
    TaskType,
    now_iso,
)
from resume_queue.persistence import PersistenceManager
from resume_queue.store import TaskStore, validate_task_id


EXPORT_VERSION = "1.0"
IMPORT_MODES = ("validate", "merge", "replace")
EXPORT_FORMATS = ("json", "csv")
CSV_COLUMNS = ["ID", "Status", "Priority", "Type", "Created", "Description"]


logger = logging.getLogger(__name__)


class ImportReport(BaseModel):
    """Outcome of import_tasks."""

    mode: str
    total: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)


class CleanupReport(BaseModel):
    """Outcome of the maintenance cleanup."""

    archived: int = 0
    backups_pruned: int = 0
    locks_cleared: int = 0


class TaskQueue:
    """
    The queue as seen by the CLI, the daemon and the scheduler.

    Holds no task state between calls; every operation reloads from disk.
    """

    def __init__(
        self,
        queue_dir: Path,
        settings: Optional[QueueSettings] = None,
        cancel: Optional[CancelToken] = None
    ):
        """
        Initialize queue access for a directory.

        Args:
            queue_dir: Directory holding queue.json, locks/ and backups/
            settings: Queue settings (defaults if None)
            cancel: Token shared with lock waits and countdowns
        """
        self.queue_dir = Path(queue_dir)
        self.settings = settings or QueueSettings()
        self.cancel = cancel or CancelToken()

        self.persistence = PersistenceManager(
            self.queue_dir,
            max_backups=self.settings.max_backups,
            backup_retention_days=self.settings.backup_retention_days,
        )
        self.lock_manager = LockManager(
            self.queue_dir / LOCK_DIR_NAME,
            strategy=self.settings.lock_strategy,
            stale_after=self.settings.stale_lock_seconds,
            termination_grace=self.settings.lock_termination_grace_seconds,
            reclaim_live_holders=self.settings.reclaim_live_holders,
            cancel=self.cancel,
            timeout_ceiling=self.settings.lock_timeout_seconds,
        )
        self.backpressure = BackpressureController(
            self.queue_dir / RESUME_MARKER_FILE_NAME,
            cooldown_seconds=self.settings.usage_limit_cooldown_seconds,
            backoff_factor=self.settings.backoff_factor,
            max_wait_seconds=self.settings.max_wait_seconds,
            min_wait_seconds=self.settings.min_wait_seconds,
            cancel=self.cancel,
        )

    @contextmanager
    def transaction(self, operation: str) -> Iterator[TaskStore]:
        """
        Lock, load, yield the store, then save on a clean exit.

        An exception inside the block skips the save, so the persisted
        queue is unchanged.
        """
        with self.lock_manager.locked(operation):
            store = TaskStore.from_settings(self.persistence.load(), self.settings)
            yield store
            self.persistence.save(store.state)

    def snapshot(self) -> TaskStore:
        """Unlocked read of the current queue."""
        return TaskStore.from_settings(self.persistence.load(), self.settings)

    # Task operations

    def add(
        self,
        task_type: TaskType,
        priority: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        **options
    ) -> str:
        """
        Add a task.

        Args:
            task_type: Kind of task
            priority: 1 (highest) to 10; default from settings
            payload: Type-specific metadata
            **options: id, timeout_seconds, max_retries, clear_context

        Returns:
            The new task id
        """
        spec = {"type": task_type, "priority": priority, "type_metadata": payload or {}, **options}
        with self.transaction("add") as store:
            task = store.add(spec)
        return task.id

    def batch_add(self, specs: List[Dict[str, Any]]) -> List[str]:
        """Add several tasks in one transaction; all or nothing."""
        with self.transaction("batch_add") as store:
            tasks = [store.add(spec) for spec in specs]
        return [t.id for t in tasks]

    def remove(self, task_id: str, force: bool = False) -> Task:
        with self.transaction("remove") as store:
            return store.remove(task_id, force=force)

    def batch_remove(self, task_ids: List[str], force: bool = False) -> List[Task]:
        with self.transaction("batch_remove") as store:
            return [store.remove(task_id, force=force) for task_id in task_ids]

    def get(self, task_id: str) -> Task:
        return self.snapshot().get(task_id)

    def list(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        return self.snapshot().list(task_filter)

    def next(self) -> Optional[Task]:
        """Peek at the task the scheduler would dispatch next."""
        return self.snapshot().next_eligible()

    def set_priority(self, task_id: str, priority: int) -> Task:
        with self.transaction("update_priority") as store:
            return store.set_priority(task_id, priority)

    def cancel_task(self, task_id: str, reason: str = "cancelled by user") -> Task:
        with self.transaction("cancel") as store:
            return store.cancel(task_id, reason)

    def retry(self, task_id: str) -> Task:
        """Manually send a failed or timed-out task back to pending."""
        with self.transaction("retry") as store:
            return store.requeue(task_id, "manual retry")

    def clear(self, reason: str = "", statuses: Optional[List[TaskStatus]] = None) -> int:
        """
        Remove all tasks (or those in the given statuses).

        The previous file is kept as a backup by the save.
        """
        with self.transaction("clear") as store:
            removed = store.clear(statuses)
        logger.info(f"Cleared {len(removed)} task(s){f' ({reason})' if reason else ''}")
        return len(removed)

    # Pause control

    def pause(self, reason: str = "manual pause", seconds: Optional[float] = None) -> None:
        self.backpressure.pause(seconds, reason=reason)

    def resume(self) -> bool:
        return self.backpressure.resume()

    # Reporting

    def status(self) -> QueueStatus:
        """Counts, health summary and pause state."""
        self.backpressure.try_auto_resume()
        store = self.snapshot()
        marker = self.backpressure.load_marker()

        return QueueStatus(
            counts=store.counts(),
            health=store.health(),
            paused=marker is not None,
            pause_reason=marker.reason if marker else None,
            resume_time=marker.resume_time if marker else None,
            remaining_seconds=marker.remaining_seconds() if marker else None,
            locks=self.lock_manager.holders(),
        )

    # Locks

    def locks(self) -> List[LockInfo]:
        """Current lock holders in this queue directory."""
        return self.lock_manager.holders()

    def release_lock(self, lock_type: LockType) -> bool:
        """Manually remove a lock marker. Refuses a flock held by a live process."""
        return self.lock_manager.force_release(LockType(lock_type))

    # Maintenance

    def cleanup(self, now: Optional[datetime] = None) -> CleanupReport:
        """Archive expired terminal tasks, prune backups, clear dead locks."""
        report = CleanupReport()
        with self.transaction("cleanup") as store:
            expired = store.archive_candidates(self.settings.auto_cleanup_days, now)
            if expired:
                self.persistence.archive(expired)
                store.remove_many(t.id for t in expired)
            report.archived = len(expired)

        report.backups_pruned = self.persistence.prune_backups(now)
        report.locks_cleared = self.lock_manager.cleanup_stale()
        logger.info(
            f"Cleanup: archived {report.archived}, pruned {report.backups_pruned} backup(s), "
            f"cleared {report.locks_cleared} lock(s)"
        )
        return report

    def restore(self, backup: Optional[Path] = None) -> int:
        """Restore a backup as the live queue. Returns its task count."""
        with self.lock_manager.locked("restore"):
            state = self.persistence.restore(backup)
        return len(state.tasks)

    # Export / import

    def export(self, fmt: str = "json", task_filter: Optional[TaskFilter] = None) -> str:
        """
        Render tasks as JSON (re-importable) or CSV.

        Raises:
            ValidationError: Unknown format
        """
        if fmt not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format: {fmt} (use json or csv)")
        tasks = self.list(task_filter)

        if fmt == "json":
            document = {
                "export_metadata": {
                    "version": EXPORT_VERSION,
                    "timestamp": now_iso(),
                    "total_tasks": len(tasks),
                },
                "tasks": [t.model_dump(mode="json") for t in tasks],
            }
            return json.dumps(document, indent=2)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        for task in tasks:
            writer.writerow([
                task.id,
                TaskStatus(task.status).value,
                task.priority,
                TaskType(task.type).value,
                task.created_datetime().strftime("%Y-%m-%d %H:%M:%S"),
                task.title,
            ])
        return buffer.getvalue()

    def import_tasks(self, source: Path, mode: str = "merge") -> ImportReport:
        """
        Import a JSON export.

        Modes:
            validate: parse and check only
            merge: add new tasks, update existing ones by id
            replace: the imported tasks become the whole queue

        Raises:
            ValidationError: Unknown mode or unreadable/invalid file
        """
        if mode not in IMPORT_MODES:
            raise ValidationError(f"Invalid import mode: {mode} (use validate, merge or replace)")

        tasks = self._read_import(Path(source))
        report = ImportReport(mode=mode, total=len(tasks))
        if mode == "validate":
            return report

        with self.transaction("import") as store:
            if mode == "replace":
                store.clear()
            for task in tasks:
                existing = store.state.get_task(task.id)
                if existing is None:
                    store.state.tasks.append(task)
                    report.imported += 1
                elif existing.status == TaskStatus.IN_PROGRESS:
                    report.skipped += 1
                    report.errors.append(f"{task.id}: in progress, not overwritten")
                else:
                    store.state.tasks[store.state.tasks.index(existing)] = task
                    report.updated += 1

        logger.info(
            f"Import ({mode}): {report.imported} new, {report.updated} updated, {report.skipped} skipped"
        )
        return report

    def _read_import(self, source: Path) -> List[Task]:
        if not source.exists():
            raise ValidationError(f"Import file not found: {source}")
        try:
            document = json.loads(source.read_text())
        except json.JSONDecodeError as e:
            raise ValidationError(f"Import file contains invalid JSON: {e}") from e

        if not isinstance(document, dict) or "tasks" not in document or "export_metadata" not in document:
            raise ValidationError("Import file needs 'export_metadata' and 'tasks'")

        tasks = []
        seen = set()
        for index, raw in enumerate(document["tasks"]):
            try:
                task = Task.model_validate(raw)
            except PydanticValidationError as e:
                raise ValidationError(f"Task #{index} is invalid: {e.errors()[0].get('msg')}") from e
            validate_task_id(task.id)
            if task.id in seen:
                raise ValidationError(f"Duplicate task id in import: {task.id}")
            seen.add(task.id)
            tasks.append(task)
        return tasks
