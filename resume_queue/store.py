"""
In-memory task collection and its state machine.

TaskStore wraps one loaded QueueState. Every mutation is checked before
anything is changed, so a rejected call leaves the queue untouched.
Persisting the result is the caller's job (see TaskQueue.transaction).
"""

import logging
import random
import re
import time
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from resume_queue.errors import StateTransitionError, TaskNotFoundError, ValidationError
from resume_queue.models import (
    MAX_PRIORITY,
    MIN_PRIORITY,
    HealthStatus,
    QueueCounts,
    QueueSettings,
    QueueState,
    Task,
    TaskFilter,
    TaskStatus,
    TaskType,
    now_iso,
)


TASK_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')
MAX_TASK_ID_LENGTH = 100

ID_PREFIXES: Dict[TaskType, str] = {
    TaskType.CUSTOM: "custom",
    TaskType.ISSUE_REF: "issue",
    TaskType.PR_REF: "pr",
    TaskType.WORKFLOW_STEP: "workflow",
}

# Steps filled in when a workflow task omits them
WORKFLOW_TEMPLATES: Dict[str, List[str]] = {
    "issue-merge": ["dev", "clear", "review", "merge"],
}

ALLOWED_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.TIMEOUT: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
}

STATUS_ORDER = [
    TaskStatus.IN_PROGRESS,
    TaskStatus.PENDING,
    TaskStatus.FAILED,
    TaskStatus.TIMEOUT,
    TaskStatus.COMPLETED,
]

# Health thresholds
CRITICAL_FAILURE_RATIO = 0.2
WARNING_ACTIVE_TASKS = 5


logger = logging.getLogger(__name__)


class TaskSpec(BaseModel):
    """Input accepted by TaskStore.add."""

    type: TaskType
    priority: Optional[int] = Field(default=None, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    type_metadata: Dict[str, Any] = Field(default_factory=dict)
    id: Optional[str] = None
    timeout_seconds: Optional[int] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    clear_context: Optional[bool] = None


def _format_pydantic_error(error: PydanticValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ())) or "input"
        parts.append(f"{location}: {err.get('msg')}")
    return "; ".join(parts)


def _positive_int(meta: Dict[str, Any], key: str) -> int:
    value = meta.get(key)
    if isinstance(value, bool):
        value = None
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{key} must be a positive integer, got {meta.get(key)!r}")
    return value


def validate_type_metadata(task_type: TaskType, metadata: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check and normalize the payload required by each task type.

    Returns:
        A normalized copy of the metadata

    Raises:
        ValidationError: If a required field is missing or malformed
    """
    meta = dict(metadata or {})

    if task_type == TaskType.CUSTOM:
        description = meta.get("description")
        if not isinstance(description, str) or not description.strip():
            raise ValidationError("custom tasks require a non-empty description")
        meta["description"] = description.strip()

    elif task_type == TaskType.ISSUE_REF:
        meta["issue_number"] = _positive_int(meta, "issue_number")

    elif task_type == TaskType.PR_REF:
        meta["pr_number"] = _positive_int(meta, "pr_number")

    elif task_type == TaskType.WORKFLOW_STEP:
        workflow_type = meta.get("workflow_type")
        if not isinstance(workflow_type, str) or not workflow_type.strip():
            raise ValidationError("workflow tasks require a workflow_type")
        steps = meta.get("steps") or WORKFLOW_TEMPLATES.get(workflow_type)
        if not steps or not all(isinstance(s, str) and s.strip() for s in steps):
            raise ValidationError(f"workflow '{workflow_type}' needs a non-empty list of steps")
        if workflow_type == "issue-merge":
            meta["issue_number"] = _positive_int(meta, "issue_number")
        current_step = meta.get("current_step", 0)
        if not isinstance(current_step, int) or not 0 <= current_step < len(steps):
            raise ValidationError(f"current_step out of range: {current_step!r}")
        meta["steps"] = list(steps)
        meta["current_step"] = current_step

    labels = meta.get("labels")
    if labels is not None and not isinstance(labels, list):
        raise ValidationError("labels must be a list")

    return meta


def validate_task_id(task_id: str) -> str:
    if not isinstance(task_id, str) or not task_id:
        raise ValidationError("Task id must be a non-empty string")
    if len(task_id) > MAX_TASK_ID_LENGTH:
        raise ValidationError(f"Task id longer than {MAX_TASK_ID_LENGTH} characters")
    if not TASK_ID_PATTERN.match(task_id):
        raise ValidationError(f"Task id may only contain letters, digits, '-' and '_': {task_id!r}")
    return task_id


class TaskStore:
    """
    Task collection with validated state transitions.

    Allowed edges:
        pending     -> in_progress, failed
        in_progress -> completed, failed, timeout
        failed      -> pending   (retry, only while retry_count < max_retries)
        timeout     -> pending   (same rule)
        completed   -> (terminal)
    """

    def __init__(
        self,
        state: Optional[QueueState] = None,
        default_timeout: int = 3600,
        default_max_retries: int = 3,
        default_priority: int = 5,
        max_size: int = 0,
        retry_placement: str = "back"
    ):
        self.state = state if state is not None else QueueState()
        self.default_timeout = default_timeout
        self.default_max_retries = default_max_retries
        self.default_priority = default_priority
        self.max_size = max_size
        self.retry_placement = retry_placement

    @classmethod
    def from_settings(cls, state: Optional[QueueState], settings: QueueSettings) -> "TaskStore":
        return cls(
            state,
            default_timeout=settings.default_timeout_seconds,
            default_max_retries=settings.default_max_retries,
            default_priority=settings.default_priority,
            max_size=settings.max_queue_size,
            retry_placement=settings.retry_placement,
        )

    @property
    def tasks(self) -> List[Task]:
        return self.state.tasks

    def __len__(self) -> int:
        return len(self.state.tasks)

    def __contains__(self, task_id: str) -> bool:
        return self.state.get_task(task_id) is not None

    def get(self, task_id: str) -> Task:
        task = self.state.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    # Creation

    def _generate_id(self, task_type: TaskType) -> str:
        prefix = ID_PREFIXES[task_type]
        while True:
            candidate = f"{prefix}-{int(time.time())}-{random.randint(0, 9999):04d}"
            if candidate not in self:
                return candidate

    def add(self, task_spec: Union[TaskSpec, Dict[str, Any]]) -> Task:
        """
        Validate and insert a new pending task.

        Raises:
            ValidationError: On malformed input, a duplicate explicit id,
                or a full queue
        """
        try:
            spec = task_spec if isinstance(task_spec, TaskSpec) else TaskSpec.model_validate(task_spec)
        except PydanticValidationError as e:
            raise ValidationError(_format_pydantic_error(e)) from e

        if self.max_size and len(self) >= self.max_size:
            raise ValidationError(f"Queue is full ({self.max_size} tasks)")

        metadata = validate_type_metadata(spec.type, spec.type_metadata)

        if spec.id is not None:
            task_id = validate_task_id(spec.id)
            if task_id in self:
                raise ValidationError(f"Task id already exists: {task_id}")
        else:
            task_id = self._generate_id(spec.type)

        try:
            task = Task(
                id=task_id,
                type=spec.type,
                priority=spec.priority if spec.priority is not None else self.default_priority,
                timeout_seconds=spec.timeout_seconds or self.default_timeout,
                max_retries=spec.max_retries if spec.max_retries is not None else self.default_max_retries,
                clear_context=spec.clear_context,
                type_metadata=metadata,
            )
        except PydanticValidationError as e:
            raise ValidationError(_format_pydantic_error(e)) from e

        task.record(TaskStatus.PENDING, "created")
        self.state.tasks.append(task)
        logger.info(f"[{task.id}] Added {task.type.value} task (priority {task.priority})")
        return task

    # State machine

    def transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        note: str = "",
        consume_retry: bool = True
    ) -> Task:
        """
        Move a task along an allowed edge.

        A retry edge (failed/timeout -> pending) increments retry_count
        unless consume_retry is False, and stamps requeued_at.

        Raises:
            TaskNotFoundError: Unknown id
            StateTransitionError: Edge not allowed, or retries exhausted
        """
        task = self.get(task_id)
        current = TaskStatus(task.status)
        new_status = TaskStatus(new_status)

        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise StateTransitionError(task_id, current.value, new_status.value)

        is_retry = new_status == TaskStatus.PENDING
        if is_retry and not task.can_retry():
            raise StateTransitionError(
                task_id, current.value, new_status.value,
                f"retries exhausted ({task.retry_count}/{task.max_retries})"
            )

        if is_retry:
            if consume_retry:
                task.retry_count += 1
            task.requeued_at = now_iso()
        elif new_status in (TaskStatus.FAILED, TaskStatus.TIMEOUT) and note:
            task.last_error = note

        task.status = new_status
        task.record(new_status, note)
        logger.debug(f"[{task_id}] {current.value} -> {new_status.value} {note}".rstrip())
        return task

    def requeue(self, task_id: str, note: str = "", consume_retry: bool = True) -> Task:
        """Take the retry edge back to pending."""
        task = self.get(task_id)
        if not note and consume_retry:
            note = f"retry {task.retry_count + 1}/{task.max_retries}"
        return self.transition(task_id, TaskStatus.PENDING, note, consume_retry=consume_retry)

    def cancel(self, task_id: str, reason: str = "cancelled by user") -> Task:
        """Fail a pending or running task without scheduling a retry."""
        return self.transition(task_id, TaskStatus.FAILED, f"cancelled: {reason}")

    def set_priority(self, task_id: str, priority: int) -> Task:
        if isinstance(priority, bool) or not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError(f"Priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, got {priority!r}")
        task = self.get(task_id)
        old = task.priority
        task.priority = priority
        task.record(TaskStatus(task.status), f"priority {old} -> {priority}")
        return task

    def remove(self, task_id: str, force: bool = False) -> Task:
        """
        Delete a task from the live collection.

        Raises:
            ValidationError: If the task is running and force is not set
        """
        task = self.get(task_id)
        if task.status == TaskStatus.IN_PROGRESS and not force:
            raise ValidationError(f"Task {task_id} is in progress; use force to remove it")
        self.state.tasks.remove(task)
        logger.info(f"[{task_id}] Removed")
        return task

    def remove_many(self, task_ids: Iterable[str]) -> List[Task]:
        ids = set(task_ids)
        removed = [t for t in self.state.tasks if t.id in ids]
        self.state.tasks = [t for t in self.state.tasks if t.id not in ids]
        return removed

    def clear(self, statuses: Optional[Iterable[TaskStatus]] = None) -> List[Task]:
        """Remove every task, or only those in the given statuses."""
        if statuses is None:
            removed = list(self.state.tasks)
            self.state.tasks = []
        else:
            wanted = {TaskStatus(s) for s in statuses}
            removed = [t for t in self.state.tasks if TaskStatus(t.status) in wanted]
            self.state.tasks = [t for t in self.state.tasks if TaskStatus(t.status) not in wanted]
        return removed

    # Queries

    def list(self, task_filter: Optional[TaskFilter] = None) -> List[Task]:
        """
        Filtered tasks, sorted by priority then creation time by default.
        """
        task_filter = task_filter or TaskFilter()
        matched = [t for t in self.state.tasks if task_filter.matches(t)]

        if task_filter.sort_by == "created":
            matched.sort(key=lambda t: (t.created_datetime(), t.priority))
        elif task_filter.sort_by == "status":
            matched.sort(key=lambda t: (STATUS_ORDER.index(TaskStatus(t.status)), t.priority, t.created_datetime()))
        else:
            matched.sort(key=lambda t: (t.priority, t.created_datetime()))

        if task_filter.limit:
            matched = matched[:task_filter.limit]
        return matched

    def dispatch_key(self, task: Task) -> Tuple[int, datetime, datetime]:
        """Sort key for dispatch order within the pending set."""
        entered = task.created_at
        if self.retry_placement == "back" and task.requeued_at:
            entered = task.requeued_at
        return (task.priority, datetime.fromisoformat(entered), task.created_datetime())

    def next_eligible(self) -> Optional[Task]:
        """Highest-priority pending task, FIFO within a priority band."""
        pending = [t for t in self.state.tasks if t.status == TaskStatus.PENDING]
        if not pending:
            return None
        return min(pending, key=self.dispatch_key)

    def in_progress(self) -> List[Task]:
        return [t for t in self.state.tasks if t.status == TaskStatus.IN_PROGRESS]

    def archive_candidates(self, cleanup_days: int, now: Optional[datetime] = None) -> List[Task]:
        """
        Terminal tasks past retention: completed after cleanup_days,
        failed/timeout after twice that.
        """
        now = now or datetime.now()
        completed_cutoff = now - timedelta(days=cleanup_days)
        failed_cutoff = now - timedelta(days=cleanup_days * 2)

        candidates = []
        for task in self.state.tasks:
            status = TaskStatus(task.status)
            if status == TaskStatus.COMPLETED and task.updated_datetime() < completed_cutoff:
                candidates.append(task)
            elif status in (TaskStatus.FAILED, TaskStatus.TIMEOUT) and task.updated_datetime() < failed_cutoff:
                candidates.append(task)
        return candidates

    def counts(self) -> QueueCounts:
        return QueueCounts.from_tasks(self.state.tasks)

    def health(self) -> HealthStatus:
        counts = self.counts()
        if counts.total == 0:
            return HealthStatus.HEALTHY
        if (counts.failed + counts.timeout) / counts.total > CRITICAL_FAILURE_RATIO:
            return HealthStatus.CRITICAL
        if counts.in_progress > WARNING_ACTIVE_TASKS or counts.failed > 0:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY
