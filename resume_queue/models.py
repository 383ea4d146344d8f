"""
Data models for the resume queue.

Defines Pydantic models for tasks, the persisted queue aggregate,
lock records, the resume marker and configuration.
"""

from enum import Enum
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


MIN_PRIORITY = 1
MAX_PRIORITY = 10


class TaskStatus(str, Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


class TaskType(str, Enum):
    """Kind of work a task describes."""
    CUSTOM = "custom"
    ISSUE_REF = "issue_ref"
    PR_REF = "pr_ref"
    WORKFLOW_STEP = "workflow_step"


class LockType(str, Enum):
    """Class of operation a lock serializes."""
    WRITE = "write"
    BATCH = "batch"
    CONFIG = "config"
    MAINTENANCE = "maintenance"


class HealthStatus(str, Enum):
    """Coarse queue health derived from the counts."""
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


def now_iso() -> str:
    return datetime.now().isoformat()


class HistoryEntry(BaseModel):
    """One step in a task's audit trail."""

    status: TaskStatus
    timestamp: str = Field(default_factory=now_iso)
    note: str = ""


class Task(BaseModel):
    """
    A unit of work in the queue.

    `priority` runs from 1 (highest) to 10. `retry_count` counts the retry
    edges taken so far and never exceeds `max_retries`.
    """

    id: str = Field(..., description="Unique task identifier")
    type: TaskType = Field(..., description="Kind of work")
    priority: int = Field(default=5, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    status: TaskStatus = Field(default=TaskStatus.PENDING)

    # Timestamps
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    requeued_at: Optional[str] = Field(default=None, description="When the last retry edge was taken")

    # Retry policy
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    timeout_seconds: int = Field(default=3600, gt=0)

    # Executor hints
    clear_context: Optional[bool] = Field(default=None, description="Unset defers to the global default")
    last_error: Optional[str] = Field(default=None, description="Reason reported by the last failed attempt")

    type_metadata: Dict[str, Any] = Field(default_factory=dict)
    history: List[HistoryEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_retry_bound(self) -> "Task":
        """Reject records where retries exceed the configured maximum."""
        if self.retry_count > self.max_retries:
            raise ValueError(
                f"retry_count ({self.retry_count}) exceeds max_retries ({self.max_retries})"
            )
        return self

    def can_retry(self) -> bool:
        """Check whether another retry edge is allowed."""
        return self.retry_count < self.max_retries

    def record(self, status: TaskStatus, note: str = "") -> HistoryEntry:
        """Append a history entry and bump updated_at."""
        entry = HistoryEntry(status=status, note=note)
        self.history.append(entry)
        self.updated_at = entry.timestamp
        return entry

    @property
    def title(self) -> str:
        """Human readable one-line label for listings."""
        meta = self.type_metadata
        if meta.get("title"):
            return str(meta["title"])
        if self.type == TaskType.CUSTOM:
            return str(meta.get("description", ""))
        if self.type == TaskType.ISSUE_REF:
            return f"Issue #{meta.get('issue_number')}"
        if self.type == TaskType.PR_REF:
            return f"PR #{meta.get('pr_number')}"
        steps = meta.get("steps") or []
        current = meta.get("current_step", 0)
        step = steps[current] if 0 <= current < len(steps) else "done"
        return f"{meta.get('workflow_type', 'workflow')} [{step}]"

    def search_text(self) -> str:
        """Text matched by free-text list filters."""
        meta = self.type_metadata
        parts = [self.title, str(meta.get("description", "")), " ".join(meta.get("labels", []) or [])]
        return " ".join(p for p in parts if p).lower()

    def created_datetime(self) -> datetime:
        return datetime.fromisoformat(self.created_at)

    def updated_datetime(self) -> datetime:
        return datetime.fromisoformat(self.updated_at)


class QueueCounts(BaseModel):
    """Per-status counts. A cache, recomputed on every save."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    timeout: int = 0

    @classmethod
    def from_tasks(cls, tasks: List[Task]) -> "QueueCounts":
        counts = cls(total=len(tasks))
        for task in tasks:
            field = TaskStatus(task.status).value
            setattr(counts, field, getattr(counts, field) + 1)
        return counts


class QueueState(BaseModel):
    """
    The persisted queue aggregate.

    Task order inside `tasks` carries no meaning; priority and timestamps
    define dispatch order.
    """

    version: str = "1.0"
    created_at: str = Field(default_factory=now_iso)
    last_modified: str = Field(default_factory=now_iso)
    counts: QueueCounts = Field(default_factory=QueueCounts)
    tasks: List[Task] = Field(default_factory=list)

    @field_validator("tasks")
    @classmethod
    def validate_unique_ids(cls, v: List[Task]) -> List[Task]:
        """Reject queues that contain the same id twice."""
        seen: Set[str] = set()
        for task in v:
            if task.id in seen:
                raise ValueError(f"Duplicate task id: {task.id}")
            seen.add(task.id)
        return v

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def refresh_counts(self) -> QueueCounts:
        """Recompute the cached counts from the task list."""
        self.counts = QueueCounts.from_tasks(self.tasks)
        return self.counts


class LockInfo(BaseModel):
    """Advisory record written into a lock marker by its holder."""

    lock_type: LockType
    holder_pid: int
    acquired_at: str = Field(default_factory=now_iso)
    operation_name: str = "unknown"
    hostname: str = ""
    user: str = ""

    model_config = ConfigDict(use_enum_values=True)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now()
        return (now - datetime.fromisoformat(self.acquired_at)).total_seconds()


class ResumeMarker(BaseModel):
    """
    Persisted pause record.

    A marker without `resume_time` is a manual, indefinite pause.
    """

    pause_time: str = Field(default_factory=now_iso)
    resume_time: Optional[str] = None
    triggering_task_id: Optional[str] = None
    pattern: Optional[str] = None
    occurrence_count: int = 0
    reason: str = ""
    hostname: str = ""
    pid: Optional[int] = None

    def resume_datetime(self) -> Optional[datetime]:
        if self.resume_time is None:
            return None
        return datetime.fromisoformat(self.resume_time)

    def remaining_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds until the resume time, floored at zero. None when indefinite."""
        resume_at = self.resume_datetime()
        if resume_at is None:
            return None
        now = now or datetime.now()
        return max(0.0, (resume_at - now).total_seconds())


class TaskFilter(BaseModel):
    """Predicates accepted by TaskStore.list."""

    statuses: Optional[Set[TaskStatus]] = None
    priority_min: int = MIN_PRIORITY
    priority_max: int = MAX_PRIORITY
    type: Optional[TaskType] = None
    search: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    sort_by: str = "priority"
    limit: Optional[int] = Field(default=None, gt=0)

    @field_validator("sort_by")
    @classmethod
    def validate_sort(cls, v: str) -> str:
        if v not in ("priority", "created", "status"):
            raise ValueError(f"Unknown sort key: {v}")
        return v

    @classmethod
    def parse_priority(cls, expr: str) -> Tuple[int, int]:
        """Parse "3" or "1-3" into an inclusive range."""
        expr = expr.strip()
        if "-" in expr:
            low, _, high = expr.partition("-")
            return int(low), int(high)
        value = int(expr)
        return value, value

    def matches(self, task: Task) -> bool:
        if self.statuses is not None and TaskStatus(task.status) not in self.statuses:
            return False
        if not self.priority_min <= task.priority <= self.priority_max:
            return False
        if self.type is not None and TaskType(task.type) != self.type:
            return False
        if self.search and self.search.lower() not in task.search_text():
            return False
        if self.created_after is not None and task.created_datetime() < self.created_after:
            return False
        if self.created_before is not None and task.created_datetime() > self.created_before:
            return False
        return True


class CompletedHistory(BaseModel):
    """Archive of terminal tasks removed by retention cleanup."""

    version: str = "1.0"
    updated_at: str = Field(default_factory=now_iso)
    tasks: List[Task] = Field(default_factory=list)


class QueueStatus(BaseModel):
    """Summary returned by the status operation."""

    counts: QueueCounts
    health: HealthStatus
    paused: bool = False
    pause_reason: Optional[str] = None
    resume_time: Optional[str] = None
    remaining_seconds: Optional[float] = None
    locks: List[LockInfo] = Field(default_factory=list)

    model_config = ConfigDict(use_enum_values=True)


class QueueSettings(BaseModel):
    """Tunable queue behaviour."""

    # Task defaults
    default_timeout_seconds: int = Field(default=3600, gt=0)
    default_max_retries: int = Field(default=3, ge=0)
    default_priority: int = Field(default=5, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    max_queue_size: int = Field(default=0, ge=0, description="0 means unlimited")
    retry_placement: str = Field(default="back", description="Where a retried task re-enters its priority band")

    # Locking
    lock_timeout_seconds: float = Field(default=30.0, gt=0)
    lock_strategy: str = Field(default="auto", description="auto, flock or marker")
    stale_lock_seconds: float = Field(default=600.0, gt=0)
    lock_termination_grace_seconds: float = Field(default=5.0, ge=0)
    reclaim_live_holders: bool = True

    # Persistence and retention
    max_backups: int = Field(default=10, ge=1)
    backup_retention_days: int = Field(default=30, ge=1)
    auto_cleanup_days: int = Field(default=7, ge=1)

    # Backpressure
    usage_limit_cooldown_seconds: int = Field(default=300, gt=0)
    backoff_factor: float = Field(default=1.5, ge=1.0)
    max_wait_seconds: int = Field(default=1800, gt=0)
    min_wait_seconds: int = Field(default=60, ge=0)

    # Execution
    clear_context_default: bool = True
    poll_interval_seconds: float = Field(default=30.0, gt=0)
    claude_model: Optional[str] = None

    # Watcher
    watch_enabled: bool = True
    watch_debounce_ms: int = Field(default=500, ge=0)

    log_level: str = "INFO"

    @field_validator("retry_placement")
    @classmethod
    def validate_retry_placement(cls, v: str) -> str:
        if v not in ("back", "front"):
            raise ValueError(f"retry_placement must be 'back' or 'front', got {v!r}")
        return v

    @field_validator("lock_strategy")
    @classmethod
    def validate_lock_strategy(cls, v: str) -> str:
        if v not in ("auto", "flock", "marker"):
            raise ValueError(f"lock_strategy must be auto, flock or marker, got {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v


class QueueConfig(BaseModel):
    """Complete configuration file contents."""

    version: str = "1.0"
    settings: QueueSettings = Field(default_factory=QueueSettings)

    queue_dir: Optional[str] = Field(default=None, description="Directory holding queue.json, locks and backups")
    project_workspace: Optional[str] = Field(default=None, description="Working directory for the executor")

    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
