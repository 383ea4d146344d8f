"""
Resume Queue - persistent, crash-safe task queue for Claude Agent SDK work.

Tasks live in a single JSON store guarded by typed inter-process locks.
A scheduler dispatches them by priority and pauses when the agent reports
a usage limit, resuming at the time the limit lifts.

Layout of a queue directory:
- queue.json              - live store
- backups/                - timestamped copies taken before each write
- locks/<type>.lock       - one lock per lock type
- resume-marker.json      - present while dispatch is paused
- completed-history.json  - archive of cleaned-up tasks
"""

__version__ = "1.0.0"

from resume_queue.models import (
    Task,
    TaskStatus,
    TaskType,
    TaskFilter,
    QueueState,
    QueueSettings,
    QueueConfig,
)

from resume_queue.errors import (
    QueueError,
    ValidationError,
    TaskNotFoundError,
    StateTransitionError,
    LockTimeoutError,
    PersistenceCorruptionError,
)
from resume_queue.config import ConfigManager, DEFAULT_CONFIG_FILE
from resume_queue.store import TaskStore
from resume_queue.persistence import PersistenceManager
from resume_queue.locking import LockManager
from resume_queue.backpressure import BackpressureController
from resume_queue.task_queue import TaskQueue
from resume_queue.scheduler import Scheduler
from resume_queue.executor import Executor, SyncClaudeExecutor, create_executor

__all__ = [
    # Models
    "Task",
    "TaskStatus",
    "TaskType",
    "TaskFilter",
    "QueueState",
    "QueueSettings",
    "QueueConfig",
    # Errors
    "QueueError",
    "ValidationError",
    "TaskNotFoundError",
    "StateTransitionError",
    "LockTimeoutError",
    "PersistenceCorruptionError",
    # Config
    "ConfigManager",
    "DEFAULT_CONFIG_FILE",
    # Components
    "TaskStore",
    "PersistenceManager",
    "LockManager",
    "BackpressureController",
    "TaskQueue",
    "Scheduler",
    "Executor",
    "SyncClaudeExecutor",
    "create_executor",
]
