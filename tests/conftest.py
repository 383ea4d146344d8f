"""Test fixtures for resume-queue tests."""

import pytest
import tempfile
import shutil
from pathlib import Path
from typing import List, Optional

from resume_queue.executor import ExecutionOutcome, Executor, OutcomeKind
from resume_queue.models import QueueSettings, QueueState, Task, TaskStatus, TaskType
from resume_queue.store import TaskStore
from resume_queue.task_queue import TaskQueue


class FakeExecutor(Executor):
    """
    Scripted executor.

    Each entry is an ExecutionOutcome, an OutcomeKind, an exception to
    raise, or a (kind, output) tuple whose output is streamed first. The
    output may be a list of chunks, each streamed separately.
    """

    def __init__(self, script: Optional[List] = None, default=OutcomeKind.COMPLETION):
        self.script = list(script or [])
        self.default = default
        self.calls: List[Task] = []
        self.attempts: List[tuple] = []

    def execute(self, task, on_output, timeout, cancel=None):
        self.calls.append(task)
        step = self.script.pop(0) if self.script else self.default

        if isinstance(step, BaseException):
            raise step
        if isinstance(step, ExecutionOutcome):
            if step.output:
                on_output(step.output)
            return step
        if isinstance(step, tuple):
            kind, output = step
            chunks = output if isinstance(output, list) else [output]
            for chunk in chunks:
                on_output(chunk)
            output = "\n".join(chunks)
            return ExecutionOutcome(kind=kind, output=output, reason=output if kind != OutcomeKind.COMPLETION else None)
        return ExecutionOutcome(kind=step, reason=None if step == OutcomeKind.COMPLETION else "scripted")

    def after_attempt(self, task, outcome):
        self.attempts.append((task.id, outcome))


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of the tests."""
    for name in ("RESUME_QUEUE_DIR", "RESUME_QUEUE_CONFIG", "RESUME_QUEUE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def queue_dir(temp_dir):
    """Queue directory inside the temp dir."""
    return temp_dir / "queue"


@pytest.fixture
def settings():
    """Settings with short waits for tests."""
    return QueueSettings(poll_interval_seconds=0.01, lock_timeout_seconds=2.0)


@pytest.fixture
def queue(queue_dir, settings):
    """A TaskQueue over an empty directory."""
    return TaskQueue(queue_dir, settings=settings)


@pytest.fixture
def store():
    """An empty TaskStore."""
    return TaskStore(QueueState())


@pytest.fixture
def sample_task():
    """Create a sample Task for testing."""
    return Task(
        id="custom-1700000000-0001",
        type=TaskType.CUSTOM,
        priority=3,
        status=TaskStatus.PENDING,
        created_at="2025-01-31T10:00:00",
        updated_at="2025-01-31T10:00:00",
        type_metadata={"description": "Fix the flaky login test"},
    )


@pytest.fixture
def fake_executor():
    """Executor that completes every task."""
    return FakeExecutor()


@pytest.fixture
def make_executor():
    """Factory for scripted executors."""
    return FakeExecutor
