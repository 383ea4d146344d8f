"""Tests for resume_queue.models module."""

import pytest
from datetime import datetime, timedelta
from pydantic import ValidationError

from resume_queue.models import (
    LockInfo,
    LockType,
    QueueConfig,
    QueueCounts,
    QueueSettings,
    QueueState,
    ResumeMarker,
    Task,
    TaskFilter,
    TaskStatus,
    TaskType,
)


class TestTask:
    """Tests for Task model."""

    def test_defaults(self):
        """Test that a new task starts pending with default policy."""
        task = Task(id="t1", type=TaskType.CUSTOM, type_metadata={"description": "x"})
        assert task.status == TaskStatus.PENDING
        assert task.priority == 5
        assert task.retry_count == 0
        assert task.max_retries == 3
        assert task.timeout_seconds == 3600
        assert task.clear_context is None
        assert task.history == []

    @pytest.mark.parametrize("priority", [0, 11, -1])
    def test_priority_out_of_range(self, priority):
        """Test that priorities outside 1-10 are rejected."""
        with pytest.raises(ValidationError):
            Task(id="t1", type=TaskType.CUSTOM, priority=priority)

    def test_timeout_must_be_positive(self):
        """Test that a zero timeout is rejected."""
        with pytest.raises(ValidationError):
            Task(id="t1", type=TaskType.CUSTOM, timeout_seconds=0)

    def test_retry_count_bounded_by_max(self):
        """Test that retry_count above max_retries is rejected on load."""
        with pytest.raises(ValidationError, match="exceeds max_retries"):
            Task(id="t1", type=TaskType.CUSTOM, retry_count=4, max_retries=3)

    def test_can_retry(self):
        """Test that can_retry follows retry_count < max_retries."""
        task = Task(id="t1", type=TaskType.CUSTOM, retry_count=2, max_retries=3)
        assert task.can_retry()
        task.retry_count = 3
        assert not task.can_retry()

    def test_record_appends_history_and_bumps_updated_at(self, sample_task):
        """Test that record() appends an entry and sets updated_at."""
        entry = sample_task.record(TaskStatus.IN_PROGRESS, "dispatched")
        assert sample_task.history[-1] is entry
        assert sample_task.updated_at == entry.timestamp
        assert entry.note == "dispatched"

    def test_titles_per_type(self):
        """Test that each task type renders a readable title."""
        assert Task(id="a", type=TaskType.ISSUE_REF, type_metadata={"issue_number": 7}).title == "Issue #7"
        assert Task(id="b", type=TaskType.PR_REF, type_metadata={"pr_number": 9}).title == "PR #9"
        workflow = Task(
            id="c",
            type=TaskType.WORKFLOW_STEP,
            type_metadata={"workflow_type": "issue-merge", "steps": ["dev", "review"], "current_step": 1},
        )
        assert workflow.title == "issue-merge [review]"

    def test_explicit_title_wins(self, sample_task):
        """Test that a title in the payload overrides the derived one."""
        sample_task.type_metadata["title"] = "Login fix"
        assert sample_task.title == "Login fix"

    def test_json_round_trip(self, sample_task):
        """Test that a task survives JSON serialization unchanged."""
        sample_task.record(TaskStatus.PENDING, "created")
        restored = Task.model_validate_json(sample_task.model_dump_json())
        assert restored == sample_task


class TestQueueState:
    """Tests for QueueState model."""

    def test_duplicate_ids_rejected(self, sample_task):
        """Test that the same id twice fails validation."""
        with pytest.raises(ValidationError, match="Duplicate task id"):
            QueueState(tasks=[sample_task, sample_task.model_copy()])

    def test_refresh_counts(self, sample_task):
        """Test that counts are recomputed from the task list."""
        failed = sample_task.model_copy(update={"id": "t2", "status": TaskStatus.FAILED})
        state = QueueState(tasks=[sample_task, failed], counts=QueueCounts(total=99))
        counts = state.refresh_counts()
        assert counts.total == 2
        assert counts.pending == 1
        assert counts.failed == 1

    def test_get_task(self, sample_task):
        """Test lookup by id."""
        state = QueueState(tasks=[sample_task])
        assert state.get_task(sample_task.id) is sample_task
        assert state.get_task("missing") is None


class TestLockInfo:
    """Tests for LockInfo model."""

    def test_enum_stored_as_value(self):
        """Test that lock_type serializes as a plain string."""
        info = LockInfo(lock_type=LockType.WRITE, holder_pid=123)
        assert info.lock_type == "write"
        assert '"lock_type":"write"' in info.model_dump_json()

    def test_age_seconds(self):
        """Test age relative to an explicit now."""
        acquired = datetime(2025, 1, 1, 12, 0, 0)
        info = LockInfo(lock_type=LockType.BATCH, holder_pid=1, acquired_at=acquired.isoformat())
        assert info.age_seconds(acquired + timedelta(seconds=90)) == 90


class TestResumeMarker:
    """Tests for ResumeMarker model."""

    def test_indefinite_pause_has_no_remaining(self):
        """Test that a marker without resume_time is indefinite."""
        assert ResumeMarker(reason="manual").remaining_seconds() is None

    def test_remaining_floors_at_zero(self):
        """Test that remaining seconds never go negative."""
        now = datetime(2025, 1, 1, 12, 0, 0)
        marker = ResumeMarker(resume_time=(now - timedelta(minutes=5)).isoformat())
        assert marker.remaining_seconds(now) == 0.0

    def test_remaining(self):
        """Test remaining seconds until the resume time."""
        now = datetime(2025, 1, 1, 12, 0, 0)
        marker = ResumeMarker(resume_time=(now + timedelta(minutes=5)).isoformat())
        assert marker.remaining_seconds(now) == 300


class TestTaskFilter:
    """Tests for TaskFilter model."""

    def test_parse_priority_range(self):
        """Test parsing single priorities and ranges."""
        assert TaskFilter.parse_priority("3") == (3, 3)
        assert TaskFilter.parse_priority("1-3") == (1, 3)

    def test_unknown_sort_rejected(self):
        """Test that an unknown sort key fails validation."""
        with pytest.raises(ValidationError):
            TaskFilter(sort_by="random")

    def test_matches_status_and_priority(self, sample_task):
        """Test status and priority predicates."""
        assert TaskFilter(statuses={TaskStatus.PENDING}).matches(sample_task)
        assert not TaskFilter(statuses={TaskStatus.FAILED}).matches(sample_task)
        assert TaskFilter(priority_min=1, priority_max=3).matches(sample_task)
        assert not TaskFilter(priority_min=4).matches(sample_task)

    def test_matches_search_is_case_insensitive(self, sample_task):
        """Test free-text search over the description."""
        assert TaskFilter(search="FLAKY").matches(sample_task)
        assert not TaskFilter(search="deploy").matches(sample_task)

    def test_matches_created_bounds(self, sample_task):
        """Test creation-date bounds."""
        assert TaskFilter(created_after=datetime(2025, 1, 1)).matches(sample_task)
        assert not TaskFilter(created_before=datetime(2025, 1, 1)).matches(sample_task)


class TestQueueSettings:
    """Tests for QueueSettings model."""

    def test_defaults(self):
        """Test documented defaults."""
        settings = QueueSettings()
        assert settings.default_timeout_seconds == 3600
        assert settings.default_max_retries == 3
        assert settings.retry_placement == "back"
        assert settings.lock_strategy == "auto"
        assert settings.usage_limit_cooldown_seconds == 300
        assert settings.backoff_factor == 1.5
        assert settings.max_wait_seconds == 1800

    def test_invalid_retry_placement(self):
        """Test that retry_placement only accepts back or front."""
        with pytest.raises(ValidationError):
            QueueSettings(retry_placement="middle")

    def test_invalid_lock_strategy(self):
        """Test that lock_strategy only accepts known strategies."""
        with pytest.raises(ValidationError):
            QueueSettings(lock_strategy="redis")

    def test_log_level_normalized(self):
        """Test that log levels are upper-cased."""
        assert QueueSettings(log_level="debug").log_level == "DEBUG"

    def test_config_round_trip(self):
        """Test QueueConfig JSON round trip."""
        config = QueueConfig(queue_dir="/tmp/q", settings=QueueSettings(default_priority=2))
        restored = QueueConfig.model_validate_json(config.model_dump_json())
        assert restored.settings.default_priority == 2
        assert restored.queue_dir == "/tmp/q"
