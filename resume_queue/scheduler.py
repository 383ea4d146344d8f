"""
Priority-ordered dispatch loop.

One task at a time: consult backpressure, pick the next eligible task
under the write lock, run it outside any lock, then record the outcome
under the write lock again.
"""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel

from resume_queue.backpressure import BackpressureSignal
from resume_queue.errors import ExecutorFailure, ExecutorTimeout, OperationCancelled, QueueError
from resume_queue.executor import ExecutionOutcome, Executor, OutcomeKind
from resume_queue.models import Task, TaskStatus, TaskType
from resume_queue.store import TaskStore
from resume_queue.task_queue import TaskQueue


logger = logging.getLogger(__name__)


class CycleAction(str, Enum):
    """What one scheduler cycle did."""
    PAUSED = "paused"
    IDLE = "idle"
    COMPLETED = "completed"
    ADVANCED = "advanced"
    RETRYING = "retrying"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    BACKPRESSURE = "backpressure"
    CANCELLED = "cancelled"


class CycleResult(BaseModel):
    """Summary of a process_one call."""

    action: CycleAction
    task_id: Optional[str] = None
    status: Optional[TaskStatus] = None
    reason: Optional[str] = None
    wait_seconds: Optional[float] = None


class Scheduler:
    """
    Cooperative single-dispatch scheduler.

    The write lock is held only around each transition-and-save, never
    for the duration of an execution.
    """

    def __init__(self, queue: TaskQueue, executor: Executor):
        """
        Initialize scheduler.

        Args:
            queue: Queue to dispatch from (also provides backpressure)
            executor: Collaborator that runs task attempts
        """
        self.queue = queue
        self.executor = executor
        self.backpressure = queue.backpressure
        self.cancel = queue.cancel
        self.poll_interval = queue.settings.poll_interval_seconds

        self._signal: Optional[BackpressureSignal] = None
        self._current_task_id: Optional[str] = None

    # Executor output

    def notify_output(self, text: str, task_id: Optional[str] = None) -> Optional[BackpressureSignal]:
        """
        Feed raw executor output to backpressure detection.

        The first signal seen during an attempt is kept and acted on when
        the attempt ends. Later output from the same attempt is not counted
        again, so one attempt is one occurrence however often it repeats
        the phrase.
        """
        task_id = task_id or self._current_task_id
        in_attempt = self._current_task_id is not None and task_id == self._current_task_id
        if in_attempt and self._signal is not None:
            return self._signal
        signal = self.backpressure.observe(text, task_id)
        if in_attempt and signal is not None:
            self._signal = signal
        return signal

    # Dispatch

    def process_one(self) -> CycleResult:
        """Run at most one eligible task."""
        self.backpressure.try_auto_resume()
        if self.backpressure.is_paused():
            return CycleResult(action=CycleAction.PAUSED, wait_seconds=self.backpressure.remaining())

        with self.queue.transaction("dispatch") as store:
            candidate = store.next_eligible()
            if candidate is None:
                return CycleResult(action=CycleAction.IDLE)
            task = store.transition(candidate.id, TaskStatus.IN_PROGRESS, "dispatched")
            snapshot = task.model_copy(deep=True)

        self._signal = None
        self._current_task_id = snapshot.id
        try:
            outcome = self._execute(snapshot)
        finally:
            self._current_task_id = None

        signal, self._signal = self._signal, None
        return self._record_outcome(snapshot, outcome, signal)

    def _execute(self, task: Task) -> ExecutionOutcome:
        try:
            return self.executor.execute(
                task,
                lambda text: self.notify_output(text, task.id),
                task.timeout_seconds,
                cancel=self.cancel,
            )
        except ExecutorTimeout as e:
            return ExecutionOutcome(kind=OutcomeKind.TIMEOUT, reason=str(e))
        except ExecutorFailure as e:
            return ExecutionOutcome(kind=OutcomeKind.FAILURE, reason=e.reason)
        except Exception as e:
            # Task-level problems must not stop the loop
            logger.error(f"[{task.id}] Executor raised: {e}", exc_info=True)
            return ExecutionOutcome(kind=OutcomeKind.FAILURE, reason=f"{type(e).__name__}: {e}")

    def _record_outcome(
        self,
        snapshot: Task,
        outcome: ExecutionOutcome,
        signal: Optional[BackpressureSignal]
    ) -> CycleResult:
        task_id = snapshot.id

        if outcome.kind == OutcomeKind.COMPLETION:
            with self.queue.transaction("update_status") as store:
                result = self._complete(store, task_id)
            self.backpressure.reset_occurrences(task_id)
            self.executor.after_attempt(snapshot, "success")
            return result

        if signal is not None:
            wait = self.backpressure.compute_wait(signal)
            with self.queue.transaction("update_status") as store:
                store.transition(task_id, TaskStatus.FAILED, f"usage limit: {signal.matched_text}")
                task = store.get(task_id)
                if task.can_retry():
                    store.requeue(task_id, "requeued after usage limit", consume_retry=False)
                status = TaskStatus(store.get(task_id).status)
            self.executor.after_attempt(snapshot, "usage_limit_recovery")
            self.backpressure.pause(wait, signal=signal)
            return CycleResult(
                action=CycleAction.BACKPRESSURE,
                task_id=task_id,
                status=status,
                reason=signal.matched_text,
                wait_seconds=wait,
            )

        if outcome.kind == OutcomeKind.CANCELLED:
            return self._requeue_interrupted(snapshot, outcome)

        is_timeout = outcome.kind == OutcomeKind.TIMEOUT
        reason = outcome.reason or ("timed out" if is_timeout else "failed")
        with self.queue.transaction("update_status") as store:
            result = self._fail(store, task_id, reason, is_timeout)
        self.executor.after_attempt(snapshot, "timeout" if is_timeout else "error")
        return result

    def _requeue_interrupted(self, snapshot: Task, outcome: ExecutionOutcome) -> CycleResult:
        """Put a task whose attempt was aborted by shutdown back in the queue for free."""
        task_id = snapshot.id
        with self.queue.transaction("update_status") as store:
            store.transition(task_id, TaskStatus.FAILED, f"interrupted: {outcome.reason or 'cancelled'}")
            if store.get(task_id).can_retry():
                store.requeue(task_id, "requeued after shutdown", consume_retry=False)
            status = TaskStatus(store.get(task_id).status)
        self.executor.after_attempt(snapshot, "error")
        logger.warning(f"[{task_id}] Attempt interrupted by shutdown, task is {status.value}")
        return CycleResult(action=CycleAction.CANCELLED, task_id=task_id, status=status, reason=outcome.reason)

    def _complete(self, store: TaskStore, task_id: str) -> CycleResult:
        task = store.transition(task_id, TaskStatus.COMPLETED, "completed")
        if task.type == TaskType.WORKFLOW_STEP:
            return self._advance_workflow(store, task)
        logger.info(f"[{task_id}] Completed")
        return CycleResult(action=CycleAction.COMPLETED, task_id=task_id, status=TaskStatus.COMPLETED)

    def _advance_workflow(self, store: TaskStore, task: Task) -> CycleResult:
        """
        Queue the next step of a workflow task.

        Completed is terminal, so each step after the first is a new
        pending task carrying the same workflow metadata.
        """
        steps: List[str] = task.type_metadata["steps"]
        current = task.type_metadata.get("current_step", 0)
        if current + 1 >= len(steps):
            logger.info(f"[{task.id}] Workflow finished ({len(steps)} steps)")
            return CycleResult(action=CycleAction.COMPLETED, task_id=task.id, status=TaskStatus.COMPLETED)

        workflow_id = task.type_metadata.get("workflow_id", task.id)
        metadata = dict(task.type_metadata, current_step=current + 1, workflow_id=workflow_id)
        next_id = f"{workflow_id}-step{current + 2}"
        next_task = store.add({
            "id": None if next_id in store else next_id,
            "type": TaskType.WORKFLOW_STEP,
            "priority": task.priority,
            "type_metadata": metadata,
            "timeout_seconds": task.timeout_seconds,
            "max_retries": task.max_retries,
            "clear_context": task.clear_context,
        })
        logger.info(
            f"[{task.id}] Workflow step {current + 1}/{len(steps)} done, "
            f"next '{steps[current + 1]}' queued as {next_task.id}"
        )
        return CycleResult(
            action=CycleAction.ADVANCED,
            task_id=task.id,
            status=TaskStatus.COMPLETED,
            reason=next_task.id,
        )

    def _fail(self, store: TaskStore, task_id: str, reason: str, is_timeout: bool) -> CycleResult:
        terminal = TaskStatus.TIMEOUT if is_timeout else TaskStatus.FAILED
        task = store.transition(task_id, terminal, reason)

        if task.can_retry():
            store.requeue(task_id)
            logger.warning(
                f"[{task_id}] Attempt {'timed out' if is_timeout else 'failed'} ({reason}), "
                f"retry {task.retry_count}/{task.max_retries}"
            )
            return CycleResult(action=CycleAction.RETRYING, task_id=task_id, status=TaskStatus.PENDING, reason=reason)

        logger.error(f"[{task_id}] Retries exhausted ({task.max_retries}), last error: {reason}")
        return CycleResult(
            action=CycleAction.TIMED_OUT if is_timeout else CycleAction.FAILED,
            task_id=task_id,
            status=terminal,
            reason=reason,
        )

    # Recovery

    def recover_interrupted(self, now: Optional[datetime] = None) -> List[str]:
        """
        Time out in-progress tasks whose dispatcher is gone.

        A task still in_progress past its own timeout cannot have a live
        attempt, so it is moved to timeout and retried when allowed.
        """
        now = now or datetime.now()
        recovered = []
        with self.queue.transaction("update_status") as store:
            for task in store.in_progress():
                deadline = task.updated_datetime() + timedelta(seconds=task.timeout_seconds)
                if deadline > now:
                    continue
                store.transition(task.id, TaskStatus.TIMEOUT, "interrupted: dispatcher did not finish")
                if task.can_retry():
                    store.requeue(task.id)
                recovered.append(task.id)

        if recovered:
            logger.warning(f"Recovered {len(recovered)} interrupted task(s): {', '.join(recovered)}")
        return recovered

    # Loop

    def run(self, max_cycles: Optional[int] = None) -> int:
        """
        Dispatch until cancelled.

        With max_cycles set, stop after that many cycles or at the first
        idle or paused cycle.

        Idle and paused cycles wait on the cancel token, which the
        watcher wakes early when the queue or the resume marker changes.

        Returns:
            Number of cycles run
        """
        cycles = 0
        while not self.cancel.cancelled:
            if max_cycles is not None and cycles >= max_cycles:
                break
            cycles += 1

            try:
                result = self.process_one()
            except OperationCancelled:
                break
            except QueueError as e:
                logger.error(f"Scheduler cycle failed: {e}")
                if max_cycles is not None:
                    break
                self.cancel.wait(self.poll_interval)
                continue

            if max_cycles is not None and result.action in (CycleAction.PAUSED, CycleAction.IDLE):
                # Bounded runs stop instead of waiting
                break

            if result.action == CycleAction.PAUSED:
                wait = result.wait_seconds if result.wait_seconds is not None else self.poll_interval
                logger.info(f"Paused, next check in {min(wait, self.poll_interval):.0f}s")
                self.cancel.wait(min(max(wait, 0.0), self.poll_interval))
            elif result.action == CycleAction.IDLE:
                self.cancel.wait(self.poll_interval)

        return cycles
