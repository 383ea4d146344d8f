"""
Task executor using Claude Agent SDK.

The scheduler only sees the synchronous `Executor.execute()` contract;
session handling, prompts and streaming stay in here.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from claude_agent_sdk import ClaudeAgentOptions, query
from pydantic import BaseModel

from resume_queue.backoff import CancelToken
from resume_queue.errors import ExecutorTimeout
from resume_queue.models import Task, TaskType


# Attempt outcomes after which the conversation is always kept
KEEP_CONTEXT_OUTCOMES = ("usage_limit_recovery", "error", "timeout")

CLEAR_COMMAND = "/clear"

# Seconds between checks of the cancel token while an attempt runs
CANCEL_POLL_INTERVAL = 0.1


logger = logging.getLogger(__name__)


OutputCallback = Callable[[str], None]


class OutcomeKind(str, Enum):
    """How an execution attempt ended."""
    COMPLETION = "completion"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ExecutionOutcome(BaseModel):
    """Result reported back to the scheduler."""

    kind: OutcomeKind
    reason: Optional[str] = None
    output: str = ""
    duration_seconds: float = 0.0
    session_id: Optional[str] = None
    cost_usd: float = 0.0


def should_clear_context(task: Task, outcome: str, default: bool = True) -> bool:
    """
    Decide whether the next task starts with a fresh conversation.

    Never clears after a usage-limit recovery, an error or a timeout, so
    the interrupted work can be picked up. Otherwise the task's own
    setting wins over the global default.
    """
    if outcome in KEEP_CONTEXT_OUTCOMES:
        return False
    if task.clear_context is not None:
        return task.clear_context
    return default


def build_prompt(task: Task) -> str:
    """Prompt sent to the agent for a task."""
    meta = task.type_metadata
    if meta.get("command"):
        return str(meta["command"])

    if task.type == TaskType.CUSTOM:
        return meta["description"]
    if task.type == TaskType.ISSUE_REF:
        return f"/dev {meta['issue_number']}"
    if task.type == TaskType.PR_REF:
        return f"/review {meta['pr_number']}"

    steps: List[str] = meta["steps"]
    step = steps[meta.get("current_step", 0)]
    target = meta.get("issue_number")
    if step == "clear":
        return CLEAR_COMMAND
    return f"/{step} {target}" if target is not None else f"/{step}"


async def _wait_cancelled(cancel: CancelToken) -> None:
    while not cancel.cancelled:
        await asyncio.sleep(CANCEL_POLL_INTERVAL)


async def _stop(task: "asyncio.Future") -> None:
    """Cancel a task and wait for it to unwind."""
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class Executor:
    """Contract the scheduler dispatches through."""

    def execute(
        self,
        task: Task,
        on_output: OutputCallback,
        timeout: float,
        cancel: Optional[CancelToken] = None
    ) -> ExecutionOutcome:
        """
        Run one attempt of a task.

        Args:
            task: Task to run (a snapshot; do not mutate)
            on_output: Receives raw output text as it streams
            timeout: Seconds before the attempt counts as timed out
            cancel: Token that aborts the attempt; the outcome is then
                CANCELLED

        Raising ExecutorFailure or ExecutorTimeout is equivalent to returning
        the matching outcome.
        """
        raise NotImplementedError

    def after_attempt(self, task: Task, outcome: str) -> None:
        """Hook told how the attempt ended ("success", "error", "timeout", "usage_limit_recovery")."""


class ClaudeExecutor:
    """
    Executes tasks through the Claude Agent SDK.

    Keeps the session id of the last attempt so the next query can resume
    the conversation when the context is not cleared.
    """

    def __init__(
        self,
        project_root: Path,
        model: Optional[str] = None,
        clear_context_default: bool = True
    ):
        """
        Initialize executor for a project.

        Args:
            project_root: Working directory for the agent
            model: Model override passed to the SDK
            clear_context_default: Global default for clearing context
        """
        self.project_root = Path(project_root).resolve()
        self.model = model
        self.clear_context_default = clear_context_default

        self._last_session_id: Optional[str] = None
        self._resume_next = False

    def _options(self) -> ClaudeAgentOptions:
        resume = self._last_session_id if self._resume_next else None
        return ClaudeAgentOptions(
            cwd=str(self.project_root),
            permission_mode="bypassPermissions",
            setting_sources=["project"],
            model=self.model,
            resume=resume,
        )

    async def execute_task(
        self,
        task: Task,
        on_output: OutputCallback,
        timeout: float,
        cancel: Optional[CancelToken] = None
    ) -> ExecutionOutcome:
        """
        Execute a task, streaming text output.

        The query races the timeout and, when given, the cancel token;
        whichever ends first decides the outcome and the query is stopped.

        Returns:
            ExecutionOutcome; SDK errors become failures, never exceptions
        """
        start_time = datetime.now()
        logger.info(f"[{task.id}] Task started: {task.title}")

        if build_prompt(task) == CLEAR_COMMAND:
            # A clear step only drops the kept session
            self._last_session_id = None
            self._resume_next = False
            logger.info(f"[{task.id}] Context cleared")
            return ExecutionOutcome(kind=OutcomeKind.COMPLETION, output="context cleared")

        query_task = asyncio.ensure_future(self._run_query(task, on_output))
        watcher = asyncio.ensure_future(_wait_cancelled(cancel)) if cancel is not None else None
        waiting = {query_task} if watcher is None else {query_task, watcher}

        try:
            done, _ = await asyncio.wait(waiting, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if query_task in done:
                outcome = query_task.result()
            elif watcher is not None and watcher in done:
                await _stop(query_task)
                outcome = ExecutionOutcome(kind=OutcomeKind.CANCELLED, reason="cancelled by shutdown")
                logger.warning(f"[{task.id}] Attempt aborted by shutdown")
            else:
                await _stop(query_task)
                outcome = ExecutionOutcome(
                    kind=OutcomeKind.TIMEOUT,
                    reason=str(ExecutorTimeout(timeout)),
                )
                logger.warning(f"[{task.id}] {outcome.reason}")
        except asyncio.CancelledError:
            logger.info(f"[{task.id}] Task cancelled")
            query_task.cancel()
            raise
        except Exception as e:
            outcome = ExecutionOutcome(
                kind=OutcomeKind.FAILURE,
                reason=f"{type(e).__name__}: {str(e)}",
            )
            logger.error(f"[{task.id}] Task exception: {outcome.reason}")
        finally:
            if watcher is not None:
                await _stop(watcher)

        outcome.duration_seconds = (datetime.now() - start_time).total_seconds()
        if outcome.session_id:
            self._last_session_id = outcome.session_id
        return outcome

    async def _run_query(self, task: Task, on_output: OutputCallback) -> ExecutionOutcome:
        full_output: List[str] = []
        outcome: Optional[ExecutionOutcome] = None

        async for message in query(prompt=build_prompt(task), options=self._options()):
            if outcome is not None:
                continue

            subtype = getattr(message, 'subtype', None)
            if subtype is not None and hasattr(message, 'result'):
                result_text = message.result or ""
                if result_text:
                    full_output.append(result_text)
                    on_output(result_text)

                failed = getattr(message, 'is_error', False) is True or subtype != 'success'
                outcome = ExecutionOutcome(
                    kind=OutcomeKind.FAILURE if failed else OutcomeKind.COMPLETION,
                    reason=(result_text or subtype) if failed else None,
                    output="\n".join(full_output),
                    session_id=getattr(message, 'session_id', None),
                    cost_usd=getattr(message, 'total_cost_usd', None) or 0.0,
                )
                if failed:
                    logger.error(f"[{task.id}] Task failed: {outcome.reason}")
                else:
                    logger.info(f"[{task.id}] Task completed")

            elif hasattr(message, 'content') and isinstance(message.content, list):
                for block in message.content:
                    if hasattr(block, 'text'):
                        full_output.append(block.text)
                        on_output(block.text)

        if outcome is None:
            outcome = ExecutionOutcome(
                kind=OutcomeKind.FAILURE,
                reason="Agent stream ended without a result",
                output="\n".join(full_output),
            )
        return outcome

    def after_attempt(self, task: Task, outcome: str) -> None:
        self._resume_next = (
            self._last_session_id is not None
            and not should_clear_context(task, outcome, self.clear_context_default)
        )
        if self._resume_next:
            logger.debug(f"[{task.id}] Keeping session {self._last_session_id} for the next task")


class SyncClaudeExecutor(Executor):
    """
    Synchronous wrapper for ClaudeExecutor.

    Runs each attempt on a fresh event loop so the scheduler stays a
    plain blocking loop.
    """

    def __init__(self, project_root: Path, model: Optional[str] = None, clear_context_default: bool = True):
        self._executor = ClaudeExecutor(project_root, model=model, clear_context_default=clear_context_default)
        self.project_root = project_root

    def execute(
        self,
        task: Task,
        on_output: OutputCallback,
        timeout: float,
        cancel: Optional[CancelToken] = None
    ) -> ExecutionOutcome:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(self._executor.execute_task(task, on_output, timeout, cancel))
        finally:
            loop.close()

    def after_attempt(self, task: Task, outcome: str) -> None:
        self._executor.after_attempt(task, outcome)


def create_executor(
    project_root: Path,
    model: Optional[str] = None,
    clear_context_default: bool = True
) -> SyncClaudeExecutor:
    """
    Create a task executor for a project.

    Args:
        project_root: Path to project root
        model: Optional model override
        clear_context_default: Global default for clearing context

    Returns:
        Configured SyncClaudeExecutor
    """
    return SyncClaudeExecutor(project_root, model=model, clear_context_default=clear_context_default)
