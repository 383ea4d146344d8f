"""
Typed inter-process locks over the queue directory.

One lock artifact per lock type lives in <queue_dir>/locks/. Two strategies
sit behind the same interface:

- FlockStrategy: fcntl.flock on the lock file (kernel releases it when the
  holder dies). Used when fcntl is importable.
- MarkerFileStrategy: atomic O_CREAT|O_EXCL marker file. Abandoned markers
  are reclaimed after a liveness/age check.

Both write a LockInfo record so any process can judge the holder.
Operations that rewrite queue.json always hold the write lock, whatever
else they take, so saves to the store never interleave.
"""

import getpass
import logging
import os
import signal
import socket
import threading
import time
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError as PydanticValidationError

from resume_queue.atomic import AtomicFileWriter
from resume_queue.backoff import BackoffPolicy, CancelToken
from resume_queue.errors import LockTimeoutError, OperationCancelled
from resume_queue.models import LockInfo, LockType

if os.name == "posix":
    import fcntl
else:
    # No fcntl on Windows; the marker strategy is used there
    fcntl = None


LOCK_DIR_NAME = "locks"

# Static operation -> lock type map. None means read-only: no lock taken.
OPERATION_LOCK_TYPES: Dict[str, Optional[LockType]] = {
    "add": LockType.WRITE,
    "remove": LockType.WRITE,
    "update_status": LockType.WRITE,
    "update_priority": LockType.WRITE,
    "cancel": LockType.WRITE,
    "retry": LockType.WRITE,
    "dispatch": LockType.WRITE,
    "batch_add": LockType.BATCH,
    "batch_remove": LockType.BATCH,
    "import": LockType.BATCH,
    "clear": LockType.MAINTENANCE,
    "cleanup": LockType.MAINTENANCE,
    "restore": LockType.MAINTENANCE,
    "config_set": LockType.CONFIG,
    "config_reset": LockType.CONFIG,
    "list": None,
    "status": None,
    "filter": None,
    "export": None,
    "stats": None,
    "next": None,
    "monitor": None,
    "show": None,
}

# Lock types whose operations rewrite queue.json; they also take the write lock
STORE_LOCK_TYPES = frozenset({LockType.BATCH, LockType.MAINTENANCE})

# Acquisition order when an operation needs more than one lock
LOCK_ORDER = (LockType.MAINTENANCE, LockType.BATCH, LockType.CONFIG, LockType.WRITE)

# Seconds to wait for a lock, per operation
OPERATION_TIMEOUTS: Dict[str, float] = {
    "add": 10.0,
    "remove": 10.0,
    "update_status": 10.0,
    "update_priority": 10.0,
    "cancel": 10.0,
    "retry": 10.0,
    "dispatch": 10.0,
    "batch_add": 30.0,
    "batch_remove": 30.0,
    "import": 60.0,
    "clear": 60.0,
    "cleanup": 60.0,
    "restore": 60.0,
    "config_set": 5.0,
    "config_reset": 5.0,
}
DEFAULT_OPERATION_TIMEOUT = 15.0

# Poll step while waiting for a terminated holder to exit
TERMINATION_POLL_INTERVAL = 0.1

# A marker with no record older than this was left by a crash mid-write
ORPHAN_MARKER_GRACE = 10.0


logger = logging.getLogger(__name__)

# Lock files held by any LockManager in this process, keyed by path
_process_held: Dict[str, LockInfo] = {}
_process_held_lock = threading.Lock()


def lock_type_for(operation: str) -> Optional[LockType]:
    """Lock type an operation needs. Unknown operations take the write lock."""
    return OPERATION_LOCK_TYPES.get(operation, LockType.WRITE)


def lock_types_for(operation: str) -> List[LockType]:
    """
    Every lock an operation holds, in acquisition order.

    Batch and maintenance operations save queue.json too, so they hold the
    write lock as well. Writes to the store are therefore serialized by the
    write lock alone, and a batch or maintenance holder also excludes other
    holders of its own type.
    """
    lock_type = lock_type_for(operation)
    if lock_type is None:
        return []
    needed = {lock_type}
    if lock_type in STORE_LOCK_TYPES:
        needed.add(LockType.WRITE)
    return [t for t in LOCK_ORDER if t in needed]


def timeout_for(operation: str, ceiling: Optional[float] = None) -> float:
    timeout = OPERATION_TIMEOUTS.get(operation, DEFAULT_OPERATION_TIMEOUT)
    if ceiling is not None:
        timeout = min(timeout, ceiling)
    return timeout


def process_alive(pid: int) -> bool:
    """Check whether a process exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    return True


def current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid()) if hasattr(os, "getuid") else "unknown"


def read_lock_info(path: Path) -> Optional[LockInfo]:
    """Parse a lock record; None if absent, empty or unparseable."""
    data = AtomicFileWriter.read_json(path)
    if not data:
        return None
    try:
        return LockInfo.model_validate(data)
    except PydanticValidationError:
        return None


class LockStrategy:
    """Interface shared by the lock primitives."""

    name = "base"

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def try_acquire(self, info: LockInfo) -> bool:
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError

    def read_holder(self) -> Optional[LockInfo]:
        return read_lock_info(self.path)

    def break_lock(self, holder: LockInfo) -> bool:
        """Remove an abandoned lock. Returns True if the artifact was cleared."""
        raise NotImplementedError

    def break_orphan(self, max_age: float) -> bool:
        """Remove an artifact with no readable holder record older than max_age."""
        return False


class FlockStrategy(LockStrategy):
    """
    Kernel advisory lock via fcntl.flock.

    The lock file is never deleted; its content is the current holder's
    record and is truncated on release.
    """

    name = "flock"

    def __init__(self, path: Path):
        super().__init__(path)
        self._fd = None

    def try_acquire(self, info: LockInfo) -> bool:
        fd = open(self.path, "a+")
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except (BlockingIOError, PermissionError):
            fd.close()
            return False
        except Exception:
            fd.close()
            raise

        fd.seek(0)
        fd.truncate()
        fd.write(info.model_dump_json())
        fd.flush()
        os.fsync(fd.fileno())
        self._fd = fd
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            self._fd.seek(0)
            self._fd.truncate()
            self._fd.flush()
            fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
        finally:
            self._fd.close()
            self._fd = None

    def read_holder(self) -> Optional[LockInfo]:
        """Holder record, or None when nobody holds the flock."""
        if self._fd is None and self.path.exists():
            with open(self.path, "a+") as probe:
                try:
                    fcntl.flock(probe.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                except (BlockingIOError, PermissionError):
                    pass
                else:
                    # Free: any content is left over from a dead holder
                    fcntl.flock(probe.fileno(), fcntl.LOCK_UN)
                    return None
        return read_lock_info(self.path)

    def break_lock(self, holder: LockInfo) -> bool:
        # The kernel frees the lock once the holder is gone; nothing to delete
        return False


class MarkerFileStrategy(LockStrategy):
    """
    Atomic create-if-absent marker file.

    Works on any filesystem with O_EXCL semantics. A marker left behind by
    a dead process stays until another acquirer reclaims it.
    """

    name = "marker"

    def __init__(self, path: Path):
        super().__init__(path)
        self._held: Optional[LockInfo] = None

    def try_acquire(self, info: LockInfo) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        with os.fdopen(fd, "w") as f:
            f.write(info.model_dump_json())
            f.flush()
            os.fsync(f.fileno())
        self._held = info
        return True

    def release(self) -> None:
        if self._held is None:
            return
        current = self.read_holder()
        # Only delete our own marker; it may have been reclaimed meanwhile
        if current is None or _same_holder(current, self._held):
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
        else:
            logger.warning(f"Lock {self.path.name} was taken over by pid {current.holder_pid}")
        self._held = None

    def break_lock(self, holder: LockInfo) -> bool:
        current = self.read_holder()
        if current is not None and not _same_holder(current, holder):
            # Someone else already reclaimed and re-acquired it
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True

    def break_orphan(self, max_age: float) -> bool:
        if not self.path.exists() or self.read_holder() is not None:
            return False
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        if age < max_age:
            # Holder may still be writing its record
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        logger.warning(f"Removed orphaned lock marker {self.path.name} (no holder record)")
        return True


def _same_holder(a: LockInfo, b: LockInfo) -> bool:
    return (
        a.holder_pid == b.holder_pid
        and a.acquired_at == b.acquired_at
        and a.hostname == b.hostname
    )


def create_strategy(name: str, path: Path) -> LockStrategy:
    """Build a lock strategy by name ("auto" prefers flock when available)."""
    if name == "auto":
        name = "flock" if fcntl is not None else "marker"
    if name == "flock":
        if fcntl is None:
            raise ValueError("flock lock strategy requires fcntl")
        return FlockStrategy(path)
    if name == "marker":
        return MarkerFileStrategy(path)
    raise ValueError(f"Unknown lock strategy: {name}")


class LockGuard:
    """
    A held lock. Releases on context exit or explicit release().

    Usage:
        with manager.acquire(LockType.WRITE, "add") as guard:
            ...
    """

    def __init__(self, strategy: LockStrategy, info: LockInfo):
        self._strategy = strategy
        self.info = info
        self.acquired_monotonic = time.monotonic()
        self.released = False

    @property
    def lock_type(self) -> str:
        return self.info.lock_type

    @property
    def operation(self) -> str:
        return self.info.operation_name

    def release(self) -> None:
        if self.released:
            return
        try:
            self._strategy.release()
        finally:
            self.released = True
            with _process_held_lock:
                if _process_held.get(str(self._strategy.path)) is self.info:
                    del _process_held[str(self._strategy.path)]
            held_for = time.monotonic() - self.acquired_monotonic
            logger.debug(f"Released {self.lock_type} lock for '{self.operation}' after {held_for:.2f}s")

    def __enter__(self) -> "LockGuard":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class LockManager:
    """
    Named, typed, timeout-bounded locks for independent processes.

    Contention is retried with exponential backoff plus jitter. Before every
    retry the current holder is checked; a dead holder or one older than
    the stale ceiling is reclaimed (a live one is sent SIGTERM, then
    SIGKILL after the grace period).
    """

    def __init__(
        self,
        lock_dir: Path,
        strategy: str = "auto",
        stale_after: float = 600.0,
        termination_grace: float = 5.0,
        reclaim_live_holders: bool = True,
        backoff: Optional[BackoffPolicy] = None,
        cancel: Optional[CancelToken] = None,
        timeout_ceiling: Optional[float] = None
    ):
        """
        Initialize lock manager.

        Args:
            lock_dir: Directory for the per-type lock files
            strategy: "auto", "flock" or "marker"
            stale_after: Age in seconds after which a holder is stale
            termination_grace: Seconds between SIGTERM and SIGKILL
            reclaim_live_holders: Terminate live holders past the age ceiling
            backoff: Retry delay policy
            cancel: Token that aborts waits
            timeout_ceiling: Upper bound applied to per-operation timeouts
        """
        self.lock_dir = Path(lock_dir)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        self.strategy_name = strategy
        self.stale_after = stale_after
        self.termination_grace = termination_grace
        self.reclaim_live_holders = reclaim_live_holders
        self.backoff = backoff or BackoffPolicy(base=0.1, multiplier=1.5, cap=1.0, jitter=0.25)
        self.cancel = cancel or CancelToken()
        self.timeout_ceiling = timeout_ceiling

        self.hostname = socket.gethostname()
        self.pid = os.getpid()

        # Fail fast on an unknown or unavailable strategy
        create_strategy(strategy, self.lock_path(LockType.WRITE))

    def lock_path(self, lock_type: LockType) -> Path:
        return self.lock_dir / f"{LockType(lock_type).value}.lock"

    def acquire(
        self,
        lock_type: LockType,
        operation_name: str,
        timeout: Optional[float] = None
    ) -> LockGuard:
        """
        Acquire a typed lock.

        Args:
            lock_type: Lock class to take
            operation_name: Recorded in the lock for diagnostics
            timeout: Seconds to keep trying (defaults per operation)

        Returns:
            LockGuard to release (use as a context manager)

        Raises:
            LockTimeoutError: If the lock stays contended past the timeout
            OperationCancelled: If the cancel token fires while waiting
        """
        lock_type = LockType(lock_type)
        if timeout is None:
            timeout = timeout_for(operation_name, self.timeout_ceiling)

        path = self.lock_path(lock_type)
        strategy = create_strategy(self.strategy_name, path)
        started = time.monotonic()
        attempt = 0

        while True:
            info = LockInfo(
                lock_type=lock_type,
                holder_pid=self.pid,
                operation_name=operation_name,
                hostname=self.hostname,
                user=current_user(),
            )
            # Create and register together so other threads never see an
            # unregistered marker carrying this pid
            with _process_held_lock:
                acquired = strategy.try_acquire(info)
                if acquired:
                    _process_held[str(path)] = info
            if acquired:
                logger.debug(
                    f"Acquired {lock_type.value} lock for '{operation_name}' "
                    f"({strategy.name}, waited {time.monotonic() - started:.2f}s)"
                )
                return LockGuard(strategy, info)

            holder = strategy.read_holder()
            if holder is not None:
                if self._reclaim_if_stale(strategy, holder):
                    continue
            elif strategy.break_orphan(ORPHAN_MARKER_GRACE):
                continue

            elapsed = time.monotonic() - started
            if elapsed >= timeout:
                raise LockTimeoutError(
                    lock_type.value,
                    operation_name,
                    elapsed,
                    holder=self._describe(holder),
                )

            delay = min(self.backoff.delay(attempt), timeout - elapsed)
            attempt += 1
            if self.cancel.wait(delay):
                raise OperationCancelled(
                    f"Cancelled while waiting for {lock_type.value} lock ('{operation_name}')"
                )

    @contextmanager
    def locked(self, operation: str, timeout: Optional[float] = None) -> Iterator[Optional[LockGuard]]:
        """
        Scoped lock for an operation name.

        Takes every lock in lock_types_for(operation) in a fixed order,
        sharing one timeout, and yields the guard of the operation's own
        lock type. Yields None for read-only operations, which take no lock.
        """
        lock_types = lock_types_for(operation)
        if not lock_types:
            yield None
            return

        if timeout is None:
            timeout = timeout_for(operation, self.timeout_ceiling)
        deadline = time.monotonic() + timeout

        with ExitStack() as stack:
            guards = {}
            for lock_type in lock_types:
                remaining = max(0.0, deadline - time.monotonic())
                guards[lock_type] = stack.enter_context(self.acquire(lock_type, operation, remaining))
            yield guards[lock_type_for(operation)]

    def stale_reason(self, holder: LockInfo) -> Optional[str]:
        """Explain why a holder is stale, or None if it looks valid."""
        age = holder.age_seconds()
        if holder.hostname != self.hostname:
            # Liveness cannot be checked across hosts; judge by age alone
            if age > self.stale_after:
                return f"holder on {holder.hostname} aged {age:.0f}s"
            return None
        if holder.holder_pid == self.pid:
            with _process_held_lock:
                held_here = str(self.lock_path(LockType(holder.lock_type))) in _process_held
            if not held_here:
                return "left behind by an earlier run with this pid"
            return None
        if not process_alive(holder.holder_pid):
            return f"holder pid {holder.holder_pid} is not running"
        if age > self.stale_after:
            return f"held for {age:.0f}s (limit {self.stale_after:.0f}s)"
        return None

    def _holder_alive_here(self, holder: LockInfo) -> bool:
        return (
            holder.hostname == self.hostname
            and holder.holder_pid != self.pid
            and process_alive(holder.holder_pid)
        )

    def _reclaim_if_stale(self, strategy: LockStrategy, holder: LockInfo) -> bool:
        reason = self.stale_reason(holder)
        if reason is None:
            return False

        alive = self._holder_alive_here(holder)
        if alive:
            if not self.reclaim_live_holders:
                return False
            logger.warning(
                f"Terminating unresponsive {holder.lock_type} lock holder "
                f"pid {holder.holder_pid} ({reason})"
            )
            self._terminate(holder.holder_pid)

        logger.warning(f"Reclaiming stale {holder.lock_type} lock: {reason}")
        with _process_held_lock:
            cleared = strategy.break_lock(holder)
        # An flock is freed by the kernel once its holder exits
        return cleared or alive

    def _terminate(self, pid: int) -> None:
        """SIGTERM, then SIGKILL if still alive after the grace period."""
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            return

        deadline = time.monotonic() + self.termination_grace
        while time.monotonic() < deadline:
            if not process_alive(pid):
                return
            if self.cancel.wait(TERMINATION_POLL_INTERVAL):
                raise OperationCancelled(f"Cancelled while terminating pid {pid}")

        if process_alive(pid):
            logger.warning(f"Pid {pid} ignored SIGTERM, sending SIGKILL")
            try:
                os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
            except ProcessLookupError:
                pass

    def _describe(self, holder: Optional[LockInfo]) -> Optional[str]:
        if holder is None:
            return None
        return (
            f"pid {holder.holder_pid} on {holder.hostname} for "
            f"'{holder.operation_name}' since {holder.acquired_at}"
        )

    # Diagnostics and maintenance

    def holders(self) -> List[LockInfo]:
        """Current lock records across all lock types."""
        found = []
        for lock_type in LockType:
            holder = create_strategy(self.strategy_name, self.lock_path(lock_type)).read_holder()
            if holder is not None:
                found.append(holder)
        return found

    def cleanup_stale(self) -> int:
        """Clear locks whose holders are gone. Live holders are left alone."""
        cleared = 0
        for lock_type in LockType:
            strategy = create_strategy(self.strategy_name, self.lock_path(lock_type))
            holder = strategy.read_holder()
            if holder is None:
                if strategy.break_orphan(ORPHAN_MARKER_GRACE):
                    cleared += 1
                continue
            reason = self.stale_reason(holder)
            if reason is None or self._holder_alive_here(holder):
                continue
            with _process_held_lock:
                cleared_here = strategy.break_lock(holder)
            if cleared_here:
                logger.info(f"Cleared stale {lock_type.value} lock: {reason}")
                cleared += 1
        return cleared

    def force_release(self, lock_type: LockType) -> bool:
        """
        Delete a lock artifact regardless of its holder.

        Only meaningful for marker locks; an flock held by a live process
        cannot be broken this way.
        """
        path = self.lock_path(lock_type)
        strategy = create_strategy(self.strategy_name, path)
        if isinstance(strategy, FlockStrategy):
            # Unlinking a held flock file would let a second holder in
            if strategy.read_holder() is not None:
                logger.warning(f"Cannot force-release a held flock: {path.name}")
            return False
        if not path.exists():
            return False
        holder = read_lock_info(path)
        path.unlink()
        suffix = f" held by pid {holder.holder_pid}" if holder else ""
        logger.warning(f"Force-released {LockType(lock_type).value} lock{suffix}")
        return True
