"""
Command-line interface for resume-queue.

Grouped command structure:
- tasks: add, remove, list, show, priority, cancel, retry, next
- queue: pause, resume, clear, status, cleanup, run
- data: export, import, backups (list, restore)
- admin: locks (list, release), config (show, set, reset)
"""

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from resume_queue import __version__
from resume_queue.config import ConfigManager
from resume_queue.errors import QueueError
from resume_queue.models import LockType, Task, TaskFilter, TaskStatus, TaskType
from resume_queue.task_queue import EXPORT_FORMATS, IMPORT_MODES, TaskQueue


STATUS_ICONS = {
    TaskStatus.PENDING: "⏳",
    TaskStatus.IN_PROGRESS: "🔄",
    TaskStatus.COMPLETED: "✅",
    TaskStatus.FAILED: "❌",
    TaskStatus.TIMEOUT: "⏰",
}

HEALTH_ICONS = {"healthy": "🟢", "warning": "🟡", "critical": "🔴"}

TYPE_ALIASES = {
    "custom": TaskType.CUSTOM,
    "issue": TaskType.ISSUE_REF,
    "pr": TaskType.PR_REF,
    "workflow": TaskType.WORKFLOW_STEP,
}


def _config(args) -> ConfigManager:
    return ConfigManager(args.config)


def _queue(args) -> TaskQueue:
    return _config(args).create_queue(args.queue_dir)


def _parse_statuses(value: Optional[str]) -> Optional[List[TaskStatus]]:
    if not value:
        return None
    return [TaskStatus(s.strip()) for s in value.split(",") if s.strip()]


def _build_filter(args) -> TaskFilter:
    low, high = TaskFilter.parse_priority(args.priority) if getattr(args, "priority", None) else (1, 10)
    statuses = _parse_statuses(getattr(args, "status", None))
    return TaskFilter(
        statuses=set(statuses) if statuses else None,
        priority_min=low,
        priority_max=high,
        type=TYPE_ALIASES[args.type] if getattr(args, "type", None) else None,
        search=getattr(args, "search", None),
        created_after=datetime.fromisoformat(args.after) if getattr(args, "after", None) else None,
        created_before=datetime.fromisoformat(args.before) if getattr(args, "before", None) else None,
        sort_by=getattr(args, "sort", None) or "priority",
        limit=getattr(args, "limit", None),
    )


def _format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "until resumed"
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def _print_task_line(task: Task) -> None:
    icon = STATUS_ICONS.get(TaskStatus(task.status), "•")
    retries = f" (retry {task.retry_count}/{task.max_retries})" if task.retry_count else ""
    print(f"  {icon} [P{task.priority}] {task.id}  {task.title}{retries}")


# =============================================================================
# TASK COMMANDS
# =============================================================================

def cmd_add(args):
    """Add a task."""
    task_type = TYPE_ALIASES[args.task_type]
    payload = {}

    if task_type == TaskType.CUSTOM:
        payload["description"] = args.value
    elif task_type == TaskType.ISSUE_REF:
        payload["issue_number"] = args.value
    elif task_type == TaskType.PR_REF:
        payload["pr_number"] = args.value
    else:
        payload["workflow_type"] = args.value
        if args.issue is not None:
            payload["issue_number"] = args.issue
        if args.steps:
            payload["steps"] = [s.strip() for s in args.steps.split(",") if s.strip()]

    if args.title:
        payload["title"] = args.title
    if args.label:
        payload["labels"] = args.label
    if args.command:
        payload["command"] = args.command

    options = {}
    if args.id:
        options["id"] = args.id
    if args.timeout is not None:
        options["timeout_seconds"] = args.timeout
    if args.max_retries is not None:
        options["max_retries"] = args.max_retries
    if args.clear_context is not None:
        options["clear_context"] = args.clear_context

    task_id = _queue(args).add(task_type, args.priority, payload, **options)
    print(f"✅ Added task: {task_id}")
    return 0


def cmd_remove(args):
    """Remove one or more tasks."""
    queue = _queue(args)
    if len(args.task_ids) == 1:
        removed = [queue.remove(args.task_ids[0], force=args.force)]
    else:
        removed = queue.batch_remove(args.task_ids, force=args.force)

    for task in removed:
        print(f"🗑️  Removed: {task.id}")
    return 0


def cmd_list(args):
    """List tasks."""
    tasks = _queue(args).list(_build_filter(args))

    if args.json:
        print(json.dumps([t.model_dump(mode="json") for t in tasks], indent=2))
        return 0

    if not tasks:
        print("📭 No tasks")
        return 0

    print(f"📋 Tasks ({len(tasks)})")
    for task in tasks:
        _print_task_line(task)
    return 0


def cmd_show(args):
    """Show task details and history."""
    task = _queue(args).get(args.task_id)

    if args.json:
        print(task.model_dump_json(indent=2))
        return 0

    status = TaskStatus(task.status)
    print("=" * 60)
    print(f"{STATUS_ICONS.get(status, '•')} {task.id}")
    print("=" * 60)
    print(f"Title:     {task.title}")
    print(f"Type:      {TaskType(task.type).value}")
    print(f"Status:    {status.value}")
    print(f"Priority:  {task.priority}")
    print(f"Retries:   {task.retry_count}/{task.max_retries}")
    print(f"Timeout:   {task.timeout_seconds}s")
    print(f"Created:   {task.created_at}")
    print(f"Updated:   {task.updated_at}")
    if task.clear_context is not None:
        print(f"Clear ctx: {task.clear_context}")
    if task.last_error:
        print(f"Error:     {task.last_error}")

    if task.type_metadata:
        print("\nMetadata:")
        for key, value in task.type_metadata.items():
            print(f"  {key}: {value}")

    print("\nHistory:")
    for entry in task.history:
        note = f"  {entry.note}" if entry.note else ""
        print(f"  {entry.timestamp}  {TaskStatus(entry.status).value}{note}")
    return 0


def cmd_priority(args):
    """Change a task's priority."""
    task = _queue(args).set_priority(args.task_id, args.priority)
    print(f"✅ {task.id} priority set to {task.priority}")
    return 0


def cmd_cancel(args):
    """Cancel a pending or running task."""
    task = _queue(args).cancel_task(args.task_id, args.reason)
    print(f"🛑 Cancelled: {task.id}")
    return 0


def cmd_retry(args):
    """Send a failed or timed-out task back to pending."""
    task = _queue(args).retry(args.task_id)
    print(f"🔁 Requeued: {task.id} (retry {task.retry_count}/{task.max_retries})")
    return 0


def cmd_next(args):
    """Show the task that would run next."""
    task = _queue(args).next()
    if task is None:
        print("📭 No eligible tasks")
        return 0

    print("⏭️  Next task:")
    _print_task_line(task)
    return 0


# =============================================================================
# QUEUE COMMANDS
# =============================================================================

def cmd_pause(args):
    """Pause dispatch."""
    _queue(args).pause(args.reason, seconds=args.duration)
    if args.duration:
        print(f"⏸️  Queue paused for {_format_duration(args.duration)}")
    else:
        print("⏸️  Queue paused until resumed")
    return 0


def cmd_resume(args):
    """Resume dispatch."""
    if _queue(args).resume():
        print("▶️  Queue resumed")
    else:
        print("ℹ️  Queue was not paused")
    return 0


def cmd_clear(args):
    """Remove tasks from the queue."""
    if not args.yes:
        print("⚠️  This removes tasks from the queue. Re-run with --yes to confirm.")
        return 1

    removed = _queue(args).clear(args.reason or "", _parse_statuses(args.status))
    print(f"🧹 Cleared {removed} task(s)")
    return 0


def cmd_status(args):
    """Show queue status."""
    queue = _queue(args)
    status = queue.status()

    if args.json:
        print(status.model_dump_json(indent=2))
        return 0

    counts = status.counts
    print("=" * 60)
    print("📊 Resume Queue Status")
    print("=" * 60)
    print(f"\nQueue directory: {queue.queue_dir}")
    print(f"Health: {HEALTH_ICONS.get(status.health, '')} {status.health}")

    print(f"\n  Total:       {counts.total}")
    print(f"  ⏳ Pending:     {counts.pending}")
    print(f"  🔄 In progress: {counts.in_progress}")
    print(f"  ✅ Completed:   {counts.completed}")
    print(f"  ❌ Failed:      {counts.failed}")
    print(f"  ⏰ Timeout:     {counts.timeout}")

    if status.paused:
        print(f"\n⏸️  Paused: {status.pause_reason}")
        if status.resume_time:
            print(f"   Resumes at {status.resume_time} ({_format_duration(status.remaining_seconds)})")
    else:
        print("\n▶️  Active")

    if status.locks:
        print("\n🔒 Locks:")
        for lock in status.locks:
            print(f"   {lock.lock_type}: pid {lock.holder_pid} ({lock.operation_name}) since {lock.acquired_at}")

    if args.countdown and status.paused:
        print()
        ended = queue.backpressure.countdown(
            lambda remaining: print(f"\r⏳ Resuming in {_format_duration(remaining)}   ", end="", flush=True)
        )
        print()
        print("▶️  Queue resumed" if ended else "Countdown interrupted")

    return 0


def cmd_cleanup(args):
    """Archive old tasks, prune backups and clear stale locks."""
    report = _queue(args).cleanup()
    print("🧹 Cleanup complete")
    print(f"   Archived tasks:  {report.archived}")
    print(f"   Pruned backups:  {report.backups_pruned}")
    print(f"   Cleared locks:   {report.locks_cleared}")
    return 0


def cmd_run(args):
    """Dispatch tasks in the foreground (testing)."""
    from resume_queue.daemon import QueueDaemon, configure_logging

    daemon = QueueDaemon(config_file=args.config, queue_dir=args.queue_dir, install_signal_handlers=False)
    configure_logging(daemon.settings.log_level)

    if args.once:
        result = daemon.scheduler.process_one()
        suffix = f" {result.task_id}" if result.task_id else ""
        print(f"🔄 Cycle: {result.action.value}{suffix}")
        if result.reason:
            print(f"   {result.reason}")
        return 0

    daemon.startup()
    cycles = daemon.scheduler.run(max_cycles=args.cycles or None)
    print(f"✅ Ran {cycles} cycle(s)")
    return 0


# =============================================================================
# DATA COMMANDS
# =============================================================================

def cmd_export(args):
    """Export tasks as JSON or CSV."""
    content = _queue(args).export(args.format, _build_filter(args))

    if args.output:
        Path(args.output).write_text(content)
        print(f"📤 Exported to {args.output}")
    else:
        print(content, end="" if content.endswith("\n") else "\n")
    return 0


def cmd_import(args):
    """Import tasks from a JSON export."""
    report = _queue(args).import_tasks(Path(args.file), args.mode)

    if args.mode == "validate":
        print(f"✅ Valid: {report.total} task(s)")
        return 0

    print(f"📥 Imported {report.imported} new, updated {report.updated}, skipped {report.skipped}")
    for error in report.errors:
        print(f"   ⚠️  {error}")
    return 0


def cmd_backups_list(args):
    """List queue backups."""
    queue = _queue(args)
    backups = queue.persistence.list_backups()

    if not backups:
        print("📭 No backups")
        return 0

    print(f"💾 Backups ({len(backups)})")
    for backup in backups:
        taken = queue.persistence.backup_time(backup)
        print(f"   {backup.name}  {taken.isoformat(sep=' ', timespec='seconds') if taken else ''}")
    return 0


def cmd_backups_restore(args):
    """Restore a backup (latest by default)."""
    queue = _queue(args)
    backup = None
    if args.backup:
        backup = Path(args.backup)
        if not backup.is_absolute() and not backup.exists():
            backup = queue.persistence.backup_dir / args.backup

    count = queue.restore(backup)
    print(f"♻️  Restored {count} task(s)")
    return 0


# =============================================================================
# ADMIN COMMANDS
# =============================================================================

def cmd_locks_list(args):
    """List held locks."""
    locks = _queue(args).locks()

    if not locks:
        print("🔓 No locks held")
        return 0

    for lock in locks:
        print(f"🔒 {lock.lock_type}: pid {lock.holder_pid}@{lock.hostname} ({lock.operation_name}) since {lock.acquired_at}")
    return 0


def cmd_locks_release(args):
    """Force-release a lock."""
    if _queue(args).release_lock(LockType(args.lock_type)):
        print(f"🔓 Released {args.lock_type} lock")
        return 0

    print(f"⚠️  {args.lock_type} lock not released (not held, or held by a live process)")
    return 1


def cmd_config_show(args):
    """Show configuration."""
    config_manager = _config(args)
    print(f"Configuration: {config_manager.config_file}")
    print(json.dumps(config_manager.as_dict(), indent=2))
    return 0


def _parse_value(raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def cmd_config_set(args):
    """Set a configuration value."""
    config_manager = _config(args)

    try:
        if args.key == "queue_dir":
            config_manager.set_queue_dir(args.value)
        elif args.key == "project_workspace":
            config_manager.set_project_workspace(args.value)
        else:
            config_manager.update_settings(**{args.key: _parse_value(args.value)})
    except ValueError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1

    print(f"✅ {args.key} = {args.value}")
    return 0


def cmd_config_reset(args):
    """Reset settings to defaults."""
    _config(args).reset()
    print("✅ Settings reset to defaults")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resume-queue",
        description="Persistent task queue with usage-limit aware dispatch"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, default=None, help="Path to configuration file")
    parser.add_argument("--queue-dir", type=Path, default=None, help="Queue directory")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Add
    add_parser = subparsers.add_parser("add", help="Add a task")
    add_parser.add_argument("task_type", choices=sorted(TYPE_ALIASES), help="Task type")
    add_parser.add_argument("value", help="Description, issue number, PR number or workflow type")
    add_parser.add_argument("--priority", "-p", type=int, default=None, help="Priority 1 (highest) to 10")
    add_parser.add_argument("--id", help="Explicit task id")
    add_parser.add_argument("--timeout", type=int, default=None, help="Timeout in seconds")
    add_parser.add_argument("--max-retries", type=int, default=None, help="Maximum retries")
    add_parser.add_argument("--issue", type=int, default=None, help="Issue number (workflows)")
    add_parser.add_argument("--steps", help="Comma-separated workflow steps")
    add_parser.add_argument("--title", help="Display title")
    add_parser.add_argument("--label", action="append", help="Label (repeatable)")
    add_parser.add_argument("--command", help="Prompt sent instead of the default for the type")
    context = add_parser.add_mutually_exclusive_group()
    context.add_argument("--clear-context", dest="clear_context", action="store_true", default=None,
                         help="Start the next task with a fresh conversation")
    context.add_argument("--keep-context", dest="clear_context", action="store_false",
                         help="Keep the conversation for the next task")
    add_parser.set_defaults(func=cmd_add)

    # Remove
    remove_parser = subparsers.add_parser("remove", help="Remove tasks")
    remove_parser.add_argument("task_ids", nargs="+", help="Task IDs")
    remove_parser.add_argument("--force", action="store_true", help="Remove even if in progress")
    remove_parser.set_defaults(func=cmd_remove)

    # List
    list_parser = subparsers.add_parser("list", help="List tasks")
    _add_filter_arguments(list_parser)
    list_parser.add_argument("--json", action="store_true", help="JSON output")
    list_parser.set_defaults(func=cmd_list)

    # Show
    show_parser = subparsers.add_parser("show", help="Show task details")
    show_parser.add_argument("task_id", help="Task ID")
    show_parser.add_argument("--json", action="store_true", help="JSON output")
    show_parser.set_defaults(func=cmd_show)

    # Priority
    priority_parser = subparsers.add_parser("priority", help="Change task priority")
    priority_parser.add_argument("task_id", help="Task ID")
    priority_parser.add_argument("priority", type=int, help="New priority 1-10")
    priority_parser.set_defaults(func=cmd_priority)

    # Cancel
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a task")
    cancel_parser.add_argument("task_id", help="Task ID")
    cancel_parser.add_argument("--reason", default="cancelled by user", help="Reason")
    cancel_parser.set_defaults(func=cmd_cancel)

    # Retry
    retry_parser = subparsers.add_parser("retry", help="Retry a failed task")
    retry_parser.add_argument("task_id", help="Task ID")
    retry_parser.set_defaults(func=cmd_retry)

    # Next
    next_parser = subparsers.add_parser("next", help="Show the next task to run")
    next_parser.set_defaults(func=cmd_next)

    # Pause / resume
    pause_parser = subparsers.add_parser("pause", help="Pause dispatch")
    pause_parser.add_argument("--reason", default="manual pause", help="Reason")
    pause_parser.add_argument("--duration", type=float, default=None, help="Seconds (default: until resumed)")
    pause_parser.set_defaults(func=cmd_pause)

    resume_parser = subparsers.add_parser("resume", help="Resume dispatch")
    resume_parser.set_defaults(func=cmd_resume)

    # Clear
    clear_parser = subparsers.add_parser("clear", help="Remove tasks")
    clear_parser.add_argument("--status", help="Only these statuses (comma-separated)")
    clear_parser.add_argument("--reason", help="Reason")
    clear_parser.add_argument("--yes", "-y", action="store_true", help="Confirm")
    clear_parser.set_defaults(func=cmd_clear)

    # Status
    status_parser = subparsers.add_parser("status", help="Show queue status")
    status_parser.add_argument("--json", action="store_true", help="JSON output")
    status_parser.add_argument("--countdown", action="store_true", help="Follow the pause countdown")
    status_parser.set_defaults(func=cmd_status)

    # Cleanup
    cleanup_parser = subparsers.add_parser("cleanup", help="Archive old tasks and prune backups")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    # Export / import
    export_parser = subparsers.add_parser("export", help="Export tasks")
    export_parser.add_argument("--format", choices=EXPORT_FORMATS, default="json", help="Output format")
    export_parser.add_argument("--output", "-o", help="Output file (default: stdout)")
    _add_filter_arguments(export_parser)
    export_parser.set_defaults(func=cmd_export)

    import_parser = subparsers.add_parser("import", help="Import tasks from a JSON export")
    import_parser.add_argument("file", help="Export file")
    import_parser.add_argument("--mode", choices=IMPORT_MODES, default="merge", help="Import mode")
    import_parser.set_defaults(func=cmd_import)

    # Backups subcommands
    backups_parser = subparsers.add_parser("backups", help="Manage backups")
    backups_subparsers = backups_parser.add_subparsers(dest="backups_command", help="Backups commands")

    backups_list_parser = backups_subparsers.add_parser("list", help="List backups")
    backups_list_parser.set_defaults(func=cmd_backups_list)

    backups_restore_parser = backups_subparsers.add_parser("restore", help="Restore a backup")
    backups_restore_parser.add_argument("backup", nargs="?", help="Backup file (default: latest)")
    backups_restore_parser.set_defaults(func=cmd_backups_restore)

    # Locks subcommands
    locks_parser = subparsers.add_parser("locks", help="Inspect locks")
    locks_subparsers = locks_parser.add_subparsers(dest="locks_command", help="Locks commands")

    locks_list_parser = locks_subparsers.add_parser("list", help="List held locks")
    locks_list_parser.set_defaults(func=cmd_locks_list)

    locks_release_parser = locks_subparsers.add_parser("release", help="Force-release a lock")
    locks_release_parser.add_argument("lock_type", choices=[t.value for t in LockType], help="Lock type")
    locks_release_parser.set_defaults(func=cmd_locks_release)

    # Config subcommands
    config_parser = subparsers.add_parser("config", help="Manage configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")

    config_show_parser = config_subparsers.add_parser("show", help="Show configuration")
    config_show_parser.set_defaults(func=cmd_config_show)

    config_set_parser = config_subparsers.add_parser("set", help="Set a value")
    config_set_parser.add_argument("key", help="Setting name")
    config_set_parser.add_argument("value", help="Value (JSON literals accepted)")
    config_set_parser.set_defaults(func=cmd_config_set)

    config_reset_parser = config_subparsers.add_parser("reset", help="Reset settings to defaults")
    config_reset_parser.set_defaults(func=cmd_config_reset)

    # Run
    run_parser = subparsers.add_parser("run", help="Run the scheduler in the foreground")
    run_parser.add_argument("--once", action="store_true", help="Process a single cycle")
    run_parser.add_argument("--cycles", type=int, default=0, help="Number of cycles (0: until stopped)")
    run_parser.set_defaults(func=cmd_run)

    return parser


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--status", help="Statuses (comma-separated)")
    parser.add_argument("--priority", help="Priority or range, e.g. 1-3")
    parser.add_argument("--type", choices=sorted(TYPE_ALIASES), help="Task type")
    parser.add_argument("--search", help="Free-text match on title/description")
    parser.add_argument("--after", help="Created after (ISO date)")
    parser.add_argument("--before", help="Created before (ISO date)")
    parser.add_argument("--sort", choices=["priority", "created", "status"], default="priority")
    parser.add_argument("--limit", type=int, default=None, help="Maximum results")


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, 'func'):
        parser.print_help()
        return 1

    try:
        return args.func(args)
    except QueueError as e:
        print(f"❌ {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        # Malformed filter input (status names, dates, priority ranges)
        print(f"❌ Invalid input: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
