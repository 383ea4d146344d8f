"""Tests for resume_queue.cli module."""

import csv
import io
import json
import pytest
from unittest.mock import patch

from resume_queue.cli import _format_duration, build_parser, main
from resume_queue.models import TaskStatus


@pytest.fixture
def cli(temp_dir, capsys):
    """Run the CLI against a temp config and queue; returns (exit_code, stdout, stderr)."""
    config_file = temp_dir / "config.json"
    queue_dir = temp_dir / "queue"

    def run(*args):
        exit_code = main(["--config", str(config_file), "--queue-dir", str(queue_dir), *args])
        captured = capsys.readouterr()
        return exit_code, captured.out, captured.err

    return run


def added_id(out):
    return out.strip().rsplit(": ", 1)[1]


class TestParser:
    """Tests for argument parsing."""

    def test_no_command_prints_help(self, cli):
        """Test that running without a command returns 1."""
        exit_code, out, _ = cli()
        assert exit_code == 1
        assert "usage" in out

    def test_version(self, capsys):
        """Test the --version flag."""
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert "resume-queue" in capsys.readouterr().out

    def test_invalid_type(self):
        """Test that an unknown task type is rejected by argparse."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["add", "epic", "x"])


class TestTaskCommands:
    """Tests for add/list/show/priority/cancel/retry/remove/next."""

    def test_add_custom_and_list(self, cli):
        """Test adding a custom task and listing it."""
        exit_code, out, _ = cli("add", "custom", "Fix the flaky login test", "-p", "2")
        assert exit_code == 0
        task_id = added_id(out)
        assert task_id.startswith("custom-")

        exit_code, out, _ = cli("list")
        assert exit_code == 0
        assert task_id in out
        assert "[P2]" in out

    def test_add_issue_with_options(self, cli):
        """Test adding an issue task with explicit id, timeout and context flag."""
        exit_code, out, _ = cli(
            "add", "issue", "42", "--id", "issue-42", "--timeout", "120",
            "--max-retries", "1", "--keep-context", "--label", "bug",
        )
        assert exit_code == 0

        exit_code, out, _ = cli("show", "issue-42", "--json")
        task = json.loads(out)
        assert task["type_metadata"]["issue_number"] == 42
        assert task["type_metadata"]["labels"] == ["bug"]
        assert task["timeout_seconds"] == 120
        assert task["max_retries"] == 1
        assert task["clear_context"] is False

    def test_add_workflow(self, cli):
        """Test adding a workflow with a template."""
        exit_code, out, _ = cli("add", "workflow", "issue-merge", "--issue", "7", "--id", "wf-7")
        assert exit_code == 0
        exit_code, out, _ = cli("show", "wf-7")
        assert "issue-merge [dev]" in out
        assert "steps" in out

    def test_add_invalid(self, cli):
        """Test that invalid input reports an error and exits 1."""
        exit_code, _, err = cli("add", "issue", "not-a-number")
        assert exit_code == 1
        assert "issue_number" in err

        exit_code, _, err = cli("add", "custom", "x", "-p", "11")
        assert exit_code == 1
        assert "❌" in err

    def test_list_json_and_filters(self, cli):
        """Test JSON listing with status and priority filters."""
        _, out, _ = cli("add", "custom", "high", "-p", "1")
        high = added_id(out)
        _, out, _ = cli("add", "custom", "low", "-p", "9")
        low = added_id(out)
        cli("cancel", low)

        _, out, _ = cli("list", "--json", "--priority", "1-3")
        assert [t["id"] for t in json.loads(out)] == [high]

        _, out, _ = cli("list", "--json", "--status", "failed")
        assert [t["id"] for t in json.loads(out)] == [low]

    def test_list_bad_status(self, cli):
        """Test that an unknown status name exits 1."""
        exit_code, _, err = cli("list", "--status", "sleeping")
        assert exit_code == 1
        assert "Invalid input" in err

    def test_empty_list(self, cli):
        """Test listing an empty queue."""
        exit_code, out, _ = cli("list")
        assert exit_code == 0
        assert "No tasks" in out

    def test_show_missing(self, cli):
        """Test that an unknown id exits 1."""
        exit_code, _, err = cli("show", "nope")
        assert exit_code == 1
        assert "Task not found" in err

    def test_priority_cancel_retry_remove(self, cli):
        """Test the per-task commands end to end."""
        _, out, _ = cli("add", "custom", "something")
        task_id = added_id(out)

        assert cli("priority", task_id, "1")[0] == 0
        assert cli("cancel", task_id, "--reason", "later")[0] == 0
        exit_code, out, _ = cli("retry", task_id)
        assert exit_code == 0
        assert "retry 1/3" in out

        exit_code, out, _ = cli("show", task_id, "--json")
        task = json.loads(out)
        assert task["priority"] == 1
        assert task["status"] == TaskStatus.PENDING.value

        assert cli("remove", task_id)[0] == 0
        assert "No tasks" in cli("list")[1]

    def test_illegal_transition(self, cli):
        """Test that retrying a pending task is refused."""
        _, out, _ = cli("add", "custom", "fresh")
        exit_code, _, err = cli("retry", added_id(out))
        assert exit_code == 1
        assert "Illegal transition" in err

    def test_next(self, cli):
        """Test showing the next task."""
        assert "No eligible tasks" in cli("next")[1]
        cli("add", "custom", "later", "-p", "8")
        _, out, _ = cli("add", "custom", "first", "-p", "2")
        assert added_id(out) in cli("next")[1]


class TestQueueCommands:
    """Tests for pause/resume/clear/status/cleanup/run."""

    def test_pause_resume(self, cli):
        """Test pausing and resuming."""
        exit_code, out, _ = cli("pause", "--reason", "deploy", "--duration", "90")
        assert exit_code == 0
        assert "1m 30s" in out

        _, out, _ = cli("status")
        assert "Paused: deploy" in out

        assert "Queue resumed" in cli("resume")[1]
        assert "was not paused" in cli("resume")[1]

    def test_clear_requires_confirmation(self, cli):
        """Test that clear refuses without --yes."""
        cli("add", "custom", "x")
        exit_code, out, _ = cli("clear")
        assert exit_code == 1
        assert "--yes" in out

        exit_code, out, _ = cli("clear", "--yes")
        assert exit_code == 0
        assert "Cleared 1 task(s)" in out

    def test_status_json(self, cli):
        """Test machine-readable status."""
        cli("add", "custom", "x")
        exit_code, out, _ = cli("status", "--json")
        status = json.loads(out)
        assert exit_code == 0
        assert status["counts"]["pending"] == 1
        assert status["health"] == "healthy"
        assert status["paused"] is False

    def test_cleanup(self, cli):
        """Test that cleanup reports its work."""
        exit_code, out, _ = cli("cleanup")
        assert exit_code == 0
        assert "Archived tasks:  0" in out

    def test_run_once(self, cli, fake_executor):
        """Test a single foreground cycle."""
        cli("add", "custom", "x")
        with patch("resume_queue.daemon.create_executor", return_value=fake_executor):
            exit_code, out, _ = cli("run", "--once")
        assert exit_code == 0
        assert "completed" in out
        assert len(fake_executor.calls) == 1

    def test_run_cycles(self, cli, fake_executor):
        """Test a bounded foreground run."""
        cli("add", "custom", "a")
        cli("add", "custom", "b")
        with patch("resume_queue.daemon.create_executor", return_value=fake_executor):
            exit_code, out, _ = cli("run", "--cycles", "5")
        assert exit_code == 0
        assert len(fake_executor.calls) == 2
        assert "Ran 3 cycle(s)" in out


class TestDataCommands:
    """Tests for export/import/backups."""

    def test_export_import_round_trip(self, cli, temp_dir):
        """Test exporting to a file and importing into a cleared queue."""
        cli("add", "custom", "keep me", "--id", "keep-1")
        export_file = temp_dir / "export.json"

        assert cli("export", "--output", str(export_file))[0] == 0
        cli("clear", "--yes")

        exit_code, out, _ = cli("import", str(export_file), "--mode", "validate")
        assert exit_code == 0
        assert "Valid: 1" in out

        exit_code, out, _ = cli("import", str(export_file))
        assert exit_code == 0
        assert "Imported 1 new" in out
        assert "keep-1" in cli("list")[1]

    def test_export_csv_stdout(self, cli):
        """Test CSV export to stdout."""
        cli("add", "custom", "csv row", "--id", "row-1")
        _, out, _ = cli("export", "--format", "csv")
        rows = list(csv.reader(io.StringIO(out)))
        assert rows[1][0] == "row-1"

    def test_import_missing_file(self, cli, temp_dir):
        """Test that importing a missing file exits 1."""
        exit_code, _, err = cli("import", str(temp_dir / "missing.json"))
        assert exit_code == 1
        assert "not found" in err

    def test_backups_list_and_restore(self, cli):
        """Test listing backups and restoring the latest."""
        assert "No backups" in cli("backups", "list")[1]

        cli("add", "custom", "one")
        cli("add", "custom", "two")
        _, out, _ = cli("backups", "list")
        assert "Backups (1)" in out

        exit_code, out, _ = cli("backups", "restore")
        assert exit_code == 0
        assert "Restored 1 task(s)" in out


class TestAdminCommands:
    """Tests for locks and config."""

    def test_locks_list_empty(self, cli):
        """Test that no locks are reported on an idle queue."""
        assert "No locks held" in cli("locks", "list")[1]

    def test_locks_release_not_held(self, cli):
        """Test that releasing a free lock exits 1."""
        exit_code, out, _ = cli("locks", "release", "write")
        assert exit_code == 1
        assert "not released" in out

    def test_config_set_show_reset(self, cli):
        """Test updating, showing and resetting settings."""
        exit_code, out, _ = cli("config", "set", "default_priority", "2")
        assert exit_code == 0

        _, out, _ = cli("config", "show")
        assert '"default_priority": 2' in out

        _, out, _ = cli("add", "custom", "uses default")
        task_id = added_id(out)
        assert json.loads(cli("show", task_id, "--json")[1])["priority"] == 2

        assert cli("config", "reset")[0] == 0
        assert '"default_priority": 5' in cli("config", "show")[1]

    def test_config_set_invalid(self, cli):
        """Test that invalid settings exit 1."""
        exit_code, _, err = cli("config", "set", "retry_placement", "middle")
        assert exit_code == 1
        assert "Invalid setting value" in err

        exit_code, _, err = cli("config", "set", "nonsense", "1")
        assert exit_code == 1
        assert "Unknown setting" in err

    def test_config_set_bool(self, cli):
        """Test JSON literal parsing for booleans."""
        assert cli("config", "set", "clear_context_default", "false")[0] == 0
        assert '"clear_context_default": false' in cli("config", "show")[1]


class TestFormatDuration:
    """Tests for _format_duration."""

    @pytest.mark.parametrize("seconds,expected", [
        (None, "until resumed"),
        (5, "5s"),
        (90, "1m 30s"),
        (7265, "2h 01m 05s"),
    ])
    def test_format(self, seconds, expected):
        """Test duration rendering."""
        assert _format_duration(seconds) == expected
