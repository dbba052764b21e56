"""Tests for the command-line entry point."""

from pathlib import Path

import pytest
from click.testing import CliRunner

import ollagent.config as config_mod
import ollagent.runner as runner_mod
from ollagent.checkpoints import CheckpointManager
from ollagent.cli import main
from ollagent.session import SessionStore


@pytest.fixture(autouse=True)
def no_user_config(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(config_mod, "CONFIG_FILE", tmp_path / "missing.toml")


@pytest.fixture
def cli():
    return CliRunner()


@pytest.fixture
def changed_checkpoint(tmp_workdir: Path, sample_file: Path) -> tuple[str, str]:
    """A session whose checkpoint holds one edit to hello.py. Returns (session_id, checkpoint_id)."""
    store = SessionStore()
    session = store.create_session(title="edit greeting")
    manager = CheckpointManager(store, tmp_workdir)
    checkpoint_id = manager.create_checkpoint(session.id)
    manager.snapshot_before_edit(checkpoint_id, sample_file)
    sample_file.write_text("changed\n")
    return session.id, checkpoint_id


class TestListing:
    def test_sessions_empty(self, cli):
        result = cli.invoke(main, ["sessions"])
        assert result.exit_code == 0
        assert "No sessions." in result.output

    def test_sessions(self, cli, changed_checkpoint):
        session_id, _ = changed_checkpoint
        result = cli.invoke(main, ["sessions"])
        assert result.exit_code == 0
        assert session_id in result.output

    def test_checkpoints(self, cli, changed_checkpoint):
        session_id, checkpoint_id = changed_checkpoint
        result = cli.invoke(main, ["checkpoints", session_id])
        assert result.exit_code == 0
        assert checkpoint_id in result.output
        assert "pending" in result.output


class TestCheckpointCommands:
    def test_keep_all(self, cli, tmp_workdir, sample_file, changed_checkpoint):
        _, checkpoint_id = changed_checkpoint
        result = cli.invoke(main, ["-d", str(tmp_workdir), "keep", checkpoint_id])
        assert result.exit_code == 0
        assert f"{checkpoint_id}: kept" in result.output
        assert sample_file.read_text() == "changed\n"

    def test_keep_unknown_path(self, cli, tmp_workdir, changed_checkpoint):
        _, checkpoint_id = changed_checkpoint
        result = cli.invoke(main, ["-d", str(tmp_workdir), "keep", checkpoint_id, "nope.py"])
        assert result.exit_code == 1
        assert "No pending change for nope.py" in result.output

    def test_undo_all(self, cli, tmp_workdir, sample_file, changed_checkpoint):
        _, checkpoint_id = changed_checkpoint
        result = cli.invoke(main, ["-d", str(tmp_workdir), "undo", checkpoint_id])
        assert result.exit_code == 0
        assert "Reverted hello.py" in result.output
        assert sample_file.read_text().startswith("def greet")

    def test_undo_unknown_checkpoint(self, cli, tmp_workdir):
        result = cli.invoke(main, ["-d", str(tmp_workdir), "undo", "ckpt_missing"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_diff(self, cli, tmp_workdir, changed_checkpoint):
        _, checkpoint_id = changed_checkpoint
        result = cli.invoke(main, ["-d", str(tmp_workdir), "diff", checkpoint_id])
        assert result.exit_code == 0
        assert "+changed" in result.output

    def test_missing_working_dir(self, cli, tmp_path):
        result = cli.invoke(main, ["-d", str(tmp_path / "absent"), "sessions"])
        assert result.exit_code == 1
        assert "Directory not found" in result.output


class TestExport:
    def test_export_to_file(self, cli, tmp_path, changed_checkpoint):
        session_id, _ = changed_checkpoint
        store = SessionStore()
        store.add_message(session_id, "user", "Change the greeting")
        store.add_message(session_id, "assistant", "Changed it.")
        target = tmp_path / "out.md"

        result = cli.invoke(main, ["export", session_id, "-o", str(target)])
        assert result.exit_code == 0
        assert str(target) in result.output
        text = target.read_text()
        assert "## User\n" in text
        assert "Changed it." in text

    def test_export_unknown_session(self, cli):
        result = cli.invoke(main, ["export", "session_missing"])
        assert result.exit_code == 1
        assert "Session not found" in result.output


class TestRun:
    def test_run_prints_answer_and_session(self, cli, tmp_workdir, scripted_llm, monkeypatch):
        llm = scripted_llm(["The parser is in parse.py. [TASK_COMPLETE]"])
        monkeypatch.setattr(runner_mod, "LLMClient", lambda host: llm)

        result = cli.invoke(main, ["-d", str(tmp_workdir), "run", "--no-think", "Explain the parser"])
        assert result.exit_code == 0, result.output
        assert "The parser is in parse.py." in result.output
        assert "Session: session_" in result.output
        assert llm.thinks == [False]
        [session] = SessionStore().list_sessions()
        assert session.title == "Explain the parser"

    def test_run_aborts_with_exit_code(self, cli, tmp_workdir, scripted_llm, monkeypatch):
        llm = scripted_llm([ConnectionError("backend down")])
        monkeypatch.setattr(runner_mod, "LLMClient", lambda host: llm)

        result = cli.invoke(main, ["-d", str(tmp_workdir), "run", "Explain the parser"])
        assert result.exit_code == 1
        assert "backend down" in result.output

    def test_run_unknown_session(self, cli, tmp_workdir, scripted_llm, monkeypatch):
        monkeypatch.setattr(runner_mod, "LLMClient", lambda host: scripted_llm([]))
        result = cli.invoke(main, ["-d", str(tmp_workdir), "run", "--session", "session_missing", "hi"])
        assert result.exit_code == 1
        assert "Session not found" in result.output
