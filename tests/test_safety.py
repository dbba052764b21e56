"""Tests for command and file-edit severity classification."""

import pytest

from ollagent.safety import (
    CommandSafety,
    FileSensitivity,
    Severity,
    compute_command_approval,
    compute_file_edit_approval,
    file_severity,
)


class TestCommandClassification:
    def test_recursive_delete_is_critical(self):
        assert CommandSafety().classify("rm -rf build", "linux").severity == Severity.CRITICAL

    def test_sudo_is_high(self):
        assert CommandSafety().classify("sudo apt install jq", "linux").severity == Severity.HIGH

    def test_destructive_git_is_medium(self):
        assert CommandSafety().classify("git reset --hard HEAD~1", "linux").severity == Severity.MEDIUM

    def test_harmless_command(self):
        match = CommandSafety().classify("ls -la", "linux")
        assert match.severity == Severity.NONE
        assert match.pattern is None

    def test_platform_specific_patterns(self):
        assert CommandSafety().classify("rm -rf build", "win32").severity == Severity.NONE
        assert CommandSafety().classify("rd /s build", "win32").severity == Severity.CRITICAL

    def test_most_severe_match_wins(self):
        assert CommandSafety().classify("sudo rm -rf /var/tmp/x", "linux").severity == Severity.CRITICAL


class TestCommandApproval:
    def test_requires_approval_without_auto(self):
        decision = compute_command_approval("ls -la", auto_approve=False, platform="linux")
        assert decision.requires_approval
        assert decision.severity == Severity.MEDIUM

    def test_auto_approve_skips_ordinary_commands(self):
        assert not compute_command_approval("pytest -q", auto_approve=True, platform="linux").requires_approval

    def test_auto_approve_skips_high_commands(self):
        assert not compute_command_approval("sudo ls", auto_approve=True, platform="linux").requires_approval

    def test_critical_always_requires_approval(self):
        decision = compute_command_approval("rm -rf /", auto_approve=True, platform="linux")
        assert decision.requires_approval
        assert decision.severity == Severity.CRITICAL
        assert decision.reason == "Recursive or forced deletion"


class TestFileSensitivity:
    def test_ordinary_file_is_auto_approvable(self):
        assert FileSensitivity().evaluate("src/main.py") == (True, "**/*")

    def test_env_file_is_sensitive(self):
        approvable, pattern = FileSensitivity().evaluate("config/.env.local")
        assert not approvable
        assert pattern == "**/.env*"

    def test_last_match_wins(self):
        patterns = {"**/*.json": False, "**/safe.json": True}
        assert FileSensitivity(patterns).evaluate("data/safe.json")[0]
        assert not FileSensitivity(patterns).evaluate("data/other.json")[0]

    def test_windows_separators(self):
        assert not FileSensitivity().evaluate("app\\package.json")[0]

    def test_unmatched_path_defaults_to_approvable(self):
        assert FileSensitivity({"docs/**": False}).evaluate("src/a.py") == (True, None)


class TestFileSeverity:
    def test_levels(self):
        assert file_severity(".env") == Severity.CRITICAL
        assert file_severity("certs/server.pem") == Severity.CRITICAL
        assert file_severity("package.json") == Severity.HIGH
        assert file_severity(".github/workflows/ci.yml") == Severity.HIGH
        assert file_severity("src/app.py") == Severity.MEDIUM


class TestFileEditApproval:
    def test_ordinary_file_needs_no_approval(self):
        assert not compute_file_edit_approval("src/app.py", None, auto_approve=False).requires_approval

    def test_sensitive_file_needs_approval(self):
        decision = compute_file_edit_approval("package.json", None, auto_approve=False)
        assert decision.requires_approval
        assert decision.severity == Severity.HIGH
        assert "package.json" in decision.reason

    def test_auto_approve_covers_non_critical_sensitive_files(self):
        assert not compute_file_edit_approval("package.json", None, auto_approve=True).requires_approval

    def test_critical_file_always_needs_approval(self):
        decision = compute_file_edit_approval(".env", None, auto_approve=True)
        assert decision.requires_approval
        assert decision.severity == Severity.CRITICAL

    @pytest.mark.parametrize("path", ["config/secrets.yaml", "deploy/id_rsa", "certs/server.pem"])
    @pytest.mark.parametrize("auto_approve", [False, True])
    def test_critical_path_without_sensitive_pattern_needs_approval(self, path, auto_approve):
        decision = compute_file_edit_approval(path, None, auto_approve=auto_approve)
        assert decision.requires_approval
        assert decision.severity == Severity.CRITICAL
        assert decision.reason

    def test_critical_path_ignores_permissive_patterns(self):
        decision = compute_file_edit_approval(".env", {"**/*": True}, auto_approve=True)
        assert decision.requires_approval
