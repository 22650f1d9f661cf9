"""Tests for the pac-based security role assignment."""

import subprocess
from unittest import mock

import pytest

from _shared.errors import CommandError

from conftest import load_script

assign = load_script("assign-security-role", "assign_security_role")

ENVS = [
    {"id": "env-1", "display_name": "Dev"},
    {"id": "env-2", "display_name": "Prod"},
]


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestPacCommand:
    def test_command_line(self):
        assert assign.pac_command("pac", "env-1", "app-id", "System Administrator") == [
            "pac", "admin", "assign-user",
            "--environment", "env-1",
            "--user", "app-id",
            "--role", "System Administrator",
            "--application-user",
        ]


class TestRunPac:
    def test_success_returns_output(self):
        with mock.patch("subprocess.run", return_value=completed(stdout="Connected...\nDone\n")) as run:
            assert assign.run_pac(["pac", "admin"]) == "Connected...\nDone"
        assert run.call_args.kwargs["timeout"] == assign.PAC_TIMEOUT

    def test_nonzero_exit(self):
        with mock.patch("subprocess.run", return_value=completed(returncode=1, stderr="role not found")):
            with pytest.raises(CommandError) as exc:
                assign.run_pac(["pac", "admin", "assign-user"])
        assert exc.value.returncode == 1
        assert "role not found" in str(exc.value)

    def test_error_text_with_zero_exit(self):
        with mock.patch("subprocess.run", return_value=completed(stdout="Error: The user was not found")):
            with pytest.raises(CommandError):
                assign.run_pac(["pac"])

    def test_missing_executable(self):
        with mock.patch("subprocess.run", side_effect=FileNotFoundError("pac")):
            with pytest.raises(CommandError, match="not found"):
                assign.run_pac(["pac"])

    def test_timeout(self):
        with mock.patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["pac"], 300)):
            with pytest.raises(CommandError, match="timed out"):
                assign.run_pac(["pac"])


class TestAssignRole:
    def test_dry_run_runs_nothing(self):
        with mock.patch("subprocess.run") as run:
            results = assign.assign_role(ENVS, "app-id", "Basic User", dry_run=True)
        run.assert_not_called()
        assert [r["status"] for r in results] == ["skipped", "skipped"]
        assert "--environment env-1" in results[0]["message"]

    def test_failure_in_one_environment_does_not_stop_others(self):
        outcomes = [completed(returncode=1, stderr="denied"), completed(stdout="Assigned")]
        with mock.patch("subprocess.run", side_effect=outcomes) as run:
            results = assign.assign_role(ENVS, "app-id", "Basic User", pac="/usr/bin/pac")

        assert run.call_count == 2
        assert run.call_args_list[1].args[0][0] == "/usr/bin/pac"
        assert [(r["environment_id"], r["status"]) for r in results] == [("env-1", "failed"), ("env-2", "assigned")]
        assert results[1]["message"] == "Assigned"
        assert "denied" in results[0]["message"]


class TestResolveEnvironments:
    def test_explicit_ids_skip_admin_api(self):
        args = mock.Mock(environment_id=["a", "b"])
        with mock.patch.object(assign, "list_environments") as listing:
            envs = assign.resolve_environments(args)
        listing.assert_not_called()
        assert [e["id"] for e in envs] == ["a", "b"]

    def test_discovered_environments_need_dataverse(self):
        args = mock.Mock(environment_id=None)
        discovered = [{"id": "a", "instance_url": "https://a.crm.dynamics.com"}, {"id": "b", "instance_url": ""}]
        with mock.patch.object(assign, "resolve_auth_args", return_value={}), \
                mock.patch.object(assign, "create_credential"), \
                mock.patch.object(assign, "token_for"), \
                mock.patch.object(assign, "list_environments", return_value=discovered):
            envs = assign.resolve_environments(args)
        assert [e["id"] for e in envs] == ["a"]
