"""Tests for the failure monitor command line."""

import json
from datetime import datetime, timezone
from unittest import mock

import pytest

from _shared.errors import AuthError
from _shared.monitor import EnvironmentResult, RunSummary

from conftest import load_script

cli = load_script("monitor-flow-failures", "monitor_flow_failures")

CONNECTION = {"tenant_id": "t", "client_id": "c", "client_secret": "s"}
ARGV = [
    "monitor_flow_failures.py",
    "--environment", "env-1",
    "--store-url", "https://org.crm.dynamics.com",
    "--store-table", "cr123_flowfailures",
    "--column-prefix", "cr123",
]


@pytest.fixture
def no_config(monkeypatch):
    monkeypatch.setattr(cli, "resolve_connection", lambda overrides, name=None: {**CONNECTION})
    monkeypatch.setattr(cli, "resolve_monitor_settings",
                        lambda overrides: {"window_minutes": 10, **{k: v for k, v in overrides.items() if v}})


class TestMain:
    def test_missing_config_exits_1(self, no_config, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ["monitor_flow_failures.py"])
        with mock.patch.object(cli, "run_monitor") as run:
            with pytest.raises(SystemExit) as exc:
                cli.main()
        assert exc.value.code == 1
        run.assert_not_called()
        assert "at least one environment is required" in capsys.readouterr().err

    def test_auth_error_exits_1(self, no_config, monkeypatch):
        monkeypatch.setattr("sys.argv", ARGV)
        with mock.patch.object(cli, "run_monitor", side_effect=AuthError("https://service.flow.microsoft.com")):
            with pytest.raises(SystemExit) as exc:
                cli.main()
        assert exc.value.code == 1

    def test_partial_failure_still_succeeds(self, no_config, monkeypatch, capsys):
        monkeypatch.setattr("sys.argv", ARGV)
        summary = RunSummary(
            datetime(2024, 5, 1, 10, tzinfo=timezone.utc),
            [EnvironmentResult("env-1", succeeded=False, error="HTTP 403", failures_observed=0)],
        )
        with mock.patch.object(cli, "run_monitor", return_value=summary) as run:
            cli.main()

        config = run.call_args.args[0]
        assert config.environments == ["env-1"]
        assert config.store_table == "cr123_flowfailures"
        out = json.loads(capsys.readouterr().out)
        assert out["EnvironmentsFailed"] == 1
        assert out["TotalFailuresProcessed"] == 0
