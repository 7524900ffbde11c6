from __future__ import annotations

import json
from datetime import date
from unittest.mock import MagicMock

import pytest

from app.core.errors import InvalidTransition, StartupConfigInvalid
from scripts import oddyssey_admin


def test_parse_select_with_dry_run():
    args = oddyssey_admin.parse_args(["select", "--date", "2025-01-15", "--dry-run"])

    assert args.command == "select"
    assert args.date == date(2025, 1, 15)
    assert args.dry_run is True


def test_parse_rejects_bad_date():
    with pytest.raises(SystemExit):
        oddyssey_admin.parse_args(["select", "--date", "15/01/2025"])


@pytest.mark.parametrize(
    ("argv", "method", "call_args", "call_kwargs"),
    [
        (["fetch-fixtures"], "fetch_fixtures", (), {}),
        (["select", "--date", "2025-01-15"], "select", (date(2025, 1, 15),), {"dry_run": False}),
        (["fetch-results", "--cycle", "4"], "fetch_results", (4,), {}),
        (["resolve", "--cycle", "4"], "resolve", (4,), {}),
        (["evaluate", "--cycle", "4"], "evaluate", (4,), {}),
        (["cancel", "--cycle", "4", "--reason", "provider outage"], "cancel", (4, "provider outage"), {}),
        (["index-slips"], "index_slips", (), {}),
        (["monitor"], "monitor", (), {}),
    ],
)
def test_dispatch_routes_each_command(argv, method, call_args, call_kwargs):
    triggers = MagicMock()

    result = oddyssey_admin.dispatch(triggers, oddyssey_admin.parse_args(argv))

    getattr(triggers, method).assert_called_once_with(*call_args, **call_kwargs)
    assert result is getattr(triggers, method).return_value


@pytest.fixture
def cli(monkeypatch):
    settings = MagicMock()
    context = MagicMock()
    triggers = MagicMock()
    monkeypatch.setattr(oddyssey_admin, "get_settings", lambda: settings)
    monkeypatch.setattr(oddyssey_admin.EngineContext, "build", MagicMock(return_value=context))
    monkeypatch.setattr(oddyssey_admin, "AdminTriggers", MagicMock(return_value=triggers))
    return settings, context, triggers


def test_main_prints_result_and_closes_context(cli, capsys):
    _, context, triggers = cli
    triggers.monitor.return_value = {"healthy": True, "findings": []}

    assert oddyssey_admin.main(["monitor"]) == 0

    assert json.loads(capsys.readouterr().out) == {"findings": [], "healthy": True}
    context.close.assert_called_once()


def test_main_reports_engine_errors_with_exit_code_one(cli, capsys):
    _, context, triggers = cli
    triggers.cancel.side_effect = InvalidTransition("cycle 4 already has slips")

    assert oddyssey_admin.main(["cancel", "--cycle", "4", "--reason", "x"]) == 1

    assert json.loads(capsys.readouterr().out)["error"] == "invalid_transition"
    context.close.assert_called_once()


def test_main_exits_two_on_invalid_configuration(cli):
    settings, _, triggers = cli
    settings.validate_runtime.side_effect = StartupConfigInvalid("TZ must be UTC")

    assert oddyssey_admin.main(["monitor"]) == 2
    triggers.monitor.assert_not_called()


def test_run_command_starts_the_engine(cli, monkeypatch):
    _, context, _ = cli
    run_engine = MagicMock()
    monkeypatch.setattr(oddyssey_admin, "run_engine", run_engine)

    assert oddyssey_admin.main(["run"]) == 0
    run_engine.assert_called_once_with(context)
