"""
Reconciliation worker command line.
"""
import json
import logging

import pytest

from cardhub.features.reconciliation.sweeps import ReconciliationSweeps
from cardhub.workers.reconcile import main


def _printed_report(out):
    # Log lines share stdout; the report is the trailing JSON array
    lines = out.splitlines()
    start = max(i for i, line in enumerate(lines) if line == "[")
    return json.loads("\n".join(lines[start:]))


@pytest.fixture(autouse=True)
def restore_logging():
    logger = logging.getLogger("cardhub")
    handlers, level = logger.handlers[:], logger.level
    yield
    logger.handlers = handlers
    logger.setLevel(level)


@pytest.fixture
def database_file(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cardhub.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)
    return url


def test_once_runs_a_single_job(database_file, capsys):
    exit_code = main(["--once", "--job", "boosts", "--create-tables"])

    assert exit_code == 0
    reports = _printed_report(capsys.readouterr().out)
    assert reports == [{"job": "boosts", "status": "success", "processed": 0, "failed": 0}]


def test_once_all_runs_every_job(database_file, capsys):
    exit_code = main(["--once", "--create-tables", "--seed-plans"])

    assert exit_code == 0
    reports = _printed_report(capsys.readouterr().out)
    assert [r["job"] for r in reports] == ["subscriptions", "boosts", "plans", "usage_reset"]
    assert all(r["status"] == "success" for r in reports)


def _unreachable(self):
    raise RuntimeError("catalog unreachable")


def test_failed_run_sets_exit_code(database_file, capsys, monkeypatch):
    monkeypatch.setattr(ReconciliationSweeps, "sweep_plans", _unreachable)
    assert main(["--once", "--job", "plans", "--create-tables"]) == 1
    reports = _printed_report(capsys.readouterr().out)
    assert reports[0]["status"] == "failed"


def test_mode_is_required():
    with pytest.raises(SystemExit):
        main(["--job", "boosts"])


def test_unknown_job_is_rejected():
    with pytest.raises(SystemExit):
        main(["--once", "--job", "nightly"])
