"""End-to-end flow through the queuectl CLI."""

import json

import pytest
from click.testing import CliRunner

from conftest import Recorder
from handlers import HandlerRegistry
from models import JobType
from queuectl import cli


@pytest.fixture
def cli_registry():
    registry = HandlerRegistry()
    registry.register(JobType.EMAIL, Recorder(output={"sent": True}))
    registry.register(JobType.GENERIC, Recorder(failures=100))
    return registry


@pytest.fixture
def run_cmd(db_path, cli_registry):
    """Runs a queuectl command against a fresh database, like a new process would."""
    runner = CliRunner()

    def run(*args, expect_ok=True):
        result = runner.invoke(cli, ["--db", db_path, *args], obj={"registry": cli_registry})
        if expect_ok:
            assert result.exit_code == 0, result.output
        return result

    return run


def test_core_flow(run_cmd):
    # 1. Initialize and configure
    assert "initialized" in run_cmd("initdb").output
    run_cmd("config", "set", "max-retries", "2")
    assert "max-retries = 2" in run_cmd("config", "get", "max-retries").output

    # 2. Enqueue one job that passes and one that always fails
    run_cmd("enqueue", "email", json.dumps({"to": "a@x.com", "template": "welcome"}), "--id", "job-pass")
    run_cmd("enqueue", "generic", json.dumps({"name": "explode"}), "--id", "job-fail")

    status_output = run_cmd("status").output
    assert "PENDING: 2" in status_output

    # 3. Drain the queue: one success plus two failed attempts
    assert "processed 3 job(s)" in run_cmd("worker", "run", "--burst").output

    # 4. Check final states
    final_status = run_cmd("status").output
    assert "SUCCEEDED: 1" in final_status
    assert "FAILED: 1" in final_status
    assert "Total Failed Attempts: 2" in final_status

    job_output = run_cmd("status", "job-pass").output
    assert "State: succeeded" in job_output
    assert '"sent": true' in job_output

    # 5. The failed job is in the dead list and can be re-submitted
    dlq_output = run_cmd("dlq", "list").output
    assert "job-fail" in dlq_output
    assert "Attempts: 2/2" in dlq_output

    assert "re-submitted" in run_cmd("dlq", "retry", "job-fail").output
    assert "PENDING: 1" in run_cmd("status").output


def test_enqueue_rejects_bad_input(run_cmd):
    run_cmd("initdb")

    result = run_cmd("enqueue", "email", "{not json", expect_ok=False)
    assert result.exit_code == 1
    assert "Invalid JSON payload" in result.output

    result = run_cmd("enqueue", "vectorization", json.dumps({"name": "reindex"}), expect_ok=False)
    assert result.exit_code == 1
    assert "Invalid payload for job type 'vectorization'" in result.output

    result = run_cmd("enqueue", "import", json.dumps({"source": "/tmp/a.csv"}), expect_ok=False)
    assert result.exit_code == 1
    assert "No handler registered" in result.output

    result = run_cmd("enqueue", "sms", "{}", expect_ok=False)
    assert result.exit_code == 2


def test_cancel_and_list(run_cmd):
    run_cmd("enqueue", "email", json.dumps({"to": "a@x.com", "template": "welcome"}), "--id", "job-1")

    assert "canceled" in run_cmd("cancel", "job-1").output
    assert "job-1" in run_cmd("list", "--state", "canceled").output
    assert "No jobs found" in run_cmd("list", "--state", "pending").output

    result = run_cmd("cancel", "job-1", expect_ok=False)
    assert result.exit_code == 1
    assert "only pending jobs can be canceled" in result.output

    result = run_cmd("status", "missing", expect_ok=False)
    assert "not found" in result.output


def test_config_validation(run_cmd):
    result = run_cmd("config", "set", "max-retries", "0", expect_ok=False)
    assert result.exit_code == 1
    run_cmd("config", "set", "backoff-base", "0")

    result = run_cmd("config", "set", "colour", "3", expect_ok=False)
    assert result.exit_code == 2


def test_purge(run_cmd):
    run_cmd("enqueue", "email", json.dumps({"to": "a@x.com", "template": "welcome"}))
    run_cmd("worker", "run", "--burst")

    assert "Purged 0 job(s)" in run_cmd("purge").output
    assert "Purged 1 job(s)" in run_cmd("purge", "--older-than=-1").output
    assert "SUCCEEDED: 0" in run_cmd("status").output
