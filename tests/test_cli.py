import csv
import io

import pytest

import agent.cli as cli
from common.errors import RemoteUnavailable
from conftest import FakeJobClient, jobs_for
from agent.pipelines import fleet


def run_cli(argv):
    out, err = io.StringIO(), io.StringIO()
    code = cli.main(argv, stdout=out, stderr=err)
    return code, out.getvalue(), err.getvalue()


@pytest.fixture
def fake(monkeypatch):
    holder = {}

    def install(**kwargs):
        client = FakeJobClient(**kwargs)
        monkeypatch.setattr(cli, "build_client", lambda opts: client)
        holder["client"] = client
        return client

    return install


@pytest.mark.parametrize("command", ["create", "delete", "execute", "status"])
def test_missing_number_exits_1(command):
    code, out, err = run_cli([command])
    assert code == 1
    assert "Parameter 'number' was expected, but not found." in err


@pytest.mark.parametrize("argv,message", [
    (["create", "-n", "0"], "'number' must be >= 1"),
    (["create", "-n", "many"], "'number' must be a number"),
    (["execute", "-n", "5", "-f", "101"], "'failure-rate' must be <= 100"),
    (["execute", "-n", "5", "-m", "-1"], "'min-delay' must be >= 0"),
    (["execute", "-n", "5", "-m", "500", "-x", "100"], "exceeds 'max-delay'"),
    (["--rate-limit", "0", "status", "-n", "5"], "'rate-limit' must be >= 1"),
    (["--rate-interval", "0", "status", "-n", "5"], "'rate-interval' must be > 0"),
])
def test_invalid_options_exit_1_before_any_remote_call(fake, argv, message):
    client = fake()
    code, out, err = run_cli(argv)
    assert code == 1 and message in err
    assert client.calls == []


def test_no_command_prints_help():
    code, out, err = run_cli([])
    assert code == 1 and "usage: jobs-agent" in err


def test_execute_reports_counts_and_writes_csv(fake, tmp_path):
    client = fake(jobs=jobs_for(fleet(10)))
    path = tmp_path / "run.csv"
    code, out, err = run_cli(["--rate-limit", "1000", "--csv", str(path),
                              "execute", "-n", "10", "-f", "30", "-m", "0", "-x", "0"])

    assert code == 0, err
    assert "Setting a failure rate of 3 thing(s)." in out
    assert "Completion statistics (7 Success, 3 Failures - Overall (10/10)" in out
    assert "The job execution has been performed on '10' device(s)." in out
    assert client.closed
    with open(path) as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 10
    assert sum(r["outcome"] == "FAILED" for r in rows) == 3


def test_endpoint_failure_exits_1(fake):
    fake(endpoint_error=RemoteUnavailable("describe_endpoint: HTTP 403", op="resolve_endpoint"))
    code, out, err = run_cli(["execute", "-n", "3"])
    assert code == 1
    assert "could not resolve the jobs endpoint" in err


def test_partial_failure_lists_devices_and_exits_1(fake):
    fake(jobs=jobs_for(fleet(4)), fail_fetch={"jobs-thing-1"})
    code, out, err = run_cli(["execute", "-n", "4", "-m", "0", "-x", "0"])
    assert code == 1
    assert "1 of 4 thing(s) failed" in err
    assert "jobs-thing-1 [fetch]" in err


def test_create_and_delete(fake):
    client = fake()
    code, out, _ = run_cli(["create", "-n", "3"])
    assert code == 0 and "All '3' thing(s) have been created" in out
    assert client.registered == {"jobs-thing-0", "jobs-thing-1", "jobs-thing-2"}


def test_custom_prefix(fake):
    client = fake()
    assert run_cli(["--prefix", "bench", "create", "-n", "2"])[0] == 0
    assert client.registered == {"bench-0", "bench-1"}


def test_status_renders_table(fake):
    fake(jobs=jobs_for(fleet(1)))
    code, out, _ = run_cli(["status", "-n", "2"])
    assert code == 0
    assert "jobs-thing-0" in out and "job-1" in out
    assert "No Job Scheduled" in out


def test_skip_unavailable_turns_fetch_failures_into_no_job(fake):
    fake(jobs=jobs_for(fleet(4)), fail_fetch={"jobs-thing-1"})
    code, out, err = run_cli(["--skip-unavailable", "execute", "-n", "4", "-m", "0", "-x", "0"])
    assert code == 0, err
    assert "(3 Success, 0 Failures - Overall (3/4), 3 job(s) fetched)" in out


@pytest.mark.parametrize("argv,message", [
    (["--backend", "gcp", "status", "-n", "1"], "invalid choice: 'gcp'"),
    (["create", "-n", "1", "--colour"], "unrecognized arguments: --colour"),
    (["reboot", "-n", "1"], "invalid choice: 'reboot'"),
])
def test_argument_errors_exit_1(fake, argv, message):
    client = fake()
    code, out, err = run_cli(argv)
    assert code == 1 and message in err and err.startswith("✖ fatal jobs-agent")
    assert client.calls == []
