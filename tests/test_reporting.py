import io
import json

import pandas as pd

import analyze_results
from agent.models import DeviceContext, DeviceState, FleetRun, Job, JobStatus, RunStatistics
from agent.progress import ConsoleReporter, progress_text, status_table
from common.util import Metrics, json_log
from tools import enqueue_jobs


def make_run():
    devices = [
        DeviceContext("t-0", DeviceState.DONE, Job("j1", JobStatus.SUCCEEDED, {"step": 2}), outcome=JobStatus.SUCCEEDED,
                      attempted=True, latency_ms=120),
        DeviceContext("t-1", DeviceState.NO_JOB, attempted=True, latency_ms=15),
        DeviceContext("t-2", DeviceState.FAILED_FATAL, stage="fetch", error="fetch: HTTP 503", latency_ms=40),
    ]
    return FleetRun("status", RunStatistics(total=3, attempted=2, succeeded=1), devices, [])


def test_status_table_rows():
    df = status_table(make_run())
    assert list(df["Thing"]) == ["t-0", "t-1", "t-2"]
    assert list(df["JobId"]) == ["j1", "No Job Scheduled", "-"]
    assert df.loc[0, "Details"] == '{"step": 2}'
    assert df.loc[2, "Status"] == "FAILED_FATAL"


def test_reporter_throttles_lines_when_not_a_tty():
    out = io.StringIO()
    reporter = ConsoleReporter(out)
    reporter.on_start("create", {"attempted": 0, "succeeded": 0, "failed": 0, "total": 100})
    for i in range(1, 101):
        reporter.on_progress("create", {"attempted": i, "succeeded": i, "failed": 0, "total": 100}, None)
    reporter.on_finish("create", {"attempted": 100, "succeeded": 100, "failed": 0, "total": 100}, [])
    lines = out.getvalue().splitlines()
    assert len(lines) == 1 + 11 + 1
    assert lines[-1] == "✅ Creating 100 thing(s) on the device registry (100/100)"


def test_execute_progress_text():
    s = {"attempted": 9, "succeeded": 5, "failed": 3, "total": 10}
    assert progress_text("execute", s) == \
        "Completion statistics (5 Success, 3 Failures - Overall (8/10), 9 job(s) fetched)"


def test_metrics_percentiles():
    m = Metrics()
    for ms in range(1, 101):
        m.observe("fetch", ms)
    m.inc("fetch_ok", 3)
    snap = m.snapshot()
    assert snap["counters"] == {"fetch_ok": 3}
    assert snap["latency"]["fetch"]["p50"] == 51 and snap["latency"]["fetch"]["max"] == 100


def test_json_log_is_one_compact_line(monkeypatch):
    monkeypatch.setenv("JSON_LOG", "1")
    out = io.StringIO()
    json_log(stream=out, ev="run_start", devices=3)
    assert json.loads(out.getvalue()) == {"ev": "run_start", "devices": 3}
    monkeypatch.setenv("JSON_LOG", "0")
    json_log(stream=out, ev="ignored")
    assert out.getvalue().count("\n") == 1


def test_run_rows_feed_results_analysis(tmp_path, monkeypatch):
    path = tmp_path / "run.csv"
    pd.DataFrame(list(make_run().rows())).to_csv(path, index=False)

    row = analyze_results.analyze_file(str(path))
    assert (row["total"], row["succeeded"], row["no_job"], row["fatal"]) == (3, 1, 1, 1)
    assert row["p50_ms"] is not None

    monkeypatch.chdir(tmp_path)
    assert analyze_results.main([str(path)]) == 0
    assert (tmp_path / "summary_results.csv").exists()
    assert (tmp_path / "outcomes.png").exists()


class FakeResponse:
    def __init__(self, body):
        self.body = body
    def raise_for_status(self):
        pass
    def json(self):
        return self.body


class FakeSession:
    def __init__(self):
        self.sent = []
    def post(self, url, json=None, timeout=None):
        self.sent.append((url, json))
        return FakeResponse({"jobId": json["jobId"], "queued": len(json["targets"])})
    def get(self, url, params=None, timeout=None):
        return FakeResponse({"items": [{"thingName": "a"}, {"thingName": "b"}]})


def test_enqueue_jobs_targets_the_fleet():
    session = FakeSession()
    body = enqueue_jobs.enqueue("http://registry", "job-x", ["t-0", "t-1"], {"operation": "reboot"}, session=session)
    assert body == {"jobId": "job-x", "queued": 2}
    assert session.sent == [("http://registry/jobs",
                             {"jobId": "job-x", "targets": ["t-0", "t-1"], "document": {"operation": "reboot"}})]
    assert enqueue_jobs.list_things("http://registry", session=session) == ["a", "b"]
