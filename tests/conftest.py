"""
Shared fixtures: an in-memory fake of the remote job client and an
isolated sqlite database for the registry service.
"""

import os
import sys
import tempfile
from pathlib import Path

project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# The registry app initialises its database and throttle at import time.
os.environ.setdefault("REGISTRY_DB", os.path.join(tempfile.mkdtemp(), "registry.sqlite3"))
os.environ.setdefault("REGISTRY_RATE_CAP", "100000")
os.environ.setdefault("REGISTRY_RATE_REFILL", "100000")
os.environ.setdefault("JSON_LOG", "0")

import asyncio

import httpx
import pytest

from agent.client import HttpJobClient
from agent.models import Job, JobStatus
from common.errors import RemoteUnavailable


class FakeJobClient:
    """Remote job client double. `jobs` maps device id -> pending Job."""

    def __init__(self, jobs=None, fail_fetch=(), fail_report=(), endpoint_error=None,
                 delay=0.0, flaky_fetch=()):
        self.pending = dict(jobs or {})
        self.fail_fetch, self.fail_report = set(fail_fetch), set(fail_report)
        self.flaky_fetch = set(flaky_fetch)
        self.endpoint_error = endpoint_error
        self.delay = delay
        self.registered = set()
        self.reports = {}
        self.calls = []
        self.closed = False

    async def _tick(self, op, device_id=None):
        self.calls.append((op, device_id))
        await asyncio.sleep(self.delay)

    def count(self, op):
        return sum(1 for o, _ in self.calls if o == op)

    async def resolve_endpoint(self):
        await self._tick("resolve_endpoint")
        if self.endpoint_error:
            raise self.endpoint_error
        return "https://fake-jobs"

    async def register_device(self, device_id):
        await self._tick("register", device_id)
        self.registered.add(device_id)

    async def deregister_device(self, device_id):
        await self._tick("deregister", device_id)
        self.registered.discard(device_id)

    async def fetch_next_job(self, device_id):
        await self._tick("fetch", device_id)
        if device_id in self.fail_fetch:
            raise RemoteUnavailable(f"fetch: connection refused for {device_id}", device_id, "fetch")
        if device_id in self.flaky_fetch:
            self.flaky_fetch.discard(device_id)
            raise RemoteUnavailable("fetch: HTTP 429", device_id, "fetch", status=429, retryable=True, retry_after=0)
        job = self.pending.get(device_id)
        if job:
            job.status = JobStatus.IN_PROGRESS
        return job

    async def describe_next_job(self, device_id):
        await self._tick("describe", device_id)
        return self.pending.get(device_id)

    async def report_outcome(self, device_id, job, outcome):
        await self._tick("report", device_id)
        if device_id in self.fail_report:
            raise RemoteUnavailable(f"report: HTTP 503 for {device_id}", device_id, "report", status=503)
        assert device_id not in self.reports, f"{device_id} reported twice"
        self.reports[device_id] = outcome
        self.pending.pop(device_id, None)

    async def aclose(self):
        self.closed = True


def jobs_for(device_ids, job_id="job-1"):
    return {d: Job(job_id=job_id, thing_name=d, document={"operation": "firmware-update"}) for d in device_ids}


class RecordingObserver:
    def __init__(self):
        self.started, self.events, self.finished = [], [], []

    def on_start(self, op, stats):
        self.started.append((op, stats))

    def on_progress(self, op, stats, ctx):
        self.events.append(stats)

    def on_finish(self, op, stats, errors):
        self.finished.append((op, stats, list(errors)))


@pytest.fixture
def registry_db(tmp_path, monkeypatch):
    """Fresh registry database per test."""
    from common.db import init_db
    monkeypatch.setenv("REGISTRY_DB", str(tmp_path / "registry.sqlite3"))
    init_db()
    return tmp_path / "registry.sqlite3"


def asgi_http_client():
    """HttpJobClient wired to the registry app in-process; call inside a running loop."""
    from registry_service.app import app
    transport = httpx.ASGITransport(app=app)
    return HttpJobClient("http://registry", client=httpx.AsyncClient(transport=transport, base_url="http://registry"))
