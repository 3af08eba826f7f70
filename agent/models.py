import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    REMOVED = "REMOVED"
    CANCELED = "CANCELED"
    TIMED_OUT = "TIMED_OUT"


OUTCOMES = (JobStatus.SUCCEEDED, JobStatus.FAILED)


class DeviceState(str, Enum):
    PENDING = "PENDING"
    FETCHING = "FETCHING"
    NO_JOB = "NO_JOB"
    FETCHED = "FETCHED"
    EXECUTING = "EXECUTING"
    REPORTING = "REPORTING"
    DONE = "DONE"
    FAILED_FATAL = "FAILED_FATAL"


@dataclass
class Job:
    job_id: str
    status: JobStatus = JobStatus.QUEUED
    status_details: Optional[dict] = None
    document: Optional[dict] = None
    thing_name: Optional[str] = None

    @classmethod
    def from_execution(cls, execution, thing_name=None):
        """Builds a job from a wire `execution` object; empty means no job."""
        if not execution or not execution.get("jobId"):
            return None
        return cls(
            job_id=execution["jobId"],
            status=JobStatus(execution.get("status", "QUEUED")),
            status_details=execution.get("statusDetails"),
            document=execution.get("jobDocument"),
            thing_name=execution.get("thingName", thing_name),
        )


@dataclass
class DeviceContext:
    device_id: str
    state: DeviceState = DeviceState.PENDING
    job: Optional[Job] = None
    decision: Optional[JobStatus] = None
    outcome: Optional[JobStatus] = None
    attempted: bool = False
    error: Optional[str] = None
    stage: Optional[str] = None
    latency_ms: int = 0


@dataclass(frozen=True)
class DeviceError:
    device_id: str
    stage: str
    message: str


@dataclass
class RunStatistics:
    total: int
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def fold(self, ctx):
        with self._lock:
            if ctx.attempted:
                self.attempted += 1
            if ctx.outcome == JobStatus.SUCCEEDED:
                self.succeeded += 1
            elif ctx.outcome == JobStatus.FAILED:
                self.failed += 1
            return self.snapshot_unlocked()

    def snapshot(self):
        with self._lock:
            return self.snapshot_unlocked()

    def snapshot_unlocked(self):
        return {"attempted": self.attempted, "succeeded": self.succeeded,
                "failed": self.failed, "total": self.total}


@dataclass
class FleetRun:
    operation: str
    statistics: RunStatistics
    devices: list
    errors: list
    failure_quota: int = 0

    @property
    def partial(self):
        return bool(self.errors)

    def rows(self):
        for ctx in self.devices:
            yield {"device_id": ctx.device_id, "state": ctx.state.value,
                   "job_id": ctx.job.job_id if ctx.job else "",
                   "outcome": ctx.outcome.value if ctx.outcome else "",
                   "stage": ctx.stage or "", "error": ctx.error or "", "latency_ms": ctx.latency_ms}
