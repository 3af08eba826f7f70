import asyncio, math, random, threading

from agent.models import JobStatus
from common.errors import ConfigurationError


def failure_quota_size(n_devices, failure_rate):
    return math.ceil(n_devices * (failure_rate or 0) / 100)


class FailureQuota:
    """Forced failures left for a run; never goes below zero."""
    def __init__(self, total):
        if total < 0:
            raise ConfigurationError(f"failure quota must be >= 0, got {total}")
        self.total = self.remaining = total
        self.lock = threading.Lock()

    @classmethod
    def for_fleet(cls, n_devices, failure_rate):
        return cls(failure_quota_size(n_devices, failure_rate))

    def take(self):
        with self.lock:
            if self.remaining > 0:
                self.remaining -= 1
                return True
            return False

    @property
    def taken(self):
        with self.lock:
            return self.total - self.remaining


class Executor:
    """Simulates running a job on a device.

    The first tasks to reach the decision point consume the failure quota,
    so which devices fail depends on scheduling; only the count is fixed.
    The delay is drawn from [min_delay, max_delay] milliseconds inclusive.
    """
    def __init__(self, quota, min_delay=0, max_delay=0, rng=None, sleep=asyncio.sleep):
        if min_delay < 0 or max_delay < 0:
            raise ConfigurationError("execution delays must be >= 0")
        if min_delay > max_delay:
            raise ConfigurationError(f"min delay {min_delay}ms exceeds max delay {max_delay}ms")
        self.quota, self.min_delay, self.max_delay = quota, int(min_delay), int(max_delay)
        self.rng = rng or random.Random()
        self.sleep = sleep

    def delay_ms(self):
        return self.rng.randint(self.min_delay, self.max_delay)

    async def run(self, ctx):
        status = JobStatus.FAILED if self.quota.take() else JobStatus.SUCCEEDED
        await self.sleep(self.delay_ms() / 1000)
        return status
