"""Throttled fan-out of per-device pipelines.

One asyncio task per device. Every outbound remote call, retries included,
passes through the shared SlidingWindowLimiter. Per-device remote failures
are collected into the run result; only endpoint resolution, a broken
limiter or cancellation of the caller abort the whole run.
"""
import asyncio, random, sys, time
from dataclasses import dataclass
from typing import Optional

from agent.executor import Executor, FailureQuota
from agent.models import DeviceContext, DeviceError, DeviceState, FleetRun, RunStatistics
from agent.pipelines import Pipeline, StageEnv, run_stages
from agent.progress import ProgressObserver
from common.errors import EndpointResolutionError, RemoteUnavailable
from common.util import Metrics, SlidingWindowLimiter, json_log


@dataclass
class RunOptions:
    failure_rate: float = 0
    min_delay: int = 0
    max_delay: int = 0
    rng: Optional[random.Random] = None
    skip_unavailable: bool = False


class FleetOrchestrator:
    def __init__(self, client, limiter=None, observer=None, retries=3, backoff=0.2, metrics=None,
                 log_stream=None):
        self.client = client
        self.limiter = limiter or SlidingWindowLimiter()
        self.observer = observer or ProgressObserver()
        self.retries = max(1, retries)
        self.backoff = backoff
        self.metrics = metrics or Metrics()
        self.log_stream = log_stream or sys.stderr

    def log(self, **kw):
        json_log(stream=self.log_stream, **kw)

    async def call(self, op, fn, *args, idempotent=True):
        """Runs one remote operation, each attempt under a limiter permit.

        A non-idempotent operation is only retried on 429, which the server
        answers before acting on the request.
        """
        for attempt in range(1, self.retries + 1):
            t0 = time.perf_counter()
            try:
                async with self.limiter.permit():
                    result = await fn(*args)
            except RemoteUnavailable as e:
                self.metrics.observe(op, int((time.perf_counter() - t0) * 1000))
                self.metrics.inc(f"{op}_error")
                retry = e.retryable if idempotent else e.status == 429
                if not retry or attempt >= self.retries:
                    raise
                delay = e.retry_after if e.retry_after is not None else min(5.0, self.backoff * (2 ** (attempt - 1)))
                self.log(ev="retry", op=op, device=e.device_id, attempt=attempt, status=e.status, wait_s=round(delay, 3))
                await asyncio.sleep(delay + random.random() * 0.1)
                continue
            self.metrics.observe(op, int((time.perf_counter() - t0) * 1000))
            self.metrics.inc(f"{op}_ok")
            return result

    async def resolve_endpoint(self):
        try:
            endpoint = await self.call("resolve_endpoint", self.client.resolve_endpoint)
        except (RemoteUnavailable, EndpointResolutionError) as e:
            self.log(ev="endpoint_failed", error=str(e))
            raise EndpointResolutionError(f"could not resolve the jobs endpoint: {e}") from e
        self.log(ev="endpoint", endpoint=endpoint)
        return endpoint

    async def run_fleet(self, device_ids, pipeline: Pipeline, options: Optional[RunOptions] = None) -> FleetRun:
        options = options or RunOptions()
        device_ids = list(device_ids)
        stats = RunStatistics(total=len(device_ids))
        errors = []
        self.log(ev="run_start", op=pipeline.name, devices=len(device_ids))

        if pipeline.needs_endpoint:
            await self.resolve_endpoint()

        executor = quota = None
        if pipeline.uses_executor:
            quota = FailureQuota.for_fleet(len(device_ids), options.failure_rate)
            executor = Executor(quota, options.min_delay, options.max_delay, rng=options.rng)
            self.log(ev="failure_quota", things_to_fail=quota.total)
        env = StageEnv(self.client, self.call, executor, options.skip_unavailable)

        def fold(ctx):
            # the only place run state is mutated after the tasks start
            if ctx.state is DeviceState.FAILED_FATAL:
                errors.append(DeviceError(ctx.device_id, ctx.stage, ctx.error))
                self.log(ev="device_failed", device=ctx.device_id, stage=ctx.stage, error=ctx.error)
            elif ctx.error:
                self.log(ev="device_skipped", device=ctx.device_id, stage=ctx.stage, error=ctx.error)
            snapshot = stats.fold(ctx)
            self.observer.on_progress(pipeline.name, snapshot, ctx)

        async def device_task(device_id):
            t0 = time.perf_counter()
            ctx = await run_stages(DeviceContext(device_id), pipeline.stages, env)
            ctx.latency_ms = int((time.perf_counter() - t0) * 1000)
            fold(ctx)
            return ctx

        self.observer.on_start(pipeline.name, stats.snapshot())
        tasks = [asyncio.create_task(device_task(d)) for d in device_ids]
        try:
            devices = await asyncio.gather(*tasks)
        except BaseException:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        run = FleetRun(pipeline.name, stats, list(devices), errors,
                       failure_quota=quota.total if quota else 0)
        final = stats.snapshot()
        self.log(ev="run_end", op=pipeline.name, errors=len(errors), **final)
        self.observer.on_finish(pipeline.name, final, errors)
        return run
