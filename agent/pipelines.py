"""Per-device stage pipelines for the four agent commands.

A stage takes the device context and the stage environment and returns the
context. Stages run in order; a device with no pending job stops early and a
`RemoteUnavailable` ends the device in FAILED_FATAL.
"""
from dataclasses import dataclass
from typing import Any, Callable, Optional

from agent.models import DeviceContext, DeviceState, JobStatus
from common.errors import RemoteUnavailable


def fleet(n, prefix="jobs-thing"):
    return [f"{prefix}-{i}" for i in range(n)]


@dataclass
class StageEnv:
    client: Any
    call: Callable
    executor: Optional[Any] = None
    skip_unavailable: bool = False


@dataclass(frozen=True)
class Pipeline:
    name: str
    stages: tuple
    needs_endpoint: bool = False
    uses_executor: bool = False


async def register(ctx, env):
    await env.call("register", env.client.register_device, ctx.device_id)
    ctx.attempted, ctx.outcome = True, JobStatus.SUCCEEDED
    return ctx


async def deregister(ctx, env):
    await env.call("deregister", env.client.deregister_device, ctx.device_id)
    ctx.attempted, ctx.outcome = True, JobStatus.SUCCEEDED
    return ctx


async def describe(ctx, env):
    ctx.state = DeviceState.FETCHING
    ctx.job = await env.call("describe", env.client.describe_next_job, ctx.device_id)
    ctx.attempted = True
    ctx.state = DeviceState.FETCHED if ctx.job else DeviceState.NO_JOB
    return ctx


async def fetch(ctx, env):
    ctx.state = DeviceState.FETCHING
    ctx.job = await env.call("fetch", env.client.fetch_next_job, ctx.device_id)
    ctx.attempted = True
    ctx.state = DeviceState.FETCHED if ctx.job else DeviceState.NO_JOB
    return ctx


async def execute(ctx, env):
    ctx.state = DeviceState.EXECUTING
    ctx.decision = await env.executor.run(ctx)
    return ctx


async def report(ctx, env):
    ctx.state = DeviceState.REPORTING
    # reports are resent only when throttled
    await env.call("report", env.client.report_outcome, ctx.device_id, ctx.job, ctx.decision, idempotent=False)
    # only a reported outcome counts towards the statistics
    ctx.outcome = ctx.decision
    return ctx


async def run_stages(ctx: DeviceContext, stages, env: StageEnv) -> DeviceContext:
    try:
        for stage in stages:
            ctx.stage = stage.__name__
            ctx = await stage(ctx, env)
            if ctx.state is DeviceState.NO_JOB:
                return ctx
    except RemoteUnavailable as e:
        ctx.error = str(e)
        # an unreachable device can be skipped like one without a job, but only before any job was taken
        skippable = env.skip_unavailable and ctx.stage in ("fetch", "describe")
        ctx.state = DeviceState.NO_JOB if skippable else DeviceState.FAILED_FATAL
        return ctx
    ctx.state = DeviceState.DONE
    return ctx


PIPELINES = {
    "create": Pipeline("create", (register,)),
    "delete": Pipeline("delete", (deregister,)),
    "execute": Pipeline("execute", (fetch, execute, report), needs_endpoint=True, uses_executor=True),
    "status": Pipeline("status", (describe,), needs_endpoint=True),
}
