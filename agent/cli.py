import argparse, asyncio, csv, sys
from dataclasses import dataclass
from typing import Optional

from agent import settings
from agent.client import HttpJobClient
from agent.executor import failure_quota_size
from agent.orchestrator import FleetOrchestrator, RunOptions
from agent.pipelines import PIPELINES, fleet
from agent.progress import ConsoleReporter, render_status
from common.errors import AgentError, ConfigurationError
from common.util import SlidingWindowLimiter

COMMANDS = {
    "create": "Creates the selected amount of IoT things on the device registry.",
    "execute": "Executes any queued job for the selected amount of IoT things.",
    "delete": "Deletes the selected amount of IoT things from the device registry.",
    "status": "Retrieves the next job and its status for the selected amount of IoT things.",
}
DONE = {
    "create": "All '{n}' thing(s) have been created on the device registry.",
    "delete": "All '{n}' thing(s) have been deleted from the device registry.",
    "execute": "The job execution has been performed on '{n}' device(s).",
    "status": "All '{n}' thing(s) statuses have been retrieved from the jobs API.",
}


@dataclass
class AgentOptions:
    command: str
    number: int
    backend: str = "http"
    api: str = settings.API_BASE
    prefix: str = settings.THING_PREFIX
    rate_limit: int = settings.RATE_LIMIT
    rate_interval: float = settings.RATE_INTERVAL_S
    concurrency: int = settings.MAX_IN_FLIGHT
    retries: int = settings.HTTP_RETRIES
    failure_rate: float = settings.DEFAULT_FAILURE_RATE
    min_delay: int = settings.DEFAULT_MIN_DELAY_MS
    max_delay: int = settings.DEFAULT_MAX_DELAY_MS
    csv: Optional[str] = None
    skip_unavailable: bool = False


class AgentArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise ConfigurationError(f"{self.prog}: {message}")


def build_parser():
    ap = AgentArgumentParser(prog="jobs-agent",
                             description="Drives a fleet of simulated IoT things through the device registry and its jobs.")
    ap.add_argument("--backend", choices=["http", "aws"], default=settings.BACKEND)
    ap.add_argument("--api", default=settings.API_BASE, help="registry service base URL (http backend)")
    ap.add_argument("--prefix", default=settings.THING_PREFIX, help="thing name prefix, things are <prefix>-<index>")
    ap.add_argument("--rate-limit", default=settings.RATE_LIMIT, help="max remote calls per rate interval")
    ap.add_argument("--rate-interval", default=settings.RATE_INTERVAL_S, help="rate window in seconds")
    ap.add_argument("--concurrency", default=settings.MAX_IN_FLIGHT, help="max remote calls in flight")
    ap.add_argument("--retries", default=settings.HTTP_RETRIES, help="attempts per remote call on throttling/5xx")
    ap.add_argument("--csv", help="write per-device results to this CSV file")
    ap.add_argument("--skip-unavailable", action="store_true",
                    help="treat things whose jobs endpoint is unreachable as having no job instead of failing them")
    sub = ap.add_subparsers(dest="command", metavar="command")
    for name, text in COMMANDS.items():
        p = sub.add_parser(name, help=text, description=text)
        p.add_argument("-n", "--number", help="Specifies the amount of things to operate on.")
        if name == "execute":
            p.add_argument("-f", "--failure-rate", help="An optional failure percentage to insert when executing jobs.")
            p.add_argument("-m", "--min-delay", help="An optional minimum delay (ms) to use when executing jobs.")
            p.add_argument("-x", "--max-delay", help="An optional maximum delay (ms) to use when executing jobs.")
    return ap


def as_number(value, name, cast=int, minimum=None, maximum=None):
    try:
        v = cast(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Parameter '{name}' must be a number, got {value!r}.") from None
    if minimum is not None and v < minimum:
        raise ConfigurationError(f"Parameter '{name}' must be >= {minimum}, got {v}.")
    if maximum is not None and v > maximum:
        raise ConfigurationError(f"Parameter '{name}' must be <= {maximum}, got {v}.")
    return v


def validate(args) -> AgentOptions:
    if args.number is None:
        raise ConfigurationError("Parameter 'number' was expected, but not found.")
    opts = AgentOptions(
        command=args.command,
        number=as_number(args.number, "number", minimum=1),
        backend=args.backend, api=args.api, prefix=args.prefix, csv=args.csv,
        skip_unavailable=args.skip_unavailable,
        rate_limit=as_number(args.rate_limit, "rate-limit", minimum=1),
        rate_interval=as_number(args.rate_interval, "rate-interval", float),
        concurrency=as_number(args.concurrency, "concurrency", minimum=1),
        retries=as_number(args.retries, "retries", minimum=1),
    )
    if opts.rate_interval <= 0:
        raise ConfigurationError(f"Parameter 'rate-interval' must be > 0, got {opts.rate_interval}.")
    if args.command == "execute":
        if args.failure_rate is not None:
            opts.failure_rate = as_number(args.failure_rate, "failure-rate", float, 0, 100)
        if args.min_delay is not None:
            opts.min_delay = as_number(args.min_delay, "min-delay", minimum=0)
        if args.max_delay is not None:
            opts.max_delay = as_number(args.max_delay, "max-delay", minimum=0)
        if opts.min_delay > opts.max_delay:
            raise ConfigurationError(f"Parameter 'min-delay' ({opts.min_delay}) exceeds 'max-delay' ({opts.max_delay}).")
    return opts


def build_client(opts):
    if opts.backend == "aws":
        from agent.aws_client import AwsIotJobClient
        return AwsIotJobClient(region=settings.aws_region(), proxy=settings.proxy_url())
    return HttpJobClient(opts.api, timeout=settings.HTTP_TIMEOUT_S)


async def run_command(opts, client, observer):
    limiter = SlidingWindowLimiter(opts.rate_limit, opts.rate_interval, opts.concurrency)
    orch = FleetOrchestrator(client, limiter, observer, retries=opts.retries)
    try:
        run = await orch.run_fleet(fleet(opts.number, opts.prefix), PIPELINES[opts.command],
                                   RunOptions(opts.failure_rate, opts.min_delay, opts.max_delay,
                                              skip_unavailable=opts.skip_unavailable))
    finally:
        await client.aclose()
    return run, orch.metrics.snapshot()


def write_csv(run, path):
    rows = list(run.rows())
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=["device_id", "state", "job_id", "outcome", "stage", "error", "latency_ms"])
        writer.writeheader()
        writer.writerows(rows)
    return len(rows)


def latency_summary(snapshot):
    parts = [f"{op} p50={v['p50']}ms p95={v['p95']}ms (n={v['count']})" for op, v in sorted(snapshot["latency"].items())]
    return "Remote calls: " + ", ".join(parts) if parts else "Remote calls: none"


def main(argv=None, stdout=None, stderr=None):
    stdout, stderr = stdout or sys.stdout, stderr or sys.stderr
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
        if not args.command:
            parser.print_help(stderr)
            return 1
        opts = validate(args)
    except ConfigurationError as e:
        print(f"✖ fatal {e}", file=stderr)
        return 1

    reporter = ConsoleReporter(stdout)
    if opts.command == "execute":
        print(f"ℹ Setting a failure rate of {failure_quota_size(opts.number, opts.failure_rate)} thing(s).", file=stdout)
    try:
        client = build_client(opts)
        run, metrics = asyncio.run(run_command(opts, client, reporter))
    except AgentError as e:
        reporter.fail(str(e))
        print(f"✖ fatal {e}", file=stderr)
        return 1
    except KeyboardInterrupt:
        reporter.fail("interrupted")
        return 130

    if opts.command == "status":
        render_status(run, stdout)
    if opts.csv:
        n = write_csv(run, opts.csv)
        print(f"Wrote {opts.csv} ({n} rows)", file=stdout)
    print(latency_summary(metrics), file=stdout)
    if run.partial:
        print(f"✖ {len(run.errors)} of {opts.number} thing(s) failed:", file=stderr)
        for err in run.errors:
            print(f"  {err.device_id} [{err.stage}] {err.message}", file=stderr)
        return 1
    print(f"✔ {DONE[opts.command].format(n=opts.number)}", file=stdout)
    return 0


if __name__ == "__main__":
    sys.exit(main())
