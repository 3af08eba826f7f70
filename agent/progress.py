import json, sys

import pandas as pd

LABELS = {
    "create": "Creating {total} thing(s) on the device registry",
    "delete": "Deleting {total} thing(s) from the device registry",
    "execute": "Executing the next job on {total} thing(s)",
    "status": "Retrieving {total} thing(s) job statuses",
}
NO_JOB = "No Job Scheduled"


class ProgressObserver:
    """Receives run events from the orchestrator; does nothing by default."""
    def on_start(self, op, stats): pass
    def on_progress(self, op, stats, ctx): pass
    def on_finish(self, op, stats, errors): pass


def progress_text(op, s):
    done = s["succeeded"] + s["failed"]
    if op == "execute":
        return (f"Completion statistics ({s['succeeded']} Success, {s['failed']} Failures"
                f" - Overall ({done}/{s['total']}), {s['attempted']} job(s) fetched)")
    return f"{LABELS[op].format(total=s['total'])} ({s['attempted']}/{s['total']})"


class ConsoleReporter(ProgressObserver):
    """Single rewritten status line on a tty, one line per 10% otherwise."""
    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self.tty = hasattr(self.stream, "isatty") and self.stream.isatty()
        self.last_decile = -1
        self.history = []

    def _write(self, text, final=False):
        if self.tty:
            self.stream.write(f"\r{text}" + ("\n" if final else ""))
        else:
            self.stream.write(text + "\n")
        self.stream.flush()

    def on_start(self, op, stats):
        self.last_decile = -1
        self._write(progress_text(op, stats))

    def on_progress(self, op, stats, ctx):
        self.history.append(stats)
        decile = stats["attempted"] * 10 // max(1, stats["total"])
        if self.tty or decile != self.last_decile:
            self.last_decile = decile
            self._write(progress_text(op, stats))

    def on_finish(self, op, stats, errors):
        mark = "❌" if errors else "✅"
        self._write(f"{mark} {progress_text(op, stats)}", final=True)

    def fail(self, message):
        self._write(f"❌ {message}", final=True)


def status_table(run):
    rows = []
    for ctx in run.devices:
        device_id, job = ctx.device_id, ctx.job
        if ctx.error:
            rows.append({"Thing": device_id, "JobId": "-", "Status": ctx.state.value, "Details": ctx.error})
        elif job is None:
            rows.append({"Thing": device_id, "JobId": NO_JOB, "Status": NO_JOB, "Details": NO_JOB})
        else:
            details = job.status_details
            rows.append({"Thing": device_id, "JobId": job.job_id, "Status": job.status.value if job.status else "No Status",
                         "Details": json.dumps(details, sort_keys=True) if details else "No details"})
    return pd.DataFrame(rows, columns=["Thing", "JobId", "Status", "Details"])


def render_status(run, stream=None):
    stream = stream or sys.stdout
    df = status_table(run)
    stream.write("\n" + df.to_string(index=False) + "\n\n")
