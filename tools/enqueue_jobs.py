
import argparse, os, sys, uuid, requests

sys.path.append(os.path.join(os.path.dirname(__file__), ".."))
from agent.pipelines import fleet

def enqueue(api, job_id, things, document, session=requests):
    r = session.post(f"{api}/jobs", json={"jobId": job_id, "targets": things, "document": document}, timeout=10)
    r.raise_for_status(); return r.json()

def list_things(api, session=requests):
    r = session.get(f"{api}/things", params={"limit": 1000}, timeout=10)
    r.raise_for_status(); return [t["thingName"] for t in r.json()["items"]]

def main(argv=None):
    ap = argparse.ArgumentParser(description="Queues one job for <prefix>-0..N-1 on the registry service.")
    ap.add_argument("-n", "--number", type=int)
    ap.add_argument("--registered", action="store_true", help="target every thing on the registry instead of -n")
    ap.add_argument("--api", default=os.environ.get("JOBS_API_BASE", "http://127.0.0.1:8000"))
    ap.add_argument("--prefix", default=os.environ.get("JOBS_THING_PREFIX", "jobs-thing"))
    ap.add_argument("--job-id", default=None)
    ap.add_argument("--operation", default="firmware-update")
    args = ap.parse_args(argv)

    job_id = args.job_id or f"job-{uuid.uuid4().hex[:12]}"
    if args.registered:
        things = list_things(args.api)
    elif args.number:
        things = fleet(args.number, args.prefix)
    else:
        ap.error("one of -n/--number or --registered is required")
    print(f"Queueing {job_id} for {len(things)} thing(s)...")
    body = enqueue(args.api, job_id, things, {"operation": args.operation})
    print("Queued:", body["queued"], "execution(s) for", body["jobId"])
    return 0

if __name__ == "__main__":
    sys.exit(main())
