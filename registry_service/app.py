import os, time, json, uuid
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from datetime import datetime, timezone

import sys
sys.path.append(os.path.join(os.path.dirname(__file__), ".."))
from common.db import get_db, init_db, execution_dict, next_pending, TERMINAL
from common.util import Metrics, RouteThrottle, json_log

app = FastAPI(title="Device Registry & Jobs")
metrics = Metrics()
throttle = RouteThrottle(cap=int(os.environ.get("REGISTRY_RATE_CAP", "50")),
                         refill=float(os.environ.get("REGISTRY_RATE_REFILL", "25")))
init_db()

STATUSES = {"QUEUED", "IN_PROGRESS", *TERMINAL}

def now_iso(): return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

def throttled(route, request):
    wait = throttle.retry_after(route, request.client.host if request.client else "unknown")
    if not wait: return None
    metrics.inc("throttled")
    resp = JSONResponse({"error":"rate_limited"}, status_code=429); resp.headers["Retry-After"]=f"{wait:.2f}"
    return resp

@app.middleware("http")
async def obs(request: Request, call_next):
    t0=time.time(); trace=request.headers.get("X-Trace-Id",str(uuid.uuid4()))
    resp=None
    try:
        resp = await call_next(request)
    finally:
        ms=int((time.time()-t0)*1000)
        metrics.observe(request.url.path if "/jobs/" not in request.url.path else "/things/jobs", ms)
        json_log(ts=now_iso(), trace=trace, m=request.method, p=request.url.path,
                 status=getattr(resp,'status_code',0), ms=ms)
    resp.headers["X-Trace-Id"]=trace; resp.headers["Server"]="Registry-FastAPI"; return resp

@app.get("/healthz")
def health(): metrics.inc("requests_/healthz"); return {"status":"ok","ts":now_iso()}

@app.get("/metrics")
def metr(): return metrics.snapshot()

@app.get("/endpoint")
def describe_endpoint(request: Request, endpointType: str = "iot:Jobs"):
    if endpointType not in ("iot:Jobs", "iot:Data-ATS"):
        raise HTTPException(400, f"unsupported endpointType {endpointType}")
    return {"endpointAddress": str(request.base_url).rstrip("/")}

# Things
@app.post("/things")
async def create_thing(request: Request):
    if (r := throttled("/things", request)): return r
    d = await request.json()
    name = d.get("thingName")
    if not name: raise HTTPException(400, "missing thingName")
    attrs = (d.get("attributePayload") or {}).get("attributes", {})
    with get_db() as conn:
        c=conn.cursor(); c.execute("SELECT 1 FROM things WHERE name=?", (name,))
        if c.fetchone():
            return JSONResponse({"error":"ResourceAlreadyExistsException","thingName":name}, status_code=409)
        c.execute("INSERT INTO things(name, attributes) VALUES(?,?)", (name, json.dumps(attrs))); conn.commit()
    metrics.inc("things_created")
    return JSONResponse({"thingName":name, "thingArn":f"arn:local:iot:thing/{name}"}, status_code=201)

@app.delete("/things/{name}")
async def delete_thing(name: str, request: Request):
    if (r := throttled("/things", request)): return r
    with get_db() as conn:
        c=conn.cursor()
        c.execute("DELETE FROM job_executions WHERE thing_name=?", (name,))
        c.execute("DELETE FROM things WHERE name=?", (name,)); deleted = c.rowcount; conn.commit()
    metrics.inc("things_deleted", deleted)
    return {"thingName": name, "deleted": bool(deleted)}

@app.get("/things")
def list_things(page: int = 1, limit: int = 100):
    off=(page-1)*limit
    with get_db() as conn:
        c=conn.cursor(); c.execute("SELECT * FROM things ORDER BY name LIMIT ? OFFSET ?", (limit, off))
        items=[{"thingName": r["name"], "attributes": json.loads(r["attributes"])} for r in c.fetchall()]
    return {"items":items,"next_page":(page+1 if len(items)==limit else None)}

# Jobs (control plane)
@app.post("/jobs")
async def create_job(request: Request):
    d = await request.json()
    job_id, targets = d.get("jobId"), d.get("targets") or []
    if not job_id or not isinstance(targets, list): raise HTTPException(400, "jobId and targets are required")
    with get_db() as conn:
        c=conn.cursor(); c.execute("SELECT 1 FROM jobs WHERE job_id=?", (job_id,))
        if c.fetchone(): raise HTTPException(409, f"job {job_id} already exists")
        c.execute("INSERT INTO jobs(job_id, document) VALUES(?,?)", (job_id, json.dumps(d.get("document") or {})))
        c.executemany("INSERT INTO job_executions(job_id, thing_name) VALUES(?,?)", [(job_id, t) for t in targets])
        conn.commit()
    metrics.inc("jobs_created")
    return JSONResponse({"jobId": job_id, "queued": len(targets)}, status_code=201)

# Jobs data plane
@app.post("/things/{name}/jobs/$next")
async def start_next(name: str, request: Request):
    if (r := throttled("/things/jobs", request)): return r
    with get_db() as conn:
        row = next_pending(conn, name)
        if not row: return {}
        if row["status"] == "QUEUED":
            conn.execute("""UPDATE job_executions SET status='IN_PROGRESS', version=version+1,
                            updated_at=strftime('%Y-%m-%dT%H:%M:%fZ','now') WHERE job_id=? AND thing_name=?""",
                         (row["job_id"], name))
            conn.commit()
            row = next_pending(conn, name)
    metrics.inc("executions_started")
    return {"execution": execution_dict(row, json.loads(row["document"]))}

@app.get("/things/{name}/jobs/$next")
def describe_next(name: str, includeJobDocument: bool = True):
    with get_db() as conn:
        row = next_pending(conn, name)
    if not row: return {}
    return {"execution": execution_dict(row, json.loads(row["document"]) if includeJobDocument else None)}

@app.post("/things/{name}/jobs/{job_id}")
async def update_execution(name: str, job_id: str, request: Request):
    if (r := throttled("/things/jobs", request)): return r
    d = await request.json()
    status = d.get("status")
    if status not in STATUSES: raise HTTPException(400, f"invalid status {status}")
    with get_db() as conn:
        c=conn.cursor(); c.execute("SELECT status FROM job_executions WHERE job_id=? AND thing_name=?", (job_id, name))
        row=c.fetchone()
        if not row: raise HTTPException(404, "job execution not found")
        if row["status"] in TERMINAL:
            return JSONResponse({"error":"InvalidStateTransitionException","status":row["status"]}, status_code=409)
        details = d.get("statusDetails")
        c.execute("""UPDATE job_executions SET status=?, status_details=?, version=version+1,
                     updated_at=strftime('%Y-%m-%dT%H:%M:%fZ','now') WHERE job_id=? AND thing_name=?""",
                  (status, json.dumps(details) if details else None, job_id, name))
        conn.commit()
    metrics.inc(f"executions_{status.lower()}")
    return {"executionState": {"status": status, "statusDetails": d.get("statusDetails")}}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=os.environ.get("REGISTRY_HOST", "127.0.0.1"), port=int(os.environ.get("REGISTRY_PORT", "8000")))
