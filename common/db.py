import sqlite3, os, json
from contextlib import contextmanager

DEFAULT_DB = os.path.join(os.path.dirname(__file__), "..", "registry.sqlite3")
TERMINAL = ("SUCCEEDED", "FAILED", "REJECTED", "REMOVED", "CANCELED", "TIMED_OUT")

def db_path():
    return os.environ.get("REGISTRY_DB", DEFAULT_DB)

def connect():
    conn = sqlite3.connect(db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

@contextmanager
def get_db():
    conn = connect()
    try:
        yield conn
    finally:
        conn.close()

def init_db():
    conn = connect()
    conn.executescript("""
    CREATE TABLE IF NOT EXISTS things(
      name TEXT PRIMARY KEY,
      attributes TEXT NOT NULL DEFAULT '{}',
      created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now'))
    );
    CREATE TABLE IF NOT EXISTS jobs(
      job_id TEXT PRIMARY KEY,
      document TEXT NOT NULL DEFAULT '{}',
      created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now'))
    );
    CREATE TABLE IF NOT EXISTS job_executions(
      job_id TEXT NOT NULL, thing_name TEXT NOT NULL,
      status TEXT NOT NULL DEFAULT 'QUEUED',
      status_details TEXT,
      version INTEGER NOT NULL DEFAULT 1,
      queued_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now')),
      updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now')),
      PRIMARY KEY(job_id, thing_name),
      FOREIGN KEY(job_id) REFERENCES jobs(job_id)
    );
    CREATE INDEX IF NOT EXISTS idx_exec_thing ON job_executions(thing_name, status, queued_at);
    """)
    conn.commit(); conn.close()

def execution_dict(row, document=None):
    out = {"jobId": row["job_id"], "thingName": row["thing_name"], "status": row["status"],
           "versionNumber": row["version"], "queuedAt": row["queued_at"], "lastUpdatedAt": row["updated_at"]}
    if row["status_details"]:
        out["statusDetails"] = json.loads(row["status_details"])
    if document is not None:
        out["jobDocument"] = document
    return out

def next_pending(conn, thing_name):
    # An execution already IN_PROGRESS is handed out again before any QUEUED one.
    c = conn.cursor()
    c.execute("""SELECT e.*, j.document FROM job_executions e JOIN jobs j USING(job_id)
                 WHERE e.thing_name=? AND e.status IN ('IN_PROGRESS','QUEUED')
                 ORDER BY e.status='QUEUED', e.queued_at, e.job_id LIMIT 1""", (thing_name,))
    return c.fetchone()
