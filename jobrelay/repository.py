import json
import sqlite3
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .config import DEFAULT_CONFIG, RetryPolicy, validate_config_value
from .models import Job, QUEUED, ACTIVE, COMPLETED, FAILED, STATES
from .utils import now_iso, iso_in_utc_from_seconds_from_now, new_job_id


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    value = validate_config_value(key, value)
    if key in ("lease_seconds", "timeout_seconds"):
        cfg = get_config(conn)
        cfg[key] = value
        lease = float(cfg.get("lease_seconds", DEFAULT_CONFIG["lease_seconds"]))
        timeout = float(cfg.get("timeout_seconds", DEFAULT_CONFIG["timeout_seconds"]))
        if lease <= timeout:
            raise ValueError(f"lease_seconds ({lease:g}) must be greater than timeout_seconds ({timeout:g})")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


def get_policy(conn) -> RetryPolicy:
    return RetryPolicy.from_config(get_config(conn))


# ---------- Jobs: enqueue / claim / complete / retry ----------
def enqueue_job(
    conn,
    *,
    job_type: str,
    payload: Dict[str, Any],
    meta: Optional[Dict[str, Any]] = None,
    priority: int = 0,
    policy: Optional[RetryPolicy] = None,
    job_id: Optional[str] = None,
) -> str:
    if not job_type or not job_type.strip():
        raise ValueError("Job type cannot be empty.")
    if not isinstance(payload, dict):
        raise ValueError("Payload must be an object.")
    if job_id is not None and not job_id.strip():
        raise ValueError("Job id cannot be empty.")

    policy = policy or get_policy(conn)
    job_id = job_id or new_job_id()
    ts = now_iso()

    try:
        with conn:
            conn.execute(
                """INSERT INTO jobs
                   (id, type, payload, meta, state, priority, attempts, max_attempts,
                    backoff_delay, backoff_multiplier, created_at, updated_at, next_run_at)
                   VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?)""",
                (
                    job_id, job_type, json.dumps(payload), json.dumps(meta or {}), QUEUED,
                    int(priority), policy.max_attempts, policy.base_delay, policy.multiplier,
                    ts, ts, ts,
                ),
            )
    except sqlite3.IntegrityError:
        raise ValueError(f"Job '{job_id}' already exists.")
    return job_id


def claim_one(conn, worker_name: str, lease_seconds: float = 120) -> Optional[sqlite3.Row]:
    """Move the next eligible job to `active` for this worker, or return None.

    Higher priority first; equal priorities in submission order. The
    conditional UPDATE means only one claimer can win a given row, even
    across processes sharing the database file. Each claim stamps a fresh
    `picked_by` token; `complete` and `fail_attempt` only apply while the
    row still carries it.
    """
    now = now_iso()
    token = f"{worker_name}-{uuid.uuid4().hex}"
    with conn:
        row = conn.execute(
            """SELECT id FROM jobs
               WHERE state=? AND (next_run_at IS NULL OR next_run_at <= ?)
               ORDER BY priority DESC, rowid ASC
               LIMIT 1""",
            (QUEUED, now),
        ).fetchone()
        if not row:
            return None
        job_id = row["id"]
        updated = conn.execute(
            """UPDATE jobs
               SET state=?, picked_by=?, attempts=attempts+1, processed_at=?, updated_at=?,
                   lease_expires_at=?, next_run_at=NULL
               WHERE id=? AND state=?""",
            (ACTIVE, token, now, now, iso_in_utc_from_seconds_from_now(lease_seconds), job_id, QUEUED),
        )
        if updated.rowcount != 1:
            return None
        return conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()


def complete(conn, job_row: sqlite3.Row, result: Any) -> bool:
    """Store the result of a claimed job. False if the claim is no longer held."""
    ts = now_iso()
    with conn:
        res = conn.execute(
            """UPDATE jobs
               SET state=?, result=?, last_error=NULL, finished_at=?, updated_at=?,
                   picked_by=NULL, lease_expires_at=NULL
               WHERE id=? AND state=? AND picked_by=?""",
            (COMPLETED, json.dumps(result), ts, ts, job_row["id"], ACTIVE, job_row["picked_by"]),
        )
    return res.rowcount == 1


def fail_attempt(conn, job_row: sqlite3.Row, error: str, retryable: bool = True) -> Tuple[Optional[str], Optional[float]]:
    """Record a failed delivery of a claimed job.

    Returns (QUEUED, delay) when another attempt is scheduled, (FAILED, None)
    when the job is now terminal, and (None, None) when the claim was lost
    and nothing changed. Non-retryable errors fail immediately.
    """
    attempts = job_row["attempts"]
    policy = RetryPolicy(
        max_attempts=job_row["max_attempts"],
        base_delay=job_row["backoff_delay"],
        multiplier=job_row["backoff_multiplier"],
    )
    ts = now_iso()
    error = (error or "unknown error")[:500]

    if not retryable or attempts >= policy.max_attempts:
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET state=?, last_error=?, finished_at=?, updated_at=?, next_run_at=NULL,
                       picked_by=NULL, lease_expires_at=NULL
                   WHERE id=? AND state=? AND picked_by=?""",
                (FAILED, error, ts, ts, job_row["id"], ACTIVE, job_row["picked_by"]),
            )
        return (FAILED, None) if res.rowcount == 1 else (None, None)

    delay = policy.delay_for(attempts)
    with conn:
        res = conn.execute(
            """UPDATE jobs
               SET state=?, last_error=?, updated_at=?, next_run_at=?, picked_by=NULL, lease_expires_at=NULL
               WHERE id=? AND state=? AND picked_by=?""",
            (QUEUED, error, ts, iso_in_utc_from_seconds_from_now(delay), job_row["id"], ACTIVE, job_row["picked_by"]),
        )
    return (QUEUED, delay) if res.rowcount == 1 else (None, None)


def reclaim_expired(conn) -> List[str]:
    """Treat active jobs whose lease ran out as failed attempts."""
    rows = conn.execute(
        "SELECT * FROM jobs WHERE state=? AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?",
        (ACTIVE, now_iso()),
    ).fetchall()
    return [r["id"] for r in rows if fail_attempt(conn, r, "lease expired")[0] is not None]


def prune_terminal(conn, keep: int) -> int:
    """Keep only the newest `keep` completed and `keep` failed jobs."""
    deleted = 0
    with conn:
        for s in (COMPLETED, FAILED):
            res = conn.execute(
                """DELETE FROM jobs WHERE state=? AND id NOT IN (
                       SELECT id FROM jobs WHERE state=? ORDER BY finished_at DESC LIMIT ?
                   )""",
                (s, s, int(keep)),
            )
            deleted += res.rowcount
    return deleted


# ---------- Queries ----------
def row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        type=row["type"],
        payload=json.loads(row["payload"]),
        meta=json.loads(row["meta"]),
        state=row["state"],
        result=json.loads(row["result"]) if row["result"] is not None else None,
        error=row["last_error"] if row["state"] == FAILED else None,
        priority=row["priority"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        created_at=row["created_at"],
        processed_at=row["processed_at"],
        finished_at=row["finished_at"],
    )


def get_job(conn, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
    return row_to_job(row) if row else None


def list_jobs(conn, state: Optional[str] = None, limit: int = 100) -> Iterable[sqlite3.Row]:
    if state:
        return conn.execute(
            "SELECT * FROM jobs WHERE state=? ORDER BY rowid DESC LIMIT ?",
            (state, int(limit)),
        ).fetchall()
    return conn.execute("SELECT * FROM jobs ORDER BY rowid DESC LIMIT ?", (int(limit),)).fetchall()


def counts(conn) -> Dict[str, int]:
    out = {}
    for s in STATES:
        out[s] = conn.execute(
            "SELECT COUNT(1) AS c FROM jobs WHERE state=?",
            (s,),
        ).fetchone()["c"]
    return out
