"""Job stores behind the gateway.

All three share the `JobStore` contract so the gateway can swap them:

- `DurableQueue`: SQLite-backed, persistent, consumed by `WorkerPool`.
- `EphemeralQueue`: in-process dict, each job run on its own thread.
- `SidecarProxy`: forwards to an `EphemeralQueue` running in the sidecar.
"""
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from .config import RetryPolicy
from .db import connect_db, init_db
from .errors import BackendUnavailable
from .models import Job, QUEUED, ACTIVE, COMPLETED, FAILED, STATES
from . import repository
from .utils import new_job_id, now_iso


class JobStore(ABC):
    kind = "abstract"

    @abstractmethod
    def enqueue(self, job_type: str, payload: Dict[str, Any], meta: Dict[str, Any], priority: int = 0) -> Job:
        """Store a new job and return it in its initial state."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]:
        """Current snapshot, or None if this store does not know the id."""

    @abstractmethod
    def list_jobs(self, limit: int = 100) -> List[Job]:
        """Most recent jobs, newest first."""

    def counts(self) -> Dict[str, int]:
        return {}

    def close(self):
        pass


class DurableQueue(JobStore):
    kind = "durable"

    def __init__(self, db_path: str, policy: Optional[RetryPolicy] = None):
        self.db_path = db_path
        try:
            init_db(db_path)
            conn = connect_db(db_path)
            try:
                self.policy = policy or repository.get_policy(conn)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Durable queue at {db_path} unavailable: {e}")

    def _conn(self):
        return connect_db(self.db_path)

    def enqueue(self, job_type, payload, meta, priority=0):
        conn = self._conn()
        try:
            job_id = repository.enqueue_job(
                conn, job_type=job_type, payload=payload, meta=meta,
                priority=priority, policy=self.policy,
            )
            return repository.get_job(conn, job_id)
        except sqlite3.Error as e:
            raise BackendUnavailable(f"Durable enqueue failed: {e}")
        finally:
            conn.close()

    def get_job(self, job_id):
        conn = self._conn()
        try:
            return repository.get_job(conn, job_id)
        finally:
            conn.close()

    def list_jobs(self, limit=100):
        conn = self._conn()
        try:
            return [repository.row_to_job(r) for r in repository.list_jobs(conn, limit=limit)]
        finally:
            conn.close()

    def counts(self):
        conn = self._conn()
        try:
            return repository.counts(conn)
        finally:
            conn.close()


class EphemeralQueue(JobStore):
    """Process-local store. Jobs are lost on restart and invisible to other processes.

    There is no cap on how many jobs run at once: every enqueue spawns a
    thread. Fine for low volume; use the durable queue beyond that.
    """

    kind = "ephemeral"

    def __init__(self, engine):
        self.engine = engine
        self._jobs: Dict[str, Job] = {}
        self._done: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    def enqueue(self, job_type, payload, meta, priority=0):
        job = Job(
            id=new_job_id(),
            type=job_type,
            payload=payload,
            meta=meta,
            priority=priority,
            max_attempts=1,
            created_at=now_iso(),
        )
        with self._lock:
            self._jobs[job.id] = job
            self._done[job.id] = threading.Event()
            snapshot = replace(job)

        t = threading.Thread(target=self._process, args=(job.id,), name=f"ephemeral-{job.id}", daemon=True)
        t.start()
        return snapshot

    def _process(self, job_id: str):
        with self._lock:
            job = self._jobs[job_id]
            job.transition(ACTIVE)
            job.attempts = 1
            job.processed_at = now_iso()
            job_type, payload = job.type, job.payload

        try:
            result = self.engine.run(job_type, payload)
        except Exception as e:
            with self._lock:
                job.transition(FAILED)
                job.error = str(e) or type(e).__name__
                job.finished_at = now_iso()
            logger.warning("[ephemeral] Job {} failed: {}", job_id, job.error)
        else:
            with self._lock:
                job.transition(COMPLETED)
                job.result = result
                job.finished_at = now_iso()
            logger.info("[ephemeral] Job {} completed.", job_id)
        finally:
            self._done[job_id].set()

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job is terminal. False on timeout or unknown id."""
        done = self._done.get(job_id)
        return done.wait(timeout) if done else False

    def get_job(self, job_id):
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def list_jobs(self, limit=100):
        with self._lock:
            jobs = list(self._jobs.values())[-limit:]
            return [replace(j) for j in reversed(jobs)]

    def counts(self):
        out = {s: 0 for s in STATES}
        with self._lock:
            for j in self._jobs.values():
                out[j.state] += 1
        return out


class SidecarProxy(JobStore):
    """Talks to the sidecar service over HTTP."""

    kind = "proxy"

    def __init__(self, base_url: str, timeout: float = 20.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def enqueue(self, job_type, payload, meta, priority=0):
        body = {"type": job_type, "payload": payload, "meta": meta, "priority": priority}
        try:
            resp = self._client.post("/enqueue", json=body)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise BackendUnavailable(f"Sidecar at {self.base_url} unavailable: {e}")
        if not data.get("jobId"):
            raise BackendUnavailable(f"Sidecar at {self.base_url} returned no jobId")
        return Job(
            id=data["jobId"], type=job_type, payload=payload, meta=meta,
            state=data.get("status", QUEUED), priority=priority,
        )

    def get_job(self, job_id):
        try:
            resp = self._client.get(f"/jobs/{job_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return Job.from_dict(resp.json()["job"])
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.warning("[gateway] Sidecar lookup for {} failed: {}", job_id, e)
            return None

    def list_jobs(self, limit=100):
        try:
            resp = self._client.get("/jobs")
            resp.raise_for_status()
            return [Job.from_dict(j) for j in resp.json()["jobs"]][:limit]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            raise BackendUnavailable(f"Sidecar at {self.base_url} unavailable: {e}")

    def close(self):
        self._client.close()
