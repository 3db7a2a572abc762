import json
import signal
import threading
import time

from loguru import logger

from .db import connect_db, init_db
from .errors import UpstreamError
from .models import FAILED
from .repository import (
    claim_one, complete, fail_attempt, get_config, prune_terminal, reclaim_expired,
)


class WorkerPool:
    """Fixed number of slots pulling from the durable queue.

    Each slot is a thread with its own connection; `claim_one` makes sure a
    job is only ever held by one slot.
    """

    def __init__(self, db_path, engine, count=None, poll_interval=0.5):
        self.db_path = db_path
        self.engine = engine
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._threads = []

        init_db(db_path)
        conn = connect_db(db_path)
        try:
            cfg = get_config(conn)
        finally:
            conn.close()
        self.count = int(count or cfg.get("concurrency", "3"))
        self.lease_seconds = float(cfg.get("lease_seconds", "120"))
        self.retention = int(cfg.get("retention", "1000"))

    def process_one(self, conn, name: str) -> bool:
        """Claim and run a single job. Returns False when nothing was eligible."""
        reclaim_expired(conn)
        job = claim_one(conn, worker_name=name, lease_seconds=self.lease_seconds)
        if not job:
            return False

        logger.info("[{}] Executing job {} (attempt {}/{})", name, job["id"], job["attempts"], job["max_attempts"])
        try:
            result = self.engine.run(job["type"], json.loads(job["payload"]))
        except Exception as e:
            if not isinstance(e, UpstreamError):
                logger.exception("[{}] Job {} raised", name, job["id"])
            retryable = getattr(e, "retryable", True)
            outcome, delay = fail_attempt(conn, job, str(e) or type(e).__name__, retryable=retryable)
            if outcome is None:
                logger.warning("[{}] Job {} was reclaimed before it finished; failure dropped.", name, job["id"])
            elif outcome == FAILED:
                logger.warning("[{}] Job {} failed: {}", name, job["id"], e)
                prune_terminal(conn, self.retention)
            else:
                logger.info("[{}] Job {} failed ({}), retrying in {}s", name, job["id"], e, delay)
            return True

        if complete(conn, job, result):
            logger.info("[{}] Job {} completed.", name, job["id"])
            prune_terminal(conn, self.retention)
        else:
            logger.warning("[{}] Job {} was reclaimed before it finished; result dropped.", name, job["id"])
        return True

    def _loop(self, name: str):
        conn = connect_db(self.db_path)
        try:
            while not self._stop.is_set():
                try:
                    if not self.process_one(conn, name):
                        self._stop.wait(self.poll_interval)
                except Exception:
                    logger.exception("[{}] Unexpected error", name)
                    self._stop.wait(1)
        finally:
            conn.close()
        logger.info("[{}] Worker stopped.", name)

    def start(self):
        self._stop.clear()
        for i in range(self.count):
            t = threading.Thread(target=self._loop, args=(f"worker-{i+1}",), daemon=True)
            t.start()
            self._threads.append(t)
            logger.info("[System] Started worker-{}", i + 1)

    def request_stop(self):
        """Ask every slot to exit after the job in hand."""
        self._stop.set()

    def stop(self, timeout=None):
        self.request_stop()
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)


def setup_signal_handlers(pool: WorkerPool):
    def _handler(signum, frame):
        logger.info("[Main] Received signal {}. Stopping workers", signum)
        pool.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _handler)


def start_workers(db_path, engine, count=None):
    """Run a worker pool until interrupted."""
    pool = WorkerPool(db_path, engine, count=count)
    setup_signal_handlers(pool)
    pool.start()

    try:
        while pool.running:
            time.sleep(0.5)
    finally:
        pool.stop()
        logger.info("[System] All workers stopped gracefully.")
