"""Submission gateway and status lookups.

The backend is chosen once, when the gateway is built:

1. durable queue, if a database is configured and opens cleanly;
2. otherwise the ephemeral queue (in-process) or the sidecar proxy.

Per request, a `BackendUnavailable` from the chosen store degrades to a
mock job: an id with the ``mock-`` prefix that is already completed and was
never stored anywhere.
"""
from typing import Any, Dict, Optional

from loguru import logger

from .backends import DurableQueue, EphemeralQueue, JobStore, SidecarProxy
from .config import Settings
from .engine import EngineClient
from .errors import BackendUnavailable, JobNotFound, ValidationError
from .models import COMPLETION, COMPLETED, JOB_TYPES
from .utils import is_mock_id, mock_job_id, now_iso

MOCK_RESULT = {"message": "Mock job completed (sidecar unavailable)"}
MOCK_NOTE = "Sidecar unavailable - using mock mode"


def validate_payload(payload) -> Dict[str, Any]:
    if not isinstance(payload, dict) or not payload:
        raise ValidationError("payload must be a non-empty object")
    prompt = payload.get("prompt")
    messages = payload.get("messages")
    has_prompt = isinstance(prompt, str) and prompt.strip()
    has_messages = isinstance(messages, list) and len(messages) > 0
    if not (has_prompt or has_messages):
        raise ValidationError("payload requires a non-empty 'prompt' or 'messages'")
    # meta is server-side only
    return {k: v for k, v in payload.items() if k != "meta"}


def mock_status(job_id: str) -> Dict[str, Any]:
    return {
        "jobId": job_id,
        "state": COMPLETED,
        "attempts": 0,
        "result": dict(MOCK_RESULT),
        "timestamps": {"createdAt": None, "processedAt": None, "finishedAt": now_iso()},
    }


class Gateway:
    def __init__(self, store: JobStore):
        self.store = store

    @property
    def kind(self) -> str:
        return self.store.kind

    def submit(self, payload, requester: str, priority: int = 0, job_type: str = COMPLETION) -> Dict[str, Any]:
        """Enqueue a job; returns ``{jobId, status}`` without waiting on it."""
        if job_type not in JOB_TYPES:
            raise ValidationError(f"Unknown job type: {job_type}")
        if not requester:
            raise ValidationError("requester is required")
        try:
            priority = int(priority or 0)
        except (TypeError, ValueError):
            raise ValidationError("priority must be an integer")
        payload = validate_payload(payload)
        meta = {"requester": requester}

        try:
            job = self.store.enqueue(job_type, payload, meta, priority=priority)
        except BackendUnavailable as e:
            job_id = mock_job_id()
            logger.warning("[gateway] {} backend unavailable ({}); returning mock job {}", self.kind, e, job_id)
            return {"jobId": job_id, "status": COMPLETED, "note": MOCK_NOTE}

        logger.info("[gateway] Job {} queued on {} backend for {}", job.id, self.kind, requester)
        return {"jobId": job.id, "status": job.state}

    def status(self, job_id: str) -> Dict[str, Any]:
        # mock ids never reached a store
        if is_mock_id(job_id):
            return mock_status(job_id)
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job.to_status()

    def list_jobs(self, limit: int = 100):
        return [j.to_status() for j in self.store.list_jobs(limit=limit)]

    def health(self) -> Dict[str, Any]:
        return {"status": "ok", "backend": self.kind, "counts": self.store.counts(), "timestamp": now_iso()}

    def close(self):
        self.store.close()


def select_store(settings: Settings, engine=None, transport=None) -> JobStore:
    backend = settings.backend
    if backend == "auto":
        backend = "durable" if settings.db_path else "proxy"

    if backend == "durable":
        if not settings.db_path:
            logger.warning("[gateway] JOBRELAY_DB is not set; durable queue unavailable")
        else:
            try:
                return DurableQueue(settings.db_path)
            except BackendUnavailable as e:
                logger.warning("[gateway] {}; falling back to sidecar", e)
        backend = "proxy"

    if backend == "ephemeral":
        engine = engine or EngineClient(settings.engine_url, timeout=settings.timeout, default_model=settings.model)
        return EphemeralQueue(engine)

    return SidecarProxy(settings.sidecar_url, timeout=settings.timeout, transport=transport)


def build_gateway(settings: Optional[Settings] = None, engine=None, transport=None) -> Gateway:
    settings = settings or Settings.from_env()
    store = select_store(settings, engine=engine, transport=transport)
    logger.info("[gateway] Using {} backend", store.kind)
    return Gateway(store)
