from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .backends import EphemeralQueue
from .errors import BackendUnavailable, JobNotFound, ValidationError
from .gateway import Gateway
from .models import COMPLETED
from .utils import now_iso


class SubmitRequest(BaseModel):
    endpoint: Optional[str] = None
    payload: Any = None
    priority: int = 0


class EnqueueRequest(BaseModel):
    type: str = Field(min_length=1)
    payload: Dict[str, Any]
    meta: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _install_error_handlers(app: FastAPI):
    @app.exception_handler(ValidationError)
    async def handle_validation(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return _error(400, f"{loc}: {first.get('msg', 'invalid request')}" if loc else "invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(JobNotFound)
    async def handle_not_found(request: Request, exc: JobNotFound):
        return _error(404, "Job not found")

    @app.exception_handler(BackendUnavailable)
    async def handle_unavailable(request: Request, exc: BackendUnavailable):
        return _error(503, str(exc))


def create_app(gateway: Gateway) -> FastAPI:
    app = FastAPI(title="jobrelay gateway")
    app.state.gateway = gateway
    _install_error_handlers(app)

    def _requester(x_user_id: Optional[str]) -> str:
        if not x_user_id or not x_user_id.strip():
            raise HTTPException(status_code=401, detail="Missing caller identity")
        return x_user_id.strip()

    @app.get("/health")
    def health():
        return gateway.health()

    @app.post("/api/jobs")
    def submit(body: SubmitRequest, x_user_id: Optional[str] = Header(default=None)):
        requester = _requester(x_user_id)
        out = gateway.submit(body.payload, requester=requester, priority=body.priority)
        status_code = 200 if out["status"] == COMPLETED else 202
        return JSONResponse(status_code=status_code, content={"success": True, **out})

    @app.get("/status/{job_id}")
    def status(job_id: str, x_user_id: Optional[str] = Header(default=None)):
        _requester(x_user_id)
        return {"success": True, "job": gateway.status(job_id)}

    @app.get("/api/jobs")
    def list_jobs(x_user_id: Optional[str] = Header(default=None)):
        _requester(x_user_id)
        jobs = gateway.list_jobs()
        return {"success": True, "count": len(jobs), "jobs": jobs}

    return app


def create_sidecar_app(store: EphemeralQueue) -> FastAPI:
    """The ephemeral queue exposed as a service for gateways to proxy to."""
    app = FastAPI(title="jobrelay sidecar")
    app.state.store = store
    _install_error_handlers(app)

    @app.get("/health")
    def health():
        counts = store.counts()
        return {"status": "ok", "timestamp": now_iso(), "queueLength": sum(counts.values()), "counts": counts}

    @app.post("/enqueue")
    def enqueue(body: EnqueueRequest):
        if not body.payload:
            raise ValidationError("type and payload required")
        job = store.enqueue(body.type, body.payload, body.meta, priority=body.priority)
        return {"success": True, "jobId": job.id, "status": job.state}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str):
        job = store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return {"success": True, "job": job.to_dict()}

    @app.get("/jobs")
    def list_jobs():
        jobs = [j.to_dict() for j in store.list_jobs(limit=100)]
        return {"success": True, "count": len(jobs), "jobs": jobs}

    return app
