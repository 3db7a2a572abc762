import secrets
import time
import uuid
from datetime import datetime, timezone, timedelta

MOCK_PREFIX = "mock-"


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def iso_in_utc_from_seconds_from_now(seconds: float) -> str:
    """Return UTC ISO time `seconds` from now, with 'Z' suffix."""
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat(timespec="microseconds").replace("+00:00", "Z")


def new_job_id() -> str:
    return f"job-{uuid.uuid4().hex}"


def mock_job_id() -> str:
    # e.g. mock-1731229954123-9f2c1a
    return f"{MOCK_PREFIX}{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def is_mock_id(job_id: str) -> bool:
    return bool(job_id) and job_id.startswith(MOCK_PREFIX)
