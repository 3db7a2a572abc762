"""Client for the upstream completion engine.

The engine only understands a flat ``{model, prompt}`` body, so structured
conversations are collapsed to a single prompt before dispatch.
"""
from typing import Any, Dict, Optional

import httpx

from .config import DEFAULT_MODEL
from .errors import PermanentUpstreamError, TransientUpstreamError
from .models import COMPLETION

COMPLETION_PATH = "/api/completion"


def flatten_messages(messages) -> str:
    """First user message wins; otherwise every message's content, one per line."""
    for m in messages:
        if isinstance(m, dict) and m.get("role") == "user" and m.get("content"):
            return str(m["content"])
    return "\n".join(str(m.get("content", "")) for m in messages if isinstance(m, dict))


def normalize_payload(payload: Dict[str, Any], default_model: str = DEFAULT_MODEL) -> Dict[str, Any]:
    model = payload.get("model") or default_model
    messages = payload.get("messages")
    if isinstance(messages, list) and messages:
        prompt = flatten_messages(messages)
    else:
        prompt = payload.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise PermanentUpstreamError("Payload has no prompt or messages")
    return {"model": model, "prompt": prompt}


class EngineClient:
    def __init__(
        self,
        base_url: str,
        timeout: float = 20.0,
        default_model: str = DEFAULT_MODEL,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_model = default_model
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def complete(self, payload: Dict[str, Any]) -> Any:
        body = normalize_payload(payload, self.default_model)
        try:
            resp = self._client.post(COMPLETION_PATH, json=body)
        except httpx.TimeoutException as e:
            raise TransientUpstreamError(f"Engine timed out after {self.timeout}s: {e}")
        except httpx.HTTPError as e:
            raise TransientUpstreamError(f"Engine unreachable: {e}")

        if resp.status_code >= 500:
            raise TransientUpstreamError(f"Engine error {resp.status_code}: {resp.text[:200]}")
        if resp.status_code >= 400:
            raise PermanentUpstreamError(f"Engine error {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError:
            raise TransientUpstreamError(f"Engine returned a non-JSON body ({resp.status_code})")

    def run(self, job_type: str, payload: Dict[str, Any]) -> Any:
        """Execute one job; raises UpstreamError subclasses on failure."""
        if job_type != COMPLETION:
            raise PermanentUpstreamError(f"Unknown job type: {job_type}")
        return self.complete(payload)

    def close(self):
        self._client.close()
