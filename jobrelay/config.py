import os
from dataclasses import dataclass
from typing import Optional

# Queue tunables, stored in the durable queue's `config` table
DEFAULT_CONFIG = {
    "max_attempts": "3",
    "backoff_delay": "1.0",        # seconds before the 2nd attempt
    "backoff_multiplier": "2",
    "timeout_seconds": "20",
    "concurrency": "3",
    "retention": "1000",           # terminal jobs kept per outcome
    "lease_seconds": "120",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

BACKENDS = ("auto", "durable", "ephemeral", "proxy")

DEFAULT_MODEL = "llama-3.3-70b"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.base_delay * (self.multiplier ** (attempt - 1))

    @classmethod
    def from_config(cls, cfg: dict) -> "RetryPolicy":
        return cls(
            max_attempts=int(cfg.get("max_attempts", DEFAULT_CONFIG["max_attempts"])),
            base_delay=float(cfg.get("backoff_delay", DEFAULT_CONFIG["backoff_delay"])),
            multiplier=float(cfg.get("backoff_multiplier", DEFAULT_CONFIG["backoff_multiplier"])),
        )


def validate_config_value(key: str, value: str) -> str:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be numeric, got {value!r}")
    if number < 0:
        raise ValueError(f"{key} must be >= 0")
    if key in ("max_attempts", "concurrency", "retention", "timeout_seconds", "lease_seconds"):
        if number != int(number) or number < 1:
            raise ValueError(f"{key} must be a positive integer")
        return str(int(number))
    if key == "backoff_multiplier" and number < 1:
        raise ValueError("backoff_multiplier must be >= 1")
    return str(value)


@dataclass(frozen=True)
class Settings:
    """Deployment settings, read once at startup."""

    db_path: Optional[str] = None
    backend: str = "auto"
    sidecar_url: str = "http://localhost:4800"
    engine_url: str = "http://localhost:15602"
    model: str = DEFAULT_MODEL
    timeout: float = 20.0

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        backend = env.get("JOBRELAY_BACKEND", "auto").strip().lower()
        if backend not in BACKENDS:
            raise ValueError(f"JOBRELAY_BACKEND must be one of {', '.join(BACKENDS)}")
        return cls(
            db_path=env.get("JOBRELAY_DB") or None,
            backend=backend,
            sidecar_url=env.get("SIDECAR_URL", cls.sidecar_url).rstrip("/"),
            engine_url=env.get("ENGINE_URL", cls.engine_url).rstrip("/"),
            model=env.get("JOBRELAY_MODEL", DEFAULT_MODEL),
            timeout=float(env.get("JOBRELAY_TIMEOUT", "20")),
        )
