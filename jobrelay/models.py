from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Job States
QUEUED = "queued"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

STATES = (QUEUED, ACTIVE, COMPLETED, FAILED)
TERMINAL_STATES = frozenset({COMPLETED, FAILED})

COMPLETION = "completion"
JOB_TYPES = frozenset({COMPLETION})

# active -> queued is a re-delivery after a failed attempt; terminal states have no exits
_TRANSITIONS = {
    QUEUED: frozenset({ACTIVE}),
    ACTIVE: frozenset({QUEUED, COMPLETED, FAILED}),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
}


class IllegalTransition(Exception):
    def __init__(self, job_id: str, src: str, dst: str):
        super().__init__(f"Job {job_id}: illegal transition {src} -> {dst}")
        self.job_id = job_id
        self.src = src
        self.dst = dst


def can_transition(src: str, dst: str) -> bool:
    return dst in _TRANSITIONS.get(src, frozenset())


@dataclass
class Job:
    id: str
    type: str = COMPLETION
    payload: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)
    state: str = QUEUED
    result: Any = None
    error: Optional[str] = None
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 1
    created_at: str = ""
    processed_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, dst: str):
        if not can_transition(self.state, dst):
            raise IllegalTransition(self.id, self.state, dst)
        self.state = dst

    def to_status(self) -> Dict[str, Any]:
        """Caller-visible shape returned by the status endpoint."""
        out: Dict[str, Any] = {
            "jobId": self.id,
            "state": self.state,
            "attempts": self.attempts,
            "timestamps": {
                "createdAt": self.created_at,
                "processedAt": self.processed_at,
                "finishedAt": self.finished_at,
            },
        }
        if self.state == COMPLETED:
            out["result"] = self.result
        elif self.state == FAILED:
            out["error"] = self.error
        return out

    def to_dict(self) -> Dict[str, Any]:
        """Full record, as the sidecar serves it."""
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "meta": self.meta,
            "state": self.state,
            "result": self.result,
            "error": self.error,
            "priority": self.priority,
            "attempts": self.attempts,
            "maxAttempts": self.max_attempts,
            "createdAt": self.created_at,
            "processedAt": self.processed_at,
            "finishedAt": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        state = data.get("state", QUEUED)
        if state not in STATES:
            raise ValueError(f"Unknown job state: {state!r}")
        return cls(
            id=data["id"],
            type=data.get("type", COMPLETION),
            payload=data.get("payload") or {},
            meta=data.get("meta") or {},
            state=state,
            result=data.get("result"),
            error=data.get("error"),
            priority=int(data.get("priority") or 0),
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("maxAttempts") or 1),
            created_at=data.get("createdAt") or "",
            processed_at=data.get("processedAt"),
            finished_at=data.get("finishedAt"),
        )
