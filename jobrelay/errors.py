class JobRelayError(Exception):
    """Base class for all jobrelay errors."""


class ValidationError(JobRelayError):
    """Submission rejected before anything was enqueued."""


class BackendUnavailable(JobRelayError):
    """A queue backend could not be reached; the gateway moves to the next tier."""


class JobNotFound(JobRelayError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class UpstreamError(JobRelayError):
    retryable = True


class TransientUpstreamError(UpstreamError):
    """Network failure, timeout or 5xx from the completion engine."""

    retryable = True


class PermanentUpstreamError(UpstreamError):
    """4xx or malformed payload; retrying would not help."""

    retryable = False
