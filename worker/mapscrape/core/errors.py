"""Error taxonomy for the scrape pipeline."""


class PipelineError(RuntimeError):
    """Base class for errors raised by the pipeline."""


class SourceFetchError(PipelineError):
    """Raised when the listing provider is unreachable or answers with an error."""


class PersistenceError(PipelineError):
    """Raised when the store rejects a read or write."""


class VerificationError(PipelineError):
    """Raised when a website liveness check fails or times out."""

    def __init__(self, url: str, reason: str, status_code: int = 0) -> None:
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason
        self.status_code = status_code


class CacheLookupError(PipelineError):
    """Raised by cache reads; callers treat it as a cache miss."""


class InvalidTransitionError(PipelineError):
    """Raised when a session is asked to move to a state it cannot reach."""

    def __init__(self, session_id: str, current: str, requested: str) -> None:
        super().__init__(f"session {session_id} cannot go from {current} to {requested}")
        self.session_id = session_id
        self.current = current
        self.requested = requested


class SessionNotFoundError(PipelineError):
    """Raised when a session id is unknown to this worker or owned by someone else."""
