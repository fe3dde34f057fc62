"""Error taxonomy shared by the sync, presence and session layers."""


class AtriumError(Exception):
    """Base class for all atrium-sync errors."""


class NetworkError(AtriumError):
    """Transient failure talking to the server. Always retryable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(AtriumError):
    """The server rejected the supplied credentials."""

    def __init__(self, message: str = "Invalid credentials", status_code: int = 401) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApiError(AtriumError):
    """Non-transient error response, or a body that could not be decoded."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedCacheError(AtriumError):
    """A persisted blob could not be parsed."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Malformed cache entry {key!r}: {reason}")
        self.key = key
        self.reason = reason


class ExhaustedRetriesError(AtriumError):
    """The heartbeat gave up after too many consecutive failures."""

    def __init__(self, failures: int) -> None:
        super().__init__(f"Heartbeat stopped after {failures} consecutive failures")
        self.failures = failures
