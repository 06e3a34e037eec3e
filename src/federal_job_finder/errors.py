"""Error taxonomy shared by the store, the API client and the coordinator."""


class JobFinderError(Exception):
    """Base error. ``user_message`` is safe to show in a retryable error state."""

    retryable = False
    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, user_message: str | None = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class NotFoundError(JobFinderError):
    """Job ID absent from the remote API or the local store."""

    user_message = "This job could not be found. It may have been removed."

    def __init__(self, job_id: str, message: str | None = None):
        super().__init__(message or f"Job {job_id} not found")
        self.job_id = job_id


class TransientError(JobFinderError):
    """Timeout, connection drop or 5xx. Safe to retry later."""

    retryable = True
    user_message = "The job service is temporarily unavailable. Please try again."

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(TransientError):
    """HTTP 429. Callers should stop calling the API for a while."""

    user_message = "Too many requests. Please wait a moment and try again."

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class FatalError(JobFinderError):
    """Malformed payload or rejected credentials. Retrying will not help."""

    user_message = "The job service returned an unexpected response."

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigError(JobFinderError):
    """Configuration file could not be read or parsed."""
