import logging
from typing import Optional

LOGGER = logging.getLogger(__name__)


class SellableError(Exception):
    """Base class for every error raised by the assistant core."""


class ConfigurationError(SellableError):
    """
    Missing or invalid configuration (for example no API key).
    These fail fast and are never retried.
    """


class BackendError(SellableError):

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientBackendError(BackendError):
    """5xx, rate limiting, connection resets and timeouts. Safe to retry."""


class ThreadNotFoundError(BackendError):
    pass


class RunError(SellableError):
    pass


class RunFailedError(RunError):
    """
    A run reached a terminal state other than ``completed``.
    The backend-provided reason is kept on the exception.
    """

    def __init__(self, run_id: str, status: str, reason: Optional[str] = None, code: Optional[str] = None):
        self.run_id = run_id
        self.status = status
        self.reason = reason or "Unknown error"
        self.code = code
        super().__init__(f"Run {run_id} {status}: {self.reason}")


class RunTimeoutError(RunError):

    def __init__(self, run_id: str, attempts: int):
        self.run_id = run_id
        self.attempts = attempts
        super().__init__(f"Polling timed out for run {run_id} after {attempts} attempts")


class DataIntegrityError(SellableError):
    """
    The backend answered but the data is not usable, e.g. the newest message
    is not from the assistant or has no text. Callers usually fall back to a
    canned reply.
    """


class InvalidContextError(DataIntegrityError):
    pass
