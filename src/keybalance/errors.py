from enum import Enum


class KeyBalanceError(Exception):
    """Base class for errors raised by keybalance."""

    status_code = 500


class NoAvailableKeys(KeyBalanceError):
    """No enabled key survived filtering."""

    status_code = 503

    def __init__(self, message: str = "No available keys", excluded=()):
        super().__init__(message)
        self.excluded = frozenset(excluded)


class FailoverExhausted(KeyBalanceError):
    status_code = 503

    def __init__(self, failed_id: int, attempts: int):
        super().__init__(f"All {attempts} failover attempts exhausted after key {failed_id} failed")
        self.failed_id = failed_id
        self.attempts = attempts


class UpstreamError(KeyBalanceError):
    """Raised by upstream invokers. status is None for transport failures."""

    def __init__(self, status: int | None, message: str = ""):
        super().__init__(f"upstream error: {status} - {message}" if status else message)
        self.status = status
        self.message = message


class ErrorKind(str, Enum):
    TERMINAL = "terminal"
    RETRYABLE = "retryable"


class TaggedUpstreamError(KeyBalanceError):
    """An upstream failure attributed to the key that produced it.

    Callers pattern-match on kind/key_id to decide whether to fail over.
    """

    status_code = 502

    def __init__(self, kind: ErrorKind, key_id: int, cause: BaseException):
        super().__init__(f"{kind.value} upstream failure on key {key_id}: {cause}")
        self.kind = kind
        self.key_id = key_id
        self.cause = cause

    @property
    def status(self) -> int | None:
        return getattr(self.cause, "status", None)

    @property
    def terminal(self) -> bool:
        return self.kind is ErrorKind.TERMINAL


class FeedbackPersistenceError(KeyBalanceError):
    """Writing a feedback sample failed. Logged by the store, never raised to callers."""

    def __init__(self, key_id: int, cause: BaseException):
        super().__init__(f"failed to persist feedback for key {key_id}: {cause}")
        self.key_id = key_id
        self.cause = cause
