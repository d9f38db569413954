"""Error kinds and the unified error type for the PS control plane."""

from enum import Enum
from typing import Iterable, List, Optional


class ErrorKind(Enum):
    """Kinds of control-plane failures."""

    CONFIGURATION = "configuration"
    CONNECTIVITY = "connectivity"
    CONSISTENCY = "consistency"
    CHECKPOINT_NOT_FOUND = "checkpoint_not_found"
    CHECKPOINT_CORRUPT = "checkpoint_corrupt"
    TASK_FAILURE = "task_failure"
    TIMEOUT = "timeout"
    KILLED = "killed"

    @property
    def retryable(self) -> bool:
        """Whether an operation failing with this kind may be retried."""
        return self in (ErrorKind.CONNECTIVITY, ErrorKind.TIMEOUT)


class ClusterError(Exception):
    """
    Single error type raised by every control-plane operation.

    Callers distinguish failures through ``kind`` (and ``retryable``); the
    subclasses below only pin the kind for convenience.

    Attributes:
        kind: The error kind
        message: Human readable description
        cause: Underlying exception, if any
    """

    default_kind: Optional[ErrorKind] = None

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        cause: Optional[BaseException] = None
    ):
        kind = kind or self.default_kind
        if kind is None:
            raise TypeError("ClusterError requires an error kind")

        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def __str__(self) -> str:
        text = f"[{self.kind.value}] {self.message}"
        if self.cause is not None:
            text += f" (caused by {type(self.cause).__name__}: {self.cause})"
        return text


class ConfigurationError(ClusterError):
    """Invalid or duplicate matrix/model context, or misuse of the API."""
    default_kind = ErrorKind.CONFIGURATION


class ConnectivityError(ClusterError):
    """Master, PS shard or worker unreachable after retries."""
    default_kind = ErrorKind.CONNECTIVITY


class ConsistencyError(ClusterError):
    """Out-of-order or duplicate checkpoint publication."""
    default_kind = ErrorKind.CONSISTENCY


class CheckpointNotFoundError(ClusterError):
    default_kind = ErrorKind.CHECKPOINT_NOT_FOUND


class CheckpointCorruptError(ClusterError):
    default_kind = ErrorKind.CHECKPOINT_CORRUPT


class TaskFailureError(ClusterError):
    """One or more dispatched tasks failed."""

    default_kind = ErrorKind.TASK_FAILURE

    def __init__(
        self,
        message: str,
        task_ids: Optional[Iterable[str]] = None,
        cause: Optional[BaseException] = None
    ):
        super().__init__(message, cause=cause)
        self.task_ids: List[str] = sorted(task_ids or [])


def wrap_error(
    exc: BaseException,
    kind: ErrorKind,
    message: Optional[str] = None
) -> ClusterError:
    """Return ``exc`` unchanged if it is already a ClusterError, else wrap it."""
    if isinstance(exc, ClusterError):
        return exc
    return ClusterError(message or str(exc), kind=kind, cause=exc)
