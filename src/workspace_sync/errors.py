"""Client-side error taxonomy.

- TransientNetworkError: not attempted/confirmed; safe to retry, the operation stays queued.
- WriteConflictError: backend contention (deadlock, order index collision); bounded retry with jitter.
- ValidationRejectedError / NotFoundError: not retried; the optimistic change is rolled back.
- BackendError: any other non-2xx answer; not retried.
- CorruptQueueError: the persisted queue cannot be decoded; stops that workspace's queue.
"""

from __future__ import annotations


class SyncError(RuntimeError):
    retryable: bool = False
    kind: str = "error"

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(SyncError):
    retryable = True
    kind = "transient_network"


class WriteConflictError(SyncError):
    retryable = True
    kind = "write_conflict"


class ValidationRejectedError(SyncError):
    kind = "validation_error"


class NotFoundError(SyncError):
    kind = "not_found"


class BackendError(SyncError):
    kind = "backend_error"


class TemporaryIdError(SyncError):
    kind = "temporary_id"


class CreationPlanError(SyncError):
    kind = "creation_plan"


class CorruptQueueError(SyncError):
    kind = "corrupt_queue"

    def __init__(self, message: str, *, workspace_id: str | None = None) -> None:
        super().__init__(message)
        self.workspace_id = workspace_id


# Markers the backend uses for lock contention and sibling order collisions.
_CONFLICT_MARKERS = (
    "deadlock",
    "duplicate key",
    "unique constraint",
    "files_workspace_parent_order_idx",
    "could not serialize access",
)


def is_write_conflict_message(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _CONFLICT_MARKERS)


def classify_http_error(status_code: int, message: str) -> SyncError:
    if is_write_conflict_message(message) or status_code == 409:
        return WriteConflictError(message, status_code=status_code)

    mapping: dict[int, type[SyncError]] = {
        400: ValidationRejectedError,
        404: NotFoundError,
        408: TransientNetworkError,
        410: NotFoundError,
        422: ValidationRejectedError,
        429: TransientNetworkError,
        502: TransientNetworkError,
        503: TransientNetworkError,
        504: TransientNetworkError,
    }
    error_cls = mapping.get(status_code, BackendError)
    return error_cls(message or f"HTTP error! status: {status_code}", status_code=status_code)


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, SyncError) and exc.retryable


def is_write_conflict(exc: BaseException) -> bool:
    return isinstance(exc, WriteConflictError)
