from __future__ import annotations

import random

import pytest

from conftest import SleepRecorder, make_item
from workspace_sync.config import Settings
from workspace_sync.domain.ordering import calculate_reorder, move_order_index, next_order_index, renumber
from workspace_sync.domain.retry_policy import RetryPolicy
from workspace_sync.errors import (
    BackendError,
    TransientNetworkError,
    WriteConflictError,
    is_retryable,
    is_write_conflict_message,
)


@pytest.mark.anyio
async def test_retries_only_contention_and_returns_result() -> None:
    sleeps = SleepRecorder()
    policy = RetryPolicy(rng=random.Random(1), sleep=sleeps)
    attempts: list[int] = []

    async def call(attempt: int) -> str:
        attempts.append(attempt)
        if attempt < 2:
            raise WriteConflictError("deadlock detected")
        return "done"

    assert await policy.run(call) == "done"
    assert attempts == [0, 1, 2]
    assert len(sleeps.delays) == 2
    assert all(0.05 <= d < 0.2 for d in sleeps.delays)


@pytest.mark.anyio
async def test_gives_up_after_max_attempts_with_last_error() -> None:
    policy = RetryPolicy(max_attempts=2, sleep=SleepRecorder())
    errors = [WriteConflictError("first"), WriteConflictError("second")]

    async def call(attempt: int) -> None:
        raise errors[attempt]

    with pytest.raises(WriteConflictError, match="second"):
        await policy.run(call)


@pytest.mark.anyio
async def test_non_retryable_error_is_raised_immediately() -> None:
    sleeps = SleepRecorder()
    policy = RetryPolicy(sleep=sleeps)
    calls = 0

    async def call(attempt: int) -> None:
        nonlocal calls
        calls += 1
        raise BackendError("boom")

    with pytest.raises(BackendError):
        await policy.run(call)
    assert calls == 1 and sleeps.delays == []


def test_from_settings_reads_retry_knobs() -> None:
    cfg = Settings(
        _env_file=None,  # pyright: ignore[reportCallIssue]
        move_retry_max_attempts=5,
        move_retry_backoff_min_ms=10,
        move_retry_backoff_max_ms=20,
    )
    policy = RetryPolicy.from_settings(cfg)
    assert (policy.max_attempts, policy.backoff_min_ms, policy.backoff_max_ms) == (5, 10, 20)


@pytest.mark.parametrize(
    "overrides",
    [
        pytest.param({"move_retry_max_attempts": 0}, id="no-attempts"),
        pytest.param({"move_retry_backoff_min_ms": 200, "move_retry_backoff_max_ms": 100}, id="inverted-backoff"),
        pytest.param({"queue_max_operations": 0}, id="empty-queue"),
        pytest.param({"temp_id_prefix": " "}, id="blank-prefix"),
    ],
)
def test_settings_validation(overrides: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        Settings(_env_file=None, **overrides)  # pyright: ignore[reportCallIssue]


def test_error_helpers() -> None:
    assert is_write_conflict_message('ERROR: duplicate key value violates unique constraint "x"')
    assert not is_write_conflict_message("title too long")
    assert is_retryable(TransientNetworkError("x"))
    assert not is_retryable(BackendError("x"))
    assert not is_retryable(ValueError("x"))


def test_order_helpers() -> None:
    siblings = [make_item("a", order_index=0), make_item("b", order_index=4), make_item("c", order_index=2)]

    assert next_order_index([]) == 0
    assert next_order_index(siblings) == 5
    assert next_order_index(siblings, exclude_id="b") == 3
    assert move_order_index(siblings, "b", attempt=2) == 5
    assert [(u.item_id, u.order_index) for u in renumber(["x", "y"])] == [("x", 0), ("y", 1)]

    ordered = sorted(siblings, key=lambda s: s.order_index)
    updates = calculate_reorder(ordered, "b", "a")
    assert updates is not None
    assert [u.item_id for u in updates] == ["b", "a", "c"]
    assert calculate_reorder(ordered, "a", "a") is None
    assert calculate_reorder(ordered, "a", "zzz") is None
