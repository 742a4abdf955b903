"""Convergence polling for asynchronously applied mutations.

The remote control plane accepts a mutation immediately and applies it
later. The poller drives the returned operation to a terminal status:

    SUBMITTED -> IN_PROGRESS -> {SUCCESS, FAILURE}

Each round waits for either the poll interval or the cancellation signal,
whichever comes first, then issues exactly one status fetch. The interval is
never shorter than the configured floor: polling faster than the remote
propagation cadence only burns quota.

Cancellation is cooperative. It is observed at the wait only; a status fetch
that has already been issued runs to completion.

An optional deadline still allows the fetch falling due when it arrives;
only a wait the deadline would cut short ends polling early.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .errors import Cancelled, ConvergenceError
from .state import ConvergenceOperation, OperationHandle, OperationPhase, OperationStatus

logger = logging.getLogger(__name__)

# Remote propagation cadence; polling below this yields no new information
DEFAULT_MINIMUM_POLL_INTERVAL_SECONDS = 60.0

# A fetch falling due this share of an interval past the deadline still runs
DEADLINE_SLACK_FRACTION = 0.1

StatusFetcher = Callable[[OperationHandle], OperationStatus | Awaitable[OperationStatus]]


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a poller.

    Must be used from the event loop thread (signal handlers registered with
    ``loop.add_signal_handler`` qualify).
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._cause: BaseException | str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def cause(self) -> BaseException | str | None:
        return self._cause

    def cancel(self, cause: BaseException | str | None = None) -> None:
        """Fire the signal. The first cause wins."""
        if self._event.is_set():
            return
        self._cause = cause if cause is not None else "cancellation requested"
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class ConvergenceResult:
    """Terminal outcome of a polled operation."""

    phase: OperationPhase
    status: OperationStatus
    fetch_count: int
    elapsed_seconds: float

    @property
    def success(self) -> bool:
        return self.phase == OperationPhase.SUCCESS

    @property
    def message(self) -> str | None:
        return self.status.message


def effective_interval(poll_interval: float | None, minimum_interval: float) -> float:
    """Return the wait between fetches: the requested interval, floored."""
    if minimum_interval < 0:
        raise ValueError("minimum_interval must not be negative")
    if poll_interval is None:
        return minimum_interval
    if poll_interval < minimum_interval:
        logger.info(
            "Poll interval raised to floor",
            extra={"requested_seconds": poll_interval, "floor_seconds": minimum_interval},
        )
        return minimum_interval
    return poll_interval


async def await_terminal(
    operation: ConvergenceOperation,
    status_fetcher: StatusFetcher,
    poll_interval: float | None = None,
    minimum_interval: float = DEFAULT_MINIMUM_POLL_INTERVAL_SECONDS,
    cancellation: CancellationToken | None = None,
    timeout_seconds: float | None = None,
) -> ConvergenceResult:
    """Poll ``operation`` until it reaches a terminal status.

    Args:
        operation: Operation returned by the submission. Its ``status`` and
            ``phase`` are updated as polling progresses.
        status_fetcher: Returns the refreshed status for a handle. Plain
            callables run in the default executor; coroutine functions are
            awaited directly.
        poll_interval: Requested wait between fetches.
        minimum_interval: Absolute floor for the wait.
        cancellation: Optional cancellation signal.
        timeout_seconds: Optional overall deadline; reaching it cancels.

    Returns:
        ConvergenceResult with phase SUCCESS or FAILURE. FAILURE carries the
        remote-supplied explanation in ``status.message``.

    Raises:
        Cancelled: If cancellation fires (or the deadline passes) before a
            terminal status is observed.
        ConvergenceError: Any fetch failure, unchanged apart from context.
        RuntimeError: If the operation is already being polled.
    """
    if operation.polling:
        raise RuntimeError(f"Operation {operation.handle_id} is already being polled")
    if operation.phase.is_terminal:
        raise RuntimeError(f"Operation {operation.handle_id} is already {operation.phase.value}")
    operation.polling = True
    try:
        return await _poll(
            operation,
            status_fetcher,
            effective_interval(poll_interval, minimum_interval),
            cancellation or CancellationToken(),
            timeout_seconds,
        )
    finally:
        operation.polling = False


async def _poll(
    operation: ConvergenceOperation,
    status_fetcher: StatusFetcher,
    interval: float,
    cancellation: CancellationToken,
    timeout_seconds: float | None,
) -> ConvergenceResult:
    start = time.monotonic()
    deadline = start + timeout_seconds if timeout_seconds is not None else None
    last_fetch = start
    context: dict[str, Any] = {
        "handle": operation.handle_id,
        "kind": operation.kind.value,
    }

    logger.info(
        "Awaiting convergence",
        extra={**context, "status": operation.current_status.value, "interval_seconds": interval},
    )

    while True:
        status = operation.current_status

        if operation.is_success(status):
            return _finish(operation, OperationPhase.SUCCESS, start, context)
        if operation.is_failure(status):
            return _finish(operation, OperationPhase.FAILURE, start, context)

        # Measured from the previous fetch so fetch latency never shortens the floor
        due = last_fetch + interval
        expires = False
        if deadline is not None:
            expires = due > deadline + interval * DEADLINE_SLACK_FRACTION
        wake = deadline if expires else due

        try:
            await asyncio.wait_for(
                cancellation.wait(), timeout=max(wake - time.monotonic(), 0.0)
            )
        except TimeoutError:
            pass
        else:
            _cancel(operation, cancellation.cause, context)

        if cancellation.cancelled:
            _cancel(operation, cancellation.cause, context)
        if expires:
            _cancel(
                operation,
                TimeoutError(f"operation did not converge within {timeout_seconds}s"),
                context,
            )

        last_fetch = time.monotonic()
        try:
            refreshed = await _fetch(status_fetcher, operation.handle)
        except ConvergenceError as e:
            raise e.with_context(handle_id=operation.handle_id, kind=operation.kind.value)

        operation.fetch_count += 1
        operation.status = refreshed
        if operation.phase == OperationPhase.SUBMITTED:
            operation.phase = OperationPhase.IN_PROGRESS

        logger.debug(
            "Polled operation status",
            extra={**context, "status": refreshed.value, "fetch_count": operation.fetch_count},
        )


async def _fetch(status_fetcher: StatusFetcher, handle: OperationHandle) -> OperationStatus:
    if inspect.iscoroutinefunction(status_fetcher):
        return await status_fetcher(handle)
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(None, status_fetcher, handle)
    if inspect.isawaitable(result):
        return await result
    return result


def _finish(
    operation: ConvergenceOperation,
    phase: OperationPhase,
    start: float,
    context: dict[str, Any],
) -> ConvergenceResult:
    operation.phase = phase
    status = operation.current_status
    result = ConvergenceResult(
        phase=phase,
        status=status,
        fetch_count=operation.fetch_count,
        elapsed_seconds=time.monotonic() - start,
    )
    extra = {
        **context,
        "status": status.value,
        "fetch_count": result.fetch_count,
        "duration_seconds": result.elapsed_seconds,
    }
    if phase == OperationPhase.FAILURE:
        logger.error("Operation denied by remote", extra={**extra, "reason": status.message})
    else:
        logger.info("Operation converged", extra=extra)
    return result


def _cancel(
    operation: ConvergenceOperation,
    cause: BaseException | str | None,
    context: dict[str, Any],
) -> None:
    logger.warning(
        "Convergence polling cancelled, remote state unknown",
        extra={**context, "cause": str(cause), "fetch_count": operation.fetch_count},
    )
    error = Cancelled(cause, handle_id=operation.handle_id, kind=operation.kind.value)
    if isinstance(cause, BaseException):
        raise error from cause
    raise error
