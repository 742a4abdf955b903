"""Mutation orchestration for one resource lifecycle operation.

Sequence per call:
1. Resolve identity against a fresh collection fetch (create / reuse / update)
2. Submit the mutation to the gateway
3. Optionally return right away with the accepted-but-unconfirmed operation
4. Poll until terminal; a terminal failure becomes RemoteRejected
5. On success, re-resolve identity for creations (two-phase confirm), fetch
   the object's item collection and reconcile it against the declaration

Gateway calls are blocking and run in the default executor, the same way the
Azure SDK pollers are driven. The poller's wait is the only timed suspension.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .errors import ConvergenceError, NotFound, RemoteRejected
from .gateway import MutationPayload, RemoteGateway
from .identity import resolve_identity
from .poller import (
    DEFAULT_MINIMUM_POLL_INTERVAL_SECONDS,
    CancellationToken,
    ConvergenceResult,
    await_terminal,
)
from .reconcile import reconcile
from .state import (
    ConvergenceOperation,
    DesiredState,
    LifecycleAction,
    ReconciledItem,
    SurrogateID,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MutationOutcome(str, Enum):
    """How a lifecycle operation ended."""

    CONVERGED = "converged"  # Submitted and reached terminal success
    ACCEPTED = "accepted"  # Submitted, convergence not awaited
    REUSED = "reused"  # Immutable object already existed remotely
    SKIPPED = "skipped"  # Disabled, or delete of an absent object
    RELEASED = "released"  # Remote cannot delete; released locally only


@dataclass(frozen=True)
class MutationOptions:
    """Per-call options for perform_mutation.

    Attributes:
        wait_for_convergence: Poll until terminal before returning.
        poll_interval: Requested seconds between status fetches; None means
            the orchestrator's minimum floor. Never honored below the floor.
        cancellation: Cooperative cancellation signal.
        timeout_seconds: Overall convergence deadline; None disables it.
    """

    wait_for_convergence: bool = True
    poll_interval: float | None = None
    cancellation: CancellationToken | None = None
    timeout_seconds: float | None = None


@dataclass
class MutationResult:
    """Result of one lifecycle operation, handed back for persistence."""

    action: LifecycleAction
    outcome: MutationOutcome
    surrogate_id: SurrogateID | None = None
    operation: ConvergenceOperation | None = None
    convergence: ConvergenceResult | None = None
    items: list[ReconciledItem] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def converged(self) -> bool:
        return self.outcome == MutationOutcome.CONVERGED

    @property
    def status(self) -> str | None:
        if self.operation is None:
            return None
        return self.operation.current_status.value


class MutationOrchestrator:
    """Runs create/update/delete for one desired state against a gateway.

    Holds no state between calls; many calls may run concurrently for
    distinct resources. Concurrent calls for the same business object are
    not supported.
    """

    def __init__(
        self,
        gateway: RemoteGateway,
        *,
        minimum_poll_interval: float = DEFAULT_MINIMUM_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            gateway: Remote gateway used for every call.
            minimum_poll_interval: Absolute floor between status fetches.
        """
        if minimum_poll_interval < 0:
            raise ValueError("minimum_poll_interval must not be negative")
        self._gateway = gateway
        self._minimum_poll_interval = minimum_poll_interval

    @property
    def minimum_poll_interval(self) -> float:
        return self._minimum_poll_interval

    async def perform_mutation(
        self,
        desired: DesiredState,
        options: MutationOptions | None = None,
        action: LifecycleAction = LifecycleAction.CREATE,
    ) -> MutationResult:
        """Apply (create or update) or delete ``desired``.

        CREATE and UPDATE both resolve identity first: an existing mutable
        object is updated, an existing immutable object is reused without any
        submission, and an absent object is created.

        Raises:
            RemoteRejected: Submission refused or operation ended in failure.
            RemoteUnavailable: Transport failure (no internal retry).
            NotFound: A collection is missing, or a created object could not
                be found again after convergence.
            Cancelled: Cancellation or deadline hit while polling.
        """
        options = options or MutationOptions()
        extra: dict[str, Any] = {"scope": desired.scope, "business_key": list(desired.key)}

        if not desired.enabled:
            logger.info("Desired state disabled, nothing submitted", extra=extra)
            return self._finish(MutationResult(action=action, outcome=MutationOutcome.SKIPPED))

        observed = await self._call(self._gateway.fetch_collection, desired.scope)
        surrogate_id = resolve_identity(desired.key, observed)

        if action == LifecycleAction.DELETE:
            return await self._delete(desired, options, surrogate_id, extra)
        return await self._apply(desired, options, action, surrogate_id, extra)

    async def _apply(
        self,
        desired: DesiredState,
        options: MutationOptions,
        requested: LifecycleAction,
        surrogate_id: SurrogateID | None,
        extra: dict[str, Any],
    ) -> MutationResult:
        if surrogate_id is not None and not desired.mutable:
            logger.info(
                "Object already exists remotely, reusing",
                extra={**extra, "surrogate_id": surrogate_id},
            )
            result = MutationResult(
                action=LifecycleAction.CREATE,
                outcome=MutationOutcome.REUSED,
                surrogate_id=surrogate_id,
            )
            result.items = await self._reconcile_items(desired, surrogate_id)
            return self._finish(result)

        if surrogate_id is None:
            if requested == LifecycleAction.UPDATE:
                logger.warning(
                    "Object missing remotely, recreating",
                    extra=extra,
                )
            action = LifecycleAction.CREATE
        else:
            action = LifecycleAction.UPDATE

        result = MutationResult(action=action, outcome=MutationOutcome.ACCEPTED)
        result.surrogate_id = surrogate_id
        operation = await self._submit(desired, action, surrogate_id)
        result.operation = operation

        if not options.wait_for_convergence:
            logger.info(
                "Mutation accepted, not waiting for convergence",
                extra={**extra, "handle": operation.handle_id, "status": operation.current_status.value},
            )
            return self._finish(result)

        result.convergence = await self._converge(operation, options)

        try:
            if action == LifecycleAction.CREATE:
                # Two-phase identity: never trust the submission to carry the key
                observed = await self._call(self._gateway.fetch_collection, desired.scope)
                surrogate_id = resolve_identity(desired.key, observed)
                if surrogate_id is None:
                    raise NotFound(
                        f"Object {list(desired.key)} not found in {desired.scope} after convergence"
                    )
            result.surrogate_id = surrogate_id
            assert surrogate_id is not None
            result.items = await self._reconcile_items(desired, surrogate_id)
        except ConvergenceError as e:
            e.with_context(handle_id=operation.handle_id, kind=operation.kind.value)
            raise

        result.outcome = MutationOutcome.CONVERGED
        return self._finish(result)

    async def _delete(
        self,
        desired: DesiredState,
        options: MutationOptions,
        surrogate_id: SurrogateID | None,
        extra: dict[str, Any],
    ) -> MutationResult:
        if surrogate_id is None:
            logger.info("Object absent remotely, nothing to delete", extra=extra)
            return self._finish(
                MutationResult(action=LifecycleAction.DELETE, outcome=MutationOutcome.SKIPPED)
            )

        if not desired.deletable:
            logger.info(
                "Remote does not support deletion, object released locally only",
                extra={**extra, "surrogate_id": surrogate_id},
            )
            return self._finish(
                MutationResult(
                    action=LifecycleAction.DELETE,
                    outcome=MutationOutcome.RELEASED,
                    surrogate_id=surrogate_id,
                )
            )

        operation = await self._submit(desired, LifecycleAction.DELETE, surrogate_id)
        result = MutationResult(
            action=LifecycleAction.DELETE,
            outcome=MutationOutcome.ACCEPTED,
            surrogate_id=surrogate_id,
            operation=operation,
        )
        if not options.wait_for_convergence:
            return self._finish(result)

        result.convergence = await self._converge(operation, options)
        result.outcome = MutationOutcome.CONVERGED
        result.surrogate_id = None
        return self._finish(result)

    async def _submit(
        self,
        desired: DesiredState,
        action: LifecycleAction,
        surrogate_id: SurrogateID | None,
    ) -> ConvergenceOperation:
        kind = desired.kind_for(action)
        success = desired.success_statuses.get(kind)
        if not success:
            raise ValueError(f"No terminal success statuses declared for {kind.value}")

        payload = MutationPayload(scope=desired.scope, body=desired.payload, surrogate_id=surrogate_id)
        try:
            handle = await self._call(self._gateway.submit_mutation, kind, payload)
        except ConvergenceError as e:
            e.with_context(handle_id=None, kind=kind.value)
            raise

        operation = ConvergenceOperation(
            kind=kind,
            handle=handle,
            success_statuses=success,
            failure_statuses=desired.failure_statuses.get(kind, frozenset()),
        )
        logger.info(
            "Mutation submitted",
            extra={
                "action": action.value,
                "kind": kind.value,
                "handle": handle.id,
                "status": handle.initial_status.value,
                "surrogate_id": surrogate_id,
            },
        )

        # A submission can come back denied straight away
        if operation.is_failure(operation.current_status):
            raise _rejection(operation)
        return operation

    async def _converge(
        self,
        operation: ConvergenceOperation,
        options: MutationOptions,
    ) -> ConvergenceResult:
        # Errors from the poller already carry operation context
        result = await await_terminal(
            operation,
            self._gateway.fetch_status,
            poll_interval=options.poll_interval,
            minimum_interval=self._minimum_poll_interval,
            cancellation=options.cancellation,
            timeout_seconds=options.timeout_seconds,
        )
        if not result.success:
            raise _rejection(operation)
        return result

    async def _reconcile_items(
        self, desired: DesiredState, surrogate_id: SurrogateID
    ) -> list[ReconciledItem]:
        scope = desired.item_scope_for(surrogate_id)
        if scope is None:
            return []
        observed = await self._call(self._gateway.fetch_collection, scope)
        return reconcile(desired.items, observed, ordered_fields=desired.ordered_fields)

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    def _finish(self, result: MutationResult) -> MutationResult:
        result.end_time = datetime.now(UTC)
        extra: dict[str, Any] = {
            "action": result.action.value,
            "outcome": result.outcome.value,
            "surrogate_id": result.surrogate_id,
            "duration_seconds": result.duration_seconds,
            "item_count": len(result.items),
        }
        if result.operation is not None:
            extra["handle"] = result.operation.handle_id
            extra["status"] = result.operation.current_status.value
        logger.info("Mutation result", extra=extra)
        return result


def _rejection(operation: ConvergenceOperation) -> RemoteRejected:
    status = operation.current_status
    reason = status.message or f"Operation ended with status {status.value}"
    return RemoteRejected(
        reason,
        status=status.value,
        handle_id=operation.handle_id,
        kind=operation.kind.value,
    )
