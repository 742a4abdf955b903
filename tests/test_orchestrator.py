"""Tests for the mutation orchestrator against the in-memory gateway."""

from __future__ import annotations

import asyncio

import pytest

from converge.errors import Cancelled, NotFound, RemoteRejected, RemoteUnavailable
from converge.gateway import MutationPayload
from converge.orchestrator import MutationOptions, MutationOrchestrator, MutationOutcome
from converge.poller import CancellationToken
from converge.state import (
    DeclaredItem,
    DesiredState,
    LifecycleAction,
    OperationKind,
    OperationStatus,
)
from gateway_mock import MockGateway

SCOPE = "domains/example.akadns.net/as-maps"
ITEMS_SCOPE = SCOPE + "/{id}/assignments"
ACTIVATIONS = "appsec/configs/43253/activations"


def as_map_state(**overrides: object) -> DesiredState:
    values: dict[str, object] = {
        "scope": SCOPE,
        "key": ("corp-map",),
        "payload": {"name": "corp-map"},
        "items": (
            DeclaredItem(key=(3131,), attributes={"asNumbers": [12222, 17334]}),
            DeclaredItem(key=(3132,), attributes={"asNumbers": [16702]}),
        ),
        "items_scope": ITEMS_SCOPE,
        "ordered_fields": ("asNumbers",),
        "success_statuses": {OperationKind.UPDATE: frozenset({"COMPLETE"})},
        "failure_statuses": {OperationKind.UPDATE: frozenset({"DENIED"})},
    }
    values.update(overrides)
    return DesiredState(**values)  # type: ignore[arg-type]


def activation_state(**overrides: object) -> DesiredState:
    values: dict[str, object] = {
        "scope": ACTIVATIONS,
        "key": (43253, 7, "STAGING"),
        "payload": {"configId": 43253, "version": 7, "network": "STAGING"},
        "create_kind": OperationKind.ACTIVATE,
        "update_kind": OperationKind.ACTIVATE,
        "delete_kind": OperationKind.DEACTIVATE,
        "success_statuses": {
            OperationKind.ACTIVATE: frozenset({"ACTIVATED"}),
            OperationKind.DEACTIVATE: frozenset({"DEACTIVATED"}),
        },
        "failure_statuses": {
            OperationKind.ACTIVATE: frozenset({"FAILED", "ABORTED"}),
            OperationKind.DEACTIVATE: frozenset({"FAILED", "ABORTED"}),
        },
        "mutable": False,
    }
    values.update(overrides)
    return DesiredState(**values)  # type: ignore[arg-type]


def create_as_map(gateway: MockGateway, surrogate_id: str = "asmap-1"):
    """Completion hook making the AS map and its assignments appear remotely."""

    def hook(payload: MutationPayload) -> None:
        gateway.state.add(SCOPE, ("corp-map",), {"name": "corp-map"}, surrogate_id=surrogate_id)
        items = ITEMS_SCOPE.replace("{id}", surrogate_id)
        gateway.state.add(items, (3132,), {"asNumbers": [16702]}, surrogate_id="3132")
        gateway.state.add(items, (3131,), {"asNumbers": [17334, 12222]}, surrogate_id="3131")

    return hook


@pytest.fixture
def orchestrator(gateway: MockGateway) -> MutationOrchestrator:
    return MutationOrchestrator(gateway, minimum_poll_interval=0.0)


class TestApply:
    """Tests for create and update."""

    @pytest.mark.asyncio
    async def test_create_polls_and_confirms_identity(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        """An absent object is created, polled and re-resolved by key."""
        gateway.script_operation("PENDING", "PENDING", "COMPLETE", on_complete=create_as_map(gateway))

        result = await orchestrator.perform_mutation(as_map_state())

        assert result.outcome == MutationOutcome.CONVERGED
        assert result.converged
        assert result.action == LifecycleAction.CREATE
        assert result.surrogate_id == "asmap-1"
        assert result.status == "COMPLETE"
        assert result.convergence is not None
        assert result.convergence.fetch_count == 2
        kind, payload = gateway.submissions[0]
        assert kind == OperationKind.UPDATE
        assert payload.surrogate_id is None
        assert payload.body == {"name": "corp-map"}
        # Identity before submit, identity after convergence, then items
        assert gateway.collection_fetches == [SCOPE, SCOPE, f"{SCOPE}/asmap-1/assignments"]

    @pytest.mark.asyncio
    async def test_items_follow_declared_order(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        gateway.script_operation("COMPLETE", on_complete=create_as_map(gateway))

        result = await orchestrator.perform_mutation(as_map_state())

        assert [item.key for item in result.items] == [(3131,), (3132,)]
        assert result.items[0].attributes["asNumbers"] == [12222, 17334]
        assert result.items[0].surrogate_id == "3131"

    @pytest.mark.asyncio
    async def test_undeclared_items_surface_as_drift(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        gateway.state.add(SCOPE, ("corp-map",), surrogate_id="asmap-1")
        gateway.state.add(f"{SCOPE}/asmap-1/assignments", (9999,), {"asNumbers": [1]})
        gateway.state.add(f"{SCOPE}/asmap-1/assignments", (3131,), {"asNumbers": [12222]})
        gateway.script_operation("COMPLETE")

        result = await orchestrator.perform_mutation(as_map_state())

        assert [(item.key, item.declared) for item in result.items] == [
            ((3131,), True),
            ((9999,), False),
        ]

    @pytest.mark.asyncio
    async def test_existing_mutable_object_is_updated(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        gateway.state.add(SCOPE, ("corp-map",), surrogate_id="asmap-7")
        gateway.script_operation("COMPLETE")

        result = await orchestrator.perform_mutation(as_map_state())

        assert result.action == LifecycleAction.UPDATE
        assert result.surrogate_id == "asmap-7"
        assert gateway.submissions[0][1].surrogate_id == "asmap-7"
        # No re-resolution for updates
        assert gateway.collection_fetches.count(SCOPE) == 1

    @pytest.mark.asyncio
    async def test_existing_immutable_object_is_reused(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        """Applying an immutable object that exists submits nothing."""
        gateway.state.add(ACTIVATIONS, (43253, 7, "STAGING"), surrogate_id="act-55")

        result = await orchestrator.perform_mutation(activation_state())

        assert result.outcome == MutationOutcome.REUSED
        assert result.surrogate_id == "act-55"
        assert gateway.submission_count == 0

    @pytest.mark.asyncio
    async def test_disabled_submits_nothing(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        result = await orchestrator.perform_mutation(activation_state(enabled=False))

        assert result.outcome == MutationOutcome.SKIPPED
        assert result.surrogate_id is None
        assert gateway.collection_fetches == []
        assert gateway.submission_count == 0

    @pytest.mark.asyncio
    async def test_activation_uses_activate_kind(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        def activated(payload: MutationPayload) -> None:
            gateway.state.add(ACTIVATIONS, (43253, 7, "STAGING"), surrogate_id="act-56")

        gateway.script_operation("RECEIVED", "ACTIVATED", on_complete=activated)

        result = await orchestrator.perform_mutation(activation_state())

        assert gateway.submissions[0][0] == OperationKind.ACTIVATE
        assert result.surrogate_id == "act-56"
        assert result.items == []


class TestNoWait:
    """Tests for returning before convergence."""

    @pytest.mark.asyncio
    async def test_accepted_without_polling(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        gateway.script_operation("PENDING", "COMPLETE")

        result = await orchestrator.perform_mutation(
            as_map_state(), MutationOptions(wait_for_convergence=False)
        )

        assert result.outcome == MutationOutcome.ACCEPTED
        assert result.converged is False
        assert result.operation is not None
        assert result.operation.current_status == OperationStatus("PENDING")
        assert gateway.status_fetches == []

    @pytest.mark.asyncio
    async def test_immediate_denial_still_raised(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        """A submission denied on arrival is an error even without waiting."""
        gateway.script_operation(OperationStatus("DENIED", "Datacenter 3131 does not exist"))

        with pytest.raises(RemoteRejected) as exc_info:
            await orchestrator.perform_mutation(
                as_map_state(), MutationOptions(wait_for_convergence=False)
            )

        assert exc_info.value.reason == "Datacenter 3131 does not exist"
        assert exc_info.value.status == "DENIED"


class TestDelete:
    """Tests for delete."""

    @pytest.mark.asyncio
    async def test_delete_existing(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        gateway.state.add(ACTIVATIONS, (43253, 7, "STAGING"), surrogate_id="act-55")
        gateway.script_operation("RECEIVED", "DEACTIVATED")

        result = await orchestrator.perform_mutation(
            activation_state(), action=LifecycleAction.DELETE
        )

        assert result.outcome == MutationOutcome.CONVERGED
        assert result.action == LifecycleAction.DELETE
        assert result.surrogate_id is None
        kind, payload = gateway.submissions[0]
        assert kind == OperationKind.DEACTIVATE
        assert payload.surrogate_id == "act-55"

    @pytest.mark.asyncio
    async def test_delete_absent_is_noop(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        result = await orchestrator.perform_mutation(
            activation_state(), action=LifecycleAction.DELETE
        )

        assert result.outcome == MutationOutcome.SKIPPED
        assert gateway.submission_count == 0

    @pytest.mark.asyncio
    async def test_non_deletable_is_released(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        scope = "contracts/ctr_1/groups/grp_2/edge-hostnames"
        gateway.state.add(scope, ("www", "edgesuite.net"), surrogate_id="ehn_9")
        desired = DesiredState(
            scope=scope,
            key=("www", "edgesuite.net"),
            success_statuses={OperationKind.UPDATE: frozenset({"ACTIVE"})},
            mutable=False,
            deletable=False,
        )

        result = await orchestrator.perform_mutation(desired, action=LifecycleAction.DELETE)

        assert result.outcome == MutationOutcome.RELEASED
        assert result.surrogate_id == "ehn_9"
        assert gateway.submission_count == 0
        assert gateway.state.count(scope) == 1


class TestErrors:
    """Tests for error propagation."""

    @pytest.mark.asyncio
    async def test_terminal_failure_is_rejected_verbatim(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        gateway.script_operation(
            "PENDING", OperationStatus("DENIED", "AS number 17334 is assigned twice")
        )

        with pytest.raises(RemoteRejected) as exc_info:
            await orchestrator.perform_mutation(as_map_state())

        error = exc_info.value
        assert error.reason == "AS number 17334 is assigned twice"
        assert error.status == "DENIED"
        assert error.handle_id == "op-1"
        assert error.kind == "UPDATE"
        assert error.retryable is False

    @pytest.mark.asyncio
    async def test_failure_without_message(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        gateway.script_operation("PENDING", "DENIED")

        with pytest.raises(RemoteRejected, match="DENIED"):
            await orchestrator.perform_mutation(as_map_state())

    @pytest.mark.asyncio
    async def test_submit_error_propagates(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        error = RemoteUnavailable("connection refused")
        gateway.fail_next("submit_mutation", error)

        with pytest.raises(RemoteUnavailable) as exc_info:
            await orchestrator.perform_mutation(as_map_state())

        assert exc_info.value is error
        assert exc_info.value.kind == "UPDATE"

    @pytest.mark.asyncio
    async def test_status_error_propagates(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        gateway.script_operation("PENDING", "COMPLETE")
        gateway.fail_next("fetch_status", RemoteUnavailable("503 from upstream"))

        with pytest.raises(RemoteUnavailable) as exc_info:
            await orchestrator.perform_mutation(as_map_state())

        assert exc_info.value.handle_id == "op-1"

    @pytest.mark.asyncio
    async def test_missing_collection_is_not_found(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        gateway.state.mark_missing(SCOPE)

        with pytest.raises(NotFound):
            await orchestrator.perform_mutation(as_map_state())

        assert gateway.submission_count == 0

    @pytest.mark.asyncio
    async def test_created_object_not_found_afterwards(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        """Converged but not visible by key is an error, never a guess."""
        gateway.script_operation("COMPLETE")

        with pytest.raises(NotFound) as exc_info:
            await orchestrator.perform_mutation(as_map_state())

        assert exc_info.value.handle_id == "op-1"

    @pytest.mark.asyncio
    async def test_missing_success_statuses(
        self, gateway: MockGateway, orchestrator: MutationOrchestrator
    ) -> None:
        with pytest.raises(ValueError, match="No terminal success statuses"):
            await orchestrator.perform_mutation(as_map_state(success_statuses={}))

    @pytest.mark.asyncio
    async def test_cancellation(self, gateway: MockGateway) -> None:
        orchestrator = MutationOrchestrator(gateway, minimum_poll_interval=30.0)
        gateway.script_operation("PENDING")
        token = CancellationToken()

        task = asyncio.create_task(
            orchestrator.perform_mutation(as_map_state(), MutationOptions(cancellation=token))
        )
        while gateway.submission_count == 0:
            await asyncio.sleep(0.01)
        token.cancel("shutdown")

        with pytest.raises(Cancelled) as exc_info:
            await task

        assert exc_info.value.handle_id == "op-1"
        assert gateway.status_fetches == []

    def test_negative_floor_rejected(self, gateway: MockGateway) -> None:
        with pytest.raises(ValueError):
            MutationOrchestrator(gateway, minimum_poll_interval=-1)


class TestConcurrency:
    """Tests for independent operations running side by side."""

    @pytest.mark.asyncio
    async def test_distinct_resources_in_parallel(self, gateway: MockGateway) -> None:
        orchestrator = MutationOrchestrator(gateway, minimum_poll_interval=0.0)
        other_scope = "domains/other.akadns.net/as-maps"
        gateway.state.add(SCOPE, ("corp-map",), surrogate_id="a")
        gateway.state.add(other_scope, ("corp-map",), surrogate_id="b")
        gateway.script_operation("PENDING", "COMPLETE")
        gateway.script_operation("PENDING", "COMPLETE")

        results = await asyncio.gather(
            orchestrator.perform_mutation(as_map_state(items=(), items_scope=None)),
            orchestrator.perform_mutation(
                as_map_state(scope=other_scope, items=(), items_scope=None)
            ),
        )

        assert sorted(r.surrogate_id for r in results) == ["a", "b"]
        assert all(r.converged for r in results)
