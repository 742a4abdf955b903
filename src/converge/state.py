"""Desired/observed state types shared by the reconciliation engine.

Items are compared by business key only. A business key is the tuple of
attribute values the user identifies an object by (a datacenter id, a
hostname prefix and suffix); the surrogate id is whatever opaque identifier
the remote system assigns once the object exists.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

BusinessKey = tuple[Any, ...]
SurrogateID = str


class OperationKind(str, Enum):
    """Kinds of asynchronous mutation accepted by the remote control plane."""

    ACTIVATE = "ACTIVATE"
    DEACTIVATE = "DEACTIVATE"
    UPDATE = "UPDATE"


class LifecycleAction(str, Enum):
    """Lifecycle operation requested by the caller."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationPhase(str, Enum):
    """Convergence state machine: SUBMITTED -> IN_PROGRESS -> SUCCESS | FAILURE."""

    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationPhase.SUCCESS, OperationPhase.FAILURE)


@dataclass(frozen=True)
class DeclaredItem:
    """One element of the user's ordered configuration list."""

    key: BusinessKey
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ObservedItem:
    """One element of a collection as returned by the remote system."""

    key: BusinessKey
    attributes: dict[str, Any] = field(default_factory=dict)
    surrogate_id: SurrogateID | None = None


@dataclass(frozen=True)
class ReconciledItem:
    """Authoritative item positioned by declared order where one matched.

    Attributes:
        declared: False when the item exists remotely but was never declared
            (drift surfaced at the tail of the reconciled list).
    """

    key: BusinessKey
    attributes: dict[str, Any] = field(default_factory=dict)
    surrogate_id: SurrogateID | None = None
    declared: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Plain representation used by the CLI and logs."""
        return {
            "key": list(self.key),
            "id": self.surrogate_id,
            "attributes": self.attributes,
            "declared": self.declared,
        }


@dataclass(frozen=True)
class OperationStatus:
    """A remote status value plus the optional human-readable explanation."""

    value: str
    message: str | None = None


@dataclass(frozen=True)
class OperationHandle:
    """Returned by the gateway when a mutation is accepted."""

    id: str
    initial_status: OperationStatus


@dataclass
class ConvergenceOperation:
    """One in-flight asynchronous mutation.

    Statuses outside both terminal sets are treated as in progress. Created
    at submission time and discarded once terminal; never persisted.
    """

    kind: OperationKind
    handle: OperationHandle
    success_statuses: frozenset[str]
    failure_statuses: frozenset[str] = frozenset()
    status: OperationStatus | None = None
    phase: OperationPhase = OperationPhase.SUBMITTED
    fetch_count: int = 0
    polling: bool = field(default=False, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.success_statuses:
            raise ValueError("success_statuses must not be empty")
        overlap = self.success_statuses & self.failure_statuses
        if overlap:
            raise ValueError(f"Statuses cannot be both success and failure: {sorted(overlap)}")
        if self.status is None:
            self.status = self.handle.initial_status

    @property
    def handle_id(self) -> str:
        return self.handle.id

    @property
    def current_status(self) -> OperationStatus:
        # Always set by __post_init__
        assert self.status is not None
        return self.status

    def is_success(self, status: OperationStatus) -> bool:
        return status.value in self.success_statuses

    def is_failure(self, status: OperationStatus) -> bool:
        return status.value in self.failure_statuses


@dataclass(frozen=True)
class DesiredState:
    """Validated desired state of one remote object, ready to be applied.

    Attributes:
        scope: Collection the object lives in; used for identity resolution.
        key: Business key of the object within ``scope``.
        payload: Body submitted to the remote system.
        items: Declared ordered sub-objects to reconcile after convergence.
        items_scope: Collection holding the object's sub-objects. ``{id}`` is
            replaced with the object's surrogate id. None means there is
            nothing to reconcile.
        ordered_fields: Scalar list attributes of items whose element order
            follows the declaration.
        create_kind / update_kind / delete_kind: Operation kind per action.
        success_statuses / failure_statuses: Terminal status sets per kind.
        mutable: Existing objects are updated in place; immutable ones are
            reused as-is when a create is requested again.
        deletable: False when the remote system cannot delete the object;
            deletion then only releases it locally.
        enabled: False means nothing is submitted at all.
    """

    scope: str
    key: BusinessKey
    payload: dict[str, Any] = field(default_factory=dict)
    items: tuple[DeclaredItem, ...] = ()
    items_scope: str | None = None
    ordered_fields: tuple[str, ...] = ()
    create_kind: OperationKind = OperationKind.UPDATE
    update_kind: OperationKind = OperationKind.UPDATE
    delete_kind: OperationKind = OperationKind.UPDATE
    success_statuses: dict[OperationKind, frozenset[str]] = field(default_factory=dict)
    failure_statuses: dict[OperationKind, frozenset[str]] = field(default_factory=dict)
    mutable: bool = True
    deletable: bool = True
    enabled: bool = True

    def kind_for(self, action: LifecycleAction) -> OperationKind:
        match action:
            case LifecycleAction.CREATE:
                return self.create_kind
            case LifecycleAction.UPDATE:
                return self.update_kind
            case LifecycleAction.DELETE:
                return self.delete_kind
        raise ValueError(f"Unsupported action: {action}")

    def item_scope_for(self, surrogate_id: SurrogateID) -> str | None:
        if self.items_scope is None:
            return None
        return self.items_scope.replace("{id}", surrogate_id)
