"""Remote gateway contract.

The gateway is the only path to the remote control plane. It is passed
explicitly to whoever needs it; nothing in the engine holds a global client.
Implementations are synchronous (like the Azure SDK clients they are modeled
on); the orchestrator and poller run them in the default executor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .state import ObservedItem, OperationHandle, OperationKind, OperationStatus, SurrogateID


@dataclass(frozen=True)
class MutationPayload:
    """Body of a mutation submission.

    Attributes:
        scope: Collection the target object lives in.
        body: Resource representation to apply.
        surrogate_id: Target object for updates and deletes; None on create.
    """

    scope: str
    body: dict[str, Any] = field(default_factory=dict)
    surrogate_id: SurrogateID | None = None


@runtime_checkable
class RemoteGateway(Protocol):
    """Operations the engine consumes from the remote configuration service."""

    def submit_mutation(self, kind: OperationKind, payload: MutationPayload) -> OperationHandle:
        """Submit a mutation.

        Raises:
            RemoteRejected: The payload is invalid.
            RemoteUnavailable: Transport failure.
        """
        ...

    def fetch_status(self, handle: OperationHandle) -> OperationStatus:
        """Fetch the current status of a submitted mutation.

        Raises:
            RemoteRejected: The handle is refused.
            RemoteUnavailable: Transport failure.
        """
        ...

    def fetch_collection(self, scope: str) -> list[ObservedItem]:
        """Fetch every item in a collection.

        Raises:
            NotFound: The collection does not exist.
            RemoteUnavailable: Transport failure.
        """
        ...
