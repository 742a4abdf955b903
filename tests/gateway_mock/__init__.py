"""Remote Gateway Mock for Integration Testing.

This package provides an in-memory implementation of the RemoteGateway
protocol so the orchestrator can be exercised without a remote service.

Key Features:
- In-memory collections with remote-style surrogate id allocation
- Scripted status sequences per submitted operation
- Completion hooks that make created objects appear remotely
- Error injection per gateway method
- Call recording for assertions

Usage:
    from gateway_mock import MockGateway

    gateway = MockGateway()
    gateway.script_operation("PENDING", "COMPLETE")
    orchestrator = MutationOrchestrator(gateway, minimum_poll_interval=0)
    result = await orchestrator.perform_mutation(desired)

    assert gateway.submission_count == 1
"""

from .gateway import MockGateway, ScriptedOperation
from .state import MockRemoteObject, MockRemoteState

__all__ = [
    "MockGateway",
    "MockRemoteObject",
    "MockRemoteState",
    "ScriptedOperation",
]
