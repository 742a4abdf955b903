"""Error taxonomy for remote mutations.

Every failure that crosses the gateway boundary is expressed as one of the
classes below. Components never swallow these; the orchestrator only
attaches operation context (handle id, kind) before re-raising the same
instance.
"""

from __future__ import annotations


class ConvergenceError(Exception):
    """Base class for all remote mutation errors.

    Attributes:
        handle_id: Remote operation handle, when the failure belongs to one.
        kind: Operation kind value (ACTIVATE, DEACTIVATE, UPDATE), if known.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        handle_id: str | None = None,
        kind: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.handle_id = handle_id
        self.kind = kind

    def with_context(self, *, handle_id: str | None, kind: str | None) -> ConvergenceError:
        """Attach operation context without overwriting what is already set."""
        if self.handle_id is None:
            self.handle_id = handle_id
        if self.kind is None:
            self.kind = kind
        return self

    def __str__(self) -> str:
        context = []
        if self.kind:
            context.append(f"kind={self.kind}")
        if self.handle_id:
            context.append(f"handle={self.handle_id}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class RemoteRejected(ConvergenceError):
    """The remote system refused the mutation. Permanent, never retried.

    The remote-supplied reason is kept verbatim in ``reason``.
    """

    def __init__(
        self,
        reason: str,
        *,
        status: str | None = None,
        handle_id: str | None = None,
        kind: str | None = None,
    ) -> None:
        super().__init__(reason, handle_id=handle_id, kind=kind)
        self.reason = reason
        self.status = status


class RemoteUnavailable(ConvergenceError):
    """Transient transport fault. Retry policy belongs to the caller."""

    retryable = True


class NotFound(ConvergenceError):
    """A fetched collection or object does not exist remotely."""


class Cancelled(ConvergenceError):
    """Polling was cancelled before the operation reached a terminal status.

    The remote state is unknown at this point and must be re-queried
    before issuing any further mutation.
    """

    def __init__(
        self,
        cause: BaseException | str | None = None,
        *,
        handle_id: str | None = None,
        kind: str | None = None,
    ) -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Convergence polling cancelled{detail}. Remote state is unknown and "
            "must be re-queried before any further mutation",
            handle_id=handle_id,
            kind=kind,
        )
        self.cause = cause
