"""HTTP implementation of the remote gateway on azure-core.

Wire format (JSON):
    POST mutations              {kind, scope, id, body}
        -> {operationId, status, message}
    GET  mutations/{operationId}
        -> {status, message}
    GET  {scope}
        -> {items: [{id, key: [...], attributes: {...}}]}

The pipeline deliberately carries a no-retry policy: transport faults are
surfaced as RemoteUnavailable immediately and retry is the caller's policy.

SECURITY: Authentication uses a bearer token from a TokenCredential
(see security.get_gateway_credential); no static secrets are accepted.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    HttpLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.pipeline.transport import HttpTransport
from azure.core.rest import HttpRequest, HttpResponse

from .errors import NotFound, RemoteRejected, RemoteUnavailable
from .gateway import MutationPayload
from .state import ObservedItem, OperationHandle, OperationKind, OperationStatus

logger = logging.getLogger(__name__)

USER_AGENT = "converge-operator/0.1.0"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

# Bound collection size to prevent OOM from unexpectedly large responses
MAX_COLLECTION_ITEMS = 10000

_SUCCESS_CODES = frozenset({200, 201, 202})
_TRANSIENT_CODES = frozenset({408, 429})


class HttpRemoteGateway:
    """RemoteGateway over HTTP using an azure-core pipeline."""

    def __init__(
        self,
        endpoint: str,
        *,
        credential: TokenCredential | None = None,
        token_scope: str | None = None,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        transport: HttpTransport | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            endpoint: Base URL of the remote configuration service.
            credential: Token credential; when None requests are unauthenticated.
            token_scope: Scope requested for bearer tokens. Required with a credential.
            request_timeout_seconds: Connect and read timeout per request.
            transport: Optional transport override (tests).
        """
        if credential is not None and not token_scope:
            raise ValueError("token_scope is required when a credential is supplied")

        policies: list[Any] = [
            HeadersPolicy(base_headers={"Accept": "application/json"}),
            UserAgentPolicy(base_user_agent=USER_AGENT),
            RetryPolicy.no_retries(),
        ]
        if credential is not None:
            policies.append(BearerTokenCredentialPolicy(credential, token_scope))
        policies.append(HttpLoggingPolicy())

        self._endpoint = endpoint.rstrip("/") + "/"
        self._timeout = request_timeout_seconds
        self._client: PipelineClient = PipelineClient(
            base_url=self._endpoint,
            policies=policies,
            transport=transport,
        )

    def submit_mutation(self, kind: OperationKind, payload: MutationPayload) -> OperationHandle:
        body = {
            "kind": kind.value,
            "scope": payload.scope,
            "id": payload.surrogate_id,
            "body": payload.body,
        }
        data = self._send("POST", "mutations", json=body)
        operation_id = data.get("operationId")
        status = data.get("status")
        if not operation_id or not status:
            raise RemoteUnavailable(
                "Malformed mutation response: operationId and status are required",
                kind=kind.value,
            )
        logger.info(
            "Mutation accepted",
            extra={"kind": kind.value, "scope": payload.scope, "handle": operation_id},
        )
        return OperationHandle(
            id=str(operation_id),
            initial_status=OperationStatus(value=str(status), message=data.get("message")),
        )

    def fetch_status(self, handle: OperationHandle) -> OperationStatus:
        data = self._send("GET", f"mutations/{quote(handle.id, safe='')}")
        status = data.get("status")
        if not status:
            raise RemoteUnavailable("Malformed status response: status is required", handle_id=handle.id)
        return OperationStatus(value=str(status), message=data.get("message"))

    def fetch_collection(self, scope: str) -> list[ObservedItem]:
        data = self._send("GET", scope.lstrip("/"))
        raw_items = data.get("items", [])
        if not isinstance(raw_items, list):
            raise RemoteUnavailable(f"Malformed collection response for {scope}: items must be a list")
        if len(raw_items) > MAX_COLLECTION_ITEMS:
            raise RemoteUnavailable(
                f"Collection {scope} returned {len(raw_items)} items, "
                f"exceeding limit of {MAX_COLLECTION_ITEMS}"
            )
        return [_parse_item(scope, raw) for raw in raw_items]

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpRemoteGateway:
        return self

    def __exit__(self, *exc_details: Any) -> None:
        self.close()

    def _send(self, method: str, path: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        request = HttpRequest(method, self._client.format_url(path), json=json)
        try:
            response = self._client.send_request(
                request,
                connection_timeout=self._timeout,
                read_timeout=self._timeout,
            )
        except AzureError as e:
            # Covers ServiceRequestError/ServiceResponseError and auth failures
            logger.warning(
                "Gateway transport error",
                extra={"method": method, "path": path, "error": str(e)},
            )
            raise RemoteUnavailable(f"{method} {path} failed: {e}") from e

        status_code = response.status_code
        if status_code not in _SUCCESS_CODES:
            raise _error_for(method, path, response)

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteUnavailable(f"{method} {path} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise RemoteUnavailable(f"{method} {path} returned a non-object JSON body")
        return data


def _error_for(method: str, path: str, response: HttpResponse) -> Exception:
    status_code = response.status_code
    reason = _error_reason(response)
    logger.warning(
        "Gateway request failed",
        extra={"method": method, "path": path, "status_code": status_code, "reason": reason},
    )
    if status_code == 404:
        return NotFound(f"{method} {path}: {reason}")
    if status_code in _TRANSIENT_CODES or status_code >= 500:
        return RemoteUnavailable(f"{method} {path} returned {status_code}: {reason}")
    return RemoteRejected(reason, status=str(status_code))


def _error_reason(response: HttpResponse) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for field_name in ("detail", "message", "title"):
            value = data.get(field_name)
            if value:
                return str(value)
    try:
        text = response.text()
    except (ValueError, UnicodeDecodeError):
        text = ""
    return text or f"HTTP {response.status_code}"


def _parse_item(scope: str, raw: Any) -> ObservedItem:
    if not isinstance(raw, dict) or "key" not in raw:
        raise RemoteUnavailable(f"Malformed item in collection {scope}: {raw!r}")
    key = raw["key"]
    if not isinstance(key, list):
        key = [key]
    attributes = raw.get("attributes") or {}
    surrogate_id = raw.get("id")
    return ObservedItem(
        key=tuple(key),
        attributes=dict(attributes),
        surrogate_id=str(surrogate_id) if surrogate_id is not None else None,
    )
