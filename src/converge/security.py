"""Secretless gateway authentication.

Gateway requests carry bearer tokens issued to the workload's Managed
Identity. The operator refuses to start while static credentials sit in its
environment, even ones it would never read itself.
"""

from __future__ import annotations

import logging
import os

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Static gateway credentials some deployments still inject
GATEWAY_SECRET_ENV_VARS: tuple[str, ...] = (
    "GATEWAY_CLIENT_SECRET",
    "GATEWAY_ACCESS_TOKEN",
)

# Read by azure-identity's EnvironmentCredential. Present, they would let any
# DefaultAzureCredential in the same process bypass the managed identity.
ENVIRONMENT_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_PASSWORD",
)

FORBIDDEN_CREDENTIAL_ENV_VARS = GATEWAY_SECRET_ENV_VARS + ENVIRONMENT_CREDENTIAL_ENV_VARS


class SecretlessViolationError(Exception):
    """Static credentials found in the environment. Fatal at startup."""

    def __init__(self, env_vars: list[str]) -> None:
        self.env_vars = env_vars
        super().__init__(
            f"SECURITY VIOLATION: {', '.join(env_vars)} set. Gateway authentication "
            "uses a Managed Identity only; remove the variables and assign an "
            "identity to the workload."
        )


def find_credential_variables() -> list[str]:
    """Names of forbidden variables that are set to a non-empty value."""
    return [name for name in FORBIDDEN_CREDENTIAL_ENV_VARS if os.environ.get(name)]


def enforce_secretless_architecture() -> None:
    """Raise SecretlessViolationError naming every offending variable."""
    found = find_credential_variables()
    if found:
        logger.critical(
            "Static credentials in environment, refusing to start",
            extra={"security_event": "credential_detected", "env_vars": found},
        )
        raise SecretlessViolationError(found)


def get_gateway_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Managed identity credential for gateway tokens.

    ``client_id`` selects a user-assigned identity; without it the
    system-assigned identity is used.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info("Gateway identity: user-assigned", extra={"client_id": client_id[:8]})
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Gateway identity: system-assigned")
    return ManagedIdentityCredential()
