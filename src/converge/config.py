"""Configuration management with validation.

Polling bounds are enforced at configuration load time so that no caller can
poll the remote control plane faster than its propagation cadence.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .orchestrator import MutationOptions
from .poller import CancellationToken


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_MINIMUM_SECONDS = 60
MIN_POLL_MINIMUM_SECONDS = 1
MAX_POLL_MINIMUM_SECONDS = 3600

DEFAULT_CONVERGENCE_TIMEOUT_SECONDS = 1800
MAX_CONVERGENCE_TIMEOUT_SECONDS = 24 * 3600

DEFAULT_GATEWAY_REQUEST_TIMEOUT_SECONDS = 30
MAX_GATEWAY_REQUEST_TIMEOUT_SECONDS = 300

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max spec file
MAX_ITEMS_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max item list for offline reconcile

# Input validation patterns
VALID_ENDPOINT_PATTERN = r"^https://[A-Za-z0-9.-]+(:[0-9]{1,5})?(/.*)?$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    gateway_endpoint: str

    # Authentication (secretless, see security.py)
    gateway_token_scope: str | None = None
    managed_identity_client_id: str | None = None

    # Timing
    poll_minimum_seconds: int = DEFAULT_POLL_MINIMUM_SECONDS
    poll_interval_seconds: int | None = None
    convergence_timeout_seconds: int = DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
    gateway_request_timeout_seconds: int = DEFAULT_GATEWAY_REQUEST_TIMEOUT_SECONDS

    # Behavior
    wait_for_convergence: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        import re

        errors: list[str] = []

        if not self.gateway_endpoint:
            errors.append("GATEWAY_ENDPOINT is required")
        elif not re.match(VALID_ENDPOINT_PATTERN, self.gateway_endpoint):
            errors.append(f"GATEWAY_ENDPOINT must be an https URL: {self.gateway_endpoint}")

        if not MIN_POLL_MINIMUM_SECONDS <= self.poll_minimum_seconds <= MAX_POLL_MINIMUM_SECONDS:
            errors.append(
                f"POLL_MINIMUM_SECONDS must be between {MIN_POLL_MINIMUM_SECONDS} "
                f"and {MAX_POLL_MINIMUM_SECONDS} seconds"
            )

        if self.poll_interval_seconds is not None and self.poll_interval_seconds < 1:
            errors.append("POLL_INTERVAL_SECONDS must be at least 1")

        if not 0 <= self.convergence_timeout_seconds <= MAX_CONVERGENCE_TIMEOUT_SECONDS:
            errors.append(
                f"CONVERGENCE_TIMEOUT_SECONDS must be between 0 and "
                f"{MAX_CONVERGENCE_TIMEOUT_SECONDS} seconds"
            )

        if not 1 <= self.gateway_request_timeout_seconds <= MAX_GATEWAY_REQUEST_TIMEOUT_SECONDS:
            errors.append(
                f"GATEWAY_REQUEST_TIMEOUT_SECONDS must be between 1 and "
                f"{MAX_GATEWAY_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def effective_poll_interval_seconds(self) -> int:
        """Requested interval clamped to the floor."""
        if self.poll_interval_seconds is None:
            return self.poll_minimum_seconds
        return max(self.poll_interval_seconds, self.poll_minimum_seconds)

    @property
    def convergence_timeout(self) -> float | None:
        # 0 disables the deadline
        return float(self.convergence_timeout_seconds) or None

    def mutation_options(
        self,
        *,
        cancellation: CancellationToken | None = None,
        wait_for_convergence: bool | None = None,
        poll_interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
    ) -> MutationOptions:
        """Build per-call options, with explicit arguments overriding config."""
        return MutationOptions(
            wait_for_convergence=(
                self.wait_for_convergence if wait_for_convergence is None else wait_for_convergence
            ),
            poll_interval=(
                poll_interval_seconds
                if poll_interval_seconds is not None
                else float(self.effective_poll_interval_seconds)
            ),
            cancellation=cancellation,
            timeout_seconds=timeout_seconds if timeout_seconds is not None else self.convergence_timeout,
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            GATEWAY_ENDPOINT: https base URL of the remote configuration service
            GATEWAY_TOKEN_SCOPE: Bearer token scope; unset disables authentication
            MANAGED_IDENTITY_CLIENT_ID: User-assigned identity client id
            POLL_MINIMUM_SECONDS: Absolute floor between status polls (default: 60)
            POLL_INTERVAL_SECONDS: Requested poll interval (default: the floor)
            CONVERGENCE_TIMEOUT_SECONDS: Overall deadline, 0 disables (default: 1800)
            WAIT_FOR_CONVERGENCE: If "false", return once accepted (default: true)
            GATEWAY_REQUEST_TIMEOUT_SECONDS: Per-request timeout (default: 30)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_optional_int(key: str) -> int | None:
            if not os.environ.get(key):
                return None
            return get_int(key, 0)

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            gateway_endpoint=os.environ.get("GATEWAY_ENDPOINT", ""),
            gateway_token_scope=os.environ.get("GATEWAY_TOKEN_SCOPE") or None,
            managed_identity_client_id=os.environ.get("MANAGED_IDENTITY_CLIENT_ID") or None,
            poll_minimum_seconds=get_int("POLL_MINIMUM_SECONDS", DEFAULT_POLL_MINIMUM_SECONDS),
            poll_interval_seconds=get_optional_int("POLL_INTERVAL_SECONDS"),
            convergence_timeout_seconds=get_int(
                "CONVERGENCE_TIMEOUT_SECONDS", DEFAULT_CONVERGENCE_TIMEOUT_SECONDS
            ),
            gateway_request_timeout_seconds=get_int(
                "GATEWAY_REQUEST_TIMEOUT_SECONDS", DEFAULT_GATEWAY_REQUEST_TIMEOUT_SECONDS
            ),
            wait_for_convergence=get_bool("WAIT_FOR_CONVERGENCE", True),
        )
