"""Tests for secretless architecture enforcement.

These tests verify that the operator rejects any credential environment
variables and only ever hands a Managed Identity to the gateway.
"""

from __future__ import annotations

import os
from unittest import mock

import pytest

from converge.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless_architecture,
    get_gateway_credential,
)


class TestSecretlessEnforcement:
    """Tests for secretless architecture enforcement."""

    def test_clean_environment_passes(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_secretless_architecture()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

        assert env_var in str(exc_info.value)
        assert "SECURITY VIOLATION" in str(exc_info.value)

    def test_empty_value_is_ignored(self) -> None:
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": ""}, clear=True):
            enforce_secretless_architecture()

    def test_all_offenders_reported(self) -> None:
        env = {"GATEWAY_CLIENT_SECRET": "a", "AZURE_CLIENT_SECRET": "b"}
        with mock.patch.dict(os.environ, env, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

        assert exc_info.value.env_vars == ["GATEWAY_CLIENT_SECRET", "AZURE_CLIENT_SECRET"]

    def test_identity_selectors_allowed(self) -> None:
        """Non-secret identity settings do not block startup."""
        env = {"AZURE_CLIENT_ID": "client", "AZURE_TENANT_ID": "tenant", "AZURE_USERNAME": "ops"}
        with mock.patch.dict(os.environ, env, clear=True):
            enforce_secretless_architecture()

    def test_secret_value_not_leaked(self) -> None:
        with mock.patch.dict(os.environ, {"GATEWAY_ACCESS_TOKEN": "tok-123"}, clear=True):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

        assert "tok-123" not in str(exc_info.value)


class TestGatewayCredential:
    """Tests for get_gateway_credential."""

    def test_user_assigned_identity(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with mock.patch("converge.security.ManagedIdentityCredential") as credential_cls:
                credential = get_gateway_credential("11111111-2222-3333-4444-555555555555")

        credential_cls.assert_called_once_with(client_id="11111111-2222-3333-4444-555555555555")
        assert credential is credential_cls.return_value

    def test_system_assigned_identity(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            with mock.patch("converge.security.ManagedIdentityCredential") as credential_cls:
                get_gateway_credential()

        credential_cls.assert_called_once_with()

    def test_violation_blocks_credential(self) -> None:
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "s"}, clear=True):
            with mock.patch("converge.security.ManagedIdentityCredential") as credential_cls:
                with pytest.raises(SecretlessViolationError):
                    get_gateway_credential("client")

        credential_cls.assert_not_called()
