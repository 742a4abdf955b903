"""Pydantic models for resource specs with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to the engine's DesiredState
"""

from __future__ import annotations

import json
import re
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .state import DeclaredItem, DesiredState, OperationKind

# =============================================================================
# Base Models
# =============================================================================


class BaseSpec(BaseModel):
    """Base specification with common fields."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    def to_desired_state(self) -> DesiredState:
        """Convert spec to the engine's desired state."""
        raise NotImplementedError("Subclasses must implement to_desired_state")

    @property
    def wait_for_convergence(self) -> bool | None:
        """Per-spec override of the wait behavior; None defers to config."""
        return None


# =============================================================================
# Traffic Steering: AS Maps
# =============================================================================

MAX_AS_NUMBER = 4294967295


class DefaultDatacenterConfig(BaseModel):
    """Datacenter receiving traffic from AS numbers no assignment covers."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    datacenter_id: int = Field(alias="datacenterId")
    nickname: Annotated[str, Field(min_length=1)] = "All Other AS numbers"

    @field_validator("datacenter_id")
    @classmethod
    def validate_datacenter_id(cls, v: int) -> int:
        if v == 0:
            raise ValueError("datacenterId must be non-zero")
        return v


class AsAssignmentConfig(BaseModel):
    """One AS map assignment, identified by its datacenter."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    datacenter_id: int = Field(alias="datacenterId")
    nickname: Annotated[str, Field(min_length=1)]
    as_numbers: list[int] = Field(alias="asNumbers", min_length=1)

    @field_validator("as_numbers")
    @classmethod
    def validate_as_numbers(cls, v: list[int]) -> list[int]:
        for number in v:
            if not 1 <= number <= MAX_AS_NUMBER:
                raise ValueError(f"AS number out of range: {number}")
        return v


class AsMapSpec(BaseSpec):
    """AS map in a traffic-steering domain.

    Assignments are keyed by datacenter id; their order and the order of
    each assignment's AS numbers follow the declaration.
    """

    domain: Annotated[str, Field(min_length=1, max_length=253)]
    name: Annotated[str, Field(min_length=1, max_length=128)]
    default_datacenter: DefaultDatacenterConfig = Field(alias="defaultDatacenter")
    assignments: list[AsAssignmentConfig] = Field(default_factory=list)
    wait_on_complete: bool | None = Field(None, alias="waitOnComplete")

    @field_validator("assignments")
    @classmethod
    def validate_unique_datacenters(cls, v: list[AsAssignmentConfig]) -> list[AsAssignmentConfig]:
        seen: set[int] = set()
        for assignment in v:
            if assignment.datacenter_id in seen:
                raise ValueError(f"Duplicate assignment for datacenter {assignment.datacenter_id}")
            seen.add(assignment.datacenter_id)
        return v

    @property
    def wait_for_convergence(self) -> bool | None:
        return self.wait_on_complete

    def to_desired_state(self) -> DesiredState:
        scope = f"domains/{self.domain}/as-maps"
        assignments = [
            {
                "datacenterId": a.datacenter_id,
                "nickname": a.nickname,
                "asNumbers": list(a.as_numbers),
            }
            for a in self.assignments
        ]
        return DesiredState(
            scope=scope,
            key=(self.name,),
            payload={
                "name": self.name,
                "defaultDatacenter": {
                    "datacenterId": self.default_datacenter.datacenter_id,
                    "nickname": self.default_datacenter.nickname,
                },
                "assignments": assignments,
            },
            items=tuple(
                DeclaredItem(
                    key=(a["datacenterId"],),
                    attributes={"nickname": a["nickname"], "asNumbers": a["asNumbers"]},
                )
                for a in assignments
            ),
            items_scope=f"{scope}/{{id}}/assignments",
            ordered_fields=("asNumbers",),
            success_statuses={OperationKind.UPDATE: frozenset({"COMPLETE"})},
            failure_statuses={OperationKind.UPDATE: frozenset({"DENIED"})},
        )


# =============================================================================
# Delivery: Edge Hostnames
# =============================================================================

# Edge hostname suffix -> secure network
EDGE_HOSTNAME_SUFFIXES: dict[str, str] = {
    "edgesuite.net": "STANDARD_TLS",
    "edgekey.net": "ENHANCED_TLS",
    "akamaized.net": "SHARED_CERT",
}

VALID_HOSTNAME_PREFIX_PATTERN = r"^[A-Za-z0-9]([A-Za-z0-9.-]{0,61}[A-Za-z0-9])?$"


class EdgeHostnameSpec(BaseSpec):
    """Edge hostname within a contract and group.

    Edge hostnames cannot be changed or deleted once created: applying an
    existing one reuses it, deleting one only releases it locally.
    """

    contract_id: Annotated[str, Field(min_length=1, alias="contractId")]
    group_id: Annotated[str, Field(min_length=1, alias="groupId")]
    product_id: Annotated[str, Field(min_length=1, alias="productId")]
    edge_hostname: str = Field(alias="edgeHostname")
    ipv4: bool = True
    ipv6: bool = False
    certificate: int | None = None

    @field_validator("edge_hostname")
    @classmethod
    def validate_edge_hostname(cls, v: str) -> str:
        v = v.strip().lower()
        for suffix in EDGE_HOSTNAME_SUFFIXES:
            if v.endswith("." + suffix):
                prefix = v[: -len(suffix) - 1]
                if not re.match(VALID_HOSTNAME_PREFIX_PATTERN, prefix):
                    raise ValueError(f"Invalid edge hostname prefix: {prefix}")
                return v
        raise ValueError(f"edgeHostname must end with one of {sorted(EDGE_HOSTNAME_SUFFIXES)}")

    @model_validator(mode="after")
    def validate_network_requirements(self) -> EdgeHostnameSpec:
        if not self.ipv4 and not self.ipv6:
            raise ValueError("ipv4, ipv6 or both must be enabled")
        if self.secure_network == "ENHANCED_TLS" and self.certificate is None:
            raise ValueError("certificate is required for edgekey.net hostnames")
        return self

    @property
    def suffix(self) -> str:
        for suffix in EDGE_HOSTNAME_SUFFIXES:
            if self.edge_hostname.endswith("." + suffix):
                return suffix
        raise ValueError(f"Unsupported edge hostname: {self.edge_hostname}")

    @property
    def prefix(self) -> str:
        return self.edge_hostname[: -len(self.suffix) - 1]

    @property
    def secure_network(self) -> str:
        return EDGE_HOSTNAME_SUFFIXES[self.suffix]

    @property
    def ip_behavior(self) -> str:
        match (self.ipv4, self.ipv6):
            case (True, True):
                return "IPV6_COMPLIANCE"
            case (False, True):
                return "IPV6"
            case _:
                return "IPV4"

    def to_desired_state(self) -> DesiredState:
        payload: dict[str, Any] = {
            "productId": self.product_id,
            "domainPrefix": self.prefix,
            "domainSuffix": self.suffix,
            "secureNetwork": self.secure_network,
            "ipVersionBehavior": self.ip_behavior,
        }
        if self.certificate is not None:
            payload["certEnrollmentId"] = self.certificate
        return DesiredState(
            scope=f"contracts/{self.contract_id}/groups/{self.group_id}/edge-hostnames",
            key=(self.prefix, self.suffix),
            payload=payload,
            # Creation is complete once the hostname is registered; DNS propagation is not awaited
            success_statuses={OperationKind.UPDATE: frozenset({"PENDING", "ACTIVE"})},
            failure_statuses={OperationKind.UPDATE: frozenset({"FAILED"})},
            mutable=False,
            deletable=False,
        )


# =============================================================================
# Security: Configuration Activations
# =============================================================================

VALID_NETWORKS = frozenset({"STAGING", "PRODUCTION"})
VALID_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

ACTIVATION_FAILURE_STATUSES = frozenset({"FAILED", "ABORTED"})


class ActivationSpec(BaseSpec):
    """Activation of a security configuration version on a network."""

    config_id: int = Field(alias="configId", gt=0)
    version: int = Field(gt=0)
    network: str = "STAGING"
    notes: str = "Activation by converge-operator"
    notification_emails: list[str] = Field(alias="notificationEmails", min_length=1)
    activate: bool = True

    @field_validator("network")
    @classmethod
    def validate_network(cls, v: str) -> str:
        v = v.upper()
        if v not in VALID_NETWORKS:
            raise ValueError(f"network must be one of {sorted(VALID_NETWORKS)}")
        return v

    @field_validator("notification_emails")
    @classmethod
    def validate_emails(cls, v: list[str]) -> list[str]:
        for email in v:
            if not re.match(VALID_EMAIL_PATTERN, email):
                raise ValueError(f"Invalid notification email: {email}")
        return v

    def to_desired_state(self) -> DesiredState:
        return DesiredState(
            scope=f"appsec/configs/{self.config_id}/activations",
            key=(self.config_id, self.version, self.network),
            payload={
                "configId": self.config_id,
                "version": self.version,
                "network": self.network,
                "note": self.notes,
                "notificationEmails": list(self.notification_emails),
            },
            create_kind=OperationKind.ACTIVATE,
            update_kind=OperationKind.ACTIVATE,
            delete_kind=OperationKind.DEACTIVATE,
            success_statuses={
                OperationKind.ACTIVATE: frozenset({"ACTIVATED"}),
                OperationKind.DEACTIVATE: frozenset({"DEACTIVATED"}),
            },
            failure_statuses={
                OperationKind.ACTIVATE: ACTIVATION_FAILURE_STATUSES,
                OperationKind.DEACTIVATE: ACTIVATION_FAILURE_STATUSES,
            },
            mutable=False,
            enabled=self.activate,
        )


# =============================================================================
# Security: Rate Policies
# =============================================================================


class RatePolicySpec(BaseSpec):
    """Rate policy in a security configuration version, given as a JSON body."""

    config_id: int = Field(alias="configId", gt=0)
    version: int = Field(gt=0)
    rate_policy: str = Field(alias="ratePolicy")

    @field_validator("rate_policy")
    @classmethod
    def validate_rate_policy(cls, v: str) -> str:
        try:
            body = json.loads(v)
        except json.JSONDecodeError as e:
            raise ValueError(f"ratePolicy must be valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise ValueError("ratePolicy must be a JSON object")
        if not body.get("name"):
            raise ValueError("ratePolicy must have a name")
        return v

    @property
    def body(self) -> dict[str, Any]:
        return json.loads(self.rate_policy)

    def to_desired_state(self) -> DesiredState:
        body = self.body
        return DesiredState(
            scope=f"appsec/configs/{self.config_id}/versions/{self.version}/rate-policies",
            key=(body["name"],),
            payload=body,
            # Applied synchronously: the submission already carries the terminal status
            success_statuses={OperationKind.UPDATE: frozenset({"APPLIED"})},
            failure_statuses={OperationKind.UPDATE: frozenset({"REJECTED"})},
        )


# =============================================================================
# Registry
# =============================================================================

SPEC_REGISTRY: dict[str, type[BaseSpec]] = {
    "AsMap": AsMapSpec,
    "EdgeHostname": EdgeHostnameSpec,
    "Activation": ActivationSpec,
    "RatePolicy": RatePolicySpec,
}


def get_spec_class(kind: str) -> type[BaseSpec]:
    """Get the spec class for a resource kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    spec_class = SPEC_REGISTRY.get(kind)
    if spec_class is None:
        valid_kinds = list(SPEC_REGISTRY.keys())
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}")
    return spec_class
