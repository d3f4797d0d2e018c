"""Pydantic models for declared resource records.

A record mirrors the shape of an orchestration-platform custom resource:
metadata (annotations, finalizers, deletion timestamp, resource version),
an opaque spec, and a status holding the external ID and conditions.
These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Round-tripping back to the manifest layout used on disk
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

API_VERSION = "uptimerobot.com/v1alpha1"

# Kinds this operator reconciles
KIND_MONITOR = "Monitor"
KIND_MAINTENANCE_WINDOW = "MaintenanceWindow"
KIND_SLACK_INTEGRATION = "SlackIntegration"
KIND_MONITOR_GROUP = "MonitorGroup"
KIND_CONTACT = "Contact"
KIND_ACCOUNT = "Account"

SUPPORTED_KINDS = frozenset(
    {
        KIND_MONITOR,
        KIND_MAINTENANCE_WINDOW,
        KIND_SLACK_INTEGRATION,
        KIND_MONITOR_GROUP,
        KIND_CONTACT,
        KIND_ACCOUNT,
    }
)


@dataclass(frozen=True)
class ResourceRef:
    """Identity of one resource record."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


class Condition(BaseModel):
    """A status condition in the platform's standard shape."""

    model_config = {"populate_by_name": True}

    type: Annotated[str, Field(min_length=1)]
    status: str = "Unknown"
    reason: str = ""
    message: str = ""
    observed_generation: int = Field(0, alias="observedGeneration")
    last_transition_time: datetime | None = Field(None, alias="lastTransitionTime")

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid = {"True", "False", "Unknown"}
        if v not in valid:
            raise ValueError(f"status must be one of {valid}")
        return v


class ObjectMeta(BaseModel):
    """Resource metadata relevant to reconciliation."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: str = "default"
    generation: int = 1
    resource_version: int = Field(1, alias="resourceVersion")
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")


class ResourceStatus(BaseModel):
    """Observed state of a resource."""

    model_config = {"extra": "allow", "populate_by_name": True}

    id: str = ""
    ready: bool = False
    observed_generation: int = Field(0, alias="observedGeneration")
    conditions: list[Condition] = Field(default_factory=list)


class ResourceRecord(BaseModel):
    """A declared external monitoring resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str
    metadata: ObjectMeta
    spec: dict[str, Any] = Field(default_factory=dict)
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v not in SUPPORTED_KINDS:
            raise ValueError(f"kind must be one of {sorted(SUPPORTED_KINDS)}")
        return v

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.metadata.namespace, self.metadata.name)

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, name: str) -> bool:
        return name in self.metadata.finalizers

    def to_manifest(self) -> dict[str, Any]:
        """Convert to the camelCase manifest layout."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
