"""Data models for the Simple Ingress Controller."""

from __future__ import annotations

from enum import Enum
from typing import Any

from kubernetes import client
from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Annotation constants
# ---------------------------------------------------------------------------

ANNOTATION_PREFIX = "simple-controller.nameof.github.com"
"""Annotation prefix shared by every key the controller reads or writes."""

EXPOSE_INGRESS_KEY = f"{ANNOTATION_PREFIX}/exposeIngress"
"""Set to ``"true"`` on a Service to request an Ingress for it."""

OWNER_SERVICE_NAME_KEY = f"{ANNOTATION_PREFIX}/ownerServiceName"
"""Written on a managed Ingress when annotation-based ownership is used."""

INGRESS_NAME_SUFFIX = "-ingress"

DEFAULT_INGRESS_HOST = "simple-controller.nameof.com"


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def key_for(obj: Any) -> str:
    """Return the ``namespace/name`` work-queue key for a Kubernetes object."""
    metadata = obj.metadata
    if metadata.namespace:
        return f"{metadata.namespace}/{metadata.name}"
    return metadata.name


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key. Keys without a slash are cluster-scoped."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"Unexpected key format: {key!r}")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class OwnershipScheme(str, Enum):
    """How a managed Ingress records which Service it belongs to."""

    OWNER_REFERENCE = "owner-reference"
    """Store-native controller reference; the API server cascades deletes."""

    ANNOTATION = "annotation"
    """``ownerServiceName`` annotation; no cascade on Service removal."""


class LookupStrategy(str, Enum):
    """How the managed Ingress for a Service is located in the cache."""

    NAME = "name"
    """Get by the derived ``<service>-ingress`` name."""

    SCAN = "scan"
    """List every Ingress in the namespace and filter by owner."""


class PathType(str, Enum):
    PREFIX = "Prefix"
    EXACT = "Exact"
    IMPLEMENTATION_SPECIFIC = "ImplementationSpecific"


class ReconcileAction(str, Enum):
    """What a single reconciliation pass did for its key."""

    SOURCE_ABSENT = "source_absent"
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    IN_SYNC = "in_sync"
    DELETED = "deleted"
    ALREADY_DELETED = "already_deleted"
    NOT_DESIRED = "not_desired"
    NAME_CONFLICT = "name_conflict"


# ---------------------------------------------------------------------------
# Ingress template / desired state
# ---------------------------------------------------------------------------


class IngressTemplate(BaseModel):
    """Shape shared by every Ingress the controller creates."""

    host: str = Field(
        default=DEFAULT_INGRESS_HOST,
        description="Rule host. May reference {name} and {namespace} of the Service.",
    )
    ingress_class_name: str = Field(default="nginx", min_length=1)
    path: str = Field(default="/")
    path_type: PathType = Field(default=PathType.PREFIX)
    port: int | None = Field(
        default=80,
        ge=1,
        le=65535,
        description="Backend Service port. None means the Service's first declared port.",
    )

    @field_validator("path")
    @classmethod
    def _path_is_absolute(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Ingress path must start with '/': {v!r}")
        return v


class DesiredIngress(BaseModel):
    """The Ingress that should exist for an exposed Service."""

    namespace: str
    name: str
    service_name: str
    host: str
    ingress_class_name: str
    path: str
    path_type: PathType
    port: int

    def to_body(self) -> client.V1Ingress:
        """Render the Kubernetes API object: one rule with one HTTP path."""
        return client.V1Ingress(
            api_version="networking.k8s.io/v1",
            kind="Ingress",
            metadata=client.V1ObjectMeta(
                name=self.name,
                namespace=self.namespace,
                annotations={},
            ),
            spec=client.V1IngressSpec(
                ingress_class_name=self.ingress_class_name,
                rules=[
                    client.V1IngressRule(
                        host=self.host,
                        http=client.V1HTTPIngressRuleValue(
                            paths=[
                                client.V1HTTPIngressPath(
                                    path=self.path,
                                    path_type=self.path_type.value,
                                    backend=client.V1IngressBackend(
                                        service=client.V1IngressServiceBackend(
                                            name=self.service_name,
                                            port=client.V1ServiceBackendPort(number=self.port),
                                        )
                                    ),
                                )
                            ]
                        ),
                    )
                ],
            ),
        )


# ---------------------------------------------------------------------------
# Reconcile result
# ---------------------------------------------------------------------------


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation pass."""

    key: str
    action: ReconcileAction
    ingress_name: str | None = None

    @property
    def mutated(self) -> bool:
        """True when the pass issued a successful create or delete."""
        return self.action in (ReconcileAction.CREATED, ReconcileAction.DELETED)
