"""Ownership tracking between managed Ingresses and their source Services.

Exactly one :class:`~simple_ingress_controller.models.OwnershipScheme` is
authoritative per deployment. The tracker both reads it (``owned_by``) and
writes it (``claim``), so the two can never disagree.
"""

from __future__ import annotations

from typing import Any

import structlog
from kubernetes import client

from simple_ingress_controller.k8s_watcher import ResourceCache
from simple_ingress_controller.models import (
    OWNER_SERVICE_NAME_KEY,
    LookupStrategy,
    OwnershipScheme,
)
from simple_ingress_controller.resolver import ingress_name_for

logger = structlog.get_logger(__name__)


class OwnershipTracker:
    """Answers "which Service owns this Ingress?" and "which Ingress does this Service own?".

    Parameters
    ----------
    ingresses:
        Local Ingress cache. Only read, never written.
    scheme:
        Ownership encoding in force for this deployment.
    strategy:
        ``name`` looks up the derived name directly; ``scan`` filters every
        Ingress in the namespace.
    """

    def __init__(
        self,
        ingresses: ResourceCache,
        scheme: OwnershipScheme = OwnershipScheme.OWNER_REFERENCE,
        strategy: LookupStrategy = LookupStrategy.NAME,
    ) -> None:
        self._ingresses = ingresses
        self.scheme = scheme
        self.strategy = strategy

    @staticmethod
    def ingress_name_for(service_name: str) -> str:
        return ingress_name_for(service_name)

    def owned_by(self, ingress: Any) -> str | None:
        """Return the owning Service's name, or ``None`` if not managed by us."""
        metadata = ingress.metadata
        if metadata is None:
            return None
        if self.scheme == OwnershipScheme.ANNOTATION:
            return (metadata.annotations or {}).get(OWNER_SERVICE_NAME_KEY) or None
        for ref in metadata.owner_references or []:
            if ref.controller and ref.kind == "Service" and ref.api_version == "v1":
                return ref.name
        return None

    def lookup(self, namespace: str, service_name: str) -> Any | None:
        """Return the Ingress owned by ``namespace/service_name``, if one exists."""
        if self.strategy == LookupStrategy.NAME:
            ingress = self._ingresses.get(namespace, self.ingress_name_for(service_name))
            if ingress is not None and self.owned_by(ingress) == service_name:
                return ingress
            return None

        for ingress in self._ingresses.list(namespace):
            if self.owned_by(ingress) == service_name:
                return ingress
        return None

    def is_name_taken(self, namespace: str, service_name: str) -> bool:
        """True if the derived name is occupied by an Ingress this Service does not own."""
        ingress = self._ingresses.get(namespace, self.ingress_name_for(service_name))
        return ingress is not None and self.owned_by(ingress) != service_name

    def claim(self, body: client.V1Ingress, service: Any) -> client.V1Ingress:
        """Stamp the ownership marker of *service* onto a new Ingress *body*."""
        metadata = body.metadata
        if self.scheme == OwnershipScheme.ANNOTATION:
            annotations = dict(metadata.annotations or {})
            annotations[OWNER_SERVICE_NAME_KEY] = service.metadata.name
            metadata.annotations = annotations
        else:
            metadata.owner_references = [
                client.V1OwnerReference(
                    api_version="v1",
                    kind="Service",
                    name=service.metadata.name,
                    uid=service.metadata.uid,
                    controller=True,
                    block_owner_deletion=True,
                )
            ]
        return body
