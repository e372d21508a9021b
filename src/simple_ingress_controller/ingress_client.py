"""Mutating client for Ingress objects in the cluster state store."""

from __future__ import annotations

from enum import Enum

import structlog
import urllib3
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from simple_ingress_controller.errors import PermanentConfigError, TransientStoreError

logger = structlog.get_logger(__name__)

# Statuses where the request itself is wrong; resending it cannot succeed
_PERMANENT_STATUSES = frozenset({400, 422})


class StoreOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    DELETED = "deleted"
    NOT_FOUND = "not_found"


class IngressStore:
    """Creates and deletes Ingresses through ``NetworkingV1Api``.

    ``AlreadyExists`` on create and ``NotFound`` on delete are reported as
    outcomes, not errors: either way the object is in the requested state.

    Parameters
    ----------
    api:
        Pre-built API instance. Created lazily from the loaded kube config
        when omitted.
    """

    def __init__(self, api: client.NetworkingV1Api | None = None) -> None:
        self._api = api

    @property
    def api(self) -> client.NetworkingV1Api:
        if self._api is None:
            self._api = client.NetworkingV1Api()
        return self._api

    def create(self, body: client.V1Ingress) -> StoreOutcome:
        """Create *body* in its namespace."""
        namespace = body.metadata.namespace
        name = body.metadata.name
        try:
            self.api.create_namespaced_ingress(namespace=namespace, body=body)
        except ApiException as exc:
            if exc.status == 409:
                logger.info("ingress_already_exists", namespace=namespace, name=name)
                return StoreOutcome.ALREADY_EXISTS
            raise self._classify(exc, f"create ingress {namespace}/{name}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientStoreError(f"create ingress {namespace}/{name}: {exc}") from exc
        logger.info("ingress_created", namespace=namespace, name=name)
        return StoreOutcome.CREATED

    def delete(self, namespace: str, name: str) -> StoreOutcome:
        """Delete the Ingress ``namespace/name``."""
        try:
            self.api.delete_namespaced_ingress(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                logger.info("ingress_already_deleted", namespace=namespace, name=name)
                return StoreOutcome.NOT_FOUND
            raise self._classify(exc, f"delete ingress {namespace}/{name}") from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientStoreError(f"delete ingress {namespace}/{name}: {exc}") from exc
        logger.info("ingress_deleted", namespace=namespace, name=name)
        return StoreOutcome.DELETED

    @staticmethod
    def _classify(exc: ApiException, context: str) -> Exception:
        if exc.status in _PERMANENT_STATUSES:
            return PermanentConfigError(f"{context} rejected ({exc.status}): {exc.reason}")
        return TransientStoreError(f"{context} failed ({exc.status}): {exc.reason}", status_code=exc.status, body=exc.body)
