"""Ingress reconciler: drives one Service's managed Ingress toward its desired state.

Every pass re-reads the Service from the cache, so the outcome depends only on
current state and never on the notification that queued the key.
"""

from __future__ import annotations

import structlog

from simple_ingress_controller.ingress_client import IngressStore, StoreOutcome
from simple_ingress_controller.k8s_watcher import ResourceCache
from simple_ingress_controller.models import ReconcileAction, ReconcileResult, split_key
from simple_ingress_controller.ownership import OwnershipTracker
from simple_ingress_controller.resolver import IngressResolver

logger = structlog.get_logger(__name__)


class Reconciler:
    """Per-key handler.

    Parameters
    ----------
    services:
        Local Service cache.
    tracker:
        Locates the Ingress owned by a Service and stamps ownership on new ones.
    resolver:
        Computes the desired Ingress from a Service.
    store:
        Issues create / delete calls against the API server.
    """

    def __init__(
        self,
        services: ResourceCache,
        tracker: OwnershipTracker,
        resolver: IngressResolver,
        store: IngressStore,
    ) -> None:
        self._services = services
        self._tracker = tracker
        self._resolver = resolver
        self._store = store

    def reconcile(self, key: str) -> ReconcileResult:
        """Run one pass for ``namespace/name``.

        Issues at most one create or delete call, and none when converged.

        Raises
        ------
        PermanentConfigError
            The desired Ingress cannot be rendered or is rejected by the API.
        TransientStoreError
            The API call failed and may succeed later.
        """
        namespace, name = split_key(key)
        log = logger.bind(key=key)

        service = self._services.get(namespace, name)
        if service is None:
            # Managed Ingress goes away by cascade (owner-reference scheme) or not at all
            log.debug("service_absent")
            return ReconcileResult(key=key, action=ReconcileAction.SOURCE_ABSENT)

        desired = self._resolver.resolve(service)
        existing = self._tracker.lookup(namespace, name)

        if desired is not None:
            if existing is not None:
                log.debug("ingress_in_sync", ingress=existing.metadata.name)
                return ReconcileResult(key=key, action=ReconcileAction.IN_SYNC, ingress_name=existing.metadata.name)

            if self._tracker.is_name_taken(namespace, name):
                log.warning("ingress_name_conflict", ingress=desired.name)
                return ReconcileResult(key=key, action=ReconcileAction.NAME_CONFLICT, ingress_name=desired.name)

            log.info("ingress_needs_create", ingress=desired.name)
            body = self._tracker.claim(desired.to_body(), service)
            outcome = self._store.create(body)
            action = ReconcileAction.CREATED if outcome == StoreOutcome.CREATED else ReconcileAction.ALREADY_EXISTS
            return ReconcileResult(key=key, action=action, ingress_name=desired.name)

        if existing is None:
            log.debug("ingress_not_desired")
            return ReconcileResult(key=key, action=ReconcileAction.NOT_DESIRED)

        ingress_name = existing.metadata.name
        log.info("ingress_needs_delete", ingress=ingress_name)
        outcome = self._store.delete(namespace, ingress_name)
        action = ReconcileAction.DELETED if outcome == StoreOutcome.DELETED else ReconcileAction.ALREADY_DELETED
        return ReconcileResult(key=key, action=action, ingress_name=ingress_name)
