"""Main controller loop: ties the informers, work queue and reconciler together."""

from __future__ import annotations

import threading
from typing import Any

import structlog

from simple_ingress_controller.config import ControllerSettings
from simple_ingress_controller.errors import CacheSyncError, PermanentConfigError
from simple_ingress_controller.ingress_client import IngressStore
from simple_ingress_controller.k8s_watcher import Informer, load_k8s_config, wait_for_cache_sync
from simple_ingress_controller.metrics import (
    DROPPED_TOTAL,
    RECONCILE_ERRORS_TOTAL,
    RECONCILE_TOTAL,
    REQUEUES_TOTAL,
    WORKQUEUE_DEPTH,
)
from simple_ingress_controller.models import key_for
from simple_ingress_controller.ownership import OwnershipTracker
from simple_ingress_controller.reconciler import Reconciler
from simple_ingress_controller.resolver import IngressResolver
from simple_ingress_controller.workqueue import RateLimitingQueue, default_controller_rate_limiter

logger = structlog.get_logger(__name__)

_DRAIN_TIMEOUT = 30.0


class IngressController:
    """Top-level orchestrator.

    1. Loads K8s config.
    2. Starts Service and Ingress informers and waits for their caches.
    3. Runs ``workers`` threads, each looping ``get -> reconcile -> done``.

    Service add/update notifications enqueue the Service key. Every Ingress
    notification (add, update, delete) enqueues the owning Service, so an
    Ingress that is deleted while still wanted is recreated and one that
    shows up after its Service stopped wanting it is removed. Ingresses with
    no owner are ignored.

    Parameters
    ----------
    settings:
        Fully-resolved controller configuration.
    service_informer, ingress_informer, store:
        Optional pre-built collaborators (tests inject fakes here).
    """

    def __init__(
        self,
        settings: ControllerSettings,
        service_informer: Informer | None = None,
        ingress_informer: Informer | None = None,
        store: IngressStore | None = None,
    ) -> None:
        self._settings = settings
        self._stop_event = threading.Event()

        self._services = service_informer or Informer(
            "services",
            namespaces=settings.watch_namespaces,
            resync_period=settings.resync_period,
            watch_timeout_seconds=settings.watch_timeout_seconds,
        )
        self._ingresses = ingress_informer or Informer(
            "ingresses",
            namespaces=settings.watch_namespaces,
            watch_timeout_seconds=settings.watch_timeout_seconds,
        )
        self._queue = RateLimitingQueue(
            default_controller_rate_limiter(
                base_delay=settings.backoff_base_delay,
                max_delay=settings.backoff_max_delay,
                qps=settings.rate_limit_qps,
                burst=settings.rate_limit_burst,
            ),
            name="services",
        )
        self._tracker = OwnershipTracker(
            self._ingresses.cache,
            scheme=settings.ownership_scheme,
            strategy=settings.lookup_strategy,
        )
        self._reconciler = Reconciler(
            services=self._services.cache,
            tracker=self._tracker,
            resolver=IngressResolver(settings.ingress_template()),
            store=store or IngressStore(),
        )
        self._workers: list[threading.Thread] = []

        self._services.add_handlers(
            on_add=self._on_service_add,
            on_update=self._on_service_update,
            on_delete=self._on_service_delete,
        )
        self._ingresses.add_handlers(
            on_add=self._on_ingress_add,
            on_update=self._on_ingress_update,
            on_delete=self._on_ingress_delete,
        )
        WORKQUEUE_DEPTH.set_function(lambda: len(self._queue))

    @property
    def queue(self) -> RateLimitingQueue:
        return self._queue

    # -- lifecycle --------------------------------------------------------------

    def start(self) -> None:
        """Initialise components and block running workers until :meth:`stop`."""
        logger.info(
            "controller_starting",
            namespaces=self._settings.watch_namespaces or ["all"],
            workers=self._settings.workers,
            ownership_scheme=self._settings.ownership_scheme.value,
            lookup_strategy=self._settings.lookup_strategy.value,
            resync_period=self._settings.resync_period,
        )

        # 1. Kubernetes config
        load_k8s_config()

        # 2. Start informers and wait for a consistent view
        self._services.start()
        self._ingresses.start()
        if not wait_for_cache_sync([self._services, self._ingresses], self._settings.cache_sync_timeout):
            raise CacheSyncError(f"Caches did not sync within {self._settings.cache_sync_timeout}s")
        logger.info("caches_synced", services=len(self._services.cache), ingresses=len(self._ingresses.cache))

        # 3. Workers
        self.run_workers()
        self._stop_event.wait()

    def run_workers(self) -> None:
        """Start the worker threads (non-blocking)."""
        for i in range(self._settings.workers):
            t = threading.Thread(target=self._worker_loop, daemon=True, name=f"worker-{i}")
            self._workers.append(t)
            t.start()
        logger.info("workers_started", count=self._settings.workers)

    def stop(self) -> None:
        """Gracefully shut down: stop notifications, let in-flight keys finish."""
        if self._stop_event.is_set():
            return
        logger.info("controller_stopping")
        self._stop_event.set()
        self._services.stop()
        self._ingresses.stop()
        self._queue.shut_down_with_drain(_DRAIN_TIMEOUT)
        for t in self._workers:
            t.join(timeout=5)
        logger.info("controller_stopped")

    # -- notification handlers --------------------------------------------------

    def _on_service_add(self, service: Any) -> None:
        key = key_for(service)
        logger.debug("service_added", key=key)
        self._queue.add(key)

    def _on_service_update(self, _old: Any, service: Any) -> None:
        key = key_for(service)
        logger.debug("service_updated", key=key)
        self._queue.add(key)

    def _on_service_delete(self, service: Any) -> None:
        # No explicit cleanup: an owner reference cascades the Ingress delete
        logger.info("service_deleted", key=key_for(service))

    def _on_ingress_add(self, ingress: Any) -> None:
        self._enqueue_owner(ingress, "added")

    def _on_ingress_update(self, _old: Any, ingress: Any) -> None:
        self._enqueue_owner(ingress, "updated")

    def _on_ingress_delete(self, ingress: Any) -> None:
        """Re-enqueue the owning Service so a still-wanted Ingress is recreated."""
        self._enqueue_owner(ingress, "deleted")

    def _enqueue_owner(self, ingress: Any, event: str) -> None:
        key = key_for(ingress)
        owner = self._tracker.owned_by(ingress)
        if owner is None:
            logger.debug("ignore_unmanaged_ingress", key=key, event=event)
            return
        namespace = ingress.metadata.namespace
        if event == "deleted":
            logger.info("managed_ingress_deleted", key=key, owner=owner)
        else:
            logger.debug(f"managed_ingress_{event}", key=key, owner=owner)
        self._queue.add(f"{namespace}/{owner}" if namespace else owner)

    # -- workers ----------------------------------------------------------------

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set() and self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        """Process one key. Returns ``False`` once the queue has shut down."""
        key, shutdown = self._queue.get()
        if shutdown:
            return False
        try:
            self._sync(key)
        finally:
            self._queue.done(key)
        return True

    def _sync(self, key: Any) -> None:
        """Reconcile *key* and classify any failure."""
        try:
            result = self._reconciler.reconcile(key)
        except PermanentConfigError as exc:
            RECONCILE_ERRORS_TOTAL.labels(error_class=type(exc).__name__, key=key).inc()
            logger.error("reconcile_permanent_error", key=key, error=str(exc))
            self._queue.forget(key)
            return
        except Exception as exc:
            RECONCILE_ERRORS_TOTAL.labels(error_class=type(exc).__name__, key=key).inc()
            self._handle_retry(key, exc)
            return

        RECONCILE_TOTAL.labels(action=result.action.value).inc()
        if result.mutated:
            logger.info("reconciled", key=key, action=result.action.value, ingress=result.ingress_name)
        self._queue.forget(key)

    def _handle_retry(self, key: Any, exc: Exception) -> None:
        retries = self._queue.num_requeues(key)
        if retries < self._settings.max_retries:
            logger.warning("reconcile_failed_requeue", key=key, retries=retries, error=str(exc), exc_info=exc)
            REQUEUES_TOTAL.inc()
            self._queue.add_rate_limited(key)
            return
        logger.error("dropping_key", key=key, retries=retries, error=str(exc))
        DROPPED_TOTAL.inc()
        self._queue.forget(key)
