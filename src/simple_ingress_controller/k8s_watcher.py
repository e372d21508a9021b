"""Kubernetes informers: list + watch streams feeding local read-through caches.

An :class:`Informer` keeps a :class:`ResourceCache` of Services or Ingresses in
sync with the API server and notifies subscribed handlers about additions,
updates, and deletions. Workers read the cache; they never write to it.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import structlog
from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException

from simple_ingress_controller.models import key_for

logger = structlog.get_logger(__name__)

# Maps resource type -> (API class, all-namespaces list method, namespaced list method)
_RESOURCE_TYPE_MAP: dict[str, tuple[str, str, str]] = {
    "services": ("CoreV1Api", "list_service_for_all_namespaces", "list_namespaced_service"),
    "ingresses": ("NetworkingV1Api", "list_ingress_for_all_namespaces", "list_namespaced_ingress"),
}

_WATCH_ERROR_BACKOFF = 5.0

AddHandler = Callable[[Any], None]
UpdateHandler = Callable[[Any, Any], None]
DeleteHandler = Callable[[Any], None]


def load_k8s_config() -> None:
    """Load Kubernetes configuration (in-cluster preferred, fallback to kubeconfig)."""
    try:
        config.load_incluster_config()
        logger.info("k8s_config_loaded", source="in-cluster")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("k8s_config_loaded", source="kubeconfig")


def parse_label_selector(selector: str) -> dict[str, str]:
    """Parse an equality label selector (``k=v,k2=v2``) into a dict."""
    result: dict[str, str] = {}
    for part in selector.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise ValueError(f"Unsupported label selector clause: {part!r}")
        key, value = part.split("=", 1)
        result[key.strip().rstrip("=")] = value.strip().lstrip("=")
    return result


class ResourceCache:
    """Thread-safe store of API objects keyed by ``namespace/name``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, Any] = {}

    def get(self, namespace: str, name: str) -> Any | None:
        """Return the cached object, or ``None`` if it does not exist."""
        key = f"{namespace}/{name}" if namespace else name
        with self._lock:
            return self._items.get(key)

    def list(self, namespace: str | None = None, label_selector: str = "") -> list[Any]:
        """List cached objects, optionally restricted to a namespace and labels."""
        wanted = parse_label_selector(label_selector) if label_selector else {}
        with self._lock:
            items = list(self._items.values())
        result = []
        for obj in items:
            if namespace is not None and obj.metadata.namespace != namespace:
                continue
            labels = obj.metadata.labels or {}
            if all(labels.get(k) == v for k, v in wanted.items()):
                result.append(obj)
        return result

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def upsert(self, obj: Any) -> Any | None:
        """Store *obj*, returning the object it replaced (if any)."""
        key = key_for(obj)
        with self._lock:
            old = self._items.get(key)
            self._items[key] = obj
            return old

    def remove(self, obj: Any) -> Any | None:
        """Drop *obj*, returning the last cached version (if any)."""
        with self._lock:
            return self._items.pop(key_for(obj), None)

    def replace(self, objs: list[Any], namespace: str | None) -> tuple[list[Any], list[tuple[Any, Any]], list[Any]]:
        """Replace the contents of a namespace scope (``None`` = everything) with *objs*.

        Returns ``(added, updated, deleted)``; ``updated`` holds ``(old, new)`` pairs.
        """
        fresh = {key_for(obj): obj for obj in objs}
        added: list[Any] = []
        updated: list[tuple[Any, Any]] = []
        deleted: list[Any] = []
        with self._lock:
            for key, obj in list(self._items.items()):
                if namespace is not None and obj.metadata.namespace != namespace:
                    continue
                if key not in fresh:
                    deleted.append(self._items.pop(key))
            for key, obj in fresh.items():
                old = self._items.get(key)
                self._items[key] = obj
                if old is None:
                    added.append(obj)
                else:
                    updated.append((old, obj))
        return added, updated, deleted

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass
class _Handlers:
    on_add: AddHandler | None = None
    on_update: UpdateHandler | None = None
    on_delete: DeleteHandler | None = None


class Informer:
    """Lists and watches one resource type, keeping a :class:`ResourceCache` current.

    Parameters
    ----------
    resource_type:
        ``"services"`` or ``"ingresses"``.
    namespaces:
        Namespaces to watch. Empty list means watch all namespaces.
    resync_period:
        Seconds between replays of ``on_update(obj, obj)`` for every cached
        object. ``0`` disables resync.
    watch_timeout_seconds:
        Server-side timeout of a single watch request; the stream is reopened
        from the last seen resourceVersion.
    """

    def __init__(
        self,
        resource_type: str,
        namespaces: list[str] | None = None,
        resync_period: float = 0,
        watch_timeout_seconds: int = 300,
    ) -> None:
        if resource_type not in _RESOURCE_TYPE_MAP:
            raise ValueError(f"Unknown resource type: {resource_type!r}")
        self.resource_type = resource_type
        self.cache = ResourceCache()
        self._namespaces = list(namespaces or [])
        self._resync_period = resync_period
        self._watch_timeout_seconds = watch_timeout_seconds
        self._handlers: list[_Handlers] = []
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._synced_scopes: set[str | None] = set()
        self._synced = threading.Event()
        self._lock = threading.Lock()
        self._watchers: list[watch.Watch] = []

    # -- subscription -----------------------------------------------------------

    def add_handlers(
        self,
        on_add: AddHandler | None = None,
        on_update: UpdateHandler | None = None,
        on_delete: DeleteHandler | None = None,
    ) -> None:
        """Subscribe to notifications. Must be called before :meth:`start`."""
        self._handlers.append(_Handlers(on_add, on_update, on_delete))

    # -- lifecycle --------------------------------------------------------------

    def start(self) -> None:
        """Start one list/watch thread per namespace scope, plus the resync thread."""
        scopes: list[str | None] = list(self._namespaces) or [None]
        for scope in scopes:
            t = threading.Thread(
                target=self._run,
                args=(scope,),
                daemon=True,
                name=f"watch-{self.resource_type}-{scope or 'all'}",
            )
            self._threads.append(t)
            t.start()
            logger.info("watcher_started", resource_type=self.resource_type, namespace=scope or "all")
        if self._resync_period > 0:
            t = threading.Thread(target=self._resync_loop, daemon=True, name=f"resync-{self.resource_type}")
            self._threads.append(t)
            t.start()

    def stop(self) -> None:
        """Signal all watch threads to stop."""
        self._stop_event.set()
        with self._lock:
            watchers = list(self._watchers)
        for w in watchers:
            w.stop()
        for t in self._threads:
            t.join(timeout=5)

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        """Block until every scope completed its initial list."""
        return self._synced.wait(timeout)

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    # -- list / watch -----------------------------------------------------------

    def _list_func(self, namespace: str | None) -> Callable[..., Any]:
        api_class_name, all_ns_method, ns_method = _RESOURCE_TYPE_MAP[self.resource_type]
        api_instance = _get_api_instance(api_class_name)
        if namespace is None:
            return getattr(api_instance, all_ns_method)
        return getattr(api_instance, ns_method)

    def _run(self, namespace: str | None) -> None:
        """List, then watch from the list's resourceVersion; relist on any failure."""
        kwargs: dict[str, Any] = {} if namespace is None else {"namespace": namespace}
        while not self._stop_event.is_set():
            try:
                list_func = self._list_func(namespace)
                resource_version = self.relist(list_func(**kwargs), namespace)
                self._watch(list_func, resource_version, kwargs)
            except ApiException as exc:
                if self._stop_event.is_set():
                    break
                if exc.status == 410:
                    logger.info("watch_expired_relisting", resource_type=self.resource_type, namespace=namespace or "all")
                    continue
                logger.exception("watch_error", resource_type=self.resource_type, namespace=namespace or "all")
                self._stop_event.wait(_WATCH_ERROR_BACKOFF)
            except Exception:
                if self._stop_event.is_set():
                    break
                logger.exception("watch_error", resource_type=self.resource_type, namespace=namespace or "all")
                # Brief backoff before reconnecting
                self._stop_event.wait(_WATCH_ERROR_BACKOFF)

    def _watch(self, list_func: Callable[..., Any], resource_version: str | None, kwargs: dict[str, Any]) -> None:
        w = watch.Watch()
        with self._lock:
            self._watchers.append(w)
        try:
            while not self._stop_event.is_set():
                for event in w.stream(
                    list_func,
                    resource_version=resource_version,
                    timeout_seconds=self._watch_timeout_seconds,
                    **kwargs,
                ):
                    if self._stop_event.is_set():
                        return
                    if event.get("type") == "ERROR":
                        raw = event.get("raw_object") or {}
                        raise ApiException(status=raw.get("code"), reason=raw.get("message"))
                    self.handle_event(event)
                    obj = event.get("object")
                    if obj is not None and obj.metadata and obj.metadata.resource_version:
                        resource_version = obj.metadata.resource_version
        finally:
            with self._lock:
                self._watchers.remove(w)

    def relist(self, result: Any, namespace: str | None) -> str | None:
        """Replace the cache scope with a fresh list result and notify handlers."""
        added, updated, deleted = self.cache.replace(list(result.items or []), namespace)
        for obj in added:
            self._dispatch_add(obj)
        for old, new in updated:
            self._dispatch_update(old, new)
        for obj in deleted:
            self._dispatch_delete(obj)
        self._mark_synced(namespace)
        logger.debug(
            "relist_complete",
            resource_type=self.resource_type,
            namespace=namespace or "all",
            added=len(added),
            updated=len(updated),
            deleted=len(deleted),
        )
        return result.metadata.resource_version if result.metadata else None

    def handle_event(self, event: dict[str, Any]) -> None:
        """Apply a single watch event to the cache and notify handlers."""
        event_type = event.get("type", "")
        obj = event.get("object")
        if obj is None or obj.metadata is None:
            return

        if event_type in ("ADDED", "MODIFIED"):
            old = self.cache.upsert(obj)
            if old is None:
                self._dispatch_add(obj)
            else:
                self._dispatch_update(old, obj)
        elif event_type == "DELETED":
            last = self.cache.remove(obj)
            self._dispatch_delete(last if last is not None else obj)

    def _mark_synced(self, namespace: str | None) -> None:
        with self._lock:
            self._synced_scopes.add(namespace)
            expected = set(self._namespaces) if self._namespaces else {None}
            if expected <= self._synced_scopes:
                self._synced.set()

    def _resync_loop(self) -> None:
        while not self._stop_event.wait(self._resync_period):
            if not self.has_synced:
                continue
            objs = self.cache.list()
            logger.debug("resync", resource_type=self.resource_type, count=len(objs))
            for obj in objs:
                self._dispatch_update(obj, obj)

    # -- dispatch ---------------------------------------------------------------

    def _dispatch_add(self, obj: Any) -> None:
        for h in self._handlers:
            if h.on_add is not None:
                self._safe_call(h.on_add, obj)

    def _dispatch_update(self, old: Any, new: Any) -> None:
        for h in self._handlers:
            if h.on_update is not None:
                self._safe_call(h.on_update, old, new)

    def _dispatch_delete(self, obj: Any) -> None:
        for h in self._handlers:
            if h.on_delete is not None:
                self._safe_call(h.on_delete, obj)

    def _safe_call(self, handler: Callable[..., None], *args: Any) -> None:
        try:
            handler(*args)
        except Exception:
            logger.exception("handler_error", resource_type=self.resource_type)


def wait_for_cache_sync(informers: list[Informer], timeout: float) -> bool:
    """Wait until every informer has synced, sharing one overall *timeout*."""
    deadline = time.monotonic() + timeout
    for informer in informers:
        remaining = max(0.0, deadline - time.monotonic())
        if not informer.wait_for_sync(remaining):
            logger.error("cache_sync_timeout", resource_type=informer.resource_type, timeout=timeout)
            return False
    return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _get_api_instance(api_class_name: str) -> Any:
    """Instantiate a Kubernetes API class by name."""
    cls = getattr(client, api_class_name)
    return cls()
