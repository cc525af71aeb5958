from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from expose_controller.src.keys import DeletedFinalStateUnknown, InvalidKeyError, ObjectKey
from expose_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

DEFAULT_WATCH_TIMEOUT_SECONDS = 30
MAX_BACKOFF_SECONDS = 30


class NotFoundError(LookupError):
    """Raised when the cache holds no object for a key."""

    def __init__(self, resource: str, key: ObjectKey) -> None:
        super().__init__(f"{resource} {key} not found")
        self.resource = resource
        self.key = key


class EventType(str, Enum):
    ADDED = "ADDED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class ResourceEvent:
    """A change notification delivered to informer subscribers.

    For ``DELETED`` events ``obj`` may be a :class:`DeletedFinalStateUnknown`
    tombstone. ``old_obj`` is only set for ``UPDATED``.
    """

    type: EventType
    obj: Any
    old_obj: Any = None


ResourceEventHandler = Callable[[ResourceEvent], None]


class ObjectStore:
    """Thread-safe local copy of one resource kind keyed by :class:`ObjectKey`."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        self._items: dict[ObjectKey, Any] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, namespace: str, name: str) -> Any:
        key = ObjectKey(namespace=namespace, name=name)
        with self._lock:
            try:
                return self._items[key]
            except KeyError:
                raise NotFoundError(self.resource, key) from None

    def get_by_key(self, key: ObjectKey) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def keys(self) -> list[ObjectKey]:
        with self._lock:
            return list(self._items)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def upsert(self, obj: Any) -> Any | None:
        """Store *obj* and return the previous object for its key, if any."""
        key = ObjectKey.from_object(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def delete(self, obj: Any) -> Any | None:
        key = ObjectKey.from_object(obj)
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, objects: Iterable[Any]) -> tuple[dict[ObjectKey, Any], dict[ObjectKey, Any]]:
        """Swap in a full listing.

        Returns ``(previous, current)`` snapshots so callers can diff them.
        """
        current: dict[ObjectKey, Any] = {}
        for obj in objects:
            try:
                current[ObjectKey.from_object(obj)] = obj
            except InvalidKeyError:
                LOGGER.warning("Skipping %s without metadata.name in listing", self.resource)
        with self._lock:
            previous = self._items
            self._items = dict(current)
        return previous, current


class Informer:
    """List-then-watch cache for a single resource kind.

    1. Lists the resource (retrying with jittered exponential backoff) and
       replaces the store, delivering ``ADDED`` for every object.
    2. Streams watch events from the list's ``resourceVersion`` and applies
       them to the store before notifying subscribers.
    3. On ``410 Gone`` re-lists; the diff against the store is delivered as
       ``ADDED``/``UPDATED`` and vanished objects as ``DELETED`` tombstones.
    4. When ``resync_seconds`` is positive, re-delivers every cached object
       as ``UPDATED`` on that period.

    ``401``/``403`` responses are configuration errors: the informer marks
    itself failed and returns instead of retrying forever.
    """

    def __init__(
        self,
        resource: str,
        list_fn: Callable[..., Any],
        list_kwargs: dict[str, Any] | None = None,
        resync_seconds: int = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resource = resource
        self.store = ObjectStore(resource)
        self.resync_seconds = resync_seconds
        self.logger = logger or LOGGER
        self._list_fn = list_fn
        self._list_kwargs = dict(list_kwargs or {})
        self._handlers: list[ResourceEventHandler] = []
        self._synced = threading.Event()
        self.failed = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._next_resync_at: float | None = None

    def add_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def stop(self) -> None:
        """Request a stop and interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, event: ResourceEvent) -> None:
        for handler in self._handlers:
            try:
                handler(event)
            except Exception:
                self.logger.exception(
                    "%s event handler failed for %s event", self.resource, event.type.value
                )

    def _list(self) -> str | None:
        listing = self._list_fn(**self._list_kwargs)
        items = getattr(listing, "items", None) or []
        previous, current = self.store.replace(items)

        for key, obj in current.items():
            old = previous.get(key)
            if old is None:
                self._dispatch(ResourceEvent(EventType.ADDED, obj))
            else:
                self._dispatch(ResourceEvent(EventType.UPDATED, obj, old_obj=old))
        for key, obj in previous.items():
            if key not in current:
                self._dispatch(
                    ResourceEvent(EventType.DELETED, DeletedFinalStateUnknown(key=key, obj=obj))
                )

        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _apply_watch_event(self, event_type: str, obj: Any) -> None:
        if event_type in {"ADDED", "MODIFIED"}:
            previous = self.store.upsert(obj)
            if previous is None:
                self._dispatch(ResourceEvent(EventType.ADDED, obj))
            else:
                self._dispatch(ResourceEvent(EventType.UPDATED, obj, old_obj=previous))
        elif event_type == "DELETED":
            self.store.delete(obj)
            self._dispatch(ResourceEvent(EventType.DELETED, obj))

    def _maybe_resync(self, now_monotonic: float) -> None:
        if self._next_resync_at is None or now_monotonic < self._next_resync_at:
            return
        self._next_resync_at = now_monotonic + self.resync_seconds
        objects = self.store.list()
        self.logger.debug("Resyncing %d cached %s", len(objects), self.resource)
        for obj in objects:
            self._dispatch(ResourceEvent(EventType.UPDATED, obj, old_obj=obj))

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the watch timeout, shortened so a due resync is not missed."""
        if self._next_resync_at is None:
            return DEFAULT_WATCH_TIMEOUT_SECONDS
        remaining = max(1.0, self._next_resync_at - now_monotonic)
        return min(DEFAULT_WATCH_TIMEOUT_SECONDS, max(1, math.ceil(remaining)))

    def _access_denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            self.resource,
            phase,
            exc.status,
        )
        METRICS.watch_errors_total.labels(resource=self.resource).inc()
        self.failed.set()
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Populate the store and keep it current until *stop_event* fires."""
        resource_version: str | None = None
        backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                resource_version = self._list()
                self._synced.set()
                self.logger.info(
                    "Synced %d %s; watching from resourceVersion %s",
                    len(self.store),
                    self.resource,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._access_denied(exc, "initial list"):
                    return
                self.logger.exception("Initial %s list failed", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

        if self._should_stop(stop_event):
            return

        if self.resync_seconds > 0:
            self._next_resync_at = time.monotonic() + self.resync_seconds

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop_event):
            self._maybe_resync(time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(resource=self.resource).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self._list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                    allow_watch_bookmarks=True,
                    **self._list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break

                    obj = event.get("object")
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version

                    event_type = str(event.get("type", ""))
                    if event_type != "BOOKMARK" and obj is not None:
                        self._apply_watch_event(event_type, obj)
                    self._maybe_resync(time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.resource)
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.resource)
                        METRICS.watch_errors_total.labels(resource=self.resource).inc()
                        resource_version = None
                    continue

                if self._access_denied(exc, "watch"):
                    return

                self.logger.exception("Kubernetes API %s watch error", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.resource)
                METRICS.watch_errors_total.labels(resource=self.resource).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


def wait_for_cache_sync(
    stop_event: threading.Event,
    *informers: Informer,
    poll_seconds: float = 0.1,
) -> bool:
    """Block until every informer has synced.

    Returns ``False`` if *stop_event* fires first or an informer gave up.
    """
    while True:
        if all(informer.has_synced() for informer in informers):
            return True
        if stop_event.is_set():
            return False
        if any(informer.failed.is_set() for informer in informers):
            return False
        stop_event.wait(timeout=poll_seconds)
