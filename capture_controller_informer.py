"""
Pod informer: LIST + WATCH with a local cache keyed by "<namespace>/<name>".

Handlers receive full V1Pod snapshots:
    on_add(pod), on_update(old, new), on_delete(pod | DeletedFinalStateUnknown)

A relist (first start, or after the watch resource version expired) diffs the
fresh list against the cache; pods that vanished in between are delivered as
DeletedFinalStateUnknown tombstones carrying the last known object.
"""

import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from kubernetes import watch
from kubernetes.client.rest import ApiException

log = logging.getLogger("capture-controller.informer")

HTTP_GONE = 410
WATCH_TIMEOUT_SECONDS = 300
RECONNECT_DELAY = 2.0


class DeletedFinalStateUnknown:
    """Last known state of an object whose DELETE event was missed."""

    def __init__(self, key: str, obj):
        self.key = key
        self.obj = obj

    def __repr__(self):
        return f"DeletedFinalStateUnknown(key={self.key!r})"


def meta_namespace_key(obj) -> str:
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    meta = obj.metadata
    if not meta or not meta.name:
        raise ValueError("object has no name")
    if meta.namespace:
        return f"{meta.namespace}/{meta.name}"
    return meta.name


def split_meta_namespace_key(key: str) -> Tuple[str, str]:
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


class _Handler:
    def __init__(self, on_add, on_update, on_delete):
        self.on_add = on_add
        self.on_update = on_update
        self.on_delete = on_delete


class PodInformer:
    def __init__(self, v1, field_selector: str = "", resync_period: float = 0.0,
                 watch_factory: Callable = watch.Watch):
        self.v1 = v1
        self.field_selector = field_selector
        self.resync_period = resync_period
        self._watch_factory = watch_factory
        self._lock = threading.Lock()
        self._cache: Dict[str, object] = {}
        self._handlers: List[_Handler] = []
        self._synced = threading.Event()
        self._resource_version: Optional[str] = None

    # ───────  registration / cache  ───────
    def add_event_handler(self, on_add=None, on_update=None, on_delete=None):
        self._handlers.append(_Handler(on_add, on_update, on_delete))

    def get_by_key(self, key: str):
        with self._lock:
            obj = self._cache.get(key)
        return obj, obj is not None

    def list_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._cache)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def wait_for_cache_sync(self, stop_event: threading.Event,
                            timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._synced.wait(0.1):
            if stop_event.is_set():
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
        return True

    # ───────  dispatch  ───────
    def _dispatch(self, kind: str, *args):
        for h in self._handlers:
            fn = getattr(h, kind)
            if fn is None:
                continue
            try:
                fn(*args)
            except Exception:
                log.exception("pod %s handler crashed", kind[3:])

    def _apply(self, event_type: str, obj):
        try:
            key = meta_namespace_key(obj)
        except ValueError as exc:
            log.warning("Dropping %s event for unnamed object: %s", event_type, exc)
            return
        with self._lock:
            old = self._cache.get(key)
            if event_type == "DELETED":
                self._cache.pop(key, None)
            else:
                self._cache[key] = obj

        if event_type == "DELETED":
            self._dispatch("on_delete", obj)
        elif old is None:
            self._dispatch("on_add", obj)
        else:
            self._dispatch("on_update", old, obj)

    def replace(self, items, resource_version: Optional[str] = None):
        """Swap the cache for a full list, emitting add/update/tombstone deletes."""
        fresh = {}
        for obj in items:
            try:
                fresh[meta_namespace_key(obj)] = obj
            except ValueError as exc:
                log.warning("Skipping listed object without name: %s", exc)

        with self._lock:
            previous = self._cache
            self._cache = dict(fresh)
            self._resource_version = resource_version

        for key, old in previous.items():
            if key not in fresh:
                self._dispatch("on_delete", DeletedFinalStateUnknown(key, old))
        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", old, obj)
        self._synced.set()

    def resync(self):
        with self._lock:
            objs = list(self._cache.values())
        for obj in objs:
            self._dispatch("on_update", obj, obj)

    # ───────  list + watch loop  ───────
    def _list(self):
        resp = self.v1.list_pod_for_all_namespaces(field_selector=self.field_selector)
        log.info("Initial list: %d pod(s) matched field selector '%s'",
                 len(resp.items), self.field_selector or "<all>")
        self.replace(resp.items, resp.metadata.resource_version)

    def _watch_once(self, stop_event: threading.Event):
        w = self._watch_factory()
        try:
            for ev in w.stream(
                self.v1.list_pod_for_all_namespaces,
                field_selector=self.field_selector,
                resource_version=self._resource_version,
                timeout_seconds=WATCH_TIMEOUT_SECONDS,
                allow_watch_bookmarks=True,
            ):
                if stop_event.is_set():
                    return
                et = ev.get("type")
                obj = ev.get("object")
                if obj is None or not hasattr(obj, "metadata"):
                    continue
                self._resource_version = obj.metadata.resource_version
                if et in ("ADDED", "MODIFIED", "DELETED"):
                    self._apply(et, obj)
        finally:
            w.stop()

    def _resync_loop(self, stop_event: threading.Event):
        while not stop_event.wait(self.resync_period):
            if self.has_synced():
                self.resync()

    def run(self, stop_event: threading.Event):
        if self.resync_period:
            threading.Thread(target=self._resync_loop, args=(stop_event,),
                             name="informer-resync", daemon=True).start()
        need_list = True
        while not stop_event.is_set():
            try:
                if need_list:
                    self._list()
                    need_list = False
                self._watch_once(stop_event)
            except ApiException as exc:
                if exc.status == HTTP_GONE:
                    log.info("pod watch expired (410) – relisting")
                    need_list = True
                    continue
                log.warning("pod list/watch failed (%s) – reconnect in %.0f s", exc, RECONNECT_DELAY)
                stop_event.wait(RECONNECT_DELAY)
            except Exception as exc:
                log.warning("pod watch closed (%s) – reconnect in %.0f s", exc, RECONNECT_DELAY)
                stop_event.wait(RECONNECT_DELAY)
