#!/usr/bin/env python3
"""
Node-local packet capture controller
------------------------------------
Watches the pods scheduled to this node and runs tcpdump inside the network
namespace of every pod annotated with tcpdump.antrea.io=<max files>.

• Annotation added        → capture starts (nsenter -t <pid> -n -- tcpdump -i any ...)
• Annotation value change → re-evaluated; a running capture keeps running
• Annotation removed      → capture stops, its files are deleted
• Pod deleted             → capture stops, its files are deleted

Events only enqueue "<namespace>/<name>" keys; workers read the *current*
cached pod for each key, so bursts of updates collapse into one decision.
Failed keys are retried with per-key exponential backoff.

Usage:
  NODE_NAME=$(hostname) python capture_controller.py --workers 2
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from typing import Optional
from urllib.parse import urlparse

from kubernetes import client, config
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from capture_controller_errors import CacheSyncError
from capture_controller_informer import (
    DeletedFinalStateUnknown,
    PodInformer,
    meta_namespace_key,
    split_meta_namespace_key,
)
from capture_controller_queue import RateLimitingQueue
from capture_controller_sessions import CAPTURE_ANNOTATION, CAPTURE_DIR, CaptureManager

log = logging.getLogger("capture-controller")
tracer = trace.get_tracer(__name__)

DEFAULT_KUBECONFIG = os.path.join("~", ".kube", "config")


def _annotations(pod) -> dict:
    return (pod.metadata.annotations if pod.metadata else None) or {}


# ────────────  Controller  ────────────
class Controller:
    def __init__(self, informer: PodInformer, capture_manager: CaptureManager,
                 workers: int = 1, queue: Optional[RateLimitingQueue] = None):
        self.informer = informer
        self.capture_manager = capture_manager
        self.workers = workers
        self.queue = queue or RateLimitingQueue()
        informer.add_event_handler(
            on_add=self.handle_pod_add,
            on_update=self.handle_pod_update,
            on_delete=self.handle_pod_delete,
        )

    # ───────  event filters  ───────
    def handle_pod_add(self, pod):
        try:
            key = meta_namespace_key(pod)
        except ValueError as exc:
            log.error("Failed to get key for added pod: %s", exc)
            return
        if CAPTURE_ANNOTATION in _annotations(pod):
            log.debug("Pod added with capture annotation: %s", key)
            self.queue.add(key)

    def handle_pod_update(self, old, new):
        if old.metadata.resource_version == new.metadata.resource_version:
            return
        try:
            key = meta_namespace_key(new)
        except ValueError as exc:
            log.error("Failed to get key for updated pod: %s", exc)
            return

        old_ann, new_ann = _annotations(old), _annotations(new)
        had, has = CAPTURE_ANNOTATION in old_ann, CAPTURE_ANNOTATION in new_ann
        if has and (not had or old_ann[CAPTURE_ANNOTATION] != new_ann[CAPTURE_ANNOTATION]):
            log.debug("Pod annotation added/changed: %s", key)
            self.queue.add(key)
        elif had and not has:
            log.debug("Pod annotation removed: %s", key)
            self.queue.add(key)

    def handle_pod_delete(self, obj):
        pod = obj
        if isinstance(obj, DeletedFinalStateUnknown):
            pod = obj.obj
            if pod is None or not hasattr(pod, "metadata"):
                log.error("Error decoding tombstone object for %s, invalid type", obj.key)
                return
            log.debug("Recovered deleted pod %s from tombstone", obj.key)
        elif not hasattr(obj, "metadata"):
            log.error("Error decoding deleted object, invalid type %s", type(obj).__name__)
            return

        try:
            key = meta_namespace_key(pod)
        except ValueError as exc:
            log.error("Failed to get key for deleted pod: %s", exc)
            return
        if CAPTURE_ANNOTATION in _annotations(pod):
            log.debug("Pod deleted with capture annotation: %s", key)
            self.queue.add(key)

    # ───────  workers  ───────
    def run(self, stop_event: threading.Event, cache_sync_timeout: Optional[float] = None):
        log.info("Starting packet capture controller")
        try:
            if not self.informer.wait_for_cache_sync(stop_event, cache_sync_timeout):
                raise CacheSyncError("failed to wait for caches to sync")
            log.info("Cache synced, starting workers")

            for i in range(self.workers):
                threading.Thread(target=self._worker_loop, args=(stop_event,),
                                 name=f"worker-{i}", daemon=True).start()
            log.info("Started %d workers", self.workers)

            stop_event.wait()
            log.info("Shutting down packet capture controller")
        finally:
            self.queue.shut_down()

    def _worker_loop(self, stop_event: threading.Event):
        while not stop_event.is_set():
            try:
                self.run_worker()
            except Exception:
                log.exception("worker crashed; restarting in 1 s")
            if self.queue.shutting_down():
                return
            stop_event.wait(1.0)

    def run_worker(self):
        while self.process_next_work_item():
            pass

    def process_next_work_item(self) -> bool:
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        try:
            self.sync_handler(key)
        except Exception as exc:
            log.error("error syncing pod %r: %s", key, exc)
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def sync_handler(self, key: str):
        namespace, name = split_meta_namespace_key(key)
        with tracer.start_as_current_span("sync-pod") as span:
            span.set_attribute("k8s.namespace.name", namespace)
            span.set_attribute("k8s.pod.name", name)

            pod, exists = self.informer.get_by_key(key)
            if not exists:
                log.debug("Pod %s no longer exists, cleaning up", key)
                self.capture_manager.stop_capture(namespace, name)
                return

            if pod.metadata.deletion_timestamp is not None:
                log.debug("Pod %s is being deleted, stopping capture", key)
                self.capture_manager.stop_capture(namespace, name)
                return

            if CAPTURE_ANNOTATION in _annotations(pod):
                log.debug("Starting capture for pod %s", key)
                self.capture_manager.start_capture(pod)
            else:
                log.debug("Stopping capture for pod %s (annotation removed)", key)
                self.capture_manager.stop_capture(namespace, name)
            log.debug("Successfully synced pod %s", key)


# ────────────  Kubernetes / tracing setup  ────────────
def load_kube_config(kubeconfig: Optional[str] = None):
    try:
        config.load_incluster_config()
        log.info("Using in-cluster Kubernetes config")
        return
    except config.ConfigException as exc:
        log.info("In-cluster config not available: %s", exc)

    path = kubeconfig or os.getenv("KUBECONFIG") or DEFAULT_KUBECONFIG
    path = os.path.expanduser(path)
    config.load_kube_config(config_file=path)
    log.info("Using out-of-cluster config from: %s", path)


def node_field_selector(node_name: str) -> str:
    return f"spec.nodeName={node_name}"


def _sanitize(endpoint: str) -> str:
    endpoint = (endpoint or "").strip()
    for suffix in ("/v1/traces", "/v1/metrics"):
        if endpoint.endswith(suffix):
            endpoint = endpoint[:-len(suffix)]
    endpoint = endpoint.rstrip("/")
    return urlparse(endpoint).netloc if endpoint.startswith(("http://", "https://")) else endpoint


def setup_tracing(service_name: str = "capture-controller") -> TracerProvider:
    tp = TracerProvider(resource=Resource({"service.name": service_name}))
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or os.getenv("OTEL_COLLECTOR_ENDPOINT")
    if endpoint:
        tp.add_span_processor(BatchSpanProcessor(
            OTLPSpanExporter(endpoint=_sanitize(endpoint), insecure=True)))
        log.info("Exporting spans to %s", _sanitize(endpoint))
    trace.set_tracer_provider(tp)
    return tp


# ────────────  main  ────────────
def parse_args(argv=None):
    ap = argparse.ArgumentParser("Node-local packet capture controller")
    ap.add_argument("--kubeconfig", default=None,
                    help="kubeconfig path when not running in-cluster (default: $KUBECONFIG or ~/.kube/config)")
    ap.add_argument("--workers", type=int, default=1, help="Number of reconcile workers (default: 1)")
    ap.add_argument("--capture-dir", default=CAPTURE_DIR, help=f"Capture output directory (default: {CAPTURE_DIR})")
    # resync redelivers unchanged pods; handle_pod_update drops equal resource versions,
    # so for this controller a resync only re-reads the cache
    ap.add_argument("--resync-period", type=float, default=0.0,
                    help="Seconds between cache resyncs, 0 disables (default: 0)")
    ap.add_argument("--cache-sync-timeout", type=float, default=None,
                    help="Give up if the pod cache has not synced after this many seconds (default: wait)")
    ap.add_argument("--shutdown-grace", type=float, default=2.0,
                    help="Seconds to wait after stopping captures before exit (default: 2)")
    return ap.parse_args(argv)


def main(argv=None) -> int:
    level = os.getenv("LOGLEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO),
                        format="%(asctime)s %(levelname)s %(message)s")
    args = parse_args(argv)

    node_name = os.getenv("NODE_NAME")
    if not node_name:
        log.critical("NODE_NAME environment variable must be set")
        return 1
    log.info("Starting packet capture controller on node: %s", node_name)

    try:
        load_kube_config(args.kubeconfig)
    except Exception as exc:
        log.critical("Failed to get Kubernetes config: %s", exc)
        return 1
    setup_tracing()
    v1 = client.CoreV1Api()

    stop_event = threading.Event()

    def _on_signal(signum, _frame):
        log.info("Received signal %s, initiating graceful shutdown...", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    field_selector = node_field_selector(node_name)
    log.info("Creating informer with field selector: %s", field_selector)
    informer = PodInformer(v1, field_selector=field_selector, resync_period=args.resync_period)
    manager = CaptureManager(capture_dir=args.capture_dir)
    ctrl = Controller(informer, manager, workers=args.workers)

    threading.Thread(target=informer.run, args=(stop_event,), name="informer", daemon=True).start()
    log.info("Packet capture controller started successfully")

    try:
        ctrl.run(stop_event, cache_sync_timeout=args.cache_sync_timeout)
    except CacheSyncError as exc:
        log.critical("Error running controller: %s", exc)
        stop_event.set()
        return 1
    finally:
        manager.stop_all()

    time.sleep(args.shutdown_grace)
    log.info("Packet capture controller stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
