"""
Capture sessions: one supervised nsenter+tcpdump process per annotated pod.

  • ProcessResolver maps a container id to a host pid by scanning /proc/*/cgroup.
  • CaptureManager owns the session table. The table lock is held only around
    table reads and writes, never across pid resolution or process calls.
  • Each session runs in its own daemon thread which waits for tcpdump to exit
    and then drops its own table entry, so the table never keeps a session
    whose process is gone.

Output lands in <capture_dir>/capture-<namespace>-<name>.pcap; tcpdump's -C/-W
rotation adds .pcap1, .pcap2, ... siblings which stop_capture() removes by glob.
"""

import glob
import logging
import os
import re
import subprocess
import threading
from typing import Dict, List, Optional

from opentelemetry import trace

from capture_controller_errors import (
    AnnotationMissingError,
    AnnotationParseError,
    FileCleanupError,
    MalformedContainerIDError,
    NoContainerStatusError,
    ProcessNotFoundError,
    TcpdumpExecutionError,
)

CAPTURE_ANNOTATION = "tcpdump.antrea.io"
CAPTURE_DIR = "/var/log/antrea-captures"
DEFAULT_ROTATION_LIMIT = 10
DEFAULT_FILE_SIZE_MB = 1
MAX_ROTATION_LIMIT = 2**31 - 1  # tcpdump parses -W with atoi

_ROTATION_LIMIT_RE = re.compile(r"\+?[0-9]+")

log = logging.getLogger("capture-controller.sessions")
tracer = trace.get_tracer(__name__)


def pod_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def capture_file(capture_dir: str, namespace: str, name: str) -> str:
    return os.path.join(capture_dir, f"capture-{namespace}-{name}.pcap")


def capture_glob(capture_dir: str, namespace: str, name: str) -> str:
    return os.path.join(glob.escape(capture_dir),
                        glob.escape(f"capture-{namespace}-{name}.pcap") + "*")


def parse_rotation_limit(value: Optional[str], key: str = "") -> int:
    """Positive ASCII integer from the annotation value, else DEFAULT_ROTATION_LIMIT."""
    if isinstance(value, str) and _ROTATION_LIMIT_RE.fullmatch(value):
        limit = int(value)
        if 0 < limit <= MAX_ROTATION_LIMIT:
            return limit
    err = AnnotationParseError(value)
    log.warning("Invalid capture limit for pod %s, using default %d: %s",
                key, DEFAULT_ROTATION_LIMIT, err)
    return DEFAULT_ROTATION_LIMIT


# ────────────  Process resolution  ────────────
class ProcessResolver:
    """
    Finds the host pid of a container by substring match on /proc/<pid>/cgroup.

    The first matching pid in directory listing order wins. Listing order is
    not stable and nothing guarantees that only one process mentions the id,
    so the result is an approximation (normally the container's init or any
    other process in the same cgroup, which share the network namespace).
    """

    def __init__(self, proc_root: str = "/proc"):
        self.proc_root = proc_root

    def resolve(self, container_id: str) -> int:
        try:
            entries = os.listdir(self.proc_root)
        except OSError as exc:
            raise ProcessNotFoundError(container_id, exc) from exc

        for entry in entries:
            if not entry.isdigit():
                continue
            cgroup_path = os.path.join(self.proc_root, entry, "cgroup")
            try:
                with open(cgroup_path, "r", encoding="utf-8", errors="replace") as f:
                    found = any(container_id in line for line in f)
            except OSError:
                # process exited mid-scan or is not readable
                continue
            if found:
                return int(entry)
        raise ProcessNotFoundError(container_id)


# ────────────  Sessions  ────────────
class CaptureSession:
    """Table entry for a running capture; holds only the cancellation handle."""

    def __init__(self, key: str):
        self.key = key
        self._lock = threading.Lock()
        self._cancelled = False
        self._purge = False
        self._proc = None

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def purge(self) -> bool:
        with self._lock:
            return self._purge

    def attach(self, proc) -> bool:
        """Bind the launched process; False if cancel() already happened."""
        with self._lock:
            if self._cancelled:
                return False
            self._proc = proc
            return True

    def cancel(self, purge: bool = False):
        """Kill the process; purge marks its artifacts for removal once it is gone."""
        with self._lock:
            self._purge = self._purge or purge
            if self._cancelled:
                return
            self._cancelled = True
            proc = self._proc
        if proc is not None:
            try:
                proc.kill()
            except OSError as exc:
                log.debug("Kill of capture process for %s failed: %s", self.key, exc)


class CaptureManager:
    def __init__(self, capture_dir: str = CAPTURE_DIR,
                 resolver: Optional[ProcessResolver] = None,
                 nsenter: str = "nsenter", tcpdump: str = "tcpdump",
                 file_size_mb: int = DEFAULT_FILE_SIZE_MB,
                 popen=subprocess.Popen):
        self.capture_dir = capture_dir
        self.resolver = resolver or ProcessResolver()
        self.nsenter = nsenter
        self.tcpdump = tcpdump
        self.file_size_mb = file_size_mb
        self._popen = popen
        self._lock = threading.Lock()
        self._sessions: Dict[str, CaptureSession] = {}
        try:
            os.makedirs(capture_dir, mode=0o755, exist_ok=True)
        except OSError as exc:
            log.error("Failed to create capture directory %s: %s", capture_dir, exc)

    # ───────  table helpers  ───────
    def has_session(self, key: str) -> bool:
        with self._lock:
            return key in self._sessions

    def active_sessions(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def _release(self, session: CaptureSession):
        with self._lock:
            if self._sessions.get(session.key) is session:
                del self._sessions[session.key]

    # ───────  start / stop  ───────
    def start_capture(self, pod):
        ns, name = pod.metadata.namespace, pod.metadata.name
        key = pod_key(ns, name)
        if self.has_session(key):
            log.debug("Capture already running for pod %s", key)
            return

        annotations = pod.metadata.annotations or {}
        if CAPTURE_ANNOTATION not in annotations:
            raise AnnotationMissingError(key, CAPTURE_ANNOTATION)

        statuses = (pod.status.container_statuses if pod.status else None) or []
        if not statuses:
            raise NoContainerStatusError(key)

        container_id = statuses[0].container_id
        runtime, sep, cid = (container_id or "").partition("://")
        if not sep or not runtime or not cid:
            raise MalformedContainerIDError(key, container_id)

        pid = self.resolver.resolve(cid)
        limit = parse_rotation_limit(annotations[CAPTURE_ANNOTATION], key)

        session = CaptureSession(key)
        with self._lock:
            if key in self._sessions:
                log.debug("Capture for pod %s started concurrently", key)
                return
            self._sessions[key] = session

        log.info("Starting capture for pod %s (PID: %d, limit: %d)", key, pid, limit)
        threading.Thread(target=self._run_tcpdump,
                         args=(session, ns, name, pid, limit),
                         name=f"capture-{key}",
                         daemon=True).start()

    def stop_capture(self, namespace: str, name: str):
        key = pod_key(namespace, name)
        with self._lock:
            session = self._sessions.pop(key, None)
        if session is None:
            return
        log.info("Stopping capture for pod %s", key)
        session.cancel(purge=True)
        self.cleanup_files(namespace, name)

    def stop_all(self):
        """Cancel every session without touching artifacts (shutdown path)."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            log.info("Stopping capture for pod %s (shutdown)", session.key)
            session.cancel()

    def cleanup_files(self, namespace: str, name: str) -> List[str]:
        removed = []
        for path in sorted(glob.glob(capture_glob(self.capture_dir, namespace, name))):
            try:
                os.remove(path)
            except OSError as exc:
                log.error("%s", FileCleanupError(path, exc))
                continue
            log.debug("Removed capture file: %s", path)
            removed.append(path)
        return removed

    # ───────  background task  ───────
    def build_command(self, namespace: str, name: str, pid: int, limit: int) -> List[str]:
        return [
            self.nsenter,
            "-t", str(pid),
            "-n",
            "--",
            self.tcpdump,
            "-Z", "root",
            "-i", "any",
            "-C", str(self.file_size_mb),
            "-W", str(limit),
            "-w", capture_file(self.capture_dir, namespace, name),
        ]

    def _run_tcpdump(self, session: CaptureSession, namespace: str, name: str,
                     pid: int, limit: int):
        key = session.key
        try:
            cmd = self.build_command(namespace, name, pid, limit)
            log.debug("Executing: %s", " ".join(cmd))
            with tracer.start_as_current_span("start-capture") as span:
                span.set_attribute("k8s.namespace.name", namespace)
                span.set_attribute("k8s.pod.name", name)
                span.set_attribute("capture.pid", pid)
                span.set_attribute("capture.rotation_limit", limit)
                try:
                    proc = self._popen(cmd)
                except OSError as exc:
                    log.error("%s", TcpdumpExecutionError(key, exc))
                    return

            if not session.attach(proc):
                proc.kill()
            rc = proc.wait()

            if session.cancelled:
                log.debug("Capture stopped gracefully for pod %s", key)
                # files written after stop_capture's cleanup ran
                if session.purge and not self.has_session(key):
                    self.cleanup_files(namespace, name)
            elif rc != 0:
                log.error("tcpdump exited with error for pod %s: exit status %s", key, rc)
            else:
                log.info("tcpdump exited for pod %s", key)
        finally:
            self._release(session)
