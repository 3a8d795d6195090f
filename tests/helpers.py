"""Test doubles and pod builders shared by the test modules."""

import threading
import time
from datetime import datetime, timezone

from kubernetes import client

from capture_controller_errors import ProcessNotFoundError
from capture_controller_sessions import CAPTURE_ANNOTATION


def make_pod(name="web", namespace="default", annotations=None, resource_version="1",
             container_ids=("containerd://abc123def456",), deleting=False, node="node-1"):
    statuses = [
        client.V1ContainerStatus(
            name=f"c{i}", image="busybox", image_id="", ready=True,
            restart_count=0, container_id=cid,
        )
        for i, cid in enumerate(container_ids)
    ]
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            annotations=annotations,
            resource_version=resource_version,
            deletion_timestamp=datetime.now(timezone.utc) if deleting else None,
        ),
        spec=client.V1PodSpec(containers=[], node_name=node),
        status=client.V1PodStatus(container_statuses=statuses),
    )


def annotated(value="5", **kw):
    return make_pod(annotations={CAPTURE_ANNOTATION: value}, **kw)


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeProc:
    def __init__(self, cmd):
        self.cmd = cmd
        self.returncode = None
        self.killed = False
        self._exited = threading.Event()

    def kill(self):
        self.killed = True
        self.exit(-9)

    def exit(self, rc):
        if self.returncode is None:
            self.returncode = rc
        self._exited.set()

    def wait(self, timeout=None):
        self._exited.wait(timeout)
        return self.returncode


class FakePopen:
    """Stands in for subprocess.Popen; records every launched command."""

    def __init__(self, error=None):
        self.error = error
        self.procs = []
        self._lock = threading.Lock()

    def __call__(self, cmd):
        if self.error is not None:
            raise self.error
        proc = FakeProc(cmd)
        with self._lock:
            self.procs.append(proc)
        return proc


class FakeResolver:
    def __init__(self, pid=4242):
        self.pid = pid
        self.calls = []

    def resolve(self, container_id):
        self.calls.append(container_id)
        if self.pid is None:
            raise ProcessNotFoundError(container_id)
        return self.pid


