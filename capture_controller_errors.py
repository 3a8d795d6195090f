"""
Error taxonomy for the packet capture controller.

Every capture error carries the failed operation, a human reason and a
remediation hint, and keeps the underlying exception (if any) on ``cause``.
"""

from typing import Optional


class CaptureError(Exception):
    def __init__(self, operation: str, reason: str, hint: str,
                 cause: Optional[BaseException] = None):
        self.operation = operation
        self.reason = reason
        self.hint = hint
        self.cause = cause
        super().__init__(str(self))

    def __str__(self) -> str:
        msg = f"{self.operation} failed: {self.reason}. {self.hint}"
        if self.cause is not None:
            msg += f" (underlying error: {self.cause})"
        return msg


# ────────────  Container discovery  ────────────
class ContainerNotFoundError(CaptureError):
    def __init__(self, pod_name: str, cause: Optional[BaseException] = None):
        super().__init__(
            "Container discovery",
            f"Could not find container for pod {pod_name}",
            "Ensure the pod is running and has at least one container. "
            f"Check pod status with: kubectl describe pod {pod_name}",
            cause,
        )
        self.pod_name = pod_name


class NoContainerStatusError(ContainerNotFoundError):
    """The pod reports no container statuses yet."""


class MalformedContainerIDError(ContainerNotFoundError):
    """The first container id is not of the form ``<runtime>://<id>``."""

    def __init__(self, pod_name: str, container_id: Optional[str],
                 cause: Optional[BaseException] = None):
        super().__init__(pod_name, cause)
        self.container_id = container_id
        self.reason = f"Invalid container ID format {container_id!r} for pod {pod_name}"
        self.args = (str(self),)


# ────────────  Process discovery  ────────────
class ProcessNotFoundError(CaptureError):
    def __init__(self, container_id: str, cause: Optional[BaseException] = None):
        super().__init__(
            "Process discovery",
            f"Could not find process for container {container_id}",
            "The container may have just started or terminated. Verify with: "
            "kubectl get pod -o jsonpath='{.status.containerStatuses[0].state}'",
            cause,
        )
        self.container_id = container_id


# ────────────  Capture process  ────────────
class TcpdumpExecutionError(CaptureError):
    def __init__(self, pod_name: str, cause: Optional[BaseException] = None):
        super().__init__(
            "Tcpdump execution",
            f"Failed to start tcpdump for pod {pod_name}",
            "Ensure the controller has privileged access and tcpdump is installed. "
            "Check security context in DaemonSet manifest.",
            cause,
        )
        self.pod_name = pod_name


class FileCleanupError(CaptureError):
    def __init__(self, file_path: str, cause: Optional[BaseException] = None):
        super().__init__(
            "File cleanup",
            f"Failed to remove capture file {file_path}",
            "Check file permissions and disk space. The file may have been manually deleted.",
            cause,
        )
        self.file_path = file_path


# ────────────  Annotation  ────────────
class AnnotationParseError(CaptureError):
    def __init__(self, value: Optional[str], cause: Optional[BaseException] = None):
        super().__init__(
            "Annotation parsing",
            f"Invalid annotation value: {value}",
            "The annotation value must be a positive integer representing max capture files. "
            'Example: kubectl annotate pod <name> tcpdump.antrea.io="5"',
            cause,
        )
        self.value = value


class AnnotationMissingError(AnnotationParseError):
    def __init__(self, pod_name: str, annotation: str):
        super().__init__(None)
        self.pod_name = pod_name
        self.reason = f"Annotation {annotation} not found on pod {pod_name}"
        self.args = (str(self),)


# ────────────  Startup  ────────────
class CacheSyncError(RuntimeError):
    """The pod cache never completed its initial list; fatal at startup."""
