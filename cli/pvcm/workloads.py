"""Short-lived pods that mount a volume so transfer tooling can reach it."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from kubernetes.client.rest import ApiException

from pvcm_common.errors import LaunchError, ReadinessTimeoutError
from pvcm_common.pod_exec import ExecResult, exec_in_pod
from pvcm_common.session import ClusterSession
from pvcm.utils import safe_name

logger = logging.getLogger(__name__)

MOUNT_PATH = "/backups"
CONTAINER_NAME = "migrator"
DEFAULT_IMAGE = "registry.redhat.io/ubi9:9.5"
READY_TIMEOUT = 300
READY_POLL_INTERVAL = 2
DELETE_TIMEOUT = 120
DELETE_POLL_INTERVAL = 2


@dataclass
class EphemeralWorkload:
    """A launched pod and the session that owns it."""
    session: ClusterSession
    namespace: str
    name: str
    claim_name: str
    image: str
    state: str = field(default="Pending")

    def exec(
        self,
        command: list[str],
        stdin: Iterable[str] | None = None,
        stdout_sink: Callable[[str], None] | None = None,
        check: bool = True
    ) -> ExecResult:
        return exec_in_pod(
            self.session.core, self.namespace, self.name, command,
            container=CONTAINER_NAME, stdin=stdin, stdout_sink=stdout_sink, check=check
        )

    def sh(self, script: str, check: bool = True) -> str:
        """Run a shell snippet and return its stripped stdout."""
        return self.exec(["sh", "-c", script], check=check).stdout.strip()


def workload_name(role: str, ts: str) -> str:
    """Timestamp-qualified name, e.g. ``pvc-src-20240101-120000``."""
    return safe_name(f"pvc-{role}-{ts}")


def build_workload_manifest(name: str, namespace: str, claim_name: str, image: str) -> dict[str, Any]:
    """Build the sleeping pod manifest as a plain dict."""
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {"app": "pvc-migrator", "managed-by": "pvc-migrate"}
        },
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": CONTAINER_NAME,
                    "image": image,
                    "command": ["bash", "-lc", "sleep infinity"],
                    "volumeMounts": [{"name": "vol", "mountPath": MOUNT_PATH}]
                }
            ],
            "volumes": [
                {"name": "vol", "persistentVolumeClaim": {"claimName": claim_name}}
            ]
        }
    }


def launch(
    session: ClusterSession,
    namespace: str,
    name: str,
    claim_name: str,
    image: str = DEFAULT_IMAGE
) -> EphemeralWorkload:
    """Create the workload pod.

    Raises:
        LaunchError: If the pod cannot be created
    """
    manifest = build_workload_manifest(name, namespace, claim_name, image)
    logger.info(f"🚀 Creating {session.label} pod '{name}' in '{namespace}' on PVC '{claim_name}'")
    try:
        session.core.create_namespaced_pod(namespace, manifest)
    except ApiException as exc:
        raise LaunchError(f"Failed to create {session.label} pod '{name}' in '{namespace}': {exc}") from exc

    return EphemeralWorkload(session, namespace, name, claim_name, image)


def _is_ready(pod: Any) -> bool:
    for condition in pod.status.conditions or []:
        if condition.type == "Ready" and condition.status == "True":
            return True
    return False


def _latest_event_message(workload: EphemeralWorkload) -> str:
    """Most recent event for the pod, to explain why it never became Ready."""
    try:
        events = workload.session.core.list_namespaced_event(
            workload.namespace,
            field_selector=f"involvedObject.kind=Pod,involvedObject.name={workload.name}"
        )
    except ApiException:
        return ""
    if not events.items:
        return ""
    last = events.items[-1]
    return f"{last.reason}: {last.message}"


def await_ready(workload: EphemeralWorkload, timeout: int = READY_TIMEOUT) -> None:
    """Block until the pod reports Ready.

    Raises:
        LaunchError: If the pod ends in phase Failed or cannot be read
        ReadinessTimeoutError: If the pod is not Ready within timeout
    """
    logger.info(f"⏳ Waiting for pod '{workload.name}' to become Ready (timeout: {timeout}s)")
    start = time.monotonic()
    while True:
        try:
            pod = workload.session.core.read_namespaced_pod(workload.name, workload.namespace)
        except ApiException as exc:
            raise LaunchError(f"Error reading pod '{workload.name}': {exc}") from exc

        if _is_ready(pod):
            workload.state = "Ready"
            logger.info(f"✅ Pod '{workload.name}' is Ready after {int(time.monotonic() - start)}s")
            return

        if pod.status.phase == "Failed":
            workload.state = "Failed"
            raise LaunchError(f"Pod '{workload.name}' failed. {_latest_event_message(workload)}".strip())

        if time.monotonic() - start >= timeout:
            raise ReadinessTimeoutError(
                f"Pod '{workload.name}' not Ready within {timeout}s. {_latest_event_message(workload)}".strip()
            )

        time.sleep(READY_POLL_INTERVAL)


def _await_gone(workload: EphemeralWorkload, timeout: int) -> bool:
    """Poll until the pod no longer exists. Returns False on timeout."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            workload.session.core.read_namespaced_pod(workload.name, workload.namespace)
        except ApiException as exc:
            if exc.status == 404:
                return True
            logger.warning(f"⚠️  Error checking deletion of pod '{workload.name}': {exc.status} {exc.reason}")
        except Exception as exc:
            logger.warning(f"⚠️  Error checking deletion of pod '{workload.name}': {exc}")
        if time.monotonic() >= deadline:
            logger.warning(f"⚠️  Pod '{workload.name}' still present {timeout}s after delete")
            return False
        time.sleep(DELETE_POLL_INTERVAL)


def terminate(workload: EphemeralWorkload, wait: int = 0) -> bool:
    """Delete the pod. Never raises; a missing pod counts as deleted.

    Args:
        workload: Pod to delete
        wait: Seconds to wait for the pod to disappear (0 returns once the
            delete is accepted)

    Returns:
        True if the pod is gone, False if the delete call failed or the pod
        outlived ``wait``
    """
    try:
        workload.session.core.delete_namespaced_pod(workload.name, workload.namespace)
        logger.info(f"🗑️  Deleted {workload.session.label} pod '{workload.name}'")
    except ApiException as exc:
        if exc.status != 404:
            logger.warning(f"⚠️  Failed to delete pod '{workload.name}': {exc.status} {exc.reason}")
            return False
    except Exception as exc:
        logger.warning(f"⚠️  Failed to delete pod '{workload.name}': {exc}")
        return False

    workload.state = "Terminating"
    if wait and not _await_gone(workload, wait):
        return False

    workload.state = "Deleted"
    return True
