"""Cleanup of everything the migration created, on every exit path.

Used as a context manager around the whole run: ephemeral workloads are
always deleted; the source backing volume and the destination volume are
deleted only when the run was marked successful. Each deletion is tried
once and failures are logged, never raised, so cleanup can't change the
run's outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from kubernetes.client.rest import ApiException

from pvcm_common.session import ClusterSession
from pvcm.workloads import EphemeralWorkload, terminate

logger = logging.getLogger(__name__)


@dataclass
class TrackedVolume:
    session: ClusterSession
    namespace: str
    name: str


class TeardownCoordinator:
    """Track ephemeral workloads and volumes; release them on exit."""

    def __init__(self):
        self.workloads: list[EphemeralWorkload] = []
        self.volumes: list[TrackedVolume] = []
        self.succeeded = False
        self.failures: list[str] = []

    def __enter__(self) -> TeardownCoordinator:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.run(self.succeeded and exc_type is None)
        return False

    def track_workload(self, workload: EphemeralWorkload) -> EphemeralWorkload:
        self.workloads.append(workload)
        return workload

    def track_volume(self, session: ClusterSession, namespace: str, name: str) -> None:
        """Register a volume for deletion after a successful run."""
        self.volumes.append(TrackedVolume(session, namespace, name))

    def mark_succeeded(self) -> None:
        self.succeeded = True

    def release_workloads(self, wait: int = 0) -> bool:
        """Delete each tracked workload once; tracking ends with the attempt.

        Args:
            wait: Seconds to wait for each pod to disappear

        Returns:
            True if every workload attempted here is gone
        """
        released = True
        while self.workloads:
            workload = self.workloads.pop(0)
            if workload.state == "Deleted":
                continue
            if not terminate(workload, wait=wait):
                self.failures.append(f"pod {workload.namespace}/{workload.name}")
                released = False
        return released

    def delete_volumes(self) -> None:
        """Delete tracked volumes. Destructive; only called on success."""
        for volume in self.volumes:
            logger.info(f"🗑️  Deleting {volume.session.label} PVC '{volume.name}' in '{volume.namespace}'")
            try:
                volume.session.core.delete_namespaced_persistent_volume_claim(volume.name, volume.namespace)
            except ApiException as exc:
                if exc.status == 404:
                    continue
                logger.warning(f"⚠️  Failed to delete PVC '{volume.name}': {exc.status} {exc.reason}")
                self.failures.append(f"pvc {volume.namespace}/{volume.name}")
            except Exception as exc:
                logger.warning(f"⚠️  Failed to delete PVC '{volume.name}': {exc}")
                self.failures.append(f"pvc {volume.namespace}/{volume.name}")

    def run(self, succeeded: bool) -> None:
        if self.workloads:
            logger.info("Cleaning up transfer pods…")
        self.release_workloads()
        if succeeded:
            self.delete_volumes()
        if self.failures:
            logger.warning(f"⚠️  Cleanup incomplete, remove manually: {', '.join(self.failures)}")
