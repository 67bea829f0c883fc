"""Migration orchestration: backup → provision → transfer → restore → teardown.

Each step starts only after the previous one reported success. The whole
sequence runs inside a TeardownCoordinator so the ephemeral pods are removed
on every exit path, including SIGTERM (raised as SystemExit) and Ctrl-C.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path

from kubernetes.client.rest import ApiException

from pvcm_common.errors import ConfigError, MigrationError, ResourceTimeoutError
from pvcm_common.session import ClusterSession
from pvcm.phases import BackupPhase, BackupResult, RestorePhase, RestoreResult
from pvcm.teardown import TeardownCoordinator
from pvcm.transfer import METHOD_TAR, SizeCheck, select_strategy, transfer_directory
from pvcm.volumes import VolumeSpec, check_compatible, ensure_volume, read_volume_spec, resolve
from pvcm.workloads import (
    DEFAULT_IMAGE,
    DELETE_TIMEOUT,
    MOUNT_PATH,
    await_ready,
    launch,
    workload_name,
)

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/backups"
DEFAULT_IDENTITY = "controller"


@dataclass(frozen=True)
class MigrationRequest:
    """One row of the migration mapping, with defaults applied."""
    source_namespace: str
    destination_namespace: str
    source_volume: str | None = None
    destination_volume: str | None = None
    source_path: str = DEFAULT_PATH
    destination_path: str = DEFAULT_PATH
    method: str = METHOD_TAR
    workload_identity: str = DEFAULT_IDENTITY

    @property
    def destination_volume_name(self) -> str:
        return self.destination_volume or f"{self.workload_identity}-recovery-claim"

    def validate(self) -> None:
        """Reject paths the workloads and the restore operator cannot reach.

        Raises:
            ConfigError: On relative paths or a destination outside the mount
        """
        for label, path in (("source_path", self.source_path), ("dest_path", self.destination_path)):
            if not path.startswith("/"):
                raise ConfigError(f"{label} must be an absolute path, got '{path}'")
        dest = posixpath.normpath(self.destination_path)
        if dest != MOUNT_PATH and not dest.startswith(MOUNT_PATH + "/"):
            raise ConfigError(f"dest_path must be under {MOUNT_PATH}, got '{self.destination_path}'")


@dataclass
class MigrationOutcome:
    backup: BackupResult | None = None
    source_spec: VolumeSpec | None = None
    destination_spec: VolumeSpec | None = None
    size_check: SizeCheck | None = None
    restore_backup_dir: str = ""
    restore: RestoreResult | None = None


def check_namespace(session: ClusterSession, namespace: str) -> None:
    try:
        session.core.read_namespace(namespace)
    except ApiException as exc:
        if exc.status == 404:
            raise ConfigError(f"{session.label.capitalize()} namespace '{namespace}' not found.") from exc
        raise MigrationError(
            f"Failed to read {session.label} namespace '{namespace}': {exc}", phase="preflight"
        ) from exc


def run_migration(
    request: MigrationRequest,
    source: ClusterSession,
    destination: ClusterSession,
    run_dir: Path,
    ts: str,
    image: str = DEFAULT_IMAGE,
    teardown: TeardownCoordinator | None = None
) -> MigrationOutcome:
    """Run every phase in order against two open sessions.

    Returns:
        MigrationOutcome describing each completed phase

    Raises:
        MigrationError: From the first phase that fails (after cleanup)
    """
    outcome = MigrationOutcome()
    identity = request.workload_identity
    src_ns = request.source_namespace
    dst_ns = request.destination_namespace
    dest_pvc = request.destination_volume_name

    with teardown or TeardownCoordinator() as guard:
        check_namespace(source, src_ns)
        check_namespace(destination, dst_ns)

        # Backup on source
        logger.info(f"\n{'='*60}")
        logger.info(f"📦 Backup: '{src_ns}' on {source.label} (deployment '{identity}')")
        logger.info(f"{'='*60}")
        backup = BackupPhase(source, src_ns, run_dir=run_dir).run(
            identity,
            backup_pvc=request.source_volume,
            default_dir=request.source_path
        )
        outcome.backup = backup

        # Destination volume mirrors the source backup claim
        logger.info(f"\n{'='*60}")
        logger.info(f"💾 Provisioning destination PVC '{dest_pvc}' in '{dst_ns}'")
        logger.info(f"{'='*60}")
        source_spec = read_volume_spec(source, src_ns, backup.backup_claim)
        destination_spec = resolve(source_spec, destination)
        check_compatible(source_spec, destination_spec)
        ensure_volume(destination, dst_ns, dest_pvc, destination_spec)
        outcome.source_spec = source_spec
        outcome.destination_spec = destination_spec
        guard.track_volume(source, src_ns, backup.backup_claim)
        guard.track_volume(destination, dst_ns, dest_pvc)

        # Transfer between two sleeping pods
        logger.info(f"\n{'='*60}")
        logger.info("🔄 Transfer")
        logger.info(f"{'='*60}")
        strategy = select_strategy(request.method)
        logger.info(f"Copy method: {strategy.name}")

        src_pod = guard.track_workload(
            launch(source, src_ns, workload_name("src", ts), backup.backup_claim, image)
        )
        await_ready(src_pod)
        dst_pod = guard.track_workload(
            launch(destination, dst_ns, workload_name("dst", ts), dest_pvc, image)
        )
        await_ready(dst_pod)

        outcome.size_check = transfer_directory(
            strategy, src_pod, dst_pod,
            backup.parent, backup.dir_name, request.destination_path, run_dir
        )

        logger.info("Deleting transfer pods before restore…")
        if not guard.release_workloads(wait=DELETE_TIMEOUT):
            raise ResourceTimeoutError(
                f"Transfer pods still present {DELETE_TIMEOUT}s after delete; not starting the restore "
                f"while they hold '{dest_pvc}'",
                phase="restore"
            )

        # Restore on destination
        logger.info(f"\n{'='*60}")
        logger.info(f"♻️  Restore: '{dst_ns}' on {destination.label}")
        logger.info(f"{'='*60}")
        outcome.restore_backup_dir = posixpath.join(request.destination_path, backup.dir_name)
        outcome.restore = RestorePhase(destination, dst_ns, run_dir=run_dir).run(
            identity,
            backup_dir=outcome.restore_backup_dir,
            backup_pvc=dest_pvc
        )
        logger.info("✅ Restore completed successfully.")

        guard.mark_succeeded()

    return outcome
