"""Backup and restore phase controllers.

Both phases share one state machine::

    PENDING -> SUBMITTED -> POLLING -> SUCCEEDED | FAILED | TIMED_OUT

Submission is create-or-replace: a record with the same well-known name is
deleted and its disappearance awaited before the new one is created, so a
stale record from an earlier failed run can never be mistaken for this
run's result. Status fields are decoded once here into typed results.
"""

from __future__ import annotations

import logging
import posixpath
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from kubernetes.client.rest import ApiException

from pvcm_common.errors import MigrationError, ResourceFailedError, ResourceTimeoutError
from pvcm_common.poller import (
    CONNECTION_ERRORS,
    PHASE_TIMEOUT,
    POLL_INTERVAL,
    ResourceKind,
    wait_for_condition,
)
from pvcm_common.session import ClusterSession
from pvcm.utils import write_manifest

logger = logging.getLogger(__name__)

GROUP = "automationcontroller.ansible.com"
VERSION = "v1beta1"
BACKUP_KIND = ResourceKind(GROUP, VERSION, "automationcontrollerbackups", "AutomationControllerBackup")
RESTORE_KIND = ResourceKind(GROUP, VERSION, "automationcontrollerrestores", "AutomationControllerRestore")

BACKUP_NAME = "controller-backup"
RESTORE_NAME = "aap-controller-restore"
DEFAULT_BACKUP_DIR = "/backups"

PURGE_TIMEOUT = 300
PURGE_INTERVAL = 2


class PhaseState(str, Enum):
    PENDING = "Pending"
    SUBMITTED = "Submitted"
    POLLING = "Polling"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMED_OUT = "TimedOut"


@dataclass(frozen=True)
class BackupResult:
    """Decoded status of a successful backup record."""
    backup_directory: str
    backup_claim: str

    @property
    def dir_name(self) -> str:
        """Leaf name of the backup directory (preserved at the destination)."""
        return posixpath.basename(self.backup_directory.rstrip('/'))

    @property
    def parent(self) -> str:
        return posixpath.dirname(self.backup_directory.rstrip('/')) or '/'

    @classmethod
    def from_status(cls, obj: dict[str, Any], default_dir: str, default_claim: str) -> BackupResult:
        """Read backupDirectory/backupClaim, falling back to the given defaults."""
        status = obj.get("status") or {}
        return cls(
            backup_directory=status.get("backupDirectory") or default_dir,
            backup_claim=status.get("backupClaim") or default_claim,
        )


@dataclass(frozen=True)
class RestoreResult:
    """Decoded status of a successful restore record."""
    restore_complete: bool

    @classmethod
    def from_status(cls, obj: dict[str, Any]) -> RestoreResult:
        return cls(restore_complete=is_restore_complete(obj))


def is_restore_complete(obj: dict[str, Any]) -> bool:
    """restoreComplete may be reported as a bool or as the string 'true'."""
    value = (obj.get("status") or {}).get("restoreComplete")
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


class PhaseController:
    """Submit a custom resource and wait for its Successful condition."""

    kind: ResourceKind
    name: str
    phase_name = "phase"

    def __init__(
        self,
        session: ClusterSession,
        namespace: str,
        timeout: int = PHASE_TIMEOUT,
        interval: int = POLL_INTERVAL,
        run_dir: Path | None = None
    ):
        self.session = session
        self.namespace = namespace
        self.timeout = timeout
        self.interval = interval
        self.run_dir = run_dir
        self.state = PhaseState.PENDING

    def build_body(self, spec: dict[str, Any]) -> dict[str, Any]:
        return {
            "apiVersion": self.kind.api_version,
            "kind": self.kind.kind,
            "metadata": {"name": self.name, "namespace": self.namespace},
            "spec": spec,
        }

    def _get(self) -> dict[str, Any] | None:
        try:
            return self.session.custom.get_namespaced_custom_object(
                self.kind.group, self.kind.version, self.namespace, self.kind.plural, self.name
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    def purge(self) -> None:
        """Delete an existing record of the same name and wait until it is gone."""
        try:
            existing = self._get()
        except (ApiException, *CONNECTION_ERRORS) as exc:
            raise ResourceFailedError(
                f"Failed to look up {self.kind.kind} '{self.name}' in '{self.namespace}': {exc}",
                phase=self.phase_name
            ) from exc
        if existing is None:
            return

        logger.info(f"🗑️  Deleting stale {self.kind.kind} '{self.name}' in '{self.namespace}'")
        try:
            self.session.custom.delete_namespaced_custom_object(
                self.kind.group, self.kind.version, self.namespace, self.kind.plural, self.name
            )
        except ApiException as exc:
            if exc.status != 404:
                raise ResourceFailedError(
                    f"Failed to delete stale {self.kind.kind} '{self.name}': {exc}",
                    phase=self.phase_name
                ) from exc

        deadline = time.monotonic() + PURGE_TIMEOUT
        while True:
            try:
                if self._get() is None:
                    return
            except (ApiException, *CONNECTION_ERRORS) as exc:
                logger.warning(f"⚠️  Error checking deletion of {self.kind.kind} '{self.name}': {exc}")
            if time.monotonic() >= deadline:
                raise ResourceTimeoutError(
                    f"Stale {self.kind.kind} '{self.name}' still present after {PURGE_TIMEOUT}s",
                    phase=self.phase_name
                )
            time.sleep(PURGE_INTERVAL)

    def submit(self, spec: dict[str, Any]) -> None:
        """Replace any stale record and create a fresh one."""
        self.purge()
        body = self.build_body(spec)
        write_manifest(self.run_dir, self.name, body)

        logger.info(f"📦 Creating {self.kind.kind} '{self.name}' in '{self.namespace}'")
        try:
            self.session.custom.create_namespaced_custom_object(
                self.kind.group, self.kind.version, self.namespace, self.kind.plural, body
            )
        except ApiException as exc:
            self.state = PhaseState.FAILED
            raise ResourceFailedError(
                f"Failed to create {self.kind.kind} '{self.name}' in '{self.namespace}': {exc}",
                phase=self.phase_name
            ) from exc

        self.state = PhaseState.SUBMITTED

    def predicate(self, obj: dict[str, Any]) -> bool:
        """Extra success condition beyond Successful/True."""
        return True

    def describe(self, obj: dict[str, Any]) -> str:
        return ""

    def wait(self) -> dict[str, Any]:
        """Poll until success; any other outcome is fatal to the run."""
        self.state = PhaseState.POLLING
        logger.info(f"⏳ Waiting for {self.kind.kind} '{self.name}' to complete (timeout: {self.timeout}s)")
        try:
            obj = wait_for_condition(
                self.session.custom, self.kind, self.namespace, self.name,
                extra=self.predicate,
                describe=self.describe,
                timeout=self.timeout,
                interval=self.interval
            )
        except ResourceTimeoutError as exc:
            self.state = PhaseState.TIMED_OUT
            exc.phase = self.phase_name
            raise
        except MigrationError as exc:
            self.state = PhaseState.FAILED
            exc.phase = self.phase_name
            raise

        self.state = PhaseState.SUCCEEDED
        logger.info(f"✅ {self.kind.kind} '{self.name}' succeeded")
        return obj


class BackupPhase(PhaseController):
    kind = BACKUP_KIND
    name = BACKUP_NAME
    phase_name = "backup"

    def describe(self, obj: dict[str, Any]) -> str:
        status = obj.get("status") or {}
        return f"dir='{status.get('backupDirectory', '')}', claim='{status.get('backupClaim', '')}'"

    def run(
        self,
        deployment_name: str,
        backup_pvc: str | None = None,
        default_dir: str = DEFAULT_BACKUP_DIR
    ) -> BackupResult:
        spec: dict[str, Any] = {
            "no_log": True,
            "image_pull_policy": "IfNotPresent",
            "set_self_labels": True,
            "deployment_name": deployment_name,
        }
        if backup_pvc:
            spec["backup_pvc"] = backup_pvc

        self.submit(spec)
        obj = self.wait()
        result = BackupResult.from_status(
            obj,
            default_dir=default_dir,
            default_claim=backup_pvc or f"{deployment_name}-backup-claim"
        )
        logger.info(
            f"Using source PVC='{result.backup_claim}', backup dir='{result.backup_directory}', "
            f"dir name='{result.dir_name}'"
        )
        return result


class RestorePhase(PhaseController):
    kind = RESTORE_KIND
    name = RESTORE_NAME
    phase_name = "restore"

    def predicate(self, obj: dict[str, Any]) -> bool:
        return is_restore_complete(obj)

    def describe(self, obj: dict[str, Any]) -> str:
        return f"restoreComplete='{(obj.get('status') or {}).get('restoreComplete', '')}'"

    def run(self, deployment_name: str, backup_dir: str, backup_pvc: str) -> RestoreResult:
        spec = {
            "backup_dir": backup_dir,
            "backup_pvc": backup_pvc,
            "backup_source": "PVC",
            "deployment_name": deployment_name,
            "force_drop_db": False,
            "image_pull_policy": "IfNotPresent",
            "no_log": True,
            "set_self_labels": True,
        }
        self.submit(spec)
        return RestoreResult.from_status(self.wait())
