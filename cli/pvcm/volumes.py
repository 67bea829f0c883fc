"""Derive and provision the destination volume from the source backup claim."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.utils import parse_quantity

from pvcm_common.errors import ProvisioningError
from pvcm_common.session import ClusterSession

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = "20Gi"
DEFAULT_ACCESS_MODE = "ReadWriteOnce"
DEFAULT_VOLUME_MODE = "Filesystem"

DEFAULT_CLASS_ANNOTATIONS = (
    "storageclass.kubernetes.io/is-default-class",
    "storageclass.beta.kubernetes.io/is-default-class",
)


@dataclass(frozen=True)
class VolumeSpec:
    """Characteristics that must match between source and destination volumes."""
    capacity: str
    access_modes: frozenset[str]
    volume_mode: str = DEFAULT_VOLUME_MODE
    storage_class: str | None = None

    def manifest(self, name: str, namespace: str) -> dict[str, Any]:
        spec: dict[str, Any] = {
            "accessModes": sorted(self.access_modes),
            "resources": {"requests": {"storage": self.capacity}},
            "volumeMode": self.volume_mode,
        }
        if self.storage_class:
            spec["storageClassName"] = self.storage_class

        return {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": {"app": "pvc-migrator", "managed-by": "pvc-migrate"}
            },
            "spec": spec,
        }

    def describe(self) -> str:
        return (
            f"size={self.capacity}, modes=[{', '.join(sorted(self.access_modes))}], "
            f"volumeMode={self.volume_mode}, sc={self.storage_class or '<cluster-default>'}"
        )


def spec_from_pvc(pvc: Any, fallback: bool = True) -> VolumeSpec:
    """Build a VolumeSpec from a V1PersistentVolumeClaim.

    With ``fallback`` a missing size request becomes DEFAULT_CAPACITY and is
    logged; without it the capacity is left empty.
    """
    spec = pvc.spec
    requests = (spec.resources.requests or {}) if spec.resources else {}
    capacity = requests.get("storage") or ""
    if not capacity and fallback:
        logger.warning(f"⚠️  Could not read size of PVC '{pvc.metadata.name}'; defaulting to {DEFAULT_CAPACITY}")
        capacity = DEFAULT_CAPACITY

    return VolumeSpec(
        capacity=capacity,
        access_modes=frozenset(spec.access_modes or [DEFAULT_ACCESS_MODE]),
        volume_mode=spec.volume_mode or DEFAULT_VOLUME_MODE,
        storage_class=spec.storage_class_name or None,
    )


def read_volume_spec(session: ClusterSession, namespace: str, name: str) -> VolumeSpec:
    """Inspect the source backing volume.

    An unreadable volume is not fatal here: every field takes its default and
    the capacity fallback is logged as a warning.
    """
    try:
        pvc = session.core.read_namespaced_persistent_volume_claim(name, namespace)
    except ApiException as exc:
        logger.warning(f"⚠️  Could not read source PVC '{name}' in '{namespace}': {exc.status} {exc.reason}")
        logger.warning(f"⚠️  Could not read source PVC size; defaulting to {DEFAULT_CAPACITY}")
        return VolumeSpec(capacity=DEFAULT_CAPACITY, access_modes=frozenset([DEFAULT_ACCESS_MODE]))
    return spec_from_pvc(pvc)


def storage_class_exists(storage_api: client.StorageV1Api, name: str) -> bool:
    try:
        storage_api.read_storage_class(name)
        return True
    except ApiException as exc:
        if exc.status != 404:
            logger.warning(f"⚠️  Failed to look up storage class '{name}': {exc.status} {exc.reason}")
        return False


def find_default_storage_class(storage_api: client.StorageV1Api) -> str | None:
    """Return the storage class marked as cluster default, if any."""
    try:
        classes = storage_api.list_storage_class()
    except ApiException as exc:
        logger.warning(f"⚠️  Failed to list storage classes: {exc.status} {exc.reason}")
        return None

    for sc in classes.items:
        annotations = sc.metadata.annotations or {}
        if any(annotations.get(key) == "true" for key in DEFAULT_CLASS_ANNOTATIONS):
            return sc.metadata.name
    return None


def resolve(source: VolumeSpec, destination: ClusterSession) -> VolumeSpec:
    """Derive the destination volume spec from the source one.

    Storage class, first match wins:
    1. the source class name, if a class of that name exists on the destination
    2. the destination's default class
    3. none, leaving provisioning to the destination cluster
    """
    storage_class = None
    if source.storage_class and storage_class_exists(destination.storage, source.storage_class):
        storage_class = source.storage_class
        logger.info(f"🔍 Reusing source storage class '{storage_class}' on {destination.label}")
    else:
        storage_class = find_default_storage_class(destination.storage)
        if storage_class:
            logger.info(f"🔍 Using {destination.label} default storage class '{storage_class}'")
        else:
            logger.warning("⚠️  Could not detect default StorageClass on destination; PVC will use cluster default.")

    return VolumeSpec(
        capacity=source.capacity,
        access_modes=source.access_modes,
        volume_mode=source.volume_mode,
        storage_class=storage_class,
    )


def check_compatible(source: VolumeSpec, target: VolumeSpec) -> None:
    """Fail fast unless capacity, access modes and volume mode are identical.

    Gate between resolve() and provisioning: resolve() copies these fields
    from the source today, so this only trips if that derivation changes.

    Raises:
        ProvisioningError: On any mismatch
    """
    mismatches = []
    if source.capacity != target.capacity:
        mismatches.append(f"capacity {source.capacity} != {target.capacity}")
    if source.access_modes != target.access_modes:
        mismatches.append(f"access modes {sorted(source.access_modes)} != {sorted(target.access_modes)}")
    if source.volume_mode != target.volume_mode:
        mismatches.append(f"volume mode {source.volume_mode} != {target.volume_mode}")
    if mismatches:
        raise ProvisioningError(f"Destination volume spec does not match source: {'; '.join(mismatches)}")


def existing_mismatches(wanted: VolumeSpec, existing: VolumeSpec) -> list[str]:
    """Differences that could break the transfer or the restore."""
    problems = []
    if not existing.capacity:
        problems.append(f"no size request (wanted {wanted.capacity})")
    else:
        try:
            if parse_quantity(existing.capacity) < parse_quantity(wanted.capacity):
                problems.append(f"capacity {existing.capacity} < {wanted.capacity}")
        except ValueError:
            problems.append(f"capacity '{existing.capacity}' not comparable to '{wanted.capacity}'")
    if not wanted.access_modes <= existing.access_modes:
        problems.append(f"access modes {sorted(existing.access_modes)} lack {sorted(wanted.access_modes - existing.access_modes)}")
    if existing.volume_mode != wanted.volume_mode:
        problems.append(f"volume mode {existing.volume_mode} != {wanted.volume_mode}")
    return problems


def ensure_volume(session: ClusterSession, namespace: str, name: str, spec: VolumeSpec) -> bool:
    """Create the destination volume unless one of that name already exists.

    An existing volume is kept as-is; differences from the wanted spec are
    logged as warnings, not reconciled.

    Returns:
        True if the volume was created, False if it already existed

    Raises:
        ProvisioningError: If the lookup or creation fails
    """
    try:
        existing = session.core.read_namespaced_persistent_volume_claim(name, namespace)
    except ApiException as exc:
        if exc.status != 404:
            raise ProvisioningError(f"Failed to look up PVC '{name}' in '{namespace}': {exc}") from exc
        existing = None

    if existing is not None:
        logger.info(f"Destination PVC '{name}' already exists in '{namespace}'. Skipping creation.")
        for problem in existing_mismatches(spec, spec_from_pvc(existing, fallback=False)):
            logger.warning(f"⚠️  Existing PVC '{name}' differs from source: {problem}")
        return False

    logger.info(f"📦 Creating destination PVC '{name}' in '{namespace}' ({spec.describe()})")
    try:
        session.core.create_namespaced_persistent_volume_claim(namespace, spec.manifest(name, namespace))
    except ApiException as exc:
        raise ProvisioningError(f"Failed to create PVC '{name}' in '{namespace}': {exc}") from exc

    logger.info(f"✅ Destination PVC '{name}' created")
    return True
