"""Shared fakes for the Kubernetes APIs, the clock and pod exec."""

import base64
import copy
import logging
from pathlib import Path
from types import SimpleNamespace

import pytest
from kubernetes.client.rest import ApiException

from pvcm_common.pod_exec import ExecResult
from pvcm.utils import LOGGER_NAMES


def api_error(status, reason="error"):
    return ApiException(status=status, reason=reason)


def successful_status(**fields):
    status = {"conditions": [{"type": "Successful", "status": "True", "reason": "Successful"}]}
    status.update(fields)
    return status


class FakeClock:
    """Stands in for the ``time`` module; sleeping advances the clock."""

    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def monotonic(self):
        return self.now

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCustomObjectsApi:
    """In-memory namespaced custom objects.

    ``statuses`` maps a record name to the status it gets on create.
    ``delete_lag`` keeps a deleted record readable for that many reads.
    """

    def __init__(self, statuses=None, delete_lag=0):
        self.objects = {}
        self.statuses = statuses or {}
        self.delete_lag = delete_lag
        self.created = []
        self.deleted = []
        self.pending_delete = {}

    def add(self, namespace, plural, name, body):
        self.objects[(namespace, plural, name)] = copy.deepcopy(body)

    def live(self, plural):
        return [key for key in self.objects if key[1] == plural and key not in self.pending_delete]

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        key = (namespace, plural, name)
        if key in self.pending_delete:
            self.pending_delete[key] -= 1
            if self.pending_delete[key] < 0:
                del self.pending_delete[key]
                self.objects.pop(key, None)
        if key not in self.objects:
            raise api_error(404, "Not Found")
        return copy.deepcopy(self.objects[key])

    def create_namespaced_custom_object(self, group, version, namespace, plural, body):
        name = body["metadata"]["name"]
        key = (namespace, plural, name)
        if key in self.objects:
            raise api_error(409, "AlreadyExists")
        stored = copy.deepcopy(body)
        if name in self.statuses:
            stored["status"] = copy.deepcopy(self.statuses[name])
        self.objects[key] = stored
        self.created.append(stored)
        return stored

    def delete_namespaced_custom_object(self, group, version, namespace, plural, name):
        key = (namespace, plural, name)
        if key not in self.objects or key in self.pending_delete:
            raise api_error(404, "Not Found")
        self.deleted.append(name)
        if self.delete_lag:
            self.pending_delete[key] = self.delete_lag
        else:
            del self.objects[key]
        return {}


def make_pvc(name, storage="10Gi", access_modes=("ReadWriteOnce",), volume_mode="Filesystem",
             storage_class=None):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        spec=SimpleNamespace(
            resources=SimpleNamespace(requests={"storage": storage} if storage else {}),
            access_modes=list(access_modes),
            volume_mode=volume_mode,
            storage_class_name=storage_class,
        ),
    )


def make_pod(phase="Running", ready=True):
    conditions = [SimpleNamespace(type="Ready", status="True" if ready else "False")]
    return SimpleNamespace(status=SimpleNamespace(phase=phase, conditions=conditions))


class FakeCoreV1Api:
    """Namespaces, PVCs, pods and events of one fake cluster.

    ``terminate_lag`` keeps a deleted pod readable for that many reads.
    """

    def __init__(self, namespaces=("default",), pod_phase="Running", pod_ready=True, terminate_lag=0):
        self.namespaces = set(namespaces)
        self.pvcs = {}
        self.pods = {}
        self.pod_phase = pod_phase
        self.pod_ready = pod_ready
        self.events = []
        self.created_pvcs = []
        self.deleted_pvcs = []
        self.created_pods = []
        self.deleted_pods = []
        self.delete_error = None
        self.terminate_lag = terminate_lag
        self.terminating = {}

    def read_namespace(self, name):
        if name not in self.namespaces:
            raise api_error(404, "Not Found")
        return SimpleNamespace(metadata=SimpleNamespace(name=name))

    def read_namespaced_persistent_volume_claim(self, name, namespace):
        if (namespace, name) not in self.pvcs:
            raise api_error(404, "Not Found")
        return self.pvcs[(namespace, name)]

    def create_namespaced_persistent_volume_claim(self, namespace, body):
        name = body["metadata"]["name"]
        spec = body["spec"]
        pvc = make_pvc(
            name,
            storage=spec["resources"]["requests"]["storage"],
            access_modes=spec["accessModes"],
            volume_mode=spec.get("volumeMode"),
            storage_class=spec.get("storageClassName"),
        )
        self.pvcs[(namespace, name)] = pvc
        self.created_pvcs.append(body)
        return pvc

    def delete_namespaced_persistent_volume_claim(self, name, namespace):
        self.deleted_pvcs.append((namespace, name))
        if self.delete_error is not None:
            raise self.delete_error
        if self.pvcs.pop((namespace, name), None) is None:
            raise api_error(404, "Not Found")

    def create_namespaced_pod(self, namespace, body):
        name = body["metadata"]["name"]
        self.pods[(namespace, name)] = body
        self.created_pods.append((namespace, name))
        return body

    def read_namespaced_pod(self, name, namespace):
        key = (namespace, name)
        if key in self.terminating:
            self.terminating[key] -= 1
            if self.terminating[key] < 0:
                del self.terminating[key]
                self.pods.pop(key, None)
        if key not in self.pods:
            raise api_error(404, "Not Found")
        return make_pod(self.pod_phase, self.pod_ready)

    def delete_namespaced_pod(self, name, namespace):
        self.deleted_pods.append((namespace, name))
        if self.delete_error is not None:
            raise self.delete_error
        key = (namespace, name)
        if key not in self.pods:
            raise api_error(404, "Not Found")
        if self.terminate_lag:
            self.terminating.setdefault(key, self.terminate_lag)
        else:
            del self.pods[key]

    def list_namespaced_event(self, namespace, field_selector=None):
        return SimpleNamespace(items=list(self.events))


class FakeStorageV1Api:
    """Storage classes keyed by name, valued by their annotations."""

    def __init__(self, classes=None):
        self.classes = classes or {}

    def read_storage_class(self, name):
        if name not in self.classes:
            raise api_error(404, "Not Found")
        return SimpleNamespace(metadata=SimpleNamespace(name=name, annotations=self.classes[name]))

    def list_storage_class(self):
        return SimpleNamespace(items=[
            SimpleNamespace(metadata=SimpleNamespace(name=name, annotations=annotations))
            for name, annotations in self.classes.items()
        ])


class FakeSession:
    def __init__(self, label, core=None, custom=None, storage=None):
        self.label = label
        self.api_url = f"https://api.{label}.example:6443"
        self.core = core or FakeCoreV1Api()
        self.custom = custom or FakeCustomObjectsApi()
        self.storage = storage or FakeStorageV1Api()
        self.kubeconfig_path = Path(f"/tmp/kubeconfig-{label}")
        self.closed = False

    def close(self):
        self.closed = True


class FakePodShell:
    """Scripted replacement for ``exec_in_pod`` used by transfer pods."""

    def __init__(self, archive=b"backup-archive-bytes", blocks=None):
        self.archive = archive
        self.blocks = blocks or {}
        self.calls = []
        self.pushed = {}

    def __call__(self, core_api, namespace, pod_name, command, container=None,
                 stdin=None, stdout_sink=None, check=True):
        script = command[-1]
        self.calls.append((pod_name, script))
        if stdin is not None:
            self.pushed[pod_name] = base64.b64decode("".join(stdin))
            return ExecResult("", "", 0)
        if "tar cf -" in script:
            encoded = base64.b64encode(self.archive).decode("ascii")
            stdout_sink(encoded[:5])
            stdout_sink(encoded[5:])
            return ExecResult("", "", 0)
        if "du -sh" in script:
            return ExecResult("39M\n", "", 0)
        if "du -s " in script:
            return ExecResult(f"{self.blocks.get(pod_name, '10000')}\n", "", 0)
        return ExecResult("", "", 0)

    def scripts(self, pod_name):
        return [script for name, script in self.calls if name == pod_name]


@pytest.fixture(autouse=True)
def reset_loggers():
    """Undo setup_logging so caplog sees package records in every test."""
    yield
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            handler.close()
        logger.handlers = []
        logger.propagate = True
        logger.setLevel(logging.NOTSET)


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr("pvcm_common.poller.time", fake)
    monkeypatch.setattr("pvcm.phases.time", fake)
    monkeypatch.setattr("pvcm.workloads.time", fake)
    return fake


@pytest.fixture
def pod_shell(monkeypatch):
    shell = FakePodShell()
    monkeypatch.setattr("pvcm.workloads.exec_in_pod", shell)
    return shell
