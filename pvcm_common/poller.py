"""Blocking wait for a status condition on a custom resource."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .errors import ResourceFailedError, ResourceTimeoutError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 10
PHASE_TIMEOUT = 30 * 60

# Dropped connections and socket errors raised below ApiException
CONNECTION_ERRORS = (HTTPError, OSError)


@dataclass(frozen=True)
class ResourceKind:
    """Group/version/plural triple of a custom resource kind."""
    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"


def find_condition(obj: dict[str, Any], condition_type: str) -> dict[str, Any]:
    """Return the status condition of the given type, or an empty dict."""
    for condition in (obj.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return {}


def wait_for_condition(
    custom_api: client.CustomObjectsApi,
    kind: ResourceKind,
    namespace: str,
    name: str,
    condition_type: str = "Successful",
    want_status: str = "True",
    want_reason: str = "Successful",
    extra: Callable[[dict[str, Any]], bool] | None = None,
    describe: Callable[[dict[str, Any]], str] | None = None,
    failure_type: str | None = "Failure",
    timeout: int = PHASE_TIMEOUT,
    interval: int = POLL_INTERVAL
) -> dict[str, Any]:
    """Poll a custom resource until its condition matches.

    Success needs condition status == ``want_status`` and reason ==
    ``want_reason`` and ``extra(obj)`` on the same read. The resource is
    never modified here; on timeout it is left in place for inspection.

    Args:
        custom_api: CustomObjectsApi bound to the owning cluster
        kind: Custom resource kind
        namespace: Namespace of the resource
        name: Resource name
        condition_type: Condition type to watch
        want_status: Required condition status
        want_reason: Required condition reason
        extra: Optional additional predicate on the whole object
        describe: Optional formatter for kind-specific status fields (logged)
        failure_type: Condition type that signals a failed run (None disables)
        timeout: Seconds before giving up
        interval: Seconds between polls

    Returns:
        The resource object as read on the successful poll

    Raises:
        ResourceTimeoutError: If the condition is not met within timeout
        ResourceFailedError: If the failure condition turns True
    """
    start = time.monotonic()
    deadline = start + timeout
    status = reason = ""

    while True:
        obj: dict[str, Any] = {}
        try:
            obj = custom_api.get_namespaced_custom_object(
                kind.group, kind.version, namespace, kind.plural, name
            )
        except ApiException as exc:
            logger.warning(f"⚠️  Could not read {kind.kind} {namespace}/{name}: {exc.status} {exc.reason}")
        except CONNECTION_ERRORS as exc:
            logger.warning(f"⚠️  Could not read {kind.kind} {namespace}/{name}: {exc}")

        condition = find_condition(obj, condition_type)
        status = condition.get("status", "")
        reason = condition.get("reason", "")
        details = f", {describe(obj)}" if describe and obj else ""
        logger.info(f"{kind.kind} status: {condition_type}.status='{status}', {condition_type}.reason='{reason}'{details}")

        if status == want_status and reason == want_reason and (extra is None or extra(obj)):
            return obj

        if failure_type:
            failure = find_condition(obj, failure_type)
            if failure.get("status") == "True":
                raise ResourceFailedError(
                    f"{kind.kind} '{name}' reported {failure_type}: "
                    f"reason='{failure.get('reason', '')}' message='{failure.get('message', '')}'"
                )

        now = time.monotonic()
        if now >= deadline:
            raise ResourceTimeoutError(
                f"Timed out after {int(now - start)}s waiting for {kind.kind} '{name}' in '{namespace}' "
                f"(last status='{status}', reason='{reason}')"
            )

        time.sleep(min(interval, deadline - now))
