"""Authenticated, isolated handles to one cluster's API.

Every cluster gets its own kubeconfig file and its own ``ApiClient`` built
from that file, so the source and destination logins never share state and
nothing touches the process-wide default kubernetes configuration.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

import requests
import yaml
from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException

from .errors import AuthError

logger = logging.getLogger(__name__)

OAUTH_CLIENT_ID = "openshift-challenging-client"
OAUTH_TIMEOUT = 30


@dataclass
class ClusterCredentials:
    """Login material for one cluster as read from the credentials file."""
    label: str
    api_url: str = ""
    token: str = ""
    user: str = ""
    password: str = ""
    insecure: bool = False

    def is_complete(self) -> bool:
        """True if there is an endpoint and either a token or a user/pass pair."""
        return bool(self.api_url and (self.token or (self.user and self.password)))


class ClusterSession:
    """API clients bound to a single authenticated cluster context."""

    def __init__(
        self,
        label: str,
        api_url: str,
        api_client: client.ApiClient,
        kubeconfig_path: Path,
        insecure: bool = False
    ):
        self.label = label
        self.api_url = api_url
        self.api_client = api_client
        self.kubeconfig_path = kubeconfig_path
        self.insecure = insecure
        self.username: str | None = None
        self.core = client.CoreV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)
        self.storage = client.StorageV1Api(api_client)

    def __repr__(self) -> str:
        return f"ClusterSession({self.label!r}, {self.api_url!r})"

    @classmethod
    def open(cls, creds: ClusterCredentials, context_dir: Path, ts: str) -> "ClusterSession":
        """Authenticate against a cluster and verify the session is usable.

        Args:
            creds: Endpoint and token or user/password for the cluster
            context_dir: Run directory that receives the kubeconfig file
            ts: Run timestamp used in the kubeconfig file name

        Returns:
            Live ClusterSession

        Raises:
            AuthError: If credentials are incomplete, rejected, or the
                liveness checks fail
        """
        if not creds.is_complete():
            raise AuthError(f"Incomplete {creds.label} credentials (need api_url and token or user/pass)")

        token = creds.token
        if not token:
            token = request_oauth_token(creds.api_url, creds.user, creds.password, creds.insecure)

        kubeconfig_path = context_dir / f"kubeconfig-{creds.label}-{ts}"
        write_kubeconfig(kubeconfig_path, creds.label, creds.api_url, token, creds.insecure)

        try:
            api_client = k8s_config.new_client_from_config(
                config_file=str(kubeconfig_path),
                persist_config=False
            )
        except Exception as exc:
            raise AuthError(f"Failed to load {creds.label} kubeconfig: {exc}") from exc

        session = cls(creds.label, creds.api_url, api_client, kubeconfig_path, creds.insecure)
        session.verify()
        return session

    def verify(self) -> None:
        """Run the identity check and capability discovery.

        A session that accepted the credentials but cannot list API
        resources is rejected.

        Raises:
            AuthError: If either check fails
        """
        try:
            self.username = self.whoami()
        except Exception as exc:
            raise AuthError(f"{self.label} identity check failed: {exc}") from exc

        try:
            client.CoreApi(self.api_client).get_api_versions()
            client.ApisApi(self.api_client).get_api_versions()
        except Exception as exc:
            raise AuthError(f"{self.label} API discovery failed: {exc}") from exc

        logger.info(f"✅ {self.label} login validated ({self.api_url} as {self.username})")

    def whoami(self) -> str:
        """Return the authenticated user name.

        Uses SelfSubjectReview; clusters without that API fall back to the
        OpenShift ``users/~`` object.
        """
        auth_api = client.AuthenticationV1Api(self.api_client)
        try:
            review = auth_api.create_self_subject_review(body=client.V1SelfSubjectReview())
            return review.status.user_info.username
        except ApiException as exc:
            if exc.status != 404:
                raise

        user = self.custom.get_cluster_custom_object(
            group="user.openshift.io",
            version="v1",
            plural="users",
            name="~"
        )
        return user.get("metadata", {}).get("name", "")

    def close(self) -> None:
        """Release the connection pool."""
        try:
            self.api_client.close()
        except Exception as exc:
            logger.debug(f"Closing {self.label} API client failed: {exc}")


def build_kubeconfig(label: str, api_url: str, token: str, insecure: bool) -> dict[str, Any]:
    """Build a single-context kubeconfig as a plain dict."""
    cluster: dict[str, Any] = {"server": api_url}
    if insecure:
        cluster["insecure-skip-tls-verify"] = True

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": label, "cluster": cluster}],
        "users": [{"name": f"{label}-user", "user": {"token": token}}],
        "contexts": [{
            "name": label,
            "context": {"cluster": label, "user": f"{label}-user"}
        }],
        "current-context": label,
        "preferences": {},
    }


def write_kubeconfig(path: Path, label: str, api_url: str, token: str, insecure: bool) -> None:
    """Write the isolated kubeconfig for one cluster with owner-only permissions."""
    data = build_kubeconfig(label, api_url, token, insecure)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8")
    path.chmod(0o600)


def request_oauth_token(api_url: str, user: str, password: str, insecure: bool = False) -> str:
    """Exchange username/password for a bearer token via the cluster OAuth server.

    Follows the challenge flow used by ``oc login``: discover the
    authorization endpoint, request an implicit-grant token with basic auth
    and read ``access_token`` from the redirect fragment.

    Raises:
        AuthError: If discovery fails or no token is issued
    """
    verify = not insecure
    base = api_url.rstrip("/")

    try:
        meta = requests.get(
            f"{base}/.well-known/oauth-authorization-server",
            verify=verify,
            timeout=OAUTH_TIMEOUT
        )
        meta.raise_for_status()
        authorize_url = meta.json()["authorization_endpoint"]
    except (requests.RequestException, KeyError, ValueError) as exc:
        raise AuthError(f"OAuth discovery failed for {api_url}: {exc}") from exc

    try:
        resp = requests.get(
            authorize_url,
            params={"response_type": "token", "client_id": OAUTH_CLIENT_ID},
            auth=(user, password),
            headers={"X-CSRF-Token": "1"},
            allow_redirects=False,
            verify=verify,
            timeout=OAUTH_TIMEOUT
        )
    except requests.RequestException as exc:
        raise AuthError(f"OAuth login request failed for {api_url}: {exc}") from exc

    location = resp.headers.get("Location", "")
    token = parse_qs(urlparse(location).fragment).get("access_token", [""])[0]
    if not token:
        raise AuthError(f"Login rejected for user '{user}' at {api_url} (HTTP {resp.status_code})")
    return token
