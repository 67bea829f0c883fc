import stat
from unittest.mock import MagicMock

import pytest
import yaml

import pvcm_common.session as session_module
from conftest import api_error
from pvcm_common.errors import AuthError
from pvcm_common.session import (
    ClusterCredentials,
    ClusterSession,
    build_kubeconfig,
    request_oauth_token,
    write_kubeconfig,
)


@pytest.fixture
def fake_client(monkeypatch):
    """Stub out kubeconfig loading and the discovery endpoints."""
    loaded = []

    def new_client_from_config(config_file, persist_config):
        loaded.append((config_file, persist_config))
        return MagicMock(name="ApiClient")

    monkeypatch.setattr(session_module.k8s_config, "new_client_from_config", new_client_from_config)
    monkeypatch.setattr(session_module.client, "CoreApi", lambda api_client: MagicMock())
    monkeypatch.setattr(session_module.client, "ApisApi", lambda api_client: MagicMock())
    monkeypatch.setattr(ClusterSession, "whoami", lambda self: "kube:admin")
    return loaded


def test_build_kubeconfig_single_context():
    data = build_kubeconfig("source", "https://api.src:6443", "tok", insecure=True)

    assert data["current-context"] == "source"
    assert data["clusters"][0]["cluster"] == {"server": "https://api.src:6443", "insecure-skip-tls-verify": True}
    assert data["users"][0]["user"] == {"token": "tok"}
    assert "insecure-skip-tls-verify" not in build_kubeconfig("s", "https://x", "t", False)["clusters"][0]["cluster"]


def test_write_kubeconfig_is_owner_only(tmp_path):
    path = tmp_path / "run" / "kubeconfig-source-ts"

    write_kubeconfig(path, "source", "https://api.src:6443", "tok", False)

    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert yaml.safe_load(path.read_text())["users"][0]["user"]["token"] == "tok"


def test_open_with_token_builds_isolated_client(tmp_path, fake_client):
    creds = ClusterCredentials("source", "https://api.src:6443", token="tok")

    session = ClusterSession.open(creds, tmp_path, "20240101-120000")

    expected = tmp_path / "kubeconfig-source-20240101-120000"
    assert fake_client == [(str(expected), False)]
    assert session.kubeconfig_path == expected
    assert session.username == "kube:admin"
    assert session.label == "source"


def test_open_with_password_exchanges_for_token(tmp_path, fake_client, monkeypatch):
    calls = []

    def fake_token(api_url, user, password, insecure):
        calls.append((api_url, user, password, insecure))
        return "sha256~issued"

    monkeypatch.setattr(session_module, "request_oauth_token", fake_token)
    creds = ClusterCredentials("destination", "https://api.dst:6443", user="admin", password="pw", insecure=True)

    session = ClusterSession.open(creds, tmp_path, "ts")

    assert calls == [("https://api.dst:6443", "admin", "pw", True)]
    kubeconfig = yaml.safe_load(session.kubeconfig_path.read_text())
    assert kubeconfig["users"][0]["user"]["token"] == "sha256~issued"


def test_open_rejects_incomplete_credentials(tmp_path):
    with pytest.raises(AuthError, match="Incomplete source credentials") as excinfo:
        ClusterSession.open(ClusterCredentials("source", "https://api.src:6443", user="admin"), tmp_path, "ts")

    assert excinfo.value.phase == "login"


def test_open_rejects_failed_discovery(tmp_path, fake_client, monkeypatch):
    broken = MagicMock()
    broken.get_api_versions.side_effect = api_error(403, "Forbidden")
    monkeypatch.setattr(session_module.client, "ApisApi", lambda api_client: broken)

    with pytest.raises(AuthError, match="API discovery failed"):
        ClusterSession.open(ClusterCredentials("source", "https://api.src:6443", token="tok"), tmp_path, "ts")


def test_open_rejects_failed_identity_check(tmp_path, fake_client, monkeypatch):
    def unauthorized(self):
        raise api_error(401, "Unauthorized")

    monkeypatch.setattr(ClusterSession, "whoami", unauthorized)

    with pytest.raises(AuthError, match="identity check failed"):
        ClusterSession.open(ClusterCredentials("source", "https://api.src:6443", token="tok"), tmp_path, "ts")


def test_whoami_falls_back_to_openshift_user(tmp_path, monkeypatch):
    auth_api = MagicMock()
    auth_api.create_self_subject_review.side_effect = api_error(404, "Not Found")
    monkeypatch.setattr(session_module.client, "AuthenticationV1Api", lambda api_client: auth_api)
    session = ClusterSession("source", "https://api.src:6443", MagicMock(), tmp_path / "kc")
    session.custom = MagicMock()
    session.custom.get_cluster_custom_object.return_value = {"metadata": {"name": "alice"}}

    assert session.whoami() == "alice"
    session.custom.get_cluster_custom_object.assert_called_once_with(
        group="user.openshift.io", version="v1", plural="users", name="~"
    )


def test_whoami_uses_self_subject_review(tmp_path, monkeypatch):
    auth_api = MagicMock()
    auth_api.create_self_subject_review.return_value.status.user_info.username = "system:admin"
    monkeypatch.setattr(session_module.client, "AuthenticationV1Api", lambda api_client: auth_api)
    session = ClusterSession("source", "https://api.src:6443", MagicMock(), tmp_path / "kc")

    assert session.whoami() == "system:admin"


def test_close_swallows_pool_errors(tmp_path):
    api_client = MagicMock()
    api_client.close.side_effect = RuntimeError("already closed")
    session = ClusterSession("source", "https://api.src:6443", api_client, tmp_path / "kc")

    session.close()


def oauth_responses(location, status_code=302):
    meta = MagicMock()
    meta.json.return_value = {"authorization_endpoint": "https://oauth.example/oauth/authorize"}
    login = MagicMock(status_code=status_code, headers={"Location": location} if location else {})
    return [meta, login]


def test_request_oauth_token_reads_fragment(monkeypatch):
    responses = oauth_responses(
        "https://oauth.example/oauth/token/implicit#access_token=sha256~abc&expires_in=86400&token_type=Bearer"
    )
    calls = []

    def fake_get(url, **kwargs):
        calls.append((url, kwargs))
        return responses.pop(0)

    monkeypatch.setattr(session_module.requests, "get", fake_get)

    token = request_oauth_token("https://api.src:6443/", "admin", "pw", insecure=True)

    assert token == "sha256~abc"
    assert calls[0][0] == "https://api.src:6443/.well-known/oauth-authorization-server"
    url, kwargs = calls[1]
    assert url == "https://oauth.example/oauth/authorize"
    assert kwargs["params"] == {"response_type": "token", "client_id": "openshift-challenging-client"}
    assert kwargs["auth"] == ("admin", "pw")
    assert kwargs["headers"] == {"X-CSRF-Token": "1"}
    assert kwargs["allow_redirects"] is False
    assert kwargs["verify"] is False


def test_request_oauth_token_rejected(monkeypatch):
    responses = oauth_responses(None, status_code=401)
    monkeypatch.setattr(session_module.requests, "get", lambda url, **kwargs: responses.pop(0))

    with pytest.raises(AuthError, match="Login rejected for user 'admin'"):
        request_oauth_token("https://api.src:6443", "admin", "wrong")


def test_request_oauth_token_discovery_failure(monkeypatch):
    def unreachable(url, **kwargs):
        raise session_module.requests.ConnectionError("connection refused")

    monkeypatch.setattr(session_module.requests, "get", unreachable)

    with pytest.raises(AuthError, match="OAuth discovery failed"):
        request_oauth_token("https://api.src:6443", "admin", "pw")
