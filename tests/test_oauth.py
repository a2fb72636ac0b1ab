"""Tests for Intune_OAuth."""

import os
import json
import base64
from unittest.mock import MagicMock

import pytest
from Crypto.PublicKey import RSA
from cryptography.fernet import Fernet

import Intune_OAuth


def _b64(obj):
    return base64.urlsafe_b64encode(json.dumps(obj).encode()).decode().rstrip("=")


def _fake_access_token(roles):
    return f"{_b64({'alg': 'none'})}.{_b64({'roles': roles})}.sig"


@pytest.fixture
def oauth_env(tmp_path, monkeypatch):
    key = Fernet.generate_key().decode()
    monkeypatch.setattr(Intune_OAuth, "ENV_FILE", str(tmp_path / "missing.env"))
    monkeypatch.setattr(Intune_OAuth, "CACHE_FILE", str(tmp_path / "Intune_Session.cache"))
    monkeypatch.setenv("AZURE_CLIENT_ID", "client-1")
    monkeypatch.setenv("AZURE_TENANT_ID", "default-tenant")
    monkeypatch.setenv("AZURE_CERT_THUMBPRINT", "AB" * 20)
    monkeypatch.setenv("AZURE_PRIVATE_KEY_PATH", str(tmp_path / "key.pem"))
    monkeypatch.setenv("INTUNE_FERNET_KEY", key)
    return key


def _write_cache(key, **fields):
    data = Fernet(key.encode()).encrypt(json.dumps(fields).encode())
    with open(Intune_OAuth.CACHE_FILE, "wb") as fh:
        fh.write(data)


def _stub_token_flow(monkeypatch, roles=Intune_OAuth.REQUIRED_PERMISSIONS):
    request = MagicMock(return_value={
        "access_token": _fake_access_token(list(roles)),
        "expires_in": 3599,
        "token_type": "Bearer",
    })
    monkeypatch.setattr(Intune_OAuth, "_build_client_assertion", lambda cfg: "assertion")
    monkeypatch.setattr(Intune_OAuth, "_request_new_token", request)
    return request


def test_load_config_reports_missing(oauth_env, monkeypatch):
    monkeypatch.delenv("AZURE_CLIENT_ID")
    monkeypatch.delenv("AZURE_TENANT_ID")
    with pytest.raises(RuntimeError, match="CLIENT_ID, TENANT_ID"):
        Intune_OAuth._load_config()


def test_load_config_tenant_override(oauth_env):
    assert Intune_OAuth._load_config("contoso")["TENANT_ID"] == "contoso"
    assert Intune_OAuth._load_config()["TENANT_ID"] == "default-tenant"


def test_thumbprint_to_x5t():
    assert Intune_OAuth._thumbprint_to_x5t("00" * 20) == "A" * 27
    assert Intune_OAuth._thumbprint_to_x5t("00:" * 19 + "00") == "A" * 27


def test_thumbprint_rejects_non_hex():
    with pytest.raises(RuntimeError):
        Intune_OAuth._thumbprint_to_x5t("not-a-thumbprint")


def test_client_assertion_header_and_claims(oauth_env, tmp_path):
    with open(tmp_path / "key.pem", "wb") as fh:
        fh.write(RSA.generate(2048).export_key(format="PEM"))

    cfg = Intune_OAuth._load_config("contoso")
    header_b64, payload_b64, _ = Intune_OAuth._build_client_assertion(cfg).split(".")

    pad = lambda s: s + "=" * (-len(s) % 4)
    header = json.loads(base64.urlsafe_b64decode(pad(header_b64)))
    payload = json.loads(base64.urlsafe_b64decode(pad(payload_b64)))

    assert header["alg"] == "RS256"
    assert header["x5t"] == Intune_OAuth._thumbprint_to_x5t("AB" * 20)
    assert payload["iss"] == payload["sub"] == "client-1"
    assert payload["aud"] == "https://login.microsoftonline.com/contoso/oauth2/v2.0/token"
    assert payload["exp"] - payload["iat"] == Intune_OAuth.ASSERTION_LIFETIME


def test_client_assertion_missing_key(oauth_env):
    with pytest.raises(RuntimeError, match="private key"):
        Intune_OAuth._build_client_assertion(Intune_OAuth._load_config())


def test_request_new_token_rejects_bad_credentials(monkeypatch):
    resp = MagicMock(status_code=401, text="invalid_client")
    monkeypatch.setattr(Intune_OAuth.requests, "post", MagicMock(return_value=resp))
    cfg = {"CLIENT_ID": "c", "TENANT_ID": "t"}
    with pytest.raises(RuntimeError, match="HTTP 401"):
        Intune_OAuth._request_new_token(cfg, "assertion")


def test_check_permissions_missing_role():
    token = _fake_access_token(["DeviceManagementManagedDevices.ReadWrite.All"])
    with pytest.raises(RuntimeError, match="DeviceManagementConfiguration.ReadWrite.All"):
        Intune_OAuth._check_permissions(token)


def test_check_permissions_unreadable_token():
    with pytest.raises(RuntimeError):
        Intune_OAuth._check_permissions("opaque-token")


def test_connect_graph_returns_handle_and_caches(oauth_env, monkeypatch):
    request = _stub_token_flow(monkeypatch)

    state = Intune_OAuth.connect_graph("contoso")

    assert state["tenant_id"] == "contoso"
    assert state["base_url"] == Intune_OAuth.GRAPH_BASE_URL
    request.assert_called_once()
    context = Intune_OAuth.get_session_context()
    assert context["tenant_id"] == "contoso"
    assert context["client_id"] == "client-1"


def test_connect_graph_tears_down_existing_session(oauth_env, monkeypatch, capsys):
    _write_cache(oauth_env, access_token="old", tenant_id="old-tenant",
                 client_id="client-1", expires_at=0)
    _stub_token_flow(monkeypatch)

    Intune_OAuth.connect_graph()

    assert "Disconnecting existing session for tenant old-tenant" in capsys.readouterr().out
    assert Intune_OAuth.get_session_context()["tenant_id"] == "default-tenant"


def test_connect_graph_replaces_unreadable_cache(oauth_env, monkeypatch):
    with open(Intune_OAuth.CACHE_FILE, "wb") as fh:
        fh.write(b"garbage")
    _stub_token_flow(monkeypatch)

    Intune_OAuth.connect_graph()

    assert Intune_OAuth.get_session_context()["tenant_id"] == "default-tenant"


def test_connect_graph_missing_permissions(oauth_env, monkeypatch):
    _stub_token_flow(monkeypatch, roles=["User.Read.All"])
    with pytest.raises(RuntimeError, match="permissions"):
        Intune_OAuth.connect_graph()
    assert not os.path.exists(Intune_OAuth.CACHE_FILE)


def test_disconnect_without_session(oauth_env):
    assert Intune_OAuth.disconnect_graph() is False


def test_disconnect_removes_session(oauth_env):
    _write_cache(oauth_env, access_token="x", tenant_id="t", client_id="c", expires_at=1)
    assert Intune_OAuth.disconnect_graph() is True
    assert Intune_OAuth.get_session_context() is None
