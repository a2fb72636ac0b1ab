#!/usr/bin/env python3
"""
Intune_OAuth.py

Session manager for Microsoft Graph (Intune) app-only access, using a
certificate-signed RS256 client assertion.

- Loads config from Intune_Variables.env (same folder)
- Tears down any existing session before connecting (never layers sessions)
- Generates JWT client assertion (x5t = certificate thumbprint)
- Requests a new token scoped to the requested or default tenant
- Verifies the granted roles include the device-management permission pair
- Encrypts the session cache using Fernet (key stored in .env)
- Never prints the access token

Public functions:
    connect_graph(tenant_id=None)
    disconnect_graph()
    get_session_context()
"""

import os
import json
import time
import uuid
import base64
import datetime as dt
from typing import Dict, Any, Optional

import requests
from dotenv import load_dotenv
from authlib.jose import jwt
from Crypto.PublicKey import RSA
from cryptography.fernet import Fernet


# ---------------------------------------------------------
# Paths
# ---------------------------------------------------------
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_FILE = os.path.join(BASE_DIR, "Intune_Variables.env")
CACHE_FILE = os.path.join(BASE_DIR, "Intune_Session.cache")

TOKEN_URL = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

# Read/write device configuration + read/write managed devices
REQUIRED_PERMISSIONS = (
    "DeviceManagementConfiguration.ReadWrite.All",
    "DeviceManagementManagedDevices.ReadWrite.All",
)

ASSERTION_LIFETIME = 600


# ---------------------------------------------------------
# Config
# ---------------------------------------------------------
def _load_config(tenant_id: Optional[str] = None) -> Dict[str, str]:
    load_dotenv(ENV_FILE)

    cfg = {
        "CLIENT_ID": os.getenv("AZURE_CLIENT_ID"),
        "CERT_THUMBPRINT": os.getenv("AZURE_CERT_THUMBPRINT"),
        "PRIVATE_KEY_PATH": os.getenv("AZURE_PRIVATE_KEY_PATH"),
        "FERNET_KEY": os.getenv("INTUNE_FERNET_KEY"),
        "TENANT_ID": tenant_id or os.getenv("AZURE_TENANT_ID"),
    }

    missing = [k for k, v in cfg.items() if not v]
    if missing:
        raise RuntimeError(
            f"Missing settings (Intune_Variables.env or --tenant-id): {', '.join(missing)}"
        )

    return cfg


def _fernet(cfg):
    try:
        return Fernet(cfg["FERNET_KEY"].encode())
    except Exception:
        raise RuntimeError("Invalid Fernet key in INTUNE_FERNET_KEY")


# ---------------------------------------------------------
# Session cache
# ---------------------------------------------------------
def get_session_context() -> Optional[Dict[str, Any]]:
    """
    Return the stored session context, or None when there is no usable one.

    Returns:
        {"tenant_id": str, "client_id": str, "expires_at": int}
    """
    if not os.path.exists(CACHE_FILE):
        return None

    load_dotenv(ENV_FILE)
    key = os.getenv("INTUNE_FERNET_KEY")
    if not key:
        return None

    try:
        with open(CACHE_FILE, "rb") as fh:
            raw = _fernet({"FERNET_KEY": key}).decrypt(fh.read())
        cache = json.loads(raw.decode())
    except Exception:
        return None

    required = ("tenant_id", "client_id", "expires_at")
    if not all(k in cache for k in required):
        return None

    return {k: cache[k] for k in required}


def disconnect_graph() -> bool:
    """Tear down the stored session. Returns True if one was present."""
    if not os.path.exists(CACHE_FILE):
        return False

    context = get_session_context()
    if context:
        print(f"INFO: Disconnecting existing session for tenant {context['tenant_id']}.")
    else:
        print("INFO: Removing unreadable session cache.")

    try:
        os.remove(CACHE_FILE)
    except OSError as e:
        raise RuntimeError(f"Could not remove session cache {CACHE_FILE}") from e

    return True


def _save_session(cfg, token_response):
    expires_in = token_response.get("expires_in")
    now = int(time.time())
    expires_at = now + max(int(expires_in or 0) - 30, 0)

    cache = {
        "access_token": token_response["access_token"],
        "expires_at": expires_at,
        "client_id": cfg["CLIENT_ID"],
        "tenant_id": cfg["TENANT_ID"],
        "token_type": token_response.get("token_type", "Bearer"),
    }

    encrypted = _fernet(cfg).encrypt(json.dumps(cache).encode())

    with open(CACHE_FILE, "wb") as fh:
        fh.write(encrypted)

    try:
        os.chmod(CACHE_FILE, 0o600)
    except OSError:
        pass

    return expires_at


# ---------------------------------------------------------
# JWT
# ---------------------------------------------------------
def _thumbprint_to_x5t(thumbprint: str) -> str:
    cleaned = thumbprint.replace(":", "").replace(" ", "")
    try:
        digest = bytes.fromhex(cleaned)
    except ValueError as e:
        raise RuntimeError("AZURE_CERT_THUMBPRINT is not a hex SHA-1 thumbprint") from e
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def _build_client_assertion(cfg):
    issued = int(dt.datetime.now(dt.timezone.utc).timestamp())

    header = {
        "alg": "RS256",
        "typ": "JWT",
        "x5t": _thumbprint_to_x5t(cfg["CERT_THUMBPRINT"]),
    }
    payload = {
        "sub": cfg["CLIENT_ID"],
        "iss": cfg["CLIENT_ID"],
        "aud": TOKEN_URL.format(tenant=cfg["TENANT_ID"]),
        "iat": issued,
        "nbf": issued,
        "exp": issued + ASSERTION_LIFETIME,
        "jti": str(uuid.uuid4()),
    }

    try:
        with open(cfg["PRIVATE_KEY_PATH"]) as fh:
            key = RSA.import_key(fh.read())
    except Exception as e:
        raise RuntimeError("Failed to load private key") from e

    try:
        encoded = jwt.encode(
            header=header,
            payload=payload,
            key=key.export_key(format="PEM"),
        )
    except Exception as e:
        raise RuntimeError("Failed to generate JWT client assertion") from e

    return encoded.decode() if isinstance(encoded, bytes) else encoded


# ---------------------------------------------------------
# Token request
# ---------------------------------------------------------
def _request_new_token(cfg, assertion):
    data = {
        "grant_type": "client_credentials",
        "client_id": cfg["CLIENT_ID"],
        "client_assertion_type": "urn:ietf:params:oauth:client-assertion-type:jwt-bearer",
        "client_assertion": assertion,
        "scope": GRAPH_SCOPE,
    }

    try:
        resp = requests.post(TOKEN_URL.format(tenant=cfg["TENANT_ID"]), data=data)
    except requests.RequestException as e:
        raise RuntimeError(f"Token request failed: {e}") from e

    if resp.status_code in (400, 401):
        raise RuntimeError(
            f"HTTP {resp.status_code} from Entra ID. Check AZURE_CLIENT_ID / "
            f"AZURE_CERT_THUMBPRINT / tenant. Response: {resp.text}"
        )

    try:
        resp.raise_for_status()
        token = resp.json()
    except Exception:
        raise RuntimeError(f"Entra ID token error: {resp.text}")

    if not token.get("access_token"):
        raise RuntimeError("Entra ID response did not contain an access token")

    return token


def _granted_roles(access_token: str):
    """Read the roles claim; the token is verified by Graph, not here."""
    try:
        payload = access_token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload.encode()).decode())
    except Exception as e:
        raise RuntimeError("Access token is not a readable JWT") from e
    return claims.get("roles", []) or []


def _check_permissions(access_token: str) -> None:
    roles = _granted_roles(access_token)
    missing = [p for p in REQUIRED_PERMISSIONS if p not in roles]
    if missing:
        raise RuntimeError(
            f"App registration lacks Graph application permissions: {', '.join(missing)}"
        )


# ---------------------------------------------------------
# PUBLIC API
# ---------------------------------------------------------
def connect_graph(tenant_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Establish one authenticated Graph session for the run.

    Returns the token state handle:
        {
          "access_token": str,
          "tenant_id": str,
          "base_url": str,
          "expires_at": int
        }

    Raises RuntimeError on any configuration or authentication failure.
    """
    cfg = _load_config(tenant_id)

    # Never layer a new session over an existing one
    disconnect_graph()

    print(f"INFO: Connecting to Microsoft Graph (tenant {cfg['TENANT_ID']})...")

    assertion = _build_client_assertion(cfg)
    token = _request_new_token(cfg, assertion)
    _check_permissions(token["access_token"])

    expires_at = _save_session(cfg, token)

    print("INFO: Connected. Session cached securely.")
    return {
        "access_token": token["access_token"],
        "tenant_id": cfg["TENANT_ID"],
        "base_url": GRAPH_BASE_URL,
        "expires_at": expires_at,
    }


# Disable printing token on CLI
if __name__ == "__main__":
    try:
        state = connect_graph()
        print("INFO: Token retrieval successful. (Token not displayed)")
        print("Tenant:", state["tenant_id"])
    except Exception as e:
        print("ERROR:", e)
        raise SystemExit(1)
