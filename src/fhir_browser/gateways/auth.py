from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Union

import requests

logger = logging.getLogger(__name__)

AUTH_NONE = "none"
AUTH_BASIC = "basic"
AUTH_BEARER = "bearer"
AUTH_CLIENT_CREDENTIALS = "client_credentials"

AUTH_MODES = (AUTH_NONE, AUTH_BASIC, AUTH_BEARER, AUTH_CLIENT_CREDENTIALS)


class ServerConfigError(ValueError):
    """Raised when a server or authentication configuration is incomplete."""


def _require(value: Optional[str], name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ServerConfigError(f"{name} is required")
    return text


@dataclass(frozen=True)
class NoAuth:
    mode = AUTH_NONE


@dataclass(frozen=True)
class BasicAuth:
    username: str
    password: str

    mode = AUTH_BASIC

    def __post_init__(self):
        _require(self.username, "username")
        # Passwords are sent as typed, surrounding whitespace included.
        if not self.password:
            raise ServerConfigError("password is required")


@dataclass(frozen=True)
class BearerAuth:
    token: str

    mode = AUTH_BEARER

    def __post_init__(self):
        _require(self.token, "token")


@dataclass(frozen=True)
class ClientCredentialsAuth:
    token_url: str
    client_id: str
    client_secret: str

    mode = AUTH_CLIENT_CREDENTIALS

    def __post_init__(self):
        _require(self.token_url, "token_url")
        _require(self.client_id, "client_id")
        if not self.client_secret:
            raise ServerConfigError("client_secret is required")


Auth = Union[NoAuth, BasicAuth, BearerAuth, ClientCredentialsAuth]


def basic_authorization(username: str, password: str) -> str:
    raw = f"{username}:{password}".encode("utf-8")
    return "Basic " + base64.b64encode(raw).decode("ascii")


@dataclass(frozen=True)
class TokenState:
    access_token: str
    expires_at: Optional[float] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return current >= self.expires_at


def request_client_credentials_token(
    auth: ClientCredentialsAuth,
    *,
    verify: bool = True,
    timeout: Optional[float] = None,
    clock: Callable[[], float] = time.time,
) -> Optional[TokenState]:
    """Exchange client credentials for an access token.

    Returns None on any failure. Failures are logged and never raised: the
    request that needed the token goes out without one and fails on its own.
    """
    form = {
        "grant_type": "client_credentials",
        "client_id": auth.client_id,
        "client_secret": auth.client_secret,
    }
    headers = {"Content-Type": "application/x-www-form-urlencoded"}
    try:
        r = requests.post(auth.token_url, data=form, headers=headers, timeout=timeout, verify=verify)
        r.raise_for_status()
        payload = r.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("OAuth token exchange with %s failed: %s", auth.token_url, exc)
        return None
    token = payload.get("access_token") if isinstance(payload, dict) else None
    if not token:
        logger.warning("OAuth token exchange with %s returned no access_token", auth.token_url)
        return None
    expires_at: Optional[float] = None
    expires_in = payload.get("expires_in")
    if expires_in:
        try:
            expires_at = clock() + float(expires_in)
        except (TypeError, ValueError):
            expires_at = None
    logger.info("Obtained OAuth token from %s (expires_in=%s)", auth.token_url, expires_in)
    return TokenState(access_token=str(token), expires_at=expires_at)


def static_authorization(auth: Auth) -> Dict[str, str]:
    """Authorization header for modes that need no token exchange."""
    if isinstance(auth, BasicAuth):
        return {"Authorization": basic_authorization(auth.username, auth.password)}
    if isinstance(auth, BearerAuth):
        return {"Authorization": f"Bearer {auth.token}"}
    return {}
