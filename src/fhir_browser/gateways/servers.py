from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping
from urllib.parse import urlparse

from .auth import (
    AUTH_BASIC,
    AUTH_BEARER,
    AUTH_CLIENT_CREDENTIALS,
    AUTH_NONE,
    Auth,
    BasicAuth,
    BearerAuth,
    ClientCredentialsAuth,
    NoAuth,
    ServerConfigError,
)

SERVER_KODJIN = "kodjin"
SERVER_HAPI = "hapi"
SERVER_CUSTOM = "custom"


@dataclass(frozen=True)
class ServerConfig:
    """One remote FHIR server. Never mutated; use with_auth/replace for changes."""

    type: str
    base_url: str
    name: str
    auth: Auth = field(default_factory=NoAuth)

    @property
    def auth_mode(self) -> str:
        return self.auth.mode

    def with_auth(self, auth: Auth) -> "ServerConfig":
        return replace(self, auth=auth)


FHIR_SERVERS: Dict[str, ServerConfig] = {
    SERVER_KODJIN: ServerConfig(
        type=SERVER_KODJIN,
        base_url="https://demo.kodjin.com/fhir",
        name="Kodjin FHIR Server",
    ),
    SERVER_HAPI: ServerConfig(
        type=SERVER_HAPI,
        base_url="https://hapi.fhir.org/baseR4",
        name="HAPI FHIR Server",
    ),
    SERVER_CUSTOM: ServerConfig(
        type=SERVER_CUSTOM,
        base_url="",
        name="Custom FHIR Server",
    ),
}

_AUTH_LABELS = {
    AUTH_NONE: "No Auth",
    AUTH_BASIC: "Basic Auth",
    AUTH_BEARER: "Bearer Token",
    AUTH_CLIENT_CREDENTIALS: "OAuth 2.0",
}

# Select options for the custom server form, in display order.
AUTH_CHOICES = (
    (AUTH_NONE, "No Authentication"),
    (AUTH_BASIC, "Basic Auth"),
    (AUTH_BEARER, "Bearer Token"),
    (AUTH_CLIENT_CREDENTIALS, "OAuth 2.0 (Client Credentials)"),
)


def default_server() -> ServerConfig:
    key = str(os.getenv("FHIR_DEFAULT_SERVER", SERVER_KODJIN)).strip().lower()
    return FHIR_SERVERS.get(key) or FHIR_SERVERS[SERVER_KODJIN]


def preset(server_type: str) -> ServerConfig:
    try:
        return FHIR_SERVERS[str(server_type)]
    except KeyError:
        raise ServerConfigError(f"Unknown server type '{server_type}'") from None


def auth_from_fields(mode: str, fields: Mapping[str, Any]) -> Auth:
    """Build the auth variant for `mode` out of form fields.

    Only the fields the mode needs are read; the rest are ignored.
    """
    mode = str(mode or AUTH_NONE).strip()

    def get(name: str) -> str:
        return str(fields.get(name) or "")

    if mode == AUTH_NONE:
        return NoAuth()
    if mode == AUTH_BASIC:
        return BasicAuth(username=get("username").strip(), password=get("password"))
    if mode == AUTH_BEARER:
        return BearerAuth(token=get("token").strip())
    if mode == AUTH_CLIENT_CREDENTIALS:
        return ClientCredentialsAuth(
            token_url=get("token_url").strip(),
            client_id=get("client_id").strip(),
            client_secret=get("client_secret"),
        )
    raise ServerConfigError(f"Unknown authentication mode '{mode}'")


def custom_server_config(base_url: str, auth: Auth) -> ServerConfig:
    url = str(base_url or "").strip().rstrip("/")
    if not url:
        raise ServerConfigError("Server URL is required")
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ServerConfigError(f"Server URL must be an http(s) address: {url}")
    base = FHIR_SERVERS[SERVER_CUSTOM]
    return replace(base, base_url=url, auth=auth)


def auth_label(auth: Auth) -> str:
    return _AUTH_LABELS.get(auth.mode, "No Auth")


def to_public_dict(config: ServerConfig) -> Dict[str, Any]:
    """JSON-safe view of a configuration; secrets are never included."""
    out: Dict[str, Any] = {
        "type": config.type,
        "baseUrl": config.base_url,
        "name": config.name,
        "authType": config.auth_mode,
        "authLabel": auth_label(config.auth),
    }
    if isinstance(config.auth, BasicAuth):
        out["username"] = config.auth.username
    elif isinstance(config.auth, ClientCredentialsAuth):
        out["tokenUrl"] = config.auth.token_url
        out["clientId"] = config.auth.client_id
    return out
