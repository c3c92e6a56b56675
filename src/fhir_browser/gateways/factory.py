from __future__ import annotations

import threading
import time
import uuid
from typing import Dict, Tuple

from flask import current_app, session as flask_session

from .fhir_client import FhirClient
from .fhir_gateway import FhirGateway
from .servers import ServerConfig, default_server

_REGISTRY_KEY = '_FHIR_CLIENT_REGISTRY'
_SHARED_KEY = '_FHIR_SHARED_CLIENT'
_registry_lock = threading.Lock()
_now = time.time


def _get_session_key() -> str:
    sid = flask_session.get('client_session_id')
    if not sid:
        sid = str(uuid.uuid4())
        flask_session['client_session_id'] = sid
    return str(sid)


def _registry() -> Dict[str, Tuple[FhirClient, float]]:
    return current_app.config.setdefault(_REGISTRY_KEY, {})


def _prune(reg: Dict[str, Tuple[FhirClient, float]], now: float) -> None:
    # Entries outlive their session by at most one session lifetime.
    ttl = current_app.permanent_session_lifetime.total_seconds()
    for sid in [k for k, (_, seen) in reg.items() if now - seen > ttl]:
        del reg[sid]


def _shared_client() -> FhirClient:
    """Client for every session still on the default server; never reconfigured."""
    with _registry_lock:
        client = current_app.config.get(_SHARED_KEY)
        if client is None:
            client = FhirClient(default_server())
            current_app.config[_SHARED_KEY] = client
    return client


def get_client() -> FhirGateway:
    """Return the FHIR client for this browser session.

    Sessions that never picked a server share one default client. A session
    gets its own client (credentials and OAuth token included) only once it
    selects a server; those stay in process memory, keyed by a session id,
    so nothing sensitive goes into the session store.
    """
    sid = flask_session.get('client_session_id')
    if sid:
        now = _now()
        with _registry_lock:
            reg = _registry()
            _prune(reg, now)
            entry = reg.get(str(sid))
            if entry is not None:
                reg[str(sid)] = (entry[0], now)
                return entry[0]
    return _shared_client()


def select_server(config: ServerConfig) -> FhirGateway:
    if config == default_server():
        reset_client()
        client = _shared_client()
    else:
        sid = _get_session_key()
        now = _now()
        with _registry_lock:
            reg = _registry()
            _prune(reg, now)
            entry = reg.get(sid)
            if entry is None:
                client = FhirClient(config)
            else:
                client = entry[0]
                client.set_server(config)
            reg[sid] = (client, now)
    current_app.logger.info('Session switched to FHIR server %s (%s, auth=%s)',
                            config.name, config.base_url, config.auth_mode)
    return client


def reset_client() -> None:
    sid = flask_session.get('client_session_id')
    if sid is not None:
        with _registry_lock:
            _registry().pop(str(sid), None)
    flask_session.pop('client_session_id', None)
