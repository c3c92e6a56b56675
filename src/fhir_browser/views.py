"""Request-scoped helpers shared by the blueprints."""
from __future__ import annotations

import ipaddress
import socket
from typing import Dict
from urllib.parse import urlparse

from flask import current_app, jsonify, render_template, request, session as flask_session

from .gateways.fhir_gateway import FhirError, FhirGateway, FhirPreconditionError
from .services import resource_tree

_EXPAND_KEY = 'tree_expand_state'


def wants_json() -> bool:
    if request.path.startswith('/api/') or request.is_json:
        return True
    return request.accept_mimetypes.best == 'application/json'


def safe_next(default: str) -> str:
    target = str(request.form.get('next') or request.args.get('next') or '')
    if target.startswith('/') and not target.startswith('//'):
        return target
    return default


def http_status(err: FhirError) -> int:
    return err.status if 400 <= err.status <= 599 else 500


def fhir_error_json(err: FhirError):
    return jsonify(err.to_dict()), http_status(err)


def fhir_error_page(err: FhirError, template: str, **context):
    current_app.logger.info('FHIR request failed (%s): %s', err.status, err.message)
    return render_template(template, error=err, **context), http_status(err)


# --- outbound URL checks ---

def _internal_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split('%', 1)[0])
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not ip.is_global or ip.is_multicast


def require_server_url(client: FhirGateway, url: str) -> None:
    """Paging links are only followed on the session's own server."""
    if not client.owns_url(url):
        current_app.logger.warning('Rejected paging link outside the current server: %s', url)
        raise FhirPreconditionError(f'Link is not on the current FHIR server: {url}')


def require_followable_url(client: FhirGateway, url: str) -> None:
    """Reject references that would make this server fetch from an internal host.

    URLs on the configured server are always allowed. Anything else must be
    http(s) and resolve only to public addresses.
    """
    if client.owns_url(url):
        return
    parsed = urlparse(url)
    host = (parsed.hostname or '').lower()
    refused = FhirPreconditionError(f'Refusing to follow reference to {url}')
    if parsed.scheme not in ('http', 'https') or not host:
        raise refused
    if host == 'localhost' or host.endswith('.localhost') or _internal_address(host):
        current_app.logger.warning('Rejected reference to internal host: %s', url)
        raise refused
    try:
        port = parsed.port
        infos = socket.getaddrinfo(host, port or (443 if parsed.scheme == 'https' else 80),
                                   proto=socket.IPPROTO_TCP)
    except ValueError:
        raise refused from None
    except socket.gaierror:
        # Unresolvable: the request itself fails as a transport error.
        return
    if any(_internal_address(info[4][0]) for info in infos):
        current_app.logger.warning('Rejected reference resolving to an internal address: %s', url)
        raise refused


# --- expand/collapse state, one map per viewed resource ---

def default_expanded() -> bool:
    raw = request.values.get('expanded')
    if raw is not None:
        return str(raw).strip().lower() not in ('0', 'false', 'no', 'off')
    return bool(current_app.config.get('FHIR_TREE_EXPANDED', True))


def expand_map(view_key: str) -> Dict[str, bool]:
    maps = flask_session.get(_EXPAND_KEY) or {}
    stored = maps.get(view_key) or {}
    return {str(k): bool(v) for k, v in stored.items()}


def store_expand_map(view_key: str, expanded: Dict[str, bool]) -> None:
    maps = dict(flask_session.get(_EXPAND_KEY) or {})
    maps[view_key] = dict(expanded)
    flask_session[_EXPAND_KEY] = maps


def toggle_path(view_key: str, path: str, default: bool) -> Dict[str, bool]:
    updated = resource_tree.toggle(expand_map(view_key), path, default)
    store_expand_map(view_key, updated)
    return updated


def reset_expand_map() -> None:
    # Paths from another server's resources mean nothing after a switch.
    flask_session.pop(_EXPAND_KEY, None)
