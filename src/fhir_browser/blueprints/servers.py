from __future__ import annotations

from flask import Blueprint, current_app, jsonify, redirect, render_template, request, url_for

from ..gateways.auth import AUTH_NONE, BasicAuth, ClientCredentialsAuth, ServerConfigError
from ..gateways.factory import get_client, select_server
from ..gateways.servers import (
    AUTH_CHOICES,
    FHIR_SERVERS,
    SERVER_CUSTOM,
    auth_from_fields,
    custom_server_config,
    preset,
    to_public_dict,
)
from ..views import reset_expand_map, safe_next, wants_json

bp = Blueprint('servers', __name__)


@bp.get('/api/servers')
def list_servers():
    current = get_client().get_server_config()
    return jsonify({
        'servers': [to_public_dict(cfg) for cfg in FHIR_SERVERS.values()],
        'current': to_public_dict(current),
    })


@bp.post('/servers/select')
def select():
    """Switch to a preset; picking 'custom' opens the configuration form instead."""
    server_type = str(request.form.get('type') or (request.get_json(silent=True) or {}).get('type') or '')
    if server_type == SERVER_CUSTOM:
        return redirect(url_for('servers.custom'))
    try:
        config = preset(server_type)
    except ServerConfigError as exc:
        if wants_json():
            return jsonify({'error': str(exc)}), 400
        return redirect(url_for('resources.search'))
    select_server(config)
    reset_expand_map()
    if wants_json():
        return jsonify({'current': to_public_dict(config)})
    return redirect(safe_next(url_for('resources.search')))


def _form_defaults() -> dict:
    """Prefill the custom form from the active configuration (secrets excluded)."""
    current = get_client().get_server_config()
    auth = current.auth
    values = {
        'base_url': current.base_url if current.type == SERVER_CUSTOM else '',
        'auth_type': auth.mode,
        'username': '',
        'token_url': '',
        'client_id': '',
    }
    if isinstance(auth, BasicAuth):
        values['username'] = auth.username
    elif isinstance(auth, ClientCredentialsAuth):
        values['token_url'] = auth.token_url
        values['client_id'] = auth.client_id
    return values


@bp.route('/servers/custom', methods=['GET', 'POST'])
def custom():
    if request.method == 'GET':
        return render_template('server_config.html', values=_form_defaults(), auth_choices=AUTH_CHOICES, error=None)

    payload = request.get_json(silent=True) if request.is_json else None
    fields = payload if isinstance(payload, dict) else request.form
    try:
        auth = auth_from_fields(fields.get('auth_type') or AUTH_NONE, fields)
        config = custom_server_config(fields.get('base_url') or '', auth)
    except ServerConfigError as exc:
        current_app.logger.info('Rejected custom server configuration: %s', exc)
        if wants_json():
            return jsonify({'error': str(exc)}), 400
        values = {k: fields.get(k, '') for k in ('base_url', 'auth_type', 'username', 'token_url', 'client_id')}
        return render_template('server_config.html', values=values, auth_choices=AUTH_CHOICES, error=str(exc)), 400
    select_server(config)
    reset_expand_map()
    if wants_json():
        return jsonify({'current': to_public_dict(config)})
    return redirect(url_for('resources.search'))


@bp.post('/api/servers/test')
def test_connection():
    client = get_client()
    ok = client.test_connection()
    return jsonify({'ok': ok, 'server': to_public_dict(client.get_server_config())})
