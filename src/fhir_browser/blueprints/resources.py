from __future__ import annotations

from flask import Blueprint, jsonify, redirect, render_template, request, url_for

from ..gateways.factory import get_client
from ..gateways.fhir_gateway import FhirError
from ..services import resource_display as D
from ..services.bundle import Bundle
from ..services.resource_tree import build_tree
from ..views import (
    default_expanded,
    expand_map,
    fhir_error_page,
    require_followable_url,
    require_server_url,
    safe_next,
    toggle_path,
    wants_json,
)

# HTML views: search list, resource detail, reference following
bp = Blueprint('resources', __name__)


@bp.get('/search')
def search():
    resource_type = request.args.get('type') or 'Patient'
    term = request.args.get('q', '')
    page_url = request.args.get('page')
    context = {
        'resource_types': D.SEARCHABLE_RESOURCES,
        'selected_type': resource_type,
        'term': term,
        'bundle': None,
        'rows': [],
    }
    if 'type' not in request.args and not page_url:
        return render_template('search.html', error=None, **context)
    client = get_client()
    try:
        if page_url:
            require_server_url(client, page_url)
            bundle = Bundle.from_json(client.get_resource_by_url(page_url))
        else:
            bundle = client.search_resources(resource_type, D.search_params_for(resource_type, term))
    except FhirError as err:
        return fhir_error_page(err, 'search.html', **context)
    context.update(bundle=bundle, rows=D.resource_summary_rows(bundle))
    return render_template('search.html', error=None, **context)


def _render_resource(resource, view_key: str):
    default = default_expanded()
    tree = build_tree(resource, expand_map(view_key), default)
    rtype = resource.get('resourceType') if isinstance(resource, dict) else None
    return render_template(
        'resource.html',
        error=None,
        resource=resource,
        resource_type=rtype,
        title=D.resource_name(resource) if isinstance(resource, dict) else '',
        observation_value=D.observation_value(resource) if rtype == 'Observation' else None,
        tree=tree,
        view_key=view_key,
        default_expanded=default,
    )


@bp.get('/resource/<resource_type>/<resource_id>')
def detail(resource_type: str, resource_id: str):
    view_key = f'{resource_type}/{resource_id}'
    try:
        resource = get_client().get_resource_by_id(resource_type, resource_id)
    except FhirError as err:
        return fhir_error_page(err, 'resource.html', view_key=view_key, tree=None, resource=None)
    return _render_resource(resource, view_key)


@bp.get('/resource/by-url')
def by_url():
    """Follow a reference (relative like 'Patient/1' or an absolute URL)."""
    url = str(request.args.get('url') or '').strip()
    if not url:
        return redirect(url_for('resources.search'))
    client = get_client()
    try:
        require_followable_url(client, url)
        resource = client.get_resource_by_url(url)
    except FhirError as err:
        return fhir_error_page(err, 'resource.html', view_key=url, tree=None, resource=None)
    return _render_resource(resource, url)


@bp.post('/resource/toggle')
def toggle():
    view_key = str(request.form.get('view_key') or '')
    path = request.form.get('path')
    if path is None or not view_key:
        if wants_json():
            return jsonify({'error': 'view_key and path are required'}), 400
        return redirect(safe_next(url_for('resources.search')))
    updated = toggle_path(view_key, str(path), default_expanded())
    if wants_json():
        return jsonify({'view_key': view_key, 'expanded': updated})
    return redirect(safe_next(url_for('resources.search')))
