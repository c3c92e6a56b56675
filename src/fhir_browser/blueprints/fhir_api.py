from __future__ import annotations

from typing import Dict, List, Union

from flask import Blueprint, jsonify, request

from ..gateways.factory import get_client
from ..gateways.fhir_gateway import FhirError
from ..views import fhir_error_json, require_followable_url

# JSON pass-through to the session's FHIR server
bp = Blueprint('fhir_api', __name__)


def _json_error(message: str, status: int = 400):
    return jsonify({'error': message}), status


def _search_params() -> Dict[str, Union[str, List[str]]]:
    """Query args as search params; repeated names stay repeated."""
    params: Dict[str, Union[str, List[str]]] = {}
    for key in request.args.keys():
        values = request.args.getlist(key)
        params[key] = values if len(values) > 1 else values[0]
    return params


def _body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


@bp.get('/metadata')
def metadata():
    try:
        return jsonify(get_client().get_capability_statement())
    except FhirError as err:
        return fhir_error_json(err)


@bp.post('/batch')
def batch():
    bundle = _body()
    if bundle.get('resourceType') != 'Bundle':
        return _json_error('Payload must be a Bundle resource')
    try:
        return jsonify(get_client().execute_batch(bundle))
    except FhirError as err:
        return fhir_error_json(err)


@bp.get('/by-url')
def by_url():
    url = str(request.args.get('url') or '').strip()
    if not url:
        return _json_error('url is required')
    client = get_client()
    try:
        require_followable_url(client, url)
        return jsonify(client.get_resource_by_url(url))
    except FhirError as err:
        return fhir_error_json(err)


@bp.get('/<resource_type>')
def search(resource_type: str):
    try:
        bundle = get_client().search_resources(resource_type, _search_params())
    except FhirError as err:
        return fhir_error_json(err)
    return jsonify(bundle.raw)


@bp.get('/<resource_type>/<resource_id>')
def read(resource_type: str, resource_id: str):
    try:
        return jsonify(get_client().get_resource_by_id(resource_type, resource_id))
    except FhirError as err:
        return fhir_error_json(err)


@bp.post('/<resource_type>')
def create(resource_type: str):
    resource = _body()
    resource.setdefault('resourceType', resource_type)
    if resource['resourceType'] != resource_type:
        return _json_error(f"resourceType '{resource['resourceType']}' does not match '{resource_type}'")
    try:
        created = get_client().create_resource(resource)
    except FhirError as err:
        return fhir_error_json(err)
    return jsonify(created), 201


@bp.put('/<resource_type>/<resource_id>')
def update(resource_type: str, resource_id: str):
    resource = _body()
    resource.setdefault('resourceType', resource_type)
    if resource['resourceType'] != resource_type:
        return _json_error(f"resourceType '{resource['resourceType']}' does not match '{resource_type}'")
    if resource.get('id') and str(resource['id']) != resource_id:
        return _json_error(f"id '{resource['id']}' does not match '{resource_id}'")
    try:
        return jsonify(get_client().update_resource(resource))
    except FhirError as err:
        return fhir_error_json(err)


@bp.delete('/<resource_type>/<resource_id>')
def delete(resource_type: str, resource_id: str):
    try:
        get_client().delete_resource(resource_type, resource_id)
    except FhirError as err:
        return fhir_error_json(err)
    return '', 204
