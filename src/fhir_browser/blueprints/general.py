from flask import Blueprint, jsonify, redirect, url_for

bp = Blueprint('general', __name__)


@bp.route('/')
def index():
    return redirect(url_for('resources.search'))


@bp.route('/healthz')
def healthz():
    return jsonify({'status': 'ok'})
