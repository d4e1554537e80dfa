from __future__ import annotations
from flask import Blueprint, jsonify, request

from ..gateways.data_gateway import GatewayError
from ..models import RecordSnapshot
from ..utils.context import merge_context
from ..utils.services import error_response, get_record_service

bp = Blueprint('records_api', __name__)

_TRUE = ('1', 'true', 'yes', 'on')


def _current_snapshot() -> RecordSnapshot:
    """Published snapshot; fetches when asked to (``refresh=1``) or when nothing was fetched yet."""
    svc = get_record_service()
    snap = svc.snapshot
    wants_refresh = str(request.args.get('refresh') or '').strip().lower() in _TRUE
    if wants_refresh or snap.fetched_at is None:
        snap = svc.fetch()
    return snap


def _respond(snap: RecordSnapshot, payload: dict):
    payload.setdefault('needsPatientSelection', snap.needs_patient_selection)
    payload.setdefault('message', snap.message)
    return jsonify(merge_context(payload, generation=snap.generation))


@bp.get('/records')
def records():
    try:
        snap = _current_snapshot()
    except GatewayError as e:
        return error_response(e)
    return jsonify(merge_context(snap.to_dict(), generation=snap.generation))


@bp.get('/records/vitals')
def vitals():
    try:
        snap = _current_snapshot()
    except GatewayError as e:
        return error_response(e)
    return _respond(snap, {'vitals': [v.to_dict() for v in snap.vitals]})


@bp.get('/records/categories')
def categories():
    try:
        snap = _current_snapshot()
    except GatewayError as e:
        return error_response(e)
    return _respond(snap, {'categories': [c.to_dict() for c in snap.categories]})


@bp.get('/patients')
def patients():
    try:
        snap = _current_snapshot()
    except GatewayError as e:
        return error_response(e)
    return _respond(snap, {'patients': [p.to_dict() for p in snap.patients]})
