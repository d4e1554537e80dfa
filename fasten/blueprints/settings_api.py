from __future__ import annotations
from flask import Blueprint, jsonify, request

from ..services.storage import StorageError
from ..utils.context import merge_context
from ..utils.services import error_response, get_preferences, get_record_service

bp = Blueprint('settings_api', __name__)

_CHAT_ROLES = ('user', 'assistant', 'system')


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _settings_payload() -> dict:
    prefs = get_preferences()
    return {
        'domain': prefs.domain,
        'assistantDomain': prefs.assistant_domain,
        'username': prefs.username,
        'privacyMode': prefs.privacy_mode,
        'notificationsEnabled': prefs.notifications_enabled,
    }


@bp.get('/settings')
def get_settings():
    return jsonify(merge_context(_settings_payload()))


@bp.post('/settings')
def update_settings():
    data = request.get_json(silent=True) or {}
    prefs = get_preferences()
    if 'assistantDomain' in data:
        prefs.assistant_domain = str(data.get('assistantDomain') or '').strip() or None
    if 'privacyMode' in data:
        prefs.privacy_mode = _as_bool(data['privacyMode'])
    if 'notificationsEnabled' in data:
        prefs.notifications_enabled = _as_bool(data['notificationsEnabled'])
    return jsonify(merge_context(_settings_payload()))


@bp.get('/relationships')
def get_relationships():
    prefs = get_preferences()
    try:
        items = prefs.relationships
    except StorageError as e:
        return error_response(e)
    return jsonify(merge_context({'relationships': items, 'selfPatientId': prefs.self_patient_id}))


@bp.post('/relationships')
def set_relationship():
    """Label a patient record; whenever the self-patient changes the current records are re-filtered."""
    data = request.get_json(silent=True) or {}
    patient_id = str(data.get('id') or '').strip()
    relationship = str(data.get('relationship') or '').strip()
    if not patient_id or not relationship:
        return jsonify({'error': 'id and relationship are required'}), 400
    prefs = get_preferences()
    try:
        previous_self = prefs.self_patient_id
        prefs.set_relationship(patient_id, relationship)
    except StorageError as e:
        return error_response(e)
    generation = None
    if prefs.self_patient_id != previous_self:
        generation = get_record_service().rebuild().generation
    return jsonify(merge_context({
        'relationships': prefs.relationships,
        'selfPatientId': prefs.self_patient_id,
    }, generation=generation))


@bp.get('/family')
def get_family():
    try:
        members = get_preferences().family_members
    except StorageError as e:
        return error_response(e)
    return jsonify(merge_context({'members': members}))


@bp.post('/family')
def set_family():
    data = request.get_json(silent=True) or {}
    members = data.get('members')
    if not isinstance(members, list) or not all(isinstance(m, dict) for m in members):
        return jsonify({'error': 'members must be a list of objects'}), 400
    prefs = get_preferences()
    prefs.family_members = members
    return jsonify(merge_context({'members': prefs.family_members}))


@bp.get('/chat/history')
def get_chat_history():
    try:
        messages = get_preferences().chat_history
    except StorageError as e:
        return error_response(e)
    return jsonify(merge_context({'messages': messages}))


@bp.post('/chat/history')
def append_chat_message():
    data = request.get_json(silent=True) or {}
    role = str(data.get('role') or '').strip().lower()
    content = data.get('content')
    if role not in _CHAT_ROLES or not isinstance(content, str) or not content.strip():
        return jsonify({'error': 'role and content are required'}), 400
    prefs = get_preferences()
    try:
        messages = prefs.chat_history
    except StorageError as e:
        return error_response(e)
    messages.append({'role': role, 'content': content})
    prefs.chat_history = messages
    return jsonify(merge_context({'messages': messages}))


@bp.delete('/chat/history')
def clear_chat_history():
    get_preferences().clear_chat_history()
    return jsonify({'ok': True})
