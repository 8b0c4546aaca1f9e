"""Admin JSON API: role management and the login audit trail."""
from __future__ import annotations
from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from authservice.api.context import acting_identity, get_reconciler, get_store
from authservice.api.decorators import require_admin
from authservice.core.exceptions import UserNotFoundError, ValidationError

bp = Blueprint("admin", __name__)

MAX_AUDIT_PAGE = 500


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _list_field(body: dict, name: str) -> list:
    value = body.get(name)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{name} must be a list of role names")
    return value


def _parse_datetime(name: str):
    raw = request.args.get(name, "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 timestamp, got {raw!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    # Stored event times are UTC
    return parsed.astimezone(timezone.utc)


def _parse_int(name: str, default=None):
    raw = request.args.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}")


def _isoformat(value):
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


# ─────────────────────────────────────────────────────────────────────────────
# Roles
# ─────────────────────────────────────────────────────────────────────────────
@bp.route("/roles", methods=["GET"])
@require_admin
def list_roles():
    roles = get_store().list_roles()
    return jsonify([
        {"id": role.id, "name": role.name, "description": role.description, "systemRole": role.is_system_role}
        for role in roles
    ])


@bp.route("/users/<int:user_id>/roles", methods=["GET"])
@require_admin
def get_user_roles(user_id: int):
    store = get_store()
    if store.get_user(user_id) is None:
        raise UserNotFoundError(user_id)
    return jsonify({"userId": user_id, "roles": store.role_names_for_user(user_id)})


@bp.route("/users/<int:user_id>/roles", methods=["PUT"])
@require_admin
def replace_user_roles(user_id: int):
    """Replace the user's roles with exactly ``roleNames``."""
    body = _json_body()
    result = get_reconciler().replace_all(user_id, _list_field(body, "roleNames"), acting_identity())
    if result.remote_failures:
        current_app.logger.warning(
            f"Roles for user {user_id} committed; {len(result.remote_failures)} remote group update(s) failed"
        )
    return jsonify(result.to_dict()), 200


@bp.route("/users/<int:user_id>/roles", methods=["PATCH"])
@require_admin
def update_user_roles(user_id: int):
    """Add and remove individual roles."""
    body = _json_body()
    result = get_reconciler().apply_incremental(
        user_id,
        _list_field(body, "add"),
        _list_field(body, "remove"),
        acting_identity(),
    )
    if result.remote_failures:
        current_app.logger.warning(
            f"Roles for user {user_id} committed; {len(result.remote_failures)} remote group update(s) failed"
        )
    return jsonify(result.to_dict()), 200


@bp.route("/users/<int:user_id>/roles/resync", methods=["POST"])
@require_admin
def resync_user_roles(user_id: int):
    """Repair drift between local roles and remote group memberships."""
    result = get_reconciler().resync(user_id)
    return jsonify(result.to_dict()), 200


# ─────────────────────────────────────────────────────────────────────────────
# Audit log
# ─────────────────────────────────────────────────────────────────────────────
@bp.route("/audit-log", methods=["GET"])
@require_admin
def audit_log():
    """Login audit events, newest first.

    Query params:
        user_id: Restrict to one linked user
        rangeStart / rangeEnd: ISO-8601 bounds on the event time (inclusive)
        limit: Page size (default 100, max 500)
    """
    start = _parse_datetime("rangeStart")
    end = _parse_datetime("rangeEnd")
    if start and end and start > end:
        raise ValidationError("rangeStart must not be after rangeEnd")
    limit = min(max(_parse_int("limit", 100), 1), MAX_AUDIT_PAGE)

    events = get_store().list_audit_events(
        user_id=_parse_int("user_id"),
        start=start,
        end=end,
        newest_first=True,
        limit=limit,
    )
    return jsonify([
        {
            "id": event.id,
            "userId": event.user_id,
            "externalId": event.external_id,
            "email": event.email,
            "eventType": event.event_type,
            "success": event.success,
            "failureReason": event.failure_reason,
            "ipAddress": event.ip_address,
            "userAgent": event.user_agent,
            "eventTime": _isoformat(event.event_time),
        }
        for event in events
    ])
