# storesync/routes/sync.py
from datetime import datetime

from flask import Blueprint, current_app, request

from ..errors import ValidationError

bp = Blueprint("sync", __name__)


def _svc():
    return current_app.extensions["storesync"]


def _json() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _date_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO date")


# =========================================================
# Rules
# =========================================================

@bp.get("/rules")
def list_rules():
    active = request.args.get("active")
    rules = _svc().rules.list(
        type=request.args.get("type") or None,
        active=None if active in (None, "") else active.lower() in ("1", "true", "yes"),
        store_id=request.args.get("store_id") or None,
    )
    return {"status": "success", "rules": [r.to_dict() for r in rules]}, 200


@bp.post("/rules")
def create_rule():
    rule = _svc().rules.create(_json())
    return {"status": "success", "rule": rule.to_dict()}, 201


@bp.get("/rules/<int:rule_id>")
def get_rule(rule_id: int):
    return {"status": "success", "rule": _svc().rules.get(rule_id).to_dict()}, 200


@bp.put("/rules/<int:rule_id>")
def update_rule(rule_id: int):
    rule = _svc().rules.update(rule_id, _json())
    return {"status": "success", "rule": rule.to_dict()}, 200


@bp.delete("/rules/<int:rule_id>")
def delete_rule(rule_id: int):
    _svc().rules.delete(rule_id)
    return {"status": "success", "message": f"rule {rule_id} deleted"}, 200


@bp.post("/rules/<int:rule_id>/enable")
def enable_rule(rule_id: int):
    return {"status": "success", "rule": _svc().rules.set_active(rule_id, True).to_dict()}, 200


@bp.post("/rules/<int:rule_id>/disable")
def disable_rule(rule_id: int):
    return {"status": "success", "rule": _svc().rules.set_active(rule_id, False).to_dict()}, 200


# =========================================================
# Runs
# =========================================================

@bp.post("/run")
def run_now():
    body = _json()
    if body.get("rule_id") in (None, ""):
        raise ValidationError("rule_id is required")
    try:
        rule_id = int(body["rule_id"])
    except (TypeError, ValueError):
        raise ValidationError("rule_id must be an integer")
    log = _svc().scheduler.run_now(rule_id)
    return {"status": "accepted", "log": log.to_dict()}, 202


@bp.post("/<any(product, inventory, order):sync_type>/<source_id>/<target_id>")
def run_adhoc(sync_type: str, source_id: str, target_id: str):
    body = _json()
    log = _svc().scheduler.run_adhoc(sync_type, source_id, target_id,
                                     body.get("conditions"), body.get("transformations"))
    return {"status": "accepted", "log": log.to_dict()}, 202


# =========================================================
# Logs
# =========================================================

@bp.get("/logs")
def list_logs():
    filters = {k: request.args.get(k) for k in
               ("status", "type", "action", "source_store_id", "target_store_id", "entity_id", "sync_rule_id")}
    if filters["sync_rule_id"] not in (None, ""):
        filters["sync_rule_id"] = _int_arg("sync_rule_id", 0)
    filters["since"] = _date_arg("since")
    filters["until"] = _date_arg("until")
    result = _svc().logs.search(filters, _int_arg("page", 1), _int_arg("limit", 20))
    return {"status": "success", **result}, 200


@bp.get("/logs/summary")
def logs_summary():
    return {"status": "success", "summary": _svc().logs.summary(request.args.get("time_range", "7d"))}, 200


@bp.get("/logs/<int:log_id>")
def get_log(log_id: int):
    return {"status": "success", "log": _svc().logs.get(log_id).to_dict()}, 200


@bp.delete("/logs/cleanup")
def cleanup_logs():
    days = _int_arg("days", _svc().settings.log_retention_days)
    if days < 1:
        raise ValidationError("days must be at least 1")
    removed = _svc().logs.purge_older_than(days)
    return {"status": "success", "removed": removed, "days": days}, 200
