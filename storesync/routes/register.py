# storesync/routes/register.py
from flask import Blueprint, current_app, request

bp = Blueprint("register", __name__)


def _webhooks():
    return current_app.extensions["storesync"].webhooks


@bp.post("/register/<store_id>")
def register(store_id: str):
    body = request.get_json(silent=True) or {}
    topics = body.get("topics") or None
    result = _webhooks().register(store_id, topics)
    status = 200 if not result["failed"] or result["registered"] else 502
    return {"status": "success" if status == 200 else "error", **result}, status


@bp.delete("/unregister/<store_id>")
def unregister(store_id: str):
    removed = _webhooks().unregister(store_id)
    return {"status": "success", "store_id": store_id, "removed": removed}, 200


@bp.get("")
def list_webhooks():
    hooks = _webhooks().list(request.args.get("store_id"))
    return {"status": "success", "webhooks": [h.to_dict() for h in hooks]}, 200
