# storesync/routes/webhooks.py
from flask import Blueprint, current_app, request

from ..utils.logger import debug

bp = Blueprint("webhooks", __name__)


@bp.post("/webhook/<platform>")
def receive(platform: str):
    raw = request.get_data()
    debug(f"[webhooks] /webhook/{platform} received ({len(raw)} bytes)")
    svc = current_app.extensions["storesync"].webhooks
    body, status = svc.ingest(platform.lower(), raw, request.headers)
    return body, status
