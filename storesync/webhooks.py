# storesync/webhooks.py
from __future__ import annotations

import json

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from .adapters import get_adapter
from .config import BASE_URL
from .errors import StoreSyncError, ValidationError
from .models import Webhook
from .repositories import Store, StoreRepository
from .utils.logger import debug, info, warn

DEFAULT_TOPICS = {
    "shopify": ["products/create", "products/update", "inventory_levels/update", "orders/create", "orders/updated"],
    "woocommerce": ["product.created", "product.updated", "order.created", "order.updated"],
    "lazada": ["product", "order"],
    "shopee": ["product", "order"],
}


class WebhookService:
    def __init__(self, session_factory: sessionmaker, stores: StoreRepository, scheduler=None,
                 settings=None, base_url: str | None = None):
        self._sessions = session_factory
        self.stores = stores
        self.scheduler = scheduler
        self.settings = settings
        self.base_url = (base_url or BASE_URL or "").rstrip("/")

    # =========================================================
    # Registration
    # =========================================================

    def address_for(self, store: Store) -> str:
        if not self.base_url:
            raise ValidationError("BASE_URL is not configured")
        return f"{self.base_url}/webhook/{store.type}"

    def register(self, store_id, topics: list[str] | None = None) -> dict:
        """Subscribe a store to ``topics``; idempotent per (store, topic). Failures are reported per topic."""
        store = self.stores.require(store_id)
        adapter = get_adapter(store.type)
        topics = topics or DEFAULT_TOPICS.get(store.type, [])
        address = self.address_for(store)
        secret = self.secret_for(store)

        registered, failed = [], []
        for topic in topics:
            try:
                hook = adapter.register_webhook(store, topic, address, secret)
            except StoreSyncError as e:
                warn(f"[webhooks] {store.name} {topic}: {e}")
                failed.append({"topic": topic, "error": str(e)})
                continue
            registered.append(self._record(store, hook, secret).to_dict())
        info(f"[webhooks] {store.name}: {len(registered)} registered, {len(failed)} failed")
        return {"store_id": store.id, "registered": registered, "failed": failed}

    def _record(self, store: Store, hook: dict, secret: str | None) -> Webhook:
        with self._sessions() as s:
            row = s.execute(
                select(Webhook).where(Webhook.store_id == store.id, Webhook.topic == hook["topic"])
            ).scalar_one_or_none()
            if row is None:
                row = Webhook(store_id=store.id, topic=hook["topic"])
                s.add(row)
            row.external_id = hook.get("id")
            row.address = hook.get("address") or ""
            row.format = hook.get("format") or "json"
            row.secret = secret
            s.commit()
            return row

    def unregister(self, store_id) -> int:
        """Forget a store's subscriptions locally."""
        store = self.stores.require(store_id)
        with self._sessions() as s:
            n = s.execute(delete(Webhook).where(Webhook.store_id == store.id)).rowcount
            s.commit()
        info(f"[webhooks] {store.name}: {n or 0} subscriptions removed")
        return n or 0

    def list(self, store_id=None) -> list[Webhook]:
        stmt = select(Webhook).order_by(Webhook.store_id, Webhook.topic)
        if store_id is not None:
            stmt = stmt.where(Webhook.store_id == str(store_id))
        with self._sessions() as s:
            return list(s.execute(stmt).scalars())

    def secret_for(self, store: Store) -> str | None:
        with self._sessions() as s:
            stored = s.execute(
                select(Webhook.secret).where(Webhook.store_id == store.id, Webhook.secret.is_not(None)).limit(1)
            ).scalar_one_or_none()
        if stored:
            return stored
        return store.cred("webhook_secret") or (self.settings.webhook_secret if self.settings else None)

    # =========================================================
    # Ingestion
    # =========================================================

    def ingest(self, platform: str, raw: bytes, headers) -> tuple[dict, int]:
        """Verify and dispatch one delivery. Returns (body, http status); nothing is processed on 401."""
        adapter = get_adapter(platform)

        try:
            payload = json.loads(raw.decode("utf-8")) if raw else {}
        except (UnicodeDecodeError, ValueError):
            payload = {}
        event = adapter.parse_webhook(headers, payload if isinstance(payload, dict) else {})

        store = self.stores.find_by_webhook_key(platform, event.store_key) if event.store_key else None
        secret = self.secret_for(store) if store else (self.settings.webhook_secret if self.settings else None)

        if not adapter.verify_webhook_signature(raw, headers, secret):
            warn(f"[webhooks] {platform} signature rejected (store key {event.store_key})")
            return {"status": "error", "message": "invalid signature"}, 401

        if store is None:
            info(f"[webhooks] {platform} {event.topic}: unknown store {event.store_key}, ignored")
            return {"status": "ignored"}, 200

        if not event.kinds or not event.entity_id:
            debug(f"[webhooks] {store.name} {event.topic or 'event'} ignored")
            return {"status": "ignored"}, 200

        queued = self.scheduler.dispatch_webhook(store, event) if self.scheduler else []
        return {"status": "accepted", "queued": len(queued)}, 200
