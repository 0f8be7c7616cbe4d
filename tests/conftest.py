import base64
import copy
import hashlib
import hmac
import itertools
import threading
from collections import defaultdict

import pytest

from storesync import build_services, create_app
from storesync.adapters import MarketplaceAdapter, Page, WebhookEvent, register_adapter, unregister_adapter
from storesync.adapters.base import as_id
from storesync.config import SyncSettings
from storesync.db import make_engine, make_session_factory
from storesync.errors import MarketplaceApiError
from storesync.repositories import InMemoryEntityRepository, InMemoryStoreRepository, Store
from storesync.utils.security import header, verify_hmac_base64

TOPIC_KINDS = {"product": ("product", "inventory"), "order": ("order",)}


def sign(secret: str, raw: bytes) -> str:
    return base64.b64encode(hmac.new(secret.encode(), raw, hashlib.sha256).digest()).decode()


class FakeAdapter(MarketplaceAdapter):
    """In-memory marketplace. Records are stored already in the internal shape."""

    platform = "fake"
    signature_header = "X-Fake-Signature"

    def __init__(self, page_size: int = 2):
        self.page_size = page_size
        self.records = defaultdict(lambda: defaultdict(dict))  # store -> kind -> id -> record
        self.calls = []
        self.writes = 0
        self.fail_writes_after = None
        self.fetch_error = None
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def seed(self, store_id: str, kind: str, *records):
        for r in records:
            self.records[store_id][kind][str(r["id"])] = copy.deepcopy(r)

    def _write(self):
        with self._lock:
            if self.fail_writes_after is not None and self.writes >= self.fail_writes_after:
                raise MarketplaceApiError(self.platform, "write", "503 service unavailable", 503)
            self.writes += 1

    def fetch_records(self, store, kind, cursor=None):
        if self.fetch_error:
            raise self.fetch_error
        rows = list(self.records[store.id][kind].values())
        start = int(cursor or 0)
        nxt = start + self.page_size
        has_more = nxt < len(rows)
        return Page(copy.deepcopy(rows[start:nxt]), str(nxt) if has_more else None, has_more)

    def fetch_entity(self, store, kind, external_id):
        if kind == "inventory":
            return [copy.deepcopy(r) for r in self.records[store.id]["inventory"].values()
                    if str(r.get("product_id")) == str(external_id)]
        row = self.records[store.id][kind].get(str(external_id))
        return [copy.deepcopy(row)] if row else []

    def create_record(self, store, kind, record):
        self._write()
        new_id = f"{store.id}-{next(self._ids)}"
        self.records[store.id][kind][new_id] = {**copy.deepcopy(record), "id": new_id}
        self.calls.append(("create", store.id, kind, new_id))
        return new_id

    def update_record(self, store, kind, external_id, record):
        self._write()
        self.records[store.id][kind][str(external_id)] = {**copy.deepcopy(record), "id": str(external_id)}
        self.calls.append(("update", store.id, kind, str(external_id)))

    def push_inventory(self, store, external_product_id, external_variant_id, quantity):
        self._write()
        self.calls.append(("push", store.id, external_product_id, external_variant_id, quantity))

    def verify_webhook_signature(self, raw_body, headers, secret):
        return verify_hmac_base64(secret, raw_body, header(headers, self.signature_header))

    def parse_webhook(self, headers, payload):
        topic = header(headers, "X-Fake-Topic")
        return WebhookEvent(topic, TOPIC_KINDS.get(topic, ()), as_id(payload.get("id")), payload.get("store"))

    def register_webhook(self, store, topic, address, secret=None):
        if topic == "broken":
            raise MarketplaceApiError(self.platform, "create webhook", "422 topic rejected", 422)
        return {"id": f"wh-{topic}", "topic": topic, "address": address, "format": "json"}

    def product_to_internal(self, record):
        return copy.deepcopy(record)

    def product_from_internal(self, record):
        return copy.deepcopy(record)

    def inventory_to_internal(self, record):
        return copy.deepcopy(record)

    def order_to_internal(self, record):
        return copy.deepcopy(record)

    def order_from_internal(self, record):
        return copy.deepcopy(record)


@pytest.fixture
def fake():
    adapter = FakeAdapter()
    register_adapter(adapter)
    yield adapter
    unregister_adapter("fake")


@pytest.fixture
def session_factory(tmp_path):
    # file-backed so pool threads each get their own connection
    engine = make_engine(f"sqlite:///{tmp_path / 'storesync.db'}")
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def stores():
    return InMemoryStoreRepository([
        Store("A", "Source", "fake", "a.example", {"webhook_secret": "secret-a"}),
        Store("B", "Target", "fake", "b.example", {}),
        Store("C", "Other", "fake", "c.example", {}),
    ])


@pytest.fixture
def settings():
    return SyncSettings(max_concurrent_syncs=2, retry_delay=60, max_retry_attempts=3,
                        inter_rule_delay=0, tick_seconds=0.05, webhook_secret="global-secret")


@pytest.fixture
def entities():
    return InMemoryEntityRepository()


@pytest.fixture
def services(settings, stores, session_factory, entities, fake):
    svc = build_services(settings, stores, session_factory, entities, "https://sync.example")
    yield svc
    svc.scheduler.shutdown()


@pytest.fixture
def app(settings, stores, session_factory, entities, fake):
    app = create_app(settings=settings, stores=stores, session_factory=session_factory, entities=entities,
                     start_scheduler=False, base_url="https://sync.example")
    app.config["TESTING"] = True
    yield app
    app.extensions["storesync"].scheduler.shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


def product(pid, title="Shirt", status="active", skus=("S-1",), price="10.00", qty=5):
    return {
        "id": str(pid),
        "title": title,
        "description": "",
        "vendor": "Acme",
        "product_type": "apparel",
        "tags": [],
        "status": status,
        "handle": title.lower(),
        "variants": [
            {"id": f"{pid}-v{i}", "sku": sku, "title": sku, "price": price, "compare_at_price": None,
             "quantity": qty, "barcode": None, "options": []}
            for i, sku in enumerate(skus, start=1)
        ],
        "images": [],
    }
