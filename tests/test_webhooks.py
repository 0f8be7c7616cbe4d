import json

import pytest

from storesync import webhooks as webhooks_module
from storesync.errors import NotFoundError, ValidationError
from storesync.webhooks import WebhookService

from .conftest import product, sign


def delivery(secret, topic="product", **payload):
    raw = json.dumps(payload).encode()
    headers = {"X-Fake-Topic": topic, "X-Fake-Signature": sign(secret, raw)}
    return raw, headers


@pytest.fixture
def product_rule(services):
    return services.rules.create({"name": "hook", "source_store_id": "A", "target_store_id": "B", "type": "product"})


def test_bad_signature_is_rejected_without_side_effects(services, fake, product_rule):
    raw, headers = delivery("wrong-secret", id="1", store="a.example")
    body, status = services.webhooks.ingest("fake", raw, headers)
    assert status == 401
    assert body["status"] == "error"
    assert services.logs.search({})["pagination"]["total"] == 0


def test_missing_signature_is_rejected(services, fake, product_rule):
    raw = json.dumps({"id": "1", "store": "a.example"}).encode()
    _, status = services.webhooks.ingest("fake", raw, {"X-Fake-Topic": "product"})
    assert status == 401


def test_redelivery_creates_once_then_updates(services, fake, product_rule):
    fake.seed("A", "product", product(1))
    raw, headers = delivery("secret-a", id="1", store="a.example")

    for _ in range(2):
        body, status = services.webhooks.ingest("fake", raw, headers)
        assert status == 200
        assert body == {"status": "accepted", "queued": 1}
    services.scheduler.drain(timeout=10)

    assert services.mappings.count("product", "A", "B") == 1
    kinds = sorted(c[0] for c in fake.calls)
    assert kinds == ["create", "update"]
    logs = services.logs.search({"action": "webhook"})["logs"]
    assert [l["status"] for l in logs] == ["completed", "completed"]
    assert {l["entity_id"] for l in logs} == {"1"}


def test_unknown_store_is_ignored(services, fake, product_rule):
    raw, headers = delivery("global-secret", id="1", store="nowhere.example")
    body, status = services.webhooks.ingest("fake", raw, headers)
    assert (body["status"], status) == ("ignored", 200)


def test_event_without_entity_is_ignored(services, fake, product_rule):
    raw, headers = delivery("secret-a", topic="shop/update", store="a.example")
    body, status = services.webhooks.ingest("fake", raw, headers)
    assert (body["status"], status) == ("ignored", 200)


def test_unknown_platform(services):
    with pytest.raises(NotFoundError):
        services.webhooks.ingest("myspace", b"{}", {})


def test_register_reports_per_topic(services, fake):
    result = services.webhooks.register("A", ["product", "broken"])
    assert [h["topic"] for h in result["registered"]] == ["product"]
    assert result["registered"][0]["address"] == "https://sync.example/webhook/fake"
    assert [f["topic"] for f in result["failed"]] == ["broken"]

    again = services.webhooks.register("A", ["product"])
    assert len(again["registered"]) == 1
    assert [h.topic for h in services.webhooks.list("A")] == ["product"]

    assert services.webhooks.unregister("A") == 1
    assert services.webhooks.list() == []


def test_stored_secret_wins(services, fake, stores):
    services.webhooks.register("A", ["product"])
    assert services.webhooks.secret_for(stores.require("A")) == "secret-a"
    assert services.webhooks.secret_for(stores.require("B")) == "global-secret"


def test_register_needs_base_url(session_factory, stores, fake, monkeypatch):
    monkeypatch.setattr(webhooks_module, "BASE_URL", "")
    service = WebhookService(session_factory, stores)
    with pytest.raises(ValidationError):
        service.register("A", ["product"])


def test_register_unknown_store(services):
    with pytest.raises(NotFoundError):
        services.webhooks.register("ZZ")
