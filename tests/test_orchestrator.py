import threading

import pytest

from storesync.errors import MarketplaceApiError, NotFoundError, RunInterrupted
from storesync.models import SyncRule
from storesync.orchestrator import SyncOrchestrator
from storesync.repositories import EntityRepository

from .conftest import product


def make_rule(services, **overrides):
    data = {"name": "rule", "source_store_id": "A", "target_store_id": "B", "type": "product"}
    data.update(overrides)
    return services.rules.create(data)


def last_log(services):
    return services.logs.search({}, limit=1)["logs"][0]


def assert_accounted(stats):
    assert stats.total == stats.created + stats.updated + stats.skipped + stats.failed


def test_status_filter_and_title_template(services, fake):
    fake.seed("A", "product", product(1, "Shirt"), product(2, "Hat"), product(3, "Sock", status="draft"))
    rule = make_rule(services, conditions={"status": "active"}, transformations={"title": "[SYNCED] {title}"})

    stats = services.orchestrator.run(rule)

    assert (stats.total, stats.created, stats.skipped) == (3, 2, 1)
    assert_accounted(stats)
    titles = sorted(r["title"] for r in fake.records["B"]["product"].values())
    assert titles == ["[SYNCED] Hat", "[SYNCED] Shirt"]
    log = last_log(services)
    assert log["status"] == "completed"
    assert log["details"]["stats"]["created"] == 2


def test_second_run_updates_instead_of_creating(services, fake):
    fake.seed("A", "product", product(1), product(2), product(3))
    rule = make_rule(services)

    services.orchestrator.run(rule)
    stats = services.orchestrator.run(rule)

    assert (stats.created, stats.updated) == (0, 3)
    assert len(fake.records["B"]["product"]) == 3
    assert services.mappings.count("product", "A", "B") == 3


def test_target_outage_mid_run_counts_failures(services, fake):
    fake.seed("A", "product", *[product(i) for i in range(1, 6)])
    fake.fail_writes_after = 2
    rule = make_rule(services)

    stats = services.orchestrator.run(rule)

    assert stats.created + stats.updated == 2
    assert stats.failed == 3
    assert_accounted(stats)
    log = last_log(services)
    assert log["status"] == "completed"
    assert sorted(log["details"]["failedIds"]) == ["3", "4", "5"]
    assert len(log["details"]["errors"]) == 3


def test_record_without_id_is_a_record_failure(services, fake):
    fake.seed("A", "product", {**product(1), "id": ""})
    stats = services.orchestrator.run(make_rule(services))
    assert (stats.total, stats.failed) == (1, 1)


def test_source_fetch_failure_fails_the_run(services, fake):
    fake.fetch_error = MarketplaceApiError("fake", "list products", "500 boom", 500)
    rule = make_rule(services)

    with pytest.raises(MarketplaceApiError):
        services.orchestrator.run(rule)

    logs = services.logs.search({"sync_rule_id": rule.id})["logs"]
    statuses = sorted(l["status"] for l in logs)
    assert statuses == ["failed", "pending"]
    retry = next(l for l in logs if l["status"] == "pending")
    assert retry["retry_count"] == 1


def test_missing_store_fails_log_before_start(services, fake):
    rule = SyncRule(id=None, name="orphan", source_store_id="A", target_store_id="ZZ", type="product",
                    conditions={}, transformations={}, is_active=True, schedule=None)
    with pytest.raises(NotFoundError):
        services.orchestrator.run(rule)
    (log,) = services.logs.search({"status": "failed"})["logs"]
    assert log["started_at"] is None
    assert "ZZ" in log["error"]


def test_cancellation_marks_log_interrupted(services, fake):
    fake.seed("A", "product", product(1))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(RunInterrupted):
        services.orchestrator.run(make_rule(services), cancel_event=cancel)

    failed = services.logs.search({"status": "failed"})["logs"]
    assert failed[0]["error"] == "interrupted"
    assert fake.calls == []


def test_inventory_skipped_until_product_is_mapped(services, fake):
    fake.seed("A", "product", product(1, skus=("S-1",)))
    fake.seed("A", "inventory", {"id": "1-v1", "product_id": "1", "variant_id": "1-v1", "sku": "S-1", "quantity": 7})
    inventory_rule = make_rule(services, type="inventory")

    stats = services.orchestrator.run(inventory_rule)
    assert (stats.total, stats.skipped) == (1, 1)
    assert not any(c[0] == "create" for c in fake.calls)

    services.orchestrator.run(make_rule(services))
    target_id = services.mappings.resolve("product", "A", "B", "1")

    stats = services.orchestrator.run(inventory_rule)
    assert stats.updated == 1
    assert ("push", "B", target_id, "1-v1", 7) in fake.calls
    mapping = services.mappings.get("product", "A", "B", "1")
    assert mapping.variant_map == {"1-v1": "1-v1"}


def test_order_line_items_point_at_target_products(services, fake):
    services.mappings.upsert("product", "A", "B", "1", "T-1")
    services.mappings.remember_variants("A", "B", "1", {"1-v1": "T-1-v1"})
    fake.seed("A", "order", {
        "id": "100",
        "email": "buyer@example.com",
        "total_price": "10.00",
        "line_items": [
            {"product_id": "1", "variant_id": "1-v1", "sku": "S-1", "quantity": 1, "price": "10.00"},
            {"product_id": "9", "variant_id": "9-v1", "sku": "X", "quantity": 1, "price": "1.00"},
        ],
    })

    stats = services.orchestrator.run(make_rule(services, type="order"))

    assert stats.created == 1
    (created,) = fake.records["B"]["order"].values()
    assert created["line_items"][0]["product_id"] == "T-1"
    assert created["line_items"][0]["variant_id"] == "T-1-v1"
    assert created["line_items"][1]["product_id"] == "9"


def test_reconcile_single_entity(services, fake, entities):
    fake.seed("A", "product", product(1, "Shirt"), product(2, "Hat"))
    rule = make_rule(services)

    stats = services.orchestrator.reconcile(rule, "2")

    assert (stats.total, stats.created) == (1, 1)
    assert entities.get("A", "product", "2")["title"] == "Hat"
    log = last_log(services)
    assert log["action"] == "webhook"
    assert log["external_source_id"] == "2"
    assert log["external_target_id"] == services.mappings.resolve("product", "A", "B", "2")


def test_reconcile_vanished_entity_completes_empty(services, fake):
    stats = services.orchestrator.reconcile(make_rule(services), "404")
    assert stats.total == 0
    assert last_log(services)["status"] == "completed"


def test_inventory_without_matching_target_variant_is_skipped(services, fake):
    services.mappings.upsert("product", "A", "B", "1", "B-1")
    fake.seed("B", "product", product("B-1", skus=("S-1", "S-2")))
    fake.seed("A", "inventory", {"id": "1-v9", "product_id": "1", "variant_id": "1-v9", "sku": "S-9", "quantity": 4})

    stats = services.orchestrator.run(make_rule(services, type="inventory"))

    assert (stats.total, stats.updated, stats.skipped) == (1, 0, 1)
    assert not [c for c in fake.calls if c[0] == "push"]
    assert services.mappings.get("product", "A", "B", "1").variant_map in (None, {})


class BrokenEntities(EntityRepository):
    def upsert(self, store_id, kind, record):
        raise RuntimeError("entity store offline")


def test_local_copy_failure_is_a_record_failure(services, fake):
    fake.seed("A", "product", product(1))
    orchestrator = SyncOrchestrator(services.stores, services.mappings, services.logs, BrokenEntities())

    stats = orchestrator.reconcile(make_rule(services), "1")

    assert (stats.total, stats.failed) == (1, 1)
    log = last_log(services)
    assert log["status"] == "completed"
    assert log["details"]["failedIds"] == ["1"]
