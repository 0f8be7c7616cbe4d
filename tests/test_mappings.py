import threading

import pytest

from storesync.errors import SyncError
from storesync.mappings import MappingStore


@pytest.fixture
def mappings(session_factory):
    return MappingStore(session_factory)


def test_resolve_unknown_is_none(mappings):
    assert mappings.resolve("product", "A", "B", "1") is None


def test_upsert_creates_then_updates_same_row(mappings):
    first = mappings.upsert("product", "A", "B", "1", "T-1", sync_rule_id=7)
    second = mappings.upsert("product", "A", "B", "1", "T-2")
    assert first.id == second.id
    assert mappings.resolve("product", "A", "B", "1") == "T-2"
    assert mappings.get("product", "A", "B", "1").sync_rule_id == 7
    assert mappings.count("product") == 1


def test_mapping_is_per_target_store(mappings):
    mappings.upsert("product", "A", "B", "1", "T-1")
    mappings.upsert("product", "A", "C", "1", "U-1")
    assert mappings.resolve("product", "A", "B", "1") == "T-1"
    assert mappings.resolve("product", "A", "C", "1") == "U-1"
    assert mappings.count("product", target_store_id="C") == 1


def test_orders_and_products_are_separate_tables(mappings):
    mappings.upsert("order", "A", "B", "1", "O-1")
    assert mappings.resolve("product", "A", "B", "1") is None
    assert mappings.resolve("order", "A", "B", "1") == "O-1"


def test_inventory_resolves_through_product_mapping(mappings):
    mappings.upsert("product", "A", "B", "1", "T-1")
    assert mappings.resolve("inventory", "A", "B", "1") == "T-1"


def test_unknown_kind_raises(mappings):
    with pytest.raises(SyncError):
        mappings.resolve("customer", "A", "B", "1")


def test_remember_variants_merges(mappings):
    mappings.upsert("product", "A", "B", "1", "T-1")
    mappings.remember_variants("A", "B", "1", {"v1": "t1"})
    merged = mappings.remember_variants("A", "B", "1", {"v2": "t2", "v3": None})
    assert merged == {"v1": "t1", "v2": "t2"}
    assert mappings.get("product", "A", "B", "1").variant_map == merged


def test_remember_variants_needs_product_mapping(mappings):
    with pytest.raises(SyncError):
        mappings.remember_variants("A", "B", "404", {"v1": "t1"})


def test_purge_by_store(mappings):
    mappings.upsert("product", "A", "B", "1", "T-1")
    mappings.upsert("product", "A", "C", "1", "U-1")
    assert mappings.purge("product", target_store_id="B") == 1
    assert mappings.count("product") == 1


def test_concurrent_writers_leave_one_row(mappings):
    barrier = threading.Barrier(4)

    def writer(n):
        barrier.wait()
        with mappings.lock("product", "A", "B", "1"):
            if mappings.resolve("product", "A", "B", "1") is None:
                mappings.upsert("product", "A", "B", "1", f"T-{n}")

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert mappings.count("product") == 1
