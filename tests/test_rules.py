import pytest

from storesync.errors import NotFoundError, ValidationError
from storesync.rules import RuleRepository, transient_rule, validate_rule


@pytest.fixture
def rules(session_factory, stores):
    return RuleRepository(session_factory, stores)


def body(**overrides):
    data = {
        "name": "Active products",
        "source_store_id": "A",
        "target_store_id": "B",
        "type": "product",
        "conditions": {"status": "active"},
        "transformations": {"title": "[SYNCED] {title}"},
    }
    data.update(overrides)
    return data


def test_validate_normalises_fields(stores):
    fields = validate_rule(body(name="  spaced  ", schedule=" "), stores)
    assert fields["name"] == "spaced"
    assert fields["schedule"] is None
    assert fields["is_active"] is True


@pytest.mark.parametrize("overrides", [
    {"name": ""},
    {"type": "customer"},
    {"target_store_id": "A"},
    {"target_store_id": "ZZ"},
    {"schedule": "every monday"},
    {"conditions": "status=active"},
    {"transformations": {"price": {"delta": "x"}}},
])
def test_validate_rejects(stores, overrides):
    with pytest.raises(ValidationError):
        validate_rule(body(**overrides), stores)


def test_crud_round(rules):
    rule = rules.create(body(schedule="*/5 * * * *"))
    assert rules.get(rule.id).conditions == {"status": "active"}

    updated = rules.update(rule.id, {"name": "Renamed", "id": 999})
    assert updated.id == rule.id
    assert updated.name == "Renamed"
    assert updated.schedule == "*/5 * * * *"

    assert rules.set_active(rule.id, False).is_active is False
    assert rules.active() == []

    rules.delete(rule.id)
    with pytest.raises(NotFoundError):
        rules.get(rule.id)


def test_update_revalidates(rules):
    rule = rules.create(body())
    with pytest.raises(ValidationError):
        rules.update(rule.id, {"target_store_id": "A"})
    assert rules.get(rule.id).target_store_id == "B"


def test_list_filters(rules):
    p = rules.create(body())
    o = rules.create(body(type="order", target_store_id="C"))
    rules.set_active(o.id, False)
    assert [r.id for r in rules.list(type="order")] == [o.id]
    assert [r.id for r in rules.list(active=True)] == [p.id]
    assert [r.id for r in rules.list(store_id="C")] == [o.id]
    assert [r.id for r in rules.active("product", source_store_id="A")] == [p.id]
    assert rules.active("product", source_store_id="B") == []


def test_missing_rule(rules):
    with pytest.raises(NotFoundError):
        rules.update(42, {"name": "x"})
    with pytest.raises(NotFoundError):
        rules.delete(42)


def test_transient_rule_has_no_id():
    rule = transient_rule("inventory", "A", "B")
    assert rule.id is None
    assert rule.type == "inventory"
    assert rule.conditions == {}
