import pytest

from storesync.errors import ValidationError
from storesync.matcher import matches, normalize_spec, validate_predicate_spec

from .conftest import product


def test_empty_spec_matches_everything():
    assert matches({}, {})
    assert matches({"title": "x"}, None)


def test_exact_match_is_case_insensitive():
    assert matches({"status": "ACTIVE"}, {"status": "active"})
    assert not matches({"status": "draft"}, {"status": "active"})


def test_missing_field_does_not_match():
    assert not matches({"title": "Shirt"}, {"status": "active"})


def test_one_of_list():
    spec = {"status": ["active", "draft"]}
    assert matches({"status": "draft"}, spec)
    assert not matches({"status": "archived"}, spec)


def test_contains_and_regex():
    assert matches({"title": "Blue T-Shirt"}, {"title": {"contains": "shirt"}})
    assert matches({"sku": "ts-100"}, {"sku": {"regex": r"^TS-\d+$"}})
    assert not matches({"sku": "XX-100"}, {"sku": {"regex": r"^TS-\d+$"}})


def test_bad_regex_never_raises():
    assert not matches({"sku": "abc"}, {"sku": {"regex": "("}})


def test_numeric_range_is_inclusive():
    spec = {"total_price": {"min": 10, "max": 50}}
    assert matches({"total_price": "10.00"}, spec)
    assert matches({"total_price": 50}, spec)
    assert not matches({"total_price": "50.01"}, spec)
    assert not matches({"total_price": "n/a"}, spec)


def test_path_through_list_matches_any_element():
    record = product(1, skus=("A", "B"), price="25.00")
    record["variants"][0]["price"] = "5.00"
    assert matches(record, {"variants.price": {"min": 20}})
    assert not matches(record, {"variants.price": {"min": 30}})
    assert matches(record, {"variants.sku": "b"})


def test_all_keys_must_hold():
    record = {"status": "active", "vendor": "Acme"}
    assert matches(record, {"status": "active", "vendor": "acme"})
    assert not matches(record, {"status": "active", "vendor": "Other"})


def test_legacy_keys_are_normalised():
    spec = normalize_spec({"minPrice": 10, "maxPrice": 20, "productType": "shoes", "paymentMethod": "cod",
                           "title": "shirt", "tags": {"in": ["sale"]}})
    assert spec == {
        "variants.price": {"min": 10, "max": 20},
        "product_type": "shoes",
        "payment_method": {"regex": "cod"},
        "title": {"regex": "shirt"},
        "tags": {"in": ["sale"]},
    }
    assert matches(product(1, price="15.00"), {"minPrice": 10, "maxPrice": 20})


def test_plain_text_conditions_are_patterns():
    assert matches({"title": "Blue Shirt"}, {"title": "shirt"})
    assert matches({"title": "Blue Shirt"}, {"title": "^blue"})
    assert not matches({"title": "Blue Shirt"}, {"title": "^shirt"})
    assert matches({"tags": ["summer", "Sale-2024"]}, {"tags": "sale"})
    assert not matches({"description": ""}, {"description": "cotton"})


def test_non_dict_record_does_not_match():
    assert not matches(None, {"status": "active"})


@pytest.mark.parametrize("spec", [
    "status=active",
    {"status": None},
    {"price": {"min": "cheap"}},
    {"price": {"min": 20, "max": 10}},
    {"sku": {"regex": "("}},
    {"tags": {"in": "sale"}},
    {"tags": [{"nested": True}]},
])
def test_validate_rejects_malformed_specs(spec):
    with pytest.raises(ValidationError):
        validate_predicate_spec(spec)


def test_validate_accepts_good_spec():
    spec = {"status": "active", "variants.price": {"min": 1}, "vendor": ["a", "b"]}
    assert validate_predicate_spec(spec) is spec
    assert validate_predicate_spec(None) == {}
