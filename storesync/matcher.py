"""
Condition matcher.

``matches(record, spec)`` decides whether an internal record qualifies for a
rule. A spec maps a dotted field path to a matcher:

    {"status": "active"}                          exact, case-insensitive
    {"status": ["active", "draft"]}               one of
    {"title": {"contains": "shirt"}}              substring, case-insensitive
    {"title": "^blue"}                            title, description and tags: regex
    {"sku": {"regex": "^TS-\\d+$"}}               regex search, case-insensitive
    {"variants.price": {"min": 10, "max": 50}}    inclusive numeric range

All keys must hold. A path crossing a list (``variants.price``) holds when
any element's value satisfies the matcher. Records missing the field do not
match. Nothing here raises on record content.
"""

import re
from decimal import Decimal, InvalidOperation

from .errors import ValidationError
from .utils.paths import values_at

OPERATORS = ("equals", "in", "contains", "regex", "min", "max")

# legacy flat keys still accepted in stored rules
_RANGE_ALIASES = {
    "minPrice": ("variants.price", "min"),
    "maxPrice": ("variants.price", "max"),
    "minQuantity": ("quantity", "min"),
    "maxQuantity": ("quantity", "max"),
    "minTotalPrice": ("total_price", "min"),
    "maxTotalPrice": ("total_price", "max"),
}
_FIELD_ALIASES = {
    "productType": "product_type",
    "financialStatus": "financial_status",
    "fulfillmentStatus": "fulfillment_status",
}
_REGEX_ALIASES = {"paymentMethod": "payment_method"}
# free-text fields: a plain string is a case-insensitive pattern, not an exact value
_TEXT_FIELDS = ("title", "description", "tags")


def normalize_spec(spec: dict | None) -> dict:
    out: dict = {}
    for key, matcher in (spec or {}).items():
        if key in _RANGE_ALIASES:
            path, bound = _RANGE_ALIASES[key]
            existing = out.get(path)
            merged = dict(existing) if isinstance(existing, dict) else {}
            merged[bound] = matcher
            out[path] = merged
        elif key in _REGEX_ALIASES:
            out[_REGEX_ALIASES[key]] = {"regex": matcher}
        elif key in _TEXT_FIELDS and isinstance(matcher, str):
            out[key] = {"regex": matcher}
        else:
            out[_FIELD_ALIASES.get(key, key)] = matcher
    return out


def _number(value):
    if isinstance(value, bool) or value is None:
        return None
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def _same(actual, expected) -> bool:
    if isinstance(expected, bool) or isinstance(actual, bool):
        if isinstance(actual, str):
            return actual.strip().lower() == str(expected).lower()
        return actual is expected or actual == expected
    if isinstance(expected, (int, float)):
        a = _number(actual)
        return a is not None and a == _number(expected)
    if isinstance(expected, str):
        if isinstance(actual, (dict, list)):
            return False
        return str(actual).casefold() == expected.casefold()
    return actual == expected


def _scalar(value) -> bool:
    return isinstance(value, (str, int, float, bool))


def _check(values: list, op: str, arg) -> bool:
    if op == "equals":
        return any(_same(v, arg) for v in values)
    if op == "in":
        options = arg if isinstance(arg, (list, tuple)) else [arg]
        return any(_same(v, o) for v in values for o in options)
    if op == "contains":
        needle = str(arg).casefold()
        return any(_scalar(v) and needle in str(v).casefold() for v in values)
    if op == "regex":
        try:
            pattern = re.compile(str(arg), re.IGNORECASE)
        except re.error:
            return False
        return any(_scalar(v) and pattern.search(str(v)) is not None for v in values)
    return True


def _in_range(values: list, lo, hi) -> bool:
    lo_n, hi_n = _number(lo), _number(hi)
    for v in values:
        n = _number(v)
        if n is None:
            continue
        if lo is not None and (lo_n is None or n < lo_n):
            continue
        if hi is not None and (hi_n is None or n > hi_n):
            continue
        return True
    return False


def _field_matches(record: dict, path: str, matcher) -> bool:
    if isinstance(matcher, dict):
        ops = {k: v for k, v in matcher.items() if k in OPERATORS}
        if not ops:
            return True
    elif isinstance(matcher, (list, tuple)):
        ops = {"in": list(matcher)}
    else:
        ops = {"equals": matcher}

    values = values_at(record, path)
    if not values:
        return False

    if "min" in ops or "max" in ops:
        if not _in_range(values, ops.get("min"), ops.get("max")):
            return False
    for op, arg in ops.items():
        if op in ("min", "max"):
            continue
        if not _check(values, op, arg):
            return False
    return True


def matches(record: dict, spec: dict | None) -> bool:
    if not spec:
        return True
    if not isinstance(record, dict):
        return False
    for path, matcher in normalize_spec(spec).items():
        if not _field_matches(record, path, matcher):
            return False
    return True


def validate_predicate_spec(spec) -> dict:
    if spec is None:
        return {}
    if not isinstance(spec, dict):
        raise ValidationError("conditions must be an object")
    for path, matcher in normalize_spec(spec).items():
        if not isinstance(path, str) or not path.strip():
            raise ValidationError("condition field names must be non-empty strings")
        if matcher is None:
            raise ValidationError(f"condition '{path}' has no value")
        if isinstance(matcher, (list, tuple)):
            if not all(_scalar(v) for v in matcher):
                raise ValidationError(f"condition '{path}' list may only hold plain values")
            continue
        if not isinstance(matcher, dict):
            if not _scalar(matcher):
                raise ValidationError(f"condition '{path}' has an unsupported value")
            continue
        for bound in ("min", "max"):
            if bound in matcher and _number(matcher[bound]) is None:
                raise ValidationError(f"condition '{path}' {bound} must be numeric")
        if "min" in matcher and "max" in matcher and _number(matcher["min"]) > _number(matcher["max"]):
            raise ValidationError(f"condition '{path}' min is greater than max")
        if "regex" in matcher:
            try:
                re.compile(str(matcher["regex"]))
            except re.error as e:
                raise ValidationError(f"condition '{path}' regex is invalid: {e}")
        if "in" in matcher and not isinstance(matcher["in"], (list, tuple)):
            raise ValidationError(f"condition '{path}' 'in' must be a list")
    return spec
