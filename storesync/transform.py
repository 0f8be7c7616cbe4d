# storesync/transform.py
import copy
import json
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import ValidationError
from .utils.paths import lookup

PLACEHOLDER = re.compile(r"\{([^{}]+)\}")
CENTS = Decimal("0.01")

# sub-records whose prices move together with the parent
PRICE_BEARING = ("variants", "line_items")

LEGACY_PRICE_KEYS = {"priceAdjustment": "delta", "pricePercentage": "percent"}


def _number(value):
    if isinstance(value, bool) or value is None:
        return None
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return d if d.is_finite() else None


def _stringify(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_stringify(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def render_template(template: str, source: dict) -> str:
    """Replace ``{a.b.c}`` with the value at that path; unknown paths stay verbatim."""
    def repl(m):
        found, value = lookup(source, m.group(1).strip())
        return _stringify(value) if found else m.group(0)
    return PLACEHOLDER.sub(repl, template)


def _index(node: list, key: str):
    if not key.lstrip("-").isdigit():
        return None
    idx = int(key)
    return idx if -len(node) <= idx < len(node) else None


def _set_path(record: dict, path: str, value):
    """Write ``value`` at a dotted path. Numeric segments index into lists;
    a segment that cannot be followed through a list leaves the record as is."""
    keys = path.split(".")
    node = record
    for k in keys[:-1]:
        if isinstance(node, list):
            idx = _index(node, k)
            if idx is None:
                return
            child = node[idx]
            if not isinstance(child, (dict, list)):
                child = {}
                node[idx] = child
        else:
            child = node.get(k)
            if not isinstance(child, (dict, list)):
                child = {}
                node[k] = child
        node = child
    last = keys[-1]
    if isinstance(node, list):
        idx = _index(node, last)
        if idx is not None:
            node[idx] = value
        return
    node[last] = value


def _adjust(value, op: str, amount: Decimal):
    n = _number(value)
    if n is None:
        return value
    if op == "delta":
        n = n + amount
    else:
        n = n * (Decimal(1) + amount / Decimal(100))
    return str(n.quantize(CENTS, rounding=ROUND_HALF_UP))


def _apply_price(record: dict, field: str, op: str, amount: Decimal):
    if field in record:
        record[field] = _adjust(record[field], op, amount)
    for sub in PRICE_BEARING:
        items = record.get(sub)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, dict) and field in item:
                item[field] = _adjust(item[field], op, amount)


def _price_ops(spec: dict) -> list[tuple[str, str, Decimal]]:
    deltas, percents = [], []
    for key, rule in spec.items():
        if key in LEGACY_PRICE_KEYS:
            amount = _number(rule)
            if amount is not None:
                (deltas if LEGACY_PRICE_KEYS[key] == "delta" else percents).append(("price", LEGACY_PRICE_KEYS[key], amount))
        elif isinstance(rule, dict):
            if "delta" in rule and _number(rule["delta"]) is not None:
                deltas.append((key, "delta", _number(rule["delta"])))
            if "percent" in rule and _number(rule["percent"]) is not None:
                percents.append((key, "percent", _number(rule["percent"])))
    return deltas + percents


def transform(record: dict, spec: dict | None) -> dict:
    """Map a record through a transform spec. Pure: the input is never mutated."""
    out = copy.deepcopy(record) if isinstance(record, dict) else {}
    if not spec:
        return out
    source = record if isinstance(record, dict) else {}

    for key, rule in spec.items():
        if key in LEGACY_PRICE_KEYS:
            continue
        if isinstance(rule, dict):
            if "value" in rule:
                _set_path(out, key, copy.deepcopy(rule["value"]))
            elif "template" in rule:
                _set_path(out, key, render_template(str(rule["template"]), source))
            # delta / percent handled below; anything else is ignored
        elif isinstance(rule, str):
            _set_path(out, key, render_template(rule, source))
        else:
            _set_path(out, key, copy.deepcopy(rule))

    for field, op, amount in _price_ops(spec):
        _apply_price(out, field, op, amount)
    return out


def validate_transform_spec(spec) -> dict:
    if spec is None:
        return {}
    if not isinstance(spec, dict):
        raise ValidationError("transformations must be an object")
    for key, rule in spec.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("transformation field names must be non-empty strings")
        if key in LEGACY_PRICE_KEYS:
            if _number(rule) is None:
                raise ValidationError(f"{key} must be numeric")
            continue
        if isinstance(rule, dict):
            for op in ("delta", "percent"):
                if op in rule and _number(rule[op]) is None:
                    raise ValidationError(f"transformation '{key}' {op} must be numeric")
            if "template" in rule and not isinstance(rule["template"], str):
                raise ValidationError(f"transformation '{key}' template must be a string")
    return spec
