"""
Marketplace adapter contract.

Every platform implements the same capabilities so the orchestrator never
branches on store type. Records cross the adapter boundary in two shapes:

* platform records, whatever the marketplace API returns, and
* internal records, platform-neutral dicts:

  product    {id, title, description, vendor, product_type, tags[], status,
              handle, variants[{id, sku, title, price, compare_at_price,
              quantity, barcode, options[]}], images[]}
  inventory  {id, product_id, variant_id, sku, quantity}
  order      {id, order_number, email, currency, financial_status,
              fulfillment_status, payment_method, total_price, customer{},
              shipping_address{}, line_items[{product_id, variant_id, sku,
              title, quantity, price}], created_at}

``to_internal`` and ``from_internal`` are total: missing fields fall back to
defaults, they never raise on sparse input. Network and upstream errors are
raised as ``MarketplaceApiError`` and never retried here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import NamedTuple

from ..clients import http
from ..errors import MarketplaceApiError
from ..repositories import Store

KINDS = ("product", "inventory", "order")


class Page(NamedTuple):
    records: list
    next_cursor: str | None
    has_more: bool


@dataclass(frozen=True)
class WebhookEvent:
    topic: str
    kinds: tuple = ()
    entity_id: str | None = None
    store_key: str | None = None


# =========================================================
# Field helpers shared by the platform mappings
# =========================================================

def as_str(value, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def as_id(value) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def as_int(value, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(Decimal(str(value)))
        except (InvalidOperation, ValueError, TypeError):
            return default


def as_price(value) -> str | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return str(Decimal(str(value)).quantize(Decimal("0.01")))
    except (InvalidOperation, ValueError):
        return None


def as_tags(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    out = []
    for t in value:
        name = t.get("name") if isinstance(t, dict) else t
        if name:
            out.append(str(name).strip())
    return out


def as_list(value) -> list:
    return value if isinstance(value, list) else []


def as_dict(value) -> dict:
    return value if isinstance(value, dict) else {}


def first(items: list, default=None):
    return items[0] if items else default


class MarketplaceAdapter(ABC):
    platform: str = ""
    signature_header: str = ""

    # =========================================================
    # HTTP
    # =========================================================

    def _call(self, operation: str, method: str, url: str, **kwargs):
        return http.call(self.platform, operation, method, url, **kwargs)

    def _json(self, operation: str, method: str, url: str, **kwargs) -> dict:
        r = self._call(operation, method, url, **kwargs)
        return http.json_of(self.platform, operation, r)

    def _unsupported(self, operation: str, what: str):
        raise MarketplaceApiError(self.platform, operation, f"{what} is not supported by {self.platform}")

    # =========================================================
    # Capabilities
    # =========================================================

    @abstractmethod
    def fetch_records(self, store: Store, kind: str, cursor: str | None = None) -> Page: ...

    @abstractmethod
    def fetch_entity(self, store: Store, kind: str, external_id: str) -> list:
        """Platform records for one entity; empty when it no longer exists."""

    @abstractmethod
    def create_record(self, store: Store, kind: str, record: dict) -> str: ...

    @abstractmethod
    def update_record(self, store: Store, kind: str, external_id: str, record: dict) -> None: ...

    @abstractmethod
    def push_inventory(self, store: Store, external_product_id: str,
                       external_variant_id: str | None, quantity: int) -> None: ...

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, headers, secret: str | None) -> bool: ...

    @abstractmethod
    def parse_webhook(self, headers, payload: dict) -> WebhookEvent: ...

    @abstractmethod
    def register_webhook(self, store: Store, topic: str, address: str, secret: str | None = None) -> dict:
        """Subscribe ``address`` to ``topic``; returns {id, topic, address, format}."""

    # =========================================================
    # Schema mapping
    # =========================================================

    @abstractmethod
    def product_to_internal(self, record: dict) -> dict: ...

    @abstractmethod
    def product_from_internal(self, record: dict) -> dict: ...

    @abstractmethod
    def inventory_to_internal(self, record: dict) -> dict: ...

    @abstractmethod
    def order_to_internal(self, record: dict) -> dict: ...

    @abstractmethod
    def order_from_internal(self, record: dict) -> dict: ...

    def to_internal(self, record: dict, kind: str) -> dict:
        record = record if isinstance(record, dict) else {}
        if kind == "product":
            return self.product_to_internal(record)
        if kind == "inventory":
            return self.inventory_to_internal(record)
        if kind == "order":
            return self.order_to_internal(record)
        return dict(record)

    def from_internal(self, record: dict, kind: str) -> dict:
        record = record if isinstance(record, dict) else {}
        if kind == "product":
            return self.product_from_internal(record)
        if kind == "order":
            return self.order_from_internal(record)
        # inventory is pushed as (product, variant, quantity), never as a record
        return {
            "product_id": record.get("product_id"),
            "variant_id": record.get("variant_id"),
            "quantity": as_int(record.get("quantity")),
        }

    def variant_ids_by_sku(self, store: Store, external_product_id: str) -> dict:
        """sku -> variant id on this store's copy of a product."""
        out = {}
        for raw in self.fetch_entity(store, "product", external_product_id):
            for v in self.product_to_internal(raw).get("variants", []):
                if v.get("sku") and v.get("id"):
                    out[v["sku"]] = v["id"]
        return out
