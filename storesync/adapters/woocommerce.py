# storesync/adapters/woocommerce.py
from ..clients.http import json_of
from ..config import PAGE_SIZE
from ..errors import MarketplaceApiError, SyncError
from ..repositories import Store
from ..utils.logger import debug, info
from ..utils.security import header, verify_hmac_base64
from .base import (MarketplaceAdapter, Page, WebhookEvent, as_dict, as_id, as_int, as_list, as_price, as_str,
                   as_tags)

TOPIC_KINDS = {
    "product.created": ("product", "inventory"),
    "product.updated": ("product", "inventory"),
    "order.created": ("order",),
    "order.updated": ("order",),
}

# WooCommerce statuses for products / orders and their internal names
PRODUCT_STATUS_IN = {"publish": "active", "draft": "draft", "pending": "draft", "private": "archived"}
PRODUCT_STATUS_OUT = {"active": "publish", "draft": "draft", "archived": "private"}
ORDER_FINANCIAL = {"pending": "pending", "on-hold": "pending", "processing": "paid", "completed": "paid",
                   "refunded": "refunded", "cancelled": "voided", "failed": "voided"}
ORDER_STATUS_OUT = {"paid": "processing", "pending": "pending", "refunded": "refunded", "voided": "cancelled"}


def api_base(store: Store) -> str:
    return f"{(store.cred('url') or store.url).rstrip('/')}/wp-json/wc/v3"


def _auth(store: Store) -> tuple:
    return (store.cred("consumer_key", ""), store.cred("consumer_secret", ""))


class WooCommerceAdapter(MarketplaceAdapter):
    platform = "woocommerce"
    signature_header = "X-WC-Webhook-Signature"

    def _get(self, store: Store, operation: str, path: str, **params):
        return self._call(operation, "GET", f"{api_base(store)}{path}", auth=_auth(store), params=params)

    def _items(self, r, operation: str) -> list:
        return json_of(self.platform, operation, r).get("items", [])

    def _send(self, store: Store, operation: str, method: str, path: str, body: dict) -> dict:
        return self._json(operation, method, f"{api_base(store)}{path}", auth=_auth(store), json=body)

    def _variations(self, store: Store, product: dict) -> dict:
        if product.get("type") != "variable" or not product.get("variations"):
            return product
        r = self._get(store, "list variations", f"/products/{product['id']}/variations", per_page=100)
        return {**product, "variations": self._items(r, "list variations")}

    # =========================================================
    # Fetch
    # =========================================================

    def fetch_records(self, store: Store, kind: str, cursor: str | None = None) -> Page:
        page = int(cursor or 1)
        resource = "orders" if kind == "order" else "products"
        r = self._get(store, f"list {resource}", f"/{resource}", page=page, per_page=PAGE_SIZE)
        items = self._items(r, f"list {resource}")

        if kind == "product":
            items = [self._variations(store, p) for p in items]
        elif kind == "inventory":
            items = [row for p in items for row in self._stock_rows(self._variations(store, p))]

        total_pages = as_int(r.headers.get("X-WP-TotalPages"), page)
        has_more = page < total_pages
        return Page(items, str(page + 1) if has_more else None, has_more)

    def fetch_entity(self, store: Store, kind: str, external_id: str) -> list:
        resource = "orders" if kind == "order" else "products"
        try:
            data = self._json(f"get {resource[:-1]}", "GET", f"{api_base(store)}/{resource}/{external_id}",
                              auth=_auth(store))
        except MarketplaceApiError as e:
            if e.upstream_status == 404:
                return []
            raise
        if not data.get("id"):
            return []
        if kind == "order":
            return [data]
        product = self._variations(store, data)
        return self._stock_rows(product) if kind == "inventory" else [product]

    @staticmethod
    def _stock_rows(product: dict) -> list:
        variations = as_list(product.get("variations"))
        if variations and isinstance(variations[0], dict):
            return [{**v, "parent_id": product.get("id")} for v in variations]
        return [{**product, "parent_id": product.get("id")}]

    # =========================================================
    # Write
    # =========================================================

    def create_record(self, store: Store, kind: str, record: dict) -> str:
        if kind == "inventory":
            raise SyncError("inventory records are pushed, never created")
        resource = "orders" if kind == "order" else "products"
        body = self.from_internal(record, kind)
        variations = body.pop("_variations", [])
        data = self._send(store, f"create {resource[:-1]}", "POST", f"/{resource}", body)
        if not data.get("id"):
            raise MarketplaceApiError(self.platform, f"create {resource[:-1]}", "response carried no id")
        for v in variations:
            self._send(store, "create variation", "POST", f"/products/{data['id']}/variations", v)
        info(f"[woocommerce] created {resource[:-1]} {data['id']} on {store.name}")
        return str(data["id"])

    def update_record(self, store: Store, kind: str, external_id: str, record: dict) -> None:
        if kind == "inventory":
            raise SyncError("inventory records are pushed, never updated")
        if kind == "order":
            body = self.order_from_internal(record)
            body.pop("line_items", None)
            self._send(store, "update order", "PUT", f"/orders/{external_id}", body)
            return

        body = self.product_from_internal(record)
        variations = body.pop("_variations", [])
        self._send(store, "update product", "PUT", f"/products/{external_id}", body)
        existing = self.variant_ids_by_sku(store, external_id)
        for v in variations:
            vid = existing.get(v.get("sku"))
            if vid and vid != str(external_id):
                self._send(store, "update variation", "PUT", f"/products/{external_id}/variations/{vid}", v)

    def push_inventory(self, store: Store, external_product_id: str,
                       external_variant_id: str | None, quantity: int) -> None:
        body = {"manage_stock": True, "stock_quantity": int(quantity)}
        if external_variant_id and str(external_variant_id) != str(external_product_id):
            path = f"/products/{external_product_id}/variations/{external_variant_id}"
        else:
            path = f"/products/{external_product_id}"
        self._send(store, "update stock", "PUT", path, body)
        debug(f"[woocommerce] stock {external_product_id}/{external_variant_id} = {quantity} on {store.name}")

    # =========================================================
    # Webhooks
    # =========================================================

    def verify_webhook_signature(self, raw_body: bytes, headers, secret: str | None) -> bool:
        return verify_hmac_base64(secret, raw_body, header(headers, self.signature_header))

    def parse_webhook(self, headers, payload: dict) -> WebhookEvent:
        topic = header(headers, "X-WC-Webhook-Topic")
        kinds = TOPIC_KINDS.get(topic, ())
        entity_id = as_id(as_dict(payload).get("id")) if kinds else None
        return WebhookEvent(topic, kinds, entity_id, header(headers, "X-WC-Webhook-Source") or None)

    def register_webhook(self, store: Store, topic: str, address: str, secret: str | None = None) -> dict:
        r = self._get(store, "list webhooks", "/webhooks", per_page=100)
        existing = [w for w in self._items(r, "list webhooks") if isinstance(w, dict) and w.get("topic") == topic]
        hit = next((w for w in existing if w.get("delivery_url") == address), None)
        if hit:
            return self._hook(hit, topic, address)

        body = {"name": f"storesync {topic}", "topic": topic, "delivery_url": address, "status": "active"}
        if secret:
            body["secret"] = secret
        if existing:
            data = self._send(store, "update webhook", "PUT", f"/webhooks/{existing[0]['id']}", body)
        else:
            data = self._send(store, "create webhook", "POST", "/webhooks", body)
        return self._hook(data, topic, address)

    @staticmethod
    def _hook(w: dict, topic: str, address: str) -> dict:
        return {"id": as_id(w.get("id")), "topic": topic, "address": w.get("delivery_url") or address, "format": "json"}

    # =========================================================
    # Schema mapping
    # =========================================================

    @staticmethod
    def _prices(v: dict) -> tuple:
        """(price, compare_at_price): a sale price is the selling price, the regular one becomes compare-at."""
        regular, sale = as_price(v.get("regular_price")), as_price(v.get("sale_price"))
        if sale:
            return sale, regular
        return regular or as_price(v.get("price")), None

    def _variant(self, v: dict) -> dict:
        price, compare_at = self._prices(v)
        return {
            "id": as_id(v.get("id")),
            "sku": as_str(v.get("sku")),
            "title": as_str(v.get("name") or ", ".join(as_str(a.get("option")) for a in as_list(v.get("attributes")) if isinstance(a, dict))),
            "price": price,
            "compare_at_price": compare_at,
            "quantity": as_int(v.get("stock_quantity")),
            "barcode": None,
            "options": [a.get("option") for a in as_list(v.get("attributes")) if isinstance(a, dict) and a.get("option")],
        }

    def product_to_internal(self, record: dict) -> dict:
        variations = [v for v in as_list(record.get("variations")) if isinstance(v, dict)]
        variants = [self._variant(v) for v in variations] or [self._variant(record)]
        return {
            "id": as_id(record.get("id")),
            "title": as_str(record.get("name")),
            "description": as_str(record.get("description")),
            "vendor": "",
            "product_type": as_str(next((c.get("name") for c in as_list(record.get("categories")) if isinstance(c, dict)), "")),
            "tags": as_tags(record.get("tags")),
            "status": PRODUCT_STATUS_IN.get(record.get("status"), "active"),
            "handle": as_str(record.get("slug")),
            "variants": variants,
            "images": [i.get("src") for i in as_list(record.get("images")) if isinstance(i, dict) and i.get("src")],
        }

    @staticmethod
    def _price_fields(v: dict) -> dict:
        if v.get("compare_at_price"):
            return {"regular_price": v.get("compare_at_price"), "sale_price": v.get("price") or ""}
        return {"regular_price": v.get("price") or "", "sale_price": ""}

    def product_from_internal(self, record: dict) -> dict:
        variants = [as_dict(v) for v in as_list(record.get("variants"))]
        body = {
            "name": record.get("title"),
            "description": record.get("description", ""),
            "status": PRODUCT_STATUS_OUT.get(record.get("status"), "publish"),
            "tags": [{"name": t} for t in as_list(record.get("tags"))],
            "images": [{"src": src} for src in as_list(record.get("images"))],
        }
        if record.get("handle"):
            body["slug"] = record["handle"]
        if len(variants) > 1:
            body["type"] = "variable"
            body["_variations"] = [
                {"sku": v.get("sku"), "manage_stock": True,
                 "attributes": [{"option": o} for o in as_list(v.get("options"))], **self._price_fields(v)}
                for v in variants
            ]
        else:
            v = variants[0] if variants else {}
            body.update({"type": "simple", "sku": v.get("sku") or "", "manage_stock": True, **self._price_fields(v)})
        return body

    def inventory_to_internal(self, record: dict) -> dict:
        parent = as_id(record.get("parent_id")) or as_id(record.get("id"))
        return {
            "id": as_id(record.get("id")),
            "product_id": parent,
            "variant_id": as_id(record.get("id")),
            "sku": as_str(record.get("sku")),
            "quantity": as_int(record.get("stock_quantity")),
        }

    def order_to_internal(self, record: dict) -> dict:
        billing = as_dict(record.get("billing"))
        shipping = as_dict(record.get("shipping"))
        status = as_str(record.get("status"))
        return {
            "id": as_id(record.get("id")),
            "order_number": as_str(record.get("number") or record.get("id")),
            "email": as_str(billing.get("email")),
            "currency": as_str(record.get("currency")),
            "financial_status": ORDER_FINANCIAL.get(status, status),
            "fulfillment_status": "fulfilled" if status == "completed" else "",
            "payment_method": as_str(record.get("payment_method_title") or record.get("payment_method")),
            "total_price": as_price(record.get("total")),
            "customer": {
                "first_name": as_str(billing.get("first_name")),
                "last_name": as_str(billing.get("last_name")),
                "email": as_str(billing.get("email")),
                "phone": as_str(billing.get("phone")),
            },
            "shipping_address": {
                "first_name": as_str(shipping.get("first_name")),
                "last_name": as_str(shipping.get("last_name")),
                "address1": as_str(shipping.get("address_1")),
                "address2": as_str(shipping.get("address_2")),
                "city": as_str(shipping.get("city")),
                "province": as_str(shipping.get("state")),
                "zip": as_str(shipping.get("postcode")),
                "country": as_str(shipping.get("country")),
            },
            "line_items": [
                {
                    "product_id": as_id(li.get("product_id")),
                    "variant_id": as_id(li.get("variation_id")) if li.get("variation_id") else as_id(li.get("product_id")),
                    "sku": as_str(li.get("sku")),
                    "title": as_str(li.get("name")),
                    "quantity": as_int(li.get("quantity")),
                    "price": as_price(li.get("price")),
                }
                for li in as_list(record.get("line_items")) if isinstance(li, dict)
            ],
            "created_at": as_str(record.get("date_created")),
        }

    def order_from_internal(self, record: dict) -> dict:
        customer = as_dict(record.get("customer"))
        ship = as_dict(record.get("shipping_address"))
        line_items = []
        for li in as_list(record.get("line_items")):
            li = as_dict(li)
            item = {"quantity": as_int(li.get("quantity"), 1)}
            if li.get("product_id"):
                item["product_id"] = as_int(li["product_id"])
            if li.get("variant_id") and li.get("variant_id") != li.get("product_id"):
                item["variation_id"] = as_int(li["variant_id"])
            if not li.get("product_id"):
                item.update({"name": li.get("title") or li.get("sku") or "item", "total": li.get("price") or "0"})
            line_items.append(item)
        return {
            "status": ORDER_STATUS_OUT.get(record.get("financial_status"), "pending"),
            "currency": record.get("currency") or None,
            "set_paid": record.get("financial_status") == "paid",
            "billing": {
                "first_name": customer.get("first_name", ""),
                "last_name": customer.get("last_name", ""),
                "email": record.get("email") or customer.get("email", ""),
                "phone": customer.get("phone", ""),
            },
            "shipping": {
                "first_name": ship.get("first_name", ""),
                "last_name": ship.get("last_name", ""),
                "address_1": ship.get("address1", ""),
                "address_2": ship.get("address2", ""),
                "city": ship.get("city", ""),
                "state": ship.get("province", ""),
                "postcode": ship.get("zip", ""),
                "country": ship.get("country", ""),
            },
            "line_items": line_items,
        }
