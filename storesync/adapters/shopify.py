# storesync/adapters/shopify.py
from urllib.parse import parse_qs, urlparse

from ..clients.http import json_of
from ..config import PAGE_SIZE, SHOPIFY_API_VERSION
from ..errors import MarketplaceApiError, SyncError
from ..repositories import Store
from ..utils.logger import debug, info
from ..utils.security import header, verify_hmac_base64
from .base import (MarketplaceAdapter, Page, WebhookEvent, as_dict, as_id, as_int, as_list, as_price, as_str,
                   as_tags, first)

TOPIC_KINDS = {
    "products/create": ("product", "inventory"),
    "products/update": ("product", "inventory"),
    "inventory_levels/update": ("inventory",),
    "orders/create": ("order",),
    "orders/updated": ("order",),
    "orders/paid": ("order",),
    "orders/cancelled": ("order",),
    "orders/fulfilled": ("order",),
}


def admin_base(store: Store) -> str:
    domain = store.cred("domain") or store.url
    domain = domain.replace("https://", "").replace("http://", "").rstrip("/")
    return f"https://{domain}/admin/api/{SHOPIFY_API_VERSION}"


def rest_headers(store: Store) -> dict:
    return {"Content-Type": "application/json", "X-Shopify-Access-Token": store.cred("access_token", "")}


def _next_page_info(r) -> str | None:
    nxt = (r.links or {}).get("next") or {}
    if not nxt.get("url"):
        return None
    return first(parse_qs(urlparse(nxt["url"]).query).get("page_info", []))


class ShopifyAdapter(MarketplaceAdapter):
    platform = "shopify"
    signature_header = "X-Shopify-Hmac-Sha256"

    # =========================================================
    # Fetch
    # =========================================================

    def fetch_records(self, store: Store, kind: str, cursor: str | None = None) -> Page:
        resource = "orders" if kind == "order" else "products"
        params = {"limit": PAGE_SIZE}
        if cursor:
            params["page_info"] = cursor
        elif kind == "order":
            params["status"] = "any"

        r = self._call(f"list {resource}", "GET", f"{admin_base(store)}/{resource}.json",
                       headers=rest_headers(store), params=params)
        items = json_of(self.platform, f"list {resource}", r).get(resource, [])
        if kind == "inventory":
            items = [row for p in items for row in self._stock_rows(p)]

        nxt = _next_page_info(r)
        return Page(items, nxt, nxt is not None)

    def fetch_entity(self, store: Store, kind: str, external_id: str) -> list:
        resource = "order" if kind == "order" else "product"
        try:
            data = self._json(f"get {resource}", "GET", f"{admin_base(store)}/{resource}s/{external_id}.json",
                              headers=rest_headers(store))
        except MarketplaceApiError as e:
            if e.upstream_status == 404:
                return []
            raise
        item = data.get(resource)
        if not item:
            return []
        if kind == "inventory":
            return self._stock_rows(item)
        return [item]

    @staticmethod
    def _stock_rows(product: dict) -> list:
        rows = []
        for v in as_list(product.get("variants")):
            row = dict(v)
            row.setdefault("product_id", product.get("id"))
            rows.append(row)
        return rows

    # =========================================================
    # Write
    # =========================================================

    def create_record(self, store: Store, kind: str, record: dict) -> str:
        if kind == "inventory":
            raise SyncError("inventory records are pushed, never created")
        resource = "order" if kind == "order" else "product"
        data = self._json(f"create {resource}", "POST", f"{admin_base(store)}/{resource}s.json",
                          headers=rest_headers(store), json={resource: self.from_internal(record, kind)})
        created = as_dict(data.get(resource))
        if not created.get("id"):
            raise MarketplaceApiError(self.platform, f"create {resource}", "response carried no id")
        info(f"[shopify] created {resource} {created['id']} on {store.name}")
        return str(created["id"])

    def update_record(self, store: Store, kind: str, external_id: str, record: dict) -> None:
        if kind == "inventory":
            raise SyncError("inventory records are pushed, never updated")
        if kind == "order":
            payload = self.order_from_internal(record)
            # Shopify only lets a handful of order fields change after creation
            body = {k: payload[k] for k in ("email", "note", "tags", "shipping_address") if payload.get(k) is not None}
            body["id"] = int(external_id) if str(external_id).isdigit() else external_id
            self._call("update order", "PUT", f"{admin_base(store)}/orders/{external_id}.json",
                       headers=rest_headers(store), json={"order": body})
            return

        payload = self.product_from_internal(record)
        existing = self.variant_ids_by_sku(store, external_id)
        for v in payload.get("variants", []):
            vid = existing.get(v.get("sku"))
            if vid:
                v["id"] = int(vid) if str(vid).isdigit() else vid
        payload["id"] = int(external_id) if str(external_id).isdigit() else external_id
        self._call("update product", "PUT", f"{admin_base(store)}/products/{external_id}.json",
                   headers=rest_headers(store), json={"product": payload})

    def _primary_location_id(self, store: Store) -> str | None:
        data = self._json("list locations", "GET", f"{admin_base(store)}/locations.json", headers=rest_headers(store))
        locs = data.get("locations", [])
        if not locs:
            return None
        for loc in locs:
            if loc.get("primary"):
                return str(loc.get("id"))
        return str(locs[0].get("id"))

    def push_inventory(self, store: Store, external_product_id: str,
                       external_variant_id: str | None, quantity: int) -> None:
        variant_id = external_variant_id
        if not variant_id:
            rows = self.fetch_entity(store, "inventory", external_product_id)
            if not rows:
                raise MarketplaceApiError(self.platform, "push inventory", f"product {external_product_id} not found", 404)
            variant_id = rows[0].get("id")

        data = self._json("get variant", "GET", f"{admin_base(store)}/variants/{variant_id}.json",
                          headers=rest_headers(store))
        inventory_item_id = as_dict(data.get("variant")).get("inventory_item_id")
        if not inventory_item_id:
            raise MarketplaceApiError(self.platform, "push inventory", f"variant {variant_id} has no inventory item")

        location_id = store.cred("location_id") or self._primary_location_id(store)
        if not location_id:
            raise MarketplaceApiError(self.platform, "push inventory", "store has no location")

        link = {"inventory_item_id": int(inventory_item_id), "location_id": int(location_id)}
        self._call("connect inventory level", "POST", f"{admin_base(store)}/inventory_levels/connect.json",
                   headers=rest_headers(store), json=link)
        self._call("set inventory level", "POST", f"{admin_base(store)}/inventory_levels/set.json",
                   headers=rest_headers(store), json={**link, "available": int(quantity)})
        debug(f"[shopify] inventory {variant_id} = {quantity} on {store.name}")

    # =========================================================
    # Webhooks
    # =========================================================

    def verify_webhook_signature(self, raw_body: bytes, headers, secret: str | None) -> bool:
        return verify_hmac_base64(secret, raw_body, header(headers, self.signature_header))

    def parse_webhook(self, headers, payload: dict) -> WebhookEvent:
        topic = header(headers, "X-Shopify-Topic")
        kinds = TOPIC_KINDS.get(topic, ())
        entity_id = None
        if kinds and kinds != ("inventory",):
            entity_id = as_id(as_dict(payload).get("id"))
        return WebhookEvent(topic, kinds, entity_id, header(headers, "X-Shopify-Shop-Domain") or None)

    def register_webhook(self, store: Store, topic: str, address: str, secret: str | None = None) -> dict:
        base, headers = admin_base(store), rest_headers(store)
        existing = self._json("list webhooks", "GET", f"{base}/webhooks.json",
                              headers=headers, params={"topic": topic}).get("webhooks", [])
        found = [w for w in existing if w.get("topic") == topic]

        if found:
            hit = next((w for w in found if w.get("address") == address), None)
            if hit:
                return self._hook(hit, topic, address)
            # repoint the first one instead of piling up duplicates when the URL changes
            wid = found[0].get("id")
            data = self._json("update webhook", "PUT", f"{base}/webhooks/{wid}.json", headers=headers,
                              json={"webhook": {"id": wid, "address": address, "format": "json"}})
            return self._hook(data.get("webhook") or found[0], topic, address)

        data = self._json("create webhook", "POST", f"{base}/webhooks.json", headers=headers,
                          json={"webhook": {"topic": topic, "address": address, "format": "json"}})
        return self._hook(data.get("webhook") or {}, topic, address)

    @staticmethod
    def _hook(w: dict, topic: str, address: str) -> dict:
        return {"id": as_id(w.get("id")), "topic": topic, "address": w.get("address") or address,
                "format": w.get("format") or "json"}

    # =========================================================
    # Schema mapping
    # =========================================================

    def product_to_internal(self, record: dict) -> dict:
        variants = []
        for v in as_list(record.get("variants")):
            v = as_dict(v)
            variants.append({
                "id": as_id(v.get("id")),
                "sku": as_str(v.get("sku")),
                "title": as_str(v.get("title")),
                "price": as_price(v.get("price")),
                "compare_at_price": as_price(v.get("compare_at_price")),
                "quantity": as_int(v.get("inventory_quantity")),
                "barcode": v.get("barcode"),
                "options": [v[k] for k in ("option1", "option2", "option3") if v.get(k)],
            })
        return {
            "id": as_id(record.get("id")),
            "title": as_str(record.get("title")),
            "description": as_str(record.get("body_html")),
            "vendor": as_str(record.get("vendor")),
            "product_type": as_str(record.get("product_type")),
            "tags": as_tags(record.get("tags")),
            "status": as_str(record.get("status"), "active"),
            "handle": as_str(record.get("handle")),
            "variants": variants,
            "images": [i.get("src") for i in as_list(record.get("images")) if isinstance(i, dict) and i.get("src")],
        }

    def product_from_internal(self, record: dict) -> dict:
        variants = []
        for v in as_list(record.get("variants")):
            v = as_dict(v)
            out = {
                "sku": v.get("sku"),
                "price": v.get("price"),
                "compare_at_price": v.get("compare_at_price"),
                "barcode": v.get("barcode"),
                "inventory_management": "shopify",
            }
            for i, opt in enumerate(as_list(v.get("options"))[:3], start=1):
                out[f"option{i}"] = opt
            variants.append(out)
        tags = record.get("tags")
        return {
            "title": record.get("title"),
            "body_html": record.get("description", ""),
            "vendor": record.get("vendor"),
            "product_type": record.get("product_type"),
            "tags": ", ".join(tags) if isinstance(tags, list) else (tags or ""),
            "status": record.get("status") or "active",
            "handle": record.get("handle") or None,
            "variants": variants,
            "images": [{"src": src, "position": i} for i, src in enumerate(as_list(record.get("images")), start=1)],
        }

    def inventory_to_internal(self, record: dict) -> dict:
        return {
            "id": as_id(record.get("id")),
            "product_id": as_id(record.get("product_id")),
            "variant_id": as_id(record.get("id")),
            "sku": as_str(record.get("sku")),
            "quantity": as_int(record.get("inventory_quantity", record.get("available"))),
        }

    def order_to_internal(self, record: dict) -> dict:
        customer = as_dict(record.get("customer"))
        return {
            "id": as_id(record.get("id")),
            "order_number": as_str(record.get("name") or record.get("order_number")),
            "email": as_str(record.get("email") or customer.get("email")),
            "currency": as_str(record.get("currency")),
            "financial_status": as_str(record.get("financial_status")),
            "fulfillment_status": as_str(record.get("fulfillment_status")),
            "payment_method": as_str(first(as_list(record.get("payment_gateway_names")), "")),
            "total_price": as_price(record.get("total_price")),
            "customer": {
                "first_name": as_str(customer.get("first_name")),
                "last_name": as_str(customer.get("last_name")),
                "email": as_str(customer.get("email")),
                "phone": as_str(customer.get("phone")),
            },
            "shipping_address": dict(as_dict(record.get("shipping_address"))),
            "line_items": [
                {
                    "product_id": as_id(li.get("product_id")),
                    "variant_id": as_id(li.get("variant_id")),
                    "sku": as_str(li.get("sku")),
                    "title": as_str(li.get("title")),
                    "quantity": as_int(li.get("quantity")),
                    "price": as_price(li.get("price")),
                }
                for li in as_list(record.get("line_items")) if isinstance(li, dict)
            ],
            "created_at": as_str(record.get("created_at")),
        }

    def order_from_internal(self, record: dict) -> dict:
        line_items = []
        for li in as_list(record.get("line_items")):
            li = as_dict(li)
            item = {"quantity": as_int(li.get("quantity"), 1), "price": li.get("price")}
            if li.get("variant_id"):
                item["variant_id"] = int(li["variant_id"]) if str(li["variant_id"]).isdigit() else li["variant_id"]
            else:
                item.update({"title": li.get("title") or li.get("sku") or "item", "sku": li.get("sku")})
            line_items.append(item)
        return {
            "email": record.get("email") or None,
            "currency": record.get("currency") or None,
            "financial_status": record.get("financial_status") or None,
            "customer": as_dict(record.get("customer")) or None,
            "shipping_address": as_dict(record.get("shipping_address")) or None,
            "line_items": line_items,
            "note": f"synced order {record.get('order_number') or record.get('id') or ''}".strip(),
        }
