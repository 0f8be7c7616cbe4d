# storesync/adapters/lazada.py
import hashlib
import hmac
import json
import time

from ..config import PAGE_SIZE
from ..errors import MarketplaceApiError, SyncError
from ..repositories import Store
from ..utils.logger import debug, info
from ..utils.security import header, verify_hmac_hex
from .base import (MarketplaceAdapter, Page, WebhookEvent, as_dict, as_id, as_int, as_list, as_price, as_str,
                   first)

API_BASE = "https://api.lazada.com/rest"
ORDERS_SINCE = "2020-01-01T00:00:00+00:00"

PATHS = {
    "products": "/products/get",
    "product": "/product/item/get",
    "create_product": "/product/create",
    "update_product": "/product/update",
    "stock": "/product/stock/sellable/update",
    "orders": "/orders/get",
    "order": "/order/get",
    "order_items": "/orders/items/get",
}

STATUS_IN = {"Active": "active", "InActive": "draft", "Deleted": "archived"}
STATUS_OUT = {"active": "Active", "draft": "InActive", "archived": "InActive"}


def sign(secret: str, api_path: str, params: dict) -> str:
    """HMAC-SHA256 over the path followed by every key+value in key order, upper-case hex."""
    base = api_path + "".join(f"{k}{params[k]}" for k in sorted(params))
    return hmac.new(secret.encode(), base.encode(), hashlib.sha256).hexdigest().upper()


class LazadaAdapter(MarketplaceAdapter):
    platform = "lazada"
    signature_header = "Authorization"

    # =========================================================
    # HTTP
    # =========================================================

    def _request(self, store: Store, operation: str, api_path: str, method: str = "GET", **params) -> dict:
        signed = {
            "app_key": store.cred("app_key", ""),
            "timestamp": str(int(time.time() * 1000)),
            "sign_method": "sha256",
            "access_token": store.cred("access_token", ""),
            **{k: v for k, v in params.items() if v is not None},
        }
        signed["sign"] = sign(store.cred("app_secret", ""), api_path, signed)

        url = f"{store.cred('api_url') or API_BASE}{api_path}"
        if method == "GET":
            data = self._json(operation, "GET", url, params=signed)
        else:
            data = self._json(operation, method, url, data=signed)

        if str(data.get("code", "0")) != "0":
            raise MarketplaceApiError(self.platform, operation, data.get("message") or f"code {data.get('code')}")
        return data.get("data") if data.get("data") is not None else {}

    @staticmethod
    def _payload(product: dict) -> str:
        return json.dumps({"Request": {"Product": product}})

    # =========================================================
    # Fetch
    # =========================================================

    def fetch_records(self, store: Store, kind: str, cursor: str | None = None) -> Page:
        offset = int(cursor or 0)
        if kind == "order":
            data = self._request(store, "list orders", PATHS["orders"], offset=offset, limit=PAGE_SIZE,
                                 created_after=store.cred("orders_since", ORDERS_SINCE), sort_direction="ASC")
            items = self._with_items(store, as_list(as_dict(data).get("orders")))
            total = as_int(as_dict(data).get("countTotal"))
        else:
            data = self._request(store, "list products", PATHS["products"], offset=offset, limit=PAGE_SIZE,
                                 filter="all")
            items = as_list(as_dict(data).get("products"))
            total = as_int(as_dict(data).get("total_products"))
            if kind == "inventory":
                items = [row for p in items for row in self._stock_rows(p)]

        fetched = offset + PAGE_SIZE
        has_more = fetched < total
        return Page(items, str(fetched) if has_more else None, has_more)

    def _with_items(self, store: Store, orders: list) -> list:
        if not orders:
            return []
        ids = [o.get("order_id") for o in orders if o.get("order_id")]
        data = self._request(store, "list order items", PATHS["order_items"], order_ids=json.dumps(ids))
        by_order = {str(row.get("order_id")): as_list(row.get("order_items")) for row in as_list(data)}
        return [{**o, "items": by_order.get(str(o.get("order_id")), [])} for o in orders]

    def fetch_entity(self, store: Store, kind: str, external_id: str) -> list:
        if kind == "order":
            data = self._request(store, "get order", PATHS["order"], order_id=external_id)
            if not data or not as_dict(data).get("order_id"):
                return []
            return self._with_items(store, [data])

        data = self._request(store, "get product", PATHS["product"], item_id=external_id)
        if not data or not as_dict(data).get("item_id"):
            return []
        return self._stock_rows(data) if kind == "inventory" else [data]

    @staticmethod
    def _stock_rows(product: dict) -> list:
        return [{**as_dict(s), "item_id": product.get("item_id")} for s in as_list(product.get("skus"))]

    # =========================================================
    # Write
    # =========================================================

    def create_record(self, store: Store, kind: str, record: dict) -> str:
        if kind == "inventory":
            raise SyncError("inventory records are pushed, never created")
        if kind == "order":
            self._unsupported("create order", "order creation")
        data = self._request(store, "create product", PATHS["create_product"], method="POST",
                             payload=self._payload(self.product_from_internal(record)))
        item_id = as_id(as_dict(data).get("item_id"))
        if not item_id:
            raise MarketplaceApiError(self.platform, "create product", "response carried no item_id")
        info(f"[lazada] created product {item_id} on {store.name}")
        return item_id

    def update_record(self, store: Store, kind: str, external_id: str, record: dict) -> None:
        if kind == "inventory":
            raise SyncError("inventory records are pushed, never updated")
        if kind == "order":
            self._unsupported("update order", "order updates")

        product = self.product_from_internal(record)
        product["ItemId"] = external_id
        existing = self.variant_ids_by_sku(store, external_id)
        for sku in product["Skus"]["Sku"]:
            sku_id = existing.get(sku.get("SellerSku"))
            if sku_id:
                sku["SkuId"] = sku_id
        self._request(store, "update product", PATHS["update_product"], method="POST",
                      payload=self._payload(product))

    def push_inventory(self, store: Store, external_product_id: str,
                       external_variant_id: str | None, quantity: int) -> None:
        sku = {"ItemId": external_product_id, "SellableQuantity": int(quantity)}
        if external_variant_id:
            sku["SkuId"] = external_variant_id
        self._request(store, "update stock", PATHS["stock"], method="POST",
                      payload=self._payload({"Skus": {"Sku": [sku]}}))
        debug(f"[lazada] stock {external_product_id}/{external_variant_id} = {quantity} on {store.name}")

    # =========================================================
    # Webhooks
    # =========================================================

    def verify_webhook_signature(self, raw_body: bytes, headers, secret: str | None) -> bool:
        return verify_hmac_hex(secret, raw_body, header(headers, self.signature_header))

    def parse_webhook(self, headers, payload: dict) -> WebhookEvent:
        payload = as_dict(payload)
        data = as_dict(payload.get("data"))
        store_key = as_id(payload.get("seller_id"))
        if data.get("trade_order_id"):
            return WebhookEvent("order", ("order",), as_id(data["trade_order_id"]), store_key)
        if data.get("item_id"):
            return WebhookEvent("product", ("product", "inventory"), as_id(data["item_id"]), store_key)
        return WebhookEvent(as_str(payload.get("message_type")), (), None, store_key)

    def register_webhook(self, store: Store, topic: str, address: str, secret: str | None = None) -> dict:
        # push subscriptions live in the Lazada app console; only the local record is kept
        info(f"[lazada] {store.name}: point the app push URL at {address} for {topic}")
        return {"id": None, "topic": topic, "address": address, "format": "json"}

    # =========================================================
    # Schema mapping
    # =========================================================

    def product_to_internal(self, record: dict) -> dict:
        attrs = as_dict(record.get("attributes"))
        skus = [as_dict(s) for s in as_list(record.get("skus"))]
        variants = []
        for s in skus:
            special = as_price(s.get("special_price"))
            regular = as_price(s.get("price"))
            variants.append({
                "id": as_id(s.get("SkuId")),
                "sku": as_str(s.get("SellerSku")),
                "title": as_str(s.get("color_family") or s.get("size") or s.get("SellerSku")),
                "price": special or regular,
                "compare_at_price": regular if special else None,
                "quantity": as_int(s.get("quantity")),
                "barcode": None,
                "options": [s[k] for k in ("color_family", "size") if s.get(k)],
            })
        images = as_list(record.get("images")) or as_list(as_dict(first(skus, {})).get("Images"))
        return {
            "id": as_id(record.get("item_id")),
            "title": as_str(attrs.get("name")),
            "description": as_str(attrs.get("description") or attrs.get("short_description")),
            "vendor": as_str(attrs.get("brand")),
            "product_type": as_str(record.get("primary_category")),
            "tags": [],
            "status": STATUS_IN.get(record.get("status"), "active"),
            "handle": "",
            "variants": variants,
            "images": [i for i in images if isinstance(i, str) and i],
        }

    def product_from_internal(self, record: dict) -> dict:
        skus = []
        for v in as_list(record.get("variants")):
            v = as_dict(v)
            sku = {"SellerSku": v.get("sku"), "quantity": as_int(v.get("quantity"))}
            if v.get("compare_at_price"):
                sku.update({"price": v.get("compare_at_price"), "special_price": v.get("price")})
            else:
                sku["price"] = v.get("price")
            skus.append(sku)
        return {
            "PrimaryCategory": record.get("product_type") or None,
            "Images": {"Image": as_list(record.get("images"))},
            "Attributes": {
                "name": record.get("title"),
                "description": record.get("description", ""),
                "brand": record.get("vendor") or "No Brand",
                "status": STATUS_OUT.get(record.get("status"), "Active"),
            },
            "Skus": {"Sku": skus},
        }

    def inventory_to_internal(self, record: dict) -> dict:
        return {
            "id": as_id(record.get("SkuId")),
            "product_id": as_id(record.get("item_id")),
            "variant_id": as_id(record.get("SkuId")),
            "sku": as_str(record.get("SellerSku")),
            "quantity": as_int(record.get("quantity")),
        }

    def order_to_internal(self, record: dict) -> dict:
        ship = as_dict(record.get("address_shipping"))
        items = [as_dict(i) for i in as_list(record.get("items"))]
        return {
            "id": as_id(record.get("order_id")),
            "order_number": as_str(record.get("order_number")),
            "email": "",
            "currency": as_str(as_dict(first(items, {})).get("currency")),
            "financial_status": as_str(first(as_list(record.get("statuses")), "")),
            "fulfillment_status": "",
            "payment_method": as_str(record.get("payment_method")),
            "total_price": as_price(record.get("price")),
            "customer": {
                "first_name": as_str(record.get("customer_first_name")),
                "last_name": as_str(record.get("customer_last_name")),
                "email": "",
                "phone": as_str(ship.get("phone")),
            },
            "shipping_address": {
                "first_name": as_str(ship.get("first_name")),
                "last_name": as_str(ship.get("last_name")),
                "address1": as_str(ship.get("address1")),
                "address2": as_str(ship.get("address2")),
                "city": as_str(ship.get("city")),
                "province": as_str(ship.get("address3")),
                "zip": as_str(ship.get("post_code")),
                "country": as_str(ship.get("country")),
            },
            # one Lazada order item per unit
            "line_items": [
                {
                    "product_id": as_id(i.get("product_id")),
                    "variant_id": as_id(i.get("sku_id")),
                    "sku": as_str(i.get("sku")),
                    "title": as_str(i.get("name")),
                    "quantity": 1,
                    "price": as_price(i.get("item_price")),
                }
                for i in items
            ],
            "created_at": as_str(record.get("created_at")),
        }

    def order_from_internal(self, record: dict) -> dict:
        return {
            "order_number": record.get("order_number"),
            "price": record.get("total_price"),
            "items": [{"sku": as_dict(li).get("sku"), "quantity": as_int(as_dict(li).get("quantity"), 1)}
                      for li in as_list(record.get("line_items"))],
        }
