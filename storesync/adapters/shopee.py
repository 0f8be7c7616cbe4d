# storesync/adapters/shopee.py
import hashlib
import hmac
import time

from ..config import PAGE_SIZE
from ..errors import MarketplaceApiError, SyncError
from ..repositories import Store
from ..utils.logger import debug, info
from ..utils.security import header, verify_hmac_hex
from .base import (MarketplaceAdapter, Page, WebhookEvent, as_dict, as_id, as_int, as_list, as_price, as_str,
                   first)

API_BASE = "https://partner.shopeemobile.com"
ORDER_WINDOW = 15 * 24 * 3600  # get_order_list refuses wider time ranges
DETAIL_BATCH = 50

PATHS = {
    "items": "/api/v2/product/get_item_list",
    "item_info": "/api/v2/product/get_item_base_info",
    "models": "/api/v2/product/get_model_list",
    "add_item": "/api/v2/product/add_item",
    "update_item": "/api/v2/product/update_item",
    "stock": "/api/v2/product/update_stock",
    "orders": "/api/v2/order/get_order_list",
    "order_detail": "/api/v2/order/get_order_detail",
}

STATUS_IN = {"NORMAL": "active", "UNLIST": "draft", "BANNED": "archived", "DELETED": "archived"}
STATUS_OUT = {"active": "NORMAL", "draft": "UNLIST", "archived": "UNLIST"}
ORDER_FINANCIAL = {"UNPAID": "pending", "READY_TO_SHIP": "paid", "PROCESSED": "paid", "SHIPPED": "paid",
                   "COMPLETED": "paid", "IN_CANCEL": "pending", "CANCELLED": "voided", "TO_RETURN": "refunded"}


def sign(partner_key: str, partner_id, path: str, timestamp: int, access_token: str = "", shop_id="") -> str:
    base = f"{partner_id}{path}{timestamp}{access_token}{shop_id}"
    return hmac.new(partner_key.encode(), base.encode(), hashlib.sha256).hexdigest()


def _stock(entry: dict) -> int:
    return as_int(as_dict(as_dict(entry.get("stock_info_v2")).get("summary_info")).get("total_available_stock"))


def _price(entry: dict) -> tuple:
    info_ = as_dict(first(as_list(entry.get("price_info")), {}))
    current, original = as_price(info_.get("current_price")), as_price(info_.get("original_price"))
    return current or original, original if current and original and original != current else None


class ShopeeAdapter(MarketplaceAdapter):
    platform = "shopee"
    signature_header = "Authorization"

    # =========================================================
    # HTTP
    # =========================================================

    def _request(self, store: Store, operation: str, path: str, method: str = "GET", body: dict | None = None,
                 **params) -> dict:
        ts = int(time.time())
        partner_id = store.cred("partner_id", "")
        access_token = store.cred("access_token", "")
        shop_id = store.cred("shop_id", "")
        query = {
            "partner_id": partner_id,
            "timestamp": ts,
            "access_token": access_token,
            "shop_id": shop_id,
            "sign": sign(store.cred("partner_key", ""), partner_id, path, ts, access_token, shop_id),
            **{k: v for k, v in params.items() if v is not None},
        }
        url = f"{store.cred('api_url') or API_BASE}{path}"
        if method == "GET":
            data = self._json(operation, "GET", url, params=query)
        else:
            data = self._json(operation, method, url, params=query, json=body or {})

        if data.get("error"):
            raise MarketplaceApiError(self.platform, operation, f"{data['error']}: {data.get('message', '')}")
        return as_dict(data.get("response"))

    # =========================================================
    # Fetch
    # =========================================================

    def fetch_records(self, store: Store, kind: str, cursor: str | None = None) -> Page:
        if kind == "order":
            now = int(time.time())
            data = self._request(store, "list orders", PATHS["orders"], time_range_field="create_time",
                                 time_from=now - ORDER_WINDOW, time_to=now, page_size=PAGE_SIZE,
                                 cursor=cursor or "")
            sns = [o.get("order_sn") for o in as_list(data.get("order_list")) if o.get("order_sn")]
            more = bool(data.get("more"))
            return Page(self._order_details(store, sns), data.get("next_cursor") if more else None, more)

        data = self._request(store, "list items", PATHS["items"], offset=int(cursor or 0), page_size=PAGE_SIZE,
                             item_status="NORMAL")
        ids = [i.get("item_id") for i in as_list(data.get("item")) if i.get("item_id")]
        items = self._item_details(store, ids)
        if kind == "inventory":
            items = [row for p in items for row in self._stock_rows(p)]
        more = bool(data.get("has_next_page"))
        return Page(items, str(data.get("next_offset")) if more else None, more)

    def _item_details(self, store: Store, ids: list) -> list:
        items = []
        for i in range(0, len(ids), DETAIL_BATCH):
            batch = ids[i:i + DETAIL_BATCH]
            data = self._request(store, "get item info", PATHS["item_info"],
                                 item_id_list=",".join(str(x) for x in batch))
            items.extend(as_dict(x) for x in as_list(data.get("item_list")))
        for item in items:
            if item.get("has_model"):
                models = self._request(store, "list models", PATHS["models"], item_id=item["item_id"])
                item["models"] = as_list(models.get("model"))
        return items

    def _order_details(self, store: Store, order_sns: list) -> list:
        orders = []
        for i in range(0, len(order_sns), DETAIL_BATCH):
            data = self._request(store, "get order detail", PATHS["order_detail"],
                                 order_sn_list=",".join(order_sns[i:i + DETAIL_BATCH]),
                                 response_optional_fields="buyer_username,recipient_address,item_list,"
                                                          "total_amount,payment_method,currency")
            orders.extend(as_dict(o) for o in as_list(data.get("order_list")))
        return orders

    def fetch_entity(self, store: Store, kind: str, external_id: str) -> list:
        if kind == "order":
            return self._order_details(store, [str(external_id)])
        items = self._item_details(store, [external_id])
        if kind == "inventory":
            return [row for p in items for row in self._stock_rows(p)]
        return items

    @staticmethod
    def _stock_rows(item: dict) -> list:
        models = as_list(item.get("models"))
        if not models:
            return [{**item, "model_id": None}]
        return [{**as_dict(m), "item_id": item.get("item_id")} for m in models]

    # =========================================================
    # Write
    # =========================================================

    def create_record(self, store: Store, kind: str, record: dict) -> str:
        if kind == "inventory":
            raise SyncError("inventory records are pushed, never created")
        if kind == "order":
            self._unsupported("create order", "order creation")
        data = self._request(store, "add item", PATHS["add_item"], method="POST",
                             body=self.product_from_internal(record))
        item_id = as_id(data.get("item_id"))
        if not item_id:
            raise MarketplaceApiError(self.platform, "add item", "response carried no item_id")
        info(f"[shopee] created item {item_id} on {store.name}")
        return item_id

    def update_record(self, store: Store, kind: str, external_id: str, record: dict) -> None:
        if kind == "inventory":
            raise SyncError("inventory records are pushed, never updated")
        if kind == "order":
            self._unsupported("update order", "order updates")
        body = self.product_from_internal(record)
        # stock moves through update_stock only
        body.pop("seller_stock", None)
        body["item_id"] = as_int(external_id)
        self._request(store, "update item", PATHS["update_item"], method="POST", body=body)

    def push_inventory(self, store: Store, external_product_id: str,
                       external_variant_id: str | None, quantity: int) -> None:
        entry = {"seller_stock": [{"stock": int(quantity)}]}
        if external_variant_id and str(external_variant_id) != str(external_product_id):
            entry["model_id"] = as_int(external_variant_id)
        self._request(store, "update stock", PATHS["stock"], method="POST",
                      body={"item_id": as_int(external_product_id), "stock_list": [entry]})
        debug(f"[shopee] stock {external_product_id}/{external_variant_id} = {quantity} on {store.name}")

    # =========================================================
    # Webhooks
    # =========================================================

    def verify_webhook_signature(self, raw_body: bytes, headers, secret: str | None) -> bool:
        return verify_hmac_hex(secret, raw_body, header(headers, self.signature_header))

    def parse_webhook(self, headers, payload: dict) -> WebhookEvent:
        payload = as_dict(payload)
        data = as_dict(payload.get("data"))
        store_key = as_id(payload.get("shop_id"))
        topic = as_str(payload.get("code"))
        if data.get("ordersn") or data.get("order_sn"):
            return WebhookEvent(topic, ("order",), as_id(data.get("ordersn") or data.get("order_sn")), store_key)
        if data.get("item_id"):
            return WebhookEvent(topic, ("product", "inventory"), as_id(data["item_id"]), store_key)
        return WebhookEvent(topic, (), None, store_key)

    def register_webhook(self, store: Store, topic: str, address: str, secret: str | None = None) -> dict:
        # push is configured per partner app in the Shopee console
        info(f"[shopee] {store.name}: set the partner push URL to {address} for {topic}")
        return {"id": None, "topic": topic, "address": address, "format": "json"}

    # =========================================================
    # Schema mapping
    # =========================================================

    def product_to_internal(self, record: dict) -> dict:
        models = [as_dict(m) for m in as_list(record.get("models"))]
        if models:
            variants = []
            for m in models:
                price, compare_at = _price(m)
                variants.append({
                    "id": as_id(m.get("model_id")),
                    "sku": as_str(m.get("model_sku")),
                    "title": as_str(m.get("model_name") or m.get("model_sku")),
                    "price": price,
                    "compare_at_price": compare_at,
                    "quantity": _stock(m),
                    "barcode": None,
                    "options": [],
                })
        else:
            price, compare_at = _price(record)
            variants = [{
                "id": as_id(record.get("item_id")),
                "sku": as_str(record.get("item_sku")),
                "title": as_str(record.get("item_name")),
                "price": price,
                "compare_at_price": compare_at,
                "quantity": _stock(record),
                "barcode": None,
                "options": [],
            }]
        return {
            "id": as_id(record.get("item_id")),
            "title": as_str(record.get("item_name")),
            "description": as_str(record.get("description")),
            "vendor": as_str(as_dict(record.get("brand")).get("original_brand_name")),
            "product_type": as_str(record.get("category_id")),
            "tags": [],
            "status": STATUS_IN.get(record.get("item_status"), "active"),
            "handle": "",
            "variants": variants,
            "images": [u for u in as_list(as_dict(record.get("image")).get("image_url_list")) if u],
        }

    def product_from_internal(self, record: dict) -> dict:
        v = as_dict(first(as_list(record.get("variants")), {}))
        body = {
            "item_name": record.get("title"),
            "description": record.get("description", ""),
            "item_sku": v.get("sku") or "",
            "original_price": float(v.get("compare_at_price") or v.get("price") or 0),
            "seller_stock": [{"stock": as_int(v.get("quantity"))}],
            "item_status": STATUS_OUT.get(record.get("status"), "NORMAL"),
        }
        if record.get("product_type") and str(record["product_type"]).isdigit():
            body["category_id"] = int(record["product_type"])
        return body

    def inventory_to_internal(self, record: dict) -> dict:
        model_id = as_id(record.get("model_id"))
        return {
            "id": model_id or as_id(record.get("item_id")),
            "product_id": as_id(record.get("item_id")),
            "variant_id": model_id or as_id(record.get("item_id")),
            "sku": as_str(record.get("model_sku") if model_id else record.get("item_sku")),
            "quantity": _stock(record),
        }

    def order_to_internal(self, record: dict) -> dict:
        addr = as_dict(record.get("recipient_address"))
        name = as_str(addr.get("name"))
        first_name, _, last_name = name.partition(" ")
        status = as_str(record.get("order_status"))
        return {
            "id": as_id(record.get("order_sn")),
            "order_number": as_str(record.get("order_sn")),
            "email": "",
            "currency": as_str(record.get("currency")),
            "financial_status": ORDER_FINANCIAL.get(status, status.lower()),
            "fulfillment_status": "fulfilled" if status in ("SHIPPED", "COMPLETED") else "",
            "payment_method": as_str(record.get("payment_method")),
            "total_price": as_price(record.get("total_amount")),
            "customer": {"first_name": first_name, "last_name": last_name, "email": "",
                         "phone": as_str(addr.get("phone")), "username": as_str(record.get("buyer_username"))},
            "shipping_address": {
                "first_name": first_name,
                "last_name": last_name,
                "address1": as_str(addr.get("full_address")),
                "address2": "",
                "city": as_str(addr.get("city")),
                "province": as_str(addr.get("state")),
                "zip": as_str(addr.get("zipcode")),
                "country": as_str(addr.get("region")),
            },
            "line_items": [
                {
                    "product_id": as_id(i.get("item_id")),
                    "variant_id": as_id(i.get("model_id")) if i.get("model_id") else as_id(i.get("item_id")),
                    "sku": as_str(i.get("model_sku") or i.get("item_sku")),
                    "title": as_str(i.get("item_name")),
                    "quantity": as_int(i.get("model_quantity_purchased")),
                    "price": as_price(i.get("model_discounted_price") or i.get("model_original_price")),
                }
                for i in (as_dict(x) for x in as_list(record.get("item_list")))
            ],
            "created_at": as_str(record.get("create_time")),
        }

    def order_from_internal(self, record: dict) -> dict:
        return {
            "order_sn": record.get("order_number"),
            "total_amount": record.get("total_price"),
            "item_list": [{"item_sku": as_dict(li).get("sku"),
                           "model_quantity_purchased": as_int(as_dict(li).get("quantity"), 1)}
                          for li in as_list(record.get("line_items"))],
        }
