import json

from storesync.config import SyncSettings
from storesync.repositories import InMemoryStoreRepository


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("MAX_CONCURRENT_SYNCS", "0")
    monkeypatch.setenv("RETRY_FAILED_SYNC", "no")
    monkeypatch.setenv("RETRY_DELAY", "not-a-number")
    monkeypatch.setenv("ORDER_SYNC_CRON", "*/5 * * * *")
    settings = SyncSettings.from_env()
    assert settings.max_concurrent_syncs == 1
    assert settings.retry_failed_sync is False
    assert settings.retry_delay == 300
    assert settings.cron["order"] == "*/5 * * * *"


def test_stores_from_file(tmp_path):
    path = tmp_path / "stores.json"
    path.write_text(json.dumps([
        {"id": 1, "type": "shopify", "url": "https://shop.myshopify.com/", "credentials": {"access_token": "x"}},
        {"id": "lz", "name": "Lazada MY", "type": "lazada", "credentials": {"seller_id": "55"}},
    ]))
    stores = InMemoryStoreRepository.from_file(str(path))

    assert stores.find_by_id("1").credentials == {}
    assert stores.require("1").cred("access_token") == "x"
    assert stores.find_by_webhook_key("shopify", "SHOP.myshopify.com").id == "1"
    assert stores.find_by_webhook_key("lazada", "55").name == "Lazada MY"
    assert stores.find_by_webhook_key("shopee", "55") is None
