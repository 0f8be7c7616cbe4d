# storesync/repositories.py
#
# Collaborator interfaces. Stores and local product/order records are owned
# elsewhere; the engine only reads stores and pushes fetched records back.
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from pathlib import Path

from .errors import NotFoundError


@dataclass(frozen=True)
class Store:
    id: str
    name: str
    type: str  # shopify | lazada | shopee | woocommerce
    url: str = ""
    credentials: dict = field(default_factory=dict, repr=False)

    def cred(self, key: str, default=None):
        return self.credentials.get(key, default)

    def public(self) -> "Store":
        return replace(self, credentials={})


class StoreRepository(ABC):
    @abstractmethod
    def find_by_id(self, store_id: str) -> Store | None:
        """Store without credentials."""

    @abstractmethod
    def find_by_id_with_credentials(self, store_id: str) -> Store | None: ...

    @abstractmethod
    def find_by_webhook_key(self, store_type: str, key: str) -> Store | None:
        """Resolve the store a webhook came from (shop domain, seller id, shop id, site url)."""

    def require(self, store_id: str) -> Store:
        store = self.find_by_id_with_credentials(store_id)
        if not store:
            raise NotFoundError(f"store {store_id} not found")
        return store


def _norm_key(value) -> str:
    s = str(value or "").strip().lower()
    for prefix in ("https://", "http://"):
        if s.startswith(prefix):
            s = s[len(prefix):]
    return s.rstrip("/")


class InMemoryStoreRepository(StoreRepository):
    def __init__(self, stores: list[Store] | None = None):
        self._stores: dict[str, Store] = {s.id: s for s in (stores or [])}

    @classmethod
    def from_file(cls, path: str) -> "InMemoryStoreRepository":
        """Load ``[{"id", "name", "type", "url", "credentials": {...}}, ...]``."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        stores = [
            Store(
                id=str(item["id"]),
                name=item.get("name") or str(item["id"]),
                type=item["type"],
                url=item.get("url", ""),
                credentials=item.get("credentials") or {},
            )
            for item in data
        ]
        return cls(stores)

    def add(self, store: Store) -> Store:
        self._stores[store.id] = store
        return store

    def all(self) -> list[Store]:
        return [s.public() for s in self._stores.values()]

    def find_by_id(self, store_id: str) -> Store | None:
        store = self._stores.get(str(store_id))
        return store.public() if store else None

    def find_by_id_with_credentials(self, store_id: str) -> Store | None:
        return self._stores.get(str(store_id))

    def find_by_webhook_key(self, store_type: str, key: str) -> Store | None:
        wanted = _norm_key(key)
        if not wanted:
            return None
        for store in self._stores.values():
            if store.type != store_type:
                continue
            candidates = [store.url, store.cred("domain"), store.cred("seller_id"), store.cred("shop_id")]
            if any(_norm_key(c) == wanted for c in candidates if c):
                return store
        return None


class EntityRepository(ABC):
    """Local persistence of products, variants, inventory and orders."""

    @abstractmethod
    def upsert(self, store_id: str, kind: str, record: dict) -> None: ...


class NullEntityRepository(EntityRepository):
    def upsert(self, store_id: str, kind: str, record: dict) -> None:
        return None


class InMemoryEntityRepository(EntityRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self.records: dict[tuple[str, str, str], dict] = {}

    def upsert(self, store_id: str, kind: str, record: dict) -> None:
        with self._lock:
            self.records[(str(store_id), kind, str(record.get("id")))] = dict(record)

    def get(self, store_id: str, kind: str, entity_id: str) -> dict | None:
        return self.records.get((str(store_id), kind, str(entity_id)))
