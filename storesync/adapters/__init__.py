from ..errors import NotFoundError
from .base import KINDS, MarketplaceAdapter, Page, WebhookEvent

_REGISTRY: dict[str, MarketplaceAdapter] = {}


def register_adapter(adapter: MarketplaceAdapter) -> MarketplaceAdapter:
    _REGISTRY[adapter.platform] = adapter
    return adapter


def unregister_adapter(platform: str):
    _REGISTRY.pop(platform, None)


def get_adapter(platform: str) -> MarketplaceAdapter:
    adapter = _REGISTRY.get((platform or "").lower())
    if adapter is None:
        raise NotFoundError(f"unsupported store type: {platform}")
    return adapter


def platforms() -> list[str]:
    return sorted(_REGISTRY)


def register_default_adapters():
    from .lazada import LazadaAdapter
    from .shopee import ShopeeAdapter
    from .shopify import ShopifyAdapter
    from .woocommerce import WooCommerceAdapter

    for cls in (ShopifyAdapter, LazadaAdapter, ShopeeAdapter, WooCommerceAdapter):
        if cls.platform not in _REGISTRY:
            register_adapter(cls())


register_default_adapters()

__all__ = [
    "KINDS",
    "MarketplaceAdapter",
    "Page",
    "WebhookEvent",
    "get_adapter",
    "platforms",
    "register_adapter",
    "register_default_adapters",
    "unregister_adapter",
]
