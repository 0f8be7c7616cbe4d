# storesync/clients/http.py
import requests

from ..config import HTTP_TIMEOUT
from ..errors import MarketplaceApiError


def call(platform: str, operation: str, method: str, url: str, **kwargs) -> requests.Response:
    """One outbound request. Network errors and upstream 4xx/5xx become MarketplaceApiError; no retries here."""
    kwargs.setdefault("timeout", HTTP_TIMEOUT)
    try:
        r = requests.request(method, url, **kwargs)
    except requests.RequestException as e:
        raise MarketplaceApiError(platform, operation, str(e)) from e
    if r.status_code >= 400:
        raise MarketplaceApiError(platform, operation, f"{r.status_code} {r.text[:500]}", r.status_code)
    return r


def json_of(platform: str, operation: str, r: requests.Response) -> dict:
    if not r.content:
        return {}
    try:
        data = r.json()
    except ValueError as e:
        raise MarketplaceApiError(platform, operation, f"invalid JSON response: {e}", r.status_code) from e
    return data if isinstance(data, dict) else {"items": data}
