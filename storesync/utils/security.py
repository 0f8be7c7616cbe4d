import base64, hashlib, hmac


def hmac_sha256(secret: str, raw: bytes) -> bytes:
    return hmac.new(secret.encode(), raw, hashlib.sha256).digest()


def verify_hmac_base64(secret: str | None, raw: bytes, their_hmac: str | None) -> bool:
    if not secret or not their_hmac:
        return False
    expected = base64.b64encode(hmac_sha256(secret, raw or b"")).decode()
    return hmac.compare_digest(expected, their_hmac.strip())


def verify_hmac_hex(secret: str | None, raw: bytes, their_hmac: str | None) -> bool:
    if not secret or not their_hmac:
        return False
    expected = hmac_sha256(secret, raw or b"").hex()
    return hmac.compare_digest(expected, their_hmac.strip().lower())


def header(headers, name: str) -> str:
    """Case-insensitive header lookup over a dict or werkzeug Headers."""
    if hasattr(headers, "get"):
        val = headers.get(name)
        if val is not None:
            return val
    lowered = name.lower()
    for k, v in (headers.items() if hasattr(headers, "items") else []):
        if k.lower() == lowered:
            return v
    return ""
