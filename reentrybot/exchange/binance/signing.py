import hmac
import hashlib
from urllib.parse import urlencode


def build_query(params: dict) -> str:
    return urlencode(params, doseq=True)


def sign(secret: str, query_string: str) -> str:
    """HMAC-SHA256 hex digest of the query string (Binance SIGNED endpoints)."""
    return hmac.new(
        secret.encode("utf-8"),
        query_string.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def signed_query(secret: str, params: dict) -> str:
    query = build_query(params)
    return f"{query}&signature={sign(secret, query)}"
