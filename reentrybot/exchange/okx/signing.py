import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode


def iso_timestamp() -> str:
    """OKX wants millisecond ISO-8601 with a trailing Z."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def request_path(path: str, params: Optional[dict] = None) -> str:
    if params:
        return f"{path}?{urlencode(params)}"
    return path


def sign(secret: str, prehash: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), prehash.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def auth_headers(
    api_key: str,
    secret: str,
    passphrase: str,
    method: str,
    path_with_query: str,
    body: Optional[Any] = None,
    timestamp: Optional[str] = None,
) -> Dict[str, str]:
    ts = timestamp or iso_timestamp()
    body_str = json.dumps(body, separators=(",", ":")) if body else ""
    prehash = f"{ts}{method.upper()}{path_with_query}{body_str}"
    return {
        "OK-ACCESS-KEY": api_key,
        "OK-ACCESS-SIGN": sign(secret, prehash),
        "OK-ACCESS-TIMESTAMP": ts,
        "OK-ACCESS-PASSPHRASE": passphrase,
        "Content-Type": "application/json",
    }
