import hmac
import hashlib
from urllib.parse import urlencode


def build_query(params: dict) -> str:
    return urlencode(params, doseq=True)


def sign(secret: str, payload: str) -> str:
    """Hex HMAC-SHA256 of `payload`; shared by Binance and MEXC signing."""
    return hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def signed_query(secret: str, params: dict) -> str:
    query = build_query(params)
    return f"{query}&signature={sign(secret, query)}"
