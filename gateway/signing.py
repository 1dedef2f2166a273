"""HMAC-SHA256 signing used by payment requests and webhooks."""
import hashlib
import hmac
import json
from typing import Any, Dict, Iterable

# Fields signed when creating a payment request, in the order the provider expects
PAYMENT_REQUEST_FIELDS = ('amount', 'cancelUrl', 'description', 'orderCode', 'returnUrl')

def _stringify(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return str(value)

def canonical_string(data: Dict[str, Any], fields: Iterable[str] = None) -> str:
    """Join ``key=value`` pairs with ``&``, keys sorted alphabetically."""
    keys = sorted(fields if fields is not None else data.keys())
    return '&'.join(f"{key}={_stringify(data.get(key))}" for key in keys)

def sign(data: Dict[str, Any], checksum_key: str, fields: Iterable[str] = None) -> str:
    return hmac.new(
        checksum_key.encode('utf-8'),
        canonical_string(data, fields).encode('utf-8'),
        hashlib.sha256
    ).hexdigest()

def verify(data: Dict[str, Any], signature: str, checksum_key: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign(data, checksum_key), signature.lower())
