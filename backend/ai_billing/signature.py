"""
Cryptomus webhook signature helpers.

The signature is md5(base64(canonical_json(payload)) + api_key), hex digest.
The canonical form sorts object keys recursively and escapes "/" the
way PHP's json_encode does, since that is what the provider hashes.

Every verify function fails closed: malformed input returns False.
"""

import base64
import hashlib
import hmac
import json
import logging
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

RawPayload = Union[bytes, str]


def canonicalize(value: Any) -> Any:
    """Sort object keys recursively. Array order is preserved."""
    if isinstance(value, dict):
        return {key: canonicalize(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [canonicalize(item) for item in value]
    return value


def canonical_json(value: Any) -> str:
    encoded = json.dumps(canonicalize(value), separators=(",", ":"), ensure_ascii=False)
    return encoded.replace("/", "\\/")


def sign(payload: Any, secret: str) -> str:
    """Cryptomus-style signature over a parsed payload."""
    encoded = base64.b64encode(canonical_json(payload).encode("utf-8")).decode("ascii")
    return hashlib.md5((encoded + secret).encode("utf-8")).hexdigest()


def _to_text(raw: RawPayload) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8")
    return raw


def verify(raw_payload: RawPayload, signature: Optional[str], secret: str) -> bool:
    """
    Recompute the Cryptomus signature over the raw body and compare.

    An embedded ``sign`` field is dropped before hashing because the
    provider computes the hash over the body without it.
    """
    if not signature or not secret:
        return False
    try:
        payload = json.loads(_to_text(raw_payload))
        if isinstance(payload, dict):
            payload.pop("sign", None)
        expected = sign(payload, secret)
        return hmac.compare_digest(expected, signature.strip().lower())
    except (ValueError, TypeError, UnicodeDecodeError) as e:
        logger.warning(f"Signature verification failed on unparseable payload: {e}")
        return False

