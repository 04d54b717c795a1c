"""
Signature Utility Tests

Tests:
1. Canonical form: recursive key sort, array order kept, PHP-style slashes
2. Cryptomus sign/verify, including tampered payloads
3. Fail-closed behavior on malformed input
"""

import base64
import hashlib
import json

from ai_billing.signature import (
    canonicalize,
    canonical_json,
    sign,
    verify,
)

SECRET = "merchant-api-key"


class TestCanonicalForm:
    def test_keys_sorted_recursively(self):
        value = {"b": 1, "a": {"d": 2, "c": 3}}
        assert list(canonicalize(value)) == ["a", "b"]
        assert list(canonicalize(value)["a"]) == ["c", "d"]

    def test_array_order_preserved_and_elements_recursed(self):
        value = {"items": [{"z": 1, "y": 2}, 3, "x"]}
        result = canonicalize(value)
        assert result["items"][1:] == [3, "x"]
        assert list(result["items"][0]) == ["y", "z"]

    def test_canonical_json_is_compact_and_escapes_slashes(self):
        encoded = canonical_json({"url": "https://a.b/c", "n": 1})
        assert encoded == '{"n":1,"url":"https:\\/\\/a.b\\/c"}'

    def test_key_order_does_not_change_signature(self):
        assert sign({"a": 1, "b": 2}, SECRET) == sign({"b": 2, "a": 1}, SECRET)


class TestCryptomusSignature:
    def test_sign_matches_reference_construction(self):
        payload = {"order_id": "ord_1", "amount": "20"}
        encoded = base64.b64encode(b'{"amount":"20","order_id":"ord_1"}').decode()
        expected = hashlib.md5((encoded + SECRET).encode()).hexdigest()
        assert sign(payload, SECRET) == expected

    def test_verify_roundtrip(self):
        payload = {"order_id": "ord_1", "status": "paid", "amount": "20"}
        raw = json.dumps(payload).encode()
        assert verify(raw, sign(payload, SECRET), SECRET) is True

    def test_verify_ignores_embedded_sign_field(self):
        payload = {"order_id": "ord_1", "status": "paid"}
        signature = sign(payload, SECRET)
        raw = json.dumps({**payload, "sign": signature})
        assert verify(raw, signature, SECRET) is True

    def test_tampered_amount_rejected(self):
        payload = {"order_id": "ord_1", "status": "paid", "amount": "20"}
        signature = sign(payload, SECRET)
        tampered = json.dumps({**payload, "amount": "2000"})
        assert verify(tampered, signature, SECRET) is False

    def test_wrong_secret_rejected(self):
        payload = {"order_id": "ord_1"}
        assert verify(json.dumps(payload), sign(payload, SECRET), "other-key") is False

    def test_malformed_input_fails_closed(self):
        assert verify(b"{not json", "abc", SECRET) is False
        assert verify(b"\xff\xfe", "abc", SECRET) is False
        assert verify(b"{}", None, SECRET) is False
        assert verify(b"{}", "", SECRET) is False
        assert verify(b"{}", sign({}, SECRET), "") is False

    def test_signature_comparison_is_case_insensitive(self):
        payload = {"order_id": "ord_1"}
        assert verify(json.dumps(payload), sign(payload, SECRET).upper(), SECRET) is True
