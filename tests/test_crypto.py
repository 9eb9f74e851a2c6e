"""Tests for xsentry._crypto."""

from __future__ import annotations

import base64
import hashlib
import hmac

from xsentry._crypto import compute_mac, decode_client_secret, hmac_sha256, secret_hash, sha256_hex


class TestHashes:
    def test_sha256_hex_of_empty_string(self):
        assert sha256_hex("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_sha256_hex_accepts_bytes(self):
        assert sha256_hex(b"abc") == sha256_hex("abc")

    def test_hmac_sha256_matches_stdlib(self):
        expected = hmac.new(b"key", b"message", hashlib.sha256).digest()
        assert hmac_sha256(b"key", "message") == expected


class TestDecodeClientSecret:
    def test_strips_wrapper_bytes(self):
        encoded = base64.b64encode(b"abcdSECRET!").decode()
        assert decode_client_secret(encoded) == b"SECRET"


class TestComputeMac:
    def test_values_in_insertion_order(self):
        mac = compute_mac({"houseId": "H1", "utctimestamp": "0"}, b"k")
        assert mac == hashlib.md5(b"H10k").hexdigest()

    def test_value_rendering(self):
        params = {
            "s": "x",
            "n": 5,
            "names": ["a", "b"],
            "nums": [1, 2],
            "obj": {"k": 1},
            "flag": True,
            "none": None,
        }
        expected = hashlib.md5(b'x5ab[1,2]{"k":1}truenullK').hexdigest()
        assert compute_mac(params, b"K") == expected

    def test_empty_params(self):
        assert compute_mac({}, b"secret") == hashlib.md5(b"secret").hexdigest()

    def test_empty_list_is_json(self):
        assert compute_mac({"l": []}, b"") == hashlib.md5(b"[]").hexdigest()


class TestSecretHash:
    def test_matches_cognito_definition(self):
        digest = hmac.new(b"sec", b"user@example.comclient", hashlib.sha256).digest()
        assert secret_hash("user@example.com", "client", "sec") == base64.b64encode(digest).decode()
