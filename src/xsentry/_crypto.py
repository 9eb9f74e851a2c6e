"""Internal cryptographic helpers for X-Sense API and AWS authentication."""

from __future__ import annotations

import base64
import json

from Crypto.Hash import HMAC, MD5, SHA256


def hmac_sha256(key: bytes, msg: str | bytes) -> bytes:
    """Raw HMAC-SHA256 digest (one link of the SigV4 key chain)."""
    if isinstance(msg, str):
        msg = msg.encode("utf-8")
    return HMAC.new(key, msg, digestmod=SHA256).digest()


def sha256_hex(data: str | bytes) -> str:
    """Hex SHA-256 of *data* (UTF-8 encoded when given a string)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return SHA256.new(data).hexdigest()


def decode_client_secret(encoded: str) -> bytes:
    """Decode the client secret returned by the client-info call.

    The server wraps the secret: base64-decode, then drop the first four
    bytes and the trailing byte.
    """
    return base64.b64decode(encoded)[4:-1]


def _mac_value(value: object) -> list[str]:
    if isinstance(value, list):
        if value and isinstance(value[0], str):
            return [str(v) for v in value]
        return [json.dumps(value, separators=(",", ":"))]
    if isinstance(value, dict):
        return [json.dumps(value, separators=(",", ":"))]
    if isinstance(value, bool):
        return ["true" if value else "false"]
    if value is None:
        return ["null"]
    return [str(value)]


def compute_mac(params: dict[str, object], secret: bytes) -> str:
    """MAC for an authenticated API call.

    Concatenates the parameter values in insertion order (string lists are
    flattened, other containers are compact JSON), appends the raw client
    secret bytes and returns the MD5 hex digest.
    """
    values: list[str] = []
    for value in params.values():
        values.extend(_mac_value(value))
    return MD5.new("".join(values).encode("utf-8") + secret).hexdigest()


def secret_hash(username: str, client_id: str, client_secret: str) -> str:
    """Cognito SECRET_HASH: base64(HMAC-SHA256(secret, username + client_id))."""
    digest = hmac_sha256(client_secret.encode("utf-8"), username + client_id)
    return base64.b64encode(digest).decode("ascii")
