"""Builders shared by the xsentry test modules."""

from __future__ import annotations

import base64
import json
from typing import Any

import aiohttp

from xsentry.auth import AuthSession, ClientInfo

CLIENT_SECRET = b"s3cret"
EMAIL = "user@example.com"


class FakeClock:
    """Manually advanced clock usable wherever a ``clock`` callable is accepted."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_client_info() -> ClientInfo:
    return ClientInfo(
        client_id="client-id",
        client_secret=CLIENT_SECRET.decode(),
        secret_bytes=CLIENT_SECRET,
        region="us-east-1",
        user_pool_id="us-east-1_pool",
    )


def make_fake_jwt(exp: int) -> str:
    """Build a minimal unsigned JWT with the given exp claim (for testing only)."""
    header = base64.urlsafe_b64encode(b'{"alg":"none"}').rstrip(b"=").decode()
    payload_bytes = json.dumps({"exp": exp, "sub": "test"}).encode()
    payload = base64.urlsafe_b64encode(payload_bytes).rstrip(b"=").decode()
    return f"{header}.{payload}.fakesig"


def make_auth(
    session: aiohttp.ClientSession,
    *,
    clock: FakeClock | None = None,
    logged_in: bool = True,
    iot: bool = False,
) -> AuthSession:
    """An AuthSession with client info loaded and, optionally, tokens."""
    auth = AuthSession(EMAIL, "hunter2", session, clock=clock or FakeClock())
    auth.client_info = make_client_info()
    if logged_in:
        auth.access_token = "access-token"
    if iot:
        auth.set_iot_credentials(
            {
                "accessKeyId": "AKIDEXAMPLE",
                "secretAccessKey": "secret",
                "sessionToken": "session-token",
                "expiration": auth._clock() + 7200,
            }
        )
    return auth


def request_kwargs(m: Any, index: int = 0) -> dict[str, Any]:
    """Keyword arguments of the *index*-th request recorded by aioresponses."""
    calls = [call for calls in m.requests.values() for call in calls]
    return calls[index].kwargs
