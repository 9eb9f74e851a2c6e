"""Tests for xsentry.api."""

from __future__ import annotations

import base64
from typing import Any
from unittest.mock import AsyncMock

import aiohttp
import pytest
from aioresponses import aioresponses

from tests.helpers import CLIENT_SECRET, FakeClock, make_auth, request_kwargs
from xsentry._constants import API_BASE, API_PATH, BIZ_HOUSES, UNAUTH_MAC
from xsentry._crypto import compute_mac
from xsentry.api import ApiClient, is_session_invalid
from xsentry.backoff import ServerErrorBackoff
from xsentry.errors import ApiError, AuthFailed, ServerUnavailable, SessionExpired

APP_URL = f"{API_BASE}{API_PATH}"
SHADOW_URL = "https://us-east-1.x-sense-iot.com/things/SBS50ABC123/shadow?name=baseInfo"


def _make_api(
    session: aiohttp.ClientSession,
    clock: FakeClock | None = None,
    **auth_kwargs: Any,
) -> tuple[ApiClient, list[tuple[str, dict[str, Any]]]]:
    clock = clock or FakeClock()
    notes: list[tuple[str, dict[str, Any]]] = []
    api = ApiClient(
        make_auth(session, clock=clock, **auth_kwargs),
        session,
        backoff=ServerErrorBackoff(clock=clock),
        notify=lambda kind, detail: notes.append((kind, detail)),
    )
    return api, notes


class TestIsSessionInvalid:
    def test_codes(self):
        assert is_session_invalid(10000008, "")
        assert is_session_invalid("10000020", "")
        assert not is_session_invalid(500, "boom")

    def test_messages(self):
        assert is_session_invalid(1, "Sorry, another device is logged in to this account")
        assert is_session_invalid(1, "Authorization cannot be empty")


class TestCall:
    async def test_body_and_mac(self):
        with aioresponses() as m:
            m.post(APP_URL, payload={"reCode": 200, "reData": []})
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session)
                await api.call(BIZ_HOUSES, {"utctimestamp": "0"})
            kwargs = request_kwargs(m)

        body = kwargs["json"]
        assert body["bizCode"] == BIZ_HOUSES
        assert body["utctimestamp"] == "0"
        assert body["clientType"] == "1"
        assert body["mac"] == compute_mac({"utctimestamp": "0"}, CLIENT_SECRET)
        assert kwargs["headers"]["Authorization"] == "access-token"

    async def test_unauth_placeholder_mac(self):
        encoded = base64.b64encode(b"abcd" + CLIENT_SECRET + b"!").decode()
        with aioresponses() as m:
            m.post(
                APP_URL,
                payload={
                    "reCode": 200,
                    "reData": {
                        "clientId": "cid",
                        "clientSecret": encoded,
                        "cgtRegion": "eu-central-1",
                        "userPoolId": "eu-central-1_pool",
                    },
                },
            )
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session, logged_in=False)
                info = await api.fetch_client_info()
            kwargs = request_kwargs(m)

        assert kwargs["json"]["mac"] == UNAUTH_MAC
        assert "Authorization" not in kwargs["headers"]
        assert info.secret_bytes == CLIENT_SECRET
        assert api.auth.client_info is info
        assert api.auth.region == "eu-central-1"

    async def test_no_token_raises(self):
        async with aiohttp.ClientSession() as session:
            api, _ = _make_api(session, logged_in=False)
            with pytest.raises(SessionExpired):
                await api.list_houses()

    async def test_vendor_error(self):
        with aioresponses() as m:
            m.post(APP_URL, payload={"reCode": 10000001, "reMsg": "bad house"})
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session)
                with pytest.raises(ApiError) as excinfo:
                    await api.list_stations("H1")

        assert excinfo.value.code == 10000001
        assert "bad house" in excinfo.value.message

    async def test_http_error(self):
        with aioresponses() as m:
            m.post(APP_URL, status=404, body="missing")
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session)
                with pytest.raises(ApiError) as excinfo:
                    await api.list_houses()

        assert excinfo.value.code == 404


class TestServerErrors:
    async def test_tiered_cooldown(self):
        clock = FakeClock()
        with aioresponses() as m:
            m.post(APP_URL, status=502)
            m.post(APP_URL, status=502)
            m.post(APP_URL, payload={"reCode": 200, "reData": []})
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session, clock)

                with pytest.raises(ServerUnavailable) as first:
                    await api.list_houses()
                assert first.value.retry_after == 60

                clock.advance(61)
                with pytest.raises(ServerUnavailable) as second:
                    await api.list_houses()
                assert second.value.retry_after == 120
                assert second.value.code == 502

                # Inside the window: fails without touching the network.
                with pytest.raises(ServerUnavailable) as blocked:
                    await api.list_houses()
                assert blocked.value.code is None

                clock.advance(121)
                assert await api.list_houses() == []
                assert api.backoff.error_count == 0

    async def test_notifies_after_three(self):
        clock = FakeClock()
        with aioresponses() as m:
            for _ in range(3):
                m.post(APP_URL, status=503)
            async with aiohttp.ClientSession() as session:
                api, notes = _make_api(session, clock)
                for _ in range(3):
                    with pytest.raises(ServerUnavailable):
                        await api.list_houses()
                    clock.advance(20 * 60)

        assert len(notes) == 1
        kind, detail = notes[0]
        assert kind == "error"
        assert detail["type"] == "SERVER_ERROR"
        assert detail["errorCode"] == 503
        assert detail["backoffMinutes"] == 5


class TestSessionReplay:
    async def test_session_invalid_replays_once(self):
        with aioresponses() as m:
            m.post(APP_URL, payload={"reCode": 10000008, "reMsg": "token invalid"})
            m.post(APP_URL, payload={"reCode": 200, "reData": [{"houseId": "H1"}]})
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session)
                api.auth.login = AsyncMock()
                houses = await api.list_houses()

        api.auth.login.assert_awaited_once()
        assert houses == [{"houseId": "H1"}]

    async def test_unauthorized_replays_once(self):
        with aioresponses() as m:
            m.post(APP_URL, status=401)
            m.post(APP_URL, payload={"reCode": 200, "reData": []})
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session)
                api.auth.login = AsyncMock()
                assert await api.list_houses() == []

        api.auth.login.assert_awaited_once()

    async def test_second_strike_expires_session(self):
        message = "Your account, another device is logged in"
        with aioresponses() as m:
            m.post(APP_URL, payload={"reCode": 10000008, "reMsg": message})
            m.post(APP_URL, payload={"reCode": 10000008, "reMsg": message})
            async with aiohttp.ClientSession() as session:
                api, notes = _make_api(session)
                api.auth.login = AsyncMock()
                with pytest.raises(SessionExpired):
                    await api.list_houses()

        api.auth.login.assert_awaited_once()
        assert api.auth.access_token is None
        assert notes[-1][1]["type"] == "SESSION_EXPIRED"
        assert notes[-1][1]["message"] == "Another device is logged in to this account."

    async def test_relogin_failure(self):
        with aioresponses() as m:
            m.post(APP_URL, status=401)
            async with aiohttp.ClientSession() as session:
                api, notes = _make_api(session)
                api.auth.login = AsyncMock(side_effect=AuthFailed("nope"))
                with pytest.raises(AuthFailed):
                    await api.list_houses()

        assert api.auth.access_token is None
        assert notes[-1][1]["type"] == "AUTH_FAILED"


class TestDirectoryCalls:
    async def test_list_stations_reads_nested_list(self):
        with aioresponses() as m:
            m.post(
                APP_URL,
                payload={"reCode": 200, "reData": {"stations": [{"stationId": "S1"}]}},
            )
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session)
                stations = await api.list_stations("H1")
            kwargs = request_kwargs(m)

        assert stations == [{"stationId": "S1"}]
        assert kwargs["json"]["houseId"] == "H1"


class TestShadowRequest:
    async def test_signed_get(self):
        with aioresponses() as m:
            m.get(SHADOW_URL, payload={"state": {"reported": {"devs": {}}}})
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session, iot=True)
                status, document = await api.shadow_request(
                    "GET", "SBS50ABC123", "baseInfo", "us-east-1"
                )
            kwargs = request_kwargs(m)

        assert status == 200
        assert document == {"state": {"reported": {"devs": {}}}}
        assert kwargs["headers"]["Authorization"].startswith("AWS4-HMAC-SHA256 ")
        assert kwargs["headers"]["X-Amz-Security-Token"] == "session-token"

    async def test_not_found_is_empty(self):
        with aioresponses() as m:
            m.get(SHADOW_URL, status=404)
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session, iot=True)
                assert await api.shadow_request("GET", "SBS50ABC123", "baseInfo") == (404, {})

    async def test_fetches_credentials_first(self):
        with aioresponses() as m:
            m.post(
                APP_URL,
                payload={
                    "reCode": 200,
                    "reData": {
                        "accessKeyId": "AKID",
                        "secretAccessKey": "secret",
                        "sessionToken": "tok",
                        "expiration": "2099-01-01T00:00:00Z",
                    },
                },
            )
            m.get(SHADOW_URL, payload={"state": {}})
            async with aiohttp.ClientSession() as session:
                api, _ = _make_api(session)
                status, _doc = await api.shadow_request("GET", "SBS50ABC123", "baseInfo")
            first = request_kwargs(m, 0)

        assert status == 200
        assert first["json"]["userName"] == "user@example.com"
        assert api.auth.iot_credentials_valid

    def test_shadow_url(self):
        api = ApiClient(AsyncMock(), AsyncMock())
        assert api.shadow_url("T", None, "eu-west-1") == "https://eu-west-1.x-sense-iot.com/things/T/shadow"
        assert api.shadow_url("T", "baseInfo", "eu-west-1").endswith("/things/T/shadow?name=baseInfo")
