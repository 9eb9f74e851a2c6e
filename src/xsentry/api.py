"""REST transport for the X-Sense app endpoint and the IoT shadow endpoint.

Every directory call is a ``POST`` to a single URL whose body carries the
parameters flattened at the root plus a business code and a per-call MAC.
:meth:`ApiClient.call` layers the failure policy on top:

* HTTP 5xx opens a tiered cool-down (:class:`~xsentry.backoff.ServerErrorBackoff`)
  and calls inside the window fail fast with :class:`~xsentry.errors.ServerUnavailable`.
* HTTP 401 or a session-invalid result code triggers exactly one re-login
  and replay; a second failure raises :class:`~xsentry.errors.SessionExpired`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

import aiohttp

from xsentry._constants import (
    ANOTHER_DEVICE_MESSAGE,
    API_BASE,
    API_PATH,
    APP_CODE,
    APP_VERSION,
    BIZ_AWS_TOKENS,
    BIZ_CLIENT_INFO,
    BIZ_HOUSES,
    BIZ_STATIONS,
    CLIENT_TYPE,
    HTTP_TIMEOUT,
    IOT_BASE,
    IOT_SERVICE,
    RESULT_OK,
    SESSION_INVALID_CODES,
    SESSION_INVALID_MESSAGES,
    UNAUTH_MAC,
)
from xsentry._crypto import compute_mac
from xsentry.auth import AuthSession, ClientInfo
from xsentry.backoff import ServerErrorBackoff
from xsentry.errors import (
    ApiError,
    AuthFailed,
    ServerUnavailable,
    SessionExpired,
    SigningError,
)

_LOGGER = logging.getLogger(__name__)

MAX_REPLAYS = 1

Notifier = Callable[[str, dict[str, Any]], None]


def is_session_invalid(code: object, message: str) -> bool:
    """Whether a vendor result means the session was invalidated server-side."""
    if str(code) in SESSION_INVALID_CODES:
        return True
    return any(marker in message for marker in SESSION_INVALID_MESSAGES)


class ApiClient:
    """Signed, MAC'd and retried calls against the X-Sense cloud.

    Args:
        auth: Credential holder; re-logins happen through it.
        session: Shared HTTP session.
        backoff: 5xx cool-down tracker (a fresh one by default).
        notify: Receives ``("error", detail)`` notifications for the user.
    """

    def __init__(
        self,
        auth: AuthSession,
        session: aiohttp.ClientSession,
        *,
        backoff: ServerErrorBackoff | None = None,
        notify: Notifier | None = None,
    ) -> None:
        self.auth = auth
        self._session = session
        self.backoff = backoff or ServerErrorBackoff()
        self._notify = notify or (lambda kind, detail: None)

    # ------------------------------------------------------------------
    # App endpoint
    # ------------------------------------------------------------------

    async def call(
        self,
        biz_code: str,
        params: dict[str, Any] | None = None,
        *,
        unauth: bool = False,
        attempt: int = 0,
    ) -> dict[str, Any]:
        """Invoke one business code and return the decoded response.

        Args:
            biz_code: Vendor business code (e.g. ``"102007"``).
            params: Call parameters, flattened into the body root.
            unauth: Use the placeholder MAC and no ``Authorization`` header.
            attempt: Replay counter; callers leave it at ``0``.

        Raises:
            ServerUnavailable: On HTTP 5xx or inside the cool-down window.
            SessionExpired: When no token is held or the replay also fails.
            AuthFailed: When the re-login before the replay fails.
            ApiError: On other HTTP statuses or vendor result codes.
        """
        params = dict(params or {})
        headers = {"Content-Type": "application/json"}
        if unauth:
            mac = UNAUTH_MAC
        else:
            if not self.auth.access_token:
                raise SessionExpired("No access token available, log in again")
            if self.auth.token_expiring():
                _LOGGER.info("Access token about to expire, logging in again")
                await self.auth.login()
            info = self.auth.client_info
            if info is None:
                raise AuthFailed("Client info not loaded")
            mac = compute_mac(params, info.secret_bytes)
            headers["Authorization"] = str(self.auth.access_token)

        self.backoff.check()

        body = {
            **params,
            "bizCode": biz_code,
            "appCode": APP_CODE,
            "clientType": CLIENT_TYPE,
            "version": APP_VERSION,
            "mac": mac,
        }
        _LOGGER.debug("Calling bizCode %s with %s", biz_code, params)

        async with self._session.post(
            f"{API_BASE}{API_PATH}",
            json=body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
        ) as resp:
            status = resp.status
            if 500 <= status < 600:
                minutes = self.backoff.record_failure(status)
                if self.backoff.should_notify:
                    self._notify(
                        "error",
                        {
                            "type": "SERVER_ERROR",
                            "message": (
                                f"X-Sense server temporarily unavailable ({status}). "
                                f"Automatic retry in {minutes} minutes."
                            ),
                            "errorCode": status,
                            "backoffMinutes": minutes,
                        },
                    )
                raise ServerUnavailable(
                    f"Server error {status}: {resp.reason}. Retry in {minutes}min",
                    code=status,
                    retry_after=minutes * 60,
                )
            if resp.ok:
                self.backoff.record_success()
            if status == 401:
                data: dict[str, Any] = {}
            elif not resp.ok:
                text = await resp.text()
                _LOGGER.error("HTTP error %s for bizCode %s: %s", status, biz_code, text)
                raise ApiError(f"HTTP {status}: {resp.reason}", code=status)
            else:
                decoded = await resp.json(content_type=None)
                data = decoded if isinstance(decoded, dict) else {}

        if status == 401:
            return await self._replay(biz_code, params, unauth, attempt, 401, "Unauthorized")

        code = data.get("reCode", data.get("code"))
        if code is None or str(code) in RESULT_OK:
            return data
        message = str(data.get("reMsg") or data.get("msg") or data.get("message") or "Unknown error")
        if is_session_invalid(code, message):
            return await self._replay(biz_code, params, unauth, attempt, code, message)
        raise ApiError(f"API error {code}: {message}", code=code)

    async def _replay(
        self,
        biz_code: str,
        params: dict[str, Any],
        unauth: bool,
        attempt: int,
        code: object,
        message: str,
    ) -> dict[str, Any]:
        """Re-login and replay once; clear tokens and surface on the second strike."""
        if attempt >= MAX_REPLAYS:
            _LOGGER.error("Session still invalid after re-login (%s: %s)", code, message)
            self.auth.clear_tokens()
            self._notify(
                "error",
                {
                    "type": "SESSION_EXPIRED",
                    "message": (
                        "Another device is logged in to this account."
                        if ANOTHER_DEVICE_MESSAGE in message
                        else "Session expired and could not be renewed."
                    ),
                    "errorCode": code,
                },
            )
            raise SessionExpired(f"Session expired: {message}", code=code)

        _LOGGER.warning("Session invalid (%s: %s), logging in again", code, message)
        try:
            await self.auth.login()
        except AuthFailed as e:
            _LOGGER.error("Re-login failed: %s", e)
            self.auth.clear_tokens()
            self._notify(
                "error",
                {
                    "type": "AUTH_FAILED",
                    "message": "Session expired and re-login failed. Check your credentials.",
                    "errorCode": code,
                },
            )
            raise AuthFailed("Session expired and re-login failed", code=code) from e
        return await self.call(biz_code, params, unauth=unauth, attempt=attempt + 1)

    # ------------------------------------------------------------------
    # Business calls
    # ------------------------------------------------------------------

    async def fetch_client_info(self) -> ClientInfo:
        """Fetch the Cognito configuration and hand it to the auth session."""
        response = await self.call(BIZ_CLIENT_INFO, {}, unauth=True)
        data = response.get("reData") or response.get("data")
        if not isinstance(data, dict):
            raise ApiError("Failed to get client info")
        info = ClientInfo.from_response(data)
        self.auth.client_info = info
        _LOGGER.debug("Cognito configured: region=%s pool=%s", info.region, info.user_pool_id)
        return info

    async def fetch_iot_credentials(self) -> None:
        """Fetch fresh AWS IoT temporary credentials."""
        response = await self.call(BIZ_AWS_TOKENS, {"userName": self.auth.email})
        data = response.get("reData")
        if not isinstance(data, dict):
            _LOGGER.warning("No AWS credentials in response, shadow calls will fail")
            return
        self.auth.set_iot_credentials(data)
        _LOGGER.info("AWS IoT credentials obtained")

    async def ensure_iot_credentials(self) -> None:
        """Refresh the IoT credentials when missing or inside the expiry margin."""
        if not self.auth.iot_credentials_valid:
            _LOGGER.debug("IoT credentials expired or missing, refreshing")
            await self.fetch_iot_credentials()

    async def list_houses(self) -> list[dict[str, Any]]:
        """All houses visible to the account."""
        response = await self.call(BIZ_HOUSES, {"utctimestamp": "0"})
        houses = response.get("reData")
        return houses if isinstance(houses, list) else []

    async def list_stations(self, house_id: str) -> list[dict[str, Any]]:
        """Stations of one house, each carrying its child ``devices``."""
        response = await self.call(BIZ_STATIONS, {"houseId": house_id, "utctimestamp": "0"})
        data = response.get("reData")
        stations = data.get("stations") if isinstance(data, dict) else None
        return stations if isinstance(stations, list) else []

    # ------------------------------------------------------------------
    # IoT shadow endpoint
    # ------------------------------------------------------------------

    def shadow_url(self, thing: str, shadow: str | None, region: str) -> str:
        """URL of a named (or, with ``None``, the classic) shadow."""
        url = f"{IOT_BASE.format(region=region)}/things/{thing}/shadow"
        if shadow:
            url += f"?name={shadow}"
        return url

    async def shadow_request(
        self,
        method: str,
        thing: str,
        shadow: str | None,
        region: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> tuple[int, dict[str, Any]]:
        """SigV4-signed request against the Thing Shadow endpoint.

        Returns ``(status, document)``; the document is empty for non-2xx
        statuses.

        Raises:
            SigningError: If no IoT credentials could be loaded.
        """
        await self.ensure_iot_credentials()
        region = region or self.auth.region
        if not region:
            raise SigningError("No region known for shadow request")
        url = self.shadow_url(thing, shadow, region)
        body = json.dumps(payload) if payload is not None else ""
        headers = self.auth.signer.sign(method, url, region, IOT_SERVICE, body)
        headers["Content-Type"] = (
            "application/json" if payload is not None else "application/x-amz-json-1.0"
        )
        async with self._session.request(
            method,
            url,
            data=body.encode("utf-8") if body else None,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
        ) as resp:
            if not 200 <= resp.status < 300:
                return resp.status, {}
            data = await resp.json(content_type=None)
        return resp.status, data if isinstance(data, dict) else {}
