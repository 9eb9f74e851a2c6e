"""Cognito SRP authentication and credential bookkeeping.

:class:`AuthSession` owns every secret the client holds:

* the Cognito client configuration returned by the bootstrap call,
* the rolling access / ID / refresh tokens from the SRP login,
* the AWS IoT temporary credentials used for SigV4 signing,
* the tokens of the legacy REST login, for accounts that still have one.

The SRP math comes from :class:`pycognito.aws_srp.AWSSRP`; the two
Cognito round trips go over the shared :class:`aiohttp.ClientSession`, so
the password itself never leaves the process.
"""

from __future__ import annotations

import asyncio
import base64
import datetime as dt
import enum
import json
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from typing import Any

import aiohttp
from pycognito.aws_srp import AWSSRP, hex_to_long

from xsentry._constants import (
    API_BASE,
    COGNITO_CONTENT_TYPE,
    COGNITO_TARGET,
    COGNITO_URL,
    HTTP_TIMEOUT,
    IOT_CREDENTIAL_MARGIN,
    IOT_CREDENTIAL_TTL,
    LEGACY_LOGIN_PATH,
    LEGACY_MQTT_PATH,
    LEGACY_REFRESH_PATH,
    TOKEN_EXPIRY_BUFFER,
)
from xsentry._crypto import decode_client_secret, hmac_sha256, secret_hash
from xsentry.errors import ApiError, AuthFailed, UnexpectedChallenge
from xsentry.signer import Signer

_LOGGER = logging.getLogger(__name__)

PASSWORD_VERIFIER = "PASSWORD_VERIFIER"


class AuthState(enum.Enum):
    """Progress of the SRP login."""

    UNAUTHENTICATED = "unauthenticated"
    SRP_A_SENT = "srp_a_sent"
    CHALLENGE_RECEIVED = "challenge_received"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


@dataclass
class ClientInfo:
    """Cognito configuration returned by the unauthenticated bootstrap call."""

    client_id: str
    client_secret: str
    secret_bytes: bytes
    region: str
    user_pool_id: str

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> ClientInfo:
        """Build from the ``reData`` of the client-info call."""
        raw = decode_client_secret(str(data["clientSecret"]))
        return cls(
            client_id=str(data["clientId"]),
            client_secret=raw.decode("utf-8"),
            secret_bytes=raw,
            region=str(data["cgtRegion"]),
            user_pool_id=str(data["userPoolId"]),
        )


class AuthSession:
    """Login state for one X-Sense account.

    Args:
        email: Account email (also the Cognito username).
        password: Account password.
        session: Shared HTTP session.
        clock: Wall-clock seconds; injectable for tests.
    """

    def __init__(
        self,
        email: str,
        password: str,
        session: aiohttp.ClientSession,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.email = email
        self._password = password
        self._session = session
        self._clock = clock
        self.state = AuthState.UNAUTHENTICATED
        self.client_info: ClientInfo | None = None

        self.access_token: str | None = None
        self.id_token: str | None = None
        self.refresh_token: str | None = None
        self.access_token_exp: float | None = None

        self.signer = Signer()
        self.iot_expires_at: float | None = None

        self.legacy_access_token: str | None = None
        self.legacy_refresh_token: str | None = None
        self.legacy_user_id: str | None = None
        self._legacy_attempted = False
        self._login_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Cognito tokens
    # ------------------------------------------------------------------

    @property
    def region(self) -> str | None:
        """Cognito region, also the fallback region for IoT calls."""
        return self.client_info.region if self.client_info else None

    def token_expiring(self) -> bool:
        """True when the access token is within the proactive re-login buffer."""
        if self.access_token_exp is None:
            return False
        return self._clock() >= self.access_token_exp - TOKEN_EXPIRY_BUFFER

    def clear_tokens(self) -> None:
        """Forget the Cognito tokens so the next call needs a fresh login."""
        self.access_token = None
        self.id_token = None
        self.refresh_token = None
        self.access_token_exp = None
        self.state = AuthState.EXPIRED

    async def login(self) -> None:
        """Run the ``USER_SRP_AUTH`` flow and store the resulting tokens.

        Raises:
            UnexpectedChallenge: If Cognito answers with anything but
                ``PASSWORD_VERIFIER``.
            AuthFailed: If Cognito rejects the credentials or is unreachable.
        """
        info = self.client_info
        if info is None:
            raise AuthFailed("Client info not loaded, cannot log in")

        async with self._login_lock:
            _LOGGER.debug("Starting SRP login for %s", self.email)
            loop = asyncio.get_running_loop()
            # AWSSRP builds a boto3 client in its constructor.
            srp = await loop.run_in_executor(
                None,
                partial(
                    AWSSRP,
                    username=self.email,
                    password=self._password,
                    pool_id=info.user_pool_id,
                    client_id=info.client_id,
                    pool_region=info.region,
                    client_secret=info.client_secret,
                ),
            )
            auth_params = srp.get_auth_params()
            auth_params["SECRET_HASH"] = secret_hash(self.email, info.client_id, info.client_secret)

            self.state = AuthState.SRP_A_SENT
            try:
                challenge = await self._cognito(
                    "InitiateAuth",
                    {
                        "AuthFlow": "USER_SRP_AUTH",
                        "ClientId": info.client_id,
                        "AuthParameters": auth_params,
                    },
                )
                name = challenge.get("ChallengeName")
                if name != PASSWORD_VERIFIER:
                    raise UnexpectedChallenge(f"Unexpected challenge: {name}", code=name)
                self.state = AuthState.CHALLENGE_RECEIVED

                try:
                    responses = await loop.run_in_executor(
                        None, self._password_claim, srp, challenge["ChallengeParameters"]
                    )
                except (KeyError, ValueError) as e:
                    raise AuthFailed(f"Malformed {PASSWORD_VERIFIER} challenge: {e}") from e
                result = await self._cognito(
                    "RespondToAuthChallenge",
                    {
                        "ChallengeName": PASSWORD_VERIFIER,
                        "ClientId": info.client_id,
                        "ChallengeResponses": responses,
                    },
                )
            except AuthFailed:
                self.state = AuthState.UNAUTHENTICATED
                raise

            tokens = result.get("AuthenticationResult")
            if not tokens:
                self.state = AuthState.UNAUTHENTICATED
                raise AuthFailed("No authentication result received")
            self.access_token = tokens["AccessToken"]
            self.id_token = tokens.get("IdToken")
            self.refresh_token = tokens.get("RefreshToken")
            self.access_token_exp = _decode_jwt_exp(self.access_token or "")
            self.state = AuthState.AUTHENTICATED
            _LOGGER.info("SRP login succeeded for %s", self.email)

    def _password_claim(self, srp: AWSSRP, params: dict[str, str]) -> dict[str, str]:
        """Answer the ``PASSWORD_VERIFIER`` challenge."""
        info = self.client_info
        assert info is not None
        user_id = params["USER_ID_FOR_SRP"]
        username = params.get("USERNAME", user_id)
        hkdf = srp.get_password_authentication_key(
            user_id, self._password, hex_to_long(params["SRP_B"]), params["SALT"]
        )
        timestamp = _cognito_timestamp(dt.datetime.now(dt.timezone.utc))
        msg = (
            info.user_pool_id.split("_")[1].encode("utf-8")
            + user_id.encode("utf-8")
            + base64.standard_b64decode(params["SECRET_BLOCK"])
            + timestamp.encode("utf-8")
        )
        signature = base64.standard_b64encode(hmac_sha256(bytes(hkdf), msg)).decode("ascii")
        return {
            "USERNAME": username,
            "PASSWORD_CLAIM_SECRET_BLOCK": params["SECRET_BLOCK"],
            "PASSWORD_CLAIM_SIGNATURE": signature,
            "TIMESTAMP": timestamp,
            "SECRET_HASH": secret_hash(username, info.client_id, info.client_secret),
        }

    async def _cognito(self, action: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST one Cognito Identity Provider action and return its JSON body."""
        info = self.client_info
        assert info is not None
        try:
            async with self._session.post(
                COGNITO_URL.format(region=info.region),
                data=json.dumps(body),
                headers={
                    "X-Amz-Target": COGNITO_TARGET.format(action=action),
                    "Content-Type": COGNITO_CONTENT_TYPE,
                },
                timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
            ) as resp:
                data = await resp.json(content_type=None)
                status = resp.status
        except (aiohttp.ClientError, TimeoutError, json.JSONDecodeError) as e:
            raise AuthFailed(f"Cognito {action} failed: {e}") from e
        if status != 200:
            data = data if isinstance(data, dict) else {}
            err_type = str(data.get("__type", status))
            message = data.get("message") or data.get("Message") or "unknown error"
            raise AuthFailed(f"Authentication failed: {message}", code=err_type)
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------------
    # AWS IoT credentials
    # ------------------------------------------------------------------

    @property
    def iot_credentials_valid(self) -> bool:
        """True while the IoT credentials are loaded and outside the expiry margin."""
        if self.iot_expires_at is None or not self.signer.has_credentials:
            return False
        return self._clock() < self.iot_expires_at

    def set_iot_credentials(self, data: dict[str, Any]) -> None:
        """Load IoT credentials from the ``reData`` of the AWS-token call."""
        self.signer.update_credentials(
            data.get("accessKeyId"), data.get("secretAccessKey"), data.get("sessionToken")
        )
        now = self._clock()
        expiration = _parse_expiration(data.get("expiration"))
        if expiration is None:
            expiration = now + IOT_CREDENTIAL_TTL
        self.iot_expires_at = expiration - IOT_CREDENTIAL_MARGIN
        _LOGGER.debug("IoT credentials valid for %.0f s", self.iot_expires_at - now)

    # ------------------------------------------------------------------
    # Legacy REST login
    # ------------------------------------------------------------------

    async def legacy_login(self) -> bool | None:
        """Log in through the legacy REST endpoint (attempted once per session).

        Returns:
            ``True`` on success, ``None`` when the account is SRP-only
            (HTTP 403), ``False`` on any other failure.
        """
        if self.legacy_access_token:
            return True
        if self._legacy_attempted:
            return False
        self._legacy_attempted = True
        try:
            async with self._session.post(
                f"{API_BASE}{LEGACY_LOGIN_PATH}",
                json={"email": self.email, "password": self._password},
                timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
            ) as resp:
                if resp.status == 403:
                    _LOGGER.debug("Legacy login refused, account is SRP-only")
                    return None
                if not resp.ok:
                    _LOGGER.warning("Legacy login failed: HTTP %s", resp.status)
                    return False
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, TimeoutError) as e:
            _LOGGER.warning("Legacy login error: %s", e)
            return False
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            return False
        self.legacy_access_token = data.get("access_token")
        self.legacy_refresh_token = data.get("refresh_token")
        self.legacy_user_id = data.get("user_id")
        _LOGGER.info("Legacy login succeeded")
        return bool(self.legacy_access_token)

    async def legacy_refresh(self) -> None:
        """Exchange the legacy refresh token for a new access token.

        Raises:
            AuthFailed: If no refresh token is held or the refresh is rejected.
        """
        if not self.legacy_refresh_token:
            raise AuthFailed("Legacy refresh token missing")
        async with self._session.post(
            f"{API_BASE}{LEGACY_REFRESH_PATH}",
            json={"refresh_token": self.legacy_refresh_token},
            timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
        ) as resp:
            if not resp.ok:
                text = await resp.text()
                raise AuthFailed(f"Legacy refresh failed: {resp.status} {text}", code=resp.status)
            body = await resp.json(content_type=None)
        token = (body.get("data") or {}).get("access_token") if isinstance(body, dict) else None
        if not token:
            raise AuthFailed("Legacy refresh returned no access token")
        self.legacy_access_token = token
        _LOGGER.debug("Legacy access token refreshed")

    async def legacy_request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        *,
        attempt: int = 0,
    ) -> Any:
        """Call a legacy REST endpoint with the Bearer token.

        A 401 triggers one token refresh and a single replay.

        Raises:
            ApiError: On any other non-success status.
        """
        headers = {"Content-Type": "application/json"}
        if self.legacy_access_token:
            headers["Authorization"] = f"Bearer {self.legacy_access_token}"
        async with self._session.request(
            method,
            f"{API_BASE}{path}",
            json=body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
        ) as resp:
            status = resp.status
            if not (status == 401 and self.legacy_refresh_token and attempt == 0):
                if not resp.ok:
                    text = await resp.text()
                    raise ApiError(f"Legacy API {status}: {text}", code=status)
                return await resp.json(content_type=None)
        await self.legacy_refresh()
        return await self.legacy_request(method, path, body, attempt=attempt + 1)

    async def get_legacy_mqtt_config(self, station_id: str) -> dict[str, Any] | None:
        """Legacy broker settings for *station_id*, or ``None`` when unavailable."""
        if not station_id:
            return None
        if not await self.legacy_login():
            return None
        try:
            response = await self.legacy_request("GET", LEGACY_MQTT_PATH.format(station_id=station_id))
        except (ApiError, AuthFailed, aiohttp.ClientError) as e:
            _LOGGER.warning("Legacy MQTT config failed for %s: %s", station_id, e)
            return None
        if isinstance(response, dict):
            config = response.get("data") or response
            return config if isinstance(config, dict) else None
        return None


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _decode_jwt_exp(token: str) -> float | None:
    """Extract the ``exp`` claim from a JWT without verifying the signature.

    Returns the expiry as a Unix timestamp (float), or ``None`` if the token
    cannot be decoded (e.g. not a JWT, malformed base64, missing claim).
    """
    try:
        parts = token.split(".")
        if len(parts) != 3:
            return None
        # base64url padding: length must be a multiple of 4
        padded = parts[1] + "=" * (-len(parts[1]) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded))
        return float(payload["exp"])
    except (ValueError, KeyError, TypeError):
        return None


def _cognito_timestamp(now: dt.datetime) -> str:
    """Challenge timestamp, e.g. ``Tue Mar 5 09:04:01 UTC 2024`` (day not zero-padded)."""
    return re.sub(r" 0(\d) ", r" \1 ", now.strftime("%a %b %d %H:%M:%S UTC %Y"))


def _parse_expiration(value: object) -> float | None:
    """Expiration as Unix seconds from epoch seconds, epoch millis or ISO-8601."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
    else:
        text = str(value).strip()
        try:
            number = float(text)
        except ValueError:
            try:
                parsed = dt.datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=dt.timezone.utc)
            return parsed.timestamp()
    # Millisecond timestamps are thirteen digits.
    return number / 1000 if number > 1e11 else number
