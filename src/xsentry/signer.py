"""AWS Signature Version 4 for the X-Sense IoT endpoints.

Two entry points:

* :meth:`Signer.sign` returns the headers for a signed REST call (Thing
  Shadow ``GET``/``POST``).
* :meth:`Signer.presign_websocket_url` returns a query-string signed
  ``wss://`` URL for the MQTT broker.

The broker expects the session token to be left **out** of the signed
query string.  It is appended after ``X-Amz-Signature`` has been computed,
followed by the signature itself.  Signing the token (standard SigV4) makes
the broker reject the handshake.

Both methods accept an explicit *now* so that signatures are reproducible.
"""

from __future__ import annotations

import datetime as dt
import logging
from urllib.parse import parse_qsl, quote, urlsplit

from xsentry._crypto import hmac_sha256, sha256_hex
from xsentry.errors import SigningError

_LOGGER = logging.getLogger(__name__)

ALGORITHM = "AWS4-HMAC-SHA256"
DEFAULT_SERVICE = "iotdata"


def _uri_encode(value: str) -> str:
    # RFC 3986 unreserved set only; encodeURIComponent would also keep !'()*
    # but no signed key, value or base64 token contains them.
    return quote(value, safe="-_.~")


def _amz_date(now: dt.datetime) -> str:
    return now.astimezone(dt.timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def signing_key(secret_access_key: str, date_stamp: str, region: str, service: str) -> bytes:
    """Derive the scoped signing key (``kSigning``) via the four-step HMAC chain."""
    k_date = hmac_sha256(("AWS4" + secret_access_key).encode("utf-8"), date_stamp)
    k_region = hmac_sha256(k_date, region)
    k_service = hmac_sha256(k_region, service)
    return hmac_sha256(k_service, "aws4_request")


class Signer:
    """SigV4 signer bound to one set of AWS temporary credentials.

    Credentials are swapped in place via :meth:`update_credentials` when
    the IoT credentials are refreshed.
    """

    def __init__(
        self,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        session_token: str | None = None,
        *,
        service: str = DEFAULT_SERVICE,
    ) -> None:
        self.service = service
        self.update_credentials(access_key_id, secret_access_key, session_token)

    def update_credentials(
        self,
        access_key_id: str | None,
        secret_access_key: str | None,
        session_token: str | None,
    ) -> None:
        """Replace the credentials used for subsequent signatures."""
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.session_token = session_token

    @property
    def has_credentials(self) -> bool:
        """True when an access key pair is loaded."""
        return bool(self.access_key_id and self.secret_access_key)

    def sign(
        self,
        method: str,
        url: str,
        region: str,
        service: str | None = None,
        payload: str | bytes = "",
        *,
        now: dt.datetime | None = None,
    ) -> dict[str, str]:
        """Return the headers that sign a REST request.

        Args:
            method: HTTP method (``GET``, ``POST``).
            url: Full request URL, query string included.
            region: AWS region of the endpoint.
            service: SigV4 service name; defaults to ``iotdata``.
            payload: Request body exactly as it will be sent.
            now: Signing time; defaults to the current UTC time.

        Returns:
            ``Host``, ``X-Amz-Date``, ``Authorization`` and, when a session
            token is loaded, ``X-Amz-Security-Token``.

        Raises:
            SigningError: If no access key pair is loaded.
        """
        if not self.has_credentials:
            raise SigningError("AWS credentials not available for signing")
        assert self.access_key_id is not None and self.secret_access_key is not None
        service = service or self.service
        amz_date = _amz_date(now or dt.datetime.now(dt.timezone.utc))
        date_stamp = amz_date[:8]

        parts = urlsplit(url)
        host = parts.netloc
        query = sorted(parse_qsl(parts.query, keep_blank_values=True))
        canonical_query = "&".join(f"{_uri_encode(k)}={_uri_encode(v)}" for k, v in query)

        headers = [("host", host), ("x-amz-date", amz_date)]
        if self.session_token:
            headers.append(("x-amz-security-token", self.session_token))
        headers.sort()
        canonical_headers = "".join(f"{k}:{v}\n" for k, v in headers)
        signed_headers = ";".join(k for k, _ in headers)

        canonical_request = "\n".join(
            [
                method.upper(),
                parts.path or "/",
                canonical_query,
                canonical_headers,
                signed_headers,
                sha256_hex(payload),
            ]
        )
        scope = f"{date_stamp}/{region}/{service}/aws4_request"
        string_to_sign = "\n".join([ALGORITHM, amz_date, scope, sha256_hex(canonical_request)])
        key = signing_key(self.secret_access_key, date_stamp, region, service)
        signature = hmac_sha256(key, string_to_sign).hex()

        signed = {
            "Host": host,
            "X-Amz-Date": amz_date,
            "Authorization": (
                f"{ALGORITHM} Credential={self.access_key_id}/{scope}, "
                f"SignedHeaders={signed_headers}, Signature={signature}"
            ),
        }
        if self.session_token:
            signed["X-Amz-Security-Token"] = self.session_token
        return signed

    def presign_websocket_url(
        self,
        url: str,
        region: str,
        *,
        now: dt.datetime | None = None,
    ) -> str:
        """Return *url* with a SigV4 query-string signature for the MQTT broker.

        The session token is appended **after** the signed query string, as
        the broker requires.

        Raises:
            SigningError: If any of the three credentials is missing.
        """
        if not (self.has_credentials and self.session_token):
            raise SigningError("AWS credentials not available for signing")
        assert self.access_key_id is not None and self.secret_access_key is not None
        amz_date = _amz_date(now or dt.datetime.now(dt.timezone.utc))
        date_stamp = amz_date[:8]
        parts = urlsplit(url)
        path = parts.path or "/"

        scope = f"{date_stamp}/{region}/{self.service}/aws4_request"
        params = {
            "X-Amz-Algorithm": ALGORITHM,
            "X-Amz-Credential": f"{self.access_key_id}/{scope}",
            "X-Amz-Date": amz_date,
            "X-Amz-SignedHeaders": "host",
        }
        canonical_query = "&".join(
            f"{_uri_encode(k)}={_uri_encode(params[k])}" for k in sorted(params)
        )
        canonical_request = "\n".join(
            [
                "GET",
                path,
                canonical_query,
                f"host:{parts.netloc}\n",
                "host",
                sha256_hex(""),
            ]
        )
        string_to_sign = "\n".join([ALGORITHM, amz_date, scope, sha256_hex(canonical_request)])
        key = signing_key(self.secret_access_key, date_stamp, region, self.service)
        signature = hmac_sha256(key, string_to_sign).hex()
        _LOGGER.debug("Presigned %s%s for %s at %s", parts.netloc, path, region, amz_date)

        query = (
            f"{canonical_query}"
            f"&X-Amz-Security-Token={_uri_encode(self.session_token)}"
            f"&X-Amz-Signature={signature}"
        )
        return f"{parts.scheme}://{parts.netloc}{path}?{query}"
