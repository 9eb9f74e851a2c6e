"""Exception taxonomy shared by every xsentry component.

Each error carries enough structure for a presentation layer to render it:
a stable :attr:`~XSenseError.kind`, the human message, the vendor or HTTP
``code`` when there is one, and ``retry_after`` (seconds) while a backoff
window is active.
"""

from __future__ import annotations


class XSenseError(Exception):
    """Base class for all xsentry failures."""

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        code: int | str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.retry_after = retry_after

    def as_dict(self) -> dict[str, object]:
        """Structured form for notification payloads."""
        detail: dict[str, object] = {"kind": self.kind, "message": self.message}
        if self.code is not None:
            detail["code"] = self.code
        if self.retry_after is not None:
            detail["retryAfter"] = self.retry_after
        return detail


class SigningError(XSenseError):
    """Raised when AWS credentials are missing before a signed call."""

    kind = "signing"


class AuthFailed(XSenseError):
    """Raised when Cognito rejects the login or a re-login fails."""

    kind = "auth_failed"


class UnexpectedChallenge(AuthFailed):
    """Raised when Cognito answers with anything but ``PASSWORD_VERIFIER``."""

    kind = "unexpected_challenge"


class SessionExpired(XSenseError):
    """Raised when the session is gone and the single replay did not help."""

    kind = "session_expired"


class ServerUnavailable(XSenseError):
    """Raised on HTTP 5xx and while the resulting cool-down is active."""

    kind = "server_unavailable"


class ApiError(XSenseError):
    """Raised for non-success HTTP statuses and vendor result codes."""

    kind = "api_error"


class MqttError(XSenseError, ConnectionError):
    """Raised when a realtime command cannot be delivered.

    Wraps :class:`aiomqtt.MqttError` so callers do not need to import
    ``aiomqtt`` to catch MQTT-related failures.
    """

    kind = "mqtt"
