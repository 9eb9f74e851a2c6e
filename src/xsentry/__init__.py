"""Python API and CLI for X-Sense smoke, CO, heat and environment sensors."""

from xsentry.client import Client, ClientRegistry
from xsentry.errors import (
    ApiError,
    AuthFailed,
    MqttError,
    ServerUnavailable,
    SessionExpired,
    SigningError,
    UnexpectedChallenge,
    XSenseError,
)
from xsentry.fields import DEVICE_TYPE_NAMES, FIELDS, Field
from xsentry.realtime import RealtimeChannel
from xsentry.store import StateStore, UpdateSubscription

__all__ = [
    "ApiError",
    "AuthFailed",
    "Client",
    "ClientRegistry",
    "DEVICE_TYPE_NAMES",
    "FIELDS",
    "Field",
    "MqttError",
    "RealtimeChannel",
    "ServerUnavailable",
    "SessionExpired",
    "SigningError",
    "StateStore",
    "UnexpectedChallenge",
    "UpdateSubscription",
    "XSenseError",
]
