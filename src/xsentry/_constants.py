"""Internal constants for the X-Sense cloud protocol."""

from __future__ import annotations

API_BASE = "https://api.x-sense-iot.com"
API_PATH = "/app"

APP_VERSION = "v1.22.0_20240914.1"
APP_CODE = "1220"
CLIENT_TYPE = "1"

# Unauthenticated calls carry a fixed placeholder instead of a real MAC.
UNAUTH_MAC = "abcdefg"

BIZ_CLIENT_INFO = "101001"
BIZ_AWS_TOKENS = "101003"
BIZ_HOUSES = "102007"
BIZ_STATIONS = "103007"

RESULT_OK = ("200", "0")

# Vendor result codes that mean the session was invalidated server-side.
SESSION_INVALID_CODES = frozenset({"10000004", "10000008", "10000020"})
SESSION_INVALID_MESSAGES = (
    "another device is logged in",
    "Authorization cannot be empty",
    "bizCode cannot be empty",
)
ANOTHER_DEVICE_MESSAGE = "another device is logged in"

COGNITO_URL = "https://cognito-idp.{region}.amazonaws.com/"
COGNITO_TARGET = "AWSCognitoIdentityProviderService.{action}"
COGNITO_CONTENT_TYPE = "application/x-amz-json-1.1"

IOT_BASE = "https://{region}.x-sense-iot.com"
IOT_SERVICE = "iotdata"

LEGACY_LOGIN_PATH = "/api/v1/user/login"
LEGACY_REFRESH_PATH = "/api/v1/user/refresh"
LEGACY_MQTT_PATH = "/api/v1/stations/{station_id}/mqtt"

MQTT_PATH = "/mqtt"
MQTT_PORT = 443
MQTT_USERNAME = "?SDK=iOS&Version=2.26.5"
MQTT_CLIENT_PREFIX = "xsentry"
LEGACY_MQTT_PORT = 8883

HTTP_TIMEOUT = 15  # seconds per REST call

TOKEN_EXPIRY_BUFFER = 300  # seconds before JWT exp to trigger a proactive re-login
IOT_CREDENTIAL_TTL = 3600  # vendor default when no expiration is returned
IOT_CREDENTIAL_MARGIN = 600  # treat IoT credentials as expired this early

SIGNATURE_REFRESH_INTERVAL = 600  # presigned MQTT URLs are re-signed this often
TEMP_DATA_DEBOUNCE = 180
POLL_INTERVAL = 60
SHADOW_FAILURE_THRESHOLD = 5

# Directly-connected WiFi alarms show up as stations without children.
WIFI_DEVICE_TYPES = frozenset(
    {
        "SC01-WX",
        "SC04-WX",
        "SC07-WX",
        "XC01-WX",
        "XC04-WX",
        "XH02-WX",
        "XS01-WX",
        "XP0A",
        "XP0A-iR",
        "XP0A-MR",
        "XS0B",
        "XS0B-iR",
    }
)
# Families whose every variant is a WiFi device (XP0A-iR, XS0B-iR, ...).
WIFI_FAMILY_PREFIXES = frozenset({"XP0A", "XS0B"})

# Thing names are "{type}{serial}" except for these categories.
DASH_SEPARATED_TYPES = frozenset({"SC07-WX", "XC01-WX", "XC04-WX", "XH02-WX", "XS01-WX"})
UNPREFIXED_TYPES = frozenset({"SBS10"})

TEMP_HUMIDITY_TYPES = frozenset({"STH51", "STH54", "STH0A"})

GENERIC_DEVICE_NAMES = ("Sensore",)
GENERIC_DEVICE_NAME_PREFIXES = ("Station de base",)
