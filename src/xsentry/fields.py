"""Sensor field definitions: the single source of truth for X-Sense record keys."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Field:
    """A sensor field definition.

    Maps between raw vendor keys (e.g. ``batInfo``), CLI-friendly slugs
    (e.g. ``battery``), and human-readable labels (e.g. ``Battery``).
    """

    id: str
    """Raw key as it appears in REST, shadow and MQTT payloads."""

    slug: str
    """CLI name (``battery``, ``co``, ``temperature``)."""

    name: str
    """Human-readable label."""

    kind: str = "str"
    """Coercion applied before merging (``int``, ``float``, ``bool``, ``str``)."""

    values: list[str] | None = None
    """Enum labels (index = int value); ``None`` = plain value."""

    unit: str = ""
    """Suffix for display (``%``, ``ppm``, ``C``)."""

    aliases: list[str] = field(default_factory=list)
    """Other raw keys the vendor uses for the same value."""

    def format_value(self, raw: object) -> str:
        """Format a raw field value for human display."""
        if self.values is not None:
            try:
                idx = int(str(raw))
                if 0 <= idx < len(self.values):
                    return self.values[idx]
            except (ValueError, TypeError):
                pass
            return str(raw)
        if self.kind == "bool" and isinstance(raw, bool):
            return "yes" if raw else "no"
        if isinstance(raw, (int, float)) and not isinstance(raw, bool) and self.unit:
            return f"{raw}{self.unit}"
        return str(raw)


# Device category code -> human-readable name
DEVICE_TYPE_NAMES: dict[str, str] = {
    "SBS10": "Base station",
    "SBS50": "Base station",
    "XS01-M": "Smoke alarm",
    "XS0B-MR": "Smoke alarm",
    "XS01-WX": "WiFi smoke alarm",
    "XS0B-iR": "WiFi smoke alarm",
    "XP0A-MR": "Smoke and CO alarm",
    "XP0A-iR": "WiFi smoke and CO alarm",
    "SC07-WX": "WiFi smoke and CO alarm",
    "XC01-M": "CO alarm",
    "XC04-WX": "WiFi CO alarm",
    "XC01-WX": "WiFi CO alarm",
    "XH02-M": "Heat alarm",
    "XH02-WX": "WiFi heat alarm",
    "SWS51": "Water leak detector",
    "SDS0A": "Door sensor",
    "SMS0A": "Motion sensor",
    "SMA51": "Mailbox alarm",
    "STH51": "Thermo-hygrometer",
    "STH54": "Thermo-hygrometer",
    "STH0A": "Thermo-hygrometer",
}

FIELDS: list[Field] = [
    Field(
        "batInfo", "battery", "Battery", "int",
        values=["empty", "low", "medium", "full"], aliases=["battery"],
    ),
    Field("rfLevel", "rf-signal", "RF signal", "int", values=["none", "weak", "medium", "strong"]),
    Field("wifiRssi", "wifi-signal", "WiFi signal", "int", unit="dBm", aliases=["wifiRSSI"]),
    Field("alarmStatus", "alarm", "Alarm", "int", values=["idle", "alarm"]),
    Field("muteStatus", "mute", "Muted", "int", values=["no", "yes"]),
    Field("coPpm", "co", "CO level", "int", unit="ppm", aliases=["co", "coValue"]),
    Field("coLevel", "co-level", "CO alarm level", "int"),
    Field("temperature", "temperature", "Temperature", "float", unit="C", aliases=["temp"]),
    Field("humidity", "humidity", "Humidity", "float", unit="%", aliases=["humi"]),
    Field("isOpen", "open", "Open", "bool"),
    Field("isMoved", "moved", "Motion", "bool"),
    Field("online", "online", "Online", "bool", aliases=["onLine"]),
    Field("isLifeEnd", "end-of-life", "End of life", "bool"),
    Field("deviceName", "name", "Name"),
    Field("deviceSn", "serial", "Serial"),
    Field("type", "type", "Type"),
]

_by_slug: dict[str, Field] = {f.slug: f for f in FIELDS}
_by_id: dict[str, Field] = {f.id: f for f in FIELDS}
for _f in FIELDS:
    for _alias in _f.aliases:
        _by_id.setdefault(_alias, _f)


def resolve(name: str) -> Field | None:
    """Look up a Field by slug, raw key or alias."""
    return _by_slug.get(name) or _by_id.get(name)


def type_name(type_code: str) -> str:
    """Human-readable name for a device category code."""
    return DEVICE_TYPE_NAMES.get(type_code, type_code or "Unknown")


def for_key(key: str) -> Field | None:
    """Look up a Field by raw key or alias only (never by slug)."""
    return _by_id.get(key)
