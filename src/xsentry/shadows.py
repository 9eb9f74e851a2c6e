"""Thing-name rules, shadow-name candidates and the shadow fetcher.

The vendor has no directory of shadows: a station's state lives under one
of many historically used thing names and shadow names.  The candidates
are kept as data (format-string templates) so the search order can be
tuned without touching control flow.  :class:`ShadowFetcher` walks the
cross product and remembers which ``(thing, shadow)`` pairs keep failing.
"""

from __future__ import annotations

import logging
import string
from collections.abc import Iterable, Sequence
from typing import Any

import aiohttp

from xsentry._constants import (
    DASH_SEPARATED_TYPES,
    SHADOW_FAILURE_THRESHOLD,
    UNPREFIXED_TYPES,
    WIFI_DEVICE_TYPES,
    WIFI_FAMILY_PREFIXES,
)
from xsentry.api import ApiClient
from xsentry.errors import SigningError

_LOGGER = logging.getLogger(__name__)

ShadowName = str | None
"""A named shadow, or ``None`` for the classic (unnamed) shadow."""

# ---------------------------------------------------------------------------
# Thing names
# ---------------------------------------------------------------------------

# Crossed with every (type, serial) variant pair.
TYPE_SERIAL_TEMPLATES: tuple[str, ...] = (
    "{type}{serial}",
    "{type}_{serial}",
    "{type}-{serial}",
    "{type}SN{serial}",
    "{type}_SN{serial}",
    "{type}-SN-{serial}",
)

# Formatted once with the station's identifiers.
STATION_ID_TEMPLATES: tuple[str, ...] = (
    "{serial}",
    "{station_sn}",
    "{station_id}",
    "station_{station_id}",
    "station-{station_id}",
    "station{station_id}",
    "station_{serial}",
    "station-{serial}",
    "station{serial}",
    "{house_id}_{station_id}",
    "{house_id}-{station_id}",
    "{house_id}{station_id}",
    "{house_id}_{serial}",
    "{house_id}-{serial}",
    "{house_id}{serial}",
)

HOUSE_TEMPLATES: tuple[str, ...] = (
    "house_{house_id}",
    "house-{house_id}",
    "house{house_id}",
    "{house_id}",
    "house_{house_name}",
    "{house_name}",
)

# ---------------------------------------------------------------------------
# Shadow names (``{sn}`` is the station serial; ``None`` is the classic shadow)
# ---------------------------------------------------------------------------

STATION_SHADOWS: tuple[ShadowName, ...] = (
    "2nd_mainpage",
    "mainpage",
    "2nd_systime",
    "2nd_info_{sn}",
    "info_{sn}",
    "2nd_device_info",
    "device_info",
    "2nd_status",
    "status",
    "2nd_status_{sn}",
    "status_{sn}",
    "2nd_alarm_status_{sn}",
    "alarm_status_{sn}",
    "alarm_status",
    "2nd_alarm_status",
    "baseInfo",
    None,
)

HOUSE_SHADOWS: tuple[ShadowName, ...] = ("baseInfo", None)

OWNER_STATION_SHADOWS: tuple[ShadowName, ...] = (
    "{station_id}",
    "{station_sn}",
    "station_{station_id}",
    "station_{station_sn}",
    "2nd_systime",
    "2nd_device_info",
    None,
)

OWNER_HOUSE_SHADOWS: tuple[ShadowName, ...] = ("{house_id}", "house_{house_id}", None)

# Aggregated (every hit merged) for directly-connected WiFi alarms.
WIFI_SHADOWS: tuple[str, ...] = (
    "2nd_systime",
    "2nd_info_{sn}",
    "info_{sn}",
    "mode_{sn}",
    "mode",
    "2nd_alarm_status",
    "2nd_alarm_status_{sn}",
    "alarm_status",
    "alarm_status_{sn}",
    "2nd_sensor_data",
    "2nd_sensor_data_{sn}",
    "sensor_data",
    "sensor_{sn}",
    "2nd_status_{sn}",
    "2nd_status",
    "status",
    "mainpage",
    "pwordup",
)

# SC07-WX keeps its state split across these; the first status hit is merged.
SC07_STATUS_SHADOWS: tuple[str, ...] = (
    "2nd_status_{sn}",
    "status_{sn}",
    "2nd_status",
    "status",
    "2nd_alarm_status",
    "alarm_status",
    "2nd_mainpage",
    "mainpage",
)

TEMP_DATA_SHADOW = "2nd_apptempdata"

_formatter = string.Formatter()


def _fields_present(template: str, values: dict[str, str]) -> bool:
    names = [name for _, name, _, _ in _formatter.parse(template) if name]
    return all(values.get(name) for name in names)


def expand(templates: Iterable[ShadowName], **values: str) -> list[ShadowName]:
    """Format *templates*, dropping those that reference an empty value.

    ``None`` entries pass through; duplicates keep their first position.
    """
    result: list[ShadowName] = []
    for template in templates:
        if template is None:
            name: ShadowName = None
        elif _fields_present(template, values):
            name = template.format(**values).strip()
            if not name:
                continue
        else:
            continue
        if name not in result:
            result.append(name)
    return result


def _add_variants(names: list[str], value: str) -> None:
    for candidate in (value, value.lower(), value.upper()):
        candidate = candidate.strip()
        if candidate and candidate not in names:
            names.append(candidate)


def station_type(station: dict[str, Any]) -> str:
    """Category code of a station record."""
    return str(station.get("stationType") or station.get("category") or "")


def station_serial(station: dict[str, Any]) -> str:
    """Serial of a station record."""
    return str(station.get("stationSn") or station.get("sn") or "")


def is_wifi_category(category: str | None) -> bool:
    """Whether *category* is a directly-connected WiFi alarm."""
    if not category:
        return False
    if category in WIFI_DEVICE_TYPES or category.endswith("-WX"):
        return True
    return category.split("-")[0] in WIFI_FAMILY_PREFIXES


def build_thing_name(station: dict[str, Any]) -> str:
    """Primary thing name of a station.

    ``{type}{serial}`` for most categories, ``{type}-{serial}`` for the
    dash-separated WiFi categories and the bare serial for ``SBS10``.
    """
    kind = station_type(station)
    serial = station_serial(station)
    if not serial:
        return ""
    if kind in DASH_SEPARATED_TYPES:
        return f"{kind}-{serial}"
    if kind in UNPREFIXED_TYPES:
        return serial
    return f"{kind}{serial}"


def station_thing_names(station: dict[str, Any]) -> list[str]:
    """Ordered thing-name candidates for a station, primary name first."""
    names: list[str] = []
    built = build_thing_name(station)
    if built:
        names.append(built)

    kind = station_type(station)
    serial = str(station.get("sn") or station.get("stationSn") or "")
    station_sn = str(station.get("stationSn") or "")
    for template in TYPE_SERIAL_TEMPLATES:
        for t in (kind, kind.lower()):
            for s in (serial, station_sn):
                if t and s:
                    _add_variants(names, template.format(type=t, serial=s))

    values = {
        "serial": serial,
        "station_sn": station_sn,
        "station_id": str(station.get("stationId") or station.get("id") or ""),
        "house_id": str(station.get("houseId") or ""),
    }
    for name in expand(STATION_ID_TEMPLATES, **values):
        if name:
            _add_variants(names, name)
    return names


def house_thing_names(house: dict[str, Any]) -> list[str]:
    """Ordered thing-name candidates for a house."""
    values = {
        "house_id": str(house.get("houseId") or house.get("id") or ""),
        "house_name": "_".join(str(house.get("houseName") or "").split()),
    }
    names: list[str] = []
    for name in expand(HOUSE_TEMPLATES, **values):
        if name:
            _add_variants(names, name)
    return names


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


def _unwrap(document: dict[str, Any]) -> dict[str, Any]:
    state = document.get("state")
    if isinstance(state, dict) and isinstance(state.get("reported"), dict):
        return state["reported"]
    return document


class ShadowFetcher:
    """Shadow reads with a per-``(thing, shadow)`` circuit breaker.

    Every non-2xx response counts as a failure for its pair; once a pair
    has failed more than *threshold* times it is never requested again
    for the lifetime of this fetcher.  A success clears the pair's count.
    """

    def __init__(self, api: ApiClient, *, threshold: int = SHADOW_FAILURE_THRESHOLD) -> None:
        self._api = api
        self.threshold = threshold
        self.failures: dict[tuple[str, str], int] = {}

    @staticmethod
    def _key(thing: str, shadow: ShadowName) -> tuple[str, str]:
        return thing, shadow or "default"

    def is_open(self, thing: str, shadow: ShadowName) -> bool:
        """True when the breaker for this pair has tripped."""
        return self.failures.get(self._key(thing, shadow), 0) > self.threshold

    async def fetch(self, thing: str, shadow: ShadowName, region: str | None = None) -> dict[str, Any]:
        """Reported state of one shadow, or ``{}`` when absent or failing."""
        key = self._key(thing, shadow)
        if self.is_open(thing, shadow):
            return {}
        try:
            status, document = await self._api.shadow_request("GET", thing, shadow, region)
        except SigningError as e:
            _LOGGER.error("Cannot fetch shadow %s/%s: %s", thing, key[1], e)
            return {}
        except (aiohttp.ClientError, TimeoutError) as e:
            _LOGGER.warning("Shadow request %s/%s failed: %s", thing, key[1], e)
            return {}
        except ValueError as e:
            self.failures[key] = self.failures.get(key, 0) + 1
            _LOGGER.warning("Shadow %s/%s returned an unreadable body: %s", thing, key[1], e)
            return {}
        if not 200 <= status < 300:
            self.failures[key] = self.failures.get(key, 0) + 1
            _LOGGER.debug("Shadow miss %s/%s: HTTP %s", thing, key[1], status)
            return {}
        self.failures.pop(key, None)
        return _unwrap(document)

    async def first_hit(
        self,
        things: Sequence[str],
        shadows: Sequence[ShadowName],
        region: str | None = None,
    ) -> dict[str, Any]:
        """Search things x shadows in order; the first non-empty document wins."""
        for thing in things:
            if not thing:
                continue
            for shadow in shadows:
                if self.is_open(thing, shadow):
                    continue
                document = await self.fetch(thing, shadow, region)
                if document:
                    _LOGGER.debug("Shadow hit %s/%s", thing, shadow or "default")
                    return document
        return {}

    async def update(
        self,
        thing: str,
        shadow: ShadowName,
        payload: dict[str, Any],
        region: str | None = None,
    ) -> bool:
        """POST a shadow update document; ``True`` on a 2xx answer."""
        try:
            status, _ = await self._api.shadow_request("POST", thing, shadow, region, payload)
        except (aiohttp.ClientError, TimeoutError, ValueError, SigningError) as e:
            _LOGGER.error("Shadow update %s/%s failed: %s", thing, shadow or "default", e)
            return False
        return 200 <= status < 300
