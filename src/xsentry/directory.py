"""Directory of houses, stations and devices, and their shadow state.

:meth:`Directory.refresh` rebuilds the :class:`~xsentry.store.StateStore`
from the REST directory (houses, then every house's stations with their
child devices), then fetches every station's shadow concurrently and
merges what it finds into the cached devices.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from xsentry._constants import (
    GENERIC_DEVICE_NAME_PREFIXES,
    GENERIC_DEVICE_NAMES,
    TEMP_HUMIDITY_TYPES,
)
from xsentry.api import ApiClient
from xsentry.errors import XSenseError
from xsentry.shadows import (
    HOUSE_SHADOWS,
    OWNER_HOUSE_SHADOWS,
    OWNER_STATION_SHADOWS,
    SC07_STATUS_SHADOWS,
    STATION_SHADOWS,
    WIFI_SHADOWS,
    ShadowFetcher,
    build_thing_name,
    expand,
    house_thing_names,
    is_wifi_category,
    station_serial,
    station_thing_names,
    station_type,
)
from xsentry.store import Record, StateStore, lift_status

_LOGGER = logging.getLogger(__name__)

# Aggregated WiFi documents whose values are copied onto the device.
_WIFI_KEYS = (
    "alarmStatus",
    "muteStatus",
    "coPpm",
    "co",
    "coLevel",
    "temperature",
    "temp",
    "humidity",
    "humi",
    "batInfo",
    "battery",
    "wifiRSSI",
    "wifiRssi",
    "isLifeEnd",
    "onLine",
    "online",
    "status",
)


def is_generic_name(name: object) -> bool:
    """Whether *name* is empty or a placeholder the vendor app assigns."""
    if not name or not str(name).strip():
        return True
    text = str(name).strip()
    return text in GENERIC_DEVICE_NAMES or text.startswith(GENERIC_DEVICE_NAME_PREFIXES)


def normalize_house(house: Record) -> Record:
    record = dict(house)
    record["houseId"] = str(record.get("houseId") or record.get("id") or "")
    return record


def adopt_owner(house: Record, station: Record) -> None:
    """Give *house* the owner id carried by one of its stations.

    A shared account lists houses under the viewer's user id; realtime
    topics and owner-thing lookups need the owner's.
    """
    owner = station.get("userId")
    if not owner or house.get("userId") == owner:
        return
    _LOGGER.debug(
        "House %s owner %s -> %s (from station %s)",
        house["houseId"],
        house.get("userId"),
        owner,
        station.get("stationName") or station.get("stationId"),
    )
    house["userId"] = owner


def normalize_station(station: Record, house: Record) -> Record:
    """Copy of *station* with house context, serial and thing name filled in."""
    record = dict(station)
    record.pop("devices", None)
    record["stationId"] = str(record.get("stationId") or record.get("id") or "")
    record["houseId"] = house["houseId"]
    record["houseName"] = house.get("houseName")
    record["mqttRegion"] = record.get("mqttRegion") or house.get("mqttRegion")
    record["mqttServer"] = record.get("mqttServer") or house.get("mqttServer")
    record["stationType"] = station_type(record)
    sn = station_serial(record)
    record["stationSn"] = sn
    record["sn"] = sn
    record["userId"] = record.get("userId") or house.get("userId")
    record["shadowName"] = build_thing_name(record)
    return record


def normalize_device(device: Record, station: Record) -> Record:
    """Copy of *device* with unified id, serial, type and display name."""
    record = dict(device)
    sn = str(record.get("deviceSn") or record.get("deviceSN") or record.get("sn") or "")
    kind = str(record.get("deviceType") or record.get("type") or "")
    record["id"] = str(record.get("deviceId") or record.get("id") or sn)
    record["deviceSn"] = sn
    record["type"] = kind
    record["deviceType"] = kind
    record["stationId"] = station["stationId"]
    record["stationSn"] = station.get("stationSn")
    record["houseId"] = station.get("houseId")
    record.setdefault("userId", station.get("userId"))
    if is_generic_name(record.get("deviceName")):
        record["deviceName"] = f"{kind or 'Device'} {sn[-4:]}".strip()
    return lift_status(record, minified=kind in TEMP_HUMIDITY_TYPES)


def synthetic_device(station: Record) -> Record:
    """Device record standing in for a directly-connected WiFi station."""
    kind = station.get("category") or station.get("stationType")
    record = {
        **station,
        "id": station["stationId"],
        "deviceId": station["stationId"],
        "deviceName": station.get("stationName"),
        "type": kind,
        "deviceType": kind,
        "deviceSn": station.get("stationSn"),
        "devUserId": station.get("userId"),
    }
    return normalize_device(record, station)


def wifi_fields(document: Record) -> Record:
    """Device-level values found in a WiFi alarm's shadow document."""
    lifted = lift_status(document, minified=False)
    return {key: lifted[key] for key in _WIFI_KEYS if key in lifted}


class Directory:
    """REST directory listing plus shadow lookups, writing into a store."""

    def __init__(
        self,
        api: ApiClient,
        store: StateStore,
        fetcher: ShadowFetcher | None = None,
    ) -> None:
        self.api = api
        self.store = store
        self.fetcher = fetcher or ShadowFetcher(api)

    async def list_houses(self) -> list[Record]:
        return [normalize_house(h) for h in await self.api.list_houses()]

    async def list_stations(self, house_id: str) -> list[Record]:
        return await self.api.list_stations(house_id)

    # ------------------------------------------------------------------
    # Full refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> list[Record]:
        """Rebuild every house, station and device, then load their shadows.

        All station listings run concurrently, then all shadow lookups do;
        a failing shadow lookup is logged and does not fail the refresh.

        Returns:
            Every cached device after the refresh.
        """
        houses = await self.list_houses()
        listings = await asyncio.gather(*(self.list_stations(h["houseId"]) for h in houses))

        self.store.clear()
        stations: list[Record] = []
        for house, raw_stations in zip(houses, listings):
            self.store.set_house(house)
            for raw in raw_stations:
                adopt_owner(house, raw)
                station = normalize_station(raw, house)
                self.store.set_station(station)
                stations.append(station)
                for raw_device in raw.get("devices") or []:
                    self.store.set_device(normalize_device(raw_device, station))
                if is_wifi_category(station.get("category") or station["stationType"]):
                    self.store.set_device(synthetic_device(station))

        results = await asyncio.gather(
            *(self.get_station_shadow(s) for s in stations), return_exceptions=True
        )
        for station, result in zip(stations, results):
            if isinstance(result, XSenseError):
                _LOGGER.warning("Shadow lookup for station %s failed: %s", station["stationId"], result)
            elif isinstance(result, BaseException):
                raise result

        _LOGGER.info(
            "Refresh complete: %d houses, %d stations, %d devices",
            len(self.store.houses),
            len(self.store.stations),
            len(self.store.devices),
        )
        return list(self.store.devices.values())

    # ------------------------------------------------------------------
    # Shadows
    # ------------------------------------------------------------------

    async def get_station_shadow(self, station: Record) -> Record:
        """Find the station's shadow document and merge it into the store.

        WiFi alarms are tried through their dedicated shadow names first;
        then the station thing-name candidates are crossed with the station
        shadow names, and finally the owning user's thing is tried.

        Returns:
            The reported document, or ``{}`` when nothing answered.
        """
        region = station.get("mqttRegion")
        sn = station_serial(station)
        kind = station_type(station)

        shadow: Record = {}
        if kind == "SC07-WX":
            shadow = await self._sc07_shadow(station, region)
        elif is_wifi_category(kind):
            shadow = await self.get_wifi_shadow(station)

        if not shadow:
            shadow = await self.fetcher.first_hit(
                station_thing_names(station), expand(STATION_SHADOWS, sn=sn), region
            )
        if not shadow and station.get("userId"):
            shadow = await self.fetcher.first_hit(
                [str(station["userId"])],
                expand(
                    OWNER_STATION_SHADOWS,
                    station_id=str(station.get("stationId") or ""),
                    station_sn=sn,
                ),
                region,
            )
        if shadow:
            self.apply_station_shadow(station, shadow)
        else:
            _LOGGER.debug("No shadow found for station %s", station.get("stationId"))
        return shadow

    def apply_station_shadow(self, station: Record, shadow: Record) -> None:
        """Merge a station shadow's ``devs`` map and station-level fields."""
        devs = shadow.get("devs")
        if isinstance(devs, dict):
            self.store.merge_devs(devs)
        station_level = {k: shadow[k] for k in ("wifiRSSI", "wifiRssi", "sw", "ip") if k in shadow}
        if station_level:
            self.store.merge_station(station["stationId"], station_level)
        if is_wifi_category(station_type(station)):
            self.store.merge_device(station["stationId"], wifi_fields(shadow))

    async def _sc07_shadow(self, station: Record, region: str | None) -> Record:
        thing = build_thing_name(station)
        if not thing:
            return {}
        sn = station_serial(station)
        merged: Record = {}
        for shadow in ("2nd_systime", f"2nd_info_{sn}"):
            merged.update(await self.fetcher.fetch(thing, shadow, region))
        merged.update(await self.fetcher.first_hit([thing], expand(SC07_STATUS_SHADOWS, sn=sn), region))
        return merged

    async def get_wifi_shadow(self, station: Record) -> Record:
        """Aggregate every WiFi shadow name that answers for *station*.

        Each name is tried on the built thing name, then on the bare serial.
        """
        region = station.get("mqttRegion")
        sn = station_serial(station)
        things = [t for t in dict.fromkeys((build_thing_name(station), sn)) if t]
        aggregated: Record = {}
        for shadow in expand(WIFI_SHADOWS, sn=sn):
            for thing in things:
                if self.fetcher.is_open(thing, shadow):
                    continue
                document = await self.fetcher.fetch(thing, shadow, region)
                if document:
                    aggregated.update(document)
                    aggregated.update(wifi_fields(document))
                    break
        return aggregated

    async def get_house_shadow(self, house: Record) -> Record:
        """Reported state of a house, or ``{}``."""
        region = house.get("mqttRegion")
        shadow = await self.fetcher.first_hit(house_thing_names(house), HOUSE_SHADOWS, region)
        if not shadow and house.get("userId"):
            shadow = await self.fetcher.first_hit(
                [str(house["userId"])],
                expand(OWNER_HOUSE_SHADOWS, house_id=str(house["houseId"])),
                region,
            )
        return shadow
