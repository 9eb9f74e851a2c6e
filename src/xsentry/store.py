"""In-memory cache of houses, stations and devices with observer fan-out.

Records are plain dicts keyed by their vendor id.  Serial numbers are
indexed separately because realtime messages only carry serials.  Every
merge is additive: fields absent from an update are left untouched, and
sanitized values that fail coercion are dropped before the merge.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from xsentry.sanitize import sanitize_update

_LOGGER = logging.getLogger(__name__)

Record = dict[str, Any]
UpdateCallback = Callable[[str, Record], None]
"""Observer signature: ``callback(kind, record)`` with kind ``device``, ``error`` or ``health``."""

# Compact keys some firmwares use inside a ``status`` object.
_MINIFIED_STATUS = {"a": "alarmStatus", "b": "temperature", "c": "humidity"}


def lift_status(data: Record, *, minified: bool = True) -> Record:
    """Copy fields nested under ``status`` to the top level of *data*.

    Top-level keys win over lifted ones.  With *minified*, the compact
    ``a``/``b``/``c`` keys map to alarm status, temperature and humidity.
    The ``status`` object itself is kept.
    """
    status = data.get("status")
    if not isinstance(status, dict):
        return dict(data)
    lifted: Record = {}
    for key, value in status.items():
        if key in _MINIFIED_STATUS:
            if minified:
                lifted[_MINIFIED_STATUS[key]] = value
        else:
            lifted[key] = value
    lifted.update(data)
    return lifted


class UpdateSubscription:
    """Handle returned by :meth:`StateStore.subscribe`."""

    def __init__(self, store: StateStore, callback: UpdateCallback) -> None:
        self._store = store
        self.callback = callback

    @property
    def active(self) -> bool:
        """True while the callback is still registered."""
        return self.callback in self._store.observers

    def unsubscribe(self) -> None:
        """Stop delivering updates to the callback."""
        self._store.remove_callback(self.callback)


class StateStore:
    """The client's view of the account, updated by refreshes and realtime messages."""

    def __init__(self) -> None:
        self.houses: dict[str, Record] = {}
        self.stations: dict[str, Record] = {}
        self.devices: dict[str, Record] = {}
        self.stations_by_sn: dict[str, str] = {}
        self.devices_by_sn: dict[str, str] = {}
        self.observers: list[UpdateCallback] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, callback: UpdateCallback) -> UpdateSubscription:
        """Register *callback* for every emitted change."""
        if callback not in self.observers:
            self.observers.append(callback)
        return UpdateSubscription(self, callback)

    def remove_callback(self, callback: UpdateCallback) -> None:
        """Unregister *callback*; unknown callbacks are ignored."""
        try:
            self.observers.remove(callback)
        except ValueError:
            pass

    def emit(self, kind: str, record: Record) -> None:
        """Deliver ``(kind, record)`` to every observer.

        An observer that raises is logged and does not stop delivery to
        the others.
        """
        for callback in list(self.observers):
            try:
                callback(kind, record)
            except Exception:
                _LOGGER.exception("Update callback %r failed", callback)

    # ------------------------------------------------------------------
    # Houses and stations
    # ------------------------------------------------------------------

    def set_house(self, house: Record) -> None:
        self.houses[str(house["houseId"])] = house

    def get_house(self, house_id: str) -> Record | None:
        return self.houses.get(str(house_id))

    def set_station(self, station: Record) -> None:
        station_id = str(station["stationId"])
        self.stations[station_id] = station
        sn = station.get("stationSn") or station.get("sn")
        if sn:
            self.stations_by_sn[str(sn)] = station_id

    def get_station(self, station_id: str) -> Record | None:
        return self.stations.get(str(station_id))

    def station_by_sn(self, sn: str | None) -> Record | None:
        """Station with serial *sn*, matched case-insensitively as a fallback."""
        if not sn:
            return None
        station_id = self._lookup(self.stations_by_sn, str(sn))
        return self.stations.get(station_id) if station_id else None

    def stations_in_house(self, house_id: str) -> list[Record]:
        return [s for s in self.stations.values() if str(s.get("houseId")) == str(house_id)]

    def merge_station(self, station_id: str, update: Record) -> Record | None:
        """Merge a sanitized *update* into a cached station."""
        station = self.get_station(station_id)
        if station is None:
            return None
        station.update(sanitize_update(update))
        return station

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def set_device(self, device: Record) -> None:
        device_id = str(device["id"])
        self.devices[device_id] = device
        sn = device.get("deviceSn")
        if sn:
            self.devices_by_sn[str(sn)] = device_id

    def get_device(self, device_id: str) -> Record | None:
        return self.devices.get(str(device_id))

    def device_by_sn(self, sn: str | None) -> Record | None:
        """Device with serial *sn*, matched case-insensitively as a fallback."""
        if not sn:
            return None
        device_id = self._lookup(self.devices_by_sn, str(sn))
        return self.devices.get(device_id) if device_id else None

    def devices_in_station(self, station_id: str) -> list[Record]:
        return [d for d in self.devices.values() if str(d.get("stationId")) == str(station_id)]

    def merge_device(self, device_id: str, update: Record, *, notify: bool = True) -> Record | None:
        """Merge a sanitized *update* into a cached device.

        Returns the merged record, or ``None`` if the device is unknown.
        With *notify*, observers receive ``("device", record)`` once.
        """
        device = self.get_device(device_id)
        if device is None:
            _LOGGER.debug("Update for unknown device %s ignored", device_id)
            return None
        clean = sanitize_update(update)
        if not clean:
            return device
        device.update(clean)
        sn = device.get("deviceSn")
        if sn:
            self.devices_by_sn[str(sn)] = str(device_id)
        if notify:
            self.emit("device", device)
        return device

    def merge_devs(self, devs: dict[str, Any]) -> list[Record]:
        """Fan a ``devs`` map (serial -> partial state) out to cached devices.

        Unknown serials and non-dict entries are skipped.
        """
        merged: list[Record] = []
        for sn, data in devs.items():
            if not isinstance(data, dict):
                continue
            device = self.device_by_sn(sn)
            if device is None:
                _LOGGER.debug("No cached device for serial %s", sn)
                continue
            result = self.merge_device(device["id"], lift_status(data))
            if result is not None:
                merged.append(result)
        return merged

    # ------------------------------------------------------------------

    def clear(self) -> None:
        """Drop every cached record; observers stay registered."""
        self.houses.clear()
        self.stations.clear()
        self.devices.clear()
        self.stations_by_sn.clear()
        self.devices_by_sn.clear()

    @staticmethod
    def _lookup(index: dict[str, str], sn: str) -> str | None:
        if sn in index:
            return index[sn]
        folded = sn.casefold()
        for key, value in index.items():
            if key.casefold() == folded:
                return value
        return None
