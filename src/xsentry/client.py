"""X-Sense cloud client.

Provides programmatic access to X-Sense smoke, CO, heat, water and
environment sensors through the vendor's cloud REST API, AWS IoT Thing
Shadows and MQTT broker.  The :class:`Client` class is the main entry
point::

    import asyncio
    from xsentry import Client

    client = await Client.login("email@example.com", "password")
    for device in client.devices:
        print(device["deviceName"], device.get("batInfo"))

    # Real-time updates for one house
    sub = client.on_update(lambda kind, record: print(kind, record))
    await client.connect_realtime(house_id)
    ...
    sub.unsubscribe()
    await client.destroy()

Applications that serve several accounts use :class:`ClientRegistry` so
that concurrent callers share one initialised client per credential pair.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import aiohttp

from xsentry._constants import POLL_INTERVAL
from xsentry._crypto import sha256_hex
from xsentry.api import ApiClient
from xsentry.auth import AuthSession
from xsentry.backoff import ReconnectStrategy
from xsentry.directory import Directory
from xsentry.errors import ApiError, MqttError, XSenseError
from xsentry.realtime import LegacyChannel, RealtimeChannel, shadow_topic
from xsentry.shadows import TEMP_DATA_SHADOW, build_thing_name, is_wifi_category
from xsentry.store import Record, StateStore, UpdateCallback, UpdateSubscription

_LOGGER = logging.getLogger(__name__)

# Alarms muted through the account-wide ``mutekey`` shadow.
MUTEKEY_TYPES = frozenset({"SC07-WX", "XC01-WX"})
TEST_ALARM_SHADOW = "2nd_extendalarm"


class Client:
    """X-Sense account client.

    Use :meth:`login` to construct and initialise in one step, or call
    :meth:`init` on an instance.  Observers registered with
    :meth:`on_update` before :meth:`init` also see the initial refresh.

    Args:
        email: Account email.
        password: Account password.
        session: HTTP session to use; one is created (and closed by
            :meth:`destroy`) when omitted.
        poll_interval: Seconds between refreshes in :meth:`start_polling`.
        spy: Subscribe realtime channels to broad wildcard topics too.
    """

    def __init__(
        self,
        email: str,
        password: str,
        *,
        session: aiohttp.ClientSession | None = None,
        poll_interval: float = POLL_INTERVAL,
        spy: bool = False,
    ) -> None:
        self.email = email
        self._password = password
        self._session = session
        self._owns_session = session is None
        self.poll_interval = poll_interval
        self.spy = spy
        self.store = StateStore()
        self.channels: dict[str, RealtimeChannel] = {}
        self._auth: AuthSession | None = None
        self._api: ApiClient | None = None
        self._directory: Directory | None = None
        self._poll_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    async def login(cls, email: str, password: str, **kwargs: Any) -> Client:
        """Create a client, log in and load every house, station and device."""
        client = cls(email, password, **kwargs)
        try:
            await client.init()
        except BaseException:
            await client.destroy()
            raise
        return client

    async def init(self) -> None:
        """Bootstrap Cognito, log in, fetch IoT credentials and refresh.

        Raises:
            AuthFailed: If the credentials are rejected.
            ServerUnavailable: If the X-Sense API is in a 5xx cool-down.
        """
        api = self._setup()
        await api.fetch_client_info()
        await api.auth.login()
        await api.fetch_iot_credentials()
        await self.directory.refresh()
        _LOGGER.info("Logged in as %s with %d device(s)", self.email, len(self.store.devices))

    def _setup(self) -> ApiClient:
        if self._api is None:
            if self._session is None:
                self._session = aiohttp.ClientSession()
            self._auth = AuthSession(self.email, self._password, self._session)
            self._api = ApiClient(self._auth, self._session, notify=self.store.emit)
            self._directory = Directory(self._api, self.store)
        return self._api

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.destroy()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def api(self) -> ApiClient:
        """REST transport (available after :meth:`init`)."""
        if self._api is None:
            raise RuntimeError("Client not initialised, call init() first")
        return self._api

    @property
    def auth(self) -> AuthSession:
        return self.api.auth

    @property
    def directory(self) -> Directory:
        if self._directory is None:
            raise RuntimeError("Client not initialised, call init() first")
        return self._directory

    @property
    def houses(self) -> list[Record]:
        """Cached houses."""
        return list(self.store.houses.values())

    @property
    def stations(self) -> list[Record]:
        """Cached stations."""
        return list(self.store.stations.values())

    @property
    def devices(self) -> list[Record]:
        """Cached devices, including synthetic records for WiFi alarms."""
        return list(self.store.devices.values())

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    async def get_all_devices(self) -> list[Record]:
        """Run a full refresh and return every device."""
        return await self.directory.refresh()

    async def get_devices(self, station_id: str) -> list[Record]:
        """Re-fetch one station's shadow and return its devices.

        Unknown stations yield an empty list.
        """
        station = self.store.get_station(station_id)
        if station is None:
            _LOGGER.warning("Station %s not found", station_id)
            return []
        try:
            await self.directory.get_station_shadow(station)
        except XSenseError as e:
            _LOGGER.warning("Failed to update shadow for station %s: %s", station_id, e)
        return self.store.devices_in_station(station_id)

    async def get_station_state(self, station_id: str) -> Record:
        """Reported shadow document of a station (``{}`` when none answers)."""
        station = self._require_station(station_id)
        return await self.directory.get_station_shadow(station)

    async def get_house_state(self, house_id: str) -> Record:
        """Reported shadow document of a house (``{}`` when none answers)."""
        house = self.store.get_house(house_id)
        if house is None:
            raise ApiError(f"House {house_id} not found")
        return await self.directory.get_house_shadow(house)

    async def sync_device(self, device_id: str) -> Record | None:
        """Re-fetch a device's state from its station's shadow.

        An unknown device triggers a full refresh instead.
        """
        device = self.store.get_device(device_id)
        station = self.store.get_station(device["stationId"]) if device else None
        if station is None:
            await self.directory.refresh()
        else:
            await self.directory.get_station_shadow(station)
        return self.store.get_device(device_id)

    async def request_temp_data_sync(self, station_id: str, device_sns: list[str]) -> bool:
        """Ask a station to upload fresh temperature/humidity logs.

        The readings arrive later on the temperature-log topic.
        """
        station = self._require_station(station_id)
        thing = build_thing_name(station)
        payload = {
            "state": {
                "desired": {
                    "shadow": "appTempData",
                    "stationSN": station["stationSn"],
                    "deviceSN": list(device_sns),
                    "source": "1",
                    "report": "1",
                    "reportDst": "",
                    "timeoutM": "5",
                }
            }
        }
        _LOGGER.debug("Requesting temperature data from %s for %s", thing, device_sns)
        return await self.directory.fetcher.update(
            thing, TEMP_DATA_SHADOW, payload, station.get("mqttRegion")
        )

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_update(self, callback: UpdateCallback) -> UpdateSubscription:
        """Register ``callback(kind, record)`` for device, error and health updates."""
        return self.store.subscribe(callback)

    def remove_update_callback(self, callback: UpdateCallback) -> None:
        self.store.remove_callback(callback)

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def connect_realtime(
        self, house_id: str | None = None, station_id: str | None = None
    ) -> RealtimeChannel:
        """Open (or extend) the realtime channel of a house.

        With *station_id* only that station's topics are added, otherwise
        every station of the house.  A station that exposes a legacy broker
        gets a :class:`~xsentry.realtime.LegacyChannel` instead.

        Raises:
            ApiError: If neither the house nor the station is known.
        """
        station = self.store.get_station(station_id) if station_id else None
        if station_id and station is None:
            raise ApiError(f"Station {station_id} not found")
        if house_id is None and station is not None:
            house_id = station["houseId"]
        house = self.store.get_house(house_id) if house_id else None
        if house is None:
            raise ApiError(f"House {house_id} not found")

        if station is not None:
            legacy_key = f"legacy:{station['stationId']}"
            if legacy_key in self.channels:
                return self.channels[legacy_key]
            config = await self.auth.get_legacy_mqtt_config(station["stationId"])
            if config:
                channel: RealtimeChannel = LegacyChannel(
                    house,
                    self.store,
                    config,
                    station_id=station["stationId"],
                    refresh_station=self.directory.get_station_shadow,
                    reconnect=ReconnectStrategy(),
                )
                self.channels[legacy_key] = channel
                channel.start()
                return channel

        channel = self.channels.get(house["houseId"]) or RealtimeChannel(
            house,
            self.store,
            api=self.api,
            refresh_station=self.directory.get_station_shadow,
            spy=self.spy,
            reconnect=ReconnectStrategy(),
        )
        self.channels[house["houseId"]] = channel
        targets = [station] if station is not None else self.store.stations_in_house(house["houseId"])
        for target in targets:
            await channel.add_station(target)
        channel.start()
        return channel

    async def connect_all_realtime(self) -> list[RealtimeChannel]:
        """Open a realtime channel for every cached house."""
        return [await self.connect_realtime(house_id) for house_id in list(self.store.houses)]

    def _channel_for(self, station: Record) -> RealtimeChannel:
        channel = self.channels.get(f"legacy:{station['stationId']}") or self.channels.get(
            str(station["houseId"])
        )
        if channel is None or not channel.is_connected:
            raise MqttError("MQTT client not connected")
        return channel

    # ------------------------------------------------------------------
    # Commands (MQTT)
    # ------------------------------------------------------------------

    async def mute_alarm(self, device_id: str) -> None:
        """Silence a sounding alarm.

        WiFi alarms are muted through the account's ``mutekey`` shadow, RF
        devices through their station's ``2nd_muteup`` shadow.

        Raises:
            ApiError: If the device is unknown.
            MqttError: If the house has no live realtime connection.
        """
        device = self._require_device(device_id)
        station = self._require_station(device["stationId"])
        user_id = self._user_id(device, station)
        kind = device.get("deviceType") or device.get("type")
        if kind in MUTEKEY_TYPES:
            topic = shadow_topic(user_id, "mutekey")
            payload: Record = {"state": {"desired": {"mute": "1"}}}
        else:
            topic = shadow_topic(user_id, "2nd_muteup")
            payload = {"state": {"desired": {"muteStatus": "1", "deviceSN": device["deviceSn"]}}}
        _LOGGER.info("Muting %s (%s)", device.get("deviceName"), device["deviceSn"])
        await self._channel_for(station).publish(topic, payload)

    async def test_alarm(self, device_id: str) -> None:
        """Sound a device's self-test.

        Raises:
            ApiError: If the device is unknown.
            MqttError: If the house has no live realtime connection.
        """
        device = self._require_device(device_id)
        station = self._require_station(device["stationId"])
        thing = build_thing_name(station)
        payload = {"state": {"desired": {"deviceSN": device["deviceSn"], "alarmTest": "1"}}}
        _LOGGER.info("Testing alarm on %s (%s)", device.get("deviceName"), device["deviceSn"])
        await self._channel_for(station).publish(shadow_topic(thing, TEST_ALARM_SHADOW), payload)

    async def set_station_config(self, station_id: str, config: Record) -> None:
        """Write *config* to the station's ``2nd_info_{sn}`` shadow.

        A WiFi alarm's device id is accepted in place of a station id.

        Raises:
            ApiError: If the station is unknown.
            MqttError: If the house has no live realtime connection.
        """
        station = self.store.get_station(station_id)
        if station is None:
            device = self.store.get_device(station_id)
            if device is not None and is_wifi_category(device.get("deviceType")):
                station = self.store.get_station(device["stationId"])
        if station is None:
            raise ApiError(f"Station not found for ID {station_id}")
        user_id = self._user_id(station, station)
        topic = shadow_topic(user_id, f"2nd_info_{station['stationSn']}")
        _LOGGER.debug("Updating config of %s: %s", station["stationSn"], config)
        await self._channel_for(station).publish(topic, {"state": {"desired": config}})

    # ------------------------------------------------------------------
    # Polling and teardown
    # ------------------------------------------------------------------

    def needs_polling(self) -> bool:
        """True when any house lacks a healthy realtime channel."""
        for house_id in self.store.houses:
            channel = self.channels.get(house_id)
            if channel is None or channel.healthy is not True:
                return True
        return False

    def start_polling(self) -> None:
        """Refresh every ``poll_interval`` seconds while realtime is unhealthy."""
        if self._poll_task is None or self._poll_task.done():
            self._poll_task = asyncio.create_task(self._poll_loop(), name="xsentry-poll")

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if not self.needs_polling():
                continue
            _LOGGER.debug("Polling devices (realtime unhealthy or unknown)")
            try:
                await self.directory.refresh()
            except XSenseError as e:
                _LOGGER.warning("Polling refresh failed: %s", e)

    async def destroy(self) -> None:
        """Stop polling, close every realtime channel and clear the cache."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None
        for channel in list(self.channels.values()):
            await channel.close()
        self.channels.clear()
        self.store.clear()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._api = None
            self._directory = None

    # ------------------------------------------------------------------

    def _require_device(self, device_id: str) -> Record:
        device = self.store.get_device(device_id)
        if device is None:
            raise ApiError(f"Device {device_id} not found")
        return device

    def _require_station(self, station_id: str) -> Record:
        station = self.store.get_station(station_id)
        if station is None:
            raise ApiError(f"Station {station_id} not found")
        return station

    def _user_id(self, record: Record, station: Record) -> str:
        user_id = record.get("userId") or record.get("devUserId") or station.get("userId")
        if not user_id:
            house = self.store.get_house(station["houseId"]) or {}
            user_id = house.get("userId")
        if not user_id:
            raise ApiError("No user id known for this device")
        return str(user_id)


class ClientRegistry:
    """One shared, initialised :class:`Client` per credential pair.

    Concurrent :meth:`get` calls for the same credentials await the same
    initialisation; a failed initialisation is forgotten so the next call
    retries.  Keys are SHA-256 digests, never the credentials themselves.
    """

    def __init__(self, **client_kwargs: Any) -> None:
        self._client_kwargs = client_kwargs
        self._clients: dict[str, asyncio.Task[Client]] = {}

    @staticmethod
    def _key(email: str, password: str) -> str:
        return sha256_hex(f"{email}:{password}")

    async def get(self, email: str, password: str) -> Client:
        """Return the client for these credentials, creating it if needed."""
        key = self._key(email, password)
        task = self._clients.get(key)
        if task is None:
            task = asyncio.create_task(Client.login(email, password, **self._client_kwargs))
            self._clients[key] = task
        try:
            return await asyncio.shield(task)
        except Exception:
            if self._clients.get(key) is task:
                del self._clients[key]
            raise

    async def remove(self, email: str, password: str) -> None:
        """Destroy and forget the client for these credentials."""
        task = self._clients.pop(self._key(email, password), None)
        if task is not None and task.done() and not task.cancelled() and task.exception() is None:
            await task.result().destroy()

    async def close(self) -> None:
        """Destroy every client."""
        tasks = list(self._clients.values())
        self._clients.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, XSenseError):
                    await task
                continue
            if not task.cancelled() and task.exception() is None:
                await task.result().destroy()
