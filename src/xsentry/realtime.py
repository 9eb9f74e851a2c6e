"""Realtime push over MQTT.

One :class:`RealtimeChannel` is opened per house.  It connects to the
house's AWS IoT broker over a SigV4-presigned WebSocket, subscribes to the
shadow and event topics of every station added to it, and merges incoming
messages into the :class:`~xsentry.store.StateStore`.

The presigned URL expires, so the channel disconnects and reconnects with
a fresh signature every ``signature_refresh_interval`` seconds.  Lost
connections are retried with :class:`~xsentry.backoff.ReconnectStrategy`.

:class:`LegacyChannel` speaks to the older username/password broker some
accounts still expose.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import ssl
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import Any
from urllib.parse import urlsplit

import aiohttp
import aiomqtt

from xsentry._constants import (
    LEGACY_MQTT_PORT,
    MQTT_CLIENT_PREFIX,
    MQTT_PATH,
    MQTT_PORT,
    MQTT_USERNAME,
    SIGNATURE_REFRESH_INTERVAL,
    TEMP_DATA_DEBOUNCE,
)
from xsentry.api import ApiClient
from xsentry.backoff import ReconnectStrategy
from xsentry.errors import MqttError, SigningError, XSenseError
from xsentry.shadows import build_thing_name, is_wifi_category, station_type
from xsentry.store import Record, StateStore, lift_status

_LOGGER = logging.getLogger(__name__)

StationRefresher = Callable[[Record], Awaitable[Any]]

EVENT_PREFIXES = ("@xsense/events/", "@claybox/events/")
TEMP_LOG_SHADOWS = frozenset({"2nd_tempdatalog", "2nd_apptempdata"})

# Named shadows a WiFi alarm publishes under its own thing.
WIFI_TOPIC_SHADOWS = (
    "mainpage",
    "pwordup",
    "muteup",
    "2nd_systime",
    "2nd_alarm_status",
    "alarm_status",
    "2nd_sensor_data",
    "sensor_data",
)
# Named shadows an RF base station publishes; those in the second set
# also get their accepted/delta topics.
RF_TOPIC_SHADOWS = (
    "2nd_systime",
    "2nd_mainpage",
    "2nd_tempdatalog",
    "2nd_apptempdata",
    "2nd_extendmuteup",
    "2nd_extendalarm",
    "2nd_device_info",
)
RF_ACK_SHADOWS = frozenset({"2nd_systime", "2nd_mainpage", "2nd_device_info"})

HOUSE_EVENT_FAMILIES = (
    "house",
    "safealarm",
    "shareadd",
    "shareupt",
    "lampgroup",
    "lampsched",
    "securityplan",
)
DEVICE_EVENT_TOPICS = (
    "@xsense/events/tempcleanlog/{sn}",
    "@xsense/events/master/{sn}",
    "@claybox/events/sospush/{sn}",
    "@claybox/events/keyboard/{sn}",
)
SPY_TOPICS = ("xsense/#", "events/#", "device/#", "station/#", "+", "+/+", "+/+/+")

# Keys of a reported document that never name a device.
_NON_DEVICE_KEYS = frozenset(
    {
        "stationSN",
        "stationSn",
        "deviceSN",
        "devs",
        "wifiRSSI",
        "wifiRssi",
        "type",
        "sw",
        "deleted",
    }
)

_SHADOW_TOPIC_RE = re.compile(r"^\$aws/things/(?P<thing>[^/]+)/shadow(?:/name/(?P<name>[^/]+))?/")
_DATE_KEY_RE = re.compile(r"^\d{8}$")

# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------


def shadow_topic(thing: str, name: str | None = None, suffix: str = "update") -> str:
    """``$aws/things/{thing}/shadow[/name/{name}]/{suffix}``."""
    base = f"$aws/things/{thing}/shadow"
    if name:
        base += f"/name/{name}"
    return f"{base}/{suffix}"


def house_topics(house: Record, *, spy: bool = False) -> list[str]:
    """House-wide event and shadow topics."""
    house_id = house["houseId"]
    topics = [f"@xsense/events/+/{house_id}", shadow_topic(house_id, "+")]
    user_id = house.get("userId")
    if user_id:
        topics += [
            shadow_topic(user_id, house_id),
            shadow_topic(user_id, f"house_{house_id}"),
            shadow_topic(user_id, "+"),
            shadow_topic(user_id),
        ]
    if spy:
        topics += SPY_TOPICS
    return topics


def station_topics(station: Record) -> list[str]:
    """Topics carrying a station's (or a WiFi alarm's) state changes."""
    thing = build_thing_name(station)
    if is_wifi_category(station_type(station)):
        if not thing:
            return []
        topics: list[str] = []
        for name in WIFI_TOPIC_SHADOWS:
            topics += [shadow_topic(thing, name), shadow_topic(thing, name, "update/accepted")]
        return topics + [shadow_topic(thing), shadow_topic(thing, "+")]

    topics = []
    if thing:
        topics += [shadow_topic(thing, "+"), f"$aws/events/presence/+/{thing}"]
    user_id = station.get("userId")
    if not user_id:
        return topics
    station_id = station.get("stationId")
    sn = station.get("stationSn")
    topics += [shadow_topic(user_id, name) for name in (station_id, sn) if name]
    if thing:
        for name in RF_TOPIC_SHADOWS:
            topics.append(shadow_topic(thing, name))
            if name in RF_ACK_SHADOWS:
                topics += [
                    shadow_topic(thing, name, "update/accepted"),
                    shadow_topic(thing, name, "update/delta"),
                ]
    if station_id:
        topics.append(shadow_topic(user_id, f"station_{station_id}"))
    topics += [shadow_topic(user_id, "+"), shadow_topic(user_id)]
    house_id = station.get("houseId")
    if house_id:
        topics += [f"@xsense/events/{family}/{house_id}" for family in HOUSE_EVENT_FAMILIES]
    if thing and sn:
        topics += [template.format(sn=sn) for template in DEVICE_EVENT_TOPICS]
    return topics


def legacy_topics(house_id: str, station_id: str) -> list[str]:
    """Topics of the legacy broker."""
    return [
        f"house/{house_id}/event",
        f"house/{house_id}/shadow/+/update",
        f"house/{house_id}/presence/station/{station_id}",
    ]


def parse_temp_readings(reported: Record) -> list[tuple[str, float, float]]:
    """Latest ``(deviceSN, temperature, humidity)`` per entry of a temperature log.

    Log entries look like ``{"deviceSN": ..., "20260115": ["030500,18.4,51.2", ...]}``;
    malformed entries are skipped.
    """
    readings: list[tuple[str, float, float]] = []
    entries = reported.get("data")
    if not isinstance(entries, list):
        return readings
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        sn = entry.get("deviceSN") or entry.get("deviceSn")
        dates = sorted(k for k in entry if _DATE_KEY_RE.match(k))
        if not sn or not dates:
            continue
        rows = entry[dates[-1]]
        if not isinstance(rows, list) or not rows:
            continue
        parts = str(rows[-1]).split(",")
        if len(parts) != 3:
            _LOGGER.warning("Invalid temperature log row for %s: %s", sn, rows[-1])
            continue
        try:
            readings.append((str(sn), float(parts[1]), float(parts[2])))
        except ValueError:
            _LOGGER.warning("Invalid temperature log values for %s: %s", sn, rows[-1])
    return readings


# ---------------------------------------------------------------------------
# Channel
# ---------------------------------------------------------------------------


class RealtimeChannel:
    """Long-lived MQTT connection for one house.

    Args:
        house: House record (``houseId``, ``mqttServer``, ``mqttRegion``).
        store: Cache that incoming messages are merged into.
        api: Source of the IoT credentials used to presign the broker URL.
        refresh_station: Coroutine re-fetching a station's shadow; called
            (debounced) when a temperature log announces new data.
        spy: Also subscribe to broad wildcard topics.
        signature_refresh_interval: Seconds between re-signed reconnects;
            ``None`` keeps a connection open indefinitely.
        reconnect: Reconnect pacing (a default strategy when omitted).
        clock: Monotonic clock used for the temperature-log debounce.
    """

    def __init__(
        self,
        house: Record,
        store: StateStore,
        *,
        api: ApiClient | None = None,
        refresh_station: StationRefresher | None = None,
        spy: bool = False,
        signature_refresh_interval: float | None = SIGNATURE_REFRESH_INTERVAL,
        reconnect: ReconnectStrategy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.house = house
        self.store = store
        self.api = api
        self.refresh_station = refresh_station
        self.signature_refresh_interval = signature_refresh_interval
        self.reconnect = reconnect or ReconnectStrategy()
        self._clock = clock
        self.topics: list[str] = []
        self.subscriptions: set[str] = set()
        self.healthy: bool | None = None
        self._client: aiomqtt.Client | None = None
        self._task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._last_temp_fetch: dict[str, float] = {}
        self._connected = asyncio.Event()
        self.add_topics(self.base_topics(spy))

    @property
    def house_id(self) -> str:
        return str(self.house["houseId"])

    @property
    def is_connected(self) -> bool:
        """True while a broker connection is established."""
        return self._client is not None

    async def wait_connected(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for a broker connection."""
        try:
            async with asyncio.timeout(timeout):
                await self._connected.wait()
        except TimeoutError:
            return False
        return True

    def base_topics(self, spy: bool) -> list[str]:
        return house_topics(self.house, spy=spy)

    def add_topics(self, topics: Iterable[str]) -> list[str]:
        """Record *topics* for every future connection; returns the new ones."""
        added = []
        for topic in topics:
            if topic not in self.topics:
                self.topics.append(topic)
                added.append(topic)
        return added

    async def add_station(self, station: Record) -> None:
        """Subscribe to a station's topics, now if connected, else on connect."""
        added = self.add_topics(station_topics(station))
        if added and self._client is not None:
            await self._subscribe(self._client, added)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background connection loop (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"xsentry-mqtt-{self.house_id}")

    async def close(self) -> None:
        """Stop the connection loop and pending shadow re-fetches."""
        tasks = [t for t in (self._task, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        self._task = None
        self._background.clear()
        self._client = None
        self.subscriptions.clear()
        self._connected.clear()

    async def publish(self, topic: str, payload: Record) -> None:
        """Publish a JSON document on the live connection.

        Raises:
            MqttError: When not connected or the publish fails.
        """
        client = self._client
        if client is None:
            raise MqttError(f"Realtime channel for house {self.house_id} is not connected")
        _LOGGER.debug("Publishing to %s: %s", topic, payload)
        try:
            await client.publish(topic, json.dumps(payload), qos=1)
        except aiomqtt.MqttError as e:
            raise MqttError(f"MQTT publish failed: {e}") from e

    async def connect_params(self) -> dict[str, Any]:
        """aiomqtt.Client keyword arguments for a freshly presigned connection.

        Raises:
            SigningError: Without IoT credentials or broker details.
        """
        if self.api is None:
            raise SigningError("No API client to obtain IoT credentials from")
        host = self.house.get("mqttServer")
        region = self.house.get("mqttRegion")
        if not host or not region:
            raise SigningError(f"House {self.house_id} has no MQTT server or region")
        await self.api.ensure_iot_credentials()
        url = self.api.auth.signer.presign_websocket_url(f"wss://{host}{MQTT_PATH}", region)
        parts = urlsplit(url)
        return {
            "hostname": host,
            "port": MQTT_PORT,
            "transport": "websockets",
            "websocket_path": f"{parts.path}?{parts.query}",
            "websocket_headers": {"Origin": f"https://{host}"},
            "identifier": f"{MQTT_CLIENT_PREFIX}-{uuid.uuid4().hex[:12]}",
            "username": MQTT_USERNAME,
            "password": "",
            "protocol": aiomqtt.ProtocolVersion.V5,
            "tls_context": ssl.create_default_context(),
        }

    async def _run(self) -> None:
        """Connect, subscribe and dispatch until cancelled.

        A connection that reaches the signature refresh interval is closed
        and reopened at once; a failed one waits for the reconnect delay.
        CancelledError is not caught, so :meth:`close` ends the loop.
        """
        while True:
            try:
                params = await self.connect_params()
                async with aiomqtt.Client(**params) as client:
                    self._client = client
                    self.subscriptions.clear()
                    self._connected.set()
                    self.reconnect.reset()
                    self._set_health(True)
                    _LOGGER.info("Realtime channel connected for house %s", self.house_id)
                    try:
                        await self._subscribe(client, self.topics)
                        await self._listen(client)
                    finally:
                        self._client = None
                        self._connected.clear()
                continue
            except aiomqtt.MqttError as e:
                _LOGGER.warning("Realtime connection for house %s lost: %s", self.house_id, e)
            except XSenseError as e:
                _LOGGER.warning("Cannot connect realtime channel for house %s: %s", self.house_id, e)
            except (aiohttp.ClientError, TimeoutError, OSError) as e:
                _LOGGER.warning("Credential refresh for house %s failed: %r", self.house_id, e)
            self._set_health(False)
            delay = self.reconnect.next_delay()
            _LOGGER.warning(
                "Reconnecting house %s in %.1fs (attempt %d)",
                self.house_id,
                delay,
                self.reconnect.attempt,
            )
            await asyncio.sleep(delay)

    async def _listen(self, client: aiomqtt.Client) -> None:
        try:
            async with asyncio.timeout(self.signature_refresh_interval):
                async for message in client.messages:
                    self.handle_message(message.topic.value, message.payload)
        except TimeoutError:
            _LOGGER.info("Re-signing realtime connection for house %s", self.house_id)
            return
        raise aiomqtt.MqttError("Broker closed the message stream")

    async def _subscribe(self, client: aiomqtt.Client, topics: Iterable[str]) -> None:
        for topic in topics:
            if topic in self.subscriptions:
                continue
            await client.subscribe(topic, qos=0)
            self.subscriptions.add(topic)
            _LOGGER.debug("Subscribed to %s", topic)

    def _set_health(self, healthy: bool) -> None:
        self.healthy = healthy
        self.store.emit("health", {"houseId": self.house_id, "healthy": healthy})

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle_message(self, topic: str, payload: bytes | bytearray | str | Any) -> None:
        """Route one incoming message by topic and merge it into the store."""
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")
        try:
            data = json.loads(payload)
        except (TypeError, ValueError):
            _LOGGER.warning("Unparsable MQTT payload on %s", topic)
            return
        _LOGGER.debug("MQTT %s: %s", topic, data)
        if not isinstance(data, dict):
            return

        if topic.startswith(EVENT_PREFIXES) or topic.endswith("/event"):
            self._handle_event(data)
            return
        match = _SHADOW_TOPIC_RE.match(topic)
        if match and match["name"] in TEMP_LOG_SHADOWS:
            self._handle_temp_log(data, match["thing"])
            return
        self._handle_shadow_update(data)

    def _handle_shadow_update(self, data: Record) -> None:
        state = data.get("state")
        reported = state.get("reported") if isinstance(state, dict) else None
        if not isinstance(reported, dict):
            return

        station_sn = reported.get("stationSN") or reported.get("stationSn")
        devs = reported.get("devs")
        if isinstance(devs, dict):
            self.store.merge_devs(devs)
            station = self.store.station_by_sn(station_sn)
            if station is not None:
                rssi = reported.get("wifiRSSI", reported.get("wifiRssi"))
                if rssi is not None:
                    self.store.merge_station(station["stationId"], {"wifiRssi": rssi})
            return

        for key, value in reported.items():
            if key in _NON_DEVICE_KEYS or not isinstance(value, dict):
                continue
            if "type" not in value and "batInfo" not in value:
                continue
            device = self.store.device_by_sn(key) or self.store.device_by_sn(value.get("stationSN"))
            if device is not None:
                self.store.merge_device(device["id"], lift_status(value))
                return

        sn = reported.get("deviceSN") or station_sn
        device = self.store.device_by_sn(sn)
        if device is None:
            _LOGGER.debug("Shadow update for unknown serial %s", sn)
            return
        self.store.merge_device(device["id"], lift_status(reported))

    def _handle_temp_log(self, data: Record, thing: str) -> None:
        state = data.get("state")
        reported = state.get("reported") if isinstance(state, dict) else None
        if not isinstance(reported, dict):
            return

        for sn, temperature, humidity in parse_temp_readings(reported):
            device = self.store.device_by_sn(sn)
            if device is None:
                _LOGGER.warning("Temperature data for unknown device %s", sn)
                continue
            self.store.merge_device(
                device["id"],
                {
                    "temperature": temperature,
                    "humidity": humidity,
                    "lastTempUpdate": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
                },
            )

        station = self.store.station_by_sn(reported.get("stationSN") or reported.get("stationSn"))
        if station is None:
            station = next(
                (s for s in self.store.stations.values() if s.get("shadowName") == thing), None
            )
        if station is None or self.refresh_station is None:
            return
        station_id = station["stationId"]
        now = self._clock()
        last = self._last_temp_fetch.get(station_id)
        if last is not None and now - last < TEMP_DATA_DEBOUNCE:
            _LOGGER.debug("Temperature log re-fetch for %s debounced", station_id)
            return
        self._last_temp_fetch[station_id] = now
        task = asyncio.create_task(self._refresh(station))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(self, station: Record) -> None:
        assert self.refresh_station is not None
        try:
            await self.refresh_station(station)
        except XSenseError as e:
            _LOGGER.warning("Shadow re-fetch for station %s failed: %s", station["stationId"], e)

    def _handle_event(self, data: Record) -> None:
        sn = data.get("deviceSN")
        device = self.store.device_by_sn(sn)
        if device is None:
            return
        _LOGGER.info("Event for %s: %s (alarm %s)", sn, data.get("event", "update"), data.get("alarmStatus"))
        self.store.merge_device(device["id"], data)


class LegacyChannel(RealtimeChannel):
    """Realtime channel on the legacy username/password broker.

    *config* is the broker document returned for a station: ``broker``
    (or ``url``/``host``), ``username`` (or ``user``), ``password`` (or
    ``pass``) and an optional ``clientId``.
    """

    def __init__(
        self,
        house: Record,
        store: StateStore,
        config: Record,
        *,
        station_id: str,
        **kwargs: Any,
    ) -> None:
        self.config = config
        self.station_id = station_id
        kwargs.setdefault("signature_refresh_interval", None)
        super().__init__(house, store, **kwargs)

    def base_topics(self, spy: bool) -> list[str]:
        return legacy_topics(self.house_id, self.station_id)

    async def add_station(self, station: Record) -> None:
        added = self.add_topics(legacy_topics(self.house_id, station["stationId"]))
        if added and self._client is not None:
            await self._subscribe(self._client, added)

    async def connect_params(self) -> dict[str, Any]:
        broker = self.config.get("broker") or self.config.get("url") or self.config.get("host")
        if not broker:
            raise SigningError("Legacy MQTT config has no broker address")
        broker = str(broker)
        parts = urlsplit(broker if "://" in broker else f"mqtts://{broker}")
        scheme = parts.scheme.lower()
        default_ports = {"mqtts": LEGACY_MQTT_PORT, "ssl": LEGACY_MQTT_PORT, "wss": 443, "ws": 80}
        params: dict[str, Any] = {
            "hostname": parts.hostname,
            "port": parts.port or default_ports.get(scheme, 1883),
            "username": self.config.get("username") or self.config.get("user"),
            "password": self.config.get("password") or self.config.get("pass"),
            "identifier": self.config.get("clientId")
            or f"{MQTT_CLIENT_PREFIX}-{uuid.uuid4().hex[:12]}",
        }
        if scheme in ("mqtts", "ssl", "wss"):
            params["tls_context"] = ssl.create_default_context()
        if scheme in ("ws", "wss"):
            params["transport"] = "websockets"
            params["websocket_path"] = parts.path or MQTT_PATH
        return params
