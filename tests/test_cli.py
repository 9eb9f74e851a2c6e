"""Tests for xsentry.cli."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from typer.testing import CliRunner

from xsentry.cli import app
from xsentry.client import Client
from xsentry.errors import AuthFailed, MqttError

runner = CliRunner()

LOGIN_ARGS = ["--email", "user@example.com", "--password", "pw"]


def _make_client() -> Client:
    client = Client("user@example.com", "pw")
    client.store.set_house({"houseId": "101", "houseName": "Home", "userId": "U1"})
    client.store.set_station(
        {
            "stationId": "S1",
            "stationSn": "14998680",
            "stationType": "SBS50",
            "stationName": "Hallway base",
            "houseId": "101",
        }
    )
    client.store.set_device(
        {
            "id": "D1",
            "deviceSn": "12345678",
            "type": "XH02-M",
            "deviceName": "Hall",
            "stationId": "S1",
            "houseId": "101",
            "batInfo": 3,
            "rfLevel": 2,
        }
    )
    client.destroy = AsyncMock()
    return client


def _invoke(client: Client, *args: str) -> Any:
    with patch.object(Client, "login", AsyncMock(return_value=client)):
        return runner.invoke(app, [*LOGIN_ARGS, *args])


class TestMain:
    def test_no_command_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code == 0
        assert "devices" in result.output

    def test_login_error(self):
        with patch.object(Client, "login", AsyncMock(side_effect=AuthFailed("Incorrect password"))):
            result = runner.invoke(app, [*LOGIN_ARGS, "devices"])
        assert result.exit_code == 1
        assert "Error: Incorrect password" in result.output

    def test_credentials_from_environment(self):
        client = _make_client()
        with patch.object(Client, "login", AsyncMock(return_value=client)) as login:
            result = runner.invoke(
                app, ["devices"], env={"XSENSE_EMAIL": "env@example.com", "XSENSE_PASSWORD": "envpw"}
            )
        assert result.exit_code == 0
        login.assert_awaited_once_with("env@example.com", "envpw")
        client.destroy.assert_awaited_once()


class TestDevicesCommand:
    def test_tree(self):
        result = _invoke(_make_client(), "devices")
        assert result.exit_code == 0
        assert "Home" in result.output
        assert "Hallway base" in result.output
        assert "Base station (SN: 14998680)" in result.output
        assert "[D1] Hall" in result.output
        assert "Heat alarm" in result.output

    def test_json(self):
        result = _invoke(_make_client(), "devices", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["devices"][0]["deviceSn"] == "12345678"
        assert data["houses"][0]["houseId"] == "101"

    def test_empty_account(self):
        client = Client("user@example.com", "pw")
        client.destroy = AsyncMock()
        result = _invoke(client, "devices")
        assert result.exit_code == 1
        assert "No devices found." in result.output


class TestGetCommand:
    def test_all_fields(self):
        result = _invoke(_make_client(), "get", "D1")
        assert result.exit_code == 0
        assert "Hall" in result.output
        assert "Battery (battery): full" in result.output
        assert "RF signal (rf-signal): medium" in result.output

    def test_single_field_by_serial(self):
        result = _invoke(_make_client(), "get", "12345678", "battery")
        assert result.exit_code == 0
        assert result.output.strip() == "Battery: full"

    def test_single_field_json(self):
        result = _invoke(_make_client(), "get", "D1", "batInfo", "--json")
        assert json.loads(result.output) == {"batInfo": 3}

    def test_field_not_reported(self):
        result = _invoke(_make_client(), "get", "D1", "co")
        assert result.exit_code == 1
        assert "not reported" in result.output

    def test_unknown_field(self):
        result = _invoke(_make_client(), "get", "D1", "bogus")
        assert result.exit_code == 1
        assert "Unknown field 'bogus'" in result.output

    def test_unknown_device(self):
        result = _invoke(_make_client(), "get", "ghost")
        assert result.exit_code == 1
        assert "Unknown device 'ghost'" in result.output


class TestShadowCommand:
    def test_dumps_document(self):
        client = _make_client()
        client.get_station_state = AsyncMock(return_value={"devs": {"12345678": {"batInfo": "3"}}})
        result = _invoke(client, "shadow", "14998680")
        assert result.exit_code == 0
        assert json.loads(result.output) == {"devs": {"12345678": {"batInfo": "3"}}}
        client.get_station_state.assert_awaited_once_with("S1")

    def test_no_document(self):
        client = _make_client()
        client.get_station_state = AsyncMock(return_value={})
        result = _invoke(client, "shadow", "S1")
        assert result.exit_code == 1
        assert "No shadow document found." in result.output


def _with_channel(client: Client, *, connected: bool = True) -> MagicMock:
    channel = MagicMock()
    channel.wait_connected = AsyncMock(return_value=connected)
    client.connect_realtime = AsyncMock(return_value=channel)
    return channel


class TestDeviceCommands:
    def test_mute(self):
        client = _make_client()
        _with_channel(client)
        client.mute_alarm = AsyncMock()
        result = _invoke(client, "mute", "D1")
        assert result.exit_code == 0
        assert "Mute command sent to Hall." in result.output
        client.connect_realtime.assert_awaited_once_with("101", "S1")
        client.mute_alarm.assert_awaited_once_with("D1")

    def test_mute_cannot_connect(self):
        client = _make_client()
        _with_channel(client, connected=False)
        client.mute_alarm = AsyncMock()
        result = _invoke(client, "mute", "D1")
        assert result.exit_code == 1
        assert "Could not connect" in result.output
        client.mute_alarm.assert_not_awaited()

    def test_test_alarm(self):
        client = _make_client()
        _with_channel(client)
        client.test_alarm = AsyncMock()
        result = _invoke(client, "test-alarm", "12345678")
        assert result.exit_code == 0
        assert "Test command sent to Hall." in result.output
        client.test_alarm.assert_awaited_once_with("D1")

    def test_set_config(self):
        client = _make_client()
        _with_channel(client)
        client.set_station_config = AsyncMock()
        result = _invoke(client, "set-config", "S1", "alarmVol=2", "voiceVol=1")
        assert result.exit_code == 0
        assert "Configuration sent to Hallway base." in result.output
        client.set_station_config.assert_awaited_once_with("S1", {"alarmVol": "2", "voiceVol": "1"})

    def test_set_config_rejects_bad_pair(self):
        with patch.object(Client, "login", AsyncMock()) as login:
            result = runner.invoke(app, [*LOGIN_ARGS, "set-config", "S1", "alarmVol"])
        assert result.exit_code == 1
        assert "Expected KEY=VALUE" in result.output
        login.assert_not_awaited()

    def test_publish_failure(self):
        client = _make_client()
        _with_channel(client)
        client.mute_alarm = AsyncMock(side_effect=MqttError("MQTT client not connected"))
        result = _invoke(client, "mute", "D1")
        assert result.exit_code == 1
        assert "Error: MQTT client not connected" in result.output


class TestWatchCommand:
    @staticmethod
    def _emitting_client(*updates: tuple[str, dict[str, Any]]) -> Client:
        """A client whose realtime connect replays *updates*, then drops."""
        client = _make_client()

        async def connect_all() -> list[Any]:
            for kind, record in updates:
                client.store.emit(kind, record)
            raise MqttError("Connection lost")

        client.connect_all_realtime = AsyncMock(side_effect=connect_all)
        return client

    def test_displays_formatted_updates(self):
        client = self._emitting_client(
            ("device", {"deviceName": "Hall", "batInfo": 1, "alarmStatus": 1}),
            ("health", {"houseId": "101", "healthy": False}),
        )
        result = _invoke(client, "watch")

        assert "Watching for updates..." in result.output
        assert "Hall Battery (battery): low" in result.output
        assert "Hall Alarm (alarm): alarm" in result.output
        assert "House 101 disconnected, reconnecting..." in result.output
        assert "Error: Connection lost" in result.output

    def test_filters_by_field(self):
        client = self._emitting_client(("device", {"deviceName": "Hall", "batInfo": 1, "rfLevel": 3}))
        result = _invoke(client, "watch", "battery")

        assert "Watching Battery (battery)..." in result.output
        assert "Battery (battery): low" in result.output
        assert "RF signal" not in result.output

    def test_error_updates(self):
        client = self._emitting_client(("error", {"type": "SERVER_ERROR", "message": "Server busy"}))
        result = _invoke(client, "watch")
        assert "Server busy" in result.output

    def test_unknown_field(self):
        result = runner.invoke(app, [*LOGIN_ARGS, "watch", "bogus"])
        assert result.exit_code == 1
        assert "Unknown field 'bogus'" in result.output

    def test_unsubscribes_on_exit(self):
        client = self._emitting_client()
        _invoke(client, "watch")
        assert client.store.observers == []
