"""Tests for tccbridge.cli."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from tccbridge.bridge import BridgeClient
from tccbridge.cli import app
from tccbridge.client import Client
from tccbridge.config import Config
from tccbridge.errors import ControlSubmitError, InvalidCredentialsError
from tccbridge.models import EventSource, EventType, SystemMode, ThermostatState
from tccbridge.store import JsonStore
from tccbridge.sync import SyncEngine

runner = CliRunner()

HALL = ThermostatState(
    device_id=1,
    name="Hall",
    current_temp=67.0,
    heat_setpoint=70.0,
    cool_setpoint=73.0,
    system_mode=SystemMode.HEAT,
    humidity=45,
    is_heating=True,
)


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"data_dir": str(tmp_path)}))
    return path


def _invoke(config_file: Path, *args: str, **kwargs: object):
    return runner.invoke(app, ["--config", str(config_file), *args], **kwargs)


class TestCallback:
    def test_no_command_shows_help(self, config_file):
        result = _invoke(config_file)
        assert result.exit_code == 0
        assert "Usage" in result.output

    def test_bad_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[]")
        result = runner.invoke(app, ["--config", str(path), "devices"])
        assert result.exit_code == 1
        assert "must contain a JSON object" in result.output


class TestLogin:
    def test_saves_verified_credentials(self, config_file, tmp_path):
        with patch.object(SyncEngine, "test_connection", AsyncMock(return_value=[HALL])):
            result = _invoke(
                config_file, "login", "--username", "user@example.com", "--password", "pw"
            )
        assert result.exit_code == 0, result.output
        assert "1 device(s) found" in result.output

        restored = Client.from_saved(Config(data_dir=tmp_path))
        assert restored.session.get_credentials() == ("user@example.com", "pw")

    def test_writes_default_config_when_missing(self, tmp_path, monkeypatch):
        monkeypatch.setattr("tccbridge.config.CONFIG_DIR", tmp_path)
        path = tmp_path / "new" / "config.json"
        with patch.object(SyncEngine, "test_connection", AsyncMock(return_value=[HALL])):
            result = runner.invoke(
                app,
                ["--config", str(path), "login", "--username", "u@example.com", "--password", "pw"],
            )
        assert result.exit_code == 0, result.output
        saved = Config.load(path)
        assert saved.data_dir == tmp_path
        assert saved.poll_interval == 600
        assert (tmp_path / "credentials.json").exists()

    def test_failure_saves_nothing(self, config_file, tmp_path):
        mock = AsyncMock(side_effect=InvalidCredentialsError("Login failed: invalid credentials."))
        with patch.object(SyncEngine, "test_connection", mock):
            result = _invoke(
                config_file, "login", "--username", "user@example.com", "--password", "pw"
            )
        assert result.exit_code == 1
        assert "Login failed. Run with --debug for details." in result.output
        assert not (tmp_path / "credentials.json").exists()


class TestDevices:
    def test_requires_credentials(self, config_file):
        result = _invoke(config_file, "devices")
        assert result.exit_code == 1
        assert "No saved credentials" in result.output

    def test_lists_devices(self, config_file):
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "poll_once", AsyncMock(return_value=[HALL])),
        ):
            result = _invoke(config_file, "devices")
        assert result.exit_code == 0, result.output
        assert "[1] Hall" in result.output

    def test_none_found(self, config_file):
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "poll_once", AsyncMock(return_value=[])),
        ):
            result = _invoke(config_file, "devices")
        assert result.exit_code == 1
        assert "No devices found" in result.output


class TestStatus:
    def test_text(self, config_file):
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "poll_once", AsyncMock(return_value=[HALL])),
        ):
            result = _invoke(config_file, "status")
        assert result.exit_code == 0, result.output
        assert "Hall [1]: 67.0°F" in result.output
        assert "mode heat (heating)" in result.output

    def test_json(self, config_file):
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "poll_once", AsyncMock(return_value=[HALL])),
        ):
            result = _invoke(config_file, "status", "1", "--json")
        assert result.exit_code == 0, result.output
        (data,) = json.loads(result.stdout)
        assert data["device_id"] == 1
        assert data["system_mode"] == "heat"

    def test_unknown_device(self, config_file):
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "poll_once", AsyncMock(return_value=[HALL])),
        ):
            result = _invoke(config_file, "status", "99")
        assert result.exit_code == 1


class TestSet:
    def test_heat(self, config_file):
        mock = AsyncMock(return_value=HALL)
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "set_setpoint", mock),
        ):
            result = _invoke(config_file, "set", "heat", "70")
        assert result.exit_code == 0, result.output
        mock.assert_awaited_once_with("heat", 70.0, None, celsius=False, source=EventSource.USER)

    def test_cool_celsius_for_device(self, config_file):
        mock = AsyncMock(return_value=None)
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "set_setpoint", mock),
        ):
            result = _invoke(config_file, "set", "cool", "24.5", "--device", "7", "--celsius")
        assert result.exit_code == 0, result.output
        assert "Cool setpoint sent." in result.output
        mock.assert_awaited_once_with("cool", 24.5, 7, celsius=True, source=EventSource.USER)

    def test_invalid_kind(self, config_file):
        result = _invoke(config_file, "set", "fan", "70")
        assert result.exit_code == 1
        assert "Expected: heat | cool" in result.output

    def test_failure_is_generic(self, config_file):
        mock = AsyncMock(side_effect=ControlSubmitError(500, "Server Error"))
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "set_setpoint", mock),
        ):
            result = _invoke(config_file, "set", "heat", "70")
        assert result.exit_code == 1
        assert "Setpoint change failed. Run with --debug for details." in result.output
        assert "Server Error" not in result.output


class TestMode:
    def test_mode(self, config_file):
        mock = AsyncMock(return_value=HALL)
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "set_mode", mock),
        ):
            result = _invoke(config_file, "mode", "cool")
        assert result.exit_code == 0, result.output
        mock.assert_awaited_once_with("cool", None, source=EventSource.USER)

    def test_invalid_mode(self, config_file):
        mock = AsyncMock(side_effect=ValueError("Invalid system mode 'turbo'."))
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(SyncEngine, "set_mode", mock),
        ):
            result = _invoke(config_file, "mode", "turbo")
        assert result.exit_code == 1
        assert "Invalid system mode 'turbo'." in result.output


class TestEvents:
    def test_empty(self, config_file):
        result = _invoke(config_file, "events")
        assert result.exit_code == 0
        assert "No events." in result.output

    def test_newest_first(self, config_file, tmp_path):
        store = JsonStore(tmp_path / "state.json")
        store.log_event(EventSource.TCC, EventType.STATE_CHANGE, "first")
        store.log_event(EventSource.HOMEKIT, EventType.TEMP_CHANGE, "second")

        result = _invoke(config_file, "events", "--limit", "5")
        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert "second" in lines[0]
        assert "homekit" in lines[0]
        assert "first" in lines[1]

    def test_json(self, config_file, tmp_path):
        JsonStore(tmp_path / "state.json").log_event(EventSource.USER, EventType.INFO, "hi")
        result = _invoke(config_file, "events", "--json")
        (event,) = json.loads(result.stdout)
        assert event["message"] == "hi"
        assert event["source"] == "user"


class TestRun:
    def test_runs_engine_and_listener(self, config_file):
        subscription = AsyncMock()
        listen = AsyncMock(return_value=subscription)
        engine_run = AsyncMock()
        with (
            patch("tccbridge.cli.Client.from_saved", return_value=Client()),
            patch.object(BridgeClient, "listen", listen),
            patch.object(SyncEngine, "run", engine_run),
        ):
            result = _invoke(config_file, "run")
        assert result.exit_code == 0, result.output
        engine_run.assert_awaited_once()
        listen.assert_awaited_once()
        subscription.wait.assert_awaited_once()
        subscription.stop.assert_awaited_once()
