"""tests/rpi_onewire/test_main.py — 設定ロード・MQTT 接続・--once / デーモン実行のテスト

MQTT クライアントと SensorPoller は mock で置き換え、sysfs は tmp_path 上のダミー構造を使う。
"""

from __future__ import annotations

import asyncio
import io
import json
import os
import signal
import struct
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rpi_onewire.main import (
    DEFAULT_CONFIG,
    connect_mqtt,
    load_config,
    main,
    run_daemon,
    run_once,
)


@pytest.fixture
def w1_dir(tmp_path):
    base = tmp_path / "w1"
    base.mkdir()
    (base / "w1_bus_master1").mkdir()
    dev = base / "10-000802a1b3c4"
    dev.mkdir()
    (dev / "id").write_bytes(struct.pack("<Q", 0x7F000802A1B3C410))
    (dev / "w1_slave").write_text(
        "aa 00 4b 46 ff ff 0c 10 87 : crc=87 YES\n"
        "aa 00 4b 46 ff ff 0c 10 87 t=85000\n"
    )
    return base


# ------------------------------------------------------------------ #
# load_config
# ------------------------------------------------------------------ #

class TestLoadConfig:
    def test_defaults(self):
        config = load_config(None)
        assert config == DEFAULT_CONFIG
        assert config["onewire"]["base_path"] == "/sys/bus/w1/devices"
        assert config["onewire"]["single_device_ok"] is False

    def test_defaults_are_copied(self):
        load_config(None)["onewire"]["activate"] = False
        assert DEFAULT_CONFIG["onewire"]["activate"] is True

    def test_merges_sections(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("onewire:\n  activate: false\nmqtt:\n  enabled: true\n  broker: 10.0.0.5\n")
        config = load_config(str(path))
        assert config["onewire"]["activate"] is False
        assert config["onewire"]["modules"] == ["w1_gpio", "w1_therm"]
        assert config["mqtt"]["broker"] == "10.0.0.5"
        assert config["mqtt"]["port"] == 1883

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(str(path)) == DEFAULT_CONFIG

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_empty_sections_keep_defaults(self, tmp_path, w1_dir):
        """中身がコメントだけのセクションは既定値のまま使われること"""
        path = tmp_path / "config.yaml"
        path.write_text("onewire:\n  # base_path: /sys/bus/w1/devices\nmqtt:\ndaemon:\n")
        config = load_config(str(path))
        assert config == DEFAULT_CONFIG

        config["onewire"]["base_path"] = str(w1_dir)
        config["onewire"]["activate"] = False
        assert run_once(config, io.StringIO()) == 0

    def test_section_not_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("mqtt: localhost\n")
        with pytest.raises(ValueError, match="'mqtt' must be a mapping"):
            load_config(str(path))

    def test_root_not_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- onewire\n")
        with pytest.raises(ValueError, match="root must be a mapping"):
            load_config(str(path))

    def test_unknown_section_kept(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("extra:\n  key: 1\n")
        assert load_config(str(path))["extra"] == {"key": 1}

    def test_main_invalid_config(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("onewire: 3\n")
        with pytest.raises(SystemExit) as exc:
            main(["--config", str(path), "--once"])
        assert exc.value.code == 1


# ------------------------------------------------------------------ #
# connect_mqtt
# ------------------------------------------------------------------ #

class TestConnectMqtt:
    def test_disabled(self):
        with patch("rpi_onewire.main.paho_mqtt.Client") as mock_client:
            assert connect_mqtt({"enabled": False}) is None
        mock_client.assert_not_called()

    def test_connects(self):
        client = MagicMock()
        with patch("rpi_onewire.main.paho_mqtt.Client", return_value=client):
            result = connect_mqtt({**DEFAULT_CONFIG["mqtt"], "enabled": True, "broker": "mq"})
        assert result is client
        client.connect.assert_called_once_with("mq", 1883, keepalive=60)
        client.loop_start.assert_called_once()

    def test_connect_failure(self):
        client = MagicMock()
        client.connect.side_effect = ConnectionRefusedError("refused")
        with patch("rpi_onewire.main.paho_mqtt.Client", return_value=client):
            assert connect_mqtt({"enabled": True}) is None
        client.loop_start.assert_not_called()


# ------------------------------------------------------------------ #
# run_once / main --once
# ------------------------------------------------------------------ #

class TestRunOnce:
    def _config(self, base):
        config = load_config(None)
        config["onewire"]["base_path"] = str(base)
        config["onewire"]["activate"] = False
        return config

    def test_prints_json_lines(self, w1_dir):
        out = io.StringIO()
        assert run_once(self._config(w1_dir), out) == 0
        record = json.loads(out.getvalue())
        assert record == {
            "device_id": "10-000802a1b3c4",
            "serial": "000802a1b3c4",
            "device_type": "DS18S20",
            "temperature_c": 85.0,
        }

    def test_failure_returns_1(self, tmp_path):
        out = io.StringIO()
        assert run_once(self._config(tmp_path), out) == 1
        assert out.getvalue() == ""

    def test_main_once(self, w1_dir, tmp_path, capsys):
        cfg = tmp_path / "config.yaml"
        cfg.write_text(f"onewire:\n  base_path: {w1_dir}\n")
        with pytest.raises(SystemExit) as exc:
            main(["--config", str(cfg), "--once", "--no-activate"])
        assert exc.value.code == 0
        assert json.loads(capsys.readouterr().out)["device_type"] == "DS18S20"

    def test_main_missing_config(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main(["--config", str(tmp_path / "nope.yaml"), "--once"])
        assert exc.value.code == 1


# ------------------------------------------------------------------ #
# run_daemon / main (デーモンモード)
# ------------------------------------------------------------------ #

class _FakePoller:
    """run() がキャンセルされるまで待つ SensorPoller の代役。"""

    instances: list["_FakePoller"] = []

    def __init__(self, config, mqtt_client=None, output=None):
        self.mqtt_client = mqtt_client
        self.output = output
        self.cancelled = False
        _FakePoller.instances.append(self)

    def setup(self):
        pass

    async def run(self):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class TestRunDaemon:
    @pytest.fixture(autouse=True)
    def _reset(self):
        _FakePoller.instances.clear()

    def _config(self, base):
        config = load_config(None)
        config["onewire"]["base_path"] = str(base)
        config["onewire"]["activate"] = False
        return config

    def test_sigterm_stops_poller_and_mqtt(self, w1_dir):
        client = MagicMock()

        async def _scenario():
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, os.kill, os.getpid(), signal.SIGTERM)
            await run_daemon(self._config(w1_dir))

        with patch("rpi_onewire.main.connect_mqtt", return_value=client), \
                patch("rpi_onewire.main.SensorPoller", _FakePoller):
            asyncio.run(_scenario())

        poller = _FakePoller.instances[0]
        assert poller.cancelled is True
        assert poller.mqtt_client is client
        assert poller.output is None
        client.loop_stop.assert_called_once()
        client.disconnect.assert_called_once()

    def test_json_lines_without_mqtt(self, w1_dir):
        async def _scenario():
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, os.kill, os.getpid(), signal.SIGINT)
            await run_daemon(self._config(w1_dir))

        with patch("rpi_onewire.main.connect_mqtt", return_value=None), \
                patch("rpi_onewire.main.SensorPoller", _FakePoller):
            asyncio.run(_scenario())

        assert _FakePoller.instances[0].cancelled is True
        assert _FakePoller.instances[0].output is not None

    def test_discovery_failure_exits_1_and_closes_mqtt(self, tmp_path):
        """列挙失敗時も MQTT クライアントを停止し、終了コード 1 で終わること"""
        empty = tmp_path / "w1"
        empty.mkdir()
        cfg = tmp_path / "config.yaml"
        cfg.write_text(f"onewire:\n  base_path: {empty}\n")
        client = MagicMock()

        with patch("rpi_onewire.main.connect_mqtt", return_value=client):
            with pytest.raises(SystemExit) as exc:
                main(["--config", str(cfg), "--no-activate"])

        assert exc.value.code == 1
        client.loop_stop.assert_called_once()
        client.disconnect.assert_called_once()

    def test_interval_overrides_config(self, tmp_path):
        cfg = tmp_path / "config.yaml"
        cfg.write_text("daemon:\n  interval_sec: 30\n")
        seen: dict = {}

        async def _fake_run_daemon(config):
            seen.update(config)

        with patch("rpi_onewire.main.run_daemon", _fake_run_daemon):
            main(["--config", str(cfg), "--interval", "2.5", "--no-activate"])

        assert seen["daemon"]["interval_sec"] == 2.5
        assert seen["onewire"]["activate"] is False


# ------------------------------------------------------------------ #
# 設定例ファイルとの整合性
# ------------------------------------------------------------------ #

class TestExampleConfig:
    def test_example_config_matches_defaults(self):
        """config/rpi_onewire.yaml の値が DEFAULT_CONFIG と一致すること"""
        root = Path(__file__).resolve().parents[2]
        config = load_config(str(root / "config" / "rpi_onewire.yaml"))
        assert config == DEFAULT_CONFIG
