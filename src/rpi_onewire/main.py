"""rpi-onewire: DS18S20/DS18B20 1-Wire 温度センサー読み取りデーモン。

  --once  : 列挙 + 1 回読み取り → JSON Lines を標準出力に書いて終了
  既定    : SensorPoller で周期読み取り → MQTT publish（mqtt.enabled 時）+ JSON Lines

SIGTERM/SIGINT で graceful shutdown する。
"""

from __future__ import annotations

import argparse
import asyncio
import copy
import json
import logging
import signal
import sys
from pathlib import Path
from typing import IO, Any, Optional

import paho.mqtt.client as paho_mqtt
import yaml

from .bus import DEFAULT_MODULES, load_devices, read_devices
from .ds1820 import W1_BASE
from .errors import OneWireError
from .poller import SensorPoller

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, dict[str, Any]] = {
    "onewire": {
        "base_path": W1_BASE,
        "activate": True,
        "modules": list(DEFAULT_MODULES),
        "single_device_ok": False,
    },
    "daemon": {
        "interval_sec": 10,
    },
    "mqtt": {
        "enabled": False,
        "broker": "localhost",
        "port": 1883,
        "client_id": "rpi-onewire",
        "keepalive": 60,
        "topic_prefix": "onewire/sensor",
    },
}


# ------------------------------------------------------------------ #
# 設定ロード
# ------------------------------------------------------------------ #

def load_config(config_path: Optional[str] = None) -> dict[str, Any]:
    """設定YAMLを読み込み、既定値にセクション単位でマージして返す。

    config_path が None の場合は既定値のみ。

    Raises:
        FileNotFoundError: ファイルが存在しない場合
        ValueError: 既知のセクションがマッピングでない場合
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if config_path is None:
        return config

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    with path.open() as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config root must be a mapping: {config_path}")

    for section, values in loaded.items():
        # 中身が空のセクション (例: "mqtt:" のみ) は既定値のまま
        if values is None:
            continue
        if section in DEFAULT_CONFIG:
            if not isinstance(values, dict):
                raise ValueError(
                    f"Config section '{section}' must be a mapping, got {type(values).__name__}"
                )
            config[section].update(values)
        else:
            config[section] = values
    return config


# ------------------------------------------------------------------ #
# MQTT
# ------------------------------------------------------------------ #

def connect_mqtt(mqtt_cfg: dict[str, Any]) -> Optional[paho_mqtt.Client]:
    """mqtt.enabled の場合のみ接続済みクライアントを返す。接続失敗時は None。"""
    if not mqtt_cfg.get("enabled"):
        return None
    client = paho_mqtt.Client(
        paho_mqtt.CallbackAPIVersion.VERSION2,
        client_id=mqtt_cfg.get("client_id", "rpi-onewire"),
    )
    try:
        client.connect(
            mqtt_cfg.get("broker", "localhost"),
            int(mqtt_cfg.get("port", 1883)),
            keepalive=int(mqtt_cfg.get("keepalive", 60)),
        )
    except OSError as exc:
        logger.warning("MQTT connect failed (publish disabled): %s", exc)
        return None
    client.loop_start()
    return client


# ------------------------------------------------------------------ #
# 実行モード
# ------------------------------------------------------------------ #

def run_once(config: dict[str, Any], out: Optional[IO[str]] = None) -> int:
    """列挙 + 1 回読み取り。成功で 0、失敗で 1 を返す。"""
    if out is None:
        out = sys.stdout
    ow = config["onewire"]
    try:
        devices = load_devices(
            ow["base_path"],
            activate=bool(ow["activate"]),
            modules=ow["modules"],
            single_device_ok=bool(ow["single_device_ok"]),
        )
        read_devices(devices)
    except OneWireError as e:
        logger.error("%s", e)
        return 1

    for device in devices:
        print(json.dumps(device.as_dict()), file=out, flush=True)
    return 0


async def run_daemon(config: dict[str, Any]) -> None:
    """SensorPoller を SIGTERM/SIGINT まで実行する。"""
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _on_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop.add_signal_handler(signal.SIGTERM, _on_signal)
    loop.add_signal_handler(signal.SIGINT, _on_signal)

    mqtt_client = connect_mqtt(config["mqtt"])
    try:
        # MQTT 無効時は JSON Lines を標準出力へ
        output = sys.stdout if mqtt_client is None else None
        poller = SensorPoller(config, mqtt_client=mqtt_client, output=output)
        poller.setup()

        task = asyncio.create_task(poller.run(), name="sensor_poller")
        await stop_event.wait()

        logger.info("Stopping poller...")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    finally:
        if mqtt_client is not None:
            mqtt_client.loop_stop()
            mqtt_client.disconnect()
    logger.info("rpi-onewire stopped")


# ------------------------------------------------------------------ #
# エントリポイント
# ------------------------------------------------------------------ #

def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        description="rpi-onewire: DS18S20/DS18B20 1-Wire temperature reader"
    )
    parser.add_argument("--config", default=None, help="Path to config YAML file")
    parser.add_argument("--once", action="store_true", help="Read once, print JSON lines and exit")
    parser.add_argument("--interval", type=float, default=None, help="Poll interval seconds (overrides config)")
    parser.add_argument("--no-activate", action="store_true", help="Skip modprobe of w1 drivers")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(name)-20s %(levelname)-8s %(message)s",
        stream=sys.stderr if args.once else sys.stdout,
    )

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error("%s", e)
        sys.exit(1)

    if args.interval is not None:
        config["daemon"]["interval_sec"] = args.interval
    if args.no_activate:
        config["onewire"]["activate"] = False

    if args.once:
        sys.exit(run_once(config))

    try:
        asyncio.run(run_daemon(config))
    except OneWireError as e:
        logger.error("Discovery failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
