"""Sensor poller — asyncio periodic DS18x20 read -> MQTT publish / JSON lines.

MQTT topics:
  {topic_prefix}/{device name}  ... one JSON payload per device (QoS=1, retain=True)

Called from main.py. Discovery failures propagate from setup(); read failures
are logged and retried on the next interval.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import IO, Any, Optional

from .bus import DEFAULT_MODULES, load_devices, read_devices
from .ds1820 import DS1820, W1_BASE
from .errors import OneWireError

logger = logging.getLogger(__name__)


class SensorPoller:
    """DS18S20/DS18B20 poller with MQTT publish.

    Args:
        config:      rpi-onewire config dict (same structure as config.yaml)
        mqtt_client: connected paho.mqtt.client.Client instance, or None
        output:      text stream for JSON lines, or None
    """

    def __init__(
        self,
        config: dict[str, Any],
        mqtt_client: Any = None,
        output: Optional[IO[str]] = None,
    ) -> None:
        self._mqtt = mqtt_client
        self._output = output

        onewire_cfg = config.get("onewire", {})
        self._base_path: str = onewire_cfg.get("base_path", W1_BASE)
        self._activate: bool = bool(onewire_cfg.get("activate", True))
        self._modules: list[str] = list(onewire_cfg.get("modules", DEFAULT_MODULES))
        self._single_device_ok: bool = bool(onewire_cfg.get("single_device_ok", False))

        daemon_cfg = config.get("daemon", {})
        self._interval: float = float(daemon_cfg.get("interval_sec", 10))

        mqtt_cfg = config.get("mqtt", {})
        self._topic_prefix: str = mqtt_cfg.get("topic_prefix", "onewire/sensor").rstrip("/")

        self.devices: list[DS1820] = []

    # ------------------------------------------------------------------ #
    # Init
    # ------------------------------------------------------------------ #

    def setup(self) -> None:
        """Discover devices. Call before poll_once()/run()."""
        self.devices = load_devices(
            self._base_path,
            activate=self._activate,
            modules=self._modules,
            single_device_ok=self._single_device_ok,
        )
        logger.info(
            "DS18x20: %d device(s): %s",
            len(self.devices), [d.name for d in self.devices],
        )

    # ------------------------------------------------------------------ #
    # Read
    # ------------------------------------------------------------------ #

    def topic_for(self, device: DS1820) -> str:
        return f"{self._topic_prefix}/{device.name}"

    def poll_once(self) -> bool:
        """Read all devices and publish. Returns False if the read failed."""
        try:
            read_devices(self.devices)
        except OneWireError as e:
            logger.error("DS18x20 read failed: %s", e)
            return False

        now = time.time()
        for device in self.devices:
            payload = json.dumps({**device.as_dict(), "timestamp": now})
            if self._mqtt is not None:
                self._mqtt.publish(self.topic_for(device), payload, qos=1, retain=True)
            if self._output is not None:
                self._output.write(payload + "\n")
                self._output.flush()
            logger.info("DS18x20[%s]: %.3f C", device.name, device.last_temperature)
        return True

    # ------------------------------------------------------------------ #
    # asyncio loop
    # ------------------------------------------------------------------ #

    async def run(self) -> None:
        """Read + publish loop at configured interval.

        Call setup() before run().
        Stopped by asyncio.CancelledError from main.py.
        """
        loop = asyncio.get_running_loop()
        logger.info(
            "SensorPoller started: interval=%ss, devices x%d, base=%s",
            self._interval, len(self.devices), self._base_path,
        )
        while True:
            # w1_slave read blocks ~750ms per sensor (conversion) -> executor
            await loop.run_in_executor(None, self.poll_once)
            await asyncio.sleep(self._interval)
