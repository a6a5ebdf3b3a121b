"""1-Wire バス: ドライバ有効化・デバイス列挙・一括読み取り

前提条件:
  w1_gpio（バスマスタ）と w1_therm（温度センサー）モジュールをロードできること
  /boot/config.txt に dtoverlay=w1-gpio が設定済み（Raspberry Pi の場合）

Usage:
    devices = load_devices()          # 列挙失敗時は例外、部分リストは返さない
    read_devices(devices)             # 各 DS1820.last_temperature を順に更新
    for d in devices:
        print(d.name, d.last_temperature)
"""

from __future__ import annotations

import logging
import os
import subprocess
from typing import Sequence

from .ds1820 import DS1820, W1_BASE
from .errors import ActivationError, EnumerationError, OneWireError

logger = logging.getLogger(__name__)

DEFAULT_MODULES: tuple[str, ...] = ("w1_gpio", "w1_therm")
BUS_MASTER_MARKER = "w1_bus_master"


def activate_bus(
    modules: Sequence[str] = DEFAULT_MODULES,
    modprobe: str = "modprobe",
) -> None:
    """modprobe で 1-Wire ドライバをロードする。

    Raises:
        ActivationError: modprobe が起動できない、または非 0 で終了した場合
    """
    for module in modules:
        cmd = [modprobe, module]
        logger.debug("activate_bus: %s", " ".join(cmd))
        try:
            subprocess.run(cmd, check=True, capture_output=True)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode(errors="replace").strip()
            raise ActivationError(
                f"modprobe {module} failed (exit {e.returncode}): {stderr}"
            ) from e
        except OSError as e:
            raise ActivationError(f"modprobe {module} could not be run: {e}") from e


def find_devices(base_path: str = W1_BASE, *, single_device_ok: bool = False) -> list[str]:
    """デバイスディレクトリを列挙し、バスマスタを除いたデバイス名を返す。

    並び順は os.listdir() のまま（ソートしない）。

    既定では生の一覧が 1 件以下なら失敗する。バスマスタ以外にセンサーが 1 台だけの
    バスも拒否されるため、single_device_ok=True で除外後の件数による判定に切り替える。

    Raises:
        EnumerationError: ディレクトリを読めない、またはデバイスがない場合
    """
    try:
        names = os.listdir(base_path)
    except OSError as e:
        raise EnumerationError(f"Cannot list {base_path}: {e}") from e

    if not single_device_ok and len(names) <= 1:
        raise EnumerationError(f"files in {base_path}: no devices found")

    devices = [n for n in names if BUS_MASTER_MARKER not in n]
    if not devices:
        raise EnumerationError(f"files in {base_path}: no devices found")

    logger.debug("find_devices: %d device(s) in %s", len(devices), base_path)
    return devices


def load_devices(
    base_path: str = W1_BASE,
    *,
    activate: bool = True,
    modules: Sequence[str] = DEFAULT_MODULES,
    single_device_ok: bool = False,
) -> list[DS1820]:
    """ドライバ有効化 → 列挙 → id デコードを行い、DS1820 のリストを返す。

    1 台でもデコードに失敗したら全体を失敗とする（部分リストは返さない）。

    Raises:
        ActivationError, EnumerationError, IdentityDecodeError
    """
    if activate:
        activate_bus(modules)

    devices = []
    for name in find_devices(base_path, single_device_ok=single_device_ok):
        try:
            devices.append(DS1820.from_sysfs(name, base_path))
        except OneWireError as e:
            raise type(e)(f"Error opening device {name}: {e}") from e

    logger.debug("load_devices: %s", [d.name for d in devices])
    return devices


def read_devices(devices: Sequence[DS1820]) -> None:
    """各デバイスの温度をリスト順に読み取り、last_temperature を更新する。

    k 台目で失敗した時点で例外を送出する。1..k-1 台目は更新済み、
    k 台目以降は前回値のまま残る。

    Raises:
        CrcMismatchError, SampleFormatError
    """
    for device in devices:
        device.read()
