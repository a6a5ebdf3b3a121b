"""DS18S20 / DS18B20 温度センサー（Linux sysfs 1-Wire 経由）

w1_therm ドライバが公開する sysfs ファイルを読み取る。

読み取り先:
  /sys/bus/w1/devices/{name}/id        8 バイトのバイナリ ROM ID
  /sys/bus/w1/devices/{name}/w1_slave  スクラッチパッド + CRC 判定 + 温度

ROM ID（リトルエンディアン 64bit）:
  bits 0-7   : ファミリーコード (0x10=DS18S20, 0x28=DS18B20)
  bits 8-55  : シリアル番号 (48bit)
  bits 56-63 : CRC8

w1_slave の例:
  72 01 4b 46 7f ff 0e 10 57 : crc=57 YES
  72 01 4b 46 7f ff 0e 10 57 t=23125
  温度は millidegrees Celsius (例: 23125 → 23.125°C)
"""

from __future__ import annotations

import logging
import re
import struct
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

from .errors import CrcMismatchError, IdentityDecodeError, SampleFormatError

logger = logging.getLogger(__name__)

W1_BASE = "/sys/bus/w1/devices"
ID_FILE = "id"
SLAVE_FILE = "w1_slave"

ID_LEN = 8
FAMILY_DS18S20 = 0x10
FAMILY_DS18B20 = 0x28
SERIAL_MASK = 0x00FFFFFFFFFFFF00

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

# w1_slave 1行目: "... : crc=57 YES"
CRC_RE = re.compile(r"crc=(\w+)\s+(YES|NO)")
# w1_slave 2行目以降: "... t=23125"
SAMPLE_RE = re.compile(r"\bt=([+-]?\d+)")


class DeviceType(str, Enum):
    DS18S20 = "DS18S20"
    DS18B20 = "DS18B20"


FAMILY_TYPES: dict[int, DeviceType] = {
    FAMILY_DS18S20: DeviceType.DS18S20,
    FAMILY_DS18B20: DeviceType.DS18B20,
}


# ------------------------------------------------------------------ #
# パーサー（ファイル不要。単体テスト可能）
# ------------------------------------------------------------------ #

def decode_identity(blob: bytes, path: str = "") -> tuple[int, DeviceType]:
    """ROM ID をデコードし (シリアル番号, デバイス種別) を返す。

    Args:
        blob: id ファイルの内容（先頭 8 バイトを使用）
        path: エラーメッセージ用のファイルパス

    Raises:
        IdentityDecodeError: 8 バイト未満、または未知のファミリーコード
    """
    if len(blob) < ID_LEN:
        raise IdentityDecodeError(
            f"Error decoding {path} device id: need {ID_LEN} bytes, got {len(blob)}"
        )
    (raw,) = struct.unpack("<Q", blob[:ID_LEN])

    family = raw & 0xFF
    device_type = FAMILY_TYPES.get(family)
    if device_type is None:
        raise IdentityDecodeError(
            f"Error decoding {path} device id: "
            f"Unrecognized one wire family code 0x{family:02x}"
        )
    return (raw & SERIAL_MASK) >> 8, device_type


def read_identity(name: str, base_path: str = W1_BASE) -> tuple[int, DeviceType]:
    """{base_path}/{name}/id を読み取り decode_identity() に渡す。"""
    id_path = Path(base_path) / name / ID_FILE
    try:
        with id_path.open("rb") as f:
            blob = f.read(ID_LEN)
    except OSError as e:
        raise IdentityDecodeError(f"Error reading {id_path} device id: {e}") from e
    return decode_identity(blob, str(id_path))


def parse_status(lines: Iterable[str], name: str = "") -> float:
    """w1_slave の内容をパースし、摂氏 (float) を返す。

    1 行目に CRC 判定があり NO なら失敗。2 行目以降で最初に t= を含む行を採用する。

    Raises:
        CrcMismatchError: CRC 判定が NO
        SampleFormatError: 温度行がない、または値が 64bit 整数に収まらない
    """
    it = iter(lines)
    first = next(it, None)
    if first is None:
        raise SampleFormatError(f"EOF without data from w1 ({name})")

    m = CRC_RE.search(first)
    if m and m.group(2) != "YES":
        raise CrcMismatchError(f"CRC mismatch on read ({name}): crc={m.group(1)}")

    for line in it:
        m = SAMPLE_RE.search(line)
        if not m:
            continue
        value = int(m.group(1))
        if not INT64_MIN <= value <= INT64_MAX:
            raise SampleFormatError(f"Sample out of range ({name}): {m.group(1)!r}")
        return value / 1000.0

    raise SampleFormatError(f"EOF without data from w1 ({name})")


# ------------------------------------------------------------------ #
# デバイスレコード
# ------------------------------------------------------------------ #

@dataclass
class DS1820:
    """DS18S20/DS18B20 1 台分のレコード。

    id / name / device_type は生成後に変更しない。
    last_temperature は read() 成功ごとに上書きされる（初回読み取り前は 0.0）。
    """
    id: int
    name: str
    device_type: DeviceType
    last_temperature: float = 0.0
    base_path: str = W1_BASE

    @classmethod
    def from_sysfs(cls, name: str, base_path: str = W1_BASE) -> DS1820:
        """id ファイルからレコードを生成する。"""
        serial, device_type = read_identity(name, base_path)
        logger.debug("DS1820 %s: %s serial=0x%012x", name, device_type.value, serial)
        return cls(id=serial, name=name, device_type=device_type, base_path=base_path)

    @property
    def slave_path(self) -> Path:
        return Path(self.base_path) / self.name / SLAVE_FILE

    def read(self) -> float:
        """w1_slave を読み取り last_temperature を更新して返す。

        失敗時は last_temperature を変更しない。

        Raises:
            CrcMismatchError: CRC 判定が NO
            SampleFormatError: ファイルを開けない、または温度行がない
        """
        try:
            with self.slave_path.open("r", encoding="ascii", errors="replace") as f:
                f.seek(0)
                temp = parse_status(f, self.name)
        except (CrcMismatchError, SampleFormatError):
            raise
        except OSError as e:
            raise SampleFormatError(f"EOF without data from w1 ({self.name}): {e}") from e

        self.last_temperature = temp
        logger.debug("DS1820 %s: %.3f C", self.name, temp)
        return temp

    def as_dict(self) -> dict:
        return {
            "device_id": self.name,
            "serial": f"{self.id:012x}",
            "device_type": self.device_type.value,
            "temperature_c": self.last_temperature,
        }
