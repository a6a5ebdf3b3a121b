"""1-Wire 読み取りエラー階層

すべて OSError のサブクラス。呼び出し側は OneWireError をまとめて捕捉できる。

  OneWireError
  ├── ActivationError      modprobe 失敗（ドライバロード不可）
  ├── EnumerationError     デバイスディレクトリ読み取り不可 / デバイスなし
  ├── IdentityDecodeError  id ファイル読み取り不可・長さ不足・未知のファミリーコード
  ├── CrcMismatchError     w1_slave の CRC 判定が NO
  └── SampleFormatError    w1_slave から温度値が得られない (EOF without data)
"""

from __future__ import annotations


class OneWireError(OSError):
    """1-Wire デバイス操作の失敗"""


class ActivationError(OneWireError):
    """バスドライバの有効化に失敗"""


class EnumerationError(OneWireError):
    """デバイス列挙に失敗"""


class IdentityDecodeError(OneWireError):
    """id ファイルのデコードに失敗"""


class CrcMismatchError(OneWireError):
    """w1_slave の CRC チェック不一致"""


class SampleFormatError(OneWireError):
    """w1_slave に有効な温度サンプルがない"""
