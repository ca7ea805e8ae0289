"""鍵スキーム管理モジュール

Siglusアーカイブの復号に使う、タイトルごとの鍵候補と
構造デスクランブル表を鍵データベース（YAML）から読み込む。
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from galpack.config import ConfigError


@dataclass(frozen=True)
class KeyScheme:
    """タイトルごとの鍵

    Attributes:
        title: ゲームタイトル
        key: 復号鍵
    """

    title: str
    key: bytes


def parse_hex_key(value: Any) -> bytes:
    """16進文字列またはバイト値のリストを鍵に変換する

    "0x" 接頭辞、空白、カンマ、ハイフンは無視する。

    Raises:
        ValueError: 鍵として解釈できない場合
    """
    if isinstance(value, list):
        if not all(isinstance(b, int) and 0 <= b <= 0xFF for b in value):
            raise ValueError("バイト値のリストには0〜255の整数のみ指定できます")
        key = bytes(value)
    elif isinstance(value, str):
        text = value.strip()
        if text[:2].lower() == "0x":
            text = text[2:]
        for sep in (" ", ",", "-", "\t"):
            text = text.replace(sep, "")
        key = bytes.fromhex(text)
    else:
        raise ValueError(f"鍵の形式が不正です: {value!r}")

    if not key:
        raise ValueError("鍵が空です")
    return key


class KeySchemeProvider:
    """鍵候補の提供クラス

    タイトルのヒントに一致する鍵を先頭に、それ以外をデータベース順に並べて返す。

    使用例:
        >>> provider = KeySchemeProvider([KeyScheme("Title", b"\\x01\\x02")])
        >>> [scheme.title for scheme in provider.candidates("title")]
        ['Title']
    """

    def __init__(
        self,
        schemes: Iterable[KeyScheme] = (),
        descramble: Mapping[int, bytes] | None = None,
    ) -> None:
        """プロバイダーを初期化する

        Args:
            schemes: 鍵候補（データベース順）
            descramble: パス番号ごとの構造デスクランブル表
        """
        self._schemes = list(schemes)
        self._descramble = dict(descramble or {})

    def __len__(self) -> int:
        return len(self._schemes)

    @property
    def schemes(self) -> list[KeyScheme]:
        return list(self._schemes)

    def candidates(self, title_hint: str | None = None) -> list[KeyScheme]:
        """鍵候補を優先順に返す

        Args:
            title_hint: タイトルのヒント（大文字小文字を区別しない部分一致）

        Returns:
            ヒントに一致する候補を先頭にした鍵候補のリスト
        """
        if not title_hint:
            return list(self._schemes)
        hint = title_hint.casefold()
        matched = [s for s in self._schemes if hint in s.title.casefold()]
        others = [s for s in self._schemes if hint not in s.title.casefold()]
        return matched + others

    def descramble_table(self, pass_index: int) -> bytes | None:
        """構造デスクランブル表を取得する（存在しない場合はNone）"""
        return self._descramble.get(pass_index)


def load_key_database(path: Path) -> KeySchemeProvider:
    """鍵データベースを読み込む

    JSONもYAMLとして解釈できるため、どちらの形式でも読み込める。

    Args:
        path: 鍵データベースのパス

    Returns:
        KeySchemeProvider: 読み込んだ鍵候補

    Raises:
        ConfigError: ファイルが存在しない、または内容が不正な場合
    """
    if not path.exists():
        raise ConfigError(f"鍵データベースが見つかりません: {path}")

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML解析エラー: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("鍵データベースはマッピング形式である必要があります")

    descramble_data = data.get("descramble") or {}
    schemes_data = data.get("schemes") or {}
    if not isinstance(descramble_data, dict) or not isinstance(schemes_data, dict):
        raise ConfigError("descramble と schemes はマッピング形式である必要があります")

    descramble: dict[int, bytes] = {}
    for pass_index, value in descramble_data.items():
        try:
            descramble[int(pass_index)] = parse_hex_key(value)
        except ValueError as e:
            raise ConfigError(f"デスクランブル表 {pass_index} が不正です: {e}") from e

    schemes: list[KeyScheme] = []
    for title, value in schemes_data.items():
        try:
            schemes.append(KeyScheme(title=str(title), key=parse_hex_key(value)))
        except ValueError as e:
            raise ConfigError(f"{title} の鍵が不正です: {e}") from e

    return KeySchemeProvider(schemes, descramble)
