"""Configuration module for galpack."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigError(Exception):
    """設定ファイル読み込みエラー"""

    pass


@dataclass(frozen=True)
class PfsConfig:
    """Artemis PFS設定"""

    encoding: str = "utf-8"
    version: int = 8


@dataclass(frozen=True)
class Xp3Config:
    """Kirikiri XP3設定"""

    version: int = 2
    compress_index: bool = True
    compress_contents: bool = True
    compression_level: int = 6
    verify_checksum: bool = False


@dataclass(frozen=True)
class PakConfig:
    """GSPack PAK設定"""

    encoding: str = "cp932"


@dataclass(frozen=True)
class SiglusConfig:
    """Siglus DAT設定

    keyは16進文字列。try_each_keyが有効な場合は鍵データベースの全候補を試す。
    """

    key: str | None = None
    try_each_key: bool = True
    key_database: Path | None = None
    title: str | None = None


@dataclass(frozen=True)
class GalpackConfig:
    """ルート設定"""

    workers: int = 1
    pfs: PfsConfig = field(default_factory=PfsConfig)
    xp3: Xp3Config = field(default_factory=Xp3Config)
    pak: PakConfig = field(default_factory=PakConfig)
    siglus: SiglusConfig = field(default_factory=SiglusConfig)


def load_config(path: Path) -> GalpackConfig:
    """設定ファイルを読み込む

    Args:
        path: 設定ファイルパス

    Returns:
        GalpackConfig: 読み込んだ設定（デフォルトとマージ済み）

    Raises:
        ConfigError: ファイル読み込みまたはパースエラー
    """
    if not path.exists():
        raise ConfigError(f"設定ファイルが見つかりません: {path}")

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML解析エラー: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("設定ファイルはYAMLのマッピング形式である必要があります")

    default = get_default_config()

    workers = data.get("workers", default.workers)
    if not isinstance(workers, int) or workers < 1:
        raise ConfigError(f"workersは1以上の整数である必要があります: {workers}")

    return GalpackConfig(
        workers=workers,
        pfs=_merge_pfs_config(data.get("pfs", {}), default.pfs),
        xp3=_merge_xp3_config(data.get("xp3", {}), default.xp3),
        pak=_merge_pak_config(data.get("pak", {}), default.pak),
        siglus=_merge_siglus_config(data.get("siglus", {}), default.siglus, path.parent),
    )


def get_default_config() -> GalpackConfig:
    """デフォルト設定を取得する"""
    return GalpackConfig()


def _merge_pfs_config(data: dict[str, Any], default: PfsConfig) -> PfsConfig:
    """PFS設定をマージする"""
    if not isinstance(data, dict):
        return default
    return PfsConfig(
        encoding=data.get("encoding", default.encoding),
        version=data.get("version", default.version),
    )


def _merge_xp3_config(data: dict[str, Any], default: Xp3Config) -> Xp3Config:
    """XP3設定をマージする"""
    if not isinstance(data, dict):
        return default
    return Xp3Config(
        version=data.get("version", default.version),
        compress_index=data.get("compress_index", default.compress_index),
        compress_contents=data.get("compress_contents", default.compress_contents),
        compression_level=data.get("compression_level", default.compression_level),
        verify_checksum=data.get("verify_checksum", default.verify_checksum),
    )


def _merge_pak_config(data: dict[str, Any], default: PakConfig) -> PakConfig:
    """PAK設定をマージする"""
    if not isinstance(data, dict):
        return default
    return PakConfig(encoding=data.get("encoding", default.encoding))


def _merge_siglus_config(
    data: dict[str, Any], default: SiglusConfig, base_dir: Path
) -> SiglusConfig:
    """Siglus設定をマージする

    鍵データベースの相対パスは設定ファイルのディレクトリを基準に解決する。
    """
    if not isinstance(data, dict):
        return default
    key_database = data.get("key_database")
    return SiglusConfig(
        key=data.get("key", default.key),
        try_each_key=data.get("try_each_key", default.try_each_key),
        key_database=base_dir / key_database if key_database else default.key_database,
        title=data.get("title", default.title),
    )
