"""フォーマットレジストリ

マジックナンバーからコーデックを選択し、展開・パックを委譲する。
"""

from __future__ import annotations

import os
from pathlib import Path

import psutil

from galpack.config import ConfigError, GalpackConfig, get_default_config
from galpack.errors import ArchiveIOError, UnrecognizedFormatError, UnsupportedVersionError
from galpack.formats import ArchiveEntry, ArchiveFormat
from galpack.formats.artemis import PfsArchive
from galpack.formats.gspack import PakArchive
from galpack.formats.kirikiri import Xp3Archive
from galpack.formats.siglus import SiglusDatArchive
from galpack.keys import KeySchemeProvider, load_key_database, parse_hex_key
from galpack.logger import ArchiveLogger, ProgressSink

# 検出に読み込む先頭バイト数
DETECT_HEAD_SIZE = 64

# 1ワーカーあたりのメモリ使用量の想定（MB）
MEMORY_PER_WORKER_MB = 256


class FormatRegistry:
    """コーデックのレジストリ

    登録順が検出の優先順位となる。各フォーマットのシグネチャは
    互いに排他的なため、優先順位は曖昧さの解消ではなく検査順序の固定に使う。
    """

    def __init__(self, codecs: list[ArchiveFormat], logger: ArchiveLogger | None = None) -> None:
        self._codecs = list(codecs)
        self._logger = logger

    @property
    def codecs(self) -> list[ArchiveFormat]:
        return list(self._codecs)

    def get(self, format_name: str) -> ArchiveFormat:
        """フォーマット名（大文字小文字を区別しない）からコーデックを取得する

        Raises:
            UnsupportedVersionError: 該当するフォーマットが存在しない場合
        """
        for codec in self._codecs:
            if codec.name.lower() == format_name.lower():
                return codec
        raise UnsupportedVersionError(f"未対応のフォーマットです: {format_name}")

    def detect(self, head: bytes) -> ArchiveFormat:
        """先頭バイト列に一致する最初のコーデックを返す

        Raises:
            UnrecognizedFormatError: どのシグネチャにも一致しない場合
        """
        for codec in self._codecs:
            if codec.detect(head):
                return codec
        raise UnrecognizedFormatError("対応するアーカイブ形式が見つかりません")

    def detect_path(self, path: Path) -> ArchiveFormat:
        """ファイルの先頭を読み込んでコーデックを判定する"""
        try:
            with open(path, "rb") as f:
                head = f.read(DETECT_HEAD_SIZE)
        except OSError as e:
            raise ArchiveIOError(f"読み込みに失敗しました ({e})", path=path) from e
        try:
            return self.detect(head)
        except UnrecognizedFormatError as e:
            raise UnrecognizedFormatError(e.reason, path=path) from e

    def detect_and_unpack(
        self,
        source: Path,
        dest_dir: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """形式を判定して展開する

        Args:
            source: アーカイブファイルのパス
            dest_dir: 展開先ディレクトリ（存在しなければ作成する）
            progress: 進捗通知先

        Returns:
            展開したエントリの一覧
        """
        codec = self.detect_path(source)
        if self._logger is not None:
            self._logger.debug(f"{source.name}: {codec.name} ({codec.description})")
        dest_dir.mkdir(parents=True, exist_ok=True)
        return codec.unpack(source, dest_dir, progress)

    def pack(
        self,
        format_name: str,
        source_dir: Path,
        output: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """指定したフォーマットでディレクトリをパックする

        Raises:
            UnsupportedVersionError: フォーマットが存在しない、またはパックに対応していない場合
        """
        codec = self.get(format_name)
        if not codec.can_write:
            raise UnsupportedVersionError("このフォーマットはパックに対応していません", codec.name)
        return codec.pack(source_dir, output, progress)


def calculate_workers(available_memory_mb: int | None = None) -> int:
    """最適なワーカー数を計算する

    空きメモリとCPUコア数に基づいて、最適なワーカー数を計算する。

    Args:
        available_memory_mb: 使用可能なメモリ（MB）。Noneの場合は自動検出

    Returns:
        最適なワーカー数（最小1）
    """
    cpu_count = os.cpu_count() or 1
    if available_memory_mb is None:
        available_memory_mb = psutil.virtual_memory().available // (1024 * 1024)
    memory_based_workers = available_memory_mb // MEMORY_PER_WORKER_MB
    return max(1, min(memory_based_workers, cpu_count))


def create_registry(
    config: GalpackConfig | None = None,
    logger: ArchiveLogger | None = None,
    key_provider: KeySchemeProvider | None = None,
) -> FormatRegistry:
    """設定からレジストリを作成する

    検出順は XP3, PFS, PAK, DAT の固定順。

    Args:
        config: 設定（Noneの場合はデフォルト設定）
        logger: 各コーデックのログ出力先
        key_provider: Siglusの鍵候補（Noneの場合は設定の鍵データベースから読み込む）

    Raises:
        ConfigError: 鍵データベースまたは鍵の指定が不正な場合
    """
    config = config or get_default_config()
    workers = config.workers

    if key_provider is None and config.siglus.key_database is not None:
        key_provider = load_key_database(config.siglus.key_database)

    siglus_key = None
    if config.siglus.key:
        try:
            siglus_key = parse_hex_key(config.siglus.key)
        except ValueError as e:
            raise ConfigError(f"Siglusの鍵が不正です: {e}") from e

    return FormatRegistry(
        [
            Xp3Archive(
                logger,
                workers,
                version=config.xp3.version,
                compress_index=config.xp3.compress_index,
                compress_contents=config.xp3.compress_contents,
                compression_level=config.xp3.compression_level,
                verify_checksum=config.xp3.verify_checksum,
            ),
            PfsArchive(logger, workers, encoding=config.pfs.encoding, version=config.pfs.version),
            PakArchive(logger, workers, encoding=config.pak.encoding),
            SiglusDatArchive(
                logger,
                workers,
                key=siglus_key,
                try_each_key=config.siglus.try_each_key,
                key_provider=key_provider,
                title=config.siglus.title,
            ),
        ],
        logger,
    )
