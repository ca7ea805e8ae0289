"""アーカイブフォーマット基底モジュール

すべてのコーデックが継承する基底クラスと、
エントリモデル・パス安全性検証・書き出し処理などの共通部品を定義する。
"""

from __future__ import annotations

import errno
import mmap
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from threading import BoundedSemaphore, Lock
from typing import BinaryIO

from galpack.errors import (
    ArchiveError,
    ArchiveIOError,
    CorruptIndexError,
    UnsafePathError,
    UnsupportedVersionError,
)
from galpack.logger import ArchiveLogger, LogConfig, NullProgress, ProgressSink, VerboseLevel

# ファイル名として使用できない文字（制御文字を含む）
INVALID_NAME_CHARS = frozenset('<>:"|?*') | frozenset(chr(c) for c in range(32))

_SEPARATOR_PATTERN = re.compile(r"[\\/]")

# Windowsのデバイス名（拡張子付きでも予約されている）
RESERVED_DEVICE_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)

# Windowsでパスが長すぎる場合のエラーコード (ERROR_FILENAME_EXCED_RANGE)
_WINERROR_FILENAME_EXCED_RANGE = 206


@dataclass(frozen=True)
class EntryFlags:
    """エントリ単位のフラグ

    Attributes:
        compressed: ペイロードが圧縮されているか
        encrypted: ペイロードが暗号化されているか
        method: フォーマット固有の圧縮方式・セグメントタグ
    """

    compressed: bool = False
    encrypted: bool = False
    method: int = 0


@dataclass(frozen=True)
class ArchiveEntry:
    """アーカイブ内の1ファイルを表すエントリ

    Attributes:
        name: アーカイブ内の相対パス（アーカイブ内で一意なキー）
        offset: コンテナ先頭からのペイロード開始位置
        size: 格納サイズ
        unpacked_size: 展開後サイズ（区別しないフォーマットではsizeと同じ）
        flags: フォーマット固有のフラグ
    """

    name: str
    offset: int
    size: int
    unpacked_size: int = -1
    flags: EntryFlags = field(default_factory=EntryFlags)

    def __post_init__(self) -> None:
        if self.unpacked_size < 0:
            object.__setattr__(self, "unpacked_size", self.size)

    @property
    def end(self) -> int:
        """ペイロード終端位置"""
        return self.offset + self.size


def resolve_entry_path(
    dest_dir: Path,
    name: str,
    *,
    format_name: str | None = None,
    source: Path | None = None,
) -> Path:
    """エントリ名を展開先のパスに解決する

    インデックスは攻撃者が制御可能なデータであるため、
    展開先ディレクトリの外を指す名前や不正な文字を含む名前を拒否する。
    Windowsのデバイス名と、末尾がドット・空白の要素も拒否する。
    区切り文字は '/' と '\\' の両方を受け付ける。

    Args:
        dest_dir: 展開先ディレクトリ
        name: エントリ名
        format_name: エラーメッセージ用のフォーマット名
        source: エラーメッセージ用のアーカイブパス

    Returns:
        展開先のファイルパス

    Raises:
        UnsafePathError: 名前が安全でない場合
    """

    def reject(reason: str) -> UnsafePathError:
        return UnsafePathError(f"{reason}: {name!r}", format_name, source)

    if not name:
        raise reject("エントリ名が空です")
    if name[0] in "/\\":
        raise reject("絶対パスのエントリ名は使用できません")

    parts = _SEPARATOR_PATTERN.split(name)
    for part in parts:
        if part in ("", ".", ".."):
            raise reject("不正なパス要素を含むエントリ名です")
        if any(ch in INVALID_NAME_CHARS for ch in part):
            raise reject("ファイル名に使用できない文字を含むエントリ名です")
        if part[-1] in ". ":
            raise reject("末尾がドットまたは空白のパス要素を含むエントリ名です")
        if part.split(".", 1)[0].rstrip(" ").upper() in RESERVED_DEVICE_NAMES:
            raise reject("デバイス名のパス要素を含むエントリ名です")

    return dest_dir.joinpath(*parts)


def check_bounds(
    entry: ArchiveEntry,
    total_length: int,
    *,
    format_name: str | None = None,
    source: Path | None = None,
) -> None:
    """エントリのペイロードがコンテナ内に収まっているか検証する

    Raises:
        CorruptIndexError: offset + size がコンテナ長を超える場合
    """
    if entry.offset < 0 or entry.size < 0 or entry.end > total_length:
        raise CorruptIndexError(
            f"エントリ {entry.name!r} の範囲 (offset={entry.offset}, size={entry.size}) が"
            f"ファイルサイズ {total_length} を超えています",
            format_name,
            source,
        )


def collect_files(source_dir: Path) -> list[tuple[str, Path]]:
    """ディレクトリ配下の全ファイルを決定的な順序で収集する

    相対パスは '/' 区切りで、コードポイント順（UTF-8のバイト順と同じ）に並べる。
    ロケールには依存しない。

    Args:
        source_dir: 収集対象のディレクトリ

    Returns:
        (相対パス, 実ファイルパス) のリスト
    """
    files: list[tuple[str, Path]] = []
    for file_path in source_dir.rglob("*"):
        if file_path.is_file():
            relative = "/".join(file_path.relative_to(source_dir).parts)
            files.append((relative, file_path))
    files.sort(key=lambda item: item[0])
    return files


@contextmanager
def map_archive(source: Path) -> Iterator[bytes | mmap.mmap]:
    """アーカイブを読み取り専用でメモリマップする

    スライスは独立したバイト列になるため、ワーカースレッド間で
    シーク位置を共有しない。空ファイルは空のバイト列として扱う。
    """
    with open(source, "rb") as f:
        if os.fstat(f.fileno()).st_size == 0:
            yield b""
            return
        with mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ) as mm:
            yield mm


@contextmanager
def atomic_output(path: Path) -> Iterator[BinaryIO]:
    """パック結果を一時ファイルに書き出し、成功時のみ置き換える

    途中で失敗した場合は一時ファイルを削除し、
    正常なコンテナに見える不完全なファイルを残さない。
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.partial")
    try:
        with open(tmp_path, "wb") as f:
            yield f
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _is_path_too_long(error: OSError) -> bool:
    if error.errno == errno.ENAMETOOLONG:
        return True
    return getattr(error, "winerror", None) == _WINERROR_FILENAME_EXCED_RANGE


class EntryWriter:
    """展開したエントリを書き出すクラス

    workersが1の場合は呼び出し元スレッドで順に書き出す。
    2以上の場合はスレッドプールで変換（復号・解凍）と書き込みを行う。
    各タスクには切り出し済みのバイト列を渡し、進捗カウンタはロックで保護する。
    同じパスへの書き込みは前のタスク完了を待ってから投入するため、
    並列時も後勝ちの順序が保たれる。
    未完了のタスクはワーカー数のPENDING_PER_WORKER倍までに制限し、
    それを超える投入は空きができるまでブロックする。
    """

    PENDING_PER_WORKER = 2

    def __init__(
        self,
        progress: ProgressSink,
        logger: ArchiveLogger,
        workers: int = 1,
        format_name: str | None = None,
    ) -> None:
        self._progress = progress
        self._logger = logger
        self._format_name = format_name
        self._executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
        self._slots = BoundedSemaphore(workers * self.PENDING_PER_WORKER)
        self._submitted: dict[Path, Future[None] | None] = {}
        self._futures: list[Future[None]] = []
        self._lock = Lock()
        self.written = 0
        self.skipped: list[Path] = []

    def __enter__(self) -> EntryWriter:
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        if exc_type is not None:
            if self._executor is not None:
                self._executor.shutdown(wait=True, cancel_futures=True)
            return
        self.close()

    def submit(
        self,
        path: Path,
        raw: bytes,
        transform: Callable[[bytes], bytes] | None = None,
        *,
        skip_long_path: bool = False,
    ) -> None:
        """エントリの書き出しを投入する

        Args:
            path: 書き出し先パス
            raw: アーカイブから切り出したペイロード
            transform: 復号・解凍などの変換（Noneの場合はそのまま書き出す）
            skip_long_path: パスが長すぎる場合にエラーにせずスキップするか
        """
        if path in self._submitted:
            self._logger.warning(f"エントリ名が重複しています。後のエントリで上書きします: {path}")
            previous = self._submitted[path]
            if previous is not None:
                previous.result()

        if self._executor is None:
            self._write(path, raw, transform, skip_long_path)
            self._submitted[path] = None
            return

        self._slots.acquire()
        try:
            future = self._executor.submit(self._write, path, raw, transform, skip_long_path)
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        self._submitted[path] = future
        self._futures.append(future)

    def close(self) -> None:
        """全タスクの完了を待ち、最初に発生した例外を送出する"""
        if self._executor is None:
            return
        try:
            for future in self._futures:
                future.result()
        finally:
            self._executor.shutdown(wait=True, cancel_futures=True)

    def _write(
        self,
        path: Path,
        raw: bytes,
        transform: Callable[[bytes], bytes] | None,
        skip_long_path: bool,
    ) -> None:
        data = transform(raw) if transform is not None else raw
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            if skip_long_path and _is_path_too_long(e):
                self._logger.warning(f"パスが長すぎるためスキップします: {path}")
                with self._lock:
                    self.skipped.append(path)
                    self._progress.advance()
                return
            raise ArchiveIOError(f"書き込みに失敗しました: {path} ({e})", self._format_name) from e

        self._logger.log_entry(path.name, len(data))
        with self._lock:
            self.written += 1
            self._progress.advance()


class ArchiveFormat(ABC):
    """コーデックの基底クラス

    フォーマットごとの検出・展開・（対応していれば）パックを実装する抽象基底クラス。
    """

    name: str = ""
    """フォーマット名（例: "XP3"）"""

    description: str = ""
    """フォーマットの説明"""

    can_write: bool = False
    """パックに対応しているか"""

    def __init__(self, logger: ArchiveLogger | None = None, workers: int = 1) -> None:
        """コーデックを初期化する

        Args:
            logger: ログ出力先（Noneの場合はエラー以外を出力しない）
            workers: 展開・圧縮に使用するワーカー数
        """
        self._logger = logger or ArchiveLogger(LogConfig(verbose_level=VerboseLevel.QUIET))
        self._workers = max(1, workers)

    @property
    def logger(self) -> ArchiveLogger:
        return self._logger

    @abstractmethod
    def detect(self, head: bytes) -> bool:
        """先頭バイト列がこのフォーマットのシグネチャに一致するか判定する

        Args:
            head: ファイル先頭のバイト列

        Returns:
            一致する場合True
        """
        ...

    @abstractmethod
    def unpack(
        self,
        source: Path,
        dest_dir: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """アーカイブを展開する

        Args:
            source: アーカイブファイルのパス
            dest_dir: 展開先ディレクトリ
            progress: 進捗通知先

        Returns:
            展開したエントリの一覧
        """
        ...

    def pack(
        self,
        source_dir: Path,
        output: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """ディレクトリからアーカイブを作成する

        Args:
            source_dir: 格納するファイルのディレクトリ
            output: 出力アーカイブのパス
            progress: 進捗通知先

        Returns:
            格納したエントリの一覧

        Raises:
            UnsupportedVersionError: 書き込みに対応していないフォーマットの場合
        """
        raise UnsupportedVersionError("このフォーマットはパックに対応していません", self.name)

    # 以下はサブクラス向けの共通処理

    def _progress(self, progress: ProgressSink | None) -> ProgressSink:
        return progress if progress is not None else NullProgress()

    def _writer(self, progress: ProgressSink) -> EntryWriter:
        return EntryWriter(progress, self._logger, self._workers, self.name)

    def _resolve(self, dest_dir: Path, name: str, source: Path) -> Path:
        return resolve_entry_path(dest_dir, name, format_name=self.name, source=source)

    def _check_bounds(self, entry: ArchiveEntry, total_length: int, source: Path) -> None:
        check_bounds(entry, total_length, format_name=self.name, source=source)

    def _corrupt(self, reason: str, source: Path) -> CorruptIndexError:
        return CorruptIndexError(reason, self.name, source)

    @contextmanager
    def _open(self, source: Path) -> Iterator[bytes | mmap.mmap]:
        """アーカイブを開き、OSErrorをArchiveIOErrorに変換する"""
        try:
            with map_archive(source) as data:
                yield data
        except ArchiveError:
            raise
        except OSError as e:
            raise ArchiveIOError(f"読み込みに失敗しました ({e})", self.name, source) from e

    def _collect(self, source_dir: Path) -> list[tuple[str, Path]]:
        if not source_dir.is_dir():
            raise ArchiveIOError("ディレクトリが見つかりません", self.name, source_dir)
        return collect_files(source_dir)

    def _read_source_file(self, path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            raise ArchiveIOError(f"読み込みに失敗しました ({e})", self.name, path) from e
