"""Artemis PFSアーカイブ操作モジュール

ArtemisエンジンのPFSアーカイブ（pf2 / pf6 / pf8）の展開とパックを行う。
pf8ではインデックス領域のSHA-1をペイロードのXOR鍵として使用する。
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from galpack.compression import sha1, xor_cycle
from galpack.errors import (
    ArchiveIOError,
    UnrecognizedFormatError,
    UnsafePathError,
    UnsupportedVersionError,
)
from galpack.formats.base import ArchiveEntry, ArchiveFormat, EntryFlags, atomic_output
from galpack.logger import ArchiveLogger, ProgressSink

PFS_MAGIC = b"pf"
SUPPORTED_VERSIONS = (2, 6, 8)
ENCRYPTED_VERSION = 8

# magic(2) + version(1) + index_size(4)
INDEX_START = 7
KEY_SIZE = 20
MAX_OFFSET = 0xFFFFFFFF


@dataclass(frozen=True)
class PfsHeader:
    """PFSヘッダー情報

    Attributes:
        version: バージョン（2, 6, 8）
        index_size: インデックス領域のサイズ（先頭7バイトを除く）
        file_count: エントリ数
        index_offset: 最初のエントリレコードの位置
    """

    version: int
    index_size: int
    file_count: int
    index_offset: int


def index_size_for(version: int, name_lengths: list[int]) -> int:
    """エントリ名のバイト長からインデックスサイズを計算する

    pf2: ファイル数(4) + 予約(4) + レコード(24 + 名前長) * n
    pf6/pf8: ファイル数(4) + レコード(16 + 名前長) * n
             + オフセット表(4 + 8 * n + 12)
    """
    count = len(name_lengths)
    total = sum(name_lengths)
    if version == 2:
        return 8 + 24 * count + total
    return 4 + 16 * count + total + 4 + 8 * count + 12


class PfsArchive(ArchiveFormat):
    """Artemis PFSアーカイブのコーデック"""

    name = "PFS"
    description = "Artemis Archive"
    can_write = True

    def __init__(
        self,
        logger: ArchiveLogger | None = None,
        workers: int = 1,
        encoding: str = "utf-8",
        version: int = 8,
    ) -> None:
        """コーデックを初期化する

        Args:
            logger: ログ出力先
            workers: 展開に使用するワーカー数
            encoding: エントリ名の文字コード
            version: パック時のバージョン（2, 6, 8）
        """
        super().__init__(logger, workers)
        self._encoding = encoding
        self._version = version

    def detect(self, head: bytes) -> bool:
        return len(head) >= 3 and head[:2] == PFS_MAGIC and 0x30 <= head[2] <= 0x39

    def read_header(self, data: bytes, source: Path) -> PfsHeader:
        """ヘッダーを読み取る

        Raises:
            UnrecognizedFormatError: マジックナンバーが一致しない場合
            UnsupportedVersionError: 未対応のバージョンの場合
            CorruptIndexError: ヘッダーが欠けている場合
        """
        if not self.detect(bytes(data[:3])):
            raise UnrecognizedFormatError("PFSアーカイブではありません", self.name, source)

        version = data[2] - ord("0")
        if version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersionError(f"未対応のバージョンです: pf{version}", self.name, source)

        count_offset = INDEX_START + (4 if version == 2 else 0)
        if len(data) < count_offset + 4:
            raise self._corrupt("ヘッダーが不足しています", source)
        (index_size,) = struct.unpack_from("<I", data, 3)
        (file_count,) = struct.unpack_from("<I", data, count_offset)
        if INDEX_START + index_size > len(data):
            raise self._corrupt("インデックスがファイル範囲外です", source)

        return PfsHeader(
            version=version,
            index_size=index_size,
            file_count=file_count,
            index_offset=count_offset + 4,
        )

    def read_index(self, data: bytes, header: PfsHeader, source: Path) -> list[ArchiveEntry]:
        """エントリレコードを読み取る

        名前に不正な文字が含まれる場合はエントリ単位ではなく操作全体を中止する。

        Raises:
            CorruptIndexError: レコードが欠けている、または範囲外を指す場合
            UnsafePathError: 名前を復号できない場合
        """
        entries: list[ArchiveEntry] = []
        pos = header.index_offset
        reserved_size = 12 if header.version == 2 else 4
        encrypted = header.version == ENCRYPTED_VERSION

        try:
            for i in range(header.file_count):
                (name_len,) = struct.unpack_from("<I", data, pos)
                pos += 4
                raw_name = data[pos : pos + name_len]
                if len(raw_name) != name_len:
                    raise self._corrupt(f"エントリ名が途中で切れています (#{i})", source)
                pos += name_len + reserved_size
                offset, size = struct.unpack_from("<II", data, pos)
                pos += 8

                try:
                    entry_name = raw_name.decode(self._encoding)
                except UnicodeDecodeError as e:
                    raise UnsafePathError(
                        f"エントリ名に不正なデータが含まれています (#{i})", self.name, source
                    ) from e

                entry = ArchiveEntry(
                    name=entry_name,
                    offset=offset,
                    size=size,
                    flags=EntryFlags(encrypted=encrypted),
                )
                self._check_bounds(entry, len(data), source)
                entries.append(entry)
        except struct.error as e:
            raise self._corrupt(f"インデックスが途中で切れています ({e})", source) from e

        return entries

    def unpack(
        self,
        source: Path,
        dest_dir: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """PFSアーカイブを展開する

        pf8の鍵はインデックスを解釈する前に、ディスク上のバイト列そのものから導出する。
        """
        sink = self._progress(progress)

        with self._open(source) as data:
            header = self.read_header(data, source)
            self._logger.log_version("pfs", header.version)

            key = b""
            if header.version == ENCRYPTED_VERSION:
                key = sha1(data[INDEX_START : INDEX_START + header.index_size])
                self._logger.debug(f"pf8 key: {key.hex()}")

            entries = self.read_index(data, header, source)
            targets = [self._resolve(dest_dir, entry.name, source) for entry in entries]

            sink.set_total(len(entries))
            dest_dir.mkdir(parents=True, exist_ok=True)
            transform = self._make_transform(key) if key else None
            with self._writer(sink) as writer:
                for entry, target in zip(entries, targets):
                    writer.submit(target, data[entry.offset : entry.end], transform)

        self._logger.log_summary("展開", len(entries), dest_dir)
        return entries

    def _make_transform(self, key: bytes) -> Callable[[bytes], bytes]:
        def transform(payload: bytes) -> bytes:
            return xor_cycle(payload, key)

        return transform

    def pack(
        self,
        source_dir: Path,
        output: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """ディレクトリからPFSアーカイブを作成する

        エントリは '\\' 区切りの相対パスのコードポイント順に並べる。
        """
        if self._version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersionError(
                f"未対応のバージョンです: pf{self._version}", self.name, output
            )

        sink = self._progress(progress)
        files = sorted(
            ((relative.replace("/", "\\"), path) for relative, path in self._collect(source_dir)),
            key=lambda item: item[0],
        )

        names: list[bytes] = []
        sizes: list[int] = []
        for relative, path in files:
            try:
                names.append(relative.encode(self._encoding))
            except UnicodeEncodeError as e:
                raise UnsafePathError(
                    f"{self._encoding}で表現できないファイル名です: {relative!r}", self.name, path
                ) from e
            try:
                sizes.append(path.stat().st_size)
            except OSError as e:
                raise ArchiveIOError(f"読み込みに失敗しました ({e})", self.name, path) from e

        index_size = index_size_for(self._version, [len(name) for name in names])
        header, entries = self._build_index(files, names, sizes, index_size, output)
        key = sha1(bytes(header[INDEX_START:])) if self._version == ENCRYPTED_VERSION else b""

        sink.set_total(len(files))
        with atomic_output(output) as f:
            f.write(header)
            for (relative, path), entry in zip(files, entries):
                payload = self._read_source_file(path)
                if len(payload) != entry.size:
                    raise ArchiveIOError("パック中にファイルサイズが変化しました", self.name, path)
                if key:
                    payload = xor_cycle(payload, key)
                f.write(payload)
                self._logger.log_entry(relative, len(payload))
                sink.advance()

        self._logger.log_summary("パック", len(entries), output)
        return entries

    def _build_index(
        self,
        files: list[tuple[str, Path]],
        names: list[bytes],
        sizes: list[int],
        index_size: int,
        output: Path,
    ) -> tuple[bytearray, list[ArchiveEntry]]:
        version = self._version
        buf = bytearray(PFS_MAGIC)
        buf.append(ord(str(version)))
        buf += struct.pack("<I", index_size)
        if version == 2:
            buf += struct.pack("<I", 0)
        buf += struct.pack("<I", len(files))

        entries: list[ArchiveEntry] = []
        offset = INDEX_START + index_size
        for (relative, _), name, size in zip(files, names, sizes):
            if offset + size > MAX_OFFSET:
                raise UnsupportedVersionError(
                    "PFSは4GiBを超えるアーカイブに対応していません", self.name, output
                )
            buf += struct.pack("<I", len(name))
            buf += name
            if version == 2:
                buf += struct.pack("<III", 16, 0, 0)
            else:
                buf += struct.pack("<I", 0)
            buf += struct.pack("<II", offset, size)
            entries.append(
                ArchiveEntry(
                    name=relative,
                    offset=offset,
                    size=size,
                    flags=EntryFlags(encrypted=version == ENCRYPTED_VERSION),
                )
            )
            offset += size

        if version != 2:
            # 各レコードの位置を指すオフセット表。末尾に0が2つと表自身の位置が続く
            table_pos = len(buf)
            buf += struct.pack("<I", len(files) + 1)
            total = 4
            for name in names:
                total += 4 + len(name)
                buf += struct.pack("<II", total, 0)
                total += 12
            buf += struct.pack("<III", 0, 0, table_pos - INDEX_START)

        if len(buf) != INDEX_START + index_size:
            raise self._corrupt(
                f"インデックスサイズの計算が一致しません ({len(buf) - INDEX_START} != {index_size})",
                output,
            )
        return buf, entries
