"""XP3アーカイブ操作モジュール

吉里吉里/KAG/KiriKiri形式のXP3アーカイブファイルを読み込み、
展開やディレクトリからのパックを行う機能を提供する。
"""

from __future__ import annotations

import struct
import zlib
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from galpack.compression import (
    DEFAULT_COMPRESSION_LEVEL,
    adler32,
    compress_deflate,
    decompress_deflate,
)
from galpack.errors import UnrecognizedFormatError, UnsafePathError, UnsupportedVersionError
from galpack.formats.base import ArchiveEntry, ArchiveFormat, EntryFlags, atomic_output
from galpack.logger import ArchiveLogger, ProgressSink

# XP3マジックナンバー (11バイト)
XP3_MAGIC = b"XP3\x0d\x0a\x20\x0a\x1a\x8b\x67\x01"

# バージョン2ヘッダー: マジック直後のu64が0x17で、0x17の位置に0x80が続く
VERSION2_MARKER = 0x17
VERSION2_FLAG_OFFSET = 0x17
VERSION2_FLAG = 0x80
VERSION2_INDEX_FIELD = 0x20
VERSION1_INDEX_FIELD = len(XP3_MAGIC)

INDEX_RAW = 0
INDEX_COMPRESSED = 1
INDEX_CONTINUATION = 0x80

FILE_CHUNK = b"File"
INFO_CHUNK = b"info"
SEGMENT_CHUNK = b"segm"
ADLER_CHUNK = b"adlr"

INFO_HEADER = struct.Struct("<IQQH")
SEGMENT_RECORD = struct.Struct("<IQQQ")
CHUNK_HEADER = struct.Struct("<4sQ")


@dataclass(frozen=True)
class Xp3Segment:
    """ファイルデータのセグメント情報

    Attributes:
        flags: 圧縮フラグ（0: 非圧縮, 1: zlib）
        offset: データの絶対位置
        unpacked_size: 展開後サイズ
        packed_size: 格納サイズ
    """

    flags: int
    offset: int
    unpacked_size: int
    packed_size: int


@dataclass(frozen=True)
class Xp3Entry(ArchiveEntry):
    """XP3アーカイブ内のファイルエントリ情報

    Attributes:
        checksum: adlrチャンクのAdler-32（存在しない場合はNone）
    """

    checksum: int | None = None


@dataclass(frozen=True)
class _EncodedFile:
    relative: str
    payload: bytes
    original_size: int
    checksum: int

    @property
    def compressed(self) -> bool:
        return len(self.payload) != self.original_size


def build_file_chunk(
    name: str, original_size: int, packed_size: int, offset: int, checksum: int
) -> bytes:
    """1ファイル分の File チャンク（info / segm / adlr）を組み立てる"""
    encoded_name = name.encode("utf-16-le")
    info = INFO_HEADER.pack(0, original_size, packed_size, len(encoded_name) // 2) + encoded_name
    segment = SEGMENT_RECORD.pack(
        1 if packed_size != original_size else 0, offset, original_size, packed_size
    )
    body = (
        CHUNK_HEADER.pack(INFO_CHUNK, len(info))
        + info
        + CHUNK_HEADER.pack(SEGMENT_CHUNK, len(segment))
        + segment
        + CHUNK_HEADER.pack(ADLER_CHUNK, 4)
        + struct.pack("<I", checksum)
    )
    return CHUNK_HEADER.pack(FILE_CHUNK, len(body)) + body


class Xp3Archive(ArchiveFormat):
    """XP3アーカイブのコーデック

    吉里吉里/KAG形式のXP3アーカイブファイルを開き、
    内包されているファイルの展開や、ディレクトリからのパックを行う。
    """

    name = "XP3"
    description = "Kirikiri Archive"
    can_write = True

    def __init__(
        self,
        logger: ArchiveLogger | None = None,
        workers: int = 1,
        version: int = 2,
        compress_index: bool = True,
        compress_contents: bool = True,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
        verify_checksum: bool = False,
    ) -> None:
        """コーデックを初期化する

        Args:
            logger: ログ出力先
            workers: 展開・圧縮に使用するワーカー数
            version: パック時のヘッダーバージョン（1または2）
            compress_index: パック時にインデックスを圧縮するか
            compress_contents: パック時にファイルデータを圧縮するか
            compression_level: zlib圧縮レベル
            verify_checksum: 展開時にAdler-32を検証するか
        """
        super().__init__(logger, workers)
        self._version = version
        self._compress_index = compress_index
        self._compress_contents = compress_contents
        self._compression_level = compression_level
        self._verify_checksum = verify_checksum

    def detect(self, head: bytes) -> bool:
        return head.startswith(XP3_MAGIC)

    def read_version(self, data: bytes, source: Path) -> tuple[int, int]:
        """ヘッダーバージョンとインデックス位置フィールドの位置を返す

        Raises:
            UnrecognizedFormatError: マジックナンバーが一致しない場合
            CorruptIndexError: ヘッダーが欠けている場合
        """
        if not self.detect(bytes(data[: len(XP3_MAGIC)])):
            raise UnrecognizedFormatError("XP3アーカイブではありません", self.name, source)
        if len(data) < VERSION1_INDEX_FIELD + 8:
            raise self._corrupt("ヘッダーが不足しています", source)

        (marker,) = struct.unpack_from("<Q", data, VERSION1_INDEX_FIELD)
        if (
            marker == VERSION2_MARKER
            and len(data) >= VERSION2_INDEX_FIELD + 8
            and data[VERSION2_FLAG_OFFSET] == VERSION2_FLAG
        ):
            return 2, VERSION2_INDEX_FIELD
        # マーカーでなければ、その8バイトがインデックス位置そのもの
        return 1, VERSION1_INDEX_FIELD

    def read_index(self, data: bytes, index_offset: int, source: Path) -> bytes:
        """インデックス領域を読み取り、必要なら解凍して返す

        インデックスはファイル末尾までをちょうど占めている必要がある。

        Raises:
            CorruptIndexError: インデックスが範囲外、余分な末尾データがある、
                または解凍に失敗した場合
        """
        visited: set[int] = set()
        pos = index_offset
        try:
            while True:
                if pos in visited or pos >= len(data):
                    raise self._corrupt(f"インデックス位置が不正です: {pos:#x}", source)
                visited.add(pos)
                flag = data[pos]

                if flag == INDEX_CONTINUATION:
                    (pos,) = struct.unpack_from("<Q", data, pos + 9)
                    continue

                if flag == INDEX_RAW:
                    (size,) = struct.unpack_from("<Q", data, pos + 1)
                    start = pos + 9
                    self._check_index_end(start + size, len(data), source)
                    return bytes(data[start : start + size])

                if flag == INDEX_COMPRESSED:
                    packed_size, unpacked_size = struct.unpack_from("<QQ", data, pos + 1)
                    start = pos + 17
                    self._check_index_end(start + packed_size, len(data), source)
                    try:
                        index = decompress_deflate(data[start : start + packed_size])
                    except zlib.error as e:
                        raise self._corrupt(f"インデックスの解凍に失敗しました ({e})", source) from e
                    if len(index) != unpacked_size:
                        self._logger.warning(
                            f"インデックスサイズが一致しません "
                            f"(expected={unpacked_size}, actual={len(index)})。読み取りを続行します"
                        )
                    return index

                raise self._corrupt(f"不明なインデックス形式です: {flag:#x}", source)
        except struct.error as e:
            raise self._corrupt(f"インデックスヘッダーが途中で切れています ({e})", source) from e

    def _check_index_end(self, end: int, file_size: int, source: Path) -> None:
        if end > file_size:
            raise self._corrupt("インデックスがファイル範囲外です", source)
        if end != file_size:
            raise self._corrupt(
                f"インデックスの後に余分なデータがあります ({file_size - end} bytes)", source
            )

    def parse_index(self, index: bytes, source: Path) -> list[Xp3Entry]:
        """File チャンクの列をエントリ一覧に変換する

        Raises:
            CorruptIndexError: チャンク構造が不正な場合
            UnsafePathError: 名前を復号できない場合
        """
        entries: list[Xp3Entry] = []
        for tag, body in self._iter_chunks(index, source):
            if tag != FILE_CHUNK:
                raise self._corrupt(f"不明なチャンクです: {tag!r}", source)
            entries.append(self._parse_file_chunk(body, source))
        return entries

    def _iter_chunks(self, data: bytes, source: Path) -> Iterator[tuple[bytes, bytes]]:
        pos = 0
        while pos < len(data):
            if pos + CHUNK_HEADER.size > len(data):
                raise self._corrupt("チャンクヘッダーが途中で切れています", source)
            tag, size = CHUNK_HEADER.unpack_from(data, pos)
            start = pos + CHUNK_HEADER.size
            end = start + size
            if end > len(data):
                raise self._corrupt(f"チャンク {tag!r} が途中で切れています", source)
            yield tag, data[start:end]
            pos = end

    def _parse_file_chunk(self, chunk: bytes, source: Path) -> Xp3Entry:
        info: tuple[int, int, int, str] | None = None
        segment: Xp3Segment | None = None
        checksum: int | None = None

        for tag, body in self._iter_chunks(chunk, source):
            if tag == INFO_CHUNK:
                if len(body) < INFO_HEADER.size:
                    raise self._corrupt("infoチャンクが不足しています", source)
                flags, unpacked_size, packed_size, name_len = INFO_HEADER.unpack_from(body, 0)
                raw_name = body[INFO_HEADER.size : INFO_HEADER.size + name_len * 2]
                if len(raw_name) != name_len * 2:
                    raise self._corrupt("infoチャンクのファイル名が途中で切れています", source)
                try:
                    entry_name = raw_name.decode("utf-16-le")
                except UnicodeDecodeError as e:
                    raise UnsafePathError(
                        "エントリ名に不正なデータが含まれています", self.name, source
                    ) from e
                info = (flags, unpacked_size, packed_size, entry_name)
            elif tag == SEGMENT_CHUNK:
                if len(body) < SEGMENT_RECORD.size:
                    raise self._corrupt("segmチャンクが不足しています", source)
                # 1ファイル1セグメントを前提とし、先頭のレコードのみを使用する
                segment = Xp3Segment(*SEGMENT_RECORD.unpack_from(body, 0))
            elif tag == ADLER_CHUNK:
                if len(body) < 4:
                    raise self._corrupt("adlrチャンクが不足しています", source)
                (checksum,) = struct.unpack_from("<I", body, 0)
            # 不明なサブチャンクは宣言長に従って読み飛ばす

        if info is None or segment is None:
            raise self._corrupt("infoまたはsegmチャンクがありません", source)

        flags, unpacked_size, packed_size, entry_name = info
        if flags != 0:
            self._logger.warning(
                f"暗号化されたファイルを検出しました。そのまま展開します: {entry_name}"
            )

        return Xp3Entry(
            name=entry_name,
            offset=segment.offset,
            size=packed_size,
            unpacked_size=unpacked_size,
            flags=EntryFlags(
                compressed=unpacked_size != packed_size,
                encrypted=flags != 0,
                method=segment.flags,
            ),
            checksum=checksum,
        )

    def unpack(
        self,
        source: Path,
        dest_dir: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """XP3アーカイブを展開する

        展開先パスが長すぎるエントリは警告を出してスキップし、残りの展開を続ける。
        """
        sink = self._progress(progress)

        with self._open(source) as data:
            version, field_pos = self.read_version(data, source)
            self._logger.log_version("xp3", version)
            (index_offset,) = struct.unpack_from("<Q", data, field_pos)

            index = self.read_index(data, index_offset, source)
            entries = self.parse_index(index, source)
            for entry in entries:
                self._check_bounds(entry, len(data), source)
            targets = [self._resolve(dest_dir, entry.name, source) for entry in entries]

            sink.set_total(len(entries))
            dest_dir.mkdir(parents=True, exist_ok=True)
            with self._writer(sink) as writer:
                for entry, target in zip(entries, targets):
                    writer.submit(
                        target,
                        data[entry.offset : entry.end],
                        self._make_transform(entry, source),
                        skip_long_path=True,
                    )

        self._logger.log_summary("展開", len(entries), dest_dir)
        return list(entries)

    def _make_transform(self, entry: Xp3Entry, source: Path) -> Callable[[bytes], bytes]:
        def transform(payload: bytes) -> bytes:
            if entry.unpacked_size != entry.size:
                try:
                    payload = decompress_deflate(payload)
                except zlib.error as e:
                    raise self._corrupt(f"{entry.name}: 解凍に失敗しました ({e})", source) from e
            if self._verify_checksum and entry.checksum is not None:
                if adler32(payload) != entry.checksum:
                    self._logger.warning(f"Adler-32が一致しません: {entry.name}")
            return payload

        return transform

    def pack(
        self,
        source_dir: Path,
        output: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """ディレクトリからXP3アーカイブを作成する

        ファイルデータを直接コンテナに書き込みながら、インデックスを別バッファに組み立てる。
        インデックス位置のフィールドは最後に書き戻す。
        """
        if self._version not in (1, 2):
            raise UnsupportedVersionError(
                f"未対応のバージョンです: {self._version}", self.name, output
            )

        sink = self._progress(progress)
        files = self._collect(source_dir)
        for relative, path in files:
            if len(relative.encode("utf-16-le")) // 2 > 0xFFFF:
                raise UnsafePathError("ファイル名が長すぎます", self.name, path)

        sink.set_total(len(files))
        entries: list[ArchiveEntry] = []
        index = bytearray()

        with atomic_output(output) as f:
            f.write(XP3_MAGIC)
            if self._version == 2:
                f.write(struct.pack("<QIBQ", VERSION2_MARKER, 1, VERSION2_FLAG, 0))
            field_pos = f.tell()
            f.write(struct.pack("<Q", 0))

            for encoded in self._encode_files(files):
                offset = f.tell()
                f.write(encoded.payload)
                index += build_file_chunk(
                    encoded.relative,
                    encoded.original_size,
                    len(encoded.payload),
                    offset,
                    encoded.checksum,
                )
                entries.append(
                    Xp3Entry(
                        name=encoded.relative,
                        offset=offset,
                        size=len(encoded.payload),
                        unpacked_size=encoded.original_size,
                        flags=EntryFlags(compressed=encoded.compressed),
                        checksum=encoded.checksum,
                    )
                )
                self._logger.log_entry(encoded.relative, encoded.original_size)
                sink.advance()

            index_offset = f.tell()
            if self._compress_index:
                packed_index = compress_deflate(bytes(index), self._compression_level)
                f.write(struct.pack("<BQQ", INDEX_COMPRESSED, len(packed_index), len(index)))
                f.write(packed_index)
            else:
                f.write(struct.pack("<BQ", INDEX_RAW, len(index)))
                f.write(index)

            f.seek(field_pos)
            f.write(struct.pack("<Q", index_offset))

        self._logger.log_summary("パック", len(entries), output)
        return entries

    def _encode_files(self, files: list[tuple[str, Path]]) -> Iterator[_EncodedFile]:
        """ファイルの読み込み・チェックサム計算・圧縮を行う

        ワーカーを使う場合もバッチ単位でファイル順に結果を返す。
        """
        if self._workers == 1:
            yield from map(self._encode_file, files)
            return

        batch_size = self._workers * 2
        with ThreadPoolExecutor(max_workers=self._workers) as executor:
            for start in range(0, len(files), batch_size):
                yield from executor.map(self._encode_file, files[start : start + batch_size])

    def _encode_file(self, item: tuple[str, Path]) -> _EncodedFile:
        relative, path = item
        data = self._read_source_file(path)
        checksum = adler32(data)
        payload = data
        if self._compress_contents:
            compressed = compress_deflate(data, self._compression_level)
            # 格納サイズと元サイズが一致すると展開時に非圧縮と判定されるため、そのまま格納する
            if len(compressed) != len(data):
                payload = compressed
        return _EncodedFile(
            relative=relative,
            payload=payload,
            original_size=len(data),
            checksum=checksum,
        )
