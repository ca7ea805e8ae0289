"""GSPack PAKアーカイブ操作モジュール

GSWIN/GsPackエンジンのPAK/DATアーカイブを読み込み、展開する機能を提供する。
インデックスはLZSS圧縮・位置XORされている場合があり、
エントリはファイル名から導出した32ビット鍵で暗号化されている場合がある。
このフォーマットは読み込み専用。
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from collections.abc import Callable
from pathlib import Path

from galpack.compression import decompress_lz, xor_dwords, xor_position
from galpack.errors import UnrecognizedFormatError
from galpack.formats.base import ArchiveEntry, ArchiveFormat, EntryFlags
from galpack.logger import ArchiveLogger, ProgressSink

PAK_MAGICS = (b"DATAPACK5", b"GSPACK5", b"GSPACK4")

HEADER_OFFSET = 0x30
HEADER_FORMAT = "<HHIIiIi"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

NAME_FIELD_SIZE = 0x40
ENTRY_SIZE_V4 = 0x48
ENTRY_SIZE_V5 = 0x68

FLAG_INDEX_KEYED = 0x1
FLAG_ENTRY_ENCRYPTED = 0x2

# アーカイブ名の接頭辞と展開時に付与する拡張子（先に一致したものを使用）
NAME_EXTENSIONS: dict[str, str] = {
    "bgm": ".ogg",
    "voice": ".ogg",
    "graphic": ".png",
    "se": ".ogg",
    "scr": ".scw",
}

SCRIPT_EXTENSION = ".scw"
SCRIPT_SIGNATURE = 0x35776353  # b"Scw5"
SCRIPT_HEADER_SIZE = 0x1C8
# オフセット20の値が-1のとき本体は圧縮されている（エンジン由来の番兵値で、真偽値ではない）
SCRIPT_COMPRESSED_SENTINEL = -1


@dataclass(frozen=True)
class PakHeader:
    """PAKヘッダー情報

    Attributes:
        version_minor: マイナーバージョン
        version_major: メジャーバージョン
        index_size: 圧縮インデックスのサイズ（0の場合は非圧縮）
        flags: 暗号化フラグ（bit0: インデックス, bit1: エントリ）
        file_count: エントリ数
        data_offset: ペイロード領域の基準オフセット
        index_offset: インデックスの位置
    """

    version_minor: int
    version_major: int
    index_size: int
    flags: int
    file_count: int
    data_offset: int
    index_offset: int

    @property
    def entry_size(self) -> int:
        """インデックスレコードの固定長"""
        return ENTRY_SIZE_V4 if self.version_major < 5 else ENTRY_SIZE_V5

    @property
    def unpacked_index_size(self) -> int:
        return self.file_count * self.entry_size


def read_fixed_name(record: bytes, size: int, encoding: str) -> str:
    """NUL埋めの固定長フィールドから名前を取り出す"""
    return record[:size].split(b"\x00", 1)[0].decode(encoding)


def entry_key(name: str) -> int:
    """エントリ名から32ビットの復号鍵を導出する

    key = key * 37 + (文字 | 0x20) を全文字について畳み込む。
    """
    key = 0
    for ch in name:
        key = (key * 37 + (ord(ch) | 0x20)) & 0xFFFFFFFF
    return key


def decrypt_entry(data: bytes, name: str) -> bytes:
    """エントリ単位の暗号を解除する（4バイト未満の末尾は変更しない）"""
    return xor_dwords(data, entry_key(name))


def extension_for(archive_name: str) -> str:
    """アーカイブのファイル名から展開時の拡張子を決定する"""
    lowered = archive_name.lower()
    for prefix, ext in NAME_EXTENSIONS.items():
        if lowered.startswith(prefix):
            return ext
    return ""


def is_obfuscated_script(data: bytes) -> bool:
    """スクリプトコンテナのシグネチャを持つか判定する"""
    return len(data) >= 4 and struct.unpack_from("<I", data, 0)[0] == SCRIPT_SIGNATURE


def deobfuscate_script(data: bytes) -> bytes:
    """Scw5スクリプトの難読化を解除する

    0x1C8バイトのヘッダーに続く本体を位置XORで復元し、
    圧縮されている場合はLZSSで解凍してヘッダーの後ろに連結する。

    Raises:
        ValueError: ヘッダーまたは本体が宣言サイズに満たない場合
    """
    if len(data) < SCRIPT_HEADER_SIZE:
        raise ValueError("スクリプトヘッダーが不足しています")

    compressed_marker, unpacked_size, packed_size = struct.unpack_from("<iII", data, 20)
    header = data[:SCRIPT_HEADER_SIZE]

    if compressed_marker == SCRIPT_COMPRESSED_SENTINEL:
        body = data[SCRIPT_HEADER_SIZE : SCRIPT_HEADER_SIZE + packed_size]
        if len(body) != packed_size:
            raise ValueError("圧縮スクリプト本体が宣言サイズに満たません")
        unpacked = decompress_lz(xor_position(body), unpacked_size)
        if len(unpacked) != unpacked_size:
            raise ValueError(
                "スクリプトの解凍サイズが一致しません "
                f"(declared={unpacked_size}, actual={len(unpacked)})"
            )
        return header + unpacked

    end = SCRIPT_HEADER_SIZE + unpacked_size
    if end > len(data):
        raise ValueError("スクリプト本体が宣言サイズに満たません")
    return header + xor_position(data[SCRIPT_HEADER_SIZE:end]) + data[end:]


class PakArchive(ArchiveFormat):
    """GSPack PAKアーカイブのコーデック"""

    name = "PAK"
    description = "GSPack Archive"
    can_write = False

    def __init__(
        self,
        logger: ArchiveLogger | None = None,
        workers: int = 1,
        encoding: str = "cp932",
    ) -> None:
        """コーデックを初期化する

        Args:
            logger: ログ出力先
            workers: 展開に使用するワーカー数
            encoding: エントリ名の文字コード
        """
        super().__init__(logger, workers)
        self._encoding = encoding

    def detect(self, head: bytes) -> bool:
        magic = head[:9].rstrip(b"\x00").upper()
        return any(magic.startswith(valid) for valid in PAK_MAGICS)

    def read_header(self, data: bytes, source: Path) -> PakHeader:
        """ヘッダーを読み取る

        Raises:
            UnrecognizedFormatError: マジックナンバーが一致しない場合
            CorruptIndexError: ヘッダーが欠けている場合
        """
        if not self.detect(bytes(data[:9])):
            magic = bytes(data[:9]).rstrip(b"\x00").decode("ascii", "replace")
            raise UnrecognizedFormatError(
                f"GSPackアーカイブではありません (magic: {magic!r})", self.name, source
            )
        if len(data) < HEADER_OFFSET + HEADER_SIZE:
            raise self._corrupt("ヘッダーが不足しています", source)
        return PakHeader(*struct.unpack_from(HEADER_FORMAT, data, HEADER_OFFSET))

    def read_index(self, data: bytes, header: PakHeader, source: Path) -> list[ArchiveEntry]:
        """インデックスを読み取り、エントリ一覧を返す

        Raises:
            CorruptIndexError: インデックスの範囲・サイズが不正な場合
        """
        if header.file_count < 0 or header.index_offset < 0:
            raise self._corrupt("ファイル数またはインデックス位置が不正です", source)

        expected = header.unpacked_index_size
        if header.index_size != 0:
            end = header.index_offset + header.index_size
            if end > len(data):
                raise self._corrupt("圧縮インデックスがファイル範囲外です", source)
            packed = data[header.index_offset : end]
            if header.flags & FLAG_INDEX_KEYED:
                packed = xor_position(packed)
            index = decompress_lz(packed, expected)
        else:
            index = data[header.index_offset : header.index_offset + expected]

        if len(index) < expected:
            raise self._corrupt(
                f"インデックスが不足しています (expected={expected}, actual={len(index)})", source
            )

        entries: list[ArchiveEntry] = []
        encrypted = bool(header.flags & FLAG_ENTRY_ENCRYPTED)
        for i in range(header.file_count):
            record = index[i * header.entry_size : (i + 1) * header.entry_size]
            try:
                entry_name = read_fixed_name(record, NAME_FIELD_SIZE, self._encoding)
            except UnicodeDecodeError as e:
                raise self._corrupt(f"エントリ名を復号できません (#{i})", source) from e
            if not entry_name:
                continue
            offset, size = struct.unpack_from("<II", record, NAME_FIELD_SIZE)
            entry = ArchiveEntry(
                name=entry_name,
                offset=header.data_offset + offset,
                size=size,
                flags=EntryFlags(encrypted=encrypted),
            )
            self._check_bounds(entry, len(data), source)
            entries.append(entry)
        return entries

    def unpack(
        self,
        source: Path,
        dest_dir: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """PAKアーカイブを展開する

        インデックス全体の検証とパス解決を終えてから書き出しを開始する。
        エントリの失敗はすべて操作全体の失敗として扱う。
        """
        sink = self._progress(progress)
        ext = extension_for(source.name)

        with self._open(source) as data:
            header = self.read_header(data, source)
            self._logger.log_version("pak", f"{header.version_major}.{header.version_minor}")
            entries = self.read_index(data, header, source)
            targets = [self._resolve(dest_dir, entry.name + ext, source) for entry in entries]

            sink.set_total(len(entries))
            dest_dir.mkdir(parents=True, exist_ok=True)
            with self._writer(sink) as writer:
                for entry, target in zip(entries, targets):
                    writer.submit(
                        target,
                        data[entry.offset : entry.end],
                        self._make_transform(entry, ext, source),
                    )

        self._logger.log_summary("展開", len(entries), dest_dir)
        return entries

    def _make_transform(
        self, entry: ArchiveEntry, ext: str, source: Path
    ) -> Callable[[bytes], bytes]:
        def transform(payload: bytes) -> bytes:
            if entry.flags.encrypted:
                payload = decrypt_entry(payload, entry.name)
            if ext == SCRIPT_EXTENSION and is_obfuscated_script(payload):
                try:
                    payload = deobfuscate_script(payload)
                except ValueError as e:
                    raise self._corrupt(f"{entry.name}: {e}", source) from e
            return payload

        return transform
