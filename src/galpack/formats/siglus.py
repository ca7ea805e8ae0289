"""Siglus DATアーカイブ操作モジュール

SiglusエンジンのGameexe.datを復号・解凍し、Gameexe.iniとして書き出す。
このフォーマットは読み込み専用で、常に1つの設定ファイルのみを含む。
"""

from __future__ import annotations

import struct
from pathlib import Path

from galpack.compression import decompress_siglus_lz, xor_cycle
from galpack.errors import CorruptIndexError, KeyResolutionError, UnrecognizedFormatError
from galpack.formats.base import ArchiveEntry, ArchiveFormat, EntryFlags
from galpack.keys import KeyScheme, KeySchemeProvider
from galpack.logger import ArchiveLogger, ProgressSink

# reserved(4) + keyed(4)
PREFIX_SIZE = 8
MIN_ARCHIVE_SIZE = 16
# packed_length(4) + unpacked_length(4)
BODY_HEADER_SIZE = 8

# 鍵に依存しない構造デスクランブルのパス番号
DESCRAMBLE_PASS = 1

UNPACKED_FILE_NAME = "Gameexe.ini"
UTF16_BOM = b"\xff\xfe"


class SiglusDatArchive(ArchiveFormat):
    """Siglus Gameexe.datのコーデック

    鍵付きの場合は、設定で指定された鍵を使うか、
    鍵データベースの候補を順に試して自己整合性チェックに通る鍵を採用する。
    """

    name = "DAT"
    description = "Siglus Engine Gameexe.dat Archive"
    can_write = False

    def __init__(
        self,
        logger: ArchiveLogger | None = None,
        workers: int = 1,
        key: bytes | None = None,
        try_each_key: bool = True,
        key_provider: KeySchemeProvider | None = None,
        title: str | None = None,
    ) -> None:
        """コーデックを初期化する

        Args:
            logger: ログ出力先
            workers: 未使用（単一ファイルのため常に逐次処理）
            key: 明示的に指定する復号鍵
            try_each_key: 鍵データベースの全候補を試すか
            key_provider: 鍵候補とデスクランブル表の提供元
            title: 鍵候補の並べ替えに使うタイトルのヒント
        """
        super().__init__(logger, workers)
        self._key = key
        self._try_each_key = try_each_key
        self._provider = key_provider or KeySchemeProvider()
        self._title = title

    def detect(self, head: bytes) -> bool:
        if len(head) < MIN_ARCHIVE_SIZE:
            return False
        reserved, keyed = struct.unpack_from("<II", head, 0)
        return reserved == 0 and keyed in (0, 1)

    def descramble_table(self, source: Path) -> bytes:
        """構造デスクランブル表を取得する

        Raises:
            KeyResolutionError: 鍵データベースに表が含まれていない場合
        """
        table = self._provider.descramble_table(DESCRAMBLE_PASS)
        if not table:
            raise KeyResolutionError(
                f"構造デスクランブル表 (pass {DESCRAMBLE_PASS}) が鍵データベースにありません",
                self.name,
                source,
            )
        return table

    def decode(self, payload: bytes, key: bytes | None, table: bytes) -> bytes:
        """ペイロードを復号・解凍する

        鍵XOR、構造デスクランブルの順に適用した後、
        先頭8バイトの (packed_length, unpacked_length) を検証して本体を解凍する。

        Args:
            payload: 先頭8バイトのプレフィックスを除いたデータ
            key: 復号鍵（鍵なしアーカイブではNone）
            table: 構造デスクランブル表

        Returns:
            解凍したデータ

        Raises:
            ValueError: 自己整合性チェックまたは解凍に失敗した場合
        """
        buf = xor_cycle(payload, key) if key else payload
        buf = xor_cycle(buf, table)
        if len(buf) < BODY_HEADER_SIZE:
            raise ValueError("本体ヘッダーが不足しています")

        packed_length, unpacked_length = struct.unpack_from("<II", buf, 0)
        if packed_length != len(buf):
            raise ValueError(
                f"圧縮サイズが一致しません (declared={packed_length}, actual={len(buf)})"
            )
        return decompress_siglus_lz(buf[BODY_HEADER_SIZE:], unpacked_length)

    def resolve_key(self, payload: bytes, table: bytes, source: Path) -> tuple[KeyScheme, bytes]:
        """鍵候補を総当たりし、最初に復号に成功した鍵と復号結果を返す

        長さフィールドの一致に加え、宣言サイズちょうどまで解凍できた場合のみ採用する。

        Raises:
            KeyResolutionError: すべての候補で失敗した場合
        """
        candidates = self._provider.candidates(self._title)
        if self._key is not None:
            candidates.insert(0, KeyScheme(title="(指定された鍵)", key=self._key))
        if not candidates:
            raise KeyResolutionError("鍵候補がありません", self.name, source)

        for scheme in candidates:
            try:
                content = self.decode(payload, scheme.key, table)
            except ValueError as e:
                self._logger.debug(f"鍵候補 {scheme.title} は一致しません: {e}")
                continue
            self._logger.info(f"鍵を特定しました: {scheme.title}")
            return scheme, content

        raise KeyResolutionError(
            f"すべての鍵候補で復号に失敗しました ({len(candidates)}件)", self.name, source
        )

    def unpack(
        self,
        source: Path,
        dest_dir: Path,
        progress: ProgressSink | None = None,
    ) -> list[ArchiveEntry]:
        """Gameexe.datを展開する

        書き出すGameexe.iniはUTF-16LEテキストのため、先頭にBOMを付与する。
        """
        sink = self._progress(progress)

        with self._open(source) as data:
            if not self.detect(bytes(data[:MIN_ARCHIVE_SIZE])):
                raise UnrecognizedFormatError(
                    "Siglus DATアーカイブではありません", self.name, source
                )
            (keyed,) = struct.unpack_from("<I", data, 4)
            payload = bytes(data[PREFIX_SIZE:])

        self._logger.log_version("dat", "鍵あり" if keyed else "鍵なし")
        table = self.descramble_table(source)
        content = self._decode_payload(payload, bool(keyed), table, source)

        target = self._resolve(dest_dir, UNPACKED_FILE_NAME, source)
        sink.set_total(1)
        dest_dir.mkdir(parents=True, exist_ok=True)
        with self._writer(sink) as writer:
            writer.submit(target, UTF16_BOM + content)

        self._logger.log_summary("展開", 1, dest_dir)
        return [
            ArchiveEntry(
                name=UNPACKED_FILE_NAME,
                offset=PREFIX_SIZE,
                size=len(payload),
                unpacked_size=len(content),
                flags=EntryFlags(compressed=True, encrypted=bool(keyed)),
            )
        ]

    def _decode_payload(self, payload: bytes, keyed: bool, table: bytes, source: Path) -> bytes:
        if not keyed:
            try:
                return self.decode(payload, None, table)
            except ValueError as e:
                raise CorruptIndexError(str(e), self.name, source) from e

        if self._try_each_key:
            _, content = self.resolve_key(payload, table, source)
            return content

        if self._key is None:
            raise KeyResolutionError("復号鍵が指定されていません", self.name, source)
        try:
            return self.decode(payload, self._key, table)
        except ValueError as e:
            raise KeyResolutionError(f"指定された鍵で復号できません: {e}", self.name, source) from e
