"""Artemis PFSコーデックのテスト"""

import hashlib
import struct
from pathlib import Path

import pytest

from galpack.errors import (
    ArchiveIOError,
    CorruptIndexError,
    UnrecognizedFormatError,
    UnsafePathError,
    UnsupportedVersionError,
)
from galpack.formats.artemis import PfsArchive, index_size_for
from galpack.formats.base import collect_files


def make_tree(root: Path, files: dict[str, bytes]) -> Path:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


def read_tree(root: Path) -> dict[str, bytes]:
    return {rel: path.read_bytes() for rel, path in collect_files(root)}


SAMPLE_FILES = {
    "script/start.ast": b"-- start\n" * 20,
    "image/bg/sky.png": bytes(range(256)) * 3,
    "sound/BGM.ogg": b"OggS" + bytes(100),
    "日本語/テキスト.txt": "こんにちは".encode("utf-8"),
    "empty.dat": b"",
}


class TestIndexSize:
    """index_size_forのテスト"""

    @pytest.mark.parametrize(
        "version, name_lengths, expected",
        [
            pytest.param(2, [5], 8 + 24 + 5, id="正常系: pf2"),
            pytest.param(6, [5], 4 + 16 + 5 + 4 + 8 + 12, id="正常系: pf6"),
            pytest.param(8, [5, 7], 4 + 32 + 12 + 4 + 16 + 12, id="正常系: pf8 2エントリ"),
            pytest.param(8, [], 4 + 4 + 12, id="正常系: pf8 空"),
        ],
    )
    def test_index_size_for(self, version: int, name_lengths: list[int], expected: int) -> None:
        assert index_size_for(version, name_lengths) == expected


class TestDetect:
    """detectのテスト"""

    @pytest.mark.parametrize(
        "head, expected",
        [
            pytest.param(b"pf8\x00", True, id="正常系: pf8"),
            pytest.param(b"pf6\x00", True, id="正常系: pf6"),
            pytest.param(b"pf2\x00", True, id="正常系: pf2"),
            pytest.param(b"pf5\x00", True, id="正常系: 未対応バージョンも検出はする"),
            pytest.param(b"pf\x08", False, id="異常系: 数字でないバージョン"),
            pytest.param(b"pf", False, id="異常系: 短すぎる"),
            pytest.param(b"PF8", False, id="異常系: 大文字"),
        ],
    )
    def test_detect(self, head: bytes, expected: bool) -> None:
        assert PfsArchive().detect(head) is expected


class TestPackGolden:
    """パック結果のバイト列検証"""

    def test_pf2_layout(self, tmp_path: Path) -> None:
        """pf2のヘッダーとレコード"""
        src = make_tree(tmp_path / "src", {"a.txt": b"hello"})
        out = tmp_path / "a.pfs"

        PfsArchive(version=2).pack(src, out)

        expected = (
            b"pf2"
            + struct.pack("<III", 37, 0, 1)
            + struct.pack("<I", 5)
            + b"a.txt"
            + struct.pack("<III", 16, 0, 0)
            + struct.pack("<II", 44, 5)
            + b"hello"
        )
        assert out.read_bytes() == expected

    def test_pf6_layout(self, tmp_path: Path) -> None:
        """pf6のヘッダー、レコード、オフセット表"""
        src = make_tree(tmp_path / "src", {"a.txt": b"hello"})
        out = tmp_path / "a.pfs"

        PfsArchive(version=6).pack(src, out)

        expected = (
            b"pf6"
            + struct.pack("<II", 49, 1)
            + struct.pack("<I", 5)
            + b"a.txt"
            + struct.pack("<I", 0)
            + struct.pack("<II", 56, 5)
            + struct.pack("<I", 2)
            + struct.pack("<II", 13, 0)
            + struct.pack("<III", 0, 0, 25)
            + b"hello"
        )
        assert out.read_bytes() == expected

    def test_pf8_payload_key(self, tmp_path: Path) -> None:
        """pf8のペイロードはインデックスのSHA-1でXORされる"""
        src = make_tree(tmp_path / "src", {"a.txt": b"hello"})
        out = tmp_path / "a.pfs"

        PfsArchive(version=8).pack(src, out)

        data = out.read_bytes()
        assert data[:3] == b"pf8"
        key = hashlib.sha1(data[7:56]).digest()
        assert bytes(b ^ key[i] for i, b in enumerate(data[56:])) == b"hello"

    def test_backslash_separators_and_order(self, tmp_path: Path) -> None:
        """エントリ名は'\\'区切りでコードポイント順に並ぶ"""
        src = make_tree(tmp_path / "src", {"b/x.txt": b"1", "a.txt": b"2", "B.txt": b"3"})

        entries = PfsArchive(version=6).pack(src, tmp_path / "a.pfs")

        assert [e.name for e in entries] == ["B.txt", "a.txt", "b\\x.txt"]


class TestRoundTrip:
    """パックと展開の往復テスト"""

    @pytest.mark.parametrize(
        "version",
        [
            pytest.param(2, id="正常系: pf2"),
            pytest.param(6, id="正常系: pf6"),
            pytest.param(8, id="正常系: pf8"),
        ],
    )
    def test_round_trip(self, tmp_path: Path, version: int) -> None:
        """展開結果が元のディレクトリと一致する"""
        src = make_tree(tmp_path / "src", SAMPLE_FILES)
        archive = tmp_path / "data.pfs"

        packed = PfsArchive(version=version).pack(src, archive)
        unpacked = PfsArchive().unpack(archive, tmp_path / "out")

        assert len(packed) == len(unpacked) == len(SAMPLE_FILES)
        assert read_tree(tmp_path / "out") == SAMPLE_FILES

    def test_round_trip_parallel(self, tmp_path: Path) -> None:
        """並列展開でも同じ結果になる"""
        files = {f"dir{i % 4}/file{i:03d}.bin": bytes([i]) * (i * 7) for i in range(40)}
        src = make_tree(tmp_path / "src", files)
        archive = tmp_path / "data.pfs"

        PfsArchive().pack(src, archive)
        PfsArchive(workers=4).unpack(archive, tmp_path / "out")

        assert read_tree(tmp_path / "out") == files

    def test_round_trip_cp932(self, tmp_path: Path) -> None:
        """cp932の名前でも往復できる"""
        files = {"背景/夕焼け.png": b"png"}
        src = make_tree(tmp_path / "src", files)
        archive = tmp_path / "data.pfs"

        PfsArchive(encoding="cp932").pack(src, archive)
        PfsArchive(encoding="cp932").unpack(archive, tmp_path / "out")

        assert read_tree(tmp_path / "out") == files

    def test_pf8_payload_is_encrypted(self, tmp_path: Path) -> None:
        """pf8ではペイロードが平文のまま格納されない"""
        content = b"plain text that should not appear" * 4
        src = make_tree(tmp_path / "src", {"a.txt": content})
        archive = tmp_path / "data.pfs"

        PfsArchive(version=8).pack(src, archive)

        assert content not in archive.read_bytes()

    @pytest.mark.parametrize("version", [2, 6, 8])
    def test_deterministic(self, tmp_path: Path, version: int) -> None:
        """同じディレクトリを2回パックすると同一のバイト列になる"""
        src = make_tree(tmp_path / "src", SAMPLE_FILES)

        PfsArchive(version=version).pack(src, tmp_path / "a.pfs")
        PfsArchive(version=version).pack(src, tmp_path / "b.pfs")

        assert (tmp_path / "a.pfs").read_bytes() == (tmp_path / "b.pfs").read_bytes()

    def test_empty_directory(self, tmp_path: Path) -> None:
        """空のディレクトリもパック・展開できる"""
        src = tmp_path / "src"
        src.mkdir()
        archive = tmp_path / "data.pfs"

        assert PfsArchive().pack(src, archive) == []
        assert PfsArchive().unpack(archive, tmp_path / "out") == []


class TestErrors:
    """エラー処理のテスト"""

    def test_unsafe_name_rejected_before_write(self, tmp_path: Path) -> None:
        """脱出するエントリ名があれば何も書き出さない"""
        src = make_tree(tmp_path / "src", {"aaaaaaaaaa": b"evil", "ok.txt": b"ok"})
        archive = tmp_path / "data.pfs"
        PfsArchive(version=6).pack(src, archive)
        archive.write_bytes(archive.read_bytes().replace(b"aaaaaaaaaa", b"../../evil"))
        dest = tmp_path / "nested" / "out"

        with pytest.raises(UnsafePathError):
            PfsArchive().unpack(archive, dest)

        assert not dest.exists()
        assert not (tmp_path / "evil").exists()

    def test_undecodable_name(self, tmp_path: Path) -> None:
        """名前を復号できない場合はUnsafePathError"""
        src = make_tree(tmp_path / "src", {"日本語.txt": b"x"})
        archive = tmp_path / "data.pfs"
        PfsArchive(encoding="utf-8").pack(src, archive)

        with pytest.raises(UnsafePathError):
            PfsArchive(encoding="ascii").unpack(archive, tmp_path / "out")

    def test_unencodable_name(self, tmp_path: Path) -> None:
        """エンコードできない名前のパックはUnsafePathError"""
        src = make_tree(tmp_path / "src", {"日本語.txt": b"x"})
        with pytest.raises(UnsafePathError):
            PfsArchive(encoding="ascii").pack(src, tmp_path / "data.pfs")
        assert not (tmp_path / "data.pfs").exists()

    def test_unsupported_version_on_unpack(self, tmp_path: Path) -> None:
        """未対応のバージョンはUnsupportedVersionError"""
        archive = tmp_path / "data.pfs"
        archive.write_bytes(b"pf5" + bytes(20))
        with pytest.raises(UnsupportedVersionError):
            PfsArchive().unpack(archive, tmp_path / "out")

    def test_unsupported_version_on_pack(self, tmp_path: Path) -> None:
        """未対応のバージョンでのパックはUnsupportedVersionError"""
        src = make_tree(tmp_path / "src", {"a.txt": b"a"})
        with pytest.raises(UnsupportedVersionError):
            PfsArchive(version=3).pack(src, tmp_path / "data.pfs")

    def test_index_beyond_file(self, tmp_path: Path) -> None:
        """インデックスサイズがファイル長を超える場合はCorruptIndexError"""
        archive = tmp_path / "data.pfs"
        archive.write_bytes(b"pf6" + struct.pack("<II", 1000, 1))
        with pytest.raises(CorruptIndexError):
            PfsArchive().unpack(archive, tmp_path / "out")

    def test_entry_beyond_file(self, tmp_path: Path) -> None:
        """範囲外を指すエントリはCorruptIndexError"""
        src = make_tree(tmp_path / "src", {"a.txt": b"hello"})
        archive = tmp_path / "data.pfs"
        PfsArchive(version=6).pack(src, archive)
        archive.write_bytes(archive.read_bytes()[:-2])

        with pytest.raises(CorruptIndexError):
            PfsArchive().unpack(archive, tmp_path / "out")

    def test_unrecognized(self, tmp_path: Path) -> None:
        """マジックナンバーが一致しない場合はUnrecognizedFormatError"""
        archive = tmp_path / "data.pfs"
        archive.write_bytes(b"XP3\r\n" + bytes(20))
        with pytest.raises(UnrecognizedFormatError):
            PfsArchive().unpack(archive, tmp_path / "out")

    def test_missing_source_dir(self, tmp_path: Path) -> None:
        """存在しないディレクトリのパックはArchiveIOError"""
        with pytest.raises(ArchiveIOError):
            PfsArchive().pack(tmp_path / "missing", tmp_path / "data.pfs")
