"""フォーマットレジストリのテスト"""

from pathlib import Path

import pytest

from galpack.config import ConfigError, GalpackConfig, SiglusConfig
from galpack.errors import ArchiveIOError, UnrecognizedFormatError, UnsupportedVersionError
from galpack.formats.artemis import PfsArchive
from galpack.formats.gspack import PakArchive
from galpack.formats.kirikiri import XP3_MAGIC, Xp3Archive
from galpack.formats.siglus import SiglusDatArchive
from galpack.logger import ArchiveLogger, LogConfig, VerboseLevel
from galpack.registry import (
    MEMORY_PER_WORKER_MB,
    FormatRegistry,
    calculate_workers,
    create_registry,
)

HEADS = {
    "XP3": XP3_MAGIC + b"\x00" * 16,
    "PFS": b"pf8" + b"\x00" * 16,
    "PAK": b"GSPACK5\x00\x00" + b"\x00" * 16,
    "DAT": b"\x00\x00\x00\x00\x01\x00\x00\x00" + b"\x00" * 16,
}


@pytest.fixture
def logger() -> ArchiveLogger:
    return ArchiveLogger(LogConfig(verbose_level=VerboseLevel.QUIET))


@pytest.fixture
def registry(logger: ArchiveLogger) -> FormatRegistry:
    return create_registry(logger=logger)


def make_tree(root: Path, files: dict[str, bytes]) -> Path:
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


class TestDetect:
    """形式判定のテスト"""

    def test_priority_order(self, registry: FormatRegistry) -> None:
        """検出順はXP3, PFS, PAK, DATで固定"""
        assert [codec.name for codec in registry.codecs] == ["XP3", "PFS", "PAK", "DAT"]

    @pytest.mark.parametrize(
        "expected",
        [
            pytest.param("XP3", id="正常系: XP3"),
            pytest.param("PFS", id="正常系: PFS"),
            pytest.param("PAK", id="正常系: PAK"),
            pytest.param("DAT", id="正常系: DAT"),
        ],
    )
    def test_detect_is_exclusive(self, registry: FormatRegistry, expected: str) -> None:
        """各シグネチャに一致するコーデックはちょうど1つ"""
        head = HEADS[expected]
        matched = [codec.name for codec in registry.codecs if codec.detect(head)]
        assert matched == [expected]
        assert registry.detect(head).name == expected

    @pytest.mark.parametrize(
        "head",
        [
            pytest.param(b"", id="異常系: 空"),
            pytest.param(b"PK\x03\x04" + b"\x00" * 60, id="異常系: ZIP"),
            pytest.param(b"pfX" + b"\x00" * 16, id="異常系: PFSのバージョンが数字でない"),
            pytest.param(
                b"\x00" * 4 + b"\x02\x00\x00\x00" + b"\x00" * 8, id="異常系: DATの鍵フラグ不正"
            ),
        ],
    )
    def test_detect_unrecognized(self, registry: FormatRegistry, head: bytes) -> None:
        with pytest.raises(UnrecognizedFormatError):
            registry.detect(head)

    def test_detect_path(self, registry: FormatRegistry, tmp_path: Path) -> None:
        """ファイルの先頭から判定できる"""
        path = tmp_path / "data.xp3"
        path.write_bytes(HEADS["XP3"])
        assert isinstance(registry.detect_path(path), Xp3Archive)

    def test_detect_path_unrecognized_has_path(
        self, registry: FormatRegistry, tmp_path: Path
    ) -> None:
        """判定に失敗した場合はパス付きのエラー"""
        path = tmp_path / "unknown.bin"
        path.write_bytes(b"unknown archive")

        with pytest.raises(UnrecognizedFormatError) as exc_info:
            registry.detect_path(path)
        assert exc_info.value.path == path

    def test_detect_path_missing(self, registry: FormatRegistry, tmp_path: Path) -> None:
        with pytest.raises(ArchiveIOError):
            registry.detect_path(tmp_path / "missing.xp3")


class TestGet:
    """名前によるコーデック取得のテスト"""

    @pytest.mark.parametrize(
        "name, expected",
        [
            pytest.param("xp3", Xp3Archive, id="正常系: 小文字"),
            pytest.param("PFS", PfsArchive, id="正常系: 大文字"),
            pytest.param("Pak", PakArchive, id="正常系: 混在"),
            pytest.param("dat", SiglusDatArchive, id="正常系: DAT"),
        ],
    )
    def test_get(self, registry: FormatRegistry, name: str, expected: type) -> None:
        assert isinstance(registry.get(name), expected)

    def test_get_unknown(self, registry: FormatRegistry) -> None:
        with pytest.raises(UnsupportedVersionError):
            registry.get("zip")


class TestPackAndUnpack:
    """パックと判定付き展開のテスト"""

    FILES = {
        "script/start.ks": b"*start\n[wait time=100]\n" * 20,
        "image/bg.bin": bytes(range(256)) * 4,
    }

    @pytest.mark.parametrize(
        "format_name",
        [
            pytest.param("xp3", id="正常系: XP3"),
            pytest.param("pfs", id="正常系: PFS"),
        ],
    )
    def test_round_trip(
        self, registry: FormatRegistry, tmp_path: Path, format_name: str
    ) -> None:
        """パックしたアーカイブを判定付きで展開すると元に戻る"""
        source = make_tree(tmp_path / "src", self.FILES)
        archive = tmp_path / f"data.{format_name}"

        registry.pack(format_name, source, archive)
        dest = tmp_path / "out" / "nested"
        entries = registry.detect_and_unpack(archive, dest)

        assert dest.is_dir()
        assert len(entries) == len(self.FILES)
        for name, content in self.FILES.items():
            assert (dest / name).read_bytes() == content

    @pytest.mark.parametrize(
        "format_name",
        [
            pytest.param("pak", id="異常系: PAK"),
            pytest.param("dat", id="異常系: DAT"),
        ],
    )
    def test_pack_read_only_format(
        self, registry: FormatRegistry, tmp_path: Path, format_name: str
    ) -> None:
        """読み込み専用フォーマットへのパックはエラー"""
        source = make_tree(tmp_path / "src", self.FILES)
        with pytest.raises(UnsupportedVersionError):
            registry.pack(format_name, source, tmp_path / "out.bin")
        assert not (tmp_path / "out.bin").exists()

    def test_detect_and_unpack_unrecognized(
        self, registry: FormatRegistry, tmp_path: Path
    ) -> None:
        """判定できないファイルは展開先を作らずにエラー"""
        path = tmp_path / "unknown.bin"
        path.write_bytes(b"not an archive at all")
        dest = tmp_path / "out"

        with pytest.raises(UnrecognizedFormatError):
            registry.detect_and_unpack(path, dest)
        assert not dest.exists()


class TestCalculateWorkers:
    """calculate_workersのテスト"""

    @pytest.mark.parametrize(
        "memory_mb, cpu_count, expected",
        [
            pytest.param(MEMORY_PER_WORKER_MB * 16, 4, 4, id="正常系: CPU数で制限"),
            pytest.param(MEMORY_PER_WORKER_MB * 2, 8, 2, id="正常系: メモリで制限"),
            pytest.param(0, 8, 1, id="境界値: メモリ不足でも最小1"),
        ],
    )
    def test_calculate_workers(
        self, monkeypatch: pytest.MonkeyPatch, memory_mb: int, cpu_count: int, expected: int
    ) -> None:
        monkeypatch.setattr("galpack.registry.os.cpu_count", lambda: cpu_count)
        assert calculate_workers(memory_mb) == expected

    def test_calculate_workers_auto(self) -> None:
        """自動検出でも1以上"""
        assert calculate_workers() >= 1


class TestCreateRegistry:
    """create_registryのテスト"""

    def test_key_database_from_config(self, tmp_path: Path, logger: ArchiveLogger) -> None:
        """設定の鍵データベースがDATコーデックに渡される"""
        key_db = tmp_path / "keys.yml"
        key_db.write_text(
            'descramble:\n  1: "aa bb cc"\nschemes:\n  Sample: "01 02"\n', encoding="utf-8"
        )
        config = GalpackConfig(siglus=SiglusConfig(key_database=key_db))

        registry = create_registry(config, logger)
        codec = registry.get("dat")
        assert isinstance(codec, SiglusDatArchive)
        assert codec.descramble_table(tmp_path / "Gameexe.dat") == b"\xaa\xbb\xcc"

    def test_invalid_key(self, logger: ArchiveLogger) -> None:
        """不正な鍵の指定はConfigError"""
        config = GalpackConfig(siglus=SiglusConfig(key="not hex"))
        with pytest.raises(ConfigError, match="Siglusの鍵が不正です"):
            create_registry(config, logger)

    def test_missing_key_database(self, tmp_path: Path, logger: ArchiveLogger) -> None:
        config = GalpackConfig(siglus=SiglusConfig(key_database=tmp_path / "missing.yml"))
        with pytest.raises(ConfigError):
            create_registry(config, logger)
