"""CLIエントリポイントのテスト"""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from galpack.cli import _default_output_dir, _format_size, app
from galpack.formats.kirikiri import XP3_MAGIC

runner = CliRunner()

FILES = {
    "scenario/first.ks": b"*start\n" * 50,
    "bgm.ogg": bytes(range(256)) * 8,
}


def make_tree(root: Path) -> Path:
    for name, content in FILES.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
    return root


class TestMainCommand:
    """メインコマンドのテスト"""

    @pytest.mark.parametrize(
        "args,expected_in_output",
        [
            pytest.param(["--help"], "ビジュアルノベル", id="正常系: ヘルプ表示"),
            pytest.param(["--version"], "0.1.0", id="正常系: バージョン表示"),
        ],
    )
    def test_main_options(self, args: list[str], expected_in_output: str) -> None:
        result = runner.invoke(app, args)
        assert result.exit_code == 0
        assert expected_in_output in result.output


class TestFormatsCommand:
    """formatsコマンドのテスト"""

    def test_formats_lists_all_codecs(self) -> None:
        result = runner.invoke(app, ["formats"])
        assert result.exit_code == 0
        for name in ("XP3", "PFS", "PAK", "DAT"):
            assert name in result.output


class TestPackUnpackCommands:
    """pack / unpackコマンドのテスト"""

    @pytest.mark.parametrize(
        "pack_format",
        [
            pytest.param("xp3", id="正常系: XP3"),
            pytest.param("pfs", id="正常系: PFS"),
        ],
    )
    def test_round_trip(self, tmp_path: Path, pack_format: str) -> None:
        """packで作成したアーカイブをunpackで元に戻せる"""
        source = make_tree(tmp_path / "src")
        archive = tmp_path / f"data.{pack_format}"
        dest = tmp_path / "out"

        result = runner.invoke(
            app, ["pack", str(source), str(archive), "--format", pack_format, "-q"]
        )
        assert result.exit_code == 0
        assert archive.is_file()

        result = runner.invoke(app, ["unpack", str(archive), "-o", str(dest), "-q"])
        assert result.exit_code == 0
        for name, content in FILES.items():
            assert (dest / name).read_bytes() == content

    def test_pack_with_version(self, tmp_path: Path) -> None:
        """--versionでXP3のヘッダーバージョンを指定できる"""
        source = make_tree(tmp_path / "src")
        archive = tmp_path / "data.xp3"

        result = runner.invoke(
            app, ["pack", str(source), str(archive), "-f", "xp3", "--version", "1", "-q"]
        )
        assert result.exit_code == 0
        assert archive.read_bytes().startswith(XP3_MAGIC)

    def test_unpack_shows_summary(self, tmp_path: Path) -> None:
        """通常出力では展開完了のサマリが表示される"""
        source = make_tree(tmp_path / "src")
        archive = tmp_path / "data.xp3"
        runner.invoke(app, ["pack", str(source), str(archive), "-q"])

        result = runner.invoke(app, ["unpack", str(archive), "-o", str(tmp_path / "out")])
        assert result.exit_code == 0
        assert "展開完了" in result.output

    def test_unpack_missing_input(self, tmp_path: Path) -> None:
        """存在しない入力ファイルは入力エラー"""
        result = runner.invoke(app, ["unpack", str(tmp_path / "missing.xp3")])
        assert result.exit_code == 2
        assert "Error" in result.output

    def test_unpack_corrupt_archive(self, tmp_path: Path) -> None:
        """壊れたアーカイブは処理エラー"""
        archive = tmp_path / "broken.xp3"
        archive.write_bytes(XP3_MAGIC + b"\x17\x00\x00\x00")

        result = runner.invoke(app, ["unpack", str(archive), "-o", str(tmp_path / "out")])
        assert result.exit_code == 1

    def test_unpack_failure_finishes_progress(self, tmp_path: Path) -> None:
        """失敗時は進捗表示を失敗として終了してからエラーを出力する"""
        archive = tmp_path / "broken.xp3"
        archive.write_bytes(XP3_MAGIC + b"\x17\x00\x00\x00")

        result = runner.invoke(app, ["unpack", str(archive), "-o", str(tmp_path / "out")])
        assert result.exit_code == 1
        assert "✗: ヘッダーが不足しています" in result.output

    def test_unpack_unrecognized(self, tmp_path: Path) -> None:
        """判定できないファイルは処理エラー"""
        path = tmp_path / "readme.txt"
        path.write_text("plain text, not an archive", encoding="utf-8")

        result = runner.invoke(app, ["unpack", str(path), "-o", str(tmp_path / "out")])
        assert result.exit_code == 1

    @pytest.mark.parametrize(
        "args",
        [
            pytest.param(["-f", "pak"], id="異常系: 読み込み専用フォーマット"),
            pytest.param(["-f", "zip"], id="異常系: 未知のフォーマット"),
        ],
    )
    def test_pack_invalid_format(self, tmp_path: Path, args: list[str]) -> None:
        source = make_tree(tmp_path / "src")
        result = runner.invoke(app, ["pack", str(source), str(tmp_path / "out.bin"), *args])
        assert result.exit_code == 2
        assert not (tmp_path / "out.bin").exists()

    def test_pack_missing_source(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["pack", str(tmp_path / "missing"), str(tmp_path / "a.xp3")])
        assert result.exit_code == 2

    def test_negative_workers(self, tmp_path: Path) -> None:
        """負のワーカー数は入力エラー"""
        source = make_tree(tmp_path / "src")
        result = runner.invoke(
            app, ["pack", str(source), str(tmp_path / "a.xp3"), "--workers", "-1"]
        )
        assert result.exit_code == 2

    def test_invalid_siglus_key(self, tmp_path: Path) -> None:
        """不正なSiglus鍵は入力エラー"""
        archive = tmp_path / "Gameexe.dat"
        archive.write_bytes(b"\x00" * 16)
        result = runner.invoke(app, ["unpack", str(archive), "--key", "zz"])
        assert result.exit_code == 2


class TestDetectCommand:
    """detectコマンドのテスト"""

    def test_detect_xp3(self, tmp_path: Path) -> None:
        source = make_tree(tmp_path / "src")
        archive = tmp_path / "data.xp3"
        runner.invoke(app, ["pack", str(source), str(archive), "-q"])

        result = runner.invoke(app, ["detect", str(archive)])
        assert result.exit_code == 0
        assert "XP3" in result.output

    def test_detect_unrecognized(self, tmp_path: Path) -> None:
        path = tmp_path / "unknown.bin"
        path.write_bytes(b"\x01\x02\x03" * 10)

        result = runner.invoke(app, ["detect", str(path)])
        assert result.exit_code == 1


class TestHelpers:
    """補助関数のテスト"""

    @pytest.mark.parametrize(
        "size, expected",
        [
            pytest.param(512, "512 B", id="正常系: バイト"),
            pytest.param(2048, "2.0 KB", id="正常系: キロバイト"),
            pytest.param(3 * 1024 * 1024, "3.0 MB", id="正常系: メガバイト"),
            pytest.param(5 * 1024**3, "5.0 GB", id="正常系: ギガバイト"),
        ],
    )
    def test_format_size(self, size: int, expected: str) -> None:
        assert _format_size(size) == expected

    @pytest.mark.parametrize(
        "name, expected",
        [
            pytest.param("data.xp3", "data", id="正常系: 拡張子あり"),
            pytest.param("data", "data_unpacked", id="正常系: 拡張子なし"),
        ],
    )
    def test_default_output_dir(self, tmp_path: Path, name: str, expected: str) -> None:
        assert _default_output_dir(tmp_path / name) == tmp_path / expected
