"""CLI entry point for galpack."""

from dataclasses import replace
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from galpack import __version__
from galpack.config import ConfigError, GalpackConfig, get_default_config, load_config
from galpack.errors import ArchiveError
from galpack.logger import ArchiveLogger, LogConfig, VerboseLevel
from galpack.registry import calculate_workers, create_registry
from galpack.types import ExitCode

app = typer.Typer(help="ビジュアルノベルのアーカイブ（XP3/PFS/PAK/DAT）を展開・パックするCLIツール")
console = Console()

PACK_FORMATS = ("pfs", "xp3")

ConfigOption = Annotated[Path | None, typer.Option("--config", "-c", help="設定ファイル（YAML）")]
VerboseOption = Annotated[int, typer.Option("-v", "--verbose", count=True, help="詳細ログ出力")]
QuietOption = Annotated[bool, typer.Option("-q", "--quiet", help="エラー以外を出力しない")]
LogFileOption = Annotated[Path | None, typer.Option(help="ログファイル出力先")]
WorkersOption = Annotated[int | None, typer.Option(help="ワーカー数（0で自動）")]
EncodingOption = Annotated[str | None, typer.Option(help="エントリ名の文字コード")]


def _format_size(size_bytes: int) -> str:
    """バイト数を人間が読みやすい形式に変換する"""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"


def _create_logger(verbose: int, quiet: bool, log_file: Path | None) -> ArchiveLogger:
    level = VerboseLevel.QUIET if quiet else VerboseLevel(min(verbose, VerboseLevel.DEBUG))
    return ArchiveLogger(LogConfig(verbose_level=level, log_file=log_file))


def _load_config(
    config_file: Path | None,
    *,
    workers: int | None = None,
    encoding: str | None = None,
    pack_format: str | None = None,
    version: int | None = None,
    key: str | None = None,
    key_database: Path | None = None,
    title: str | None = None,
) -> GalpackConfig:
    """設定ファイルを読み込み、コマンドラインの指定で上書きする

    Raises:
        ConfigError: 設定ファイルまたは指定値が不正な場合
    """
    config = load_config(config_file) if config_file else get_default_config()

    if workers is not None:
        if workers < 0:
            raise ConfigError(f"workersは0以上である必要があります: {workers}")
        config = replace(config, workers=workers or calculate_workers())
    if encoding:
        config = replace(
            config,
            pfs=replace(config.pfs, encoding=encoding),
            pak=replace(config.pak, encoding=encoding),
        )
    if version is not None:
        if pack_format == "pfs":
            config = replace(config, pfs=replace(config.pfs, version=version))
        elif pack_format == "xp3":
            config = replace(config, xp3=replace(config.xp3, version=version))
    if key or key_database or title:
        config = replace(
            config,
            siglus=replace(
                config.siglus,
                key=key or config.siglus.key,
                key_database=key_database or config.siglus.key_database,
                title=title or config.siglus.title,
            ),
        )
    return config


def _default_output_dir(input_path: Path) -> Path:
    if input_path.suffix:
        return input_path.with_suffix("")
    return input_path.with_name(f"{input_path.name}_unpacked")


@app.command()
def unpack(
    input_path: Annotated[Path, typer.Argument(help="入力アーカイブ")],
    output: Annotated[Path | None, typer.Option("-o", "--output", help="展開先ディレクトリ")] = None,
    config_file: ConfigOption = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    log_file: LogFileOption = None,
    workers: WorkersOption = None,
    encoding: EncodingOption = None,
    key: Annotated[str | None, typer.Option(help="Siglusの復号鍵（16進）")] = None,
    key_database: Annotated[Path | None, typer.Option(help="Siglusの鍵データベース")] = None,
    title: Annotated[str | None, typer.Option(help="鍵候補を優先するゲームタイトル")] = None,
) -> None:
    """アーカイブを展開する"""
    if not input_path.is_file():
        console.print(f"[red]Error: 入力ファイルが見つかりません: {input_path}[/red]")
        raise typer.Exit(ExitCode.INVALID_INPUT)

    dest_dir = output or _default_output_dir(input_path)

    with _create_logger(verbose, quiet, log_file) as logger:
        try:
            config = _load_config(
                config_file,
                workers=workers,
                encoding=encoding,
                key=key,
                key_database=key_database,
                title=title,
            )
            registry = create_registry(config, logger)
        except ConfigError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(ExitCode.INVALID_INPUT) from e

        progress = None if quiet else logger.create_progress()
        try:
            entries = registry.detect_and_unpack(input_path, dest_dir, progress)
        except ArchiveError as e:
            if progress is not None:
                progress.finish(False, e.reason)
            logger.error(str(e))
            raise typer.Exit(ExitCode.ERROR) from e

        if progress is not None:
            progress.finish(True)
            total = sum(entry.unpacked_size for entry in entries)
            console.print(
                f"[green]展開完了: {len(entries)} files ({_format_size(total)}) -> {dest_dir}[/green]"
            )
    raise typer.Exit(ExitCode.SUCCESS)


@app.command()
def pack(
    source_dir: Annotated[Path, typer.Argument(help="格納するディレクトリ")],
    output: Annotated[Path, typer.Argument(help="出力アーカイブ")],
    pack_format: Annotated[
        str, typer.Option("--format", "-f", help="出力フォーマット（pfs / xp3）")
    ] = "xp3",
    version: Annotated[int | None, typer.Option(help="フォーマットのバージョン")] = None,
    config_file: ConfigOption = None,
    verbose: VerboseOption = 0,
    quiet: QuietOption = False,
    log_file: LogFileOption = None,
    workers: WorkersOption = None,
    encoding: EncodingOption = None,
) -> None:
    """ディレクトリをアーカイブにパックする"""
    pack_format = pack_format.lower()
    if pack_format not in PACK_FORMATS:
        console.print(f"[red]Error: パックに対応していないフォーマットです: {pack_format}[/red]")
        raise typer.Exit(ExitCode.INVALID_INPUT)
    if not source_dir.is_dir():
        console.print(f"[red]Error: ディレクトリが見つかりません: {source_dir}[/red]")
        raise typer.Exit(ExitCode.INVALID_INPUT)

    with _create_logger(verbose, quiet, log_file) as logger:
        try:
            config = _load_config(
                config_file,
                workers=workers,
                encoding=encoding,
                pack_format=pack_format,
                version=version,
            )
            registry = create_registry(config, logger)
        except ConfigError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(ExitCode.INVALID_INPUT) from e

        progress = None if quiet else logger.create_progress()
        try:
            entries = registry.pack(pack_format, source_dir, output, progress)
        except ArchiveError as e:
            if progress is not None:
                progress.finish(False, e.reason)
            logger.error(str(e))
            raise typer.Exit(ExitCode.ERROR) from e

        if progress is not None:
            progress.finish(True)
            console.print(f"[green]パック完了: {len(entries)} files -> {output}[/green]")
    raise typer.Exit(ExitCode.SUCCESS)


@app.command()
def detect(
    input_path: Annotated[Path, typer.Argument(help="判定するファイル")],
) -> None:
    """アーカイブの形式を判定する"""
    if not input_path.is_file():
        console.print(f"[red]Error: 入力ファイルが見つかりません: {input_path}[/red]")
        raise typer.Exit(ExitCode.INVALID_INPUT)

    registry = create_registry()
    try:
        codec = registry.detect_path(input_path)
    except ArchiveError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(ExitCode.ERROR) from e

    table = Table(title="Archive Info", show_header=False)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("File", str(input_path))
    table.add_row("Format", codec.name)
    table.add_row("Description", codec.description)
    table.add_row("Size", _format_size(input_path.stat().st_size))
    console.print(table)
    raise typer.Exit(ExitCode.SUCCESS)


@app.command()
def formats() -> None:
    """対応フォーマットの一覧を表示する"""
    table = Table(title="対応フォーマット")
    table.add_column("フォーマット", style="cyan")
    table.add_column("説明", justify="left")
    table.add_column("展開", justify="center")
    table.add_column("パック", justify="center")

    for codec in create_registry().codecs:
        can_pack = "[green]✓[/green]" if codec.can_write else "[dim]-[/dim]"
        table.add_row(codec.name, codec.description, "[green]✓[/green]", can_pack)

    console.print(table)
    raise typer.Exit(ExitCode.SUCCESS)


def version_callback(value: bool) -> None:
    """バージョン表示コールバック"""
    if value:
        typer.echo(f"galpack {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=version_callback,
            is_eager=True,
            help="バージョンを表示する",
        ),
    ] = False,
) -> None:
    """galpack CLI - ビジュアルノベルのアーカイブを展開・パック"""
    pass
