"""進捗表示およびログ出力のインターフェース定義

このモジュールは、galpackのアーカイブ操作の進捗表示とログ出力のためのインターフェースを定義する。
VerboseLevel (詳細ログレベル)に応じた出力制御を行い、
CLIでの展開・パック進捗をユーザーにわかりやすく表示するために使用される。
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from threading import Lock
from typing import Protocol, TextIO


class VerboseLevel(IntEnum):
    """詳細ログレベル

    ログ出力の詳細度を制御するための列挙型。
    QUIET: エラーのみ出力
    NORMAL: 進捗バーとサマリ出力
    VERBOSE: 展開ファイル一覧も出力（-vオプション）
    DEBUG: ヘッダー・インデックスの詳細も出力（-vvオプション）
    """

    QUIET = -1
    NORMAL = 0
    VERBOSE = 1
    DEBUG = 2


class ProgressSink(Protocol):
    """進捗通知のプロトコル

    コーデックが呼び出し、呼び出し側が所有するフック。
    リスナーが存在しなくても処理結果には影響しない。
    """

    def set_total(self, total: int) -> None:
        """処理対象の総数を通知する

        Args:
            total: 処理対象のエントリ数
        """
        ...

    def advance(self) -> None:
        """1エントリの処理完了を通知する"""
        ...


class NullProgress:
    """何もしない進捗通知"""

    def set_total(self, total: int) -> None:
        pass

    def advance(self) -> None:
        pass


@dataclass
class LogConfig:
    """ログ設定

    ログ出力の動作を制御するための設定データクラス。
    詳細レベル、ファイル出力、色やemojiの使用有無を設定できる。

    Attributes:
        verbose_level: ログの詳細度レベル
        log_file: ログ出力先ファイルパス（Noneの場合はファイル出力なし）
        use_color: カラー出力を使用するか
        use_emoji: emoji表示を使用するか
    """

    verbose_level: VerboseLevel = VerboseLevel.NORMAL
    log_file: Path | None = None
    use_color: bool = True
    use_emoji: bool = True


class ArchiveLogger:
    """アーカイブ操作ログ出力クラス

    コーデックのログ出力を管理するクラス。
    VerboseLevelに応じてメッセージのフィルタリングを行い、
    進捗表示インスタンスの作成も担当する。

    使用例:
        >>> config = LogConfig(verbose_level=VerboseLevel.VERBOSE)
        >>> logger = ArchiveLogger(config)
        >>> logger.info("展開を開始します")
        >>> logger.verbose("bg/title.png を展開中")
    """

    _ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

    def __init__(self, config: LogConfig | None = None) -> None:
        """ロガーを初期化する

        Args:
            config: ログ設定（Noneの場合はデフォルト設定）
        """
        self._config = config or LogConfig()
        self._log_file: TextIO | None = None
        # ワーカースレッドからも呼ばれるため出力を直列化する
        self._lock = Lock()
        if self._config.log_file:
            # クラス自体がコンテキストマネージャとして動作し、__exit__でファイルを閉じる
            self._log_file = open(self._config.log_file, "w", encoding="utf-8")  # noqa: SIM115

    def __enter__(self) -> ArchiveLogger:
        """コンテキストマネージャのエントリポイント"""
        return self

    def __exit__(self, *args: object) -> None:
        """コンテキストマネージャの終了処理"""
        if self._log_file:
            self._log_file.close()
            self._log_file = None

    @property
    def config(self) -> LogConfig:
        """ログ設定を取得する

        Returns:
            現在のログ設定
        """
        return self._config

    def _print(self, message: str, file: TextIO | None = None) -> None:
        """メッセージを出力する

        Args:
            message: 出力するメッセージ
            file: 出力先（Noneの場合は標準出力）
        """
        if file is None:
            file = sys.stdout
        print(message, file=file)

    def _emit(self, level: str, message: str, visible: bool, file: TextIO | None = None) -> None:
        with self._lock:
            if visible:
                self._print(message, file=file)
            self._log_to_file(level, message)

    def _log_to_file(self, level: str, message: str) -> None:
        """ファイルにログ出力する

        Args:
            level: ログレベル文字列
            message: 出力するメッセージ
        """
        if self._log_file:
            timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            clean_message = self._strip_ansi(message)
            self._log_file.write(f"[{timestamp}] {level}: {clean_message}\n")
            self._log_file.flush()

    def _strip_ansi(self, text: str) -> str:
        """ANSIエスケープシーケンスを除去する

        Args:
            text: 処理対象のテキスト

        Returns:
            ANSIエスケープシーケンスを除去したテキスト
        """
        return self._ANSI_ESCAPE_PATTERN.sub("", text)

    def info(self, message: str) -> None:
        """情報メッセージを出力する（NORMAL以上）"""
        self._emit("INFO", message, self._config.verbose_level >= VerboseLevel.NORMAL)

    def verbose(self, message: str) -> None:
        """詳細メッセージを出力する（VERBOSE以上）"""
        self._emit("VERBOSE", message, self._config.verbose_level >= VerboseLevel.VERBOSE)

    def debug(self, message: str) -> None:
        """デバッグメッセージを出力する（DEBUG以上）"""
        self._emit("DEBUG", message, self._config.verbose_level >= VerboseLevel.DEBUG)

    def error(self, message: str) -> None:
        """エラーメッセージを出力する（常に出力）"""
        self._emit("ERROR", f"エラー: {message}", True, file=sys.stderr)

    def warning(self, message: str) -> None:
        """警告メッセージを出力する（QUIET以上）"""
        self._emit("WARNING", f"警告: {message}", self._config.verbose_level > VerboseLevel.QUIET)

    def create_progress(self) -> ConsoleProgressDisplay:
        """進捗表示インスタンスを作成する

        Returns:
            進捗表示インスタンス
        """
        return ConsoleProgressDisplay(
            use_color=self._config.use_color,
            use_emoji=self._config.use_emoji,
        )

    def log_version(self, format_name: str, version: object) -> None:
        """有効なアーカイブの検出をログする（NORMAL以上）

        Args:
            format_name: フォーマット名
            version: 検出したバージョン
        """
        self.info(f"有効な{format_name}アーカイブを検出しました (バージョン: {version})")

    def log_entry(self, name: str, size: int) -> None:
        """エントリの展開・格納をログする（VERBOSE以上）

        Args:
            name: エントリ名
            size: 書き込んだバイト数
        """
        self.verbose(f"  {name} ({size} bytes)")

    def log_summary(self, action: str, count: int, target: Path) -> None:
        """処理サマリを出力する（NORMAL以上）

        Args:
            action: 操作名（展開・パックなど）
            count: 処理したエントリ数
            target: 出力先パス
        """
        emoji = "✅" if self._config.use_emoji else "[OK]"
        self.info(f"{emoji} {action}完了: {count} files -> {target}")


class ConsoleProgressDisplay:
    """コンソール進捗表示

    エントリ単位の進捗をコンソールに進捗バーで表示するクラス。
    ProgressSinkとしてコーデックに渡すことができる。
    """

    BAR_WIDTH = 40

    def __init__(self, use_color: bool = True, use_emoji: bool = True) -> None:
        """進捗表示を初期化する

        Args:
            use_color: カラー出力を使用するか
            use_emoji: 絵文字を使用するか
        """
        self._use_color = use_color
        self._use_emoji = use_emoji
        self._total = 0
        self._current = 0
        self._lock = Lock()

    @property
    def current(self) -> int:
        """処理済みエントリ数"""
        return self._current

    @property
    def total(self) -> int:
        """処理対象の総数"""
        return self._total

    def set_total(self, total: int) -> None:
        """処理対象の総数を設定し、進捗をリセットする"""
        with self._lock:
            self._total = total
            self._current = 0

    def advance(self) -> None:
        """進捗を1つ進めて再描画する"""
        with self._lock:
            self._current += 1
            self._render()

    def _render(self) -> None:
        if self._total <= 0:
            return
        current = min(self._current, self._total)
        percent = int((current / self._total) * 100)
        filled = int(self.BAR_WIDTH * current / self._total)
        bar = "█" * filled + "░" * (self.BAR_WIDTH - filled)
        print(f"\r   [{bar}] {percent}% ({current}/{self._total})", end="", flush=True)

    def finish(self, success: bool, message: str = "") -> None:
        """進捗表示を終了する

        Args:
            success: 処理が成功したか
            message: 終了メッセージ（オプション）
        """
        full_bar = "█" * self.BAR_WIDTH
        if success:
            mark = "✓" if self._use_emoji else "done"
            print(f"\r   [{full_bar}] 100% {mark}")
        else:
            mark = "✗" if self._use_emoji else "failed"
            msg_part = f": {message}" if message else ""
            print(f"\r   [{full_bar}] {mark}{msg_part}")
