"""アーカイブ操作の例外定義

すべてのコーデックが送出する例外の階層を定義する。
例外は対象フォーマット名とファイルパスを保持し、
ユーザーに表示されるメッセージにそれらを含める。
"""

from __future__ import annotations

from pathlib import Path


class ArchiveError(Exception):
    """アーカイブ操作エラーの基底クラス

    Attributes:
        reason: 構造上の理由を表すメッセージ
        format_name: 対象フォーマット名（不明な場合はNone）
        path: 対象ファイルパス（不明な場合はNone）
    """

    def __init__(
        self,
        reason: str,
        format_name: str | None = None,
        path: Path | str | None = None,
    ) -> None:
        """理由とコンテキストを指定して初期化する

        Args:
            reason: エラーの理由
            format_name: 対象フォーマット名
            path: 対象ファイルパス
        """
        self.reason = reason
        self.format_name = format_name
        self.path = Path(path) if path is not None else None
        super().__init__(self._build_message())

    def _build_message(self) -> str:
        parts = []
        if self.format_name:
            parts.append(f"[{self.format_name}]")
        if self.path is not None:
            parts.append(f"{self.path}:")
        parts.append(self.reason)
        return " ".join(parts)


class UnrecognizedFormatError(ArchiveError):
    """マジックナンバーがどのフォーマットにも一致しない"""


class UnsupportedVersionError(ArchiveError):
    """既知のフォーマットだが未対応のバージョン・操作"""


class CorruptIndexError(ArchiveError):
    """インデックスのサイズ・オフセット不整合、チャンク欠損、自己整合性チェック失敗"""


class UnsafePathError(ArchiveError):
    """展開先ディレクトリ外を指す、または不正な文字を含むエントリ名"""


class KeyResolutionError(ArchiveError):
    """復号キーを決定できない（全候補の試行に失敗した場合を含む）"""


class ArchiveIOError(ArchiveError):
    """下位の読み書きに失敗した"""
