"""galpack - ビジュアルノベル向けアーカイブの展開・パックツール."""

from galpack.errors import (
    ArchiveError,
    ArchiveIOError,
    CorruptIndexError,
    KeyResolutionError,
    UnrecognizedFormatError,
    UnsafePathError,
    UnsupportedVersionError,
)
from galpack.logger import (
    ArchiveLogger,
    ConsoleProgressDisplay,
    LogConfig,
    ProgressSink,
    VerboseLevel,
)
from galpack.registry import FormatRegistry, create_registry

__version__ = "0.1.0"

__all__ = [
    "ArchiveError",
    "ArchiveIOError",
    "ArchiveLogger",
    "ConsoleProgressDisplay",
    "CorruptIndexError",
    "FormatRegistry",
    "KeyResolutionError",
    "LogConfig",
    "ProgressSink",
    "UnrecognizedFormatError",
    "UnsafePathError",
    "UnsupportedVersionError",
    "VerboseLevel",
    "create_registry",
]
