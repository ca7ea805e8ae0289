"""Archive formats for galpack.

エンジンごとのアーカイブコーデックと、共通のエントリモデルを提供する。
"""

from galpack.formats.artemis import PfsArchive
from galpack.formats.base import (
    ArchiveEntry,
    ArchiveFormat,
    EntryFlags,
    EntryWriter,
    atomic_output,
    collect_files,
    resolve_entry_path,
)
from galpack.formats.gspack import PakArchive
from galpack.formats.kirikiri import Xp3Archive, Xp3Entry
from galpack.formats.siglus import SiglusDatArchive

__all__ = [
    "ArchiveEntry",
    "ArchiveFormat",
    "EntryFlags",
    "EntryWriter",
    "PakArchive",
    "PfsArchive",
    "SiglusDatArchive",
    "Xp3Archive",
    "Xp3Entry",
    "atomic_output",
    "collect_files",
    "resolve_entry_path",
]
