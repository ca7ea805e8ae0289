"""圧縮・チェックサム・XORプリミティブ

各コーデックが依存するバイト列変換の関数群。
"""

from galpack.compression.deflate import (
    DEFAULT_COMPRESSION_LEVEL,
    adler32,
    compress_deflate,
    decompress_deflate,
    sha1,
)
from galpack.compression.lzss import (
    LZSSDecoder,
    SiglusLZDecoder,
    decompress_lz,
    decompress_siglus_lz,
)
from galpack.compression.xor import xor_bytes, xor_cycle, xor_dwords, xor_position

__all__ = [
    "DEFAULT_COMPRESSION_LEVEL",
    "LZSSDecoder",
    "SiglusLZDecoder",
    "adler32",
    "compress_deflate",
    "decompress_deflate",
    "decompress_lz",
    "decompress_siglus_lz",
    "sha1",
    "xor_bytes",
    "xor_cycle",
    "xor_dwords",
    "xor_position",
]
