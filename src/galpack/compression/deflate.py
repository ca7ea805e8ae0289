"""DEFLATE圧縮・チェックサムモジュール

XP3で使用されるzlibストリームの圧縮・解凍と、
Adler-32 / SHA-1 の計算を提供する。
"""

import hashlib
import zlib

DEFAULT_COMPRESSION_LEVEL = 6


def decompress_deflate(data: bytes) -> bytes:
    """zlibストリームを解凍する

    Raises:
        zlib.error: 不正な圧縮データの場合
    """
    return zlib.decompress(data)


def compress_deflate(data: bytes, level: int = DEFAULT_COMPRESSION_LEVEL) -> bytes:
    """zlibストリームに圧縮する"""
    return zlib.compress(data, level)


def adler32(data: bytes) -> int:
    """Adler-32チェックサムを計算する"""
    return zlib.adler32(data) & 0xFFFFFFFF


def sha1(data: bytes) -> bytes:
    """SHA-1ダイジェスト（20バイト）を計算する"""
    return hashlib.sha1(data).digest()
