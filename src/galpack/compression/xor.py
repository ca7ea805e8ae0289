"""XOR系の鍵適用ユーティリティ

各フォーマットの暗号はすべてXORの組み合わせで表現できるため、
バイト列全体を整数として一括でXORする。
"""

import struct


def xor_bytes(data: bytes, keystream: bytes) -> bytes:
    """同じ長さのキーストリームとXORする

    Args:
        data: 対象バイト列
        keystream: dataと同じ長さのキーストリーム

    Returns:
        XOR結果

    Raises:
        ValueError: 長さが一致しない場合
    """
    if len(data) != len(keystream):
        raise ValueError("キーストリームの長さが一致しません")
    if not data:
        return b""
    value = int.from_bytes(data, "little") ^ int.from_bytes(keystream, "little")
    return value.to_bytes(len(data), "little")


def xor_cycle(data: bytes, key: bytes, start: int = 0) -> bytes:
    """鍵を巡回させてXORする（data[i] ^= key[(start + i) % len(key)]）"""
    if not key:
        raise ValueError("鍵が空です")
    if not data:
        return b""
    start %= len(key)
    rotated = key[start:] + key[:start]
    repeats = -(-len(data) // len(key))
    return xor_bytes(data, (rotated * repeats)[: len(data)])


_POSITION_TABLE = bytes(range(256))


def xor_position(data: bytes) -> bytes:
    """各バイトを位置の下位8ビットとXORする（data[i] ^= i & 0xFF）"""
    return xor_cycle(data, _POSITION_TABLE)


def xor_dwords(data: bytes, key: int) -> bytes:
    """32ビットリトルエンディアン単位で鍵とXORする

    4の倍数に満たない末尾のバイトはそのまま残す。
    """
    word_bytes = len(data) // 4 * 4
    keystream = struct.pack("<I", key & 0xFFFFFFFF) * (word_bytes // 4)
    return xor_bytes(data[:word_bytes], keystream) + data[word_bytes:]
