"""LZSS系解凍アルゴリズムモジュール

GSPackのインデックス・スクリプトで使用されるLZSS圧縮と、
Siglusエンジンで使用されるLZ圧縮の解凍機能を提供する。
"""

from typing import Protocol


class LZSSDecoderProtocol(Protocol):
    """LZ系解凍インターフェース

    圧縮されたバイト列を指定サイズまで解凍するためのプロトコル定義。
    """

    def decode(self, data: bytes, output_size: int) -> bytes:
        """圧縮データを解凍する

        Args:
            data: 圧縮されたバイト列
            output_size: 解凍後の期待サイズ（バイト）

        Returns:
            解凍されたバイト列
        """
        ...


class LZSSDecoder:
    """LZSS解凍クラス

    GSPackで使用される一般的なLZSS形式を解凍する。
    スライディングウィンドウサイズは4096バイト、書き込み開始位置は0xFEE。

    入力が尽きた時点で解凍を終了し、それまでの出力を返す。
    出力サイズの検証は呼び出し側で行う。
    """

    WINDOW_SIZE: int = 4096
    """スライディングウィンドウのサイズ（バイト）"""

    WINDOW_START: int = 0xFEE
    """スライドバッファの初期書き込み位置"""

    MATCH_MIN_LENGTH: int = 3
    """最小マッチ長"""

    def decode(self, data: bytes, output_size: int) -> bytes:
        """LZSS圧縮データを解凍する

        フラグビット1がリテラル、0がバックリファレンス。
        バックリファレンスは2バイトで、
        位置 = byte1 | ((byte2 & 0xF0) << 4)、長さ = (byte2 & 0x0F) + 3。

        Args:
            data: LZSS圧縮されたバイト列
            output_size: 解凍後の最大サイズ（バイト）

        Returns:
            解凍されたバイト列（入力が途中で尽きた場合は短くなる）
        """
        output = bytearray()
        slide = bytearray(self.WINDOW_SIZE)
        mask = self.WINDOW_SIZE - 1
        slide_pos = self.WINDOW_START

        input_pos = 0
        data_len = len(data)

        while len(output) < output_size and input_pos < data_len:
            flags = data[input_pos]
            input_pos += 1

            for bit in range(8):
                if len(output) >= output_size:
                    break

                if flags & (1 << bit):
                    if input_pos >= data_len:
                        return bytes(output)
                    byte_val = data[input_pos]
                    input_pos += 1
                    output.append(byte_val)
                    slide[slide_pos] = byte_val
                    slide_pos = (slide_pos + 1) & mask
                else:
                    if input_pos + 2 > data_len:
                        return bytes(output)
                    low_byte = data[input_pos]
                    high_byte = data[input_pos + 1]
                    input_pos += 2

                    mpos = low_byte | ((high_byte & 0xF0) << 4)
                    mlen = (high_byte & 0x0F) + self.MATCH_MIN_LENGTH

                    for _ in range(mlen):
                        if len(output) >= output_size:
                            break
                        byte_val = slide[mpos]
                        mpos = (mpos + 1) & mask
                        output.append(byte_val)
                        slide[slide_pos] = byte_val
                        slide_pos = (slide_pos + 1) & mask

        return bytes(output)


class SiglusLZDecoder:
    """Siglus LZ解凍クラス

    Siglusエンジンのパック済みデータ（8バイトヘッダーを除いた本体）を解凍する。
    フラグビット1がリテラル、0が2バイトのバックリファレンス
    （距離 = word >> 4、長さ = (word & 0x0F) + 2）。
    """

    MATCH_MIN_LENGTH: int = 2
    """最小マッチ長"""

    def decode(self, data: bytes, output_size: int) -> bytes:
        """Siglus LZ圧縮データを解凍する

        Args:
            data: 圧縮本体のバイト列
            output_size: 解凍後の期待サイズ（バイト）

        Returns:
            解凍されたバイト列（常にoutput_sizeバイト）

        Raises:
            ValueError: 入力が不足している、または参照位置が不正な場合
        """
        output = bytearray()
        input_pos = 0
        data_len = len(data)

        while len(output) < output_size:
            if input_pos >= data_len:
                raise ValueError("不完全な圧縮データ: フラグバイトが不足しています")

            flags = data[input_pos]
            input_pos += 1

            for bit in range(8):
                if len(output) >= output_size:
                    break

                if flags & (1 << bit):
                    if input_pos >= data_len:
                        raise ValueError("不完全な圧縮データ: リテラルバイトが不足しています")
                    output.append(data[input_pos])
                    input_pos += 1
                    continue

                if input_pos + 2 > data_len:
                    raise ValueError("不完全な圧縮データ: マッチ情報が不足しています")
                word = data[input_pos] | (data[input_pos + 1] << 8)
                input_pos += 2

                distance = word >> 4
                length = (word & 0x0F) + self.MATCH_MIN_LENGTH
                if distance == 0 or distance > len(output):
                    raise ValueError(f"不正な参照距離です: {distance}")
                if len(output) + length > output_size:
                    raise ValueError("解凍サイズが宣言値を超えます")

                # 重なりのあるコピーは1バイトずつ行う
                start = len(output) - distance
                for i in range(length):
                    output.append(output[start + i])

        return bytes(output)


def decompress_lz(data: bytes, output_size: int) -> bytes:
    """GSPack LZSSデータを解凍する"""
    decoder: LZSSDecoderProtocol = LZSSDecoder()
    return decoder.decode(data, output_size)


def decompress_siglus_lz(data: bytes, output_size: int) -> bytes:
    """Siglus LZデータを解凍する"""
    decoder: LZSSDecoderProtocol = SiglusLZDecoder()
    return decoder.decode(data, output_size)
