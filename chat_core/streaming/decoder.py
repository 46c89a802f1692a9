"""把任意切分的字节/文本流还原成完整的行。

网络层给出的 chunk 边界与协议的行边界没有任何关系：一行可能被拆到
多个 chunk 里，一个多字节 UTF-8 字符也可能被拆开。ChunkDecoder 用
增量解码器处理字节，并只在遇到换行时吐出整行，剩下的半行留到下一次。
"""

import codecs
from typing import List, Optional, Union


class ChunkDecoder:
    """有状态的按行切分器。

    - feed(chunk): 追加数据，返回本次新凑齐的完整行（不含换行符）。
    - flush(): 流结束时调用，返回缓冲区里剩下的未终止行（若有）。
    """

    def __init__(self, encoding: str = "utf-8"):
        self._encoding = encoding
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: Union[bytes, bytearray, str]) -> List[str]:
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        if "\n" not in text:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [_strip_cr(line) for line in lines]

    def flush(self) -> Optional[str]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        tail = _strip_cr(tail)
        return tail or None

    @property
    def pending(self) -> str:
        """当前缓冲的半行，仅用于调试/测试。"""

        return self._buffer


def _strip_cr(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line
