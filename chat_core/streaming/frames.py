"""流式协议帧解析。

chat/completions 的流式响应是一行一帧：

    data: {"choices": [{"delta": {"content": "Hel"}}]}
    : keep-alive
    data: [DONE]

interpret() 是一个全函数：任何字符串都会得到 ignore / terminate / delta
三者之一，坏帧只会被跳过，不会让整条流失败。
"""

import json
from dataclasses import dataclass
from typing import Any, Literal

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"

FrameKind = Literal["ignore", "terminate", "delta"]


@dataclass(frozen=True)
class Frame:
    """一帧的解析结果。kind 为 "delta" 时 text 为非空增量文本。"""

    kind: FrameKind
    text: str = ""

    @property
    def is_delta(self) -> bool:
        return self.kind == "delta"

    @property
    def is_terminate(self) -> bool:
        return self.kind == "terminate"


IGNORE = Frame("ignore")
TERMINATE = Frame("terminate")


def interpret(line: str) -> Frame:
    stripped = line.strip()
    if not stripped or not stripped.startswith(DATA_PREFIX):
        return IGNORE
    data_str = stripped[len(DATA_PREFIX):].strip()
    if data_str == DONE_SENTINEL:
        return TERMINATE
    try:
        payload = json.loads(data_str)
    except (ValueError, RecursionError):
        return IGNORE
    delta = _extract_delta(payload)
    if not delta:
        return IGNORE
    return Frame("delta", delta)


def _extract_delta(payload: Any) -> str:
    """取 choices[0].delta.content，结构不符时返回空串。"""

    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""
