"""一次流式请求的生命周期管理。

StreamSession 持有一次请求/响应交换：

    Open ──► Completed   正常读完或收到 [DONE]
         ├─► Aborted     调用方 cancel()，已收到的内容保留
         └─► Failed      配置缺失 / 网络错误 / 非 2xx

所有结果都以 SessionEvent 的形式同步推给唯一的监听者（通常是
ConversationStore.apply_event），进入终态后不再产生任何事件。
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Literal, Optional

import httpx

from chat_core.domain.exceptions import BusinessError, ConfigurationError, TransportError
from chat_core.domain.models import ChatConfig, ChatRequest, new_id
from chat_core.infrastructure.logging.logger import log_event
from chat_core.providers.azure_client import NETWORK_ERROR_MESSAGE, AzureOpenAIClient
from chat_core.streaming.decoder import ChunkDecoder
from chat_core.streaming.frames import interpret


class SessionState(str, Enum):
    OPEN = "open"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionState.OPEN


@dataclass(frozen=True)
class SessionEvent:
    """StreamSession 产生的事件。

    kind:
        - "delta": 一段增量文本，text 非空。
        - "completed": 正常结束。
        - "aborted": 被 cancel() 中止，已推送的增量保留。
        - "failed": 失败，error 为用户可读信息。
    """

    kind: Literal["delta", "completed", "aborted", "failed"]
    conversation_id: str
    message_id: str
    text: str = ""
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind != "delta"


SessionListener = Callable[[SessionEvent], None]


class StreamSession:
    def __init__(
        self,
        config: ChatConfig,
        request: ChatRequest,
        conversation_id: str,
        message_id: str,
        listener: SessionListener,
        http_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.id = new_id("s")
        self.conversation_id = conversation_id
        self.message_id = message_id
        self._request = request
        self._listener = listener
        self._client = AzureOpenAIClient(config, http_timeout=http_timeout, transport=transport)
        self._state = SessionState.OPEN
        self._error: Optional[str] = None
        self._cancel_requested = False
        self._started = False
        self._task: Optional[asyncio.Task] = None
        self._delta_count = 0
        self._log_ctx: Dict[str, Any] = {
            "session_id": self.id,
            "conversation_id": conversation_id,
            "message_id": message_id,
        }

        try:
            self._client.validate()
        except ConfigurationError as e:
            # 配置不完整或不合法时直接进入 Failed，run() 只负责把事件发出去
            self._state = SessionState.FAILED
            self._error = e.message
            self._log(logging.WARNING, "Session rejected: invalid config", code=e.code, missing=e.extra.get("missing"))

    # ---- 状态 ----

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def is_open(self) -> bool:
        return self._state is SessionState.OPEN

    @property
    def delta_count(self) -> int:
        return self._delta_count

    # ---- 控制 ----

    async def run(self) -> SessionState:
        """执行请求直到进入终态，返回终态。只能调用一次。"""

        if self._started:
            raise RuntimeError("StreamSession.run() may only be called once")
        self._started = True

        if self._state is SessionState.FAILED:
            self._emit(SessionEvent("failed", self.conversation_id, self.message_id, error=self._error))
            return self._state
        if self._cancel_requested:
            self._finish(SessionState.ABORTED)
            return self._state

        self._log(logging.INFO, "Opening stream", message_count=len(self._request.messages))
        self._task = asyncio.ensure_future(self._exchange())
        try:
            await self._task
        except asyncio.CancelledError:
            self._finish(SessionState.ABORTED)
            if not self._cancel_requested:
                # 外层任务被取消：会话按中止处理，取消信号继续向上传播
                raise
        except BusinessError as e:
            self._fail(e)
        except Exception as e:
            # 监听者或 httpx 抛出的意外异常同样结束会话，避免占位消息和忙碌状态残留
            self._fail(TransportError(code="STREAM_ERROR", message=str(e) or NETWORK_ERROR_MESSAGE, error_type=type(e).__name__))
        else:
            if self._cancel_requested:
                self._finish(SessionState.ABORTED)
            else:
                self._finish(SessionState.COMPLETED)
        return self._state

    def cancel(self) -> bool:
        """请求中止。仅在 Open 状态下生效，返回是否真正发出了取消。"""

        if self._state is not SessionState.OPEN or self._cancel_requested:
            return False
        if self._task is not None and self._task.done():
            return False
        self._cancel_requested = True
        self._log(logging.INFO, "Cancel requested", deltas=self._delta_count)
        if self._task is not None:
            self._task.cancel()
        return True

    # ---- 内部实现 ----

    async def _exchange(self) -> None:
        decoder = ChunkDecoder()
        async with self._client.open_stream(self._request) as resp:
            async for chunk in resp.aiter_bytes():
                if self._dispatch(decoder.feed(chunk)):
                    return
        tail = decoder.flush()
        if tail is not None:
            self._dispatch([tail])

    def _dispatch(self, lines: Iterable[str]) -> bool:
        """逐行解析并推送增量，收到终止帧或已请求取消时返回 True。"""

        for line in lines:
            if self._cancel_requested:
                return True
            frame = interpret(line)
            if frame.is_terminate:
                return True
            if frame.is_delta:
                self._delta_count += 1
                self._emit(SessionEvent("delta", self.conversation_id, self.message_id, text=frame.text))
        return False

    def _fail(self, error: BusinessError) -> None:
        self._error = error.message
        self._log(
            logging.ERROR,
            "Stream failed",
            code=error.code,
            http_status=error.http_status,
            error=error.message,
            deltas=self._delta_count,
        )
        self._finish(SessionState.FAILED)

    def _finish(self, state: SessionState) -> None:
        if self._state is not SessionState.OPEN:
            return
        self._state = state
        if state is SessionState.FAILED:
            event = SessionEvent("failed", self.conversation_id, self.message_id, error=self._error)
        else:
            event = SessionEvent(state.value, self.conversation_id, self.message_id)
            self._log(logging.INFO, f"Stream {state.value}", deltas=self._delta_count)
        self._emit(event)

    def _emit(self, event: SessionEvent) -> None:
        self._listener(event)

    def _log(self, level: int, message: str, **fields: Any) -> None:
        log_event(level, message, self._log_ctx, **fields)
