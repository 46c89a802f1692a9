"""对外 API 服务模块。

ChatService 把用户的一次"发送"拆成：写入 user 消息 → 写入空的 assistant
占位消息 → 创建 StreamSession → 把会话事件交给 ConversationStore。
UI 只需要调用 send()/stop()，并通过 on_event 回调刷新界面、弹出提示。
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import SessionBusyError, ValidationError
from chat_core.domain.models import ChatConfig, ChatMessage, ChatRequest, Conversation, Message
from chat_core.infrastructure.logging.logger import log_event
from chat_core.infrastructure.storage.json_store import JsonConfigStore
from chat_core.prompts import resolve_system_prompt
from chat_core.streaming.session import SessionEvent, StreamSession


class ChatService:
    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        config: Optional[ChatConfig] = None,
        config_store: Optional[JsonConfigStore] = None,
        http_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_event: Optional[Callable[[SessionEvent], None]] = None,
    ):
        self._store = store or ConversationStore()
        self._config_store = config_store
        self._config = config or self._load_initial_config()
        self._http_timeout = http_timeout if http_timeout is not None else settings.http_timeout
        self._transport = transport
        self._on_event = on_event
        # conversation_id -> 尚未结束的会话；同一会话同一时间最多一个
        self._sessions: Dict[str, StreamSession] = {}

    # ---- 配置 ----

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def config(self) -> ChatConfig:
        return self._config

    def update_config(self, config: ChatConfig, persist: bool = True) -> None:
        """替换当前配置。已经在进行中的会话继续使用它们创建时的快照。"""

        self._config = config
        if persist and self._config_store is not None:
            self._config_store.save(config.to_mapping())
        self._log(logging.INFO, "Config updated", {}, configured=config.is_configured, persisted=persist)

    def _load_initial_config(self) -> ChatConfig:
        defaults = ChatConfig.from_settings(settings)
        saved = self._config_store.load() if self._config_store is not None else None
        if saved:
            return ChatConfig.from_mapping(saved, defaults)
        return defaults

    # ---- 会话管理 ----

    def new_conversation(self) -> Conversation:
        conv = self._store.create_conversation()
        self._log(logging.INFO, "Created new conversation", {"conversation_id": conv.id})
        return conv

    def select(self, conversation_id: str) -> Conversation:
        return self._store.set_active(conversation_id)

    def clear(self, conversation_id: Optional[str] = None) -> None:
        cid = conversation_id or self._store.active_id
        self.stop(cid)
        self._store.clear(cid)

    def delete(self, conversation_id: str) -> None:
        self.stop(conversation_id)
        self._store.delete_conversation(conversation_id)

    def active_session(self, conversation_id: Optional[str] = None) -> Optional[StreamSession]:
        session = self._sessions.get(conversation_id or self._store.active_id)
        if session is not None and session.is_open:
            return session
        return None

    def is_streaming(self, conversation_id: Optional[str] = None) -> bool:
        return self.active_session(conversation_id) is not None

    def open_sessions(self) -> List[StreamSession]:
        return [s for s in self._sessions.values() if s.is_open]

    # ---- 发送 / 停止 ----

    def start(self, text: str, conversation_id: Optional[str] = None) -> StreamSession:
        """准备一次发送并返回尚未运行的 StreamSession，调用方负责 await session.run()。"""

        content = (text or "").strip()
        if not content:
            raise ValidationError(code="EMPTY_MESSAGE", message="Message is empty")
        cid = conversation_id or self._store.active_id
        conv = self._store.get_conversation(cid)
        if self.is_streaming(cid):
            raise SessionBusyError(
                code="SESSION_BUSY",
                message="A response is still streaming in this conversation",
                conversation_id=cid,
            )

        config = self._config
        history = [
            ChatMessage(role=m.role, content=m.content)
            for m in conv.messages
            if m.role in ("user", "assistant") and m.content
        ]
        user_msg = Message(role="user", content=content)
        placeholder = Message(role="assistant", content="")
        self._store.append(cid, user_msg)
        self._store.append(cid, placeholder)

        request = ChatRequest(
            messages=(
                ChatMessage(role="system", content=resolve_system_prompt(config.system_prompt)),
                *history,
                ChatMessage(role="user", content=content),
            ),
            temperature=config.temperature,
        )
        session = StreamSession(
            config,
            request,
            conversation_id=cid,
            message_id=placeholder.id,
            listener=self._handle_event,
            http_timeout=self._http_timeout,
            transport=self._transport,
        )
        self._sessions[cid] = session
        self._log(
            logging.INFO,
            "Stored user message",
            {"conversation_id": cid, "session_id": session.id},
            message_id=user_msg.id,
            placeholder_id=placeholder.id,
            history=len(history),
        )
        return session

    async def send(
        self,
        text: str,
        conversation_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> StreamSession:
        """发送消息并等待流式响应结束。

        timeout 不是网络超时：到时后等价于用户点击"停止"，会话以 Aborted 结束。
        """

        session = self.start(text, conversation_id)
        handle = None
        if timeout is not None:
            handle = asyncio.get_running_loop().call_later(timeout, session.cancel)
        try:
            await session.run()
        finally:
            if handle is not None:
                handle.cancel()
        return session

    def stop(self, conversation_id: Optional[str] = None) -> bool:
        session = self.active_session(conversation_id)
        if session is None:
            return False
        return session.cancel()

    # ---- 事件 ----

    def _handle_event(self, event: SessionEvent) -> None:
        self._store.apply_event(event)
        if event.is_terminal:
            session = self._sessions.get(event.conversation_id)
            if session is not None and session.message_id == event.message_id:
                del self._sessions[event.conversation_id]
            if event.kind == "failed":
                self._log(
                    logging.WARNING,
                    "Removed assistant placeholder after failure",
                    {"conversation_id": event.conversation_id},
                    message_id=event.message_id,
                    error=event.error,
                )
        if self._on_event is not None:
            self._on_event(event)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        log_event(level, message, log_ctx, **fields)


_service: Optional[ChatService] = None


def get_default_service() -> ChatService:
    """获取默认的 ChatService 实例（单例），配置从 storage_root 下的 JSON 读取。"""
    global _service
    if _service is None:
        _service = ChatService(config_store=JsonConfigStore(root=settings.storage_root))
    return _service
