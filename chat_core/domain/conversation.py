"""内存中的会话存储。

ConversationStore 持有全部会话（按创建时间倒序，最新的在最前），
每次修改都基于 dataclasses.replace 生成新的 Conversation / Message，
未被修改的会话和消息保持原对象不变，方便 UI 以 identity 判断是否需要重绘。

流式会话不直接操作消息，而是把 SessionEvent 交给 apply_event()：
目标会话即使已经不在前台（甚至已被删除）也能安全处理。
"""

import itertools
from dataclasses import replace
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional, Tuple

from chat_core.domain.exceptions import NotFoundError
from chat_core.domain.models import Conversation, Message, new_id

if TYPE_CHECKING:
    from chat_core.streaming.session import SessionEvent

TITLE_MAX_CHARS = 40
TITLE_ELLIPSIS = "…"


def truncate_title(text: str, limit: int = TITLE_MAX_CHARS) -> str:
    """截取前 limit 个字符作为标题，被截断时追加省略号（省略号不计入 limit）。"""

    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + TITLE_ELLIPSIS


class SequenceGenerator:
    """单调递增的编号生成器，每个 ConversationStore 各自持有一个。"""

    def __init__(self, start: int = 1):
        self._counter: Iterator[int] = itertools.count(start)

    def next(self) -> int:
        return next(self._counter)


class ConversationStore:
    def __init__(self, sequence: Optional[SequenceGenerator] = None):
        self._sequence = sequence or SequenceGenerator()
        self._conversations: Tuple[Conversation, ...] = ()
        self._active_id: Optional[str] = None
        self.create_conversation()

    # ---- 查询 ----

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active(self) -> Conversation:
        return self.get_conversation(self._active_id)

    def list_conversations(self) -> List[Conversation]:
        return list(self._conversations)

    def find_conversation(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        return None

    def get_conversation(self, conversation_id: Optional[str]) -> Conversation:
        conv = self.find_conversation(conversation_id)
        if conv is None:
            raise NotFoundError(code="CONVERSATION_NOT_FOUND", message=str(conversation_id))
        return conv

    # ---- 会话级操作 ----

    def create_conversation(self) -> Conversation:
        conv = Conversation(id=new_id("c"), number=self._sequence.next())
        self._conversations = (conv,) + self._conversations
        self._active_id = conv.id
        return conv

    def set_active(self, conversation_id: str) -> Conversation:
        conv = self.get_conversation(conversation_id)
        self._active_id = conv.id
        return conv

    def clear(self, conversation_id: str) -> None:
        """清空消息与标题，会话本身保留。"""

        self._update(conversation_id, lambda c: replace(c, messages=(), title=""))

    def delete_conversation(self, conversation_id: str) -> None:
        self.get_conversation(conversation_id)
        self._conversations = tuple(c for c in self._conversations if c.id != conversation_id)
        if self._active_id == conversation_id:
            if self._conversations:
                self._active_id = self._conversations[0].id
            else:
                self.create_conversation()

    # ---- 消息级操作 ----

    def append(self, conversation_id: str, message: Message) -> None:
        self.get_conversation(conversation_id)

        def _append(c: Conversation) -> Conversation:
            title = c.title
            if message.role == "user" and not title:
                title = truncate_title(message.content)
            return replace(c, title=title, messages=c.messages + (message,))

        self._update(conversation_id, _append)

    def mutate(self, conversation_id: str, message_id: str, fn: Callable[[str], str]) -> bool:
        """用 fn 变换目标消息的 content；会话或消息不存在时什么也不做。"""

        conv = self.find_conversation(conversation_id)
        if conv is None or conv.find_message(message_id) is None:
            return False
        messages = tuple(
            replace(m, content=fn(m.content)) if m.id == message_id else m
            for m in conv.messages
        )
        self._update(conversation_id, lambda c: replace(c, messages=messages))
        return True

    def remove(self, conversation_id: str, message_id: str) -> bool:
        conv = self.find_conversation(conversation_id)
        if conv is None or conv.find_message(message_id) is None:
            return False
        messages = tuple(m for m in conv.messages if m.id != message_id)
        self._update(conversation_id, lambda c: replace(c, messages=messages))
        return True

    def set_title_if_empty(self, conversation_id: str, text: str) -> bool:
        conv = self.find_conversation(conversation_id)
        if conv is None or conv.title:
            return False
        title = truncate_title(text)
        self._update(conversation_id, lambda c: replace(c, title=title))
        return True

    # ---- 流式事件 ----

    def apply_event(self, event: "SessionEvent") -> None:
        """消费 StreamSession 的事件。

        - delta: 把文本追加到占位消息末尾。
        - failed: 移除占位消息，失败的请求不留下半截回答。
        - completed / aborted: 内容保持原样。
        """

        if event.kind == "delta":
            self.mutate(event.conversation_id, event.message_id, lambda content: content + event.text)
        elif event.kind == "failed":
            self.remove(event.conversation_id, event.message_id)

    # ---- 辅助方法 ----

    def _update(self, conversation_id: str, updater: Callable[[Conversation], Conversation]) -> None:
        self._conversations = tuple(
            updater(c) if c.id == conversation_id else c for c in self._conversations
        )
