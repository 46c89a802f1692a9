"""统一的配置、对话与请求数据模型。

本模块定义了会话引擎内部共享的标准数据结构：

- ChatConfig: 一次请求所用配置的不可变快照（凭据、endpoint、deployment 等）。
- Message / Conversation: ConversationStore 持有的会话与消息，均为 frozen dataclass，
  修改时整体替换而不是原地修改。
- ChatMessage / ChatRequest: 发给 Azure OpenAI 的消息与请求。

所有模型都只依赖标准库，Provider 适配层负责把 ChatRequest 转成具体 JSON。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple
from uuid import uuid4


# 消息角色（与 chat/completions 的 role 字段一致）
Role = Literal["system", "user", "assistant"]

DEFAULT_TEMPERATURE = 1.0
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_temperature(value: Any) -> float:
    """把表单/持久化里的温度值转成 [0, 2] 内的浮点数，无法解析时回退到 1.0。"""

    try:
        temp = float(value)
    except (TypeError, ValueError):
        return DEFAULT_TEMPERATURE
    if temp != temp:  # NaN
        return DEFAULT_TEMPERATURE
    return min(max(temp, MIN_TEMPERATURE), MAX_TEMPERATURE)


@dataclass(frozen=True)
class ChatConfig:
    """一次会话请求使用的配置快照。

    StreamSession 创建时捕获该对象；之后用户在设置里做的修改
    会生成新的 ChatConfig，不会影响已经在进行的请求。

    - credential: Azure OpenAI 的 api-key。
    - endpoint: 资源地址，如 https://xxx.openai.azure.com/ 。
    - deployment: 部署名。
    - system_prompt: 每次请求都放在最前面的 system 消息。
    - temperature: 采样温度，范围 [0, 2]。
    - display_name: 机器人在界面上的名字，不参与请求。
    """

    credential: str = ""
    endpoint: str = ""
    deployment: str = ""
    system_prompt: str = ""
    temperature: float = DEFAULT_TEMPERATURE
    display_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "temperature", parse_temperature(self.temperature))

    def missing_fields(self) -> List[str]:
        """返回缺失的必填字段名，为空列表表示可以发请求。"""

        missing = []
        if not (self.credential or "").strip():
            missing.append("credential")
        if not (self.endpoint or "").strip():
            missing.append("endpoint")
        if not (self.deployment or "").strip():
            missing.append("deployment")
        return missing

    @property
    def is_configured(self) -> bool:
        return not self.missing_fields()

    @classmethod
    def from_settings(cls, cfg) -> "ChatConfig":
        return cls(
            credential=getattr(cfg, "azure_openai_api_key", None) or "",
            endpoint=getattr(cfg, "azure_openai_endpoint", None) or "",
            deployment=getattr(cfg, "azure_openai_deployment", None) or "",
            system_prompt=getattr(cfg, "system_prompt", None) or "",
            temperature=getattr(cfg, "temperature", DEFAULT_TEMPERATURE),
            display_name=getattr(cfg, "bot_name", None) or "",
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], defaults: Optional["ChatConfig"] = None) -> "ChatConfig":
        """从持久化的 JSON 对象恢复配置，缺失的键取 defaults 中的值。"""

        base = defaults or cls()
        return cls(
            credential=str(data.get("apiKey", base.credential) or ""),
            endpoint=str(data.get("endpoint", base.endpoint) or ""),
            deployment=str(data.get("deployment", base.deployment) or ""),
            system_prompt=str(data.get("systemPrompt", base.system_prompt) or ""),
            temperature=data.get("temperature", base.temperature),
            display_name=str(data.get("botName", base.display_name) or ""),
        )

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "apiKey": self.credential,
            "endpoint": self.endpoint,
            "deployment": self.deployment,
            "systemPrompt": self.system_prompt,
            "temperature": str(self.temperature),
            "botName": self.display_name,
        }


@dataclass(frozen=True)
class Message:
    """会话中的一条消息。

    assistant 占位消息在流式过程中通过 ConversationStore.mutate 被整体替换，
    content 只会追加；会话结束后内容不再变化。
    """

    role: Role
    content: str
    id: str = field(default_factory=lambda: new_id("m"))
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class Conversation:
    id: str
    number: int
    title: str = ""
    messages: Tuple[Message, ...] = ()
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def display_title(self) -> str:
        return self.title or f"Conversation {self.number}"

    def find_message(self, message_id: str) -> Optional[Message]:
        for m in self.messages:
            if m.id == message_id:
                return m
        return None


@dataclass(frozen=True)
class ChatMessage:
    """发给 Provider 的一条消息，只保留 role/content。"""

    role: Role
    content: str


@dataclass(frozen=True)
class ChatRequest:
    """一次完整的流式聊天请求。

    messages 已经按 [system, ...历史, 新的 user 消息] 排好序，
    Provider 适配层只负责序列化。
    """

    messages: Tuple[ChatMessage, ...]
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = 1.0
    max_tokens: int = 4096
    stream: bool = True
