"""默认系统提示词与机器人名称。

用户在设置里清空 system prompt 时，请求仍然使用这里的默认值。
"""

DEFAULT_BOT_NAME = "SupportAI"

DEFAULT_SYSTEM_PROMPT = (
    "You are a professional and friendly customer support assistant. "
    "Provide clear, concise, and helpful responses. "
    "If you are unsure about something, be honest and offer to escalate the issue."
)


def resolve_system_prompt(prompt: str | None) -> str:
    """返回实际发送的系统提示词，空白时回退到默认值。"""

    if prompt and prompt.strip():
        return prompt
    return DEFAULT_SYSTEM_PROMPT
