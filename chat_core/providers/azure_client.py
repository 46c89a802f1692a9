"""Azure OpenAI Provider 适配器。

与 OpenAI 的 chat/completions 接口一致，区别在于 URL 与认证方式：
- URL: {endpoint}/openai/deployments/{deployment}/chat/completions?api-version=...
- 认证: api-key: <key>

本模块只负责"请求怎么发、失败怎么翻译"：
1. 把 ChatRequest 序列化为请求体。
2. 打开流式响应；非 2xx 时读完响应体，提取 error.message 作为用户可读信息。
3. 把 httpx 的网络异常统一转换为 TransportError。

逐行解析与事件分发在 chat_core.streaming 中完成。
"""

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import httpx

from chat_core.domain.exceptions import ConfigurationError, HttpError, TransportError
from chat_core.domain.models import ChatConfig, ChatMessage, ChatRequest

AZURE_API_VERSION = "2024-12-01-preview"
NETWORK_ERROR_MESSAGE = "Network error. Check your endpoint and API key."
CONFIG_ERROR_MESSAGE = "Please configure your Azure OpenAI settings first."


class AzureOpenAIClient:
    """Azure OpenAI 流式客户端。

    - config: 创建时捕获的 ChatConfig 快照。
    - http_timeout: 连接/写入超时；流式读取不设超时，需要截止时间的调用方自行 cancel。
    - transport: 可选的 httpx transport，测试时传入 httpx.MockTransport。
    """

    def __init__(
        self,
        config: ChatConfig,
        http_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        self._timeout = httpx.Timeout(http_timeout, read=None)
        self._transport = transport

    @property
    def config(self) -> ChatConfig:
        return self._config

    def validate(self) -> None:
        missing = self._config.missing_fields()
        if missing:
            raise ConfigurationError(code="MISSING_CONFIG", message=CONFIG_ERROR_MESSAGE, missing=missing)
        # endpoint 与 api-key 必须能组成合法的 URL 和 ASCII 请求头，否则请求根本发不出去
        try:
            httpx.URL(self.build_url())
        except httpx.InvalidURL as e:
            raise ConfigurationError(code="INVALID_ENDPOINT", message=f"Invalid endpoint URL: {e}")
        try:
            httpx.Headers(self.build_headers())
        except UnicodeEncodeError:
            raise ConfigurationError(
                code="INVALID_API_KEY",
                message="API key contains characters that cannot be sent in an HTTP header.",
            )

    def build_url(self) -> str:
        base = self._config.endpoint.strip().rstrip("/")
        return (
            f"{base}/openai/deployments/{self._config.deployment.strip()}"
            f"/chat/completions?api-version={AZURE_API_VERSION}"
        )

    def build_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "api-key": self._config.credential,
        }

    def build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        return {
            "messages": [self._message_to_payload(m) for m in req.messages],
            "max_tokens": req.max_tokens,
            "temperature": req.temperature,
            "top_p": req.top_p,
            "stream": req.stream,
        }

    @asynccontextmanager
    async def open_stream(self, req: ChatRequest) -> AsyncIterator[httpx.Response]:
        """发起请求并返回已确认 2xx 的流式响应。

        在 async with 块内读取响应体时发生的网络错误同样会被转换为 TransportError。
        """

        self.validate()
        payload = self.build_payload(req)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                trust_env=False,
                transport=self._transport,
            ) as client:
                async with client.stream(
                    "POST",
                    self.build_url(),
                    json=payload,
                    headers=self.build_headers(),
                ) as resp:
                    if not resp.is_success:
                        body = await resp.aread()
                        raise HttpError(
                            code="RATE_LIMIT" if resp.status_code == 429 else "API_ERROR",
                            message=extract_error_message(body, resp.status_code),
                            http_status=resp.status_code,
                        )
                    yield resp
        except (httpx.RequestError, httpx.InvalidURL) as e:
            raise TransportError(code="NETWORK_ERROR", message=str(e) or NETWORK_ERROR_MESSAGE)

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        return {"role": message.role, "content": message.content}


def extract_error_message(body: bytes | str, status: int) -> str:
    """从错误响应体里取 error.message，取不到时返回 "API error <status>"。"""

    fallback = f"API error {status}"
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        data = json.loads(body)
    except (ValueError, RecursionError):
        return fallback
    if not isinstance(data, dict):
        return fallback
    error = data.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    return fallback
