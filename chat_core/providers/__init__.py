"""LLM Provider 集成层。

目前只接入 Azure OpenAI：azure_client 负责拼 URL/请求头/请求体，
打开流式响应，并把 HTTP/网络错误翻译成领域异常。
"""

from chat_core.providers.azure_client import AZURE_API_VERSION, AzureOpenAIClient

__all__ = ["AZURE_API_VERSION", "AzureOpenAIClient"]
