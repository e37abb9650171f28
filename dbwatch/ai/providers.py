"""AI provider factory: wraps a LangChain chat model behind ``AnalysisProvider``."""

import logging
from typing import NamedTuple, Protocol

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, HumanMessage
from langchain_openai import ChatOpenAI
from pydantic import SecretStr

from dbwatch.config import AISettings

logger = logging.getLogger(__name__)


class ProviderResponse(NamedTuple):
    content: str
    tokens: int


class AnalysisProvider(Protocol):
    model: str

    async def complete(self, prompt: str) -> ProviderResponse: ...


class ChatModelProvider:
    """Vendor-agnostic provider over any LangChain ``BaseChatModel``."""

    def __init__(self, llm: BaseChatModel, model: str) -> None:
        self.llm = llm
        self.model = model

    async def complete(self, prompt: str) -> ProviderResponse:
        message = await self.llm.ainvoke([HumanMessage(content=prompt)])
        return ProviderResponse(content=_message_text(message), tokens=_total_tokens(message))


def _message_text(message: object) -> str:
    content = getattr(message, "content", "")
    if isinstance(content, str):
        return content
    # Anthropic returns a list of content blocks
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "".join(parts)


def _total_tokens(message: object) -> int:
    if not isinstance(message, AIMessage) or not message.usage_metadata:
        return 0
    return int(message.usage_metadata.get("total_tokens", 0))


def create_llm(settings: AISettings) -> BaseChatModel:
    """Create a chat model instance for the configured provider."""
    api_key = SecretStr(settings.api_key.get_secret_value())
    if settings.provider == "anthropic":
        return ChatAnthropic(  # pyright: ignore[reportCallIssue]
            model=settings.model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            api_key=api_key,
        )
    return ChatOpenAI(
        model=settings.model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        api_key=api_key,
        base_url=settings.base_url or None,
    )


def create_provider(settings: AISettings) -> AnalysisProvider:
    """Build the provider once; the engine never inspects the vendor afterwards."""
    provider = ChatModelProvider(create_llm(settings), settings.model)
    logger.info("AI provider: %s (model %s)", settings.provider, settings.model)
    return provider
