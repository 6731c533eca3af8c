"""Adapters for the LLM providers that write the analyst's replies."""

import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core import messages
from langchain_openai import ChatOpenAI

from .conf import AnalystSettings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _chunk_text(content) -> str:
    """Flatten LangChain chunk content (a string or a list of content parts)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return ""


class LLMAdapter(ABC):
    """Abstract base class for LLM adapters."""

    model_name: str
    max_tokens: int

    def _convert_messages(
        self, system_prompt: str, message_dicts: List[Dict[str, str]]
    ) -> List[messages.BaseMessage]:
        """Converts messages to LangChain format, including system prompt."""
        lc_messages: List[messages.BaseMessage] = [
            messages.SystemMessage(content=system_prompt)
        ]
        for msg in message_dicts:
            role = msg.get("role")
            content = msg.get("content", "")
            if role == "user":
                lc_messages.append(messages.HumanMessage(content=content))
            elif role == "assistant":
                lc_messages.append(messages.AIMessage(content=content))
        return lc_messages

    @abstractmethod
    def stream_text(
        self, system_prompt: str, messages: List[Dict[str, str]], max_tokens: Optional[int] = None
    ) -> AsyncIterator[str]:
        """Async generator that yields text chunks from the LLM as they arrive."""
        pass

    @classmethod
    def get_adapter(cls, config: AnalystSettings) -> "LLMAdapter":
        """Return the adapter for ``config.llm_provider``.

        Raises:
            ConfigurationError: For an unsupported provider.
        """
        provider = config.llm_provider.lower()

        if provider == "anthropic":
            return AnthropicAdapter(config)
        elif provider == "openai":
            return OpenAIAdapter(config)
        else:
            raise ConfigurationError(f"Unsupported LLM provider: {provider}")


class _LangChainAdapter(LLMAdapter):
    """Streams from any LangChain chat model held in ``self.client``."""

    provider_label = "LLM"

    async def stream_text(self, system_prompt, messages, max_tokens=None):
        lc_messages = self._convert_messages(system_prompt, messages)
        try:
            async for chunk in self.client.astream(
                lc_messages, max_tokens=max_tokens or self.max_tokens
            ):
                text = _chunk_text(getattr(chunk, "content", ""))
                if text:
                    yield text
        except Exception as e:
            logger.error(f"Error streaming text with LangChain {self.provider_label}: {e}")
            raise


class AnthropicAdapter(_LangChainAdapter):
    """Adapter for Anthropic Claude models using LangChain."""

    provider_label = "Anthropic"

    def __init__(self, config: AnalystSettings):
        self.model_name = config.llm_model
        self.max_tokens = config.llm_max_tokens
        self.client = ChatAnthropic(
            model=self.model_name,
            anthropic_api_key=config.llm_api_key,
        )
        logger.info(f"Initialized LangChain Anthropic adapter with model: {self.model_name}")


class OpenAIAdapter(_LangChainAdapter):
    """Adapter for OpenAI models using LangChain."""

    provider_label = "OpenAI"

    def __init__(self, config: AnalystSettings):
        self.model_name = config.llm_model
        self.max_tokens = config.llm_max_tokens
        try:
            self.client = ChatOpenAI(
                model=self.model_name,
                openai_api_key=config.llm_api_key,
            )
        except Exception as e:
            logger.error(f"Error initializing LangChain OpenAI Adapter: {e}")
            raise
        logger.info(f"Initialized LangChain OpenAI adapter with model: {self.model_name}")
