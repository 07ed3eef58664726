"""
AI completion providers.

Every provider returns an AiCompletionResponse. Provider failures never
raise: they come back as "[<provider> error] ..." text with zero tokens so
callers can treat AI output as best-effort.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from util.logging_util import setup_logger

logger = setup_logger(__name__)


@dataclass
class AiCompletionResponse:
    text: str
    input_tokens: int
    output_tokens: int
    model: str
    provider: str
    duration_ms: int

    @property
    def is_error(self) -> bool:
        return is_error_text(self.text)


def is_error_text(text: str) -> bool:
    """True for the error-tagged text providers return instead of raising."""
    if not text or not text.startswith("["):
        return False
    tag = text.split("]", 1)[0]
    return tag.endswith(" error")


def _to_langchain_messages(messages: List[Dict[str, str]]) -> List[BaseMessage]:
    converted: List[BaseMessage] = []
    for message in messages:
        role = message.get("role", "user")
        content = message.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def _response_text(content) -> str:
    # Gemini returns content as a list of parts, extract the text
    if isinstance(content, list):
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return content or ""


class AiProvider(ABC):
    """A chat-completion backend."""

    name: str
    model: str

    @abstractmethod
    def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AiCompletionResponse:
        ...


class LangChainProvider(AiProvider):
    """Provider backed by any LangChain chat model.

    `model_factory(max_tokens, temperature)` builds the chat model for a call.
    """

    def __init__(
        self,
        name: str,
        model: str,
        model_factory: Callable[[Optional[int], Optional[float]], BaseChatModel],
    ):
        self.name = name
        self.model = model
        self._model_factory = model_factory

    def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AiCompletionResponse:
        start_time = time.time()
        try:
            llm = self._model_factory(max_tokens, temperature)
            response = llm.invoke(_to_langchain_messages(messages))
        except Exception as e:
            logger.error(f"{self.name} completion failed: {e}")
            return AiCompletionResponse(
                text=f"[{self.name} error] {e}",
                input_tokens=0,
                output_tokens=0,
                model=self.model,
                provider=self.name,
                duration_ms=int((time.time() - start_time) * 1000),
            )

        usage = getattr(response, "usage_metadata", None)
        if not isinstance(usage, dict):
            usage = {}
        return AiCompletionResponse(
            text=_response_text(response.content).strip(),
            input_tokens=int(usage.get("input_tokens", 0) or 0),
            output_tokens=int(usage.get("output_tokens", 0) or 0),
            model=self.model,
            provider=self.name,
            duration_ms=int((time.time() - start_time) * 1000),
        )


def create_gemini_provider(api_key: str, model_name: str = "gemini-2.5-flash") -> LangChainProvider:
    def factory(max_tokens: Optional[int], temperature: Optional[float]) -> BaseChatModel:
        kwargs = {"model": model_name, "google_api_key": api_key}
        if max_tokens is not None:
            kwargs["max_output_tokens"] = max_tokens
        if temperature is not None:
            kwargs["temperature"] = temperature
        return ChatGoogleGenerativeAI(**kwargs)

    return LangChainProvider(name="gemini", model=model_name, model_factory=factory)


class ProviderRegistry:
    """Named providers with an optional default."""

    def __init__(self):
        self._providers: Dict[str, AiProvider] = {}
        self._default: Optional[str] = None

    def register(self, provider: AiProvider, default: bool = False):
        self._providers[provider.name] = provider
        if default or self._default is None:
            self._default = provider.name

    def get(self, name: Optional[str] = None) -> Optional[AiProvider]:
        """The named provider, or the default one when no name is given."""
        if name is not None:
            return self._providers.get(name)
        if self._default is None:
            return None
        return self._providers[self._default]

    def names(self) -> List[str]:
        return sorted(self._providers)


def build_registry(provider_name: str, model_name: str, api_key: str) -> ProviderRegistry:
    """Registry for the configured provider. Empty when no credentials are set."""
    registry = ProviderRegistry()
    if provider_name == "gemini" and api_key:
        registry.register(create_gemini_provider(api_key, model_name), default=True)
    elif provider_name != "gemini":
        logger.warning(f"Unknown AI provider {provider_name}; AI stages disabled")
    else:
        logger.info("No AI credentials configured; AI stages disabled")
    return registry
