"""
LLM provider adapters behind a single async send() interface
Every provider failure, timeout or empty answer surfaces as ProviderUnavailable.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import anthropic
import google.generativeai as genai
import openai
import structlog

from exceptions import ProviderUnavailable
from models import Platform
from monitoring import PrometheusMetrics, get_metrics

logger = structlog.get_logger()


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    characters: int = 0


@dataclass
class LLMReply:
    text: str
    provider: str
    model: str
    latency: float
    usage: Optional[LLMUsage] = None


class LLMClient(ABC):
    """Capability interface: send a system + user prompt, get raw text back"""

    provider = "unknown"

    def __init__(self, model: str, max_tokens: int = 500, temperature: float = 0.7,
                 timeout: float = 30.0, metrics: Optional[PrometheusMetrics] = None):
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.metrics = metrics or get_metrics()

    async def send(self, system_prompt: str, user_prompt: str,
                   max_tokens: Optional[int] = None) -> LLMReply:
        start = time.perf_counter()
        try:
            text, usage = await asyncio.wait_for(
                self._complete(system_prompt, user_prompt, max_tokens or self.max_tokens),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            self._record_failure(start, "timeout")
            raise ProviderUnavailable(self.provider, f"timed out after {self.timeout}s") from None
        except ProviderUnavailable:
            self._record_failure(start, "unavailable")
            raise
        except Exception as e:
            self._record_failure(start, type(e).__name__)
            raise ProviderUnavailable(self.provider, f"{type(e).__name__}: {e}") from e

        text = (text or "").strip()
        latency = time.perf_counter() - start
        if not text:
            self._record_failure(start, "empty_response")
            raise ProviderUnavailable(self.provider, "empty response")

        self.metrics.track_llm_call(
            self.provider, self.model, latency, success=True,
            input_tokens=usage.input_tokens if usage else 0,
            output_tokens=usage.output_tokens if usage else 0
        )
        logger.info("llm_call_completed", provider=self.provider, model=self.model,
                    latency=round(latency, 3), chars=len(text))
        return LLMReply(text=text, provider=self.provider, model=self.model, latency=latency, usage=usage)

    def _record_failure(self, start: float, reason: str):
        latency = time.perf_counter() - start
        self.metrics.track_llm_call(self.provider, self.model, latency, success=False)
        logger.warning("llm_call_failed", provider=self.provider, model=self.model,
                       reason=reason, latency=round(latency, 3))

    @abstractmethod
    async def _complete(self, system_prompt: str, user_prompt: str,
                        max_tokens: int) -> Tuple[str, Optional[LLMUsage]]:
        """Provider-specific call returning raw text and usage"""


class OpenAIChatClient(LLMClient):
    """Chat-completion style provider (ChatGPT)"""

    provider = "openai"

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini",
                 client: Any = None, **kwargs):
        super().__init__(model=model, **kwargs)
        self.client = client or openai.AsyncOpenAI(api_key=api_key)

    async def _complete(self, system_prompt, user_prompt, max_tokens):
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt}
            ],
            temperature=self.temperature,
            max_tokens=max_tokens
        )
        text = response.choices[0].message.content if response.choices else ""
        usage = None
        if getattr(response, "usage", None) is not None:
            usage = LLMUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0
            )
        return text or "", usage


class GeminiChatClient(LLMClient):
    """Generative-chat style provider (Gemini)"""

    provider = "gemini"

    def __init__(self, api_key: Optional[str] = None, model: str = "gemini-2.5-flash",
                 model_factory: Optional[Callable[[str, str], Any]] = None, **kwargs):
        super().__init__(model=model, **kwargs)
        if model_factory is None:
            genai.configure(api_key=api_key)
            model_factory = self._default_model_factory
        self._model_factory = model_factory

    @staticmethod
    def _default_model_factory(model_name: str, system_prompt: str):
        return genai.GenerativeModel(model_name, system_instruction=system_prompt)

    async def _complete(self, system_prompt, user_prompt, max_tokens):
        model = self._model_factory(self.model, system_prompt)
        response = await model.generate_content_async(
            user_prompt,
            generation_config=genai.types.GenerationConfig(
                max_output_tokens=max_tokens,
                temperature=self.temperature
            )
        )
        # .text raises ValueError when the answer was blocked
        text = response.text
        metadata = getattr(response, "usage_metadata", None)
        usage = LLMUsage(characters=len(user_prompt) + len(text or ""))
        if metadata is not None:
            usage.input_tokens = getattr(metadata, "prompt_token_count", 0) or 0
            usage.output_tokens = getattr(metadata, "candidates_token_count", 0) or 0
        return text or "", usage


class ClaudeChatClient(LLMClient):
    """Anthropic messages API, selectable for recommendation generation"""

    provider = "anthropic"

    def __init__(self, api_key: Optional[str] = None, model: str = "claude-3-5-haiku-latest",
                 client: Any = None, **kwargs):
        super().__init__(model=model, **kwargs)
        self.client = client or anthropic.AsyncAnthropic(api_key=api_key)

    async def _complete(self, system_prompt, user_prompt, max_tokens):
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            system=system_prompt,
            temperature=self.temperature,
            messages=[{"role": "user", "content": user_prompt}]
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "text") == "text"
        )
        usage = None
        if getattr(response, "usage", None) is not None:
            usage = LLMUsage(
                input_tokens=response.usage.input_tokens or 0,
                output_tokens=response.usage.output_tokens or 0
            )
        return text, usage


def _client_kwargs(settings) -> Dict[str, Any]:
    return {
        "max_tokens": settings.max_tokens,
        "temperature": settings.temperature,
        "timeout": settings.request_timeout,
    }


def build_scan_clients(settings) -> Dict[str, LLMClient]:
    """Clients for each scan platform that has an API key configured"""
    clients: Dict[str, LLMClient] = {}
    if settings.openai_api_key:
        clients[Platform.CHATGPT.value] = OpenAIChatClient(
            api_key=settings.openai_api_key, model=settings.openai_model, **_client_kwargs(settings)
        )
    if settings.gemini_api_key:
        clients[Platform.GEMINI.value] = GeminiChatClient(
            api_key=settings.gemini_api_key, model=settings.gemini_model, **_client_kwargs(settings)
        )
    if not clients:
        logger.warning("no_llm_providers_configured")
    return clients


def build_recommendation_client(settings, scan_clients: Dict[str, LLMClient]) -> Optional[LLMClient]:
    """Client used for recommendations, per settings.recommendation_provider"""
    provider = settings.recommendation_provider
    if provider == "anthropic":
        if not settings.anthropic_api_key:
            return None
        return ClaudeChatClient(
            api_key=settings.anthropic_api_key, model=settings.claude_model, **_client_kwargs(settings)
        )
    platform = Platform.GEMINI.value if provider == "gemini" else Platform.CHATGPT.value
    return scan_clients.get(platform)
