"""
LLM completion service behind the AI classifier.

Providers are thin httpx backends. AIService adds a response cache and a
bounded retry with exponential backoff for transient failures only; anything
else, or an exhausted retry budget, is raised as AIServiceError so the caller
can fall back to deterministic rules.
"""

import asyncio
import hashlib
import json
import logging
import random
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from voyaj.exceptions import VoyajError
from voyaj.services.event_bus import TTLCache

logger = logging.getLogger(__name__)

# 529 is Anthropic's "overloaded"
TRANSIENT_STATUS_CODES = {429, 500, 502, 503, 529}
CACHE_MAX_SIZE = 1024


class AIProvider(str, Enum):
    NONE = "none"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"


class AIServiceError(VoyajError):
    pass


class AINotConfiguredError(AIServiceError):
    pass


def is_transient(error: Exception) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_STATUS_CODES
    return isinstance(error, (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError))


def parse_json_response(response: str) -> Any:
    """Parse a JSON reply, tolerating a ```json fence around it."""
    text = response.strip()
    if text.startswith("```"):
        text = text.split("```")[1]
        if text.startswith("json"):
            text = text[4:]
    return json.loads(text.strip())


class AIBackend(ABC):
    timeout: float = 30.0

    @abstractmethod
    async def complete(self, prompt: str, system_prompt: Optional[str] = None, max_tokens: int = 300) -> str:
        pass

    async def _post(self, url: str, **kwargs) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(url, **kwargs)
            response.raise_for_status()
            return response.json()


class OpenAIBackend(AIBackend):
    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        self.api_key = api_key
        self.model = model

    async def complete(self, prompt, system_prompt=None, max_tokens=300) -> str:
        messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
        messages.append({"role": "user", "content": prompt})
        data = await self._post(
            "https://api.openai.com/v1/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"model": self.model, "messages": messages, "temperature": 0, "max_tokens": max_tokens},
        )
        return data["choices"][0]["message"]["content"]


class AnthropicBackend(AIBackend):
    def __init__(self, api_key: str, model: str = "claude-3-5-haiku-latest"):
        self.api_key = api_key
        self.model = model

    async def complete(self, prompt, system_prompt=None, max_tokens=300) -> str:
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            body["system"] = system_prompt
        data = await self._post(
            "https://api.anthropic.com/v1/messages",
            headers={"x-api-key": self.api_key, "anthropic-version": "2023-06-01"},
            json=body,
        )
        return data["content"][0]["text"]


class OllamaBackend(AIBackend):
    timeout = 60.0

    def __init__(self, base_url: str = "http://localhost:11434", model: str = "llama3.2"):
        self.base_url = base_url.rstrip("/")
        self.model = model

    async def complete(self, prompt, system_prompt=None, max_tokens=300) -> str:
        body: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": 0, "num_predict": max_tokens},
        }
        if system_prompt:
            body["system"] = system_prompt
        data = await self._post(f"{self.base_url}/api/generate", json=body)
        return data["response"]


class AIService:
    _backend: Optional[AIBackend] = None
    _provider: AIProvider = AIProvider.NONE
    _model: Optional[str] = None
    # Nearly every SMS is a distinct prompt
    _cache = TTLCache(ttl_seconds=600.0, max_size=CACHE_MAX_SIZE)
    _max_attempts: int = 3
    _retry_delay: float = 1.0

    @classmethod
    def configure(
        cls,
        provider: AIProvider,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
    ):
        cls._provider = provider
        cls._max_attempts = max(1, max_attempts)
        cls._retry_delay = retry_delay

        if provider == AIProvider.OPENAI and api_key:
            cls._model = model or "gpt-4o-mini"
            cls._backend = OpenAIBackend(api_key, cls._model)
        elif provider == AIProvider.ANTHROPIC and api_key:
            cls._model = model or "claude-3-5-haiku-latest"
            cls._backend = AnthropicBackend(api_key, cls._model)
        elif provider == AIProvider.OLLAMA:
            cls._model = model or "llama3.2"
            cls._backend = OllamaBackend(base_url or "http://localhost:11434", cls._model)
        else:
            cls._backend = None
            cls._model = None

    @classmethod
    def set_backend(cls, backend: Optional[AIBackend]):
        cls._backend = backend

    @classmethod
    def is_configured(cls) -> bool:
        return cls._backend is not None

    @classmethod
    def get_provider(cls) -> AIProvider:
        return cls._provider

    @classmethod
    def reset(cls):
        cls._backend = None
        cls._provider = AIProvider.NONE
        cls._model = None
        cls._cache.clear()
        cls._max_attempts = 3
        cls._retry_delay = 1.0

    @staticmethod
    def _cache_key(prompt: str, system_prompt: Optional[str]) -> str:
        return hashlib.sha256(f"{system_prompt or ''}||{prompt}".encode()).hexdigest()

    @classmethod
    async def complete(cls, prompt: str, system_prompt: Optional[str] = None, max_tokens: int = 300) -> str:
        if cls._backend is None:
            raise AINotConfiguredError("AI service is not configured")

        key = cls._cache_key(prompt, system_prompt)
        cached = cls._cache.get(key)
        if cached is not None:
            return cached

        for attempt in range(1, cls._max_attempts + 1):
            try:
                response = await cls._backend.complete(prompt, system_prompt, max_tokens)
                break
            except Exception as e:
                if not is_transient(e):
                    raise AIServiceError(f"AI request failed: {e}") from e
                if attempt == cls._max_attempts:
                    raise AIServiceError(f"AI request failed after {attempt} attempts: {e}") from e
                delay = cls._retry_delay * (2 ** (attempt - 1)) + random.uniform(0, cls._retry_delay / 2)
                logger.warning(f"Transient AI failure ({e!r}), retry {attempt}/{cls._max_attempts - 1} in {delay:.1f}s")
                await asyncio.sleep(delay)

        cls._cache.add(key, response)
        return response


def configure_ai_from_settings(settings) -> bool:
    try:
        provider = AIProvider(settings.ai_provider or "none")
    except ValueError:
        logger.warning(f"Unknown AI provider {settings.ai_provider!r}; using rules only")
        provider = AIProvider.NONE

    AIService.configure(
        provider=provider,
        api_key=settings.ai_api_key,
        base_url=settings.ai_ollama_url,
        model=settings.ai_model,
        max_attempts=settings.ai_max_attempts,
        retry_delay=settings.ai_retry_delay,
    )
    return AIService.is_configured()
