"""
Generative backend adapter.

This module provides:
- ``Completion``: raw text plus the token counts the provider reported
- ``GenerativeBackend``: the interface the step engine depends on
- ``MirascopeBackend`` for hosted providers (OpenAI, Anthropic, ...) via Mirascope
- ``OllamaBackend`` for locally hosted models
- ``invoke_backend``: one timed attempt, every failure mapped to BackendError

No retries happen here. Each step makes exactly one call, and metering uses the
token counts returned by that call.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

from mirascope import llm

from .config import Config
from .errors import BackendError
from .local_llm import LocalLLMError, call_ollama_chat
from .prompts import StepPrompt


@dataclass(frozen=True, slots=True)
class Completion:
    """Raw generative output for one step."""

    text: str
    tokens_in: int
    tokens_out: int


class GenerativeBackend(ABC):
    """Black-box function from prompt to text."""

    @abstractmethod
    async def complete(self, system_prompt: str, user_prompt: str) -> Completion:
        """Run one completion.

        Raises:
            Exception: Any provider failure; ``invoke_backend`` maps it to BackendError
        """
        pass

    def describe(self) -> str:
        return type(self).__name__


def _combine_prompts(system_prompt: str, user_prompt: str) -> str:
    sections = [section.strip() for section in (system_prompt, user_prompt)]
    return "\n\n".join(section for section in sections if section)


def _token_count(value: object) -> int:
    if value is None:
        return 0
    return max(0, int(value))


class MirascopeBackend(GenerativeBackend):
    """Hosted provider backend using Mirascope's provider-agnostic ``llm.call``."""

    def __init__(self, provider: str, model: str) -> None:
        self.provider = provider
        self.model = model

    async def complete(self, system_prompt: str, user_prompt: str) -> Completion:
        @llm.call(provider=self.provider, model=self.model)
        async def _invoke(prompt: str) -> str:
            return prompt

        response = await _invoke(_combine_prompts(system_prompt, user_prompt))
        return Completion(
            text=response.content or "",
            tokens_in=_token_count(response.input_tokens),
            tokens_out=_token_count(response.output_tokens),
        )

    def describe(self) -> str:
        return f"{self.provider}:{self.model}"


class OllamaBackend(GenerativeBackend):
    """Local Ollama backend."""

    def __init__(self, model: str, base_url: str | None = None, timeout: float = 120.0) -> None:
        self.model = model
        self.base_url = base_url
        self.timeout = timeout

    async def complete(self, system_prompt: str, user_prompt: str) -> Completion:
        result = await call_ollama_chat(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            llm_model=self.model,
            base_url=self.base_url,
            timeout=self.timeout,
        )
        return Completion(
            text=result.content,
            tokens_in=result.prompt_tokens,
            tokens_out=result.completion_tokens,
        )

    def describe(self) -> str:
        return f"ollama:{self.model}"


def build_backend(provider: str | None = None, model: str | None = None) -> GenerativeBackend:
    """Pick a backend implementation for ``provider`` (defaults from Config)."""
    provider = provider or Config.LLM_PROVIDER
    model = model or Config.LLM_MODEL
    if provider.lower() == "ollama":
        return OllamaBackend(
            model=model,
            base_url=Config.OLLAMA_BASE_URL,
            timeout=Config.LLM_TIMEOUT_SECONDS,
        )
    return MirascopeBackend(provider=provider, model=model)


async def invoke_backend(
    backend: GenerativeBackend,
    prompt: StepPrompt,
    *,
    timeout: float | None = None,
) -> Completion:
    """Send ``prompt`` to ``backend`` once.

    Raises:
        BackendError: On timeout, provider failure, or an invalid completion
    """
    timeout = Config.LLM_TIMEOUT_SECONDS if timeout is None else timeout
    try:
        completion = await asyncio.wait_for(
            backend.complete(prompt.instructions, prompt.context),
            timeout=timeout,
        )
    except asyncio.TimeoutError as exc:
        raise BackendError(
            f"{backend.describe()} timed out after {timeout:g}s"
        ) from exc
    except BackendError:
        raise
    except LocalLLMError as exc:
        raise BackendError(f"local provider error: {exc}") from exc
    except Exception as exc:
        raise BackendError(f"{backend.describe()} failed: {exc}") from exc

    if not isinstance(completion, Completion):
        raise BackendError(
            f"{backend.describe()} returned {type(completion).__name__}, expected Completion"
        )
    if completion.tokens_in < 0 or completion.tokens_out < 0:
        raise BackendError(f"{backend.describe()} reported negative token counts")
    return completion


__all__ = [
    "Completion",
    "GenerativeBackend",
    "MirascopeBackend",
    "OllamaBackend",
    "build_backend",
    "invoke_backend",
]
