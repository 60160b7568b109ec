"""Ollama chat client for the local generative backend.

One step is one non-streaming ``POST /api/chat`` request in JSON mode with
temperature 0. Ollama reports token usage in the same response
(``prompt_eval_count`` and ``eval_count``), which is what metering charges.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from typing import Any
from urllib import error, request

DEFAULT_OLLAMA_BASE_URL = "http://127.0.0.1:11434"
CHAT_PATH = "/api/chat"


class LocalLLMError(RuntimeError):
    """Raised when the Ollama server cannot produce a completion."""


@dataclass(frozen=True, slots=True)
class LocalChatResult:
    content: str
    prompt_tokens: int
    completion_tokens: int
    model: str | None = None


def resolve_base_url(base_url: str | None = None) -> str:
    return (base_url or os.getenv("OLLAMA_BASE_URL") or DEFAULT_OLLAMA_BASE_URL).rstrip("/")


def build_chat_payload(
    model: str,
    system_prompt: str,
    user_prompt: str,
    *,
    temperature: float = 0.0,
) -> dict[str, Any]:
    """Request body for ``/api/chat``. Empty system prompts are omitted."""
    user_prompt = user_prompt.strip()
    if not user_prompt:
        raise LocalLLMError("Refusing to send an empty user prompt to Ollama.")

    messages = [
        {"role": role, "content": text.strip()}
        for role, text in (("system", system_prompt), ("user", user_prompt))
        if text.strip()
    ]
    return {
        "model": model,
        "messages": messages,
        "stream": False,
        "format": "json",
        "options": {"temperature": temperature},
    }


def _post_json(url: str, payload: dict[str, Any], timeout: float) -> dict[str, Any]:
    """Blocking JSON POST; runs in a worker thread."""
    req = request.Request(
        url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8")
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore") if exc.fp else exc.reason
        raise LocalLLMError(f"Ollama returned HTTP {exc.code}: {detail}") from exc
    except error.URLError as exc:
        raise LocalLLMError(f"Ollama unreachable at {url}: {exc.reason}") from exc

    try:
        decoded = json.loads(body)
    except json.JSONDecodeError as exc:
        raise LocalLLMError("Ollama response body is not JSON.") from exc
    if not isinstance(decoded, dict):
        raise LocalLLMError("Ollama response body is not a JSON object.")
    return decoded


def parse_chat_response(body: dict[str, Any]) -> LocalChatResult:
    """Pull assistant text and token counts out of an ``/api/chat`` response."""
    content = (body.get("message") or {}).get("content")
    if not content:
        raise LocalLLMError("Ollama response has no assistant content.")
    return LocalChatResult(
        content=content,
        prompt_tokens=int(body.get("prompt_eval_count") or 0),
        completion_tokens=int(body.get("eval_count") or 0),
        model=body.get("model"),
    )


async def call_ollama_chat(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_model: str,
    base_url: str | None = None,
    timeout: float = 120.0,
) -> LocalChatResult:
    """Run one chat completion against a local Ollama server."""
    payload = build_chat_payload(llm_model, system_prompt, user_prompt)
    url = f"{resolve_base_url(base_url)}{CHAT_PATH}"
    body = await asyncio.to_thread(_post_json, url, payload, timeout)
    return parse_chat_response(body)


__all__ = [
    "DEFAULT_OLLAMA_BASE_URL",
    "LocalChatResult",
    "LocalLLMError",
    "build_chat_payload",
    "call_ollama_chat",
    "parse_chat_response",
]
