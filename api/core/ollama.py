"""
Ollama HTTP client helpers.

Used endpoint:
- POST /api/chat  -> {"message": {"role": "assistant", "content": "..."}, ...}

The chat envelope is returned as-is; callers decide how to read it.
"""

from __future__ import annotations

from typing import Any

import httpx


# Ollama failures are explicit and separable from other runtime errors.
class OllamaError(RuntimeError):
    pass


def _normalize_base_url(base_url: str) -> str:
    base_url = (base_url or "").strip()
    if not base_url:
        raise OllamaError("OLLAMA_BASE_URL is empty.")
    return base_url.rstrip("/")


async def chat_raw(
    *,
    base_url: str,
    model: str,
    messages: list[dict[str, str]],
    timeout_s: float = 120.0,
    temperature: float | None = None,
    response_format: str | None = None,
) -> dict[str, Any]:
    """
    Run one non-streaming chat completion and return the decoded envelope.

    Transport errors (`httpx.HTTPError`) are not caught here.
    """
    base_url = _normalize_base_url(base_url)
    model = (model or "").strip()
    if not model:
        raise OllamaError("Classification model name is empty.")
    if not messages:
        raise OllamaError("Messages list is empty.")

    payload: dict[str, Any] = {"model": model, "messages": messages, "stream": False}
    if response_format:
        payload["format"] = response_format
    if temperature is not None:
        payload["options"] = {"temperature": float(temperature)}

    async with httpx.AsyncClient(base_url=base_url, timeout=timeout_s) as client:
        resp = await client.post("/api/chat", json=payload)

    if resp.status_code != 200:
        # Avoid dumping huge bodies; include a small snippet.
        body = resp.text[:500]
        raise OllamaError(f"Ollama chat request failed: {resp.status_code} {body}")

    try:
        data = resp.json()
    except ValueError as e:
        raise OllamaError("Ollama returned a non-JSON chat envelope.") from e

    if not isinstance(data, dict):
        raise OllamaError("Ollama returned an unexpected chat envelope.")
    return data
