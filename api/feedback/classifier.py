"""
Classification adapter: one feedback item in, one raw Ollama envelope out.

Nothing here interprets the model output; see `normalizer.py`.
Transport and service errors propagate so the step runner can retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from core import ollama
from core.config import env_float, env_str

from . import prompts
from .schemas import IncomingFeedback

RawResponse = Union[str, dict[str, Any]]


def ollama_base_url() -> str:
    return env_str("OLLAMA_BASE_URL", "http://ollama:11434")


def classification_model() -> str:
    return env_str("CLASSIFICATION_MODEL", "llama3:8b-instruct")


def classification_timeout_s() -> float:
    return env_float("CLASSIFICATION_TIMEOUT_S", 60.0)


@dataclass(frozen=True)
class ClassificationRequest:
    system_instruction: str
    user_prompt: str

    def messages(self) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system_instruction},
            {"role": "user", "content": self.user_prompt},
        ]


def build_request(item: IncomingFeedback) -> ClassificationRequest:
    if not item.source or not item.content:
        raise ValueError("Feedback item needs a non-empty source and content.")
    return ClassificationRequest(
        system_instruction=prompts.system_prompt(),
        user_prompt=prompts.user_prompt(item.content),
    )


async def classify(item: IncomingFeedback) -> RawResponse:
    request = build_request(item)
    return await ollama.chat_raw(
        base_url=ollama_base_url(),
        model=classification_model(),
        messages=request.messages(),
        timeout_s=classification_timeout_s(),
        temperature=0.0,
        response_format="json",
    )
