"""
Prompt builders for feedback classification.
"""

from __future__ import annotations

from .schemas import Sentiment, Theme


def _choices(values: list[str]) -> str:
    return "[" + ", ".join(f'"{v}"' for v in values) + "]"


def system_prompt() -> str:
    return (
        "You are an assistant that categorizes user feedback for a product team. "
        "Always respond with STRICT, VALID JSON only. Do not include explanations or extra text."
    )


def user_prompt(content: str) -> str:
    lines = [
        "Analyze the following user feedback text.",
        "",
        "Return a JSON object with exactly these keys:",
        f'- "sentiment": one of {_choices([s.value for s in Sentiment])}',
        f'- "theme": one of {_choices([t.value for t in Theme])}',
        "",
        "Pick the single best sentiment and single best theme.",
        "",
        "Feedback text:",
        f'"""{content}"""',
    ]
    return "\n".join(lines)
