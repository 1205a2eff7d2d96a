"""Claude-powered answers over stored decision items, with source attribution."""

from __future__ import annotations

from typing import Any

from anthropic import Anthropic
from anthropic.types import TextBlock

from src.config import settings

SYSTEM_PROMPT = (
    "You are an audit assistant. Answer questions about the '三重一大' items "
    "(major decisions, personnel appointments, major projects, large fund usage) "
    "extracted from an organisation's meeting minutes.\n\n"
    "Rules:\n"
    "- Only answer based on the provided items. If the answer isn't in the "
    "items, say so.\n"
    "- Cite your sources using [Source N] notation.\n"
    "- Answer in the language of the question.\n"
    "- Be concise and direct."
)


def format_context(items: list[dict[str, Any]]) -> str:
    """Render decision item rows as numbered sources for the prompt."""
    parts: list[str] = []
    for i, item in enumerate(items):
        header = " / ".join(
            str(v)
            for v in (
                item.get("event_category"),
                item.get("meeting_time"),
                item.get("document_number"),
            )
            if v
        )
        lines = [f"[Source {i + 1}] {header}"]
        for label, key in (
            ("Topic", "topic"),
            ("Conclusion", "conclusion"),
            ("Summary", "summary"),
            ("Amount", "amount_involved"),
            ("Decision basis", "decision_basis"),
        ):
            if item.get(key) is not None:
                lines.append(f"{label}: {item[key]}")
        if item.get("departments"):
            lines.append(f"Departments: {', '.join(item['departments'])}")
        if item.get("personnel"):
            lines.append(f"Personnel: {', '.join(item['personnel'])}")
        parts.append("\n".join(lines))
    return "\n\n".join(parts)


def generate_answer(question: str, items: list[dict[str, Any]]) -> dict[str, Any]:
    """Generate an answer using Claude with source attribution.

    Args:
        question: The user's question.
        items: Stored decision item rows used as context.

    Returns:
        Dictionary with answer, sources, model, and usage info.
    """
    client = Anthropic(api_key=settings.anthropic_api_key)
    response = client.messages.create(
        model=settings.llm_model,
        max_tokens=1024,
        system=SYSTEM_PROMPT,
        messages=[
            {
                "role": "user",
                "content": (
                    f"Extracted audit items:\n\n{format_context(items)}\n\nQuestion: {question}"
                ),
            }
        ],
    )

    # We always request plain text so the first block should be TextBlock.
    block = response.content[0]
    if not isinstance(block, TextBlock):
        raise ValueError(f"Expected TextBlock from Claude, got {type(block).__name__}")

    return {
        "answer": block.text,
        "sources": items,
        "model": response.model,
        "usage": {
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
        },
    }
