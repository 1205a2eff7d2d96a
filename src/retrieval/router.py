"""Query router: classify questions as a category lookup (DB) or an open question (LLM)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from src.analysis.models import EventCategory
from src.persistence.storage import fetch_decision_items, get_supabase_client


class QueryType(StrEnum):
    """Classification of a user query."""

    STRUCTURED = "structured"
    OPEN = "open"


@dataclass
class RoutedQuery:
    """Result of query routing."""

    query_type: QueryType
    category: EventCategory | None = None  # None means all categories
    original_question: str = ""


# Keywords that signal a lookup of one category
_CATEGORY_PATTERNS: dict[EventCategory, list[re.Pattern[str]]] = {
    EventCategory.MAJOR_DECISION: [
        re.compile(r"重大决策|重大事项|决策事项"),
        re.compile(r"\bmajor\s+decisions?\b", re.IGNORECASE),
    ],
    EventCategory.PERSONNEL_APPOINTMENT: [
        re.compile(r"干部任免|人事任免|任免|任命|免职"),
        re.compile(r"\bappointments?\b", re.IGNORECASE),
        re.compile(r"\bpersonnel\b", re.IGNORECASE),
    ],
    EventCategory.MAJOR_PROJECT: [
        re.compile(r"重大项目|项目投资|投资项目"),
        re.compile(r"\bmajor\s+projects?\b", re.IGNORECASE),
        re.compile(r"\binvestments?\b", re.IGNORECASE),
    ],
    EventCategory.LARGE_AMOUNT: [
        re.compile(r"大额资金|资金使用|大额"),
        re.compile(r"\blarge[\s-]+(amounts?|funds?|payments?)\b", re.IGNORECASE),
        re.compile(r"\bfund(s|ing)?\s+usage\b", re.IGNORECASE),
    ],
}

# General structured query signals (match every category)
_GENERAL_STRUCTURED_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"三重一大"),
    re.compile(r"列出|列举|汇总"),
    re.compile(r"\blist\s+(all\s+)?(the\s+)?", re.IGNORECASE),
    re.compile(r"\bsummari[sz]e\s+(all\s+)?(the\s+)?", re.IGNORECASE),
]


def classify_query(question: str) -> RoutedQuery:
    """Classify a question as a category lookup or an open question.

    Args:
        question: The user's natural-language question.

    Returns:
        A RoutedQuery with the classification and optional category filter.
    """
    matched = [
        category
        for category, patterns in _CATEGORY_PATTERNS.items()
        if any(p.search(question) for p in patterns)
    ]

    if len(matched) == 1:
        return RoutedQuery(
            query_type=QueryType.STRUCTURED,
            category=matched[0],
            original_question=question,
        )

    # Several categories, or a general "list everything" request
    if len(matched) >= 2 or any(p.search(question) for p in _GENERAL_STRUCTURED_PATTERNS):
        return RoutedQuery(
            query_type=QueryType.STRUCTURED,
            category=None,
            original_question=question,
        )

    return RoutedQuery(
        query_type=QueryType.OPEN,
        category=None,
        original_question=question,
    )


def lookup_decision_items(
    project_id: str,
    file_id: str | None = None,
    category: EventCategory | None = None,
) -> list[dict[str, Any]]:
    """Query the decision_items table directly.

    Args:
        project_id: Project whose items are read.
        file_id: Optional filter by source file.
        category: Optional filter by category.

    Returns:
        List of decision item dicts from the database.
    """
    client = get_supabase_client()
    return fetch_decision_items(
        client,
        project_id,
        file_id=file_id,
        category=category.value if category else None,
    )


def format_structured_response(
    items: list[dict[str, Any]], category: EventCategory | None
) -> str:
    """Format decision items into a human-readable answer string.

    Args:
        items: Raw decision item dicts from the database.
        category: The specific category requested, or None for all.

    Returns:
        A formatted markdown-style answer.
    """
    if not items:
        label = f"“{category.value}”事项" if category else "三重一大事项"
        return f"未找到{label}。"

    grouped: dict[str, list[dict[str, Any]]] = {}
    for item in items:
        grouped.setdefault(item.get("event_category", ""), []).append(item)

    parts: list[str] = []
    for c in EventCategory:
        group = grouped.get(c.value, [])
        if not group:
            continue

        parts.append(f"**{c.value}:**")
        for i, item in enumerate(group, 1):
            line = f"  {i}. {item.get('topic') or item.get('summary') or '(无议题)'}"
            if item.get("conclusion"):
                line += f"：{item['conclusion']}"
            if item.get("amount_involved") is not None:
                line += f"（金额: {float(item['amount_involved']):,.2f}）"
            if item.get("meeting_time"):
                line += f" [{item['meeting_time']}]"
            if item.get("document_number"):
                line += f" [{item['document_number']}]"
            parts.append(line)
        parts.append("")

    return "\n".join(parts).strip()
