"""Turn a finished analysis answer into "三重一大" decision items grouped by category."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from src.analysis.models import (
    AnswerEvent,
    ErrorEvent,
    EventCategory,
    ExtractedItem,
    GroupedResults,
    MessageEndEvent,
    StreamEvent,
)

logger = logging.getLogger(__name__)

_CODE_BLOCK_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)

METADATA_RESULTS_KEY = "extracted_results"

# Exact labels only: the Chinese category name or its English key.
_CATEGORY_LOOKUP: dict[str, EventCategory] = {
    **{c.value: c for c in EventCategory},
    **{c.key: c for c in EventCategory},
}

# Alternate field names seen in provider output, first match wins.
_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "event_category": ("eventCategory", "categoryType", "event_category"),
    "meeting_time": ("meetingTime", "meetingDate", "meeting_time"),
    "document_number": ("documentNumber", "meetingNumber", "documentNo", "document_number"),
    "topic": ("topic", "meetingTopic"),
    "conclusion": ("conclusion", "meetingConclusion"),
    "summary": ("summary", "contentSummary", "details", "eventDetails"),
    "amount_involved": ("amountInvolved", "amount", "amount_involved"),
    "departments": ("departments", "relatedDepartments"),
    "personnel": ("personnel", "relatedPersonnel"),
    "decision_basis": ("decisionBasis", "decision_basis"),
    "original_text": ("originalText", "original_text"),
    "file_id": ("fileId", "file_id"),
}

# Meeting-level fields inherited by nested keyDecisionItems.
_MEETING_FIELDS = ("meeting_time", "document_number", "topic", "conclusion", "summary", "file_id")


def category_of(label: str | None) -> EventCategory | None:
    """Map an item's category label to an EventCategory, or None if unrecognised."""
    if label is None:
        return None
    return _CATEGORY_LOOKUP.get(label)


def extract_structured_block(
    answer: str | None, metadata: dict[str, Any] | None = None
) -> Any | None:
    """Find the structured payload in an answer.

    Looks for the first fenced code block in ``answer``; falls back to
    ``metadata["extracted_results"]``. Returns None if neither yields data.
    """
    if answer:
        match = _CODE_BLOCK_RE.search(answer)
        if match:
            try:
                return json.loads(match.group(1))
            except json.JSONDecodeError as exc:
                logger.warning("Code block in analysis answer is not valid JSON: %s", exc)

    if metadata and metadata.get(METADATA_RESULTS_KEY) is not None:
        return metadata[METADATA_RESULTS_KEY]

    if answer:
        logger.warning("No structured analysis result found (answer length %d)", len(answer))
    return None


def _pick(raw: dict[str, Any], name: str) -> Any:
    for key in _FIELD_ALIASES[name]:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _names(value: Any) -> list[str]:
    """Normalise a department/personnel field to a list of names."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    parts = re.split(r"[,，、;；]", str(value))
    return [p.strip() for p in parts if p.strip()]


def item_from_dict(raw: dict[str, Any], inherited: dict[str, Any] | None = None) -> ExtractedItem:
    """Build an ExtractedItem from one provider JSON object."""
    values = {name: _pick(raw, name) for name in _FIELD_ALIASES}
    for name, value in (inherited or {}).items():
        if values.get(name) is None:
            values[name] = value

    amount = values["amount_involved"]
    if amount is not None and not isinstance(amount, (int, float)):
        amount = str(amount)

    return ExtractedItem(
        event_category=_text(values["event_category"]) or "",
        meeting_time=_text(values["meeting_time"]),
        document_number=_text(values["document_number"]),
        topic=_text(values["topic"]),
        conclusion=_text(values["conclusion"]),
        summary=_text(values["summary"]),
        amount_involved=amount,
        departments=_names(values["departments"]),
        personnel=_names(values["personnel"]),
        decision_basis=_text(values["decision_basis"]),
        original_text=_text(values["original_text"]),
        file_id=_text(values["file_id"]),
    )


def parse_items(payload: Any) -> list[ExtractedItem]:
    """Parse a structured payload into a flat list of decision items.

    Accepts a list of items, an object wrapping one under ``items`` or
    ``results``, or a list of meetings carrying ``keyDecisionItems``.
    """
    if isinstance(payload, dict):
        for key in ("items", "results", "meetings"):
            if isinstance(payload.get(key), list):
                return parse_items(payload[key])
        payload = [payload]
    if not isinstance(payload, list):
        return []

    items: list[ExtractedItem] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        nested = entry.get("keyDecisionItems")
        if isinstance(nested, list):
            meeting = item_from_dict(entry)
            inherited = {name: getattr(meeting, name) for name in _MEETING_FIELDS}
            items.extend(item_from_dict(d, inherited) for d in nested if isinstance(d, dict))
        else:
            items.append(item_from_dict(entry))
    return items


def classify_items(items: list[ExtractedItem]) -> GroupedResults:
    """Partition items into the four categories; unrecognised categories are dropped."""
    groups = GroupedResults()
    dropped = 0
    for item in items:
        category = category_of(item.event_category)
        if category is None:
            dropped += 1
            continue
        groups.bucket(category).append(item)

    if dropped:
        logger.info("Dropped %d item(s) with unrecognised categories", dropped)
    return groups


def classify_answer(answer: str | None, metadata: dict[str, Any] | None = None) -> GroupedResults:
    """Extract and group the decision items of a finished answer (best effort)."""
    payload = extract_structured_block(answer, metadata)
    if payload is None:
        return GroupedResults()
    return classify_items(parse_items(payload))


@dataclass
class AnswerCollector:
    """Progress callback that accumulates a streaming answer.

    Pass an instance as ``on_event``; after the stream finishes, ``answer``
    holds the concatenated text and ``metadata`` the ``message_end`` metadata.
    """

    parts: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None
    error: ErrorEvent | None = None
    done: bool = False

    def __call__(self, event: StreamEvent) -> None:
        if self.task_id is None and event.task_id:
            self.task_id = event.task_id
        if isinstance(event, AnswerEvent):
            self.parts.append(event.answer)
        elif isinstance(event, MessageEndEvent):
            self.metadata = event.metadata
        elif isinstance(event, ErrorEvent):
            if self.error is None:
                self.error = event
        elif event.event == "done":
            self.done = True

    @property
    def answer(self) -> str:
        return "".join(self.parts)

    def grouped(self) -> GroupedResults:
        return classify_answer(self.answer, self.metadata)
