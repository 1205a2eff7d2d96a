"""Data models for streaming analysis: provider events, stream state, decision items."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class EventCategory(StrEnum):
    """The four fixed "三重一大" audit categories."""

    MAJOR_DECISION = "重大决策"
    PERSONNEL_APPOINTMENT = "重要干部任免"
    MAJOR_PROJECT = "重大项目"
    LARGE_AMOUNT = "大额资金"

    @property
    def key(self) -> str:
        return _CATEGORY_KEYS[self]


_CATEGORY_KEYS: dict[EventCategory, str] = {
    EventCategory.MAJOR_DECISION: "majorDecision",
    EventCategory.PERSONNEL_APPOINTMENT: "personnelAppointment",
    EventCategory.MAJOR_PROJECT: "majorProject",
    EventCategory.LARGE_AMOUNT: "largeAmount",
}


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnswerEvent:
    """A chunk of answer text (``message`` / ``agent_message``)."""

    answer: str
    task_id: str | None = None
    event: str = "message"

    def to_dict(self) -> dict[str, Any]:
        return _compact({"event": self.event, "task_id": self.task_id, "answer": self.answer})


@dataclass(frozen=True)
class MessageEndEvent:
    """Provider's end-of-message event; carries the metadata side channel."""

    metadata: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None
    event: str = "message_end"

    def to_dict(self) -> dict[str, Any]:
        return _compact({"event": self.event, "task_id": self.task_id, "metadata": self.metadata})


@dataclass(frozen=True)
class ErrorEvent:
    """Provider-reported or locally synthesised failure."""

    message: str
    status: int | None = None
    code: str | None = None
    details: str | None = None
    task_id: str | None = None
    event: str = "error"

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "event": self.event,
                "task_id": self.task_id,
                "message": self.message,
                "status": self.status,
                "code": self.code,
                "details": self.details,
            }
        )


@dataclass(frozen=True)
class DoneEvent:
    """Synthetic terminal event, emitted once per stream."""

    task_id: str | None = None
    event: str = "done"

    def to_dict(self) -> dict[str, Any]:
        return _compact({"event": self.event, "task_id": self.task_id})


@dataclass(frozen=True)
class ProviderEvent:
    """Any other provider event (``ping``, ``workflow_started``, ...), kept verbatim."""

    event: str
    payload: dict[str, Any] = field(default_factory=dict)
    task_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {**self.payload, "event": self.event}


StreamEvent = AnswerEvent | MessageEndEvent | ErrorEvent | DoneEvent | ProviderEvent


def _compact(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class StreamState:
    """Decoder state threaded through the read loop.

    ``buffer`` holds the trailing, not yet newline-terminated text.
    """

    task_id: str | None = None
    buffer: str = ""
    done: bool = False


@dataclass
class AnalysisHandle:
    """A running analysis: the provider task id and the local task draining the stream.

    Cancelling through the provider does not stop ``future``; the local task
    ends only when the provider closes the stream.
    """

    task_id: str
    future: asyncio.Task[StreamState]


# ---------------------------------------------------------------------------
# Extracted decision items
# ---------------------------------------------------------------------------


@dataclass
class ExtractedItem:
    """A single "三重一大" decision item extracted from a document."""

    event_category: str
    meeting_time: str | None = None
    document_number: str | None = None
    topic: str | None = None
    conclusion: str | None = None
    summary: str | None = None
    amount_involved: str | float | None = None
    departments: list[str] = field(default_factory=list)
    personnel: list[str] = field(default_factory=list)
    decision_basis: str | None = None
    original_text: str | None = None
    file_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialise using the camelCase keys of the provider's JSON output."""
        return {
            "eventCategory": self.event_category,
            "meetingTime": self.meeting_time,
            "documentNumber": self.document_number,
            "topic": self.topic,
            "conclusion": self.conclusion,
            "summary": self.summary,
            "amountInvolved": self.amount_involved,
            "departments": self.departments,
            "personnel": self.personnel,
            "decisionBasis": self.decision_basis,
            "originalText": self.original_text,
            "fileId": self.file_id,
        }


@dataclass
class GroupedResults:
    """Decision items partitioned into the four audit categories."""

    major_decisions: list[ExtractedItem] = field(default_factory=list)
    personnel_appointments: list[ExtractedItem] = field(default_factory=list)
    major_projects: list[ExtractedItem] = field(default_factory=list)
    large_amounts: list[ExtractedItem] = field(default_factory=list)

    def bucket(self, category: EventCategory) -> list[ExtractedItem]:
        return {
            EventCategory.MAJOR_DECISION: self.major_decisions,
            EventCategory.PERSONNEL_APPOINTMENT: self.personnel_appointments,
            EventCategory.MAJOR_PROJECT: self.major_projects,
            EventCategory.LARGE_AMOUNT: self.large_amounts,
        }[category]

    @property
    def total(self) -> int:
        return sum(len(self.bucket(c)) for c in EventCategory)

    def items(self) -> list[ExtractedItem]:
        return [item for c in EventCategory for item in self.bucket(c)]

    def counts(self) -> dict[str, int]:
        return {
            "majorDecisions": len(self.major_decisions),
            "personnelAppointments": len(self.personnel_appointments),
            "majorProjects": len(self.major_projects),
            "largeAmounts": len(self.large_amounts),
        }
