"""Pydantic request/response schemas for the audit analysis API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.analysis.models import ExtractedItem, GroupedResults
from src.persistence.adapter import PersistReport


class CamelModel(BaseModel):
    """Base model exchanging camelCase JSON while keeping snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnalysisRequest(CamelModel):
    """Request body for starting an analysis."""

    file_ids: list[str]
    user_id: str


class CancelRequest(CamelModel):
    """Request body for /api/analysis/cancel."""

    task_id: str
    user_id: str = ""


class CancelResponse(CamelModel):
    success: bool


class DecisionItem(CamelModel):
    """A single "三重一大" decision item in API requests and responses."""

    event_category: str
    meeting_time: str | None = None
    document_number: str | None = None
    topic: str | None = None
    conclusion: str | None = None
    summary: str | None = None
    amount_involved: str | float | None = None
    departments: list[str] = Field(default_factory=list)
    personnel: list[str] = Field(default_factory=list)
    decision_basis: str | None = None
    original_text: str | None = None
    file_id: str | None = None

    @classmethod
    def from_item(cls, item: ExtractedItem) -> DecisionItem:
        return cls(**vars(item))

    def to_item(self) -> ExtractedItem:
        return ExtractedItem(**self.model_dump())


class GroupedResultsResponse(CamelModel):
    """Decision items grouped by audit category."""

    major_decisions: list[DecisionItem] = Field(default_factory=list)
    personnel_appointments: list[DecisionItem] = Field(default_factory=list)
    major_projects: list[DecisionItem] = Field(default_factory=list)
    large_amounts: list[DecisionItem] = Field(default_factory=list)

    @classmethod
    def from_groups(cls, groups: GroupedResults) -> GroupedResultsResponse:
        return cls(
            major_decisions=[DecisionItem.from_item(i) for i in groups.major_decisions],
            personnel_appointments=[
                DecisionItem.from_item(i) for i in groups.personnel_appointments
            ],
            major_projects=[DecisionItem.from_item(i) for i in groups.major_projects],
            large_amounts=[DecisionItem.from_item(i) for i in groups.large_amounts],
        )


class StoreItemsRequest(CamelModel):
    """Request body for saving decision items to a project."""

    items: list[DecisionItem]


class ItemStatus(CamelModel):
    index: int
    file_id: str
    row_id: str | None = None
    error: str | None = None


class PersistReportResponse(CamelModel):
    """Per-item outcome of a batch write."""

    items_stored: int
    items_failed: int
    results: list[ItemStatus] = Field(default_factory=list)
    analyzed_file_ids: list[str] = Field(default_factory=list)

    @classmethod
    def from_report(cls, report: PersistReport) -> PersistReportResponse:
        return cls(
            items_stored=report.inserted_count,
            items_failed=len(report.failures),
            results=[
                ItemStatus(index=r.index, file_id=r.file_id, row_id=r.row_id, error=r.error)
                for r in report.results
            ],
            analyzed_file_ids=report.analyzed_file_ids,
        )


class AnalysisRunResponse(CamelModel):
    """Response body for a complete (non-streaming) analysis run."""

    task_id: str
    results: GroupedResultsResponse
    persistence: PersistReportResponse
    # Extracted but not stored: no source file could be determined.
    unattributed: list[DecisionItem] = Field(default_factory=list)


class QueryRequest(CamelModel):
    """Request body for /api/projects/{id}/query."""

    question: str
    file_id: str | None = None


class QueryResponse(CamelModel):
    """Response body for /api/projects/{id}/query."""

    answer: str
    sources: list[dict[str, Any]]
    model: str | None = None
    usage: dict[str, Any] | None = None
