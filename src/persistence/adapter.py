"""Persist extracted decision items against their owning project files."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from postgrest.exceptions import APIError
from supabase import Client

from src.analysis.classifier import classify_items
from src.analysis.models import ExtractedItem, GroupedResults
from src.errors import FileOwnershipError
from src.persistence.storage import (
    fetch_decision_items,
    fetch_owned_file_ids,
    get_supabase_client,
    insert_decision_item,
    mark_file_analyzed,
)

logger = logging.getLogger(__name__)

_AMOUNT_NOISE_RE = re.compile(r"[¥￥$,\s]")
_AMOUNT_RE = re.compile(r"\d+(\.\d+)?")


def normalize_amount(value: str | float | None) -> float | None:
    """Parse a monetary value such as ``"¥3,000,000.50"`` into a float.

    Currency symbols, commas and whitespace are stripped; anything that is not
    then a plain decimal number yields None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = _AMOUNT_NOISE_RE.sub("", str(value))
    if not _AMOUNT_RE.fullmatch(cleaned):
        return None
    return float(cleaned)


@dataclass
class ItemResult:
    """Outcome of storing a single decision item."""

    index: int
    file_id: str
    row_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PersistReport:
    """Per-item outcome of a batch write."""

    results: list[ItemResult] = field(default_factory=list)
    analyzed_file_ids: list[str] = field(default_factory=list)

    @property
    def inserted_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failures(self) -> list[ItemResult]:
        return [r for r in self.results if not r.ok]


def item_to_row(project_id: str, index: int, item: ExtractedItem) -> dict[str, Any]:
    """Build the decision_items row for one item."""
    return {
        "project_id": project_id,
        "file_id": item.file_id,
        "item_index": index,
        "event_category": item.event_category,
        "meeting_time": item.meeting_time,
        "document_number": item.document_number,
        "topic": item.topic,
        "conclusion": item.conclusion,
        "summary": item.summary,
        "amount_involved": normalize_amount(item.amount_involved),
        "departments": item.departments,
        "personnel": item.personnel,
        "decision_basis": item.decision_basis,
        "original_text": item.original_text,
    }


def item_from_row(row: dict[str, Any]) -> ExtractedItem:
    """Rebuild an ExtractedItem from a stored row."""
    return ExtractedItem(
        event_category=row.get("event_category") or "",
        meeting_time=row.get("meeting_time"),
        document_number=row.get("document_number"),
        topic=row.get("topic"),
        conclusion=row.get("conclusion"),
        summary=row.get("summary"),
        amount_involved=row.get("amount_involved"),
        departments=list(row.get("departments") or []),
        personnel=list(row.get("personnel") or []),
        decision_basis=row.get("decision_basis"),
        original_text=row.get("original_text"),
        file_id=row.get("file_id"),
    )


def check_file_ownership(
    client: Client, project_id: str, file_ids: list[str | None]
) -> None:
    """Raise FileOwnershipError unless every id is set and names a file of ``project_id``."""
    requested = sorted({f for f in file_ids if f})
    owned = fetch_owned_file_ids(client, project_id, requested)
    rejected: list[str | None] = [f for f in requested if f not in owned]
    if any(not f for f in file_ids):
        rejected.append(None)
    if rejected:
        logger.error("Files %s not owned by project %s", rejected, project_id)
        raise FileOwnershipError(project_id, rejected)


def store_decision_items(
    project_id: str,
    items: list[ExtractedItem],
    client: Client | None = None,
    file_ids: list[str] | None = None,
) -> PersistReport:
    """Store decision items and flag their files as analysed.

    ``file_ids`` names files that were analysed as a whole; they are flagged
    even when no item refers to them (a document without decision items).
    Every referenced file must exist and belong to ``project_id``; otherwise
    FileOwnershipError is raised before anything is written. Each item is
    then inserted on its own, so a failed insert does not undo earlier ones;
    the failure is recorded in the report and the file keeps
    ``is_analyzed = false``. Rows are always inserted before the flag is set.

    Raises:
        FileOwnershipError: If an item has no file id or its file is not owned
            by the project.
    """
    analysed = list(file_ids or [])
    if not items and not analysed:
        return PersistReport()

    client = client or get_supabase_client()

    check_file_ownership(client, project_id, [item.file_id for item in items] + analysed)
    requested = sorted({str(item.file_id) for item in items} | set(analysed))

    report = PersistReport()
    failed_files: set[str] = set()
    for index, item in enumerate(items):
        file_id = str(item.file_id)
        try:
            row_id = insert_decision_item(client, item_to_row(project_id, index, item))
        except APIError as exc:
            logger.error("Failed to store item %d for file %s: %s", index, file_id, exc.message)
            report.results.append(ItemResult(index=index, file_id=file_id, error=str(exc.message)))
            failed_files.add(file_id)
            continue
        report.results.append(ItemResult(index=index, file_id=file_id, row_id=row_id))

    for file_id in requested:
        if file_id in failed_files:
            continue
        mark_file_analyzed(client, project_id, file_id)
        report.analyzed_file_ids.append(file_id)

    logger.info(
        "Stored %d/%d decision item(s) for project %s",
        report.inserted_count,
        len(items),
        project_id,
    )
    return report


def load_grouped_items(
    project_id: str,
    file_id: str | None = None,
    client: Client | None = None,
) -> GroupedResults:
    """Load stored decision items for a project (optionally one file), grouped by category."""
    client = client or get_supabase_client()
    rows = fetch_decision_items(client, project_id, file_id=file_id)
    return classify_items([item_from_row(r) for r in rows])
