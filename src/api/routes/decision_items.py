"""Decision item endpoints: save extracted items and read them back grouped."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, HTTPException, Query

from src.api.models import GroupedResultsResponse, PersistReportResponse, StoreItemsRequest
from src.errors import FileOwnershipError
from src.persistence.adapter import load_grouped_items, store_decision_items

router = APIRouter()


@router.post(
    "/api/projects/{project_id}/decision-items",
    response_model=PersistReportResponse,
)
async def save_decision_items(project_id: str, request: StoreItemsRequest) -> PersistReportResponse:
    """Store decision items for files of a project.

    Each item is inserted on its own; the response reports per-item status.
    Returns 404 if any item references a file outside the project.
    """
    try:
        report = store_decision_items(project_id, [i.to_item() for i in request.items])
    except FileOwnershipError as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    return PersistReportResponse.from_report(report)


@router.get(
    "/api/projects/{project_id}/decision-items",
    response_model=GroupedResultsResponse,
)
async def get_decision_items(
    project_id: str,
    file_id: Annotated[str | None, Query(alias="fileId")] = None,
) -> GroupedResultsResponse:
    """Load stored decision items for a project, optionally for one file."""
    groups = load_grouped_items(project_id, file_id=file_id)
    return GroupedResultsResponse.from_groups(groups)
