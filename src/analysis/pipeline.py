"""End-to-end analysis: stream -> collect -> classify -> persist."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx
from supabase import Client

from src.analysis.classifier import AnswerCollector
from src.analysis.dify_client import stream_analysis
from src.analysis.events import EventCallback
from src.analysis.models import ErrorEvent, ExtractedItem, GroupedResults, StreamEvent
from src.persistence.adapter import PersistReport, check_file_ownership, store_decision_items
from src.persistence.storage import get_supabase_client

logger = logging.getLogger(__name__)


@dataclass
class AnalysisOutcome:
    """Result of a complete analysis run."""

    task_id: str
    groups: GroupedResults = field(default_factory=GroupedResults)
    report: PersistReport = field(default_factory=PersistReport)
    error: ErrorEvent | None = None
    # Items the model did not attribute to one of the analysed files; not stored.
    unattributed: list[ExtractedItem] = field(default_factory=list)


async def run_analysis(
    project_id: str,
    file_ids: list[str],
    user_id: str,
    on_event: EventCallback | None = None,
    client: httpx.AsyncClient | None = None,
    db: Client | None = None,
) -> AnalysisOutcome:
    """Analyse ``file_ids``, group the extracted items and store them.

    The files must belong to the project; this is checked before the provider
    is called. Items the model did not attribute to one of the analysed files
    are assigned to the only file when exactly one was analysed, and are
    otherwise returned in ``unattributed`` without being stored. Every
    analysed file is flagged once the run succeeds, even without items.
    Nothing is stored if the stream reported an error.

    Raises:
        ConfigurationError: If no Dify API key is configured.
        FileOwnershipError: If a requested file does not belong to the project.
    """
    db = db or get_supabase_client()
    check_file_ownership(db, project_id, list(file_ids))

    collector = AnswerCollector()

    def progress(event: StreamEvent) -> None:
        collector(event)
        if on_event is not None:
            on_event(event)

    state = await stream_analysis(file_ids, user_id, progress, client=client)
    task_id = state.task_id or collector.task_id or ""

    if collector.error is not None:
        logger.error("Analysis %s failed: %s", task_id or "<no task>", collector.error.message)
        return AnalysisOutcome(task_id=task_id, error=collector.error)

    groups = collector.grouped()
    attributed: list[ExtractedItem] = []
    unattributed: list[ExtractedItem] = []
    for item in groups.items():
        if item.file_id not in file_ids:
            item.file_id = file_ids[0] if len(file_ids) == 1 else None
        if item.file_id:
            attributed.append(item)
        else:
            unattributed.append(item)
    if unattributed:
        logger.warning(
            "Analysis %s: %d item(s) without a known source file were not stored",
            task_id,
            len(unattributed),
        )

    report = store_decision_items(project_id, attributed, client=db, file_ids=file_ids)
    logger.info("Analysis %s produced %s", task_id, groups.counts())
    return AnalysisOutcome(
        task_id=task_id, groups=groups, report=report, unattributed=unattributed
    )
