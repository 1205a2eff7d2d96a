"""Supabase storage helpers for project files and decision items."""

from __future__ import annotations

from typing import Any, cast

from supabase import Client, create_client

from src.config import settings

FILES_TABLE = "files"
DECISION_ITEMS_TABLE = "decision_items"


def get_supabase_client() -> Client:
    """Create and return a Supabase client from settings."""
    return create_client(settings.supabase_url, settings.supabase_key)


def fetch_owned_file_ids(client: Client, project_id: str, file_ids: list[str]) -> set[str]:
    """Return the subset of ``file_ids`` that exist and belong to ``project_id``."""
    if not file_ids:
        return set()
    result = (
        client.table(FILES_TABLE)
        .select("id")
        .eq("project_id", project_id)
        .in_("id", file_ids)
        .execute()
    )
    # Supabase .data is typed as JSON (broad union); cast to concrete type.
    rows = cast(list[dict[str, Any]], result.data)
    return {str(r["id"]) for r in rows}


def insert_decision_item(client: Client, row: dict[str, Any]) -> str:
    """Insert one decision item row and return its generated id."""
    result = client.table(DECISION_ITEMS_TABLE).insert(row).execute()
    rows = cast(list[dict[str, Any]], result.data)
    return str(rows[0]["id"])


def mark_file_analyzed(client: Client, project_id: str, file_id: str) -> None:
    """Set ``is_analyzed`` on a project file."""
    (
        client.table(FILES_TABLE)
        .update({"is_analyzed": True})
        .eq("id", file_id)
        .eq("project_id", project_id)
        .execute()
    )


def fetch_decision_items(
    client: Client,
    project_id: str,
    file_id: str | None = None,
    category: str | None = None,
) -> list[dict[str, Any]]:
    """Read stored decision item rows for a project, oldest first."""
    query = client.table(DECISION_ITEMS_TABLE).select("*").eq("project_id", project_id)
    if file_id:
        query = query.eq("file_id", file_id)
    if category:
        query = query.eq("event_category", category)
    result = query.order("created_at").order("item_index").execute()
    return cast(list[dict[str, Any]], result.data)
