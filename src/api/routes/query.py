"""Query endpoint: answer questions over stored decision items, with structured routing."""

from __future__ import annotations

from anthropic import APIStatusError
from fastapi import APIRouter, HTTPException

from src.api.models import QueryRequest, QueryResponse
from src.retrieval.generation import generate_answer
from src.retrieval.router import (
    QueryType,
    classify_query,
    format_structured_response,
    lookup_decision_items,
)

router = APIRouter()


@router.post("/api/projects/{project_id}/query", response_model=QueryResponse)
async def query(project_id: str, request: QueryRequest) -> QueryResponse:
    """Answer a question about a project's "三重一大" items.

    The query router classifies the question:
    - Category questions (重大决策, 大额资金, ...) -> direct DB lookup
    - Open questions -> Claude answer over the project's stored items
    """
    routed = classify_query(request.question)

    if routed.query_type is QueryType.STRUCTURED:
        items = lookup_decision_items(
            project_id,
            file_id=request.file_id,
            category=routed.category,
        )
        return QueryResponse(
            answer=format_structured_response(items, routed.category),
            sources=[],
        )

    items = lookup_decision_items(project_id, file_id=request.file_id)
    if not items:
        return QueryResponse(
            answer="No analysed decision items found for this project.",
            sources=[],
        )

    try:
        result = generate_answer(request.question, items)
    except APIStatusError as exc:
        # Claude overloaded or other upstream error: return 503 so the client
        # receives a proper JSON response with CORS headers intact.
        raise HTTPException(status_code=503, detail=f"LLM unavailable: {exc.message}") from exc

    return QueryResponse(
        answer=result["answer"],
        sources=result["sources"],
        model=result.get("model"),
        usage=result.get("usage"),
    )
