"""Tests for API endpoints (no Dify, Supabase or Anthropic access required)."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from src.analysis.models import (
    AnalysisHandle,
    AnswerEvent,
    DoneEvent,
    ErrorEvent,
    ExtractedItem,
    GroupedResults,
    MessageEndEvent,
    StreamEvent,
    StreamState,
)
from src.analysis.pipeline import AnalysisOutcome
from src.api.main import app
from src.errors import ConfigurationError, FileOwnershipError
from src.persistence.adapter import ItemResult, PersistReport

client = TestClient(app)
client_no_raise = TestClient(app, raise_server_exceptions=False)

BODY = {"fileIds": ["f1"], "userId": "user-1"}


def _sse_payloads(text: str) -> list[dict[str, Any]]:
    return [
        json.loads(line[len("data: ") :])
        for line in text.splitlines()
        if line.startswith("data: ")
    ]


def _fake_start(events: list[StreamEvent]) -> Any:
    """Build a start_analysis replacement that replays ``events`` from a background task."""

    async def fake(file_ids: list[str], user_id: str, on_event: Any, **kwargs: Any) -> AnalysisHandle:
        async def run() -> StreamState:
            for event in events:
                on_event(event)
                await asyncio.sleep(0)
            return StreamState(task_id="t1", done=True)

        return AnalysisHandle(task_id="t1", future=asyncio.create_task(run()))

    return fake


def test_health() -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


# ---------------------------------------------------------------------------
# Streaming analysis
# ---------------------------------------------------------------------------


class TestStreamEndpoint:
    def test_missing_fields_returns_422(self) -> None:
        response = client.post("/api/analysis/stream", json={})
        assert response.status_code == 422

    def test_empty_file_ids_returns_400(self) -> None:
        with patch("src.api.routes.analysis.settings") as mock_settings:
            mock_settings.dify_api_key = "key"
            response = client.post(
                "/api/analysis/stream", json={"fileIds": [], "userId": "user-1"}
            )
        assert response.status_code == 400

    def test_missing_api_key_returns_500(self) -> None:
        with patch("src.api.routes.analysis.settings") as mock_settings:
            mock_settings.dify_api_key = ""
            response = client.post("/api/analysis/stream", json=BODY)
        assert response.status_code == 500
        assert "DIFY_API_KEY" in response.json()["detail"]

    def test_relays_events_after_start(self) -> None:
        events: list[StreamEvent] = [
            AnswerEvent(answer="重大", task_id="t1"),
            AnswerEvent(answer="决策", task_id="t1"),
            MessageEndEvent(metadata={}, task_id="t1"),
            DoneEvent(task_id="t1"),
        ]
        with (
            patch("src.api.routes.analysis.settings") as mock_settings,
            patch("src.api.routes.analysis.start_analysis", new=_fake_start(events)),
        ):
            mock_settings.dify_api_key = "key"
            response = client.post("/api/analysis/stream", json=BODY)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        payloads = _sse_payloads(response.text)
        assert [p["event"] for p in payloads] == ["start", "message", "message", "message_end", "done"]
        assert payloads[1] == {"event": "message", "task_id": "t1", "answer": "重大"}
        assert payloads[-1] == {"event": "done", "task_id": "t1"}

    def test_provider_error_is_relayed(self) -> None:
        events: list[StreamEvent] = [
            ErrorEvent(message="Dify API error: 401", status=401, details="invalid api key")
        ]
        with (
            patch("src.api.routes.analysis.settings") as mock_settings,
            patch("src.api.routes.analysis.start_analysis", new=_fake_start(events)),
        ):
            mock_settings.dify_api_key = "key"
            response = client.post("/api/analysis/stream", json=BODY)

        payloads = _sse_payloads(response.text)
        assert [p["event"] for p in payloads] == ["start", "error"]
        assert payloads[1]["status"] == 401

    def test_configuration_error_becomes_error_event(self) -> None:
        with (
            patch("src.api.routes.analysis.settings") as mock_settings,
            patch(
                "src.api.routes.analysis.start_analysis",
                new=AsyncMock(side_effect=ConfigurationError("DIFY_API_KEY is not set")),
            ),
        ):
            mock_settings.dify_api_key = "key"
            response = client.post("/api/analysis/stream", json=BODY)

        payloads = _sse_payloads(response.text)
        assert payloads == [
            {"event": "start"},
            {"event": "error", "message": "DIFY_API_KEY is not set"},
        ]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancelEndpoint:
    def test_cancel_success(self) -> None:
        with patch(
            "src.api.routes.analysis.stop_analysis", new=AsyncMock(return_value=True)
        ) as mock_stop:
            response = client.post(
                "/api/analysis/cancel", json={"taskId": "t1", "userId": "user-1"}
            )
        assert response.status_code == 200
        assert response.json() == {"success": True}
        mock_stop.assert_awaited_once_with("t1", "user-1")

    def test_cancel_failure_is_not_an_http_error(self) -> None:
        with patch("src.api.routes.analysis.stop_analysis", new=AsyncMock(return_value=False)):
            response = client.post("/api/analysis/cancel", json={"taskId": "gone"})
        assert response.status_code == 200
        assert response.json() == {"success": False}

    def test_cancel_requires_task_id(self) -> None:
        response = client.post("/api/analysis/cancel", json={})
        assert response.status_code == 422


# ---------------------------------------------------------------------------
# Complete analysis run
# ---------------------------------------------------------------------------


def _outcome() -> AnalysisOutcome:
    item = ExtractedItem(
        event_category="大额资金", topic="设备采购", amount_involved="¥2,000,000", file_id="f1"
    )
    report = PersistReport(
        results=[ItemResult(index=0, file_id="f1", row_id="row-0")],
        analyzed_file_ids=["f1"],
    )
    return AnalysisOutcome(task_id="t1", groups=GroupedResults(large_amounts=[item]), report=report)


class TestRunEndpoint:
    def test_returns_grouped_camel_case_results(self) -> None:
        with (
            patch("src.api.routes.analysis.settings") as mock_settings,
            patch(
                "src.api.routes.analysis.run_analysis", new=AsyncMock(return_value=_outcome())
            ) as mock_run,
        ):
            mock_settings.dify_api_key = "key"
            response = client.post("/api/projects/p1/analysis", json=BODY)

        assert response.status_code == 200
        data = response.json()
        assert data["taskId"] == "t1"
        assert data["results"]["majorDecisions"] == []
        [item] = data["results"]["largeAmounts"]
        assert item["eventCategory"] == "大额资金"
        assert item["amountInvolved"] == "¥2,000,000"
        assert data["persistence"]["itemsStored"] == 1
        assert data["persistence"]["itemsFailed"] == 0
        assert data["persistence"]["analyzedFileIds"] == ["f1"]
        assert data["unattributed"] == []
        mock_run.assert_awaited_once_with("p1", ["f1"], "user-1")

    def test_reports_unattributed_items(self) -> None:
        outcome = _outcome()
        outcome.unattributed = [ExtractedItem(event_category="重大项目", topic="新厂房")]
        with (
            patch("src.api.routes.analysis.settings") as mock_settings,
            patch("src.api.routes.analysis.run_analysis", new=AsyncMock(return_value=outcome)),
        ):
            mock_settings.dify_api_key = "key"
            response = client.post(
                "/api/projects/p1/analysis", json={"fileIds": ["f1", "f2"], "userId": "user-1"}
            )

        assert response.status_code == 200
        [item] = response.json()["unattributed"]
        assert item["topic"] == "新厂房"
        assert item["fileId"] is None

    def test_stream_error_returns_502(self) -> None:
        failed = AnalysisOutcome(task_id="t1", error=ErrorEvent(message="Dify API error: 500"))
        with (
            patch("src.api.routes.analysis.settings") as mock_settings,
            patch("src.api.routes.analysis.run_analysis", new=AsyncMock(return_value=failed)),
        ):
            mock_settings.dify_api_key = "key"
            response = client.post("/api/projects/p1/analysis", json=BODY)

        assert response.status_code == 502
        assert "Dify API error: 500" in response.json()["detail"]

    def test_foreign_file_returns_404(self) -> None:
        with (
            patch("src.api.routes.analysis.settings") as mock_settings,
            patch(
                "src.api.routes.analysis.run_analysis",
                new=AsyncMock(side_effect=FileOwnershipError("p1", ["f9"])),
            ),
        ):
            mock_settings.dify_api_key = "key"
            response = client.post("/api/projects/p1/analysis", json=BODY)

        assert response.status_code == 404
        assert "f9" in response.json()["detail"]


# ---------------------------------------------------------------------------
# Decision items
# ---------------------------------------------------------------------------


class TestDecisionItemsEndpoints:
    def test_store_items(self) -> None:
        report = PersistReport(
            results=[
                ItemResult(index=0, file_id="f1", row_id="row-0"),
                ItemResult(index=1, file_id="f1", error="insert failed"),
            ],
        )
        with patch(
            "src.api.routes.decision_items.store_decision_items", return_value=report
        ) as mock_store:
            response = client.post(
                "/api/projects/p1/decision-items",
                json={
                    "items": [
                        {"eventCategory": "重大决策", "topic": "预算", "fileId": "f1"},
                        {"eventCategory": "大额资金", "amountInvolved": 5000, "fileId": "f1"},
                    ]
                },
            )

        assert response.status_code == 200
        data = response.json()
        assert data["itemsStored"] == 1
        assert data["itemsFailed"] == 1
        assert data["results"][1]["error"] == "insert failed"

        project_id, items = mock_store.call_args.args
        assert project_id == "p1"
        assert items[0] == ExtractedItem(event_category="重大决策", topic="预算", file_id="f1")
        assert items[1].amount_involved == 5000

    def test_store_items_for_foreign_file_returns_404(self) -> None:
        with patch(
            "src.api.routes.decision_items.store_decision_items",
            side_effect=FileOwnershipError("p1", ["other"]),
        ):
            response = client.post(
                "/api/projects/p1/decision-items",
                json={"items": [{"eventCategory": "重大项目", "fileId": "other"}]},
            )
        assert response.status_code == 404

    def test_load_items_for_file(self) -> None:
        groups = GroupedResults(major_projects=[ExtractedItem(event_category="重大项目", topic="新厂房")])
        with patch(
            "src.api.routes.decision_items.load_grouped_items", return_value=groups
        ) as mock_load:
            response = client.get("/api/projects/p1/decision-items", params={"fileId": "f1"})

        assert response.status_code == 200
        assert response.json()["majorProjects"][0]["topic"] == "新厂房"
        mock_load.assert_called_once_with("p1", file_id="f1")

    def test_load_items_without_supabase(self) -> None:
        """Storage failures surface as 500 rather than a hung request."""
        with patch(
            "src.api.routes.decision_items.load_grouped_items",
            side_effect=RuntimeError("no supabase"),
        ):
            response = client_no_raise.get("/api/projects/p1/decision-items")
        assert response.status_code == 500
