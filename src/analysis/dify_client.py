"""Dify chat-messages client: start a streaming "三重一大" analysis and stop it."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import httpx

from src.analysis.events import EventCallback, decode_stream
from src.analysis.models import AnalysisHandle, ErrorEvent, StreamEvent, StreamState
from src.config import Settings, settings
from src.errors import ConfigurationError

logger = logging.getLogger(__name__)

ANALYSIS_QUERY = (
    "请分析这些文件中的'三重一大'内容（重大决策、重要干部任免、重大项目、大额资金）"
    "并提取详细信息。请以```json代码块返回数组，每一项包含 eventCategory、meetingTime、"
    "documentNumber、topic、conclusion、summary、amountInvolved、departments、personnel、"
    "decisionBasis、originalText、fileId 字段。"
)

# Tells the model which file id each attached document has, in upload order.
FILE_LIST_TEMPLATE = "\n附件按上传顺序对应以下 fileId，请在每一项的 fileId 字段填写其来源文件：\n{files}"

# Error bodies can be large HTML pages; keep log lines bounded.
_MAX_ERROR_TEXT = 500


def build_analysis_query(file_ids: list[str]) -> str:
    """Return the analysis prompt, listing the file id of every attached document."""
    listing = "\n".join(f"{n}. {file_id}" for n, file_id in enumerate(file_ids, 1))
    return ANALYSIS_QUERY + FILE_LIST_TEMPLATE.format(files=listing)


def build_analysis_request(file_ids: list[str], user_id: str) -> dict[str, Any]:
    """Build the chat-messages request body for a streaming analysis."""
    return {
        "query": build_analysis_query(file_ids),
        "inputs": {"outputMode": "json"},
        "user": user_id,
        "response_mode": "streaming",
        "conversation_id": "",
        "files": [
            {
                "type": "document",
                "transfer_method": "local_file",
                "upload_file_id": file_id,
            }
            for file_id in file_ids
        ],
    }


def _auth_headers(cfg: Settings) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {cfg.dify_api_key}",
    }


def _timeout(cfg: Settings) -> httpx.Timeout:
    return httpx.Timeout(
        cfg.dify_connect_timeout,
        connect=cfg.dify_connect_timeout,
        read=cfg.dify_read_timeout,
    )


async def stream_analysis(
    file_ids: list[str],
    user_id: str,
    on_event: EventCallback,
    client: httpx.AsyncClient | None = None,
    cfg: Settings | None = None,
) -> StreamState:
    """Run one streaming analysis request and feed every decoded event to ``on_event``.

    Provider and transport failures are reported as ``ErrorEvent``s, never raised.

    Args:
        file_ids: Dify upload file ids to analyse.
        user_id: End-user identifier forwarded to Dify.
        on_event: Progress callback, invoked once per event in arrival order.
        client: Optional pre-built HTTP client (tests inject a mock transport).
        cfg: Settings override; defaults to the process settings.

    Returns:
        The final decoder state (``task_id`` is None if none was observed).

    Raises:
        ConfigurationError: If no Dify API key is configured.
    """
    cfg = cfg or settings

    if not file_ids:
        logger.warning("Analysis requested without any file ids")
        on_event(ErrorEvent(message="No files provided for analysis"))
        return StreamState(done=True)

    if not cfg.dify_api_key:
        raise ConfigurationError("Dify API key is not configured (set DIFY_API_KEY)")

    body = build_analysis_request(file_ids, user_id)
    url = f"{cfg.dify_api_url.rstrip('/')}/chat-messages"
    logger.info("Starting streaming analysis of %d file(s) for user %s", len(file_ids), user_id)

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=_timeout(cfg))
    try:
        async with http.stream("POST", url, json=body, headers=_auth_headers(cfg)) as response:
            if response.is_error:
                error_text = (await response.aread()).decode("utf-8", errors="replace")
                logger.error(
                    "Dify returned %d: %s", response.status_code, error_text[:_MAX_ERROR_TEXT]
                )
                on_event(
                    ErrorEvent(
                        message=f"Dify API error: {response.status_code}",
                        status=response.status_code,
                        details=error_text,
                    )
                )
                return StreamState(done=True)

            state = await decode_stream(response.aiter_bytes(), on_event)
    except httpx.HTTPError as exc:
        logger.error("Could not reach Dify at %s: %s", url, exc)
        on_event(ErrorEvent(message=f"Could not reach analysis service: {exc}"))
        return StreamState(done=True)
    finally:
        if owns_client:
            await http.aclose()

    logger.info("Finished streaming analysis (task %s)", state.task_id)
    return state


async def start_analysis(
    file_ids: list[str],
    user_id: str,
    on_event: EventCallback,
    client: httpx.AsyncClient | None = None,
    cfg: Settings | None = None,
) -> AnalysisHandle:
    """Start ``stream_analysis`` in the background and return once a task id is known.

    The returned handle's ``task_id`` is the first provider task id observed,
    or ``""`` if the stream ended (or failed) before one was emitted. The
    caller may await ``handle.future`` for completion or abandon it.

    Raises:
        ConfigurationError: If no Dify API key is configured.
    """
    cfg = cfg or settings
    if file_ids and not cfg.dify_api_key:
        raise ConfigurationError("Dify API key is not configured (set DIFY_API_KEY)")

    loop = asyncio.get_running_loop()
    first_task_id: asyncio.Future[str] = loop.create_future()

    def forward(event: StreamEvent) -> None:
        if event.task_id and not first_task_id.done():
            first_task_id.set_result(event.task_id)
        on_event(event)

    future = asyncio.create_task(stream_analysis(file_ids, user_id, forward, client, cfg))

    def resolve_empty(_: asyncio.Task[StreamState]) -> None:
        if not first_task_id.done():
            first_task_id.set_result("")

    future.add_done_callback(resolve_empty)

    try:
        task_id = await first_task_id
    except asyncio.CancelledError:
        # Caller gave up before a task id arrived; nobody will read the stream.
        future.cancel()
        raise
    return AnalysisHandle(task_id=task_id, future=future)


async def stop_analysis(
    task_id: str,
    user_id: str = "",
    client: httpx.AsyncClient | None = None,
    cfg: Settings | None = None,
) -> bool:
    """Ask Dify to stop generating for ``task_id``.

    Best effort: returns False (and logs) on a missing task id or key, a
    non-2xx response or a transport error. The local read loop of the same
    stream keeps running until the provider closes it.
    """
    cfg = cfg or settings
    if not task_id:
        logger.warning("Cancellation requested without a task id")
        return False
    if not cfg.dify_api_key:
        logger.error("Cannot cancel task %s: Dify API key is not configured", task_id)
        return False

    url = f"{cfg.dify_api_url.rstrip('/')}/stop-generating/{quote(task_id, safe='')}"
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=_timeout(cfg))
    try:
        response = await http.post(
            url, json={"task_id": task_id, "user": user_id}, headers=_auth_headers(cfg)
        )
    except httpx.HTTPError as exc:
        logger.error("Cancelling task %s failed: %s", task_id, exc)
        return False
    finally:
        if owns_client:
            await http.aclose()

    if response.is_error:
        logger.error(
            "Cancelling task %s failed with %d: %s",
            task_id,
            response.status_code,
            response.text[:_MAX_ERROR_TEXT],
        )
        return False

    logger.info("Cancelled analysis task %s", task_id)
    return True
