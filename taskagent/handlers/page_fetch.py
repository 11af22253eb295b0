"""Detail-fetch handler retrieving one page through the context session."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import trafilatura

from taskagent.core.errors import (
    MalformedParametersError,
    NotApplicableError,
    TerminalTaskError,
    TransientTaskError,
)
from taskagent.core.models import Task, TaskOutcome
from taskagent.handlers.base import Handler
from taskagent.services.sandbox import ExecutionContext, SandboxContext

logger = logging.getLogger(__name__)

_GONE_STATUS_CODES = frozenset({404, 410})


class PageFetchHandler(Handler):
    """Fetch ``parameters['url']`` and extract page metadata and main text.

    The body is streamed into the context's working directory and capped at
    ``max_body_bytes``; extraction runs on the saved copy.
    """

    required_parameters = ("url",)

    def __init__(self, *, max_preview_chars: int = 500, max_body_bytes: int = 5 * 1024 * 1024) -> None:
        self._max_preview_chars = max_preview_chars
        self._max_body_bytes = max_body_bytes

    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        if not isinstance(context, SandboxContext):
            raise TerminalTaskError("PageFetchHandler needs a sandbox context with an HTTP session")
        url = str(task.parameters["url"])
        if not url.startswith(("http://", "https://")):
            raise MalformedParametersError(f"Unsupported URL scheme: {url!r}")

        body_path = context.workdir / "page.html"
        try:
            async with context.http.stream("GET", url) as response:
                _check_status(url, response.status_code)
                size = await self._save_body(url, response, body_path)
                final_url = str(response.url)
                status = response.status_code
                content_type = response.headers.get("content-type", "")
        except httpx.TimeoutException as exc:
            raise TransientTaskError(f"Timed out fetching {url}") from exc
        except httpx.HTTPError as exc:
            raise TransientTaskError(f"Network error fetching {url}: {exc}") from exc

        logger.debug("Fetched %s for task %s (%d bytes)", url, task.id, size)
        record: Dict[str, Any] = {
            "url": url,
            "finalUrl": final_url,
            "status": status,
            "contentType": content_type,
            "contentLength": size,
        }
        record.update(self._extract(body_path.read_bytes(), final_url))
        return TaskOutcome.from_records([record])

    async def _save_body(self, url: str, response: httpx.Response, path: Path) -> int:
        size = 0
        with path.open("wb") as fh:
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                if size > self._max_body_bytes:
                    raise TerminalTaskError(
                        f"{url} is larger than {self._max_body_bytes} bytes",
                        reason_code="page_too_large",
                    )
                fh.write(chunk)
        return size

    def _extract(self, html: bytes, url: str) -> Dict[str, Any]:
        if not html.strip():
            return {"title": None, "description": None, "preview": ""}
        metadata = trafilatura.extract_metadata(html, default_url=url)
        text = _extract_text(html, url) or ""
        return {
            "title": metadata.title if metadata is not None else None,
            "description": metadata.description if metadata is not None else None,
            "preview": " ".join(text.split())[: self._max_preview_chars],
        }


def _check_status(url: str, status: int) -> None:
    if status in _GONE_STATUS_CODES:
        raise NotApplicableError(f"{url} is no longer available (HTTP {status})")
    if status >= 500 or status == 429:
        raise TransientTaskError(f"{url} returned HTTP {status}", reason_code="remote_unavailable")
    if status >= 400:
        raise TerminalTaskError(f"{url} returned HTTP {status}", reason_code="remote_rejected")


def _extract_text(html: bytes, url: str) -> Optional[str]:
    """Main content text; retries favouring recall when the precise pass finds nothing."""
    try:
        text = trafilatura.extract(html, url=url, favor_precision=True, deduplicate=True)
    except Exception as exc:  # noqa: BLE001
        logger.warning("trafilatura.extract failed for %s: %s", url, exc)
        text = None
    if text:
        return text
    try:
        return trafilatura.extract(html, url=url, favor_recall=True)
    except Exception as exc:  # noqa: BLE001
        logger.warning("trafilatura fallback failed for %s: %s", url, exc)
        return None
