"""Collects email addresses from a list of web pages."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx

from job_engine.handlers.base import HandlerFatalError, JobContext, TaskHandler, UnitResult

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
REQUEST_TIMEOUT_SECONDS = 10.0
USER_AGENT = "job-engine-scraper/1.0"

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
# Asset names like logo@2x.png look like addresses
IGNORED_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp")


def extract_emails(html: str) -> list[str]:
    found: dict[str, None] = {}
    for match in EMAIL_PATTERN.findall(html):
        email = match.lower().rstrip(".")
        if email.endswith(IGNORED_SUFFIXES):
            continue
        found.setdefault(email, None)
    return list(found)


class ScrapeHandler(TaskHandler):
    """Fetches ``params.urls`` a batch at a time.

    A page that cannot be fetched is recorded with its error and counted as a
    failure; it never fails the job.
    """

    def __init__(self, client: httpx.Client | None = None, batch_size: int = DEFAULT_BATCH_SIZE):
        self._client = client or httpx.Client(
            timeout=REQUEST_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        self._batch_size = batch_size

    def close(self) -> None:
        self._client.close()

    def execute_unit(self, job: JobContext, checkpoint: Any) -> UnitResult:
        urls = job.params.get("urls")
        if not isinstance(urls, list) or not urls:
            raise HandlerFatalError("scrape job requires a non-empty list of urls")
        total = len(urls)
        batch_size = int(job.params.get("batch_size") or self._batch_size)

        state = checkpoint or {}
        start = int(state.get("offset", 0))
        end = min(start + batch_size, total)

        items = job.map(self._scrape_page, [str(url) for url in urls[start:end]])

        succeeded = int(state.get("succeeded", 0)) + sum(1 for item in items if item["error"] is None)
        failed = int(state.get("failed", 0)) + sum(1 for item in items if item["error"] is not None)
        emails_found = int(state.get("emails_found", 0)) + sum(len(item["emails"]) for item in items)

        return UnitResult(
            checkpoint={"offset": end, "succeeded": succeeded, "failed": failed, "emails_found": emails_found},
            progress_delta=(end - start) * 100.0 / total,
            items=items,
            done=end >= total,
            metadata={
                "total_items": total,
                "processed_items": end,
                "success_count": succeeded,
                "failure_count": failed,
                "emails_found": emails_found,
            },
        )

    def _scrape_page(self, url: str) -> dict[str, Any]:
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.info(f"Scrape of {url} returned HTTP {e.response.status_code}")
            return {"url": url, "emails": [], "error": f"HTTP {e.response.status_code}"}
        except httpx.HTTPError as e:
            logger.info(f"Scrape of {url} failed: {e}")
            return {"url": url, "emails": [], "error": str(e) or e.__class__.__name__}
        return {"url": url, "emails": extract_emails(response.text), "error": None}

    def finalize(self, job: JobContext, items: list[Any]) -> dict[str, Any]:
        unique: dict[str, None] = {}
        for page in items:
            for email in page["emails"]:
                unique.setdefault(email, None)
        return {
            "items": items,
            "count": len(items),
            "emails": list(unique),
            "failed_urls": [page["url"] for page in items if page["error"] is not None],
        }
