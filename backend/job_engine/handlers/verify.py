"""Bulk address verification with a shared result cache."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import Any

from job_engine.handlers.base import HandlerFatalError, JobContext, TaskHandler, UnitResult
from job_engine.handlers.cache import TTLCache

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
VERIFICATION_TTL_SECONDS = 7 * 24 * 3600

EMAIL_RE = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
DISPOSABLE_DOMAINS = frozenset(
    {"mailinator.com", "guerrillamail.com", "10minutemail.com", "tempmail.com", "yopmail.com"}
)

Verifier = Callable[[str], dict[str, Any]]


def syntax_verifier(email: str) -> dict[str, Any]:
    """Offline check: address syntax and known disposable providers."""
    normalized = email.strip().lower()
    if not EMAIL_RE.match(normalized):
        return {"email": normalized, "status": "invalid", "is_valid": False, "reason": "syntax"}
    domain = normalized.rsplit("@", 1)[1]
    if domain in DISPOSABLE_DOMAINS:
        return {"email": normalized, "status": "disposable", "is_valid": False, "reason": "disposable"}
    return {"email": normalized, "status": "valid", "is_valid": True, "reason": None}


class VerifyHandler(TaskHandler):
    """Verifies ``params.emails`` in batches of 50.

    Results already in the cache are reused; the remaining addresses of a
    batch are checked concurrently through ``JobContext.map``. Valid/invalid
    totals live in the checkpoint so a replayed unit does not double-count.
    """

    def __init__(
        self,
        verifier: Verifier = syntax_verifier,
        cache: TTLCache[dict[str, Any]] | None = None,
        batch_size: int = BATCH_SIZE,
    ):
        self._verifier = verifier
        self._cache = cache if cache is not None else TTLCache(VERIFICATION_TTL_SECONDS)
        self._batch_size = batch_size

    def execute_unit(self, job: JobContext, checkpoint: Any) -> UnitResult:
        emails = job.params.get("emails")
        if not isinstance(emails, list) or not emails:
            raise HandlerFatalError("verify job requires a non-empty list of emails")
        total = len(emails)

        state = checkpoint or {}
        start = int(state.get("offset", 0))
        end = min(start + self._batch_size, total)
        batch = [str(email).strip().lower() for email in emails[start:end]]

        cached = {email: self._cache.get(email) for email in batch}
        pending = [email for email, hit in cached.items() if hit is None]
        fresh = dict(zip(pending, job.map(self._verifier, pending)))
        for email, outcome in fresh.items():
            self._cache.set(email, outcome)

        items = []
        for email in batch:
            if cached.get(email) is not None:
                items.append({**cached[email], "from_cache": True})
            else:
                items.append({**fresh[email], "from_cache": False})

        valid = int(state.get("valid", 0)) + sum(1 for item in items if item["is_valid"])
        invalid = int(state.get("invalid", 0)) + sum(1 for item in items if not item["is_valid"])
        if pending:
            logger.debug(f"Job {job.id}: verified {len(pending)} address(es), {len(batch) - len(pending)} from cache")

        return UnitResult(
            checkpoint={"offset": end, "valid": valid, "invalid": invalid},
            progress_delta=(end - start) * 100.0 / total,
            items=items,
            done=end >= total,
            metadata={
                "total_items": total,
                "processed_items": end,
                "success_count": valid,
                "failure_count": invalid,
            },
        )

    def finalize(self, job: JobContext, items: list[Any]) -> dict[str, Any]:
        valid = [item for item in items if item.get("is_valid")]
        return {
            "items": items,
            "count": len(items),
            "valid_count": len(valid),
            "invalid_count": len(items) - len(valid),
        }
