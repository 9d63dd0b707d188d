"""Maps job type strings to the handler that runs them."""

from __future__ import annotations

import logging

from job_engine.core.exceptions import UnknownJobTypeError
from job_engine.handlers.base import TaskHandler

logger = logging.getLogger(__name__)


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def register(self, job_type: str, handler: TaskHandler) -> None:
        if job_type in self._handlers:
            logger.warning(f"Replacing handler for job type '{job_type}'")
        self._handlers[job_type] = handler

    def get(self, job_type: str) -> TaskHandler:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise UnknownJobTypeError(job_type) from None

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers
