"""Contract between the worker loop and pluggable task handlers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class HandlerFatalError(Exception):
    """Unrecoverable condition; the job fails without retrying the unit."""


class TransientUnitError(Exception):
    """Retryable failure inside a unit (timeouts, flaky upstreams)."""


@dataclass
class UnitResult:
    """Outcome of one unit of work.

    ``checkpoint`` must let the handler resume right after this unit.
    ``progress_delta`` is in percentage points. ``items`` are appended to the
    job's result document and ``metadata`` is merged into the job metadata.
    """

    checkpoint: Any
    progress_delta: float = 0.0
    items: list[Any] = field(default_factory=list)
    done: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class JobContext:
    """Read-only view of a job handed to a handler for one unit."""

    id: str
    type: str
    owner_id: str | None
    metadata: dict[str, Any]
    executor: Executor | None = None

    @property
    def params(self) -> dict[str, Any]:
        return self.metadata.get("params") or {}

    def map(self, fn: Callable[[T], R], items: Iterable[T]) -> list[R]:
        """Run ``fn`` over independent partitions of the current unit.

        Results come back in input order. Concurrency is bounded by the
        per-job executor; without one the partitions run inline.
        """
        items = list(items)
        if self.executor is None or len(items) < 2:
            return [fn(item) for item in items]
        return list(self.executor.map(fn, items))


class TaskHandler(ABC):
    """Executes one job type unit by unit.

    Implementations must be idempotent with respect to the checkpoint:
    running a unit again from the same checkpoint must not duplicate
    output or double-count.
    """

    @abstractmethod
    def execute_unit(self, job: JobContext, checkpoint: Any) -> UnitResult:
        """Run the unit that follows ``checkpoint`` (``None`` for the first one)."""

    def finalize(self, job: JobContext, items: list[Any]) -> dict[str, Any]:
        """Build the result document stored when the job completes."""
        return {"items": items, "count": len(items)}
