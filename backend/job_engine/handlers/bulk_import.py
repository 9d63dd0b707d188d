"""CSV bulk import into ``import_records``."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from job_engine.handlers.base import HandlerFatalError, JobContext, TaskHandler, UnitResult
from job_engine.handlers.cache import RefreshingCache
from job_engine.services.csv_ingest import BASE_CHUNK_SIZE, count_rows, open_source, read_chunk, upsert_records

logger = logging.getLogger(__name__)


class BulkImportHandler(TaskHandler):
    """Upserts CSV rows chunk by chunk.

    Params: ``dataset``, ``key_column`` (default ``key``), ``chunk_size`` and
    either ``path`` or inline ``content``. Rows are upserted by
    case-insensitive key, so replaying a chunk after a crash only turns
    inserts into updates.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        chunk_size: int = BASE_CHUNK_SIZE,
        invalidates: list[RefreshingCache[Any]] | None = None,
    ):
        self._session_factory = session_factory
        self._chunk_size = chunk_size
        self._invalidates = invalidates or []

    def execute_unit(self, job: JobContext, checkpoint: Any) -> UnitResult:
        params = job.params
        dataset = params.get("dataset")
        if not dataset:
            raise HandlerFatalError("import job requires a dataset")
        key_column = params.get("key_column") or "key"
        chunk_size = int(params.get("chunk_size") or self._chunk_size)

        state = checkpoint or {}
        row_offset = int(state.get("row_offset", 0))

        try:
            total = state.get("total_rows")
            if total is None:
                with open_source(params.get("path"), params.get("content")) as handle:
                    total = count_rows(handle, key_column)
            with open_source(params.get("path"), params.get("content")) as handle:
                rows, rows_read, skipped = read_chunk(handle, key_column, row_offset, chunk_size)
        except ValueError as e:
            raise HandlerFatalError(str(e)) from e

        try:
            with self._session_factory() as session:
                counts = upsert_records(rows, dataset, session)
                session.commit()
        except SQLAlchemyError:
            logger.error(f"Job {job.id}: upsert failed at row {row_offset}", exc_info=True)
            raise

        next_offset = row_offset + rows_read
        done = rows_read == 0 or next_offset >= total
        if done:
            for cache in self._invalidates:
                cache.invalidate()

        inserted = int(state.get("inserted", 0)) + counts["inserted"]
        updated = int(state.get("updated", 0)) + counts["updated"]
        skipped_total = int(state.get("skipped", 0)) + skipped
        logger.info(
            f"Job {job.id}: rows {row_offset}-{next_offset} of {total} "
            f"(+{counts['inserted']} inserted, {counts['updated']} updated, {skipped} skipped)"
        )

        return UnitResult(
            checkpoint={
                "row_offset": next_offset,
                "total_rows": total,
                "inserted": inserted,
                "updated": updated,
                "skipped": skipped_total,
            },
            progress_delta=rows_read * 100.0 / total if total else 100.0,
            items=[{"row_offset": row_offset, "rows": rows_read, **counts, "skipped": skipped}],
            done=done,
            metadata={
                "total_items": total,
                "processed_items": next_offset,
                "success_count": inserted + updated,
                "failure_count": skipped_total,
            },
        )

    def finalize(self, job: JobContext, items: list[Any]) -> dict[str, Any]:
        return {
            "items": items,
            "count": len(items),
            "dataset": job.params.get("dataset"),
            "inserted": sum(chunk["inserted"] for chunk in items),
            "updated": sum(chunk["updated"] for chunk in items),
            "skipped": sum(chunk["skipped"] for chunk in items),
        }
