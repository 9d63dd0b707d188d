"""Business logic for chunked CSV ingestion into import records."""

from __future__ import annotations

import csv
import io
import logging
from contextlib import contextmanager
from itertools import islice
from pathlib import Path
from typing import Iterator, TextIO

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from job_engine.db.models.import_record import ImportRecord
from job_engine.utils.csv_validator import ValidationError, normalize_row, validate_headers

logger = logging.getLogger(__name__)

BASE_CHUNK_SIZE = 1000


@contextmanager
def open_source(path: str | None = None, content: str | None = None) -> Iterator[TextIO]:
    """Open a CSV either from a file path or from inline text."""
    if content is not None:
        yield io.StringIO(content, newline="")
        return
    if not path:
        raise ValueError("CSV source requires a path or inline content")
    try:
        with Path(path).open("r", encoding="utf-8", newline="") as handle:
            yield handle
    except FileNotFoundError:
        raise ValueError(f"CSV file not found: {path}") from None
    except PermissionError:
        raise ValueError(f"Permission denied reading file: {path}") from None


def _reader(handle: TextIO, key_column: str) -> csv.DictReader:
    reader = csv.DictReader(handle)
    if not reader.fieldnames:
        raise ValueError("CSV file appears to be empty or invalid")
    try:
        validate_headers(list(reader.fieldnames), key_column)
    except ValidationError as e:
        raise ValueError(f"Invalid CSV headers: {str(e)}") from e
    return reader


def read_chunk(
    handle: TextIO,
    key_column: str,
    row_offset: int,
    chunk_size: int = BASE_CHUNK_SIZE,
) -> tuple[list[dict], int, int]:
    """Read the data rows ``[row_offset, row_offset + chunk_size)``.

    Returns ``(rows, rows_read, skipped)``. Rows that fail normalization are
    skipped but still count towards ``rows_read`` so offsets stay stable.
    """
    try:
        reader = _reader(handle, key_column)
        batch: list[dict] = []
        rows_read = 0
        skipped = 0
        for row in islice(reader, row_offset, row_offset + chunk_size):
            rows_read += 1
            try:
                batch.append(normalize_row(row, key_column))
            except (ValueError, KeyError) as e:
                logger.warning(f"Error normalizing row {row_offset + rows_read}: {e}")
                skipped += 1
        return batch, rows_read, skipped
    except UnicodeDecodeError as e:
        raise ValueError(f"File encoding error: {str(e)}") from e
    except csv.Error as e:
        raise ValueError(f"CSV parsing error: {str(e)}") from e


def count_rows(handle: TextIO, key_column: str) -> int:
    """Return the total number of data rows in the CSV (excluding headers)."""
    try:
        reader = _reader(handle, key_column)
        return sum(1 for _ in reader)
    except UnicodeDecodeError as e:
        raise ValueError(f"File encoding error: {str(e)}") from e
    except csv.Error as e:
        raise ValueError(f"CSV parsing error: {str(e)}") from e


def upsert_records(rows: list[dict], dataset: str, db: Session) -> dict[str, int]:
    """Perform bulk upserts using case-insensitive key uniqueness per dataset."""
    if not rows:
        return {"inserted": 0, "updated": 0}

    # Later rows win for duplicate keys inside one chunk
    normalized_map: dict[str, dict] = {}
    for row in rows:
        normalized_map[row["key"].lower()] = row

    try:
        existing_records = (
            db.execute(
                select(ImportRecord).where(
                    ImportRecord.dataset == dataset,
                    func.lower(ImportRecord.key).in_(list(normalized_map.keys())),
                )
            )
            .scalars()
            .all()
        )
    except SQLAlchemyError as e:
        logger.error(f"Database error fetching existing records: {e}", exc_info=True)
        raise

    updated = 0
    for record in existing_records:
        payload = normalized_map.pop(record.key.lower(), None)
        if not payload:
            continue
        record.data = payload["data"]
        updated += 1

    inserted = 0
    for payload in normalized_map.values():
        db.add(ImportRecord(dataset=dataset, key=payload["key"], data=payload["data"]))
        inserted += 1

    return {"inserted": inserted, "updated": updated}
