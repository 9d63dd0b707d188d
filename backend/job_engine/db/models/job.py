"""Durable record of a submitted job and its execution state."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import DateTime

from job_engine.db.base import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Job(Base):
    __tablename__ = "jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default="pending")
    progress = Column(Integer, nullable=False, default=0)
    meta = Column(JSONDocument, nullable=False, default=dict)
    result_data = Column(JSONDocument)
    error_message = Column(Text)
    owner_id = Column(String(64), index=True)
    # Token of the worker executing the job; NULL while it waits to be resumed
    lease_token = Column(String(36))
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_jobs_dedup", "type", "owner_id", "status", "created_at"),
        Index("ix_jobs_status_completed", "status", "completed_at"),
    )


class JobResultChunk(Base):
    """Items produced by one committed unit of a job that has not finished."""

    __tablename__ = "job_result_chunks"

    id = Column(Integer, primary_key=True)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    seq = Column(Integer, nullable=False)
    items = Column(JSONDocument, nullable=False, default=list)

    __table_args__ = (
        Index("ix_job_result_chunks_job_seq", "job_id", "seq", unique=True),
    )
