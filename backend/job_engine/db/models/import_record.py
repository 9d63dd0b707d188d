"""SQLAlchemy model for rows loaded by bulk import jobs."""

from sqlalchemy import Column, Index, Integer, String, func
from sqlalchemy.types import DateTime

from job_engine.db.base import Base
from job_engine.db.models.job import JSONDocument, utcnow


class ImportRecord(Base):
    __tablename__ = "import_records"

    id = Column(Integer, primary_key=True)
    dataset = Column(String(64), nullable=False, index=True)
    key = Column(String(255), nullable=False)
    data = Column(JSONDocument, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    __table_args__ = (
        Index("ix_import_records_dataset_key", dataset, func.lower(key), unique=True),
    )
