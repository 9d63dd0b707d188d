"""Database models package."""
from job_engine.db.models.import_record import ImportRecord
from job_engine.db.models.job import Job, JobResultChunk

__all__ = ["ImportRecord", "Job", "JobResultChunk"]
