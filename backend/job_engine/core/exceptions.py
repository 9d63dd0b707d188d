"""Engine-level exceptions, mapped to HTTP errors by the API layer."""

from __future__ import annotations


class JobEngineError(Exception):
    """Base class for errors raised by the job engine itself."""


class JobNotFoundError(JobEngineError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(JobEngineError):
    """Raised when a status change would leave a terminal state or skip a step."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class UnknownJobTypeError(JobEngineError):
    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type '{job_type}'")
        self.job_type = job_type


class DispatchError(JobEngineError):
    """The job was stored but could not be handed to a worker."""


class LeaseLostError(JobEngineError):
    """A worker tried to write to a job another worker has since taken over."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is owned by another worker")
        self.job_id = job_id
