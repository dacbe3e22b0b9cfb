from __future__ import annotations


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobPayload(ValueError):
    pass


class VerificationError(ValueError):
    """Raised when a hub verification challenge must be refused."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


class DuplicateJobError(ValueError):
    """A fetch job already exists for the feed."""

    def __init__(self, job_type: str, feed_id: object) -> None:
        super().__init__(f"{job_type} job already exists for feed {feed_id}")
        self.job_type = job_type
        self.feed_id = feed_id
