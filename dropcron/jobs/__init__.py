"""Job observer — records scheduled execution status for operators."""

from dropcron.jobs.models import Job
from dropcron.jobs.store import JobStore

__all__ = ["Job", "JobStore"]
