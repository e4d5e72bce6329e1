from .sqlite_client import SQLiteClient, get_sqlite_client, close_sqlite_client
from .job_queue import Job, JobQueue, JobQueueError
from .models import JobStatus, JobType

__all__ = [
    "SQLiteClient",
    "get_sqlite_client",
    "close_sqlite_client",
    "Job",
    "JobQueue",
    "JobQueueError",
    "JobStatus",
    "JobType",
]
