from app.jobs.queue import JOB_REGISTRY, Job, JobContext, RetryPolicy, enqueue_job, register_job
from app.jobs.chat_cleanup import CloseChatAndPurgeMediaJob

__all__ = [
    "JOB_REGISTRY",
    "CloseChatAndPurgeMediaJob",
    "Job",
    "JobContext",
    "RetryPolicy",
    "enqueue_job",
    "register_job",
]
