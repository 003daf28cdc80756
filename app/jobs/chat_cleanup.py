import asyncio
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.jobs.queue import Job, JobContext, RetryPolicy, register_job
from app.models.chat import ChatMessage, ChatThread
from app.services.storage_service import chat_prefix

logger = logging.getLogger(__name__)


@register_job
class CloseChatAndPurgeMediaJob(Job):
    """Purge a closed thread's media and, when configured, redact its messages.

    Storage is purged before messages are redacted. Both steps are idempotent,
    so a retry after a partial run simply repeats them.
    """

    job_type = "chat.close_and_purge_media"
    retry_policy = RetryPolicy(max_attempts=5, backoff=(5, 30, 60, 120, 300))

    def __init__(self, thread_id: int):
        self.thread_id = thread_id

    def to_payload(self) -> dict[str, Any]:
        return {"thread_id": self.thread_id}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "CloseChatAndPurgeMediaJob":
        return cls(thread_id=int(payload["thread_id"]))

    async def handle(self, db: AsyncSession, context: JobContext) -> None:
        thread = await db.get(ChatThread, self.thread_id)
        if thread is None:
            # Deleted before the job ran.
            logger.info("chat cleanup skipped, thread not found", extra={"chat": True, "thread_id": self.thread_id})
            return

        result = await db.execute(
            select(ChatMessage.media_path).where(
                ChatMessage.thread_id == thread.id,
                ChatMessage.media_path.is_not(None),
            )
        )
        media_paths = result.scalars().all()

        await asyncio.to_thread(context.storage.delete_prefix, chat_prefix(thread.id))

        should_redact = context.config_provider().redact_messages
        if should_redact:
            await db.execute(
                update(ChatMessage)
                .where(ChatMessage.thread_id == thread.id)
                .values(text=None, media_path=None, latitude=None, longitude=None)
            )
        # Otherwise rows keep their media_path even though the objects are gone.

        logger.info(
            "chat cleanup executed",
            extra={
                "chat": True,
                "thread_id": thread.id,
                "request_id": thread.request_id,
                "redacted": should_redact,
                "media_count": len(media_paths),
            },
        )
