import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ChatConfig
from app.core.exceptions import ChatDisabledError, ChatValidationError, NotFoundError, PermissionDeniedError
from app.jobs.chat_cleanup import CloseChatAndPurgeMediaJob
from app.jobs.queue import enqueue_job
from app.models.chat import ChatMessage, ChatThread
from app.models.enums import ChatMessageType, ChatThreadStatus, Role
from app.models.service_request import ServiceRequest
from app.models.user import User
from app.policies.chat_thread import ChatAction, ChatThreadPolicy
from app.services.chat_events import MESSAGE_CREATED, THREAD_CLOSED, ChatEventBroadcaster, chat_events
from app.services.storage_service import ChatStorageService, chat_prefix

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50


def _is_admin(user: User) -> bool:
    return user.role == Role.ADMIN


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ChatService:
    def __init__(
        self,
        db: AsyncSession,
        storage: ChatStorageService,
        config: ChatConfig,
        events: ChatEventBroadcaster = chat_events,
    ):
        self.db = db
        self.storage = storage
        self.config = config
        self.policy = ChatThreadPolicy(config)
        self.events = events

    def ensure_enabled(self) -> None:
        if not self.config.enabled:
            raise ChatDisabledError()

    def authorize(self, actor: User, action: ChatAction, thread: ChatThread) -> None:
        if not self.policy.allows(actor, action, thread):
            raise PermissionDeniedError()

    async def get_thread(self, thread_id: int) -> ChatThread:
        thread = await self.db.get(ChatThread, thread_id)
        if thread is None:
            raise NotFoundError("Chat thread not found")
        return thread

    async def _find_thread_for_request(self, request_id: int) -> ChatThread | None:
        result = await self.db.execute(select(ChatThread).where(ChatThread.request_id == request_id))
        return result.scalar_one_or_none()

    async def open_thread(self, request_id: int, actor: User) -> ChatThread:
        self.ensure_enabled()

        service_request = await self.db.get(ServiceRequest, request_id)
        if service_request is None:
            raise NotFoundError("Request not found")
        if not _is_admin(actor) and service_request.user_id != actor.id:
            raise PermissionDeniedError()

        thread = await self._find_thread_for_request(service_request.id)
        if thread is not None:
            if _is_admin(actor) and thread.admin_id is None:
                thread.admin_id = actor.id
                await self.db.commit()
                await self.db.refresh(thread)
            return thread

        thread = ChatThread(
            request_id=service_request.id,
            admin_id=actor.id if _is_admin(actor) else None,
            client_id=service_request.user_id,
            status=ChatThreadStatus.OPEN,
            opened_at=datetime.now(timezone.utc),
        )
        self.db.add(thread)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another request opened it first.
            await self.db.rollback()
            existing = await self._find_thread_for_request(service_request.id)
            if existing is None:
                raise
            return existing
        await self.db.refresh(thread)

        logger.info(
            "chat thread opened",
            extra={
                "chat": True,
                "thread_id": thread.id,
                "request_id": service_request.id,
                "admin_id": thread.admin_id,
                "client_id": thread.client_id,
            },
        )
        return thread

    def serialize_message(self, message: ChatMessage) -> dict[str, Any]:
        media_url = None
        if message.type == ChatMessageType.IMAGE and message.media_path:
            media_url = self.storage.sign_get_url(message.media_path, self.config.signed_url_ttl)
        return {
            "id": message.id,
            "type": ChatMessageType(message.type).value,
            "text": message.text,
            "lat": message.latitude,
            "lng": message.longitude,
            "media_url": media_url,
            "sender_id": message.sender_id,
            "created_at": _iso(message.created_at),
        }

    async def list_messages(
        self,
        thread: ChatThread,
        cursor: int | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[dict[str, Any]], int | None]:
        """Newest first. ``cursor`` is the id of the last message already seen."""
        per_page = min(MAX_PAGE_SIZE, max(1, limit))
        stmt = select(ChatMessage).where(ChatMessage.thread_id == thread.id).order_by(ChatMessage.id.desc())
        if cursor:
            stmt = stmt.where(ChatMessage.id < cursor)
        result = await self.db.execute(stmt.limit(per_page))
        messages = result.scalars().all()
        next_cursor = messages[-1].id if messages else None
        return [self.serialize_message(message) for message in messages], next_cursor

    def create_upload_url(self, thread: ChatThread, filename: str, content_type: str) -> dict[str, Any]:
        extension = os.path.splitext(filename)[1].lstrip(".") or "jpg"
        media_path = f"{chat_prefix(thread.id)}{uuid.uuid4().hex}_{int(time.time())}.{extension}"
        signed = self.storage.sign_put_url(media_path, content_type, self.config.signed_url_ttl)
        if not signed.url:
            raise ChatValidationError("Failed to generate upload URL")
        return {"url": signed.url, "media_path": media_path, "headers": signed.headers}

    def _build_message(self, thread: ChatThread, sender: User, payload: dict[str, Any]) -> ChatMessage:
        raw_type = payload.get("type") or ChatMessageType.TEXT.value
        try:
            message_type = ChatMessageType(raw_type)
        except ValueError:
            raise ChatValidationError("Invalid message type")

        message = ChatMessage(thread_id=thread.id, sender_id=sender.id, type=message_type)
        if message_type == ChatMessageType.TEXT:
            text = str(payload.get("text") or "").strip()
            if not text:
                raise ChatValidationError("Text is required")
            message.text = text
        elif message_type == ChatMessageType.LOCATION:
            lat, lng = payload.get("lat"), payload.get("lng")
            try:
                message.latitude = float(lat)
                message.longitude = float(lng)
            except (TypeError, ValueError):
                raise ChatValidationError("Invalid coordinates")
        else:
            media_path = str(payload.get("media_path") or "")
            if not media_path or not self.storage.validate_chat_path(thread.id, media_path):
                raise ChatValidationError("Invalid media path for this thread")
            message.media_path = media_path
        return message

    async def post_message(self, thread: ChatThread, sender: User, payload: dict[str, Any]) -> ChatMessage:
        message = self._build_message(thread, sender, payload)
        self.db.add(message)
        thread.updated_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(message)

        await self.events.publish(thread.id, MESSAGE_CREATED, self.serialize_message(message), self.config)

        logger.info(
            "chat message created",
            extra={
                "chat": True,
                "thread_id": thread.id,
                "request_id": thread.request_id,
                "message_id": message.id,
                "sender_id": sender.id,
                "message_type": ChatMessageType(message.type).value,
            },
        )
        return message

    async def close_thread(self, thread: ChatThread, actor: User) -> ChatThread:
        self.ensure_enabled()

        if thread.status == ChatThreadStatus.CLOSED:
            return thread

        thread.status = ChatThreadStatus.CLOSED
        thread.closed_at = datetime.now(timezone.utc)
        # Same transaction as the status change: one purge per transition.
        await enqueue_job(self.db, CloseChatAndPurgeMediaJob(thread.id), commit=False)
        await self.db.commit()
        await self.db.refresh(thread)

        await self.events.publish(thread.id, THREAD_CLOSED, {"thread_id": thread.id}, self.config)

        logger.info(
            "chat thread closed",
            extra={"chat": True, "thread_id": thread.id, "request_id": thread.request_id, "actor_id": actor.id},
        )
        return thread
