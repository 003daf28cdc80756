import asyncio
import mimetypes
from datetime import datetime
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, WebSocket
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import dependencies
from app.config import ChatConfig, get_chat_config, settings
from app.core.exceptions import AppError, StorageError
from app.core.responses import CHAT_ERROR_RESPONSES, StandardResponse
from app.database import get_db
from app.models.user import User
from app.services.chat_events import chat_events
from app.services.chat_service import ChatService
from app.services.storage_service import ChatStorageService, LocalDiskStorage, decode_media_token, get_chat_storage

router = APIRouter(responses=CHAT_ERROR_RESPONSES)


class OpenThreadResponse(BaseModel):
    thread_id: int


class MessageOut(BaseModel):
    id: int
    type: str
    text: str | None = None
    lat: float | None = None
    lng: float | None = None
    media_url: str | None = None
    sender_id: int
    created_at: str | None = None


class MessagePage(BaseModel):
    messages: list[MessageOut]
    next_cursor: str | None = None


class UploadUrlRequest(BaseModel):
    filename: str
    content_type: str


class UploadUrlResponse(BaseModel):
    url: str
    media_path: str
    headers: dict[str, str]


class MessageCreateRequest(BaseModel):
    type: Literal["text", "image", "location"]
    text: str | None = None
    lat: float | None = None
    lng: float | None = None
    media_path: str | None = None


class MessageCreatedResponse(BaseModel):
    id: int


class CloseThreadResponse(BaseModel):
    status: str
    closed_at: datetime | None = None


def get_chat_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    storage: Annotated[ChatStorageService, Depends(get_chat_storage)],
    config: Annotated[ChatConfig, Depends(get_chat_config)],
) -> ChatService:
    return ChatService(db, storage, config)


ChatServiceDep = Annotated[ChatService, Depends(get_chat_service)]
CurrentUser = Annotated[User, Depends(dependencies.get_current_active_user)]


@router.post("/requests/{request_id}/open", response_model=StandardResponse[OpenThreadResponse])
async def open_thread(request_id: int, current_user: CurrentUser, chat: ChatServiceDep):
    thread = await chat.open_thread(request_id, current_user)
    return StandardResponse(data=OpenThreadResponse(thread_id=thread.id), message="Chat thread opened successfully")


@router.get("/threads/{thread_id}/messages", response_model=StandardResponse[MessagePage])
async def list_messages(
    thread_id: int,
    current_user: CurrentUser,
    chat: ChatServiceDep,
    cursor: int | None = Query(None, ge=1),
    limit: int = Query(20),
):
    chat.ensure_enabled()
    thread = await chat.get_thread(thread_id)
    chat.authorize(current_user, "view", thread)

    messages, next_cursor = await chat.list_messages(thread, cursor=cursor, limit=limit)
    page = MessagePage(
        messages=[MessageOut(**message) for message in messages],
        next_cursor=str(next_cursor) if next_cursor else None,
    )
    return StandardResponse(data=page, message="Messages retrieved successfully")


@router.post("/threads/{thread_id}/upload-url", response_model=StandardResponse[UploadUrlResponse])
async def get_upload_url(thread_id: int, data: UploadUrlRequest, current_user: CurrentUser, chat: ChatServiceDep):
    chat.ensure_enabled()
    thread = await chat.get_thread(thread_id)
    chat.authorize(current_user, "post", thread)

    signed = chat.create_upload_url(thread, data.filename, data.content_type)
    return StandardResponse(data=UploadUrlResponse(**signed), message="Upload URL generated successfully")


@router.post("/threads/{thread_id}/messages", response_model=StandardResponse[MessageCreatedResponse])
async def post_message(thread_id: int, data: MessageCreateRequest, current_user: CurrentUser, chat: ChatServiceDep):
    chat.ensure_enabled()
    thread = await chat.get_thread(thread_id)
    chat.authorize(current_user, "post", thread)

    message = await chat.post_message(thread, current_user, data.model_dump())
    return StandardResponse(data=MessageCreatedResponse(id=message.id), message="Message posted successfully")


@router.post("/threads/{thread_id}/close", response_model=StandardResponse[CloseThreadResponse])
async def close_thread(thread_id: int, current_user: CurrentUser, chat: ChatServiceDep):
    chat.ensure_enabled()
    thread = await chat.get_thread(thread_id)
    chat.authorize(current_user, "close", thread)

    thread = await chat.close_thread(thread, current_user)
    return StandardResponse(
        data=CloseThreadResponse(status=thread.status.value, closed_at=thread.closed_at),
        message="Chat thread closed successfully",
    )


def _local_backend(storage: ChatStorageService) -> LocalDiskStorage:
    if not isinstance(storage.backend, LocalDiskStorage):
        raise HTTPException(status_code=404, detail="Not found")
    return storage.backend


@router.get("/media")
async def download_media(
    token: str,
    storage: Annotated[ChatStorageService, Depends(get_chat_storage)],
):
    backend = _local_backend(storage)
    payload = decode_media_token(token, "get")
    if payload is None:
        raise HTTPException(status_code=403, detail="Invalid or expired media token")
    key = payload["sub"]
    if storage.is_traversal(key) or not backend.exists(key):
        raise HTTPException(status_code=404, detail="Media not found")
    try:
        content = backend.read_bytes(key)
    except StorageError:
        raise HTTPException(status_code=404, detail="Media not found")
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=content, media_type=media_type)


@router.put("/media", response_model=StandardResponse)
async def upload_media(
    token: str,
    request: Request,
    storage: Annotated[ChatStorageService, Depends(get_chat_storage)],
):
    backend = _local_backend(storage)
    payload = decode_media_token(token, "put")
    if payload is None:
        raise HTTPException(status_code=403, detail="Invalid or expired media token")
    key = payload["sub"]
    if storage.is_traversal(key):
        raise HTTPException(status_code=403, detail="Invalid media key")

    content_type = (request.headers.get("content-type") or "").split(";")[0].strip()
    if content_type != payload.get("ct"):
        raise HTTPException(status_code=400, detail="Content-Type does not match the signed upload")

    declared_length = request.headers.get("content-length")
    if declared_length and declared_length.isdigit() and int(declared_length) > settings.CHAT_MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty upload")
    # The header is optional and can lie.
    if len(body) > settings.CHAT_MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File too large")

    await asyncio.to_thread(backend.save_bytes, key, body, content_type)
    return StandardResponse(message="Media uploaded")


@router.websocket("/ws/{thread_id}")
async def chat_websocket(
    websocket: WebSocket,
    thread_id: int,
    db: Annotated[AsyncSession, Depends(get_db)],
    storage: Annotated[ChatStorageService, Depends(get_chat_storage)],
    config: Annotated[ChatConfig, Depends(get_chat_config)],
):
    token = websocket.query_params.get("token")
    token_data = dependencies.decode_access_token(token) if token else None
    if token_data is None:
        await websocket.close(code=1008)
        return

    user = await dependencies.get_user_by_email(db, token_data.sub)
    if user is None or not user.is_active:
        await websocket.close(code=1008)
        return

    chat = ChatService(db, storage, config)
    try:
        chat.ensure_enabled()
        thread = await chat.get_thread(thread_id)
        chat.authorize(user, "view", thread)
    except AppError:
        await websocket.close(code=1008)
        return

    await chat_events.connect(websocket, thread.id)
    await chat_events.listen(websocket, thread.id)
