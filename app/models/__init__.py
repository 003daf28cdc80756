from app.models.auth import RefreshToken
from app.models.chat import ChatMessage, ChatThread
from app.models.job import QueuedJob
from app.models.service_request import ServiceRequest
from app.models.user import User


__all__ = [
    "ChatThread",
    "ChatMessage",
    "QueuedJob",
    "RefreshToken",
    "ServiceRequest",
    "User",
]
