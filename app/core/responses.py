from typing import Generic, TypeVar, Optional
from pydantic import BaseModel

T = TypeVar("T")

class ResponseBase(BaseModel, Generic[T]):
    data: Optional[T] = None
    message: Optional[str] = None
    success: bool = True

class StandardResponse(ResponseBase[T]):
    pass


class ErrorResponse(BaseModel):
    detail: str
    success: bool = False
    request_id: Optional[str] = None


# OpenAPI documentation for the errors every chat route can raise.
CHAT_ERROR_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Denied by the chat thread policy"},
    404: {"model": ErrorResponse, "description": "Thread or request not found"},
    501: {"model": ErrorResponse, "description": "Chat feature is disabled"},
}
