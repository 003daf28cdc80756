from enum import Enum

class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class ChatThreadStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class ChatMessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    LOCATION = "location"


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
