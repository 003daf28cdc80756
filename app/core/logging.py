import json
import logging
import time

from app.config import settings

CONTEXT_FIELDS = (
    "request_id",
    "chat",
    "thread_id",
    "admin_id",
    "client_id",
    "message_id",
    "sender_id",
    "actor_id",
    "message_type",
    "redacted",
    "media_count",
    "prefix",
    "count",
    "job_id",
    "job_type",
    "attempt",
    "next_run_at",
    "worker_id",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                payload[field] = getattr(record, field)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str | int | None = None, json_output: bool | None = None) -> None:
    resolved_level = level if level is not None else settings.LOG_LEVEL
    use_json = settings.LOG_JSON if json_output is None else json_output

    handler = logging.StreamHandler()
    if use_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.setLevel(resolved_level)
    root.handlers = [handler]
