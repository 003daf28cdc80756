import logging
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any
from urllib.parse import urlencode

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from jose import JWTError, jwt

from app.config import settings
from app.core.exceptions import StorageError

logger = logging.getLogger(__name__)

CHAT_PREFIX = "chats/"
MEDIA_TOKEN_TYPE = "chat_media"
S3_DELETE_BATCH_SIZE = 1000


def chat_prefix(thread_id: int) -> str:
    return f"{CHAT_PREFIX}{thread_id}/"


@dataclass
class SignedUpload:
    url: str | None
    headers: dict[str, str] = field(default_factory=dict)


def create_media_token(key: str, operation: str, ttl_seconds: int, content_type: str | None = None) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
    payload: dict[str, Any] = {"sub": key, "op": operation, "type": MEDIA_TOKEN_TYPE, "exp": expire}
    if content_type:
        payload["ct"] = content_type
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_media_token(token: str, operation: str) -> dict[str, Any] | None:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != MEDIA_TOKEN_TYPE or payload.get("op") != operation or not payload.get("sub"):
        return None
    return payload


class StorageBackend:
    def save_bytes(self, key: str, data: bytes, content_type: str | None = None) -> None:
        raise NotImplementedError

    def read_bytes(self, key: str) -> bytes:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        raise NotImplementedError

    def signed_get_url(self, key: str, ttl_seconds: int) -> str | None:
        raise NotImplementedError

    def signed_put_url(self, key: str, content_type: str, ttl_seconds: int) -> SignedUpload:
        raise NotImplementedError


class LocalDiskStorage(StorageBackend):
    """Files under ``base_dir``; signed URLs point at the API's media endpoints."""

    def __init__(self, base_dir: str | None = None, public_base_url: str | None = None) -> None:
        self.base_dir = os.path.abspath(base_dir or settings.UPLOAD_DIR)
        self.public_base_url = public_base_url if public_base_url is not None else settings.STORAGE_PUBLIC_BASE_URL

    def _full_path(self, key: str) -> str:
        cleaned = key.lstrip("/").replace("\\", "/")
        full_path = os.path.abspath(os.path.join(self.base_dir, cleaned))
        if full_path != self.base_dir and not full_path.startswith(self.base_dir + os.sep):
            raise StorageError(f"Key escapes storage root: {key}")
        return full_path

    def _media_url(self, token: str) -> str:
        base = (self.public_base_url or "").rstrip("/")
        return f"{base}{settings.API_V1_STR}/chat/media?{urlencode({'token': token})}"

    def save_bytes(self, key: str, data: bytes, content_type: str | None = None) -> None:
        full_path = self._full_path(key)
        try:
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            with open(full_path, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise StorageError(f"Local write failed: {exc}") from exc

    def read_bytes(self, key: str) -> bytes:
        full_path = self._full_path(key)
        try:
            with open(full_path, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise StorageError(f"Local read failed: {exc}") from exc

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._full_path(key))

    def delete_prefix(self, prefix: str) -> int:
        search_root = self._full_path(prefix.rsplit("/", 1)[0]) if "/" in prefix else self.base_dir
        if not os.path.isdir(search_root):
            return 0
        deleted = 0
        try:
            for root, _dirs, files in os.walk(search_root):
                for name in files:
                    full_path = os.path.join(root, name)
                    key = os.path.relpath(full_path, self.base_dir).replace(os.sep, "/")
                    if key.startswith(prefix):
                        os.remove(full_path)
                        deleted += 1
            if prefix.endswith("/"):
                prefix_dir = self._full_path(prefix)
                if os.path.isdir(prefix_dir):
                    shutil.rmtree(prefix_dir)
        except OSError as exc:
            raise StorageError(f"Local delete failed for prefix {prefix}: {exc}") from exc
        return deleted

    def signed_get_url(self, key: str, ttl_seconds: int) -> str | None:
        return self._media_url(create_media_token(key, "get", ttl_seconds))

    def signed_put_url(self, key: str, content_type: str, ttl_seconds: int) -> SignedUpload:
        token = create_media_token(key, "put", ttl_seconds, content_type=content_type)
        return SignedUpload(url=self._media_url(token), headers={"Content-Type": content_type})


class S3CompatibleStorage(StorageBackend):
    def __init__(
        self,
        bucket: str,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str | None = None,
        endpoint_url: str | None = None,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            endpoint_url=endpoint_url or None,
        )

    def save_bytes(self, key: str, data: bytes, content_type: str | None = None) -> None:
        params: dict[str, Any] = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        try:
            self.client.put_object(**params)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"S3 upload failed: {exc}") from exc

    def read_bytes(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"S3 download failed: {exc}") from exc

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            batch: list[dict[str, str]] = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents") or []:
                    batch.append({"Key": obj["Key"]})
                    if len(batch) == S3_DELETE_BATCH_SIZE:
                        deleted += self._delete_batch(batch)
                        batch = []
            if batch:
                deleted += self._delete_batch(batch)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"S3 delete failed for prefix {prefix}: {exc}") from exc
        return deleted

    def _delete_batch(self, batch: list[dict[str, str]]) -> int:
        response = self.client.delete_objects(Bucket=self.bucket, Delete={"Objects": batch, "Quiet": True})
        errors = response.get("Errors") or []
        if errors:
            first = errors[0]
            raise StorageError(f"S3 delete failed for {len(errors)} objects (first: {first.get('Key')}: {first.get('Message')})")
        return len(batch)

    def signed_get_url(self, key: str, ttl_seconds: int) -> str | None:
        try:
            return self.client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError):
            logger.warning("Could not presign download for %s", key)
            return None

    def signed_put_url(self, key: str, content_type: str, ttl_seconds: int) -> SignedUpload:
        try:
            url = self.client.generate_presigned_url(
                ClientMethod="put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError):
            logger.warning("Could not presign upload for %s", key)
            return SignedUpload(url=None)
        return SignedUpload(url=url, headers={"Content-Type": content_type})


class ChatStorageService:
    """Chat-scoped guard over a storage backend.

    Every key handed to the backend is checked for traversal first. Keys for a
    thread live under ``chats/{thread_id}/``.
    """

    def __init__(self, backend: StorageBackend, allowed_image_mime: list[str] | None = None):
        self.backend = backend
        self.allowed_image_mime = (
            allowed_image_mime if allowed_image_mime is not None else settings.chat_allowed_image_mime
        )

    @staticmethod
    def is_traversal(path: str) -> bool:
        return ".." in path or path.startswith("/") or path.startswith("\\")

    def sign_get_url(self, key: str, ttl_seconds: int) -> str | None:
        if self.is_traversal(key):
            return None
        return self.backend.signed_get_url(key, ttl_seconds)

    def sign_put_url(self, key: str, content_type: str, ttl_seconds: int) -> SignedUpload:
        if self.is_traversal(key):
            return SignedUpload(url=None)
        if content_type not in self.allowed_image_mime:
            return SignedUpload(url=None)
        return self.backend.signed_put_url(key, content_type, ttl_seconds)

    def delete_prefix(self, prefix: str) -> None:
        if self.is_traversal(prefix):
            logger.warning("chat cleanup rejected suspicious prefix", extra={"prefix": prefix})
            return
        count = self.backend.delete_prefix(prefix)
        logger.info("chat cleanup deleted objects", extra={"prefix": prefix, "count": count})

    def validate_chat_path(self, thread_id: int, key: str) -> bool:
        return key.startswith(chat_prefix(thread_id)) and not self.is_traversal(key)


def build_storage_backend() -> StorageBackend:
    if settings.STORAGE_BACKEND.lower() == "s3":
        if not settings.S3_BUCKET:
            raise RuntimeError("S3_BUCKET must be set when STORAGE_BACKEND=s3")
        return S3CompatibleStorage(
            bucket=settings.S3_BUCKET,
            access_key=settings.S3_ACCESS_KEY,
            secret_key=settings.S3_SECRET_KEY,
            region=settings.S3_REGION,
            endpoint_url=settings.S3_ENDPOINT_URL,
        )
    return LocalDiskStorage()


@lru_cache
def get_chat_storage() -> ChatStorageService:
    return ChatStorageService(build_storage_backend())
