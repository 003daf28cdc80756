import logging
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest

from app.core.exceptions import StorageError
from app.services.storage_service import (
    ChatStorageService,
    S3CompatibleStorage,
    StorageBackend,
    chat_prefix,
    create_media_token,
    decode_media_token,
)


def _token_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["token"][0]


def test_chat_prefix_layout():
    assert chat_prefix(42) == "chats/42/"


@pytest.mark.parametrize(
    "path, expected",
    [
        ("chats/1/a.jpg", False),
        ("chats/1/../2/a.jpg", True),
        ("/etc/passwd", True),
        ("\\windows\\system32", True),
        ("..", True),
    ],
)
def test_traversal_detection(path, expected):
    assert ChatStorageService.is_traversal(path) is expected


def test_validate_chat_path(chat_storage):
    assert chat_storage.validate_chat_path(3, "chats/3/photo.jpg") is True
    assert chat_storage.validate_chat_path(3, "chats/30/photo.jpg") is False
    assert chat_storage.validate_chat_path(3, "chats/4/photo.jpg") is False
    assert chat_storage.validate_chat_path(3, "chats/3/../4/photo.jpg") is False


def test_delete_prefix_rejects_traversal(caplog):
    backend = MagicMock(spec=StorageBackend)
    storage = ChatStorageService(backend, allowed_image_mime=["image/jpeg"])

    caplog.set_level(logging.WARNING, logger="app.services.storage_service")
    storage.delete_prefix("chats/../")

    backend.delete_prefix.assert_not_called()
    assert any(r.getMessage() == "chat cleanup rejected suspicious prefix" for r in caplog.records)


def test_local_delete_prefix_only_touches_that_thread(chat_storage, local_storage):
    local_storage.save_bytes("chats/1/a.jpg", b"a")
    local_storage.save_bytes("chats/1/nested/b.jpg", b"b")
    local_storage.save_bytes("chats/10/c.jpg", b"c")
    local_storage.save_bytes("avatars/1.png", b"d")

    assert local_storage.delete_prefix(chat_prefix(1)) == 2

    assert not local_storage.exists("chats/1/a.jpg")
    assert not local_storage.exists("chats/1/nested/b.jpg")
    assert local_storage.exists("chats/10/c.jpg")
    assert local_storage.exists("avatars/1.png")
    # Nothing left to delete the second time.
    assert local_storage.delete_prefix(chat_prefix(1)) == 0
    chat_storage.delete_prefix(chat_prefix(1))


def test_local_storage_refuses_keys_outside_root(local_storage):
    with pytest.raises(StorageError):
        local_storage.save_bytes("../escape.txt", b"x")


def test_signed_urls_carry_media_tokens(chat_storage):
    get_url = chat_storage.sign_get_url("chats/1/a.jpg", 60)
    assert get_url.startswith("http://test/api/v1/chat/media?token=")
    payload = decode_media_token(_token_from(get_url), "get")
    assert payload["sub"] == "chats/1/a.jpg"
    # A download token cannot be used to upload.
    assert decode_media_token(_token_from(get_url), "put") is None

    signed = chat_storage.sign_put_url("chats/1/b.png", "image/png", 60)
    assert signed.headers == {"Content-Type": "image/png"}
    payload = decode_media_token(_token_from(signed.url), "put")
    assert payload["ct"] == "image/png"


def test_sign_put_rejects_disallowed_mime_and_traversal(chat_storage):
    assert chat_storage.sign_put_url("chats/1/a.gif", "image/gif", 60).url is None
    assert chat_storage.sign_put_url("chats/1/../2/a.png", "image/png", 60).url is None
    assert chat_storage.sign_get_url("/etc/passwd", 60) is None


def test_expired_or_tampered_media_tokens_are_rejected():
    assert decode_media_token(create_media_token("chats/1/a.jpg", "get", -10), "get") is None
    assert decode_media_token("not-a-token", "get") is None


def test_s3_delete_prefix_batches_listed_keys():
    client = MagicMock()
    paginator = MagicMock()
    paginator.paginate.return_value = [
        {"Contents": [{"Key": "chats/5/a.jpg"}, {"Key": "chats/5/b.jpg"}]},
        {"Contents": [{"Key": "chats/5/c.jpg"}]},
        {},
    ]
    client.get_paginator.return_value = paginator
    client.delete_objects.return_value = {}
    storage = S3CompatibleStorage(bucket="media", client=client)

    assert storage.delete_prefix("chats/5/") == 3

    paginator.paginate.assert_called_once_with(Bucket="media", Prefix="chats/5/")
    client.delete_objects.assert_called_once_with(
        Bucket="media",
        Delete={
            "Objects": [{"Key": "chats/5/a.jpg"}, {"Key": "chats/5/b.jpg"}, {"Key": "chats/5/c.jpg"}],
            "Quiet": True,
        },
    )


def test_s3_delete_errors_raise_storage_error():
    client = MagicMock()
    paginator = MagicMock()
    paginator.paginate.return_value = [{"Contents": [{"Key": "chats/5/a.jpg"}]}]
    client.get_paginator.return_value = paginator
    client.delete_objects.return_value = {"Errors": [{"Key": "chats/5/a.jpg", "Message": "AccessDenied"}]}
    storage = S3CompatibleStorage(bucket="media", client=client)

    with pytest.raises(StorageError):
        storage.delete_prefix("chats/5/")


def test_s3_presigned_upload_includes_content_type():
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://s3.example/upload"
    storage = S3CompatibleStorage(bucket="media", client=client)

    signed = storage.signed_put_url("chats/5/a.png", "image/png", 300)

    assert signed.url == "https://s3.example/upload"
    client.generate_presigned_url.assert_called_once_with(
        ClientMethod="put_object",
        Params={"Bucket": "media", "Key": "chats/5/a.png", "ContentType": "image/png"},
        ExpiresIn=300,
    )
