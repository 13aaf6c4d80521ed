"""Tests for HttpContentStore using httpx.MockTransport."""
import httpx
import pytest

from chatsync.adapters import HttpContentStore
from chatsync.errors import UploadError

BASE_URL = "https://storage.example.com/storage/v1"


def _store(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpContentStore(BASE_URL + "/", client=client, **kwargs), client


@pytest.mark.asyncio
async def test_upload_posts_bytes_and_returns_public_url():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["content_type"] = request.headers["content-type"]
        seen["upsert"] = request.headers["x-upsert"]
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = request.content
        return httpx.Response(200, json={"Key": "chat-images/room-1/1_me.png"})

    store, client = _store(handler, api_key="secret")
    url = await store.upload(b"\x89PNG", "image/png", "room-1/1_me.png")
    await client.aclose()

    assert seen == {
        "method": "POST",
        "url": f"{BASE_URL}/object/chat-images/room-1/1_me.png",
        "content_type": "image/png",
        "upsert": "true",
        "auth": "Bearer secret",
        "body": b"\x89PNG",
    }
    assert url == f"{BASE_URL}/object/public/chat-images/room-1/1_me.png"


@pytest.mark.asyncio
async def test_no_api_key_sends_no_authorization():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200)

    store, client = _store(handler, bucket="avatars")
    url = await store.upload(b"x", "image/jpeg", "a.jpg")
    await client.aclose()

    assert seen["auth"] is None
    assert url.endswith("/object/public/avatars/a.jpg")


@pytest.mark.asyncio
async def test_error_status_raises_upload_error():
    store, client = _store(lambda request: httpx.Response(413, json={"error": "too large"}))

    with pytest.raises(UploadError, match="413"):
        await store.upload(b"x" * 10, "image/jpeg", "big.jpg")
    await client.aclose()


@pytest.mark.asyncio
async def test_transport_error_raises_upload_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store, client = _store(handler)

    with pytest.raises(UploadError, match="connection refused"):
        await store.upload(b"x", "image/jpeg", "a.jpg")
    await client.aclose()


@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open():
    store, client = _store(lambda request: httpx.Response(200))
    await store.aclose()
    assert not client.is_closed
    await client.aclose()
