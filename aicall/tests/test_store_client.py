import hashlib
from urllib.parse import parse_qs

import httpx
import pytest

from aicall.errors import ContentStoreError, PreconditionError, TransientNetworkError
from aicall.store import ContentStoreClient
from aicall.store.server import create_app
from aicall.utils.retry import RetryPolicy

from .conftest import STORE_URL

pytestmark = pytest.mark.anyio


def _client_for(handler, sleeps, **kw) -> ContentStoreClient:
    async def _record(d):
        sleeps.append(d)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ContentStoreClient(STORE_URL, client=http, sleep=_record, **kw)


async def test_put_then_get_against_reference_store(store):
    key = await store.put("I want to transfer 10 USDT")
    assert key == hashlib.sha256(b"I want to transfer 10 USDT").hexdigest()
    assert await store.get(key) == b"I want to transfer 10 USDT"


async def test_put_sends_form_field_and_strips_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["ua"] = request.headers.get("user-agent")
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, text="  abc123\n")

    client = _client_for(handler, [])
    assert await client.put("hello") == "abc123"
    assert seen["path"] == "/v1/minio/object"
    assert seen["form"] == {"content": ["hello"]}
    assert seen["ua"].startswith("aicall-store/")


async def test_get_quotes_key():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.raw_path.decode())
        return httpx.Response(200, content=b"x")

    client = _client_for(handler, [])
    await client.get("a/b c")
    assert paths == ["/v1/minio/get/a%2Fb%20c"]


async def test_preconditions_skip_network():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, text="k")

    client = _client_for(handler, [])
    for bad in ("", None, 42):
        with pytest.raises(PreconditionError):
            await client.put(bad)  # type: ignore[arg-type]
    with pytest.raises(PreconditionError):
        await client.put(b"\xff\xfe")
    with pytest.raises(PreconditionError):
        await client.get("")
    assert calls == []

    # UTF-8 bytes are accepted
    assert await client.put("héllo".encode()) == "k"


async def test_retries_with_capped_backoff_then_succeeds():
    answers = [httpx.Response(503), httpx.Response(500), httpx.Response(200, text="key")]
    sleeps = []

    def handler(request):
        return answers.pop(0)

    client = _client_for(handler, sleeps)
    assert await client.put("x") == "key"
    assert sleeps == [1.0, 2.0]


async def test_empty_body_is_malformed_and_retried():
    answers = [httpx.Response(200, text="   "), httpx.Response(200, text="key")]

    client = _client_for(lambda r: answers.pop(0), [])
    assert await client.put("x") == "key"


async def test_exhaustion_raises_content_store_error():
    calls = []
    sleeps = []

    def handler(request):
        calls.append(1)
        raise httpx.ConnectError("refused", request=request)

    client = _client_for(handler, sleeps, policy=RetryPolicy(attempts=4, base=1.0, max_delay=5.0))
    with pytest.raises(ContentStoreError) as ei:
        await client.get("deadbeef")

    err = ei.value
    assert isinstance(err, TransientNetworkError)
    assert err.retryable
    assert err.details["op"] == "get"
    assert err.details["attempts"] == 4
    assert len(calls) == 4
    assert sleeps == [1.0, 2.0, 4.0]


async def test_missing_object_fails_after_retries(store, sleeps):
    with pytest.raises(ContentStoreError):
        await store.get("0" * 64)
    assert sleeps == [1.0, 2.0]


async def test_ping_never_raises():
    ok = _client_for(lambda r: httpx.Response(200, json={"ok": True}), [])
    assert await ok.ping() is True

    def down(request):
        raise httpx.ReadTimeout("slow", request=request)

    assert await _client_for(down, []).ping() is False
    assert await _client_for(lambda r: httpx.Response(502), []).ping() is False


async def test_custom_base_path():
    app = create_app(base_path="/blobs")
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app)) as http:
        client = ContentStoreClient(STORE_URL, base_path="blobs/", client=http)
        key = await client.put("p")
        assert client.base_url == STORE_URL + "/blobs"
        assert await client.get(key) == b"p"
        assert await client.ping()
