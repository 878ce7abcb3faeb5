from unittest.mock import AsyncMock

import pytest

from keybalance import AiohttpUpstream, AuthConfig, KeyState, UpstreamError


class FakeResponse:
    def __init__(self, status=200, body=None):
        self.status = status
        self.headers = {}
        self.closed = False
        self._body = body if body is not None else {}

    async def json(self, content_type=None):
        return self._body

    async def text(self):
        return str(self._body)

    async def release(self):
        self.closed = True


@pytest.mark.asyncio
async def test_aiohttp_header_injection():
    session = AsyncMock()
    resp = FakeResponse(200, {"id": "chatcmpl-1"})
    session.request.return_value = resp
    upstream = AiohttpUpstream("https://api.example.com/v1", AuthConfig(scheme="Token"), session)
    result = await upstream(KeyState(id=1, secret="T"), {"messages": []})
    args, kwargs = session.request.call_args
    assert args == ("POST", "https://api.example.com/v1/chat/completions")
    assert kwargs["headers"]["Authorization"] == "Token T"
    assert kwargs["json"] == {"messages": []}
    assert result.data == {"id": "chatcmpl-1"}
    assert resp.closed


@pytest.mark.asyncio
async def test_aiohttp_query_injection():
    session = AsyncMock()
    session.request.return_value = FakeResponse(200)
    upstream = AiohttpUpstream(
        "https://api.example.com", AuthConfig(in_="query", query_param="api_key"), session
    )
    await upstream(KeyState(id=1, secret="T"), {})
    _, kwargs = session.request.call_args
    assert kwargs["params"]["api_key"] == "T"


@pytest.mark.asyncio
async def test_aiohttp_error_status():
    session = AsyncMock()
    session.request.return_value = FakeResponse(503, {"error": "overloaded"})
    upstream = AiohttpUpstream("https://api.example.com", session=session)
    with pytest.raises(UpstreamError) as ei:
        await upstream(KeyState(id=1, secret="T"), {})
    assert ei.value.status == 503
    assert ei.value.message == "overloaded"


@pytest.mark.asyncio
async def test_aiohttp_owns_session():
    async with AiohttpUpstream("https://api.example.com") as upstream:
        session = upstream.session
        assert session is not None
    assert session.closed
    assert upstream.session is None


@pytest.mark.asyncio
async def test_aiohttp_owned_session_uses_timeout():
    async with AiohttpUpstream("https://api.example.com", timeout=7.5) as upstream:
        assert upstream.session.timeout.total == 7.5
