import httpx
import pytest

from keybalance import AuthConfig, HttpxUpstream, KeyState, UpstreamError


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_httpx_injection_header():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"id": "chatcmpl-1"})

    async with _client(handler) as client:
        upstream = HttpxUpstream("https://api.example.com/v1/", client=client)
        result = await upstream(KeyState(id=1, secret="T"), {"model": "m", "messages": []})
    assert seen["auth"] == "Bearer T"
    assert seen["url"] == "https://api.example.com/v1/chat/completions"
    assert result.status == 200
    assert result.data == {"id": "chatcmpl-1"}
    assert result.latency_ms >= 0


@pytest.mark.asyncio
async def test_httpx_injection_query():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={})

    async with _client(handler) as client:
        upstream = HttpxUpstream(
            "https://api.example.com", AuthConfig(in_="query", query_param="key"), client=client
        )
        await upstream(KeyState(id=1, secret="T"), {})
    assert seen["params"]["key"] == "T"
    assert seen["auth"] is None


@pytest.mark.asyncio
async def test_httpx_error_status_raises_upstream_error():
    def handler(request):
        return httpx.Response(401, json={"error": {"message": "invalid api key"}})

    async with _client(handler) as client:
        upstream = HttpxUpstream("https://api.example.com", client=client)
        with pytest.raises(UpstreamError) as ei:
            await upstream(KeyState(id=1, secret="T"), {})
    assert ei.value.status == 401
    assert "invalid api key" in str(ei.value)


@pytest.mark.asyncio
async def test_httpx_transport_error_has_no_status():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        upstream = HttpxUpstream("https://api.example.com", client=client)
        with pytest.raises(UpstreamError) as ei:
            await upstream(KeyState(id=1, secret="T"), {})
    assert ei.value.status is None


@pytest.mark.asyncio
async def test_httpx_owns_and_closes_internal_client():
    upstream = HttpxUpstream("https://api.example.com", timeout=5.0)
    client = upstream._client()
    assert upstream._client() is client
    await upstream.aclose()
    assert client.is_closed
    assert upstream._internal_client is None
