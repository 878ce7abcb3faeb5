import asyncio
import contextlib
import logging
import time
from typing import Any, Union

from .errors import UpstreamError
from .state import KeyState
from .types import AuthConfig, UpstreamResult

logger = logging.getLogger("keybalance")

CHAT_COMPLETIONS_PATH = "/chat/completions"


def _inject_key(auth: AuthConfig, key: KeyState, headers: dict, params: dict) -> None:
    if auth.in_ == "query":
        params[auth.query_param] = key.secret
    else:
        headers[auth.header] = f"{auth.scheme} {key.secret}".strip()


def _error_text(body: Any) -> str:
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        if err:
            return str(err)
    return str(body)[:500]


# ---------- httpx (async) ----------
class HttpxUpstream:
    """POST chat-completion payloads to an OpenAI-compatible upstream with httpx.

    Usable directly as the invoker of a RetryCoordinator:
        async with HttpxUpstream("https://api.example.com/v1") as upstream:
            result = await upstream(key, payload)
    """

    def __init__(
        self,
        base_url: str,
        auth_config: Union[AuthConfig, None] = None,
        client=None,
        timeout: Union[float, None] = None,
        path: str = CHAT_COMPLETIONS_PATH,
    ):
        self.url = base_url.rstrip("/") + path
        self.auth_config = auth_config or AuthConfig()
        self.client = client
        self.timeout = timeout
        self._internal_client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    async def aclose(self):
        if self._internal_client is not None:
            with contextlib.suppress(Exception):
                await self._internal_client.aclose()
            self._internal_client = None

    def _client(self):
        import httpx  # noqa: PLC0415

        client = self.client or self._internal_client
        if client is None:
            self._internal_client = client = httpx.AsyncClient(timeout=self.timeout)
        return client

    async def __call__(self, key: KeyState, payload: Any) -> UpstreamResult:
        import httpx  # noqa: PLC0415

        headers: dict[str, str] = {"Content-Type": "application/json"}
        params: dict[str, str] = {}
        _inject_key(self.auth_config, key, headers, params)
        started = time.perf_counter()
        try:
            resp = await self._client().post(self.url, json=payload, headers=headers, params=params)
        except (httpx.TransportError, httpx.TimeoutException) as e:
            raise UpstreamError(None, f"transport error: {e}") from e
        latency_ms = (time.perf_counter() - started) * 1000
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        if resp.status_code >= 400:  # noqa: PLR2004, http status code can be constant
            raise UpstreamError(resp.status_code, _error_text(body))
        logger.debug(f"upstream ok key={key.id} status={resp.status_code} {latency_ms:.0f}ms")
        return UpstreamResult(status=resp.status_code, data=body, latency_ms=latency_ms)


# ---------- aiohttp (async) ----------
class AiohttpUpstream:
    """Same contract as HttpxUpstream over an aiohttp.ClientSession."""

    def __init__(
        self,
        base_url: str,
        auth_config: Union[AuthConfig, None] = None,
        session=None,
        path: str = CHAT_COMPLETIONS_PATH,
        timeout: Union[float, None] = None,
    ):
        self.url = base_url.rstrip("/") + path
        self.auth_config = auth_config or AuthConfig()
        self.session = session
        self.timeout = timeout
        self._own_session = False

    async def __aenter__(self):
        if self.session is None:
            import aiohttp  # noqa: PLC0415

            if self.timeout is not None:
                self.session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                )
            else:
                self.session = aiohttp.ClientSession()
            self._own_session = True
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
        return False

    async def aclose(self):
        if self._own_session and self.session is not None:
            await self.session.close()
            self.session = None
            self._own_session = False

    async def __call__(self, key: KeyState, payload: Any) -> UpstreamResult:
        import aiohttp  # noqa: PLC0415

        if self.session is None:
            await self.__aenter__()
        headers: dict[str, str] = {"Content-Type": "application/json"}
        params: dict[str, str] = {}
        _inject_key(self.auth_config, key, headers, params)
        started = time.perf_counter()
        try:
            resp = await self.session.request(
                "POST", self.url, json=payload, headers=headers, params=params
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(None, f"transport error: {e}") from e
        try:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = await resp.text()
        finally:
            if not resp.closed:
                await resp.release()
        latency_ms = (time.perf_counter() - started) * 1000
        if resp.status >= 400:  # noqa: PLR2004, http status code can be constant
            raise UpstreamError(resp.status, _error_text(body))
        return UpstreamResult(status=resp.status, data=body, latency_ms=latency_ms)
