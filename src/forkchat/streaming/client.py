from __future__ import annotations

import asyncio
from contextlib import aclosing, suppress
from dataclasses import dataclass
from typing import AsyncIterator

import httpx
from loguru import logger
from tenacity import AsyncRetrying

from forkchat.errors import ProtocolError, StreamCancelled, UpstreamError, UpstreamTimeout
from forkchat.streaming.frames import check_cancelled, iter_frames
from forkchat.streaming.normalizer import NormalizedDelta, normalize_frames
from forkchat.streaming.retry import default_retry_kwargs


@dataclass(frozen=True)
class ProviderConfig:
    host: str
    api_key: str
    model: str
    temperature: float = 1.0
    idle_timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 10.0
    retry_attempts: int = 5
    retry_wait_min_seconds: float = 10.0
    retry_wait_max_seconds: float = 320.0

    @property
    def completions_url(self) -> str:
        return f"{self.host.rstrip('/')}/v1/chat/completions"


class RateLimited(UpstreamError):
    """HTTP 429 before streaming began; retried, then surfaced as an UpstreamError."""


class CompletionClient:
    """Streams chat completions from an OpenAI-compatible endpoint."""

    def __init__(self, config: ProviderConfig, *, http_client: httpx.AsyncClient | None = None):
        self._config = config
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                config.idle_timeout_seconds,
                connect=config.connect_timeout_seconds,
            )
        )

    @property
    def config(self) -> ProviderConfig:
        return self._config

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> CompletionClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def build_request_body(self, messages: list[dict]) -> dict:
        return {
            "model": self._config.model,
            "messages": messages,
            "stream": True,
            "temperature": self._config.temperature,
        }

    async def stream(
        self,
        messages: list[dict],
        *,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[NormalizedDelta]:
        """Yield normalized deltas for one completion.

        Raises UpstreamError before the first delta when the endpoint answers
        with a non-200 status. The HTTP response is closed when the generator
        finishes, fails, or is closed early by the consumer.
        """
        check_cancelled(cancel)
        response = await self._open(messages)
        try:
            frames = iter_frames(self._chunks(response, cancel), cancel=cancel)
            async with aclosing(normalize_frames(frames)) as deltas:
                async for delta in deltas:
                    yield delta
        finally:
            await response.aclose()
        logger.debug(f"Stream closed: model={self._config.model}")

    async def _open(self, messages: list[dict]) -> httpx.Response:
        config = self._config
        retrying = AsyncRetrying(
            **default_retry_kwargs(
                (httpx.ConnectError, httpx.ConnectTimeout, httpx.RemoteProtocolError, RateLimited),
                attempts=config.retry_attempts,
                wait_min=config.retry_wait_min_seconds,
                wait_max=config.retry_wait_max_seconds,
            )
        )
        async for attempt in retrying:
            with attempt:
                return await self._send(messages)
        raise AssertionError("unreachable")

    async def _send(self, messages: list[dict]) -> httpx.Response:
        config = self._config
        request = self._client.build_request(
            "POST",
            config.completions_url,
            json=self.build_request_body(messages),
            headers={
                "Content-Type": "application/json",
                "Accept": "text/event-stream",
                "Authorization": f"Bearer {config.api_key}",
            },
        )
        logger.debug(f"API request: model={config.model}, messages={len(messages)}, url={config.completions_url}")
        try:
            response = await self._client.send(request, stream=True)
        except httpx.ReadTimeout as ex:
            raise UpstreamTimeout(f"No response from upstream within {config.idle_timeout_seconds}s") from ex

        if response.status_code == 200:
            return response

        try:
            body = (await response.aread()).decode("utf-8", errors="replace")
        finally:
            await response.aclose()
        logger.warning(f"Upstream error: status={response.status_code}, body={body[:200]}")
        if response.status_code == 429:
            raise RateLimited(response.status_code, body)
        raise UpstreamError(response.status_code, body)

    async def _chunks(self, response: httpx.Response, cancel: asyncio.Event | None) -> AsyncIterator[bytes]:
        idle = self._config.idle_timeout_seconds
        async with aclosing(response.aiter_bytes()) as source:
            while True:
                check_cancelled(cancel)
                try:
                    async with asyncio.timeout(idle):
                        chunk = await _next_chunk(source, cancel)
                except StopAsyncIteration:
                    return
                except (TimeoutError, httpx.ReadTimeout) as ex:
                    raise UpstreamTimeout(f"No stream data within {idle}s") from ex
                except httpx.TransportError as ex:
                    raise ProtocolError(f"Connection dropped mid-stream: {type(ex).__name__}") from ex
                yield chunk


async def _next_chunk(source: AsyncIterator[bytes], cancel: asyncio.Event | None) -> bytes:
    """Await the next chunk, giving up as soon as ``cancel`` is set."""
    if cancel is None:
        return await anext(source)

    async def read() -> bytes:
        return await anext(source)

    reader = asyncio.create_task(read())
    waiter = asyncio.create_task(cancel.wait())
    try:
        await asyncio.wait((reader, waiter), return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not reader.done():
            reader.cancel()
            # The source must be idle again before it can be closed.
            with suppress(asyncio.CancelledError, StopAsyncIteration):
                await reader
    if reader.cancelled():
        raise StreamCancelled("Stream cancelled by caller")
    return reader.result()
