"""Abstract base for upstream wire families.

A wire adapter owns one request/response convention. Subclasses supply the
shape (``build_request``, ``parse_response``, ``parse_stream_chunk``); the
base class owns the httpx transport, SSE line handling and error mapping.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from dataclasses import dataclass

import httpx
from fastapi import HTTPException

from src.config.settings import get_settings
from src.keys.pool import ProviderConfig
from src.proxy.errors import UpstreamError, parse_error_body

WIRE_OPENAI = "openai"
WIRE_MESSAGES = "messages"

DONE_SENTINEL = "[DONE]"


@dataclass
class ProviderResponse:
    status_code: int
    body: dict
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass
class StreamChunk:
    data: str          # Raw SSE payload (JSON string or "[DONE]")
    is_done: bool      # True for terminal signal
    text_delta: str    # Extracted text for accumulation


def done_chunk() -> StreamChunk:
    return StreamChunk(data=DONE_SENTINEL, is_done=True, text_delta="")


def extract_usage(body: dict) -> tuple[int, int]:
    """(prompt_tokens, completion_tokens) from an OpenAI-shaped body, zeros if absent."""
    usage = body.get("usage") or {}
    try:
        return int(usage.get("prompt_tokens") or 0), int(usage.get("completion_tokens") or 0)
    except (TypeError, ValueError):
        return 0, 0


class WireAdapter(ABC):
    """Base class for wire family implementations."""

    def __init__(self):
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            settings = get_settings()
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.upstream_timeout, connect=10.0)
            )
        return self._client

    @abstractmethod
    def endpoint(self, config: ProviderConfig) -> str:
        ...

    @abstractmethod
    def headers(self, api_key: str) -> dict:
        ...

    @abstractmethod
    def build_request(self, messages: list[dict], body: dict, config: ProviderConfig) -> dict:
        """Build the upstream request body from assembled messages + caller parameters.

        Raises UserInputError for requests that must be rejected before dispatch.
        """
        ...

    @abstractmethod
    def parse_response(self, data: dict, config: ProviderConfig) -> dict:
        """Translate a non-streaming upstream body into the OpenAI response shape."""
        ...

    @abstractmethod
    def parse_stream_chunk(self, payload: str, config: ProviderConfig) -> StreamChunk | None:
        """Translate one upstream SSE ``data:`` payload; None drops the event."""
        ...

    @abstractmethod
    def health_check_body(self, config: ProviderConfig) -> dict:
        ...

    async def chat_completion(
        self, messages: list[dict], body: dict, api_key: str, config: ProviderConfig
    ) -> ProviderResponse:
        """Send a non-streaming request. Non-2xx upstream answers raise UpstreamError."""
        request_body = self.build_request(messages, body, config)

        client = await self._get_client()
        try:
            response = await client.post(
                self.endpoint(config), json=request_body, headers=self.headers(api_key)
            )
        except httpx.ConnectError:
            raise HTTPException(status_code=502, detail="Cannot reach upstream provider")
        except httpx.TimeoutException:
            raise HTTPException(status_code=504, detail="Upstream provider timed out")
        except httpx.HTTPError as e:
            raise HTTPException(status_code=502, detail=f"Upstream error: {e}")

        if response.status_code >= 400:
            raise UpstreamError(
                response.status_code, parse_error_body(response.text, response.status_code)
            )

        try:
            data = response.json()
        except ValueError:
            raise HTTPException(status_code=502, detail="Malformed response from upstream provider")

        translated = self.parse_response(data, config)
        prompt_tokens, completion_tokens = extract_usage(translated)
        return ProviderResponse(
            status_code=response.status_code,
            body=translated,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )

    async def chat_completion_stream(
        self, messages: list[dict], body: dict, api_key: str, config: ProviderConfig
    ) -> AsyncGenerator[StreamChunk, None]:
        """Stream a response as OpenAI-shaped chunks, always ending with [DONE].

        An upstream error status raises UpstreamError before anything is yielded.
        """
        request_body = self.build_request(messages, {**body, "stream": True}, config)

        client = await self._get_client()
        try:
            async with client.stream(
                "POST", self.endpoint(config), json=request_body, headers=self.headers(api_key)
            ) as response:
                if response.status_code >= 400:
                    body_bytes = await response.aread()
                    raise UpstreamError(
                        response.status_code,
                        parse_error_body(body_bytes.decode(errors="replace"), response.status_code),
                    )

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line or not line.startswith("data:"):
                        continue

                    payload = line[len("data:"):].strip()
                    if payload == DONE_SENTINEL:
                        yield done_chunk()
                        return

                    chunk = self.parse_stream_chunk(payload, config)
                    if chunk is not None:
                        yield chunk

        except httpx.ConnectError:
            raise HTTPException(status_code=502, detail="Cannot reach upstream provider")
        except httpx.TimeoutException:
            raise HTTPException(status_code=504, detail="Upstream provider timed out")
        except httpx.HTTPError as e:
            raise HTTPException(status_code=502, detail=f"Upstream error: {e}")

        # Upstream closed without its own sentinel
        yield done_chunk()

    async def probe(self, config: ProviderConfig, api_key: str, timeout: float) -> int:
        """Send the minimal health-check request and return the HTTP status.

        Transport failures propagate as httpx exceptions.
        """
        client = await self._get_client()
        response = await client.post(
            self.endpoint(config),
            json=self.health_check_body(config),
            headers=self.headers(api_key),
            timeout=timeout,
        )
        return response.status_code

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
