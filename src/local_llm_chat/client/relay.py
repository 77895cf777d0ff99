"""HTTP client for the relay API, used by the chat session."""

import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import structlog

from ..domain.models import GenerationSettings, Message, ModelInfo
from .reassembler import StreamDelta, StreamReassembler, StreamState

logger = structlog.get_logger()

DeltaCallback = Callable[[StreamDelta], None]


class RelayError(Exception):
    """The relay answered with an error status or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def _history_payload(history: Sequence[Message]) -> List[Dict[str, str]]:
    return [{"role": m.role, "content": m.content} for m in history]


def _error_from_response(response: httpx.Response) -> RelayError:
    try:
        body = response.json()
    except ValueError:
        body = response.text
    return RelayError(
        f"Relay returned HTTP {response.status_code}",
        status_code=response.status_code,
        body=body,
    )


class RelayClient:
    """Talks to the relay endpoint.

    ``timeout`` bounds whole-response calls; ``stream_timeout`` bounds each
    read while streaming.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        stream_timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url
        self.stream_timeout = stream_timeout
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "RelayClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def list_models(self, settings: GenerationSettings) -> List[ModelInfo]:
        try:
            response = await self._client.get(
                "/api/models", params={"apiUrl": settings.api_url, "apiKey": settings.api_key}
            )
        except httpx.HTTPError as e:
            raise RelayError(f"Relay unreachable: {e}") from e
        if response.is_error:
            raise _error_from_response(response)
        return [ModelInfo.model_validate(item) for item in response.json()["models"]]

    def _body(
        self, message: str, history: Sequence[Message], settings: GenerationSettings
    ) -> Dict[str, Any]:
        return {
            "message": message,
            "settings": settings.model_dump(by_alias=True),
            "history": _history_payload(history),
        }

    async def complete(
        self, message: str, history: Sequence[Message], settings: GenerationSettings
    ) -> str:
        """Whole-response chat."""
        try:
            response = await self._client.post(
                "/api/chat", json=self._body(message, history, settings)
            )
        except httpx.HTTPError as e:
            raise RelayError(f"Relay unreachable: {e}") from e
        if response.is_error:
            raise _error_from_response(response)
        try:
            return response.json()["response"]
        except (ValueError, KeyError, TypeError) as e:
            raise RelayError(f"Malformed relay response: {e}", response.status_code) from e

    async def stream(
        self,
        message: str,
        history: Sequence[Message],
        settings: GenerationSettings,
        reassembler: StreamReassembler,
        on_delta: Optional[DeltaCallback] = None,
    ) -> Message:
        """Stream a reply through ``reassembler`` and return the finished message.

        Any failure before the terminal record yields the reassembler's
        synthetic error message. Cancelling the awaiting task cancels the
        reassembler and closes the connection.
        """
        reassembler.start()
        try:
            async with self._client.stream(
                "POST",
                "/api/chat/stream",
                json=self._body(message, history, settings),
                timeout=httpx.Timeout(self._client.timeout.connect, read=self.stream_timeout),
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise _error_from_response(response)
                async for chunk in response.aiter_bytes():
                    for delta in reassembler.feed(chunk):
                        if on_delta is not None:
                            on_delta(delta)
                    if reassembler.state is StreamState.COMPLETED:
                        break
        except asyncio.CancelledError:
            reassembler.cancel()
            raise
        except (httpx.HTTPError, RelayError) as e:
            return reassembler.fail(e)
        return reassembler.finish()
