"""Client for Ollama-compatible inference servers.

Wraps the chat, tag-listing and version endpoints of the server and turns
every transport or HTTP failure into one of the errors in
:mod:`local_llm_chat.domain.errors`.
"""

import asyncio
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import httpx
import structlog

from ..domain.errors import (
    BadRequest,
    InvalidUpstreamResponse,
    ModelNotFound,
    ProtocolError,
    UpstreamError,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from ..domain.models import GenerationSettings, ModelInfo, StreamRecord
from .channel import RecordChannel
from .ndjson import LineBuffer, parse_line

logger = structlog.get_logger()

DEFAULT_TIMEOUT = 30.0
DEFAULT_STREAM_TIMEOUT = 60.0
REPEAT_PENALTY = 1.1


def build_chat_payload(
    message: str,
    history: Sequence[Any],
    settings: GenerationSettings,
    stream: bool,
) -> Dict[str, Any]:
    """Build the /api/chat request body.

    ``history`` items may be mappings or objects such as :class:`Message`,
    anything carrying ``role`` and ``content``.
    """
    messages: List[Dict[str, str]] = []
    if settings.system_prompt:
        messages.append({"role": "system", "content": settings.system_prompt})
    for item in history:
        if isinstance(item, Mapping):
            messages.append({"role": item["role"], "content": item["content"]})
        else:
            messages.append({"role": item.role, "content": item.content})
    messages.append({"role": "user", "content": message})

    return {
        "model": settings.model,
        "messages": messages,
        "stream": stream,
        "options": {
            "temperature": float(settings.temperature),
            "num_predict": int(settings.max_tokens),
            "num_ctx": int(settings.num_ctx),
            "top_p": float(settings.top_p),
            "top_k": int(settings.top_k),
            "repeat_penalty": REPEAT_PENALTY,
        },
    }


def _upstream_error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text


def map_chat_error(error: Exception, model: str) -> UpstreamError:
    """Translate a failed chat call into the error taxonomy."""
    if isinstance(error, UpstreamError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return UpstreamTimeout(f"Inference server timed out: {error}")
    if isinstance(error, httpx.ConnectError):
        return UpstreamUnavailable(
            f"Cannot connect to the inference server: {error}"
        )
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == 404:
            return ModelNotFound(f"Model '{model}' not found, make sure it has been pulled")
        if status == 400:
            return BadRequest(
                f"Invalid request parameters: {_upstream_error_text(error.response)}"
            )
    return UpstreamError(f"Inference server error: {error}")


class ChatStream:
    """A streaming chat call.

    :meth:`open` sends the request and raises mapped errors for anything that
    fails before the first byte. Iterating afterwards yields
    :class:`StreamRecord` objects pushed by a background task through a
    :class:`RecordChannel`. :meth:`aclose` stops the task and releases the
    connection; calling it again does nothing.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        timeout: float,
        channel_size: int = 64,
    ) -> None:
        self._client = client
        self._payload = payload
        self._timeout = timeout
        self._channel: RecordChannel[StreamRecord] = RecordChannel(channel_size)
        self._response: Optional[httpx.Response] = None
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def model(self) -> str:
        return self._payload["model"]

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> "ChatStream":
        request = self._client.build_request(
            "POST", "/api/chat", json=self._payload, timeout=self._timeout
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.error("chat_stream_open_failed", model=self.model, error=str(e))
            raise map_chat_error(e, self.model) from e

        if response.is_error:
            await response.aread()
            await response.aclose()
            error = httpx.HTTPStatusError(
                f"HTTP {response.status_code}", request=request, response=response
            )
            logger.error(
                "chat_stream_open_failed",
                model=self.model,
                status_code=response.status_code,
            )
            raise map_chat_error(error, self.model)

        self._response = response
        self._task = asyncio.create_task(self._pump(response))
        logger.info("chat_stream_opened", model=self.model)
        return self

    async def _pump(self, response: httpx.Response) -> None:
        buffer = LineBuffer()
        records = 0
        try:
            async for chunk in response.aiter_bytes():
                for line in buffer.feed(chunk):
                    record = parse_line(line)
                    if record is None:
                        continue
                    records += 1
                    await self._channel.send(record)
                    if record.done:
                        logger.info("chat_stream_done", model=self.model, records=records)
                        await self._channel.close()
                        return
            tail = buffer.flush()
            if tail is not None:
                record = parse_line(tail)
                if record is not None:
                    records += 1
                    await self._channel.send(record)
            logger.info("chat_stream_ended", model=self.model, records=records)
            await self._channel.close()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("chat_stream_failed", model=self.model, records=records, error=str(e))
            await self._channel.close(map_chat_error(e, self.model))
        finally:
            await response.aclose()

    def __aiter__(self) -> AsyncIterator[StreamRecord]:
        if self._task is None:
            raise RuntimeError("ChatStream.open() must be awaited before iterating")
        return self._channel.__aiter__()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._channel.abort()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait({self._task})
        if self._response is not None:
            await self._response.aclose()
        logger.debug("chat_stream_closed", model=self.model)

    async def __aenter__(self) -> "ChatStream":
        return await self.open()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class InferenceClient:
    """Client bound to one inference server URL and API key."""

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        stream_timeout: float = DEFAULT_STREAM_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "InferenceClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def check_health(self) -> bool:
        """Return True when the server answers its version endpoint."""
        try:
            response = await self._client.get("/api/version")
            response.raise_for_status()
            version = response.json().get("version")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("inference_health_check_failed", api_url=self.api_url, error=str(e))
            return False
        logger.info("inference_health_check_ok", api_url=self.api_url, version=version)
        return True

    async def list_models(self) -> List[ModelInfo]:
        """List installed models; failures are raised, never papered over."""
        try:
            response = await self._client.get("/api/tags")
            response.raise_for_status()
            models = [
                ModelInfo(
                    name=item["name"],
                    size=item.get("size") or 0,
                    modified_at=item.get("modified_at"),
                )
                for item in response.json()["models"]
            ]
        except httpx.ConnectError as e:
            logger.error("list_models_unavailable", api_url=self.api_url, error=str(e))
            raise UpstreamUnavailable(
                "Inference server is not running, please start it", details=str(e)
            ) from e
        except httpx.TimeoutException as e:
            logger.error("list_models_timeout", api_url=self.api_url, error=str(e))
            raise UpstreamTimeout(f"Inference server timed out: {e}") from e
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.error("list_models_failed", api_url=self.api_url, error=str(e))
            raise ProtocolError(f"Failed to list models: {e}") from e

        logger.info("models_listed", api_url=self.api_url, count=len(models))
        return models

    async def complete_chat(
        self,
        message: str,
        history: Sequence[Any],
        settings: GenerationSettings,
    ) -> str:
        """Send a non-streaming chat request and return the answer text."""
        payload = build_chat_payload(message, history, settings, stream=False)
        logger.info(
            "chat_completion_requested",
            model=settings.model,
            history_length=len(history),
            message_preview=message[:50],
        )
        try:
            response = await self._client.post("/api/chat", json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            mapped = map_chat_error(e, settings.model)
            logger.error(
                "chat_completion_failed",
                model=settings.model,
                error_type=type(mapped).__name__,
                error=str(e),
            )
            raise mapped from e

        message_body = data.get("message") if isinstance(data, dict) else None
        if not isinstance(message_body, dict):
            logger.error("chat_completion_invalid", model=settings.model, body=str(data)[:200])
            raise InvalidUpstreamResponse(f"Invalid response format: {data!r}")

        content = message_body.get("content") or ""
        logger.info("chat_completion_received", model=settings.model, response_length=len(content))
        return content

    def stream_chat(
        self,
        message: str,
        history: Sequence[Any],
        settings: GenerationSettings,
    ) -> ChatStream:
        """Prepare a streaming chat call; await ``open()`` or use ``async with``."""
        payload = build_chat_payload(message, history, settings, stream=True)
        logger.info(
            "chat_stream_requested",
            model=settings.model,
            history_length=len(history),
            message_preview=message[:50],
        )
        return ChatStream(self._client, payload, timeout=self.stream_timeout)
