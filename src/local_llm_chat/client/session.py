"""Chat session: the client-side orchestrator between user input, the relay
and the conversation store."""

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog

from ..config import Config
from ..domain.errors import NotFound, StreamInProgress
from ..domain.models import (
    ASSISTANT_ROLE,
    USER_ROLE,
    Attachment,
    Conversation,
    GenerationSettings,
    Message,
    ModelInfo,
    Preferences,
    merge_settings,
)
from ..repositories.base import ConversationRepository, Storage
from ..repositories.memory import InMemoryConversationStore
from ..repositories.storage import JsonFileStorage
from .reassembler import ERROR_REPLY, StreamReassembler
from .relay import DeltaCallback, RelayClient, RelayError

logger = structlog.get_logger()


def compose_message(text: str, attachments: Optional[Sequence[Attachment]] = None) -> str:
    """Fold attachment metadata, and text content where present, into the prompt."""
    parts = [text.strip()] if text.strip() else []
    for attachment in attachments or []:
        header = f"[Attachment: {attachment.name} ({attachment.mime_type}, {attachment.size} bytes)]"
        if attachment.content:
            header += "\n" + attachment.content
        parts.append(header)
    return "\n\n".join(parts)


class ChatSession:
    """Sends user messages and commits replies to the store.

    At most one reply is in flight per conversation; a second send into the
    same conversation raises :class:`StreamInProgress`. Cancelled replies are
    never written to the store.
    """

    def __init__(
        self,
        store: ConversationRepository,
        relay: RelayClient,
        settings: Optional[Mapping[str, Any]] = None,
        defaults: Optional[GenerationSettings] = None,
        storage: Optional[Storage] = None,
    ) -> None:
        self.store = store
        self.relay = relay
        self.settings = merge_settings(settings, base=defaults)
        self.available_models: List[ModelInfo] = []
        self._storage = storage
        self.preferences = storage.load_preferences() if storage is not None else Preferences()
        self._in_flight: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(cls, config: Config, relay_url: Optional[str] = None) -> "ChatSession":
        """Build a session saving to ``config.data_dir`` and talking to the relay."""
        storage = JsonFileStorage(config.data_dir)
        store = InMemoryConversationStore(storage=storage, max_message_pairs=config.max_message_pairs)
        relay = RelayClient(
            relay_url or f"http://{config.host}:{config.port}",
            timeout=config.timeout,
            stream_timeout=config.stream_timeout,
        )
        defaults = GenerationSettings(api_url=config.api_url, api_key=config.api_key)
        return cls(store, relay, defaults=defaults, storage=storage)

    def update_settings(self, **overrides: Any) -> GenerationSettings:
        self.settings = merge_settings(overrides, base=self.settings)
        return self.settings

    def toggle_dark_mode(self) -> bool:
        self.preferences = Preferences(dark_mode=not self.preferences.dark_mode)
        if self._storage is not None:
            self._storage.save_preferences(self.preferences)
        return self.preferences.dark_mode

    async def load_models(self) -> List[ModelInfo]:
        """Refresh the model list; an unreachable server means an empty list."""
        try:
            self.available_models = await self.relay.list_models(self.settings)
        except RelayError as e:
            logger.error("load_models_failed", api_url=self.settings.api_url, error=str(e))
            self.available_models = []
            return self.available_models

        names = [m.name for m in self.available_models]
        if names and self.settings.model not in names:
            logger.info("model_selected", previous=self.settings.model, model=names[0])
            self.update_settings(model=names[0])
        return self.available_models

    # Conversation management

    def new_conversation(self) -> Conversation:
        return self.store.create()

    def switch_to(self, conversation_id: str) -> Conversation:
        return self.store.switch_to(conversation_id)

    def rename(self, conversation_id: str, title: str) -> Conversation:
        return self.store.rename(conversation_id, title)

    def delete(self, conversation_id: str) -> None:
        self.cancel(conversation_id)
        self.store.delete(conversation_id)

    def clear(self, conversation_id: Optional[str] = None) -> Conversation:
        conversation_id = conversation_id or self.store.current_id
        self.cancel(conversation_id)
        return self.store.clear_messages(conversation_id)

    def is_busy(self, conversation_id: Optional[str] = None) -> bool:
        return (conversation_id or self.store.current_id) in self._in_flight

    # Sending

    async def send(
        self,
        text: str,
        attachments: Optional[Sequence[Attachment]] = None,
        stream: bool = True,
        on_delta: Optional[DeltaCallback] = None,
        conversation_id: Optional[str] = None,
    ) -> Optional[Message]:
        """Send a message and return the assistant reply that was stored.

        Returns None when there is nothing to send or the reply was cancelled.
        """
        content = compose_message(text, attachments)
        if not content:
            return None

        conversation_id = conversation_id or self.store.current_id or self.store.create().id
        if conversation_id in self._in_flight:
            raise StreamInProgress(conversation_id)

        history = self.store.get(conversation_id).messages
        self.store.append_message(conversation_id, Message(role=USER_ROLE, content=content))
        settings = self.settings

        if stream:
            reply = self.relay.stream(content, history, settings, StreamReassembler(), on_delta)
        else:
            reply = self._complete(content, history, settings)
        task = asyncio.create_task(reply)
        self._in_flight[conversation_id] = task
        logger.info(
            "message_sent",
            conversation_id=conversation_id,
            model=settings.model,
            stream=stream,
            history_length=len(history),
        )

        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            # cancel(), delete() and clear() unregister the task to abandon it
            registered = self._in_flight.get(conversation_id) is task
            if registered:
                del self._in_flight[conversation_id]

        if task.cancelled() or not registered:
            logger.info("reply_discarded", conversation_id=conversation_id)
            return None
        message = task.result()
        try:
            return self.store.append_message(conversation_id, message)
        except NotFound:
            logger.info("reply_discarded", conversation_id=conversation_id, reason="conversation_deleted")
            return None

    async def _complete(
        self, content: str, history: Sequence[Message], settings: GenerationSettings
    ) -> Message:
        try:
            answer = await self.relay.complete(content, history, settings)
        except RelayError as e:
            logger.error("chat_request_failed", status_code=e.status_code, error=str(e))
            return Message(role=ASSISTANT_ROLE, content=ERROR_REPLY)
        return Message(role=ASSISTANT_ROLE, content=answer)

    def cancel(self, conversation_id: Optional[str] = None) -> bool:
        """Abandon the reply for a conversation so it is never stored.

        Returns False if no reply was still running.
        """
        conversation_id = conversation_id or self.store.current_id
        task = self._in_flight.pop(conversation_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("reply_cancelled", conversation_id=conversation_id)
        return True
