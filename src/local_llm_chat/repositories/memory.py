"""In-memory conversation store."""

from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog

from ..domain.errors import NotFound
from ..domain.models import (
    DEFAULT_TITLE,
    USER_ROLE,
    Conversation,
    ConversationSet,
    Message,
    derive_title,
)
from .base import ConversationRepository, Storage

logger = structlog.get_logger()


class InMemoryConversationStore(ConversationRepository):
    """Conversation store kept in memory, saved through an optional storage.

    Only the chat session mutates the store, so no locking is done here.
    ``max_message_pairs`` caps each conversation at that many user/assistant
    pairs; the oldest messages are dropped when an append goes over.
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        max_message_pairs: Optional[int] = None,
    ) -> None:
        self._storage = storage
        self.max_message_pairs = max_message_pairs
        self._conversations: Dict[str, Conversation] = {}
        self._current_id = ""

        loaded = storage.load_conversations() if storage is not None else None
        if loaded is not None:
            self._conversations = dict(loaded.conversations)
            self._current_id = loaded.current_id if loaded.current_id in self._conversations else ""
            logger.info(
                "conversations_loaded",
                count=len(self._conversations),
                current_id=self._current_id,
            )

    @property
    def current_id(self) -> str:
        return self._current_id

    @property
    def current(self) -> Optional[Conversation]:
        return self._conversations.get(self._current_id)

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            raise NotFound(conversation_id)
        return conversation

    def _touch(self, conversation: Conversation, at: Optional[datetime] = None) -> None:
        now = at or datetime.now(timezone.utc)
        conversation.updated_at = max(now, conversation.updated_at, conversation.created_at)

    def _persist(self) -> None:
        if self._storage is not None:
            self._storage.save_conversations(self.snapshot())

    def get(self, conversation_id: str) -> Conversation:
        return self._require(conversation_id).model_copy(deep=True)

    def list(self) -> List[Conversation]:
        return sorted(
            (c.model_copy(deep=True) for c in self._conversations.values()),
            key=lambda c: c.updated_at,
            reverse=True,
        )

    def create(self, title: Optional[str] = None) -> Conversation:
        conversation = Conversation(title=title or DEFAULT_TITLE)
        self._conversations[conversation.id] = conversation
        self._current_id = conversation.id
        logger.info("conversation_created", conversation_id=conversation.id)
        self._persist()
        return conversation.model_copy(deep=True)

    def switch_to(self, conversation_id: str) -> Conversation:
        conversation = self._require(conversation_id)
        self._current_id = conversation_id
        logger.info("conversation_switched", conversation_id=conversation_id)
        self._persist()
        return conversation.model_copy(deep=True)

    def rename(self, conversation_id: str, title: str) -> Conversation:
        conversation = self._require(conversation_id)
        conversation.title = title.strip() or DEFAULT_TITLE
        self._touch(conversation)
        logger.info("conversation_renamed", conversation_id=conversation_id)
        self._persist()
        return conversation.model_copy(deep=True)

    def delete(self, conversation_id: str) -> None:
        self._require(conversation_id)
        del self._conversations[conversation_id]
        if self._current_id == conversation_id:
            remaining = self.list()
            self._current_id = remaining[0].id if remaining else ""
        logger.info(
            "conversation_deleted",
            conversation_id=conversation_id,
            current_id=self._current_id,
        )
        self._persist()

    def append_message(self, conversation_id: str, message: Message) -> Message:
        conversation = self._require(conversation_id)

        # Keep timestamps non-decreasing in append order.
        if conversation.messages and message.timestamp < conversation.messages[-1].timestamp:
            message = message.model_copy(
                update={"timestamp": conversation.messages[-1].timestamp}
            )

        is_first_user_message = message.role == USER_ROLE and not any(
            m.role == USER_ROLE for m in conversation.messages
        )
        if is_first_user_message and conversation.title == DEFAULT_TITLE:
            conversation.title = derive_title(message.content)

        conversation.messages.append(message)
        trimmed = self._apply_capacity(conversation)
        self._touch(conversation, at=message.timestamp)

        logger.info(
            "message_added",
            conversation_id=conversation_id,
            message_role=message.role,
            trimmed=trimmed,
        )
        self._persist()
        return message

    def _apply_capacity(self, conversation: Conversation) -> int:
        if not self.max_message_pairs:
            return 0
        limit = self.max_message_pairs * 2
        excess = len(conversation.messages) - limit
        if excess <= 0:
            return 0
        del conversation.messages[:excess]
        return excess

    def clear_messages(self, conversation_id: str) -> Conversation:
        conversation = self._require(conversation_id)
        conversation.messages = []
        self._touch(conversation)
        logger.info("conversation_cleared", conversation_id=conversation_id)
        self._persist()
        return conversation.model_copy(deep=True)

    def snapshot(self) -> ConversationSet:
        return ConversationSet(
            conversations={k: v.model_copy(deep=True) for k, v in self._conversations.items()},
            current_id=self._current_id,
        )
