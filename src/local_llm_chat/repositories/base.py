"""Base repository interfaces."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..domain.models import Conversation, ConversationSet, Message, Preferences


class ConversationRepository(ABC):
    """Abstract base class for conversation stores."""

    @property
    @abstractmethod
    def current_id(self) -> str:
        """Id of the conversation on screen, or an empty string."""
        pass

    @abstractmethod
    def get(self, conversation_id: str) -> Conversation:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    def list(self) -> List[Conversation]:
        """List all conversations, most recently updated first."""
        pass

    @abstractmethod
    def create(self, title: Optional[str] = None) -> Conversation:
        """Create a new conversation and make it current."""
        pass

    @abstractmethod
    def switch_to(self, conversation_id: str) -> Conversation:
        """Make an existing conversation current."""
        pass

    @abstractmethod
    def rename(self, conversation_id: str, title: str) -> Conversation:
        """Set a conversation title."""
        pass

    @abstractmethod
    def delete(self, conversation_id: str) -> None:
        """Delete a conversation."""
        pass

    @abstractmethod
    def append_message(self, conversation_id: str, message: Message) -> Message:
        """Add a message to a conversation."""
        pass

    @abstractmethod
    def clear_messages(self, conversation_id: str) -> Conversation:
        """Remove every message of a conversation."""
        pass

    @abstractmethod
    def snapshot(self) -> ConversationSet:
        """Deep copy of the full conversation set."""
        pass


class Storage(ABC):
    """Interface for saving and loading client-side state."""

    @abstractmethod
    def load_conversations(self) -> Optional[ConversationSet]:
        """Load the saved conversation set, if any."""
        pass

    @abstractmethod
    def save_conversations(self, conversations: ConversationSet) -> None:
        """Save the full conversation set."""
        pass

    @abstractmethod
    def load_preferences(self) -> Preferences:
        """Load UI preferences, falling back to defaults."""
        pass

    @abstractmethod
    def save_preferences(self, preferences: Preferences) -> None:
        """Save UI preferences."""
        pass
