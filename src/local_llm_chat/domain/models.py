"""Domain models for the chat application."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Mapping, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
Role = Literal["user", "assistant"]

DEFAULT_TITLE = "New Chat"
TITLE_LENGTH = 20
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Answer the user's questions concisely."
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys, accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Message(CamelModel):
    """Message model."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    role: Role = USER_ROLE
    content: str = ""
    thinking: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class Conversation(CamelModel):
    """Conversation model."""

    id: str = Field(default_factory=_new_id)
    title: str = DEFAULT_TITLE
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class ConversationSet(CamelModel):
    """All conversations keyed by id plus the current conversation pointer."""

    conversations: Dict[str, Conversation] = Field(default_factory=dict)
    current_id: str = ""


class Preferences(CamelModel):
    """UI preference flags persisted next to the conversations."""

    dark_mode: bool = False


class Attachment(CamelModel):
    """Metadata of a file the user attached to a message."""

    name: str
    size: int = 0
    mime_type: str = "application/octet-stream"
    content: Optional[str] = None


class ModelInfo(CamelModel):
    """A model advertised by the inference server."""

    name: str
    size: int = 0
    modified_at: Optional[str] = None


class GenerationSettings(CamelModel):
    """Request-scoped generation parameters.

    Values are forwarded upstream as given; range checking is left to the
    inference server.
    """

    model: str = "llama2"
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    max_tokens: int = 2048
    context_window: Optional[int] = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    api_url: str = "http://localhost:11434"
    api_key: str = ""

    @property
    def num_ctx(self) -> int:
        return self.context_window if self.context_window is not None else self.max_tokens


class StreamRecord(BaseModel):
    """One decoded line of an NDJSON chat stream."""

    content: Optional[str] = None
    thinking: Optional[str] = None
    done: bool = False
    raw: bytes = Field(default=b"", exclude=True)

    @classmethod
    def from_payload(cls, payload: Any, raw: bytes = b"") -> "StreamRecord":
        """Build a record from a decoded JSON object.

        Raises ValueError when the payload is not a JSON object.
        """
        if not isinstance(payload, dict):
            raise ValueError("stream record must be a JSON object")
        message = payload.get("message") or {}
        if not isinstance(message, dict):
            message = {}
        content = message.get("content")
        thinking = message.get("thinking")
        return cls(
            content=content if isinstance(content, str) else None,
            thinking=thinking if isinstance(thinking, str) else None,
            done=bool(payload.get("done", False)),
            raw=raw,
        )


# Fields where an empty string means "use the default".
_BLANK_MEANS_DEFAULT = ("model", "api_url")


def merge_settings(
    overrides: Optional[Mapping[str, Any]] = None,
    base: Optional[GenerationSettings] = None,
) -> GenerationSettings:
    """Merge caller-supplied settings over the defaults.

    ``overrides`` may use camelCase or snake_case keys. ``None`` values are
    treated as omitted; blank ``model``/``apiUrl`` fall back to the default.
    """
    merged = (base or GenerationSettings()).model_dump()
    for key, value in (overrides or {}).items():
        name = _field_name(key)
        if name is None or value is None:
            continue
        if name in _BLANK_MEANS_DEFAULT and isinstance(value, str) and not value.strip():
            continue
        merged[name] = value
    return GenerationSettings.model_validate(merged)


def _field_name(key: str) -> Optional[str]:
    for name, field in GenerationSettings.model_fields.items():
        if key == name or key == field.alias:
            return name
    return None


def derive_title(text: str) -> str:
    """Title a conversation after its first user message."""
    text = " ".join(text.split())
    if not text:
        return DEFAULT_TITLE
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + "..."
    return text
