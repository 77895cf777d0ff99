"""Client-side storage backends."""

import os
from pathlib import Path
from typing import Optional, Union

import structlog
from pydantic import ValidationError

from ..domain.models import ConversationSet, Preferences
from .base import Storage

logger = structlog.get_logger()


class InMemoryStorage(Storage):
    """Keeps serialized state in memory; used by tests and throwaway sessions."""

    def __init__(self) -> None:
        self.conversations_json: Optional[str] = None
        self.preferences_json: Optional[str] = None
        self.saves = 0

    def load_conversations(self) -> Optional[ConversationSet]:
        if self.conversations_json is None:
            return None
        return ConversationSet.model_validate_json(self.conversations_json)

    def save_conversations(self, conversations: ConversationSet) -> None:
        self.conversations_json = conversations.model_dump_json(by_alias=True)
        self.saves += 1

    def load_preferences(self) -> Preferences:
        if self.preferences_json is None:
            return Preferences()
        return Preferences.model_validate_json(self.preferences_json)

    def save_preferences(self, preferences: Preferences) -> None:
        self.preferences_json = preferences.model_dump_json(by_alias=True)


class JsonFileStorage(Storage):
    """Stores conversations and preferences as JSON files in one directory."""

    CONVERSATIONS_FILE = "conversations.json"
    PREFERENCES_FILE = "preferences.json"

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def conversations_path(self) -> Path:
        return self.base_dir / self.CONVERSATIONS_FILE

    @property
    def preferences_path(self) -> Path:
        return self.base_dir / self.PREFERENCES_FILE

    def _write(self, path: Path, data: str) -> None:
        # Write then rename so a crash never leaves half a file behind.
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(data, encoding="utf-8")
        os.replace(tmp, path)

    def load_conversations(self) -> Optional[ConversationSet]:
        if not self.conversations_path.exists():
            return None
        try:
            return ConversationSet.model_validate_json(
                self.conversations_path.read_text(encoding="utf-8")
            )
        except ValidationError as e:
            logger.error(
                "conversations_file_invalid", path=str(self.conversations_path), error=str(e)
            )
            raise

    def save_conversations(self, conversations: ConversationSet) -> None:
        self._write(self.conversations_path, conversations.model_dump_json(by_alias=True, indent=2))
        logger.debug(
            "conversations_saved",
            path=str(self.conversations_path),
            count=len(conversations.conversations),
        )

    def load_preferences(self) -> Preferences:
        if not self.preferences_path.exists():
            return Preferences()
        return Preferences.model_validate_json(self.preferences_path.read_text(encoding="utf-8"))

    def save_preferences(self, preferences: Preferences) -> None:
        self._write(self.preferences_path, preferences.model_dump_json(by_alias=True))
