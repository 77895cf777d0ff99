"""Environment-driven configuration."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_float(name: str, default: float) -> float:
    value = _getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _getenv_int(name: str, default: int) -> int:
    value = _getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


@dataclass
class Config:
    """Relay and client defaults."""

    api_url: str = "http://localhost:11434"
    api_key: str = ""
    host: str = "127.0.0.1"
    port: int = 3001
    timeout: float = 30.0
    stream_timeout: float = 60.0
    max_message_pairs: int = 20
    data_dir: Path = field(default_factory=lambda: Path.home() / ".local-llm-chat")
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        defaults = cls()
        return cls(
            api_url=_getenv("OLLAMA_API_URL", defaults.api_url),
            api_key=_getenv("OLLAMA_API_KEY", defaults.api_key),
            host=_getenv("HOST", defaults.host),
            port=_getenv_int("PORT", defaults.port),
            timeout=_getenv_float("LLM_CHAT_TIMEOUT", defaults.timeout),
            stream_timeout=_getenv_float("LLM_CHAT_STREAM_TIMEOUT", defaults.stream_timeout),
            max_message_pairs=_getenv_int("LLM_CHAT_MAX_PAIRS", defaults.max_message_pairs),
            data_dir=Path(_getenv("LLM_CHAT_DATA_DIR", str(defaults.data_dir))),
            log_level=_getenv("LOG_LEVEL", defaults.log_level).upper(),
        )


_config: Optional[Config] = None


def get_config() -> Config:
    """Get the process-wide configuration, read once from the environment."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config
