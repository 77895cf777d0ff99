"""Request and response bodies of the relay API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..domain.models import ModelInfo


class HistoryItem(BaseModel):
    """A prior message sent along with a chat request; extra keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    role: str
    content: str = ""


class ChatRequest(BaseModel):
    """Defines the structure for chat requests"""

    message: str
    settings: Optional[Dict[str, Any]] = None
    history: List[HistoryItem] = Field(default_factory=list)


class ChatResponse(BaseModel):
    response: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str


class ConfigResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_url: str = Field(serialization_alias="apiUrl")
    api_key: str = Field(serialization_alias="apiKey")


class ModelsResponse(BaseModel):
    models: List[ModelInfo]


class OpenAIModel(BaseModel):
    id: str
    object: str = "model"
    created: int
    owned_by: str = "local"


class OpenAIModelList(BaseModel):
    object: str = "list"
    data: List[OpenAIModel]
