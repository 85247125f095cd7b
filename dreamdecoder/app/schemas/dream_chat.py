"""API schemas for the dream interpretation chat."""
from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class DreamStage(str, Enum):
    """Conversation stages of a dream analysis."""

    WAITING_DREAM = "waiting_dream"
    WAITING_STYLE = "waiting_style"
    FOLLOW_UP = "follow_up"


class ChatTurn(BaseModel):
    role: Literal["user", "model"]
    text: str


class DreamChatRequest(BaseModel):
    message: str = ""
    stage: DreamStage
    style: Optional[str] = None
    dream_context: Optional[str] = Field(alias="dreamContext", default=None)
    history: List[ChatTurn] = Field(default_factory=list)
    client_message_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def starts_analysis(self) -> bool:
        return self.stage == DreamStage.WAITING_STYLE


class DreamChatResponse(BaseModel):
    text: str
