"""Metered dream interpretation chat endpoint."""
from __future__ import annotations

import logging
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from ..schemas.dream_chat import DreamChatRequest, DreamChatResponse
from ..services.billing import get_feature_gate
from ..services.interpretation import get_dream_interpreter
from .dependencies import get_optional_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["dream-chat"])


@router.post("/dream-chat", response_model=DreamChatResponse)
def dream_chat(
    payload: DreamChatRequest,
    *,
    current_user: Optional[Any] = Depends(get_optional_current_user),
) -> Union[DreamChatResponse, JSONResponse]:
    """Answer one chat turn; starting a new analysis costs one trial unit for free users."""

    if not payload.message.strip():
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Message is required"},
        )

    interpreter = get_dream_interpreter()
    if interpreter is None:
        logger.error("Dream chat requested but no interpreter is configured")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Dream interpreter is not configured"},
        )

    if payload.starts_analysis:
        if current_user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
        decision = get_feature_gate().admit(str(current_user.id))
        logger.info(
            "Dream analysis admitted for user %s access=%s trial_remaining=%s",
            current_user.id,
            decision.access_type.value,
            decision.trial_remaining,
        )

    return DreamChatResponse(text=interpreter.interpret(payload))
