"""Contract for the model-backed dream interpreter."""
from __future__ import annotations

from typing import Optional, Protocol

try:  # pragma: no cover - resolve context when imported from FastAPI app
    from dreamdecoder import app_context
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "dreamdecoder":
        raise
    from ... import app_context  # type: ignore[no-redef]

from ..schemas.dream_chat import DreamChatRequest


class DreamInterpreter(Protocol):
    """Produces the reply text for one turn of a dream analysis chat."""

    def interpret(self, request: DreamChatRequest) -> str:
        ...


def get_dream_interpreter() -> Optional[DreamInterpreter]:
    return app_context.get_dream_interpreter()


__all__ = ["DreamInterpreter", "get_dream_interpreter"]
