"""Authentication dependencies shared by the API routers."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import Header

try:  # pragma: no cover - resolve context when imported from FastAPI app
    from dreamdecoder import app_context
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "dreamdecoder":
        raise
    from ... import app_context  # type: ignore[no-redef]


def get_current_user(authorization: Optional[str] = Header(None)) -> Any:
    """Resolve the bearer token to a user or fail with 401."""

    return app_context.get_current_user(authorization=authorization)


def get_optional_current_user(authorization: Optional[str] = Header(None)) -> Optional[Any]:
    return app_context.get_optional_current_user(authorization=authorization)


__all__ = ["get_current_user", "get_optional_current_user"]
