"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None
_get_current_user: Optional[Callable[..., Any]] = None
_get_optional_current_user: Optional[Callable[..., Optional[Any]]] = None
_dream_interpreter: Optional[Any] = None


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_user: Callable[..., Any],
    get_optional_current_user: Callable[..., Optional[Any]],
    dream_interpreter: Optional[Any] = None,
) -> None:
    """Register application-wide dependencies required by modular routers."""

    global _get_conn
    global _get_current_user
    global _get_optional_current_user
    global _dream_interpreter

    _get_conn = get_conn
    _get_current_user = get_current_user
    _get_optional_current_user = get_optional_current_user
    _dream_interpreter = dream_interpreter


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_current_user(*args: Any, **kwargs: Any) -> Any:
    dependency = _require(_get_current_user, "get_current_user")
    return dependency(*args, **kwargs)


def get_optional_current_user(*args: Any, **kwargs: Any) -> Optional[Any]:
    dependency = _require(_get_optional_current_user, "get_optional_current_user")
    return dependency(*args, **kwargs)


def get_dream_interpreter() -> Optional[Any]:
    """Return the registered interpreter, or ``None`` when none was configured."""

    return _dream_interpreter
