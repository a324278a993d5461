from __future__ import annotations

from typing import Any, Callable, Optional, TypeVar

from shopauth.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def run_isolated(
    step: str,
    action: Callable[[], T],
    *,
    default: Optional[T] = None,
    **context: Any,
) -> Optional[T]:
    """Run ``action`` and keep its failure from reaching the caller.

    Used for best-effort side effects whose failure must not undo or abort the
    work around them. Errors are logged with ``step`` as the event name suffix
    and ``default`` is returned instead.
    """
    try:
        return action()
    except Exception as exc:
        logger.error(
            f"{step}_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            **context,
        )
        return default
