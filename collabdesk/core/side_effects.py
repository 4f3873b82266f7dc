"""
Best-effort side channel.

Audit writes, analytics, e-mail dispatch and secondary status updates must
never fail the primary operation. Wrapping them here keeps that contract in
one place instead of scattered try/except blocks.
"""
from typing import Any, Callable, Optional, TypeVar

from collabdesk.core.logging import get_logger

logger = get_logger("side_effects")

T = TypeVar("T")


def best_effort(label: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """
    Run ``fn`` and return its result, or ``None`` if it raised.

    Failures are logged with traceback under ``label`` and never re-raised.
    """
    try:
        return fn(*args, **kwargs)
    except Exception as e:
        logger.error(f"{label} failed (non-fatal): {e}", exc_info=True, extra={"action": label})
        return None
