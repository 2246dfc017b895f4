"""Fire-and-log compensating actions.

Refunds and protocol syncs run after the main operation has already
succeeded or failed on its own.  Their failure must never change what
the caller sees, so they go through :func:`best_effort`, which awaits the
action, logs any exception with its label and returns ``None``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def best_effort(label: str, action: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T | None:
    """Await ``action(*args, **kwargs)``; on failure log and return ``None``."""
    try:
        return await action(*args, **kwargs)
    except Exception:
        logger.exception("Best-effort action failed (non-critical): %s", label)
        return None
