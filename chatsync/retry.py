from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import TransportError

T = TypeVar("T")

_logger = logging.getLogger(__name__)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, TransportError):
        return exc.retryable
    status = getattr(exc, "status", None)
    if status is not None:
        try:
            return 500 <= int(status) < 600
        except (TypeError, ValueError):
            return False
    return False


async def call_with_retries(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    retries: int = 3,
    base_delay: float = 0.5,
    log: Optional[logging.Logger] = None,
    **kwargs: Any,
) -> T:
    """Execute an async call with exponential backoff.

    Parameters
    ----------
    func:
        Awaitable callable representing the request.
    retries:
        Number of attempts before giving up, the first one included.
        ``1`` disables retrying.
    base_delay:
        Delay in seconds before the second attempt. Each further retry
        doubles it.
    log:
        Optional logger to use. Defaults to a module-level logger.

    Only failures classified by :func:`is_retryable` are retried; anything
    else propagates immediately.
    """

    logger = log or _logger
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as exc:
            status = getattr(exc, "status", None)
            if attempt >= retries - 1 or not is_retryable(exc):
                logger.debug(
                    "chat.retry give up attempt=%s status=%s error=%s",
                    attempt + 1,
                    status,
                    exc,
                )
                raise
            logger.info(
                "chat.retry attempt=%s status=%s error=%s",
                attempt + 1,
                status,
                exc,
            )
            delay = base_delay * (2 ** attempt)
            attempt += 1
            await asyncio.sleep(delay)
