# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# builder_ai_app/utils/retry.py
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


def retry_with_exponential_backoff(
        func: Callable[..., Awaitable[Any]],
        initial_delay: float = 1,
        exponential_base: float = 2,
        jitter: bool = False,
        max_attempts: int = 3,
        errors: tuple = (Exception,),
        retry_if: Optional[Callable[[BaseException], bool]] = None,
):
    """
    Retry an async function with exponential backoff.

    Attempt k (1-based) that fails sleeps initial_delay * exponential_base ** (k - 1)
    before the next one. The last error is re-raised unchanged; errors rejected by
    `retry_if` are re-raised immediately.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    async def wrapper(*args, **kwargs):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await func(*args, **kwargs)
            except errors as e:
                if attempt >= max_attempts or (retry_if is not None and not retry_if(e)):
                    raise
                delay = initial_delay * (exponential_base ** (attempt - 1))
                if jitter:
                    delay *= 1 + random.random()
                logger.warning(f"Retry {attempt}/{max_attempts - 1} in {delay:.2f} seconds due to error: {e}")
                await asyncio.sleep(delay)
    return wrapper
