"""
LLM Retry Utilities

Provides error classification and retry logic for the transcript analysis LLM call.
Implements exponential backoff, rate limit handling, and timeout management.
"""

import logging
import asyncio
from typing import TypeVar, Callable, Any
from functools import wraps

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
    after_log,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')


class LLMRateLimitError(Exception):
    """Raised when LLM API rate limit is exceeded (429)"""
    pass


class LLMTimeoutError(Exception):
    """Raised when LLM API call times out"""
    pass


class LLMAPIError(Exception):
    """General LLM API error"""
    pass


# 3 attempts with exponential backoff: 2s, 4s, 8s
llm_retry_config = dict(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception_type((LLMRateLimitError, LLMTimeoutError, LLMAPIError, ConnectionError, TimeoutError)),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    after=after_log(logger, logging.INFO),
    reraise=True,
)


def classify_llm_error(func_name: str, error: Exception) -> Exception:
    """
    Map a provider exception onto the retryable error classes.

    Returns:
        The exception to raise in place of the original
    """
    if isinstance(error, (LLMRateLimitError, LLMTimeoutError, LLMAPIError)):
        return error

    error_msg = str(error).lower()

    if "429" in error_msg or "rate limit" in error_msg:
        logger.warning(f"Rate limit exceeded in {func_name}: {error}")
        return LLMRateLimitError(f"Rate limit exceeded: {error}")
    if "timeout" in error_msg:
        logger.warning(f"Timeout in {func_name}: {error}")
        return LLMTimeoutError(f"Request timed out: {error}")
    if any(keyword in error_msg for keyword in ["connection", "network", "unavailable"]):
        logger.warning(f"Connection error in {func_name}: {error}")
        return ConnectionError(f"Connection failed: {error}")
    logger.error(f"LLM API error in {func_name}: {error}")
    return LLMAPIError(f"API error: {error}")


def async_retry_llm_call(func: Callable[..., T]) -> Callable[..., T]:
    """
    Decorator for async LLM calls with retry logic.

    Handles:
    - Rate limit errors (429) with exponential backoff
    - Connection errors
    - Timeout errors
    - General API errors

    Example:
        @async_retry_llm_call
        async def call_llm_async(inputs):
            return await chain.ainvoke(inputs)
    """
    @retry(**llm_retry_config)
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            classified = classify_llm_error(func.__name__, e)
            if classified is e:
                raise
            raise classified from e

    return wrapper


async def call_llm_with_timeout(
    llm_call: Callable,
    timeout_seconds: int = 60,
    *args,
    **kwargs
) -> Any:
    """
    Execute an LLM call with a timeout.

    Args:
        llm_call: The LLM coroutine function to call
        timeout_seconds: Maximum time to wait (default 60s)
        *args, **kwargs: Arguments to pass to llm_call

    Raises:
        LLMTimeoutError: If the call exceeds the timeout
    """
    try:
        return await asyncio.wait_for(
            llm_call(*args, **kwargs),
            timeout=timeout_seconds
        )
    except asyncio.TimeoutError as e:
        logger.error(f"LLM call timed out after {timeout_seconds}s")
        raise LLMTimeoutError(f"LLM call exceeded {timeout_seconds}s timeout") from e


async def with_fallback_async(
    primary_func: Callable[..., T],
    fallback_func: Callable[..., T],
    fallback_exceptions: tuple = (Exception,),
    *args,
    **kwargs
) -> T:
    """
    Run primary_func, or fallback_func with the same arguments if it fails.

    Example:
        report = await with_fallback_async(
            analyzer.generate_report,
            analyzer.placeholder_report,
            (LLMAPIError, LLMTimeoutError),
            transcript
        )
    """
    try:
        return await primary_func(*args, **kwargs)
    except fallback_exceptions as e:
        logger.warning(
            f"Primary function {primary_func.__name__} failed with {type(e).__name__}: {e}. "
            f"Using fallback {fallback_func.__name__}"
        )
        return await fallback_func(*args, **kwargs)
