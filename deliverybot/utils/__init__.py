"""Utility functions for deliverybot."""

import asyncio
import logging
import os
import re
import time
from functools import wraps
from typing import Awaitable, Callable, ParamSpec, TypeVar

T = TypeVar("T")
P = ParamSpec("P")
logger = logging.getLogger(__name__)

_ENV_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def provider_retry(
    retry_on: tuple[type[BaseException], ...],
    max_retries: int = 3,
    max_timeout: float = 30.0,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for retrying calls to an external service with exponential backoff.

    Handles:
    - Rate limits: any exception exposing `retry_after` waits that long (not counted
      against `max_timeout`)
    - Transient failures: exceptions in `retry_on` retry after 1s, 2s, 4s...
    - Other errors: fail immediately

    Args:
        retry_on: Exception types considered transient
        max_retries: Maximum number of attempts (default: 3)
        max_timeout: Maximum total operation time in seconds across attempts
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            start_time = time.monotonic()
            excluded_wait_time = 0.0

            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    last_attempt = attempt == max_retries - 1
                    elapsed = time.monotonic() - start_time - excluded_wait_time
                    if elapsed >= max_timeout:
                        logger.error(
                            "%s: max timeout (%.1fs) exceeded after %d attempts",
                            func.__name__,
                            max_timeout,
                            attempt + 1,
                        )
                        raise

                    retry_after = getattr(e, "retry_after", None)
                    if isinstance(retry_after, (int, float)) and not last_attempt:
                        logger.warning(
                            "%s: rate limited, retrying in %ss (attempt %d/%d)",
                            func.__name__,
                            retry_after,
                            attempt + 1,
                            max_retries,
                        )
                        await asyncio.sleep(retry_after)
                        excluded_wait_time += retry_after
                        continue

                    if isinstance(e, retry_on) and not last_attempt:
                        delay = 2**attempt
                        logger.warning(
                            "%s: %s, retrying in %ds (attempt %d/%d)",
                            func.__name__,
                            type(e).__name__,
                            delay,
                            attempt + 1,
                            max_retries,
                        )
                        await asyncio.sleep(delay)
                        continue

                    if isinstance(e, retry_on):
                        logger.error("%s: giving up after %d attempts: %s", func.__name__, max_retries, e)
                    raise

            raise RuntimeError(f"Retry logic failed unexpectedly in {func.__name__}")

        return wrapper

    return decorator


def expand_env_vars(config: object) -> object:
    """Recursively expand environment variables in config.

    Replaces ${VAR} patterns with environment variable values. Unknown
    variables are left as-is so callers can tell "unset" from "empty".
    """
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            return os.getenv(match.group(1), match.group(0))

        return _ENV_PLACEHOLDER.sub(replace_env_var, config)
    return config


def is_unresolved(value: str) -> bool:
    """True if the string still contains a ${VAR} placeholder."""
    return bool(_ENV_PLACEHOLDER.search(value))
