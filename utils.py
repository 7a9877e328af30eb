"""
Utilities for URL parsing, validation, retries and file operations.
"""

import asyncio
import logging
import os
import re
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar
from urllib.parse import urlparse

from config import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    MAX_ATTEMPTS,
    SUPPORTED_DOMAINS,
    URL_RE,
)
from errors import flood_wait_delay

logger = logging.getLogger(__name__)

T = TypeVar("T")


def find_first_url(text: str) -> Optional[str]:
    """Return first URL in text."""
    if not text:
        return None
    match = URL_RE.search(text)
    return match.group(0) if match else None


def is_supported_url(url: str) -> bool:
    """Check whether URL host belongs to a supported platform."""
    if not url:
        return False
    host = (urlparse(url).hostname or "").lower()
    return any(host == domain or host.endswith("." + domain) for domain in SUPPORTED_DOMAINS)


def validate_url_input(url: str) -> Tuple[bool, str]:
    """Validate URL format and safety."""
    if not url:
        return False, "URL must not be empty"
    if len(url) > 2000:
        return False, "URL is too long"

    try:
        parsed = urlparse(url)
        if parsed.scheme.lower() not in {"http", "https"}:
            return False, "Only HTTP/HTTPS URL are supported"
        if not parsed.netloc:
            return False, "Malformed URL"
    except Exception:
        return False, "Malformed URL"

    return True, ""


def sanitize_user_input(text: str, max_length: int = 1000) -> str:
    """Remove control chars and trim length."""
    if not text:
        return ""
    sanitized = re.sub(r"[\x00-\x1f\x7f-\x9f]", "", text)
    return sanitized.strip()[:max_length]


def get_file_size(filepath: str) -> int:
    """File size in bytes, 0 if the file is gone."""
    try:
        return os.path.getsize(filepath)
    except OSError:
        return 0


def remove_file(filepath: Optional[str]) -> None:
    """Delete a produced file; a missing file is not an error."""
    if not filepath:
        return
    try:
        os.remove(filepath)
        logger.debug("Removed temp file: %s", filepath)
    except FileNotFoundError:
        pass
    except OSError as error:
        logger.warning("Failed to cleanup temp file %s: %s", filepath, error)


def format_file_size(bytes_size: int) -> str:
    """Human readable file size."""
    if bytes_size is None:
        return "0.0 B"

    size = float(max(bytes_size, 0))
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024.0 or unit == "TB":
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return "0.0 B"


def backoff_delay(
    attempt: int,
    base: float = BACKOFF_BASE_SECONDS,
    cap: float = BACKOFF_MAX_SECONDS,
) -> float:
    """Delay after the given failed attempt (1-based): base, 2*base, 4*base... capped."""
    return min(base * (2 ** max(attempt - 1, 0)), cap)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = MAX_ATTEMPTS,
    timeout: Optional[float] = None,
    non_retryable: Tuple[Type[BaseException], ...] = (),
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    label: str = "operation",
) -> T:
    """
    Run ``operation`` up to ``attempts`` times.

    Each attempt runs under ``timeout``; a timeout counts as one failed
    attempt. Between attempts sleeps with exponential backoff, or for the
    capped flood-wait period when the error carries one. Errors listed in
    ``non_retryable``, or rejected by ``retry_if``, propagate immediately.
    The last error is re-raised once attempts are exhausted.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            if timeout is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=timeout)
        except non_retryable:
            raise
        except Exception as error:
            last_error = error
            if retry_if is not None and not retry_if(error):
                raise
            if attempt >= attempts:
                break
            delay = flood_wait_delay(error)
            if delay is None:
                delay = backoff_delay(attempt)
            logger.warning(
                "%s failed (attempt %s/%s), retrying in %.1fs: %r",
                label,
                attempt,
                attempts,
                delay,
                error,
            )
            await asyncio.sleep(delay)

    assert last_error is not None
    raise last_error
