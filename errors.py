"""
Error types, classification and logging setup.
"""

import asyncio
import logging
from typing import Optional

from config import FLOOD_WAIT_CAP_SECONDS, FLOOD_WAIT_RE
from models import FailureKind


def setup_logging(
    level: str = "INFO",
    format_string: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    log_file: Optional[str] = None,
    file_level: str = "OFF",
) -> logging.Logger:
    """Configure root logging once and return module logger."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    formatter = logging.Formatter(format_string)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    file_numeric_level = _file_log_level(file_level)
    if log_file and file_numeric_level is not None:
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(file_numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        numeric_level = min(numeric_level, file_numeric_level)

    root_logger.setLevel(numeric_level)
    # telethon is chatty at INFO on every reconnect
    logging.getLogger("telethon").setLevel(max(numeric_level, logging.WARNING))
    return logging.getLogger(__name__)


def _file_log_level(value: str) -> Optional[int]:
    value = (value or "").strip().upper()
    if value == "ERROR":
        return logging.ERROR
    if value in {"ALL", "INFO"}:
        return logging.INFO
    return None


class ExtractionError(RuntimeError):
    """The extraction tool exited with a failure status."""

    def __init__(self, diagnostic: str, returncode: Optional[int] = None):
        super().__init__(f"yt-dlp failed: {diagnostic}")
        self.diagnostic = diagnostic
        self.returncode = returncode


class DownloadedFileMissing(RuntimeError):
    """The tool reported success but produced no file we can find."""


class PeerResolutionError(RuntimeError):
    """Recipient cannot be addressed over MTProto. Never retried."""


class UploadError(RuntimeError):
    """Upload did not succeed within the allowed attempts."""


def extract_flood_wait(error: BaseException) -> Optional[int]:
    """Return the flood-wait seconds an error carries, if any."""
    # aiogram TelegramRetryAfter
    retry_after = getattr(error, "retry_after", None)
    if isinstance(retry_after, int):
        return retry_after
    seconds = getattr(error, "seconds", None)
    if isinstance(seconds, int) and type(error).__name__.startswith("Flood"):
        return seconds
    match = FLOOD_WAIT_RE.search(str(error))
    if match:
        return int(match.group(1))
    return None


def flood_wait_delay(error: BaseException) -> Optional[int]:
    """Capped sleep for a flood-wait error, None when it is not one."""
    seconds = extract_flood_wait(error)
    if seconds is None:
        return None
    return min(seconds, FLOOD_WAIT_CAP_SECONDS)


class ErrorManager:
    """Classify failures and convert them to compact user-facing messages."""

    # Matched against yt-dlp's stderr; wording changes upstream break these.
    _PHRASES = (
        (FailureKind.SIGN_IN_REQUIRED, ("sign in required", "sign in to confirm", "login required")),
        (FailureKind.UNAVAILABLE, ("video unavailable", "requested format is not available", "has been removed")),
        (FailureKind.PRIVATE, ("private video", "this video is private")),
        (FailureKind.AGE_RESTRICTED, ("age-restricted", "age restricted")),
        (FailureKind.MALFORMED_RESPONSE, ("failed to parse", "json")),
        (FailureKind.TIMEOUT, ("timeout", "timed out")),
    )

    def classify(self, error: BaseException) -> FailureKind:
        if isinstance(error, asyncio.TimeoutError):
            return FailureKind.TIMEOUT
        text = getattr(error, "diagnostic", None) or str(error)
        low = text.lower()
        for kind, phrases in self._PHRASES:
            if any(phrase in low for phrase in phrases):
                return kind
        return FailureKind.GENERIC

    def is_retryable(self, error: BaseException) -> bool:
        """Content failures (private, removed...) will not change on retry."""
        return self.classify(error) in (FailureKind.TIMEOUT, FailureKind.GENERIC)

    def download_failure_message(self, error: BaseException) -> str:
        kind = self.classify(error)
        if kind is FailureKind.SIGN_IN_REQUIRED:
            return "🔒 Video requires sign in - currently unavailable for download"
        if kind is FailureKind.UNAVAILABLE:
            return "🚫 Video is unavailable or has been removed"
        if kind is FailureKind.PRIVATE:
            return "🔒 Video is private and cannot be downloaded"
        if kind is FailureKind.AGE_RESTRICTED:
            return "🔞 Video is age-restricted and cannot be downloaded"
        if kind is FailureKind.MALFORMED_RESPONSE:
            return "🔧 Error processing the source response. Please try again later."
        if kind is FailureKind.TIMEOUT:
            return "⏰ Download timeout - please try again"
        details = (str(error) or type(error).__name__)[:100]
        return f"❌ Failed to download video: {details}"

    def upload_failure_message(self, error: BaseException) -> str:
        seconds = extract_flood_wait(error)
        if seconds is not None:
            return f"⏳ Rate limited. Please wait {seconds} seconds and try again."
        return "❌ Upload failed - please try again later"

    @staticmethod
    def duplicate_message() -> str:
        return "This video is already being processed."

    @staticmethod
    def subscription_message() -> str:
        return "To use the bot, please subscribe to our channels."


error_manager = ErrorManager()
