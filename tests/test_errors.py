"""
Unit tests for failure classification and user-facing messages.
"""

import asyncio
import logging
from unittest.mock import MagicMock

from aiogram.exceptions import TelegramRetryAfter

from errors import (
    ExtractionError,
    error_manager,
    extract_flood_wait,
    flood_wait_delay,
    setup_logging,
)
from models import FailureKind


class FloodWaitError(Exception):
    """Stand-in carrying ``seconds`` like telethon's flood wait errors."""

    def __init__(self, seconds):
        super().__init__(f"A wait of {seconds} seconds is required")
        self.seconds = seconds


def test_classify_diagnostics():
    cases = {
        "ERROR: [youtube] abc: Sign in to confirm your age": FailureKind.SIGN_IN_REQUIRED,
        "ERROR: Video unavailable": FailureKind.UNAVAILABLE,
        "ERROR: [tiktok] 123: Private video": FailureKind.PRIVATE,
        "ERROR: This video is age-restricted": FailureKind.AGE_RESTRICTED,
        "ERROR: Failed to parse JSON": FailureKind.MALFORMED_RESPONSE,
        "ERROR: Read timed out.": FailureKind.TIMEOUT,
        "ERROR: HTTP Error 500": FailureKind.GENERIC,
    }
    for diagnostic, kind in cases.items():
        assert error_manager.classify(ExtractionError(diagnostic, 1)) == kind


def test_timeout_error_is_timeout():
    assert error_manager.classify(asyncio.TimeoutError()) == FailureKind.TIMEOUT


def test_only_transient_failures_retry():
    assert error_manager.is_retryable(ExtractionError("HTTP Error 500", 1))
    assert error_manager.is_retryable(asyncio.TimeoutError())
    assert not error_manager.is_retryable(ExtractionError("Private video", 1))
    assert not error_manager.is_retryable(ExtractionError("Video unavailable", 1))


def test_download_failure_messages():
    private = error_manager.download_failure_message(ExtractionError("Private video", 1))
    assert private == "🔒 Video is private and cannot be downloaded"

    generic = error_manager.download_failure_message(RuntimeError("x" * 300))
    assert generic.startswith("❌ Failed to download video: ")
    assert len(generic) == len("❌ Failed to download video: ") + 100


def test_flood_wait_from_attribute_and_text():
    assert extract_flood_wait(FloodWaitError(12)) == 12
    assert extract_flood_wait(RuntimeError("RPCError 420: FLOOD_WAIT_45")) == 45
    assert extract_flood_wait(RuntimeError("other")) is None
    assert flood_wait_delay(FloodWaitError(12)) == 12
    assert flood_wait_delay(FloodWaitError(500)) == 30
    assert flood_wait_delay(RuntimeError("other")) is None


def test_upload_failure_messages():
    assert error_manager.upload_failure_message(FloodWaitError(17)) == (
        "⏳ Rate limited. Please wait 17 seconds and try again."
    )
    assert error_manager.upload_failure_message(RuntimeError("boom")) == (
        "❌ Upload failed - please try again later"
    )


def test_setup_logging_file_handler(tmp_path):
    log_file = tmp_path / "bot_errors.log"
    root = logging.getLogger()
    saved = root.handlers[:]
    try:
        setup_logging(level="INFO", log_file=str(log_file), file_level="ERROR")
        file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].level == logging.ERROR
        assert logging.getLogger("telethon").level == logging.WARNING
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
            handler.close()
        for handler in saved:
            root.addHandler(handler)


def test_setup_logging_file_off(tmp_path):
    root = logging.getLogger()
    saved = root.handlers[:]
    try:
        setup_logging(level="DEBUG", log_file=str(tmp_path / "x.log"), file_level="OFF")
        assert not any(isinstance(h, logging.FileHandler) for h in root.handlers)
    finally:
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        for handler in saved:
            root.addHandler(handler)


def test_flood_wait_from_bot_api_retry_after():
    error = TelegramRetryAfter(method=MagicMock(), message="Flood control exceeded", retry_after=45)

    assert extract_flood_wait(error) == 45
    assert flood_wait_delay(error) == 30
    assert error_manager.upload_failure_message(error) == (
        "⏳ Rate limited. Please wait 45 seconds and try again."
    )
