"""
Single editable status message showing task progress.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from aiogram.exceptions import TelegramAPIError

from config import PROGRESS_MIN_INTERVAL_SECONDS, PROGRESS_MIN_STEP

logger = logging.getLogger(__name__)

_INVALIDATED_MARKERS = (
    "message_id_invalid",
    "message to edit not found",
    "message can't be edited",
)
_DELETE_IGNORED_MARKERS = (
    "message_id_invalid",
    "message to delete not found",
)


class ProgressBar:
    """
    Owns one status message per task.

    ``update`` is throttled: an edit goes out only when at least
    ``min_interval`` seconds passed AND the percentage moved by ``min_step``,
    or when the task reached 100%. All calls are serialized by one lock.
    """

    def __init__(
        self,
        bot: Any,
        chat_id: int,
        min_interval: float = PROGRESS_MIN_INTERVAL_SECONDS,
        min_step: int = PROGRESS_MIN_STEP,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bot = bot
        self.chat_id = chat_id
        self.min_interval = min_interval
        self.min_step = min_step
        self._clock = clock
        self.message_id: Optional[int] = None
        self.last_update: Optional[float] = None
        self.last_percentage = 0
        self._lock = asyncio.Lock()

    async def start(self, text: str) -> None:
        async with self._lock:
            msg = await self.bot.send_message(self.chat_id, text)
            self.message_id = msg.message_id
            self.last_update = self._clock()

    def _should_update(self, percentage: int, now: float) -> bool:
        if self.last_update is None:
            return True
        is_completion = percentage >= 100
        time_passed = now - self.last_update >= self.min_interval
        significant_change = percentage - self.last_percentage >= self.min_step
        return is_completion or (time_passed and significant_change)

    async def update(self, percentage: int, note: Optional[str] = None) -> bool:
        """Render ``percentage``; returns True if a message was edited or sent."""
        percentage = max(0, min(100, int(percentage)))
        async with self._lock:
            now = self._clock()
            if not self._should_update(percentage, now):
                return False

            self.last_update = now
            self.last_percentage = percentage
            text = render_progress(percentage, note)

            if self.message_id is None:
                return await self._send_new(text)

            try:
                await self.bot.edit_message_text(
                    text=text,
                    chat_id=self.chat_id,
                    message_id=self.message_id,
                )
                return True
            except TelegramAPIError as error:
                error_text = str(error).lower()
                if any(marker in error_text for marker in _INVALIDATED_MARKERS):
                    logger.warning("Progress message invalidated, creating new one")
                    self.message_id = None
                    if percentage < 100:
                        return await self._send_new(text)
                elif "message is not modified" not in error_text:
                    logger.debug("Progress update skipped: %s", error)
                return False

    async def _send_new(self, text: str) -> bool:
        try:
            msg = await self.bot.send_message(self.chat_id, text)
        except TelegramAPIError as error:
            logger.debug("Progress message send failed: %s", error)
            return False
        self.message_id = msg.message_id
        return True

    async def delete(self) -> None:
        async with self._lock:
            if self.message_id is None:
                return
            message_id, self.message_id = self.message_id, None
            try:
                await self.bot.delete_message(chat_id=self.chat_id, message_id=message_id)
            except TelegramAPIError as error:
                error_text = str(error).lower()
                if not any(marker in error_text for marker in _DELETE_IGNORED_MARKERS):
                    logger.debug("Failed to delete progress message: %s", error)


def render_progress(percentage: int, note: Optional[str] = None, bar_length: int = 20) -> str:
    filled = int(percentage / 100 * bar_length)
    bar = "▓" + "█" * filled + "░" * (bar_length - filled) + "▓"
    text = f"🔄 Processing {percentage}% {bar}"
    if note:
        text += f"\n{note}"
    return text
