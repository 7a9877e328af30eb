"""
Direct Bot API delivery for files under the Bot API size limit.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from aiogram.exceptions import TelegramBadRequest
from aiogram.types import FSInputFile

from config import DOWNLOAD_BAND

logger = logging.getLogger(__name__)


async def send_with_progress_botapi(
    bot: Any,
    chat_id: int,
    filepath: str,
    is_audio: bool,
    progress: Any = None,
    caption: Optional[str] = None,
) -> None:
    """
    Upload ``filepath`` through the Bot API.

    Falls back to sending a document when Telegram rejects the file as
    video or audio. Other errors propagate so the caller can retry. The
    caller renders completion.
    """
    if progress is not None:
        await progress.update(DOWNLOAD_BAND + 5, "📤 Sending file...")

    file = FSInputFile(filepath, filename=Path(filepath).name)
    try:
        if is_audio:
            await bot.send_audio(chat_id=chat_id, audio=file, caption=caption)
        else:
            await bot.send_video(chat_id=chat_id, video=file, caption=caption, supports_streaming=True)
    except TelegramBadRequest as error:
        logger.warning("Media send rejected for chat %s, sending as document: %s", chat_id, error)
        await bot.send_document(chat_id=chat_id, document=FSInputFile(filepath), caption=caption)

    logger.info("File sent via Bot API to chat %s (audio: %s)", chat_id, is_audio)
