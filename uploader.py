"""
Persistent MTProto connection used for files above the Bot API limit.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from telethon import TelegramClient
from telethon.tl.functions.updates import GetStateRequest
from telethon.tl.types import DocumentAttributeAudio, DocumentAttributeVideo

from config import (
    DOWNLOAD_BAND,
    KEEPALIVE_INTERVAL_SECONDS,
    MAX_ATTEMPTS,
    RECONNECT_PAUSE_SECONDS,
)
from errors import UploadError, flood_wait_delay
from extractor import probe_media
from peers import resolve_peer

logger = logging.getLogger(__name__)

T = TypeVar("T")

APP_VERSION = "1.0.0"

_DISCONNECT_MARKERS = (
    "read 0 bytes",
    "connectionreset",
    "connection reset",
    "connection lost",
)


def is_disconnect_error(error: BaseException) -> bool:
    """True when the error means the MTProto connection went away."""
    if isinstance(error, (ConnectionError, asyncio.IncompleteReadError)):
        return True
    text = f"{type(error).__name__}: {error}".lower()
    return any(marker in text for marker in _DISCONNECT_MARKERS)


class MTProtoUploader:
    """
    Owns the single authenticated client.

    ``self._client`` is a slot: reconnection replaces the client in place
    under ``self._lock``, so every caller goes through the uploader and
    never keeps its own reference to a stale client.
    """

    def __init__(
        self,
        bot_token: str,
        api_id: int,
        api_hash: str,
        session_path: str,
        ffprobe_path: Optional[str] = None,
        max_attempts: int = MAX_ATTEMPTS,
        keepalive_interval: float = KEEPALIVE_INTERVAL_SECONDS,
        reconnect_pause: float = RECONNECT_PAUSE_SECONDS,
    ):
        self.bot_token = bot_token
        self.api_id = api_id
        self.api_hash = api_hash
        self.session_path = session_path
        self.ffprobe_path = ffprobe_path
        self.max_attempts = max_attempts
        self.keepalive_interval = keepalive_interval
        self.reconnect_pause = reconnect_pause
        self._client: Optional[Any] = None
        self._lock = asyncio.Lock()
        self._keepalive_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Connect, authorize and start the keep-alive loop."""
        async with self._lock:
            self._client = await self._open_client()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        logger.info("MTProto uploader connected")

    async def close(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            try:
                await self._keepalive_task
            except asyncio.CancelledError:
                pass
            self._keepalive_task = None
        async with self._lock:
            if self._client is not None:
                await self._disconnect(self._client)
                self._client = None

    async def _open_client(self) -> Any:
        """Load or create the session, connect and sign in as the bot."""
        client = TelegramClient(
            self.session_path,
            self.api_id,
            self.api_hash,
            device_model="Desktop",
            system_version="Windows 10",
            app_version=APP_VERSION,
            lang_code="en",
            system_lang_code="en",
            flood_sleep_threshold=60,
            receive_updates=False,
        )
        await client.connect()
        if not await client.is_user_authorized():
            await client.sign_in(bot_token=self.bot_token)
        client.session.save()
        return client

    @staticmethod
    async def _disconnect(client: Any) -> None:
        try:
            await client.disconnect()
        except Exception as error:
            logger.debug("Disconnect of old client failed: %s", error)

    async def reconnect(self) -> None:
        """Replace the client in the slot with a freshly connected one."""
        async with self._lock:
            old_client = self._client
            if old_client is not None:
                await self._disconnect(old_client)
            self._client = await self._open_client()

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keepalive_interval)
            try:
                async with self._lock:
                    if self._client is None:
                        raise ConnectionError("client slot is empty")
                    await self._client(GetStateRequest())
                logger.debug("Keep-alive ping successful")
            except asyncio.CancelledError:
                raise
            except Exception as error:
                logger.error("Keep-alive ping failed: %r, reconnecting...", error)
                try:
                    await self.reconnect()
                    logger.info("Client reconnected successfully")
                except Exception as reconnect_error:
                    logger.error("Reconnection failed: %r", reconnect_error)

    async def with_reconnect_retry(
        self,
        operation: Callable[[Any], Awaitable[T]],
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run ``operation(client)`` with exclusive use of the client.

        ``timeout`` starts once the lock is held, so callers queued behind
        another upload keep their full budget. Disconnects trigger a
        reconnect and another attempt; flood waits sleep for the capped wait
        and retry; anything else propagates.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self._lock:
                    if self._client is None:
                        raise ConnectionError("Connection lost: client slot is empty")
                    return await asyncio.wait_for(operation(self._client), timeout=timeout)
            except Exception as error:
                flood_delay = flood_wait_delay(error)
                if flood_delay is not None:
                    if attempt == self.max_attempts:
                        raise
                    logger.warning(
                        "Flood wait on MTProto call, sleeping %ss (attempt %s/%s)",
                        flood_delay,
                        attempt,
                        self.max_attempts,
                    )
                    await asyncio.sleep(flood_delay)
                    continue

                if not is_disconnect_error(error):
                    raise

                logger.warning(
                    "Connection lost, reconnecting... (attempt %s/%s)", attempt, self.max_attempts
                )
                try:
                    await self.reconnect()
                except Exception as reconnect_error:
                    logger.error("Reconnection failed: %r", reconnect_error)
                    if attempt == self.max_attempts:
                        raise error
                    continue

                logger.info("Client reconnected successfully")
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.reconnect_pause)

        raise UploadError("Operation failed after retries")

    async def upload_file(
        self,
        chat_id: int,
        username: Optional[str],
        path: str,
        caption: str = "",
        progress: Any = None,
        is_audio: bool = False,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Resolve the recipient and send ``path`` as video or audio.

        ``timeout`` bounds the media inspection and each send separately; time spent
        waiting for the shared connection is not counted.
        """
        attributes = await asyncio.wait_for(self._attributes_for(path, is_audio), timeout=timeout)

        async def report(sent: int, total: int) -> None:
            if progress is None or not total:
                return
            share = DOWNLOAD_BAND + int(sent / total * (100 - DOWNLOAD_BAND))
            await progress.update(min(share, 99), "📤 Uploading...")

        async def send(client: Any) -> None:
            peer = await resolve_peer(client, chat_id, username)
            await client.send_file(
                peer,
                path,
                caption=caption,
                attributes=attributes,
                supports_streaming=not is_audio,
                progress_callback=report,
            )

        await self.with_reconnect_retry(send, timeout=timeout)
        logger.info("MTProto upload finished for chat %s: %s", chat_id, path)

    async def _attributes_for(self, path: str, is_audio: bool) -> list:
        if not self.ffprobe_path:
            return []
        info = await probe_media(self.ffprobe_path, path)
        if is_audio:
            return [DocumentAttributeAudio(duration=info.duration)]
        if info.width and info.height:
            return [
                DocumentAttributeVideo(
                    duration=info.duration,
                    w=info.width,
                    h=info.height,
                    supports_streaming=True,
                )
            ]
        return []
