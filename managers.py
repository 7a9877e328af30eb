"""
Download manager: runs one link from submission to delivery.
"""

import asyncio
import logging
import time
import uuid
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any, Optional, Set, Union

from config import (
    BOT_API_FILE_LIMIT,
    DOWNLOAD_BAND,
    DOWNLOAD_TIMEOUT_SECONDS,
    MAX_ATTEMPTS,
    RATE_LIMIT_SECONDS,
    UPLOAD_CONCURRENCY,
    UPLOAD_TIMEOUT_SECONDS,
    is_admin,
)
from errors import PeerResolutionError, error_manager
from guards import ChatRateLimiter, InFlightLinks, UploadPermits
from models import DownloadTask, Quality, TaskState, Transport
from progress import ProgressBar
from sender import send_with_progress_botapi
from utils import format_file_size, get_file_size, remove_file, retry_with_backoff

logger = logging.getLogger(__name__)

SUBSCRIBED_STATUSES = {"creator", "administrator", "member"}


def choose_transport(file_size: int, limit: int = BOT_API_FILE_LIMIT) -> Transport:
    """Files up to the Bot API limit go direct; anything larger over MTProto."""
    return Transport.MTPROTO if file_size > limit else Transport.BOT_API


class DownloadManager:
    """
    Owns the admission guards and runs each submitted link as its own
    asyncio task: dedup, rate limit, upload permit, subscription gate,
    download, transport selection, upload, activity log, cleanup.
    """

    def __init__(
        self,
        bot: Any,
        fetcher: Any,
        uploader: Any,
        db: Any,
        upload_concurrency: int = UPLOAD_CONCURRENCY,
        rate_limit_seconds: float = RATE_LIMIT_SECONDS,
        download_timeout: float = DOWNLOAD_TIMEOUT_SECONDS,
        upload_timeout: float = UPLOAD_TIMEOUT_SECONDS,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.bot = bot
        self.fetcher = fetcher
        self.uploader = uploader
        self.db = db
        self.download_timeout = download_timeout
        self.upload_timeout = upload_timeout
        self.max_attempts = max_attempts

        self.in_flight = InFlightLinks()
        self.rate_limiter = ChatRateLimiter(rate_limit_seconds)
        self.upload_permits = UploadPermits(upload_concurrency)

        self.task_counter = 0
        self._tasks: Set[asyncio.Task] = set()
        self._accepting = True

    def submit(
        self,
        chat_id: int,
        url: str,
        username: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule processing of ``url``; returns None once shutdown started."""
        if not self._accepting:
            logger.info("Rejecting link for chat %s: shutting down", chat_id)
            return None

        self.task_counter += 1
        task = DownloadTask(
            task_id=self.task_counter,
            chat_id=chat_id,
            url=url,
            username=username,
            user_id=user_id,
        )
        runner = asyncio.create_task(self.process(task), name=f"link-task-{task.task_id}")
        self._tasks.add(runner)
        runner.add_done_callback(self._tasks.discard)
        return runner

    async def process(self, task: DownloadTask) -> DownloadTask:
        """Run ``task`` to a terminal state. Never raises."""
        task.start_ts = time.time()
        try:
            await self._run(task)
        except Exception as error:
            task.state = TaskState.FAILED
            task.error_message = str(error) or type(error).__name__
            logger.error(
                "Link task #%s failed for chat %s url=%s",
                task.task_id,
                task.chat_id,
                task.url,
                exc_info=True,
            )
            await self._notify(task.chat_id, "Failed to process video")
        finally:
            task.end_ts = time.time()
        return task

    async def _run(self, task: DownloadTask) -> None:
        await self._touch_user(task.chat_id)

        task.state = TaskState.DEDUPING
        if not await self.in_flight.claim(task.url):
            logger.info("Duplicate link rejected for chat %s: %s", task.chat_id, task.url)
            task.state = TaskState.FAILED
            task.error_message = "duplicate"
            await self._notify(task.chat_id, error_manager.duplicate_message())
            return

        delivered = False
        async with AsyncExitStack() as cleanup:
            cleanup.push_async_callback(self.in_flight.release, task.url)

            task.state = TaskState.RATE_LIMITED
            await self.rate_limiter.wait(task.chat_id)
            task.quality = await self._quality_for(task.chat_id)

            task.state = TaskState.PERMIT_WAIT
            await cleanup.enter_async_context(self.upload_permits.hold())

            if not await self._passes_subscription_gate(task):
                task.state = TaskState.FAILED
                task.error_message = "subscription required"
                await self._notify(task.chat_id, error_manager.subscription_message())
                return

            progress = ProgressBar(self.bot, task.chat_id)
            cleanup.push_async_callback(progress.delete)
            await progress.start("🎬 Starting...")
            await progress.update(5, "⬇️ Starting download...")

            try:
                task.state = TaskState.DOWNLOADING
                path = await self._download(task, progress)
                if path is not None:
                    task.file_path = str(path)
                    cleanup.callback(remove_file, task.file_path)
                    delivered = await self._deliver(task, progress)
            finally:
                task.state = TaskState.LOGGING
                await self._log_delivery(task, delivered)
                task.state = TaskState.CLEANUP

        task.state = TaskState.DONE if delivered else TaskState.FAILED

    async def _download(self, task: DownloadTask, progress: ProgressBar) -> Optional[Path]:
        """Download with retries; on final failure tell the user and return None."""
        fingerprint = await self.db.get_fingerprint()

        async def attempt() -> Path:
            task.download_attempts += 1
            stem = uuid.uuid4().hex
            return await self.fetcher.download(task.url, stem, task.quality, fingerprint, progress)

        try:
            return await retry_with_backoff(
                attempt,
                attempts=self.max_attempts,
                timeout=self.download_timeout,
                retry_if=error_manager.is_retryable,
                label=f"Download #{task.task_id}",
            )
        except Exception as error:
            task.error_message = str(error) or type(error).__name__
            if error_manager.is_retryable(error):
                logger.error("Download failed for chat %s url=%s", task.chat_id, task.url, exc_info=True)
            else:
                logger.warning("Download failed for chat %s url=%s: %s", task.chat_id, task.url, error)
            await progress.delete()
            await self._notify(task.chat_id, error_manager.download_failure_message(error))
            return None

    async def _deliver(self, task: DownloadTask, progress: ProgressBar) -> bool:
        """Send the downloaded file over the transport its size calls for."""
        task.state = TaskState.TRANSPORT_SELECT
        path = task.file_path
        file_size = get_file_size(path)
        task.transport = choose_transport(file_size)
        logger.info(
            "Task #%s: %s via %s (audio: %s)",
            task.task_id,
            format_file_size(file_size),
            task.transport.value,
            task.is_audio,
        )

        task.state = TaskState.UPLOADING
        if task.transport is Transport.MTPROTO:
            await progress.update(DOWNLOAD_BAND + 5, "📤 Starting upload...")

        async def attempt() -> None:
            task.upload_attempts += 1
            if task.transport is Transport.MTPROTO:
                await self.uploader.upload_file(
                    task.chat_id,
                    task.username,
                    path,
                    "",
                    progress,
                    task.is_audio,
                    timeout=self.upload_timeout,
                )
            else:
                await send_with_progress_botapi(self.bot, task.chat_id, path, task.is_audio, progress)

        # MTProto uploads queue on the shared connection; their timeout
        # starts inside the uploader once the connection is theirs.
        try:
            await retry_with_backoff(
                attempt,
                attempts=self.max_attempts,
                timeout=None if task.transport is Transport.MTPROTO else self.upload_timeout,
                non_retryable=(PeerResolutionError,),
                label=f"Upload #{task.task_id}",
            )
        except Exception as error:
            task.error_message = str(error) or type(error).__name__
            logger.error("Upload failed for chat %s url=%s", task.chat_id, task.url, exc_info=True)
            await progress.delete()
            await self._notify(task.chat_id, error_manager.upload_failure_message(error))
            return False

        await progress.update(100, "✅ Done!")
        await asyncio.sleep(0.5)
        logger.info("File delivered to chat %s via %s", task.chat_id, task.transport.value)
        return True

    async def _passes_subscription_gate(self, task: DownloadTask) -> bool:
        if not await self.db.get_subscription_required():
            return True
        user_id = task.user_id if task.user_id is not None else task.chat_id
        if is_admin(user_id):
            return True

        try:
            channels = await self.db.list_channels()
        except Exception as error:
            logger.error("Failed to load subscription channels: %s", error)
            return False

        for channel_id, channel_name in channels:
            try:
                member = await self.bot.get_chat_member(chat_id=_chat_ref(channel_id), user_id=user_id)
            except Exception as error:
                logger.warning("Subscription check failed for %s in %s: %s", user_id, channel_name, error)
                return False
            if member.status not in SUBSCRIBED_STATUSES:
                return False
        return True

    async def _quality_for(self, chat_id: int) -> Quality:
        try:
            return await self.db.get_user_quality(chat_id)
        except Exception as error:
            logger.error("Failed to read quality preference for %s: %s", chat_id, error)
            return Quality.H265

    async def _touch_user(self, chat_id: int) -> None:
        try:
            await self.db.touch_user(chat_id)
        except Exception as error:
            logger.error("Failed to update user activity: %s", error)

    async def _log_delivery(self, task: DownloadTask, delivered: bool) -> None:
        try:
            await self.db.log_download(task.chat_id, task.url, "delivered" if delivered else "failed")
        except Exception as error:
            logger.error("Failed to log download: %s", error)

    async def _notify(self, chat_id: int, text: str) -> None:
        try:
            await self.bot.send_message(chat_id, text)
        except Exception as error:
            logger.warning("Failed to notify chat %s: %s", chat_id, error)

    def get_active_downloads_count(self) -> int:
        return len(self._tasks)

    async def stop(self) -> None:
        """Stop accepting links and wait for in-flight tasks to finish."""
        self._accepting = False
        pending = list(self._tasks)
        if pending:
            logger.info("Waiting for %s in-flight task(s) to finish", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)


def _chat_ref(channel_id: str) -> Union[int, str]:
    """Numeric ids go to the API as ints, public usernames as strings."""
    return int(channel_id) if channel_id.lstrip("-").isdigit() else channel_id
