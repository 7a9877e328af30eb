"""
Entry point for the link delivery bot.
"""

import asyncio
import logging
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage
from aiohttp import web
from dotenv import load_dotenv

load_dotenv()

import config  # noqa: E402  (reads the environment populated above)
from database import DatabasePool, init_database  # noqa: E402
from errors import setup_logging  # noqa: E402
from extractor import YoutubeFetcher  # noqa: E402
from handlers import BotHandlers  # noqa: E402
from managers import DownloadManager  # noqa: E402
from uploader import MTProtoUploader  # noqa: E402

shutdown_event = asyncio.Event()


async def start_health_server(download_manager: DownloadManager) -> None:
    """Serve liveness probes with the number of links in flight."""
    app = web.Application()

    async def health(request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "active_tasks": download_manager.get_active_downloads_count(),
                "links_in_flight": len(download_manager.in_flight),
                "uploads_in_use": download_manager.upload_permits.in_use,
            }
        )

    app.router.add_get("/", health)
    app.router.add_get("/health", health)

    runner = web.AppRunner(app)
    await runner.setup()

    host = "0.0.0.0"
    site = web.TCPSite(runner, host=host, port=config.HEALTH_PORT)
    await site.start()
    logging.getLogger(__name__).info("Health server started on %s:%s", host, config.HEALTH_PORT)

    try:
        await shutdown_event.wait()
    finally:
        await runner.cleanup()


async def main() -> None:
    logger = setup_logging(
        level=config.LOG_LEVEL,
        format_string=config.LOG_FORMAT,
        log_file=config.LOG_FILE,
        file_level=config.FILE_LOG_LEVEL,
    )
    logger.info("Starting link delivery bot")

    try:
        bot_token = config.require_bot_token()
        api_id, api_hash = config.require_api_credentials()
        ytdlp_path, ffmpeg_dir, ffprobe_path = config.require_binaries()
        init_database(config.DATABASE_PATH)
    except Exception:
        logger.exception("Fatal configuration error")
        sys.exit(1)

    logger.info("yt-dlp: %s, ffmpeg dir: %s, ffprobe: %s", ytdlp_path, ffmpeg_dir, ffprobe_path)

    bot = None
    uploader = None
    download_manager = None
    health_server_task = None
    try:
        uploader = MTProtoUploader(
            bot_token=bot_token,
            api_id=api_id,
            api_hash=api_hash,
            session_path=config.SESSION_FILE,
            ffprobe_path=ffprobe_path,
        )
        await uploader.start()

        bot = Bot(token=bot_token, default=DefaultBotProperties())
        dispatcher = Dispatcher(storage=MemoryStorage())
        db = DatabasePool(config.DATABASE_PATH)
        fetcher = YoutubeFetcher(ytdlp_path, config.OUTPUT_DIR, ffmpeg_dir)

        download_manager = DownloadManager(bot=bot, fetcher=fetcher, uploader=uploader, db=db)
        BotHandlers(dp=dispatcher, download_manager=download_manager, db=db, fetcher=fetcher)

        health_server_task = asyncio.create_task(start_health_server(download_manager))
        logger.info("Starting to dispatch updates...")
        await dispatcher.start_polling(bot)
        logger.info(
            "Polling stopped, shutting down with %s task(s) in flight...",
            download_manager.get_active_downloads_count(),
        )
    except Exception:
        logger.exception("Fatal startup/runtime error")
        sys.exit(1)
    finally:
        if download_manager is not None:
            await download_manager.stop()
        shutdown_event.set()
        if health_server_task is not None:
            try:
                await health_server_task
            except Exception:
                logger.debug("Health server shutdown failed", exc_info=True)
        if uploader is not None:
            await uploader.close()
        if bot is not None:
            await bot.session.close()
        logger.info("Bot shutdown complete")


if __name__ == "__main__":
    asyncio.run(main())
