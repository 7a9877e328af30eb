"""
Configuration for the link delivery bot.
"""

import os
import re
import shutil
from typing import List, Tuple


def require_bot_token() -> str:
    """Return bot token or raise if it is not configured."""
    token = os.getenv("BOT_TOKEN", "").strip()
    if not token:
        raise RuntimeError("Set the BOT_TOKEN environment variable")
    return token


def require_api_credentials() -> Tuple[int, str]:
    """Return MTProto api_id/api_hash or raise if they are not configured."""
    raw_id = os.getenv("TELEGRAM_API_ID", "").strip()
    api_hash = os.getenv("TELEGRAM_API_HASH", "").strip()
    if not raw_id or not api_hash:
        raise RuntimeError("Set TELEGRAM_API_ID and TELEGRAM_API_HASH environment variables")
    try:
        api_id = int(raw_id)
    except ValueError as error:
        raise RuntimeError(f"TELEGRAM_API_ID must be an integer, got {raw_id!r}") from error
    return api_id, api_hash


def get_admin_ids() -> List[int]:
    """Parse ADMIN_IDS, skipping anything that is not an integer."""
    ids: List[int] = []
    for part in os.getenv("ADMIN_IDS", "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            ids.append(int(part))
        except ValueError:
            continue
    return ids


def is_admin(user_id: int) -> bool:
    return user_id in get_admin_ids()


def require_binaries() -> Tuple[str, str, str]:
    """
    Resolve yt-dlp, ffmpeg directory and ffprobe.

    Raises RuntimeError when any of them is missing: the bot cannot serve
    without the extraction tool and ffmpeg.
    """
    ytdlp = YTDLP_PATH or shutil.which("yt-dlp")
    if not ytdlp or not os.path.exists(ytdlp):
        raise RuntimeError("yt-dlp not found; install it or set YTDLP_PATH")

    ffmpeg_dir = FFMPEG_LOCATION
    if not ffmpeg_dir:
        ffmpeg = shutil.which("ffmpeg")
        ffmpeg_dir = os.path.dirname(ffmpeg) if ffmpeg else ""
    if not ffmpeg_dir or not os.path.isdir(ffmpeg_dir):
        raise RuntimeError("ffmpeg not found; install it or set FFMPEG_LOCATION")

    ffprobe = FFPROBE_PATH or shutil.which("ffprobe") or os.path.join(ffmpeg_dir, "ffprobe")
    if not os.path.exists(ffprobe):
        raise RuntimeError("ffprobe not found; install it or set FFPROBE_PATH")

    return ytdlp, ffmpeg_dir, ffprobe


LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILE: str = os.getenv("LOG_FILE", "bot_errors.log")
FILE_LOG_LEVEL: str = os.getenv("FILE_LOG_LEVEL", "OFF")

DATABASE_PATH: str = os.getenv("DATABASE_PATH", "bot.db")
DB_MAX_CONNECTIONS: int = int(os.getenv("DB_MAX_CONNECTIONS", "3"))
DB_TIMEOUT_SECONDS: float = float(os.getenv("DB_TIMEOUT_SECONDS", "10"))
QUALITY_CACHE_SIZE: int = 10_000

OUTPUT_DIR: str = os.getenv("OUTPUT_DIR", "downloads")
SESSION_FILE: str = os.getenv("SESSION_FILE", "uploader")

YTDLP_PATH: str = os.getenv("YTDLP_PATH", "").strip()
FFMPEG_LOCATION: str = os.getenv("FFMPEG_LOCATION", "").strip()
FFPROBE_PATH: str = os.getenv("FFPROBE_PATH", "").strip()

UPLOAD_CONCURRENCY: int = int(os.getenv("UPLOAD_CONCURRENCY", "2"))
RATE_LIMIT_SECONDS: float = 2.0
BOT_API_FILE_LIMIT: int = 48 * 1024 * 1024

MAX_ATTEMPTS: int = 3
BACKOFF_BASE_SECONDS: float = 1.0
BACKOFF_MAX_SECONDS: float = 30.0
DOWNLOAD_TIMEOUT_SECONDS: int = int(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "300"))
UPLOAD_TIMEOUT_SECONDS: int = int(os.getenv("UPLOAD_TIMEOUT_SECONDS", "600"))

KEEPALIVE_INTERVAL_SECONDS: int = 300
RECONNECT_PAUSE_SECONDS: float = 2.0
FLOOD_WAIT_CAP_SECONDS: int = 30

PROGRESS_MIN_INTERVAL_SECONDS: float = 3.0
PROGRESS_MIN_STEP: int = 5
DOWNLOAD_PROGRESS_INTERVAL_SECONDS: float = 0.5
# 0-80% of the bar belongs to the download, 80-100% to the upload.
DOWNLOAD_BAND: int = 80

HEALTH_PORT: int = int(os.getenv("PORT", "10000"))

URL_RE: re.Pattern[str] = re.compile(r"https?://[^\s<>'\"()\[\]{}]+", re.IGNORECASE)

FLOOD_WAIT_RE: re.Pattern[str] = re.compile(r"FLOOD_WAIT_(\d+)")

KNOWN_MEDIA_EXTENSIONS: tuple[str, ...] = (
    ".mp4", ".mov", ".webm", ".mkv", ".flv", ".m4a", ".mp3", ".ogg", ".aac",
)
PARTIAL_EXTENSIONS: tuple[str, ...] = (".part", ".ytdl", ".temp")

SUPPORTED_DOMAINS: List[str] = [
    "tiktok.com",
    "vm.tiktok.com",
    "vt.tiktok.com",
    "m.tiktok.com",
    "youtube.com",
    "youtu.be",
    "instagram.com",
    "twitter.com",
    "x.com",
    "reddit.com",
    "vimeo.com",
    "soundcloud.com",
]
