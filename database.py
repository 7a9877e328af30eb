"""
SQLite storage behind a small bounded connection pool.
"""

import asyncio
import logging
import sqlite3
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from config import DB_MAX_CONNECTIONS, DB_TIMEOUT_SECONDS, QUALITY_CACHE_SIZE
from models import Quality

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    telegram_id INTEGER PRIMARY KEY,
    quality_preference TEXT NOT NULL DEFAULT 'h265',
    last_active TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS downloads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_telegram_id INTEGER NOT NULL,
    video_url TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'delivered',
    download_date TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
CREATE TABLE IF NOT EXISTS channels (
    channel_id TEXT PRIMARY KEY,
    channel_name TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
INSERT OR IGNORE INTO settings (key, value) VALUES ('subscription_required', 'false');
"""


def init_database(path: str) -> None:
    """Create tables and default settings."""
    conn = sqlite3.connect(path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


class DatabasePool:
    """
    Runs units of work against SQLite in the thread-pool executor.

    At most ``max_connections`` units run at once; each gets its own
    connection, committed on success and rolled back on error.
    """

    def __init__(
        self,
        path: str,
        max_connections: int = DB_MAX_CONNECTIONS,
        timeout: float = DB_TIMEOUT_SECONDS,
        cache_size: int = QUALITY_CACHE_SIZE,
    ):
        self.path = path
        self.timeout = timeout
        self._slots = asyncio.Semaphore(max(1, max_connections))
        self.cache_size = max(1, cache_size)
        self._quality_cache: Dict[int, Quality] = {}
        self._cache_lock = asyncio.Lock()

    def _run(self, unit_of_work: Callable[[sqlite3.Connection], T]) -> T:
        conn = sqlite3.connect(self.path, timeout=self.timeout)
        try:
            result = unit_of_work(conn)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    async def execute_with_timeout(
        self,
        unit_of_work: Callable[[sqlite3.Connection], T],
        timeout: Optional[float] = None,
    ) -> T:
        """
        Run ``unit_of_work`` on its own connection in the executor.

        The slot is held until the worker thread finishes, not until the
        caller stops waiting: a timed-out unit keeps its connection open, so
        it keeps counting against ``max_connections``.
        """
        await self._slots.acquire()
        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(None, self._run, unit_of_work)
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        return await asyncio.wait_for(asyncio.shield(future), timeout=timeout or self.timeout)

    async def touch_user(self, user_id: int) -> None:
        def work(conn: sqlite3.Connection) -> None:
            conn.execute("INSERT OR IGNORE INTO users (telegram_id) VALUES (?)", (user_id,))
            conn.execute(
                "UPDATE users SET last_active = CURRENT_TIMESTAMP WHERE telegram_id = ?",
                (user_id,),
            )

        await self.execute_with_timeout(work)

    async def log_download(self, user_id: int, url: str, status: str) -> None:
        """Ensure the user row exists and append a delivery record."""
        def work(conn: sqlite3.Connection) -> None:
            conn.execute("INSERT OR IGNORE INTO users (telegram_id) VALUES (?)", (user_id,))
            conn.execute(
                "UPDATE users SET last_active = CURRENT_TIMESTAMP WHERE telegram_id = ?",
                (user_id,),
            )
            conn.execute(
                "INSERT INTO downloads (user_telegram_id, video_url, status) VALUES (?, ?, ?)",
                (user_id, url, status),
            )

        await self.execute_with_timeout(work)

    async def get_user_quality(self, user_id: int) -> Quality:
        async with self._cache_lock:
            cached = self._quality_cache.get(user_id)
        if cached is not None:
            return cached

        def work(conn: sqlite3.Connection) -> Optional[str]:
            row = conn.execute(
                "SELECT quality_preference FROM users WHERE telegram_id = ?", (user_id,)
            ).fetchone()
            return row[0] if row else None

        quality = Quality.from_value(await self.execute_with_timeout(work))
        async with self._cache_lock:
            if len(self._quality_cache) >= self.cache_size:
                # evict the oldest insertion
                self._quality_cache.pop(next(iter(self._quality_cache)))
            self._quality_cache[user_id] = quality
        return quality

    async def set_user_quality(self, user_id: int, quality: Quality) -> None:
        def work(conn: sqlite3.Connection) -> None:
            conn.execute("INSERT OR IGNORE INTO users (telegram_id) VALUES (?)", (user_id,))
            conn.execute(
                "UPDATE users SET quality_preference = ? WHERE telegram_id = ?",
                (quality.value, user_id),
            )

        await self.execute_with_timeout(work)
        await self.invalidate_user_quality_cache(user_id)

    async def invalidate_user_quality_cache(self, user_id: int) -> None:
        async with self._cache_lock:
            self._quality_cache.pop(user_id, None)

    async def get_setting(self, key: str) -> Optional[str]:
        def work(conn: sqlite3.Connection) -> Optional[str]:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            return row[0] if row else None

        return await self.execute_with_timeout(work)

    async def set_setting(self, key: str, value: str) -> None:
        await self.execute_with_timeout(
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value)
            )
        )

    async def delete_setting(self, key: str) -> None:
        await self.execute_with_timeout(
            lambda conn: conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        )

    async def get_subscription_required(self) -> bool:
        """Read the gate flag; an unreadable flag keeps the gate closed."""
        try:
            value = await self.get_setting("subscription_required")
        except Exception as error:
            logger.error("Failed to read subscription setting: %s", error)
            return True
        if value is None:
            return True
        return value == "true"

    async def toggle_subscription(self) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            row = conn.execute(
                "SELECT value FROM settings WHERE key = 'subscription_required'"
            ).fetchone()
            new_value = not (row is not None and row[0] == "true")
            conn.execute(
                "INSERT OR REPLACE INTO settings (key, value) VALUES ('subscription_required', ?)",
                ("true" if new_value else "false",),
            )
            return new_value

        return await self.execute_with_timeout(work)

    async def get_fingerprint(self) -> Optional[str]:
        try:
            return await self.get_setting("tls_fingerprint")
        except Exception as error:
            logger.error("Failed to read TLS fingerprint: %s", error)
            return None

    async def set_fingerprint(self, fingerprint: str) -> None:
        await self.set_setting("tls_fingerprint", fingerprint)

    async def clear_fingerprint(self) -> None:
        await self.delete_setting("tls_fingerprint")

    async def list_channels(self) -> List[Tuple[str, str]]:
        def work(conn: sqlite3.Connection) -> List[Tuple[str, str]]:
            rows = conn.execute("SELECT channel_id, channel_name FROM channels ORDER BY channel_name")
            return [(str(channel_id), name) for channel_id, name in rows.fetchall()]

        return await self.execute_with_timeout(work)

    async def add_channel(self, channel_id: str, name: str) -> None:
        await self.execute_with_timeout(
            lambda conn: conn.execute(
                "INSERT OR REPLACE INTO channels (channel_id, channel_name) VALUES (?, ?)",
                (channel_id, name),
            )
        )

    async def delete_channel(self, channel_id: str) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute("DELETE FROM channels WHERE channel_id = ?", (channel_id,))
            return cursor.rowcount > 0

        return await self.execute_with_timeout(work)
