"""
Unit tests for the persistent MTProto uploader.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

import uploader as uploader_module
from errors import UploadError
from uploader import MTProtoUploader, is_disconnect_error


class FloodWaitError(Exception):
    def __init__(self, seconds):
        super().__init__(f"A wait of {seconds} seconds is required")
        self.seconds = seconds


@pytest.fixture
def sleeps(monkeypatch):
    recorded = []

    async def fake_sleep(delay):
        recorded.append(delay)

    monkeypatch.setattr(uploader_module.asyncio, "sleep", fake_sleep)
    return recorded


def _make_uploader(client=None):
    uploader = MTProtoUploader(
        bot_token="123:abc",
        api_id=1,
        api_hash="hash",
        session_path="test-session",
    )
    uploader._client = client if client is not None else SimpleNamespace(name="first")
    replacement = SimpleNamespace(name="second")

    async def fake_reconnect():
        uploader._client = replacement

    uploader.reconnect = AsyncMock(side_effect=fake_reconnect)
    return uploader


def test_is_disconnect_error():
    assert is_disconnect_error(ConnectionResetError())
    assert is_disconnect_error(asyncio.IncompleteReadError(b"", 8))
    assert is_disconnect_error(RuntimeError("Server closed the connection: read 0 bytes"))
    assert not is_disconnect_error(ValueError("bad file"))


def test_disconnect_reconnects_and_retries(sleeps):
    uploader = _make_uploader()
    seen = []

    async def operation(client):
        seen.append(client.name)
        if len(seen) == 1:
            raise RuntimeError("read 0 bytes")
        return "sent"

    assert asyncio.run(uploader.with_reconnect_retry(operation)) == "sent"
    assert seen == ["first", "second"]
    uploader.reconnect.assert_awaited_once()
    assert sleeps == [2.0]


def test_other_errors_propagate_immediately(sleeps):
    uploader = _make_uploader()
    operation = AsyncMock(side_effect=ValueError("FILE_PARTS_INVALID"))

    with pytest.raises(ValueError):
        asyncio.run(uploader.with_reconnect_retry(operation))

    assert operation.await_count == 1
    uploader.reconnect.assert_not_awaited()
    assert sleeps == []


def test_flood_wait_sleeps_then_retries(sleeps):
    uploader = _make_uploader()
    operation = AsyncMock(side_effect=[FloodWaitError(5), "sent"])

    assert asyncio.run(uploader.with_reconnect_retry(operation)) == "sent"
    assert sleeps == [5]
    uploader.reconnect.assert_not_awaited()


def test_flood_wait_is_capped(sleeps):
    uploader = _make_uploader()
    operation = AsyncMock(side_effect=[FloodWaitError(3600), "sent"])

    asyncio.run(uploader.with_reconnect_retry(operation))
    assert sleeps == [30]


def test_flood_wait_on_last_attempt_raises(sleeps):
    uploader = _make_uploader()
    operation = AsyncMock(side_effect=FloodWaitError(5))

    with pytest.raises(FloodWaitError):
        asyncio.run(uploader.with_reconnect_retry(operation))
    assert operation.await_count == 3


def test_exhausted_reconnects_raise_upload_error(sleeps):
    uploader = _make_uploader()
    operation = AsyncMock(side_effect=ConnectionResetError("connection reset by peer"))

    with pytest.raises(UploadError, match="Operation failed after retries"):
        asyncio.run(uploader.with_reconnect_retry(operation))

    assert operation.await_count == 3
    assert uploader.reconnect.await_count == 3
    assert sleeps == [2.0, 2.0]


def test_failed_reconnect_on_last_attempt_raises_original(sleeps):
    uploader = _make_uploader()
    uploader.reconnect = AsyncMock(side_effect=OSError("network down"))
    operation = AsyncMock(side_effect=ConnectionResetError("connection lost"))

    with pytest.raises(ConnectionResetError):
        asyncio.run(uploader.with_reconnect_retry(operation))
    assert operation.await_count == 3


def test_upload_file_reports_upload_band():
    progress = SimpleNamespace(update=AsyncMock())

    async def fake_send_file(peer, path, **kwargs):
        await kwargs["progress_callback"](50, 100)

    client = SimpleNamespace(name="first", send_file=AsyncMock(side_effect=fake_send_file))
    uploader = _make_uploader(client)

    asyncio.run(uploader.upload_file(-4242, None, "/tmp/video.mp4", "", progress, False))

    peer = client.send_file.await_args.args[0]
    assert peer.chat_id == 4242
    assert client.send_file.await_args.kwargs["supports_streaming"] is True
    progress.update.assert_awaited_once_with(90, "📤 Uploading...")


def test_keepalive_reconnects_after_failed_ping(monkeypatch):
    calls = {"sleep": 0}

    async def fake_sleep(delay):
        calls["sleep"] += 1
        if calls["sleep"] > 1:
            raise asyncio.CancelledError()

    monkeypatch.setattr(uploader_module.asyncio, "sleep", fake_sleep)
    uploader = _make_uploader(AsyncMock(side_effect=ConnectionError("lost")))

    async def run():
        try:
            await uploader._keepalive_loop()
        except asyncio.CancelledError:
            return "stopped"

    assert asyncio.run(run()) == "stopped"
    uploader.reconnect.assert_awaited_once()


def test_timeout_starts_once_connection_is_free():
    uploader = _make_uploader()
    order = []

    async def slow(client):
        await asyncio.sleep(0.3)
        order.append("slow")

    async def quick(client):
        order.append("quick")
        return "ok"

    async def run():
        first = asyncio.create_task(uploader.with_reconnect_retry(slow, timeout=1.0))
        await asyncio.sleep(0)
        second = await uploader.with_reconnect_retry(quick, timeout=0.2)
        await first
        return second

    assert asyncio.run(run()) == "ok"
    assert order == ["slow", "quick"]


def test_operation_timeout_propagates_without_reconnect():
    uploader = _make_uploader()

    async def hang(client):
        await asyncio.sleep(1)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(uploader.with_reconnect_retry(hang, timeout=0.05))
    uploader.reconnect.assert_not_awaited()
