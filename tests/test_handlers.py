"""
Unit tests for handler flow.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from aiogram import Dispatcher

from handlers import BotHandlers
from models import Quality


class _StubDownloadManager:
    def __init__(self, accepting=True):
        self.submit = MagicMock(return_value=object() if accepting else None)


def _make_handlers(accepting=True):
    manager = _StubDownloadManager(accepting)
    db = SimpleNamespace(
        set_user_quality=AsyncMock(),
        touch_user=AsyncMock(),
        toggle_subscription=AsyncMock(return_value=True),
        add_channel=AsyncMock(),
        delete_channel=AsyncMock(return_value=True),
        list_channels=AsyncMock(return_value=[("-1001", "News")]),
        get_fingerprint=AsyncMock(return_value=None),
        set_fingerprint=AsyncMock(),
        clear_fingerprint=AsyncMock(),
    )
    fetcher = SimpleNamespace(
        list_impersonate_targets=AsyncMock(return_value=[("chrome:windows-10", "Chrome Windows-10 curl_cffi")])
    )
    handlers = BotHandlers(dp=Dispatcher(), download_manager=manager, db=db, fetcher=fetcher)
    return handlers, manager, db


def _message(text, user_id=1001, username="alice"):
    return SimpleNamespace(
        text=text,
        chat=SimpleNamespace(id=user_id, username=username),
        from_user=SimpleNamespace(id=user_id, username=username),
        answer=AsyncMock(),
    )


def test_url_message_submits_task():
    handlers, manager, _ = _make_handlers()
    message = _message("look at this https://vm.tiktok.com/ZMabc/ wow")

    asyncio.run(handlers.handle_url_message(message))

    manager.submit.assert_called_once_with(
        chat_id=1001,
        url="https://vm.tiktok.com/ZMabc/",
        username="alice",
        user_id=1001,
    )
    message.answer.assert_not_awaited()


def test_message_without_url_gets_hint():
    handlers, manager, _ = _make_handlers()
    message = _message("hello there")

    asyncio.run(handlers.handle_url_message(message))

    manager.submit.assert_not_called()
    message.answer.assert_awaited_once_with("Please send a valid TikTok link.")


def test_unsupported_link_is_rejected():
    handlers, manager, _ = _make_handlers()
    message = _message("https://unsupported-site.com/video")

    asyncio.run(handlers.handle_url_message(message))

    manager.submit.assert_not_called()
    assert "not supported" in message.answer.await_args.args[0]


def test_url_during_shutdown_reports_restart():
    handlers, manager, _ = _make_handlers(accepting=False)
    message = _message("https://vm.tiktok.com/ZMabc/")

    asyncio.run(handlers.handle_url_message(message))

    manager.submit.assert_called_once()
    assert "restarting" in message.answer.await_args.args[0]


def test_quality_callback_stores_preference():
    handlers, _, db = _make_handlers()
    callback = SimpleNamespace(
        data="quality:h264",
        from_user=SimpleNamespace(id=1001),
        answer=AsyncMock(),
    )

    asyncio.run(handlers.handle_quality_callback(callback))

    db.set_user_quality.assert_awaited_once_with(1001, Quality.H264)
    callback.answer.assert_awaited_once_with("Quality set to h264")


def test_quality_callback_rejects_unknown_value():
    handlers, _, db = _make_handlers()
    callback = SimpleNamespace(
        data="quality:8k",
        from_user=SimpleNamespace(id=1001),
        answer=AsyncMock(),
    )

    asyncio.run(handlers.handle_quality_callback(callback))

    db.set_user_quality.assert_not_awaited()
    callback.answer.assert_awaited_once_with("Unknown quality.", show_alert=True)


def test_admin_command_rejects_regular_user(monkeypatch):
    monkeypatch.setenv("ADMIN_IDS", "42")
    handlers, _, db = _make_handlers()
    message = _message("/togglesubscription", user_id=1001)

    asyncio.run(handlers.handle_toggle_subscription(message))

    db.toggle_subscription.assert_not_awaited()
    message.answer.assert_awaited_once_with("❌ This command is for admins only.")


def test_admin_can_add_channel(monkeypatch):
    monkeypatch.setenv("ADMIN_IDS", "42")
    handlers, _, db = _make_handlers()
    message = _message("/addchannel -1001234,My Channel", user_id=42)

    asyncio.run(handlers.handle_add_channel(message))

    db.add_channel.assert_awaited_once_with("-1001234", "My Channel")


def test_admin_sets_known_fingerprint(monkeypatch):
    monkeypatch.setenv("ADMIN_IDS", "42")
    handlers, _, db = _make_handlers()
    message = _message("/setfingerprint-chrome:windows-10", user_id=42)

    asyncio.run(handlers.handle_set_fingerprint(message))

    db.set_fingerprint.assert_awaited_once_with("chrome:windows-10")


def test_admin_rejects_unknown_fingerprint(monkeypatch):
    monkeypatch.setenv("ADMIN_IDS", "42")
    handlers, _, db = _make_handlers()
    message = _message("/setfingerprint-netscape", user_id=42)

    asyncio.run(handlers.handle_set_fingerprint(message))

    db.set_fingerprint.assert_not_awaited()
    assert "not found" in message.answer.await_args.args[0]


def test_admin_disables_fingerprint(monkeypatch):
    monkeypatch.setenv("ADMIN_IDS", "42")
    handlers, _, db = _make_handlers()
    message = _message("/setfingerprint-disable", user_id=42)

    asyncio.run(handlers.handle_set_fingerprint(message))

    db.clear_fingerprint.assert_awaited_once()
