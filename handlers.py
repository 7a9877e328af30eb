"""
Telegram handlers: commands, quality preference, admin settings and links.
"""

import html
import logging
from typing import Any, Optional

from aiogram import Dispatcher, F
from aiogram.filters import Command
from aiogram.types import CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, Message

from config import is_admin
from managers import DownloadManager
from models import Quality
from utils import find_first_url, is_supported_url, sanitize_user_input, validate_url_input

logger = logging.getLogger(__name__)

QUALITY_HELP = (
    "h265: best quality, but may not work on some devices.\n"
    "h264: worse quality, but works on many devices.\n"
    "audio: audio only"
)
FINGERPRINT_PREFIX = "/setfingerprint-"
CURL_CFFI_HINT = (
    "Make sure <code>curl-cffi</code> is installed:\n\n"
    "<code>pip install yt-dlp[curl-cffi]</code>"
)


class BotHandlers:
    """Registers bot commands and the link-driven delivery flow."""

    def __init__(self, dp: Dispatcher, download_manager: DownloadManager, db: Any, fetcher: Any):
        self.dp = dp
        self.download_manager = download_manager
        self.db = db
        self.fetcher = fetcher
        self._register_handlers()

    def _register_handlers(self) -> None:
        self.dp.message.register(self.handle_start, Command(commands=["start"]))
        self.dp.message.register(self.handle_help, Command(commands=["help"]))
        self.dp.message.register(self.handle_quality_menu, Command(commands=["quality"]))
        self.dp.message.register(self.handle_fingerprint_list, Command(commands=["fingerprint"]))
        self.dp.message.register(self.handle_toggle_subscription, Command(commands=["togglesubscription"]))
        self.dp.message.register(self.handle_add_channel, Command(commands=["addchannel"]))
        self.dp.message.register(self.handle_del_channel, Command(commands=["delchannel"]))
        self.dp.message.register(self.handle_list_channels, Command(commands=["listchannels"]))
        self.dp.message.register(self.handle_set_fingerprint, F.text.startswith(FINGERPRINT_PREFIX))
        self.dp.message.register(self.handle_url_message)
        self.dp.callback_query.register(
            self.handle_quality_callback,
            lambda callback: (callback.data or "").startswith("quality:"),
        )

    async def handle_start(self, message: Message) -> None:
        await self._touch(message)
        await message.answer(
            "👋 Welcome! Send me a TikTok link.\n\n"
            "Use /quality to choose between h265, h264 and audio."
        )

    async def handle_help(self, message: Message) -> None:
        text = (
            "📖 <b>How to use</b>\n\n"
            "1. Send a link to a video.\n"
            "2. Wait for the progress bar to finish.\n\n"
            "/quality - choose output format\n\n"
            f"{html.escape(QUALITY_HELP)}"
        )
        await message.answer(text, parse_mode="HTML")

    async def handle_quality_menu(self, message: Message) -> None:
        keyboard = InlineKeyboardMarkup(
            inline_keyboard=[
                [
                    InlineKeyboardButton(text=quality.value, callback_data=f"quality:{quality.value}")
                    for quality in Quality
                ]
            ]
        )
        await message.answer(QUALITY_HELP, reply_markup=keyboard)

    async def handle_quality_callback(self, callback: CallbackQuery) -> None:
        value = (callback.data or "").split(":", 1)[-1]
        if value not in {quality.value for quality in Quality}:
            await callback.answer("Unknown quality.", show_alert=True)
            return

        try:
            await self.db.set_user_quality(callback.from_user.id, Quality(value))
        except Exception as error:
            logger.error("Failed to update quality preference: %s", error)
            await callback.answer("Failed to update quality preference", show_alert=True)
            return
        await callback.answer(f"Quality set to {value}")

    async def handle_url_message(self, message: Message) -> None:
        text = sanitize_user_input(message.text or "")
        if not text or text.startswith("/"):
            return

        url = find_first_url(text)
        if not url:
            await message.answer("Please send a valid TikTok link.")
            return

        valid, error = validate_url_input(url)
        if not valid:
            await message.answer(f"❌ {error}")
            return

        if not is_supported_url(url):
            await message.answer("❌ This link is not supported.")
            return

        runner = self.download_manager.submit(
            chat_id=message.chat.id,
            url=url,
            username=_username_of(message),
            user_id=message.from_user.id if message.from_user else None,
        )
        if runner is None:
            await message.answer("⏳ The bot is restarting, please try again in a minute.")

    async def handle_fingerprint_list(self, message: Message) -> None:
        if not await self._require_admin(message):
            return
        try:
            targets = await self.fetcher.list_impersonate_targets()
        except Exception as error:
            logger.error("Failed to list impersonate targets: %s", error)
            await message.answer(f"❌ Could not get fingerprint list. {CURL_CFFI_HINT}", parse_mode="HTML")
            return

        if not targets:
            await message.answer(f"❌ No available fingerprints found. {CURL_CFFI_HINT}", parse_mode="HTML")
            return

        lines = ["📱 <b>Available TLS Fingerprints:</b>", ""]
        for target, _description in targets:
            lines.append(f"• <code>{target}</code> - <code>{FINGERPRINT_PREFIX}{target}</code>")
        lines += [
            "",
            "🔓 <b>Disable fingerprint:</b>",
            f"• <code>disable</code> - <code>{FINGERPRINT_PREFIX}disable</code>",
        ]
        current = await self.db.get_fingerprint()
        if current:
            lines += ["", f"Current: <code>{html.escape(current)}</code>"]
        await message.answer("\n".join(lines), parse_mode="HTML")

    async def handle_set_fingerprint(self, message: Message) -> None:
        if not await self._require_admin(message):
            return
        fingerprint = (message.text or "")[len(FINGERPRINT_PREFIX):].strip().lower()

        if fingerprint == "disable":
            await self.db.clear_fingerprint()
            logger.info("TLS fingerprint is disabled.")
            await message.answer("✅ TLS fingerprint has been disabled.")
            return

        try:
            targets = await self.fetcher.list_impersonate_targets()
        except Exception as error:
            logger.error("Failed to list impersonate targets: %s", error)
            await message.answer(f"❌ Could not get fingerprint list. {CURL_CFFI_HINT}", parse_mode="HTML")
            return

        if fingerprint not in {target for target, _ in targets}:
            await message.answer(
                f"❌ Fingerprint <code>{html.escape(fingerprint)}</code> not found. "
                "Use /fingerprint to see the list.",
                parse_mode="HTML",
            )
            return

        await self.db.set_fingerprint(fingerprint)
        logger.info("TLS fingerprint changed to: %s", fingerprint)
        await message.answer(f"✅ TLS fingerprint set to: <code>{fingerprint}</code>.", parse_mode="HTML")

    async def handle_toggle_subscription(self, message: Message) -> None:
        if not await self._require_admin(message):
            return
        enabled = await self.db.toggle_subscription()
        await message.answer(f"✅ Mandatory subscription is now {'enabled' if enabled else 'disabled'}")

    async def handle_add_channel(self, message: Message) -> None:
        if not await self._require_admin(message):
            return
        args = _command_args(message)
        parts = [part.strip() for part in args.split(",", 1)]
        if len(parts) != 2 or not all(parts):
            await message.answer("Usage: /addchannel <id>,<name>")
            return
        await self.db.add_channel(parts[0], parts[1])
        await message.answer(f"✅ Channel '{parts[1]}' added: {parts[0]}")

    async def handle_del_channel(self, message: Message) -> None:
        if not await self._require_admin(message):
            return
        channel_id = _command_args(message).strip()
        if not channel_id:
            await message.answer("Usage: /delchannel <id>")
            return
        if await self.db.delete_channel(channel_id):
            await message.answer(f"✅ Channel deleted: {channel_id}")
        else:
            await message.answer(f"❌ Channel not found: {channel_id}")

    async def handle_list_channels(self, message: Message) -> None:
        if not await self._require_admin(message):
            return
        channels = await self.db.list_channels()
        lines = ["📋 Subscription channels:"]
        lines += [f"- {name} ({channel_id})" for channel_id, name in channels]
        await message.answer("\n".join(lines))

    async def _require_admin(self, message: Message) -> bool:
        if message.from_user is not None and is_admin(message.from_user.id):
            return True
        await message.answer("❌ This command is for admins only.")
        return False

    async def _touch(self, message: Message) -> None:
        try:
            await self.db.touch_user(message.chat.id)
        except Exception as error:
            logger.error("Failed to update user activity: %s", error)


def _command_args(message: Message) -> str:
    parts = (message.text or "").split(maxsplit=1)
    return parts[1] if len(parts) > 1 else ""


def _username_of(message: Message) -> Optional[str]:
    """Username used to address the chat over MTProto."""
    username = getattr(message.chat, "username", None)
    if username:
        return username
    if message.from_user is not None:
        return message.from_user.username
    return None
