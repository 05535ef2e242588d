import asyncio
from datetime import datetime
import html
from io import BytesIO
import logging
import os
from typing import List, Optional

import psutil
import qrcode
from aiohttp import ClientError
from telegram import InlineKeyboardButton, InlineKeyboardMarkup, InputFile, Update
from telegram.constants import ParseMode
from telegram.ext import Application, CallbackContext, CallbackQueryHandler, CommandHandler

from access import AccessLedger, PENDING, REJECTED
from advanced_config import MONITOR_SETTINGS, PATH_SETTINGS
from config import (
    ADMIN_IDS, AUTH_SETTINGS, BOT_TOKEN, DATABASE_URL, LINK_SETTINGS, MESSAGES,
    PEER_DEFAULTS, TIMEZONE, WGDASHBOARD_CONFIG
)
from database import Database, now_ms
from exceptions import (
    AlreadyApproved, InvalidConfigFormat, RequestAlreadyPending, StorageFault, UpstreamUnavailable
)
from maintenance import CleanupManager
from security import admin_only, parse_user_id, rate_limit
from share_links import ShareLinkLedger
from wgdashboard import WGDashboard
import web

# Configure logging
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
logging.basicConfig(
    format=LOG_FORMAT,
    level=logging.INFO
)
logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


def setup_file_logging(log_dir: str = PATH_SETTINGS["log_dir"]) -> List[logging.Handler]:
    """Write errors to error.log and everything from INFO up to combined.log."""
    os.makedirs(log_dir, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)
    root = logging.getLogger()
    handlers = []
    for filename, level in (("error.log", logging.ERROR), ("combined.log", logging.INFO)):
        handler = logging.FileHandler(os.path.join(log_dir, filename), encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)
        handlers.append(handler)
    return handlers


def format_time(ms: Optional[int]) -> str:
    if not ms:
        return '-'
    return datetime.fromtimestamp(ms / 1000, TIMEZONE).strftime('%Y-%m-%d %H:%M')


def split_message(text: str, limit: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """Split on line boundaries so every chunk fits in one Telegram message."""
    chunks, current = [], ''
    for line in text.split('\n'):
        if current and len(current) + len(line) + 1 > limit:
            chunks.append(current)
            current = ''
        current = f"{current}\n{line}" if current else line
    if current:
        chunks.append(current)
    return chunks


def render_qr(config: str) -> Optional[BytesIO]:
    try:
        qr = qrcode.QRCode()
        qr.add_data(config)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer)
        buffer.seek(0)
        return buffer
    except Exception as e:
        logger.error(f"Failed to render QR code: {e}")
        return None


def user_label(first_name=None, last_name=None, username=None) -> str:
    parts = [first_name, last_name, f"@{username}" if username else None]
    return html.escape(' '.join(part for part in parts if part) or 'unknown')


class ErrorHandler:
    async def handle_error(self, update: object, context: CallbackContext):
        logger.error("Unhandled error in update handler", exc_info=context.error)
        try:
            if isinstance(update, Update) and update.effective_message:
                await update.effective_message.reply_text(MESSAGES["generic_error"])
        except Exception as e:
            logger.error(f"Error in error handler: {e}")


class VPNBot:
    def __init__(self, db: Database = None, dashboard: WGDashboard = None):
        self.db = db or Database(DATABASE_URL)
        self.dashboard = dashboard or WGDashboard(
            WGDASHBOARD_CONFIG["url"],
            WGDASHBOARD_CONFIG["api_key"],
            WGDASHBOARD_CONFIG["config_name"],
            peer_defaults=PEER_DEFAULTS
        )
        self.links = ShareLinkLedger(self.db)
        self.access = AccessLedger(
            self.db,
            AUTH_SETTINGS["mode"],
            ADMIN_IDS,
            AUTH_SETTINGS["allowed_user_ids"]
        )
        self.error_handler = ErrorHandler()
        self.cleanup_manager = CleanupManager(self.links)
        self.system_monitor = SystemMonitor(self)
        self.application = None
        self._tasks = []
        self._web_runner = None

    async def initialize(self):
        """Check the panel and start background tasks"""
        if await self.dashboard.handshake():
            logger.info("WGDashboard handshake succeeded")
        else:
            logger.warning("WGDashboard handshake failed, continuing anyway")

        self._tasks.append(asyncio.create_task(self.cleanup_manager.start_cleanup()))
        self._tasks.append(asyncio.create_task(self.system_monitor.start_monitoring()))
        self._web_runner = await web.start_server(self.links, self.dashboard, self.db)

    async def shutdown(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._web_runner is not None:
            await self._web_runner.cleanup()
            self._web_runner = None
        await self.dashboard.close()
        self.db.close()

    async def notify_admins(self, text: str, reply_markup=None):
        if self.application is None:
            return
        for admin_id in self.access.admin_ids:
            try:
                await self.application.bot.send_message(
                    admin_id, text, parse_mode=ParseMode.HTML, reply_markup=reply_markup
                )
            except Exception as e:
                logger.error(f"Failed to notify admin {admin_id}: {e}")

    async def notify_user(self, user_id: int, text: str):
        if self.application is None:
            return
        try:
            await self.application.bot.send_message(user_id, text, parse_mode=ParseMode.HTML)
        except Exception as e:
            logger.error(f"Failed to notify user {user_id}: {e}")

    # Orchestration

    async def issue_config(self, user_id: int, username: str):
        """Create a peer, fetch its client config and issue a share link for it.

        Returns ``(peer, config, link)``; ``link`` is None when the link could
        not be stored, the config itself is still usable.
        """
        peer_name = f"TG_{username}_{now_ms()}"
        peer = await self.dashboard.create_peer(name=peer_name)
        if peer is None or not peer.id:
            raise UpstreamUnavailable(f"Could not create peer {peer_name}")

        config = None
        embedded_invalid = False
        if peer.config:
            config = self.dashboard.prepare_config(peer.config)
            embedded_invalid = config is None
        if config is None:
            config = await self.dashboard.download_peer_config(peer.id)
        if config is None:
            if embedded_invalid:
                raise InvalidConfigFormat(f"Panel returned no client config for peer {peer.id}")
            raise UpstreamUnavailable(f"Config for peer {peer.id} is unavailable")

        try:
            link = self.links.create_link(
                peer.id,
                LINK_SETTINGS["expiry_hours"],
                LINK_SETTINGS["max_usage"],
                user_id=user_id,
                created_by="telegram"
            )
        except StorageFault as e:
            logger.error(f"Could not store share link for peer {peer.id}: {e}")
            link = None

        logger.info(f"Config issued: user={user_id} peer={peer.id} link={link.id if link else None}")
        return peer, config, link

    def _denied_message(self, user_id: int) -> str:
        message = "🔒 <b>Access restricted</b>\n\n"
        mode = self.access.auth_mode
        if mode == 'admin_approval':
            request = self.access.get_access_request(user_id)
            if request is not None and request.status == PENDING:
                message += "Your request is under review.\nPlease wait for an administrator to approve it."
            elif request is not None and request.status == REJECTED:
                message += "Your request was rejected.\nContact an administrator to get access."
            else:
                message += "To get access, send a request:\n/request_access"
        elif mode == 'whitelist':
            message += "You do not have access to this feature.\nContact an administrator."
        else:
            message += "This feature is available to administrators only."
        return message

    # User commands

    async def start(self, update: Update, context: CallbackContext):
        """Start command handler"""
        text = MESSAGES["welcome"]
        if self.access.is_admin(update.effective_user.id):
            text += (
                "\n\nAdmin commands:\n"
                "/pending - pending access requests\n"
                "/approve &lt;id&gt; /reject &lt;id&gt; /revoke &lt;id&gt;\n"
                "/approved - approved users\n"
                "/links - active share links\n"
                "/stats - access statistics"
            )
        await update.message.reply_text(text, parse_mode=ParseMode.HTML)

    @rate_limit()
    async def get_config(self, update: Update, context: CallbackContext):
        user = update.effective_user
        message = update.effective_message
        logger.info(f"Config request received from {user.id}")

        if not self.access.can_get_config(user.id):
            logger.info(f"Config request denied: user={user.id} mode={self.access.auth_mode}")
            await message.reply_text(self._denied_message(user.id), parse_mode=ParseMode.HTML)
            return

        status = await message.reply_text("⏳ Creating your configuration...")
        try:
            peer, config, link = await self.issue_config(user.id, user.username or user.first_name or 'User')
        except InvalidConfigFormat as e:
            logger.error(f"Invalid config for user {user.id}: {e}")
            await status.edit_text("❌ The VPN panel returned an unusable configuration. Please contact an administrator.")
            return
        except UpstreamUnavailable as e:
            logger.error(f"Upstream unavailable for user {user.id}: {e}")
            await status.edit_text("❌ Could not create a configuration. Please try again later.")
            return
        except Exception as e:
            logger.exception(f"Error handling config request for user {user.id}: {e}")
            await status.edit_text(MESSAGES["generic_error"])
            return

        await status.delete()

        text = (
            "✅ <b>Configuration created!</b>\n\n"
            f"<b>Name:</b> <code>{html.escape(peer.name)}</code>\n"
            f"<b>ID:</b> <code>{html.escape(peer.id)}</code>\n\n"
            "1️⃣ Scan the QR code below in the WireGuard app\n"
            "2️⃣ Or import the configuration file"
        )
        if link is not None:
            text += (
                f"\n3️⃣ Or download it via this link (valid until {format_time(link.expires_at)}, "
                f"{link.max_usage_count} uses):\n{html.escape(link.url)}"
            )
        text += "\n\n<i>⚠️ Keep this configuration private!</i>"
        await message.reply_text(text, parse_mode=ParseMode.HTML)

        qr_image = render_qr(config)
        if qr_image is not None:
            await message.reply_photo(photo=qr_image, caption="📱 QR code for quick setup")

        await message.reply_document(
            document=InputFile(config.encode('utf-8'), filename=f"{peer.name}.conf"),
            caption="📄 WireGuard configuration file"
        )

    async def request_access(self, update: Update, context: CallbackContext):
        user = update.effective_user
        message = update.effective_message

        if self.access.can_get_config(user.id):
            await message.reply_text("✅ You already have access to configurations!")
            return

        try:
            request = self.access.request_access(user.id, user.username, user.first_name, user.last_name)
        except AlreadyApproved:
            await message.reply_text("✅ You already have access!")
            return
        except RequestAlreadyPending:
            await message.reply_text("⏳ Your request is already under review.\n\nPlease wait for an administrator.")
            return
        except StorageFault:
            await message.reply_text("❌ Could not send your request. Please try again later.")
            return

        await message.reply_text(
            "📝 <b>Access request sent</b>\n\n"
            "An administrator will review it and you will be notified.\n\n"
            f"<i>Requested at: {format_time(request.requested_at)}</i>",
            parse_mode=ParseMode.HTML
        )

        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton("✅ Approve", callback_data=f"approve:{user.id}"),
            InlineKeyboardButton("❌ Reject", callback_data=f"reject:{user.id}")
        ]])
        await self.notify_admins(
            "🔔 <b>New access request</b>\n\n"
            f"👤 {user_label(user.first_name, user.last_name, user.username)}\n"
            f"ID: <code>{user.id}</code>",
            reply_markup=keyboard
        )

    async def my_links(self, update: Update, context: CallbackContext):
        links = self.links.list_active(update.effective_user.id)
        if not links:
            await update.effective_message.reply_text("You have no active download links.")
            return

        lines = [f"<b>🔗 Your active links ({len(links)}):</b>\n"]
        for link in links:
            lines.append(
                f"{html.escape(link.url)}\n"
                f"   uses {link.usage_count}/{link.max_usage_count}, expires {format_time(link.expires_at)}"
            )
        for chunk in split_message('\n'.join(lines)):
            await update.effective_message.reply_text(chunk, parse_mode=ParseMode.HTML)

    # Admin commands

    @admin_only
    async def pending_requests(self, update: Update, context: CallbackContext):
        requests = self.access.get_pending_requests()
        if not requests:
            await update.effective_message.reply_text("📋 No pending requests.")
            return

        lines = [f"<b>📋 Access requests ({len(requests)}):</b>\n"]
        for request in requests:
            lines.append(
                f"👤 <b>{user_label(request.first_name, request.last_name, request.username)}</b>\n"
                f"   ID: <code>{request.user_id}</code>\n"
                f"   Date: {format_time(request.requested_at)}\n"
                f"   /approve {request.user_id} - approve\n"
                f"   /reject {request.user_id} - reject\n"
            )
        for chunk in split_message('\n'.join(lines)):
            await update.effective_message.reply_text(chunk, parse_mode=ParseMode.HTML)

    async def _review(self, admin_id: int, user_id: int, approve: bool) -> str:
        request = self.access.get_access_request(user_id)
        if request is None:
            return "❌ Request not found."
        if request.status != PENDING:
            return f"ℹ️ Request from <code>{user_id}</code> is already {request.status}."

        if approve:
            if not self.access.approve_user(user_id, admin_id):
                return "❌ Failed to approve the request."
            await self.notify_user(user_id, "🎉 <b>Your request was approved!</b>\n\nUse /get_config to create a configuration.")
            return f"✅ Access approved for <code>{user_id}</code>."

        if not self.access.reject_user(user_id, admin_id):
            return "❌ Failed to reject the request."
        await self.notify_user(user_id, "❌ <b>Your access request was rejected.</b>")
        return f"🚫 Request from <code>{user_id}</code> rejected."

    @admin_only
    async def approve(self, update: Update, context: CallbackContext):
        user_id = parse_user_id(context.args)
        if user_id is None:
            await update.effective_message.reply_text("Usage: /approve <user_id>")
            return
        result = await self._review(update.effective_user.id, user_id, approve=True)
        await update.effective_message.reply_text(result, parse_mode=ParseMode.HTML)

    @admin_only
    async def reject(self, update: Update, context: CallbackContext):
        user_id = parse_user_id(context.args)
        if user_id is None:
            await update.effective_message.reply_text("Usage: /reject <user_id>")
            return
        result = await self._review(update.effective_user.id, user_id, approve=False)
        await update.effective_message.reply_text(result, parse_mode=ParseMode.HTML)

    @admin_only
    async def revoke(self, update: Update, context: CallbackContext):
        user_id = parse_user_id(context.args)
        if user_id is None:
            await update.effective_message.reply_text("Usage: /revoke <user_id>")
            return
        if not self.access.revoke_access(user_id, update.effective_user.id):
            await update.effective_message.reply_text("❌ Failed to revoke access.")
            return
        await self.notify_user(user_id, "⚠️ <b>Your access has been revoked.</b>")
        await update.effective_message.reply_text(
            f"🔒 Access revoked for <code>{user_id}</code>.", parse_mode=ParseMode.HTML
        )

    @admin_only
    async def approved_users(self, update: Update, context: CallbackContext):
        users = self.access.get_approved_users()
        if not users:
            await update.effective_message.reply_text("No approved users.")
            return

        lines = [f"<b>✅ Approved users ({len(users)}):</b>\n"]
        for user in users:
            lines.append(
                f"{user_label(username=user.username)} <code>{user.user_id}</code>, "
                f"approved {format_time(user.approved_at)} by <code>{user.approved_by}</code>"
            )
        for chunk in split_message('\n'.join(lines)):
            await update.effective_message.reply_text(chunk, parse_mode=ParseMode.HTML)

    @admin_only
    async def stats(self, update: Update, context: CallbackContext):
        stats = self.access.get_auth_stats()
        active_links = len(self.links.list_active())
        await update.effective_message.reply_text(
            "📊 <b>Statistics</b>\n\n"
            f"Auth mode: <code>{stats['auth_mode']}</code>\n"
            f"Total requests: {stats['total_requests']}\n"
            f"Pending requests: {stats['pending_requests']}\n"
            f"Approved users: {stats['approved_users']}\n"
            f"Whitelisted users: {stats['whitelist_users']}\n"
            f"Active links: {active_links}",
            parse_mode=ParseMode.HTML
        )

    @admin_only
    async def active_links(self, update: Update, context: CallbackContext):
        links = self.links.list_active()
        if not links:
            await update.effective_message.reply_text("No active links.")
            return

        lines = [f"<b>🔗 Active links ({len(links)}):</b>\n"]
        for link in links:
            lines.append(
                f"<code>{link.id}</code> peer <code>{html.escape(link.peer_id)}</code>\n"
                f"   user {link.user_id or '-'}, uses {link.usage_count}/{link.max_usage_count}, "
                f"expires {format_time(link.expires_at)}"
            )
        for chunk in split_message('\n'.join(lines)):
            await update.effective_message.reply_text(chunk, parse_mode=ParseMode.HTML)

    @admin_only
    async def handle_callback(self, update: Update, context: CallbackContext):
        query = update.callback_query
        await query.answer()

        action, _, raw_user_id = (query.data or '').partition(':')
        if action not in ('approve', 'reject') or not raw_user_id.lstrip('-').isdigit():
            logger.warning(f"Unknown callback data: {query.data}")
            return

        result = await self._review(update.effective_user.id, int(raw_user_id), approve=(action == 'approve'))
        await query.edit_message_text(result, parse_mode=ParseMode.HTML)


class SystemMonitor:
    def __init__(self, bot: VPNBot):
        self.bot = bot

    async def start_monitoring(self):
        """Start system monitoring"""
        while True:
            try:
                await self.check_system_health()
                await asyncio.sleep(MONITOR_SETTINGS["interval"])
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in system monitoring: {e}")
                await asyncio.sleep(MONITOR_SETTINGS["retry_delay"])

    async def check_system_health(self):
        """Check database, panel, disk and memory; returns the list of problems"""
        problems = []

        try:
            self.bot.db.ping()
        except StorageFault as e:
            problems.append(f"Database unavailable: {e}")

        try:
            if not await self.bot.dashboard.handshake():
                problems.append("WGDashboard handshake failed")
        except ClientError as e:
            problems.append(f"WGDashboard connection failed: {e}")

        disk_usage = psutil.disk_usage('/')
        if disk_usage.percent > MONITOR_SETTINGS["disk_warning_percent"]:
            problems.append(f"High disk usage ({disk_usage.percent}%)")

        memory = psutil.virtual_memory()
        if memory.percent > MONITOR_SETTINGS["memory_warning_percent"]:
            problems.append(f"High memory usage ({memory.percent}%)")

        for problem in problems:
            logger.warning(f"Health check: {problem}")
        if problems:
            await self.bot.notify_admins("⚠️ <b>Health check</b>\n\n" + html.escape('\n'.join(problems)))
        return problems


def build_application(vpn_bot: VPNBot) -> Application:
    async def post_init(application: Application):
        await vpn_bot.initialize()

    async def post_shutdown(application: Application):
        await vpn_bot.shutdown()

    application = (
        Application.builder()
        .token(BOT_TOKEN)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    vpn_bot.application = application

    application.add_handler(CommandHandler("start", vpn_bot.start))
    application.add_handler(CommandHandler("help", vpn_bot.start))
    application.add_handler(CommandHandler("get_config", vpn_bot.get_config))
    application.add_handler(CommandHandler("request_access", vpn_bot.request_access))
    application.add_handler(CommandHandler("my_links", vpn_bot.my_links))
    application.add_handler(CommandHandler("pending", vpn_bot.pending_requests))
    application.add_handler(CommandHandler("approve", vpn_bot.approve))
    application.add_handler(CommandHandler("reject", vpn_bot.reject))
    application.add_handler(CommandHandler("revoke", vpn_bot.revoke))
    application.add_handler(CommandHandler("approved", vpn_bot.approved_users))
    application.add_handler(CommandHandler("stats", vpn_bot.stats))
    application.add_handler(CommandHandler("links", vpn_bot.active_links))
    application.add_handler(CallbackQueryHandler(vpn_bot.handle_callback, pattern=r'^(approve|reject):'))

    application.add_error_handler(vpn_bot.error_handler.handle_error)
    return application


def main():
    """Start the bot"""
    if not BOT_TOKEN:
        raise SystemExit("TELEGRAM_BOT_TOKEN is not set")

    setup_file_logging()
    vpn_bot = VPNBot()
    application = build_application(vpn_bot)
    logger.info("Bot started")
    application.run_polling()


if __name__ == '__main__':
    main()
