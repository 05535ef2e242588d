from datetime import datetime, timedelta
from functools import wraps
import logging

from telegram import Update

from advanced_config import SECURITY_SETTINGS
from config import MESSAGES

logger = logging.getLogger(__name__)


def admin_only(func):
    """Decorator for admin-only handlers"""
    @wraps(func)
    async def wrapper(self, update: Update, context, *args, **kwargs):
        user = update.effective_user
        if user is None or not self.access.is_admin(user.id):
            logger.info(f"Denied admin command {func.__name__} for user {user.id if user else None}")
            await update.effective_message.reply_text(MESSAGES["admin_only"])
            return
        return await func(self, update, context, *args, **kwargs)
    return wrapper


def rate_limit(calls: int = SECURITY_SETTINGS["rate_limit_calls"],
               period: int = SECURITY_SETTINGS["rate_limit_period"]):
    """Rate limiting decorator"""
    def decorator(func):
        calls_made = {}

        @wraps(func)
        async def wrapper(self, update: Update, context, *args, **kwargs):
            user = update.effective_user
            if user is None:
                return await func(self, update, context, *args, **kwargs)

            now = datetime.utcnow()
            # Drop calls outside the window
            user_calls = [call for call in calls_made.get(user.id, []) if now - call < timedelta(seconds=period)]
            if len(user_calls) >= calls:
                await update.effective_message.reply_text(
                    "⚠️ Too many requests. Please wait a little and try again."
                )
                return

            user_calls.append(now)
            calls_made[user.id] = user_calls
            return await func(self, update, context, *args, **kwargs)
        return wrapper
    return decorator


def parse_user_id(args):
    """First command argument as a Telegram user id, or None."""
    if not args:
        return None
    value = str(args[0]).strip()
    if value.lstrip('-').isdigit():
        return int(value)
    return None
