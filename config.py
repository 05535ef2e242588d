import os
import pytz


def _int_list(value):
    ids = []
    for item in (value or "").split(","):
        item = item.strip()
        if item.lstrip("-").isdigit():
            ids.append(int(item))
    return ids


# Bot Configuration
BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
ADMIN_IDS = _int_list(os.getenv("TELEGRAM_ADMIN_IDS"))

# WGDashboard Panel Configuration
WGDASHBOARD_CONFIG = {
    "url": os.getenv("WGDASHBOARD_URL", "http://wgdashboard:10086").strip(),
    "api_key": os.getenv("WGDASHBOARD_API_KEY", "").strip(),
    "config_name": os.getenv("WGDASHBOARD_CONFIG_NAME", "wg0").strip()
}

# Database Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/vpn_bot.db")

# Access Control
AUTH_MODES = ("open", "whitelist", "admin_approval", "closed")
AUTH_SETTINGS = {
    "mode": os.getenv("AUTH_MODE", "open").strip().lower(),
    "allowed_user_ids": _int_list(os.getenv("ALLOWED_USER_IDS"))
}

# Defaults for newly created peers
PEER_DEFAULTS = {
    "dns": os.getenv("WG_DNS", "1.1.1.1"),
    "allowed_ips": os.getenv("WG_ALLOWED_IPS", "0.0.0.0/0"),
    "keepalive": int(os.getenv("WG_KEEPALIVE", "21")),
    "mtu": int(os.getenv("WG_MTU", "1420")),
    "endpoint": os.getenv("WG_ENDPOINT") or None
}

# Share Links
LINK_DOMAIN = os.getenv("LINK_DOMAIN", "http://localhost:3000").rstrip("/")
LINK_SETTINGS = {
    "expiry_hours": int(os.getenv("LINK_EXPIRY_HOURS", "24")),
    "max_usage": int(os.getenv("LINK_MAX_USAGE", "3"))
}

# Messages
MESSAGES = {
    "welcome": (
        "👋 Welcome!\n\n"
        "This bot issues personal WireGuard configurations.\n"
        "/get_config - create a new configuration\n"
        "/request_access - ask an administrator for access\n"
        "/my_links - your active download links"
    ),
    "generic_error": "❌ Something went wrong. Please try again later.",
    "admin_only": "⛔ This command is available to administrators only.",
    "link_not_found": "Link not found. It is invalid or has been deactivated.",
    "link_expired": "This link has expired. Ask an administrator for a new one.",
    "link_used_up": "This link has already been used the maximum number of times.",
    "upstream_error": "Could not fetch the configuration. Please try again later.",
    "server_error": "Internal server error. Please try again later."
}

# Timezone
TIMEZONE = pytz.timezone(os.getenv("TIMEZONE", "UTC"))
