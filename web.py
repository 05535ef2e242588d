"""
Download server
===============
HTTP side of share links: ``/download/{id}`` serves the peer config as an
attachment, ``/api/links`` manages links, ``/health`` reports liveness.

A download checks the link first, fetches the config from the panel and
only then consumes a use, so a panel outage never burns a user's quota.
"""

from datetime import datetime, timezone
import logging
import re

from aiohttp import web

from advanced_config import SERVER_SETTINGS
from config import LINK_SETTINGS, MESSAGES
from exceptions import LinkExpired, LinkNotFound, StorageFault, UsageExceeded

logger = logging.getLogger(__name__)

# Status code and message key per redemption failure
LINK_ERRORS = {
    LinkNotFound: (404, "link_not_found", "Link not found"),
    LinkExpired: (410, "link_expired", "Link expired"),
    UsageExceeded: (410, "link_used_up", "Usage limit exceeded"),
}


def _link_error(error, as_json=False):
    status, message_key, api_message = LINK_ERRORS[type(error)]
    if as_json:
        return web.json_response({"error": api_message}, status=status)
    return web.Response(text=MESSAGES[message_key], status=status)


def _config_filename(peer_id):
    safe = re.sub(r'[^A-Za-z0-9_-]', '', peer_id)[:8] or 'peer'
    return f"wireguard-{safe}.conf"


class LinkServer:
    def __init__(self, links, dashboard, db=None):
        self.links = links
        self.dashboard = dashboard
        self.db = db

    async def health(self, request):
        database = 'ok'
        if self.db is not None:
            try:
                self.db.ping()
            except StorageFault:
                database = 'error'
        return web.json_response({
            "status": "ok" if database == 'ok' else "degraded",
            "database": database,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": "wg-service-manager"
        })

    async def download(self, request):
        link_id = request.match_info['id']
        try:
            link = self.links.check_link(link_id)
        except tuple(LINK_ERRORS) as e:
            return _link_error(e)
        except StorageFault:
            return web.Response(text=MESSAGES["server_error"], status=500)

        config = await self.dashboard.download_peer_config(link.peer_id)
        if not config:
            logger.error(f"Failed to fetch peer config: link={link_id} peer={link.peer_id}")
            return web.Response(text=MESSAGES["upstream_error"], status=502)

        ip_address = request.remote
        try:
            link = self.links.redeem(link_id, ip_address, request.headers.get('User-Agent'))
        except tuple(LINK_ERRORS) as e:
            return _link_error(e)
        except StorageFault:
            return web.Response(text=MESSAGES["server_error"], status=500)

        logger.info(f"Config downloaded: link={link_id} peer={link.peer_id} ip={ip_address} uses={link.usage_count}")
        return web.Response(
            text=config,
            content_type='text/plain',
            headers={'Content-Disposition': f'attachment; filename="{_config_filename(link.peer_id)}"'}
        )

    async def create_link(self, request):
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(body, dict):
            return web.json_response({"error": "Invalid JSON body"}, status=400)

        peer_id = body.get('peerId')
        if not peer_id or not isinstance(peer_id, str):
            return web.json_response({"error": "peerId is required"}, status=400)

        user_id = body.get('userId')
        # Stored as a signed 64-bit integer
        if user_id is not None and (
            isinstance(user_id, bool) or not isinstance(user_id, int) or abs(user_id) >= 2 ** 63
        ):
            return web.json_response({"error": "userId must be an integer"}, status=400)
        created_by = body.get('createdBy')
        if created_by is not None and not isinstance(created_by, str):
            return web.json_response({"error": "createdBy must be a string"}, status=400)
        try:
            expiry_hours = float(body.get('expiryHours', LINK_SETTINGS["expiry_hours"]))
            max_usage = int(body.get('maxUsage', 1))
        except (TypeError, ValueError, OverflowError):
            return web.json_response({"error": "expiryHours and maxUsage must be numbers"}, status=400)

        peer = await self.dashboard.get_peer_by_id(peer_id)
        if peer is None:
            return web.json_response({"error": "Peer not found"}, status=404)

        try:
            link = self.links.create_link(
                peer.id, expiry_hours, max_usage, user_id=user_id, created_by=created_by
            )
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        except StorageFault:
            return web.json_response({"error": "Internal server error"}, status=500)

        return web.json_response(link.to_dict(), status=201)

    async def get_link(self, request):
        try:
            link = self.links.check_link(request.match_info['id'])
        except tuple(LINK_ERRORS) as e:
            return _link_error(e, as_json=True)
        except StorageFault:
            return web.json_response({"error": "Internal server error"}, status=500)
        return web.json_response(link.to_dict())

    async def list_links(self, request):
        user_id = request.query.get('userId')
        if user_id is not None:
            if not user_id.lstrip('-').isdigit():
                return web.json_response({"error": "userId must be an integer"}, status=400)
            user_id = int(user_id)
        try:
            links = self.links.list_active(user_id)
        except StorageFault:
            return web.json_response({"error": "Internal server error"}, status=500)
        return web.json_response([link.to_dict() for link in links])

    async def deactivate_link(self, request):
        try:
            deactivated = self.links.deactivate_link(request.match_info['id'])
        except StorageFault:
            return web.json_response({"error": "Internal server error"}, status=500)
        if not deactivated:
            return web.json_response({"error": "Link not found"}, status=404)
        return web.json_response({"success": True})


def create_app(links, dashboard, db=None) -> web.Application:
    server = LinkServer(links, dashboard, db)
    app = web.Application()
    app.router.add_get('/health', server.health)
    app.router.add_post('/api/links', server.create_link)
    app.router.add_get('/api/links', server.list_links)
    app.router.add_get('/api/links/{id}', server.get_link)
    app.router.add_delete('/api/links/{id}', server.deactivate_link)
    app.router.add_get('/download/{id}', server.download)
    return app


async def start_server(links, dashboard, db=None) -> web.AppRunner:
    runner = web.AppRunner(create_app(links, dashboard, db))
    await runner.setup()
    site = web.TCPSite(runner, SERVER_SETTINGS["host"], SERVER_SETTINGS["port"])
    await site.start()
    logger.info(f"Download server listening on {SERVER_SETTINGS['host']}:{SERVER_SETTINGS['port']}")
    return runner
