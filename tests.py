import json
import logging
import os
import shutil
import tempfile
import threading
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, Mock, patch

from aiohttp import ClientConnectionError, web
from aiohttp.test_utils import AioHTTPTestCase, TestServer as PanelServer

import wireguard_config
from access import AccessLedger, APPROVED, PENDING, REJECTED
from bot import VPNBot, setup_file_logging, split_message
from database import Database
from exceptions import (
    AlreadyApproved, InvalidConfigFormat, LinkExpired, LinkNotFound, MalformedUpstreamResponse,
    RequestAlreadyPending, StorageFault, UpstreamUnavailable, UsageExceeded
)
from share_links import HOUR_MS, ShareLinkLedger
from web import create_app
from wgdashboard import (
    Peer, UpstreamResponse, WGDashboard, extract_created_peer, extract_peer_records,
    normalize_peer, parse_peer_listing
)

CLIENT_CONFIG = (
    "[Interface]\nPrivateKey = x\nAddress = 10.0.0.2/32\n\n"
    "[Peer]\nPublicKey = y\nAllowedIPs = 0.0.0.0/0\n"
)
SERVER_CONFIG = "[Interface]\nPrivateKey = x\nListenPort = 51820\nPostUp = echo 1\n\n[Peer]\nPublicKey = y\n"

PEER_DEFAULTS = {
    "dns": "1.1.1.1",
    "allowed_ips": "0.0.0.0/0",
    "keepalive": 21,
    "mtu": 1420,
    "endpoint": "vpn.example.com:51820"
}

NOT_FOUND = UpstreamResponse(404, "Not Found")


def ok(payload):
    return UpstreamResponse(200, json.dumps(payload), payload)


def plain(body):
    return UpstreamResponse(200, body, None)


class Clock:
    def __init__(self, now=1_700_000_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


class TestConfigNormalizer(unittest.TestCase):
    def test_detects_client_config(self):
        self.assertTrue(wireguard_config.is_client_config(CLIENT_CONFIG))

    def test_rejects_listen_port(self):
        config = CLIENT_CONFIG.replace("Address = 10.0.0.2/32\n", "Address = 10.0.0.2/32\nListenPort = 51820\n")
        self.assertFalse(wireguard_config.is_client_config(config))

    def test_rejects_server_directives(self):
        for line in ("PostUp = iptables -A FORWARD", "PostDown = true", "SaveConfig = true"):
            config = CLIENT_CONFIG.replace("[Peer]", f"{line}\n\n[Peer]")
            self.assertFalse(wireguard_config.is_client_config(config), line)

    def test_requires_both_sections_and_keys(self):
        self.assertFalse(wireguard_config.is_client_config("[Interface]\nPrivateKey = x\n"))
        self.assertFalse(wireguard_config.is_client_config("[Interface]\nAddress = 10.0.0.2/32\n[Peer]\nPublicKey = y\n"))
        self.assertFalse(wireguard_config.is_client_config("[Interface]\nPrivateKey = x\n[Peer]\nEndpoint = a:1\n"))
        self.assertFalse(wireguard_config.is_client_config(""))
        self.assertFalse(wireguard_config.is_client_config(None))

    def test_inserts_endpoint_after_peer_header(self):
        out = wireguard_config.normalize(CLIENT_CONFIG, endpoint="vpn.example.com:51820")
        lines = out.splitlines()
        peer_index = lines.index("[Peer]")
        self.assertEqual(lines[peer_index + 1], "Endpoint = vpn.example.com:51820")
        self.assertTrue(out.endswith("PublicKey = y\nAllowedIPs = 0.0.0.0/0\n"))

    def test_rejects_server_config(self):
        self.assertIsNone(wireguard_config.normalize(SERVER_CONFIG, endpoint="vpn.example.com:51820"))

    def test_keeps_existing_values(self):
        config = CLIENT_CONFIG.replace("[Peer]\n", "[Peer]\nEndpoint = old.example.com:1\n") \
            .replace("Address", "DNS = 9.9.9.9\nAddress")
        out = wireguard_config.normalize(config, endpoint="new.example.com:2", allowed_ips="10.0.0.0/8", dns="1.1.1.1")
        self.assertIn("Endpoint = old.example.com:1", out)
        self.assertNotIn("new.example.com", out)
        self.assertNotIn("10.0.0.0/8", out)
        self.assertNotIn("DNS = 1.1.1.1", out)

    def test_inserts_allowed_ips_after_inserted_endpoint_and_dns_after_interface(self):
        config = "[Interface]\nPrivateKey = x\n\n[Peer]\nPublicKey = y\n"
        out = wireguard_config.normalize(config, endpoint="e:1", allowed_ips="0.0.0.0/0", dns="1.1.1.1")
        self.assertEqual(out, (
            "[Interface]\nDNS = 1.1.1.1\nPrivateKey = x\n\n"
            "[Peer]\nEndpoint = e:1\nAllowedIPs = 0.0.0.0/0\nPublicKey = y\n"
        ))

    def test_exactly_one_trailing_newline(self):
        out = wireguard_config.normalize(CLIENT_CONFIG + "\n\n\n")
        self.assertTrue(out.endswith("0.0.0.0/0\n"))
        self.assertFalse(out.endswith("\n\n"))

    def test_canonicalizes_headers(self):
        out = wireguard_config.normalize(CLIENT_CONFIG.replace("[Interface]", " [interface] "))
        self.assertTrue(out.startswith("[Interface]\n"))


class TestShareLinkLedger(unittest.TestCase):
    def setUp(self):
        self.db = Database('sqlite://')
        self.clock = Clock()
        self.ledger = ShareLinkLedger(self.db, link_domain='http://links.test/', clock=self.clock)

    def tearDown(self):
        self.db.close()

    def test_create_link(self):
        link = self.ledger.create_link('peer-1', 24, 3, user_id=42, created_by='tester')
        self.assertEqual(link.expires_at, self.clock.now + 24 * HOUR_MS)
        self.assertEqual(link.usage_count, 0)
        self.assertEqual(link.max_usage_count, 3)
        self.assertTrue(link.is_active)
        self.assertEqual(link.url, f'http://links.test/download/{link.id}')

        stored = self.ledger.get_link(link.id)
        self.assertEqual(stored.peer_id, 'peer-1')
        self.assertEqual(stored.user_id, 42)
        self.assertEqual(stored.created_by, 'tester')

    def test_create_link_rejects_bad_arguments(self):
        with self.assertRaises(ValueError):
            self.ledger.create_link('peer-1', 0)
        with self.assertRaises(ValueError):
            self.ledger.create_link('peer-1', 1, max_usage=0)
        for hours in (1e300, float('inf'), float('nan')):
            with self.assertRaises(ValueError):
                self.ledger.create_link('peer-1', hours)
        with self.assertRaises(ValueError):
            self.ledger.create_link('peer-1', 1, max_usage=10 ** 20)
        self.assertEqual(self.ledger.list_active(), [])

    def test_get_unknown_link(self):
        self.assertIsNone(self.ledger.get_link('missing'))

    def test_redeem_counts_uses_and_logs_access(self):
        link = self.ledger.create_link('peer-1', 1, 2)
        redeemed = self.ledger.redeem(link.id, '10.1.1.1', 'curl/8')
        self.assertEqual(redeemed.usage_count, 1)

        logs = self.ledger.get_usage_logs(link.id)
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0].ip_address, '10.1.1.1')
        self.assertEqual(logs[0].user_agent, 'curl/8')
        self.assertEqual(logs[0].accessed_at, self.clock.now)

    def test_redeem_beyond_quota_deactivates(self):
        link = self.ledger.create_link('peer-1', 1, 1)
        self.ledger.redeem(link.id)
        with self.assertRaises(UsageExceeded):
            self.ledger.redeem(link.id)

        stored = self.ledger.get_link(link.id)
        self.assertFalse(stored.is_active)
        self.assertEqual(stored.usage_count, 1)
        self.assertEqual(len(self.ledger.get_usage_logs(link.id)), 1)

        with self.assertRaises(UsageExceeded):
            self.ledger.redeem(link.id)

    def test_expired_link_is_never_redeemed(self):
        link = self.ledger.create_link('peer-1', 1, 5)
        self.clock.advance(HOUR_MS + 1)
        with self.assertRaises(LinkExpired):
            self.ledger.redeem(link.id)

        stored = self.ledger.get_link(link.id)
        self.assertFalse(stored.is_active)
        self.assertEqual(stored.usage_count, 0)
        self.assertEqual(self.ledger.get_usage_logs(link.id), [])

    def test_redeem_unknown_link(self):
        with self.assertRaises(LinkNotFound):
            self.ledger.redeem('missing')

    def test_deactivated_link_is_not_found(self):
        link = self.ledger.create_link('peer-1', 1, 5)
        self.assertTrue(self.ledger.deactivate_link(link.id))
        with self.assertRaises(LinkNotFound):
            self.ledger.redeem(link.id)
        self.assertFalse(self.ledger.deactivate_link('missing'))

    def test_check_link_does_not_consume(self):
        link = self.ledger.create_link('peer-1', 1, 1)
        self.ledger.check_link(link.id)
        self.ledger.check_link(link.id)
        self.assertEqual(self.ledger.get_link(link.id).usage_count, 0)

        self.clock.advance(HOUR_MS + 1)
        with self.assertRaises(LinkExpired):
            self.ledger.check_link(link.id)
        self.assertFalse(self.ledger.get_link(link.id).is_active)

    def test_list_active_newest_first(self):
        first = self.ledger.create_link('peer-1', 1, user_id=1)
        self.clock.advance(10)
        second = self.ledger.create_link('peer-2', 1, user_id=2)
        self.clock.advance(10)
        third = self.ledger.create_link('peer-3', 1, user_id=1)
        self.ledger.deactivate_link(second.id)

        self.assertEqual([link.id for link in self.ledger.list_active()], [third.id, first.id])
        self.assertEqual([link.id for link in self.ledger.list_active(user_id=1)], [third.id, first.id])
        self.assertEqual(self.ledger.list_active(user_id=2), [])

    def test_cleanup_expired_is_idempotent(self):
        short = self.ledger.create_link('peer-1', 1)
        long = self.ledger.create_link('peer-2', 48)
        self.clock.advance(2 * HOUR_MS)

        self.assertEqual(self.ledger.cleanup_expired(), 1)
        self.assertEqual(self.ledger.cleanup_expired(), 0)
        self.assertFalse(self.ledger.get_link(short.id).is_active)
        self.assertTrue(self.ledger.get_link(long.id).is_active)


class TestConcurrentRedemption(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db = Database(f"sqlite:///{os.path.join(self.tmpdir, 'links.db')}")
        self.ledger = ShareLinkLedger(self.db)

    def tearDown(self):
        self.db.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_usage_never_exceeds_quota(self):
        link = self.ledger.create_link('peer-1', 1, 3)
        barrier = threading.Barrier(12)
        outcomes = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                self.ledger.redeem(link.id, '10.0.0.1', 'test')
                result = 'ok'
            except UsageExceeded:
                result = 'exceeded'
            except LinkNotFound:
                result = 'not_found'
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count('ok'), 3)
        self.assertEqual(len(outcomes), 12)
        stored = self.ledger.get_link(link.id)
        self.assertEqual(stored.usage_count, 3)
        self.assertEqual(len(self.ledger.get_usage_logs(link.id)), 3)


class TestAccessLedger(unittest.TestCase):
    def setUp(self):
        self.db = Database('sqlite://')
        self.clock = Clock()

    def tearDown(self):
        self.db.close()

    def ledger(self, mode='admin_approval', admins=(1,), allowed=()):
        return AccessLedger(self.db, mode, admins, allowed, clock=self.clock)

    def test_second_request_is_pending(self):
        ledger = self.ledger()
        request = ledger.request_access(100, 'user', 'First', 'Last')
        self.assertEqual(request.status, PENDING)
        self.assertEqual(request.requested_at, self.clock.now)
        with self.assertRaises(RequestAlreadyPending):
            ledger.request_access(100, 'user')

    def test_approved_user_cannot_request(self):
        ledger = self.ledger()
        ledger.request_access(100, 'user')
        self.assertTrue(ledger.approve_user(100, 1, 'ok'))
        with self.assertRaises(AlreadyApproved):
            ledger.request_access(100, 'user')

        request = ledger.get_access_request(100)
        self.assertEqual(request.status, APPROVED)
        self.assertEqual(request.reviewed_by, 1)
        self.assertEqual(request.notes, 'ok')
        approved = ledger.get_approved_users()
        self.assertEqual([(user.user_id, user.username) for user in approved], [(100, 'user')])

    def test_rejected_user_can_request_again(self):
        ledger = self.ledger()
        ledger.request_access(100, 'user')
        self.assertTrue(ledger.reject_user(100, 1, 'no'))
        self.assertEqual(ledger.get_access_request(100).status, REJECTED)
        self.assertFalse(ledger.is_user_approved(100))

        self.clock.advance(1000)
        request = ledger.request_access(100, 'renamed')
        self.assertEqual(request.status, PENDING)
        stored = ledger.get_access_request(100)
        self.assertEqual(stored.username, 'renamed')
        self.assertIsNone(stored.reviewed_by)

    def test_revoke_removes_grant(self):
        ledger = self.ledger()
        ledger.request_access(100, 'user')
        ledger.approve_user(100, 1)
        self.assertTrue(ledger.can_get_config(100))

        self.assertTrue(ledger.revoke_access(100, 1))
        self.assertFalse(ledger.is_user_approved(100))
        self.assertEqual(ledger.get_access_request(100).status, REJECTED)
        self.assertFalse(ledger.can_get_config(100))

    def test_revoke_without_request(self):
        self.assertTrue(self.ledger().revoke_access(555, 1))

    def test_admins_always_pass(self):
        for mode in ('open', 'whitelist', 'admin_approval', 'closed'):
            self.assertTrue(self.ledger(mode=mode).can_get_config(1), mode)

    def test_modes(self):
        self.assertTrue(self.ledger(mode='open').can_get_config(100))
        self.assertFalse(self.ledger(mode='closed').can_get_config(100))
        self.assertFalse(self.ledger(mode='admin_approval').can_get_config(100))

        whitelist = self.ledger(mode='whitelist', allowed=(200,))
        self.assertTrue(whitelist.can_get_config(200))
        self.assertFalse(whitelist.can_get_config(100))
        whitelist.request_access(100)
        whitelist.approve_user(100, 1)
        self.assertTrue(whitelist.can_get_config(100))

    def test_unknown_mode_is_closed(self):
        ledger = self.ledger(mode='everyone')
        self.assertEqual(ledger.auth_mode, 'closed')
        self.assertFalse(ledger.can_get_config(100))

    def test_queries_and_stats(self):
        ledger = self.ledger(allowed=(7, 8))
        for user_id in (101, 102, 103):
            ledger.request_access(user_id)
            self.clock.advance(10)
        ledger.approve_user(101, 1)
        self.clock.advance(10)
        ledger.approve_user(103, 1)

        self.assertEqual([request.user_id for request in ledger.get_pending_requests()], [102])
        self.assertEqual([user.user_id for user in ledger.get_approved_users()], [103, 101])
        self.assertEqual(ledger.get_auth_stats(), {
            "auth_mode": 'admin_approval',
            "total_requests": 3,
            "pending_requests": 1,
            "approved_users": 2,
            "whitelist_users": 2
        })

    def test_pending_requests_oldest_first(self):
        ledger = self.ledger()
        ledger.request_access(300)
        self.clock.advance(5)
        ledger.request_access(100)
        self.assertEqual([request.user_id for request in ledger.get_pending_requests()], [300, 100])

    def test_storage_fault_is_a_plain_failure(self):
        ledger = self.ledger()
        with patch.object(self.db, 'session_scope', side_effect=StorageFault('disk I/O error')):
            self.assertFalse(ledger.approve_user(100, 1))
            self.assertFalse(ledger.reject_user(100, 1))
            self.assertFalse(ledger.revoke_access(100, 1))


class TestPeerNormalization(unittest.TestCase):
    def test_id_aliases_in_order(self):
        self.assertEqual(normalize_peer({'id': 'a', 'public_key': 'b'}).id, 'a')
        self.assertEqual(normalize_peer({'peer_id': 'c', 'PublicKey': 'd'}).id, 'c')
        self.assertEqual(normalize_peer({'PublicKey': 'd'}).id, 'd')

    def test_record_without_id_is_not_a_peer(self):
        self.assertIsNone(normalize_peer({'name': 'nobody'}))
        self.assertIsNone(normalize_peer('peer'))

    def test_fields_are_coerced(self):
        peer = normalize_peer({
            'id': 123,
            'name': 'phone',
            'public_key': 'pk',
            'allowed_ip': '10.0.0.2/32, 10.0.0.3/32',
            'peer_config': CLIENT_CONFIG
        })
        self.assertEqual(peer, Peer(
            id='123', name='phone', public_key='pk',
            allowed_ips=('10.0.0.2/32', '10.0.0.3/32'), config=CLIENT_CONFIG
        ))
        self.assertEqual(normalize_peer({'id': 'x', 'allowedIPs': ['10.0.0.2/32', 5]}).allowed_ips, ('10.0.0.2/32', '5'))

    def test_listing_shapes(self):
        records = [{'id': 'p1'}]
        for payload in (records, {'status': True, 'data': records}, {'peers': records},
                        {'data': {'peers': records}}, {'data': {'configurationPeers': records}}):
            self.assertEqual(extract_peer_records(payload), records, payload)

    def test_rejects_configuration_summaries(self):
        summary = {'status': True, 'data': [{'Name': 'wg0', 'ListenPort': 51820, 'TotalPeers': 4}]}
        self.assertIsNone(extract_peer_records(summary))
        with self.assertRaises(MalformedUpstreamResponse):
            parse_peer_listing(summary)

    def test_rejects_failure_envelopes(self):
        self.assertIsNone(extract_peer_records({'status': False, 'data': [{'id': 'p1'}]}))
        self.assertIsNone(extract_peer_records({'status': True, 'message': 'ok'}))
        self.assertIsNone(extract_peer_records('<html>'))

    def test_created_peer_from_response(self):
        payload = {'status': True, 'data': {'id': 'peer-123', 'public_key': 'pk', 'allowed_ips': ['10.0.0.2/32']}}
        peer = extract_created_peer(payload, 'n1')
        self.assertEqual((peer.id, peer.name, peer.public_key), ('peer-123', 'n1', 'pk'))
        self.assertIsNone(extract_created_peer({'status': True}, 'n1'))
        self.assertIsNone(extract_created_peer({'status': False, 'data': {'id': 'x'}}, 'n1'))


class TestWGDashboard(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.dashboard = WGDashboard('http://wgdashboard:10086/', 'key', 'wg0', peer_defaults=PEER_DEFAULTS)
        self.send = AsyncMock()
        self.dashboard._send = self.send
        sleep_patcher = patch('wgdashboard.asyncio.sleep', new_callable=AsyncMock)
        self.sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

    def route(self, routes, default=NOT_FOUND):
        """Answer each request by the first route whose key starts its path."""
        def respond(candidate):
            for prefix, response in routes.items():
                if candidate.path.startswith(prefix):
                    if isinstance(response, Exception):
                        raise response
                    return response
            return default
        self.send.side_effect = respond

    async def test_list_peers_stops_at_first_valid_candidate(self):
        self.send.side_effect = [
            NOT_FOUND,
            NOT_FOUND,
            ok({'status': True, 'data': [{'id': 'p1', 'name': 'one'}, {'name': 'no id'}]})
        ]
        peers = await self.dashboard.list_peers()
        self.assertEqual(peers, [Peer(id='p1', name='one')])
        self.assertEqual(self.send.await_count, 3)

    async def test_list_peers_skips_summaries_and_errors(self):
        self.send.side_effect = [
            ok({'status': True, 'data': [{'Name': 'wg0', 'ListenPort': 51820}]}),
            UpstreamResponse(500, 'boom'),
            ClientConnectionError('refused'),
            ok({'status': True, 'data': []}),
            ok({'peers': [{'public_key': 'pk1'}]})
        ]
        peers = await self.dashboard.list_peers()
        self.assertEqual([peer.id for peer in peers], ['pk1'])
        self.assertEqual(self.send.await_count, 5)

    async def test_list_peers_returns_empty_when_nothing_works(self):
        self.send.return_value = NOT_FOUND
        self.assertEqual(await self.dashboard.list_peers(), [])
        self.assertEqual(self.send.await_count, len(self.dashboard.peer_list_candidates()))

    async def test_candidates_are_sequential_and_descriptive(self):
        candidates = self.dashboard.peer_list_candidates()
        self.assertEqual(str(candidates[0]), 'GET /api/getPeers/wg0')
        self.assertEqual(candidates[4].json, {'configName': 'wg0'})

    async def test_get_peer_by_id(self):
        self.send.return_value = ok([{'id': 'p1'}, {'id': 'p2', 'publicKey': 'pk2'}])
        self.assertEqual((await self.dashboard.get_peer_by_id('p2')).public_key, 'pk2')
        self.assertEqual((await self.dashboard.get_peer_by_id('pk2')).id, 'p2')
        self.assertIsNone(await self.dashboard.get_peer_by_id('p3'))

    async def test_download_rejects_empty_ids(self):
        for peer_id in ('', None, 'null', 'undefined', ' None '):
            self.assertIsNone(await self.dashboard.download_peer_config(peer_id))
        self.send.assert_not_awaited()

    def test_download_candidates_use_both_encodings(self):
        paths = [candidate.path for candidate in self.dashboard.config_download_candidates('ab+c/d=')]
        self.assertIn('/api/downloadPeer/wg0?id=ab%2Bc%2Fd%3D', paths)
        self.assertIn('/api/downloadPeer/wg0?id=ab%252Bc%252Fd%253D', paths)
        self.assertEqual(len(paths), 8)
        self.assertEqual(len(self.dashboard.config_download_candidates('plain')), 4)

    async def test_download_falls_back_across_endpoints(self):
        self.send.side_effect = [NOT_FOUND, plain(CLIENT_CONFIG)]
        config = await self.dashboard.download_peer_config('peer-1')
        self.assertIn('Endpoint = vpn.example.com:51820', config)
        self.assertIn('DNS = 1.1.1.1', config)
        self.assertEqual(self.send.await_count, 2)
        self.sleep.assert_not_awaited()

    async def test_download_unwraps_json_envelope_and_skips_failures(self):
        self.send.side_effect = [
            ok({'status': False, 'message': 'Peer does not exist'}),
            ok({'status': True, 'data': {'fileName': 'p', 'file': CLIENT_CONFIG}})
        ]
        config = await self.dashboard.download_peer_config('peer-1')
        self.assertTrue(config.startswith('[Interface]'))
        self.assertEqual(self.send.await_count, 2)

    async def test_download_never_returns_server_config(self):
        self.send.side_effect = [plain(SERVER_CONFIG), plain(''), plain(CLIENT_CONFIG)]
        config = await self.dashboard.download_peer_config('peer-1')
        self.assertNotIn('ListenPort', config)
        self.assertEqual(self.send.await_count, 3)

    async def test_download_retries_rounds_then_uses_listing(self):
        self.route({
            '/api/download': NOT_FOUND,
            '/api/getPeers/': ok({'status': True, 'data': [{'id': 'peer-1', 'config': CLIENT_CONFIG}]})
        })
        config = await self.dashboard.download_peer_config('peer-1')
        self.assertIn('Endpoint = vpn.example.com:51820', config)
        self.assertEqual([call.args[0] for call in self.sleep.await_args_list], [0.25, 0.5])
        download_calls = [call for call in self.send.await_args_list if call.args[0].path.startswith('/api/download')]
        self.assertEqual(len(download_calls), 3 * 4)

    async def test_download_unavailable(self):
        self.send.return_value = NOT_FOUND
        self.assertIsNone(await self.dashboard.download_peer_config('peer-1'))

    async def test_create_peer_uses_embedded_record(self):
        self.route({
            '/api/addPeers/wg0': ok({'status': True, 'data': {'id': 'peer-123', 'name': 'n1', 'public_key': 'pk'}}),
            '/api/restartWireguardConfiguration/wg0': ok({'status': True})
        })
        peer = await self.dashboard.create_peer(name='n1', mtu=1280)
        self.assertEqual(peer.id, 'peer-123')

        paths = [call.args[0].path for call in self.send.await_args_list]
        self.assertEqual(paths, ['/api/addPeers/wg0', '/api/restartWireguardConfiguration/wg0'])
        payload = self.send.await_args_list[0].args[0].json
        self.assertEqual(payload['name'], 'n1')
        self.assertEqual(payload['mtu'], 1280)
        self.assertEqual(payload['DNS'], '1.1.1.1')
        self.assertEqual(payload['keepalive'], 21)
        self.assertEqual(payload['endpoint_allowed_ip'], '0.0.0.0/0')

    async def test_create_peer_falls_back_to_listing(self):
        self.route({
            '/api/addPeers/wg0': ok({'status': True, 'message': None}),
            '/api/restartWireguardConfiguration': ClientConnectionError('reset'),
            '/api/getPeers/wg0': ok([{'id': 'a', 'name': 'n1'}, {'id': 'b', 'name': 'other'}])
        })
        peer = await self.dashboard.create_peer(name='n1')
        self.assertEqual(peer.id, 'a')

    async def test_create_peer_keeps_explicit_zero(self):
        self.route({'/api/addPeers/wg0': ok({'status': True, 'data': {'id': 'peer-1'}})})
        await self.dashboard.create_peer(name='n1', keepalive=0)
        payload = self.send.await_args_list[0].args[0].json
        self.assertEqual(payload['keepalive'], 0)
        self.assertEqual(payload['mtu'], 1420)

    async def test_create_peer_failure(self):
        self.route({'/api/addPeers/wg0': ok({'status': False, 'message': 'IP exhausted'})})
        self.assertIsNone(await self.dashboard.create_peer(name='n1'))

    async def test_delete_peer_ignores_restart_failure(self):
        self.route({
            '/api/deletePeers/wg0': ok({'status': True}),
            '/api/restartWireguardConfiguration': UpstreamResponse(500, 'boom')
        })
        self.assertTrue(await self.dashboard.delete_peer('p1'))
        self.assertEqual(self.send.await_args_list[0].args[0].json, {'peers': ['p1']})

    async def test_restrict_peer(self):
        self.route({'/api/restrictPeers/wg0': ok({'status': True})})
        self.assertTrue(await self.dashboard.restrict_peer('p1', True))
        self.assertEqual(self.send.await_args_list[0].args[0].json, {'peers': ['p1'], 'restrict': True})

        self.route({'/api/restrictPeers/wg0': ClientConnectionError('down')})
        self.assertFalse(await self.dashboard.restrict_peer('p1', True))

    async def test_handshake(self):
        self.send.return_value = ok({'status': True})
        self.assertTrue(await self.dashboard.handshake())
        self.send.side_effect = ClientConnectionError('down')
        self.assertFalse(await self.dashboard.handshake())


class TestWGDashboardTransport(unittest.IsolatedAsyncioTestCase):
    BINARY = b'\xff\xfe\x89PNG\x00'

    async def asyncSetUp(self):
        app = web.Application()
        app.router.add_get('/api/getPeers/wg0', self.binary)
        app.router.add_get('/api/getPeers', self.peers)
        app.router.add_get('/api/downloadPeer/wg0', self.binary)
        app.router.add_get('/api/downloadPeer/wg0/{peer_id}', self.config)
        app.router.add_post('/api/addPeers/wg0', self.created)
        app.router.add_post('/api/restartWireguardConfiguration/wg0', self.mislabelled)
        self.server = PanelServer(app)
        await self.server.start_server()
        self.dashboard = WGDashboard(str(self.server.make_url('')), 'key', 'wg0', peer_defaults=PEER_DEFAULTS)

    async def asyncTearDown(self):
        await self.dashboard.close()
        await self.server.close()

    async def binary(self, request):
        return web.Response(body=self.BINARY, content_type='application/octet-stream')

    async def mislabelled(self, request):
        return web.Response(body=self.BINARY, headers={'Content-Type': 'text/plain; charset=no-such-codec'})

    async def peers(self, request):
        if request.query.get('configName') != 'wg0':
            raise web.HTTPNotFound()
        return web.json_response({'status': True, 'data': [{'id': 'p1', 'name': 'one'}]})

    async def config(self, request):
        return web.Response(text=CLIENT_CONFIG)

    async def created(self, request):
        self.assertEqual(request.headers['wg-dashboard-apikey'], 'key')
        return web.json_response({'status': True, 'data': {'id': 'p2', 'name': 'n1'}})

    async def test_binary_listing_moves_to_next_candidate(self):
        peers = await self.dashboard.list_peers()
        self.assertEqual([peer.id for peer in peers], ['p1'])

    async def test_binary_download_moves_to_next_candidate(self):
        config = await self.dashboard.download_peer_config('p1')
        self.assertIn('Endpoint = vpn.example.com:51820', config)

    async def test_undecodable_restart_does_not_fail_creation(self):
        self.assertFalse(await self.dashboard.restart_interface())
        peer = await self.dashboard.create_peer(name='n1')
        self.assertEqual(peer.id, 'p2')


class TestFileLogging(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.handlers = setup_file_logging(self.tmpdir)

    def tearDown(self):
        for handler in self.handlers:
            logging.getLogger().removeHandler(handler)
            handler.close()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_errors_and_combined_logs(self):
        log = logging.getLogger('tests.file_logging')
        log.setLevel(logging.INFO)
        log.info('routine event')
        log.error('broken event')
        for handler in self.handlers:
            handler.flush()

        with open(os.path.join(self.tmpdir, 'combined.log'), encoding='utf-8') as f:
            combined = f.read()
        with open(os.path.join(self.tmpdir, 'error.log'), encoding='utf-8') as f:
            errors = f.read()
        self.assertIn('routine event', combined)
        self.assertIn('broken event', combined)
        self.assertIn('broken event', errors)
        self.assertNotIn('routine event', errors)


class TestVPNBot(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.db = Database('sqlite://')
        self.dashboard = MagicMock()
        self.dashboard.create_peer = AsyncMock(return_value=Peer(id='pk+1=', name='TG_user'))
        self.dashboard.download_peer_config = AsyncMock(return_value=CLIENT_CONFIG)
        self.dashboard.prepare_config = Mock(side_effect=lambda text: wireguard_config.normalize(text))
        self.bot = VPNBot(db=self.db, dashboard=self.dashboard)
        self.bot.access = AccessLedger(self.db, 'admin_approval', [1], [])

    def tearDown(self):
        self.db.close()

    def make_update(self, user_id=111):
        user = SimpleNamespace(id=user_id, username='user', first_name='Test', last_name='User')
        message = SimpleNamespace(reply_text=AsyncMock())
        return SimpleNamespace(effective_user=user, effective_message=message, message=message)

    async def test_issue_config_creates_link(self):
        peer, config, link = await self.bot.issue_config(111, 'user')
        self.assertEqual(peer.id, 'pk+1=')
        self.assertEqual(config, CLIENT_CONFIG)
        self.assertEqual(link.peer_id, 'pk+1=')
        self.assertEqual(link.user_id, 111)
        self.assertEqual([l.id for l in self.bot.links.list_active(111)], [link.id])

    async def test_issue_config_prefers_embedded_config(self):
        self.dashboard.create_peer.return_value = Peer(id='p', name='n', config=CLIENT_CONFIG)
        await self.bot.issue_config(111, 'user')
        self.dashboard.download_peer_config.assert_not_awaited()

    async def test_issue_config_upstream_failures(self):
        self.dashboard.create_peer.return_value = None
        with self.assertRaises(UpstreamUnavailable):
            await self.bot.issue_config(111, 'user')

        self.dashboard.create_peer.return_value = Peer(id='p', name='n', config=SERVER_CONFIG)
        self.dashboard.download_peer_config.return_value = None
        with self.assertRaises(InvalidConfigFormat):
            await self.bot.issue_config(111, 'user')

    async def test_request_access_feedback(self):
        update = self.make_update()
        await self.bot.request_access(update, SimpleNamespace(args=[]))
        self.assertIn('Access request sent', update.effective_message.reply_text.await_args.args[0])

        await self.bot.request_access(update, SimpleNamespace(args=[]))
        self.assertIn('already under review', update.effective_message.reply_text.await_args.args[0])

    async def test_approve_command_requires_pending_request(self):
        self.bot.access.request_access(111, 'user')
        admin_update = self.make_update(user_id=1)
        await self.bot.approve(admin_update, SimpleNamespace(args=['111']))
        self.assertIn('Access approved', admin_update.effective_message.reply_text.await_args.args[0])
        self.assertTrue(self.bot.access.is_user_approved(111))

        await self.bot.reject(admin_update, SimpleNamespace(args=['111']))
        self.assertIn('already approved', admin_update.effective_message.reply_text.await_args.args[0])
        self.assertTrue(self.bot.access.is_user_approved(111))

    async def test_admin_commands_are_guarded(self):
        update = self.make_update(user_id=111)
        await self.bot.approve(update, SimpleNamespace(args=['222']))
        self.assertIn('administrators only', update.effective_message.reply_text.await_args.args[0])

    def test_split_message(self):
        chunks = split_message('\n'.join(['x' * 30] * 10), limit=100)
        self.assertTrue(all(len(chunk) <= 100 for chunk in chunks))
        self.assertEqual(''.join(chunks).count('x'), 300)


class TestDownloadServer(AioHTTPTestCase):
    async def get_application(self):
        self.db = Database('sqlite://')
        self.clock = Clock()
        self.links = ShareLinkLedger(self.db, link_domain='http://links.test', clock=self.clock)
        self.dashboard = Mock()
        self.dashboard.download_peer_config = AsyncMock(return_value=CLIENT_CONFIG)
        self.dashboard.get_peer_by_id = AsyncMock(return_value=Peer(id='peer-1', name='n'))
        return create_app(self.links, self.dashboard, self.db)

    async def test_download_serves_config_once(self):
        link = self.links.create_link('peer-1', 1, 1)
        resp = await self.client.request('GET', f'/download/{link.id}', headers={'User-Agent': 'wg-app'})
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), CLIENT_CONFIG)
        self.assertIn('attachment; filename="wireguard-peer-1.conf"', resp.headers['Content-Disposition'])
        self.assertEqual(self.links.get_usage_logs(link.id)[0].user_agent, 'wg-app')

        resp = await self.client.request('GET', f'/download/{link.id}')
        self.assertEqual(resp.status, 410)
        self.assertIn('maximum number of times', await resp.text())

    async def test_download_unknown_and_expired(self):
        resp = await self.client.request('GET', '/download/nope')
        self.assertEqual(resp.status, 404)

        link = self.links.create_link('peer-1', 1, 3)
        self.clock.advance(2 * HOUR_MS)
        resp = await self.client.request('GET', f'/download/{link.id}')
        self.assertEqual(resp.status, 410)
        self.assertIn('expired', await resp.text())
        self.dashboard.download_peer_config.assert_not_awaited()

    async def test_upstream_failure_keeps_quota(self):
        self.dashboard.download_peer_config.return_value = None
        link = self.links.create_link('peer-1', 1, 1)
        resp = await self.client.request('GET', f'/download/{link.id}')
        self.assertEqual(resp.status, 502)
        self.assertEqual(self.links.get_link(link.id).usage_count, 0)

    async def test_links_api(self):
        resp = await self.client.request('POST', '/api/links', json={'peerId': 'peer-1', 'expiryHours': 2, 'maxUsage': 2, 'userId': 9})
        self.assertEqual(resp.status, 201)
        created = await resp.json()
        self.assertEqual(created['expiresAt'] - created['createdAt'], 2 * HOUR_MS)
        self.assertEqual(created['maxUsageCount'], 2)

        resp = await self.client.request('GET', '/api/links', params={'userId': '9'})
        self.assertEqual([link['id'] for link in await resp.json()], [created['id']])

        resp = await self.client.request('GET', f"/api/links/{created['id']}")
        self.assertEqual((await resp.json())['usageCount'], 0)

        resp = await self.client.request('DELETE', f"/api/links/{created['id']}")
        self.assertEqual(await resp.json(), {'success': True})
        resp = await self.client.request('GET', f"/api/links/{created['id']}")
        self.assertEqual(resp.status, 404)
        resp = await self.client.request('DELETE', '/api/links/missing')
        self.assertEqual(resp.status, 404)

    async def test_create_link_validation(self):
        resp = await self.client.request('POST', '/api/links', json={})
        self.assertEqual(resp.status, 400)

        for body in (
            {'peerId': 'peer-1', 'expiryHours': 1e300},
            {'peerId': 'peer-1', 'expiryHours': -1},
            {'peerId': 'peer-1', 'expiryHours': 'soon'},
            {'peerId': 'peer-1', 'maxUsage': 1e300},
            {'peerId': 'peer-1', 'userId': 'abc'},
            {'peerId': 'peer-1', 'userId': 2 ** 70},
            {'peerId': 'peer-1', 'createdBy': ['x']},
        ):
            resp = await self.client.request('POST', '/api/links', json=body)
            self.assertEqual(resp.status, 400, body)

        resp = await self.client.request(
            'POST', '/api/links',
            data='{"peerId": "peer-1", "expiryHours": Infinity}',
            headers={'Content-Type': 'application/json'}
        )
        self.assertEqual(resp.status, 400)
        self.assertEqual(self.links.list_active(), [])

        self.dashboard.get_peer_by_id.return_value = None
        resp = await self.client.request('POST', '/api/links', json={'peerId': 'ghost'})
        self.assertEqual(resp.status, 404)

    async def test_usage_log_records_socket_address(self):
        link = self.links.create_link('peer-1', 1, 1)
        resp = await self.client.request('GET', f'/download/{link.id}', headers={'X-Forwarded-For': '6.6.6.6'})
        self.assertEqual(resp.status, 200)
        self.assertEqual(self.links.get_usage_logs(link.id)[0].ip_address, '127.0.0.1')

    async def test_health(self):
        resp = await self.client.request('GET', '/health')
        self.assertEqual((await resp.json())['status'], 'ok')


if __name__ == '__main__':
    unittest.main()
