"""
WGDashboard client
==================
Peer management over a WGDashboard panel whose REST surface differs between
releases: the same operation may live under several URL patterns, use GET or
POST, and wrap its result in different envelopes with different field names.

Discovery is an ordered list of ``RequestCandidate`` descriptors tried one at
a time plus pure functions that classify and normalize whatever comes back.
Everything past this module only sees ``Peer`` values.
"""

import asyncio
from dataclasses import dataclass
import json
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

from aiohttp import ClientError, ClientSession, ClientTimeout
from yarl import URL

from advanced_config import DOWNLOAD_SETTINGS, PERFORMANCE_SETTINGS
from config import PEER_DEFAULTS
from exceptions import MalformedUpstreamResponse
import wireguard_config

logger = logging.getLogger(__name__)

# Ordered alias rules, first present key wins
ID_ALIASES = ('id', 'peerId', 'peer_id', 'publicKey', 'public_key', 'PublicKey')
NAME_ALIASES = ('name', 'Name', 'peerName', 'peer_name')
PUBLIC_KEY_ALIASES = ('publicKey', 'public_key', 'PublicKey')
ALLOWED_IPS_ALIASES = ('allowedIPs', 'allowed_ips', 'AllowedIPs', 'allowed_ip')
CONFIG_ALIASES = ('config', 'peerConfig', 'peer_config')

# Keys only found on interface/configuration summaries, never on peers
SUMMARY_MARKERS = (
    'ListenPort', 'listen_port', 'listenPort',
    'TotalPeers', 'total_peers', 'peer_count', 'ConnectedPeers'
)

NULL_IDS = ('null', 'undefined', 'none')

NETWORK_ERRORS = (ClientError, asyncio.TimeoutError)


@dataclass(frozen=True)
class Peer:
    id: str
    name: str
    public_key: str = ''
    allowed_ips: Tuple[str, ...] = ()
    config: str = ''


@dataclass(frozen=True)
class RequestCandidate:
    method: str
    path: str
    json: Optional[Dict[str, Any]] = None

    def __str__(self):
        return f"{self.method} {self.path}"


@dataclass(frozen=True)
class UpstreamResponse:
    status: int
    text: str
    payload: Any = None

    @property
    def ok(self):
        return 200 <= self.status < 300


def _first_present(record: Dict[str, Any], aliases: Iterable[str]):
    for key in aliases:
        value = record.get(key)
        if value is not None and value != '':
            return value
    return None


def _as_ip_list(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(',') if part.strip())
    if isinstance(value, (list, tuple)):
        return tuple(str(item) for item in value if item is not None)
    return (str(value),)


def normalize_peer(record, fallback_name: str = '') -> Optional[Peer]:
    """Build a Peer from one raw upstream record, or None if it is not a peer."""
    if not isinstance(record, dict):
        return None

    peer_id = _first_present(record, ID_ALIASES)
    if peer_id is None:
        return None

    name = _first_present(record, NAME_ALIASES)
    public_key = _first_present(record, PUBLIC_KEY_ALIASES)
    config = _first_present(record, CONFIG_ALIASES)

    return Peer(
        id=str(peer_id),
        name=str(name if name is not None else fallback_name),
        public_key=str(public_key) if public_key is not None else '',
        allowed_ips=_as_ip_list(_first_present(record, ALLOWED_IPS_ALIASES)),
        config=config if isinstance(config, str) else ''
    )


def _looks_like_configuration_summary(record) -> bool:
    return isinstance(record, dict) and any(key in record for key in SUMMARY_MARKERS)


def extract_peer_records(payload) -> Optional[List[Dict[str, Any]]]:
    """Pull the list of raw peer records out of a listing response.

    Returns None when the payload is a failure envelope, has no recognizable
    peer list, or is really a list of interface configurations.
    """
    if isinstance(payload, list):
        records = payload
    elif isinstance(payload, dict):
        if payload.get('status') is False:
            return None
        data = payload.get('data')
        if isinstance(data, list):
            records = data
        elif isinstance(payload.get('peers'), list):
            records = payload['peers']
        elif isinstance(data, dict) and isinstance(data.get('peers'), list):
            records = data['peers']
        elif isinstance(data, dict) and isinstance(data.get('configurationPeers'), list):
            records = data['configurationPeers']
        else:
            return None
    else:
        return None

    if any(_looks_like_configuration_summary(record) for record in records):
        return None
    return [record for record in records if isinstance(record, dict)]


def parse_peer_listing(payload) -> List[Peer]:
    records = extract_peer_records(payload)
    if records is None:
        raise MalformedUpstreamResponse("Response is not a peer listing")
    return [peer for peer in map(normalize_peer, records) if peer is not None]


def extract_created_peer(payload, fallback_name: str) -> Optional[Peer]:
    """Find the peer a successful addPeers call embedded in its response."""
    if not isinstance(payload, dict) or payload.get('status') is not True:
        return None

    data = payload.get('data')
    if isinstance(data, list):
        records = [record for record in data if isinstance(record, dict)]
        named = [record for record in records if _first_present(record, NAME_ALIASES) == fallback_name]
        data = (named or records or [None])[-1]

    if isinstance(data, dict):
        candidate = data
    elif isinstance(payload.get('peer'), dict):
        candidate = payload['peer']
    else:
        return None
    return normalize_peer(candidate, fallback_name)


def _is_success(payload) -> bool:
    return isinstance(payload, dict) and payload.get('status') is True


def _downloaded_text(response: UpstreamResponse) -> Optional[str]:
    """Config text carried by a download response, if any."""
    if not response.ok or not response.text.strip():
        return None

    payload = response.payload
    if isinstance(payload, dict):
        if payload.get('status') is False:
            return None
        data = payload.get('data')
        if isinstance(data, dict):
            data = data.get('file') or data.get('config')
        if isinstance(data, str) and data.strip():
            return data
        return None
    if isinstance(payload, str):
        return payload or None
    return response.text


class WGDashboard:
    def __init__(self, base_url: str, api_key: str, config_name: str,
                 peer_defaults: Optional[Dict[str, Any]] = None,
                 timeout: int = PERFORMANCE_SETTINGS['request_timeout'],
                 session: Optional[ClientSession] = None):
        self.base_url = (base_url or '').strip().rstrip('/')
        self.api_key = (api_key or '').strip()
        self.config_name = (config_name or '').strip()
        self.peer_defaults = dict(PEER_DEFAULTS, **(peer_defaults or {}))
        self.timeout = ClientTimeout(total=timeout)
        self.download_rounds = DOWNLOAD_SETTINGS['rounds']
        self.backoff_step = DOWNLOAD_SETTINGS['backoff_step']
        self._session = session

        logger.info(f"WGDashboard client initialized: url={self.base_url} config={self.config_name}")

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                headers={
                    'Content-Type': 'application/json',
                    'wg-dashboard-apikey': self.api_key
                },
                timeout=self.timeout
            )
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _send(self, candidate: RequestCandidate) -> UpstreamResponse:
        session = await self._get_session()
        # Paths are pre-encoded; yarl must not re-quote the peer id
        url = URL(self.base_url + candidate.path, encoded=True)
        async with session.request(candidate.method, url, json=candidate.json) as response:
            raw = await response.read()
            status = response.status
            charset = response.charset or 'utf-8'

        # Binary or mislabelled bodies must not abort probing
        try:
            body = raw.decode(charset, errors='replace')
        except LookupError:
            body = raw.decode('utf-8', errors='replace')

        payload = None
        if body:
            try:
                payload = json.loads(body)
            except ValueError:
                pass
        return UpstreamResponse(status, body, payload)

    @property
    def _quoted_config_name(self):
        return quote(self.config_name, safe='')

    def peer_list_candidates(self) -> List[RequestCandidate]:
        name = self._quoted_config_name
        return [
            RequestCandidate('GET', f'/api/getPeers/{name}'),
            RequestCandidate('GET', f'/api/getPeers?configName={name}'),
            RequestCandidate('GET', f'/api/getPeers?configuration={name}'),
            RequestCandidate('GET', f'/api/getPeers?config={name}'),
            RequestCandidate('POST', '/api/getPeers', {'configName': self.config_name}),
            RequestCandidate('POST', '/api/getPeers', {'configuration': self.config_name}),
            RequestCandidate('GET', f'/api/getWireguardConfigurationInfo?configurationName={name}'),
            RequestCandidate('GET', f'/api/getWireguardConfiguration/{name}'),
            RequestCandidate('GET', f'/api/getWireguardConfigurations/{name}'),
            RequestCandidate('GET', '/api/getWireguardConfigurations')
        ]

    def config_download_candidates(self, peer_id: str) -> List[RequestCandidate]:
        name = self._quoted_config_name
        once = quote(peer_id, safe='')
        twice = quote(once, safe='')

        candidates = []
        for encoded in dict.fromkeys((once, twice)):
            candidates.extend([
                RequestCandidate('GET', f'/api/downloadPeer/{name}?id={encoded}'),
                RequestCandidate('GET', f'/api/downloadPeer/{name}/{encoded}'),
                RequestCandidate('GET', f'/api/downloadPeer/{encoded}'),
                RequestCandidate('GET', f'/api/download/{encoded}')
            ])
        return candidates

    async def handshake(self) -> bool:
        try:
            response = await self._send(RequestCandidate('GET', '/api/handshake'))
        except NETWORK_ERRORS as e:
            logger.error(f"WGDashboard handshake failed: {e}")
            return False
        return response.ok and _is_success(response.payload)

    async def list_peers(self) -> List[Peer]:
        failures = []
        for candidate in self.peer_list_candidates():
            try:
                response = await self._send(candidate)
            except NETWORK_ERRORS as e:
                logger.warning(f"Peer listing via {candidate} failed: {e!r}")
                failures.append(f"{candidate}: {type(e).__name__}")
                continue

            if not response.ok:
                # 404 only means this panel version has no such endpoint
                if response.status != 404:
                    logger.warning(f"Peer listing via {candidate} returned HTTP {response.status}")
                failures.append(f"{candidate}: {response.status}")
                continue

            try:
                peers = parse_peer_listing(response.payload)
            except MalformedUpstreamResponse:
                failures.append(f"{candidate}: unrecognized response")
                continue

            if peers:
                logger.debug(f"Listed {len(peers)} peers via {candidate}")
                return peers
            failures.append(f"{candidate}: no peers")

        logger.warning(f"No peer listing endpoint returned peers: {failures}")
        return []

    async def get_peer_by_id(self, peer_id: str) -> Optional[Peer]:
        for peer in await self.list_peers():
            if peer.id == peer_id or (peer.public_key and peer.public_key == peer_id):
                return peer
        return None

    def prepare_config(self, text: str) -> Optional[str]:
        return wireguard_config.normalize(
            text,
            endpoint=self.peer_defaults.get('endpoint'),
            allowed_ips=self.peer_defaults.get('allowed_ips'),
            dns=self.peer_defaults.get('dns')
        )

    async def _try_download(self, candidate: RequestCandidate, failures: List[str]) -> Optional[str]:
        try:
            response = await self._send(candidate)
        except NETWORK_ERRORS as e:
            failures.append(f"{candidate}: {type(e).__name__}")
            return None

        text = _downloaded_text(response)
        if text is None:
            failures.append(f"{candidate}: {response.status}")
            return None

        config = self.prepare_config(text)
        if config is None:
            logger.warning(f"Download via {candidate} did not return a client config")
            failures.append(f"{candidate}: not a client config")
        return config

    async def download_peer_config(self, peer_id: str) -> Optional[str]:
        """Fetch a peer's client config, normalized and ready to hand out.

        Tries every download URL with the id encoded once and twice, for up
        to three rounds with growing pauses, then falls back to a config
        embedded in the peer listing.
        """
        if not peer_id or str(peer_id).strip().lower() in NULL_IDS:
            logger.warning(f"Refusing to download config for empty peer id {peer_id!r}")
            return None
        peer_id = str(peer_id).strip()

        failures = []
        for round_number in range(1, self.download_rounds + 1):
            for candidate in self.config_download_candidates(peer_id):
                config = await self._try_download(candidate, failures)
                if config:
                    logger.info(f"Downloaded config for peer {peer_id} via {candidate}")
                    return config
            if round_number < self.download_rounds:
                await asyncio.sleep(self.backoff_step * round_number)

        logger.warning(f"All download endpoints failed for peer {peer_id}, trying peer listing")
        peer = await self.get_peer_by_id(peer_id)
        if peer is not None and peer.config:
            config = self.prepare_config(peer.config)
            if config:
                return config

        logger.error(f"Config for peer {peer_id} is unavailable: {failures}")
        return None

    async def restart_interface(self) -> bool:
        candidate = RequestCandidate('POST', f'/api/restartWireguardConfiguration/{self._quoted_config_name}')
        try:
            response = await self._send(candidate)
        except NETWORK_ERRORS as e:
            logger.error(f"Error restarting interface: {e!r}")
            return False

        if response.ok and _is_success(response.payload):
            logger.info("Interface restarted successfully")
            return True
        if response.status == 404:
            # Older panels have no restart endpoint and apply changes themselves
            logger.debug("Interface restart endpoint not available")
        else:
            logger.warning(f"Failed to restart interface: HTTP {response.status} {response.text[:200]}")
        return False

    async def create_peer(self, name: str = None, dns: str = None, allowed_ips: str = None,
                          keepalive: int = None, mtu: int = None, preshared_key: bool = False) -> Optional[Peer]:
        payload = {
            "bulkAdd": False,
            "name": name or f"User_{int(time.time() * 1000)}",
            "DNS": dns or self.peer_defaults['dns'],
            "endpoint_allowed_ip": allowed_ips or self.peer_defaults['allowed_ips'],
            "keepalive": keepalive if keepalive is not None else self.peer_defaults['keepalive'],
            "mtu": mtu if mtu is not None else self.peer_defaults['mtu'],
            "preshared_key_bulkAdd": preshared_key
        }
        logger.info(f"Creating new peer: {payload['name']}")

        candidate = RequestCandidate('POST', f'/api/addPeers/{self._quoted_config_name}', payload)
        try:
            response = await self._send(candidate)
        except NETWORK_ERRORS as e:
            logger.error(f"Error creating peer: {e!r}")
            return None

        if not (response.ok and _is_success(response.payload)):
            logger.error(f"Failed to create peer: HTTP {response.status} {response.text[:500]}")
            return None

        await self.restart_interface()

        created = extract_created_peer(response.payload, payload['name'])
        if created is not None:
            logger.info(f"Peer created: {created.id}")
            return created

        logger.info("Peer created, looking it up in the peer list")
        peers = await self.list_peers()
        for peer in peers:
            if peer.name == payload['name']:
                return peer
        return peers[-1] if peers else None

    async def _peer_action(self, action: str, candidate: RequestCandidate) -> bool:
        try:
            response = await self._send(candidate)
        except NETWORK_ERRORS as e:
            logger.error(f"Error during {action}: {e!r}")
            return False

        if not (response.ok and _is_success(response.payload)):
            logger.error(f"{action} failed: HTTP {response.status} {response.text[:200]}")
            return False

        await self.restart_interface()
        return True

    async def delete_peer(self, peer_id: str) -> bool:
        candidate = RequestCandidate(
            'POST', f'/api/deletePeers/{self._quoted_config_name}', {'peers': [peer_id]}
        )
        return await self._peer_action(f"delete peer {peer_id}", candidate)

    async def restrict_peer(self, peer_id: str, restrict: bool = True) -> bool:
        candidate = RequestCandidate(
            'POST', f'/api/restrictPeers/{self._quoted_config_name}',
            {'peers': [peer_id], 'restrict': restrict}
        )
        return await self._peer_action(f"restrict peer {peer_id}", candidate)
