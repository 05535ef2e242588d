"""Validation and repair of WireGuard client configuration text."""

import re
from typing import Dict, List, Optional

INTERFACE = '[Interface]'
PEER = '[Peer]'

SERVER_ONLY_KEYS = ('listenport', 'postup', 'postdown', 'saveconfig')

_SECTION_RE = re.compile(r'^\[(\w+)\]\s*$')
_ASSIGNMENT_RE = re.compile(r'^\s*([A-Za-z]+)\s*=')


def _section_of(line: str) -> Optional[str]:
    match = _SECTION_RE.match(line.strip())
    if not match:
        return None
    name = match.group(1).lower()
    if name == 'interface':
        return INTERFACE
    if name == 'peer':
        return PEER
    return f"[{match.group(1)}]"


def _key_of(line: str) -> Optional[str]:
    match = _ASSIGNMENT_RE.match(line)
    return match.group(1).lower() if match else None


def _keys_by_section(lines: List[str]) -> Dict[str, set]:
    keys = {}
    current = None
    for line in lines:
        section = _section_of(line)
        if section:
            current = section
            keys.setdefault(current, set())
            continue
        key = _key_of(line)
        if key and current:
            keys[current].add(key)
    return keys


def is_client_config(text: str) -> bool:
    """True if the text is a client config and carries nothing server-only.

    The panel sometimes hands back the interface's server config, which must
    never reach a user as their personal config.
    """
    if not text or not isinstance(text, str):
        return False

    lines = text.splitlines()
    keys = _keys_by_section(lines)
    if INTERFACE not in keys or PEER not in keys:
        return False
    if 'privatekey' not in keys[INTERFACE] or 'publickey' not in keys[PEER]:
        return False

    for line in lines:
        if _key_of(line) in SERVER_ONLY_KEYS:
            return False
    return True


def _first_header(lines: List[str], header: str) -> int:
    for index, line in enumerate(lines):
        if _section_of(line) == header:
            return index
    return -1


def normalize(text: str, endpoint: str = None, allowed_ips: str = None, dns: str = None) -> Optional[str]:
    """Fill in missing Endpoint, AllowedIPs and DNS lines.

    Returns None when the text is not a client config. Existing lines keep
    their order and content; only section headers are rewritten to their
    canonical spelling.
    """
    config = (text or '').strip()
    if not config or not is_client_config(config):
        return None

    endpoint = (endpoint or '').strip()
    allowed_ips = (allowed_ips or '').strip()
    dns = (dns or '').strip()

    lines = []
    section = None
    has_dns = has_allowed_ips = has_endpoint = False
    for line in config.splitlines():
        header = _section_of(line)
        if header:
            section = header
            lines.append(header)
            continue

        key = _key_of(line)
        if section == INTERFACE and key == 'dns':
            has_dns = True
        elif section == PEER and key == 'allowedips':
            has_allowed_ips = True
        elif section == PEER and key == 'endpoint':
            has_endpoint = True
        lines.append(line)

    inserted_endpoint = False
    if endpoint and not has_endpoint:
        peer_index = _first_header(lines, PEER)
        lines.insert(peer_index + 1, f"Endpoint = {endpoint}")
        inserted_endpoint = True

    if allowed_ips and not has_allowed_ips:
        peer_index = _first_header(lines, PEER)
        offset = 2 if inserted_endpoint else 1
        lines.insert(peer_index + offset, f"AllowedIPs = {allowed_ips}")

    if dns and not has_dns:
        interface_index = _first_header(lines, INTERFACE)
        lines.insert(interface_index + 1, f"DNS = {dns}")

    return '\n'.join(lines).strip() + '\n'
