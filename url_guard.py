"""
URL safety checks for the relay.

Decides whether an upstream URL may be fetched at all. Matching is done on
the literal hostname; set RELAY_RESOLVE_HOSTS=1 to additionally resolve the
host and reject private addresses.
"""
import ipaddress
import logging
import os
import socket
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ('http', 'https')

# Loopback and cloud metadata endpoints
BLOCKED_HOSTS = {
    'localhost',
    '127.0.0.1',
    '0.0.0.0',
    '::1',
    '169.254.169.254',  # AWS/Azure/OpenStack metadata
    'metadata.google.internal',
    'metadata',
}

# Private network prefixes (10/8, 172.16/12, 192.168/16)
BLOCKED_IP_PREFIXES = (
    ('10.',)
    + tuple(f'172.{n}.' for n in range(16, 32))
    + ('192.168.',)
)

RESOLVE_HOSTS = os.environ.get('RELAY_RESOLVE_HOSTS', '').lower() in ('1', 'true', 'yes')


def check_target(url, resolve=None):
    """Return (ok, reason). The first failing check wins."""
    if not isinstance(url, str) or not url:
        return False, 'Empty URL'

    try:
        parsed = urlparse(url.strip())
        hostname = parsed.hostname
        parsed.port  # raises for ports outside 0-65535
    except ValueError as e:
        return False, f'Unparseable URL: {e}'

    if parsed.scheme not in ALLOWED_SCHEMES:
        return False, f'Unsupported URL scheme: {parsed.scheme or "(none)"}'

    if not hostname:
        return False, 'Missing hostname'

    if any(char.isspace() for char in hostname):
        return False, f'Invalid hostname: {hostname!r}'

    # Labels over 63 characters (or otherwise unencodable) never reach DNS
    try:
        hostname.encode('idna')
    except UnicodeError as e:
        return False, f'Invalid hostname: {e}'

    if hostname in BLOCKED_HOSTS:
        return False, f'Blocked host: {hostname}'

    for prefix in BLOCKED_IP_PREFIXES:
        if hostname.startswith(prefix):
            return False, f'Blocked private address: {hostname}'

    if RESOLVE_HOSTS if resolve is None else resolve:
        return _check_resolved(hostname)

    return True, None


def _check_resolved(hostname):
    try:
        infos = socket.getaddrinfo(hostname, None)
    except (socket.gaierror, UnicodeError) as e:
        return False, f'Cannot resolve {hostname}: {e}'

    for info in infos:
        address = ipaddress.ip_address(info[4][0].split('%', 1)[0])
        if (address.is_private or address.is_loopback or address.is_link_local
                or address.is_reserved or address.is_unspecified):
            return False, f'{hostname} resolves to non-public address {address}'
    return True, None


def is_safe_target(url, resolve=None):
    """Allow/Deny predicate used by the relay routes. Never raises."""
    ok, reason = check_target(url, resolve=resolve)
    if not ok:
        logger.warning(f"Denied relay target {str(url)[:80]}: {reason}")
    return ok
