"""
HLS playlist rewriting.

Every media reference in a fetched playlist is turned into a relay URL so
that the player fetches segments and sub-playlists back through the relay.
Directive lines (``#EXT...``) and blank lines are left exactly as they are,
so the rewritten playlist always has the same number of lines.
"""
import logging
from urllib.parse import parse_qs, quote, unquote, urljoin, urlparse

logger = logging.getLogger(__name__)

RELAY_PATH = '/relay'
PLAYLIST_MIMETYPE = 'application/vnd.apple.mpegurl'
COMMENT_MARKER = '#'

DIRECTIVE = 'directive'
BLANK = 'blank'
REFERENCE = 'reference'


def is_playlist(content_type, url):
    """A response is a playlist if its type says so or the target ends in .m3u8"""
    content_type = (content_type or '').lower()
    if 'mpegurl' in content_type or 'm3u8' in content_type:
        return True
    try:
        path = urlparse(url).path
    except ValueError:
        return False
    return path.lower().endswith('.m3u8')


def classify_line(line):
    stripped = line.strip()
    if not stripped:
        return BLANK
    if stripped.startswith(COMMENT_MARKER):
        return DIRECTIVE
    return REFERENCE


def resolve_reference(reference, base_url):
    """
    Turn a playlist reference into an absolute http(s) URL.

    Absolute URLs are used as-is, root-relative references resolve against
    the base's scheme and host, anything else against the base's directory.
    Returns None when the result is not a usable http(s) URL.
    """
    reference = reference.strip()
    if reference.startswith(('http://', 'https://')):
        resolved = reference
    else:
        try:
            resolved = urljoin(base_url, reference)
        except ValueError:
            return None

    try:
        parsed = urlparse(resolved)
    except ValueError:
        return None
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None
    return resolved


def path_embedder(origin):
    """Embed targets as /relay/<percent-encoded-url>"""
    origin = origin.rstrip('/')

    def embed(url):
        return f"{origin}{RELAY_PATH}/{quote(url, safe='')}"
    return embed


def query_embedder(origin):
    """Embed targets as /relay?url=<percent-encoded-url>"""
    origin = origin.rstrip('/')

    def embed(url):
        return f"{origin}{RELAY_PATH}?url={quote(url, safe='')}"
    return embed


def extract_embedded_target(relay_url):
    """Recover the upstream URL from a relay URL built by either embedder"""
    parsed = urlparse(relay_url)
    query = parse_qs(parsed.query)
    if query.get('url'):
        return query['url'][0]

    marker = RELAY_PATH + '/'
    if marker in parsed.path:
        # parsed.path is still percent-encoded, so slashes inside the target survive
        return unquote(parsed.path.split(marker, 1)[1])
    return None


def rewrite_playlist(text, base_url, embed):
    """Rewrite every reference line of ``text`` through ``embed``"""
    lines = text.split('\n')
    rewritten = []
    changed = 0

    for line in lines:
        # Keep CRLF playlists CRLF
        body = line.rstrip('\r')
        eol = line[len(body):]

        if classify_line(body) != REFERENCE:
            rewritten.append(line)
            continue

        resolved = resolve_reference(body, base_url)
        if resolved is None:
            logger.warning(f"Leaving unresolvable playlist reference as-is: {body[:80]}")
            rewritten.append(line)
            continue

        rewritten.append(embed(resolved) + eol)
        changed += 1

    logger.debug(f"Rewrote {changed}/{len(lines)} playlist lines for {base_url[:80]}")
    return '\n'.join(rewritten)
