#!/usr/bin/env python3
"""
VOD RELAY - media relay for embedded video players
Fetches playlists and segments on the browser's behalf, rewrites HLS
playlists so every segment loops back through the relay, and runs the
player failover session over a WebSocket.
"""
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urljoin, urlparse

import requests
from flask import Flask, Response, jsonify, redirect, request, stream_with_context
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from m3u8_rewriter import (
    PLAYLIST_MIMETYPE,
    RELAY_PATH,
    is_playlist,
    path_embedder,
    query_embedder,
    rewrite_playlist,
)
from playback_session import PlaybackSession
from url_guard import is_safe_target
from vod_config import ConfigError, ConfigProvider

app = Flask(__name__)
sock = Sock(app)

# Configuration
RELAY_TIMEOUT = float(os.environ.get('RELAY_TIMEOUT', 15))
CHUNK_SIZE = int(os.environ.get('RELAY_CHUNK_SIZE', 8192))
HOST = os.environ.get('RELAY_HOST', '0.0.0.0')
PORT = int(os.environ.get('RELAY_PORT', 5000))
LOG_LEVEL = os.environ.get('RELAY_LOG_LEVEL', 'INFO').upper()
LOG_FILE = os.environ.get('RELAY_LOG_FILE', '')

USER_AGENT = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
PLAYLIST_CACHE_CONTROL = 'public, max-age=300'

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
    'Access-Control-Allow-Headers': 'Range, Content-Type',
    'Access-Control-Expose-Headers': 'Content-Length, Content-Range, Accept-Ranges',
}
PREFLIGHT_MAX_AGE = '86400'

# Upstream headers copied onto passthrough responses
PASSTHROUGH_HEADERS = ['Content-Type', 'Content-Length', 'Content-Range', 'Accept-Ranges', 'Last-Modified', 'ETag']

logger = logging.getLogger('relay_server')
config_provider = ConfigProvider()

# =============================================================================
# LOGGING
# =============================================================================

_logging_configured = False


def configure_logging(level=LOG_LEVEL, log_file=LOG_FILE):
    """Console handler always, file handler when RELAY_LOG_FILE is set"""
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    formatter = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s')
    root = logging.getLogger()
    root.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def log_request(mode, method, url, status="→"):
    """Consistent logging format"""
    logger.info(f"[{mode.upper():8}] {status} {method:4} {url[:80]}")


configure_logging()

# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


@dataclass(frozen=True)
class RelayRequest:
    target_url: str
    forwarded_range: Optional[str]
    origin_hint: str


def target_origin(url):
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def proxy_origin():
    """Public origin of this relay, honouring reverse-proxy headers"""
    if request.headers.get('X-Forwarded-Host'):
        forwarded_proto = request.headers.get('X-Forwarded-Proto', 'https')
        forwarded_host = request.headers.get('X-Forwarded-Host')
        return f"{forwarded_proto}://{forwarded_host}"
    return request.url_root.rstrip('/')


def error_response(message, status, details=None):
    body = {'error': message, 'status': status}
    if details:
        body['details'] = details
    response = jsonify(body)
    response.status_code = status
    response.headers['Access-Control-Allow-Origin'] = '*'
    return response


def preflight_response():
    response = Response(status=204)
    response.headers.update(CORS_HEADERS)
    response.headers['Access-Control-Max-Age'] = PREFLIGHT_MAX_AGE
    return response


def fetch_upstream(relay_request, method='GET'):
    """Single upstream fetch; redirects are handed back to the caller"""
    headers = {
        'User-Agent': USER_AGENT,
        'Accept': '*/*',
        'Referer': relay_request.origin_hint,
    }
    if relay_request.forwarded_range:
        headers['Range'] = relay_request.forwarded_range

    return requests.request(
        method=method,
        url=relay_request.target_url,
        headers=headers,
        allow_redirects=False,
        stream=True,
        timeout=RELAY_TIMEOUT,
    )


def _decode_playlist(resp):
    content_type = resp.headers.get('Content-Type', '').lower()
    encoding = resp.encoding if 'charset' in content_type and resp.encoding else 'utf-8'
    return resp.content.decode(encoding, errors='replace')

# =============================================================================
# RELAY
# =============================================================================


def relay(target_url, embed, mode):
    """Validate, fetch and answer one relay call"""
    method = 'HEAD' if request.method == 'HEAD' else 'GET'

    if not is_safe_target(target_url):
        log_request(mode, method, str(target_url), "✗ denied")
        return error_response('Invalid or disallowed target URL', 400)

    relay_request = RelayRequest(
        target_url=target_url,
        forwarded_range=request.headers.get('Range'),
        origin_hint=target_origin(target_url),
    )
    log_request(mode, method, target_url)

    try:
        resp = fetch_upstream(relay_request, method)
    except requests.exceptions.Timeout as e:
        log_request(mode, method, target_url, "✗ timeout")
        return error_response('Upstream request timed out', 500, str(e))
    except ValueError as e:
        # InvalidURL and urllib3's LocationParseError are both ValueErrors,
        # raised before anything is sent
        log_request(mode, method, target_url, f"✗ invalid {e}")
        return error_response('Invalid or disallowed target URL', 400, str(e))
    except requests.exceptions.RequestException as e:
        log_request(mode, method, target_url, f"✗ {e}")
        return error_response('Upstream request failed', 500, str(e))

    try:
        return build_relay_response(resp, relay_request, embed, mode)
    except requests.exceptions.RequestException as e:
        resp.close()
        log_request(mode, method, target_url, f"✗ {e}")
        return error_response('Upstream request failed', 500, str(e))
    except Exception as e:
        resp.close()
        logger.exception(f"Relay failure for {target_url[:80]}")
        return error_response('Relay failure', 500, str(e))


def build_relay_response(resp, relay_request, embed, mode):
    target_url = relay_request.target_url
    status = resp.status_code

    # Redirects go back to the browser instead of being followed here
    location = resp.headers.get('Location')
    if 300 <= status < 400 and location:
        resp.close()
        location = urljoin(target_url, location)
        log_request(mode, request.method, target_url, f"↪ {status} {location[:60]}")
        response = redirect(location, code=status)
        response.headers['Access-Control-Allow-Origin'] = '*'
        return response

    if not 200 <= status < 300:
        resp.close()
        log_request(mode, request.method, target_url, f"✗ {status}")
        return error_response(f'Upstream request failed: {status}', status)

    content_type = resp.headers.get('Content-Type', '')

    if is_playlist(content_type, target_url):
        text = _decode_playlist(resp)
        resp.close()
        body = rewrite_playlist(text, target_url, embed)
        log_request(mode, request.method, target_url, f"✓ playlist {len(body)}b")
        response = Response(body, status=200, content_type=PLAYLIST_MIMETYPE)
        response.headers['Cache-Control'] = PLAYLIST_CACHE_CONTROL
        response.headers['Access-Control-Allow-Origin'] = '*'
        return response

    headers = {}
    for name in PASSTHROUGH_HEADERS:
        value = resp.headers.get(name)
        if value:
            headers[name] = value
    # iter_content undoes Content-Encoding, so the upstream length no longer holds
    if resp.headers.get('Content-Encoding'):
        headers.pop('Content-Length', None)
    headers.setdefault('Content-Type', 'application/octet-stream')
    headers.update(CORS_HEADERS)

    def generate():
        try:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    yield chunk
        finally:
            resp.close()

    log_request(mode, request.method, target_url, f"✓ {status} {headers['Content-Type']}")
    return Response(stream_with_context(generate()), status=status, headers=headers)


@app.route(RELAY_PATH, methods=['GET', 'HEAD', 'OPTIONS'])
def relay_query():
    """Query form: /relay?url=<percent-encoded target>"""
    if request.method == 'OPTIONS':
        return preflight_response()

    target_url = request.args.get('url')
    if not target_url:
        return error_response('Missing url parameter', 400)
    return relay(target_url.strip(), query_embedder(proxy_origin()), 'query')


@app.route(RELAY_PATH + '/<path:target>', methods=['GET', 'HEAD', 'OPTIONS'], merge_slashes=False)
def relay_path(target):
    """Path form: /relay/<percent-encoded target, slashes allowed>"""
    if request.method == 'OPTIONS':
        return preflight_response()

    # The server already decoded the path once; a client that encoded twice
    # still leaves "https%3A..." behind
    target_url = target
    if target_url.lower().startswith(('http%3a', 'https%3a')):
        target_url = unquote(target_url)

    if request.query_string:
        target_url += '?' + request.query_string.decode('utf-8', errors='replace')

    return relay(target_url, path_embedder(proxy_origin()), 'path')

# =============================================================================
# CONFIGURATION SNAPSHOTS
# =============================================================================


def config_error(e):
    logger.error(f"Configuration unavailable: {e}")
    return jsonify({'code': 500, 'msg': f'Configuration unavailable: {e}'}), 500


@app.route('/api/vod-sources')
def vod_sources():
    try:
        snapshot = config_provider.snapshot()
    except ConfigError as e:
        return config_error(e)

    selected = snapshot.selected_source()
    return jsonify({
        'code': 200,
        'msg': 'success',
        'data': {
            'sources': [source.to_dict() for source in snapshot.sources],
            'selected': selected.to_dict() if selected else None,
        },
    })


@app.route('/api/player-config')
def player_config():
    try:
        snapshot = config_provider.snapshot()
    except ConfigError as e:
        return config_error(e)

    return jsonify({
        'code': 200,
        'msg': 'success',
        'data': {'players': [backend.to_dict() for backend in snapshot.player_lineup()]},
    })

# =============================================================================
# PLAYBACK SESSION (WebSocket)
# =============================================================================


@sock.route('/session')
def playback_socket(ws):
    """One failover controller per connected player page"""
    try:
        backends = config_provider.snapshot().player_lineup()
    except ConfigError as e:
        logger.error(f"Configuration unavailable: {e}")
        ws.send(json.dumps({'type': 'error', 'message': f'Configuration unavailable: {e}'}))
        return

    log_request('session', 'WS', 'Client connected')
    playback = PlaybackSession(backends, ws.send, lock=threading.RLock())

    try:
        while True:
            message = ws.receive()
            if message is None:
                break
            playback.handle(message)
    except ConnectionClosed:
        pass
    finally:
        playback.close()
        log_request('session', 'WS', 'Client disconnected')

# =============================================================================
# HOMEPAGE
# =============================================================================


@app.route('/')
def index():
    return jsonify({
        'service': 'vod-relay',
        'endpoints': {
            'relay_path': f'{RELAY_PATH}/<percent-encoded-url>',
            'relay_query': f'{RELAY_PATH}?url=<percent-encoded-url>',
            'sources': '/api/vod-sources',
            'players': '/api/player-config',
            'session': '/session (WebSocket)',
        },
    })

# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    print("\n" + "=" * 70)
    print("VOD RELAY - media relay and player failover")
    print("=" * 70)
    print(f"  Relay (path)   → {RELAY_PATH}/<url>")
    print(f"  Relay (query)  → {RELAY_PATH}?url=...")
    print("  Sources        → /api/vod-sources")
    print("  Players        → /api/player-config")
    print("  Session        → /session (WebSocket)")
    print("=" * 70 + "\n")
    print(f"Starting server on http://{HOST}:{PORT}\n")

    app.run(host=HOST, port=PORT, debug=False, threaded=True)
