"""
JSON message protocol between a browser and one FailoverController.

Inbound messages::

    {"action": "open", "episodes": ["https://.../1.m3u8", ...], "episode": 0}
    {"action": "episode", "index": 3}
    {"action": "previous"} / {"action": "next"}
    {"action": "backend", "index": 1}
    {"action": "loaded", "url": "<player url that fired onload>"}
    {"action": "retry"}

Every state transition is pushed as ``{"type": "state", "state": {...}}``;
rejected messages get ``{"type": "error", "message": "..."}``.
"""
import json
import logging
import threading

from simple_websocket import ConnectionClosed

from player_failover import FailoverController, PlaybackError, ThreadingScheduler

logger = logging.getLogger(__name__)


def _index(message, key, default=None):
    """Integer position field; JSON floats, bools and strings are rejected"""
    value = message.get(key, default)
    if value is None:
        raise ValueError(f"missing '{key}'")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' must be an integer, got {value!r}")
    return value


class PlaybackSession:
    def __init__(self, backends, send, scheduler=None, lock=None):
        self.send = send
        self.lock = lock or threading.RLock()
        self.controller = FailoverController(
            backends,
            scheduler or ThreadingScheduler(self.lock),
            on_change=self._push_state,
        )

    def _push_state(self, state):
        self._send({'type': 'state', 'state': self.controller.snapshot()})

    def _send(self, payload):
        # Timer threads push state too, so a client that just left must not
        # raise out of them
        try:
            self.send(json.dumps(payload))
        except ConnectionClosed as e:
            logger.info(f"Dropping {payload['type']} message, client disconnected ({e.reason})")

    def _error(self, message):
        logger.warning(f"Session error: {message}")
        self._send({'type': 'error', 'message': message})

    def handle(self, raw):
        """Apply one inbound message; never raises for bad input"""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            self._error('Message is not valid JSON')
            return
        if not isinstance(message, dict):
            self._error('Message must be a JSON object')
            return

        action = message.get('action')
        handler = getattr(self, f'_on_{action}', None) if isinstance(action, str) else None
        if handler is None:
            self._error(f'Unknown action: {action!r}')
            return

        with self.lock:
            try:
                handler(message)
            except PlaybackError as e:
                self._error(str(e))
            except (KeyError, TypeError, ValueError) as e:
                self._error(f'Bad {action} message: {e}')

    def _on_open(self, message):
        episodes = message.get('episodes')
        if not isinstance(episodes, list) or not all(isinstance(url, str) for url in episodes):
            raise ValueError('episodes must be a list of URLs')
        self.controller.load_title(episodes, _index(message, 'episode', default=0))

    def _on_episode(self, message):
        self.controller.select_episode(_index(message, 'index'))

    def _on_previous(self, message):
        self.controller.previous_episode()

    def _on_next(self, message):
        self.controller.next_episode()

    def _on_backend(self, message):
        self.controller.switch_backend(_index(message, 'index'))

    def _on_loaded(self, message):
        self.controller.notify_loaded(message.get('url'))

    def _on_retry(self, message):
        self.controller.retry()

    def _on_state(self, message):
        self._push_state(self.controller.state)

    def close(self):
        with self.lock:
            self.controller.close()
