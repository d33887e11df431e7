"""
Player failover controller.

Embedded third-party players only report success (the iframe load event),
never failure, so a backend that has not reported success within its timeout
is treated as failed and the next backend in priority order is tried. Once
every backend has been tried for the current episode the controller stops in
the Error phase until the user retries.

One controller owns one playback session. All timers go through an injected
scheduler and the controller keeps at most one timer alive at a time.
"""
import logging
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import ClassVar, Optional
from urllib.parse import quote

from vod_config import DEFAULT_TIMEOUT_MILLIS

logger = logging.getLogger(__name__)

SETTLE_DELAY = 0.5  # seconds the backend's own player gets to initialise

# Characters encodeURIComponent leaves alone
_URI_COMPONENT_SAFE = "-_.!~*'()"


class Phase(Enum):
    IDLE = 'idle'
    LOADING = 'loading'
    PLAYING = 'playing'
    ERROR = 'error'


class PlaybackError(Exception):
    """Invalid controller operation (no title loaded, index out of range...)"""


@dataclass(frozen=True)
class Episode:
    index: int
    media_url: str


@dataclass(frozen=True)
class Idle:
    phase: ClassVar[Phase] = Phase.IDLE

    def to_dict(self):
        return {'phase': self.phase.value}


@dataclass(frozen=True)
class Loading:
    episode_index: int
    backend_index: int
    attempts: int
    url: str
    phase: ClassVar[Phase] = Phase.LOADING

    def to_dict(self):
        return dict(asdict(self), phase=self.phase.value)


@dataclass(frozen=True)
class Playing:
    episode_index: int
    backend_index: int
    attempts: int
    url: str
    phase: ClassVar[Phase] = Phase.PLAYING

    def to_dict(self):
        return dict(asdict(self), phase=self.phase.value)


@dataclass(frozen=True)
class Error:
    episode_index: int
    backend_index: int
    attempts: int
    phase: ClassVar[Phase] = Phase.ERROR

    def to_dict(self):
        return dict(asdict(self), phase=self.phase.value)


def build_player_url(backend, media_url):
    """Backend template followed by the URL-escaped media URL"""
    return backend.url_template + quote(media_url, safe=_URI_COMPONENT_SAFE)


class ThreadingScheduler:
    """
    Runs callbacks on threading.Timer threads, serialised on ``lock`` so a
    firing timer never interleaves with a message being handled.
    """

    def __init__(self, lock=None):
        self.lock = lock or threading.RLock()

    def call_later(self, delay, callback):
        def run():
            with self.lock:
                callback()

        timer = threading.Timer(delay, run)
        timer.daemon = True
        timer.start()
        return timer


class FailoverController:
    def __init__(self, backends, scheduler, on_change=None, settle_delay=SETTLE_DELAY):
        self.backends = list(backends)
        self.scheduler = scheduler
        self.on_change = on_change
        self.settle_delay = settle_delay
        self.episodes = []
        self.state = Idle()
        self._episode_index: Optional[int] = None
        self._timer = None
        self._generation = 0

    # ------------------------------------------------------------------
    # Timer slot
    # ------------------------------------------------------------------

    def _cancel_timer(self):
        # Bumping the generation also disarms a callback that already fired
        # and is waiting on the scheduler lock
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm(self, delay, callback):
        self._cancel_timer()
        generation = self._generation

        def fire():
            if generation != self._generation:
                logger.debug("Discarding stale player timer")
                return
            self._timer = None
            callback()

        self._timer = self.scheduler.call_later(delay, fire)

    @property
    def has_pending_timer(self):
        return self._timer is not None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _set_state(self, state):
        self._cancel_timer()
        self.state = state
        if isinstance(state, Loading):
            backend = self.backends[state.backend_index]
            timeout = (backend.timeout_millis or DEFAULT_TIMEOUT_MILLIS) / 1000.0
            self._arm(timeout, self._on_timeout)
        if self.on_change is not None:
            self.on_change(state)

    def _enter_loading(self, episode_index, backend_index, attempts):
        episode = self.episodes[episode_index]
        backend = self.backends[backend_index]
        self._episode_index = episode_index
        self._set_state(Loading(
            episode_index=episode_index,
            backend_index=backend_index,
            attempts=attempts,
            url=build_player_url(backend, episode.media_url),
        ))

    def _on_timeout(self):
        state = self.state
        if not isinstance(state, Loading):
            return

        backend = self.backends[state.backend_index]
        total = len(self.backends)
        next_index = state.backend_index + 1

        if state.attempts >= total - 1 or next_index >= total:
            logger.error(
                f"All players failed for episode {state.episode_index + 1} "
                f"(last: {backend.name})"
            )
            self._set_state(Error(
                episode_index=state.episode_index,
                backend_index=state.backend_index,
                attempts=state.attempts,
            ))
            return

        logger.warning(
            f"Player {backend.name} timed out after {backend.timeout_millis}ms "
            f"(attempt {state.attempts + 1}/{total}), switching to "
            f"{self.backends[next_index].name}"
        )
        self._enter_loading(state.episode_index, next_index, state.attempts + 1)

    def _on_settled(self):
        state = self.state
        if not isinstance(state, Loading):
            return
        logger.info(f"Player {self.backends[state.backend_index].name} is playing")
        self._set_state(Playing(
            episode_index=state.episode_index,
            backend_index=state.backend_index,
            attempts=state.attempts,
            url=state.url,
        ))

    def _require_title(self):
        if not self.episodes:
            raise PlaybackError('No title loaded')
        if not self.backends:
            raise PlaybackError('No player backends configured')

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def load_title(self, episodes, start_index=0):
        """Start a new title; previous session state is discarded"""
        episodes = [
            episode if isinstance(episode, Episode) else Episode(index, episode)
            for index, episode in enumerate(episodes)
        ]
        if not episodes:
            raise PlaybackError('Title has no episodes')
        if not 0 <= start_index < len(episodes):
            raise PlaybackError(f'Episode index {start_index} out of range')
        if not self.backends:
            raise PlaybackError('No player backends configured')

        self.episodes = episodes
        logger.info(f"Loading title with {len(episodes)} episodes, starting at {start_index + 1}")
        self._enter_loading(start_index, 0, 0)

    def select_episode(self, index):
        self._require_title()
        if not 0 <= index < len(self.episodes):
            raise PlaybackError(f'Episode index {index} out of range')
        if index == self._episode_index and not isinstance(self.state, Idle):
            return

        logger.info(f"Switching to episode {index + 1} with {self.backends[0].name}")
        self._enter_loading(index, 0, 0)

    def previous_episode(self):
        if self._episode_index is not None and self._episode_index > 0:
            self.select_episode(self._episode_index - 1)

    def next_episode(self):
        if self._episode_index is not None and self._episode_index < len(self.episodes) - 1:
            self.select_episode(self._episode_index + 1)

    def switch_backend(self, index):
        """Manual switch; does not reset the automatic attempt counter"""
        self._require_title()
        if not 0 <= index < len(self.backends):
            raise PlaybackError(f'Player index {index} out of range')

        state = self.state
        current = getattr(state, 'backend_index', None)
        if index == current:
            return

        attempts = getattr(state, 'attempts', 0)
        episode_index = self._episode_index if self._episode_index is not None else 0
        logger.info(f"Switching player to {self.backends[index].name}")
        self._enter_loading(episode_index, index, attempts)

    def notify_loaded(self, url=None):
        """
        Success signal from the embedded player surface. ``url`` lets the
        caller identify which load fired; a load event for a URL that is no
        longer current is ignored.
        """
        state = self.state
        if not isinstance(state, Loading):
            return
        if url is not None and url != state.url:
            logger.debug(f"Ignoring load event for stale player URL {url[:80]}")
            return
        # The settle timer takes over the slot, so the timeout cannot fire
        self._arm(self.settle_delay, self._on_settled)

    def retry(self):
        """Manual retry after every backend failed"""
        if not isinstance(self.state, Error):
            raise PlaybackError('Retry is only possible after all players failed')
        logger.info("Retrying playback from the first player")
        self._enter_loading(self.state.episode_index, 0, 0)

    def replace_backends(self, backends):
        """Swap in a new backend snapshot and restart the current episode"""
        self.backends = list(backends)
        if isinstance(self.state, Idle) or not self.episodes:
            return
        if not self.backends:
            logger.error("Backend snapshot is empty, stopping playback")
            self._set_state(Idle())
            return
        self._enter_loading(self._episode_index, 0, 0)

    def close(self):
        """Drop the session: cancel timers and go back to Idle"""
        self._cancel_timer()
        self.episodes = []
        self._episode_index = None
        self.state = Idle()

    def snapshot(self):
        data = self.state.to_dict()
        backend_index = data.get('backend_index')
        if backend_index is not None and backend_index < len(self.backends):
            data['backend'] = self.backends[backend_index].name
        data['episode_count'] = len(self.episodes)
        data['backends'] = [backend.name for backend in self.backends]
        return data
