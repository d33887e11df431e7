"""
Playable-source and player-backend configuration.

Entries come from a JSON file (VOD_CONFIG_FILE) or the built-in presets and
are validated into immutable values before the relay or the failover
controller ever sees them. A loaded snapshot is reused for VOD_CONFIG_TTL
seconds, then re-read; snapshots are replaced whole, never edited.
"""
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

logger = logging.getLogger(__name__)

# --- Configuration ---
CONFIG_FILE = os.environ.get('VOD_CONFIG_FILE', '')
CONFIG_TTL = float(os.environ.get('VOD_CONFIG_TTL', 60))
DEFAULT_TIMEOUT_MILLIS = 10000
SOURCE_KINDS = ('json', 'xml')
# ---------------------

PRESET_SOURCES = [
    {
        'key': 'rycjapi',
        'name': 'Ruyi',
        'api': 'https://cj.rycjapi.com/api.php/provide/vod',
        'playUrl': 'https://ryplayer.com?url=',
        'type': 'json',
    },
    {
        'key': 'ukuapi88',
        'name': 'Uku',
        'api': 'https://api.ukuapi88.com/api.php/provide/vod',
        'playUrl': 'https://api.ukubf.com/m3u8/?url=',
        'type': 'json',
    },
    {
        'key': 'wolongzy',
        'name': 'Wolong',
        'api': 'https://collect.wolongzy.cc/api.php/provide/vod/',
        'playUrl': 'https://jx.wolongzywcdn.com:65/m3u8.php?url=',
        'type': 'json',
    },
    {
        'key': 'ikunzyapi',
        'name': 'iKun',
        'api': 'https://ikunzyapi.com/api.php/provide/vod',
        'playUrl': 'https://www.ikdmjx.com/?url=',
        'type': 'json',
    },
]

# External players appended after the source players
PRESET_PLAYERS = [
    {'id': 'xmflv', 'name': 'Fallback player 1', 'url': 'https://jx.xmflv.com/?url=', 'priority': 1},
    {'id': 'jsonplayer', 'name': 'Fallback player 2', 'url': 'https://jx.jsonplayer.com/player/?url=', 'priority': 2},
]


class ConfigError(ValueError):
    """Raised for configuration entries that cannot be used"""


@dataclass(frozen=True)
class PlayableSource:
    key: str
    name: str
    catalog_api_template: str
    player_embed_template: str
    kind: str = 'json'

    def to_dict(self):
        return {
            'key': self.key,
            'name': self.name,
            'api': self.catalog_api_template,
            'playUrl': self.player_embed_template,
            'type': self.kind,
        }


@dataclass(frozen=True)
class PlayerBackend:
    id: str
    name: str
    url_template: str
    priority: int = 0
    timeout_millis: int = DEFAULT_TIMEOUT_MILLIS
    enabled: bool = True

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'url': self.url_template,
            'priority': self.priority,
            'timeout': self.timeout_millis,
            'enabled': self.enabled,
        }


@dataclass(frozen=True)
class ConfigSnapshot:
    sources: Tuple[PlayableSource, ...] = ()
    backends: Tuple[PlayerBackend, ...] = ()
    selected_key: Optional[str] = None

    def selected_source(self):
        """The selected source, falling back to the first one"""
        for source in self.sources:
            if source.key == self.selected_key:
                return source
        return self.sources[0] if self.sources else None

    def player_lineup(self):
        """
        Ordered backends for the failover controller: every source's embed
        player first (in source order), then the enabled external players by
        priority, ties broken by list order.
        """
        lineup = [
            PlayerBackend(
                id=f'source:{source.key}',
                name=source.name,
                url_template=source.player_embed_template,
                priority=position,
            )
            for position, source in enumerate(self.sources)
        ]
        external = sorted(
            (backend for backend in self.backends if backend.enabled),
            key=lambda backend: backend.priority,
        )
        return lineup + external


def _require(entry, *names):
    """First non-empty value among the accepted spellings of a field"""
    for name in names:
        value = entry.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raise ConfigError(f"missing required field '{names[0]}'")


def parse_source(entry):
    if not isinstance(entry, dict):
        raise ConfigError(f'source entry must be an object, got {type(entry).__name__}')
    kind = entry.get('type') or entry.get('kind') or 'json'
    if kind not in SOURCE_KINDS:
        raise ConfigError(f'unknown source type {kind!r}')
    return PlayableSource(
        key=_require(entry, 'key'),
        name=_require(entry, 'name'),
        catalog_api_template=_require(entry, 'api', 'catalog_api_template'),
        player_embed_template=_require(entry, 'playUrl', 'player_embed_template'),
        kind=kind,
    )


def parse_backend(entry):
    if not isinstance(entry, dict):
        raise ConfigError(f'player entry must be an object, got {type(entry).__name__}')
    try:
        priority = int(entry.get('priority', 0))
        timeout = int(entry.get('timeout') or entry.get('timeout_millis') or DEFAULT_TIMEOUT_MILLIS)
    except (TypeError, ValueError) as e:
        raise ConfigError(f'bad number in player entry: {e}') from e
    if timeout <= 0:
        raise ConfigError(f'player timeout must be positive, got {timeout}')
    return PlayerBackend(
        id=_require(entry, 'id'),
        name=_require(entry, 'name'),
        url_template=_require(entry, 'url', 'url_template'),
        priority=priority,
        timeout_millis=timeout,
        enabled=bool(entry.get('enabled', True)),
    )


def _parse_all(entries, parser, label):
    """Keep valid entries, log and drop the rest; keys must be unique"""
    parsed = []
    seen = set()
    for position, entry in enumerate(entries or []):
        try:
            item = parser(entry)
        except ConfigError as e:
            logger.warning(f"Skipping {label} #{position}: {e}")
            continue
        ident = getattr(item, 'key', None) or item.id
        if ident in seen:
            logger.warning(f"Skipping {label} #{position}: duplicate id {ident!r}")
            continue
        seen.add(ident)
        parsed.append(item)
    return tuple(parsed)


def build_snapshot(data):
    """Validate a raw {'sources': [...], 'players': [...], 'selected': key} mapping"""
    if not isinstance(data, dict):
        raise ConfigError('configuration root must be an object')

    sources = [entry for entry in data.get('sources') or []
               if not isinstance(entry, dict) or entry.get('enabled', True)]
    return ConfigSnapshot(
        sources=_parse_all(sources, parse_source, 'source'),
        backends=_parse_all(data.get('players'), parse_backend, 'player'),
        selected_key=data.get('selected'),
    )


class TTLCache:
    """Single-value cache with an injectable clock"""

    def __init__(self, ttl, clock=time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._value = None
        self._stored_at = None

    def get(self, loader):
        now = self.clock()
        if self._stored_at is None or now - self._stored_at >= self.ttl:
            self._value = loader()
            self._stored_at = now
        return self._value

    def invalidate(self):
        self._value = None
        self._stored_at = None


class ConfigProvider:
    """Serves configuration snapshots, re-reading the file once the TTL lapses"""

    def __init__(self, path=None, ttl=None, clock: Callable[[], float] = time.monotonic):
        self.path = CONFIG_FILE if path is None else path
        self._cache = TTLCache(CONFIG_TTL if ttl is None else ttl, clock=clock)

    def snapshot(self) -> ConfigSnapshot:
        return self._cache.get(self._load)

    def refresh(self):
        self._cache.invalidate()
        return self.snapshot()

    def _load(self):
        if not self.path:
            logger.info("No VOD_CONFIG_FILE set, using preset sources and players")
            return build_snapshot({'sources': PRESET_SOURCES, 'players': PRESET_PLAYERS})

        try:
            with open(self.path, encoding='utf-8') as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f'cannot read {self.path}: {e}') from e

        snapshot = build_snapshot(data)
        logger.info(f"Loaded {len(snapshot.sources)} sources and {len(snapshot.backends)} players from {self.path}")
        return snapshot
