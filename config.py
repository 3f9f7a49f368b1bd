"""Settings and channel catalog."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import json
import logging
import pathlib


log = logging.getLogger(__name__)

APP_DIR = pathlib.Path(__file__).parent
SETTINGS_FILE = APP_DIR / "settings.json"

# Characters that would break <channel>.m3u8 / <channel>_NNN.ts attribution
_RESERVED_CHARS = set("/\\_.")


@dataclass(frozen=True, slots=True)
class Channel:
    name: str
    url: str


def load_settings(path: pathlib.Path | None = None) -> dict[str, Any]:
    """Load server settings, filling in defaults for missing keys."""
    path = path or SETTINGS_FILE
    if path.exists():
        data: dict[str, Any] = json.loads(path.read_text())
    else:
        data = {}
    data.setdefault("port", 7677)
    data.setdefault("output_dir", "output")
    data.setdefault("channels_file", "channels.json")
    data.setdefault("ffmpeg_path", "ffmpeg")
    data.setdefault("hls_time_secs", 2)
    data.setdefault("hls_list_size", 10)
    data.setdefault("user_agent", "")  # Empty = ffmpeg default
    # Idle policy: short threshold while inside the grace window, long after
    data.setdefault("grace_window_secs", 120)
    data.setdefault("short_idle_timeout_secs", 120)
    data.setdefault("long_idle_timeout_secs", 600)
    data.setdefault("reap_interval_secs", 30)
    data.setdefault("cold_wait_secs", 15)
    data.setdefault("warm_wait_secs", 3)
    data.setdefault("poll_interval_secs", 0.3)
    data.setdefault("shutdown_grace_secs", 0.05)
    return data


def resolve_path(value: str, base: pathlib.Path | None = None) -> pathlib.Path:
    """Resolve a settings path relative to the settings file directory."""
    p = pathlib.Path(value).expanduser()
    if not p.is_absolute():
        p = (base or APP_DIR) / p
    return p.resolve()


def is_valid_channel_name(name: str) -> bool:
    return bool(name) and not (set(name) & _RESERVED_CHARS)


def load_channels(path: pathlib.Path) -> list[Channel]:
    """Load the channel catalog from a JSON list of {"channel", "url"} objects.

    Raises ValueError if the file is not a list of objects.
    """
    data = json.loads(path.read_text())
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of channels")
    channels: list[Channel] = []
    for entry in data:
        if not isinstance(entry, dict):
            raise ValueError(f"{path}: channel entries must be objects, got {entry!r}")
        name = str(entry.get("channel", "")).strip()
        url = str(entry.get("url", "")).strip()
        if not is_valid_channel_name(name):
            log.warning("Skipping channel %r: name must not contain / \\ _ or .", name)
            continue
        if not url:
            log.warning("Skipping channel %s: no source url", name)
            continue
        channels.append(Channel(name, url))
    return channels


class ChannelCatalog:
    """Immutable channel name -> source URL lookup (first match wins)."""

    def __init__(self, channels: list[Channel]) -> None:
        self._channels = tuple(channels)
        self._by_name: dict[str, str] = {}
        for ch in self._channels:
            self._by_name.setdefault(ch.name, ch.url)

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    @property
    def channels(self) -> tuple[Channel, ...]:
        return self._channels

    def resolve(self, name: str) -> str | None:
        return self._by_name.get(name)
