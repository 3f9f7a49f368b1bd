"""On-demand HLS transcoding with ffmpeg and channel session management."""

from __future__ import annotations

import asyncio
import logging
import os
import pathlib
import re
import shutil
import signal
import subprocess
import threading
import time
from contextlib import suppress
from dataclasses import dataclass, field, fields
from typing import Any

from config import ChannelCatalog


log = logging.getLogger(__name__)

PLAYLIST_EXT = "m3u8"
SEGMENT_EXT = "ts"
OUTPUT_URL_PREFIX = "/output/"

# Timing constants (seconds)
_POLL_INTERVAL_SEC = 0.3

# <channel>.m3u8 or <channel>_<digits>.ts
_ARTIFACT_RE = re.compile(rf"([^/\\_.]+)(?:\.{PLAYLIST_EXT}|_\d+\.{SEGMENT_EXT})")
_KEEP_FILES = {".gitkeep"}

_background_tasks: set[asyncio.Task[None]] = set()


@dataclass(slots=True)
class TranscodeSettings:
    output_dir: pathlib.Path
    ffmpeg_path: str = "ffmpeg"
    hls_time_secs: float = 2
    hls_list_size: int = 10
    user_agent: str = ""
    grace_window_secs: float = 120.0
    short_idle_timeout_secs: float = 120.0
    long_idle_timeout_secs: float = 600.0
    reap_interval_secs: float = 30.0
    cold_wait_secs: float = 15.0
    warm_wait_secs: float = 3.0
    poll_interval_secs: float = 0.3
    shutdown_grace_secs: float = 0.05

    @classmethod
    def from_settings(
        cls, settings: dict[str, Any], output_dir: pathlib.Path
    ) -> TranscodeSettings:
        """Pick the transcoding keys out of a server settings dict."""
        known = {f.name for f in fields(cls)} - {"output_dir"}
        return cls(output_dir=output_dir, **{k: v for k, v in settings.items() if k in known})


@dataclass(slots=True, eq=False)
class Session:
    """Live state of one channel's ffmpeg process.

    `process` is None only while the launch is in flight. `exited` is set by
    the exit monitor once the process is gone (or the spawn failed).
    """

    channel: str
    source_url: str
    started: float = field(default_factory=time.time)
    last_activity: float | None = None
    process: Any = None
    returncode: int | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def touch(self, now: float | None = None) -> None:
        self.last_activity = time.time() if now is None else now

    async def wait_exited(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self.exited.wait(), timeout)
        except TimeoutError:
            return False
        return True


class SessionRegistry:
    """Channel -> Session map; the only place sessions are added or removed."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, channel: object) -> bool:
        with self._lock:
            return channel in self._sessions

    def get(self, channel: str) -> Session | None:
        with self._lock:
            return self._sessions.get(channel)

    def put(self, channel: str, session: Session) -> None:
        with self._lock:
            self._sessions[channel] = session

    def reserve(self, channel: str, session: Session) -> Session | None:
        """Insert session unless the channel is taken.

        Returns the existing session, or None if the reservation succeeded.
        """
        with self._lock:
            existing = self._sessions.get(channel)
            if existing is not None:
                return existing
            self._sessions[channel] = session
            return None

    def remove(self, channel: str, session: Session | None = None) -> Session | None:
        """Remove the channel's session (only if it is `session`, when given)."""
        with self._lock:
            current = self._sessions.get(channel)
            if current is None or (session is not None and current is not session):
                return None
            return self._sessions.pop(channel)

    def entries(self) -> list[tuple[str, Session]]:
        with self._lock:
            return list(self._sessions.items())

    def clear(self) -> list[Session]:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        return sessions


# ===========================================================================
# Artifacts
# ===========================================================================


def playlist_name(channel: str) -> str:
    return f"{channel}.{PLAYLIST_EXT}"


def channel_from_path(path: str) -> str | None:
    """Extract the channel from a playlist/segment request path."""
    name = path.rsplit("/", 1)[-1]
    m = _ARTIFACT_RE.fullmatch(name)
    return m.group(1) if m else None


def is_channel_artifact(filename: str, channel: str) -> bool:
    """True for news.m3u8, news_001.ts, news.m3u8.tmp; False for newsroom.m3u8."""
    return (
        len(filename) > len(channel)
        and filename.startswith(channel)
        and filename[len(channel)] in "._"
    )


def remove_artifacts(output_dir: pathlib.Path, channel: str) -> int:
    """Delete the channel's files from output_dir. Returns count removed."""
    try:
        names = [p for p in output_dir.iterdir() if is_channel_artifact(p.name, channel)]
    except OSError as e:
        log.warning("Cannot list %s: %s", output_dir, e)
        return 0
    removed = 0
    for p in names:
        try:
            p.unlink()
            removed += 1
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Failed to remove %s: %s", p, e)
    return removed


def clean_output_dir(output_dir: pathlib.Path) -> int:
    """Create output_dir or wipe everything in it except .gitkeep."""
    if not output_dir.exists():
        output_dir.mkdir(parents=True)
        return 0
    removed = 0
    for p in output_dir.iterdir():
        if p.name in _KEEP_FILES:
            continue
        try:
            if p.is_dir() and not p.is_symlink():
                shutil.rmtree(p)
            else:
                p.unlink()
            removed += 1
        except OSError as e:
            log.error("Failed to remove %s: %s", p, e)
    if removed:
        log.info("Cleaned %d stale entries from %s", removed, output_dir)
    return removed


def kill_orphaned_transcoders(output_dir: pathlib.Path) -> int:
    """SIGKILL ffmpeg processes left writing into output_dir by a previous run."""
    try:
        result = subprocess.run(
            ["pgrep", "-f", f"ffmpeg.*{re.escape(str(output_dir))}"],
            check=False,
            capture_output=True,
            text=True,
        )
    except OSError as e:
        log.debug("Orphan check skipped: %s", e)
        return 0
    killed = 0
    for pid in result.stdout.split():
        try:
            if int(pid) == os.getpid():
                continue
            os.kill(int(pid), signal.SIGKILL)
            killed += 1
            log.info("Killed orphaned ffmpeg pid %s", pid)
        except (ProcessLookupError, PermissionError, ValueError):
            pass
    return killed


async def wait_for_artifact(
    path: pathlib.Path,
    timeout: float,
    poll_interval: float = _POLL_INTERVAL_SEC,
    session: Session | None = None,
) -> bool:
    """Wait until path exists with non-zero size. False on timeout.

    Gives up early if `session` has already exited.
    """
    deadline = time.monotonic() + timeout
    while True:
        with suppress(OSError):
            if path.stat().st_size > 0:
                return True
        if session is not None and session.exited.is_set():
            return False
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(poll_interval, remaining))


# ===========================================================================
# FFmpeg
# ===========================================================================


def build_hls_ffmpeg_cmd(
    input_url: str,
    channel: str,
    output_dir: pathlib.Path,
    hls_time: float = 2,
    list_size: int = 10,
    base_url: str = OUTPUT_URL_PREFIX,
    user_agent: str | None = None,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    cmd = [ffmpeg_path, "-hide_banner", "-loglevel", "error"]
    if user_agent:
        cmd.extend(["-user_agent", user_agent])
    cmd.extend(
        [
            "-i",
            input_url,
            "-c",
            "copy",
            "-f",
            "hls",
            "-hls_time",
            f"{hls_time:g}",
            "-hls_list_size",
            str(list_size),
            # append_list keeps players from reloading on restart
            "-hls_flags",
            "delete_segments+append_list",
            "-hls_segment_type",
            "mpegts",
            "-hls_init_time",
            "1",
            "-hls_base_url",
            base_url,
            "-hls_segment_filename",
            f"{output_dir}/{channel}_%03d.{SEGMENT_EXT}",
            "-max_delay",
            "5000000",
            "-avoid_negative_ts",
            "1",
            f"{output_dir}/{playlist_name(channel)}",
        ]
    )
    return cmd


async def _spawn_ffmpeg(cmd: list[str]) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )


def _kill_process(proc: Any) -> bool:
    """SIGKILL process, return True if a signal was sent."""
    if proc is None or proc.returncode is not None:
        return False
    try:
        proc.kill()
        return True
    except (ProcessLookupError, OSError):
        return False


def _spawn_background_task(coro: Any) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


# ===========================================================================
# Session manager
# ===========================================================================


class Transcoder:
    """Starts, tracks and reaps one ffmpeg session per channel."""

    def __init__(
        self,
        catalog: ChannelCatalog,
        settings: TranscodeSettings,
        registry: SessionRegistry | None = None,
    ) -> None:
        self.catalog = catalog
        self.settings = settings
        self.registry = registry if registry is not None else SessionRegistry()

    @property
    def output_dir(self) -> pathlib.Path:
        return self.settings.output_dir

    def playlist_path(self, channel: str) -> pathlib.Path:
        return self.output_dir / playlist_name(channel)

    def get_session(self, channel: str) -> Session | None:
        return self.registry.get(channel)

    def prepare_output_dir(self) -> None:
        kill_orphaned_transcoders(self.output_dir)
        clean_output_dir(self.output_dir)

    # -- launch ---------------------------------------------------------------

    async def ensure_started(self, channel: str) -> bool:
        """Start ffmpeg for channel unless already running. Returns True if launched."""
        url = self.catalog.resolve(channel)
        if url is None:
            raise KeyError(channel)

        session = Session(channel, url)
        session.touch(session.started)
        # Check-and-insert with no await in between
        if self.registry.reserve(channel, session) is not None:
            return False

        s = self.settings
        cmd = build_hls_ffmpeg_cmd(
            url,
            channel,
            self.output_dir,
            s.hls_time_secs,
            s.hls_list_size,
            user_agent=s.user_agent or None,
            ffmpeg_path=s.ffmpeg_path,
        )
        log.info("Starting transcoder for %s: %s", channel, " ".join(cmd))

        try:
            process = await _spawn_ffmpeg(cmd)
        except (OSError, ValueError) as e:
            log.error("ffmpeg error for %s: %s", channel, e)
            self.registry.remove(channel, session)
            session.exited.set()
            return True
        except BaseException:
            # Cancelled (or worse) mid-spawn: release the slot for the next request
            self.registry.remove(channel, session)
            session.exited.set()
            raise

        session.process = process
        log.info("ffmpeg pid=%s started for %s", process.pid, channel)
        if self.registry.get(channel) is not session:
            # Stopped (shutdown/explicit stop) while the spawn was in flight
            log.info("Session for %s ended during launch, killing pid %s", channel, process.pid)
            _kill_process(process)
        _spawn_background_task(self._monitor(session))
        return True

    async def _monitor(self, session: Session) -> None:
        process = session.process
        assert process.stderr is not None
        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                text = line.decode(errors="replace").rstrip()
                is_fatal = "fatal" in text.lower() or "aborting" in text.lower()
                level = logging.WARNING if is_fatal else logging.DEBUG
                log.log(level, "ffmpeg:%s %s", session.channel, text)
            await process.wait()
        finally:
            session.returncode = process.returncode
            session.exited.set()
            log.info(
                "Transcoder stopped for %s (exit %s)", session.channel, process.returncode
            )
            self._teardown(session, "exited")

    # -- teardown -------------------------------------------------------------

    def _teardown(self, session: Session, reason: str) -> bool:
        """Remove, kill and clean up session. No-op if it is no longer registered."""
        if self.registry.remove(session.channel, session) is None:
            return False
        if _kill_process(session.process):
            log.info("Killed ffmpeg pid=%s for %s", session.pid, session.channel)
        removed = remove_artifacts(self.output_dir, session.channel)
        log.info("Stopped %s (%s), removed %d files", session.channel, reason, removed)
        return True

    def stop_session(self, channel: str) -> bool:
        session = self.registry.get(channel)
        if session is None:
            return False
        return self._teardown(session, "stopped")

    # -- activity / idle ------------------------------------------------------

    def record_activity(self, request_path: str, now: float | None = None) -> str | None:
        """Stamp the session an artifact request belongs to. Returns its channel."""
        channel = channel_from_path(request_path)
        if channel is None:
            return None
        session = self.registry.get(channel)
        if session is None:
            return None
        session.touch(now)
        log.debug("[HEARTBEAT] %s by %s", channel, request_path)
        return channel

    def idle_threshold(self, session: Session, now: float) -> float:
        s = self.settings
        if now - session.started < s.grace_window_secs:
            return s.short_idle_timeout_secs
        return s.long_idle_timeout_secs

    def reap_idle_sessions(self, now: float | None = None) -> list[str]:
        """Stop sessions idle past their threshold. Returns reaped channels."""
        now = time.time() if now is None else now
        reaped = []
        for channel, session in self.registry.entries():
            if session.last_activity is None:
                continue
            idle = now - session.last_activity
            threshold = self.idle_threshold(session, now)
            if idle <= threshold:
                continue
            log.info("No viewers for %s (idle %.0fs > %.0fs), stopping", channel, idle, threshold)
            if self._teardown(session, "idle"):
                reaped.append(channel)
        return reaped

    async def run_reaper(self) -> None:
        while True:
            await asyncio.sleep(self.settings.reap_interval_secs)
            try:
                self.reap_idle_sessions()
            except Exception:
                log.exception("Idle sweep failed")

    def get_sessions_status(self, now: float | None = None) -> list[dict[str, Any]]:
        now = time.time() if now is None else now
        return [
            {
                "channel": channel,
                "pid": session.pid,
                "started": session.started,
                "last_activity": session.last_activity,
                "idle_secs": (
                    round(now - session.last_activity, 1)
                    if session.last_activity is not None
                    else None
                ),
                "running": session.running,
            }
            for channel, session in self.registry.entries()
        ]

    # -- shutdown -------------------------------------------------------------

    def shutdown(self) -> None:
        """Kill every ffmpeg process and delete its files. Never raises."""
        signalled = False
        for channel, session in self.registry.entries():
            try:
                if _kill_process(session.process):
                    signalled = True
                    log.info("Shutdown: killed ffmpeg pid=%s for %s", session.pid, channel)
            except Exception as e:
                log.warning("Shutdown: failed to kill ffmpeg for %s: %s", channel, e)
            try:
                remove_artifacts(self.output_dir, channel)
            except Exception as e:
                log.warning("Shutdown: failed to clean files for %s: %s", channel, e)
            self.registry.remove(channel, session)
        self.registry.clear()
        if signalled and self.settings.shutdown_grace_secs > 0:
            time.sleep(self.settings.shutdown_grace_secs)
