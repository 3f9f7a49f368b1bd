#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = ["fastapi", "uvicorn[standard]"]
# ///
"""On-demand IPTV channel restreamer.

Usage:
    ./main.py [--port PORT] [--host HOST] [--settings FILE] [--debug]

Options:
    --port PORT      Port to listen on (default: settings "port", 7677)
    --host HOST      Interface to bind (default: 0.0.0.0)
    --settings FILE  Settings JSON (default: settings.json next to main.py)
    --debug          Enable debug logging and access logs

Channels are read from channels.json:
    [{"channel": "news", "url": "http://example.com/news.m3u8"}, ...]

Play http://HOST:PORT/api/stream/?channel=news in any HLS player.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import pathlib
import urllib.parse
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from typing import Annotated

from fastapi import Depends
from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import Request
from fastapi.responses import FileResponse
from fastapi.responses import RedirectResponse
from fastapi.responses import Response

import config
import transcoding
from config import ChannelCatalog
from transcoding import Transcoder
from transcoding import TranscodeSettings


log = logging.getLogger()

_settings_path: pathlib.Path = config.SETTINGS_FILE

_MEDIA_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}


def create_transcoder(settings_path: pathlib.Path) -> Transcoder:
    """Load settings and channel catalog, build the session manager."""
    settings = config.load_settings(settings_path)
    base = settings_path.parent
    channels_path = config.resolve_path(settings["channels_file"], base)
    try:
        channels = config.load_channels(channels_path)
    except FileNotFoundError:
        raise SystemExit(f"Channel list not found: {channels_path}") from None
    except ValueError as e:
        raise SystemExit(f"Invalid channel list {channels_path}: {e}") from None
    log.info("Loaded %d channels from %s", len(channels), channels_path)

    output_dir = config.resolve_path(settings["output_dir"], base)
    return Transcoder(ChannelCatalog(channels), TranscodeSettings.from_settings(settings, output_dir))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Wipe the output dir, run the idle reaper, kill everything on the way out."""
    transcoder = create_transcoder(_settings_path)
    transcoder.prepare_output_dir()
    app.state.transcoder = transcoder
    # Normal interpreter exit without a lifespan shutdown (e.g. fatal error)
    atexit.register(transcoder.shutdown)

    reaper = asyncio.create_task(transcoder.run_reaper())
    log.info(
        "Idle reaper every %ss (short %ss within %ss of start, long %ss)",
        transcoder.settings.reap_interval_secs,
        transcoder.settings.short_idle_timeout_secs,
        transcoder.settings.grace_window_secs,
        transcoder.settings.long_idle_timeout_secs,
    )

    yield

    reaper.cancel()
    with suppress(asyncio.CancelledError):
        await reaper
    transcoder.shutdown()
    atexit.unregister(transcoder.shutdown)


app = FastAPI(title="Channel Restreamer", lifespan=lifespan)


def get_transcoder(request: Request) -> Transcoder:
    return request.app.state.transcoder


# =============================================================================
# Stream routes
# =============================================================================


@app.get("/api/stream")
@app.get("/api/stream/")
async def stream(
    request: Request,
    transcoder: Annotated[Transcoder, Depends(get_transcoder)],
    channel: str = "",
):
    """Start (or reuse) the channel's transcoder and redirect to its playlist."""
    ch = urllib.parse.unquote(channel).strip()
    if not ch or ch not in transcoder.catalog:
        raise HTTPException(400, "Invalid channel")

    is_new = await transcoder.ensure_started(ch)
    session = transcoder.get_session(ch)
    if session is not None:
        s = transcoder.settings
        ready = await transcoding.wait_for_artifact(
            transcoder.playlist_path(ch),
            s.cold_wait_secs if is_new else s.warm_wait_secs,
            s.poll_interval_secs,
            session=session,
        )
        if not ready:
            log.info("Playlist for %s not ready yet (new=%s), redirecting anyway", ch, is_new)

    # Same URL whether or not the playlist is ready; the player retries
    playlist = transcoding.playlist_name(urllib.parse.quote(ch, safe=""))
    return RedirectResponse(f"{request.base_url}output/{playlist}", status_code=302)


@app.get("/output/{filename}")
async def output_file(
    filename: str,
    transcoder: Annotated[Transcoder, Depends(get_transcoder)],
):
    """Serve HLS playlist or segments, stamping viewer activity first."""
    # Prevent path traversal
    safe_filename = pathlib.Path(filename).name
    if safe_filename != filename or ".." in filename or filename.startswith("."):
        raise HTTPException(400, "Invalid filename")

    transcoder.record_activity(filename)

    file_path = transcoder.output_dir / safe_filename
    headers = {"Cache-Control": "no-cache"}
    media_type = _MEDIA_TYPES.get(file_path.suffix)
    if file_path.suffix == ".m3u8":
        try:
            content = file_path.read_text()
        except FileNotFoundError:
            raise HTTPException(404, "File not found") from None
        return Response(content=content, media_type=media_type, headers=headers)
    if not file_path.is_file():
        raise HTTPException(404, "File not found")
    return FileResponse(file_path, media_type=media_type, headers=headers)


@app.delete("/api/stream/{channel}")
async def stream_stop(
    channel: str,
    transcoder: Annotated[Transcoder, Depends(get_transcoder)],
):
    """Stop a channel's transcoder now instead of waiting for the reaper."""
    if not transcoder.stop_session(channel):
        raise HTTPException(404, "Channel not running")
    return {"status": "stopped"}


# =============================================================================
# Status routes
# =============================================================================


@app.get("/api/channels")
async def list_channels(transcoder: Annotated[Transcoder, Depends(get_transcoder)]):
    return [
        {"channel": ch.name, "active": transcoder.get_session(ch.name) is not None}
        for ch in transcoder.catalog.channels
    ]


@app.get("/api/sessions")
async def list_sessions(transcoder: Annotated[Transcoder, Depends(get_transcoder)]):
    return transcoder.get_sessions_status()


if __name__ == "__main__":
    import argparse

    import uvicorn  # pyright: ignore[reportMissingImports]

    parser = argparse.ArgumentParser(description="On-demand IPTV channel restreamer")
    parser.add_argument("--port", type=int, help="Port to listen on")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--settings", type=pathlib.Path, help="Settings JSON file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )

    if args.settings:
        _settings_path = args.settings.resolve()
    port = args.port or config.load_settings(_settings_path)["port"]

    uv_log = "debug" if args.debug else "info"
    try:
        uvicorn.run(
            app,
            host=args.host,
            port=port,
            access_log=args.debug,
            log_level=uv_log,
        )
    except Exception:
        log.exception("Fatal error, stopping all transcoders")
        if transcoder := getattr(app.state, "transcoder", None):
            transcoder.shutdown()
        raise SystemExit(1) from None
