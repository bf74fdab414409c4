"""
Decoders turning raw source bytes into ListenEvents.

Spotify extended-history exports arrive as whole JSON files, Last.fm as one
`user.getrecenttracks` page per response.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

import logging
LOGGER = logging.getLogger(__name__)

from importer.errors import DecodeError, LastFMError, UploadRejected
from importer.objects import ListenEvent, Platform

MAX_UPLOAD_FILES = 30
MAX_UPLOAD_BYTES = 50 * 1024 * 1024

SPOTIFY_FIELDS = {"timestamp": "ts",
                  "played_ms": "ms_played",
                  "song_name": "master_metadata_track_name",
                  "artist": "master_metadata_album_artist_name",
                  "album_name": "master_metadata_album_album_name"}


@dataclass
class SpotifyDecodeResult:
    events: list[ListenEvent] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)  # buffer name -> reason
    excluded: int = 0


def accept_uploads(uploads: dict[str, bytes]) -> dict[str, bytes]:
    """Apply the upload limits, returning the files that may be decoded.

    Too many files rejects the whole request, anything else only skips the file.
    """
    if not uploads:
        raise UploadRejected("No files uploaded.")

    if len(uploads) > MAX_UPLOAD_FILES:
        raise UploadRejected(f"Too many files uploaded ({MAX_UPLOAD_FILES} max).")

    accepted = {}
    for name, content in uploads.items():
        if ".." in name or "/" in name or "\x00" in name:
            LOGGER.warning(f"Invalid filename: {name!r}")
            continue

        if len(content) > MAX_UPLOAD_BYTES:
            LOGGER.warning(f"File too large: {name} ({len(content) / (1024*1024):.2f} MB)")
            continue

        if not name.lower().endswith(".json"):
            LOGGER.info(f"Skipping non-JSON upload '{name}'.")
            continue

        # Video history repeats the audio entries.
        if "Video" in name:
            LOGGER.info(f"Skipping Spotify video history '{name}'.")
            continue

        accepted[name] = content

    LOGGER.debug(f"Accepted {len(accepted)}/{len(uploads)} uploaded files.")
    return accepted


def parse_spotify_timestamp(value) -> datetime | None:
    if not isinstance(value, str):
        return None

    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None

    if ts.tzinfo is None:
        return None
    return ts.astimezone(timezone.utc)


def _text(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _played_ms(value) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return 0


def decode_spotify_buffer(content: bytes | str, user_id: int | None = None) -> tuple[list[ListenEvent], int]:
    """Decode one export file. Returns the events and the number of records dropped."""
    try:
        records = json.loads(content)
    except (ValueError, UnicodeDecodeError) as e:
        raise DecodeError(f"Invalid JSON: {e}") from e

    if not isinstance(records, list):
        raise DecodeError(f"Expected a JSON array of plays, got {type(records).__name__}.")

    events, excluded = [], 0
    for record in records:
        if not isinstance(record, dict):
            excluded += 1
            continue

        ts = parse_spotify_timestamp(record.get(SPOTIFY_FIELDS["timestamp"]))
        if ts is None:
            excluded += 1
            continue

        events.append(ListenEvent(
            user_id=user_id,
            timestamp=ts,
            song_name=_text(record.get(SPOTIFY_FIELDS["song_name"])),
            artist=_text(record.get(SPOTIFY_FIELDS["artist"])),
            album_name=_text(record.get(SPOTIFY_FIELDS["album_name"])) or None,
            played_ms=_played_ms(record.get(SPOTIFY_FIELDS["played_ms"])),
            platform=Platform.spotify,
        ))

    return events, excluded


def decode_spotify_exports(buffers: dict[str, bytes], user_id: int | None = None) -> SpotifyDecodeResult:
    """Decode every buffer independently, concatenating events in file order."""
    result = SpotifyDecodeResult()

    for name, content in buffers.items():
        try:
            events, excluded = decode_spotify_buffer(content, user_id)
        except DecodeError as e:
            LOGGER.warning(f"Rejecting export file '{name}': {e}")
            result.errors[name] = str(e)
            continue

        if excluded:
            LOGGER.debug(f"Dropped {excluded} unreadable records from '{name}'.")

        result.events.extend(events)
        result.excluded += excluded

    LOGGER.info(f"Decoded {len(result.events)} Spotify plays from {len(buffers)} files " \
                f"({result.excluded} records dropped, {len(result.errors)} files rejected).")
    return result


def _text_of(node) -> str:
    """Last.fm wraps most strings as {"#text": ...}."""
    if isinstance(node, dict):
        return _text(node.get("#text"))
    return _text(node)


def _as_list(node) -> list:
    # A single-track page comes back as an object instead of a list.
    if node is None:
        return []
    if isinstance(node, dict):
        return [node]
    return list(node)


def recent_tracks(payload) -> dict:
    if not isinstance(payload, dict):
        raise DecodeError(f"Expected a JSON object from Last.fm, got {type(payload).__name__}.")

    if "error" in payload:
        raise LastFMError(payload["error"], payload.get("message", "unknown error"))

    tracks = payload.get("recenttracks")
    if not isinstance(tracks, dict):
        raise DecodeError("Last.fm response has no 'recenttracks' object.")
    return tracks


def decode_total_pages(payload) -> int:
    attr = recent_tracks(payload).get("@attr") or {}
    try:
        total = int(attr.get("totalPages"))
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Unreadable totalPages: {attr.get('totalPages')!r}") from e

    if total < 0:
        raise DecodeError(f"Negative totalPages: {total}")
    return total


def decode_recent_tracks(payload, user_id: int | None = None) -> list[ListenEvent]:
    events = []
    for track in _as_list(recent_tracks(payload).get("track")):
        if not isinstance(track, dict):
            continue

        if str((track.get("@attr") or {}).get("nowplaying", "")).lower() == "true":
            continue

        try:
            uts = int((track.get("date") or {}).get("uts"))
        except (TypeError, ValueError):
            continue

        try:
            ts = datetime.fromtimestamp(uts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            continue

        events.append(ListenEvent(
            user_id=user_id,
            timestamp=ts,
            song_name=_text(track.get("name")),
            artist=_text_of(track.get("artist")),
            album_name=_text_of(track.get("album")) or None,
            played_ms=0,
            platform=Platform.lastfm,
        ))

    return events
