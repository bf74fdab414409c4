from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta

# Two plays of the same track closer than this are the same listen.
DUPLICATE_WINDOW = timedelta(seconds=20)

ListenKey = tuple[str, str, str]
TrackKey = tuple[str, str]

class Platform:
    spotify = "spotify"
    lastfm = "lastfm"


@dataclass(frozen=True, slots=True)
class ListenEvent:
    user_id: int | None
    timestamp: datetime | None
    song_name: str
    artist: str
    album_name: str | None = None
    played_ms: int = 0
    platform: str = Platform.spotify

    @property
    def track(self) -> TrackKey:
        return (self.artist, self.song_name)

    def key(self) -> ListenKey | None:
        """(artist, song, normalized UTC timestamp), or None when the timestamp is unusable."""
        if self.timestamp is None or self.timestamp.tzinfo is None:
            return None

        ts = self.timestamp.astimezone(timezone.utc).isoformat(timespec="microseconds")
        return (self.artist, self.song_name, ts)

    def as_row(self) -> dict:
        return {"user_id": self.user_id,
                "timestamp": self.timestamp,
                "song_name": self.song_name,
                "artist": self.artist,
                "album_name": self.album_name or None,
                "played_ms": self.played_ms,
                "platform": self.platform}


@dataclass(slots=True)
class PageResult:
    page: int
    events: list[ListenEvent] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
