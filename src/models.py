from datetime import timezone

from sqlalchemy import (
    Column, Integer, String, DateTime, Index,
    UniqueConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that round-trips as UTC on every backend.

    PostgreSQL keeps the zone in TIMESTAMPTZ. SQLite has no zone support, so values
    are stored as naive UTC and re-tagged on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime {value!r} can't be stored as a listen timestamp.")

        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


Base = declarative_base()

class History(Base):
    __tablename__ = 'history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    timestamp = Column(UTCDateTime, nullable=False)
    song_name = Column(String, nullable=False)
    artist = Column(String, nullable=False)
    album_name = Column(String)
    played_ms = Column(Integer)
    platform = Column(String)

    __table_args__ = (
        # Storage-level duplicate guard, the resolver only trims work in front of it.
        UniqueConstraint('user_id', 'song_name', 'artist', 'timestamp', name='uq_history_listen'),
        Index('idx_history_user_artist', 'user_id', 'artist'),
        Index('idx_history_user_song', 'user_id', 'song_name'),
    )

# Serves both the profile listing and the resolver's range scan.
Index('idx_history_user_timestamp', History.user_id, History.timestamp.desc())

HISTORY_COLUMNS = ("user_id", "timestamp", "song_name", "artist",
                   "album_name", "played_ms", "platform")
