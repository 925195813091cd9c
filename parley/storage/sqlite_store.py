"""
SQLite storage shared with the host.

The host keeps its Posts / Channels / ChannelMembers tables in the same
database file; parley reads them for the reindex cursor, the AI thread
list and permission-filtered vector search, and owns LLM_PostMeta
(conversation titles). The mirror_* helpers let a host adapter (or a
test) keep the host tables current.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from parley.host.models import Channel, HostPost

logger = logging.getLogger(__name__)

AI_THREADS_PER_PAGE = 60

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS Posts (
    Id TEXT PRIMARY KEY,
    CreateAt INTEGER NOT NULL DEFAULT 0,
    UpdateAt INTEGER NOT NULL DEFAULT 0,
    DeleteAt INTEGER NOT NULL DEFAULT 0,
    UserId TEXT NOT NULL DEFAULT '',
    ChannelId TEXT NOT NULL DEFAULT '',
    RootId TEXT NOT NULL DEFAULT '',
    Message TEXT NOT NULL DEFAULT '',
    Type TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS Channels (
    Id TEXT PRIMARY KEY,
    TeamId TEXT NOT NULL DEFAULT '',
    Type TEXT NOT NULL DEFAULT 'O',
    Name TEXT NOT NULL DEFAULT '',
    DisplayName TEXT NOT NULL DEFAULT '',
    DeleteAt INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS ChannelMembers (
    ChannelId TEXT NOT NULL,
    UserId TEXT NOT NULL,
    PRIMARY KEY (ChannelId, UserId)
);

CREATE TABLE IF NOT EXISTS LLM_PostMeta (
    RootPostID TEXT NOT NULL PRIMARY KEY REFERENCES Posts(Id) ON DELETE CASCADE,
    Title TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_posts_create_at
    ON Posts(CreateAt, Id);
CREATE INDEX IF NOT EXISTS idx_posts_channel
    ON Posts(ChannelId, CreateAt);
CREATE INDEX IF NOT EXISTS idx_channel_members_user
    ON ChannelMembers(UserId);
"""

# Same eligibility filter the live indexer applies, in SQL form.
_INDEXABLE = "Posts.DeleteAt = 0 AND Posts.Message != '' AND Posts.Type = ''"


@dataclass
class PostRecord:
    """One row of the reindex cursor query."""
    id: str
    message: str
    user_id: str
    channel_id: str
    create_at: int
    team_id: str
    channel_name: str
    channel_type: str

    def channel(self) -> Channel:
        return Channel(id=self.channel_id, type=self.channel_type, team_id=self.team_id, name=self.channel_name)


@dataclass
class AIThread:
    id: str
    title: str
    channel_id: str
    bot_id: str
    updated_at: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "channel_id": self.channel_id,
            "bot_id": self.bot_id,
            "updated_at": self.updated_at,
        }


class SQLiteStore:
    """Thread-safe access to the shared SQLite database."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Host table mirroring
    # ------------------------------------------------------------------

    def mirror_post(self, post: HostPost):
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO Posts
                   (Id, CreateAt, UpdateAt, DeleteAt, UserId, ChannelId, RootId, Message, Type)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    post.id, post.create_at, post.update_at, post.delete_at, post.user_id,
                    post.channel_id, post.root_id, post.message, post.type,
                ),
            )

    def mirror_channel(self, channel: Channel):
        with self._connect() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO Channels (Id, TeamId, Type, Name, DisplayName, DeleteAt)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (channel.id, channel.team_id, channel.type, channel.name, channel.display_name, channel.delete_at),
            )

    def add_channel_member(self, channel_id: str, user_id: str):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO ChannelMembers (ChannelId, UserId) VALUES (?, ?)",
                (channel_id, user_id),
            )

    def remove_channel_member(self, channel_id: str, user_id: str):
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM ChannelMembers WHERE ChannelId = ? AND UserId = ?",
                (channel_id, user_id),
            )

    def get_accessible_channel_ids(self, user_id: str) -> list[str]:
        """Channels user_id belongs to that have not been deleted."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT c.Id FROM Channels c
                   JOIN ChannelMembers cm ON cm.ChannelId = c.Id
                   WHERE cm.UserId = ? AND c.DeleteAt = 0""",
                (user_id,),
            ).fetchall()
        return [r["Id"] for r in rows]

    # ------------------------------------------------------------------
    # Conversation titles
    # ------------------------------------------------------------------

    def save_title(self, root_post_id: str, title: str):
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO LLM_PostMeta (RootPostID, Title) VALUES (?, ?)
                   ON CONFLICT (RootPostID) DO UPDATE SET Title = excluded.Title""",
                (root_post_id, title),
            )

    def get_title(self, root_post_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT Title FROM LLM_PostMeta WHERE RootPostID = ?", (root_post_id,)
            ).fetchone()
        return row["Title"] if row else ""

    def delete_title(self, root_post_id: str):
        with self._connect() as conn:
            conn.execute("DELETE FROM LLM_PostMeta WHERE RootPostID = ?", (root_post_id,))

    def get_ai_threads(
        self,
        dm_channel_ids: list[str],
        offset: int = 0,
        per_page: int = AI_THREADS_PER_PAGE,
    ) -> list[AIThread]:
        """Root posts in the given bot DM channels, newest first, with titles."""
        if not dm_channel_ids:
            return []
        placeholders = ",".join("?" for _ in dm_channel_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT p.Id, p.ChannelId, p.UpdateAt, COALESCE(t.Title, '') AS Title
                    FROM Posts AS p
                    LEFT JOIN LLM_PostMeta AS t ON t.RootPostID = p.Id
                    WHERE p.ChannelId IN ({placeholders}) AND p.RootId = '' AND p.DeleteAt = 0
                    ORDER BY p.CreateAt DESC
                    LIMIT ? OFFSET ?""",
                (*dm_channel_ids, per_page, offset),
            ).fetchall()
        return [
            AIThread(id=r["Id"], title=r["Title"], channel_id=r["ChannelId"], bot_id="", updated_at=r["UpdateAt"])
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Reindex / channel analysis queries
    # ------------------------------------------------------------------

    def count_posts(self) -> int:
        with self._connect() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM Posts WHERE {_INDEXABLE}").fetchone()
        return row["n"]

    def get_posts_batch(self, last_create_at: int, last_id: str, limit: int) -> list[PostRecord]:
        """Indexable posts strictly after the (CreateAt, Id) cursor, ascending."""
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT Posts.Id, Posts.Message, Posts.UserId, Posts.ChannelId, Posts.CreateAt,
                           COALESCE(Channels.TeamId, '') AS TeamId,
                           COALESCE(Channels.Name, '') AS ChannelName,
                           COALESCE(Channels.Type, '') AS ChannelType
                    FROM Posts
                    LEFT JOIN Channels ON Posts.ChannelId = Channels.Id
                    WHERE {_INDEXABLE}
                      AND (Posts.CreateAt > ? OR (Posts.CreateAt = ? AND Posts.Id > ?))
                    ORDER BY Posts.CreateAt ASC, Posts.Id ASC
                    LIMIT ?""",
                (last_create_at, last_create_at, last_id, limit),
            ).fetchall()
        return [
            PostRecord(
                id=r["Id"],
                message=r["Message"],
                user_id=r["UserId"],
                channel_id=r["ChannelId"],
                create_at=r["CreateAt"],
                team_id=r["TeamId"],
                channel_name=r["ChannelName"],
                channel_type=r["ChannelType"],
            )
            for r in rows
        ]

    def get_first_post_after_time_range_id(self, channel_id: str, end_time: int) -> str:
        """
        ID of the earliest live post created after end_time, or '' when the
        range reaches the present. Paging backwards from it walks the range.
        """
        with self._connect() as conn:
            row = conn.execute(
                """SELECT Id FROM Posts
                   WHERE ChannelId = ? AND CreateAt > ? AND DeleteAt = 0
                   ORDER BY CreateAt ASC, Id ASC
                   LIMIT 1""",
                (channel_id, end_time),
            ).fetchone()
        return row["Id"] if row else ""
