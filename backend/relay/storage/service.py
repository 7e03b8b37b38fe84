"""DuckDB-based message storage service.

This module provides durable storage for relayed messages and the channel
metadata the delivery engine reads, using DuckDB, a fast embedded analytical
database. The service implements the singleton pattern to ensure only one
database connection exists at a time.

Database Schema:
    users: profile fields used to populate outgoing messages
    channels: id, name, created/updated timestamps
    channel_members: (channel_id, user_id, role) with role 'member' or 'admin'
    messages: every message ever accepted, direct or channel-scoped
    channel_messages: ordered message references per channel

Thread Safety:
    The DuckDB connection is NOT thread-safe. Blocking calls run in the
    default executor and are serialized by an internal lock, so the event
    loop is never blocked by storage I/O.

Usage:
    store = MessageStore.get_instance(db_path="relay_messages.duckdb")
    message_id = await store.create_message(draft)
    message = await store.get_message_with_profiles(message_id)
"""
import asyncio
import functools
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

import duckdb

from relay.chat.schemas import (
    Channel,
    DirectContact,
    MessageDraft,
    MessageKind,
    PopulatedMessage,
    UserProfile,
)
from relay.errors import (
    ChannelNotFoundError,
    MessageNotFoundError,
    PersistenceError,
    RelayError,
)

from .gateway import PersistenceGateway

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEMBER_ROLE = "member"
ADMIN_ROLE = "admin"

_MESSAGE_COLUMNS = (
    "m.id, m.sender, m.receiver, m.channel_id, m.message_type, "
    "m.content, m.file_url, m.created_at"
)


def _utcnow() -> datetime:
    # DuckDB TIMESTAMP is naive; everything stored is UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MessageStore(PersistenceGateway):
    """Singleton DuckDB implementation of the persistence gateway.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStore"] = None
    _db_path: str = "relay_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close the connection and clear the singleton (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create sequences and tables. Safe to call multiple times."""
        conn = self._get_connection()
        conn.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
        conn.execute("CREATE SEQUENCE IF NOT EXISTS channel_messages_seq START 1")
        conn.execute("CREATE SEQUENCE IF NOT EXISTS channel_members_seq START 1")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id VARCHAR PRIMARY KEY,
                email VARCHAR,
                first_name VARCHAR,
                last_name VARCHAR,
                image_url VARCHAR,
                color_theme INTEGER
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS channels (
                id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS channel_members (
                seq BIGINT DEFAULT nextval('channel_members_seq') PRIMARY KEY,
                channel_id VARCHAR NOT NULL,
                user_id VARCHAR NOT NULL,
                role VARCHAR NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                seq BIGINT DEFAULT nextval('messages_seq'),
                id VARCHAR PRIMARY KEY,
                sender VARCHAR NOT NULL,
                receiver VARCHAR,
                channel_id VARCHAR,
                message_type VARCHAR NOT NULL,
                content VARCHAR,
                file_url VARCHAR,
                created_at TIMESTAMP NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS channel_messages (
                seq BIGINT DEFAULT nextval('channel_messages_seq') PRIMARY KEY,
                channel_id VARCHAR NOT NULL,
                message_id VARCHAR NOT NULL
            )
        """)

    async def _run(self, fn: Callable[..., T], *args) -> T:
        """Run a blocking storage call in the executor, under the lock.

        duckdb errors are wrapped in PersistenceError; relay errors raised
        by the call itself propagate unchanged.
        """
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(self._locked, fn, *args))

    def _locked(self, fn: Callable[..., T], *args) -> T:
        with self._lock:
            try:
                return fn(*args)
            except RelayError:
                raise
            except duckdb.Error as exc:
                logger.error("[Store] %s failed: %s", getattr(fn, "__name__", fn), exc)
                raise PersistenceError(f"Storage error: {exc}") from exc

    # =========================================================================
    # Gateway operations
    # =========================================================================

    async def create_message(self, draft: MessageDraft) -> str:
        return await self._run(self._insert_message, draft)

    async def get_message_with_profiles(self, message_id: str) -> PopulatedMessage:
        return await self._run(self._select_message, message_id)

    async def append_message_to_channel(self, channel_id: str, message_id: str) -> None:
        await self._run(self._insert_channel_message, channel_id, message_id)

    async def get_channel_with_members(self, channel_id: str) -> Channel:
        return await self._run(self._select_channel, channel_id)

    async def get_direct_history(self, user_id: str, peer_id: str) -> List[PopulatedMessage]:
        return await self._run(self._select_direct_history, user_id, peer_id)

    async def get_channel_history(self, channel_id: str) -> List[PopulatedMessage]:
        return await self._run(self._select_channel_history, channel_id)

    async def discard_message(self, message_id: str) -> None:
        await self._run(self._delete_message, message_id)

    async def get_direct_contacts(self, user_id: str) -> List[DirectContact]:
        return await self._run(self._select_direct_contacts, user_id)

    async def get_user_channels(self, user_id: str) -> List[Channel]:
        return await self._run(self._select_user_channels, user_id)

    async def get_channel(self, channel_id: str) -> Channel:
        """Return a channel with its full message id list."""
        return await self._run(self._select_channel, channel_id, True)

    # =========================================================================
    # Collaborator-side writes (profiles and channel administration)
    # =========================================================================

    async def upsert_user(self, profile: UserProfile) -> UserProfile:
        """Store or replace a user profile."""
        return await self._run(self._upsert_user, profile)

    async def create_channel(
        self,
        name: str,
        members: Iterable[str],
        admins: Iterable[str],
        channel_id: Optional[str] = None,
    ) -> Channel:
        """Create a channel with the given member and admin identities.

        Duplicates within each list are dropped; an identity may appear in
        both lists.
        """
        return await self._run(
            self._insert_channel, name, list(members), list(admins), channel_id
        )

    # =========================================================================
    # Blocking implementations (called under the lock)
    # =========================================================================

    def _channel_exists(self, channel_id: str) -> bool:
        row = self._get_connection().execute(
            "SELECT 1 FROM channels WHERE id = ?", [channel_id]
        ).fetchone()
        return row is not None

    def _insert_message(self, draft: MessageDraft) -> str:
        if draft.channel is not None and not self._channel_exists(draft.channel):
            raise ChannelNotFoundError(draft.channel)
        message_id = str(uuid.uuid4())
        self._get_connection().execute(
            """
            INSERT INTO messages (id, sender, receiver, channel_id, message_type,
                                  content, file_url, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                message_id,
                draft.sender,
                draft.receiver,
                draft.channel,
                draft.messageType.value,
                draft.content,
                draft.fileUrl,
                _utcnow(),
            ],
        )
        logger.debug("[Store] Message %s stored (%s)", message_id, draft.scope.value)
        return message_id

    def _insert_channel_message(self, channel_id: str, message_id: str) -> None:
        if not self._channel_exists(channel_id):
            raise ChannelNotFoundError(channel_id)
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO channel_messages (channel_id, message_id) VALUES (?, ?)",
            [channel_id, message_id],
        )
        conn.execute(
            "UPDATE channels SET updated_at = ? WHERE id = ?",
            [_utcnow(), channel_id],
        )

    def _delete_message(self, message_id: str) -> None:
        conn = self._get_connection()
        conn.execute("DELETE FROM channel_messages WHERE message_id = ?", [message_id])
        conn.execute("DELETE FROM messages WHERE id = ?", [message_id])
        logger.info("[Store] Message %s discarded", message_id)

    def _select_message(self, message_id: str) -> PopulatedMessage:
        row = self._get_connection().execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages m WHERE m.id = ?",
            [message_id],
        ).fetchone()
        if row is None:
            raise MessageNotFoundError(message_id)
        return self._populate([row])[0]

    def _select_channel(self, channel_id: str, include_messages: bool = False) -> Channel:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT id, name FROM channels WHERE id = ?", [channel_id]
        ).fetchone()
        if row is None:
            raise ChannelNotFoundError(channel_id)
        members, admins = self._memberships([channel_id]).get(channel_id, ([], []))
        message_ids: List[str] = []
        if include_messages:
            message_ids = [
                r[0]
                for r in conn.execute(
                    "SELECT message_id FROM channel_messages WHERE channel_id = ? ORDER BY seq",
                    [channel_id],
                ).fetchall()
            ]
        return Channel(
            id=row[0], name=row[1], members=members, admins=admins, messages=message_ids
        )

    def _memberships(self, channel_ids: List[str]) -> Dict[str, Tuple[List[str], List[str]]]:
        """Map channel id -> (members, admins), each in insertion order."""
        if not channel_ids:
            return {}
        placeholders = ", ".join("?" for _ in channel_ids)
        rows = self._get_connection().execute(
            f"""
            SELECT channel_id, user_id, role FROM channel_members
            WHERE channel_id IN ({placeholders})
            ORDER BY seq
            """,
            channel_ids,
        ).fetchall()
        result: Dict[str, Tuple[List[str], List[str]]] = {}
        for channel_id, user_id, role in rows:
            members, admins = result.setdefault(channel_id, ([], []))
            (admins if role == ADMIN_ROLE else members).append(user_id)
        return result

    def _select_user_channels(self, user_id: str) -> List[Channel]:
        rows = self._get_connection().execute(
            """
            SELECT DISTINCT c.id, c.name, c.updated_at
            FROM channels c
            JOIN channel_members cm ON cm.channel_id = c.id
            WHERE cm.user_id = ?
            ORDER BY c.updated_at DESC, c.id
            """,
            [user_id],
        ).fetchall()
        roles = self._memberships([r[0] for r in rows])
        channels = []
        for channel_id, name, _ in rows:
            members, admins = roles.get(channel_id, ([], []))
            channels.append(Channel(id=channel_id, name=name, members=members, admins=admins))
        return channels

    def _select_direct_contacts(self, user_id: str) -> List[DirectContact]:
        rows = self._get_connection().execute(
            """
            SELECT CASE WHEN sender = ? THEN receiver ELSE sender END AS peer,
                   max(created_at) AS last_at,
                   max(seq) AS last_seq
            FROM messages
            WHERE channel_id IS NULL AND (sender = ? OR receiver = ?)
            GROUP BY peer
            ORDER BY last_seq DESC
            """,
            [user_id, user_id, user_id],
        ).fetchall()
        profiles = self._profiles([r[0] for r in rows])
        return [
            DirectContact(
                **profiles[peer].model_dump(),
                lastMessageTime=last_at.replace(tzinfo=timezone.utc),
            )
            for peer, last_at, _ in rows
        ]

    def _select_direct_history(self, user_id: str, peer_id: str) -> List[PopulatedMessage]:
        rows = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages m
            WHERE m.channel_id IS NULL
              AND ((m.sender = ? AND m.receiver = ?) OR (m.sender = ? AND m.receiver = ?))
            ORDER BY m.created_at, m.seq
            """,
            [user_id, peer_id, peer_id, user_id],
        ).fetchall()
        return self._populate(rows)

    def _select_channel_history(self, channel_id: str) -> List[PopulatedMessage]:
        if not self._channel_exists(channel_id):
            raise ChannelNotFoundError(channel_id)
        rows = self._get_connection().execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM channel_messages cm
            JOIN messages m ON m.id = cm.message_id
            WHERE cm.channel_id = ?
            ORDER BY cm.seq
            """,
            [channel_id],
        ).fetchall()
        return self._populate(rows)

    def _upsert_user(self, profile: UserProfile) -> UserProfile:
        self._get_connection().execute(
            "INSERT OR REPLACE INTO users VALUES (?, ?, ?, ?, ?, ?)",
            [
                profile.userId,
                profile.email,
                profile.firstName,
                profile.lastName,
                profile.imageUrl,
                profile.colorTheme,
            ],
        )
        return profile

    def _insert_channel(
        self,
        name: str,
        members: List[str],
        admins: List[str],
        channel_id: Optional[str],
    ) -> Channel:
        channel_id = channel_id or str(uuid.uuid4())
        now = _utcnow()
        members = list(dict.fromkeys(members))
        admins = list(dict.fromkeys(admins))
        conn = self._get_connection()
        conn.execute("BEGIN TRANSACTION")
        try:
            conn.execute(
                "INSERT INTO channels (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                [channel_id, name, now, now],
            )
            for user_id in members:
                conn.execute(
                    "INSERT INTO channel_members (channel_id, user_id, role) VALUES (?, ?, ?)",
                    [channel_id, user_id, MEMBER_ROLE],
                )
            for user_id in admins:
                conn.execute(
                    "INSERT INTO channel_members (channel_id, user_id, role) VALUES (?, ?, ?)",
                    [channel_id, user_id, ADMIN_ROLE],
                )
            conn.execute("COMMIT")
        except duckdb.Error:
            conn.execute("ROLLBACK")
            raise
        logger.info(
            "[Store] Channel %s (%s) created: %d members, %d admins",
            channel_id, name, len(members), len(admins),
        )
        return Channel(id=channel_id, name=name, members=members, admins=admins)

    def _profiles(self, user_ids: Iterable[str]) -> Dict[str, UserProfile]:
        ids = sorted({u for u in user_ids if u})
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self._get_connection().execute(
            f"""
            SELECT id, email, first_name, last_name, image_url, color_theme
            FROM users WHERE id IN ({placeholders})
            """,
            ids,
        ).fetchall()
        profiles = {
            row[0]: UserProfile(
                userId=row[0],
                email=row[1],
                firstName=row[2],
                lastName=row[3],
                imageUrl=row[4],
                colorTheme=row[5],
            )
            for row in rows
        }
        for user_id in ids:
            profiles.setdefault(user_id, UserProfile(userId=user_id))
        return profiles

    def _populate(self, rows: List[tuple]) -> List[PopulatedMessage]:
        profiles = self._profiles(
            [r[1] for r in rows] + [r[2] for r in rows if r[2] is not None]
        )
        return [
            PopulatedMessage(
                id=row[0],
                sender=profiles[row[1]],
                receiver=profiles[row[2]] if row[2] is not None else None,
                channelId=row[3],
                messageType=MessageKind(row[4]),
                content=row[5],
                fileUrl=row[6],
                createdAt=row[7].replace(tzinfo=timezone.utc),
            )
            for row in rows
        ]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
