import logging
import sqlite3
import tempfile
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, TypeVar

from coachstream.core.config import DEFAULT_DB_PATH
from coachstream.schemas.chat import DEFAULT_CONVERSATION_TITLE, Conversation, Message

logger = logging.getLogger("coachstream.chat_store")

T = TypeVar("T")

TITLE_MAX_LENGTH = 50
_VALID_ROLES = ("user", "assistant")


class ConversationStoreError(Exception):
    """Persistence failure; callers treat writes as best-effort."""


class ConversationNotFoundError(ConversationStoreError):
    pass


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _fallback_db_path() -> Path:
    return Path(tempfile.gettempdir()) / "coachstream" / "chat.db"


def _is_disk_io_error(exc: sqlite3.OperationalError) -> bool:
    return "disk i/o error" in str(exc).lower()


def title_from_first_message(content: str) -> str:
    """Conversation title derived from the opening user message."""
    text = content.strip()
    if len(text) > TITLE_MAX_LENGTH:
        return text[: TITLE_MAX_LENGTH - 3] + "..."
    return text or DEFAULT_CONVERSATION_TITLE


class ConversationStore:
    """
    SQLite-backed conversations and messages for one user.

    Every query is scoped by ``user_id``; a conversation owned by somebody
    else behaves exactly like a missing one. Message order is the
    ``sequence`` column, assigned at insert time, never the timestamp.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH, user_id: str = "local"):
        self.db_path = Path(db_path)
        self.user_id = user_id
        self._initialized = False

    @contextmanager
    def _connect(self, db_path: Path) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _create_tables(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect(db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS coach_conversations (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    is_archived INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS coach_messages (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (conversation_id, sequence),
                    FOREIGN KEY(conversation_id) REFERENCES coach_conversations(id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_coach_conversations_user_updated "
                "ON coach_conversations(user_id, is_archived, updated_at)"
            )

    def init_db(self) -> None:
        if self._initialized:
            return
        try:
            self._create_tables(self.db_path)
        except sqlite3.OperationalError as exc:
            if not _is_disk_io_error(exc):
                raise ConversationStoreError(str(exc)) from exc
            self._switch_to_fallback()
        self._initialized = True

    def _switch_to_fallback(self) -> None:
        fallback = _fallback_db_path()
        logger.warning("Chat database not writable, falling back to temp dir: %s", fallback)
        self.db_path = fallback
        self._create_tables(fallback)

    def _run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``operation`` in one transaction, retrying once on the fallback DB."""
        self.init_db()
        try:
            with self._connect(self.db_path) as conn:
                return operation(conn)
        except sqlite3.OperationalError as exc:
            if not _is_disk_io_error(exc):
                raise ConversationStoreError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise ConversationStoreError(str(exc)) from exc

        try:
            self._switch_to_fallback()
            with self._connect(self.db_path) as conn:
                return operation(conn)
        except sqlite3.Error as exc:
            raise ConversationStoreError(str(exc)) from exc

    def _owns(self, conn: sqlite3.Connection, conversation_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM coach_conversations WHERE id = ? AND user_id = ?",
            (conversation_id, self.user_id),
        ).fetchone()
        return row is not None

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            title=row["title"],
            archived=bool(row["is_archived"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def create_conversation(self, title: str | None = None) -> str:
        """Create an empty conversation and return its id."""
        conversation_id = str(uuid.uuid4())
        now = _utc_now()

        def insert(conn: sqlite3.Connection) -> str:
            conn.execute(
                """
                INSERT INTO coach_conversations (id, user_id, title, is_archived, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (conversation_id, self.user_id, title or DEFAULT_CONVERSATION_TITLE, now, now),
            )
            return conversation_id

        return self._run(insert)

    def append_message(self, conversation_id: str, role: str, content: str) -> None:
        """
        Append one message at the next sequence position.

        The first user message also titles the conversation; every user
        message bumps ``updated_at``.

        Raises:
            ValueError: unknown role
            ConversationNotFoundError: no such conversation for this user
        """
        if role not in _VALID_ROLES:
            raise ValueError(f"invalid role: {role!r}")
        now = _utc_now()

        def insert(conn: sqlite3.Connection) -> None:
            if not self._owns(conn, conversation_id):
                raise ConversationNotFoundError(conversation_id)

            row = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) AS last FROM coach_messages WHERE conversation_id = ?",
                (conversation_id,),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO coach_messages (id, conversation_id, sequence, role, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), conversation_id, row["last"] + 1, role, content, now),
            )

            if role != "user":
                return
            user_count = conn.execute(
                "SELECT COUNT(*) AS n FROM coach_messages WHERE conversation_id = ? AND role = 'user'",
                (conversation_id,),
            ).fetchone()["n"]
            if user_count == 1:
                conn.execute(
                    "UPDATE coach_conversations SET title = ?, updated_at = ? WHERE id = ?",
                    (title_from_first_message(content), now, conversation_id),
                )
            else:
                conn.execute(
                    "UPDATE coach_conversations SET updated_at = ? WHERE id = ?",
                    (now, conversation_id),
                )

        self._run(insert)

    def load_messages(self, conversation_id: str) -> list[Message]:
        def select(conn: sqlite3.Connection) -> list[Message]:
            if not self._owns(conn, conversation_id):
                return []
            rows = conn.execute(
                """
                SELECT role, content
                FROM coach_messages
                WHERE conversation_id = ?
                ORDER BY sequence ASC
                """,
                (conversation_id,),
            ).fetchall()
            return [Message(role=row["role"], content=row["content"]) for row in rows]

        return self._run(select)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        def select(conn: sqlite3.Connection) -> Conversation | None:
            row = conn.execute(
                """
                SELECT id, title, is_archived, created_at, updated_at
                FROM coach_conversations
                WHERE id = ? AND user_id = ?
                """,
                (conversation_id, self.user_id),
            ).fetchone()
            return self._row_to_conversation(row) if row else None

        return self._run(select)

    def list_conversations(self, archived: bool = False, limit: int = 50) -> list[Conversation]:
        def select(conn: sqlite3.Connection) -> list[Conversation]:
            rows = conn.execute(
                """
                SELECT id, title, is_archived, created_at, updated_at
                FROM coach_conversations
                WHERE user_id = ? AND is_archived = ?
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (self.user_id, int(archived), limit),
            ).fetchall()
            return [self._row_to_conversation(row) for row in rows]

        return self._run(select)

    def _update_conversation(self, conversation_id: str, assignments: str, params: tuple) -> bool:
        def update(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                f"UPDATE coach_conversations SET {assignments} WHERE id = ? AND user_id = ?",
                (*params, conversation_id, self.user_id),
            )
            return cursor.rowcount > 0

        return self._run(update)

    def rename_conversation(self, conversation_id: str, title: str) -> bool:
        title = title.strip()
        if not title:
            raise ValueError("title must not be empty")
        return self._update_conversation(conversation_id, "title = ?", (title,))

    def archive_conversation(self, conversation_id: str) -> bool:
        return self._update_conversation(conversation_id, "is_archived = ?", (1,))

    def unarchive_conversation(self, conversation_id: str) -> bool:
        return self._update_conversation(conversation_id, "is_archived = ?", (0,))

    def delete_conversation(self, conversation_id: str) -> bool:
        def delete(conn: sqlite3.Connection) -> bool:
            if not self._owns(conn, conversation_id):
                return False
            conn.execute("DELETE FROM coach_messages WHERE conversation_id = ?", (conversation_id,))
            conn.execute("DELETE FROM coach_conversations WHERE id = ?", (conversation_id,))
            return True

        return self._run(delete)

    def delete_all_conversations(self) -> int:
        """Delete every conversation of this user; returns how many were removed."""

        def delete(conn: sqlite3.Connection) -> int:
            conn.execute(
                """
                DELETE FROM coach_messages
                WHERE conversation_id IN (SELECT id FROM coach_conversations WHERE user_id = ?)
                """,
                (self.user_id,),
            )
            cursor = conn.execute("DELETE FROM coach_conversations WHERE user_id = ?", (self.user_id,))
            return cursor.rowcount

        return self._run(delete)
