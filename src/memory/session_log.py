"""Session log - SQLite storage of conversation turns, keyed by session name."""

import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from memory.short_term import Memory, Role

# Resolve DB path relative to project root
PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_DB_PATH = PROJECT_ROOT / "data" / "sessions.db"


@dataclass
class Turn:
    """A single persisted message."""
    id: Optional[int]
    role: Role
    content: str

    def to_memory(self) -> Memory:
        return Memory(self.role, self.content)


def _get_connection(db_path: Path = None) -> sqlite3.Connection:
    """Get DB connection, creating data dir if needed."""
    path = Path(db_path or DEFAULT_DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path: Path = None) -> None:
    """Create conversations and messages tables if they don't exist."""
    conn = _get_connection(db_path)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS conversations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_name TEXT NOT NULL UNIQUE
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            conversation_id INTEGER NOT NULL,
            FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
        )
    """)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_conversation ON messages(conversation_id)")
    conn.commit()
    conn.close()


def _conversation_id(conn: sqlite3.Connection, session_name: str) -> Optional[int]:
    row = conn.execute(
        "SELECT id FROM conversations WHERE session_name = ?", (session_name,)
    ).fetchone()
    return row["id"] if row else None


def ensure_conversation(session_name: str, db_path: Path = None) -> int:
    """Return the conversation id for a session, creating it if needed."""
    conn = _get_connection(db_path)
    try:
        conn.execute(
            "INSERT OR IGNORE INTO conversations (session_name) VALUES (?)", (session_name,)
        )
        conn.commit()
        return _conversation_id(conn, session_name)
    finally:
        conn.close()


def append_turn(session_name: str, role: Role, content: str, db_path: Path = None) -> Turn:
    """Insert a message at the end of the session and return it with id."""
    conversation_id = ensure_conversation(session_name, db_path)
    conn = _get_connection(db_path)
    cursor = conn.execute(
        "INSERT INTO messages (role, content, conversation_id) VALUES (?, ?, ?)",
        (Role(role).value, content, conversation_id),
    )
    conn.commit()
    row_id = cursor.lastrowid
    conn.close()
    return Turn(id=row_id, role=Role(role), content=content)


def fetch_history(session_name: str, db_path: Path = None) -> list[Turn]:
    """All turns of a session, oldest first."""
    conn = _get_connection(db_path)
    rows = conn.execute(
        """
        SELECT m.id, m.role, m.content FROM messages m
        JOIN conversations c ON c.id = m.conversation_id
        WHERE c.session_name = ?
        ORDER BY m.id ASC
        """,
        (session_name,),
    ).fetchall()
    conn.close()
    return [_row_to_turn(r) for r in rows]


def remove_oldest_pair(session_name: str, db_path: Path = None) -> list[Turn]:
    """Delete and return the two oldest turns of a session (fewer if the session is shorter)."""
    return remove_oldest_turns(session_name, 2, db_path)


def remove_oldest_turns(session_name: str, count: int, db_path: Path = None) -> list[Turn]:
    """Delete and return the `count` oldest turns of a session."""
    conn = _get_connection(db_path)
    try:
        rows = conn.execute(
            """
            SELECT m.id, m.role, m.content FROM messages m
            JOIN conversations c ON c.id = m.conversation_id
            WHERE c.session_name = ?
            ORDER BY m.id ASC LIMIT ?
            """,
            (session_name, count),
        ).fetchall()
        ids = [r["id"] for r in rows]
        if ids:
            placeholders = ",".join("?" * len(ids))
            conn.execute(f"DELETE FROM messages WHERE id IN ({placeholders})", ids)
            conn.commit()
        return [_row_to_turn(r) for r in rows]
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def delete_session(session_name: str, db_path: Path = None) -> None:
    """Delete a session and all its turns."""
    conn = _get_connection(db_path)
    conversation_id = _conversation_id(conn, session_name)
    if conversation_id is not None:
        conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
        conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        conn.commit()
    conn.close()


def list_sessions(db_path: Path = None) -> list[str]:
    conn = _get_connection(db_path)
    rows = conn.execute("SELECT session_name FROM conversations ORDER BY id ASC").fetchall()
    conn.close()
    return [r["session_name"] for r in rows]


def _row_to_turn(row: sqlite3.Row) -> Turn:
    return Turn(id=row["id"], role=Role(row["role"]), content=row["content"])
