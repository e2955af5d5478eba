"""
Session persistence: the serialization boundary of the session model.
Sessions are exchanged as whole values at start, stop and after each run.
"""
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import List, Protocol

import psycopg2.pool
from psycopg2.extensions import connection as Connection
from psycopg2.extras import Json

from .config import IngestConfig
from .logger import get_logger
from .model import Session


class SessionStore(Protocol):
    """Load and save every known session."""

    def load(self) -> List[Session]:
        ...

    def save(self, sessions: List[Session]):
        ...


class MemorySessionStore:
    """Keeps the serialized sessions in memory."""

    def __init__(self):
        self.payloads: List[dict] = []

    def load(self) -> List[Session]:
        return [Session.from_dict(payload) for payload in self.payloads]

    def save(self, sessions: List[Session]):
        self.payloads = [json.loads(json.dumps(session.to_dict())) for session in sessions]


class JsonFileSessionStore:
    """All sessions in one JSON document, replaced atomically on save."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.logger = get_logger()

    def load(self) -> List[Session]:
        if not self.path.exists():
            self.logger.info("No session file, starting empty", path=str(self.path))
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            payload = json.load(f)
        sessions = [Session.from_dict(raw) for raw in payload.get("sessions", [])]
        self.logger.info("Sessions loaded", path=str(self.path), count=len(sessions))
        return sessions

    def save(self, sessions: List[Session]):
        payload = {"sessions": [session.to_dict() for session in sessions]}
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=self.path.name, suffix=".tmp", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_name, self.path)
        except Exception:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        self.logger.debug("Sessions saved", path=str(self.path), count=len(sessions))


class PostgresSessionStore:
    """
    One row per session in PostgreSQL, payload stored as jsonb.

    Uses a small threaded connection pool: the checkpoint runs on the
    ingester thread while shutdown runs on the main thread.
    """

    TABLE = "ingest_sessions"

    def __init__(self, dsn: str, pool_size: int = 2, connect_timeout: int = 10):
        self.logger = get_logger()
        try:
            self.pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=1,
                maxconn=pool_size,
                dsn=dsn,
                connect_timeout=connect_timeout,
            )
        except Exception as e:
            self.logger.error("Failed to create connection pool", error=str(e))
            raise
        self.ensure_table()

    @contextmanager
    def get_connection(self) -> Connection:
        """Connection from the pool, committed on success, rolled back on error."""
        conn = None
        try:
            conn = self.pool.getconn()
            conn.autocommit = False
            yield conn
            conn.commit()
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self.pool.putconn(conn)

    def ensure_table(self):
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"CREATE TABLE IF NOT EXISTS {self.TABLE} ("
                    "id integer PRIMARY KEY, "
                    "payload jsonb NOT NULL, "
                    "updated_at timestamptz NOT NULL DEFAULT now())"
                )

    def load(self) -> List[Session]:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT payload FROM {self.TABLE} ORDER BY id")
                rows = cur.fetchall()
        sessions = [Session.from_dict(row[0]) for row in rows]
        self.logger.info("Sessions loaded", table=self.TABLE, count=len(sessions))
        return sessions

    def save(self, sessions: List[Session]):
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                for session in sessions:
                    cur.execute(
                        f"INSERT INTO {self.TABLE} (id, payload, updated_at) VALUES (%s, %s, now()) "
                        "ON CONFLICT (id) DO UPDATE SET payload = EXCLUDED.payload, updated_at = now()",
                        (session.id, Json(session.to_dict())),
                    )
        self.logger.debug("Sessions saved", table=self.TABLE, count=len(sessions))

    def close(self):
        self.pool.closeall()


def create_session_store(config: IngestConfig) -> SessionStore:
    """JSON file by default, PostgreSQL when the store URL is a postgres DSN."""
    url = config.session_store_url
    if url.startswith(("postgres://", "postgresql://")):
        return PostgresSessionStore(url)
    return JsonFileSessionStore(Path(url))
