"""
Relational persistence for wabot using SQLModel.

Two tables:
- sessions: one row per bot identity holding the serialized auth directory
- responses: keyword -> canned reply table edited from the admin surface

PostgreSQL is the production store; SQLite is used for local runs and tests.
Both support single-statement upserts, which keeps every save atomic from
the reader's point of view.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime, Text, delete, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine, select

from wabot.config import Config
from wabot.logger import get_logger
from wabot.session.snapshot import SessionSnapshot

logger = get_logger(__name__)


class SessionModel(SQLModel, table=True):
    """Serialized auth directory of one bot identity."""

    __tablename__ = "sessions"

    id: str = Field(sa_column=Column(Text, primary_key=True))
    data: Optional[Dict[str, Any]] = Field(
        default=None,
        sa_column=Column(JSON().with_variant(postgresql.JSONB(), "postgresql")),
    )
    updated_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), server_default=func.now()),
    )


class ResponseModel(SQLModel, table=True):
    """Keyword-triggered canned reply."""

    __tablename__ = "responses"

    keyword: str = Field(sa_column=Column(Text, primary_key=True))
    reply: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), server_default=func.now()),
    )


def create_store_engine(database_url: Optional[str] = None) -> Engine:
    """Create the SQLAlchemy engine for the configured store."""
    url = database_url or Config.database_url()

    if url.startswith("sqlite"):
        # Store calls run in worker threads
        return create_engine(url, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        pool_size=5,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={"connect_timeout": 10},
    )


def normalize_keyword(keyword: str) -> str:
    return (keyword or "").strip().lower()


class _StoreBase:
    """Shared engine handling and lazy schema creation."""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine or create_store_engine(database_url)
        self._schema_ready = False

    def ensure_schema(self) -> None:
        """Create the backing tables if they do not exist. Safe to call repeatedly."""
        SQLModel.metadata.create_all(
            self.engine,
            tables=[SessionModel.__table__, ResponseModel.__table__],
        )
        self._schema_ready = True

    def _ensure_ready(self) -> None:
        if not self._schema_ready:
            self.ensure_schema()

    def _upsert(self, table, values: Dict[str, Any], key: str) -> None:
        """INSERT ... ON CONFLICT (key) DO UPDATE for every non-key column."""
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise NotImplementedError(f"Upsert not supported on {dialect}")

        stmt = insert(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[key],
            set_={col: stmt.excluded[col] for col in values if col != key},
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)


class SessionStore(_StoreBase):
    """
    Durable storage of session snapshots keyed by bot identity.

    Errors from the database propagate; callers decide how to degrade.
    """

    def load(self, session_id: str) -> Optional[SessionSnapshot]:
        """Return the stored snapshot, or None when nothing has been saved yet."""
        self._ensure_ready()
        with Session(self.engine) as session:
            row = session.get(SessionModel, session_id)
            if row is None or row.data is None:
                return None
            return SessionSnapshot(
                id=row.id, files=dict(row.data), updated_at=row.updated_at
            )

    def save(self, session_id: str, files: Dict[str, str]) -> None:
        """Replace the whole snapshot for session_id in one statement."""
        self._ensure_ready()
        self._upsert(
            SessionModel.__table__,
            {"id": session_id, "data": dict(files), "updated_at": func.now()},
            key="id",
        )
        logger.debug(f"Saved session snapshot {session_id} ({len(files)} files)")

    def clear(self, session_id: str) -> bool:
        """Delete the snapshot row. Returns whether a row was removed."""
        self._ensure_ready()
        table = SessionModel.__table__
        with self.engine.begin() as conn:
            result = conn.execute(delete(table).where(table.c.id == session_id))
        return bool(result.rowcount)


class ResponseStore(_StoreBase):
    """CRUD over the keyword response table."""

    def list_responses(self) -> List[Dict[str, Any]]:
        self._ensure_ready()
        with Session(self.engine) as session:
            rows = session.exec(select(ResponseModel).order_by(ResponseModel.keyword)).all()
            return [
                {
                    "keyword": row.keyword,
                    "reply": row.reply,
                    "updated_at": row.updated_at.isoformat() if row.updated_at else None,
                }
                for row in rows
            ]

    def get_reply(self, keyword: str) -> Optional[str]:
        keyword = normalize_keyword(keyword)
        if not keyword:
            return None
        self._ensure_ready()
        with Session(self.engine) as session:
            row = session.get(ResponseModel, keyword)
            return row.reply if row else None

    def set_response(self, keyword: str, reply: str) -> str:
        """Create or replace a response. Returns the normalized keyword."""
        keyword = normalize_keyword(keyword)
        if not keyword:
            raise ValueError("keyword must not be empty")
        if not reply or not reply.strip():
            raise ValueError("reply must not be empty")

        self._ensure_ready()
        self._upsert(
            ResponseModel.__table__,
            {"keyword": keyword, "reply": reply, "updated_at": func.now()},
            key="keyword",
        )
        return keyword

    def delete_response(self, keyword: str) -> bool:
        keyword = normalize_keyword(keyword)
        self._ensure_ready()
        table = ResponseModel.__table__
        with self.engine.begin() as conn:
            result = conn.execute(delete(table).where(table.c.keyword == keyword))
        return bool(result.rowcount)


_session_store: Optional[SessionStore] = None
_response_store: Optional[ResponseStore] = None


def get_session_store() -> SessionStore:
    """Return the process-wide session store."""
    global _session_store
    if _session_store is None:
        _session_store = SessionStore()
    return _session_store


def get_response_store() -> ResponseStore:
    """Return the process-wide response store, sharing the session store's engine."""
    global _response_store
    if _response_store is None:
        _response_store = ResponseStore(engine=get_session_store().engine)
    return _response_store
