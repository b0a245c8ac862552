"""SQLite-backed SessionStore.

``save`` writes the whole snapshot in a single transaction, so a crash
mid-save leaves the previous snapshot intact. ``load`` raises
SessionError for a missing session, an unknown snapshot version or a
snapshot that no longer validates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete, select

from agentloop.exceptions import SessionError
from agentloop.models.session import SNAPSHOT_VERSION, Session
from agentloop.storage.engine import create_session_factory, create_store_engine, init_db
from agentloop.storage.schema import SessionRow

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionSummary:
    """Listing entry for a stored session (no snapshot parsing)."""

    session_id: str
    turn: int
    message_count: int
    history_tokens: int
    input_tokens: int
    output_tokens: int
    terminated: bool
    termination_reason: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def status(self) -> str:
        if not self.terminated:
            return "active"
        return self.termination_reason or "terminated"


def _summary(row: SessionRow) -> SessionSummary:
    return SessionSummary(
        session_id=row.session_id,
        turn=row.turn,
        message_count=row.message_count,
        history_tokens=row.history_tokens,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        terminated=row.terminated,
        termination_reason=row.termination_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqliteSessionStore:
    """Persists Session snapshots with SQLAlchemy.

    Usage::

        store = SqliteSessionStore(".agentloop.db")
        store.save(session)
        restored = store.load(session.session_id)

    Args:
        db_path: SQLite file path or ``":memory:"``.
        url: Full SQLAlchemy URL (overrides *db_path*).
        engine: Pre-built engine (overrides both).
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        *,
        url: str | None = None,
        engine: Engine | None = None,
    ) -> None:
        self._owns_engine = engine is None
        self._engine = engine or create_store_engine(db_path, url=url)
        init_db(self._engine)
        self._session_factory = create_session_factory(self._engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def close(self) -> None:
        if self._owns_engine:
            self._engine.dispose()

    def __enter__(self) -> SqliteSessionStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # SessionStore
    # ------------------------------------------------------------------

    def load(self, session_id: str) -> Session:
        """Restore a session.

        Raises:
            SessionError: If the session is missing or its snapshot is
                corrupt or from an unknown version.
        """
        with self._session_factory() as db:
            row = db.get(SessionRow, session_id)
            if row is None:
                raise SessionError(session_id, "not found")
            if row.snapshot_version != SNAPSHOT_VERSION:
                raise SessionError(
                    session_id,
                    f"unsupported snapshot version {row.snapshot_version} "
                    f"(expected {SNAPSHOT_VERSION})",
                )
            snapshot = row.snapshot_json
        return Session.from_snapshot(session_id, snapshot)

    def save(self, session: Session) -> None:
        """Insert or replace the snapshot in one transaction."""
        snapshot = session.to_snapshot()
        with self._session_factory() as db, db.begin():
            row = db.get(SessionRow, session.session_id)
            if row is None:
                row = SessionRow(session_id=session.session_id, created_at=session.created_at)
                db.add(row)
            row.snapshot_json = snapshot
            row.snapshot_version = SNAPSHOT_VERSION
            row.turn = session.turn
            row.message_count = len(session.messages)
            row.history_tokens = session.history_tokens
            row.input_tokens = session.input_tokens
            row.output_tokens = session.output_tokens
            row.terminated = session.terminated
            row.termination_reason = session.termination_reason
            row.updated_at = session.updated_at
        logger.debug("Saved session %s (turn %d)", session.session_id, session.turn)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def list_sessions(self, *, limit: int | None = None) -> list[SessionSummary]:
        """Stored sessions, most recently updated first."""
        stmt = select(SessionRow).order_by(SessionRow.updated_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._session_factory() as db:
            return [_summary(row) for row in db.execute(stmt).scalars()]

    def exists(self, session_id: str) -> bool:
        with self._session_factory() as db:
            return db.get(SessionRow, session_id) is not None

    def delete(self, session_id: str) -> bool:
        """Remove a session. Returns False if it did not exist."""
        with self._session_factory() as db, db.begin():
            result = db.execute(delete(SessionRow).where(SessionRow.session_id == session_id))
            removed = result.rowcount > 0
        if removed:
            logger.debug("Deleted session %s", session_id)
        return removed
