"""Relational penalty audit trail.

One row per applied penalty in ``token_penalties``.  Rows are never
deleted or rewritten; lifting a penalty stamps ``lifted_at``/``lifted_by``
on the token's open rows, once.  Any SQLAlchemy URL works — SQLite for a
single box, Postgres/MySQL when several gateway replicas share the trail.

All timestamps are stored as UTC.
"""

from __future__ import annotations

import logging
import math
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from antiabuse.exceptions import StorageError
from antiabuse.models import PenaltyAuditEntry, PenaltyType

logger = logging.getLogger(__name__)

DEFAULT_AUDIT_URL = "sqlite:///antiabuse.db"


class Base(DeclarativeBase):
    pass


class TokenPenalty(Base):
    __tablename__ = "token_penalties"
    __table_args__ = (
        Index("idx_token_penalties_token_created", "token_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    penalty_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    abuse_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # NULL means the penalty never expires (permanent ban).
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    lifted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lifted_by: Mapped[Optional[int]] = mapped_column(Integer)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we wrote was UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_entry(row: TokenPenalty) -> PenaltyAuditEntry:
    return PenaltyAuditEntry(
        id=row.id,
        token_id=row.token_id,
        user_id=row.user_id,
        penalty_type=PenaltyType(row.penalty_type),
        reason=row.reason,
        abuse_score=row.abuse_score,
        created_at=_utc(row.created_at),
        expires_at=_utc(row.expires_at),
        lifted_at=_utc(row.lifted_at),
        lifted_by=row.lifted_by,
    )


class AuditStore:
    """Append-only penalty rows behind a small query API."""

    def __init__(self, url: str = DEFAULT_AUDIT_URL, echo: bool = False,
                 timeout: float | None = None):
        """``timeout`` bounds how long a write waits for a locked or busy
        database (SQLite busy timeout, pool checkout) before StorageError."""
        kwargs = {"echo": echo}
        connect_args = {}
        in_memory = url in ("sqlite://", "sqlite:///:memory:")
        if in_memory:
            # One shared connection, or each session would see its own empty DB.
            kwargs["poolclass"] = StaticPool
            connect_args["check_same_thread"] = False
        if timeout is not None:
            if url.startswith("sqlite"):
                connect_args["timeout"] = timeout
            elif url.startswith("postgresql"):
                connect_args["connect_timeout"] = max(1, math.ceil(timeout))
            if not in_memory:
                kwargs["pool_timeout"] = timeout
        if connect_args:
            kwargs["connect_args"] = connect_args
        try:
            self.engine = create_engine(url, **kwargs)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"audit store unavailable: {e}") from e
        self._sessions = sessionmaker(self.engine, expire_on_commit=False)

    @contextmanager
    def _session(self, operation: str):
        session: Session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StorageError(f"audit {operation} failed: {e}") from e
        finally:
            session.close()

    def record(self, entry: PenaltyAuditEntry) -> PenaltyAuditEntry:
        """Append a row; returns the entry with its id filled in."""
        row = TokenPenalty(
            token_id=entry.token_id,
            user_id=entry.user_id,
            penalty_type=entry.penalty_type.value,
            reason=entry.reason,
            abuse_score=entry.abuse_score,
            created_at=entry.created_at,
            expires_at=entry.expires_at,
        )
        with self._session("insert") as session:
            session.add(row)
            session.flush()
            entry.id = row.id
        return entry

    def mark_lifted(self, token_id: int, lifted_by: int,
                    lifted_at: datetime | None = None) -> int:
        """Stamp every not-yet-lifted row for the token. Returns rows touched;
        0 is not an error (nothing was open)."""
        lifted_at = lifted_at or datetime.now(timezone.utc)
        stmt = (
            update(TokenPenalty)
            .where(TokenPenalty.token_id == token_id, TokenPenalty.lifted_at.is_(None))
            .values(lifted_at=lifted_at, lifted_by=lifted_by)
        )
        with self._session("lift") as session:
            return session.execute(stmt).rowcount

    def active(self, page: int, page_size: int,
               now: datetime | None = None) -> tuple[list[PenaltyAuditEntry], int]:
        """Unexpired, unlifted rows, newest first, plus the total count."""
        now = now or datetime.now(timezone.utc)
        where = (
            or_(TokenPenalty.expires_at.is_(None), TokenPenalty.expires_at > now),
            TokenPenalty.lifted_at.is_(None),
        )
        return self._page(where, page, page_size, "active query")

    def history(self, token_id: int, page: int,
                page_size: int) -> tuple[list[PenaltyAuditEntry], int]:
        """Every row for the token, newest first, plus the total count."""
        return self._page((TokenPenalty.token_id == token_id,), page, page_size,
                          "history query")

    def _page(self, where, page, page_size, operation):
        count_stmt = select(func.count()).select_from(TokenPenalty).where(*where)
        rows_stmt = (
            select(TokenPenalty)
            .where(*where)
            .order_by(TokenPenalty.created_at.desc(), TokenPenalty.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        with self._session(operation) as session:
            total = session.scalar(count_stmt) or 0
            rows = session.scalars(rows_stmt).all()
            return [_to_entry(r) for r in rows], total

    def close(self) -> None:
        self.engine.dispose()
