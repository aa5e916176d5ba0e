"""Server database using SQLAlchemy with SQLite.

This module provides:
- Token-based authentication
- Document storage per collection
- All-or-nothing write batches returning the resulting change events
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from clinicsync.core.types import ChangeType
from clinicsync.server.models import Base, Document, Token

if TYPE_CHECKING:
    from sqlalchemy import Engine


def hash_token(token: str) -> str:
    """Hex SHA-256 of a raw token; only this digest is persisted."""
    return hashlib.sha256(token.encode()).hexdigest()


class BatchError(Exception):
    """Raised when a write batch is invalid; nothing was applied."""


@dataclass
class Write:
    """One write of a batch."""

    op: Literal["upsert", "delete"]
    collection: str
    doc_id: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class Change:
    """A change produced by a committed write, broadcast to subscribers."""

    collection: str
    change_type: ChangeType
    doc_id: str
    fields: dict[str, Any]
    origin: str | None


class Database:
    """SQLAlchemy database for the remote document store.

    Uses SQLite with WAL mode for better concurrency with multiple readers.
    Pass ":memory:" for an isolated in-memory database (tests).
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize the database.

        Args:
            db_path: Path to the SQLite database file, or ":memory:".
        """
        if db_path == ":memory:":
            self._db_path: Path | str = db_path
            self._engine: Engine = create_engine(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self._db_path = Path(db_path)
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            # Create engine with check_same_thread=False for multi-threaded access
            self._engine = create_engine(
                f"sqlite:///{self._db_path}",
                connect_args={"check_same_thread": False},
                echo=False,
            )
            # Enable WAL mode
            with self._engine.connect() as conn:
                conn.exec_driver_sql("PRAGMA journal_mode=WAL")

        # Create tables if they don't exist
        Base.metadata.create_all(self._engine)

    @property
    def path(self) -> Path | str:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        self._engine.dispose()

    def _session(self) -> Session:
        """Create a new database session."""
        return Session(self._engine)

    # === Tokens ===

    @staticmethod
    def _token_by_hash(session: Session, raw_token: str) -> Token | None:
        stmt = select(Token).where(Token.token_hash == hash_token(raw_token))
        return session.execute(stmt).scalar_one_or_none()

    def create_token(self, name: str) -> str:
        """Generate and store a new API token; the raw value is returned once."""
        raw_token = "cs_" + secrets.token_urlsafe(32)
        self.register_token(raw_token, name)
        return raw_token

    def register_token(self, raw_token: str, name: str) -> None:
        """Store a token chosen by the operator (no-op if already known)."""
        with self._session() as session:
            if self._token_by_hash(session, raw_token) is None:
                session.add(Token(name=name, token_hash=hash_token(raw_token)))
                session.commit()

    def validate_token(self, raw_token: str) -> Token | None:
        """Return the stored token matching ``raw_token`` unless it was revoked."""
        with self._session() as session:
            token = self._token_by_hash(session, raw_token)
            if token is None or token.revoked:
                return None
            session.expunge(token)
            return token

    def revoke_token(self, raw_token: str) -> bool:
        """Revoke a token. Returns False if it was never registered."""
        with self._session() as session:
            token = self._token_by_hash(session, raw_token)
            if token is None:
                return False
            token.revoked = True
            session.commit()
            return True

    # === Document operations ===

    def list_documents(self, collection: str) -> list[Document]:
        """List every document of a collection, ordered by document key."""
        with self._session() as session:
            stmt = (
                select(Document)
                .where(Document.collection == collection)
                .order_by(Document.doc_id)
            )
            documents = list(session.execute(stmt).scalars().all())
            for document in documents:
                session.expunge(document)
            return documents

    def get_document(self, collection: str, doc_id: str) -> Document | None:
        with self._session() as session:
            document = self._find(session, collection, doc_id)
            if document is not None:
                session.expunge(document)
            return document

    @staticmethod
    def _find(session: Session, collection: str, doc_id: str) -> Document | None:
        stmt = select(Document).where(
            Document.collection == collection, Document.doc_id == doc_id
        )
        return session.execute(stmt).scalar_one_or_none()

    def apply_batch(self, writes: list[Write], origin: str | None = None) -> list[Change]:
        """Apply writes in one transaction.

        Upserts merge the given fields into the existing document. Deleting a
        missing document is a no-op.

        Args:
            writes: Writes to apply, in order.
            origin: Device that issued the batch.

        Returns:
            The resulting changes, in order.

        Raises:
            BatchError: If a write is invalid (nothing is applied).
        """
        for write in writes:
            if write.op not in ("upsert", "delete"):
                raise BatchError(f"Unknown operation: {write.op!r}")
            if not write.collection or not write.doc_id:
                raise BatchError("Every write needs a collection and a doc_id")

        changes: list[Change] = []
        now = datetime.now(UTC)
        with self._session() as session, session.begin():
            for write in writes:
                document = self._find(session, write.collection, write.doc_id)
                if write.op == "delete":
                    if document is None:
                        continue
                    session.delete(document)
                    # Flush so that a later upsert of the same key re-creates it
                    session.flush()
                    changes.append(Change(
                        write.collection, ChangeType.REMOVED, write.doc_id, {}, origin
                    ))
                elif document is None:
                    document = Document(
                        collection=write.collection,
                        doc_id=write.doc_id,
                        data=dict(write.fields),
                        origin=origin,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(document)
                    session.flush()
                    changes.append(Change(
                        write.collection, ChangeType.ADDED, write.doc_id, dict(document.data), origin
                    ))
                else:
                    # Reassign so the JSON column is flagged as modified
                    document.data = {**document.data, **write.fields}
                    document.origin = origin
                    document.updated_at = now
                    changes.append(Change(
                        write.collection, ChangeType.MODIFIED, write.doc_id, dict(document.data), origin
                    ))
        return changes
