# SPDX-License-Identifier: Apache-2.0
"""DB connection and session management."""
from __future__ import annotations

import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from studyhub.config import DATABASE_URL, settings
from studyhub.core.exceptions import DatabaseError
from studyhub.models import (  # noqa: F401 – register all models with SQLModel.metadata
    DataRecord,
    DataVersion,
    FieldEntry,
    Project,
    Role,
    Standardization,
    Study,
)

logger = logging.getLogger("studyhub")


def build_engine(url: str = DATABASE_URL):
    """Engine for the given URL; in-memory SQLite shares one connection across sessions."""
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, connect_args=connect_args)


engine = build_engine(settings.database_url)


@contextmanager
def read_scope(bind=None):
    """Read-only session; nothing is committed."""
    with Session(bind if bind is not None else engine, expire_on_commit=False) as session:
        yield session


@contextmanager
def session_scope(bind=None):
    """Transaction scope: commit on success, roll back and re-raise on any failure.

    A commit the database refuses is reported as ``DatabaseError``.
    """
    with Session(bind if bind is not None else engine, expire_on_commit=False) as session:
        try:
            yield session
        except Exception:
            session.rollback()
            logger.warning("Transaction rolled back", exc_info=True)
            raise
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("Commit failed, transaction rolled back", exc_info=True)
            raise DatabaseError("Write was not acknowledged by the database.") from exc


def create_db_and_tables(bind=None):
    """Create all tables."""
    SQLModel.metadata.create_all(bind if bind is not None else engine)
