from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, inspect as sa_inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rendezvous.models import Base, PromptTemplate

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal = None


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        if db_path is None:
            from rendezvous.config import get_settings
            db_path = get_settings().database_path
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _migrate_existing_db(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        with _SessionLocal() as session:
            seed_prompt_templates(session)
            session.commit()


def _migrate_existing_db(engine: Engine) -> None:
    """Add columns that may be missing in older databases."""
    columns = {col["name"] for col in sa_inspect(engine).get_columns("matches")}
    if "digest_date" not in columns:
        with engine.begin() as conn:
            conn.execute(text("ALTER TABLE matches ADD COLUMN digest_date DATE"))


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, scheduled jobs, etc.)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def seed_prompt_templates(session: Session) -> int:
    """Insert any default prompt template missing from the table (caller must commit)."""
    from rendezvous.prompts import DEFAULT_PROMPTS

    existing = set(session.execute(select(PromptTemplate.key)).scalars().all())
    added = 0
    for key, default in DEFAULT_PROMPTS.items():
        if key in existing:
            continue
        session.add(PromptTemplate(
            key=key, label=default.label, content=default.content,
            temperature=default.temperature, max_tokens=default.max_tokens,
            json_response=default.json_response,
        ))
        added += 1
    if added:
        session.flush()
    return added
