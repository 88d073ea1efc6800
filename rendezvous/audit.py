"""Append-only processing log for pipeline actions.

Rows are inserted as ``started`` and only their status, completion time,
duration and error are touched afterwards. Audit writes must never break
the pipeline, so their own failures are logged and dropped.
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rendezvous.models import LogStatus, ProcessingLog, utcnow

log = logging.getLogger(__name__)


def _dump(metadata: dict[str, Any] | None) -> str:
    return json.dumps(metadata or {}, default=str)


def start_action(
    session: Session, action: str, metadata: dict[str, Any] | None = None,
    target_type: str = "", target_id: object = "",
) -> ProcessingLog | None:
    try:
        entry = ProcessingLog(
            action=action, status=LogStatus.STARTED,
            target_type=target_type, target_id=str(target_id or ""),
            metadata_json=_dump(metadata),
        )
        session.add(entry)
        session.commit()
        return entry
    except SQLAlchemyError as exc:
        session.rollback()
        log.error("Failed to write processing log for %s: %s", action, exc)
        return None


def finish_action(
    session: Session, entry: ProcessingLog | None, status: LogStatus,
    started: float, error: str = "",
) -> None:
    if entry is None:
        return
    try:
        entry.status = status
        entry.completed_at = utcnow()
        entry.duration_ms = int((time.monotonic() - started) * 1000)
        entry.error_message = error
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.error("Failed to finalize processing log %s: %s", entry.id, exc)


def record_failure(
    session: Session, action: str, error: str, *, target_type: str = "",
    target_id: object = "", metadata: dict[str, Any] | None = None,
) -> None:
    """Write a one-shot failure row for a single item inside a batch."""
    try:
        now = utcnow()
        session.add(ProcessingLog(
            action=action, status=LogStatus.FAILED,
            target_type=target_type, target_id=str(target_id or ""),
            metadata_json=_dump(metadata), error_message=error,
            created_at=now, completed_at=now, duration_ms=0,
        ))
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.error("Failed to record failure for %s: %s", action, exc)


@contextmanager
def track(
    session: Session, action: str, metadata: dict[str, Any] | None = None,
    target_type: str = "", target_id: object = "",
) -> Generator[ProcessingLog | None, None, None]:
    """Wrap a pipeline action with started/completed/failed log rows.

    Exceptions propagate after the failure has been recorded.
    """
    started = time.monotonic()
    entry = start_action(session, action, metadata, target_type, target_id)
    try:
        yield entry
    except Exception as exc:
        session.rollback()
        finish_action(session, entry, LogStatus.FAILED, started, str(exc))
        raise
    finish_action(session, entry, LogStatus.COMPLETED, started)
