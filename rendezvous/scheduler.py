"""Promote high-scoring matches to a scheduled run and activate them when due."""
from __future__ import annotations

import logging
from datetime import UTC, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from rendezvous import states
from rendezvous.config import Settings
from rendezvous.models import Match, MatchStatus, utcnow
from rendezvous.services import match_summary

log = logging.getLogger(__name__)

SCHEDULE_THRESHOLD = 0.7


def _zone(name: str, default: str) -> ZoneInfo:
    for candidate in (name, default):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            log.warning("Unknown timezone %r, falling back", candidate)
    return ZoneInfo("UTC")


def next_midnight(tz_name: str, now: datetime, default_tz: str = "America/Los_Angeles") -> datetime:
    """The first local midnight strictly after *now*, returned in UTC."""
    zone = _zone(tz_name, default_tz)
    local = now.astimezone(zone)
    midnight = datetime.combine(local.date() + timedelta(days=1), time.min, tzinfo=zone)
    return midnight.astimezone(UTC)


def match_timezone(match: Match) -> str:
    for p in (match.participant_a, match.participant_b):
        if p is not None and p.timezone:
            return p.timezone
    return ""


def schedule_matches(
    session: Session, settings: Settings, now: datetime | None = None,
) -> dict[str, Any]:
    """Move every analyzed match at or above the threshold to ``scheduled``."""
    now = now or utcnow()
    candidates = session.execute(
        select(Match)
        .where(Match.status == MatchStatus.ANALYZED, Match.opportunity_score >= SCHEDULE_THRESHOLD)
        .order_by(Match.id)
    ).scalars().all()

    scheduled: list[Match] = []
    for match in candidates:
        match.scheduled_for = next_midnight(match_timezone(match), now, settings.default_timezone)
        states.transition(match, MatchStatus.SCHEDULED)
        scheduled.append(match)
    session.commit()
    if scheduled:
        log.info("Scheduled %d match(es)", len(scheduled))
    return {
        "summary": {"candidates": len(candidates), "scheduled": len(scheduled)},
        "matches": scheduled,
    }


def activate_scheduled_matches(
    session: Session, user_id: int | None = None, now: datetime | None = None,
) -> dict[str, Any]:
    """Flip due ``scheduled`` matches to ``active``.

    Selection filters on status, so a match that is already active,
    completed or failed is never picked up again.
    """
    now = now or utcnow()
    query = (
        select(Match)
        .where(Match.status == MatchStatus.SCHEDULED, Match.scheduled_for <= now)
        .order_by(Match.scheduled_for, Match.id)
    )
    if user_id is not None:
        query = query.where(or_(Match.participant_a_id == user_id, Match.participant_b_id == user_id))
    due = session.execute(query).scalars().all()
    for match in due:
        states.transition(match, MatchStatus.ACTIVE)
    session.commit()
    log.info("Activated %d scheduled match(es)", len(due))
    return {
        "summary": {"activated": len(due)},
        "matches": due,
        "preview": [match_summary(m) for m in due[:10]],
    }
