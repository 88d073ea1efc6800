"""Incremental morning-report aggregation.

One report exists per (participant, day). Each run folds new
notification-worthy matches into the stored report: entries are keyed by
match id, so re-running with the same input never duplicates them, and
an already-sent report keeps ``email_sent = True``. Matches that end up in
a written report move to ``reported``, which is what keeps the next
incremental run from picking them up again. Scheduled or active matches are
listed as soon as they are analysed; their ``digest_date`` is stamped and the
flip to ``reported`` waits until their conversation completes or fails.
"""
from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from rendezvous import audit, states
from rendezvous.models import Match, MatchStatus, MorningReport, Participant, utcnow
from rendezvous.services import report_summary
from rendezvous.utils import isoformat, json_parse

log = logging.getLogger(__name__)

HIGH_PRIORITY_SCORE = 0.8
TOP_OPPORTUNITIES = 3
RECOMMENDED_ACTIONS = [
    "Review top-scoring matches first for immediate opportunities",
    "Schedule follow-up conversations with strong matches",
    "Update your profile to attract more high-quality matches",
]


@dataclass
class _Draft:
    user: Participant
    existing: MorningReport | None
    notifications: list[dict[str, Any]] = field(default_factory=list)
    total_score: float = 0.0
    seen: set[int] = field(default_factory=set)
    changed: bool = False

    def add(self, entry: dict[str, Any], replace: bool = False) -> bool:
        """Append *entry* unless its match is already listed; *replace* refreshes it instead."""
        match_id = entry["match_id"]
        if match_id in self.seen:
            if replace:
                self.notifications = [entry if n["match_id"] == match_id else n for n in self.notifications]
                self.recompute()
                self.changed = True
            return False
        self.seen.add(match_id)
        self.changed = True
        self.notifications.append(entry)
        self.total_score += entry.get("opportunity_score") or 0.0
        return True

    def recompute(self) -> None:
        self.total_score = sum(n.get("opportunity_score") or 0.0 for n in self.notifications)


# ---------------------------------------------------------------------------
# Entry construction
# ---------------------------------------------------------------------------


def notification_entry(match: Match, for_user_id: int) -> dict[str, Any]:
    """Describe *match* from the point of view of *for_user_id*."""
    is_a = match.participant_a_id == for_user_id
    other = match.participant_b if is_a else match.participant_a
    insights = sorted(match.insight_links, key=lambda link: link.relevance_score, reverse=True)
    return {
        "match_id": match.id,
        "other_user": {"id": other.id, "handle": other.handle, "email": other.email or ""},
        "notification_score": match.notification_score,
        "opportunity_score": match.opportunity_score,
        "predicted_outcome": match.predicted_outcome.value,
        "notification_reasoning": match.notification_reasoning,
        "introduction_rationale": match.rationale_for_a if is_a else match.rationale_for_b,
        "agent_summary": match.agent_summary_for_a if is_a else match.agent_summary_for_b,
        "match_reasoning": match.match_reasoning,
        "insights": [
            {
                "type": link.insight.insight_type.value,
                "title": link.insight.title,
                "relevance_score": link.relevance_score,
            }
            for link in insights
        ],
        "created_at": isoformat(match.created_at),
    }


def agent_insights(notifications: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Derive the insight block from the full, already sorted notification list."""
    if not notifications:
        return {"patterns_observed": [], "top_opportunities": [], "recommended_actions": []}

    patterns: list[str] = []
    outcomes = list(dict.fromkeys(n.get("predicted_outcome") or "" for n in notifications))
    if len(outcomes) > 1:
        patterns.append(f"Diverse match types detected: {', '.join(outcomes).lower()}")
    high = sum(1 for n in notifications if (n.get("notification_score") or 0) > HIGH_PRIORITY_SCORE)
    if high:
        patterns.append(f"{high} high-priority matches identified")

    return {
        "patterns_observed": patterns[:3],
        "top_opportunities": [
            f"Explore collaboration with {n['other_user']['handle']}"
            for n in notifications[:TOP_OPPORTUNITIES]
        ],
        "recommended_actions": list(RECOMMENDED_ACTIONS),
    }


def match_summaries(notifications: list[dict[str, Any]], total_score: float) -> dict[str, Any]:
    count = len(notifications)
    return {
        "total_matches": count,
        "average_opportunity_score": total_score / count if count else 0,
        "top_outcomes": dict(Counter(n.get("predicted_outcome") for n in notifications)),
        "highest_scoring_match": notifications[0].get("notification_score") or 0 if notifications else 0,
    }


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def _select_matches(
    session: Session, day_start: datetime, user_id: int | None, force: bool,
) -> list[Match]:
    query = (
        select(Match)
        .where(Match.should_notify.is_(True), Match.created_at >= day_start)
        .order_by(Match.id)
    )
    if not force:
        query = query.where(Match.status != MatchStatus.REPORTED)
    if user_id is not None:
        query = query.where(or_(Match.participant_a_id == user_id, Match.participant_b_id == user_id))
    return list(session.execute(query).scalars().all())


def _load_report(session: Session, user_id: int, report_date: date) -> MorningReport | None:
    return session.execute(
        select(MorningReport).where(
            MorningReport.user_id == user_id, MorningReport.report_date == report_date,
        )
    ).scalars().first()


def _draft_for(
    session: Session, drafts: dict[int, _Draft], user: Participant, report_date: date, force: bool,
) -> _Draft:
    draft = drafts.get(user.id)
    if draft is None:
        existing = _load_report(session, user.id, report_date)
        draft = _Draft(user=user, existing=existing)
        if existing is not None:
            for entry in json_parse(existing.notifications_json, []):
                if isinstance(entry, dict) and "match_id" in entry:
                    draft.add(entry)
            if force:
                draft.recompute()
            else:
                draft.total_score = existing.total_opportunity_score
            draft.changed = False
        drafts[user.id] = draft
    return draft


def _write_report(session: Session, draft: _Draft, report_date: date) -> MorningReport:
    draft.notifications.sort(key=lambda n: n.get("notification_score") or 0, reverse=True)
    report = draft.existing
    if report is None:
        report = MorningReport(user_id=draft.user.id, report_date=report_date, email_sent=False)
        session.add(report)
    report.notifications_json = json.dumps(draft.notifications, default=str)
    report.match_summaries_json = json.dumps(match_summaries(draft.notifications, draft.total_score))
    report.agent_insights_json = json.dumps(agent_insights(draft.notifications))
    report.notification_count = len(draft.notifications)
    report.total_opportunity_score = draft.total_score
    report.updated_at = utcnow()
    session.commit()
    return report


def _mark_reported(session: Session, match_ids: set[int], report_date: date) -> tuple[int, int]:
    """Stamp the digest day on every listed match and flip the settled ones to ``reported``.

    Scheduled and active matches cannot move to ``reported`` yet; they are
    counted as deferred and picked up by :func:`settle_deferred_matches`.
    """
    marked = deferred = 0
    for match in session.execute(select(Match).where(Match.id.in_(match_ids))).scalars().all():
        if match.digest_date is None:
            match.digest_date = report_date
        if match.status == MatchStatus.REPORTED:
            continue
        if not states.can_transition(match.status, MatchStatus.REPORTED):
            log.info("Match %s is %s, deferring reported until it settles", match.id, match.status.value)
            deferred += 1
            continue
        states.transition(match, MatchStatus.REPORTED)
        marked += 1
    session.commit()
    return marked, deferred


def settle_deferred_matches(session: Session) -> int:
    """Move matches already listed in a digest to ``reported`` once their conversation has finished."""
    query = select(Match).where(
        Match.digest_date.is_not(None),
        Match.status.in_([MatchStatus.COMPLETED, MatchStatus.FAILED]),
    )
    settled = 0
    for match in session.execute(query).scalars().all():
        states.transition(match, MatchStatus.REPORTED)
        settled += 1
    if settled:
        session.commit()
        log.info("Marked %d previously deferred matches as reported", settled)
    return settled


def generate_morning_reports(
    session: Session,
    report_date: date | None = None,
    user_id: int | None = None,
    force_regenerate: bool = False,
) -> dict[str, Any]:
    """Build or extend the day's reports for every participant of a qualifying match.

    *user_id* narrows which matches are considered; reports are still written
    for both sides of each selected match so that a ``reported`` match always
    appears in both digests.
    """
    report_date = report_date or utcnow().date()
    day_start = datetime.combine(report_date, time.min, tzinfo=UTC)
    settled = settle_deferred_matches(session)
    matches = _select_matches(session, day_start, user_id, force_regenerate)

    base = {"date": report_date.isoformat(), "isIncremental": not force_regenerate, "forceRegenerate": force_regenerate}
    if not matches:
        message = (
            "No notification-worthy matches found for regeneration" if force_regenerate
            else "No new notification-worthy matches found"
        )
        return {
            "summary": {**base, "message": message, "reportsGenerated": 0, "newMatches": 0, "deferredSettled": settled},
            "preview": [],
        }

    log.info("Found %d %s notification matches for %s",
             len(matches), "total" if force_regenerate else "new", report_date)

    drafts: dict[int, _Draft] = {}
    new_entries = 0
    for match in matches:
        for user in (match.participant_a, match.participant_b):
            draft = _draft_for(session, drafts, user, report_date, force_regenerate)
            if draft.add(notification_entry(match, user.id), replace=force_regenerate):
                new_entries += 1

    written: list[MorningReport] = []
    to_mark: set[int] = set()
    for uid, draft in drafts.items():
        if draft.changed:
            try:
                report = _write_report(session, draft, report_date)
            except Exception as exc:
                session.rollback()
                log.error("Error writing report for user %s: %s", uid, exc)
                audit.record_failure(
                    session, "generateMorningReport", str(exc), target_type="participant", target_id=uid,
                )
                continue
            written.append(report)
            log.info("%s morning report for %s", "Regenerated" if force_regenerate else "Updated", draft.user.handle)
        # Unchanged drafts are already stored; their matches still need marking
        to_mark.update(n["match_id"] for n in draft.notifications)

    marked, deferred = _mark_reported(session, to_mark, report_date) if to_mark else (0, 0)
    return {
        "summary": {
            **base,
            "totalMatches": len(matches),
            "newNotifications": new_entries,
            "usersWithReports": len(drafts),
            "reportsGenerated": len(written),
            "matchesMarkedAsReported": marked,
            "matchesDeferred": deferred,
            "deferredSettled": settled,
            "averageNotificationsPerUser": (
                sum(r.notification_count for r in written) / len(written) if written else 0
            ),
        },
        "reports": written,
        "preview": [report_summary(r) for r in written[:5]],
    }
