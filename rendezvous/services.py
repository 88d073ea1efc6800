"""Serialization helpers and read-side aggregates shared by the API and MCP server."""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rendezvous.models import (
    Conversation, ConversationStatus, LLMCallLog, LogStatus, Match, MatchStatus, MorningReport, Outcome,
    ProcessingLog, PromptTemplate,
)
from rendezvous.utils import isoformat, json_parse

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def match_summary(match: Match) -> dict[str, Any]:
    return {
        "id": match.id,
        "participant_a_id": match.participant_a_id,
        "participant_b_id": match.participant_b_id,
        "opportunity_score": match.opportunity_score,
        "predicted_outcome": match.predicted_outcome.value if match.predicted_outcome else None,
        "status": match.status.value if match.status else None,
        "should_notify": match.should_notify,
        "notification_score": match.notification_score,
        "scheduled_for": isoformat(match.scheduled_for),
        "digest_date": match.digest_date.isoformat() if match.digest_date else None,
        "created_at": isoformat(match.created_at),
        "analyzed_at": isoformat(match.analyzed_at),
    }


def conversation_summary(conv: Conversation) -> dict[str, Any]:
    return {
        "id": conv.id,
        "match_id": conv.match_id,
        "status": conv.status.value,
        "attempts": conv.attempts,
        "actual_outcome": conv.actual_outcome,
        "quality_score": conv.quality_score,
        "summary": conv.summary,
        "key_moments": json_parse(conv.key_moments_json, []),
        "total_tokens": conv.total_tokens,
        "turns": len(conv.turns),
        "started_at": isoformat(conv.started_at),
        "completed_at": isoformat(conv.completed_at),
    }


def outcome_summary(outcome: Outcome) -> dict[str, Any]:
    return {
        "id": outcome.id,
        "conversation_id": outcome.conversation_id,
        "match_id": outcome.match_id,
        "outcome_analysis": outcome.outcome_analysis,
        "readiness_score": outcome.readiness_score,
        "next_steps": json_parse(outcome.next_steps_json, []),
        "follow_up_recommended": outcome.follow_up_recommended,
        "follow_up_timeframe": outcome.follow_up_timeframe,
        "created_at": isoformat(outcome.created_at),
    }


def report_summary(report: MorningReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "user_id": report.user_id,
        "report_date": report.report_date.isoformat(),
        "notification_count": report.notification_count,
        "total_opportunity_score": report.total_opportunity_score,
        "email_sent": report.email_sent,
        "match_summaries": json_parse(report.match_summaries_json, {}),
        "agent_insights": json_parse(report.agent_insights_json, {}),
    }


def processing_log_summary(entry: ProcessingLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "status": entry.status.value,
        "target_type": entry.target_type,
        "target_id": entry.target_id,
        "metadata": json_parse(entry.metadata_json, {}),
        "error_message": entry.error_message,
        "duration_ms": entry.duration_ms,
        "created_at": isoformat(entry.created_at),
        "completed_at": isoformat(entry.completed_at),
    }


def prompt_summary(tpl: PromptTemplate) -> dict[str, Any]:
    return {
        "key": tpl.key, "label": tpl.label, "content": tpl.content,
        "llm_model": tpl.llm_model, "temperature": tpl.temperature,
        "max_tokens": tpl.max_tokens, "json_response": tpl.json_response,
    }


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


def compute_stats(session: Session) -> dict[str, Any]:
    by_match_status = dict(session.execute(
        select(Match.status, func.count()).group_by(Match.status)
    ).all())
    by_conv_status = dict(session.execute(
        select(Conversation.status, func.count()).group_by(Conversation.status)
    ).all())
    avg_opportunity = session.execute(select(func.avg(Match.opportunity_score))).scalar()
    avg_quality = session.execute(
        select(func.avg(Conversation.quality_score))
        .where(Conversation.status == ConversationStatus.COMPLETED)
    ).scalar()
    llm_tokens, llm_cost = session.execute(
        select(func.coalesce(func.sum(LLMCallLog.total_tokens), 0),
               func.coalesce(func.sum(LLMCallLog.estimated_cost), 0.0))
    ).one()
    reports_sent = session.execute(
        select(func.count()).select_from(MorningReport).where(MorningReport.email_sent.is_(True))
    ).scalar()
    reports_total = session.execute(select(func.count()).select_from(MorningReport)).scalar()
    return {
        "matches_total": sum(by_match_status.values()),
        "matches_by_status": {MatchStatus(k).value: v for k, v in by_match_status.items()},
        "conversations_by_status": {ConversationStatus(k).value: v for k, v in by_conv_status.items()},
        "average_opportunity_score": float(avg_opportunity or 0.0),
        "average_quality_score": float(avg_quality or 0.0),
        "llm_total_tokens": int(llm_tokens),
        "llm_estimated_cost": float(llm_cost),
        "reports_total": reports_total,
        "reports_sent": reports_sent,
        "reports_unsent": reports_total - reports_sent,
    }


def recent_processing_logs(
    session: Session, *, action: str | None = None, status: str | None = None, limit: int = 50,
) -> list[dict[str, Any]]:
    query = select(ProcessingLog).order_by(ProcessingLog.id.desc()).limit(max(1, min(limit, 500)))
    if action:
        query = query.where(ProcessingLog.action == action)
    if status:
        query = query.where(ProcessingLog.status == LogStatus(status))
    return [processing_log_summary(e) for e in session.execute(query).scalars().all()]
