from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from rendezvous import services
from rendezvous.db import init_db, session_scope
from rendezvous.models import Match, MatchStatus, MorningReport
from rendezvous.pipeline import Action, PipelineDeps, run_action
from rendezvous.utils import json_parse

log = logging.getLogger(__name__)

_deps: PipelineDeps | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def rendezvous_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Rendezvous",
    instructions=(
        "Rendezvous pairs network participants, lets their agents talk, and "
        "emails each participant a morning report. Start with get_stats() for "
        "an overview, then run stages in order: generate_and_analyze_matches, "
        "activate_scheduled_matches, execute_conversation, analyze_outcome, "
        "generate_morning_reports, send_morning_report_emails."
    ),
    lifespan=rendezvous_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _pipeline_deps() -> PipelineDeps:
    global _deps
    if _deps is None:
        _deps = PipelineDeps()
    return _deps


async def _run(action: Action, **params: Any) -> dict:
    with session_scope() as session:
        envelope = await run_action(
            session, action.value, {k: v for k, v in params.items() if v is not None}, _pipeline_deps(),
        )
        return envelope.model_dump()


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("rendezvous://overview")
def rendezvous_overview() -> str:
    """Overview of Rendezvous: data model, pipeline stages and match states."""
    return json.dumps({
        "system": "Rendezvous - AI matchmaking pipeline",
        "data_model": {
            "match": "Scored pairing of two participants; carries the pipeline state machine.",
            "insight": "Finding attached to a match (opportunity, synergy, risk, hidden asset, network effect, next step).",
            "conversation": "Six-turn dialogue between the two participants' agents.",
            "outcome": "Post-hoc analysis of a completed conversation.",
            "morning_report": "Per-participant, per-day digest of notification-worthy matches.",
        },
        "match_states": ["analyzed", "scheduled", "active", "completed", "failed", "reported"],
        "actions": [a.value for a in Action],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Pipeline stages
# ---------------------------------------------------------------------------


@mcp.tool()
async def generate_and_analyze_matches(batch_size: int = 50) -> dict:
    """Generate up to batch_size new participant pairs, analyze each, then schedule strong ones."""
    return await _run(Action.GENERATE_AND_ANALYZE_MATCHES, batchSize=batch_size)


@mcp.tool()
async def manual_match(participant_a_id: int, participant_b_id: int) -> dict:
    """Analyze one explicit participant pair."""
    return await _run(Action.MANUAL_MATCH, participantAId=participant_a_id, participantBId=participant_b_id)


@mcp.tool()
async def schedule_matches() -> dict:
    """Schedule every analyzed match scoring at least 0.7 for the next local midnight."""
    return await _run(Action.SCHEDULE_MATCHES)


@mcp.tool()
async def activate_scheduled_matches(user_id: int | None = None) -> dict:
    """Activate scheduled matches that are due, optionally only those involving user_id."""
    return await _run(Action.ACTIVATE_SCHEDULED_MATCHES, userId=user_id)


@mcp.tool()
async def execute_conversation(match_id: int) -> dict:
    """Run the six-turn agent conversation for an active match."""
    return await _run(Action.EXECUTE_CONVERSATION, matchId=match_id)


@mcp.tool()
async def retry_failed_conversations() -> dict:
    """Re-run failed conversations that still have attempts left."""
    return await _run(Action.RETRY_FAILED_CONVERSATIONS)


@mcp.tool()
async def analyze_outcome(conversation_id: int) -> dict:
    """Produce (or return the existing) outcome analysis for a completed conversation."""
    return await _run(Action.ANALYZE_OUTCOME, conversationId=conversation_id)


@mcp.tool()
async def generate_morning_reports(
    date: str | None = None, user_id: int | None = None, force_regenerate: bool = False,
) -> dict:
    """Build or extend morning reports for a day (YYYY-MM-DD, default today)."""
    return await _run(Action.GENERATE_MORNING_REPORTS, date=date, userId=user_id, forceRegenerate=force_regenerate)


@mcp.tool()
async def send_morning_report_emails(
    date: str | None = None, user_ids: list[int] | None = None, force_resend: bool = False,
    dry_run: bool = True, email_override: str | None = None, report_id: int | None = None,
) -> dict:
    """Email morning reports. Defaults to a dry run; pass dry_run=False to actually send."""
    return await _run(
        Action.SEND_MORNING_REPORT_EMAILS, date=date, userIds=user_ids, forceResend=force_resend,
        dryRun=dry_run, emailOverride=email_override, reportId=report_id,
    )


# ---------------------------------------------------------------------------
# Tools: Read
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Aggregate counts by status, average scores and LLM usage."""
    with session_scope() as session:
        return services.compute_stats(session)


@mcp.tool()
def list_matches(status: str | None = None, limit: int = 50) -> list[dict]:
    """List matches, newest first, optionally filtered by status."""
    with session_scope() as session:
        query = select(Match).order_by(Match.id.desc()).limit(max(1, min(limit, 500)))
        if status:
            query = query.where(Match.status == MatchStatus(status))
        return [services.match_summary(m) for m in session.execute(query).scalars().all()]


@mcp.tool()
def get_morning_report(report_id: int) -> dict:
    """Full morning report including its notification list."""
    with session_scope() as session:
        report = session.execute(select(MorningReport).where(MorningReport.id == report_id)).scalars().first()
        if not report:
            return {"error": f"Morning report {report_id} not found"}
        return {
            **services.report_summary(report),
            "notifications": json_parse(report.notifications_json, []),
        }


@mcp.tool()
def list_processing_logs(action: str | None = None, status: str | None = None, limit: int = 20) -> list[dict]:
    """Recent pipeline audit entries."""
    with session_scope() as session:
        return services.recent_processing_logs(session, action=action, status=status, limit=limit)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Rendezvous MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
