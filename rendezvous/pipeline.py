"""Closed set of pipeline actions and their handlers.

Every surface (HTTP, MCP) goes through :func:`run_action`, which validates
parameters against the action's schema, wraps the handler in an audit
record and always answers with an :class:`ActionEnvelope`. Batch actions
report partial failure inside ``summary``; only invalid requests, missing
entities and failing single-entity operations yield ``success=False``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from rendezvous import audit, conversation, dispatcher, matcher, outcomes, reports, scheduler
from rendezvous.config import ConfigCache, Settings, get_settings
from rendezvous.errors import InvalidRequestError, NotFoundError, UnknownActionError
from rendezvous.llm import LLMClient
from rendezvous.mailer import EmailTransport, get_transport
from rendezvous.prompts import PromptRunner
from rendezvous.schemas import (
    ActionEnvelope, ActivateParams, AnalyzeOutcomeParams, ExecuteConversationParams,
    GenerateMatchesParams, GenerateReportsParams, ManualMatchParams, NoParams, SendEmailsParams,
)
from rendezvous.services import (
    compute_stats, conversation_summary, match_summary, outcome_summary,
)

log = logging.getLogger(__name__)


class Action(str, Enum):
    GENERATE_AND_ANALYZE_MATCHES = "generateAndAnalyzeMatches"
    SCHEDULE_MATCHES = "scheduleMatches"
    MANUAL_MATCH = "manualMatch"
    ACTIVATE_SCHEDULED_MATCHES = "activateScheduledMatches"
    EXECUTE_CONVERSATION = "executeConversation"
    RETRY_FAILED_CONVERSATIONS = "retryFailedConversations"
    ANALYZE_OUTCOME = "analyzeOutcome"
    GENERATE_MORNING_REPORTS = "generateMorningReports"
    SEND_MORNING_REPORT_EMAILS = "sendMorningReportEmails"
    GET_ANALYTICS = "getAnalytics"


def parse_action(name: str) -> Action:
    try:
        return Action(name)
    except ValueError:
        raise UnknownActionError(name) from None


@dataclass
class PipelineDeps:
    """Collaborators shared by the handlers. The LLM client and transport are built on first use."""

    settings: Settings = field(default_factory=get_settings)
    llm: LLMClient | None = None
    transport: EmailTransport | None = None
    config_cache: ConfigCache | None = None

    def __post_init__(self) -> None:
        if self.config_cache is None:
            self.config_cache = ConfigCache(self.settings.config_cache_ttl_seconds)

    def runner(self, session: Session) -> PromptRunner:
        if self.llm is None:
            self.llm = LLMClient(self.settings.llm_provider, self.settings.llm_model or None)
        return PromptRunner(session, self.llm, self.config_cache)

    def email_transport(self) -> EmailTransport:
        if self.transport is None:
            self.transport = get_transport(self.settings)
        return self.transport


Result = tuple[dict[str, Any], list[dict[str, Any]]]


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _generate_and_analyze(session: Session, p: GenerateMatchesParams, deps: PipelineDeps) -> Result:
    result = await matcher.run_match_analysis(session, deps.runner(session), deps.settings, p.batch_size)
    scheduled = scheduler.schedule_matches(session, deps.settings)
    summary = {**result["summary"], "matchesScheduled": scheduled["summary"]["scheduled"]}
    return summary, result["preview"]


async def _schedule(session: Session, p: NoParams, deps: PipelineDeps) -> Result:
    result = scheduler.schedule_matches(session, deps.settings)
    return result["summary"], [match_summary(m) for m in result["matches"][:matcher.PREVIEW_SIZE]]


async def _manual_match(session: Session, p: ManualMatchParams, deps: PipelineDeps) -> Result:
    match = await matcher.run_manual_match(session, deps.runner(session), p.participant_a_id, p.participant_b_id)
    return {"matchId": match.id, "opportunityScore": match.opportunity_score}, [match_summary(match)]


async def _activate(session: Session, p: ActivateParams, deps: PipelineDeps) -> Result:
    result = scheduler.activate_scheduled_matches(session, user_id=p.user_id)
    return result["summary"], result["preview"]


async def _execute_conversation(session: Session, p: ExecuteConversationParams, deps: PipelineDeps) -> Result:
    conv = await conversation.execute_conversation(
        session, deps.runner(session), p.match_id, deps.settings.max_conversation_attempts,
    )
    summary = {
        "conversationId": conv.id,
        "matchId": conv.match_id,
        "status": conv.status.value,
        "turns": len(conv.turns),
        "attempts": conv.attempts,
        "qualityScore": conv.quality_score,
        "totalTokens": conv.total_tokens,
    }
    return summary, [conversation_summary(conv)]


async def _retry_conversations(session: Session, p: NoParams, deps: PipelineDeps) -> Result:
    result = await conversation.retry_failed_conversations(session, deps.runner(session), deps.settings)
    return result["summary"], result["preview"]


async def _analyze_outcome(session: Session, p: AnalyzeOutcomeParams, deps: PipelineDeps) -> Result:
    outcome = await outcomes.analyze_outcome(session, deps.runner(session), p.conversation_id)
    summary = {
        "outcomeId": outcome.id,
        "conversationId": outcome.conversation_id,
        "readinessScore": outcome.readiness_score,
        "followUpRecommended": outcome.follow_up_recommended,
    }
    return summary, [outcome_summary(outcome)]


async def _generate_reports(session: Session, p: GenerateReportsParams, deps: PipelineDeps) -> Result:
    result = reports.generate_morning_reports(
        session, report_date=p.report_date, user_id=p.user_id, force_regenerate=p.force_regenerate,
    )
    return result["summary"], result["preview"]


async def _send_emails(session: Session, p: SendEmailsParams, deps: PipelineDeps) -> Result:
    result = await dispatcher.send_morning_report_emails(
        session, deps.email_transport(), deps.settings,
        report_date=p.report_date, user_ids=p.user_ids, force_resend=p.force_resend,
        dry_run=p.dry_run, email_override=p.email_override, report_id=p.report_id,
    )
    return result["summary"], result["preview"]


async def _analytics(session: Session, p: NoParams, deps: PipelineDeps) -> Result:
    return compute_stats(session), []


Handler = Callable[[Session, Any, PipelineDeps], Awaitable[Result]]

HANDLERS: dict[Action, tuple[type[BaseModel], Handler]] = {
    Action.GENERATE_AND_ANALYZE_MATCHES: (GenerateMatchesParams, _generate_and_analyze),
    Action.SCHEDULE_MATCHES: (NoParams, _schedule),
    Action.MANUAL_MATCH: (ManualMatchParams, _manual_match),
    Action.ACTIVATE_SCHEDULED_MATCHES: (ActivateParams, _activate),
    Action.EXECUTE_CONVERSATION: (ExecuteConversationParams, _execute_conversation),
    Action.RETRY_FAILED_CONVERSATIONS: (NoParams, _retry_conversations),
    Action.ANALYZE_OUTCOME: (AnalyzeOutcomeParams, _analyze_outcome),
    Action.GENERATE_MORNING_REPORTS: (GenerateReportsParams, _generate_reports),
    Action.SEND_MORNING_REPORT_EMAILS: (SendEmailsParams, _send_emails),
    Action.GET_ANALYTICS: (NoParams, _analytics),
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(x) for x in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg', 'invalid')}" if loc else err.get("msg", "invalid"))
    return "Invalid parameters: " + "; ".join(parts)


def _failure(action: str, message: str, code: str) -> ActionEnvelope:
    return ActionEnvelope(success=False, action=action, error=message, error_code=code)


async def run_action(
    session: Session, action: str, params: dict[str, Any] | None, deps: PipelineDeps,
) -> ActionEnvelope:
    params = params or {}
    try:
        parsed_action = parse_action(action)
        schema, handler = HANDLERS[parsed_action]
        try:
            parsed = schema.model_validate(params)
        except ValidationError as exc:
            raise InvalidRequestError(_validation_message(exc)) from exc
    except InvalidRequestError as exc:
        log.warning("Rejected %s: %s", action, exc)
        audit.record_failure(session, action or "unknown", str(exc), metadata=params)
        return _failure(action, str(exc), "invalid_request")

    try:
        with audit.track(session, parsed_action.value, params):
            summary, data = await handler(session, parsed, deps)
    except InvalidRequestError as exc:
        return _failure(action, str(exc), "invalid_request")
    except NotFoundError as exc:
        return _failure(action, str(exc), "not_found")
    except Exception as exc:
        log.exception("Action %s failed", action)
        return _failure(action, str(exc), "failed")
    return ActionEnvelope(success=True, action=parsed_action.value, summary=summary, data=data)
