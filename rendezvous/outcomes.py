"""Post-hoc analysis of completed conversations."""
from __future__ import annotations

import json
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rendezvous.conversation import render_history
from rendezvous.errors import ConversationStateError, MalformedResponseError, NotFoundError
from rendezvous.llm import parse_json_object
from rendezvous.models import Conversation, ConversationStatus, Outcome
from rendezvous.prompts import PromptRunner

log = logging.getLogger(__name__)


class OutcomeAnalysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    outcome_analysis: str = Field("", alias="outcomeAnalysis")
    readiness_score: float = Field(alias="collaborationReadinessScore")
    next_steps: list[str] = Field(default_factory=list, alias="specificNextSteps")
    follow_up_recommended: bool = Field(False, alias="followUpRecommended")
    follow_up_timeframe: str = Field("", alias="followUpTimeframe")


def parse_outcome(text: str) -> OutcomeAnalysis:
    raw = parse_json_object(text)
    try:
        parsed = OutcomeAnalysis.model_validate(raw)
    except ValidationError as exc:
        raise MalformedResponseError(f"Outcome analysis is malformed: {exc.error_count()} error(s)", raw=text) from exc
    parsed.readiness_score = max(0.0, min(1.0, parsed.readiness_score))
    return parsed


def existing_outcome(session: Session, conversation_id: int) -> Outcome | None:
    return session.execute(
        select(Outcome).where(Outcome.conversation_id == conversation_id)
    ).scalars().first()


async def analyze_outcome(session: Session, runner: PromptRunner, conversation_id: int) -> Outcome:
    """Analyze a completed conversation once; later calls return the stored outcome.

    Malformed completions raise instead of being skipped, since this is an
    on-demand operation whose caller needs to know.
    """
    conv = session.get(Conversation, conversation_id)
    if conv is None:
        raise NotFoundError("Conversation", conversation_id)
    if conv.status != ConversationStatus.COMPLETED:
        raise ConversationStateError(f"Conversation {conversation_id} is {conv.status.value}, not completed")

    found = existing_outcome(session, conversation_id)
    if found is not None:
        log.info("Outcome for conversation %s already exists (id=%s)", conversation_id, found.id)
        return found

    match = conv.match
    completion = await runner.run("outcome_analysis", {
        "predictedOutcome": match.predicted_outcome.value,
        "actualOutcome": conv.actual_outcome or "unknown",
        "qualityScore": f"{conv.quality_score or 0.0:.2f}",
        "transcript": render_history(conv.turns),
    })
    analysis = parse_outcome(completion.text)

    outcome = Outcome(
        conversation_id=conv.id,
        match_id=match.id,
        outcome_analysis=analysis.outcome_analysis,
        readiness_score=analysis.readiness_score,
        next_steps_json=json.dumps(analysis.next_steps),
        follow_up_recommended=analysis.follow_up_recommended,
        follow_up_timeframe=analysis.follow_up_timeframe,
    )
    session.add(outcome)
    try:
        session.commit()
    except IntegrityError:
        # A concurrent invocation stored one first.
        session.rollback()
        found = existing_outcome(session, conversation_id)
        if found is None:
            raise
        return found
    log.info("Stored outcome %s for conversation %s (readiness=%.2f)", outcome.id, conv.id, outcome.readiness_score)
    return outcome
