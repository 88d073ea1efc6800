"""Six-turn agent conversations for activated matches.

Odd turns are spoken by participant A's agent, even turns by B's. Each turn
sees the full transcript so far plus guidance derived from the match's
opportunity and synergy insights. After the last turn one more completion
call summarizes the exchange.

A conversation that fails part-way is marked ``failed`` and its match stays
``active``. Calling :func:`execute_conversation` again reuses the same row
(partial turns are discarded and ``attempts`` is bumped);
:func:`retry_failed_conversations` does that in bulk and retires matches
that have used up their attempts. A conversation still ``active`` long after
it started belonged to a worker that died; the bulk retry marks it failed
first so it re-enters the same path.
"""
from __future__ import annotations

import hashlib
import json
import logging
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rendezvous import audit, states
from rendezvous.config import Settings
from rendezvous.errors import (
    ConversationStateError, MalformedResponseError, NotFoundError,
)
from rendezvous.llm import Usage, parse_json_object
from rendezvous.models import (
    Conversation, ConversationStatus, InsightType, Match, MatchStatus, Participant, SpeakerRole,
    Turn, utcnow,
)
from rendezvous.prompts import PromptRunner
from rendezvous.services import conversation_summary
from rendezvous.utils import join_or, json_parse

log = logging.getLogger(__name__)

TURN_COUNT = 6
NO_HISTORY = "no history yet"
ALIGNMENT_RANGE = (0.6, 0.9)
GUIDANCE_LIMIT = 3


class ConversationSummary(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    actual_outcome: str = ""
    quality_score: float = 0.0
    summary: str = ""
    key_moments: list[str] = []


def parse_summary(text: str) -> ConversationSummary:
    raw = parse_json_object(text)
    try:
        parsed = ConversationSummary.model_validate(raw)
    except ValidationError as exc:
        raise MalformedResponseError(f"Conversation summary is malformed: {exc.error_count()} error(s)", raw=text) from exc
    parsed.quality_score = max(0.0, min(1.0, parsed.quality_score))
    return parsed


# ---------------------------------------------------------------------------
# Turn helpers
# ---------------------------------------------------------------------------


def speaker_for(turn_number: int) -> SpeakerRole:
    return SpeakerRole.AGENT_A if turn_number % 2 == 1 else SpeakerRole.AGENT_B


def alignment_score(conversation_id: int, turn_number: int, message: str) -> float:
    """Stable pseudo-score in ``ALIGNMENT_RANGE`` for a given utterance."""
    digest = hashlib.sha256(f"{conversation_id}:{turn_number}:{message}".encode()).digest()
    fraction = int.from_bytes(digest[:8], "big") / 2 ** 64
    low, high = ALIGNMENT_RANGE
    return round(low + (high - low) * fraction, 4)


def render_history(turns: list[Turn]) -> str:
    if not turns:
        return NO_HISTORY
    return "\n".join(f"{t.speaker_role.value}: {t.message}" for t in turns)


def guidance(match: Match) -> tuple[str, list[int]]:
    """Build the guidance paragraph from the match's best opportunities and synergies."""
    links = sorted(match.insight_links, key=lambda link: link.relevance_score, reverse=True)
    opportunities = [link.insight for link in links if link.insight.insight_type == InsightType.OPPORTUNITY][:GUIDANCE_LIMIT]
    synergies = [link.insight for link in links if link.insight.insight_type == InsightType.SYNERGY][:GUIDANCE_LIMIT]
    if not opportunities and not synergies:
        return "No specific guidance. Explore where your goals overlap.", []

    parts: list[str] = []
    if opportunities:
        parts.append("Opportunities to explore:")
        parts.extend(f"- {i.title}: {i.description}" for i in opportunities)
    if synergies:
        parts.append("Synergies to build on:")
        parts.extend(f"- {i.title}: {i.description}" for i in synergies)
    return "\n".join(parts), [i.id for i in opportunities + synergies]


def turn_variables(
    speaker: Participant, other: Participant, turn_number: int, context: str, history: str,
) -> dict[str, str]:
    return {
        "agentName": speaker.agent_name,
        "userHandle": speaker.handle,
        "turnNumber": str(turn_number),
        "otherUserHandle": other.handle,
        "narrative": speaker.narrative,
        "currentFocus": join_or(json_parse(speaker.current_focus_json, [])),
        "seekingConnections": join_or(json_parse(speaker.seeking_json, [])),
        "offeringExpertise": join_or(json_parse(speaker.offering_json, [])),
        "contextPrompt": context,
        "conversationHistory": history,
    }


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def start_conversation(session: Session, match: Match, max_attempts: int | None = None) -> Conversation:
    """Create the conversation row, or reset a failed one for another attempt.

    With *max_attempts*, a failed conversation that has used them all retires
    its match to ``failed`` instead of running again.
    """
    if MatchStatus(match.status) != MatchStatus.ACTIVE:
        raise ConversationStateError(f"Match {match.id} is {match.status.value}, not active")

    conv = match.conversation
    if conv is None:
        conv = Conversation(match=match, status=ConversationStatus.ACTIVE, attempts=1)
        session.add(conv)
    elif conv.status == ConversationStatus.FAILED:
        if max_attempts is not None and conv.attempts >= max_attempts:
            states.transition(match, MatchStatus.FAILED)
            session.commit()
            log.warning("Match %s failed permanently after %d attempts", match.id, conv.attempts)
            raise ConversationStateError(
                f"Conversation for match {match.id} used all {max_attempts} attempts; match marked failed"
            )
        conv.turns.clear()
        session.flush()
        states.transition_conversation(conv, ConversationStatus.ACTIVE)
        conv.attempts += 1
        conv.error_message = ""
        conv.total_tokens = 0
        conv.started_at = utcnow()
        conv.completed_at = None
    elif conv.status == ConversationStatus.COMPLETED:
        raise ConversationStateError(f"Conversation for match {match.id} already completed")
    else:
        raise ConversationStateError(f"Conversation for match {match.id} is already running")
    session.commit()
    return conv


async def _run_turns(session: Session, runner: PromptRunner, match: Match, conv: Conversation) -> Usage:
    usage = Usage()
    context, guided_by = guidance(match)
    sides = {
        SpeakerRole.AGENT_A: (match.participant_a, match.participant_b),
        SpeakerRole.AGENT_B: (match.participant_b, match.participant_a),
    }
    for number in range(1, TURN_COUNT + 1):
        role = speaker_for(number)
        speaker, other = sides[role]
        completion = await runner.run(
            "agent_turn", turn_variables(speaker, other, number, context, render_history(conv.turns)),
        )
        message = completion.text.strip()
        conv.turns.append(Turn(
            turn_number=number,
            speaker_id=speaker.id,
            speaker_role=role,
            message=message,
            alignment_score=alignment_score(conv.id, number, message),
            guided_by_json=json.dumps(guided_by),
            prompt_tokens=completion.usage.prompt_tokens,
            completion_tokens=completion.usage.completion_tokens,
        ))
        session.commit()
        usage = usage + completion.usage
        log.debug("Match %s turn %d by %s", match.id, number, speaker.handle)
    return usage


async def _summarize(runner: PromptRunner, match: Match, conv: Conversation) -> tuple[ConversationSummary, Usage]:
    completion = await runner.run("conversation_summary", {
        "userAHandle": match.participant_a.handle,
        "userBHandle": match.participant_b.handle,
        "conversationContent": render_history(conv.turns),
    })
    return parse_summary(completion.text), completion.usage


def _mark_failed(session: Session, conv: Conversation, error: str) -> None:
    try:
        states.transition_conversation(conv, ConversationStatus.FAILED)
        conv.error_message = error[:2000]
        conv.completed_at = utcnow()
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.error("Could not mark conversation %s failed: %s", conv.id, exc)


async def execute_conversation(
    session: Session, runner: PromptRunner, match_id: int, max_attempts: int | None = None,
) -> Conversation:
    """Run the full dialogue for an active match. Failures propagate after being recorded."""
    match = session.get(Match, match_id)
    if match is None:
        raise NotFoundError("Match", match_id)
    conv = start_conversation(session, match, max_attempts)
    log.info("Starting conversation %s for match %s (attempt %d)", conv.id, match.id, conv.attempts)

    try:
        usage = await _run_turns(session, runner, match, conv)
        summary, summary_usage = await _summarize(runner, match, conv)
    except Exception as exc:
        session.rollback()
        _mark_failed(session, conv, str(exc))
        log.warning("Conversation %s for match %s failed: %s", conv.id, match.id, exc)
        raise

    conv.actual_outcome = summary.actual_outcome
    conv.quality_score = summary.quality_score
    conv.summary = summary.summary
    conv.key_moments_json = json.dumps(summary.key_moments)
    conv.total_tokens = (usage + summary_usage).total_tokens
    conv.completed_at = utcnow()
    states.transition_conversation(conv, ConversationStatus.COMPLETED)
    states.transition(match, MatchStatus.COMPLETED)
    session.commit()
    log.info("Conversation %s completed, quality=%.2f", conv.id, conv.quality_score)
    return conv


def recover_stale_conversations(session: Session, stale_after_seconds: float) -> int:
    """Mark conversations stuck in ``active`` past the staleness window as failed.

    A worker that dies mid-dialogue leaves its row ``active`` forever; once
    failed, the row goes through the normal retry path.
    """
    cutoff = utcnow() - timedelta(seconds=stale_after_seconds)
    stale = session.execute(
        select(Conversation)
        .join(Match, Conversation.match_id == Match.id)
        .where(
            Conversation.status == ConversationStatus.ACTIVE,
            Conversation.started_at < cutoff,
            Match.status == MatchStatus.ACTIVE,
        )
        .order_by(Conversation.id)
    ).scalars().all()
    for conv in stale:
        log.warning("Conversation %s for match %s has been active since %s, marking failed",
                    conv.id, conv.match_id, conv.started_at)
        _mark_failed(session, conv, f"Abandoned: no completion since {conv.started_at.isoformat()}")
    return len(stale)


async def retry_failed_conversations(
    session: Session, runner: PromptRunner, settings: Settings,
) -> dict[str, Any]:
    """Re-run failed conversations under the attempt cap; retire the rest."""
    recovered = recover_stale_conversations(session, settings.stale_conversation_seconds)
    failed = session.execute(
        select(Conversation)
        .join(Match, Conversation.match_id == Match.id)
        .where(Conversation.status == ConversationStatus.FAILED, Match.status == MatchStatus.ACTIVE)
        .order_by(Conversation.id)
    ).scalars().all()

    succeeded: list[Conversation] = []
    retired = errors = 0
    for conv in failed:
        match = conv.match
        if conv.attempts >= settings.max_conversation_attempts:
            states.transition(match, MatchStatus.FAILED)
            session.commit()
            retired += 1
            log.warning("Match %s failed permanently after %d attempts", match.id, conv.attempts)
            continue
        try:
            succeeded.append(
                await execute_conversation(session, runner, match.id, settings.max_conversation_attempts)
            )
        except Exception as exc:
            errors += 1
            audit.record_failure(
                session, "retryConversation", str(exc), target_type="match", target_id=match.id,
            )

    return {
        "summary": {
            "recovered": recovered,
            "candidates": len(failed),
            "retried": len(succeeded) + errors,
            "succeeded": len(succeeded),
            "failed": errors,
            "retired": retired,
        },
        "conversations": succeeded,
        "preview": [conversation_summary(c) for c in succeeded[:10]],
    }
