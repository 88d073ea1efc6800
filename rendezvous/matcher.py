"""Pair generation and opportunity analysis.

Pairs are enumerated in ascending ``(a.id, b.id)`` order and checked one at a
time against the store, so a participant set can be processed incrementally
across runs: every run picks up the first *batch_size* pairs that have no
match yet. Each pair costs one completion call; its insights are stored with
fixed relevance priors per insight type (opportunities use their own
feasibility).
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rendezvous import audit
from rendezvous.config import Settings
from rendezvous.errors import (
    DuplicateMatchError, InvalidRequestError, MalformedResponseError, NotFoundError,
)
from rendezvous.llm import parse_json_object
from rendezvous.models import (
    Insight, InsightType, Match, MatchInsight, MatchStatus, Participant, ParticipantStatus,
    PredictedOutcome, pair_key, utcnow,
)
from rendezvous.prompts import PromptRunner
from rendezvous.services import match_summary
from rendezvous.utils import join_or, json_parse

log = logging.getLogger(__name__)

INSIGHT_PRIORS: dict[InsightType, float] = {
    InsightType.SYNERGY: 0.8,
    InsightType.RISK: 0.3,
    InsightType.HIDDEN_ASSET: 0.7,
    InsightType.NETWORK_EFFECT: 0.6,
    InsightType.NEXT_STEP: 0.9,
}

PREVIEW_SIZE = 10


# ---------------------------------------------------------------------------
# Structured analysis
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Opportunity(_CamelModel):
    title: str = ""
    description: str = ""
    value_proposition: str = ""
    feasibility: float = 0.5
    timeline: str = ""


class Synergy(_CamelModel):
    type: str = ""
    description: str = ""
    potential: str = ""


class RiskFactor(_CamelModel):
    risk: str = ""
    mitigation: str = ""


class HiddenAsset(_CamelModel):
    asset: str = ""
    application: str = ""


class NetworkEffect(_CamelModel):
    connection: str = ""
    value: str = ""


class NotificationAssessment(_CamelModel):
    should_notify: bool = False
    notification_score: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""


class IntroductionRationale(_CamelModel):
    agent_a_to_human_a: str = ""
    agent_b_to_human_b: str = ""


class AgentSummaries(_CamelModel):
    for_user_a: str = ""
    for_user_b: str = ""


class OpportunityAnalysis(_CamelModel):
    opportunity_score: float = Field(ge=0.0, le=1.0)
    outcome: PredictedOutcome
    primary_opportunities: list[Opportunity]
    synergies: list[Synergy] = []
    next_steps: list[str] = []
    risk_factors: list[RiskFactor] = []
    hidden_assets: list[HiddenAsset] = []
    network_effects: list[NetworkEffect] = []
    reasoning: str = ""
    notification_assessment: NotificationAssessment = NotificationAssessment()
    introduction_rationale: IntroductionRationale = IntroductionRationale()
    agent_summaries: AgentSummaries = AgentSummaries()


def parse_analysis(text: str) -> OpportunityAnalysis:
    raw = parse_json_object(text)
    try:
        return OpportunityAnalysis.model_validate(raw)
    except ValidationError as exc:
        raise MalformedResponseError(f"Analysis missing required fields: {exc.error_count()} error(s)", raw=text) from exc


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def derive_insights(analysis: OpportunityAnalysis) -> list[tuple[Insight, float]]:
    """Build insight rows paired with their per-match relevance score."""
    rows: list[tuple[Insight, float]] = []

    def add(kind: InsightType, title: str, description: str, score: float, meta: dict | None = None) -> None:
        rows.append((
            Insight(
                insight_type=kind, title=title[:300], description=description,
                score=score, metadata_json=json.dumps(meta or {}),
            ),
            score,
        ))

    for opp in analysis.primary_opportunities:
        add(InsightType.OPPORTUNITY, opp.title, opp.description, _clamp(opp.feasibility),
            {"valueProposition": opp.value_proposition, "timeline": opp.timeline})
    for syn in analysis.synergies:
        add(InsightType.SYNERGY, syn.type, syn.description, INSIGHT_PRIORS[InsightType.SYNERGY],
            {"potential": syn.potential})
    for risk in analysis.risk_factors:
        add(InsightType.RISK, risk.risk, risk.mitigation, INSIGHT_PRIORS[InsightType.RISK])
    for asset in analysis.hidden_assets:
        add(InsightType.HIDDEN_ASSET, asset.asset, asset.application, INSIGHT_PRIORS[InsightType.HIDDEN_ASSET])
    for effect in analysis.network_effects:
        add(InsightType.NETWORK_EFFECT, effect.connection, effect.value,
            INSIGHT_PRIORS[InsightType.NETWORK_EFFECT])
    for step in analysis.next_steps:
        add(InsightType.NEXT_STEP, "Next Step", step, INSIGHT_PRIORS[InsightType.NEXT_STEP])
    return rows


# ---------------------------------------------------------------------------
# Pair generation
# ---------------------------------------------------------------------------


def eligible_participants(session: Session) -> list[Participant]:
    """Approved participants with a complete profile, ascending by id."""
    rows = session.execute(
        select(Participant)
        .where(Participant.status == ParticipantStatus.APPROVED)
        .order_by(Participant.id)
    ).scalars().all()
    return [p for p in rows if p.has_complete_profile]


def match_exists(session: Session, a_id: int, b_id: int) -> bool:
    return bool(session.execute(
        select(exists().where(Match.pair_key == pair_key(a_id, b_id)))
    ).scalar())


def generate_pairs(
    session: Session, participants: list[Participant], limit: int,
) -> list[tuple[Participant, Participant]]:
    """Return up to *limit* unordered pairs that have no match yet."""
    pairs: list[tuple[Participant, Participant]] = []
    if len(participants) < 2 or limit <= 0:
        return pairs
    ordered = sorted(participants, key=lambda p: p.id)
    for i, a in enumerate(ordered):
        for b in ordered[i + 1:]:
            if len(pairs) >= limit:
                return pairs
            try:
                if match_exists(session, a.id, b.id):
                    continue
            except SQLAlchemyError as exc:
                session.rollback()
                log.warning("Existence check failed for %s x %s, skipping: %s", a.handle, b.handle, exc)
                continue
            pairs.append((a, b))
    return pairs


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


def profile_variables(p: Participant, suffix: str) -> dict[str, str]:
    return {
        f"handle{suffix}": p.handle,
        f"narrative{suffix}": p.narrative,
        f"currentFocus{suffix}": join_or(json_parse(p.current_focus_json, [])),
        f"seeking{suffix}": join_or(json_parse(p.seeking_json, [])),
        f"offering{suffix}": join_or(json_parse(p.offering_json, [])),
    }


async def analyze_pair(runner: PromptRunner, a: Participant, b: Participant) -> OpportunityAnalysis:
    completion = await runner.run(
        "opportunity_analysis", {**profile_variables(a, "A"), **profile_variables(b, "B")},
    )
    return parse_analysis(completion.text)


def store_match(session: Session, a: Participant, b: Participant, analysis: OpportunityAnalysis) -> Match:
    """Insert the match and its insights (caller must commit)."""
    assessment = analysis.notification_assessment
    match = Match(
        participant_a_id=a.id,
        participant_b_id=b.id,
        pair_key=pair_key(a.id, b.id),
        opportunity_score=analysis.opportunity_score,
        predicted_outcome=analysis.outcome,
        status=MatchStatus.ANALYZED,
        analysis_summary=analysis.reasoning,
        match_reasoning=f"Opportunity Score: {analysis.opportunity_score:.2f}. {analysis.reasoning}".strip(),
        should_notify=assessment.should_notify,
        notification_score=assessment.notification_score,
        notification_reasoning=assessment.reasoning,
        rationale_for_a=analysis.introduction_rationale.agent_a_to_human_a,
        rationale_for_b=analysis.introduction_rationale.agent_b_to_human_b,
        agent_summary_for_a=analysis.agent_summaries.for_user_a,
        agent_summary_for_b=analysis.agent_summaries.for_user_b,
        analyzed_at=utcnow(),
    )
    session.add(match)
    session.flush()
    for insight, relevance in derive_insights(analysis):
        session.add(insight)
        session.flush()
        session.add(MatchInsight(match_id=match.id, insight_id=insight.id, relevance_score=relevance))
    return match


async def analyze_and_store(
    session: Session, runner: PromptRunner, a: Participant, b: Participant,
) -> Match:
    analysis = await analyze_pair(runner, a, b)
    match = store_match(session, a, b, analysis)
    session.commit()
    log.info("Stored match %s (%s x %s) score=%.2f", match.id, a.handle, b.handle, match.opportunity_score)
    return match


async def run_match_analysis(
    session: Session, runner: PromptRunner, settings: Settings, batch_size: int = 50,
) -> dict[str, Any]:
    """Generate up to *batch_size* new pairs and analyze them one by one."""
    participants = eligible_participants(session)
    if len(participants) < 2:
        return {
            "summary": {
                "message": "Insufficient participants for matching",
                "totalParticipants": len(participants),
                "pairsGenerated": 0, "matchesAnalyzed": 0, "failed": 0,
            },
            "matches": [],
            "preview": [],
        }

    pairs = generate_pairs(session, participants, batch_size)
    log.info("Generated %d unique pairs from %d participants", len(pairs), len(participants))

    matches: list[Match] = []
    failed = 0
    for idx, (a, b) in enumerate(pairs):
        try:
            matches.append(await analyze_and_store(session, runner, a, b))
        except IntegrityError as exc:
            session.rollback()
            failed += 1
            log.warning("Match for %s x %s already exists, skipping", a.handle, b.handle)
            audit.record_failure(
                session, "analyzeMatch", f"Duplicate pair: {exc.orig}", target_type="pair",
                target_id=pair_key(a.id, b.id), metadata={"duplicate": True},
            )
        except Exception as exc:
            session.rollback()
            failed += 1
            raw = exc.raw[:500] if isinstance(exc, MalformedResponseError) else ""
            log.warning("Analysis failed for %s x %s: %s", a.handle, b.handle, exc)
            audit.record_failure(
                session, "analyzeMatch", str(exc), target_type="pair",
                target_id=pair_key(a.id, b.id), metadata={"raw": raw} if raw else None,
            )
        if idx < len(pairs) - 1:
            await asyncio.sleep(settings.pair_delay_seconds)

    scores = [m.opportunity_score for m in matches]
    return {
        "summary": {
            "totalParticipants": len(participants),
            "pairsGenerated": len(pairs),
            "matchesAnalyzed": len(matches),
            "failed": failed,
            "averageOpportunityScore": sum(scores) / len(scores) if scores else 0,
        },
        "matches": matches,
        "preview": [match_summary(m) for m in matches[:PREVIEW_SIZE]],
    }


async def run_manual_match(session: Session, runner: PromptRunner, a_id: int, b_id: int) -> Match:
    """Analyze one explicit pair on demand; errors propagate to the caller."""
    if a_id == b_id:
        raise InvalidRequestError("Cannot match a participant with themselves")
    a = session.get(Participant, a_id)
    if a is None:
        raise NotFoundError("Participant", a_id)
    b = session.get(Participant, b_id)
    if b is None:
        raise NotFoundError("Participant", b_id)
    for p in (a, b):
        if not p.has_complete_profile:
            raise InvalidRequestError(f"Participant {p.id} has an incomplete profile")
    if match_exists(session, a_id, b_id):
        raise DuplicateMatchError(f"Match already exists for pair {pair_key(a_id, b_id)}")
    return await analyze_and_store(session, runner, a, b)
