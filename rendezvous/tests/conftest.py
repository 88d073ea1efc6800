from __future__ import annotations

import json
import re
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from rendezvous.config import ConfigCache, Settings
from rendezvous.db import seed_prompt_templates
from rendezvous.errors import LLMCallError
from rendezvous.llm import Completion, Usage
from rendezvous.models import (
    Base, Match, MatchStatus, Participant, ParticipantStatus, PredictedOutcome, pair_key, utcnow,
)
from rendezvous.prompts import PromptRunner

_TURN_RE = re.compile(r"in turn (\d+) of")


def analysis_payload(score: float = 0.85, **overrides) -> dict:
    payload = {
        "opportunityScore": score,
        "outcome": "STRONG_MATCH",
        "primaryOpportunities": [
            {"title": "Joint pilot", "description": "Run a pilot together", "valueProposition": "Faster GTM",
             "feasibility": 0.75, "timeline": "3 months"},
        ],
        "synergies": [{"type": "Technical", "description": "Shared ML stack", "potential": "high"}],
        "nextSteps": ["Book a call"],
        "riskFactors": [{"risk": "Time zones", "mitigation": "Async updates"}],
        "hiddenAssets": [],
        "networkEffects": [{"connection": "Investor overlap", "value": "Warm intros"}],
        "reasoning": "Complementary skills.",
        "notificationAssessment": {"shouldNotify": True, "notificationScore": 0.82, "reasoning": "Timely fit"},
        "introductionRationale": {"agentAToHumanA": "Meet B", "agentBToHumanB": "Meet A"},
        "agentSummaries": {"forUserA": "B builds infra", "forUserB": "A sells to banks"},
    }
    payload.update(overrides)
    return payload


class FakeLLM:
    """Routes each prompt to a canned answer based on the template it was built from."""

    model = "test-model"

    def __init__(self):
        self.analysis: dict | str = analysis_payload()
        self.summary: dict | str = {
            "actualOutcome": "STRONG_MATCH", "qualityScore": 0.8,
            "summary": "Agreed on a pilot.", "keyMoments": ["Pilot proposed", "Call booked"],
        }
        self.outcome: dict | str = {
            "outcomeAnalysis": "Both sides committed to a pilot.",
            "collaborationReadinessScore": 0.7,
            "specificNextSteps": ["Share deck", "Book call"],
            "followUpRecommended": True,
            "followUpTimeframe": "within 1 week",
        }
        self.fail_on_turn: int | None = None
        self.prompts: list[str] = []
        self.complete = AsyncMock(side_effect=self._complete)

    @staticmethod
    def _text(value: dict | str) -> str:
        return value if isinstance(value, str) else json.dumps(value)

    async def _complete(self, system: str, user: str = "", **kwargs) -> Completion:
        self.prompts.append(system)
        usage = Usage(prompt_tokens=7, completion_tokens=3, total_tokens=10)
        if "network analyst" in system:
            return Completion(self._text(self.analysis), usage, self.model)
        if "reviewing a completed conversation" in system:
            return Completion(self._text(self.summary), usage, self.model)
        if "outcome analysis" in system:
            return Completion(self._text(self.outcome), usage, self.model)
        m = _TURN_RE.search(system)
        turn = int(m.group(1)) if m else 0
        if self.fail_on_turn == turn:
            raise LLMCallError("provider timeout", retryable=True)
        return Completion(f"Message for turn {turn}", usage, self.model)

    def turn_prompts(self) -> list[str]:
        return [p for p in self.prompts if _TURN_RE.search(p)]


# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    seed_prompt_templates(sess)
    sess.commit()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_path=tmp_path / "test.db",
        pair_delay_seconds=0,
        email_send_delay_seconds=0,
        email_backoff_base_seconds=0,
        email_backoff_cap_seconds=0,
        email_backend="console",
    )


@pytest.fixture()
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture()
def runner(session: Session, fake_llm: FakeLLM) -> PromptRunner:
    return PromptRunner(session, fake_llm, ConfigCache(300))


@pytest.fixture()
def make_participant(session: Session):
    def _make(handle: str, *, timezone: str = "", email: str = "", complete: bool = True,
              status: ParticipantStatus = ParticipantStatus.APPROVED) -> Participant:
        p = Participant(
            handle=handle, email=email, timezone=timezone, status=status,
            agent_name=f"{handle}-agent" if complete else "",
            narrative=f"{handle} builds things." if complete else "",
            current_focus_json=json.dumps(["AI"]),
            seeking_json=json.dumps(["cofounder"]),
            offering_json=json.dumps(["sales"]),
        )
        session.add(p)
        session.commit()
        return p
    return _make


@pytest.fixture()
def make_match(session: Session):
    def _make(a: Participant, b: Participant, *, score: float = 0.85,
              status: MatchStatus = MatchStatus.ANALYZED, should_notify: bool = True,
              notification_score: float = 0.8,
              outcome: PredictedOutcome = PredictedOutcome.STRONG_MATCH) -> Match:
        m = Match(
            participant_a_id=a.id, participant_b_id=b.id, pair_key=pair_key(a.id, b.id),
            opportunity_score=score, predicted_outcome=outcome, status=status,
            should_notify=should_notify, notification_score=notification_score,
            notification_reasoning="Worth a chat", rationale_for_a=f"Meet {b.handle}",
            rationale_for_b=f"Meet {a.handle}", match_reasoning=f"Opportunity Score: {score:.2f}.",
            analyzed_at=utcnow(),
        )
        session.add(m)
        session.commit()
        return m
    return _make
