"""Tests for outcome analysis of completed conversations."""
from __future__ import annotations

import json

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from rendezvous.conversation import execute_conversation
from rendezvous.errors import ConversationStateError, MalformedResponseError, NotFoundError
from rendezvous.models import Conversation, ConversationStatus, MatchStatus, Outcome
from rendezvous.outcomes import analyze_outcome, parse_outcome


@pytest_asyncio.fixture()
async def completed_conversation(session, runner, make_participant, make_match):
    match = make_match(make_participant("alice"), make_participant("bob"), status=MatchStatus.ACTIVE)
    return await execute_conversation(session, runner, match.id)


class TestParseOutcome:
    def test_readiness_required(self):
        with pytest.raises(MalformedResponseError):
            parse_outcome('{"outcomeAnalysis": "fine"}')

    def test_readiness_clamped(self):
        assert parse_outcome('{"collaborationReadinessScore": -0.4}').readiness_score == 0.0


class TestAnalyzeOutcome:
    @pytest.mark.asyncio
    async def test_stores_outcome(self, session, runner, fake_llm, completed_conversation):
        outcome = await analyze_outcome(session, runner, completed_conversation.id)

        assert outcome.readiness_score == 0.7
        assert outcome.follow_up_recommended is True
        assert outcome.follow_up_timeframe == "within 1 week"
        assert json.loads(outcome.next_steps_json) == ["Share deck", "Book call"]
        assert outcome.match_id == completed_conversation.match_id
        prompt = fake_llm.prompts[-1]
        assert "Predicted outcome: STRONG_MATCH" in prompt
        assert "agent_a: Message for turn 1" in prompt

    @pytest.mark.asyncio
    async def test_second_call_returns_existing_without_llm(self, session, runner, fake_llm,
                                                            completed_conversation):
        first = await analyze_outcome(session, runner, completed_conversation.id)
        calls = fake_llm.complete.await_count

        second = await analyze_outcome(session, runner, completed_conversation.id)

        assert second.id == first.id
        assert fake_llm.complete.await_count == calls
        assert session.execute(select(func.count()).select_from(Outcome)).scalar() == 1

    @pytest.mark.asyncio
    async def test_malformed_response_stores_nothing(self, session, runner, fake_llm, completed_conversation):
        fake_llm.outcome = "no json here"
        with pytest.raises(MalformedResponseError):
            await analyze_outcome(session, runner, completed_conversation.id)
        assert session.execute(select(func.count()).select_from(Outcome)).scalar() == 0

    @pytest.mark.asyncio
    async def test_requires_completed_conversation(self, session, runner, make_participant, make_match):
        match = make_match(make_participant("a"), make_participant("b"), status=MatchStatus.ACTIVE)
        conv = Conversation(match=match, status=ConversationStatus.FAILED)
        session.add(conv)
        session.commit()
        with pytest.raises(ConversationStateError):
            await analyze_outcome(session, runner, conv.id)

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, session, runner):
        with pytest.raises(NotFoundError):
            await analyze_outcome(session, runner, 12345)
