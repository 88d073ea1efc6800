"""Tests for pair generation and opportunity analysis."""
from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from rendezvous.errors import DuplicateMatchError, InvalidRequestError, NotFoundError
from rendezvous.matcher import INSIGHT_PRIORS, generate_pairs, run_manual_match, run_match_analysis
from rendezvous.models import (
    Insight, InsightType, LogStatus, Match, MatchInsight, MatchStatus, PredictedOutcome, ProcessingLog,
)


def _count(session, model) -> int:
    return session.execute(select(func.count()).select_from(model)).scalar()


class TestGeneratePairs:
    def test_ascending_unique_pairs(self, session, make_participant):
        a, b, c = make_participant("a"), make_participant("b"), make_participant("c")
        pairs = generate_pairs(session, [c, a, b], limit=10)
        assert [(x.handle, y.handle) for x, y in pairs] == [("a", "b"), ("a", "c"), ("b", "c")]

    def test_skips_existing_and_respects_limit(self, session, make_participant, make_match):
        a, b, c = make_participant("a"), make_participant("b"), make_participant("c")
        make_match(b, a)
        pairs = generate_pairs(session, [a, b, c], limit=1)
        assert [(x.handle, y.handle) for x, y in pairs] == [("a", "c")]

    def test_fewer_than_two(self, session, make_participant):
        assert generate_pairs(session, [make_participant("solo")], limit=5) == []


class TestRunMatchAnalysis:
    @pytest.mark.asyncio
    async def test_stores_match_and_insights(self, session, runner, settings, make_participant):
        make_participant("alice")
        make_participant("bob")

        result = await run_match_analysis(session, runner, settings, batch_size=10)

        assert result["summary"]["pairsGenerated"] == 1
        assert result["summary"]["matchesAnalyzed"] == 1
        assert result["summary"]["failed"] == 0
        match = session.execute(select(Match)).scalars().one()
        assert match.opportunity_score == 0.85
        assert match.status == MatchStatus.ANALYZED
        assert match.predicted_outcome == PredictedOutcome.STRONG_MATCH
        assert match.should_notify is True
        assert match.notification_score == 0.82
        assert match.match_reasoning.startswith("Opportunity Score: 0.85")
        assert match.rationale_for_a == "Meet B"

        links = session.execute(select(MatchInsight)).scalars().all()
        by_type = {link.insight.insight_type: link.relevance_score for link in links}
        assert by_type[InsightType.OPPORTUNITY] == 0.75
        assert by_type[InsightType.SYNERGY] == INSIGHT_PRIORS[InsightType.SYNERGY]
        assert by_type[InsightType.RISK] == 0.3
        assert by_type[InsightType.NETWORK_EFFECT] == 0.6
        assert by_type[InsightType.NEXT_STEP] == 0.9
        assert InsightType.HIDDEN_ASSET not in by_type

    @pytest.mark.asyncio
    async def test_invalid_json_counts_as_failure(self, session, runner, settings, fake_llm, make_participant):
        make_participant("alice")
        make_participant("bob")
        fake_llm.analysis = "definitely not json"

        result = await run_match_analysis(session, runner, settings)

        assert result["summary"]["matchesAnalyzed"] == 0
        assert result["summary"]["failed"] == 1
        assert _count(session, Match) == 0
        assert _count(session, Insight) == 0
        failure = session.execute(
            select(ProcessingLog).where(ProcessingLog.action == "analyzeMatch")
        ).scalars().one()
        assert failure.status == LogStatus.FAILED
        assert "raw" in failure.metadata_json

    @pytest.mark.asyncio
    async def test_missing_required_field_is_failure(self, session, runner, settings, fake_llm, make_participant):
        make_participant("alice")
        make_participant("bob")
        payload = dict(fake_llm.analysis)
        del payload["primaryOpportunities"]
        fake_llm.analysis = payload

        result = await run_match_analysis(session, runner, settings)
        assert result["summary"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate(self, session, runner, settings, fake_llm, make_participant):
        for handle in ("a", "b", "c"):
            make_participant(handle)

        first = await run_match_analysis(session, runner, settings, batch_size=2)
        second = await run_match_analysis(session, runner, settings, batch_size=2)
        third = await run_match_analysis(session, runner, settings, batch_size=2)

        assert first["summary"]["matchesAnalyzed"] == 2
        assert second["summary"]["matchesAnalyzed"] == 1
        assert third["summary"]["pairsGenerated"] == 0
        assert _count(session, Match) == 3
        assert fake_llm.complete.await_count == 3

    @pytest.mark.asyncio
    async def test_insufficient_participants(self, session, runner, settings, fake_llm, make_participant):
        make_participant("alice")
        make_participant("bob", complete=False)

        result = await run_match_analysis(session, runner, settings)

        assert result["summary"]["message"] == "Insufficient participants for matching"
        assert result["summary"]["totalParticipants"] == 1
        fake_llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pair_stored_concurrently_is_audited(self, session, runner, settings, make_participant, make_match):
        a, b = make_participant("alice"), make_participant("bob")
        make_match(a, b)

        # Another worker inserted the pair after this batch picked it
        with patch("rendezvous.matcher.generate_pairs", return_value=[(a, b)]):
            result = await run_match_analysis(session, runner, settings)

        assert result["summary"]["failed"] == 1
        assert result["summary"]["matchesAnalyzed"] == 0
        assert _count(session, Match) == 1
        failure = session.execute(
            select(ProcessingLog).where(ProcessingLog.action == "analyzeMatch")
        ).scalars().one()
        assert failure.status == LogStatus.FAILED
        assert failure.target_id == f"{a.id}:{b.id}"
        assert "Duplicate pair" in failure.error_message


class TestManualMatch:
    @pytest.mark.asyncio
    async def test_manual_match(self, session, runner, make_participant):
        a, b = make_participant("a"), make_participant("b")
        match = await run_manual_match(session, runner, b.id, a.id)
        assert match.pair_key == f"{a.id}:{b.id}"
        assert match.participant_a_id == b.id

    @pytest.mark.asyncio
    async def test_self_match_rejected(self, session, runner, make_participant):
        a = make_participant("a")
        with pytest.raises(InvalidRequestError):
            await run_manual_match(session, runner, a.id, a.id)

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, session, runner, make_participant, make_match, fake_llm):
        a, b = make_participant("a"), make_participant("b")
        make_match(a, b)
        with pytest.raises(DuplicateMatchError):
            await run_manual_match(session, runner, b.id, a.id)
        fake_llm.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_participant(self, session, runner, make_participant):
        a = make_participant("a")
        with pytest.raises(NotFoundError):
            await run_manual_match(session, runner, a.id, 999)
