"""HTTP-level tests for the pipeline endpoint and the read/admin routes."""
from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import patch
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rendezvous.config import ConfigCache
from rendezvous.db import seed_prompt_templates
from rendezvous.models import (
    Base, LogStatus, Match, MatchStatus, MorningReport, Participant, ParticipantStatus, ProcessingLog, pair_key,
    utcnow,
)
from rendezvous.pipeline import PipelineDeps


@pytest.fixture()
def test_db():
    """In-memory SQLite shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = TestSession()
    seed_prompt_templates(session)
    session.commit()
    session.close()
    return engine, TestSession


@pytest.fixture()
def client(test_db, settings, fake_llm):
    engine, TestSession = test_db
    from rendezvous.app import app, db_session, pipeline_deps

    deps = PipelineDeps(settings=settings, llm=fake_llm, config_cache=ConfigCache(300))

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[pipeline_deps] = lambda: deps
    with patch("rendezvous.app.init_db"):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c, TestSession, deps
    app.dependency_overrides.clear()


def _seed_pair(TestSession, status=MatchStatus.ACTIVE) -> int:
    session = TestSession()
    a = Participant(handle="alice", agent_name="alice-agent", narrative="Builds robots.", email="a@example.com")
    b = Participant(handle="bob", agent_name="bob-agent", narrative="Sells to banks.", email="b@example.com")
    session.add_all([a, b])
    session.flush()
    match = Match(
        participant_a_id=a.id, participant_b_id=b.id, pair_key=pair_key(a.id, b.id),
        opportunity_score=0.85, status=status, should_notify=True, notification_score=0.8,
        analyzed_at=utcnow(),
    )
    session.add(match)
    session.commit()
    match_id = match.id
    session.close()
    return match_id


def _pipeline(c, action, **params):
    return c.post("/api/pipeline", json={"action": action, "params": params})


class TestPipelineEndpoint:
    def test_unknown_action_is_400_and_audited(self, client):
        c, TestSession, _ = client
        resp = _pipeline(c, "launchRockets")
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error_code"] == "invalid_request"
        assert "launchRockets" in body["error"]

        session = TestSession()
        row = session.execute(select(ProcessingLog)).scalars().one()
        assert row.action == "launchRockets"
        assert row.status == LogStatus.FAILED
        session.close()

    def test_missing_parameter_is_400(self, client):
        c, _, _ = client
        resp = _pipeline(c, "executeConversation")
        assert resp.status_code == 400
        assert "matchId" in resp.json()["error"]

    def test_unknown_match_is_404(self, client):
        c, _, _ = client
        resp = _pipeline(c, "executeConversation", matchId=999)
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "not_found"

    def test_execute_conversation(self, client):
        c, TestSession, deps = client
        match_id = _seed_pair(TestSession)

        resp = _pipeline(c, "executeConversation", matchId=match_id)

        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["summary"]["turns"] == 6
        assert body["summary"]["status"] == "completed"
        assert deps.llm.complete.await_count == 7

        session = TestSession()
        actions = [(r.action, r.status) for r in session.execute(select(ProcessingLog)).scalars().all()]
        assert ("executeConversation", LogStatus.COMPLETED) in actions
        session.close()

    def test_generate_reports_then_dry_run_emails(self, client):
        c, TestSession, _ = client
        _seed_pair(TestSession, status=MatchStatus.COMPLETED)

        reports = _pipeline(c, "generateMorningReports")
        assert reports.status_code == 200
        assert reports.json()["summary"]["reportsGenerated"] == 2

        emails = _pipeline(c, "sendMorningReportEmails", dryRun=True)
        assert emails.status_code == 200
        assert emails.json()["summary"]["emailsPreviewed"] == 2

        session = TestSession()
        assert not any(r.email_sent for r in session.execute(select(MorningReport)).scalars().all())
        session.close()

    def test_single_report_without_override_is_400(self, client):
        c, _, _ = client
        resp = _pipeline(c, "sendMorningReportEmails", reportId=1)
        assert resp.status_code == 400

    def test_analytics(self, client):
        c, TestSession, _ = client
        _seed_pair(TestSession)
        resp = _pipeline(c, "getAnalytics")
        assert resp.status_code == 200
        assert resp.json()["summary"]["matches_by_status"] == {"active": 1}

    def test_list_actions(self, client):
        c, _, _ = client
        actions = c.get("/api/pipeline/actions").json()["actions"]
        assert "generateAndAnalyzeMatches" in actions
        assert len(actions) == 10


class TestDailyCycle:
    def _match(self, TestSession) -> Match:
        session = TestSession()
        match = session.execute(select(Match)).scalars().one()
        session.close()
        return match

    def test_pair_to_completed_conversation_to_digest(self, client):
        c, TestSession, _ = client
        session = TestSession()
        session.add_all([
            Participant(handle="alice", agent_name="alice-agent", narrative="Builds robots.",
                        email="a@example.com", timezone="Europe/Berlin", status=ParticipantStatus.APPROVED),
            Participant(handle="bob", agent_name="bob-agent", narrative="Sells to banks.",
                        email="b@example.com", status=ParticipantStatus.APPROVED),
        ])
        session.commit()
        session.close()
        before = utcnow()

        analyzed = _pipeline(c, "generateAndAnalyzeMatches", batchSize=10).json()["summary"]
        assert analyzed["pairsGenerated"] == 1
        assert analyzed["matchesAnalyzed"] == 1
        assert analyzed["matchesScheduled"] == 1

        match = self._match(TestSession)
        assert match.opportunity_score == 0.85
        assert match.status == MatchStatus.SCHEDULED
        local = match.scheduled_for.astimezone(ZoneInfo("Europe/Berlin"))
        assert (local.hour, local.minute) == (0, 0)
        assert timedelta(0) < match.scheduled_for - before <= timedelta(days=1)

        # Strong matches make the digest on the day they are analysed
        first = _pipeline(c, "generateMorningReports").json()["summary"]
        assert first["reportsGenerated"] == 2
        assert first["matchesDeferred"] == 1
        assert self._match(TestSession).status == MatchStatus.SCHEDULED

        # Midnight passes
        session = TestSession()
        session.get(Match, match.id).scheduled_for = utcnow() - timedelta(minutes=1)
        session.commit()
        session.close()
        assert _pipeline(c, "activateScheduledMatches").json()["summary"]["activated"] == 1

        conv = _pipeline(c, "executeConversation", matchId=match.id).json()["summary"]
        assert conv["status"] == "completed"
        assert conv["turns"] == 6
        assert 0.0 <= conv["qualityScore"] <= 1.0
        assert self._match(TestSession).status == MatchStatus.COMPLETED

        second = _pipeline(c, "generateMorningReports").json()["summary"]
        assert second["deferredSettled"] == 1
        assert self._match(TestSession).status == MatchStatus.REPORTED

        session = TestSession()
        reports = session.execute(select(MorningReport)).scalars().all()
        assert sorted(r.notification_count for r in reports) == [1, 1]
        session.close()


class TestReadRoutes:
    def test_stats(self, client):
        c, TestSession, _ = client
        _seed_pair(TestSession)
        data = c.get("/api/stats").json()
        assert data["matches_total"] == 1
        assert data["reports_total"] == 0

    def test_processing_logs_filter(self, client):
        c, _, _ = client
        _pipeline(c, "nope")
        _pipeline(c, "getAnalytics")
        failed = c.get("/api/processing-logs", params={"status": "failed"}).json()
        assert [row["action"] for row in failed] == ["nope"]
        assert c.get("/api/processing-logs", params={"status": "bogus"}).status_code == 400

    def test_prompts_roundtrip(self, client):
        c, _, _ = client
        keys = [p["key"] for p in c.get("/api/prompts").json()]
        assert keys == sorted(["agent_turn", "conversation_summary", "opportunity_analysis", "outcome_analysis"])

        resp = c.put("/api/prompts/agent_turn", json={"llm_model": "claude-custom", "temperature": 0.4})
        assert resp.status_code == 200
        assert resp.json()["llm_model"] == "claude-custom"
        assert c.put("/api/prompts/missing", json={"llm_model": "x"}).status_code == 404
        assert c.put("/api/prompts/agent_turn", json={"content": "   "}).status_code == 422

    def test_config_roundtrip(self, client):
        c, _, _ = client
        assert c.get("/api/config/default_llm_model").status_code == 404
        assert c.put("/api/config/default_llm_model", json={"value": "claude-x"}).status_code == 200
        assert c.get("/api/config/default_llm_model").json() == {"key": "default_llm_model", "value": "claude-x"}

        # Cache is invalidated on write
        c.put("/api/config/default_llm_model", json={"value": json.dumps("claude-y")})
        assert c.get("/api/config/default_llm_model").json()["value"] == "claude-y"
