"""Tests for morning report email delivery."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import select

from rendezvous.dispatcher import (
    backoff_delay, insight_bullets, render_report_email, send_morning_report_emails, send_with_retry,
)
from rendezvous.errors import InvalidRequestError
from rendezvous.mailer import (
    ConsoleTransport, EmailResult, EmailTransport, ResendTransport, get_transport, looks_rate_limited,
)
from rendezvous.models import LogStatus, MorningReport, ProcessingLog, utcnow


class ScriptedTransport(EmailTransport):
    """Returns canned results per recipient, ``sent`` once a script runs out."""

    def __init__(self, scripts: dict[str, list[EmailResult]] | None = None):
        self.scripts = scripts or {}
        self.sent: list[tuple[str, str]] = []
        self.calls: list[str] = []

    async def send(self, to: str, subject: str, html: str) -> EmailResult:
        self.calls.append(to)
        queue = self.scripts.get(to)
        if queue:
            return queue.pop(0)
        self.sent.append((to, subject))
        return EmailResult(status="sent", message_id=f"msg-{len(self.sent)}")


RATE_LIMITED = EmailResult(status="failed", error="HTTP 429: Too many requests", rate_limited=True)


@pytest.fixture()
def make_report(session):
    def _make(user, count: int = 2, email_sent: bool = False, report_date=None) -> MorningReport:
        notifications = [
            {"match_id": i, "other_user": {"id": i, "handle": f"peer{i}", "email": ""},
             "notification_score": 0.9 - i / 10, "opportunity_score": 0.8,
             "predicted_outcome": "STRONG_MATCH" if i == 1 else "EXPLORATORY",
             "introduction_rationale": f"Talk to peer{i}", "notification_reasoning": "Timely"}
            for i in range(1, count + 1)
        ]
        report = MorningReport(
            user_id=user.id, report_date=report_date or utcnow().date(),
            notifications_json=json.dumps(notifications),
            agent_insights_json=json.dumps({
                "patterns_observed": ["2 high-priority matches identified"],
                "top_opportunities": ["Explore collaboration with peer1"],
                "recommended_actions": ["Review top-scoring matches first"],
            }),
            notification_count=count, total_opportunity_score=0.8 * count, email_sent=email_sent,
        )
        session.add(report)
        session.commit()
        return report
    return _make


@pytest.fixture()
def no_sleep():
    with patch("rendezvous.dispatcher.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestHelpers:
    def test_backoff_is_capped(self):
        assert [backoff_delay(n, 1.0, 5.0) for n in (1, 2, 3)] == [2.0, 4.0, 5.0]

    def test_insight_bullets_limited_to_two(self):
        insights = {"patterns_observed": ["p"], "top_opportunities": ["t1", "t2"], "recommended_actions": ["r"]}
        assert insight_bullets(insights) == ["p", "t1"]

    def test_rate_limit_detection(self):
        assert looks_rate_limited(429, "")
        assert looks_rate_limited(400, "Rate limit exceeded")
        assert not looks_rate_limited(500, "server error")

    def test_render(self, make_participant, make_report):
        report = make_report(make_participant("alice", email="alice@example.com"), count=1)
        subject, html = render_report_email(report, "alice@example.com", "https://app.example/")
        assert subject == "Your Morning Report - 1 new opportunity"
        assert "alice" in html
        assert "peer1" in html
        assert "https://app.example/dashboard" in html
        assert "Testing mode" not in html


class TestSendWithRetry:
    @pytest.mark.asyncio
    async def test_retries_rate_limited_then_sends(self, settings, no_sleep):
        transport = ScriptedTransport({"a@x.io": [RATE_LIMITED, RATE_LIMITED]})
        result, retries = await send_with_retry(transport, "a@x.io", "s", "h", settings)
        assert result.sent
        assert retries == 2
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, settings, no_sleep):
        transport = ScriptedTransport({"a@x.io": [RATE_LIMITED] * 5})
        result, retries = await send_with_retry(transport, "a@x.io", "s", "h", settings)
        assert not result.sent
        assert retries == settings.email_max_retries
        assert len(transport.calls) == settings.email_max_retries + 1

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, settings, no_sleep):
        failure = EmailResult(status="failed", error="HTTP 422: invalid address")
        transport = ScriptedTransport({"a@x.io": [failure]})
        result, retries = await send_with_retry(transport, "a@x.io", "s", "h", settings)
        assert retries == 0
        assert result.error == "HTTP 422: invalid address"
        no_sleep.assert_not_awaited()


class TestSendMorningReportEmails:
    @pytest.mark.asyncio
    async def test_sends_and_flags(self, session, settings, make_participant, make_report, no_sleep):
        report = make_report(make_participant("alice", email="alice@example.com"))
        transport = ScriptedTransport()

        result = await send_morning_report_emails(session, transport, settings)

        assert result["summary"]["emailsSent"] == 1
        assert result["summary"]["successRate"] == 100
        assert transport.sent == [("alice@example.com", "Your Morning Report - 2 new opportunities")]
        assert report.email_sent is True

        again = await send_morning_report_emails(session, transport, settings)
        assert again["summary"]["totalReports"] == 0
        assert again["summary"]["message"] == "No morning reports with unsent emails found"
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_force_resend_includes_sent(self, session, settings, make_participant, make_report, no_sleep):
        make_report(make_participant("alice", email="alice@example.com"), email_sent=True)
        result = await send_morning_report_emails(session, ScriptedTransport(), settings, force_resend=True)
        assert result["summary"]["emailsSent"] == 1

    @pytest.mark.asyncio
    async def test_rate_limited_report_fails_and_batch_continues(
        self, session, settings, make_participant, make_report, no_sleep,
    ):
        stuck = make_report(make_participant("alice", email="alice@example.com"))
        fine = make_report(make_participant("bob", email="bob@example.com"))
        transport = ScriptedTransport({"alice@example.com": [RATE_LIMITED] * 4})

        result = await send_morning_report_emails(session, transport, settings)

        summary = result["summary"]
        assert summary["emailsSent"] == 1
        assert summary["emailsFailed"] == 1
        assert summary["successRate"] == 50
        assert stuck.email_sent is False
        assert fine.email_sent is True
        failed = [r for r in result["results"] if r["status"] == "failed"]
        assert failed[0]["retries"] == 3
        log_row = session.execute(
            select(ProcessingLog).where(ProcessingLog.action == "sendMorningReportEmail")
        ).scalars().one()
        assert log_row.status == LogStatus.FAILED
        assert log_row.target_id == str(stuck.id)

    @pytest.mark.asyncio
    async def test_dry_run_sends_nothing(self, session, settings, make_participant, make_report, no_sleep):
        report = make_report(make_participant("alice", email="alice@example.com"))
        transport = ScriptedTransport()

        result = await send_morning_report_emails(session, transport, settings, dry_run=True)

        assert result["summary"]["emailsPreviewed"] == 1
        assert result["summary"]["emailsSent"] == 0
        assert result["results"][0]["status"] == "dry_run"
        assert transport.calls == []
        assert report.email_sent is False

    @pytest.mark.asyncio
    async def test_placeholder_recipient_when_email_missing(
        self, session, settings, make_participant, make_report, no_sleep,
    ):
        make_report(make_participant("ghost"))
        transport = ScriptedTransport()
        await send_morning_report_emails(session, transport, settings)
        assert transport.calls == [settings.placeholder_recipient]

    @pytest.mark.asyncio
    async def test_user_filter_and_empty_reports(self, session, settings, make_participant, make_report, no_sleep):
        alice = make_participant("alice", email="alice@example.com")
        bob = make_participant("bob", email="bob@example.com")
        make_report(alice)
        make_report(bob)
        make_report(make_participant("carol", email="carol@example.com"), count=0)
        transport = ScriptedTransport()

        result = await send_morning_report_emails(session, transport, settings, user_ids=[bob.id])

        assert result["summary"]["totalReports"] == 1
        assert transport.calls == ["bob@example.com"]

    @pytest.mark.asyncio
    async def test_single_report_requires_override(self, session, settings, make_participant, make_report):
        report = make_report(make_participant("alice", email="alice@example.com"))
        with pytest.raises(InvalidRequestError):
            await send_morning_report_emails(session, ScriptedTransport(), settings, report_id=report.id)

    @pytest.mark.asyncio
    async def test_single_report_to_override(self, session, settings, make_participant, make_report, no_sleep):
        report = make_report(make_participant("alice", email="alice@example.com"), email_sent=True)
        transport = ScriptedTransport()

        result = await send_morning_report_emails(
            session, transport, settings, report_id=report.id, email_override="qa@example.com",
        )

        assert transport.calls == ["qa@example.com"]
        assert result["results"][0]["originalEmail"] == "alice@example.com"


class TestTransports:
    @pytest.mark.asyncio
    async def test_console_transport(self):
        transport = ConsoleTransport("noreply@example.com")
        first = await transport.send("a@example.com", "Hi", "<p>hi</p>")
        second = await transport.send("b@example.com", "Hi", "<p>hi</p>")
        assert first.sent and first.message_id == "console-1"
        assert second.message_id == "console-2"

    @pytest.mark.asyncio
    async def test_resend_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            assert request.headers["Authorization"] == "Bearer key"
            assert body["to"] == ["a@example.com"]
            return httpx.Response(200, json={"id": "re_123"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await ResendTransport("key", "from@example.com", client=client).send("a@example.com", "s", "h")
        assert result.sent
        assert result.message_id == "re_123"

    @pytest.mark.asyncio
    async def test_resend_rate_limited(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"message": "Too many requests"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await ResendTransport("key", "from@example.com", client=client).send("a@example.com", "s", "h")
        assert not result.sent
        assert result.rate_limited
        assert result.error.startswith("HTTP 429")

    def test_get_transport_falls_back_to_console(self, settings):
        settings.email_backend = "resend"
        settings.resend_api_key = ""
        assert isinstance(get_transport(settings), ConsoleTransport)
        settings.resend_api_key = "key"
        assert isinstance(get_transport(settings), ResendTransport)
