"""Morning report email delivery.

Sends are sequential with a fixed pause between recipients. A send that the
transport reports as rate limited is retried with capped exponential
backoff; any other failure is recorded and the batch moves on. The report's
``email_sent`` flag is flipped only after a confirmed send and is the only
thing that stops a later run from sending it again.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import date
from functools import lru_cache
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rendezvous import audit
from rendezvous.config import Settings
from rendezvous.errors import InvalidRequestError
from rendezvous.mailer import EmailResult, EmailTransport
from rendezvous.models import MorningReport, PredictedOutcome, utcnow
from rendezvous.utils import json_parse

log = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
TOP_NOTIFICATIONS = 3
MAX_INSIGHT_BULLETS = 2


@lru_cache
def _jinja_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "xml"]),
    )


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before retry number *attempt* (1-based): base * 2**attempt, capped."""
    return min(base * 2 ** attempt, cap)


def insight_bullets(insights: dict[str, Any]) -> list[str]:
    bullets: list[str] = []
    for key in ("patterns_observed", "top_opportunities", "recommended_actions"):
        bullets.extend(str(item) for item in insights.get(key) or [])
    return bullets[:MAX_INSIGHT_BULLETS]


def render_report_email(
    report: MorningReport, recipient: str, app_url: str, override: bool = False,
) -> tuple[str, str]:
    notifications = json_parse(report.notifications_json, [])
    count = report.notification_count
    subject = f"Your Morning Report - {count} new {'opportunity' if count == 1 else 'opportunities'}"
    html = _jinja_env().get_template("morning_report.html").render(
        handle=report.user.handle if report.user else "",
        notification_count=count,
        strong_matches=sum(
            1 for n in notifications if n.get("predicted_outcome") == PredictedOutcome.STRONG_MATCH.value
        ),
        notifications=notifications[:TOP_NOTIFICATIONS],
        insights=insight_bullets(json_parse(report.agent_insights_json, {})),
        app_url=app_url.rstrip("/"),
        recipient=recipient,
        override=override,
    )
    return subject, html


async def send_with_retry(
    transport: EmailTransport, to: str, subject: str, html: str, settings: Settings,
) -> tuple[EmailResult, int]:
    """Send once, retrying only rate-limited results. Returns the last result and retry count."""
    retries = 0
    while True:
        try:
            result = await transport.send(to, subject, html)
        except Exception as exc:
            log.error("Email transport error for %s: %s", to, exc)
            return EmailResult(status="failed", error=str(exc)), retries
        if result.sent or not result.rate_limited or retries >= settings.email_max_retries:
            return result, retries
        retries += 1
        delay = backoff_delay(retries, settings.email_backoff_base_seconds, settings.email_backoff_cap_seconds)
        log.info("Rate limited sending to %s, retrying in %.1fs (attempt %d/%d)",
                 to, delay, retries, settings.email_max_retries)
        await asyncio.sleep(delay)


def _select_reports(
    session: Session, report_date: date, user_ids: list[int] | None, force_resend: bool,
) -> list[MorningReport]:
    query = (
        select(MorningReport)
        .where(MorningReport.report_date == report_date, MorningReport.notification_count > 0)
        .order_by(MorningReport.id)
    )
    if not force_resend:
        query = query.where(MorningReport.email_sent.is_(False))
    if user_ids:
        query = query.where(MorningReport.user_id.in_(user_ids))
    return list(session.execute(query).scalars().all())


def _summary(report_date: date, total: int, sent: int, failed: int, previewed: int,
             force_resend: bool, dry_run: bool, message: str = "") -> dict[str, Any]:
    summary: dict[str, Any] = {
        "date": report_date.isoformat(),
        "totalReports": total,
        "emailsSent": sent,
        "emailsFailed": failed,
        "emailsPreviewed": previewed,
        "successRate": (sent / total * 100) if total else 0,
        "isForceResend": force_resend,
        "isDryRun": dry_run,
    }
    if message:
        summary["message"] = message
    return summary


async def send_morning_report_emails(
    session: Session,
    transport: EmailTransport,
    settings: Settings,
    *,
    report_date: date | None = None,
    user_ids: list[int] | None = None,
    force_resend: bool = False,
    dry_run: bool = False,
    email_override: str | None = None,
    report_id: int | None = None,
) -> dict[str, Any]:
    """Email the day's unsent reports (or one report when *report_id* is given)."""
    report_date = report_date or utcnow().date()

    if report_id is not None:
        if not email_override:
            raise InvalidRequestError("emailOverride is required when sending a single report")
        report = session.execute(
            select(MorningReport).where(MorningReport.id == report_id, MorningReport.notification_count > 0)
        ).scalars().first()
        reports = [report] if report is not None else []
        empty_message = "Report not found or has no notifications"
    else:
        reports = _select_reports(session, report_date, user_ids, force_resend)
        empty_message = (
            "No morning reports found for the specified criteria" if force_resend
            else "No morning reports with unsent emails found"
        )

    if not reports:
        return {
            "summary": _summary(report_date, 0, 0, 0, 0, force_resend, dry_run, empty_message),
            "results": [], "preview": [],
        }

    log.info("%s %d morning report email(s) for %s", "Previewing" if dry_run else "Sending",
             len(reports), report_date)

    results: list[dict[str, Any]] = []
    sent = failed = previewed = 0
    for idx, report in enumerate(reports):
        user = report.user
        address = (user.email if user else "") or ""
        if not address:
            log.warning("No email on file for user %s, using placeholder recipient", report.user_id)
            address = settings.placeholder_recipient
        recipient = email_override or address
        entry: dict[str, Any] = {
            "reportId": report.id,
            "userId": report.user_id,
            "handle": user.handle if user else "",
            "email": recipient,
            "originalEmail": address if email_override else None,
            "notificationCount": report.notification_count,
        }

        subject, html = render_report_email(report, recipient, settings.app_url, override=bool(email_override))
        if dry_run:
            log.info("Dry run email for %s: %r", recipient, subject)
            previewed += 1
            results.append({**entry, "status": "dry_run", "subject": subject})
            continue

        result, retries = await send_with_retry(transport, recipient, subject, html, settings)
        if result.sent:
            try:
                report.email_sent = True
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                log.error("Email sent but could not flag report %s as sent: %s", report.id, exc)
            sent += 1
            results.append({**entry, "status": "sent", "messageId": result.message_id, "retries": retries})
            log.info("Sent morning report to %s (%d notifications)", recipient, report.notification_count)
        else:
            failed += 1
            results.append({**entry, "status": "failed", "error": result.error, "retries": retries})
            log.warning("Failed to send morning report to %s after %d retries: %s", recipient, retries, result.error)
            audit.record_failure(
                session, "sendMorningReportEmail", result.error,
                target_type="morning_report", target_id=report.id, metadata={"retries": retries},
            )

        if idx < len(reports) - 1:
            await asyncio.sleep(settings.email_send_delay_seconds)

    return {
        "summary": _summary(report_date, len(reports), sent, failed, previewed, force_resend, dry_run),
        "results": results,
        "preview": results[:10],
    }
