from __future__ import annotations

from datetime import UTC, date, datetime
from enum import Enum

from sqlalchemy import (
    Boolean, Date, DateTime, Enum as SAEnum, Float, ForeignKey, Integer, String, Text,
    TypeDecorator, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, hands back aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(UTC).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Closed status enums
# ---------------------------------------------------------------------------


class ParticipantStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SUSPENDED = "suspended"


class MatchStatus(str, Enum):
    ANALYZED = "analyzed"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    REPORTED = "reported"


class PredictedOutcome(str, Enum):
    STRONG_MATCH = "STRONG_MATCH"
    EXPLORATORY = "EXPLORATORY"
    FUTURE_POTENTIAL = "FUTURE_POTENTIAL"
    NO_MATCH = "NO_MATCH"


class InsightType(str, Enum):
    OPPORTUNITY = "opportunity"
    SYNERGY = "synergy"
    RISK = "risk"
    HIDDEN_ASSET = "hidden_asset"
    NETWORK_EFFECT = "network_effect"
    NEXT_STEP = "next_step"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class SpeakerRole(str, Enum):
    AGENT_A = "agent_a"
    AGENT_B = "agent_b"


class LogStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


def _enum_column(enum_cls: type[Enum], length: int = 30):
    return SAEnum(
        enum_cls, native_enum=False, length=length, validate_strings=True,
        values_callable=lambda cls: [m.value for m in cls],
    )


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------


class Participant(Base):
    __tablename__ = "participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    handle: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(300), default="")
    timezone: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[ParticipantStatus] = mapped_column(
        _enum_column(ParticipantStatus), default=ParticipantStatus.PENDING,
    )
    agent_name: Mapped[str] = mapped_column(String(100), default="")
    narrative: Mapped[str] = mapped_column(Text, default="")
    current_focus_json: Mapped[str] = mapped_column(Text, default="[]")
    seeking_json: Mapped[str] = mapped_column(Text, default="[]")
    offering_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    @property
    def has_complete_profile(self) -> bool:
        return bool(self.narrative.strip() and self.agent_name.strip())


# ---------------------------------------------------------------------------
# Matches & insights
# ---------------------------------------------------------------------------


def pair_key(a_id: int, b_id: int) -> str:
    low, high = sorted((a_id, b_id))
    return f"{low}:{high}"


class Match(Base):
    __tablename__ = "matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    participant_a_id: Mapped[int] = mapped_column(Integer, ForeignKey("participants.id"), nullable=False)
    participant_b_id: Mapped[int] = mapped_column(Integer, ForeignKey("participants.id"), nullable=False)
    pair_key: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    opportunity_score: Mapped[float] = mapped_column(Float, default=0.0)
    predicted_outcome: Mapped[PredictedOutcome] = mapped_column(
        _enum_column(PredictedOutcome), default=PredictedOutcome.NO_MATCH,
    )
    status: Mapped[MatchStatus] = mapped_column(
        _enum_column(MatchStatus), default=MatchStatus.ANALYZED, index=True,
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # First digest day the match was folded into; it moves to reported once it settles
    digest_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    should_notify: Mapped[bool] = mapped_column(Boolean, default=False)
    notification_score: Mapped[float] = mapped_column(Float, default=0.0)
    notification_reasoning: Mapped[str] = mapped_column(Text, default="")
    analysis_summary: Mapped[str] = mapped_column(Text, default="")
    match_reasoning: Mapped[str] = mapped_column(Text, default="")
    rationale_for_a: Mapped[str] = mapped_column(Text, default="")
    rationale_for_b: Mapped[str] = mapped_column(Text, default="")
    agent_summary_for_a: Mapped[str] = mapped_column(Text, default="")
    agent_summary_for_b: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    analyzed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    participant_a: Mapped[Participant] = relationship("Participant", foreign_keys=[participant_a_id])
    participant_b: Mapped[Participant] = relationship("Participant", foreign_keys=[participant_b_id])
    insight_links: Mapped[list[MatchInsight]] = relationship(
        "MatchInsight", back_populates="match", cascade="all, delete-orphan",
    )
    conversation: Mapped[Conversation | None] = relationship(
        "Conversation", back_populates="match", uselist=False,
    )


class Insight(Base):
    __tablename__ = "insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    insight_type: Mapped[InsightType] = mapped_column(_enum_column(InsightType), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    score: Mapped[float] = mapped_column(Float, default=0.0)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class MatchInsight(Base):
    __tablename__ = "match_insights"
    __table_args__ = (UniqueConstraint("match_id", "insight_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    match_id: Mapped[int] = mapped_column(Integer, ForeignKey("matches.id"), nullable=False)
    insight_id: Mapped[int] = mapped_column(Integer, ForeignKey("insights.id"), nullable=False)
    relevance_score: Mapped[float] = mapped_column(Float, default=0.0)

    match: Mapped[Match] = relationship("Match", back_populates="insight_links")
    insight: Mapped[Insight] = relationship("Insight")


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class Conversation(Base):
    __tablename__ = "conversations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    match_id: Mapped[int] = mapped_column(Integer, ForeignKey("matches.id"), nullable=False, unique=True)
    status: Mapped[ConversationStatus] = mapped_column(
        _enum_column(ConversationStatus), default=ConversationStatus.ACTIVE, index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    actual_outcome: Mapped[str] = mapped_column(String(50), default="")
    quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    summary: Mapped[str] = mapped_column(Text, default="")
    key_moments_json: Mapped[str] = mapped_column(Text, default="[]")
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, default="")
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    match: Mapped[Match] = relationship("Match", back_populates="conversation")
    turns: Mapped[list[Turn]] = relationship(
        "Turn", back_populates="conversation", cascade="all, delete-orphan",
        order_by="Turn.turn_number",
    )
    outcome: Mapped[Outcome | None] = relationship("Outcome", back_populates="conversation", uselist=False)


class Turn(Base):
    __tablename__ = "turns"
    __table_args__ = (UniqueConstraint("conversation_id", "turn_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(Integer, ForeignKey("conversations.id"), nullable=False)
    turn_number: Mapped[int] = mapped_column(Integer, nullable=False)
    speaker_id: Mapped[int] = mapped_column(Integer, ForeignKey("participants.id"), nullable=False)
    speaker_role: Mapped[SpeakerRole] = mapped_column(_enum_column(SpeakerRole), nullable=False)
    message: Mapped[str] = mapped_column(Text, default="")
    alignment_score: Mapped[float] = mapped_column(Float, default=0.0)
    guided_by_json: Mapped[str] = mapped_column(Text, default="[]")
    prompt_tokens: Mapped[int] = mapped_column(Integer, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    conversation: Mapped[Conversation] = relationship("Conversation", back_populates="turns")


class Outcome(Base):
    __tablename__ = "outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("conversations.id"), nullable=False, unique=True,
    )
    match_id: Mapped[int] = mapped_column(Integer, ForeignKey("matches.id"), nullable=False)
    outcome_analysis: Mapped[str] = mapped_column(Text, default="")
    readiness_score: Mapped[float] = mapped_column(Float, default=0.0)
    next_steps_json: Mapped[str] = mapped_column(Text, default="[]")
    follow_up_recommended: Mapped[bool] = mapped_column(Boolean, default=False)
    follow_up_timeframe: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    conversation: Mapped[Conversation] = relationship("Conversation", back_populates="outcome")


# ---------------------------------------------------------------------------
# Morning reports
# ---------------------------------------------------------------------------


class MorningReport(Base):
    __tablename__ = "morning_reports"
    __table_args__ = (UniqueConstraint("user_id", "report_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("participants.id"), nullable=False)
    report_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    notifications_json: Mapped[str] = mapped_column(Text, default="[]")
    match_summaries_json: Mapped[str] = mapped_column(Text, default="{}")
    agent_insights_json: Mapped[str] = mapped_column(Text, default="{}")
    notification_count: Mapped[int] = mapped_column(Integer, default=0)
    total_opportunity_score: Mapped[float] = mapped_column(Float, default=0.0)
    email_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    user: Mapped[Participant] = relationship("Participant")


# ---------------------------------------------------------------------------
# Audit, prompts, runtime config
# ---------------------------------------------------------------------------


class ProcessingLog(Base):
    __tablename__ = "processing_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[LogStatus] = mapped_column(_enum_column(LogStatus), default=LogStatus.STARTED)
    target_type: Mapped[str] = mapped_column(String(50), default="")
    target_id: Mapped[str] = mapped_column(String(100), default="")
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    error_message: Mapped[str] = mapped_column(Text, default="")
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class PromptTemplate(Base):
    __tablename__ = "prompt_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    label: Mapped[str] = mapped_column(String(200), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    temperature: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_tokens: Mapped[int] = mapped_column(Integer, default=2048)
    json_response: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class SystemConfig(Base):
    __tablename__ = "system_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    value: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)


class LLMCallLog(Base):
    __tablename__ = "llm_call_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    prompt_key: Mapped[str] = mapped_column(String(100), default="")
    model: Mapped[str] = mapped_column(String(100), default="")
    status: Mapped[LogStatus] = mapped_column(_enum_column(LogStatus), default=LogStatus.COMPLETED)
    prompt_tokens: Mapped[int] = mapped_column(Integer, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    estimated_cost: Mapped[float] = mapped_column(Float, default=0.0)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
