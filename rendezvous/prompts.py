"""Prompt templates and the runner that executes them against the completion engine.

Templates live in the ``prompt_templates`` table (seeded from
:data:`DEFAULT_PROMPTS`) so they can be edited without a deploy.
Placeholders use ``{{name}}`` syntax; every placeholder must be supplied.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rendezvous.config import ConfigCache, get_system_config
from rendezvous.errors import InvalidRequestError, LLMCallError, NotFoundError
from rendezvous.llm import Completion, LLMClient, estimate_cost
from rendezvous.models import LLMCallLog, LogStatus, PromptTemplate

log = logging.getLogger(__name__)

_VAR_RE = re.compile(r"{{(\w+)}}")

# ---------------------------------------------------------------------------
# Default prompts (editable via API)
# ---------------------------------------------------------------------------

OPPORTUNITY_ANALYSIS_PROMPT = """\
You are an omniscient network analyst. You can see the full profiles of two \
members of a professional network and must decide whether introducing them \
creates real value for both.

MEMBER A: {{handleA}}
Story: {{narrativeA}}
Current focus: {{currentFocusA}}
Seeking: {{seekingA}}
Offering: {{offeringA}}

MEMBER B: {{handleB}}
Story: {{narrativeB}}
Current focus: {{currentFocusB}}
Seeking: {{seekingB}}
Offering: {{offeringB}}

Be concrete and opinionated. A strong match has a specific, near-term \
collaboration both sides would pursue. A weak match is "they both like tech".

Respond with ONLY valid JSON:
{
  "opportunityScore": <float 0.0-1.0>,
  "outcome": "<STRONG_MATCH|EXPLORATORY|FUTURE_POTENTIAL|NO_MATCH>",
  "primaryOpportunities": [
    {"title": "...", "description": "...", "valueProposition": "...", "feasibility": <0-1>, "timeline": "..."}
  ],
  "synergies": [{"type": "...", "description": "...", "potential": "..."}],
  "nextSteps": ["..."],
  "riskFactors": [{"risk": "...", "mitigation": "..."}],
  "hiddenAssets": [{"asset": "...", "application": "..."}],
  "networkEffects": [{"connection": "...", "value": "..."}],
  "reasoning": "<2-3 sentences>",
  "notificationAssessment": {"shouldNotify": <bool>, "notificationScore": <0-1>, "reasoning": "..."},
  "introductionRationale": {"agentAToHumanA": "...", "agentBToHumanB": "..."},
  "agentSummaries": {"forUserA": "...", "forUserB": "..."}
}
"""

AGENT_TURN_PROMPT = """\
You are {{agentName}}, the networking agent representing {{userHandle}}. \
You are in turn {{turnNumber}} of a short introductory conversation with the \
agent representing {{otherUserHandle}}.

About {{userHandle}}:
Story: {{narrative}}
Current focus: {{currentFocus}}
Seeking: {{seekingConnections}}
Offering: {{offeringExpertise}}

{{contextPrompt}}

Conversation so far:
{{conversationHistory}}

Write your next message only: 2-4 sentences, specific, no pleasantries \
beyond the first turn. Never invent facts about {{userHandle}}.
"""

CONVERSATION_SUMMARY_PROMPT = """\
You are reviewing a completed conversation between the networking agents of \
{{userAHandle}} and {{userBHandle}}.

Transcript:
{{conversationContent}}

Respond with ONLY valid JSON:
{
  "actualOutcome": "<STRONG_MATCH|EXPLORATORY|FUTURE_POTENTIAL|NO_MATCH>",
  "qualityScore": <float 0.0-1.0>,
  "summary": "<2-3 sentences>",
  "keyMoments": ["<moment 1>", "<moment 2>"]
}
"""

OUTCOME_ANALYSIS_PROMPT = """\
Analyze this completed conversation and provide a detailed outcome analysis.

Predicted outcome: {{predictedOutcome}}
Actual conversation outcome: {{actualOutcome}}
Quality score: {{qualityScore}}

Conversation transcript:
{{transcript}}

Respond with ONLY valid JSON:
{
  "outcomeAnalysis": "<what happened and why>",
  "collaborationReadinessScore": <float 0.0-1.0>,
  "specificNextSteps": ["<actionable step>", "..."],
  "followUpRecommended": <bool>,
  "followUpTimeframe": "<e.g. within 1 week>"
}
"""


@dataclass(frozen=True)
class PromptSpec:
    label: str
    content: str
    json_response: bool = False
    temperature: float | None = None
    max_tokens: int = 2048


# Registry used by db.py to seed defaults
DEFAULT_PROMPTS: dict[str, PromptSpec] = {
    "opportunity_analysis": PromptSpec(
        "Opportunity analysis", OPPORTUNITY_ANALYSIS_PROMPT, json_response=True, temperature=0.2, max_tokens=4096,
    ),
    "agent_turn": PromptSpec("Agent conversation turn", AGENT_TURN_PROMPT, temperature=0.7, max_tokens=600),
    "conversation_summary": PromptSpec(
        "Conversation summary", CONVERSATION_SUMMARY_PROMPT, json_response=True, temperature=0.2,
    ),
    "outcome_analysis": PromptSpec(
        "Outcome analysis", OUTCOME_ANALYSIS_PROMPT, json_response=True, temperature=0.3, max_tokens=1000,
    ),
}

DEFAULT_MODEL_CONFIG_KEY = "default_llm_model"


# ---------------------------------------------------------------------------
# Interpolation
# ---------------------------------------------------------------------------


def extract_variables(template: str) -> list[str]:
    """Return placeholder names in order of first appearance."""
    seen: dict[str, None] = {}
    for name in _VAR_RE.findall(template):
        seen.setdefault(name, None)
    return list(seen)


def missing_variables(template: str, variables: dict[str, str]) -> list[str]:
    return [name for name in extract_variables(template) if name not in variables]


def interpolate(template: str, variables: dict[str, str]) -> str:
    return _VAR_RE.sub(lambda m: str(variables.get(m.group(1), "")), template)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class PromptRunner:
    """Execute stored prompt templates and account for every call in ``llm_call_logs``."""

    def __init__(self, session: Session, client: LLMClient, config_cache: ConfigCache | None = None):
        self.session = session
        self.client = client
        self.config_cache = config_cache

    def load(self, key: str) -> PromptTemplate:
        tpl = self.session.execute(
            select(PromptTemplate).where(PromptTemplate.key == key)
        ).scalars().first()
        if tpl is None:
            raise NotFoundError("Prompt template", key)
        return tpl

    def resolve_model(self, tpl: PromptTemplate, model: str | None = None) -> str | None:
        if model:
            return model
        if tpl.llm_model:
            return tpl.llm_model
        return get_system_config(self.session, DEFAULT_MODEL_CONFIG_KEY, None, self.config_cache)

    async def run(
        self,
        key: str,
        variables: dict[str, str],
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion:
        tpl = self.load(key)
        missing = missing_variables(tpl.content, variables)
        if missing:
            raise InvalidRequestError(f"Missing required variables for {key}: {', '.join(missing)}")
        system = interpolate(tpl.content, variables)
        resolved_model = self.resolve_model(tpl, model)

        started = time.monotonic()
        try:
            completion = await self.client.complete(
                system,
                model=resolved_model,
                temperature=temperature if temperature is not None else tpl.temperature,
                max_tokens=max_tokens or tpl.max_tokens,
                json_mode=tpl.json_response,
            )
        except LLMCallError as exc:
            self._record(key, resolved_model or self.client.model, None, started, str(exc))
            raise
        self._record(key, completion.model or resolved_model or self.client.model, completion, started)
        return completion

    def _record(
        self, key: str, model: str, completion: Completion | None, started: float, error: str = "",
    ) -> None:
        usage = completion.usage if completion else None
        entry = LLMCallLog(
            prompt_key=key,
            model=model or "",
            status=LogStatus.FAILED if error else LogStatus.COMPLETED,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
            estimated_cost=estimate_cost(usage.total_tokens) if usage else 0.0,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_message=error,
        )
        try:
            self.session.add(entry)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            log.error("Failed to record LLM call for %s: %s", key, exc)
