"""Status transition tables for matches and conversations.

Selection queries already filter on status, but every write also goes
through :func:`transition` so that an out-of-order caller is rejected
instead of silently corrupting the lifecycle.
"""
from __future__ import annotations

from rendezvous.errors import IllegalTransitionError
from rendezvous.models import Conversation, ConversationStatus, Match, MatchStatus

MATCH_TRANSITIONS: dict[MatchStatus, frozenset[MatchStatus]] = {
    MatchStatus.ANALYZED: frozenset({MatchStatus.SCHEDULED, MatchStatus.REPORTED}),
    MatchStatus.SCHEDULED: frozenset({MatchStatus.ACTIVE}),
    MatchStatus.ACTIVE: frozenset({MatchStatus.COMPLETED, MatchStatus.FAILED}),
    MatchStatus.COMPLETED: frozenset({MatchStatus.REPORTED}),
    MatchStatus.FAILED: frozenset({MatchStatus.REPORTED}),
    MatchStatus.REPORTED: frozenset(),
}

CONVERSATION_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.ACTIVE: frozenset({ConversationStatus.COMPLETED, ConversationStatus.FAILED}),
    # failed -> active is the explicit retry path
    ConversationStatus.FAILED: frozenset({ConversationStatus.ACTIVE}),
    ConversationStatus.COMPLETED: frozenset(),
}


def can_transition(current: MatchStatus, target: MatchStatus) -> bool:
    return target in MATCH_TRANSITIONS.get(MatchStatus(current), frozenset())


def transition(match: Match, target: MatchStatus) -> None:
    current = MatchStatus(match.status)
    if not can_transition(current, target):
        raise IllegalTransitionError("match", current.value, target.value)
    match.status = target


def transition_conversation(conversation: Conversation, target: ConversationStatus) -> None:
    current = ConversationStatus(conversation.status)
    if target not in CONVERSATION_TRANSITIONS[current]:
        raise IllegalTransitionError("conversation", current.value, target.value)
    conversation.status = target
