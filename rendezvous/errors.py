"""Exception types shared across the pipeline stages."""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for pipeline failures that callers are expected to handle."""


class NotFoundError(PipelineError):
    def __init__(self, label: str, entity_id: object):
        super().__init__(f"{label} {entity_id} not found")
        self.label = label
        self.entity_id = entity_id


class InvalidRequestError(PipelineError):
    """Structurally invalid request (missing id, bad parameter type)."""


class UnknownActionError(InvalidRequestError):
    def __init__(self, action: str):
        super().__init__(f"Unknown action: {action!r}")
        self.action = action


class IllegalTransitionError(PipelineError):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(f"Illegal {entity} transition {current} -> {target}")
        self.current = current
        self.target = target


class DuplicateMatchError(PipelineError):
    """A match already exists for the unordered participant pair."""


class ConversationStateError(PipelineError):
    """Conversation cannot be (re)started or analyzed in its current state."""


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class MalformedResponseError(LLMCallError):
    """Completion text could not be parsed into the expected structure."""
    def __init__(self, message: str, raw: str = ""):
        super().__init__(message, retryable=False)
        self.raw = raw
