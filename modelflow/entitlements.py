"""
Entitlement engine for ModelFlow.

Decides whether a user may start a chat or send a message, and which model
the message is routed to. ``evaluate`` is a pure function of the plan, the
usage snapshot and whether the message opens a new chat. It never mutates
anything; the caller updates the usage store afterwards.

Caller sequence:
    decision = evaluate(plan, usage, is_new_chat)
    if decision.allowed:
        if is_new_chat: usage_store.increment_chat_start(user_id)
        reply = relay.send_message(text, history, decision.model_id)
        usage_store.increment_response(user_id, decision.is_advanced_model)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from modelflow.models import UsageRecord
from modelflow.plans import Plan


class DenialKind(str, Enum):
    """Which limit blocked the request."""
    DAILY_CHAT_LIMIT = "daily_chat_limit"
    CHAT_RESPONSE_LIMIT = "chat_response_limit"


class QuotaExceededError(Exception):
    """Raised by callers that turn a Denied decision into an error."""

    def __init__(self, kind: DenialKind, limit_value: int):
        self.kind = kind
        self.limit_value = limit_value
        super().__init__(_denial_message(kind, limit_value))


def _denial_message(kind: DenialKind, limit_value: int) -> str:
    if kind == DenialKind.DAILY_CHAT_LIMIT:
        return (
            f"You've reached your daily limit of {limit_value} chats. "
            f"It resets at midnight UTC."
        )
    return (
        f"You've reached the limit of {limit_value} responses for this chat. "
        f"Start a new chat to continue."
    )


@dataclass(frozen=True)
class Allowed:
    """The request may proceed on ``model_id``."""
    model_id: str
    is_advanced_model: bool
    is_fallback: bool = False  # Max plan silently downgraded to the standard model

    allowed = True


@dataclass(frozen=True)
class Denied:
    """The request must be blocked."""
    kind: DenialKind
    limit_value: int

    allowed = False

    @property
    def message(self) -> str:
        return _denial_message(self.kind, self.limit_value)

    def to_error(self) -> QuotaExceededError:
        return QuotaExceededError(self.kind, self.limit_value)


Decision = Union[Allowed, Denied]


def _reached(count: int, limit: Optional[int]) -> bool:
    return limit is not None and count >= limit


def evaluate(plan: Plan, usage: UsageRecord, is_new_chat: bool) -> Decision:
    """
    Decide whether a message may be sent and which model serves it.

    Args:
        plan: Effective plan of the acting user (custom limits applied).
        usage: Today's usage snapshot.
        is_new_chat: True when this message opens a new chat session.

    Returns:
        Allowed or Denied.
    """
    if plan.is_owner:
        return Allowed(
            model_id=plan.advanced_model_id or plan.model_id,
            is_advanced_model=True,
        )

    if is_new_chat and _reached(usage.chats_started_today, plan.chats_per_day):
        return Denied(DenialKind.DAILY_CHAT_LIMIT, plan.chats_per_day)

    # The per-chat counters belong to the previous chat until the caller
    # records the chat start.
    responses = 0 if is_new_chat else usage.responses_in_current_chat
    advanced_uses = 0 if is_new_chat else usage.advanced_model_uses_in_current_chat

    if _reached(responses, plan.responses_per_chat):
        return Denied(DenialKind.CHAT_RESPONSE_LIMIT, plan.responses_per_chat)

    if not plan.has_advanced_tier:
        return Allowed(model_id=plan.model_id, is_advanced_model=False)

    if not _reached(advanced_uses, plan.advanced_model_uses_per_chat):
        return Allowed(model_id=plan.advanced_model_id, is_advanced_model=True)

    return Allowed(model_id=plan.model_id, is_advanced_model=False, is_fallback=True)


@dataclass(frozen=True)
class QuotaSummary:
    """Remaining quota for display. ``None`` means unbounded."""
    plan_id: str
    responses_used: int
    responses_limit: Optional[int]
    responses_remaining: Optional[int]
    chats_used: int
    chats_limit: Optional[int]
    chats_remaining: Optional[int]
    advanced_uses_remaining: Optional[int]
    can_send_message: bool
    can_start_chat: bool

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "responses_used": self.responses_used,
            "responses_limit": self.responses_limit,
            "responses_remaining": self.responses_remaining,
            "chats_used": self.chats_used,
            "chats_limit": self.chats_limit,
            "chats_remaining": self.chats_remaining,
            "advanced_uses_remaining": self.advanced_uses_remaining,
            "can_send_message": self.can_send_message,
            "can_start_chat": self.can_start_chat,
        }


def _remaining(used: int, limit: Optional[int]) -> Optional[int]:
    if limit is None:
        return None
    return max(0, limit - used)


def quota_summary(plan: Plan, usage: UsageRecord) -> QuotaSummary:
    """Summarize what the user has left today and in the active chat."""
    if plan.has_advanced_tier:
        advanced_remaining = _remaining(
            usage.advanced_model_uses_in_current_chat,
            plan.advanced_model_uses_per_chat,
        )
    else:
        advanced_remaining = 0

    return QuotaSummary(
        plan_id=plan.id.value,
        responses_used=usage.responses_in_current_chat,
        responses_limit=plan.responses_per_chat,
        responses_remaining=_remaining(usage.responses_in_current_chat, plan.responses_per_chat),
        chats_used=usage.chats_started_today,
        chats_limit=plan.chats_per_day,
        chats_remaining=_remaining(usage.chats_started_today, plan.chats_per_day),
        advanced_uses_remaining=advanced_remaining,
        can_send_message=evaluate(plan, usage, is_new_chat=False).allowed,
        can_start_chat=evaluate(plan, usage, is_new_chat=True).allowed,
    )
