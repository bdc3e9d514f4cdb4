"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default


def date_key(moment: datetime) -> str:
    """Calendar day (UTC) a usage record belongs to, as YYYY-MM-DD."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d")


class RequestStatus(str, Enum):
    """Upgrade request states."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    REVOKED = "revoked"


@dataclass(frozen=True)
class CustomLimits:
    """Per-user override of plan limits."""
    responses_per_chat: Optional[int] = None
    chats_per_day: Optional[int] = None

    def __post_init__(self):
        for name in ("responses_per_chat", "chats_per_day"):
            value = getattr(self, name)
            if value is not None and (not isinstance(value, int) or value < 0):
                raise ValueError(f"{name} must be a non-negative integer")

    def is_empty(self) -> bool:
        return self.responses_per_chat is None and self.chats_per_day is None

    def to_dict(self) -> dict:
        data = {}
        if self.responses_per_chat is not None:
            data["responses_per_chat"] = self.responses_per_chat
        if self.chats_per_day is not None:
            data["chats_per_day"] = self.chats_per_day
        return data

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["CustomLimits"]:
        if not data:
            return None
        try:
            limits = cls(
                responses_per_chat=data.get("responses_per_chat"),
                chats_per_day=data.get("chats_per_day"),
            )
        except ValueError:
            return None
        return None if limits.is_empty() else limits


@dataclass
class PlanAssignment:
    """Plan stored for a user."""
    plan_id: str
    custom_limits: Optional[CustomLimits] = None
    assigned_at: datetime = field(default_factory=_utcnow)
    assigned_by: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "plan_id": self.plan_id,
            "custom_limits": self.custom_limits.to_dict() if self.custom_limits else None,
            "assigned_at": _to_iso(self.assigned_at),
            "assigned_by": self.assigned_by,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlanAssignment":
        return cls(
            plan_id=str(data.get("plan_id") or "free"),
            custom_limits=CustomLimits.from_dict(data.get("custom_limits")),
            assigned_at=_from_iso(data.get("assigned_at")) or _utcnow(),
            assigned_by=data.get("assigned_by"),
        )


@dataclass
class UsageRecord:
    """Counters of one user for one calendar day."""
    user_id: str
    date_key: str
    chats_started_today: int = 0
    responses_in_current_chat: int = 0
    advanced_model_uses_in_current_chat: int = 0
    last_reset_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def zeroed(cls, user_id: str, now: datetime) -> "UsageRecord":
        return cls(user_id=user_id, date_key=date_key(now), last_reset_at=now)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "date_key": self.date_key,
            "chats_started_today": self.chats_started_today,
            "responses_in_current_chat": self.responses_in_current_chat,
            "advanced_model_uses_in_current_chat": self.advanced_model_uses_in_current_chat,
            "last_reset_at": _to_iso(self.last_reset_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UsageRecord":
        return cls(
            user_id=str(data["user_id"]),
            date_key=str(data["date_key"]),
            chats_started_today=_to_int(data.get("chats_started_today")),
            responses_in_current_chat=_to_int(data.get("responses_in_current_chat")),
            advanced_model_uses_in_current_chat=_to_int(
                data.get("advanced_model_uses_in_current_chat")
            ),
            last_reset_at=_from_iso(data.get("last_reset_at")) or _utcnow(),
        )


@dataclass
class UpgradeRequest:
    """A user's request to move to a plan that needs approval."""
    user_id: str
    requested_plan_id: str
    current_plan_id: str = "free"
    user_email: Optional[str] = None
    reason: str = ""
    custom_limits: Optional[CustomLimits] = None
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = field(default_factory=_utcnow)
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None
    id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:16]}")

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_email": self.user_email,
            "current_plan_id": self.current_plan_id,
            "requested_plan_id": self.requested_plan_id,
            "reason": self.reason,
            "custom_limits": self.custom_limits.to_dict() if self.custom_limits else None,
            "status": self.status.value,
            "created_at": _to_iso(self.created_at),
            "resolved_at": _to_iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UpgradeRequest":
        return cls(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            user_email=data.get("user_email"),
            current_plan_id=str(data.get("current_plan_id") or "free"),
            requested_plan_id=str(data["requested_plan_id"]),
            reason=data.get("reason") or "",
            custom_limits=CustomLimits.from_dict(data.get("custom_limits")),
            status=RequestStatus(data.get("status", RequestStatus.PENDING.value)),
            created_at=_from_iso(data.get("created_at")) or _utcnow(),
            resolved_at=_from_iso(data.get("resolved_at")),
            resolved_by=data.get("resolved_by"),
            resolution_note=data.get("resolution_note"),
        )
