"""
Plan catalog for ModelFlow.

Static table of the Free, Pro, Max and Owner tiers and their entitlements.
``get_plan`` is the only lookup the rest of the package uses.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional

from modelflow.config import get_models, get_owner_identities
from modelflow.models import CustomLimits, PlanAssignment


class PlanId(str, Enum):
    """Plan tiers."""
    FREE = "free"
    PRO = "pro"
    MAX = "max"
    OWNER = "owner"


@dataclass(frozen=True)
class Plan:
    """
    Entitlements of a plan tier.

    ``None`` in a limit field means unbounded.
    """
    id: PlanId
    name: str
    display_name: str
    icon: str
    color: str
    model_id: str
    responses_per_chat: Optional[int]
    chats_per_day: Optional[int]
    advanced_model_id: Optional[str] = None
    advanced_model_uses_per_chat: Optional[int] = 0
    requires_approval: bool = False
    features: tuple[str, ...] = ()

    @property
    def is_owner(self) -> bool:
        return self.id == PlanId.OWNER

    @property
    def has_advanced_tier(self) -> bool:
        return self.advanced_model_id is not None

    def with_limits(self, limits: Optional[CustomLimits]) -> "Plan":
        """Return a copy with custom limits applied over the plan defaults."""
        if limits is None or self.is_owner:
            return self
        changes = {}
        if limits.responses_per_chat is not None:
            changes["responses_per_chat"] = limits.responses_per_chat
        if limits.chats_per_day is not None:
            changes["chats_per_day"] = limits.chats_per_day
        if not changes:
            return self
        return replace(self, **changes)


def _build_catalog(models: dict[str, str]) -> dict[PlanId, Plan]:
    basic = models["basic"]
    standard = models["standard"]
    advanced = models["advanced"]

    return {
        PlanId.FREE: Plan(
            id=PlanId.FREE,
            name="Free Plan",
            display_name="Free",
            icon="🆓",
            color="#71717a",
            model_id=basic,
            responses_per_chat=5,
            chats_per_day=2,
            features=(
                "5 responses per chat",
                "2 chats per day",
                "DeepSeek R1 7B model",
                "Basic support",
            ),
        ),
        PlanId.PRO: Plan(
            id=PlanId.PRO,
            name="ModelFlow Pro",
            display_name="Pro",
            icon="⚡",
            color="#58a6ff",
            model_id=standard,
            responses_per_chat=8,
            chats_per_day=3,
            requires_approval=True,
            features=(
                "8 responses per chat",
                "3 chats per day",
                "GPT-OSS 20B model",
                "Priority support",
                "Request custom limits",
            ),
        ),
        PlanId.MAX: Plan(
            id=PlanId.MAX,
            name="ModelFlow Max",
            display_name="Max",
            icon="🚀",
            color="#f59e0b",
            model_id=standard,
            responses_per_chat=10,
            chats_per_day=4,
            advanced_model_id=advanced,
            advanced_model_uses_per_chat=2,
            requires_approval=True,
            features=(
                "10 responses per chat",
                "4 chats per day",
                "GPT-OSS 120B model (2x per chat)",
                "Fallback to GPT-OSS 20B",
                "Premium support",
            ),
        ),
        PlanId.OWNER: Plan(
            id=PlanId.OWNER,
            name="Owner",
            display_name="Owner (Unlimited)",
            icon="👑",
            color="#10b981",
            model_id=advanced,
            responses_per_chat=None,
            chats_per_day=None,
            advanced_model_id=advanced,
            advanced_model_uses_per_chat=None,
            features=(
                "Unlimited everything",
                "All models access",
                "Admin panel access",
            ),
        ),
    }


def _coerce_plan_id(plan_id: object) -> Optional[PlanId]:
    if isinstance(plan_id, PlanId):
        return plan_id
    if not isinstance(plan_id, str):
        return None
    try:
        return PlanId(plan_id.strip().lower())
    except ValueError:
        return None


def get_plan(plan_id: object) -> Plan:
    """Return the plan definition. Unknown ids fall back to Free."""
    catalog = _build_catalog(get_models())
    key = _coerce_plan_id(plan_id)
    if key is None:
        return catalog[PlanId.FREE]
    return catalog[key]


def is_known_plan(plan_id: object) -> bool:
    return _coerce_plan_id(plan_id) is not None


def all_plans() -> list[Plan]:
    return list(_build_catalog(get_models()).values())


def requestable_plans() -> list[Plan]:
    """Plans a user has to ask an administrator for."""
    return [p for p in all_plans() if p.requires_approval]


def is_owner_identity(
    email: Optional[str],
    owner_identities: Optional[Iterable[str]] = None,
) -> bool:
    """Exact match of ``email`` against the administrator identities."""
    if not email:
        return False
    identities = get_owner_identities() if owner_identities is None else owner_identities
    return email in set(identities)


def resolve_user_plan(
    email: Optional[str],
    assignment: Optional[PlanAssignment],
    owner_identities: Optional[Iterable[str]] = None,
) -> Plan:
    """
    Resolve the plan that applies to a user.

    Owner identities always get the Owner plan regardless of what is stored.
    Everyone else gets their assigned plan with custom limits applied, or
    Free when nothing is assigned.
    """
    if is_owner_identity(email, owner_identities):
        return get_plan(PlanId.OWNER)
    if assignment is None:
        return get_plan(PlanId.FREE)

    plan = get_plan(assignment.plan_id)
    if plan.is_owner:
        # Owner is never granted through a stored assignment.
        return get_plan(PlanId.FREE)
    return plan.with_limits(assignment.custom_limits)
