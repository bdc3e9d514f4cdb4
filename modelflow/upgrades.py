"""
Upgrade workflow for ModelFlow.

Users ask for a plan that needs approval; an administrator approves or
denies the request. State machine over ``UpgradeRequest.status``:

    pending -> approved | denied
    approved -> revoked          (through ``revoke`` only)

Authorization is the caller's job. The workflow records who resolved a
request but does not check whether they may.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from modelflow.models import (
    CustomLimits,
    PlanAssignment,
    RequestStatus,
    UpgradeRequest,
)
from modelflow.plans import PlanId, get_plan, is_known_plan
from modelflow.storage import DocumentStore


logger = logging.getLogger(__name__)

REQUESTS_PATH = "upgradeRequests"


def plan_path(user_id: str) -> str:
    return f"users/{user_id}/plan"


def request_path(request_id: str) -> str:
    return f"{REQUESTS_PATH}/{request_id}"


class RequestNotFoundError(LookupError):
    """Raised when an upgrade request id does not exist."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Upgrade request '{request_id}' not found")


class InvalidStateTransitionError(Exception):
    """Raised when resolving a request that is no longer pending."""

    def __init__(self, request_id: str, status: RequestStatus, action: str):
        self.request_id = request_id
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} upgrade request '{request_id}': "
            f"request is already {status.value}"
        )


class PlanNotRequestableError(ValueError):
    """Raised when a plan cannot be requested through the workflow."""

    def __init__(self, plan_id: str):
        self.plan_id = plan_id
        super().__init__(f"Plan '{plan_id}' cannot be requested")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UpgradeWorkflow:
    """
    Plan-change requests and their resolution.

    Example:
        ```python
        workflow = UpgradeWorkflow(InMemoryDocumentStore())
        request = workflow.submit_request("user_123", "pro", "Need longer chats",
                                          user_email="user@example.com")
        workflow.approve(request.id, "admin@example.com",
                         override_limits=CustomLimits(responses_per_chat=12))
        workflow.get_plan_assignment("user_123").plan_id   # "pro"
        ```
    """

    def __init__(self, store: DocumentStore, clock: Optional[Callable[[], datetime]] = None):
        self._store = store
        self._clock = clock or _utcnow

    # =========================================================================
    # Plan assignments
    # =========================================================================

    def get_plan_assignment(self, user_id: str) -> Optional[PlanAssignment]:
        """Return the stored plan of a user, or None when never assigned."""
        document = self._store.get(plan_path(user_id))
        if not document:
            return None
        return PlanAssignment.from_dict(document)

    def _assign_plan(
        self,
        user_id: str,
        plan_id: str,
        assigned_by: Optional[str],
        custom_limits: Optional[CustomLimits] = None,
    ) -> PlanAssignment:
        assignment = PlanAssignment(
            plan_id=plan_id,
            custom_limits=custom_limits if custom_limits and not custom_limits.is_empty() else None,
            assigned_at=self._clock(),
            assigned_by=assigned_by,
        )
        self._store.set(plan_path(user_id), assignment.to_dict())
        return assignment

    # =========================================================================
    # Requests
    # =========================================================================

    def submit_request(
        self,
        user_id: str,
        requested_plan_id: str,
        reason: str = "",
        custom_limits: Optional[CustomLimits] = None,
        user_email: Optional[str] = None,
    ) -> UpgradeRequest:
        """
        Create a pending request. The user's current plan is not touched.

        Raises:
            PlanNotRequestableError: If the plan is unknown or needs no approval.
        """
        if not is_known_plan(requested_plan_id):
            raise PlanNotRequestableError(str(requested_plan_id))
        plan = get_plan(requested_plan_id)
        if not plan.requires_approval:
            raise PlanNotRequestableError(plan.id.value)

        assignment = self.get_plan_assignment(user_id)
        request = UpgradeRequest(
            user_id=user_id,
            user_email=user_email,
            current_plan_id=assignment.plan_id if assignment else PlanId.FREE.value,
            requested_plan_id=plan.id.value,
            reason=reason or "",
            custom_limits=custom_limits if custom_limits and not custom_limits.is_empty() else None,
            created_at=self._clock(),
        )
        self._store.set(request_path(request.id), request.to_dict())

        logger.info(
            "Upgrade request %s submitted: user=%s %s -> %s",
            request.id, user_id, request.current_plan_id, request.requested_plan_id,
        )
        return request

    def get_request(self, request_id: str) -> UpgradeRequest:
        document = self._store.get(request_path(request_id))
        if not document:
            raise RequestNotFoundError(request_id)
        return UpgradeRequest.from_dict(document)

    def _resolve(
        self,
        request_id: str,
        action: str,
        status: RequestStatus,
        resolver: str,
        note: Optional[str] = None,
    ) -> UpgradeRequest:
        """Move a pending request to ``status`` atomically."""
        if not resolver:
            raise ValueError("approver identity is required")

        resolved_at = self._clock()

        def transition(current: Optional[dict]) -> dict:
            if not current:
                raise RequestNotFoundError(request_id)
            request = UpgradeRequest.from_dict(current)
            if not request.is_pending:
                raise InvalidStateTransitionError(request_id, request.status, action)
            request.status = status
            request.resolved_at = resolved_at
            request.resolved_by = resolver
            request.resolution_note = note or None
            return request.to_dict()

        return UpgradeRequest.from_dict(self._store.transact(request_path(request_id), transition))

    def _reopen(self, resolved: UpgradeRequest) -> None:
        """Undo ``_resolve`` when the follow-up write failed."""

        def reopen(current: Optional[dict]) -> Optional[dict]:
            if not current or current.get("resolved_at") != resolved.to_dict()["resolved_at"]:
                return current
            request = UpgradeRequest.from_dict(current)
            request.status = RequestStatus.PENDING
            request.resolved_at = None
            request.resolved_by = None
            request.resolution_note = None
            return request.to_dict()

        self._store.transact(request_path(resolved.id), reopen)

    def approve(
        self,
        request_id: str,
        approver_identity: str,
        override_limits: Optional[CustomLimits] = None,
    ) -> UpgradeRequest:
        """
        Approve a pending request and assign the requested plan.

        ``override_limits`` replaces the plan defaults for this user.

        Raises:
            RequestNotFoundError: Unknown request id.
            InvalidStateTransitionError: The request is not pending.
        """
        request = self._resolve(request_id, "approve", RequestStatus.APPROVED, approver_identity)
        try:
            self._assign_plan(
                request.user_id,
                request.requested_plan_id,
                assigned_by=approver_identity,
                custom_limits=override_limits,
            )
        except Exception:
            logger.error(
                "Plan assignment failed for request %s, returning it to pending",
                request_id,
            )
            self._reopen(request)
            raise

        logger.info(
            "Upgrade request %s approved by %s: user=%s plan=%s",
            request_id, approver_identity, request.user_id, request.requested_plan_id,
        )
        return request

    def deny(
        self,
        request_id: str,
        approver_identity: str,
        reason: Optional[str] = None,
    ) -> UpgradeRequest:
        """
        Deny a pending request. The user's plan is not touched.

        Raises:
            RequestNotFoundError: Unknown request id.
            InvalidStateTransitionError: The request is not pending.
        """
        request = self._resolve(request_id, "deny", RequestStatus.DENIED, approver_identity, note=reason)
        logger.info("Upgrade request %s denied by %s", request_id, approver_identity)
        return request

    def revoke(self, user_id: str, approver_identity: str) -> PlanAssignment:
        """Reset a user to Free and mark their approved requests revoked."""
        if not approver_identity:
            raise ValueError("approver identity is required")

        now = self._clock()

        def mark_revoked(current: Optional[dict]) -> Optional[dict]:
            if not current or current.get("status") != RequestStatus.APPROVED.value:
                return current
            request = UpgradeRequest.from_dict(current)
            request.status = RequestStatus.REVOKED
            request.resolved_at = now
            request.resolved_by = approver_identity
            return request.to_dict()

        for request in self.get_user_requests(user_id):
            if request.status == RequestStatus.APPROVED:
                self._store.transact(request_path(request.id), mark_revoked)

        assignment = self._assign_plan(user_id, PlanId.FREE.value, assigned_by=approver_identity)
        logger.info("Plan of user %s revoked to free by %s", user_id, approver_identity)
        return assignment

    # =========================================================================
    # Queries
    # =========================================================================

    def list_requests(self, status: Optional[RequestStatus] = None) -> list[UpgradeRequest]:
        """All requests, newest first, optionally filtered by status."""
        requests = []
        for request_id, document in self._store.children(REQUESTS_PATH).items():
            try:
                request = UpgradeRequest.from_dict(document)
            except (KeyError, ValueError, TypeError):
                logger.warning("Skipping malformed upgrade request %s", request_id)
                continue
            if status is None or request.status == status:
                requests.append(request)
        requests.sort(key=lambda r: r.created_at, reverse=True)
        return requests

    def list_pending_requests(self) -> list[UpgradeRequest]:
        return self.list_requests(RequestStatus.PENDING)

    def get_user_requests(self, user_id: str) -> list[UpgradeRequest]:
        return [r for r in self.list_requests() if r.user_id == user_id]

    def has_pending_request(self, user_id: str, plan_id: str) -> bool:
        target = get_plan(plan_id).id.value
        return any(
            r.is_pending and r.requested_plan_id == target
            for r in self.get_user_requests(user_id)
        )

    def request_stats(self) -> dict[str, int]:
        """Count of requests per status, plus the total."""
        stats = {status.value: 0 for status in RequestStatus}
        requests = self.list_requests()
        for request in requests:
            stats[request.status.value] += 1
        stats["total"] = len(requests)
        return stats
