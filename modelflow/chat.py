"""
Chat controller for ModelFlow.

Bridges the application state to the entitlement engine, the usage store
and the inference relay. For every message it runs:

    evaluate -> increment chat start (new chat) -> relay -> increment response

A relay failure on a model other than the plan's baseline is retried once
on the baseline. A send that finally fails leaves the response counter
untouched; a chat slot taken for it stays consumed.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from modelflow.entitlements import Decision, QuotaSummary, evaluate, quota_summary
from modelflow.metrics import MetricsCollector
from modelflow.models import UsageRecord
from modelflow.plans import Plan, PlanId, get_plan, resolve_user_plan
from modelflow.relay import InferenceRelay, RelayError, format_history
from modelflow.state import AppState
from modelflow.storage import StoreUnavailableError
from modelflow.upgrades import UpgradeWorkflow
from modelflow.usage import UsageStore


logger = logging.getLogger(__name__)


class SendInProgressError(RuntimeError):
    """Raised when a send starts while another one is still in flight."""
    pass


class NotSignedInError(RuntimeError):
    """Raised when sending without a signed-in user."""
    pass


@dataclass
class ChatReply:
    """Outcome of ``ChatController.send_message``."""
    decision: Decision
    usage: UsageRecord
    text: Optional[str] = None
    model: Optional[str] = None
    retried: bool = False
    notice: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.decision.allowed and self.text is not None

    @property
    def denial_message(self) -> Optional[str]:
        return None if self.decision.allowed else self.decision.message


class ChatController:
    """
    Owns the application state of one signed-in client.

    Example:
        ```python
        controller = ChatController(usage_store, workflow, MockRelay())
        controller.sign_in("user_123", "user@example.com")
        reply = controller.send_message("Hello")
        if not reply.sent:
            print(reply.denial_message)
        ```
    """

    def __init__(
        self,
        usage_store: UsageStore,
        workflow: UpgradeWorkflow,
        relay: InferenceRelay,
        state: Optional[AppState] = None,
        metrics: Optional[MetricsCollector] = None,
        owner_identities: Optional[Iterable[str]] = None,
    ):
        self.usage_store = usage_store
        self.workflow = workflow
        self.relay = relay
        self.state = state or AppState()
        self.metrics = metrics
        self.owner_identities = frozenset(owner_identities) if owner_identities is not None else None
        self._send_lock = threading.Lock()

    # =========================================================================
    # Session
    # =========================================================================

    def sign_in(self, user_id: str, email: Optional[str] = None) -> Plan:
        """Load plan and usage for a user and start with a fresh chat."""
        self.state.update(
            user_id=user_id,
            email=email,
            current_chat_id=None,
            messages=[],
            is_new_chat=True,
            last_decision=None,
        )
        plan = self.refresh_plan()
        self.state.set("usage", self._read_usage(user_id, plan))
        logger.info("User %s signed in on plan %s", user_id, plan.id.value)
        return plan

    def sign_out(self) -> None:
        self.state.reset()

    def refresh_plan(self) -> Plan:
        """Re-read the stored plan assignment, e.g. after an approval."""
        user_id = self._require_user()
        email = self.state.get("email")
        try:
            assignment = self.workflow.get_plan_assignment(user_id)
        except StoreUnavailableError as exc:
            logger.warning("Could not load plan for %s, using free: %s", user_id, exc)
            self._record_store_error(exc)
            assignment = None
        plan = resolve_user_plan(email, assignment, self.owner_identities)
        self.state.set("plan", plan)
        return plan

    def new_chat(self) -> None:
        """The next message opens a new chat session."""
        self.state.update(current_chat_id=None, messages=[], is_new_chat=True)

    def resume_chat(self, chat_id: str, messages: Optional[list[dict]] = None) -> None:
        """Continue an existing chat. Resuming never consumes a chat slot."""
        self.state.update(
            current_chat_id=chat_id,
            messages=list(messages or []),
            is_new_chat=False,
        )

    # =========================================================================
    # Messaging
    # =========================================================================

    def send_message(self, text: str) -> ChatReply:
        """
        Send one user message.

        Returns:
            ChatReply. A Denied decision comes back as a reply, not an error.

        Raises:
            SendInProgressError: Another send is in flight.
            RelayError: The model call failed, including the baseline retry.
        """
        if not text or not text.strip():
            raise ValueError("message must not be empty")
        user_id = self._require_user()

        if not self._send_lock.acquire(blocking=False):
            raise SendInProgressError("A message is already being sent for this chat")
        try:
            return self._send(user_id, text)
        finally:
            self._send_lock.release()

    def _send(self, user_id: str, text: str) -> ChatReply:
        plan: Plan = self.state.get("plan") or get_plan(PlanId.FREE)
        is_new_chat = bool(self.state.get("is_new_chat"))
        usage = self._read_usage(user_id, plan)

        decision = evaluate(plan, usage, is_new_chat)
        self.state.set("last_decision", decision)
        if self.metrics:
            self.metrics.record_decision(
                user_id,
                plan.id.value,
                decision.allowed,
                model_id=getattr(decision, "model_id", None),
                denial_kind=None if decision.allowed else decision.kind.value,
                is_fallback=getattr(decision, "is_fallback", False),
            )

        if not decision.allowed:
            self.state.set("usage", usage)
            return ChatReply(decision=decision, usage=usage)

        if is_new_chat:
            if not plan.is_owner:
                usage = self.usage_store.increment_chat_start(user_id)
            self.state.update(
                current_chat_id=uuid.uuid4().hex,
                messages=[],
                is_new_chat=False,
            )
            self.state.set("usage", usage)

        history = format_history(self.state.get("messages") or [])
        model_id = decision.model_id
        was_advanced = decision.is_advanced_model
        retried = False

        try:
            response = self.relay.send_message(text, history, model_id)
        except RelayError as exc:
            self._record_relay_failure(user_id, model_id, exc)
            if model_id == plan.model_id:
                raise
            logger.warning("Retrying message for %s on %s after %s failed", user_id, plan.model_id, model_id)
            failed_model = model_id
            model_id = plan.model_id
            was_advanced = False
            retried = True
            try:
                response = self.relay.send_message(text, history, model_id)
            except RelayError as retry_exc:
                self._record_relay_failure(user_id, model_id, retry_exc)
                raise retry_exc from exc

        if not plan.is_owner:
            usage = self.usage_store.increment_response(user_id, was_advanced_model=was_advanced)

        now = datetime.now(timezone.utc).isoformat()
        messages = list(self.state.get("messages") or [])
        messages.append({"role": "user", "content": text, "timestamp": now})
        messages.append({"role": "assistant", "content": response.text, "model": response.model, "timestamp": now})
        self.state.set("messages", messages)
        self.state.set("usage", usage)

        if self.metrics:
            self.metrics.record_exchange(user_id, response.model, retried)

        if retried:
            notice = f"{failed_model} unavailable. Using {model_id}."
        elif decision.is_fallback:
            notice = (
                f"Advanced model limit reached for this chat "
                f"({plan.advanced_model_uses_per_chat} uses). Using {model_id}."
            )
        else:
            notice = None

        return ChatReply(
            decision=decision,
            usage=usage,
            text=response.text,
            model=response.model,
            retried=retried,
            notice=notice,
        )

    # =========================================================================
    # Quota
    # =========================================================================

    def quota_summary(self) -> QuotaSummary:
        user_id = self._require_user()
        plan: Plan = self.state.get("plan") or get_plan(PlanId.FREE)
        usage = self._read_usage(user_id, plan)
        self.state.set("usage", usage)
        return quota_summary(plan, usage)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_user(self) -> str:
        user_id = self.state.get("user_id")
        if not user_id:
            raise NotSignedInError("No user is signed in")
        return user_id

    def _read_usage(self, user_id: str, plan: Plan) -> UsageRecord:
        if plan.is_owner:
            return UsageRecord.zeroed(user_id, datetime.now(timezone.utc))
        return self.usage_store.get_usage(user_id)

    def _record_relay_failure(self, user_id: str, model_id: str, exc: RelayError) -> None:
        logger.error("Relay failed for %s on %s: %s", user_id, model_id, exc)
        if self.metrics:
            self.metrics.record_relay_failure(user_id, model_id, str(exc), timed_out=exc.timed_out)

    def _record_store_error(self, exc: StoreUnavailableError) -> None:
        if self.metrics:
            self.metrics.record_store_error(exc.operation, exc.path, str(exc))
