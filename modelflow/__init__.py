"""
ModelFlow - plan entitlements and usage quotas for an LLM chat client.

Check a message against the user's plan:
    from modelflow import get_plan, evaluate, UsageStore, InMemoryDocumentStore

    usage_store = UsageStore(InMemoryDocumentStore())
    usage = usage_store.get_usage("user_123")

    decision = evaluate(get_plan("max"), usage, is_new_chat=True)
    print(decision.allowed)            # True
    print(decision.model_id)           # "openai/gpt-oss-120b:novita"

Run a whole chat (quota checks, relay call, counters):
    from modelflow import ChatController, UpgradeWorkflow, MockRelay

    controller = ChatController(usage_store, UpgradeWorkflow(store), MockRelay())
    controller.sign_in("user_123", "user@example.com")
    reply = controller.send_message("Hello")

Approve plan upgrades:
    workflow = UpgradeWorkflow(store)
    request = workflow.submit_request("user_123", "pro", "Need longer chats")
    workflow.approve(request.id, "admin@example.com")
"""

from modelflow.config import (
    get_models,
    set_models,
    get_owner_identities,
    set_owner_identities,
    get_relay_settings,
)
from modelflow.models import (
    CustomLimits,
    PlanAssignment,
    RequestStatus,
    UpgradeRequest,
    UsageRecord,
)
from modelflow.plans import (
    Plan,
    PlanId,
    get_plan,
    all_plans,
    requestable_plans,
    is_owner_identity,
    resolve_user_plan,
)
from modelflow.storage import (
    DocumentStore,
    InMemoryDocumentStore,
    SQLiteDocumentStore,
    StoreUnavailableError,
)
from modelflow.usage import UsageStore
from modelflow.entitlements import (
    Allowed,
    Denied,
    DenialKind,
    QuotaExceededError,
    QuotaSummary,
    evaluate,
    quota_summary,
)
from modelflow.upgrades import (
    UpgradeWorkflow,
    InvalidStateTransitionError,
    RequestNotFoundError,
    PlanNotRequestableError,
)
from modelflow.relay import (
    InferenceRelay,
    RelayResponse,
    RelayError,
    MockRelay,
    OpenAICompatibleRelay,
    HTTPRelay,
)
from modelflow.state import AppState
from modelflow.metrics import MetricsCollector
from modelflow.chat import ChatController, ChatReply, SendInProgressError, NotSignedInError


__version__ = "1.0.0"
__all__ = [
    # Configuration
    "get_models",
    "set_models",
    "get_owner_identities",
    "set_owner_identities",
    "get_relay_settings",
    # Data
    "CustomLimits",
    "PlanAssignment",
    "RequestStatus",
    "UpgradeRequest",
    "UsageRecord",
    # Plans
    "Plan",
    "PlanId",
    "get_plan",
    "all_plans",
    "requestable_plans",
    "is_owner_identity",
    "resolve_user_plan",
    # Storage
    "DocumentStore",
    "InMemoryDocumentStore",
    "SQLiteDocumentStore",
    "StoreUnavailableError",
    "UsageStore",
    # Entitlements
    "Allowed",
    "Denied",
    "DenialKind",
    "QuotaExceededError",
    "QuotaSummary",
    "evaluate",
    "quota_summary",
    # Upgrades
    "UpgradeWorkflow",
    "InvalidStateTransitionError",
    "RequestNotFoundError",
    "PlanNotRequestableError",
    # Relay
    "InferenceRelay",
    "RelayResponse",
    "RelayError",
    "MockRelay",
    "OpenAICompatibleRelay",
    "HTTPRelay",
    # Chat
    "AppState",
    "MetricsCollector",
    "ChatController",
    "ChatReply",
    "SendInProgressError",
    "NotSignedInError",
]
