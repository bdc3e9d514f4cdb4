"""
Basic usage examples for ModelFlow.

Runs a Free user into their limits and walks a Max upgrade through the
admin workflow, all with the mock relay (no API calls).
"""

from modelflow import (
    ChatController,
    CustomLimits,
    InMemoryDocumentStore,
    MockRelay,
    UpgradeWorkflow,
    UsageStore,
    set_owner_identities,
)


def example_free_plan_limits():
    """Free plan: 5 responses per chat, 2 chats per day."""
    print("=" * 60)
    print("Example 1: Free Plan Limits")
    print("=" * 60)

    store = InMemoryDocumentStore()
    controller = ChatController(UsageStore(store), UpgradeWorkflow(store), MockRelay())
    controller.sign_in("user_free", "free@example.com")

    for i in range(6):
        reply = controller.send_message(f"Question {i + 1}")
        if reply.sent:
            print(f"  #{i + 1}: {reply.model}")
        else:
            print(f"  #{i + 1}: blocked - {reply.denial_message}")

    summary = controller.quota_summary()
    print(f"Chats used: {summary.chats_used}/{summary.chats_limit}")
    print()


def example_upgrade_to_max():
    """Request Max, approve it, and watch the advanced model fall back."""
    print("=" * 60)
    print("Example 2: Upgrade Workflow and Max Fallback")
    print("=" * 60)

    set_owner_identities(["admin@example.com"])

    store = InMemoryDocumentStore()
    workflow = UpgradeWorkflow(store)
    controller = ChatController(UsageStore(store), workflow, MockRelay())

    request = workflow.submit_request(
        "user_max", "max", "Research project", user_email="max@example.com"
    )
    print(f"Pending requests: {len(workflow.list_pending_requests())}")

    workflow.approve(request.id, "admin@example.com", CustomLimits(chats_per_day=6))

    controller.sign_in("user_max", "max@example.com")
    for i in range(3):
        reply = controller.send_message(f"Hard question {i + 1}")
        print(f"  #{i + 1}: {reply.model}" + (f" ({reply.notice})" if reply.notice else ""))

    print(f"Chats per day: {controller.state.get('plan').chats_per_day}")
    print()


if __name__ == "__main__":
    example_free_plan_limits()
    example_upgrade_to_max()
