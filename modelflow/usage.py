"""
Usage store for ModelFlow.

Persists one UsageRecord per user per calendar day. Daily rollover is lazy:
a record whose ``last_reset_at`` falls on an earlier day is replaced by a
zeroed one the next time it is read or written. There is no background job.

Accounting degrades gracefully. When the document store is unreachable,
reads return a zeroed record and increments are logged and dropped, so an
accounting outage never blocks chat.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from modelflow.models import UsageRecord, date_key
from modelflow.storage import DocumentStore, StoreUnavailableError


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def usage_path(user_id: str, key: str) -> str:
    return f"users/{user_id}/usage/{key}"


class UsageStore:
    """
    Per-user daily usage counters.

    Example:
        ```python
        store = UsageStore(InMemoryDocumentStore())
        store.increment_chat_start("user_123")
        store.increment_response("user_123", was_advanced_model=False)
        usage = store.get_usage("user_123")
        usage.chats_started_today          # 1
        usage.responses_in_current_chat    # 1
        ```
    """

    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Clock] = None,
        on_store_error: Optional[Callable[[StoreUnavailableError], None]] = None,
    ):
        self._store = store
        self._clock = clock or _utcnow
        self._on_store_error = on_store_error

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now

    def _current(self, user_id: str, document: Optional[dict], now: datetime) -> UsageRecord:
        """Stored record for today, or a zeroed one when absent, stale or corrupt."""
        if document is not None:
            try:
                record = UsageRecord.from_dict(document)
            except (KeyError, ValueError, TypeError):
                logger.warning("Discarding malformed usage record for user %s", user_id)
            else:
                today = date_key(now)
                if record.date_key == today and date_key(record.last_reset_at) == today:
                    return record
        return UsageRecord.zeroed(user_id, now)

    def _report(self, error: StoreUnavailableError) -> None:
        if self._on_store_error is not None:
            self._on_store_error(error)

    def get_usage(self, user_id: str) -> UsageRecord:
        """Return today's record, creating a zeroed one if absent or stale."""
        now = self._now()
        path = usage_path(user_id, date_key(now))

        try:
            document = self._store.get(path)
            record = self._current(user_id, document, now)
            if document is None or record.to_dict() != document:
                self._store.transact(path, lambda current: self._current(user_id, current, now).to_dict())
        except StoreUnavailableError as exc:
            logger.warning("Usage store unavailable, using zeroed usage for %s: %s", user_id, exc)
            self._report(exc)
            return UsageRecord.zeroed(user_id, now)

        return record

    def _mutate(
        self,
        user_id: str,
        operation: str,
        apply: Callable[[UsageRecord], None],
    ) -> UsageRecord:
        now = self._now()
        path = usage_path(user_id, date_key(now))

        def transform(current: Optional[dict]) -> dict:
            record = self._current(user_id, current, now)
            apply(record)
            return record.to_dict()

        try:
            return UsageRecord.from_dict(self._store.transact(path, transform))
        except StoreUnavailableError as exc:
            logger.error("Dropped %s for user %s, usage store unavailable: %s", operation, user_id, exc)
            self._report(exc)
            record = UsageRecord.zeroed(user_id, now)
            apply(record)
            return record

    def increment_chat_start(self, user_id: str) -> UsageRecord:
        """
        Count a new chat session and zero the per-chat counters.

        Call exactly once per new chat, never when resuming an existing one.
        """
        def apply(record: UsageRecord) -> None:
            record.chats_started_today += 1
            record.responses_in_current_chat = 0
            record.advanced_model_uses_in_current_chat = 0

        return self._mutate(user_id, "chat start", apply)

    def increment_response(self, user_id: str, was_advanced_model: bool = False) -> UsageRecord:
        """Count one completed model response in the active chat."""
        def apply(record: UsageRecord) -> None:
            record.responses_in_current_chat += 1
            if was_advanced_model:
                record.advanced_model_uses_in_current_chat += 1

        return self._mutate(user_id, "response", apply)

    def reset_current_chat(self, user_id: str) -> UsageRecord:
        """Zero the per-chat counters without consuming a chat slot."""
        def apply(record: UsageRecord) -> None:
            record.responses_in_current_chat = 0
            record.advanced_model_uses_in_current_chat = 0

        return self._mutate(user_id, "chat reset", apply)
