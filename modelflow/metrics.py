"""
Metrics and observability for ModelFlow.

Counts quota decisions, model fallbacks, relay failures and store outages,
and writes a structured log line for each.
"""

import json
import logging
from collections import defaultdict, deque
from dataclasses import dataclass, asdict
from datetime import datetime, UTC
from pathlib import Path
from typing import Optional, Any


@dataclass
class MetricEvent:
    """A single metric event."""
    timestamp: str
    event_type: str  # decision, exchange, relay_failure, store_error
    user_id: str
    data: dict[str, Any]


class MetricsCollector:
    """
    Collects and aggregates metrics from chat operations.
    """

    def __init__(
        self,
        metrics_file: Optional[Path] = None,
        enable_logging: bool = True,
        max_events: int = 10_000,
    ):
        """
        Args:
            metrics_file: Append every event here as one JSON line
            enable_logging: Also emit each event on the "modelflow.metrics" logger
            max_events: Most recent events kept in memory; counters are unbounded
        """
        self.metrics_file = metrics_file
        self.enable_logging = enable_logging

        self.logger = logging.getLogger("modelflow.metrics")
        if enable_logging and not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
                )
            )
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

        self._events: deque[MetricEvent] = deque(maxlen=max_events)
        self._total_events = 0
        self._counters: dict[str, int] = defaultdict(int)

    def record_decision(
        self,
        user_id: str,
        plan_id: str,
        allowed: bool,
        model_id: Optional[str] = None,
        denial_kind: Optional[str] = None,
        is_fallback: bool = False,
        **extra: Any,
    ) -> None:
        """Record an entitlement decision."""
        self._record_event(
            event_type="decision",
            user_id=user_id,
            data={
                "plan_id": plan_id,
                "allowed": allowed,
                "model_id": model_id,
                "denial_kind": denial_kind,
                "is_fallback": is_fallback,
                **extra,
            },
        )
        self._counters["decisions_total"] += 1
        self._counters[f"decisions_by_plan_{plan_id}"] += 1
        if allowed:
            self._counters["decisions_allowed"] += 1
            self._counters[f"decisions_by_model_{model_id}"] += 1
        else:
            self._counters["decisions_denied"] += 1
            self._counters[f"denied_{denial_kind}"] += 1
        if is_fallback:
            self._counters["decisions_fallback"] += 1

    def record_exchange(
        self,
        user_id: str,
        model_id: str,
        retried: bool,
        **extra: Any,
    ) -> None:
        """Record a completed message exchange."""
        self._record_event(
            event_type="exchange",
            user_id=user_id,
            data={"model_id": model_id, "retried": retried, **extra},
        )
        self._counters["exchanges_total"] += 1
        if retried:
            self._counters["exchanges_retried"] += 1

    def record_relay_failure(
        self,
        user_id: str,
        model_id: str,
        error_message: str,
        timed_out: bool = False,
    ) -> None:
        """Record a failed inference call."""
        self._record_event(
            event_type="relay_failure",
            user_id=user_id,
            data={
                "model_id": model_id,
                "error_message": error_message,
                "timed_out": timed_out,
            },
            level=logging.WARNING,
        )
        self._counters["relay_failures_total"] += 1
        if timed_out:
            self._counters["relay_timeouts"] += 1

    def record_store_error(self, operation: str, path: str, error_message: str) -> None:
        """Record a document store outage."""
        self._record_event(
            event_type="store_error",
            user_id="-",
            data={"operation": operation, "path": path, "error_message": error_message},
            level=logging.ERROR,
        )
        self._counters["store_errors_total"] += 1

    def _record_event(
        self,
        event_type: str,
        user_id: str,
        data: dict,
        level: int = logging.INFO,
    ) -> None:
        event = MetricEvent(
            timestamp=datetime.now(UTC).isoformat(),
            event_type=event_type,
            user_id=user_id,
            data=data,
        )

        self._events.append(event)
        self._total_events += 1

        if self.metrics_file:
            with open(self.metrics_file, "a") as f:
                f.write(json.dumps(asdict(event), default=str) + "\n")

        if self.enable_logging:
            self.logger.log(
                level,
                f"{event_type.upper()}: user_id={user_id}, data={data}",
            )

    def get_stats(self) -> dict:
        """Counters and event totals."""
        return {
            "counters": dict(self._counters),
            "total_events": self._total_events,
        }

    def get_events(self, event_type: Optional[str] = None) -> list[MetricEvent]:
        if event_type is None:
            return list(self._events)
        return [e for e in self._events if e.event_type == event_type]

    def reset(self) -> None:
        """Drop recorded events and zero the counters."""
        self._events.clear()
        self._total_events = 0
        self._counters.clear()
