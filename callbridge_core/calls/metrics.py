"""
Call metrics sink.

Tracks command latency, match latency and match success over a rolling
window, and warns when either exceeds its service level target.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog

from callbridge_core.telemetry.metrics import MetricsRegistry

logger = structlog.get_logger(__name__)

COMMAND_RESPONSE_TARGET_MS = 1000.0
MATCHING_TIME_TARGET_MS = 10000.0


class CallMetrics:
    """
    Usage:
        metrics = CallMetrics()
        with metrics.time_command("initiate_call"):
            ...
        metrics.record_matching_time(120.0, matched=True)
    """

    def __init__(
        self,
        registry: Optional[MetricsRegistry] = None,
        window: int = 100,
        command_target_ms: float = COMMAND_RESPONSE_TARGET_MS,
        matching_target_ms: float = MATCHING_TIME_TARGET_MS,
    ):
        self.registry = registry or MetricsRegistry(prefix="callbridge")
        self._command_target_ms = command_target_ms
        self._matching_target_ms = matching_target_ms

        self._command_time = self.registry.histogram(
            "command_duration_ms", "Call Manager command latency", window=window
        )
        self._matching_time = self.registry.histogram(
            "matching_duration_ms", "Time to pair a request", window=window
        )
        self._match_attempts = self.registry.counter(
            "match_attempts_total", "Matching attempts", labels=["outcome"]
        )
        self._commands = self.registry.counter(
            "commands_total", "Call Manager commands", labels=["command", "outcome"]
        )
        self._queue_length = self.registry.gauge("queue_length", "Requests waiting")
        self._active_calls = self.registry.gauge("active_calls", "Calls in progress")

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def record_command_time(self, command: str, duration_ms: float, success: bool = True) -> None:
        self._command_time.observe(duration_ms)
        self._commands.inc(labels={"command": command, "outcome": "success" if success else "failure"})

        if duration_ms > self._command_target_ms:
            logger.warning(
                "command_sla_exceeded",
                command=command,
                duration_ms=round(duration_ms, 2),
                target_ms=self._command_target_ms,
            )

    def record_matching_time(self, duration_ms: float, matched: bool = True) -> None:
        self._match_attempts.inc(labels={"outcome": "matched" if matched else "unmatched"})
        if not matched:
            return

        self._matching_time.observe(duration_ms)
        if duration_ms > self._matching_target_ms:
            logger.warning(
                "matching_sla_exceeded",
                duration_ms=round(duration_ms, 2),
                target_ms=self._matching_target_ms,
            )

    def set_queue_length(self, length: int) -> None:
        self._queue_length.set(length)

    def set_active_calls(self, count: int) -> None:
        self._active_calls.set(count)

    @contextmanager
    def time_command(self, command: str) -> Iterator[Dict[str, Any]]:
        """Time a block; set ``outcome["success"]`` inside it to record failures."""
        outcome: Dict[str, Any] = {"success": True}
        start = time.perf_counter()
        try:
            yield outcome
        except Exception:
            outcome["success"] = False
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.record_command_time(command, duration_ms, success=outcome["success"])

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def get_stats(self) -> Dict[str, float]:
        matched = self._match_attempts.get(labels={"outcome": "matched"})
        unmatched = self._match_attempts.get(labels={"outcome": "unmatched"})
        total = matched + unmatched
        within_target = sum(
            1 for sample in self._matching_time.recent() if sample <= self._matching_target_ms
        )
        recent = len(self._matching_time.recent())

        return {
            "average_command_time": self._command_time.recent_mean(),
            "average_matching_time": self._matching_time.recent_mean(),
            "matching_success_rate": matched / total if total else 1.0,
            "matching_within_target_rate": within_target / recent if recent else 1.0,
        }


__all__ = ["CallMetrics", "COMMAND_RESPONSE_TARGET_MS", "MATCHING_TIME_TARGET_MS"]
