"""Workflow metrics and tracing spans.

``WorkflowMetrics`` is the interface the runtime reports to. The base class
does nothing, so a runtime built without metrics still works.
``RegistryWorkflowMetrics`` writes to a ``core.metrics.MetricsRegistry``.
"""

import time
from contextlib import contextmanager
from typing import Any, Iterator

import structlog

from core.constants import ActionType, StepState
from core.metrics import MetricsRegistry

logger = structlog.get_logger(__name__)

_CYCLE_BUCKETS = (
    (1, "lt_1s"),
    (5, "lt_5s"),
    (10, "lt_10s"),
    (30, "lt_30s"),
    (60, "lt_1m"),
    (300, "lt_5m"),
    (600, "lt_10m"),
    (1800, "lt_30m"),
    (3600, "lt_1h"),
)


def cycle_time_bucket(seconds: float) -> str:
    for limit, label in _CYCLE_BUCKETS:
        if seconds < limit:
            return label
    return "gte_1h"


class WorkflowMetrics:
    """No-op metrics sink. Subclass and override what you need."""

    def record_transition(self, action_type: ActionType, from_state: StepState, to_state: StepState) -> None:
        pass

    def record_step_claimed(self, action_type: ActionType) -> None:
        pass

    def record_step_started(self, action_type: ActionType) -> None:
        pass

    def record_step_advanced(self, action_type: ActionType) -> None:
        pass

    def record_step_completed(self, action_type: ActionType) -> None:
        pass

    def record_step_failed(self, action_type: ActionType) -> None:
        pass

    def record_step_skipped(self, action_type: ActionType) -> None:
        pass

    def record_cycle_time(self, action_type: ActionType, seconds: float) -> None:
        pass

    def record_handler_duration(self, action_type: ActionType, operation: str, seconds: float) -> None:
        pass

    def record_handler_error(self, action_type: ActionType, operation: str, error_type: str) -> None:
        pass

    def record_instance_created(self, template_id: str) -> None:
        pass

    def record_instance_completed(self, template_id: str, seconds: float) -> None:
        pass

    def record_instance_failed(self, template_id: str) -> None:
        pass

    def record_notification(self, action_type: ActionType, success: bool) -> None:
        pass

    def record_conflict(self, operation: str) -> None:
        pass


class RegistryWorkflowMetrics(WorkflowMetrics):
    """Writes workflow metrics into a ``MetricsRegistry``."""

    def __init__(self, registry: MetricsRegistry = None):
        self.registry = registry or MetricsRegistry()

    def _step(self, name: str, action_type: ActionType) -> None:
        self.registry.inc(f"workflow_steps_{name}_total", labels={"action_type": action_type.value})

    def record_transition(self, action_type, from_state, to_state):
        self.registry.inc(
            "workflow_transitions_total",
            labels={"action_type": action_type.value, "from": from_state.value, "to": to_state.value},
        )

    def record_step_claimed(self, action_type):
        self._step("claimed", action_type)

    def record_step_started(self, action_type):
        self._step("started", action_type)

    def record_step_advanced(self, action_type):
        self._step("advanced", action_type)

    def record_step_completed(self, action_type):
        self._step("completed", action_type)

    def record_step_failed(self, action_type):
        self._step("failed", action_type)

    def record_step_skipped(self, action_type):
        self._step("skipped", action_type)

    def record_cycle_time(self, action_type, seconds):
        self.registry.observe("workflow_step_cycle_seconds", seconds, labels={"action_type": action_type.value})
        self.registry.inc(
            "workflow_step_cycle_bucket_total",
            labels={"action_type": action_type.value, "bucket": cycle_time_bucket(seconds)},
        )

    def record_handler_duration(self, action_type, operation, seconds):
        self.registry.observe(
            "workflow_handler_seconds",
            seconds,
            labels={"action_type": action_type.value, "operation": operation},
        )

    def record_handler_error(self, action_type, operation, error_type):
        self.registry.inc(
            "workflow_handler_errors_total",
            labels={"action_type": action_type.value, "operation": operation, "error": error_type},
        )

    def record_instance_created(self, template_id):
        self.registry.inc("workflow_instances_created_total", labels={"template_id": template_id})

    def record_instance_completed(self, template_id, seconds):
        self.registry.inc("workflow_instances_completed_total", labels={"template_id": template_id})
        self.registry.observe("workflow_instance_seconds", seconds, labels={"template_id": template_id})

    def record_instance_failed(self, template_id):
        self.registry.inc("workflow_instances_failed_total", labels={"template_id": template_id})

    def record_notification(self, action_type, success):
        outcome = "sent" if success else "failed"
        self.registry.inc(
            "workflow_notifications_total",
            labels={"action_type": action_type.value, "outcome": outcome},
        )

    def record_conflict(self, operation):
        self.registry.inc("workflow_conflicts_total", labels={"operation": operation})


@contextmanager
def workflow_span(name: str, **attributes: Any) -> Iterator[dict[str, Any]]:
    """Log the start and end of an operation with its duration.

    Yields a dict; keys added to it are logged on the end event.
    """
    started = time.monotonic()
    extra: dict[str, Any] = {}
    logger.debug("span_start", span=name, **attributes)
    try:
        yield extra
    except Exception as e:
        logger.info(
            "span_end",
            span=name,
            success=False,
            error=str(e),
            error_type=type(e).__name__,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            **{**attributes, **extra},
        )
        raise
    logger.debug(
        "span_end",
        span=name,
        success=True,
        duration_ms=round((time.monotonic() - started) * 1000, 2),
        **{**attributes, **extra},
    )
