"""Dependency resolution: which PENDING steps may become READY.

Incoming edges of a step are grouped by their ``dependency_logic``:

- every ALL edge must be satisfied (CUSTOM is treated as ALL, with a warning);
- when ANY edges exist, at least one of them must be satisfied.

An unconditional edge is satisfied once its source is COMPLETED or SKIPPED.
A conditional edge additionally needs a COMPLETED source whose branch output
matches the edge; a source that has not finished never satisfies it.
FAILED sources satisfy nothing.

A PENDING step whose conditional edges can never fire (its branch was not
taken) is reported by ``unreachable_steps`` so the runtime can skip it.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import structlog

from core.constants import ConditionType, DependencyLogic, StepState
from workflow.conditions import (
    ConditionEvaluator,
    build_condition_context,
    is_condition,
    resolve_field,
)
from workflow.graph import incoming_edges
from workflow.models import Dependency, Instance, Step

logger = structlog.get_logger(__name__)

_evaluator = ConditionEvaluator()

SATISFYING_STATES = frozenset({StepState.COMPLETED, StepState.SKIPPED})


@dataclass
class Resolution:
    promoted: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class PendingDependency:
    id: str
    title: str
    state: StepState


@dataclass
class DependencyStatus:
    step_id: str
    title: str
    is_satisfied: bool
    dependency_count: int
    satisfied_count: int
    pending_dependencies: list[PendingDependency]
    logic: DependencyLogic


def branch_output(edge: Dependency, source: Step, instance: Optional[Instance] = None) -> Any:
    """Value a conditional edge is matched against.

    A condition in ``condition_config`` is evaluated against the source step;
    otherwise the value is read from ``field`` (default ``branch``) in the
    source's recorded data.
    """
    config = edge.condition_config or {}
    if is_condition(config):
        result = _evaluator.evaluate(config, build_condition_context(source, instance))
        return result.value if result.success else None
    value = resolve_field(config.get("field", "branch"), source.data)
    # Only scalars can select a branch; missing keys resolve to a sentinel
    return value if isinstance(value, (str, int, float, bool)) else None


def _branch_matches(edge: Dependency, output: Any) -> bool:
    condition = edge.effective_condition
    if condition == ConditionType.IF_TRUE:
        return output is True
    if condition == ConditionType.IF_FALSE:
        return output is False
    if condition == ConditionType.SWITCH:
        config = edge.condition_config or {}
        if "values" in config:
            return output in config["values"]
        return output is not None and output == config.get("value")
    return True


def is_edge_satisfied(edge: Dependency, source: Step, instance: Optional[Instance] = None) -> bool:
    if not edge.is_conditional:
        return source.action_state in SATISFYING_STATES
    if source.action_state != StepState.COMPLETED:
        return False
    return _branch_matches(edge, branch_output(edge, source, instance))


def is_edge_dead(edge: Dependency, source: Step, instance: Optional[Instance] = None) -> bool:
    """True when a conditional edge can no longer be satisfied.

    That is the case once its source has COMPLETED down another branch, or
    was SKIPPED. FAILED sources are left alone: recovering from a failure is
    an admin decision.
    """
    if not edge.is_conditional:
        return False
    if source.action_state == StepState.SKIPPED:
        return True
    if source.action_state != StepState.COMPLETED:
        return False
    return not _branch_matches(edge, branch_output(edge, source, instance))


def _is_step_satisfied(
    step: Step,
    incoming: Sequence[Dependency],
    by_id: dict[str, Step],
    instance: Optional[Instance],
    warnings: Optional[list[str]] = None,
) -> bool:
    all_edges: list[Dependency] = []
    any_edges: list[Dependency] = []
    for edge in incoming:
        if edge.dependency_logic == DependencyLogic.ANY:
            any_edges.append(edge)
            continue
        if edge.dependency_logic == DependencyLogic.CUSTOM and warnings is not None:
            message = f"CUSTOM dependency logic on step {step.title!r} is evaluated as ALL"
            if message not in warnings:
                warnings.append(message)
                logger.warning("custom_logic_fallback", step_id=step.id, edge_id=edge.id)
        all_edges.append(edge)

    def satisfied(edge: Dependency) -> bool:
        source = by_id.get(edge.source_step_id)
        return source is not None and is_edge_satisfied(edge, source, instance)

    if not all(satisfied(edge) for edge in all_edges):
        return False
    if any_edges and not any(satisfied(edge) for edge in any_edges):
        return False
    return True


def resolve(
    steps: Sequence[Step],
    edges: Sequence[Dependency],
    instance: Optional[Instance] = None,
) -> Resolution:
    """Compute the PENDING steps whose dependencies are now satisfied.

    Pure: nothing is mutated. Promoted ids are ordered by ``order``.
    """
    by_id = {step.id: step for step in steps}
    resolution = Resolution()

    for step in sorted(steps, key=lambda s: s.order):
        if step.action_state != StepState.PENDING:
            continue
        incoming = incoming_edges(step.id, edges)
        if not incoming or _is_step_satisfied(step, incoming, by_id, instance, resolution.warnings):
            resolution.promoted.append(step.id)

    return resolution


def resolve_ready_steps(
    steps: Sequence[Step],
    edges: Sequence[Dependency],
    instance: Optional[Instance] = None,
) -> list[str]:
    return resolve(steps, edges, instance).promoted


def blocked_steps(
    steps: Sequence[Step],
    edges: Sequence[Dependency],
    instance: Optional[Instance] = None,
) -> list[str]:
    """PENDING steps still waiting on at least one dependency."""
    ready = set(resolve_ready_steps(steps, edges, instance))
    return [
        step.id
        for step in sorted(steps, key=lambda s: s.order)
        if step.action_state == StepState.PENDING and step.id not in ready
    ]


def dependency_status(
    step_id: str,
    steps: Sequence[Step],
    edges: Sequence[Dependency],
    instance: Optional[Instance] = None,
) -> DependencyStatus:
    by_id = {step.id: step for step in steps}
    step = by_id[step_id]
    incoming = [edge for edge in incoming_edges(step_id, edges) if edge.source_step_id in by_id]
    if incoming and all(edge.dependency_logic == DependencyLogic.ANY for edge in incoming):
        logic = DependencyLogic.ANY
    else:
        logic = DependencyLogic.ALL

    satisfied_count = 0
    pending: list[PendingDependency] = []
    for edge in incoming:
        source = by_id[edge.source_step_id]
        if is_edge_satisfied(edge, source, instance):
            satisfied_count += 1
        else:
            pending.append(PendingDependency(source.id, source.title, source.action_state))

    return DependencyStatus(
        step_id=step.id,
        title=step.title,
        is_satisfied=not incoming or _is_step_satisfied(step, incoming, by_id, instance),
        dependency_count=len(incoming),
        satisfied_count=satisfied_count,
        pending_dependencies=pending,
        logic=logic,
    )


def unreachable_steps(
    steps: Sequence[Step],
    edges: Sequence[Dependency],
    instance: Optional[Instance] = None,
) -> list[str]:
    """PENDING steps cut off by a branch that was not taken.

    A step is unreachable when one of its ALL edges is dead, or when it has
    ANY edges and every one of them is dead.
    """
    by_id = {step.id: step for step in steps}
    unreachable = []

    for step in sorted(steps, key=lambda s: s.order):
        if step.action_state != StepState.PENDING:
            continue
        all_dead = []
        any_dead = []
        for edge in incoming_edges(step.id, edges):
            source = by_id.get(edge.source_step_id)
            if source is None:
                continue
            dead = is_edge_dead(edge, source, instance)
            if edge.dependency_logic == DependencyLogic.ANY:
                any_dead.append(dead)
            else:
                all_dead.append(dead)
        if any(all_dead) or (any_dead and all(any_dead)):
            unreachable.append(step.id)

    return unreachable
