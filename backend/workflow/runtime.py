"""Workflow runtime: the operations actors invoke on instances and steps.

Every operation follows the same shape:

    load snapshot -> check permissions and transition -> mutate
    -> promotion cascade -> refresh instance status
    -> save (version checked) -> record metrics -> dispatch events

Nothing leaves the runtime before the save succeeds. A lost race on the
save surfaces as ``StaleInstanceError`` and, with a retry strategy, the
whole operation is re-run against a fresh snapshot. Event dispatch is
best-effort: failures are logged and never undo the save.
"""

import copy
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Sequence

import structlog

from core.constants import (
    ActionType,
    DependencyLogic,
    EventType,
    HistoryEvent,
    InstanceStatus,
    Role,
    StepAction,
    StepState,
    TERMINAL_INSTANCE_STATUSES,
    TERMINAL_STEP_STATES,
)
from core.exceptions import (
    ActionHandlerError,
    EmptyTemplateError,
    TemplateNotPublishedError,
    ValidationError,
    WorkflowPermissionError,
    WorkflowTransitionError,
    AlreadyClaimedError,
)
from workflow.actions import ActionRegistry, HandlerOutcome
from workflow.events import EventDispatcher, WorkflowEvent
from workflow.graph import GraphValidationResult, validate_graph
from workflow.models import SYSTEM_ACTOR, Actor, Dependency, Instance, Step, new_id, utcnow
from workflow.observability import WorkflowMetrics, workflow_span
from workflow.resolver import DependencyStatus, Resolution, dependency_status, resolve, unreachable_steps
from workflow.retry import CONFLICT_RETRY, RetryStrategy, execute_with_retry
from workflow.state_machine import Authorization, assert_actor_can_act, assert_transition, is_terminal
from workflow.store import WorkflowStore

logger = structlog.get_logger(__name__)


@dataclass
class NewStep:
    """An ad-hoc step added to a running instance."""

    title: str
    action_type: ActionType
    role_scope: Role
    required: bool = True
    action_config: dict[str, Any] = field(default_factory=dict)
    order: Optional[int] = None  # insert position; appended when None
    depends_on: list[str] = field(default_factory=list)
    dependency_logic: DependencyLogic = DependencyLogic.ALL
    unlocks: list[str] = field(default_factory=list)
    due_date: Optional[datetime] = None
    priority: Optional[str] = None
    id: str = field(default_factory=new_id)


class _Outbox:
    """Side effects collected during a mutation, released after the save."""

    def __init__(self):
        self.events: list[WorkflowEvent] = []
        self.metrics: list[tuple[Callable, tuple]] = []

    def emit(self, event: WorkflowEvent) -> None:
        self.events.append(event)

    def metric(self, record: Callable, *args) -> None:
        self.metrics.append((record, args))


class WorkflowRuntime:
    """Executes workflow operations against a ``WorkflowStore``."""

    def __init__(
        self,
        store: WorkflowStore,
        dispatcher: Optional[EventDispatcher] = None,
        metrics: Optional[WorkflowMetrics] = None,
        authorization: Optional[Authorization] = None,
        registry: Optional[ActionRegistry] = None,
        retry_strategy: Optional[RetryStrategy] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.metrics = metrics or WorkflowMetrics()
        self.authorization = authorization
        self.registry = registry
        self.retry_strategy = retry_strategy or CONFLICT_RETRY

    # ─── Instance lifecycle ───────────────────────────────

    async def instantiate(
        self,
        template_id: str,
        actor: Actor,
        *,
        matter_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        draft: bool = False,
        context: Optional[dict[str, Any]] = None,
    ) -> Instance:
        """Copy a published template into a new instance bound to a matter or contact.

        Steps start PENDING; unless ``draft`` is set the promotion cascade runs
        immediately so steps without dependencies come back READY.
        """
        if (matter_id is None) == (contact_id is None):
            raise ValidationError("Exactly one of matter_id or contact_id must be set")

        with workflow_span("workflow.instantiate", template_id=template_id, actor_id=actor.id) as span:
            template = await self.store.load_template(template_id)
            if not template.is_active:
                raise TemplateNotPublishedError(template.id)
            if not template.steps:
                raise EmptyTemplateError(template.id)
            validate_graph(template.steps, template.dependencies).raise_for_errors()

            instance = Instance(
                template_id=template.id,
                template_version=template.version,
                created_by_id=actor.id,
                status=InstanceStatus.DRAFT if draft else InstanceStatus.ACTIVE,
                matter_id=matter_id,
                contact_id=contact_id,
                context=dict(context or {}),
            )

            step_ids: dict[str, str] = {}
            for index, template_step in enumerate(template.ordered_steps()):
                step = Step(
                    instance_id=instance.id,
                    title=template_step.title,
                    action_type=template_step.action_type,
                    role_scope=template_step.role_scope,
                    order=index,
                    required=template_step.required,
                    action_data={
                        "config": self._validated_config(template_step.action_type, template_step.action_config),
                        "history": [],
                        "data": {},
                    },
                    template_step_id=template_step.id,
                    position_x=template_step.position_x,
                    position_y=template_step.position_y,
                )
                step_ids[template_step.id] = step.id
                instance.steps.append(step)

            instance.dependencies = [
                Dependency(
                    source_step_id=step_ids[edge.source_step_id],
                    target_step_id=step_ids[edge.target_step_id],
                    dependency_type=edge.dependency_type,
                    dependency_logic=edge.dependency_logic,
                    condition_type=edge.condition_type,
                    condition_config=copy.deepcopy(edge.condition_config),
                )
                for edge in template.dependencies
            ]

            outbox = _Outbox()
            if instance.status == InstanceStatus.ACTIVE:
                self._cascade(instance, outbox)
            outbox.metric(self.metrics.record_instance_created, template.id)

            instance = await self.store.create_instance(instance)
            span["instance_id"] = instance.id

        logger.info(
            "instance_created",
            instance_id=instance.id,
            template_id=template.id,
            template_version=template.version,
            status=instance.status.value,
        )
        await self._release(outbox)
        return instance

    async def activate(self, instance_id: str, actor: Actor) -> Instance:
        """Move a DRAFT instance to ACTIVE and promote its first steps."""

        def mutate(instance: Instance, outbox: _Outbox) -> Instance:
            if instance.status != InstanceStatus.DRAFT:
                raise WorkflowTransitionError(
                    "Only draft workflow instances can be activated",
                    from_state=instance.status.value,
                    to_state=InstanceStatus.ACTIVE.value,
                )
            self._ensure_editable(instance, actor)
            instance.status = InstanceStatus.ACTIVE
            return instance

        with workflow_span("workflow.activate", instance_id=instance_id, actor_id=actor.id):
            instance, _ = await self._apply("activate", instance_id, mutate)
        return instance

    async def cancel(self, instance_id: str, actor: Actor, reason: Optional[str] = None) -> Instance:
        """Admin-only: stop an instance. Skipped steps may still be restarted later."""

        def mutate(instance: Instance, outbox: _Outbox) -> Instance:
            if not actor.is_admin:
                raise WorkflowPermissionError("Only admins can cancel a workflow")
            if instance.status in TERMINAL_INSTANCE_STATUSES:
                raise WorkflowTransitionError(
                    f"Workflow instance is already {instance.status.value}",
                    from_state=instance.status.value,
                    to_state=InstanceStatus.CANCELED.value,
                )
            instance.status = InstanceStatus.CANCELED
            instance.canceled_reason = reason
            return instance

        with workflow_span("workflow.cancel", instance_id=instance_id, actor_id=actor.id):
            instance, _ = await self._apply("cancel", instance_id, mutate, cascade=False)
        return instance

    async def get_instance(self, instance_id: str) -> Instance:
        return await self.store.load_instance(instance_id)

    # ─── Step operations ──────────────────────────────────

    async def claim(self, step_id: str, actor: Actor) -> Step:
        """Assign an unassigned step to ``actor``."""

        def mutate(instance: Instance, step: Step, outbox: _Outbox) -> Step:
            self._ensure_active(instance)
            if is_terminal(step.action_state):
                raise WorkflowTransitionError(f"Cannot claim a step that is {step.action_state.value}")
            assert_actor_can_act(actor, step, StepAction.CLAIM, self.authorization)
            if step.assigned_to_id == actor.id:
                return step
            if step.assigned_to_id is not None:
                raise AlreadyClaimedError(step.id, step.assigned_to_id)
            self._assign(step, actor, outbox)
            return step

        return await self._step_operation("claim", step_id, actor, mutate, cascade=False)

    async def start(self, step_id: str, actor: Actor) -> Step:
        """Move a READY (or BLOCKED) step to IN_PROGRESS, claiming it if needed.

        A SKIPPED step that records a cancellation reason is restarted to
        READY instead.
        """

        def mutate(instance: Instance, step: Step, outbox: _Outbox) -> Step:
            if step.action_state == StepState.SKIPPED:
                return self._restart(instance, step, actor, outbox)

            self._ensure_active(instance)
            self._ensure_not_claimed_by_other(step, actor)
            assert_actor_can_act(actor, step, StepAction.START, self.authorization)
            assert_transition(step.action_state, StepState.IN_PROGRESS, actor)

            if step.assigned_to_id != actor.id:
                if step.assigned_to_id is not None:
                    logger.info(
                        "assignment_overridden",
                        step_id=step.id,
                        previous_assignee=step.assigned_to_id,
                        actor_id=actor.id,
                    )
                self._assign(step, actor, outbox)

            if self.registry is not None:
                step.data.update(self._run_handler(step, "start", lambda h: h.on_start(step, actor), outbox))
            if step.started_at is None:
                step.started_at = utcnow()
            self._transition(step, StepState.IN_PROGRESS, actor, outbox)
            step.record(HistoryEvent.STARTED, actor)
            outbox.metric(self.metrics.record_step_started, step.action_type)
            return step

        return await self._step_operation("start", step_id, actor, mutate, cascade=False)

    async def complete(self, step_id: str, actor: Actor, output: Optional[dict[str, Any]] = None) -> Step:
        """Finish an IN_PROGRESS step and promote whatever it unblocks."""

        def mutate(instance: Instance, step: Step, outbox: _Outbox) -> Step:
            self._ensure_active(instance)
            self._ensure_not_claimed_by_other(step, actor)
            assert_actor_can_act(actor, step, StepAction.COMPLETE, self.authorization)
            assert_transition(step.action_state, StepState.COMPLETED, actor)

            if self.registry is not None:
                outcome = self._run_handler(step, "complete", lambda h: h.complete(step, actor, output), outbox)
            else:
                outcome = HandlerOutcome(data=dict(output or {}))

            step.data.update(outcome.data)
            instance.context.update(outcome.context_updates)
            step.completed_at = utcnow()
            self._transition(step, StepState.COMPLETED, actor, outbox)
            step.record(HistoryEvent.COMPLETED, actor, {"output": dict(output or {})})

            outbox.metric(self.metrics.record_step_completed, step.action_type)
            if step.started_at is not None:
                cycle = (step.completed_at - step.started_at).total_seconds()
                outbox.metric(self.metrics.record_cycle_time, step.action_type, cycle)
            outbox.emit(WorkflowEvent.for_step(EventType.COMPLETED, instance, step, actor))
            return step

        return await self._step_operation("complete", step_id, actor, mutate)

    async def fail(self, step_id: str, actor: Actor, reason: str) -> Step:
        """Mark an IN_PROGRESS step FAILED. Terminal; dependents are not promoted."""

        def mutate(instance: Instance, step: Step, outbox: _Outbox) -> Step:
            self._ensure_active(instance)
            self._ensure_not_claimed_by_other(step, actor)
            assert_actor_can_act(actor, step, StepAction.FAIL, self.authorization)
            assert_transition(step.action_state, StepState.FAILED, actor)

            step.action_data["failure_reason"] = reason
            step.completed_at = utcnow()
            self._transition(step, StepState.FAILED, actor, outbox)
            step.record(HistoryEvent.FAILED, actor, {"reason": reason})

            outbox.metric(self.metrics.record_step_failed, step.action_type)
            outbox.emit(WorkflowEvent.for_step(EventType.FAILED, instance, step, actor, reason=reason))
            return step

        return await self._step_operation("fail", step_id, actor, mutate, cascade=False)

    async def skip(self, step_id: str, actor: Actor, reason: Optional[str] = None) -> Step:
        """Admin-only: skip a PENDING or READY step. SKIPPED satisfies joins."""

        def mutate(instance: Instance, step: Step, outbox: _Outbox) -> Step:
            self._ensure_active(instance)
            assert_actor_can_act(actor, step, StepAction.SKIP, self.authorization)
            assert_transition(step.action_state, StepState.SKIPPED, actor)

            if reason:
                step.action_data["cancellation_reason"] = reason
            self._transition(step, StepState.SKIPPED, actor, outbox)
            step.record(HistoryEvent.SKIPPED, actor, {"reason": reason})
            outbox.metric(self.metrics.record_step_skipped, step.action_type)
            return step

        return await self._step_operation("skip", step_id, actor, mutate)

    async def block(self, step_id: str, reason: str, actor: Actor = SYSTEM_ACTOR) -> Step:
        """Park an IN_PROGRESS step while it waits on something external."""

        def mutate(instance: Instance, step: Step, outbox: _Outbox) -> Step:
            self._ensure_active(instance)
            assert_actor_can_act(actor, step, StepAction.BLOCK, self.authorization)
            self._transition(step, StepState.BLOCKED, actor, outbox)
            step.action_data["blocked_reason"] = reason
            step.record(HistoryEvent.BLOCKED, actor, {"reason": reason})
            return step

        return await self._step_operation("block", step_id, actor, mutate, cascade=False)

    async def unblock(self, step_id: str, actor: Actor, resume: bool = False) -> Step:
        """Release a BLOCKED step back to READY, or straight to IN_PROGRESS."""

        def mutate(instance: Instance, step: Step, outbox: _Outbox) -> Step:
            self._ensure_active(instance)
            assert_actor_can_act(actor, step, StepAction.UNBLOCK, self.authorization)
            target = StepState.IN_PROGRESS if resume else StepState.READY
            self._transition(step, target, actor, outbox)
            step.action_data.pop("blocked_reason", None)
            step.record(HistoryEvent.UNBLOCKED, actor, {"resume": resume})
            if target == StepState.READY:
                outbox.emit(WorkflowEvent.for_step(EventType.READY, instance, step, actor))
            return step

        return await self._step_operation("unblock", step_id, actor, mutate, cascade=False)

    # ─── Graph editing ────────────────────────────────────

    async def add_step(self, instance_id: str, actor: Actor, new_step: NewStep) -> Step:
        """Insert an ad-hoc step (and its edges) into a DRAFT or ACTIVE instance."""

        def mutate(instance: Instance, outbox: _Outbox) -> Step:
            self._ensure_editable(instance, actor)
            if instance.has_step(new_step.id):
                raise ValidationError(f"Step {new_step.id} already exists in this workflow")
            for target_id in new_step.unlocks:
                target = instance.step(target_id)
                if target.action_state != StepState.PENDING:
                    raise WorkflowTransitionError(
                        f"Cannot add a dependency to step {target.title!r} "
                        f"because it is already {target.action_state.value}"
                    )

            position = len(instance.steps) if new_step.order is None else max(0, min(new_step.order, len(instance.steps)))
            for existing in instance.steps:
                if existing.order >= position:
                    existing.order += 1

            step = Step(
                id=new_step.id,
                instance_id=instance.id,
                title=new_step.title,
                action_type=new_step.action_type,
                role_scope=new_step.role_scope,
                order=position,
                required=new_step.required,
                action_data={
                    "config": self._validated_config(new_step.action_type, new_step.action_config),
                    "history": [],
                    "data": {},
                },
                due_date=new_step.due_date,
                priority=new_step.priority,
            )
            instance.steps.append(step)
            instance.dependencies.extend(
                Dependency(source_step_id=source_id, target_step_id=step.id, dependency_logic=new_step.dependency_logic)
                for source_id in new_step.depends_on
            )
            instance.dependencies.extend(
                Dependency(source_step_id=step.id, target_step_id=target_id) for target_id in new_step.unlocks
            )
            validate_graph(instance.steps, instance.dependencies).raise_for_errors()
            instance.renumber()
            return step

        with workflow_span("workflow.add_step", instance_id=instance_id, actor_id=actor.id):
            instance, step = await self._apply("add_step", instance_id, mutate)
        return instance.step(step.id)

    async def remove_step(self, step_id: str, actor: Actor) -> Instance:
        """Admin-only: delete a step that has not started, with its edges."""

        def mutate(instance: Instance, step: Step, outbox: _Outbox) -> Instance:
            self._ensure_editable(instance, actor)
            if not actor.is_admin:
                raise WorkflowPermissionError("Only admins can remove steps")
            if step.action_state not in (StepState.PENDING, StepState.READY) or step.started_at is not None:
                raise WorkflowTransitionError(
                    f"Only steps that have not started can be removed (step is {step.action_state.value})"
                )
            instance.steps.remove(step)
            instance.dependencies = [
                edge
                for edge in instance.dependencies
                if step.id not in (edge.source_step_id, edge.target_step_id)
            ]
            instance.renumber()
            validate_graph(instance.steps, instance.dependencies).raise_for_errors()
            return instance

        with workflow_span("workflow.remove_step", step_id=step_id, actor_id=actor.id):
            instance_id = await self.store.find_instance_id_for_step(step_id)
            instance, _ = await self._apply(
                "remove_step",
                instance_id,
                lambda inst, outbox: mutate(inst, inst.step(step_id), outbox),
            )
        return instance

    async def reorder(self, instance_id: str, actor: Actor, step_ids: Sequence[str]) -> Instance:
        """Assign ``order`` from the position of each id in ``step_ids``."""

        def mutate(instance: Instance, outbox: _Outbox) -> Instance:
            self._ensure_editable(instance, actor)
            known = [step.id for step in instance.steps]
            if len(step_ids) != len(set(step_ids)) or sorted(step_ids) != sorted(known):
                raise ValidationError("Reorder must list every step of the workflow exactly once")
            for index, sid in enumerate(step_ids):
                instance.step(sid).order = index
            validate_graph(instance.steps, instance.dependencies).raise_for_errors()
            return instance

        with workflow_span("workflow.reorder", instance_id=instance_id, actor_id=actor.id):
            instance, _ = await self._apply("reorder", instance_id, mutate)
        return instance

    # ─── Queries ──────────────────────────────────────────

    async def validate_graph(self, instance_id: str) -> GraphValidationResult:
        instance = await self.store.load_instance(instance_id)
        return validate_graph(instance.steps, instance.dependencies)

    async def dependency_statuses(self, instance_id: str) -> list[DependencyStatus]:
        instance = await self.store.load_instance(instance_id)
        return [
            dependency_status(step.id, instance.steps, instance.dependencies, instance)
            for step in instance.ordered_steps()
        ]

    # ─── Internals ────────────────────────────────────────

    async def _step_operation(
        self,
        operation: str,
        step_id: str,
        actor: Actor,
        mutate: Callable[[Instance, Step, _Outbox], Step],
        cascade: bool = True,
    ) -> Step:
        with workflow_span(f"workflow.step.{operation}", step_id=step_id, actor_id=actor.id) as span:
            instance_id = await self.store.find_instance_id_for_step(step_id)
            span["instance_id"] = instance_id
            instance, _ = await self._apply(
                operation,
                instance_id,
                lambda inst, outbox: mutate(inst, inst.step(step_id), outbox),
                cascade=cascade,
            )
            step = instance.step(step_id)
            span["state"] = step.action_state.value
        return step

    async def _apply(
        self,
        operation: str,
        instance_id: str,
        mutate: Callable[[Instance, _Outbox], Any],
        cascade: bool = True,
    ) -> tuple[Instance, Any]:
        """Load, mutate, cascade and save one instance; then release side effects."""

        async def attempt() -> tuple[Instance, Any, _Outbox]:
            instance = await self.store.load_instance(instance_id)
            expected_version = instance.version
            outbox = _Outbox()
            result = mutate(instance, outbox)
            if cascade and instance.status == InstanceStatus.ACTIVE:
                self._cascade(instance, outbox)
            self._refresh_status(instance, outbox)
            saved = await self.store.save_instance(instance, expected_version)
            return saved, result, outbox

        def on_retry(attempt_number: int, error: Exception, delay: float) -> None:
            self.metrics.record_conflict(operation)

        instance, result, outbox = await execute_with_retry(attempt, self.retry_strategy, on_retry=on_retry)
        await self._release(outbox)
        return instance, result

    def _cascade(self, instance: Instance, outbox: _Outbox) -> Resolution:
        """Skip steps on untaken branches, then promote every satisfied PENDING step.

        Repeats until nothing changes: a skipped step satisfies its
        unconditional dependents and kills its conditional ones. Promotion
        alone never feeds another round, since READY satisfies no edge.
        """
        resolution = Resolution()
        while True:
            pruned = self._skip_untaken_branches(instance, outbox)
            step_resolution = resolve(instance.steps, instance.dependencies, instance)
            for message in step_resolution.warnings:
                if message not in resolution.warnings:
                    resolution.warnings.append(message)
            for step_id in step_resolution.promoted:
                step = instance.step(step_id)
                self._transition(step, StepState.READY, SYSTEM_ACTOR, outbox)
                step.record(HistoryEvent.READY, SYSTEM_ACTOR)
                outbox.metric(self.metrics.record_step_advanced, step.action_type)
                outbox.emit(WorkflowEvent.for_step(EventType.READY, instance, step))
            resolution.promoted.extend(step_resolution.promoted)
            if not pruned:
                break
        if resolution.promoted:
            logger.info("steps_promoted", instance_id=instance.id, step_ids=resolution.promoted)
        return resolution

    def _skip_untaken_branches(self, instance: Instance, outbox: _Outbox) -> list[str]:
        skipped = unreachable_steps(instance.steps, instance.dependencies, instance)
        for step_id in skipped:
            step = instance.step(step_id)
            self._transition(step, StepState.SKIPPED, SYSTEM_ACTOR, outbox)
            step.action_data["skip_reason"] = "Condition not met"
            step.record(HistoryEvent.BRANCH_NOT_TAKEN, SYSTEM_ACTOR)
            outbox.metric(self.metrics.record_step_skipped, step.action_type)
        if skipped:
            logger.info("branches_not_taken", instance_id=instance.id, step_ids=skipped)
        return skipped

    def _refresh_status(self, instance: Instance, outbox: _Outbox) -> None:
        """Close an ACTIVE instance once every step is terminal."""
        if instance.status != InstanceStatus.ACTIVE:
            return
        if any(step.action_state not in TERMINAL_STEP_STATES for step in instance.steps):
            return

        instance.completed_at = utcnow()
        if any(step.required and step.action_state == StepState.FAILED for step in instance.steps):
            instance.status = InstanceStatus.FAILED
            outbox.metric(self.metrics.record_instance_failed, instance.template_id)
        else:
            instance.status = InstanceStatus.COMPLETED
            duration = (instance.completed_at - instance.created_at).total_seconds()
            outbox.metric(self.metrics.record_instance_completed, instance.template_id, duration)
        logger.info("instance_finished", instance_id=instance.id, status=instance.status.value)

    def _restart(self, instance: Instance, step: Step, actor: Actor, outbox: _Outbox) -> Step:
        assert_actor_can_act(actor, step, StepAction.RESTART, self.authorization)
        if not step.cancellation_reason:
            raise WorkflowPermissionError("Skipped steps cannot be restarted")

        self._transition(step, StepState.READY, actor, outbox)
        step.action_data["restarted_at"] = utcnow().isoformat()
        step.started_at = None
        step.completed_at = None
        step.record(HistoryEvent.RESTARTED, actor, {"cancellation_reason": step.cancellation_reason})

        if instance.status in TERMINAL_INSTANCE_STATUSES:
            logger.info("instance_reactivated", instance_id=instance.id, previous_status=instance.status.value)
            instance.status = InstanceStatus.ACTIVE
            instance.completed_at = None
            instance.canceled_reason = None
        outbox.emit(WorkflowEvent.for_step(EventType.READY, instance, step, actor))
        return step

    def _transition(self, step: Step, to_state: StepState, actor: Actor, outbox: _Outbox) -> None:
        from_state = step.action_state
        assert_transition(from_state, to_state, actor)
        step.action_state = to_state
        outbox.metric(self.metrics.record_transition, step.action_type, from_state, to_state)

    def _assign(self, step: Step, actor: Actor, outbox: _Outbox) -> None:
        step.assigned_to_id = actor.id
        step.record(HistoryEvent.CLAIMED, actor)
        outbox.metric(self.metrics.record_step_claimed, step.action_type)

    def _run_handler(self, step: Step, operation: str, call: Callable, outbox: _Outbox):
        handler = self.registry.get(step.action_type)
        started = time.monotonic()
        try:
            result = call(handler)
        except ActionHandlerError as e:
            self.metrics.record_handler_error(step.action_type, operation, e.code)
            raise
        outbox.metric(self.metrics.record_handler_duration, step.action_type, operation, time.monotonic() - started)
        return result

    def _validated_config(self, action_type: ActionType, config: Optional[dict]) -> dict[str, Any]:
        if self.registry is None:
            return copy.deepcopy(config or {})
        return self.registry.validate_config(action_type, config)

    @staticmethod
    def _ensure_not_claimed_by_other(step: Step, actor: Actor) -> None:
        """A participant losing a race for the step gets the retryable conflict."""
        if actor.is_admin or actor.is_system or actor.role != step.role_scope:
            return
        if step.assigned_to_id is not None and step.assigned_to_id != actor.id:
            raise AlreadyClaimedError(step.id, step.assigned_to_id)

    @staticmethod
    def _ensure_active(instance: Instance) -> None:
        if instance.status != InstanceStatus.ACTIVE:
            raise WorkflowTransitionError(
                f"Workflow instance is {instance.status.value}; steps can only change while it is ACTIVE"
            )

    @staticmethod
    def _ensure_editable(instance: Instance, actor: Actor) -> None:
        if instance.status == InstanceStatus.DRAFT:
            if not (actor.is_admin or actor.id == instance.created_by_id):
                raise WorkflowPermissionError("Only the creator or an admin can edit a draft workflow")
        elif instance.status == InstanceStatus.ACTIVE:
            if not actor.is_admin:
                raise WorkflowPermissionError("Only admins can edit an active workflow")
        else:
            raise WorkflowTransitionError(
                f"Workflow instance is {instance.status.value} and can no longer be edited"
            )

    async def _release(self, outbox: _Outbox) -> None:
        """Record metrics and dispatch events for a committed operation."""
        for record, args in outbox.metrics:
            try:
                record(*args)
            except Exception as e:
                logger.warning("metric_record_failed", metric=getattr(record, "__name__", "?"), error=str(e))

        if self.dispatcher is None:
            return
        for event in outbox.events:
            try:
                await self.dispatcher.dispatch(event)
            except Exception as e:
                logger.error(
                    "event_dispatch_failed",
                    event_type=event.type.value,
                    step_id=event.step_id,
                    instance_id=event.instance_id,
                    error=str(e),
                )
