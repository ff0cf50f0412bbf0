"""Tests for the workflow runtime: lifecycle, step operations and cascades."""

import asyncio

import pytest
import pytest_asyncio

from core.constants import (
    ActionType,
    DependencyLogic,
    DependencyType,
    EventType,
    InstanceStatus,
    Role,
    StepState,
)
from core.exceptions import (
    ActionHandlerError,
    AlreadyClaimedError,
    EmptyTemplateError,
    GraphValidationError,
    StaleInstanceError,
    TemplateNotPublishedError,
    ValidationError,
    WorkflowNotFoundError,
    WorkflowPermissionError,
    WorkflowTransitionError,
)
from workflow.actions import ActionRegistry
from workflow.models import Actor, Step, Template, TemplateStep
from workflow.runtime import NewStep, WorkflowRuntime
from workflow.store import InMemoryWorkflowStore

CHECKLIST = "Collect intake checklist"
APPROVAL = "Lawyer approval"


def by_title(instance, title):
    return next(step for step in instance.steps if step.title == title)


class FailingDispatcher:
    async def dispatch(self, event):
        raise RuntimeError("notification service offline")


class ConflictingStore(InMemoryWorkflowStore):
    """Lets another writer win the next ``conflicts`` saves."""

    def __init__(self):
        super().__init__()
        self.conflicts = 0

    async def save_instance(self, instance, expected_version):
        if self.conflicts > 0:
            self.conflicts -= 1
            rival = await self.load_instance(instance.id)
            await super().save_instance(rival, rival.version)
        return await super().save_instance(instance, expected_version)


class YieldingStore(InMemoryWorkflowStore):
    """Hands control to other tasks right after every instance load."""

    async def load_instance(self, instance_id):
        instance = await super().load_instance(instance_id)
        await asyncio.sleep(0)
        return instance


class BrokenStore(InMemoryWorkflowStore):
    """Fails every instance save after creation."""

    async def save_instance(self, instance, expected_version):
        raise RuntimeError("database unavailable")


# ─── Instantiate ───

@pytest.mark.unit
class TestInstantiate:

    async def test_first_step_is_ready_and_announced(self, runtime, dispatcher, lawyer, checklist_then_approval):
        template = await checklist_then_approval()

        instance = await runtime.instantiate(template.id, lawyer, matter_id="matter-1")

        assert instance.status == InstanceStatus.ACTIVE
        assert instance.version == 1
        assert by_title(instance, CHECKLIST).action_state == StepState.READY
        assert by_title(instance, APPROVAL).action_state == StepState.PENDING
        ready = dispatcher.of_type(EventType.READY)
        assert [e.step_title for e in ready] == [CHECKLIST]
        assert ready[0].matter_id == "matter-1"

    async def test_copies_template_graph_with_fresh_ids(self, runtime, lawyer, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, contact_id="contact-7")

        template_ids = {s.id for s in template.steps}
        assert not template_ids & {s.id for s in instance.steps}
        assert {s.template_step_id for s in instance.steps} == template_ids
        [edge] = instance.dependencies
        assert edge.source_step_id == by_title(instance, CHECKLIST).id
        assert edge.target_step_id == by_title(instance, APPROVAL).id
        assert [s.order for s in instance.ordered_steps()] == [0, 1]

    async def test_matter_xor_contact(self, runtime, lawyer, checklist_then_approval):
        template = await checklist_then_approval()
        with pytest.raises(ValidationError):
            await runtime.instantiate(template.id, lawyer)
        with pytest.raises(ValidationError):
            await runtime.instantiate(template.id, lawyer, matter_id="m", contact_id="c")

    async def test_unpublished_template(self, runtime, build_template, lawyer):
        template = await build_template([("Intake", ActionType.CHECKLIST, Role.LAWYER)], active=False)
        with pytest.raises(TemplateNotPublishedError):
            await runtime.instantiate(template.id, lawyer, matter_id="m")

    async def test_empty_template(self, runtime, build_template, lawyer):
        template = await build_template([])
        with pytest.raises(EmptyTemplateError):
            await runtime.instantiate(template.id, lawyer, matter_id="m")

    async def test_unknown_template(self, runtime, lawyer):
        with pytest.raises(WorkflowNotFoundError):
            await runtime.instantiate("nope", lawyer, matter_id="m")

    async def test_invalid_step_config_is_rejected(self, runtime, build_template, lawyer):
        template = await build_template([("Retainer", ActionType.PAYMENT, Role.CLIENT)])
        with pytest.raises(ActionHandlerError) as exc:
            await runtime.instantiate(template.id, lawyer, matter_id="m")
        assert exc.value.code == "INVALID_CONFIG"

    async def test_records_created_metric(self, runtime, metrics_registry, lawyer, checklist_then_approval):
        template = await checklist_then_approval()
        await runtime.instantiate(template.id, lawyer, matter_id="m")
        assert metrics_registry.counter_value(
            "workflow_instances_created_total", {"template_id": template.id}
        ) == 1


# ─── Draft / cancel ───

@pytest.mark.unit
class TestInstanceLifecycle:

    async def test_draft_promotes_nothing_until_activated(
        self, runtime, dispatcher, lawyer, checklist_then_approval
    ):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m", draft=True)

        assert instance.status == InstanceStatus.DRAFT
        assert all(s.action_state == StepState.PENDING for s in instance.steps)
        assert dispatcher.events == []

        instance = await runtime.activate(instance.id, lawyer)
        assert instance.status == InstanceStatus.ACTIVE
        assert by_title(instance, CHECKLIST).action_state == StepState.READY

    async def test_steps_cannot_start_in_draft(self, runtime, paralegal, lawyer, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m", draft=True)
        with pytest.raises(WorkflowTransitionError):
            await runtime.start(by_title(instance, CHECKLIST).id, paralegal)

    async def test_only_creator_or_admin_activates_draft(
        self, runtime, lawyer, other_lawyer, admin, checklist_then_approval
    ):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m", draft=True)
        with pytest.raises(WorkflowPermissionError):
            await runtime.activate(instance.id, other_lawyer)
        assert (await runtime.activate(instance.id, admin)).status == InstanceStatus.ACTIVE

    async def test_activate_twice(self, runtime, lawyer, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        with pytest.raises(WorkflowTransitionError):
            await runtime.activate(instance.id, lawyer)

    async def test_cancel(self, runtime, lawyer, admin, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")

        with pytest.raises(WorkflowPermissionError):
            await runtime.cancel(instance.id, lawyer)

        canceled = await runtime.cancel(instance.id, admin, reason="Client withdrew")
        assert canceled.status == InstanceStatus.CANCELED
        assert canceled.canceled_reason == "Client withdrew"

        with pytest.raises(WorkflowTransitionError):
            await runtime.cancel(instance.id, admin)


# ─── Claim / start ───

@pytest.mark.unit
class TestClaimAndStart:

    @pytest_asyncio.fixture
    async def instance(self, runtime, lawyer, checklist_then_approval):
        template = await checklist_then_approval()
        return await runtime.instantiate(template.id, lawyer, matter_id="m")

    async def test_claim_assigns(self, runtime, instance, paralegal):
        step = await runtime.claim(by_title(instance, CHECKLIST).id, paralegal)
        assert step.assigned_to_id == paralegal.id
        assert step.action_state == StepState.READY

    async def test_claim_is_idempotent_for_the_assignee(self, runtime, instance, paralegal):
        step_id = by_title(instance, CHECKLIST).id
        await runtime.claim(step_id, paralegal)
        again = await runtime.claim(step_id, paralegal)
        assert again.assigned_to_id == paralegal.id
        assert [h["event"] for h in again.history].count("CLAIMED") == 1

    async def test_claim_by_someone_else(self, runtime, instance, paralegal):
        step_id = by_title(instance, CHECKLIST).id
        await runtime.claim(step_id, paralegal)
        with pytest.raises(AlreadyClaimedError) as exc:
            await runtime.claim(step_id, Actor(id="paralegal-2", role=Role.PARALEGAL))
        assert exc.value.message == "Step already claimed by another user"
        assert exc.value.status_code == 409

    async def test_claim_wrong_role(self, runtime, instance, client_actor):
        with pytest.raises(WorkflowPermissionError):
            await runtime.claim(by_title(instance, CHECKLIST).id, client_actor)

    async def test_start_claims_and_records(self, runtime, instance, paralegal, metrics_registry):
        step = await runtime.start(by_title(instance, CHECKLIST).id, paralegal)

        assert step.action_state == StepState.IN_PROGRESS
        assert step.assigned_to_id == paralegal.id
        assert step.started_at is not None
        assert [h["event"] for h in step.history] == ["READY", "CLAIMED", "STARTED"]
        assert metrics_registry.counter_value(
            "workflow_steps_started_total", {"action_type": "CHECKLIST"}
        ) == 1

    async def test_client_cannot_start_lawyer_step(self, runtime, instance, client_actor, store):
        approval = by_title(instance, APPROVAL)
        with pytest.raises(WorkflowPermissionError):
            await runtime.start(approval.id, client_actor)
        stored = await store.load_instance(instance.id)
        assert stored.step(approval.id).action_state == StepState.PENDING

    async def test_pending_step_cannot_start(self, runtime, instance, lawyer):
        with pytest.raises(WorkflowTransitionError):
            await runtime.start(by_title(instance, APPROVAL).id, lawyer)

    async def test_admin_start_reassigns(self, runtime, instance, paralegal, admin):
        step_id = by_title(instance, CHECKLIST).id
        await runtime.claim(step_id, paralegal)
        step = await runtime.start(step_id, admin)
        assert step.assigned_to_id == admin.id
        assert step.action_state == StepState.IN_PROGRESS

    async def test_unknown_step(self, runtime, lawyer):
        with pytest.raises(WorkflowNotFoundError):
            await runtime.start("missing", lawyer)


# ─── Complete / fail / promotion cascade ───

@pytest.mark.unit
class TestCompleteAndCascade:

    async def test_completing_checklist_readies_approval(
        self, runtime, dispatcher, lawyer, paralegal, checklist_then_approval
    ):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        checklist_id = by_title(instance, CHECKLIST).id
        dispatcher.clear()

        await runtime.start(checklist_id, paralegal)
        step = await runtime.complete(checklist_id, paralegal, {})

        assert step.action_state == StepState.COMPLETED
        assert step.completed_at is not None
        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, APPROVAL).action_state == StepState.READY
        assert [(e.type, e.step_title) for e in dispatcher.events] == [
            (EventType.COMPLETED, CHECKLIST),
            (EventType.READY, APPROVAL),
        ]
        assert dispatcher.events[0].actor_id == paralegal.id

    async def test_complete_requires_in_progress(self, runtime, lawyer, paralegal, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        with pytest.raises(WorkflowTransitionError):
            await runtime.complete(by_title(instance, CHECKLIST).id, paralegal)

    async def test_only_assignee_completes(self, runtime, lawyer, other_lawyer, build_template):
        template = await build_template([("Review file", ActionType.CHECKLIST, Role.LAWYER)])
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        step_id = instance.steps[0].id
        await runtime.start(step_id, lawyer)
        with pytest.raises(AlreadyClaimedError) as exc:
            await runtime.complete(step_id, other_lawyer)
        assert exc.value.retryable is True
        assert exc.value.assigned_to_id == lawyer.id
        with pytest.raises(AlreadyClaimedError):
            await runtime.fail(step_id, other_lawyer, "Not mine")

    async def test_all_steps_done_completes_instance(
        self, runtime, lawyer, paralegal, metrics_registry, checklist_then_approval
    ):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        checklist_id = by_title(instance, CHECKLIST).id
        approval_id = by_title(instance, APPROVAL).id

        await runtime.start(checklist_id, paralegal)
        await runtime.complete(checklist_id, paralegal)
        await runtime.start(approval_id, lawyer)
        await runtime.complete(approval_id, lawyer, {"approved": True, "comment": "Looks good"})

        stored = await runtime.get_instance(instance.id)
        assert stored.status == InstanceStatus.COMPLETED
        assert stored.completed_at is not None
        assert stored.context["last_approval"]["approved"] is True
        assert stored.step(approval_id).data["decision"]["decided_by"] == lawyer.id
        assert metrics_registry.counter_value(
            "workflow_instances_completed_total", {"template_id": template.id}
        ) == 1
        assert len(metrics_registry.samples(
            "workflow_step_cycle_seconds", {"action_type": "APPROVAL"}
        )) == 1

    async def test_invalid_payload_leaves_step_in_progress(
        self, runtime, store, lawyer, metrics_registry, build_template
    ):
        template = await build_template(
            [
                TemplateStep(
                    title="Case summary",
                    action_type=ActionType.WRITE_TEXT,
                    role_scope=Role.LAWYER,
                    action_config={"title": "Summary", "min_length": 20},
                )
            ]
        )
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        step_id = instance.steps[0].id
        await runtime.start(step_id, lawyer)

        with pytest.raises(ActionHandlerError) as exc:
            await runtime.complete(step_id, lawyer, {"content": "Too short"})

        assert exc.value.code == "TEXT_TOO_SHORT"
        stored = await store.load_instance(instance.id)
        assert stored.step(step_id).action_state == StepState.IN_PROGRESS
        assert metrics_registry.counter_value(
            "workflow_handler_errors_total",
            {"action_type": "WRITE_TEXT", "operation": "complete", "error": "TEXT_TOO_SHORT"},
        ) == 1

    async def test_fail_does_not_promote_dependents(
        self, runtime, dispatcher, lawyer, paralegal, admin, checklist_then_approval
    ):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        checklist_id = by_title(instance, CHECKLIST).id
        approval_id = by_title(instance, APPROVAL).id

        await runtime.start(checklist_id, paralegal)
        step = await runtime.fail(checklist_id, paralegal, "Client unreachable")

        assert step.action_state == StepState.FAILED
        assert step.action_data["failure_reason"] == "Client unreachable"
        [failed] = dispatcher.of_type(EventType.FAILED)
        assert failed.payload == {"reason": "Client unreachable"}

        stored = await runtime.get_instance(instance.id)
        assert stored.step(approval_id).action_state == StepState.PENDING
        assert stored.status == InstanceStatus.ACTIVE

        await runtime.skip(approval_id, admin)
        assert (await runtime.get_instance(instance.id)).status == InstanceStatus.FAILED

    async def test_failed_optional_step_still_completes(self, runtime, lawyer, build_template):
        template = await build_template(
            [
                TemplateStep(
                    title="Courtesy call",
                    action_type=ActionType.CHECKLIST,
                    role_scope=Role.LAWYER,
                    required=False,
                )
            ]
        )
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        step_id = instance.steps[0].id
        await runtime.start(step_id, lawyer)
        await runtime.fail(step_id, lawyer, "No answer")
        assert (await runtime.get_instance(instance.id)).status == InstanceStatus.COMPLETED


# ─── Joins ───

@pytest.mark.unit
class TestJoins:

    async def _fan_in(self, build_template, logic):
        return await build_template(
            [
                ("Conflict check", ActionType.CHECKLIST, Role.LAWYER),
                ("Identity check", ActionType.CHECKLIST, Role.LAWYER),
                ("Open matter", ActionType.CHECKLIST, Role.LAWYER),
            ],
            [(0, 2, {"dependency_logic": logic}), (1, 2, {"dependency_logic": logic})],
        )

    async def _finish(self, runtime, instance, title, actor, output=None):
        step_id = by_title(instance, title).id
        await runtime.start(step_id, actor)
        await runtime.complete(step_id, actor, output)

    async def test_all_join_waits_for_both(self, runtime, lawyer, build_template):
        template = await self._fan_in(build_template, DependencyLogic.ALL)
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")

        await self._finish(runtime, instance, "Conflict check", lawyer)
        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, "Open matter").action_state == StepState.PENDING

        await self._finish(runtime, instance, "Identity check", lawyer)
        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, "Open matter").action_state == StepState.READY

    async def test_any_join_needs_one(self, runtime, lawyer, build_template):
        template = await self._fan_in(build_template, DependencyLogic.ANY)
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")

        await self._finish(runtime, instance, "Identity check", lawyer)

        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, "Open matter").action_state == StepState.READY
        assert by_title(stored, "Conflict check").action_state == StepState.READY

    async def test_skipped_source_satisfies_all(self, runtime, lawyer, admin, build_template):
        template = await self._fan_in(build_template, DependencyLogic.ALL)
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")

        await self._finish(runtime, instance, "Conflict check", lawyer)
        await runtime.skip(by_title(instance, "Identity check").id, admin, "Known client")

        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, "Open matter").action_state == StepState.READY

    async def _branched(self, build_template, extra_steps=(), extra_edges=()):
        return await build_template(
            [
                ("Partner approval", ActionType.APPROVAL, Role.LAWYER),
                ("Send engagement letter", ActionType.CHECKLIST, Role.LAWYER),
                ("Close file", ActionType.CHECKLIST, Role.LAWYER),
                *extra_steps,
            ],
            [
                (0, 1, {"dependency_type": DependencyType.IF_TRUE_BRANCH}),
                (0, 2, {"dependency_type": DependencyType.IF_FALSE_BRANCH}),
                *extra_edges,
            ],
        )

    async def test_approval_branches(self, runtime, lawyer, metrics_registry, build_template):
        template = await self._branched(build_template)
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        approval_id = by_title(instance, "Partner approval").id

        await runtime.start(approval_id, lawyer)
        await runtime.complete(approval_id, lawyer, {"approved": False})

        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, "Close file").action_state == StepState.READY
        untaken = by_title(stored, "Send engagement letter")
        assert untaken.action_state == StepState.SKIPPED
        assert untaken.history[-1]["event"] == "BRANCH_NOT_TAKEN"
        assert untaken.history[-1]["by"] == "system"
        assert stored.status == InstanceStatus.ACTIVE
        assert metrics_registry.counter_value(
            "workflow_steps_skipped_total", {"action_type": "CHECKLIST"}
        ) == 1
        assert metrics_registry.counter_value(
            "workflow_transitions_total",
            {"action_type": "CHECKLIST", "from": "PENDING", "to": "SKIPPED"},
        ) == 1

    async def test_branched_instance_completes(self, runtime, lawyer, build_template):
        template = await self._branched(build_template)
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")

        await self._finish(runtime, instance, "Partner approval", lawyer, {"approved": True})
        await self._finish(runtime, instance, "Send engagement letter", lawyer)

        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, "Close file").action_state == StepState.SKIPPED
        assert stored.status == InstanceStatus.COMPLETED

    async def test_branches_rejoin(self, runtime, lawyer, build_template):
        template = await self._branched(
            build_template,
            extra_steps=[("Open matter", ActionType.CHECKLIST, Role.LAWYER)],
            extra_edges=[(1, 3), (2, 3)],
        )
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")

        await self._finish(runtime, instance, "Partner approval", lawyer, {"approved": True})
        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, "Close file").action_state == StepState.SKIPPED
        assert by_title(stored, "Open matter").action_state == StepState.PENDING

        await self._finish(runtime, instance, "Send engagement letter", lawyer)
        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, "Open matter").action_state == StepState.READY

    async def test_skipped_branch_cuts_off_its_own_branches(self, runtime, lawyer, build_template):
        template = await self._branched(
            build_template,
            extra_steps=[("Countersign", ActionType.CHECKLIST, Role.LAWYER)],
            extra_edges=[(1, 3, {"dependency_type": DependencyType.IF_TRUE_BRANCH})],
        )
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")

        await self._finish(runtime, instance, "Partner approval", lawyer, {"approved": False})
        await self._finish(runtime, instance, "Close file", lawyer)

        stored = await runtime.get_instance(instance.id)
        assert by_title(stored, "Send engagement letter").action_state == StepState.SKIPPED
        assert by_title(stored, "Countersign").action_state == StepState.SKIPPED
        assert stored.status == InstanceStatus.COMPLETED


# ─── Skip / restart ───

@pytest.mark.unit
class TestSkipAndRestart:

    @pytest_asyncio.fixture
    async def instance(self, runtime, lawyer, checklist_then_approval):
        template = await checklist_then_approval()
        return await runtime.instantiate(template.id, lawyer, matter_id="m")

    async def test_only_admin_skips(self, runtime, instance, paralegal):
        with pytest.raises(WorkflowPermissionError):
            await runtime.skip(by_title(instance, CHECKLIST).id, paralegal, "Not needed")

    async def test_admin_can_skip_required_pending_step(self, runtime, instance, admin):
        step = await runtime.skip(by_title(instance, APPROVAL).id, admin)
        assert step.action_state == StepState.SKIPPED
        assert step.cancellation_reason is None

    async def test_skip_with_reason_can_be_restarted(self, runtime, dispatcher, instance, admin):
        checklist_id = by_title(instance, CHECKLIST).id
        await runtime.skip(checklist_id, admin, "Documents already on file")
        dispatcher.clear()

        step = await runtime.start(checklist_id, admin)

        assert step.action_state == StepState.READY
        assert step.action_data["restarted_at"]
        assert step.history[-1]["event"] == "RESTARTED"
        assert [(e.type, e.step_id) for e in dispatcher.events] == [(EventType.READY, checklist_id)]

    async def test_skip_without_reason_cannot_be_restarted(self, runtime, instance, admin, store):
        checklist_id = by_title(instance, CHECKLIST).id
        await runtime.skip(checklist_id, admin)

        with pytest.raises(WorkflowPermissionError) as exc:
            await runtime.start(checklist_id, admin)

        assert exc.value.message == "Skipped steps cannot be restarted"
        stored = await store.load_instance(instance.id)
        assert stored.step(checklist_id).action_state == StepState.SKIPPED

    async def test_participant_cannot_restart(self, runtime, instance, admin, paralegal):
        checklist_id = by_title(instance, CHECKLIST).id
        await runtime.skip(checklist_id, admin, "Duplicate")
        with pytest.raises(WorkflowPermissionError):
            await runtime.start(checklist_id, paralegal)

    async def test_restart_reopens_finished_instance(self, runtime, instance, admin):
        checklist_id = by_title(instance, CHECKLIST).id
        await runtime.skip(checklist_id, admin, "Handled offline")
        await runtime.skip(by_title(instance, APPROVAL).id, admin)
        assert (await runtime.get_instance(instance.id)).status == InstanceStatus.COMPLETED

        await runtime.start(checklist_id, admin)

        stored = await runtime.get_instance(instance.id)
        assert stored.status == InstanceStatus.ACTIVE
        assert stored.completed_at is None


# ─── Block / unblock ───

@pytest.mark.unit
class TestBlockUnblock:

    async def test_block_then_unblock(self, runtime, dispatcher, lawyer, paralegal, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        step_id = by_title(instance, CHECKLIST).id
        await runtime.start(step_id, paralegal)

        blocked = await runtime.block(step_id, "Waiting on court filing")
        assert blocked.action_state == StepState.BLOCKED
        assert blocked.action_data["blocked_reason"] == "Waiting on court filing"

        dispatcher.clear()
        step = await runtime.unblock(step_id, paralegal)
        assert step.action_state == StepState.READY
        assert "blocked_reason" not in step.action_data
        assert [e.type for e in dispatcher.events] == [EventType.READY]

    async def test_unblock_and_resume(self, runtime, lawyer, paralegal, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        step_id = by_title(instance, CHECKLIST).id
        await runtime.start(step_id, paralegal)
        await runtime.block(step_id, "Waiting")

        step = await runtime.unblock(step_id, paralegal, resume=True)
        assert step.action_state == StepState.IN_PROGRESS

    async def test_participants_cannot_block(self, runtime, lawyer, paralegal, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        step_id = by_title(instance, CHECKLIST).id
        await runtime.start(step_id, paralegal)
        with pytest.raises(WorkflowPermissionError):
            await runtime.block(step_id, "Lunch", actor=paralegal)


# ─── Graph editing ───

@pytest.mark.unit
class TestGraphEditing:

    @pytest_asyncio.fixture
    async def instance(self, runtime, lawyer, checklist_then_approval):
        template = await checklist_then_approval()
        return await runtime.instantiate(template.id, lawyer, matter_id="m")

    async def test_add_step_between(self, runtime, instance, admin):
        checklist_id = by_title(instance, CHECKLIST).id
        approval_id = by_title(instance, APPROVAL).id

        step = await runtime.add_step(
            instance.id,
            admin,
            NewStep(
                title="Conflict check",
                action_type=ActionType.CHECKLIST,
                role_scope=Role.LAWYER,
                order=1,
                depends_on=[checklist_id],
                unlocks=[approval_id],
            ),
        )

        assert step.action_state == StepState.PENDING
        stored = await runtime.get_instance(instance.id)
        assert [s.title for s in stored.ordered_steps()] == [CHECKLIST, "Conflict check", APPROVAL]
        assert [s.order for s in stored.ordered_steps()] == [0, 1, 2]
        assert len(stored.dependencies) == 3

    async def test_added_step_without_dependencies_is_ready(self, runtime, dispatcher, instance, admin):
        dispatcher.clear()
        step = await runtime.add_step(
            instance.id,
            admin,
            NewStep(title="Send welcome pack", action_type=ActionType.CHECKLIST, role_scope=Role.PARALEGAL),
        )
        assert step.action_state == StepState.READY
        assert step.order == 2
        assert [e.step_id for e in dispatcher.of_type(EventType.READY)] == [step.id]

    async def test_add_step_requires_admin_on_active(self, runtime, instance, lawyer):
        with pytest.raises(WorkflowPermissionError):
            await runtime.add_step(
                instance.id,
                lawyer,
                NewStep(title="Extra", action_type=ActionType.CHECKLIST, role_scope=Role.LAWYER),
            )

    async def test_cannot_gate_a_step_that_already_moved(self, runtime, instance, admin):
        with pytest.raises(WorkflowTransitionError):
            await runtime.add_step(
                instance.id,
                admin,
                NewStep(
                    title="Extra",
                    action_type=ActionType.CHECKLIST,
                    role_scope=Role.LAWYER,
                    unlocks=[by_title(instance, CHECKLIST).id],
                ),
            )

    async def test_add_step_rejects_cycles(self, runtime, instance, admin, store):
        approval_id = by_title(instance, APPROVAL).id
        with pytest.raises(GraphValidationError):
            await runtime.add_step(
                instance.id,
                admin,
                NewStep(
                    title="Loop",
                    action_type=ActionType.CHECKLIST,
                    role_scope=Role.LAWYER,
                    depends_on=[approval_id],
                    unlocks=[approval_id],
                ),
            )
        assert len((await store.load_instance(instance.id)).steps) == 2

    async def test_remove_step(self, runtime, instance, admin):
        approval_id = by_title(instance, APPROVAL).id
        stored = await runtime.remove_step(approval_id, admin)
        assert [s.title for s in stored.steps] == [CHECKLIST]
        assert stored.dependencies == []

    async def test_remove_started_step(self, runtime, instance, admin, paralegal):
        checklist_id = by_title(instance, CHECKLIST).id
        await runtime.start(checklist_id, paralegal)
        with pytest.raises(WorkflowTransitionError):
            await runtime.remove_step(checklist_id, admin)

    async def test_remove_step_requires_admin(self, runtime, instance, lawyer):
        with pytest.raises(WorkflowPermissionError):
            await runtime.remove_step(by_title(instance, APPROVAL).id, lawyer)

    async def test_reorder(self, runtime, instance, admin):
        checklist_id = by_title(instance, CHECKLIST).id
        approval_id = by_title(instance, APPROVAL).id
        stored = await runtime.reorder(instance.id, admin, [approval_id, checklist_id])
        assert stored.step(approval_id).order == 0
        assert stored.step(checklist_id).order == 1

    async def test_reorder_must_be_a_permutation(self, runtime, instance, admin):
        with pytest.raises(ValidationError):
            await runtime.reorder(instance.id, admin, [by_title(instance, CHECKLIST).id])

    async def test_validate_graph_and_dependency_statuses(self, runtime, instance):
        assert (await runtime.validate_graph(instance.id)).valid is True

        statuses = await runtime.dependency_statuses(instance.id)
        assert [s.title for s in statuses] == [CHECKLIST, APPROVAL]
        assert statuses[0].is_satisfied is True
        assert statuses[1].is_satisfied is False
        assert statuses[1].pending_dependencies[0].state == StepState.READY


# ─── Concurrency and side effects ───

@pytest.mark.unit
class TestConflicts:

    @pytest.fixture
    def store(self):
        return ConflictingStore()

    async def test_stale_save_is_retried(self, runtime, store, metrics_registry, lawyer, paralegal, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        store.conflicts = 1

        step = await runtime.start(by_title(instance, CHECKLIST).id, paralegal)

        assert step.action_state == StepState.IN_PROGRESS
        assert metrics_registry.counter_value("workflow_conflicts_total", {"operation": "start"}) == 1
        assert (await store.load_instance(instance.id)).version == 3

    async def test_retries_are_bounded(self, runtime, store, dispatcher, lawyer, paralegal, checklist_then_approval):
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        dispatcher.clear()
        store.conflicts = 10

        with pytest.raises(StaleInstanceError):
            await runtime.start(by_title(instance, CHECKLIST).id, paralegal)
        assert dispatcher.events == []


@pytest.mark.unit
class TestSameStepRaces:

    @pytest.fixture
    def store(self):
        return YieldingStore()

    @pytest_asyncio.fixture
    async def instance(self, runtime, lawyer, build_template):
        template = await build_template(
            [
                ("Review file", ActionType.CHECKLIST, Role.LAWYER),
                ("Collect ID", ActionType.CHECKLIST, Role.PARALEGAL),
            ]
        )
        return await runtime.instantiate(template.id, lawyer, matter_id="m")

    async def test_claim_race_has_one_winner(self, runtime, store, metrics_registry, instance, lawyer, other_lawyer):
        step_id = by_title(instance, "Review file").id

        winner, loser = await asyncio.gather(
            runtime.claim(step_id, lawyer),
            runtime.claim(step_id, other_lawyer),
            return_exceptions=True,
        )

        assert isinstance(winner, Step)
        assert winner.assigned_to_id == lawyer.id
        assert isinstance(loser, AlreadyClaimedError)
        assert loser.retryable is True
        assert metrics_registry.counter_value("workflow_conflicts_total", {"operation": "claim"}) == 1
        stored = await store.load_instance(instance.id)
        assert stored.step(step_id).assigned_to_id == lawyer.id

    async def test_start_race_loser_gets_retryable_conflict(
        self, runtime, store, metrics_registry, instance, lawyer, other_lawyer
    ):
        step_id = by_title(instance, "Review file").id

        winner, loser = await asyncio.gather(
            runtime.start(step_id, lawyer),
            runtime.start(step_id, other_lawyer),
            return_exceptions=True,
        )

        assert isinstance(winner, Step)
        assert winner.action_state == StepState.IN_PROGRESS
        assert isinstance(loser, AlreadyClaimedError)
        assert loser.retryable is True
        assert loser.status_code == 409
        assert loser.assigned_to_id == lawyer.id
        assert metrics_registry.counter_value("workflow_conflicts_total", {"operation": "start"}) == 1

        stored = await store.load_instance(instance.id)
        step = stored.step(step_id)
        assert step.assigned_to_id == lawyer.id
        assert [h["event"] for h in step.history].count("STARTED") == 1

    async def test_different_steps_both_succeed(self, runtime, store, instance, lawyer, paralegal):
        review_id = by_title(instance, "Review file").id
        collect_id = by_title(instance, "Collect ID").id

        review, collect = await asyncio.gather(
            runtime.start(review_id, lawyer),
            runtime.start(collect_id, paralegal),
        )

        assert review.action_state == StepState.IN_PROGRESS
        assert collect.action_state == StepState.IN_PROGRESS
        stored = await store.load_instance(instance.id)
        assert stored.step(review_id).action_state == StepState.IN_PROGRESS
        assert stored.step(collect_id).action_state == StepState.IN_PROGRESS
        assert stored.version == 3


@pytest.mark.unit
class TestSideEffects:

    async def test_dispatcher_failure_does_not_undo_the_save(
        self, store, metrics, fast_retry, lawyer, paralegal, checklist_then_approval
    ):
        runtime = WorkflowRuntime(
            store,
            dispatcher=FailingDispatcher(),
            metrics=metrics,
            registry=ActionRegistry(),
            retry_strategy=fast_retry,
        )
        template = await checklist_then_approval()
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        checklist_id = by_title(instance, CHECKLIST).id

        await runtime.start(checklist_id, paralegal)
        step = await runtime.complete(checklist_id, paralegal)

        assert step.action_state == StepState.COMPLETED
        stored = await store.load_instance(instance.id)
        assert stored.step(checklist_id).action_state == StepState.COMPLETED
        assert by_title(stored, APPROVAL).action_state == StepState.READY

    async def test_nothing_is_emitted_when_the_save_fails(
        self, dispatcher, metrics, metrics_registry, lawyer, paralegal
    ):
        store = BrokenStore()
        template = Template(
            name="Single",
            is_active=True,
            steps=[TemplateStep(title="Intake", action_type=ActionType.CHECKLIST, role_scope=Role.PARALEGAL)],
        )
        await store.save_template(template)
        runtime = WorkflowRuntime(store, dispatcher=dispatcher, metrics=metrics, registry=ActionRegistry())
        instance = await runtime.instantiate(template.id, lawyer, matter_id="m")
        dispatcher.clear()

        with pytest.raises(RuntimeError):
            await runtime.start(instance.steps[0].id, paralegal)

        assert dispatcher.events == []
        assert metrics_registry.counter_value("workflow_steps_started_total", {"action_type": "CHECKLIST"}) == 0
