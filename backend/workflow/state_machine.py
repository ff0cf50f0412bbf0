"""Step state machine and the actor permission layer.

Two independent checks guard every step mutation:

1. ``assert_transition`` - is ``from -> to`` a legal edge of the state
   machine, and is this kind of actor (system, admin, participant) allowed
   to drive it?
2. ``assert_actor_can_act`` - may this particular actor touch this
   particular step (role scope and current assignment)?
"""

from enum import Enum
from typing import Optional, Protocol

from core.constants import TERMINAL_STEP_STATES, Role, StepAction, StepState
from core.exceptions import WorkflowPermissionError, WorkflowTransitionError
from workflow.models import Actor, Step


class ActorKind(str, Enum):
    SYSTEM = "SYSTEM"
    ADMIN = "ADMIN"
    PARTICIPANT = "PARTICIPANT"


_SYSTEM = frozenset({ActorKind.SYSTEM})
_ADMIN = frozenset({ActorKind.ADMIN})
_HUMAN = frozenset({ActorKind.PARTICIPANT, ActorKind.ADMIN})
_ANY = frozenset({ActorKind.SYSTEM, ActorKind.PARTICIPANT, ActorKind.ADMIN})
_SYSTEM_OR_ADMIN = frozenset({ActorKind.SYSTEM, ActorKind.ADMIN})

TRANSITIONS: dict[tuple[StepState, StepState], frozenset[ActorKind]] = {
    (StepState.PENDING, StepState.READY): _SYSTEM,
    (StepState.READY, StepState.IN_PROGRESS): _HUMAN,
    (StepState.IN_PROGRESS, StepState.COMPLETED): _HUMAN,
    (StepState.IN_PROGRESS, StepState.FAILED): _HUMAN,
    (StepState.IN_PROGRESS, StepState.BLOCKED): _SYSTEM,
    (StepState.BLOCKED, StepState.READY): _ANY,
    (StepState.BLOCKED, StepState.IN_PROGRESS): _ANY,
    (StepState.READY, StepState.SKIPPED): _ADMIN,
    (StepState.PENDING, StepState.SKIPPED): _SYSTEM_OR_ADMIN,  # system: untaken branches
    (StepState.SKIPPED, StepState.READY): _ADMIN,
}

# Actions that require the step to be unassigned or held by the actor
_ASSIGNEE_ACTIONS = frozenset({StepAction.START, StepAction.COMPLETE, StepAction.FAIL, StepAction.UNBLOCK})
_ADMIN_ACTIONS = frozenset({StepAction.SKIP, StepAction.RESTART})


class Authorization(Protocol):
    """External policy hook consulted after the built-in role checks."""

    def actor_can_act(self, actor: Actor, step: Step) -> bool:
        ...


def actor_kind(actor: Actor) -> ActorKind:
    if actor.is_system:
        return ActorKind.SYSTEM
    if actor.is_admin:
        return ActorKind.ADMIN
    return ActorKind.PARTICIPANT


def is_terminal(state: StepState) -> bool:
    return state in TERMINAL_STEP_STATES


def is_transition_allowed(from_state: StepState, to_state: StepState) -> bool:
    return (from_state, to_state) in TRANSITIONS


def allowed_targets(from_state: StepState) -> list[StepState]:
    return [to for (frm, to) in TRANSITIONS if frm == from_state]


def assert_transition(
    from_state: StepState,
    to_state: StepState,
    actor: Optional[Actor] = None,
) -> None:
    """Raise unless ``from -> to`` is legal (and, if given, open to ``actor``).

    Raises:
        WorkflowTransitionError: the pair is not in the transition table.
        WorkflowPermissionError: the pair is legal but not for this actor kind.
    """
    allowed = TRANSITIONS.get((from_state, to_state))
    if allowed is None:
        raise WorkflowTransitionError(from_state=from_state.value, to_state=to_state.value)
    if actor is not None and actor_kind(actor) not in allowed:
        raise WorkflowPermissionError(
            f"{actor.role.value} actors may not move a step from {from_state.value} to {to_state.value}"
        )


def can_actor_act(actor: Actor, step: Step, action: StepAction) -> bool:
    """Role-scope and assignment check. Admins may act on any step."""
    if actor.is_admin:
        return True
    if actor.is_system:
        return action in (StepAction.BLOCK, StepAction.UNBLOCK)
    if action in _ADMIN_ACTIONS:
        return False
    if actor.role != step.role_scope:
        return False
    if action in _ASSIGNEE_ACTIONS:
        return step.assigned_to_id is None or step.assigned_to_id == actor.id
    return True


def assert_actor_can_act(
    actor: Actor,
    step: Step,
    action: StepAction,
    authorization: Optional[Authorization] = None,
) -> None:
    if not can_actor_act(actor, step, action):
        if actor.role not in (Role.ADMIN, Role.SYSTEM) and actor.role != step.role_scope:
            raise WorkflowPermissionError(
                f"Step {step.title!r} is scoped to {step.role_scope.value}; "
                f"{actor.role.value} actors cannot {action.value.lower()} it"
            )
        if action in _ASSIGNEE_ACTIONS and step.assigned_to_id not in (None, actor.id):
            raise WorkflowPermissionError("Step is assigned to another actor")
        raise WorkflowPermissionError()
    if authorization is not None and not actor.is_system and not authorization.actor_can_act(actor, step):
        raise WorkflowPermissionError()
