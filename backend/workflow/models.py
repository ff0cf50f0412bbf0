"""Domain objects for templates and running workflow instances.

These are plain dataclasses so the validator, resolver and state machine
can work on snapshots without a database session. Persistence lives behind
``workflow.store.WorkflowStore``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from core.constants import (
    ActionType,
    ConditionType,
    DependencyLogic,
    DependencyType,
    HistoryEvent,
    InstanceStatus,
    Role,
    StepState,
)
from core.exceptions import WorkflowNotFoundError


def new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Actor:
    """Whoever invokes a runtime operation."""

    id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM


SYSTEM_ACTOR = Actor(id="system", role=Role.SYSTEM)


@dataclass
class Dependency:
    """Directed edge ``source -> target``; the target waits on the source.

    Used for both template and instance graphs.
    """

    source_step_id: str
    target_step_id: str
    dependency_type: DependencyType = DependencyType.DEPENDS_ON
    dependency_logic: DependencyLogic = DependencyLogic.ALL
    condition_type: ConditionType = ConditionType.ALWAYS
    condition_config: Optional[dict[str, Any]] = None
    id: str = field(default_factory=new_id)

    @property
    def effective_condition(self) -> ConditionType:
        """Branch edge types imply a condition when none is set explicitly."""
        if self.condition_type != ConditionType.ALWAYS:
            return self.condition_type
        if self.dependency_type == DependencyType.IF_TRUE_BRANCH:
            return ConditionType.IF_TRUE
        if self.dependency_type == DependencyType.IF_FALSE_BRANCH:
            return ConditionType.IF_FALSE
        return ConditionType.ALWAYS

    @property
    def is_conditional(self) -> bool:
        return self.effective_condition != ConditionType.ALWAYS


TemplateDependency = Dependency


@dataclass
class TemplateStep:
    title: str
    action_type: ActionType
    role_scope: Role
    order: int = 0
    required: bool = True
    action_config: dict[str, Any] = field(default_factory=dict)
    position_x: Optional[float] = None
    position_y: Optional[float] = None
    id: str = field(default_factory=new_id)


@dataclass
class Template:
    """Reusable workflow definition. Read-only once ``is_active``."""

    name: str
    steps: list[TemplateStep] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    version: int = 1
    is_active: bool = False
    description: str = ""
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def ordered_steps(self) -> list[TemplateStep]:
        return sorted(self.steps, key=lambda s: s.order)


@dataclass
class Step:
    """Runtime copy of a template step (or an ad-hoc step) inside an instance."""

    instance_id: str
    title: str
    action_type: ActionType
    role_scope: Role
    order: int
    required: bool = True
    action_state: StepState = StepState.PENDING
    action_data: dict[str, Any] = field(default_factory=dict)
    template_step_id: Optional[str] = None
    assigned_to_id: Optional[str] = None
    due_date: Optional[datetime] = None
    priority: Optional[str] = None
    position_x: Optional[float] = None
    position_y: Optional[float] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    id: str = field(default_factory=new_id)

    def __post_init__(self):
        self.action_data.setdefault("config", {})
        self.action_data.setdefault("history", [])
        self.action_data.setdefault("data", {})

    @property
    def config(self) -> dict[str, Any]:
        return self.action_data["config"]

    @property
    def history(self) -> list[dict[str, Any]]:
        return self.action_data["history"]

    @property
    def data(self) -> dict[str, Any]:
        """Outputs recorded by the handler on completion."""
        return self.action_data["data"]

    @property
    def cancellation_reason(self) -> Optional[str]:
        return self.action_data.get("cancellation_reason")

    def record(self, event: HistoryEvent, actor: Actor, payload: Optional[dict] = None) -> None:
        """Append an entry to the step's action history."""
        self.history.append(
            {
                "at": utcnow().isoformat(),
                "by": actor.id,
                "event": event.value,
                "payload": payload or {},
            }
        )


@dataclass
class Instance:
    """A template instantiated against one matter or one contact."""

    template_id: str
    template_version: int
    created_by_id: str
    status: InstanceStatus = InstanceStatus.ACTIVE
    steps: list[Step] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)
    matter_id: Optional[str] = None
    contact_id: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    canceled_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    version: int = 0
    id: str = field(default_factory=new_id)

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise WorkflowNotFoundError("Step", step_id)

    def has_step(self, step_id: str) -> bool:
        return any(step.id == step_id for step in self.steps)

    def ordered_steps(self) -> list[Step]:
        return sorted(self.steps, key=lambda s: s.order)

    def renumber(self) -> None:
        """Restore dense zero-based ordering after an insert or delete."""
        for index, step in enumerate(self.ordered_steps()):
            step.order = index
