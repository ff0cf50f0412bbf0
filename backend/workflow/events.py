"""Post-commit events emitted by the runtime."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol

from core.constants import ActionType, EventType, Role
from workflow.models import Actor, Instance, Step, utcnow


@dataclass(frozen=True)
class WorkflowEvent:
    type: EventType
    instance_id: str
    step_id: str
    step_title: str
    action_type: ActionType
    role_scope: Role
    assigned_to_id: Optional[str] = None
    actor_id: Optional[str] = None
    matter_id: Optional[str] = None
    contact_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    @classmethod
    def for_step(
        cls,
        event_type: EventType,
        instance: Instance,
        step: Step,
        actor: Optional[Actor] = None,
        **payload: Any,
    ) -> "WorkflowEvent":
        return cls(
            type=event_type,
            instance_id=instance.id,
            step_id=step.id,
            step_title=step.title,
            action_type=step.action_type,
            role_scope=step.role_scope,
            assigned_to_id=step.assigned_to_id,
            actor_id=actor.id if actor else None,
            matter_id=instance.matter_id,
            contact_id=instance.contact_id,
            payload=payload,
        )


class EventDispatcher(Protocol):
    """Consumes events after the instance has been saved. Must not raise."""

    async def dispatch(self, event: WorkflowEvent) -> None:
        ...
