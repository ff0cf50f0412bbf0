"""SQLAlchemy implementation of ``WorkflowStore``.

Instances are saved by bumping ``workflow_instances.version`` with
``UPDATE ... WHERE id = :id AND version = :expected`` and then rewriting
the instance's step and edge rows, all inside one transaction. A zero
rowcount means another writer saved first and the whole save is rolled
back with ``StaleInstanceError``.
"""

import copy
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.constants import (
    ActionType,
    ConditionType,
    DependencyLogic,
    DependencyType,
    InstanceStatus,
    Role,
    StepState,
)
from core.exceptions import StaleInstanceError, WorkflowNotFoundError
from db.models import (
    WorkflowInstance,
    WorkflowInstanceDependency,
    WorkflowInstanceStep,
    WorkflowTemplate,
    WorkflowTemplateDependency,
    WorkflowTemplateStep,
)
from services.base import BaseService
from workflow.models import Dependency, Instance, Step, Template, TemplateStep
from workflow.store import WorkflowStore

logger = structlog.get_logger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; every timestamp in the engine is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TemplateRecords(BaseService[WorkflowTemplate]):
    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowTemplate, db)


class InstanceRecords(BaseService[WorkflowInstance]):
    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowInstance, db)


# ─── Row <-> domain mapping ────────────────────────────────────

def _edge_from_row(row) -> Dependency:
    return Dependency(
        id=row.id,
        source_step_id=row.source_step_id,
        target_step_id=row.target_step_id,
        dependency_type=DependencyType(row.dependency_type),
        dependency_logic=DependencyLogic(row.dependency_logic),
        condition_type=ConditionType(row.condition_type),
        condition_config=copy.deepcopy(row.condition_config),
    )


def _edge_columns(edge: Dependency) -> dict:
    return {
        "id": edge.id,
        "source_step_id": edge.source_step_id,
        "target_step_id": edge.target_step_id,
        "dependency_type": edge.dependency_type.value,
        "dependency_logic": edge.dependency_logic.value,
        "condition_type": edge.condition_type.value,
        "condition_config": copy.deepcopy(edge.condition_config),
    }


def template_from_row(row: WorkflowTemplate) -> Template:
    return Template(
        id=row.id,
        name=row.name,
        description=row.description or "",
        version=row.version,
        is_active=row.is_active,
        created_at=_aware(row.created_at),
        steps=[
            TemplateStep(
                id=s.id,
                title=s.title,
                action_type=ActionType(s.action_type),
                role_scope=Role(s.role_scope),
                order=s.step_order,
                required=s.required,
                action_config=copy.deepcopy(s.action_config or {}),
                position_x=s.position_x,
                position_y=s.position_y,
            )
            for s in row.steps
        ],
        dependencies=[_edge_from_row(d) for d in row.dependencies],
    )


def instance_from_row(row: WorkflowInstance) -> Instance:
    return Instance(
        id=row.id,
        template_id=row.template_id,
        template_version=row.template_version,
        created_by_id=row.created_by_id,
        status=InstanceStatus(row.status),
        matter_id=row.matter_id,
        contact_id=row.contact_id,
        context=copy.deepcopy(row.context or {}),
        canceled_reason=row.canceled_reason,
        created_at=_aware(row.created_at),
        completed_at=_aware(row.completed_at),
        version=row.version,
        steps=[
            Step(
                id=s.id,
                instance_id=s.instance_id,
                template_step_id=s.template_step_id,
                title=s.title,
                action_type=ActionType(s.action_type),
                role_scope=Role(s.role_scope),
                order=s.step_order,
                required=s.required,
                action_state=StepState(s.action_state),
                action_data=copy.deepcopy(s.action_data or {}),
                assigned_to_id=s.assigned_to_id,
                due_date=_aware(s.due_date),
                priority=s.priority,
                position_x=s.position_x,
                position_y=s.position_y,
                started_at=_aware(s.started_at),
                completed_at=_aware(s.completed_at),
            )
            for s in row.steps
        ],
        dependencies=[_edge_from_row(d) for d in row.dependencies],
    )


def _instance_columns(instance: Instance) -> dict:
    return {
        "template_id": instance.template_id,
        "template_version": instance.template_version,
        "created_by_id": instance.created_by_id,
        "status": instance.status.value,
        "matter_id": instance.matter_id,
        "contact_id": instance.contact_id,
        "context": copy.deepcopy(instance.context),
        "canceled_reason": instance.canceled_reason,
        "completed_at": instance.completed_at,
    }


def _step_row(step: Step) -> WorkflowInstanceStep:
    return WorkflowInstanceStep(
        id=step.id,
        instance_id=step.instance_id,
        template_step_id=step.template_step_id,
        title=step.title,
        action_type=step.action_type.value,
        role_scope=step.role_scope.value,
        step_order=step.order,
        required=step.required,
        action_state=step.action_state.value,
        action_data=copy.deepcopy(step.action_data),
        assigned_to_id=step.assigned_to_id,
        due_date=step.due_date,
        priority=step.priority,
        position_x=step.position_x,
        position_y=step.position_y,
        started_at=step.started_at,
        completed_at=step.completed_at,
    )


# ─── Store ─────────────────────────────────────────────────────

class SqlAlchemyWorkflowStore(WorkflowStore):
    """Persists templates and instances through an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ─── Templates ─────────────────────────────────────────

    async def load_template(self, template_id: str) -> Template:
        async with self.session_factory() as session:
            row = await TemplateRecords(session).get_by_id(template_id)
            if row is None:
                raise WorkflowNotFoundError("Template", template_id)
            return template_from_row(row)

    async def save_template(self, template: Template) -> Template:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    delete(WorkflowTemplateDependency).where(WorkflowTemplateDependency.template_id == template.id)
                )
                await session.execute(
                    delete(WorkflowTemplateStep).where(WorkflowTemplateStep.template_id == template.id)
                )
                await session.execute(delete(WorkflowTemplate).where(WorkflowTemplate.id == template.id))

                session.add(
                    WorkflowTemplate(
                        id=template.id,
                        name=template.name,
                        description=template.description,
                        version=template.version,
                        is_active=template.is_active,
                        created_at=template.created_at,
                    )
                )
                await session.flush()
                session.add_all(
                    WorkflowTemplateStep(
                        id=step.id,
                        template_id=template.id,
                        title=step.title,
                        action_type=step.action_type.value,
                        role_scope=step.role_scope.value,
                        step_order=step.order,
                        required=step.required,
                        action_config=copy.deepcopy(step.action_config),
                        position_x=step.position_x,
                        position_y=step.position_y,
                    )
                    for step in template.steps
                )
                session.add_all(
                    WorkflowTemplateDependency(template_id=template.id, **_edge_columns(edge))
                    for edge in template.dependencies
                )
        logger.debug("template_saved", template_id=template.id, version=template.version)
        return template

    async def list_template_versions(self, name: str) -> list[Template]:
        async with self.session_factory() as session:
            rows = await TemplateRecords(session).list(order_by="version", filters={"name": name})
            return [template_from_row(row) for row in rows]

    # ─── Instances ─────────────────────────────────────────

    async def load_instance(self, instance_id: str) -> Instance:
        async with self.session_factory() as session:
            row = await InstanceRecords(session).get_by_id(instance_id)
            if row is None:
                raise WorkflowNotFoundError("Workflow instance", instance_id)
            return instance_from_row(row)

    async def find_instance_id_for_step(self, step_id: str) -> str:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WorkflowInstanceStep.instance_id).where(WorkflowInstanceStep.id == step_id)
            )
            instance_id = result.scalar_one_or_none()
        if instance_id is None:
            raise WorkflowNotFoundError("Step", step_id)
        return instance_id

    async def create_instance(self, instance: Instance) -> Instance:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    WorkflowInstance(
                        id=instance.id,
                        created_at=instance.created_at,
                        version=1,
                        **_instance_columns(instance),
                    )
                )
                await session.flush()
                self._add_children(session, instance)
        instance.version = 1
        return instance

    async def save_instance(self, instance: Instance, expected_version: int) -> Instance:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(WorkflowInstance)
                    .where(
                        WorkflowInstance.id == instance.id,
                        WorkflowInstance.version == expected_version,
                    )
                    .values(version=expected_version + 1, **_instance_columns(instance))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    current = await session.execute(
                        select(WorkflowInstance.version).where(WorkflowInstance.id == instance.id)
                    )
                    actual = current.scalar_one_or_none()
                    if actual is None:
                        raise WorkflowNotFoundError("Workflow instance", instance.id)
                    raise StaleInstanceError(instance.id, expected_version, actual)

                await session.execute(
                    delete(WorkflowInstanceDependency).where(WorkflowInstanceDependency.instance_id == instance.id)
                )
                await session.execute(
                    delete(WorkflowInstanceStep).where(WorkflowInstanceStep.instance_id == instance.id)
                )
                self._add_children(session, instance)

        instance.version = expected_version + 1
        return instance

    @staticmethod
    def _add_children(session: AsyncSession, instance: Instance) -> None:
        session.add_all(_step_row(step) for step in instance.steps)
        session.add_all(
            WorkflowInstanceDependency(instance_id=instance.id, **_edge_columns(edge))
            for edge in instance.dependencies
        )
