"""Template service: authoring, publishing and versioning of workflow templates."""

import copy
from typing import Any, Optional

import structlog

from core.exceptions import EmptyTemplateError, TemplateLockedError, WorkflowNotFoundError
from workflow.actions import ActionRegistry, get_action_registry
from workflow.graph import validate_graph
from workflow.models import Dependency, Template, TemplateStep, new_id
from workflow.store import WorkflowStore

logger = structlog.get_logger(__name__)


class TemplateService:
    """Creates and edits templates while inactive; publishing locks them.

    A published template is never edited in place. ``new_version`` copies
    it into an inactive draft under the same name with the next version.
    """

    def __init__(self, store: WorkflowStore, registry: Optional[ActionRegistry] = None):
        self.store = store
        self.registry = registry or get_action_registry()

    async def create_template(
        self,
        name: str,
        steps: list[TemplateStep],
        dependencies: Optional[list[Dependency]] = None,
        description: str = "",
    ) -> Template:
        """Create an inactive template; versions continue from any existing ones."""
        existing = await self.store.list_template_versions(name)
        version = max((t.version for t in existing), default=0) + 1
        template = Template(
            name=name,
            description=description,
            steps=list(steps),
            dependencies=list(dependencies or []),
            version=version,
        )
        self._normalise(template)
        await self.store.save_template(template)
        logger.info("template_created", template_id=template.id, name=name, version=version)
        return template

    async def get_template(self, template_id: str) -> Template:
        return await self.store.load_template(template_id)

    async def update_template(
        self,
        template_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        steps: Optional[list[TemplateStep]] = None,
        dependencies: Optional[list[Dependency]] = None,
    ) -> Template:
        """Replace fields of an inactive template.

        Raises:
            TemplateLockedError: the template is published.
        """
        template = await self.store.load_template(template_id)
        if template.is_active:
            raise TemplateLockedError(template_id)

        if name is not None:
            template.name = name
        if description is not None:
            template.description = description
        if steps is not None:
            template.steps = list(steps)
        if dependencies is not None:
            template.dependencies = list(dependencies)

        self._normalise(template)
        await self.store.save_template(template)
        logger.info("template_updated", template_id=template.id)
        return template

    async def publish(self, template_id: str) -> Template:
        """Validate and activate a template so it can be instantiated."""
        template = await self.store.load_template(template_id)
        if template.is_active:
            return template
        if not template.steps:
            raise EmptyTemplateError(template_id)

        validate_graph(template.steps, template.dependencies).raise_for_errors()
        for step in template.steps:
            step.action_config = self.registry.validate_config(step.action_type, step.action_config)

        template.is_active = True
        await self.store.save_template(template)
        logger.info("template_published", template_id=template.id, name=template.name, version=template.version)
        return template

    async def new_version(self, template_id: str) -> Template:
        """Copy a template into a new inactive draft with fresh ids."""
        source = await self.store.load_template(template_id)
        existing = await self.store.list_template_versions(source.name)
        version = max((t.version for t in existing), default=source.version) + 1

        step_ids: dict[str, str] = {}
        steps = []
        for step in source.ordered_steps():
            clone = copy.deepcopy(step)
            clone.id = new_id()
            step_ids[step.id] = clone.id
            steps.append(clone)

        dependencies = []
        for edge in source.dependencies:
            clone = copy.deepcopy(edge)
            clone.id = new_id()
            clone.source_step_id = step_ids[edge.source_step_id]
            clone.target_step_id = step_ids[edge.target_step_id]
            dependencies.append(clone)

        draft = Template(
            name=source.name,
            description=source.description,
            steps=steps,
            dependencies=dependencies,
            version=version,
        )
        await self.store.save_template(draft)
        logger.info("template_versioned", source_id=source.id, template_id=draft.id, version=version)
        return draft

    async def latest_active(self, name: str) -> Template:
        """Highest published version of ``name``."""
        versions = [t for t in await self.store.list_template_versions(name) if t.is_active]
        if not versions:
            raise WorkflowNotFoundError("Active template", name)
        return max(versions, key=lambda t: t.version)

    def describe(self, template: Template) -> dict[str, Any]:
        """Summary used by listings: per-step action metadata and edge count."""
        return {
            "id": template.id,
            "name": template.name,
            "version": template.version,
            "is_active": template.is_active,
            "steps": [
                {"id": s.id, "title": s.title, "action_type": s.action_type.value, "order": s.order}
                for s in template.ordered_steps()
            ],
            "dependency_count": len(template.dependencies),
        }

    @staticmethod
    def _normalise(template: Template) -> None:
        """Dense zero-based ordering, keeping the caller's relative order."""
        for index, step in enumerate(template.ordered_steps()):
            step.order = index
