"""Storage interface for templates and instances, plus an in-memory store.

Instances are saved with optimistic concurrency: ``save_instance`` takes
the version the caller loaded and fails with ``StaleInstanceError`` if
another writer got there first. Every load returns a private copy, so a
caller's mutations never leak into the store before ``save_instance``.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Optional

from core.exceptions import StaleInstanceError, WorkflowNotFoundError
from workflow.models import Instance, Template


class WorkflowStore(ABC):
    """Persistence collaborator used by the runtime and the template service."""

    # ─── Templates ─────────────────────────────────────────

    @abstractmethod
    async def load_template(self, template_id: str) -> Template:
        """Return the template or raise ``WorkflowNotFoundError``."""

    @abstractmethod
    async def save_template(self, template: Template) -> Template:
        """Insert or replace a template (steps and edges included)."""

    @abstractmethod
    async def list_template_versions(self, name: str) -> list[Template]:
        """All versions of a named template, oldest first."""

    # ─── Instances ─────────────────────────────────────────

    @abstractmethod
    async def load_instance(self, instance_id: str) -> Instance:
        """Return the instance snapshot or raise ``WorkflowNotFoundError``."""

    @abstractmethod
    async def find_instance_id_for_step(self, step_id: str) -> str:
        """Return the owning instance id or raise ``WorkflowNotFoundError``."""

    @abstractmethod
    async def create_instance(self, instance: Instance) -> Instance:
        """Persist a new instance at version 1."""

    @abstractmethod
    async def save_instance(self, instance: Instance, expected_version: int) -> Instance:
        """Atomically replace the instance if its stored version still matches.

        Returns the instance with its version incremented.

        Raises:
            StaleInstanceError: the stored version differs from ``expected_version``.
        """


class InMemoryWorkflowStore(WorkflowStore):
    """Dict-backed store for tests and single-process embedding."""

    def __init__(self):
        self._templates: dict[str, Template] = {}
        self._instances: dict[str, Instance] = {}
        self._step_index: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def load_template(self, template_id: str) -> Template:
        template = self._templates.get(template_id)
        if template is None:
            raise WorkflowNotFoundError("Template", template_id)
        return copy.deepcopy(template)

    async def save_template(self, template: Template) -> Template:
        async with self._lock:
            self._templates[template.id] = copy.deepcopy(template)
        return template

    async def list_template_versions(self, name: str) -> list[Template]:
        matches = [t for t in self._templates.values() if t.name == name]
        return [copy.deepcopy(t) for t in sorted(matches, key=lambda t: t.version)]

    async def load_instance(self, instance_id: str) -> Instance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise WorkflowNotFoundError("Workflow instance", instance_id)
        return copy.deepcopy(instance)

    async def find_instance_id_for_step(self, step_id: str) -> str:
        instance_id = self._step_index.get(step_id)
        if instance_id is None:
            raise WorkflowNotFoundError("Step", step_id)
        return instance_id

    async def create_instance(self, instance: Instance) -> Instance:
        async with self._lock:
            instance.version = 1
            self._store(instance)
        return instance

    async def save_instance(self, instance: Instance, expected_version: int) -> Instance:
        async with self._lock:
            current: Optional[Instance] = self._instances.get(instance.id)
            if current is None:
                raise WorkflowNotFoundError("Workflow instance", instance.id)
            if current.version != expected_version:
                raise StaleInstanceError(instance.id, expected_version, current.version)
            for step in current.steps:
                self._step_index.pop(step.id, None)
            instance.version = expected_version + 1
            self._store(instance)
        return instance

    def _store(self, instance: Instance) -> None:
        self._instances[instance.id] = copy.deepcopy(instance)
        for step in instance.steps:
            self._step_index[step.id] = instance.id
