"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Actors for every role
- In-memory workflow store and a runtime wired to it
- A recording event dispatcher and a per-test metrics registry
- A template builder
- An aiosqlite-backed SQL store (file database under tmp_path)
"""

import os
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("NOTIFICATION_CHANNELS", "in_app")

from core.constants import ActionType, DependencyLogic, Role  # noqa: E402
from core.metrics import MetricsRegistry  # noqa: E402
from workflow.actions import ActionRegistry  # noqa: E402
from workflow.events import WorkflowEvent  # noqa: E402
from workflow.models import Actor, Dependency, Template, TemplateStep  # noqa: E402
from workflow.observability import RegistryWorkflowMetrics  # noqa: E402
from workflow.retry import RetryStrategy  # noqa: E402
from workflow.runtime import WorkflowRuntime  # noqa: E402
from workflow.store import InMemoryWorkflowStore  # noqa: E402


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

@pytest.fixture
def admin() -> Actor:
    return Actor(id="admin-1", role=Role.ADMIN)


@pytest.fixture
def lawyer() -> Actor:
    return Actor(id="lawyer-1", role=Role.LAWYER)


@pytest.fixture
def other_lawyer() -> Actor:
    return Actor(id="lawyer-2", role=Role.LAWYER)


@pytest.fixture
def paralegal() -> Actor:
    return Actor(id="paralegal-1", role=Role.PARALEGAL)


@pytest.fixture
def client_actor() -> Actor:
    return Actor(id="client-1", role=Role.CLIENT)


# ---------------------------------------------------------------------------
# Runtime fixtures
# ---------------------------------------------------------------------------

class RecordingDispatcher:
    """Collects dispatched events; optionally fails every dispatch."""

    def __init__(self, fail: bool = False):
        self.events: list[WorkflowEvent] = []
        self.fail = fail

    async def dispatch(self, event: WorkflowEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("dispatcher offline")

    def of_type(self, event_type) -> list[WorkflowEvent]:
        return [e for e in self.events if e.type == event_type]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def store() -> InMemoryWorkflowStore:
    return InMemoryWorkflowStore()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
def metrics(metrics_registry) -> RegistryWorkflowMetrics:
    return RegistryWorkflowMetrics(metrics_registry)


@pytest.fixture
def fast_retry() -> RetryStrategy:
    return RetryStrategy.fixed(max_retries=2, delay=0.0, retryable_errors=["StaleInstanceError"])


@pytest.fixture
def runtime(store, dispatcher, metrics, fast_retry) -> WorkflowRuntime:
    return WorkflowRuntime(
        store,
        dispatcher=dispatcher,
        metrics=metrics,
        registry=ActionRegistry(),
        retry_strategy=fast_retry,
    )


# ---------------------------------------------------------------------------
# Template builder
# ---------------------------------------------------------------------------

class TemplateBuilder:
    """Builds and saves templates from compact step/edge descriptions.

    Steps are ``(title, action_type, role_scope)`` or a ``TemplateStep``.
    Edges are ``(source_index, target_index)`` or
    ``(source_index, target_index, {dependency kwargs})``.
    """

    def __init__(self, store: InMemoryWorkflowStore):
        self.store = store

    async def __call__(
        self,
        steps: list,
        edges: Optional[list] = None,
        active: bool = True,
        name: str = "Engagement intake",
    ) -> Template:
        template_steps = []
        for index, entry in enumerate(steps):
            if isinstance(entry, TemplateStep):
                entry.order = index
                template_steps.append(entry)
                continue
            title, action_type, role = entry
            template_steps.append(
                TemplateStep(title=title, action_type=action_type, role_scope=role, order=index)
            )

        dependencies = []
        for edge in edges or []:
            source, target, *rest = edge
            kwargs = rest[0] if rest else {}
            dependencies.append(
                Dependency(
                    source_step_id=template_steps[source].id,
                    target_step_id=template_steps[target].id,
                    **kwargs,
                )
            )

        template = Template(
            name=name,
            steps=template_steps,
            dependencies=dependencies,
            is_active=active,
        )
        await self.store.save_template(template)
        return template


@pytest.fixture
def build_template(store) -> TemplateBuilder:
    return TemplateBuilder(store)


@pytest.fixture
def checklist_then_approval(build_template):
    """Checklist (order 0, no deps) -> Approval (order 1, ALL)."""

    async def _build():
        return await build_template(
            [
                ("Collect intake checklist", ActionType.CHECKLIST, Role.PARALEGAL),
                ("Lawyer approval", ActionType.APPROVAL, Role.LAWYER),
            ],
            [(0, 1, {"dependency_logic": DependencyLogic.ALL})],
        )

    return _build


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path) -> AsyncGenerator:
    """Async engine on a throwaway SQLite file with all tables created."""
    from db.database import close_db, create_db_engine, init_db

    engine = create_db_engine(f"sqlite+aiosqlite:///{tmp_path / 'workflows.db'}")
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest_asyncio.fixture
async def sql_store(db_engine):
    from db.database import create_session_factory
    from services.instance_store import SqlAlchemyWorkflowStore

    return SqlAlchemyWorkflowStore(create_session_factory(db_engine))
