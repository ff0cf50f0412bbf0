"""Matter Workflow Engine - application wiring.

Builds the runtime and its collaborators from settings:

    async with workflow_app() as app:
        instance = await app.runtime.instantiate(template_id, actor, matter_id=...)
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import Settings, get_settings
from core.logging_config import setup_logging
from core.metrics import MetricsRegistry
from core.rbac import RolePermissionAuthorization
from db.database import close_db, create_db_engine, create_session_factory, init_db
from notifications.dispatcher import (
    ActorDirectory,
    NotificationPolicy,
    QueuedDispatcher,
    StaticActorDirectory,
    WorkflowNotificationDispatcher,
)
from notifications.manager import NotificationManager
from services.instance_store import SqlAlchemyWorkflowStore
from services.template_service import TemplateService
from workflow.actions import ActionRegistry
from workflow.observability import RegistryWorkflowMetrics
from workflow.retry import RetryStrategy
from workflow.runtime import WorkflowRuntime
from workflow.store import WorkflowStore

logger = structlog.get_logger(__name__)


@dataclass
class WorkflowApp:
    """Everything a caller (HTTP layer, worker, script) needs."""

    settings: Settings
    store: WorkflowStore
    runtime: WorkflowRuntime
    templates: TemplateService
    notifications: NotificationManager
    dispatcher: QueuedDispatcher
    metrics: MetricsRegistry
    engine: Optional[AsyncEngine] = None


def create_runtime(
    store: WorkflowStore,
    settings: Optional[Settings] = None,
    directory: Optional[ActorDirectory] = None,
    authorization: Optional[RolePermissionAuthorization] = None,
    registry: Optional[MetricsRegistry] = None,
) -> WorkflowApp:
    """Wire a runtime around ``store``. The returned dispatcher is not started."""
    settings = settings or get_settings()
    metrics_registry = registry or MetricsRegistry()
    metrics = RegistryWorkflowMetrics(metrics_registry)
    actions = ActionRegistry()

    manager = NotificationManager()
    manager.configure_from_settings(settings)
    dispatcher = QueuedDispatcher(
        WorkflowNotificationDispatcher(
            manager,
            directory or StaticActorDirectory(),
            policy=NotificationPolicy.from_settings(settings),
            metrics=metrics,
        ),
        maxsize=settings.NOTIFICATION_QUEUE_SIZE,
    )

    runtime = WorkflowRuntime(
        store,
        dispatcher=dispatcher,
        metrics=metrics,
        authorization=authorization or RolePermissionAuthorization(),
        registry=actions,
        retry_strategy=RetryStrategy.exponential(
            max_retries=settings.WORKFLOW_CONFLICT_RETRIES,
            base_delay=settings.WORKFLOW_CONFLICT_BASE_DELAY,
            retryable_errors=["StaleInstanceError"],
        ),
    )
    return WorkflowApp(
        settings=settings,
        store=store,
        runtime=runtime,
        templates=TemplateService(store, actions),
        notifications=manager,
        dispatcher=dispatcher,
        metrics=metrics_registry,
    )


@asynccontextmanager
async def workflow_app(
    settings: Optional[Settings] = None,
    directory: Optional[ActorDirectory] = None,
) -> AsyncIterator[WorkflowApp]:
    """Startup and shutdown around a database-backed runtime."""
    settings = settings or get_settings()
    setup_logging()

    engine = create_db_engine(settings.DATABASE_URL)
    await init_db(engine)
    store = SqlAlchemyWorkflowStore(create_session_factory(engine))

    app = create_runtime(store, settings=settings, directory=directory)
    app.engine = engine
    app.dispatcher.start()
    logger.info(
        "workflow_app_started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        channels=[ch.value for ch in app.notifications.channels],
    )
    try:
        yield app
    finally:
        await app.dispatcher.stop()
        await close_db(engine)
        logger.info("workflow_app_stopped")
