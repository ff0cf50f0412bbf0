"""Turns runtime events into notifications for the actors who must act.

The runtime calls ``dispatch`` only after an instance has been saved.
``WorkflowNotificationDispatcher`` resolves recipients from the step's
assignee or role scope, fans out to the channels the policy lists for the
event type, and swallows every delivery failure after logging it and
recording a metric. ``QueuedDispatcher`` puts an ``asyncio.Queue`` in
front of any dispatcher so the caller never waits on delivery.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

from core.constants import ActionType, EventType, Role
from notifications.channels import NotificationChannel, NotificationPriority
from notifications.manager import NotificationManager
from workflow.events import EventDispatcher, WorkflowEvent
from workflow.observability import WorkflowMetrics

logger = logging.getLogger(__name__)


# ─── Recipients ────────────────────────────────────────────────

@dataclass(frozen=True)
class Recipient:
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


class ActorDirectory(Protocol):
    """Looks up who should hear about an event."""

    async def recipients_for(self, event: WorkflowEvent) -> list[Recipient]:
        ...


class StaticActorDirectory:
    """In-memory directory: the assignee if known, otherwise everyone in the step's role."""

    def __init__(self, people: Optional[dict[Role, list[Recipient]]] = None):
        self._by_role: dict[Role, list[Recipient]] = {
            role: list(recipients) for role, recipients in (people or {}).items()
        }

    def add(self, role: Role, recipient: Recipient) -> None:
        self._by_role.setdefault(role, []).append(recipient)

    def _find(self, user_id: str) -> Optional[Recipient]:
        for recipients in self._by_role.values():
            for recipient in recipients:
                if recipient.id == user_id:
                    return recipient
        return None

    async def recipients_for(self, event: WorkflowEvent) -> list[Recipient]:
        if event.assigned_to_id:
            assignee = self._find(event.assigned_to_id)
            if assignee is not None:
                return [assignee]
        return list(self._by_role.get(event.role_scope, []))


# ─── Policy ────────────────────────────────────────────────────

def _default_channels() -> dict[EventType, list[NotificationChannel]]:
    return {
        EventType.READY: [NotificationChannel.IN_APP, NotificationChannel.EMAIL],
        EventType.COMPLETED: [NotificationChannel.IN_APP],
        EventType.FAILED: [NotificationChannel.IN_APP, NotificationChannel.EMAIL],
    }


@dataclass
class NotificationPolicy:
    """Which channels each event type goes out on."""

    enabled: bool = True
    channels_by_event: dict[EventType, list[NotificationChannel]] = field(default_factory=_default_channels)

    @classmethod
    def from_settings(cls, settings) -> "NotificationPolicy":
        known = {ch.value for ch in NotificationChannel}
        configured = {NotificationChannel(name) for name in settings.notification_channels_list if name in known}
        channels = {
            event_type: [ch for ch in wanted if ch in configured]
            for event_type, wanted in _default_channels().items()
        }
        # webhook subscribers get every event
        if NotificationChannel.WEBHOOK in configured:
            for wanted in channels.values():
                wanted.append(NotificationChannel.WEBHOOK)
        return cls(enabled=settings.WORKFLOW_NOTIFICATIONS_ENABLED, channels_by_event=channels)

    def channels_for(self, event_type: EventType) -> list[NotificationChannel]:
        if not self.enabled:
            return []
        return list(self.channels_by_event.get(event_type, []))


# ─── Message Rendering ─────────────────────────────────────────

_TITLES = {
    EventType.READY: "Workflow step ready: {title}",
    EventType.COMPLETED: "Workflow step completed: {title}",
    EventType.FAILED: "Workflow step FAILED: {title}",
}

_PRIORITIES = {
    EventType.READY: NotificationPriority.NORMAL,
    EventType.COMPLETED: NotificationPriority.LOW,
    EventType.FAILED: NotificationPriority.HIGH,
}

ACTION_LABELS = {
    ActionType.APPROVAL: "Lawyer approval",
    ActionType.SIGNATURE: "Client signature",
    ActionType.REQUEST_DOC: "Document request",
    ActionType.PAYMENT: "Payment",
    ActionType.CHECKLIST: "Checklist",
    ActionType.WRITE_TEXT: "Written response",
    ActionType.POPULATE_QUESTIONNAIRE: "Questionnaire",
    ActionType.AUTOMATION_EMAIL: "Automated email",
    ActionType.AUTOMATION_WEBHOOK: "Automated webhook",
}


def render(event: WorkflowEvent, recipient: Recipient) -> tuple[str, str]:
    """Title and plain-text body for one recipient."""
    title = _TITLES[event.type].format(title=event.step_title)
    label = ACTION_LABELS.get(event.action_type, event.action_type.value)
    subject = f"matter {event.matter_id}" if event.matter_id else f"contact {event.contact_id}"

    if event.type == EventType.READY:
        lead = "A workflow step is waiting for your action:"
    elif event.type == EventType.COMPLETED:
        lead = "A workflow step has been completed:"
    else:
        lead = "A workflow step has failed:"

    lines = [
        f"Hello {recipient.name or recipient.id},",
        "",
        lead,
        "",
        f"Step: {event.step_title}",
        f"Action: {label}",
        f"For: {subject}",
    ]
    reason = event.payload.get("reason")
    if reason:
        lines.append(f"Reason: {reason}")
    return title, "\n".join(lines)


# ─── Dispatchers ───────────────────────────────────────────────

class WorkflowNotificationDispatcher:
    """Delivers workflow events through the NotificationManager. Never raises."""

    def __init__(
        self,
        manager: NotificationManager,
        directory: ActorDirectory,
        policy: Optional[NotificationPolicy] = None,
        metrics: Optional[WorkflowMetrics] = None,
    ):
        self.manager = manager
        self.directory = directory
        self.policy = policy or NotificationPolicy()
        self.metrics = metrics or WorkflowMetrics()

    async def dispatch(self, event: WorkflowEvent) -> None:
        channels = self.policy.channels_for(event.type)
        if not channels:
            logger.debug(f"Notifications disabled for {event.type.value}; skipping step {event.step_id}")
            return

        try:
            recipients = await self.directory.recipients_for(event)
        except Exception as e:
            logger.error(f"Recipient lookup failed for step {event.step_id}: {e}")
            return

        if not recipients:
            logger.warning(f"No eligible recipients for step {event.step_id}")
            return

        for recipient in recipients:
            title, message = render(event, recipient)
            for channel in channels:
                await self._deliver(event, recipient, channel, title, message)

    async def _deliver(
        self,
        event: WorkflowEvent,
        recipient: Recipient,
        channel: NotificationChannel,
        title: str,
        message: str,
    ) -> None:
        if channel == NotificationChannel.EMAIL:
            if not recipient.email:
                return
            address = recipient.email
        elif channel == NotificationChannel.IN_APP:
            address = recipient.id
        else:
            address = ""

        success = False
        try:
            results = await self.manager.send_multi(
                title=title,
                message=message,
                channels=[channel],
                recipients={channel: address},
                priority=_PRIORITIES[event.type],
                metadata={
                    "event": event.type.value,
                    "action_type": event.action_type.value,
                    "matter_id": event.matter_id,
                    "contact_id": event.contact_id,
                },
                user_id=recipient.id,
                instance_id=event.instance_id,
                step_id=event.step_id,
            )
            success = all(result.success for result in results)
        except Exception as e:
            logger.error(f"Notification delivery raised for step {event.step_id}: {e}")
        self.metrics.record_notification(event.action_type, success)


class QueuedDispatcher:
    """Buffers events in an ``asyncio.Queue`` and delivers them in the background.

    Usage:
        queued = QueuedDispatcher(WorkflowNotificationDispatcher(...))
        queued.start()
        runtime = WorkflowRuntime(store, dispatcher=queued)
        ...
        await queued.stop()
    """

    def __init__(self, inner: EventDispatcher, maxsize: int = 1000):
        self.inner = inner
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def dispatch(self, event: WorkflowEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Notification queue full; dropped {event.type.value} for step {event.step_id}")

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run())

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        if drain and self.running:
            await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.inner.dispatch(event)
            except Exception as e:
                logger.error(f"Queued dispatch failed for step {event.step_id}: {e}")
            finally:
                self._queue.task_done()
