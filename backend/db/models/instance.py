"""Workflow instance tables.

``workflow_instances.version`` backs optimistic concurrency: a save only
succeeds if the row still carries the version the writer loaded.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class WorkflowInstance(BaseModel):
    """A template instantiated against a matter or a contact."""

    __tablename__ = "workflow_instances"

    template_id: Mapped[str] = mapped_column(nullable=False, index=True)
    template_version: Mapped[int] = mapped_column(nullable=False)
    created_by_id: Mapped[str] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    matter_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    contact_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    canceled_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(nullable=False, default=1)

    steps: Mapped[list["WorkflowInstanceStep"]] = relationship(
        "WorkflowInstanceStep",
        back_populates="instance",
        order_by="WorkflowInstanceStep.step_order",
        lazy="selectin",
    )
    dependencies: Mapped[list["WorkflowInstanceDependency"]] = relationship(
        "WorkflowInstanceDependency",
        back_populates="instance",
        lazy="selectin",
    )


class WorkflowInstanceStep(BaseModel):
    """Runtime copy of a template step (or an ad-hoc step).

    Attributes:
        action_state: PENDING, READY, IN_PROGRESS, BLOCKED, COMPLETED, FAILED, SKIPPED
        action_data: JSON holding config, history and handler output
    """

    __tablename__ = "workflow_instance_steps"

    instance_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    template_step_id: Mapped[Optional[str]] = mapped_column(nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    role_scope: Mapped[str] = mapped_column(String(20), nullable=False)
    step_order: Mapped[int] = mapped_column(nullable=False, default=0)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    action_state: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    action_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    assigned_to_id: Mapped[Optional[str]] = mapped_column(nullable=True, index=True)
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    position_x: Mapped[Optional[float]] = mapped_column(nullable=True)
    position_y: Mapped[Optional[float]] = mapped_column(nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    instance: Mapped["WorkflowInstance"] = relationship("WorkflowInstance", back_populates="steps")


class WorkflowInstanceDependency(BaseModel):
    __tablename__ = "workflow_instance_dependencies"

    instance_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_step_id: Mapped[str] = mapped_column(nullable=False)
    target_step_id: Mapped[str] = mapped_column(nullable=False)
    dependency_type: Mapped[str] = mapped_column(String(30), nullable=False)
    dependency_logic: Mapped[str] = mapped_column(String(10), nullable=False)
    condition_type: Mapped[str] = mapped_column(String(10), nullable=False)
    condition_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    instance: Mapped["WorkflowInstance"] = relationship("WorkflowInstance", back_populates="dependencies")
