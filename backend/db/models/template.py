"""Workflow template tables."""

from typing import Optional

from sqlalchemy import JSON, Boolean, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import BaseModel


class WorkflowTemplate(BaseModel):
    """A reusable, versioned workflow definition.

    Attributes:
        name: Template name shared by all of its versions
        version: Version number, unique per name
        is_active: Published templates are read-only and instantiable
    """

    __tablename__ = "workflow_templates"
    __table_args__ = (UniqueConstraint("name", "version", name="uq_workflow_template_version"),)

    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    steps: Mapped[list["WorkflowTemplateStep"]] = relationship(
        "WorkflowTemplateStep",
        back_populates="template",
        order_by="WorkflowTemplateStep.step_order",
        lazy="selectin",
    )
    dependencies: Mapped[list["WorkflowTemplateDependency"]] = relationship(
        "WorkflowTemplateDependency",
        back_populates="template",
        lazy="selectin",
    )


class WorkflowTemplateStep(BaseModel):
    __tablename__ = "workflow_template_steps"

    template_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    role_scope: Mapped[str] = mapped_column(String(20), nullable=False)
    step_order: Mapped[int] = mapped_column(nullable=False, default=0)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    action_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    position_x: Mapped[Optional[float]] = mapped_column(nullable=True)
    position_y: Mapped[Optional[float]] = mapped_column(nullable=True)

    template: Mapped["WorkflowTemplate"] = relationship("WorkflowTemplate", back_populates="steps")


class WorkflowTemplateDependency(BaseModel):
    __tablename__ = "workflow_template_dependencies"

    template_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_step_id: Mapped[str] = mapped_column(nullable=False)
    target_step_id: Mapped[str] = mapped_column(nullable=False)
    dependency_type: Mapped[str] = mapped_column(String(30), nullable=False)
    dependency_logic: Mapped[str] = mapped_column(String(10), nullable=False)
    condition_type: Mapped[str] = mapped_column(String(10), nullable=False)
    condition_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    template: Mapped["WorkflowTemplate"] = relationship("WorkflowTemplate", back_populates="dependencies")
