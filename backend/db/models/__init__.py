"""Database models for the workflow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.template import WorkflowTemplate, WorkflowTemplateDependency, WorkflowTemplateStep
from db.models.instance import WorkflowInstance, WorkflowInstanceDependency, WorkflowInstanceStep

__all__ = [
    "WorkflowTemplate",
    "WorkflowTemplateStep",
    "WorkflowTemplateDependency",
    "WorkflowInstance",
    "WorkflowInstanceStep",
    "WorkflowInstanceDependency",
]
