"""Custom exceptions for the matter workflow engine.

Every error carries the HTTP status an outer API layer should answer with.
``retryable`` marks conflicts a caller may safely re-run.
"""

from typing import Optional, Sequence


class WorkflowError(Exception):
    """Base exception for the workflow engine."""

    retryable: bool = False

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(WorkflowError):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, 404)


class ForbiddenError(WorkflowError):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, 403)


class ValidationError(WorkflowError):
    """Validation error exception."""

    def __init__(self, message: str = "Validation failed", status_code: int = 422):
        super().__init__(message, status_code)


class ConflictError(WorkflowError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message, 409)


# ─── Not found / permission ────────────────────────────────────


class WorkflowNotFoundError(NotFoundError):
    """A template, instance or step id does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class WorkflowPermissionError(ForbiddenError):
    """The actor may not perform the requested action on this step."""

    def __init__(self, message: str = "You do not have permission to act on this step"):
        super().__init__(message)


# ─── State conflicts ───────────────────────────────────────────


class WorkflowTransitionError(ConflictError):
    """A step or instance cannot move between the requested states."""

    def __init__(
        self,
        message: Optional[str] = None,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        if message is None:
            message = f"Transition from {from_state} to {to_state} is not permitted"
        super().__init__(message)


class AlreadyClaimedError(ConflictError):
    """The step is assigned to a different actor."""

    retryable = True

    def __init__(self, step_id: str, assigned_to_id: str):
        self.step_id = step_id
        self.assigned_to_id = assigned_to_id
        super().__init__("Step already claimed by another user")


class StaleInstanceError(ConflictError):
    """The instance changed after it was loaded; reload and re-run."""

    retryable = True

    def __init__(self, instance_id: str, expected_version: int, actual_version: int):
        self.instance_id = instance_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Workflow instance {instance_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


# ─── Templates ─────────────────────────────────────────────────


class TemplateNotPublishedError(ConflictError):
    """Only active (published) templates can be instantiated."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__("Template is not published")


class TemplateLockedError(ConflictError):
    """Published templates are read-only; edit a new version instead."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__("Template is published and cannot be edited; create a new version")


class EmptyTemplateError(ValidationError):
    """Template has no steps."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__("Template has no steps", 400)


# ─── Dependency graph ──────────────────────────────────────────


class DependencyGraphError(ValidationError):
    """Base for problems found by the graph validator."""


class CyclicDependencyError(DependencyGraphError):
    """The dependency edges form a cycle."""

    def __init__(self, cycle: Sequence[str], titles: Optional[Sequence[str]] = None):
        self.cycle = list(cycle)
        self.titles = list(titles) if titles else list(cycle)
        path = " → ".join([*self.titles, self.titles[0]])
        super().__init__(f"Circular dependency detected: {path}")


class InvalidReferenceError(DependencyGraphError):
    """An edge points at a step that is not part of the graph."""

    def __init__(self, step_id: str, dependency_id: Optional[str] = None):
        self.step_id = step_id
        self.dependency_id = dependency_id
        super().__init__(f"Dependency references unknown step: {step_id}")


class SelfDependencyError(DependencyGraphError):
    """A step depends on itself."""

    def __init__(self, step_id: str, title: Optional[str] = None):
        self.step_id = step_id
        super().__init__(f"Step \"{title or step_id}\" cannot depend on itself")


class DuplicateDependencyError(DependencyGraphError):
    """The same source/target pair appears more than once."""

    def __init__(self, source_step_id: str, target_step_id: str):
        self.source_step_id = source_step_id
        self.target_step_id = target_step_id
        super().__init__(f"Duplicate dependency: {source_step_id} → {target_step_id}")


class GraphValidationError(ValidationError):
    """Raised by mutating operations when the resulting graph is invalid."""

    def __init__(self, errors: Sequence[DependencyGraphError]):
        self.errors = list(errors)
        detail = "; ".join(e.message for e in self.errors)
        super().__init__(f"Invalid workflow graph: {detail}")


# ─── Action handlers ───────────────────────────────────────────


class ActionHandlerError(ValidationError):
    """A step config or completion payload failed its action-type schema."""

    def __init__(self, message: str, code: str = "INVALID_PAYLOAD"):
        self.code = code
        super().__init__(message)


class ActionRegistryError(ValidationError):
    """No handler is registered for an action type."""

    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"No handler registered for action type {action_type}")
