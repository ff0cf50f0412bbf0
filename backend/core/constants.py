"""Constants and enums for the matter workflow engine."""

from enum import Enum


class StepState(str, Enum):
    """Runtime state of a workflow step."""

    PENDING = "PENDING"
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class InstanceStatus(str, Enum):
    """Workflow instance status."""

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class ActionType(str, Enum):
    """Kind of work a step represents."""

    APPROVAL = "APPROVAL"
    SIGNATURE = "SIGNATURE"
    REQUEST_DOC = "REQUEST_DOC"
    PAYMENT = "PAYMENT"
    CHECKLIST = "CHECKLIST"
    WRITE_TEXT = "WRITE_TEXT"
    POPULATE_QUESTIONNAIRE = "POPULATE_QUESTIONNAIRE"
    AUTOMATION_EMAIL = "AUTOMATION_EMAIL"
    AUTOMATION_WEBHOOK = "AUTOMATION_WEBHOOK"


class Role(str, Enum):
    """Actor role. SYSTEM is reserved for the engine itself."""

    ADMIN = "ADMIN"
    LAWYER = "LAWYER"
    PARALEGAL = "PARALEGAL"
    CLIENT = "CLIENT"
    SYSTEM = "SYSTEM"


class DependencyType(str, Enum):
    """Edge type between two steps."""

    DEPENDS_ON = "DEPENDS_ON"
    TRIGGERS = "TRIGGERS"
    IF_TRUE_BRANCH = "IF_TRUE_BRANCH"
    IF_FALSE_BRANCH = "IF_FALSE_BRANCH"


class DependencyLogic(str, Enum):
    """Join semantics over the incoming edges of a step."""

    ALL = "ALL"
    ANY = "ANY"
    CUSTOM = "CUSTOM"


class ConditionType(str, Enum):
    """Gate applied to a single edge."""

    ALWAYS = "ALWAYS"
    IF_TRUE = "IF_TRUE"
    IF_FALSE = "IF_FALSE"
    SWITCH = "SWITCH"


class StepAction(str, Enum):
    """Actor-invoked operation on a step."""

    CLAIM = "CLAIM"
    START = "START"
    COMPLETE = "COMPLETE"
    FAIL = "FAIL"
    SKIP = "SKIP"
    RESTART = "RESTART"
    BLOCK = "BLOCK"
    UNBLOCK = "UNBLOCK"


class EventType(str, Enum):
    """Post-commit event emitted by the runtime."""

    READY = "READY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class HistoryEvent(str, Enum):
    """Entry kinds recorded in a step's action history."""

    CLAIMED = "CLAIMED"
    READY = "READY"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    RESTARTED = "RESTARTED"
    BLOCKED = "BLOCKED"
    UNBLOCKED = "UNBLOCKED"
    BRANCH_NOT_TAKEN = "BRANCH_NOT_TAKEN"


TERMINAL_STEP_STATES = frozenset({StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED})

# Steps in these states keep an instance open.
OPEN_STEP_STATES = frozenset({StepState.READY, StepState.IN_PROGRESS, StepState.BLOCKED})

TERMINAL_INSTANCE_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELED}
)
