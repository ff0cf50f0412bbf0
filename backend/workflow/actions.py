"""Action handlers: per action-type config and completion schemas.

Each ``ActionType`` has one handler holding two pydantic models: the step
config set at template time and the payload accepted by ``complete``. The
runtime stays payload-agnostic; it hands raw dicts to the handler and gets
back the data to merge into the step and the shared instance context.

Usage:
    registry = get_action_registry()
    config = registry.validate_config(ActionType.PAYMENT, {"amount": 250, "currency": "EUR"})
    outcome = registry.get(ActionType.PAYMENT).complete(step, actor, {"transaction_id": "tx_1"})
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Type, Union
from uuid import uuid4

import pydantic
import structlog
from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from core.constants import ActionType
from core.exceptions import ActionHandlerError, ActionRegistryError
from workflow.models import Actor, Step

logger = structlog.get_logger(__name__)


# ─── Config schemas ───────────────────────────────────────────


class ApprovalConfig(BaseModel):
    action_type: Literal[ActionType.APPROVAL] = ActionType.APPROVAL
    approver_role: Optional[Literal["LAWYER", "ADMIN"]] = Field(default=None, description="Role expected to approve")
    message: Optional[str] = Field(default=None, max_length=2000)


class SignatureConfig(BaseModel):
    action_type: Literal[ActionType.SIGNATURE] = ActionType.SIGNATURE
    document_id: Optional[str] = Field(default=None, min_length=1)
    provider: Literal["mock", "stripe", "docusign"] = "mock"


class RequestDocConfig(BaseModel):
    action_type: Literal[ActionType.REQUEST_DOC] = ActionType.REQUEST_DOC
    request_text: str = Field(min_length=1, description="Instructions shown to the uploader")
    document_names: list[str] = Field(min_length=1, description="Documents that must be uploaded")
    accepted_file_types: list[str] = Field(default_factory=list)


class PaymentConfig(BaseModel):
    action_type: Literal[ActionType.PAYMENT] = ActionType.PAYMENT
    amount: float = Field(ge=0)
    currency: str = Field(min_length=3, max_length=10)
    provider: Literal["mock", "stripe"] = "mock"


class ChecklistConfig(BaseModel):
    action_type: Literal[ActionType.CHECKLIST] = ActionType.CHECKLIST
    items: list[Annotated[str, Field(min_length=1)]] = Field(default_factory=list)


class WriteTextConfig(BaseModel):
    action_type: Literal[ActionType.WRITE_TEXT] = ActionType.WRITE_TEXT
    title: str = Field(min_length=1)
    description: str = ""
    placeholder: str = "Enter your text here..."
    min_length: int = Field(default=0, ge=0)
    max_length: Optional[int] = Field(default=None, ge=1)
    required: bool = True

    @model_validator(mode="after")
    def _bounds(self):
        if self.max_length is not None and self.max_length < self.min_length:
            raise ValueError("max_length must be greater than or equal to min_length")
        return self


class PopulateQuestionnaireConfig(BaseModel):
    action_type: Literal[ActionType.POPULATE_QUESTIONNAIRE] = ActionType.POPULATE_QUESTIONNAIRE
    questionnaire_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str = ""
    due_in_days: Optional[int] = Field(default=None, ge=0)


class AutomationEmailConfig(BaseModel):
    action_type: Literal[ActionType.AUTOMATION_EMAIL] = ActionType.AUTOMATION_EMAIL
    recipients: list[Annotated[str, Field(min_length=3)]] = Field(min_length=1)
    cc: list[str] = Field(default_factory=list)
    subject_template: str = Field(min_length=1)
    body_template: str = Field(min_length=1)
    send_strategy: Literal["IMMEDIATE", "DELAYED"] = "IMMEDIATE"
    delay_minutes: Optional[int] = Field(default=None, ge=0, le=10080)

    @model_validator(mode="after")
    def _delay(self):
        if self.send_strategy == "DELAYED" and self.delay_minutes is None:
            raise ValueError("delay_minutes is required when send_strategy is DELAYED")
        return self


class WebhookHeader(BaseModel):
    key: str = Field(min_length=1)
    value: str


class AutomationWebhookConfig(BaseModel):
    action_type: Literal[ActionType.AUTOMATION_WEBHOOK] = ActionType.AUTOMATION_WEBHOOK
    url: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: list[WebhookHeader] = Field(default_factory=list)
    payload_template: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value


ActionConfig = Annotated[
    Union[
        ApprovalConfig,
        SignatureConfig,
        RequestDocConfig,
        PaymentConfig,
        ChecklistConfig,
        WriteTextConfig,
        PopulateQuestionnaireConfig,
        AutomationEmailConfig,
        AutomationWebhookConfig,
    ],
    Field(discriminator="action_type"),
]

_action_config_adapter = TypeAdapter(ActionConfig)


# ─── Completion schemas ───────────────────────────────────────


class ApprovalCompletion(BaseModel):
    approved: bool
    comment: Optional[str] = Field(default=None, max_length=2000)


class SignatureCompletion(BaseModel):
    signed_document_id: Optional[str] = None


class RequestDocCompletion(BaseModel):
    uploaded_documents: list[str] = Field(default_factory=list)


class PaymentCompletion(BaseModel):
    transaction_id: Optional[str] = None
    paid_amount: Optional[float] = Field(default=None, ge=0)


class ChecklistCompletion(BaseModel):
    completed_items: Optional[list[str]] = None


class WriteTextCompletion(BaseModel):
    content: str = Field(min_length=1)
    format: Literal["plain", "html"] = "plain"


class QuestionnaireCompletion(BaseModel):
    response_id: str = Field(min_length=1)
    answer_count: Optional[int] = Field(default=None, ge=0)


class AutomationCompletion(BaseModel):
    status: Literal["SUCCEEDED", "FAILED", "MANUAL_OVERRIDE"]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    message: Optional[str] = None


# ─── Handlers ─────────────────────────────────────────────────


@dataclass
class HandlerOutcome:
    """What a handler wants merged into the step data and instance context."""

    data: dict[str, Any] = field(default_factory=dict)
    context_updates: dict[str, Any] = field(default_factory=dict)


def _first_error(error: pydantic.ValidationError) -> str:
    detail = error.errors()[0]
    location = ".".join(str(part) for part in detail["loc"] if part != "action_type")
    return f"{location}: {detail['msg']}" if location else detail["msg"]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ActionHandler:
    """Base handler. Subclasses set the schemas and override ``build_outcome``."""

    action_type: ActionType
    display_name: str = "Action"
    description: str = ""
    config_model: Type[BaseModel]
    completion_model: Type[BaseModel]

    def parse_config(self, config: Optional[dict]) -> BaseModel:
        try:
            return self.config_model.model_validate({**(config or {}), "action_type": self.action_type})
        except pydantic.ValidationError as e:
            raise ActionHandlerError(
                f"Invalid {self.action_type.value} config: {_first_error(e)}", "INVALID_CONFIG"
            ) from e

    def validate_config(self, config: Optional[dict]) -> dict[str, Any]:
        """Validate and normalise a step config; returns the stored form."""
        return self.parse_config(config).model_dump(mode="json", exclude={"action_type"})

    def parse_completion(self, payload: Optional[dict]) -> BaseModel:
        try:
            return self.completion_model.model_validate(payload or {})
        except pydantic.ValidationError as e:
            raise ActionHandlerError(
                f"Invalid {self.action_type.value} payload: {_first_error(e)}", "INVALID_PAYLOAD"
            ) from e

    def on_start(self, step: Step, actor: Actor) -> dict[str, Any]:
        """Data recorded when the step moves to IN_PROGRESS."""
        return {}

    def complete(self, step: Step, actor: Actor, payload: Optional[dict]) -> HandlerOutcome:
        started = time.monotonic()
        config = self.parse_config(step.config)
        completion = self.parse_completion(payload)
        outcome = self.build_outcome(step, actor, config, completion)
        logger.debug(
            "action_completed",
            action_type=self.action_type.value,
            step_id=step.id,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
        )
        return outcome

    def build_outcome(self, step: Step, actor: Actor, config, completion) -> HandlerOutcome:
        return HandlerOutcome(data=completion.model_dump(mode="json", exclude_none=True))


class ApprovalHandler(ActionHandler):
    action_type = ActionType.APPROVAL
    display_name = "Approval"
    description = "A lawyer or admin approves or rejects"
    config_model = ApprovalConfig
    completion_model = ApprovalCompletion

    def build_outcome(self, step, actor, config, completion):
        decision = {
            "approved": completion.approved,
            "comment": completion.comment,
            "decided_at": _now(),
            "decided_by": actor.id,
        }
        # IF_TRUE / IF_FALSE edges read the branch output
        return HandlerOutcome(
            data={"decision": decision, "branch": completion.approved},
            context_updates={"last_approval": {"step_id": step.id, **decision}},
        )


class SignatureHandler(ActionHandler):
    action_type = ActionType.SIGNATURE
    display_name = "Signature"
    description = "Collect an e-signature on a document"
    config_model = SignatureConfig
    completion_model = SignatureCompletion

    def on_start(self, step, actor):
        config = self.parse_config(step.config)
        return {"session_id": step.data.get("session_id") or f"sig_{uuid4().hex}", "provider": config.provider}

    def build_outcome(self, step, actor, config, completion):
        signed_at = _now()
        data = {"signed_at": signed_at, "provider": config.provider}
        if completion.signed_document_id or config.document_id:
            data["document_id"] = completion.signed_document_id or config.document_id
        return HandlerOutcome(data=data, context_updates={"last_signature_at": signed_at})


class RequestDocHandler(ActionHandler):
    action_type = ActionType.REQUEST_DOC
    display_name = "Request documents"
    description = "Ask the client to upload documents"
    config_model = RequestDocConfig
    completion_model = RequestDocCompletion

    def on_start(self, step, actor):
        config = self.parse_config(step.config)
        return {
            "documents_status": [{"document_name": name, "uploaded": False} for name in config.document_names],
            "all_documents_uploaded": False,
        }

    def build_outcome(self, step, actor, config, completion):
        uploaded = set(completion.uploaded_documents)
        for entry in step.data.get("documents_status", []):
            if entry.get("uploaded"):
                uploaded.add(entry["document_name"])
        missing = [name for name in config.document_names if name not in uploaded]
        if missing:
            raise ActionHandlerError(
                f"Documents not uploaded yet: {', '.join(missing)}", "DOCUMENTS_MISSING"
            )
        return HandlerOutcome(
            data={
                "documents_status": [{"document_name": n, "uploaded": True} for n in config.document_names],
                "all_documents_uploaded": True,
            },
            context_updates={"documents_received": sorted(uploaded)},
        )


class PaymentHandler(ActionHandler):
    action_type = ActionType.PAYMENT
    display_name = "Payment"
    description = "Collect a payment from the client"
    config_model = PaymentConfig
    completion_model = PaymentCompletion

    def on_start(self, step, actor):
        config = self.parse_config(step.config)
        return {"intent_id": step.data.get("intent_id") or f"pay_{uuid4().hex}", "provider": config.provider}

    def build_outcome(self, step, actor, config, completion):
        paid = completion.paid_amount if completion.paid_amount is not None else config.amount
        if paid < config.amount:
            raise ActionHandlerError(
                f"Paid amount {paid} is less than the requested {config.amount}", "UNDERPAID"
            )
        data = {"paid_at": _now(), "paid_amount": paid, "currency": config.currency}
        if completion.transaction_id:
            data["transaction_id"] = completion.transaction_id
        return HandlerOutcome(data=data)


class ChecklistHandler(ActionHandler):
    action_type = ActionType.CHECKLIST
    display_name = "Checklist"
    description = "Tick off a list of items"
    config_model = ChecklistConfig
    completion_model = ChecklistCompletion

    def build_outcome(self, step, actor, config, completion):
        items = completion.completed_items if completion.completed_items is not None else config.items
        unknown = [item for item in items if config.items and item not in config.items]
        if unknown:
            raise ActionHandlerError(f"Unknown checklist items: {', '.join(unknown)}", "INVALID_PAYLOAD")
        return HandlerOutcome(data={"completed_items": list(items)})


class WriteTextHandler(ActionHandler):
    action_type = ActionType.WRITE_TEXT
    display_name = "Write text"
    description = "Free-form text answer"
    config_model = WriteTextConfig
    completion_model = WriteTextCompletion

    def build_outcome(self, step, actor, config, completion):
        length = len(completion.content)
        if length < config.min_length:
            raise ActionHandlerError(f"Text must be at least {config.min_length} characters", "TEXT_TOO_SHORT")
        if config.max_length is not None and length > config.max_length:
            raise ActionHandlerError(f"Text must be at most {config.max_length} characters", "TEXT_TOO_LONG")
        submitted = {"submitted_at": _now(), "submitted_by": actor.id}
        return HandlerOutcome(
            data={"content": completion.content, "format": completion.format, **submitted},
            context_updates={f"text_{step.id}": {"title": config.title, **submitted}},
        )


class PopulateQuestionnaireHandler(ActionHandler):
    action_type = ActionType.POPULATE_QUESTIONNAIRE
    display_name = "Questionnaire"
    description = "Client fills in a questionnaire"
    config_model = PopulateQuestionnaireConfig
    completion_model = QuestionnaireCompletion

    def on_start(self, step, actor):
        config = self.parse_config(step.config)
        return {"questionnaire_id": config.questionnaire_id, "questionnaire_title": config.title}

    def build_outcome(self, step, actor, config, completion):
        data = {
            "response_id": completion.response_id,
            "questionnaire_id": config.questionnaire_id,
            "completed_by": actor.id,
        }
        if completion.answer_count is not None:
            data["answer_count"] = completion.answer_count
        return HandlerOutcome(
            data=data,
            context_updates={"questionnaire_responses": {config.questionnaire_id: completion.response_id}},
        )


class _AutomationHandler(ActionHandler):
    completion_model = AutomationCompletion

    def build_outcome(self, step, actor, config, completion):
        if completion.status == "FAILED":
            raise ActionHandlerError(
                completion.error or "Automation reported a failure; fail the step instead",
                "AUTOMATION_FAILED",
            )
        return HandlerOutcome(
            data={"automation": completion.model_dump(mode="json", exclude_none=True), "executed_at": _now()}
        )


class AutomationEmailHandler(_AutomationHandler):
    action_type = ActionType.AUTOMATION_EMAIL
    display_name = "Automated email"
    description = "Send a templated email"
    config_model = AutomationEmailConfig


class AutomationWebhookHandler(_AutomationHandler):
    action_type = ActionType.AUTOMATION_WEBHOOK
    display_name = "Automated webhook"
    description = "Call an external HTTP endpoint"
    config_model = AutomationWebhookConfig


BUILTIN_HANDLERS: tuple[Type[ActionHandler], ...] = (
    ApprovalHandler,
    SignatureHandler,
    RequestDocHandler,
    PaymentHandler,
    ChecklistHandler,
    WriteTextHandler,
    PopulateQuestionnaireHandler,
    AutomationEmailHandler,
    AutomationWebhookHandler,
)


def parse_action_config(action_type: ActionType, config: Optional[dict]):
    """Parse a raw config into its tagged variant."""
    try:
        return _action_config_adapter.validate_python({**(config or {}), "action_type": action_type})
    except pydantic.ValidationError as e:
        raise ActionHandlerError(f"Invalid {action_type.value} config: {_first_error(e)}", "INVALID_CONFIG") from e


# ─── Registry ─────────────────────────────────────────────────


class ActionRegistry:
    """Maps action types to their handlers."""

    def __init__(self, register_builtins: bool = True):
        self._handlers: Dict[ActionType, ActionHandler] = {}
        if register_builtins:
            for handler_class in BUILTIN_HANDLERS:
                self.register(handler_class())

    def register(self, handler: ActionHandler) -> None:
        self._handlers[handler.action_type] = handler

    def get(self, action_type: ActionType) -> ActionHandler:
        handler = self._handlers.get(action_type)
        if handler is None:
            raise ActionRegistryError(action_type.value if isinstance(action_type, ActionType) else str(action_type))
        return handler

    def validate_config(self, action_type: ActionType, config: Optional[dict]) -> dict[str, Any]:
        return self.get(action_type).validate_config(config)

    def list_all(self) -> list:
        """List all registered action types with metadata."""
        return [
            {
                "action_type": action_type.value,
                "display_name": handler.display_name,
                "description": handler.description,
                "config_schema": handler.config_model.model_json_schema(),
            }
            for action_type, handler in self._handlers.items()
        ]

    @property
    def available_types(self) -> list:
        return list(self._handlers.keys())


# Singleton
_registry: Optional[ActionRegistry] = None


def get_action_registry() -> ActionRegistry:
    """Get or create the singleton action registry."""
    global _registry
    if _registry is None:
        _registry = ActionRegistry()
    return _registry
