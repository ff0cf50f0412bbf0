"""Tests for action handlers and the action registry."""

import pytest

from core.constants import ActionType, Role
from core.exceptions import ActionHandlerError, ActionRegistryError
from workflow.actions import ActionRegistry, ApprovalConfig, get_action_registry, parse_action_config
from workflow.models import Actor, Step


@pytest.fixture
def registry():
    return ActionRegistry()


@pytest.fixture
def actor():
    return Actor(id="lawyer-1", role=Role.LAWYER)


def _step(registry, action_type, config=None):
    return Step(
        instance_id="inst-1",
        title=action_type.value.title(),
        action_type=action_type,
        role_scope=Role.LAWYER,
        order=0,
        action_data={"config": registry.validate_config(action_type, config), "history": [], "data": {}},
    )


@pytest.mark.unit
class TestActionRegistry:

    def test_every_action_type_has_a_handler(self, registry):
        assert set(registry.available_types) == set(ActionType)

    def test_list_all_exposes_config_schema(self, registry):
        entries = {entry["action_type"]: entry for entry in registry.list_all()}
        assert entries["PAYMENT"]["display_name"] == "Payment"
        assert "amount" in entries["PAYMENT"]["config_schema"]["properties"]

    def test_unknown_handler(self):
        empty = ActionRegistry(register_builtins=False)
        with pytest.raises(ActionRegistryError):
            empty.get(ActionType.APPROVAL)

    def test_singleton(self):
        assert get_action_registry() is get_action_registry()

    def test_parse_action_config_picks_the_variant(self):
        parsed = parse_action_config(ActionType.APPROVAL, {"message": "Please review"})
        assert isinstance(parsed, ApprovalConfig)


@pytest.mark.unit
class TestConfigValidation:

    def test_config_is_normalised(self, registry):
        config = registry.validate_config(ActionType.PAYMENT, {"amount": 250, "currency": "EUR"})
        assert config == {"amount": 250.0, "currency": "EUR", "provider": "mock"}

    @pytest.mark.parametrize(
        "action_type, config",
        [
            (ActionType.PAYMENT, {"amount": -1, "currency": "EUR"}),
            (ActionType.REQUEST_DOC, {"request_text": "Upload", "document_names": []}),
            (ActionType.WRITE_TEXT, {"title": "Notes", "min_length": 10, "max_length": 5}),
            (ActionType.AUTOMATION_EMAIL, {"recipients": ["a@b.c"], "subject_template": "s", "body_template": "b",
                                           "send_strategy": "DELAYED"}),
            (ActionType.AUTOMATION_WEBHOOK, {"url": "ftp://example.com"}),
            (ActionType.POPULATE_QUESTIONNAIRE, {"title": "Intake"}),
        ],
    )
    def test_invalid_configs(self, registry, action_type, config):
        with pytest.raises(ActionHandlerError) as exc:
            registry.validate_config(action_type, config)
        assert exc.value.code == "INVALID_CONFIG"

    def test_error_names_the_field(self, registry):
        with pytest.raises(ActionHandlerError) as exc:
            registry.validate_config(ActionType.PAYMENT, {"currency": "EUR"})
        assert "amount" in exc.value.message


@pytest.mark.unit
class TestHandlers:

    def test_approval_sets_branch_and_context(self, registry, actor):
        step = _step(registry, ActionType.APPROVAL)
        outcome = registry.get(ActionType.APPROVAL).complete(step, actor, {"approved": False, "comment": "Conflict"})
        assert outcome.data["branch"] is False
        assert outcome.data["decision"]["comment"] == "Conflict"
        assert outcome.context_updates["last_approval"]["step_id"] == step.id

    def test_approval_requires_decision(self, registry, actor):
        step = _step(registry, ActionType.APPROVAL)
        with pytest.raises(ActionHandlerError) as exc:
            registry.get(ActionType.APPROVAL).complete(step, actor, {})
        assert exc.value.code == "INVALID_PAYLOAD"

    def test_request_doc_tracks_uploads(self, registry, actor):
        step = _step(
            registry,
            ActionType.REQUEST_DOC,
            {"request_text": "Please upload", "document_names": ["passport", "utility bill"]},
        )
        handler = registry.get(ActionType.REQUEST_DOC)
        step.data.update(handler.on_start(step, actor))
        assert step.data["all_documents_uploaded"] is False

        with pytest.raises(ActionHandlerError) as exc:
            handler.complete(step, actor, {"uploaded_documents": ["passport"]})
        assert exc.value.code == "DOCUMENTS_MISSING"

        outcome = handler.complete(step, actor, {"uploaded_documents": ["passport", "utility bill"]})
        assert outcome.data["all_documents_uploaded"] is True
        assert outcome.context_updates["documents_received"] == ["passport", "utility bill"]

    def test_payment_underpaid(self, registry, actor):
        step = _step(registry, ActionType.PAYMENT, {"amount": 500, "currency": "USD"})
        with pytest.raises(ActionHandlerError) as exc:
            registry.get(ActionType.PAYMENT).complete(step, actor, {"paid_amount": 100})
        assert exc.value.code == "UNDERPAID"

    def test_payment_defaults_to_requested_amount(self, registry, actor):
        step = _step(registry, ActionType.PAYMENT, {"amount": 500, "currency": "USD"})
        outcome = registry.get(ActionType.PAYMENT).complete(step, actor, {"transaction_id": "tx_9"})
        assert outcome.data["paid_amount"] == 500
        assert outcome.data["transaction_id"] == "tx_9"

    def test_payment_start_reuses_intent(self, registry, actor):
        step = _step(registry, ActionType.PAYMENT, {"amount": 1, "currency": "USD"})
        handler = registry.get(ActionType.PAYMENT)
        step.data.update(handler.on_start(step, actor))
        first = step.data["intent_id"]
        assert handler.on_start(step, actor)["intent_id"] == first

    def test_signature_uses_configured_document(self, registry, actor):
        step = _step(registry, ActionType.SIGNATURE, {"document_id": "doc-1"})
        outcome = registry.get(ActionType.SIGNATURE).complete(step, actor, {})
        assert outcome.data["document_id"] == "doc-1"
        assert "last_signature_at" in outcome.context_updates

    def test_checklist_defaults_to_every_item(self, registry, actor):
        step = _step(registry, ActionType.CHECKLIST, {"items": ["ID", "Engagement letter"]})
        outcome = registry.get(ActionType.CHECKLIST).complete(step, actor, None)
        assert outcome.data == {"completed_items": ["ID", "Engagement letter"]}

    def test_checklist_rejects_unknown_items(self, registry, actor):
        step = _step(registry, ActionType.CHECKLIST, {"items": ["ID"]})
        with pytest.raises(ActionHandlerError):
            registry.get(ActionType.CHECKLIST).complete(step, actor, {"completed_items": ["Passport"]})

    def test_write_text_bounds(self, registry, actor):
        step = _step(registry, ActionType.WRITE_TEXT, {"title": "Summary", "max_length": 5})
        with pytest.raises(ActionHandlerError) as exc:
            registry.get(ActionType.WRITE_TEXT).complete(step, actor, {"content": "far too long"})
        assert exc.value.code == "TEXT_TOO_LONG"

    def test_questionnaire_records_response(self, registry, actor):
        step = _step(
            registry, ActionType.POPULATE_QUESTIONNAIRE, {"questionnaire_id": "q-1", "title": "Client intake"}
        )
        outcome = registry.get(ActionType.POPULATE_QUESTIONNAIRE).complete(step, actor, {"response_id": "r-5"})
        assert outcome.context_updates == {"questionnaire_responses": {"q-1": "r-5"}}

    def test_automation_failure_is_rejected(self, registry, actor):
        step = _step(registry, ActionType.AUTOMATION_WEBHOOK, {"url": "https://hooks.example.com/x"})
        with pytest.raises(ActionHandlerError) as exc:
            registry.get(ActionType.AUTOMATION_WEBHOOK).complete(step, actor, {"status": "FAILED", "error": "502"})
        assert exc.value.code == "AUTOMATION_FAILED"
        assert exc.value.message == "502"

    def test_automation_manual_override(self, registry, actor):
        step = _step(
            registry,
            ActionType.AUTOMATION_EMAIL,
            {"recipients": ["client@example.com"], "subject_template": "Hi", "body_template": "Body"},
        )
        outcome = registry.get(ActionType.AUTOMATION_EMAIL).complete(
            step, actor, {"status": "MANUAL_OVERRIDE", "message": "Sent by hand"}
        )
        assert outcome.data["automation"]["status"] == "MANUAL_OVERRIDE"
