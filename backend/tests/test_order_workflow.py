"""
Workflow engine: step position, action gating and status derivation.
"""
import pytest

from services.order_workflow import (
    CANONICAL_WORKFLOW,
    CREATE_THEN_SEND_WORKFLOW,
    DocumentKind,
    OrderStatus,
    WorkflowAction,
    action_for_document,
    can_perform,
    current_step,
    expected_confirmation,
    get_workflow_definition,
    is_complete,
    next_status,
    permitted_actions,
    reconcile_status,
    toggle_suspend,
)

FLAGS = ["contract_sent", "contract_accepted", "manual_sent", "manual_acknowledged", "warranty_released"]


def flags_up_to(n):
    return {flag: i < n for i, flag in enumerate(FLAGS)}


class TestCurrentStep:

    @pytest.mark.parametrize("n,expected", [(0, 1), (1, 2), (2, 3), (3, 4), (4, 5), (5, 6)])
    def test_first_unset_flag(self, n, expected):
        assert current_step(flags_up_to(n)) == expected

    def test_gap_is_reported_even_if_later_flags_set(self):
        flags = {"contract_sent": True, "manual_sent": True, "warranty_released": True}
        assert current_step(flags) == 2

    def test_missing_keys_read_as_false(self):
        assert current_step({}) == 1
        assert current_step(None) == 1

    def test_accepts_workflow_model(self, make_order):
        order = make_order(flags={"contract_sent": True})
        assert current_step(order.workflow) == 2


class TestCanPerform:

    def test_contract_always_permitted(self):
        assert can_perform(flags_up_to(0), WorkflowAction.SEND_CONTRACT)
        assert can_perform(flags_up_to(5), WorkflowAction.SEND_CONTRACT)

    def test_manual_requires_accepted_contract(self):
        assert not can_perform(flags_up_to(1), WorkflowAction.SEND_MANUAL)
        assert can_perform(flags_up_to(2), WorkflowAction.SEND_MANUAL)

    def test_warranty_requires_countersigned_manual(self):
        assert not can_perform(flags_up_to(3), WorkflowAction.SEND_WARRANTY)
        assert can_perform(flags_up_to(4), WorkflowAction.SEND_WARRANTY)

    def test_unknown_action_is_refused(self):
        assert not can_perform(flags_up_to(5), "send_invoice")

    def test_permitted_actions_in_order(self):
        assert permitted_actions(flags_up_to(4)) == [
            WorkflowAction.SEND_CONTRACT, WorkflowAction.SEND_MANUAL, WorkflowAction.SEND_WARRANTY,
        ]

    def test_action_for_document(self):
        assert action_for_document(DocumentKind.MANUAL) == WorkflowAction.SEND_MANUAL
        assert action_for_document("warranty") == WorkflowAction.SEND_WARRANTY
        assert action_for_document("invoice") is None


class TestNextStatus:

    def test_terminal_flag_just_set_concludes(self):
        status = next_status(flags_up_to(5), OrderStatus.IN_PROGRESS, previous_workflow=flags_up_to(4))
        assert status == OrderStatus.CONCLUDED

    def test_not_terminal_keeps_status(self):
        assert next_status(flags_up_to(3), OrderStatus.IN_PROGRESS) == OrderStatus.IN_PROGRESS
        assert next_status(flags_up_to(3), OrderStatus.SUSPENDED) == OrderStatus.SUSPENDED

    def test_terminal_already_set_keeps_status(self):
        status = next_status(flags_up_to(5), OrderStatus.SUSPENDED, previous_workflow=flags_up_to(5))
        assert status == OrderStatus.SUSPENDED

    def test_concluded_stays_concluded(self):
        assert next_status(flags_up_to(5), OrderStatus.CONCLUDED) == OrderStatus.CONCLUDED

    def test_is_complete(self):
        assert is_complete(flags_up_to(5))
        assert not is_complete(flags_up_to(4))


class TestSuspension:

    def test_toggle(self):
        assert toggle_suspend(OrderStatus.SUSPENDED) == OrderStatus.IN_PROGRESS
        assert toggle_suspend(OrderStatus.IN_PROGRESS) == OrderStatus.SUSPENDED

    def test_toggle_is_an_involution(self):
        for status in (OrderStatus.IN_PROGRESS, OrderStatus.SUSPENDED):
            assert toggle_suspend(toggle_suspend(status)) == status


class TestReconcileStatus:

    def test_terminal_flag_forces_concluded(self):
        assert reconcile_status(flags_up_to(5), OrderStatus.SUSPENDED) == OrderStatus.CONCLUDED

    def test_concluded_without_terminal_reopens(self):
        assert reconcile_status(flags_up_to(3), OrderStatus.CONCLUDED) == OrderStatus.IN_PROGRESS

    def test_suspended_kept(self):
        assert reconcile_status(flags_up_to(3), OrderStatus.SUSPENDED) == OrderStatus.SUSPENDED


class TestExpectedConfirmation:

    def test_human_gate_steps(self):
        assert expected_confirmation(flags_up_to(1)) == "contract_accepted"
        assert expected_confirmation(flags_up_to(3)) == "manual_acknowledged"

    def test_action_steps_have_no_confirmation(self):
        assert expected_confirmation(flags_up_to(0)) is None
        assert expected_confirmation(flags_up_to(5)) is None


class TestCreateThenSendVariant:

    def test_lookup(self):
        assert get_workflow_definition("create_then_send") is CREATE_THEN_SEND_WORKFLOW
        assert get_workflow_definition(None) is CANONICAL_WORKFLOW
        assert get_workflow_definition("unknown") is CANONICAL_WORKFLOW

    def test_send_requires_created_flag(self):
        wf = CREATE_THEN_SEND_WORKFLOW
        assert not can_perform({}, WorkflowAction.SEND_CONTRACT, wf)
        assert can_perform({"contract_created": True}, WorkflowAction.SEND_CONTRACT, wf)

    def test_terminal_step_marker(self):
        wf = CREATE_THEN_SEND_WORKFLOW
        all_set = {flag: True for flag in wf.flags}
        assert current_step(all_set, wf) == len(wf.steps) + 1
        assert wf.terminal_flag == "warranty_released"
