"""
Approval chain tests.

Verifies:
- Decisions must follow the level sequence 1, 2, ... without repeats
- Amounts above the approver's limit escalate instead of approving
- Approval at the final level for the order total approves the order
- Rejection at any level rejects the order and halts the chain
- Every decision leaves an ApprovalRecord and an audit entry
"""

from decimal import Decimal

import pytest

from procure_kernel.exceptions import (
    ApprovalRequiredError,
    InvalidQuantityError,
    InvalidStatusTransitionError,
    PermissionDeniedError,
    PriceMismatchError,
)
from procure_kernel.models.audit_event import AuditAction
from procure_modules.purchasing.models import (
    ApprovalDecision,
    ApprovalStatus,
    LineItemInput,
    OrderStatus,
)


@pytest.fixture
def submitted_order(purchasing, supplier_id, make_product, admin_actor):
    """An order of ``quantity`` x 100.00 in pending_approval."""

    def _make(quantity: int):
        order = purchasing.create_order(
            supplier_id, [LineItemInput(make_product(unit_cost="100"), quantity)], admin_actor,
        )
        purchasing.transition_status(order.id, OrderStatus.PENDING_APPROVAL, admin_actor)
        return order

    return _make


class TestEscalation:
    """Validates: an approver never silently approves beyond their limit."""

    def test_over_limit_approval_escalates(self, purchasing, submitted_order, manager_actor, admin_actor):
        order = submitted_order(300)
        assert order.total_amount == Decimal("30000")

        record = purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, manager_actor)

        assert record.status == ApprovalStatus.ESCALATED
        assert record.approver_limit == Decimal("10000")
        assert record.next_approver_role == "admin"
        assert "exceeds approver limit" in record.escalation_reason
        assert purchasing.get_order(order.id).status == OrderStatus.PENDING_APPROVAL
        assert purchasing.current_approval_level(order.id) == 2

        final = purchasing.submit_approval_decision(order.id, 2, ApprovalDecision.APPROVE, admin_actor)
        assert final.status == ApprovalStatus.APPROVED
        assert purchasing.get_order(order.id).status == OrderStatus.APPROVED

    def test_explicit_escalation_names_next_approver(self, purchasing, submitted_order, manager_actor, admin_actor):
        order = submitted_order(10)
        record = purchasing.submit_approval_decision(
            order.id, 1, ApprovalDecision.ESCALATE, manager_actor,
            next_approver_id=admin_actor.actor_id, comments="please review",
        )
        assert record.status == ApprovalStatus.ESCALATED
        assert record.next_approver_id == admin_actor.actor_id
        assert record.escalation_reason == "please review"

    def test_no_level_left_to_escalate_to(self, purchasing, submitted_order, manager_actor, admin_actor):
        order = submitted_order(600)
        purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, manager_actor)
        purchasing.submit_approval_decision(order.id, 2, ApprovalDecision.ESCALATE, admin_actor)
        with pytest.raises(PermissionDeniedError):
            purchasing.submit_approval_decision(order.id, 3, ApprovalDecision.ESCALATE, admin_actor)

    def test_chain_snapshot_recorded(self, purchasing, submitted_order, admin_actor):
        order = submitted_order(1)
        record = purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, admin_actor)
        assert [level["level"] for level in record.chain] == [1, 2, 3]


class TestLevelSequence:
    """Validates: levels are decided strictly in order, each exactly once."""

    def test_single_level_approval_for_small_order(self, purchasing, submitted_order, manager_actor):
        order = submitted_order(5)
        purchasing.submit_approval_decision(order.id, 1, "approve", manager_actor)
        assert purchasing.get_order(order.id).status == OrderStatus.APPROVED

    def test_mid_chain_approval_keeps_order_pending(self, purchasing, submitted_order, admin_actor):
        order = submitted_order(300)
        record = purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, admin_actor)
        assert record.status == ApprovalStatus.APPROVED
        assert purchasing.get_order(order.id).status == OrderStatus.PENDING_APPROVAL

    def test_redeciding_a_level_rejected(self, purchasing, submitted_order, admin_actor):
        order = submitted_order(300)
        purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, admin_actor)
        with pytest.raises(InvalidStatusTransitionError):
            purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, admin_actor)

    def test_skipping_a_level_rejected(self, purchasing, submitted_order, admin_actor):
        order = submitted_order(300)
        with pytest.raises(ApprovalRequiredError):
            purchasing.submit_approval_decision(order.id, 2, ApprovalDecision.APPROVE, admin_actor)

    def test_records_listed_in_level_order(self, purchasing, submitted_order, manager_actor, admin_actor):
        order = submitted_order(300)
        purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, manager_actor)
        purchasing.submit_approval_decision(order.id, 2, ApprovalDecision.APPROVE, admin_actor)
        records = purchasing.get_approval_records(order.id)
        assert [(r.level, r.status) for r in records] == [
            (1, ApprovalStatus.ESCALATED),
            (2, ApprovalStatus.APPROVED),
        ]


class TestRejection:
    """Validates: a rejection ends the chain and the order."""

    def test_reject_rejects_order(self, purchasing, submitted_order, manager_actor, admin_actor):
        order = submitted_order(300)
        record = purchasing.submit_approval_decision(
            order.id, 1, ApprovalDecision.REJECT, manager_actor, comments="over budget",
        )
        assert record.status == ApprovalStatus.REJECTED
        assert purchasing.get_order(order.id).status == OrderStatus.REJECTED

        with pytest.raises(InvalidStatusTransitionError):
            purchasing.submit_approval_decision(order.id, 2, ApprovalDecision.APPROVE, admin_actor)


class TestApprovalPreconditions:

    def test_draft_order_cannot_be_decided(self, purchasing, supplier_id, make_product, admin_actor):
        order = purchasing.create_order(supplier_id, [LineItemInput(make_product(), 1)], admin_actor)
        with pytest.raises(InvalidStatusTransitionError):
            purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, admin_actor)

    def test_employee_cannot_approve(self, purchasing, submitted_order, employee_actor):
        order = submitted_order(1)
        with pytest.raises(PermissionDeniedError):
            purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, employee_actor)

    def test_negative_amount_rejected(self, purchasing, submitted_order, admin_actor):
        order = submitted_order(1)
        with pytest.raises(InvalidQuantityError):
            purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, admin_actor, amount=-1)

    def test_decision_audited(self, purchasing, submitted_order, manager_actor, admin_actor):
        order = submitted_order(300)
        record = purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, manager_actor)
        trail = purchasing.get_audit_trail("ApprovalRecord", record.id, admin_actor)
        assert [e.action for e in trail] == [AuditAction.ESCALATED.value]


class TestApproverAuthority:
    """Validates: the limit is judged on the order total, by the level's role."""

    def test_understated_amount_rejected(self, purchasing, submitted_order, manager_actor):
        order = submitted_order(300)

        with pytest.raises(PriceMismatchError) as exc_info:
            purchasing.submit_approval_decision(
                order.id, 1, ApprovalDecision.APPROVE, manager_actor, amount="5000",
            )

        assert exc_info.value.field == "amount"
        assert Decimal(exc_info.value.context["order_total"]) == Decimal("30000")
        assert purchasing.get_approval_records(order.id) == ()
        assert purchasing.get_order(order.id).status == OrderStatus.PENDING_APPROVAL

    def test_matching_amount_accepted(self, purchasing, submitted_order, admin_actor):
        order = submitted_order(5)
        record = purchasing.submit_approval_decision(
            order.id, 1, ApprovalDecision.APPROVE, admin_actor, amount="500.00",
        )
        assert record.status == ApprovalStatus.APPROVED

    def test_manager_cannot_decide_admin_level(self, purchasing, submitted_order, manager_actor):
        order = submitted_order(300)
        purchasing.submit_approval_decision(order.id, 1, ApprovalDecision.APPROVE, manager_actor)

        with pytest.raises(PermissionDeniedError) as exc_info:
            purchasing.submit_approval_decision(order.id, 2, ApprovalDecision.APPROVE, manager_actor)

        assert exc_info.value.context["approver_role"] == "admin"
        assert purchasing.get_order(order.id).status == OrderStatus.PENDING_APPROVAL
        assert purchasing.current_approval_level(order.id) == 2
