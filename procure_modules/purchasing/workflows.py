"""
Purchasing Workflows.

The purchase order state machine as data: every legal (from, to) pair, the
permission action it requires, and the guard that restricts who may drive
it.  ``state_machine.py`` dispatches by lookup in this table.
"""

from dataclasses import dataclass

from procure_kernel.domain.values import Action
from procure_kernel.logging_config import get_logger
from procure_modules.purchasing.models import OrderStatus

logger = get_logger("modules.purchasing.workflows")


@dataclass(frozen=True)
class Guard:
    """A condition for a transition."""
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid state transition."""
    from_state: OrderStatus
    to_state: OrderStatus
    action: Action
    guard: Guard | None = None


@dataclass(frozen=True)
class Workflow:
    """A state machine definition."""
    name: str
    description: str
    initial_state: OrderStatus
    states: tuple[OrderStatus, ...]
    transitions: tuple[Transition, ...]

    def find(self, from_state: OrderStatus, to_state: OrderStatus) -> Transition | None:
        for transition in self.transitions:
            if transition.from_state == from_state and transition.to_state == to_state:
                return transition
        return None

    def transition_table(self) -> dict[str, frozenset[str]]:
        table: dict[str, set[str]] = {state.value: set() for state in self.states}
        for transition in self.transitions:
            table[transition.from_state.value].add(transition.to_state.value)
        return {state: frozenset(targets) for state, targets in table.items()}


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

APPROVAL_COMPLETE = Guard(
    name="approval_complete",
    description="Final approval level decided; driven by the approval engine only",
)

RECEIPT_RECORDED = Guard(
    name="receipt_recorded",
    description="Goods received; driven by the receiving reconciler only",
)

NO_PENDING_APPROVALS = Guard(
    name="no_pending_approvals",
    description="No approval record for the order is still pending",
)

logger.info(
    "purchasing_workflow_guards_defined",
    extra={
        "guards": [
            APPROVAL_COMPLETE.name,
            RECEIPT_RECORDED.name,
            NO_PENDING_APPROVALS.name,
        ],
    },
)


# -----------------------------------------------------------------------------
# Purchase Order Workflow
# -----------------------------------------------------------------------------

S = OrderStatus


def _side_branches(state: OrderStatus) -> tuple[Transition, ...]:
    return (
        Transition(state, S.REJECTED, action=Action.APPROVE),
        Transition(state, S.CANCELLED, action=Action.CANCEL),
    )


PURCHASE_ORDER_WORKFLOW = Workflow(
    name="purchase_order",
    description="Purchase order approval and fulfillment lifecycle",
    initial_state=S.DRAFT,
    states=tuple(OrderStatus),
    transitions=(
        Transition(S.DRAFT, S.PENDING_APPROVAL, action=Action.SUBMIT),
        *_side_branches(S.DRAFT),
        Transition(S.PENDING_APPROVAL, S.APPROVED, action=Action.APPROVE, guard=APPROVAL_COMPLETE),
        Transition(S.PENDING_APPROVAL, S.DRAFT, action=Action.SUBMIT),
        *_side_branches(S.PENDING_APPROVAL),
        Transition(S.APPROVED, S.SENT_TO_SUPPLIER, action=Action.SEND, guard=NO_PENDING_APPROVALS),
        *_side_branches(S.APPROVED),
        Transition(
            S.SENT_TO_SUPPLIER, S.PARTIALLY_RECEIVED, action=Action.RECEIVE, guard=RECEIPT_RECORDED,
        ),
        Transition(S.SENT_TO_SUPPLIER, S.RECEIVED, action=Action.RECEIVE, guard=RECEIPT_RECORDED),
        *_side_branches(S.SENT_TO_SUPPLIER),
        Transition(S.PARTIALLY_RECEIVED, S.RECEIVED, action=Action.RECEIVE, guard=RECEIPT_RECORDED),
        *_side_branches(S.PARTIALLY_RECEIVED),
        Transition(S.RECEIVED, S.CLOSED, action=Action.CLOSE),
        *_side_branches(S.RECEIVED),
        Transition(S.CLOSED, S.REOPENED, action=Action.REOPEN),
        Transition(S.CANCELLED, S.REOPENED, action=Action.REOPEN),
        Transition(S.REOPENED, S.PENDING_APPROVAL, action=Action.SUBMIT),
        Transition(S.REOPENED, S.DRAFT, action=Action.SUBMIT),
        *_side_branches(S.REOPENED),
    ),
)

ORDER_TRANSITIONS: dict[str, frozenset[str]] = PURCHASE_ORDER_WORKFLOW.transition_table()

logger.info(
    "purchasing_order_workflow_registered",
    extra={
        "workflow_name": PURCHASE_ORDER_WORKFLOW.name,
        "state_count": len(PURCHASE_ORDER_WORKFLOW.states),
        "transition_count": len(PURCHASE_ORDER_WORKFLOW.transitions),
        "initial_state": PURCHASE_ORDER_WORKFLOW.initial_state.value,
    },
)
