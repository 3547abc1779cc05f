"""
Order Workflow State Machine
Defines the documentation lifecycle (contract -> manual -> warranty), the
actions each confirmation gate permits and how the aggregate order status
derives from the flags.
This is the single source of truth for order workflow logic.

Every function here is pure and total: any combination of flags, including
ones unreachable through normal flow, maps to a defined answer.
"""
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
from dataclasses import dataclass


class OrderStatus(str, Enum):
    """Aggregate order state."""
    IN_PROGRESS = "IN_PROGRESS"
    SUSPENDED = "SUSPENDED"       # Manual override, orthogonal to progress
    CONCLUDED = "CONCLUDED"       # Iff the terminal flag is set


class DocumentKind(str, Enum):
    CONTRACT = "contract"
    MANUAL = "manual"
    WARRANTY = "warranty"


class WorkflowAction(str, Enum):
    SEND_CONTRACT = "send_contract"
    SEND_MANUAL = "send_manual"
    SEND_WARRANTY = "send_warranty"


class StepKind(str, Enum):
    ACTION = "action"               # Set by the lifecycle controller after a successful send
    CONFIRMATION = "confirmation"   # Set by a human gate


DOCUMENT_ACTIONS: Dict[DocumentKind, WorkflowAction] = {
    DocumentKind.CONTRACT: WorkflowAction.SEND_CONTRACT,
    DocumentKind.MANUAL: WorkflowAction.SEND_MANUAL,
    DocumentKind.WARRANTY: WorkflowAction.SEND_WARRANTY,
}


@dataclass(frozen=True)
class WorkflowStep:
    flag: str
    kind: StepKind
    label: str
    action: Optional[WorkflowAction] = None
    requires: Optional[str] = None


class WorkflowDefinition:
    """
    An ordered sequence of flags. The last flag is terminal: setting it
    concludes the order.
    """

    def __init__(self, name: str, steps: Tuple[WorkflowStep, ...]):
        if not steps:
            raise ValueError("A workflow needs at least one step")
        self.name = name
        self.steps = steps
        self._by_action = {s.action: s for s in steps if s.action is not None}

    @property
    def flags(self) -> List[str]:
        return [s.flag for s in self.steps]

    @property
    def terminal_flag(self) -> str:
        return self.steps[-1].flag

    @property
    def terminal_step(self) -> int:
        """Step index reported once every flag is set."""
        return len(self.steps) + 1

    @property
    def confirmation_flags(self) -> List[str]:
        return [s.flag for s in self.steps if s.kind == StepKind.CONFIRMATION]

    def step_for_action(self, action: Any) -> Optional[WorkflowStep]:
        try:
            return self._by_action.get(WorkflowAction(action))
        except ValueError:
            return None

    def step_at(self, index: int) -> Optional[WorkflowStep]:
        if 1 <= index <= len(self.steps):
            return self.steps[index - 1]
        return None


CANONICAL_WORKFLOW = WorkflowDefinition("canonical", (
    WorkflowStep("contract_sent", StepKind.ACTION, "Contract sent",
                 action=WorkflowAction.SEND_CONTRACT),
    WorkflowStep("contract_accepted", StepKind.CONFIRMATION, "Contract accepted"),
    WorkflowStep("manual_sent", StepKind.ACTION, "Manual sent",
                 action=WorkflowAction.SEND_MANUAL, requires="contract_accepted"),
    WorkflowStep("manual_acknowledged", StepKind.CONFIRMATION, "Manual countersigned"),
    WorkflowStep("warranty_released", StepKind.ACTION, "Warranty released",
                 action=WorkflowAction.SEND_WARRANTY, requires="manual_acknowledged"),
))

# Document creation tracked separately: a no-op confirmation before each send
CREATE_THEN_SEND_WORKFLOW = WorkflowDefinition("create_then_send", (
    WorkflowStep("contract_created", StepKind.CONFIRMATION, "Contract created"),
    WorkflowStep("contract_sent", StepKind.ACTION, "Contract sent",
                 action=WorkflowAction.SEND_CONTRACT, requires="contract_created"),
    WorkflowStep("contract_accepted", StepKind.CONFIRMATION, "Contract accepted"),
    WorkflowStep("manual_created", StepKind.CONFIRMATION, "Manual created"),
    WorkflowStep("manual_sent", StepKind.ACTION, "Manual sent",
                 action=WorkflowAction.SEND_MANUAL, requires="manual_created"),
    WorkflowStep("manual_acknowledged", StepKind.CONFIRMATION, "Manual countersigned"),
    WorkflowStep("warranty_created", StepKind.CONFIRMATION, "Warranty created"),
    WorkflowStep("warranty_released", StepKind.ACTION, "Warranty released",
                 action=WorkflowAction.SEND_WARRANTY, requires="warranty_created"),
))

WORKFLOW_DEFINITIONS: Dict[str, WorkflowDefinition] = {
    CANONICAL_WORKFLOW.name: CANONICAL_WORKFLOW,
    CREATE_THEN_SEND_WORKFLOW.name: CREATE_THEN_SEND_WORKFLOW,
}


FlagSource = Union[Mapping[str, Any], Any]


def _flags(workflow: FlagSource) -> Dict[str, bool]:
    """Normalise a WorkflowFlags model, a dict or None into {flag: bool}."""
    if workflow is None:
        return {}
    if hasattr(workflow, "model_dump"):
        workflow = workflow.model_dump()
    return {k: bool(v) for k, v in dict(workflow).items()}


def get_workflow_definition(name: Optional[str]) -> WorkflowDefinition:
    """Resolve a definition by name, falling back to the canonical one."""
    return WORKFLOW_DEFINITIONS.get((name or "").strip().lower(), CANONICAL_WORKFLOW)


def action_for_document(kind: Union[DocumentKind, str]) -> Optional[WorkflowAction]:
    """Map a document kind to the action that dispatches it."""
    try:
        return DOCUMENT_ACTIONS[DocumentKind(kind)]
    except ValueError:
        return None


def current_step(workflow: FlagSource, definition: WorkflowDefinition = CANONICAL_WORKFLOW) -> int:
    """
    1-based index of the first unset flag, or definition.terminal_step when
    all are set. Flags set out of order after a gap are ignored.
    """
    flags = _flags(workflow)
    for index, step in enumerate(definition.steps, start=1):
        if not flags.get(step.flag, False):
            return index
    return definition.terminal_step


def is_complete(workflow: FlagSource, definition: WorkflowDefinition = CANONICAL_WORKFLOW) -> bool:
    """Check if the terminal flag is set"""
    return _flags(workflow).get(definition.terminal_flag, False)


def can_perform(workflow: FlagSource, action: Any, definition: WorkflowDefinition = CANONICAL_WORKFLOW) -> bool:
    """Check if a document action is permitted by the current flags"""
    step = definition.step_for_action(action)
    if step is None:
        return False
    if step.requires is None:
        return True
    return _flags(workflow).get(step.requires, False)


def permitted_actions(workflow: FlagSource, definition: WorkflowDefinition = CANONICAL_WORKFLOW) -> List[WorkflowAction]:
    """Get actions currently allowed, in workflow order"""
    return [
        s.action for s in definition.steps
        if s.action is not None and can_perform(workflow, s.action, definition)
    ]


def expected_confirmation(workflow: FlagSource, definition: WorkflowDefinition = CANONICAL_WORKFLOW) -> Optional[str]:
    """The confirmation flag awaited at the current step, if the step is a human gate"""
    step = definition.step_at(current_step(workflow, definition))
    if step is not None and step.kind == StepKind.CONFIRMATION:
        return step.flag
    return None


def next_status(
    workflow: FlagSource,
    current_status: OrderStatus,
    previous_workflow: Optional[FlagSource] = None,
    definition: WorkflowDefinition = CANONICAL_WORKFLOW,
) -> OrderStatus:
    """
    CONCLUDED when the terminal flag has just become true; otherwise the
    status is returned unchanged. Suspension is handled by toggle_suspend.
    """
    current_status = OrderStatus(current_status)
    if current_status == OrderStatus.CONCLUDED:
        return current_status
    if not is_complete(workflow, definition):
        return current_status
    if previous_workflow is not None and is_complete(previous_workflow, definition):
        return current_status
    return OrderStatus.CONCLUDED


def toggle_suspend(status: OrderStatus) -> OrderStatus:
    """SUSPENDED -> IN_PROGRESS, anything else -> SUSPENDED"""
    if OrderStatus(status) == OrderStatus.SUSPENDED:
        return OrderStatus.IN_PROGRESS
    return OrderStatus.SUSPENDED


def reconcile_status(
    workflow: FlagSource,
    status: OrderStatus,
    definition: WorkflowDefinition = CANONICAL_WORKFLOW,
) -> OrderStatus:
    """
    Restore CONCLUDED iff terminal flag after an explicit edit.
    A suspended order with the terminal flag set becomes CONCLUDED.
    """
    status = OrderStatus(status)
    if is_complete(workflow, definition):
        return OrderStatus.CONCLUDED
    if status == OrderStatus.CONCLUDED:
        return OrderStatus.IN_PROGRESS
    return status
