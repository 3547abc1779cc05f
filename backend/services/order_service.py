"""
Order Service - Business Logic Layer
Handles order registration, explicit edits, search and the dashboard read side.

Workflow progress (documents sent, confirmations) is NOT changed here except
through an explicit edit; the lifecycle controller owns normal progression.
"""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Union

from models import (
    ContractType,
    DashboardStats,
    EquipmentCondition,
    EquipmentModel,
    Order,
    OrderCreate,
    OrderUpdate,
    WorkflowFlags,
    WorkflowStepView,
    WorkflowView,
    generate_order_id,
)
from services.order_store import OrderStore
from services.order_workflow import (
    CANONICAL_WORKFLOW,
    OrderStatus,
    WorkflowDefinition,
    current_step,
    expected_confirmation,
    is_complete,
    permitted_actions,
    reconcile_status,
)

logger = logging.getLogger(__name__)

__all__ = [
    "generate_order_id",
    "create_order",
    "update_order",
    "delete_order",
    "search_orders",
    "compute_dashboard_stats",
    "build_workflow_view",
    "seed_test_orders",
]


async def create_order(store: OrderStore, data: OrderCreate) -> Order:
    """
    Register a new order in IN_PROGRESS with every flag cleared.
    Returns the stored order.
    """
    fields = data.model_dump(exclude_none=True)
    order = Order(
        id=generate_order_id(),
        status=OrderStatus.IN_PROGRESS,
        workflow=WorkflowFlags(),
        **fields,
    )
    stored = await store.upsert(order)
    logger.info(f"Order created: {stored.id} ({stored.company_name})")
    return stored


async def update_order(
    store: OrderStore,
    order_id: str,
    changes: OrderUpdate,
    definition: WorkflowDefinition = CANONICAL_WORKFLOW,
) -> Order:
    """
    Apply an explicit edit. Flags may be set out of turn here; the status is
    reconciled so CONCLUDED still holds iff the terminal flag is set.
    """
    order = await store.get(order_id)
    update = changes.model_dump(exclude_unset=True, exclude_none=True)

    workflow_changes = update.pop("workflow", None)
    if workflow_changes:
        flags = order.workflow.model_dump()
        flags.update({k: bool(v) for k, v in workflow_changes.items()})
        update["workflow"] = WorkflowFlags(**flags)
        logger.info(f"Order {order_id}: workflow edited directly {workflow_changes}")

    updated = order.model_copy(update=update)
    # model_copy skips validation; run it once on the merged record
    updated = Order(**updated.model_dump())
    status = reconcile_status(updated.workflow, updated.status, definition)
    if status != updated.status:
        logger.info(f"Order {order_id}: status reconciled {updated.status.value} -> {status.value}")
        updated = updated.model_copy(update={"status": status})

    return await store.upsert(updated)


async def delete_order(store: OrderStore, order_id: str) -> None:
    await store.delete(order_id)
    logger.info(f"Order removed: {order_id}")


def search_orders(
    orders: Iterable[Order],
    term: Optional[str] = None,
    status_filter: Optional[Union[OrderStatus, str]] = None,
) -> List[Order]:
    """
    Case-insensitive search on company, tax id, model, serial number and
    contract type, optionally filtered by status. Newest first.
    """
    result = list(orders)

    if status_filter:
        status = OrderStatus(status_filter)
        result = [o for o in result if o.status == status]

    needle = (term or "").strip().lower()
    if needle:
        result = [
            o for o in result
            if needle in o.company_name.lower()
            or needle in (o.tax_id or "").lower()
            or needle in o.model.value.lower()
            or needle in (o.serial_number or "").lower()
            or needle in o.contract_type.value.lower()
        ]

    return sorted(result, key=lambda o: o.created_on, reverse=True)


def compute_dashboard_stats(orders: Iterable[Order]) -> DashboardStats:
    stats = DashboardStats()
    for order in orders:
        stats.total += 1
        if order.status == OrderStatus.IN_PROGRESS:
            stats.in_progress += 1
        elif order.status == OrderStatus.SUSPENDED:
            stats.suspended += 1
        elif order.status == OrderStatus.CONCLUDED:
            stats.concluded += 1
    return stats


def build_workflow_view(
    order: Order,
    definition: WorkflowDefinition = CANONICAL_WORKFLOW,
    pending_commit: Optional[dict] = None,
) -> WorkflowView:
    """Step list with done/current markers, as shown in the workflow dialog."""
    flags = order.workflow.model_dump()
    step_index = current_step(flags, definition)
    steps = [
        WorkflowStepView(
            index=index,
            flag=step.flag,
            kind=step.kind.value,
            label=step.label,
            done=bool(flags.get(step.flag, False)),
            current=index == step_index,
        )
        for index, step in enumerate(definition.steps, start=1)
    ]

    # A suspended or concluded order offers nothing to continue with
    actions = permitted_actions(flags, definition) if order.status == OrderStatus.IN_PROGRESS else []
    confirmation = expected_confirmation(flags, definition) if order.status == OrderStatus.IN_PROGRESS else None

    return WorkflowView(
        order_id=order.id,
        status=order.status,
        current_step=step_index,
        terminal_step=definition.terminal_step,
        complete=is_complete(flags, definition),
        steps=steps,
        permitted_actions=actions,
        expected_confirmation=confirmation,
        pending_commit=pending_commit,
    )


# ============================================================================
# DEMO DATA
# ============================================================================

SEED_COMPANIES = [
    "Acqua Lux Veneto", "Pure Hydro S.r.l.", "TecnoBlu Impianti", "EcoDose Italia",
    "IdroSistemi 2026", "Crystal Flow", "AquaService Pro", "H2O Innovazione",
    "Blue Future", "Nettuno Tech",
]


def _seed_order(i: int, today: date) -> Order:
    models = list(EquipmentModel)
    contracts = list(ContractType)
    if i < 3:
        status = OrderStatus.CONCLUDED
    elif i < 8:
        status = OrderStatus.IN_PROGRESS
    else:
        status = OrderStatus.SUSPENDED

    return Order(
        id=generate_order_id(),
        created_on=today - timedelta(days=i * 3),
        company_name=SEED_COMPANIES[i % len(SEED_COMPANIES)],
        legal_representative="Mario Rossi" if i % 2 == 0 else "Anna Verdi",
        address=f"Via delle Terme {i + 1}",
        postal_code="35100",
        city="Padova",
        tax_id=f"0123456789{i}",
        contact_email=f"cliente{i}@esempio.it",
        model=models[i % len(models)],
        serial_number=f"SN-F-{202600 + i}",
        condition=EquipmentCondition.NEW,
        contract_type=contracts[i % len(contracts)],
        price=2500 + i * 100,
        status=status,
        # Each step reached by fewer orders than the one before it
        workflow=WorkflowFlags(
            contract_sent=i < 9,
            contract_accepted=i < 7,
            manual_sent=i < 5,
            manual_acknowledged=i < 4,
            warranty_released=i < 3,
        ),
    )


async def seed_test_orders(store: OrderStore, count: int = 10, replace: bool = False) -> List[Order]:
    """
    Insert demo orders at every stage of the workflow.
    With replace=True existing orders are removed first.
    """
    if replace:
        for existing in await store.list():
            await store.delete(existing.id)
        logger.info("Existing orders cleared before seeding")

    today = datetime.now(timezone.utc).date()
    seeded = []
    for i in range(count):
        seeded.append(await store.upsert(_seed_order(i, today)))

    logger.info(f"Seeded {len(seeded)} demo orders")
    return seeded
