"""
Orders API Routes - order registry, dashboard and the documentation workflow.
Workflow actions go through the lifecycle controller; its error results are
mapped to HTTP status codes here.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel
from typing import List, Optional
import logging

from models import DashboardStats, Order, OrderCreate, OrderUpdate, WorkflowView
from services.order_lifecycle import (
    ActionNotPermitted,
    DocumentGenerationFailed,
    EmailDeliveryFailed,
    InvalidFlagTransition,
    OrderLifecycleController,
    OrderNotFound,
    PersistenceFailed,
    StoreUnavailable,
    Unauthenticated,
    WorkflowResult,
    get_lifecycle_controller,
)
from services.order_service import (
    build_workflow_view,
    compute_dashboard_stats,
    create_order,
    delete_order,
    search_orders,
    seed_test_orders,
    update_order,
)
from services.order_store import OrderNotFoundError, OrderStore, StoreError, get_order_store
from services.order_workflow import DocumentKind, OrderStatus, action_for_document, can_perform

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/orders", tags=["orders"])

ERROR_STATUS_CODES = {
    ActionNotPermitted: 409,
    InvalidFlagTransition: 409,
    Unauthenticated: 401,
    DocumentGenerationFailed: 502,
    EmailDeliveryFailed: 502,
    PersistenceFailed: 500,
    OrderNotFound: 404,
    StoreUnavailable: 503,
}


class SeedRequest(BaseModel):
    count: int = 10
    replace: bool = False


def _unwrap(result: WorkflowResult) -> Order:
    """Return the order or raise the HTTP error matching the workflow error."""
    if result.ok:
        return result.order
    status_code = ERROR_STATUS_CODES.get(type(result.error), 500)
    raise HTTPException(status_code=status_code, detail=result.error.to_dict())


async def _load_order(store: OrderStore, order_id: str) -> Order:
    try:
        return await store.get(order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except StoreError as e:
        logger.error(f"Failed to load order {order_id}: {e}")
        raise HTTPException(status_code=503, detail="Failed to load order")


async def _list_orders(store: OrderStore) -> List[Order]:
    try:
        return await store.list()
    except StoreError as e:
        logger.error(f"Failed to list orders: {e}")
        raise HTTPException(status_code=500, detail="Failed to list orders")


# ============================================================================
# REGISTRY
# ============================================================================

@router.get("", response_model=List[Order])
async def list_orders(
    q: Optional[str] = Query(None, description="Search company, tax id, model, serial, contract type"),
    status: Optional[OrderStatus] = None,
    store: OrderStore = Depends(get_order_store),
):
    orders = await _list_orders(store)
    return search_orders(orders, term=q, status_filter=status)


@router.get("/stats", response_model=DashboardStats)
async def get_dashboard_stats(store: OrderStore = Depends(get_order_store)):
    return compute_dashboard_stats(await _list_orders(store))


@router.post("", response_model=Order, status_code=201)
async def create_new_order(request: OrderCreate, store: OrderStore = Depends(get_order_store)):
    try:
        return await create_order(store, request)
    except StoreError as e:
        logger.error(f"Failed to create order: {e}")
        raise HTTPException(status_code=500, detail="Failed to create order")


@router.post("/seed", response_model=List[Order])
async def seed_orders(request: SeedRequest = SeedRequest(), store: OrderStore = Depends(get_order_store)):
    """Load demo orders at every workflow stage."""
    if request.count < 1 or request.count > 100:
        raise HTTPException(status_code=400, detail="count must be between 1 and 100")
    try:
        return await seed_test_orders(store, count=request.count, replace=request.replace)
    except StoreError as e:
        logger.error(f"Failed to seed orders: {e}")
        raise HTTPException(status_code=500, detail="Failed to seed orders")


@router.get("/{order_id}", response_model=Order)
async def get_order_detail(order_id: str, store: OrderStore = Depends(get_order_store)):
    return await _load_order(store, order_id)


@router.patch("/{order_id}", response_model=Order)
async def edit_order(
    order_id: str,
    request: OrderUpdate,
    store: OrderStore = Depends(get_order_store),
    controller: OrderLifecycleController = Depends(get_lifecycle_controller),
):
    """Explicit edit. Workflow flags set here bypass the workflow gates."""
    try:
        return await update_order(store, order_id, request, controller.definition)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except StoreError as e:
        logger.error(f"Failed to update order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update order")


@router.delete("/{order_id}")
async def remove_order(order_id: str, store: OrderStore = Depends(get_order_store)):
    try:
        await delete_order(store, order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except StoreError as e:
        logger.error(f"Failed to delete order {order_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete order")
    return {"success": True, "order_id": order_id}


# ============================================================================
# WORKFLOW
# ============================================================================

@router.get("/{order_id}/workflow", response_model=WorkflowView)
async def get_order_workflow(
    order_id: str,
    store: OrderStore = Depends(get_order_store),
    controller: OrderLifecycleController = Depends(get_lifecycle_controller),
):
    order = await _load_order(store, order_id)
    pending = controller.pending_for(order_id)
    return build_workflow_view(
        order,
        controller.definition,
        pending_commit=pending.to_dict() if pending else None,
    )


@router.get("/{order_id}/documents/{kind}")
async def preview_document(
    order_id: str,
    kind: DocumentKind,
    store: OrderStore = Depends(get_order_store),
    controller: OrderLifecycleController = Depends(get_lifecycle_controller),
):
    """Render the document without sending it. No flag changes."""
    order = await _load_order(store, order_id)
    if not can_perform(order.workflow, action_for_document(kind), controller.definition):
        raise HTTPException(
            status_code=409,
            detail=ActionNotPermitted(f"The {kind.value} is not available at this step").to_dict(),
        )
    try:
        document = await controller.document_generator.generate(order, kind)
    except Exception as e:
        logger.error(f"Preview of {kind.value} for order {order_id} failed: {e}")
        raise HTTPException(
            status_code=502,
            detail=DocumentGenerationFailed(f"Could not generate the {kind.value}").to_dict(),
        )
    return Response(
        content=document.content,
        media_type=document.content_type,
        headers={"Content-Disposition": f'inline; filename="{document.filename}"'},
    )


@router.post("/{order_id}/documents/{kind}/send", response_model=Order)
async def send_document(
    order_id: str,
    kind: DocumentKind,
    store: OrderStore = Depends(get_order_store),
    controller: OrderLifecycleController = Depends(get_lifecycle_controller),
):
    """Generate the document, email it to the customer and record the step."""
    order = await _load_order(store, order_id)
    return _unwrap(await controller.advance(order, kind))


@router.post("/{order_id}/confirmations/{flag}", response_model=Order)
async def confirm_step(
    order_id: str,
    flag: str,
    store: OrderStore = Depends(get_order_store),
    controller: OrderLifecycleController = Depends(get_lifecycle_controller),
):
    order = await _load_order(store, order_id)
    return _unwrap(await controller.set_manual_confirmation(order, flag))


@router.post("/{order_id}/suspension", response_model=Order)
async def toggle_order_suspension(
    order_id: str,
    store: OrderStore = Depends(get_order_store),
    controller: OrderLifecycleController = Depends(get_lifecycle_controller),
):
    order = await _load_order(store, order_id)
    return _unwrap(await controller.toggle_suspension(order))


@router.post("/{order_id}/retry-persist", response_model=Order)
async def retry_persist(
    order_id: str,
    controller: OrderLifecycleController = Depends(get_lifecycle_controller),
):
    """Save a step whose email already went out. Never resends."""
    return _unwrap(await controller.retry_persist(order_id))
