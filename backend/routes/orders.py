"""
Customer Orders Routes
Buyers see the orders created from their builds.
"""
from fastapi import APIRouter, Depends
import logging

from middleware import require_auth
from services.errors import NotFoundError, ForbiddenError
from services.order_service import get_order_for_user, list_orders_for_user
from services.order_workflow import OrderStatus, is_terminal_state
from utils.http_errors import to_http_exception

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.get("/my")
async def list_my_orders(current_user: dict = Depends(require_auth)):
    orders = await list_orders_for_user(current_user["user_id"])
    return {"orders": orders, "total": len(orders)}


@router.get("/{order_id}")
async def get_my_order(order_id: str, current_user: dict = Depends(require_auth)):
    try:
        order = await get_order_for_user(order_id, current_user["user_id"])
    except (NotFoundError, ForbiddenError) as e:
        raise to_http_exception(e)
    try:
        closed = is_terminal_state(OrderStatus(order.get("status")))
    except ValueError:
        closed = False
    return {"order": order, "is_closed": closed}
