# bookstore/admin/routes.py
from flask import request

from ..errors import InvalidInput
from ..services import order_service
from ..services.context import service_context
from ..utils.api import json_body, ok, page_args
from ..utils.decorators import admin_required
from . import bp


def _bool_field(data, name, default):
    value = data.get(name, default)
    if not isinstance(value, bool):
        raise InvalidInput(f"{name} must be a boolean", **{name: value})
    return value


def _approve_flag(data) -> bool:
    if "approve" in data:
        return _bool_field(data, "approve", None)
    action = (data.get("action") or "").strip().lower()
    if action not in ("approve", "reject"):
        raise InvalidInput("action must be 'approve' or 'reject'")
    return action == "approve"


@bp.get("/orders/pending")
@admin_required
def pending_requests():
    """Query params: kind=cancellation|return, page, limit."""
    page, limit = page_args()
    result = order_service.list_pending_requests(service_context(), request.args.get("kind"), page, limit)
    return ok("pending requests", {**result, "items": [o.as_api() for o in result["items"]]})


@bp.post("/orders/<int:order_id>/status")
@admin_required
def update_status(order_id: int):
    order = order_service.update_order_status(service_context(), order_id, json_body().get("status"))
    return ok("order status updated", order.as_api())


@bp.post("/orders/<int:order_id>/items/<int:item_id>/cancellation")
@admin_required
def review_cancellation(order_id: int, item_id: int):
    data = json_body()
    ctx = service_context()
    order_service.review_item_cancellation(ctx, order_id, item_id, _approve_flag(data), data.get("reason"))
    return ok("cancellation reviewed", order_service.get_order(ctx, order_id).as_api())


@bp.post("/orders/<int:order_id>/items/<int:item_id>/return")
@admin_required
def review_return(order_id: int, item_id: int):
    data = json_body()
    approve = _approve_flag(data)
    restock = _bool_field(data, "restock", True)
    ctx = service_context()
    order_service.review_item_return(ctx, order_id, item_id, approve, reason=data.get("reason"), restock=restock)
    return ok("return reviewed", order_service.get_order(ctx, order_id).as_api())


@bp.post("/orders/<int:order_id>/return/approve")
@admin_required
def approve_return(order_id: int):
    restock = _bool_field(json_body(), "restock", True)
    order = order_service.approve_return(service_context(), order_id, restock=restock)
    return ok("return approved", order.as_api())


@bp.post("/orders/<int:order_id>/return/reject")
@admin_required
def reject_return(order_id: int):
    order = order_service.reject_return(service_context(), order_id, json_body().get("reason"))
    return ok("return rejected", order.as_api())
