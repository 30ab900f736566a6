# bookstore/order/routes.py
from flask import request

from ..errors import InvalidInput
from ..services import order_service
from ..services.context import service_context
from ..utils.api import json_body, ok, page_args
from ..utils.decorators import current_user_id, login_required
from . import bp


@bp.post("")
@login_required
def place_order():
    data = json_body()
    address_id = data.get("address_id")
    if not isinstance(address_id, int):
        raise InvalidInput("address_id must be an integer")
    order = order_service.place_order(
        service_context(), current_user_id(), address_id, data.get("payment_method")
    )
    return ok("order placed", order.as_api(), 201)


@bp.get("")
@login_required
def list_orders():
    page, limit = page_args(default_limit=10)
    result = order_service.list_orders(
        service_context(), current_user_id(), page, limit, status=request.args.get("status")
    )
    return ok("orders", {**result, "items": [o.as_api() for o in result["items"]]})


@bp.get("/<int:order_id>")
@login_required
def get_order(order_id: int):
    order = order_service.get_order(service_context(), order_id, user_id=current_user_id())
    return ok("order", order.as_api())


@bp.post("/<int:order_id>/cancel")
@login_required
def cancel_order(order_id: int):
    order = order_service.cancel_order(
        service_context(), current_user_id(), order_id, json_body().get("reason")
    )
    return ok("order cancelled", order.as_api())


@bp.post("/<int:order_id>/items/<int:item_id>/cancel")
@login_required
def cancel_item(order_id: int, item_id: int):
    ctx = service_context()
    order_service.request_item_cancellation(
        ctx, current_user_id(), order_id, item_id, json_body().get("reason")
    )
    return ok("cancellation requested", order_service.get_order(ctx, order_id).as_api())


@bp.post("/<int:order_id>/return")
@login_required
def return_order(order_id: int):
    order = order_service.request_return(
        service_context(), current_user_id(), order_id, json_body().get("reason")
    )
    return ok("return requested", order.as_api())


@bp.post("/<int:order_id>/items/<int:item_id>/return")
@login_required
def return_item(order_id: int, item_id: int):
    ctx = service_context()
    order_service.request_item_return(
        ctx, current_user_id(), order_id, item_id, json_body().get("reason")
    )
    return ok("return requested", order_service.get_order(ctx, order_id).as_api())


@bp.post("/<int:order_id>/payment")
@login_required
def confirm_payment(order_id: int):
    order = order_service.confirm_payment(
        service_context(), order_id, json_body().get("payment_reference"), user_id=current_user_id()
    )
    return ok("payment confirmed", order.as_api())
