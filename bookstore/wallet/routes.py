# bookstore/wallet/routes.py
from ..services import wallet_service
from ..services.context import service_context
from ..utils.api import json_body, ok, page_args
from ..utils.decorators import current_user_id, login_required
from . import bp


@bp.get("")
@login_required
def balance():
    uid = current_user_id()
    return ok("wallet", {"user_id": uid, "balance": wallet_service.wallet_balance(service_context(), uid)})


@bp.get("/transactions")
@login_required
def transactions():
    page, limit = page_args()
    result = wallet_service.wallet_transactions(service_context(), current_user_id(), page, limit)
    return ok("transactions", {
        "page": result["page"],
        "limit": result["limit"],
        "total": result["total"],
        "items": [t.as_api() for t in result["items"]],
    })


@bp.post("/topup")
@login_required
def initiate_topup():
    result = wallet_service.initiate_topup(service_context(), current_user_id(), json_body().get("amount"))
    return ok("top-up initiated", {
        "gateway_order_id": result["gateway_order_id"],
        "amount": result["amount"],
        "transaction_id": result["transaction"].id,
    }, 201)


@bp.post("/topup/verify")
@login_required
def verify_topup():
    data = json_body()
    ctx = service_context()
    txn = wallet_service.verify_topup(
        ctx,
        current_user_id(),
        data.get("gateway_order_id"),
        data.get("payment_id"),
        data.get("signature"),
    )
    return ok("money added to wallet", {
        "transaction": txn.as_api(),
        "balance": wallet_service.wallet_balance(ctx, current_user_id()),
    })
