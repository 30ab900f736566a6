# bookstore/services/wallet_service.py
"""
Wallet ledger.

The balance column is a cache of the ledger: every completed row moves it by
exactly its signed amount in the same transaction, and the balance itself is
only ever changed by a single conditional UPDATE so concurrent debits cannot
overdraw it.
"""
import hashlib
import hmac
import uuid

import structlog
from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError

from ..errors import Conflict, InsufficientFunds, InvalidInput, NotFound
from ..model import TransactionStatus, TransactionType, Wallet, WalletTransaction
from ..utils.db import atomic, compare_and_set, insert_ignore
from ..utils.money import D, ZERO, Money, round_money

logger = structlog.get_logger(__name__)

MIN_TOPUP = D("1.00")


def _positive_amount(amount) -> Money:
    try:
        value = round_money(D(amount))
    except (ArithmeticError, ValueError):
        raise InvalidInput("amount must be numeric", amount=str(amount))
    if value <= 0:
        raise InvalidInput("amount must be > 0", amount=str(value))
    return value


def get_or_create_wallet(ctx, user_id) -> Wallet:
    session = ctx.session
    now = ctx.now()
    insert_ignore(
        session,
        Wallet,
        {"user_id": user_id, "balance": ZERO, "created_at": now, "updated_at": now},
        ["user_id"],
    )
    return session.query(Wallet).filter(Wallet.user_id == user_id).one()


def find_wallet(session, user_id) -> Wallet | None:
    return session.query(Wallet).filter(Wallet.user_id == user_id).first()


def apply_to_balance(ctx, wallet_id, amount, ttype: TransactionType, allow_negative=False):
    """Move the balance by ``amount``; a debit only succeeds if the funds are there."""
    session = ctx.session
    amount = _positive_amount(amount)
    stmt = update(Wallet).where(Wallet.id == wallet_id)
    if ttype == TransactionType.CREDIT:
        stmt = stmt.values(balance=Wallet.balance + amount, updated_at=ctx.now())
    else:
        if not allow_negative:
            stmt = stmt.where(Wallet.balance >= amount)
        stmt = stmt.values(balance=Wallet.balance - amount, updated_at=ctx.now())

    result = session.execute(stmt.execution_options(synchronize_session=False))
    wallet = session.get(Wallet, wallet_id)
    if wallet is not None:
        session.expire(wallet, ["balance", "updated_at"])

    if result.rowcount != 1:
        if wallet is None:
            raise NotFound("wallet not found", wallet_id=wallet_id)
        raise InsufficientFunds(
            "insufficient wallet balance",
            wallet_id=wallet_id,
            balance=str(round_money(wallet.balance)),
            requested=str(amount),
        )


def record_transaction(
    ctx,
    wallet_id,
    amount,
    ttype: TransactionType,
    description=None,
    order_id=None,
    reference=None,
    status=TransactionStatus.COMPLETED,
) -> WalletTransaction:
    session = ctx.session
    txn = WalletTransaction(
        wallet_id=wallet_id,
        amount=_positive_amount(amount),
        ttype=ttype,
        status=status,
        description=description,
        order_id=order_id,
        reference=reference,
        created_at=ctx.now(),
    )
    try:
        with session.begin_nested():
            session.add(txn)
    except IntegrityError:
        raise Conflict("transaction reference already used", reference=reference)
    return txn


def reference_exists(session, reference) -> bool:
    if not reference:
        return False
    return session.query(WalletTransaction.id).filter(
        WalletTransaction.reference == reference
    ).first() is not None


def _post(ctx, user_id, amount, ttype, description, order_id, reference, allow_negative=False):
    if reference_exists(ctx.session, reference):
        raise Conflict("transaction reference already used", reference=reference)
    wallet = get_or_create_wallet(ctx, user_id)
    apply_to_balance(ctx, wallet.id, amount, ttype, allow_negative=allow_negative)
    txn = record_transaction(ctx, wallet.id, amount, ttype, description, order_id, reference)
    logger.info(
        "Wallet transaction posted",
        user_id=user_id,
        wallet_id=wallet.id,
        type=ttype.value,
        amount=str(txn.amount),
        order_id=order_id,
        reference=reference,
    )
    return txn


def credit(ctx, user_id, amount, description=None, order_id=None, reference=None) -> WalletTransaction:
    """Credit inside the caller's transaction."""
    return _post(ctx, user_id, amount, TransactionType.CREDIT, description, order_id, reference)


def debit(ctx, user_id, amount, description=None, order_id=None, reference=None) -> WalletTransaction:
    """Debit inside the caller's transaction; raises ``InsufficientFunds`` and changes nothing if short."""
    return _post(ctx, user_id, amount, TransactionType.DEBIT, description, order_id, reference)


def wallet_balance(ctx, user_id) -> Money:
    wallet = find_wallet(ctx.session, user_id)
    return round_money(wallet.balance) if wallet else ZERO


def wallet_transactions(ctx, user_id, page=1, limit=20) -> dict:
    page = max(1, int(page or 1))
    limit = min(max(1, int(limit or 20)), 100)
    wallet = find_wallet(ctx.session, user_id)
    if wallet is None:
        return {"items": [], "total": 0, "page": page, "limit": limit}

    q = ctx.session.query(WalletTransaction).filter(WalletTransaction.wallet_id == wallet.id)
    total = q.count()
    rows = (
        q.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {"items": rows, "total": total, "page": page, "limit": limit}


def topup_signature(secret, gateway_order_id, payment_id) -> str:
    message = f"{gateway_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _topup_reference(gateway_order_id) -> str:
    return f"TOPUP-{gateway_order_id}"


def initiate_topup(ctx, user_id, amount) -> dict:
    amount = _positive_amount(amount)
    if amount < MIN_TOPUP:
        raise InvalidInput(f"top-up amount must be at least {MIN_TOPUP}", amount=str(amount))

    with atomic(ctx.session):
        wallet = get_or_create_wallet(ctx, user_id)
        gateway_order_id = f"wt_{uuid.uuid4().hex[:16]}"
        txn = record_transaction(
            ctx,
            wallet.id,
            amount,
            TransactionType.CREDIT,
            description="Wallet top-up",
            reference=_topup_reference(gateway_order_id),
            status=TransactionStatus.PENDING,
        )
    logger.info("Top-up initiated", user_id=user_id, gateway_order_id=gateway_order_id, amount=str(amount))
    return {"gateway_order_id": gateway_order_id, "amount": amount, "transaction": txn}


def verify_topup(ctx, user_id, gateway_order_id, payment_id, signature) -> WalletTransaction:
    """
    Settle a pending top-up. A good signature completes it and credits the
    wallet exactly once; a bad one marks it failed.
    """
    session = ctx.session
    with atomic(session):
        txn = (
            session.query(WalletTransaction)
            .join(Wallet, Wallet.id == WalletTransaction.wallet_id)
            .filter(
                WalletTransaction.reference == _topup_reference(gateway_order_id),
                Wallet.user_id == user_id,
            )
            .first()
        )
        if txn is None:
            raise NotFound("top-up not found", gateway_order_id=gateway_order_id)
        if txn.status != TransactionStatus.PENDING:
            raise Conflict("top-up already settled", gateway_order_id=gateway_order_id, status=txn.status.value)

        expected = topup_signature(ctx.policy.topup_signing_secret, gateway_order_id, payment_id)
        if not hmac.compare_digest(expected, signature or ""):
            compare_and_set(session, txn, WalletTransaction.status, TransactionStatus.PENDING,
                            TransactionStatus.FAILED)
            failed = True
        else:
            if not compare_and_set(
                session, txn, WalletTransaction.status, TransactionStatus.PENDING,
                TransactionStatus.COMPLETED, gateway_payment_id=payment_id,
            ):
                raise Conflict("top-up already settled", gateway_order_id=gateway_order_id)
            apply_to_balance(ctx, txn.wallet_id, txn.amount, TransactionType.CREDIT)
            failed = False

    if failed:
        logger.warning("Top-up signature mismatch", user_id=user_id, gateway_order_id=gateway_order_id)
        raise InvalidInput("payment verification failed", gateway_order_id=gateway_order_id)
    logger.info("Top-up completed", user_id=user_id, gateway_order_id=gateway_order_id, amount=str(txn.amount))
    return txn


def reverse_transaction(ctx, transaction_id, reason) -> WalletTransaction:
    """
    Append the opposite entry for a completed transaction. The reversal may
    take the balance below zero; the original row is left untouched.
    """
    if not (reason or "").strip():
        raise InvalidInput("reason is required")
    session = ctx.session
    with atomic(session):
        original = session.get(WalletTransaction, transaction_id)
        if original is None:
            raise NotFound("transaction not found", transaction_id=transaction_id)
        if original.status != TransactionStatus.COMPLETED:
            raise Conflict("only completed transactions can be reversed",
                           transaction_id=transaction_id, status=original.status.value)
        reference = f"REVERSAL-{original.id}"
        if reference_exists(session, reference):
            raise Conflict("transaction already reversed", transaction_id=transaction_id)

        opposite = (
            TransactionType.DEBIT if original.ttype == TransactionType.CREDIT else TransactionType.CREDIT
        )
        apply_to_balance(ctx, original.wallet_id, original.amount, opposite, allow_negative=True)
        txn = record_transaction(
            ctx,
            original.wallet_id,
            original.amount,
            opposite,
            description=f"Reversal of #{original.id}: {reason.strip()}",
            order_id=original.order_id,
            reference=reference,
        )
    logger.info("Transaction reversed", transaction_id=transaction_id, reversal_id=txn.id)
    return txn


def ledger_sum(session, wallet_id) -> Money:
    signed = case(
        (WalletTransaction.ttype == TransactionType.CREDIT, WalletTransaction.amount),
        else_=-WalletTransaction.amount,
    )
    total = (
        session.query(func.coalesce(func.sum(signed), 0))
        .filter(
            WalletTransaction.wallet_id == wallet_id,
            WalletTransaction.status == TransactionStatus.COMPLETED,
        )
        .scalar()
    )
    return round_money(D(total))


def reconcile_wallet(ctx, wallet_id) -> dict:
    wallet = ctx.session.get(Wallet, wallet_id)
    if wallet is None:
        raise NotFound("wallet not found", wallet_id=wallet_id)
    balance = round_money(wallet.balance)
    expected = ledger_sum(ctx.session, wallet_id)
    drift = balance - expected
    if drift:
        logger.warning("Wallet drift", wallet_id=wallet_id, balance=str(balance), ledger=str(expected))
    return {
        "wallet_id": wallet_id,
        "user_id": wallet.user_id,
        "balance": balance,
        "ledger": expected,
        "drift": drift,
        "consistent": drift == 0,
    }
