# bookstore/cli.py
import sys
from datetime import timedelta

import click
from flask.cli import with_appcontext

from .extensions import db
from .model import Wallet
from .services import order_service, wallet_service
from .services.context import service_context


@click.command("reconcile-wallets")
@with_appcontext
def reconcile_wallets():
    """Compare every wallet balance with its ledger; exit 1 on any drift."""
    ctx = service_context()
    drifted = 0
    for (wallet_id,) in db.session.query(Wallet.id).order_by(Wallet.id.asc()).all():
        report = wallet_service.reconcile_wallet(ctx, wallet_id)
        if not report["consistent"]:
            drifted += 1
            click.echo(
                f"wallet {wallet_id} (user {report['user_id']}): balance {report['balance']} "
                f"ledger {report['ledger']} drift {report['drift']}"
            )
    click.echo(f"{drifted} wallet(s) out of balance")
    if drifted:
        sys.exit(1)


@click.command("expire-unpaid-orders")
@with_appcontext
@click.option("--minutes", type=int, default=None, help="Override the payment timeout.")
def expire_unpaid_orders(minutes):
    """Cancel online orders whose payment never arrived."""
    older_than = timedelta(minutes=minutes) if minutes is not None else None
    expired = order_service.expire_unpaid_orders(service_context(), older_than)
    click.echo(f"Expired {len(expired)} order(s)")
    if expired:
        click.echo(", ".join(str(i) for i in expired))


def register_cli(app):
    app.cli.add_command(reconcile_wallets)
    app.cli.add_command(expire_unpaid_orders)
