"""Command-line interface for the CreditShaft risk engine."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from decimal import Decimal, InvalidOperation

from .config import AppConfig, load_config
from .errors import EngineError
from .logging_setup import configure_logging
from .models import BorrowRequest, MonitorState, PaymentMethod
from .services import Engine

logger = logging.getLogger(__name__)


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid decimal value: '{value}'")


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="creditshaft",
        description="Leveraged-position risk & lifecycle engine",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    status_parser = sub.add_parser("status", help="Refresh once and print risk metrics")
    status_parser.add_argument("wallet", help="Wallet address")

    sub.add_parser("watch", help="Run the engine for the configured wallets")

    close_parser = sub.add_parser("close", help="Close a position and resolve its hold")
    close_parser.add_argument("wallet", help="Wallet address")

    borrow_parser = sub.add_parser("borrow", help="Authorize a hold and open a loan record")
    borrow_parser.add_argument("wallet", help="Wallet address")
    borrow_parser.add_argument("amount", type=_decimal, help="Borrow amount in USD")
    borrow_parser.add_argument(
        "--ltv",
        type=_decimal,
        default=None,
        help="Loan-to-value percent (default: hold.default_ltv_percent)",
    )
    borrow_parser.add_argument("--customer", required=True, help="Payment customer id")
    borrow_parser.add_argument(
        "--payment-method", required=True, help="Payment method id"
    )
    borrow_parser.add_argument(
        "--pre-auth",
        type=_decimal,
        default=None,
        help="Hold amount in USD (overrides the LTV-derived amount)",
    )
    borrow_parser.add_argument(
        "--duration",
        type=int,
        default=None,
        help="Pre-authorization duration in minutes",
    )
    borrow_parser.add_argument(
        "--entry-price", type=_decimal, default=Decimal("0"), help="Asset entry price"
    )

    loans_parser = sub.add_parser("loans", help="List a wallet's loans")
    loans_parser.add_argument("wallet", help="Wallet address")

    sub.add_parser("reconcile", help="Run one reconciliation pass")

    return parser


async def _status(engine: Engine, wallet: str) -> None:
    view = await engine.status(wallet)
    print(engine.format_view(view))


async def _close(engine: Engine, wallet: str) -> None:
    view = await engine.status(wallet)
    if view.state is not MonitorState.ACTIVE:
        print(engine.format_view(view))
        print("Nothing to close.")
        return

    result = await engine.orchestrator.close_position(wallet)
    if result is None:
        print("Close abandoned.")
        return
    print(f"Closed in {result.close.receipt.tx_hash}")
    if result.loan is None:
        print("No active loan record for this wallet.")
    elif result.resolved:
        print(f"Loan {result.loan.id}: {result.loan.status.value}, hold {result.loan.hold_status.value}")
    else:
        print(
            f"Loan {result.loan.id}: hold resolution pending "
            f"({result.loan.pending_resolution.value if result.loan.pending_resolution else 'unknown'})"
        )


async def _borrow(engine: Engine, args: argparse.Namespace, config: AppConfig) -> None:
    request = BorrowRequest(
        wallet_address=args.wallet,
        amount_usd=args.amount,
        ltv_percent=args.ltv if args.ltv is not None else config.hold.default_ltv_percent,
        payment_method=PaymentMethod(args.customer, args.payment_method),
        asset=config.monitor.asset,
        entry_price=args.entry_price,
        required_pre_auth=args.pre_auth,
        duration_minutes=args.duration,
    )
    opened = await engine.orchestrator.open_loan(request)
    params = opened.contract_params
    print(f"Loan {opened.loan.id} opened")
    print(f"  Hold: ${opened.loan.pre_auth_amount:,.2f} ({params.payment_intent_id})")
    print(f"  Expires: {opened.loan.expires_at:%Y-%m-%d %H:%M:%S} UTC")
    print("Contract parameters:")
    print(f"  preAuthAmountUSD: {params.pre_auth_amount_usd}")
    print(f"  preAuthDurationMinutes: {params.pre_auth_duration_minutes}")
    print(f"  paymentIntentId: {params.payment_intent_id}")
    print(f"  customerId: {params.customer_id}")
    print(f"  paymentMethodId: {params.payment_method_id}")


async def _loans(engine: Engine, wallet: str) -> None:
    loans = await engine.store.get_by_wallet(wallet)
    for loan in sorted(loans, key=lambda l: l.created_at):
        print(
            f"{loan.id}  {loan.status.value:<10}  ${loan.borrowed_amount:,.2f} "
            f"held ${loan.pre_auth_amount:,.2f} ({loan.hold_status.value})  "
            f"expires {loan.expires_at:%Y-%m-%d %H:%M}"
        )
    summary = await engine.credit_summary(wallet)
    print(
        f"Active: {summary.active_loans} · Closed: {summary.closed_loans} · "
        f"Liquidated: {summary.liquidated_loans} · Failed: {summary.failed_loans}"
    )
    print(f"Total borrowed: ${summary.total_borrowed:,.2f} · Total held: ${summary.total_held:,.2f}")


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    engine = Engine(config)

    if args.command == "status":
        await _status(engine, args.wallet)
    elif args.command == "watch":
        await engine.run()
    elif args.command == "close":
        await _close(engine, args.wallet)
    elif args.command == "borrow":
        await _borrow(engine, args, config)
    elif args.command == "loans":
        await _loans(engine, args.wallet)
    elif args.command == "reconcile":
        report = await engine.orchestrator.reconcile()
        print(
            f"Checked {report.checked} · resolved {report.resolved} · "
            f"pending {report.still_pending} · closed on-chain {report.closed_on_chain} · "
            f"expiry updated {report.expiry_updated} · read errors {report.read_errors}"
        )
    else:
        build_parser().print_help()
        sys.exit(1)


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(_run(args))
    except EngineError as e:
        logger.error("%s failed: %s", args.command, e)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
