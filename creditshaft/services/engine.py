"""Composition root — builds clients from config and runs the background loops."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from ..chains.evm import EvmClient
from ..config import AppConfig
from ..interfaces.chain import ChainClient
from ..interfaces.loan_store import LoanStore
from ..interfaces.notifier import Notifier
from ..interfaces.payment import PaymentClient
from ..interfaces.price_oracle import PriceOracle
from ..models import CreditSummary, MonitorState, PositionView, RefreshOutcome
from ..notifications import TelegramNotifier
from ..oracles import PythOracle
from ..payments import StripeClient
from ..storage import InMemoryLoanStore, JsonFileLoanStore, credit_summary
from .monitor import PositionMonitor
from .orchestrator import PreAuthOrchestrator

logger = logging.getLogger(__name__)

# Back-off after an unexpected error in a background loop.
_ERROR_SLEEP_SECONDS = 60


class Engine:
    """Wires the monitor and orchestrator to concrete clients.

    Any client may be injected; the rest are built from ``config``.
    """

    def __init__(
        self,
        config: AppConfig,
        chain: ChainClient | None = None,
        oracle: PriceOracle | None = None,
        payment: PaymentClient | None = None,
        store: LoanStore | None = None,
        notifiers: list[Notifier] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config

        self.chain: ChainClient = chain or EvmClient(config.chain)
        self.oracle: PriceOracle = oracle or PythOracle(config.price_oracle.pyth)
        self.payment: PaymentClient = payment or StripeClient(config.payment.stripe)

        if store is not None:
            self.store: LoanStore = store
        elif config.storage.path:
            self.store = JsonFileLoanStore(config.storage.path)
        else:
            self.store = InMemoryLoanStore()

        if notifiers is None:
            notifiers = []
            if config.notifications.telegram.enabled:
                notifiers.append(TelegramNotifier(config.notifications.telegram))
        self._notifiers = notifiers

        self.monitor = PositionMonitor(
            self.chain,
            self.oracle,
            asset=config.monitor.asset,
            close_confirm_attempts=config.monitor.close_confirm_attempts,
            close_confirm_delay=config.monitor.close_confirm_delay_seconds,
            clock=clock,
        )
        self.orchestrator = PreAuthOrchestrator(
            self.payment,
            self.store,
            self.chain,
            config.hold,
            monitor=self.monitor,
            notifiers=self._notifiers,
            currency=config.payment.stripe.currency,
            clock=clock,
        )

        self._labels = {w.address: w.label for w in config.wallets}
        self._at_risk: set[str] = set()

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _format_wallet(address: str) -> str:
        if len(address) > 16:
            return f"{address[:10]}...{address[-6:]}"
        return address

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    @staticmethod
    def format_countdown(seconds: int) -> str:
        """Render a countdown as ``Dd HHh MMm SSs``."""
        if seconds <= 0:
            return "expired"
        days, rest = divmod(seconds, 86400)
        hours, rest = divmod(rest, 3600)
        minutes, secs = divmod(rest, 60)
        return f"{days}d {hours:02d}h {minutes:02d}m {secs:02d}s"

    def _label(self, wallet: str) -> str:
        return self._labels.get(wallet) or self._format_wallet(wallet)

    def format_view(self, view: PositionView) -> str:
        """Human-readable summary of one wallet's position."""
        header = f"{self._label(view.wallet)} · {view.state.value.upper()}"
        if view.risk is None:
            lines = [header, "", "No active position."]
            if view.error is not None:
                lines.append(f"Last error: {view.error}")
            return "\n".join(lines)

        risk = view.risk
        lines = [
            header,
            "",
            f"Price: ${risk.price:,.4f}",
            f"Collateral value: ${risk.collateral_value_now:,.2f} "
            f"(entry ${risk.collateral_value_at_entry:,.2f})",
            f"Exposure: ${risk.total_exposure_now:,.2f} "
            f"(entry ${risk.total_exposure_at_entry:,.2f})",
            f"P&L: ${risk.unrealized_pnl:,.2f} ({risk.unrealized_pnl_percent:.2f}%)",
            f"Health Factor: {risk.health_factor:.2f} · LTV: {risk.current_ltv:.2f}%",
            f"Liquidation price: ${risk.liquidation_price:,.4f}",
            f"Pre-auth expires in: {self.format_countdown(view.countdown)}",
        ]
        if risk.is_at_risk:
            lines.append("⚠️ AT RISK")
        if view.error is not None:
            lines.append(f"Last error: {view.error}")
        return "\n".join(lines)

    def _build_at_risk_alert(self, view: PositionView) -> str:
        risk = view.risk
        assert risk is not None
        return (
            f"🚨 AT RISK — HF {risk.health_factor:.2f}\n"
            f"\n"
            f"{self._label(view.wallet)}\n"
            f"\n"
            f"Price: ${risk.price:,.4f}\n"
            f"Liquidation price: ${risk.liquidation_price:,.4f}\n"
            f"LTV: {risk.current_ltv:.2f}%\n"
            f"P&L: ${risk.unrealized_pnl:,.2f}\n"
            f"\n"
            f"Wallet: {self._format_wallet(view.wallet)}\n"
            f"{self._now_str()} UTC"
        )

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    async def _check_at_risk(self, view: PositionView) -> None:
        """Alert once when a wallet turns at-risk; re-arm when it recovers."""
        if view.risk is not None and view.risk.is_at_risk:
            if view.wallet in self._at_risk:
                return
            self._at_risk.add(view.wallet)
            logger.warning("%s is at risk", self._label(view.wallet))
            await self._send_alert(
                self._build_at_risk_alert(view), subject="🚨 Position at risk"
            )
        elif view.risk is not None or view.state is MonitorState.INACTIVE:
            self._at_risk.discard(view.wallet)

    # ------------------------------------------------------------------
    # Core workflows
    # ------------------------------------------------------------------

    async def refresh_all(self) -> list[RefreshOutcome]:
        """Refresh every configured wallet and dispatch at-risk alerts."""
        outcomes = await asyncio.gather(
            *(self.monitor.refresh(w.address) for w in self._config.wallets)
        )
        for outcome in outcomes:
            await self._check_at_risk(outcome.view)
        return list(outcomes)

    async def status(self, wallet: str) -> PositionView:
        outcome = await self.monitor.refresh(wallet)
        return outcome.view

    async def credit_summary(self, wallet: str) -> CreditSummary:
        return credit_summary(await self.store.get_by_wallet(wallet))

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _refresh_loop(self) -> None:
        interval = self._config.monitor.refresh_interval_seconds
        logger.info(
            "Starting refresh loop for %d wallet(s) (every %.0fs)",
            len(self._config.wallets), interval,
        )
        while True:
            try:
                await self.refresh_all()
                await asyncio.sleep(interval)
            except Exception as e:
                logger.error("Error in refresh loop: %s", e)
                await asyncio.sleep(_ERROR_SLEEP_SECONDS)

    async def _tick_loop(self) -> None:
        step = self._config.monitor.tick_seconds
        while True:
            await asyncio.sleep(step)
            self.monitor.tick(max(1, int(step)))

    async def _expiry_loop(self) -> None:
        interval = self._config.hold.expiry_check_interval_seconds
        while True:
            try:
                expired = await self.orchestrator.check_expiries()
                if expired:
                    logger.info("Expiry check settled %d loan(s)", len(expired))
                await asyncio.sleep(interval)
            except Exception as e:
                logger.error("Error in expiry loop: %s", e)
                await asyncio.sleep(_ERROR_SLEEP_SECONDS)

    async def _reconcile_loop(self) -> None:
        interval = self._config.hold.reconcile_interval_seconds
        while True:
            try:
                await self.orchestrator.reconcile()
                await asyncio.sleep(interval)
            except Exception as e:
                logger.error("Error in reconcile loop: %s", e)
                await asyncio.sleep(_ERROR_SLEEP_SECONDS)

    async def run(self) -> None:
        """Run the refresh, countdown, expiry and reconcile loops forever."""
        await asyncio.gather(
            self._refresh_loop(),
            self._tick_loop(),
            self._expiry_loop(),
            self._reconcile_loop(),
        )
