"""Integration tests for the Engine — wiring, at-risk alerts and background loops."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from decimal import Decimal
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from creditshaft.config import AppConfig, StorageConfig
from creditshaft.errors import ChainError
from creditshaft.models import BorrowRequest, MonitorState, PaymentMethod
from creditshaft.notifications import TelegramNotifier
from creditshaft.services.engine import Engine
from creditshaft.storage import InMemoryLoanStore, JsonFileLoanStore

from conftest import (
    WALLET,
    FakeChain,
    FakeClock,
    FakeOracle,
    FakePayment,
    RecordingNotifier,
)


@pytest.fixture()
def engine(
    sample_app_config: AppConfig,
    chain: FakeChain,
    oracle: FakeOracle,
    payment: FakePayment,
    store: InMemoryLoanStore,
    notifier: RecordingNotifier,
    clock: FakeClock,
) -> Engine:
    return Engine(
        sample_app_config,
        chain=chain,
        oracle=oracle,
        payment=payment,
        store=store,
        notifiers=[notifier],
        clock=clock,
    )


class TestWiring:
    def test_injected_clients_are_used(
        self, engine: Engine, chain: FakeChain, store: InMemoryLoanStore
    ) -> None:
        assert engine.chain is chain
        assert engine.store is store

    def test_default_store_is_in_memory(self, sample_app_config: AppConfig) -> None:
        engine = Engine(sample_app_config)
        assert isinstance(engine.store, InMemoryLoanStore)
        assert not isinstance(engine.store, JsonFileLoanStore)

    def test_storage_path_selects_json_store(
        self, sample_app_config: AppConfig, tmp_path: Path
    ) -> None:
        config = replace(sample_app_config, storage=StorageConfig(path=str(tmp_path / "loans.json")))
        engine = Engine(config)
        assert isinstance(engine.store, JsonFileLoanStore)

    def test_telegram_enabled_adds_notifier(self, sample_app_config: AppConfig) -> None:
        engine = Engine(sample_app_config)
        assert len(engine._notifiers) == 1
        assert isinstance(engine._notifiers[0], TelegramNotifier)


class TestRefreshAll:
    @pytest.mark.asyncio
    async def test_refreshes_configured_wallets(
        self, engine: Engine, notifier: RecordingNotifier
    ) -> None:
        outcomes = await engine.refresh_all()

        assert [o.view.wallet for o in outcomes] == [WALLET]
        assert outcomes[0].view.state is MonitorState.ACTIVE
        assert notifier.alerts == []

    @pytest.mark.asyncio
    async def test_at_risk_alert_is_edge_triggered(
        self, engine: Engine, oracle: FakeOracle, notifier: RecordingNotifier
    ) -> None:
        oracle.price = "900000000"

        await engine.refresh_all()
        await engine.refresh_all()

        assert len(notifier.alerts) == 1
        message, subject = notifier.alerts[0]
        assert subject == "🚨 Position at risk"
        assert "AT RISK" in message
        assert "test-wallet" in message

    @pytest.mark.asyncio
    async def test_alert_rearms_after_recovery(
        self, engine: Engine, oracle: FakeOracle, notifier: RecordingNotifier
    ) -> None:
        oracle.price = "900000000"
        await engine.refresh_all()
        oracle.price = "1200000000"
        await engine.refresh_all()
        oracle.price = "900000000"
        await engine.refresh_all()

        assert len(notifier.alerts) == 2

    @pytest.mark.asyncio
    async def test_read_error_does_not_rearm(
        self,
        engine: Engine,
        chain: FakeChain,
        oracle: FakeOracle,
        notifier: RecordingNotifier,
        chain_error: ChainError,
    ) -> None:
        oracle.price = "900000000"
        await engine.refresh_all()
        chain.read_errors.append(chain_error)
        await engine.refresh_all()
        await engine.refresh_all()

        assert len(notifier.alerts) == 1

    @pytest.mark.asyncio
    async def test_failing_notifier_is_logged(
        self,
        sample_app_config: AppConfig,
        chain: FakeChain,
        oracle: FakeOracle,
        payment: FakePayment,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        broken = AsyncMock()
        broken.send_alert.side_effect = RuntimeError("telegram down")
        engine = Engine(
            sample_app_config, chain=chain, oracle=oracle, payment=payment, notifiers=[broken]
        )
        oracle.price = "900000000"

        with caplog.at_level(logging.ERROR, logger="creditshaft.services.engine"):
            await engine.refresh_all()

        assert "Notifier send_alert failed" in caplog.text


class TestFormatting:
    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [
            (0, "expired"),
            (-5, "expired"),
            (59, "0d 00h 00m 59s"),
            (3600, "0d 01h 00m 00s"),
            (90061, "1d 01h 01m 01s"),
        ],
    )
    def test_format_countdown(self, seconds: int, expected: str) -> None:
        assert Engine.format_countdown(seconds) == expected

    @pytest.mark.asyncio
    async def test_format_active_view(self, engine: Engine) -> None:
        view = await engine.status(WALLET)

        text = engine.format_view(view)

        assert text.startswith("test-wallet · ACTIVE")
        assert "Price: $12.0000" in text
        assert "P&L: $200.00" in text
        assert "Pre-auth expires in: 0d 01h 00m 00s" in text
        assert "AT RISK" not in text

    @pytest.mark.asyncio
    async def test_format_at_risk_view(self, engine: Engine, oracle: FakeOracle) -> None:
        oracle.price = "900000000"
        view = await engine.status(WALLET)
        assert "⚠️ AT RISK" in engine.format_view(view)

    @pytest.mark.asyncio
    async def test_format_without_position(self, engine: Engine, chain: FakeChain) -> None:
        chain.positions[WALLET] = None
        view = await engine.status(WALLET)

        text = engine.format_view(view)

        assert "INACTIVE" in text
        assert "No active position." in text

    def test_unlabelled_wallet_is_shortened(self, engine: Engine) -> None:
        other = "0x" + "12" * 20
        view = engine.monitor.view(other)
        assert engine.format_view(view).startswith("0x12121212...121212")


class TestCreditSummary:
    @pytest.mark.asyncio
    async def test_summarizes_wallet_loans(self, engine: Engine) -> None:
        await engine.orchestrator.open_loan(
            BorrowRequest(
                wallet_address=WALLET,
                amount_usd=Decimal("800"),
                ltv_percent=Decimal("50"),
                payment_method=PaymentMethod("cus_1", "pm_1"),
            )
        )

        summary = await engine.credit_summary(WALLET)

        assert summary.active_loans == 1
        assert summary.total_borrowed == Decimal("800")
        assert summary.total_held == Decimal("1600")


class TestLoops:
    @pytest.mark.asyncio
    async def test_refresh_loop_survives_errors(
        self, engine: Engine, caplog: pytest.LogCaptureFixture
    ) -> None:
        sleep = AsyncMock(side_effect=asyncio.CancelledError)
        with patch.object(engine, "refresh_all", AsyncMock(side_effect=RuntimeError("boom"))):
            with patch("creditshaft.services.engine.asyncio.sleep", sleep):
                with caplog.at_level(logging.ERROR, logger="creditshaft.services.engine"):
                    with pytest.raises(asyncio.CancelledError):
                        await engine._refresh_loop()

        sleep.assert_awaited_once_with(60)
        assert "Error in refresh loop: boom" in caplog.text

    @pytest.mark.asyncio
    async def test_tick_loop_advances_countdown(self, engine: Engine) -> None:
        await engine.refresh_all()
        sleep = AsyncMock(side_effect=[None, asyncio.CancelledError()])

        with patch("creditshaft.services.engine.asyncio.sleep", sleep):
            with pytest.raises(asyncio.CancelledError):
                await engine._tick_loop()

        assert engine.monitor.view(WALLET).countdown == 3599

    @pytest.mark.asyncio
    async def test_expiry_loop_sleeps_between_checks(self, engine: Engine) -> None:
        sleep = AsyncMock(side_effect=asyncio.CancelledError)

        with patch("creditshaft.services.engine.asyncio.sleep", sleep):
            with pytest.raises(asyncio.CancelledError):
                await engine._expiry_loop()

        sleep.assert_awaited_once_with(engine._config.hold.expiry_check_interval_seconds)
