"""Position lifecycle monitor — one authoritative position view per wallet.

State machine per wallet::

    IDLE -> LOADING -> ACTIVE | INACTIVE
    ACTIVE -> CLOSING -> INACTIVE (close confirmed) | ACTIVE (close failed)

Every refresh is numbered; a response is applied only if no response to a
newer request has been applied already. Views are immutable and replaced
wholesale, so readers never observe a position without its risk snapshot.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable

from ..errors import (
    ChainError,
    CloseNotConfirmed,
    EngineError,
    InvalidTransition,
    MalformedQuantity,
)
from ..interfaces.chain import ChainClient
from ..interfaces.price_oracle import PriceOracle
from ..models import (
    CloseResult,
    MonitorState,
    PositionView,
    RawPosition,
    RefreshOutcome,
)
from ..risk import compute_risk, decode, decode_price
from ..risk.calculator import display_seconds

logger = logging.getLogger(__name__)


@dataclass
class _Session:
    view: PositionView
    issued: int = 0
    applied: int = 0


class PositionMonitor:
    """Keeps each bound wallet's position and risk metrics current."""

    def __init__(
        self,
        chain: ChainClient,
        oracle: PriceOracle,
        asset: str = "LINK",
        close_confirm_attempts: int = 3,
        close_confirm_delay: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._chain = chain
        self._oracle = oracle
        self._asset = asset
        self._confirm_attempts = max(1, close_confirm_attempts)
        self._confirm_delay = close_confirm_delay
        self._clock = clock
        self._sessions: dict[str, _Session] = {}

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def view(self, wallet: str) -> PositionView:
        session = self._sessions.get(wallet)
        return session.view if session else PositionView(wallet=wallet)

    def wallets(self) -> list[str]:
        return list(self._sessions)

    def disconnect(self, wallet: str) -> None:
        """Unbind a wallet; results of its in-flight calls are discarded."""
        if self._sessions.pop(wallet, None) is not None:
            logger.info("Wallet %s disconnected", wallet)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _bound(self, wallet: str, session: _Session) -> bool:
        return self._sessions.get(wallet) is session

    def _accepts(
        self, wallet: str, session: _Session, seq: int, confirming: bool
    ) -> bool:
        """Whether the response to request ``seq`` may still be applied."""
        if not self._bound(wallet, session):
            logger.debug("Discarding refresh #%d for disconnected %s", seq, wallet)
            return False
        if seq <= session.applied:
            logger.debug(
                "Discarding stale refresh #%d for %s (applied #%d)",
                seq, wallet, session.applied,
            )
            return False
        if session.view.state is MonitorState.CLOSING and not confirming:
            logger.debug("Discarding refresh #%d for %s while closing", seq, wallet)
            return False
        return True

    def _commit(self, session: _Session, seq: int, view: PositionView) -> None:
        session.applied = seq
        session.view = view

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self, wallet: str) -> RefreshOutcome:
        """Fetch position and price, re-derive risk, update the view.

        Read failures never blank a known position: the previous state is kept
        and the error is returned (and recorded on the view).
        """
        session = self._sessions.get(wallet)
        if session is None:
            session = self._sessions[wallet] = _Session(PositionView(wallet=wallet))
        if session.view.state is MonitorState.CLOSING:
            logger.debug("Skipping refresh for %s: close in progress", wallet)
            return RefreshOutcome(session.view)
        return await self._refresh(wallet, session, confirming=False)

    async def _refresh(
        self, wallet: str, session: _Session, confirming: bool
    ) -> RefreshOutcome:
        session.issued += 1
        seq = session.issued
        if session.view.state is MonitorState.IDLE:
            session.view = replace(session.view, state=MonitorState.LOADING)

        raw_result, price_result = await asyncio.gather(
            self._chain.get_position(wallet),
            self._oracle.get_price(self._asset),
            return_exceptions=True,
        )
        for result in (raw_result, price_result):
            if isinstance(result, BaseException) and not isinstance(result, EngineError):
                if session.view.state is MonitorState.LOADING and self._bound(wallet, session):
                    session.view = replace(session.view, state=MonitorState.IDLE)
                raise result

        if isinstance(raw_result, EngineError):
            return self._fail(wallet, session, seq, raw_result, confirming)

        raw: RawPosition | None = raw_result
        if raw is None or not raw.is_active:
            # Absence is conclusive on its own; the price is not needed.
            if not self._accepts(wallet, session, seq, confirming):
                return RefreshOutcome(self.view(wallet))
            if session.view.state is not MonitorState.INACTIVE:
                logger.info("%s: %s -> inactive", wallet, session.view.state.value)
            self._commit(
                session,
                seq,
                PositionView(
                    wallet=wallet,
                    state=MonitorState.INACTIVE,
                    sequence=seq,
                    updated_at=self._now(),
                ),
            )
            return RefreshOutcome(session.view)

        if isinstance(price_result, EngineError):
            return self._fail(wallet, session, seq, price_result, confirming)

        try:
            decoded = decode(raw)
            price = decode_price(price_result)
        except MalformedQuantity as e:
            return self._fail(wallet, session, seq, e, confirming)

        if not self._accepts(wallet, session, seq, confirming):
            return RefreshOutcome(self.view(wallet))

        risk = compute_risk(decoded, price, int(self._clock()))
        # A confirming refresh that still sees the position keeps CLOSING;
        # the close path decides what happens next.
        state = MonitorState.CLOSING if confirming else MonitorState.ACTIVE
        if session.view.state is not state:
            logger.info("%s: %s -> %s", wallet, session.view.state.value, state.value)
        self._commit(
            session,
            seq,
            PositionView(
                wallet=wallet,
                state=state,
                position=decoded,
                risk=risk,
                countdown=display_seconds(risk),
                sequence=seq,
                updated_at=self._now(),
            ),
        )
        return RefreshOutcome(session.view)

    def _fail(
        self,
        wallet: str,
        session: _Session,
        seq: int,
        error: EngineError,
        confirming: bool,
    ) -> RefreshOutcome:
        if not self._accepts(wallet, session, seq, confirming):
            return RefreshOutcome(self.view(wallet))

        state = session.view.state
        if state is MonitorState.INACTIVE:
            # Reads racing a just-closed position are expected.
            logger.debug("Suppressed refresh error for %s with no position: %s", wallet, error)
            session.applied = seq
            return RefreshOutcome(session.view)

        logger.warning("Refresh #%d for %s failed: %s", seq, wallet, error)
        if state is MonitorState.LOADING:
            view = PositionView(wallet=wallet, state=MonitorState.IDLE, error=error)
            if seq < session.issued:
                # A newer request may still load the position.
                view = replace(view, state=MonitorState.LOADING)
        else:
            view = replace(session.view, error=error)
        self._commit(session, seq, view)
        return RefreshOutcome(view, error)

    # ------------------------------------------------------------------
    # Countdown
    # ------------------------------------------------------------------

    def tick(self, seconds: int = 1) -> None:
        """Advance every live countdown locally, clamping at 0.

        The next refresh replaces the ticked value with the one derived from
        the on-chain expiry.
        """
        for session in self._sessions.values():
            view = session.view
            if view.risk is None or view.countdown <= 0:
                continue
            session.view = replace(view, countdown=max(0, view.countdown - seconds))

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def request_close(self, wallet: str) -> CloseResult | None:
        """Close the wallet's position and confirm it on-chain.

        Returns None when the wallet disconnected before the close finished.
        Any failure, cancellation included, puts the position back to ACTIVE
        before it propagates.

        Raises:
            InvalidTransition: no active position, or a close is in flight.
            ChainError: the close transaction failed; the position stays ACTIVE.
            CloseNotConfirmed: the chain still reports the position after the
                confirmation attempts; the position is back to ACTIVE.
        """
        session = self._sessions.get(wallet)
        state = session.view.state if session else MonitorState.IDLE
        if session is None or state is not MonitorState.ACTIVE:
            raise InvalidTransition(wallet, state.value, "close position")

        before = session.view
        session.view = replace(before, state=MonitorState.CLOSING, error=None)
        logger.info("%s: active -> closing", wallet)

        try:
            return await self._close(wallet, session, before)
        except BaseException as e:
            if self._bound(wallet, session) and session.view.state is MonitorState.CLOSING:
                error = e if isinstance(e, Exception) else None
                session.view = replace(session.view, state=MonitorState.ACTIVE, error=error)
                logger.warning("%s: close failed, back to active: %r", wallet, e)
            raise

    async def _close(
        self, wallet: str, session: _Session, before: PositionView
    ) -> CloseResult | None:
        try:
            receipt = await self._chain.close_position(wallet)
        except ChainError as e:
            if not self._bound(wallet, session):
                logger.info("Close for %s abandoned after disconnect: %s", wallet, e)
                return None
            raise

        for attempt in range(1, self._confirm_attempts + 1):
            if not self._bound(wallet, session):
                logger.info("Close for %s abandoned after disconnect", wallet)
                return None
            await self._refresh(wallet, session, confirming=True)
            if session.view.state is MonitorState.INACTIVE:
                logger.info("%s: close confirmed in %s", wallet, receipt.tx_hash)
                return CloseResult(receipt=receipt, view=session.view, last_risk=before.risk)
            if attempt < self._confirm_attempts:
                await asyncio.sleep(self._confirm_delay)

        if not self._bound(wallet, session):
            return None
        raise CloseNotConfirmed(wallet, receipt.tx_hash)
