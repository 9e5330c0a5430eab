from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from countertrade.common import Notifier, guarded_call, log_event

from .executor import SwapExecutor
from .submitters import TransactionSubmitter
from .types import (
    BuiltSwap,
    OrderState,
    PendingOrder,
    QuoteError,
    SubmissionResult,
    ZeroBalanceError,
    make_order_id,
)


class ConcurrencyGate:
    """Per-mint in-flight counter.

    ``try_acquire`` checks and increments without awaiting, so two flows on the
    same event loop can never both pass for one mint.
    """

    def __init__(self, *, enabled: bool, limit_per_mint: int = 1) -> None:
        self.enabled = enabled
        self.limit_per_mint = max(1, int(limit_per_mint))
        self._in_flight: dict[str, int] = {}

    def in_flight(self, mint: str) -> int:
        return self._in_flight.get(mint, 0)

    def try_acquire(self, mint: str) -> bool:
        current = self._in_flight.get(mint, 0)
        if self.enabled and current >= self.limit_per_mint:
            return False
        self._in_flight[mint] = current + 1
        return True

    def release(self, mint: str) -> None:
        current = self._in_flight.get(mint, 0) - 1
        if current > 0:
            self._in_flight[mint] = current
        else:
            self._in_flight.pop(mint, None)


class RetryController:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        executor: SwapExecutor,
        submitter: TransactionSubmitter,
        gate: ConcurrencyGate,
        notifier: Notifier,
        max_attempts: int,
        retry_backoff_seconds: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._executor = executor
        self._submitter = submitter
        self._gate = gate
        self._notifier = notifier
        self.max_attempts = max(1, int(max_attempts))
        self.retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self._sleep = sleep

    async def run(self, mint: str, *, trigger_signature: str | None = None) -> PendingOrder | None:
        """Sell a tier of the current holding; None when the mint already has an order in flight."""
        if not self._gate.try_acquire(mint):
            log_event(
                self._logger,
                level="info",
                event="sell_skipped_busy",
                message="Mint already has a sell in flight; skipping",
                mint=mint,
                trigger_signature=trigger_signature,
            )
            return None

        try:
            order = PendingOrder(
                order_id=make_order_id(mint, trigger_signature),
                mint=mint,
                max_attempts=self.max_attempts,
            )
            return await self._drive(order)
        finally:
            self._gate.release(mint)

    async def _drive(self, order: PendingOrder) -> PendingOrder:
        while order.attempt < order.max_attempts:
            delay = self.retry_backoff_seconds
            log_event(
                self._logger,
                level="info",
                event="sell_attempt",
                message="Sending sell transaction",
                order_id=order.order_id,
                mint=order.mint,
                attempt=order.attempt + 1,
                max_attempts=order.max_attempts,
            )
            try:
                built = await self._executor.build_sell(order.mint)
            except ZeroBalanceError as error:
                order.state = OrderState.ABANDONED
                order.last_error = str(error)
                await self._abandon(order, reason="zero_balance")
                return order
            except QuoteError as error:
                order.last_error = str(error)
                log_event(
                    self._logger,
                    level="warning",
                    event="sell_quote_failed",
                    message="Could not quote sell; will retry",
                    order_id=order.order_id,
                    mint=order.mint,
                    attempt=order.attempt + 1,
                    error=str(error),
                )
            except asyncio.CancelledError:
                raise
            except Exception as error:
                order.last_error = str(error) or type(error).__name__
                log_event(
                    self._logger,
                    level="exception",
                    event="sell_build_failed",
                    message="Sell build failed unexpectedly; will retry",
                    order_id=order.order_id,
                    mint=order.mint,
                    attempt=order.attempt + 1,
                    error=order.last_error,
                )
            else:
                order.target_amount = built.quote.amount_in
                result = await self._submit(built)
                order.last_signature = result.signature
                if result.confirmed:
                    order.attempt += 1
                    order.state = OrderState.CONFIRMED
                    log_event(
                        self._logger,
                        level="info",
                        event="sell_confirmed",
                        message="Confirmed sell tx",
                        order_id=order.order_id,
                        mint=order.mint,
                        signature=result.signature,
                        attempt=order.attempt,
                        amount_in=built.quote.amount_in,
                        min_amount_out=built.quote.min_amount_out,
                        sell_percentage=built.sell_percentage,
                    )
                    return order
                order.last_error = result.error
                if result.retry_after_seconds:
                    delay = max(delay, result.retry_after_seconds)
                log_event(
                    self._logger,
                    level="warning",
                    event="sell_unconfirmed",
                    message="Sell transaction was not confirmed; will retry",
                    order_id=order.order_id,
                    mint=order.mint,
                    signature=result.signature,
                    attempt=order.attempt + 1,
                    error=result.error,
                    retry_after_seconds=result.retry_after_seconds,
                )

            order.attempt += 1
            if order.attempt < order.max_attempts and delay > 0:
                await self._sleep(delay)

        order.state = OrderState.ABANDONED
        await self._abandon(order, reason="attempts_exhausted")
        return order

    async def _submit(self, built: BuiltSwap) -> SubmissionResult:
        try:
            return await self._submitter.submit(built)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            return SubmissionResult(confirmed=False, signature=built.signature, error=str(error))

    async def _abandon(self, order: PendingOrder, *, reason: str) -> None:
        log_event(
            self._logger,
            level="warning",
            event="sell_abandoned",
            message="Sell order abandoned",
            reason=reason,
            **order.to_dict(),
        )
        await guarded_call(
            lambda: self._notifier.notify(
                event="sell_abandoned",
                message=f"Sell for {order.mint} abandoned ({reason})",
                details=order.to_dict(),
            ),
            logger=self._logger,
            event="notifier_failed",
            message="Operator notification failed",
            order_id=order.order_id,
        )
