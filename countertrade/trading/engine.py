from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from countertrade.common import log_event
from countertrade.ingestion.classifier import TradeClassifier
from countertrade.ingestion.decoder import TransactionDecoder
from countertrade.ingestion.types import DecodeError, RawEvent, TradeDirection, TradeEvent

from .retry import RetryController


class ReactionEngine:
    """Glue from raw stream frames to sell flows: one independent task per qualifying BUY."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        decoder: TransactionDecoder,
        classifier: TradeClassifier,
        controller: RetryController,
        post_buy_delay_seconds: float = 0.0,
        max_inflight_orders: int = 0,
        tracked_pool_id: str = "",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._logger = logger
        self._decoder = decoder
        self._classifier = classifier
        self._controller = controller
        self.post_buy_delay_seconds = max(0.0, float(post_buy_delay_seconds))
        self.max_inflight_orders = max(0, int(max_inflight_orders))
        self.tracked_pool_id = tracked_pool_id
        self._sleep = sleep
        self._flows: set[asyncio.Task[None]] = set()
        self.counters: dict[str, int] = {
            "frames": 0,
            "decode_errors": 0,
            "no_swap": 0,
            "buys": 0,
            "sells": 0,
            "dropped": 0,
        }

    @property
    def inflight(self) -> int:
        return len(self._flows)

    def handle_raw(self, raw: RawEvent) -> asyncio.Task[None] | None:
        self.counters["frames"] += 1
        try:
            tx = self._decoder.decode(raw.data)
        except DecodeError as error:
            self.counters["decode_errors"] += 1
            log_event(
                self._logger,
                level="warning",
                event="stream_frame_undecodable",
                message="Skipping undecodable stream frame",
                sequence=raw.sequence,
                error=str(error),
            )
            return None
        if tx is None:
            return None

        swaps = self._decoder.swap_instructions(tx)
        if self.tracked_pool_id:
            swaps = [swap for swap in swaps if swap.pool_id == self.tracked_pool_id]
        if not swaps:
            # balance moves without a swap on the pool are transfers or liquidity changes
            self.counters["no_swap"] += 1
            return None

        event = self._classifier.classify(tx)
        if event is None:
            return None

        if event.direction is TradeDirection.SELL:
            self.counters["sells"] += 1
            log_event(
                self._logger,
                level="debug",
                event="trade_sell_observed",
                message="Observed sell of tracked mint; no reaction",
                signature=event.signature,
                base_amount=event.base_amount,
                quote_amount=event.quote_amount,
            )
            return None

        self.counters["buys"] += 1
        return self.schedule(event)

    def schedule(self, event: TradeEvent) -> asyncio.Task[None] | None:
        if self.max_inflight_orders and len(self._flows) >= self.max_inflight_orders:
            self.counters["dropped"] += 1
            log_event(
                self._logger,
                level="warning",
                event="trade_dropped_inflight_limit",
                message="In-flight order limit reached; dropping buy event",
                signature=event.signature,
                inflight=len(self._flows),
                max_inflight_orders=self.max_inflight_orders,
            )
            return None

        log_event(
            self._logger,
            level="info",
            event="trade_buy_detected",
            message="Counterparty buy detected; scheduling sell",
            signature=event.signature,
            counterparty=event.counterparty,
            base_amount=event.base_amount,
            quote_amount=event.quote_amount,
            routed=event.routed,
            post_buy_delay_seconds=self.post_buy_delay_seconds,
        )
        task = asyncio.create_task(self._flow(event), name=f"sell-flow-{event.signature[:12]}")
        self._flows.add(task)
        task.add_done_callback(self._on_flow_done)
        return task

    async def _flow(self, event: TradeEvent) -> None:
        if self.post_buy_delay_seconds > 0:
            await self._sleep(self.post_buy_delay_seconds)
        order = await self._controller.run(event.mint, trigger_signature=event.signature)
        if order is not None:
            log_event(
                self._logger,
                level="info",
                event="sell_flow_finished",
                message="Sell flow finished",
                trigger_signature=event.signature,
                order_id=order.order_id,
                state=order.state.value,
                attempt=order.attempt,
                signature=order.last_signature,
            )

    def _on_flow_done(self, task: asyncio.Task[None]) -> None:
        self._flows.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_event(
                self._logger,
                level="error",
                event="sell_flow_failed",
                message="Sell flow raised",
                error=str(error) or type(error).__name__,
            )

    async def shutdown(self) -> None:
        flows = list(self._flows)
        for task in flows:
            task.cancel()
        if flows:
            await asyncio.gather(*flows, return_exceptions=True)
        self._flows.clear()
