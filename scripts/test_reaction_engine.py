from __future__ import annotations

import asyncio
import logging
import unittest
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from countertrade.ingestion.classifier import TradeClassifier
from countertrade.ingestion.decoder import TransactionDecoder
from countertrade.ingestion.types import WSOL_MINT, RawEvent
from countertrade.trading.engine import ReactionEngine
from countertrade.trading.executor import build_swap_base_in_instruction
from countertrade.trading.types import OrderState, PendingOrder
from stream_frames import make_pool_keys, signed_transaction, token_balance, transaction_frame

LOGGER = logging.getLogger("test.engine")
TRACKED = str(Pubkey.new_unique())
POOL_AUTHORITY = str(Pubkey.new_unique())

_sequence = 0


def _raw(data: bytes) -> RawEvent:
    global _sequence
    _sequence += 1
    return RawEvent(data=data, received_at=0.0, sequence=_sequence)


def _transfer_pair(payer: Keypair) -> Instruction:
    return Instruction(
        Pubkey.new_unique(),
        bytes([3]),
        [
            AccountMeta(Pubkey.new_unique(), is_signer=False, is_writable=True),
            AccountMeta(Pubkey.new_unique(), is_signer=False, is_writable=True),
            AccountMeta(payer.pubkey(), is_signer=True, is_writable=True),
        ],
    )


def _trade_frame(
    *,
    tracked: tuple[int, int],
    quote: tuple[int, int],
    pool_id: str | None = None,
    with_swap: bool = True,
) -> bytes:
    payer = Keypair()
    keys = make_pool_keys(base_mint=TRACKED)
    if pool_id is not None:
        keys = replace(keys, pool_id=pool_id)
    if with_swap:
        instruction = build_swap_base_in_instruction(
            keys,
            amount_in=100,
            min_amount_out=1,
            source_account=Pubkey.new_unique(),
            destination_account=Pubkey.new_unique(),
            owner=payer.pubkey(),
        )
    else:
        instruction = _transfer_pair(payer)
    tx = signed_transaction(payer, [instruction])
    meta = {
        "preTokenBalances": [
            token_balance(index=1, mint=TRACKED, owner=POOL_AUTHORITY, amount=tracked[0]),
            token_balance(index=2, mint=WSOL_MINT, owner=POOL_AUTHORITY, amount=quote[0], decimals=9),
        ],
        "postTokenBalances": [
            token_balance(index=1, mint=TRACKED, owner=POOL_AUTHORITY, amount=tracked[1]),
            token_balance(index=2, mint=WSOL_MINT, owner=POOL_AUTHORITY, amount=quote[1], decimals=9),
        ],
    }
    return transaction_frame(tx, meta=meta)


BUY_FRAME_ARGS = dict(tracked=(1_000_000, 900_000), quote=(5_000_000_000, 5_200_000_000))
SELL_FRAME_ARGS = dict(tracked=(1_000_000, 1_100_000), quote=(5_000_000_000, 4_800_000_000))


class ReactionEngineTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.controller = MagicMock()
        self.controller.run = AsyncMock(
            side_effect=lambda mint, trigger_signature=None: PendingOrder(
                order_id="sell-1",
                mint=mint,
                max_attempts=3,
                attempt=1,
                state=OrderState.CONFIRMED,
            )
        )
        self.sleep = AsyncMock()

    def _engine(self, *, delay: float = 0.0, max_inflight: int = 0, pool_id: str = "") -> ReactionEngine:
        return ReactionEngine(
            logger=LOGGER,
            decoder=TransactionDecoder(logger=LOGGER),
            classifier=TradeClassifier(
                logger=LOGGER,
                tracked_mint=TRACKED,
                minimum_trigger_raw=50_000_000,
            ),
            controller=self.controller,
            post_buy_delay_seconds=delay,
            max_inflight_orders=max_inflight,
            tracked_pool_id=pool_id,
            sleep=self.sleep,
        )

    async def test_buy_frame_schedules_a_sell_for_the_tracked_mint(self) -> None:
        engine = self._engine()

        task = engine.handle_raw(_raw(_trade_frame(**BUY_FRAME_ARGS)))

        self.assertIsNotNone(task)
        await task
        self.controller.run.assert_awaited_once()
        self.assertEqual(self.controller.run.await_args.args, (TRACKED,))
        self.assertTrue(self.controller.run.await_args.kwargs["trigger_signature"])
        self.assertEqual(engine.counters["buys"], 1)
        self.assertEqual(engine.inflight, 0)
        self.sleep.assert_not_awaited()

    async def test_undecodable_frame_does_not_block_the_next_buy(self) -> None:
        engine = self._engine()

        self.assertIsNone(engine.handle_raw(_raw(b"\x00garbage")))
        task = engine.handle_raw(_raw(_trade_frame(**BUY_FRAME_ARGS)))

        await task
        self.assertEqual(engine.counters["decode_errors"], 1)
        self.assertEqual(engine.counters["frames"], 2)
        self.controller.run.assert_awaited_once()

    async def test_sells_and_small_trades_are_ignored(self) -> None:
        engine = self._engine()

        self.assertIsNone(engine.handle_raw(_raw(_trade_frame(**SELL_FRAME_ARGS))))
        self.assertIsNone(
            engine.handle_raw(_raw(_trade_frame(tracked=(1_000_000, 999_000), quote=(5_000_000_000, 5_010_000_000))))
        )

        self.assertEqual(engine.counters["sells"], 1)
        self.assertEqual(engine.counters["buys"], 0)
        self.controller.run.assert_not_awaited()

    async def test_balance_moves_without_a_pool_swap_are_ignored(self) -> None:
        engine = self._engine()

        task = engine.handle_raw(_raw(_trade_frame(**BUY_FRAME_ARGS, with_swap=False)))

        self.assertIsNone(task)
        self.assertEqual(engine.counters["no_swap"], 1)
        self.assertEqual(engine.counters["buys"], 0)
        self.controller.run.assert_not_awaited()

    async def test_swaps_on_other_pools_are_ignored(self) -> None:
        tracked_pool = str(Pubkey.new_unique())
        engine = self._engine(pool_id=tracked_pool)

        self.assertIsNone(engine.handle_raw(_raw(_trade_frame(**BUY_FRAME_ARGS))))
        task = engine.handle_raw(_raw(_trade_frame(**BUY_FRAME_ARGS, pool_id=tracked_pool)))

        self.assertIsNotNone(task)
        await task
        self.assertEqual(engine.counters["no_swap"], 1)
        self.controller.run.assert_awaited_once()

    async def test_post_buy_delay_runs_before_the_sell(self) -> None:
        engine = self._engine(delay=1.5)

        await engine.handle_raw(_raw(_trade_frame(**BUY_FRAME_ARGS)))

        self.sleep.assert_awaited_once_with(1.5)
        self.controller.run.assert_awaited_once()

    async def test_inflight_limit_drops_extra_buys(self) -> None:
        gate = asyncio.Event()

        async def wait_for_gate(seconds: float) -> None:
            await gate.wait()

        self.sleep.side_effect = wait_for_gate
        engine = self._engine(delay=1.0, max_inflight=1)

        first = engine.handle_raw(_raw(_trade_frame(**BUY_FRAME_ARGS)))
        second = engine.handle_raw(_raw(_trade_frame(**BUY_FRAME_ARGS)))

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertEqual(engine.counters["dropped"], 1)
        gate.set()
        await first
        self.controller.run.assert_awaited_once()

    async def test_shutdown_cancels_pending_flows(self) -> None:
        never = asyncio.Event()

        async def wait_forever(seconds: float) -> None:
            await never.wait()

        self.sleep.side_effect = wait_forever
        engine = self._engine(delay=10.0)

        task = engine.handle_raw(_raw(_trade_frame(**BUY_FRAME_ARGS)))
        await asyncio.sleep(0)
        await engine.shutdown()

        self.assertTrue(task.cancelled())
        self.assertEqual(engine.inflight, 0)
        self.controller.run.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
