from __future__ import annotations

import logging
from collections.abc import Iterable

from countertrade.common import log_event

from .types import (
    JUPITER_V6_PROGRAM_ID,
    WSOL_MINT,
    DecodedTransaction,
    TokenBalance,
    TradeDirection,
    TradeEvent,
)


def _sum_by_mint(balances: Iterable[TokenBalance], *, exclude_owner: str) -> dict[str, int]:
    totals: dict[str, int] = {}
    for balance in balances:
        if balance.owner == exclude_owner:
            continue
        totals[balance.mint] = totals.get(balance.mint, 0) + balance.amount
    return totals


class TradeClassifier:
    """Derives BUY/SELL events for the tracked mint from token balance deltas.

    Deltas are taken over the accounts on the far side of the trade, i.e. every
    token account not owned by the fee payer. For a direct pool swap those are
    the pool vaults: a BUY drains tracked tokens from the pool and adds quote.
    Transactions that touch an aggregator settle through intermediate accounts,
    so their deltas read the opposite way.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        tracked_mint: str,
        quote_mint: str = WSOL_MINT,
        minimum_trigger_raw: int = 0,
        blacklist: Iterable[str] = (),
        aggregator_program_ids: Iterable[str] = (JUPITER_V6_PROGRAM_ID,),
    ) -> None:
        self._logger = logger
        self.tracked_mint = tracked_mint
        self.quote_mint = quote_mint
        self.minimum_trigger_raw = max(0, int(minimum_trigger_raw))
        self.blacklist = frozenset(address.strip() for address in blacklist if address.strip())
        self.aggregator_program_ids = frozenset(aggregator_program_ids)

    def is_routed(self, tx: DecodedTransaction) -> bool:
        return any(key in self.aggregator_program_ids for key in tx.account_keys)

    def deltas(self, tx: DecodedTransaction) -> tuple[int, int] | None:
        """(tracked delta, quote delta) over observed accounts, or None when either mint is absent."""
        pre = _sum_by_mint(tx.pre_token_balances, exclude_owner=tx.fee_payer)
        post = _sum_by_mint(tx.post_token_balances, exclude_owner=tx.fee_payer)
        seen = pre.keys() | post.keys()
        if self.tracked_mint not in seen or self.quote_mint not in seen:
            return None
        tracked_delta = post.get(self.tracked_mint, 0) - pre.get(self.tracked_mint, 0)
        quote_delta = post.get(self.quote_mint, 0) - pre.get(self.quote_mint, 0)
        return tracked_delta, quote_delta

    def classify(self, tx: DecodedTransaction) -> TradeEvent | None:
        deltas = self.deltas(tx)
        if deltas is None:
            return None
        tracked_delta, quote_delta = deltas

        routed = self.is_routed(tx)
        if routed:
            tracked_delta, quote_delta = -tracked_delta, -quote_delta

        if tracked_delta < 0 and quote_delta > 0:
            direction = TradeDirection.BUY
        elif tracked_delta > 0 and quote_delta < 0:
            direction = TradeDirection.SELL
        else:
            return None

        quote_amount = abs(quote_delta)
        if quote_amount < self.minimum_trigger_raw:
            log_event(
                self._logger,
                level="debug",
                event="trade_below_trigger",
                message="Trade is below the minimum trigger size",
                signature=tx.signature,
                quote_amount=quote_amount,
                minimum_trigger_raw=self.minimum_trigger_raw,
            )
            return None

        if tx.fee_payer in self.blacklist:
            log_event(
                self._logger,
                level="debug",
                event="trade_blacklisted",
                message="Trade counterparty is blacklisted",
                signature=tx.signature,
                counterparty=tx.fee_payer,
            )
            return None

        return TradeEvent(
            signature=tx.signature,
            mint=self.tracked_mint,
            direction=direction,
            base_amount=abs(tracked_delta),
            quote_amount=quote_amount,
            counterparty=tx.fee_payer,
            routed=routed,
        )
