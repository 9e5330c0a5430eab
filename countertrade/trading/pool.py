from __future__ import annotations

import asyncio
import logging
import struct

from solders.pubkey import Pubkey

from countertrade.common import log_event
from countertrade.ingestion.types import RAYDIUM_AMM_V4_PROGRAM_ID, WSOL_MINT

from .rpc import RpcGateway
from .types import (
    RAYDIUM_AMM_V4_AUTHORITY,
    PoolKeys,
    PoolReserves,
    PoolResolutionError,
    QuoteError,
    RpcMethodError,
    SwapQuote,
)

LIQUIDITY_STATE_V4_SIZE = 752
_BASE_DECIMAL = 32
_QUOTE_DECIMAL = 40
_SWAP_FEE_NUMERATOR = 176
_SWAP_FEE_DENOMINATOR = 184
_BASE_NEED_TAKE_PNL = 192
_QUOTE_NEED_TAKE_PNL = 200
_BASE_VAULT = 336
_QUOTE_VAULT = 368
_BASE_MINT = 400
_QUOTE_MINT = 432
_LP_MINT = 464
_OPEN_ORDERS = 496
_MARKET_ID = 528
_MARKET_PROGRAM_ID = 560
_TARGET_ORDERS = 592

MARKET_STATE_V3_MIN_SIZE = 349
_MARKET_VAULT_SIGNER_NONCE = 45
_MARKET_BASE_VAULT = 117
_MARKET_QUOTE_VAULT = 165
_MARKET_EVENT_QUEUE = 253
_MARKET_BIDS = 285
_MARKET_ASKS = 317

TOKEN_ACCOUNT_AMOUNT_OFFSET = 64
DEFAULT_FEE_NUMERATOR = 25
DEFAULT_FEE_DENOMINATOR = 10_000

_U64 = struct.Struct("<Q")


def _read_u64(data: bytes, offset: int) -> int:
    return _U64.unpack_from(data, offset)[0]


def _read_pubkey(data: bytes, offset: int) -> str:
    return str(Pubkey.from_bytes(data[offset : offset + 32]))


def read_token_account_amount(data: bytes) -> int:
    if len(data) < TOKEN_ACCOUNT_AMOUNT_OFFSET + 8:
        raise QuoteError(f"Token account data is too short: {len(data)} bytes")
    return _read_u64(data, TOKEN_ACCOUNT_AMOUNT_OFFSET)


def compute_amount_out(
    *,
    amount_in: int,
    reserve_in: int,
    reserve_out: int,
    fee_numerator: int = DEFAULT_FEE_NUMERATOR,
    fee_denominator: int = DEFAULT_FEE_DENOMINATOR,
) -> int:
    """Constant-product output after the pool swap fee, floored."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0
    if fee_denominator <= 0 or not 0 <= fee_numerator < fee_denominator:
        fee_numerator, fee_denominator = DEFAULT_FEE_NUMERATOR, DEFAULT_FEE_DENOMINATOR
    amount_in_after_fee = amount_in * (fee_denominator - fee_numerator) // fee_denominator
    return reserve_out * amount_in_after_fee // (reserve_in + amount_in_after_fee)


def compute_min_amount_out(amount_out: int, slippage_pct: int) -> int:
    slippage = max(0, min(100, int(slippage_pct)))
    return max(0, amount_out) * (100 - slippage) // 100


def parse_pool_state(pool_id: str, data: bytes) -> dict[str, object]:
    if len(data) < LIQUIDITY_STATE_V4_SIZE:
        raise PoolResolutionError(f"Pool {pool_id} state is {len(data)} bytes; expected {LIQUIDITY_STATE_V4_SIZE}")
    return {
        "base_decimals": _read_u64(data, _BASE_DECIMAL),
        "quote_decimals": _read_u64(data, _QUOTE_DECIMAL),
        "swap_fee_numerator": _read_u64(data, _SWAP_FEE_NUMERATOR),
        "swap_fee_denominator": _read_u64(data, _SWAP_FEE_DENOMINATOR),
        "base_need_take_pnl": _read_u64(data, _BASE_NEED_TAKE_PNL),
        "quote_need_take_pnl": _read_u64(data, _QUOTE_NEED_TAKE_PNL),
        "base_vault": _read_pubkey(data, _BASE_VAULT),
        "quote_vault": _read_pubkey(data, _QUOTE_VAULT),
        "base_mint": _read_pubkey(data, _BASE_MINT),
        "quote_mint": _read_pubkey(data, _QUOTE_MINT),
        "lp_mint": _read_pubkey(data, _LP_MINT),
        "open_orders": _read_pubkey(data, _OPEN_ORDERS),
        "market_id": _read_pubkey(data, _MARKET_ID),
        "market_program_id": _read_pubkey(data, _MARKET_PROGRAM_ID),
        "target_orders": _read_pubkey(data, _TARGET_ORDERS),
    }


def parse_market_state(market_id: str, market_program_id: str, data: bytes) -> dict[str, str]:
    if len(data) < MARKET_STATE_V3_MIN_SIZE:
        raise PoolResolutionError(f"Market {market_id} state is {len(data)} bytes; too short")
    nonce = _read_u64(data, _MARKET_VAULT_SIGNER_NONCE)
    try:
        authority = Pubkey.create_program_address(
            [bytes(Pubkey.from_string(market_id)), nonce.to_bytes(8, "little")],
            Pubkey.from_string(market_program_id),
        )
    except Exception as error:
        raise PoolResolutionError(f"Could not derive vault signer for market {market_id}: {error}") from error
    return {
        "market_authority": str(authority),
        "market_base_vault": _read_pubkey(data, _MARKET_BASE_VAULT),
        "market_quote_vault": _read_pubkey(data, _MARKET_QUOTE_VAULT),
        "market_event_queue": _read_pubkey(data, _MARKET_EVENT_QUEUE),
        "market_bids": _read_pubkey(data, _MARKET_BIDS),
        "market_asks": _read_pubkey(data, _MARKET_ASKS),
    }


class PoolKeysRegistry:
    """Resolves pool keys once per mint and quotes swaps against live vault balances."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: RpcGateway,
        quote_mint: str = WSOL_MINT,
        program_id: str = RAYDIUM_AMM_V4_PROGRAM_ID,
        pool_overrides: dict[str, str] | None = None,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._quote_mint = quote_mint
        self._program_id = program_id
        self._pool_overrides = dict(pool_overrides or {})
        self._cache: dict[str, PoolKeys] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def cached(self, mint: str) -> PoolKeys | None:
        return self._cache.get(mint)

    async def resolve(self, mint: str) -> PoolKeys:
        cached = self._cache.get(mint)
        if cached is not None:
            return cached

        lock = self._locks.setdefault(mint, asyncio.Lock())
        async with lock:
            cached = self._cache.get(mint)
            if cached is not None:
                return cached
            try:
                keys = await self._load(mint)
            except RpcMethodError as error:
                raise PoolResolutionError(f"Pool lookup failed for {mint}: {error}") from error
            self._cache[mint] = keys

        log_event(
            self._logger,
            level="info",
            event="pool_keys_resolved",
            message="Resolved pool keys for mint",
            mint=mint,
            pool_id=keys.pool_id,
            base_mint=keys.base_mint,
            quote_mint=keys.quote_mint,
            market_id=keys.market_id,
        )
        return keys

    async def _load(self, mint: str) -> PoolKeys:
        override = self._pool_overrides.get(mint)
        if override:
            data = await self._rpc.get_account_data(override)
            if data is None:
                raise PoolResolutionError(f"Pool account {override} was not found")
            return await self._build_keys(override, data, mint=mint)

        for base_mint, quote_mint in ((mint, self._quote_mint), (self._quote_mint, mint)):
            candidates = await self._rpc.get_program_accounts(
                self._program_id,
                data_size=LIQUIDITY_STATE_V4_SIZE,
                memcmp=[(_BASE_MINT, base_mint), (_QUOTE_MINT, quote_mint)],
            )
            if candidates:
                candidates.sort(key=lambda item: item[0])
                if len(candidates) > 1:
                    log_event(
                        self._logger,
                        level="warning",
                        event="pool_multiple_candidates",
                        message="Multiple pools match the mint pair; using the first by address",
                        mint=mint,
                        candidate_count=len(candidates),
                        selected_pool_id=candidates[0][0],
                    )
                pool_id, data = candidates[0]
                return await self._build_keys(pool_id, data, mint=mint)

        raise PoolResolutionError(f"No pool found for {mint}/{self._quote_mint}")

    async def _build_keys(self, pool_id: str, data: bytes, *, mint: str) -> PoolKeys:
        state = parse_pool_state(pool_id, data)
        if mint not in (state["base_mint"], state["quote_mint"]):
            raise PoolResolutionError(f"Pool {pool_id} does not trade {mint}")

        market_id = str(state["market_id"])
        market_program_id = str(state["market_program_id"])
        market_data = await self._rpc.get_account_data(market_id)
        if market_data is None:
            raise PoolResolutionError(f"Market account {market_id} was not found")
        market = parse_market_state(market_id, market_program_id, market_data)

        return PoolKeys(
            pool_id=pool_id,
            program_id=self._program_id,
            authority=RAYDIUM_AMM_V4_AUTHORITY,
            open_orders=str(state["open_orders"]),
            target_orders=str(state["target_orders"]),
            base_vault=str(state["base_vault"]),
            quote_vault=str(state["quote_vault"]),
            base_mint=str(state["base_mint"]),
            quote_mint=str(state["quote_mint"]),
            base_decimals=int(state["base_decimals"]),
            quote_decimals=int(state["quote_decimals"]),
            lp_mint=str(state["lp_mint"]),
            market_program_id=market_program_id,
            market_id=market_id,
            market_authority=market["market_authority"],
            market_bids=market["market_bids"],
            market_asks=market["market_asks"],
            market_event_queue=market["market_event_queue"],
            market_base_vault=market["market_base_vault"],
            market_quote_vault=market["market_quote_vault"],
            swap_fee_numerator=int(state["swap_fee_numerator"]),
            swap_fee_denominator=int(state["swap_fee_denominator"]),
        )

    async def fetch_reserves(self, keys: PoolKeys) -> PoolReserves:
        try:
            pool_data, base_vault_data, quote_vault_data = await self._rpc.get_multiple_accounts(
                [keys.pool_id, keys.base_vault, keys.quote_vault]
            )
        except RpcMethodError as error:
            raise QuoteError(f"Reserve fetch failed for pool {keys.pool_id}: {error}") from error
        if pool_data is None or base_vault_data is None or quote_vault_data is None:
            raise QuoteError(f"Pool {keys.pool_id} or one of its vaults is missing")

        try:
            state = parse_pool_state(keys.pool_id, pool_data)
        except PoolResolutionError as error:
            raise QuoteError(str(error)) from error

        base_reserve = read_token_account_amount(base_vault_data) - int(state["base_need_take_pnl"])
        quote_reserve = read_token_account_amount(quote_vault_data) - int(state["quote_need_take_pnl"])
        return PoolReserves(base_reserve=max(0, base_reserve), quote_reserve=max(0, quote_reserve))

    async def quote(
        self,
        keys: PoolKeys,
        *,
        input_mint: str,
        amount_in: int,
        slippage_pct: int,
    ) -> SwapQuote:
        if input_mint == keys.base_mint:
            output_mint = keys.quote_mint
        elif input_mint == keys.quote_mint:
            output_mint = keys.base_mint
        else:
            raise QuoteError(f"Pool {keys.pool_id} does not trade {input_mint}")

        reserves = await self.fetch_reserves(keys)
        if input_mint == keys.base_mint:
            reserve_in, reserve_out = reserves.base_reserve, reserves.quote_reserve
        else:
            reserve_in, reserve_out = reserves.quote_reserve, reserves.base_reserve
        if reserve_in <= 0 or reserve_out <= 0:
            raise QuoteError(f"Pool {keys.pool_id} has empty reserves")

        amount_out = compute_amount_out(
            amount_in=amount_in,
            reserve_in=reserve_in,
            reserve_out=reserve_out,
            fee_numerator=keys.swap_fee_numerator,
            fee_denominator=keys.swap_fee_denominator,
        )
        return SwapQuote(
            input_mint=input_mint,
            output_mint=output_mint,
            amount_in=amount_in,
            amount_out=amount_out,
            min_amount_out=compute_min_amount_out(amount_out, slippage_pct),
            slippage_pct=int(slippage_pct),
        )
