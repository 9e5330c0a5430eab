from __future__ import annotations

import asyncio
import logging
import random
import struct
from typing import Sequence

import aiohttp
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import (
    CloseAccountParams,
    close_account,
    create_idempotent_associated_token_account,
    get_associated_token_address,
)

from countertrade.common import log_event
from countertrade.ingestion.types import WSOL_MINT

from .pool import PoolKeysRegistry
from .rpc import RpcGateway
from .types import (
    BuiltSwap,
    PoolKeys,
    QuoteError,
    RpcMethodError,
    SwapQuote,
    WalletHolding,
    ZeroBalanceError,
)

SWAP_BASE_IN_DISCRIMINATOR = 9
_SWAP_BASE_IN_LAYOUT = struct.Struct("<BQQ")
_TRANSIENT_ERRORS = (RpcMethodError, aiohttp.ClientError, asyncio.TimeoutError)


def build_swap_base_in_instruction(
    keys: PoolKeys,
    *,
    amount_in: int,
    min_amount_out: int,
    source_account: Pubkey,
    destination_account: Pubkey,
    owner: Pubkey,
) -> Instruction:
    data = _SWAP_BASE_IN_LAYOUT.pack(SWAP_BASE_IN_DISCRIMINATOR, amount_in, min_amount_out)

    def meta(address: str, *, writable: bool) -> AccountMeta:
        return AccountMeta(Pubkey.from_string(address), is_signer=False, is_writable=writable)

    accounts = [
        AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        meta(keys.pool_id, writable=True),
        meta(keys.authority, writable=False),
        meta(keys.open_orders, writable=True),
        meta(keys.target_orders, writable=True),
        meta(keys.base_vault, writable=True),
        meta(keys.quote_vault, writable=True),
        meta(keys.market_program_id, writable=False),
        meta(keys.market_id, writable=True),
        meta(keys.market_bids, writable=True),
        meta(keys.market_asks, writable=True),
        meta(keys.market_event_queue, writable=True),
        meta(keys.market_base_vault, writable=True),
        meta(keys.market_quote_vault, writable=True),
        meta(keys.market_authority, writable=False),
        AccountMeta(source_account, is_signer=False, is_writable=True),
        AccountMeta(destination_account, is_signer=False, is_writable=True),
        AccountMeta(owner, is_signer=True, is_writable=False),
    ]
    return Instruction(Pubkey.from_string(keys.program_id), data, accounts)


class SwapExecutor:
    """Builds and signs single-pool swap transactions for the configured wallet."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: RpcGateway,
        pools: PoolKeysRegistry,
        signer: Keypair,
        quote_mint: str = WSOL_MINT,
        sell_percentage_tiers: Sequence[int] = (50,),
        sell_slippage_pct: int = 20,
        buy_slippage_pct: int = 20,
        compute_unit_limit: int = 101_337,
        compute_unit_price: int = 421_197,
        carries_priority_fee: bool = False,
        rng: random.Random | None = None,
    ) -> None:
        tiers = tuple(int(tier) for tier in sell_percentage_tiers)
        if not tiers:
            raise ValueError("sell_percentage_tiers must not be empty.")
        self._logger = logger
        self._rpc = rpc
        self._pools = pools
        self._signer = signer
        self._quote_mint = quote_mint
        self.sell_percentage_tiers = tiers
        self.sell_slippage_pct = int(sell_slippage_pct)
        self.buy_slippage_pct = int(buy_slippage_pct)
        self._compute_unit_limit = int(compute_unit_limit)
        self._compute_unit_price = int(compute_unit_price)
        self._carries_priority_fee = carries_priority_fee
        self._rng = rng or random.Random()

    @property
    def wallet(self) -> Pubkey:
        return self._signer.pubkey()

    def token_account(self, mint: str) -> Pubkey:
        return get_associated_token_address(self.wallet, Pubkey.from_string(mint))

    def choose_sell_percentage(self) -> int:
        return self._rng.choice(self.sell_percentage_tiers)

    async def read_holding(self, mint: str) -> WalletHolding:
        token_account = self.token_account(mint)
        try:
            balance = await self._rpc.get_token_account_balance(str(token_account))
        except _TRANSIENT_ERRORS as error:
            raise QuoteError(f"Balance read failed for {mint}: {error}") from error

        if balance is None or balance[0] <= 0:
            raise ZeroBalanceError(f"Wallet holds no {mint}", mint=mint)
        amount, decimals = balance
        return WalletHolding(mint=mint, token_account=str(token_account), balance=amount, decimals=decimals)

    async def build_sell(self, mint: str) -> BuiltSwap:
        holding = await self.read_holding(mint)
        percentage = self.choose_sell_percentage()
        amount_in = holding.balance * percentage // 100
        if amount_in <= 0:
            raise ZeroBalanceError(
                f"Sell amount rounds to zero at {percentage}% of {holding.balance}",
                mint=mint,
                balance=holding.balance,
            )

        keys = await self._resolve_pool(mint)
        built = await self.build_swap(
            keys=keys,
            direction="sell",
            input_mint=mint,
            amount_in=amount_in,
            slippage_pct=self.sell_slippage_pct,
            source_account=Pubkey.from_string(holding.token_account),
            destination_account=self.token_account(self._quote_mint),
            close_source=amount_in == holding.balance,
            sell_percentage=percentage,
            holding=holding,
        )
        return built

    async def build_buy(self, mint: str, quote_amount: int) -> BuiltSwap:
        if quote_amount <= 0:
            raise ValueError("quote_amount must be positive.")
        keys = await self._resolve_pool(mint)
        return await self.build_swap(
            keys=keys,
            direction="buy",
            input_mint=self._quote_mint,
            amount_in=quote_amount,
            slippage_pct=self.buy_slippage_pct,
            source_account=self.token_account(self._quote_mint),
            destination_account=self.token_account(mint),
            create_destination_mint=mint,
        )

    async def build_swap(
        self,
        *,
        keys: PoolKeys,
        direction: str,
        input_mint: str,
        amount_in: int,
        slippage_pct: int,
        source_account: Pubkey,
        destination_account: Pubkey,
        create_destination_mint: str | None = None,
        close_source: bool = False,
        sell_percentage: int | None = None,
        holding: WalletHolding | None = None,
    ) -> BuiltSwap:
        try:
            quote = await self._pools.quote(
                keys,
                input_mint=input_mint,
                amount_in=amount_in,
                slippage_pct=slippage_pct,
            )
            blockhash, last_valid_block_height = await self._rpc.get_latest_blockhash()
        except _TRANSIENT_ERRORS as error:
            raise QuoteError(f"Quote inputs unavailable for pool {keys.pool_id}: {error}") from error

        instructions = self._assemble_instructions(
            keys=keys,
            quote=quote,
            source_account=source_account,
            destination_account=destination_account,
            create_destination_mint=create_destination_mint,
            close_source=close_source,
        )
        message = MessageV0.try_compile(
            self.wallet,
            instructions,
            [],
            Hash.from_string(blockhash),
        )
        transaction = VersionedTransaction(message, [self._signer])
        if not transaction.signatures:
            raise RuntimeError("Signed swap transaction has no signatures.")

        signature = str(transaction.signatures[0])
        log_event(
            self._logger,
            level="info",
            event="swap_built",
            message="Swap transaction was built",
            direction=direction,
            pool_id=keys.pool_id,
            quote=quote.to_dict(),
            sell_percentage=sell_percentage,
            close_source=close_source,
            instruction_count=len(instructions),
            signature=signature,
        )
        return BuiltSwap(
            transaction=transaction,
            signature=signature,
            blockhash=blockhash,
            last_valid_block_height=last_valid_block_height,
            quote=quote,
            direction=direction,
            sell_percentage=sell_percentage,
            holding=holding,
        )

    def _assemble_instructions(
        self,
        *,
        keys: PoolKeys,
        quote: SwapQuote,
        source_account: Pubkey,
        destination_account: Pubkey,
        create_destination_mint: str | None,
        close_source: bool,
    ) -> list[Instruction]:
        instructions: list[Instruction] = []
        if not self._carries_priority_fee:
            instructions.append(set_compute_unit_limit(self._compute_unit_limit))
            instructions.append(set_compute_unit_price(self._compute_unit_price))

        if create_destination_mint is not None:
            instructions.append(
                create_idempotent_associated_token_account(
                    payer=self.wallet,
                    owner=self.wallet,
                    mint=Pubkey.from_string(create_destination_mint),
                )
            )

        instructions.append(
            build_swap_base_in_instruction(
                keys,
                amount_in=quote.amount_in,
                min_amount_out=quote.min_amount_out,
                source_account=source_account,
                destination_account=destination_account,
                owner=self.wallet,
            )
        )

        # SPL closes require a zero balance
        if close_source:
            instructions.append(
                close_account(
                    CloseAccountParams(
                        program_id=TOKEN_PROGRAM_ID,
                        account=source_account,
                        dest=self.wallet,
                        owner=self.wallet,
                    )
                )
            )
        return instructions

    async def _resolve_pool(self, mint: str) -> PoolKeys:
        try:
            return await self._pools.resolve(mint)
        except _TRANSIENT_ERRORS as error:
            raise QuoteError(f"Pool lookup failed for {mint}: {error}") from error
