from __future__ import annotations

import base64
import json
from typing import Any

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from countertrade.trading.types import RAYDIUM_AMM_V4_AUTHORITY, PoolKeys
from countertrade.ingestion.types import RAYDIUM_AMM_V4_PROGRAM_ID, WSOL_MINT


def unique_address() -> str:
    return str(Pubkey.new_unique())


def make_pool_keys(*, base_mint: str | None = None, quote_mint: str = WSOL_MINT) -> PoolKeys:
    return PoolKeys(
        pool_id=unique_address(),
        program_id=RAYDIUM_AMM_V4_PROGRAM_ID,
        authority=RAYDIUM_AMM_V4_AUTHORITY,
        open_orders=unique_address(),
        target_orders=unique_address(),
        base_vault=unique_address(),
        quote_vault=unique_address(),
        base_mint=base_mint or unique_address(),
        quote_mint=quote_mint,
        base_decimals=6,
        quote_decimals=9,
        lp_mint=unique_address(),
        market_program_id=unique_address(),
        market_id=unique_address(),
        market_authority=unique_address(),
        market_bids=unique_address(),
        market_asks=unique_address(),
        market_event_queue=unique_address(),
        market_base_vault=unique_address(),
        market_quote_vault=unique_address(),
        swap_fee_numerator=25,
        swap_fee_denominator=10_000,
    )


def signed_transaction(payer: Keypair, instructions: list[Instruction]) -> VersionedTransaction:
    message = MessageV0.try_compile(payer.pubkey(), instructions, [], Hash.default())
    return VersionedTransaction(message, [payer])


def token_balance(*, index: int, mint: str, owner: str, amount: int, decimals: int = 6) -> dict[str, Any]:
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": decimals},
    }


def transaction_frame(
    transaction: VersionedTransaction,
    *,
    meta: dict[str, Any] | None = None,
    slot: int = 250_000_000,
) -> bytes:
    payload = {
        "jsonrpc": "2.0",
        "method": "transactionNotification",
        "params": {
            "subscription": 7,
            "result": {
                "transaction": {
                    "transaction": [base64.b64encode(bytes(transaction)).decode("ascii"), "base64"],
                    "meta": {"err": None, **(meta or {})},
                },
                "signature": str(transaction.signatures[0]),
                "slot": slot,
            },
        },
    }
    return json.dumps(payload).encode("utf-8")
