from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
RAYDIUM_AMM_V4_AUTHORITY = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"
LAMPORTS_PER_SOL = 1_000_000_000


class ConfigError(RuntimeError):
    pass


class RpcMethodError(RuntimeError):
    def __init__(self, message: str, *, method: str, status: int | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.status = status


class PoolResolutionError(RuntimeError):
    pass


class QuoteError(RuntimeError):
    pass


class ZeroBalanceError(RuntimeError):
    def __init__(self, message: str, *, mint: str, balance: int = 0) -> None:
        super().__init__(message)
        self.mint = mint
        self.balance = balance


class SubmissionError(RuntimeError):
    pass


class ConfirmationTimeoutError(RuntimeError):
    def __init__(self, message: str, *, signature: str) -> None:
        super().__init__(message)
        self.signature = signature


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or value == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_order_id(mint: str, trigger_signature: str | None = None) -> str:
    tail = trigger_signature[:16] if trigger_signature else datetime.now(timezone.utc).strftime("%H%M%S%f")
    return f"sell-{mint[:8]}-{tail}"


def parse_private_key(raw: str) -> Keypair:
    """Accepts a JSON byte array or a base58 secret key."""
    value = (raw or "").strip()
    if not value:
        raise ValueError("PRIVATE_KEY is empty.")

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    try:
        return Keypair.from_base58_string(value)
    except Exception as error:
        raise ValueError("Unsupported PRIVATE_KEY format.") from error


@dataclass(slots=True, frozen=True)
class PoolKeys:
    pool_id: str
    program_id: str
    authority: str
    open_orders: str
    target_orders: str
    base_vault: str
    quote_vault: str
    base_mint: str
    quote_mint: str
    base_decimals: int
    quote_decimals: int
    lp_mint: str
    market_program_id: str
    market_id: str
    market_authority: str
    market_bids: str
    market_asks: str
    market_event_queue: str
    market_base_vault: str
    market_quote_vault: str
    swap_fee_numerator: int
    swap_fee_denominator: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class PoolReserves:
    base_reserve: int
    quote_reserve: int


@dataclass(slots=True, frozen=True)
class WalletHolding:
    mint: str
    token_account: str
    balance: int
    decimals: int


@dataclass(slots=True, frozen=True)
class SwapQuote:
    input_mint: str
    output_mint: str
    amount_in: int
    amount_out: int
    min_amount_out: int
    slippage_pct: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class BuiltSwap:
    transaction: VersionedTransaction
    signature: str
    blockhash: str
    last_valid_block_height: int | None
    quote: SwapQuote
    direction: str
    sell_percentage: int | None = None
    holding: WalletHolding | None = None


@dataclass(slots=True, frozen=True)
class SubmissionResult:
    confirmed: bool
    signature: str | None = None
    error: str | None = None
    retry_after_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class OrderState(str, Enum):
    ATTEMPTING = "attempting"
    CONFIRMED = "confirmed"
    ABANDONED = "abandoned"


@dataclass(slots=True)
class PendingOrder:
    order_id: str
    mint: str
    max_attempts: int
    target_amount: int = 0
    attempt: int = 0
    state: OrderState = OrderState.ATTEMPTING
    last_signature: str | None = None
    last_error: str | None = None
    created_at: str = field(default_factory=now_iso)

    @property
    def terminal(self) -> bool:
        return self.state is not OrderState.ATTEMPTING

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload
