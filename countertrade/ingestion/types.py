from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

WSOL_MINT = "So11111111111111111111111111111111111111112"
RAYDIUM_AMM_V4_PROGRAM_ID = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
JUPITER_V6_PROGRAM_ID = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"


class DecodeError(RuntimeError):
    pass


class StreamTransportError(RuntimeError):
    pass


class StreamExhaustedError(RuntimeError):
    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class CommitmentLevel(str, Enum):
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"

    @classmethod
    def parse(cls, value: str) -> "CommitmentLevel":
        normalized = (value or "").strip().lower()
        for level in cls:
            if level.value == normalized:
                return level
        raise ValueError(f"Unsupported commitment level: {value!r}")


@dataclass(slots=True, frozen=True)
class DataSlice:
    offset: int
    length: int

    def apply(self, data: bytes) -> bytes:
        return data[self.offset : self.offset + self.length]


@dataclass(slots=True, frozen=True)
class TransactionFilter:
    vote: bool = False
    failed: bool = False
    account_include: tuple[str, ...] = ()
    account_exclude: tuple[str, ...] = ()
    account_required: tuple[str, ...] = ()

    def to_params(self) -> dict[str, Any]:
        return {
            "vote": self.vote,
            "failed": self.failed,
            "accountInclude": list(self.account_include),
            "accountExclude": list(self.account_exclude),
            "accountRequired": list(self.account_required),
        }


@dataclass(slots=True, frozen=True)
class AccountFilter:
    accounts: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class StreamFilter:
    commitment: CommitmentLevel = CommitmentLevel.CONFIRMED
    transactions: dict[str, TransactionFilter] = field(default_factory=dict)
    accounts: dict[str, AccountFilter] = field(default_factory=dict)
    data_slice: DataSlice | None = None

    def build_requests(self) -> list[dict[str, Any]]:
        """One JSON-RPC subscribe request per filter entry, ids counting from 1."""
        requests: list[dict[str, Any]] = []
        for tx_filter in self.transactions.values():
            requests.append(
                {
                    "jsonrpc": "2.0",
                    "id": len(requests) + 1,
                    "method": "transactionSubscribe",
                    "params": [
                        tx_filter.to_params(),
                        {
                            "commitment": self.commitment.value,
                            "encoding": "base64",
                            "transactionDetails": "full",
                            "showRewards": False,
                            "maxSupportedTransactionVersion": 0,
                        },
                    ],
                }
            )
        for account_filter in self.accounts.values():
            for pubkey in account_filter.accounts:
                requests.append(
                    {
                        "jsonrpc": "2.0",
                        "id": len(requests) + 1,
                        "method": "accountSubscribe",
                        "params": [
                            pubkey,
                            {"commitment": self.commitment.value, "encoding": "base64"},
                        ],
                    }
                )
        return requests


@dataclass(slots=True, frozen=True)
class RawEvent:
    data: bytes
    received_at: float
    sequence: int


@dataclass(slots=True, frozen=True)
class TransactionRecord:
    signature: str
    slot: int
    wire_transaction: bytes
    meta: dict[str, Any]
    kind: Literal["transaction"] = "transaction"


@dataclass(slots=True, frozen=True)
class AccountRecord:
    pubkey: str
    owner: str
    data: bytes
    slot: int
    kind: Literal["account"] = "account"


@dataclass(slots=True, frozen=True)
class SubscriptionAck:
    request_id: int
    subscription_id: int
    kind: Literal["ack"] = "ack"


StreamRecord = Union[TransactionRecord, AccountRecord, SubscriptionAck]


@dataclass(slots=True, frozen=True)
class TokenBalance:
    account_index: int
    account: str
    mint: str
    owner: str
    amount: int
    decimals: int


@dataclass(slots=True, frozen=True)
class DecodedInstruction:
    program_id: str
    accounts: tuple[str, ...]
    data: bytes
    outer_index: int
    stack_height: int | None = None

    @property
    def is_inner(self) -> bool:
        return self.stack_height is not None and self.stack_height > 1


@dataclass(slots=True, frozen=True)
class DecodedTransaction:
    signature: str
    slot: int
    fee_payer: str
    account_keys: tuple[str, ...]
    instructions: tuple[DecodedInstruction, ...]
    pre_token_balances: tuple[TokenBalance, ...]
    post_token_balances: tuple[TokenBalance, ...]


SwapVariant = Literal["swap_base_in", "swap_base_out"]


@dataclass(slots=True, frozen=True)
class SwapInstruction:
    """swap_base_in carries (amount_in, minimum_amount_out); swap_base_out carries (max_amount_in, amount_out)."""

    variant: SwapVariant
    pool_id: str
    owner: str
    amount_in: int
    amount_out: int


class TradeDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(slots=True, frozen=True)
class TradeEvent:
    signature: str
    mint: str
    direction: TradeDirection
    base_amount: int
    quote_amount: int
    counterparty: str
    routed: bool = False
