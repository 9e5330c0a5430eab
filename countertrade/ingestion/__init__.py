from .classifier import TradeClassifier
from .decoder import TransactionDecoder
from .stream import StreamSubscriber, compute_reconnect_backoff_seconds
from .types import (
    JUPITER_V6_PROGRAM_ID,
    RAYDIUM_AMM_V4_PROGRAM_ID,
    WSOL_MINT,
    AccountFilter,
    AccountRecord,
    CommitmentLevel,
    DataSlice,
    DecodedInstruction,
    DecodedTransaction,
    DecodeError,
    RawEvent,
    StreamExhaustedError,
    StreamFilter,
    StreamRecord,
    StreamTransportError,
    SubscriptionAck,
    SwapInstruction,
    TokenBalance,
    TradeDirection,
    TradeEvent,
    TransactionFilter,
    TransactionRecord,
)

__all__ = [
    "JUPITER_V6_PROGRAM_ID",
    "RAYDIUM_AMM_V4_PROGRAM_ID",
    "WSOL_MINT",
    "AccountFilter",
    "AccountRecord",
    "CommitmentLevel",
    "DataSlice",
    "DecodedInstruction",
    "DecodedTransaction",
    "DecodeError",
    "RawEvent",
    "StreamExhaustedError",
    "StreamFilter",
    "StreamRecord",
    "StreamSubscriber",
    "StreamTransportError",
    "SubscriptionAck",
    "SwapInstruction",
    "TokenBalance",
    "TradeClassifier",
    "TradeDirection",
    "TradeEvent",
    "TransactionDecoder",
    "TransactionFilter",
    "TransactionRecord",
    "compute_reconnect_backoff_seconds",
]
