from .engine import ReactionEngine
from .executor import SwapExecutor, build_swap_base_in_instruction
from .pool import PoolKeysRegistry, compute_amount_out, compute_min_amount_out
from .retry import ConcurrencyGate, RetryController
from .rpc import RpcGateway
from .submitters import (
    DirectSubmitter,
    DryRunSubmitter,
    JitoBlockEngineClient,
    PriorityRelaySubmitter,
    TransactionSubmitter,
    wait_for_confirmation,
)
from .types import (
    BuiltSwap,
    ConfigError,
    ConfirmationTimeoutError,
    OrderState,
    PendingOrder,
    PoolKeys,
    PoolReserves,
    PoolResolutionError,
    QuoteError,
    RpcMethodError,
    SubmissionError,
    SubmissionResult,
    SwapQuote,
    WalletHolding,
    ZeroBalanceError,
    parse_private_key,
)

__all__ = [
    "BuiltSwap",
    "ConcurrencyGate",
    "ConfigError",
    "ConfirmationTimeoutError",
    "DirectSubmitter",
    "DryRunSubmitter",
    "JitoBlockEngineClient",
    "OrderState",
    "PendingOrder",
    "PoolKeys",
    "PoolKeysRegistry",
    "PoolReserves",
    "PoolResolutionError",
    "PriorityRelaySubmitter",
    "QuoteError",
    "ReactionEngine",
    "RetryController",
    "RpcGateway",
    "RpcMethodError",
    "SubmissionError",
    "SubmissionResult",
    "SwapExecutor",
    "SwapQuote",
    "TransactionSubmitter",
    "WalletHolding",
    "ZeroBalanceError",
    "build_swap_base_in_instruction",
    "compute_amount_out",
    "compute_min_amount_out",
    "parse_private_key",
    "wait_for_confirmation",
]
