from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path

from countertrade.ingestion.types import JUPITER_V6_PROGRAM_ID, WSOL_MINT, CommitmentLevel
from countertrade.trading.types import (
    LAMPORTS_PER_SOL,
    ConfigError,
    parse_private_key,
    to_bool,
    to_float,
    to_int,
)

SUBMITTER_KINDS = {"default", "jito"}
DEFAULT_JITO_BLOCK_ENGINE_URL = "https://mainnet.block-engine.jito.wtf/api/v1/bundles"


def normalize_submitter_kind(value: str) -> str:
    return (value or "").strip().lower() or "default"


def parse_address_list(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def load_blacklist(path: str) -> tuple[str, ...]:
    """Newline-delimited addresses; blank lines and ``#`` comments are ignored."""
    if not path:
        return ()
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as error:
        raise ConfigError(f"BLACKLIST_PATH could not be read: {error}") from error

    entries: list[str] = []
    for line in text.splitlines():
        entry = line.split("#", 1)[0].strip()
        if entry:
            entries.append(entry)
    return tuple(entries)


@dataclass(slots=True)
class AppSettings:
    private_key: str
    rpc_endpoint: str
    stream_endpoint: str
    commitment_level: str
    tracked_mint: str
    pool_id: str
    quote_mint: str
    quote_decimals: int
    compute_unit_limit: int
    compute_unit_price: int
    transaction_executor: str
    custom_fee_sol: float
    jito_block_engine_url: str
    buy_slippage: int
    sell_slippage: int
    max_sell_retries: int
    retry_backoff_seconds: float
    post_buy_delay_seconds: float
    one_token_at_a_time: bool
    minimum_buy_trigger: str
    low_sell_amount: int
    avg_sell_amount: int
    high_sell_amount: int
    blacklist_path: str
    aggregator_program_ids: tuple[str, ...]
    stream_max_reconnect_attempts: int
    stream_reconnect_base_seconds: float
    stream_reconnect_max_seconds: float
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    max_inflight_orders: int
    dry_run: bool
    log_level: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            private_key=os.getenv("PRIVATE_KEY", ""),
            rpc_endpoint=os.getenv("RPC_ENDPOINT", "").strip(),
            stream_endpoint=os.getenv("STREAM_ENDPOINT", "").strip(),
            commitment_level=os.getenv("COMMITMENT_LEVEL", "confirmed").strip().lower(),
            tracked_mint=os.getenv("TRACKED_MINT", "").strip(),
            pool_id=os.getenv("POOL_ID", "").strip(),
            quote_mint=os.getenv("QUOTE_MINT", WSOL_MINT).strip() or WSOL_MINT,
            quote_decimals=max(0, to_int(os.getenv("QUOTE_DECIMALS"), 9)),
            compute_unit_limit=max(1, to_int(os.getenv("COMPUTE_UNIT_LIMIT"), 101_337)),
            compute_unit_price=max(0, to_int(os.getenv("COMPUTE_UNIT_PRICE"), 421_197)),
            transaction_executor=normalize_submitter_kind(os.getenv("TRANSACTION_EXECUTOR", "default")),
            custom_fee_sol=max(0.0, to_float(os.getenv("CUSTOM_FEE"), 0.006)),
            jito_block_engine_url=os.getenv("JITO_BLOCK_ENGINE_URL", DEFAULT_JITO_BLOCK_ENGINE_URL).strip(),
            buy_slippage=max(0, min(100, to_int(os.getenv("BUY_SLIPPAGE"), 20))),
            sell_slippage=max(0, min(100, to_int(os.getenv("SELL_SLIPPAGE"), 20))),
            max_sell_retries=max(1, to_int(os.getenv("MAX_SELL_RETRIES"), 10)),
            retry_backoff_seconds=max(0.0, to_float(os.getenv("RETRY_BACKOFF_SECONDS"), 0.0)),
            post_buy_delay_seconds=max(0.0, to_float(os.getenv("AUTO_BUY_DELAY"), 0.0) / 1000.0),
            one_token_at_a_time=to_bool(os.getenv("ONE_TOKEN_AT_A_TIME"), True),
            minimum_buy_trigger=os.getenv("MINIMUM_BUY_TRIGGER", "0").strip() or "0",
            low_sell_amount=to_int(os.getenv("LOW_SELL_AMOUNT"), 25),
            avg_sell_amount=to_int(os.getenv("AVG_SELL_AMOUNT"), 50),
            high_sell_amount=to_int(os.getenv("HIGH_SELL_AMOUNT"), 75),
            blacklist_path=os.getenv("BLACKLIST_PATH", "").strip(),
            aggregator_program_ids=parse_address_list(os.getenv("AGGREGATOR_PROGRAM_IDS"))
            or (JUPITER_V6_PROGRAM_ID,),
            stream_max_reconnect_attempts=max(0, to_int(os.getenv("STREAM_MAX_RECONNECT_ATTEMPTS"), 20)),
            stream_reconnect_base_seconds=max(
                0.1,
                to_float(os.getenv("STREAM_RECONNECT_BASE_SECONDS"), 1.0),
            ),
            stream_reconnect_max_seconds=max(
                1.0,
                to_float(os.getenv("STREAM_RECONNECT_MAX_SECONDS"), 30.0),
            ),
            confirm_timeout_seconds=max(
                5.0,
                to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 60.0),
            ),
            confirm_poll_interval_seconds=max(
                0.25,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            max_inflight_orders=max(0, to_int(os.getenv("MAX_INFLIGHT_ORDERS"), 0)),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            log_level=os.getenv("LOG_LEVEL", "info").strip().lower() or "info",
        )

    @property
    def sell_percentage_tiers(self) -> tuple[int, ...]:
        return tuple(
            tier for tier in (self.avg_sell_amount, self.high_sell_amount, self.low_sell_amount) if tier > 0
        )

    @property
    def minimum_trigger_raw(self) -> int:
        """MINIMUM_BUY_TRIGGER is in quote UI units; classification compares raw amounts."""
        try:
            raw = int(Decimal(self.minimum_buy_trigger) * (Decimal(10) ** self.quote_decimals))
        except (InvalidOperation, ValueError, OverflowError) as error:
            raise ConfigError(f"MINIMUM_BUY_TRIGGER is not a number: {self.minimum_buy_trigger!r}") from error
        return max(0, raw)

    @property
    def tip_lamports(self) -> int:
        return int(Decimal(str(self.custom_fee_sol)) * LAMPORTS_PER_SOL)

    @property
    def commitment(self) -> CommitmentLevel:
        return CommitmentLevel.parse(self.commitment_level)

    def validate(self) -> None:
        problems: list[str] = []
        if not self.private_key.strip():
            problems.append("PRIVATE_KEY is required.")
        else:
            try:
                parse_private_key(self.private_key)
            except ValueError as error:
                problems.append(str(error))
        if not self.rpc_endpoint:
            problems.append("RPC_ENDPOINT is required.")
        if not self.stream_endpoint:
            problems.append("STREAM_ENDPOINT is required.")
        if not self.tracked_mint:
            problems.append("TRACKED_MINT is required.")
        try:
            CommitmentLevel.parse(self.commitment_level)
        except ValueError as error:
            problems.append(str(error))
        if self.transaction_executor not in SUBMITTER_KINDS:
            problems.append(
                f"TRANSACTION_EXECUTOR must be one of {sorted(SUBMITTER_KINDS)}, got {self.transaction_executor!r}."
            )
        if self.transaction_executor == "jito" and not self.dry_run:
            if not self.jito_block_engine_url:
                problems.append("JITO_BLOCK_ENGINE_URL is required when TRANSACTION_EXECUTOR=jito.")
            if self.tip_lamports <= 0:
                problems.append("CUSTOM_FEE must be greater than zero when TRANSACTION_EXECUTOR=jito.")
        tiers = self.sell_percentage_tiers
        if not tiers:
            problems.append("At least one of LOW_/AVG_/HIGH_SELL_AMOUNT must be greater than zero.")
        elif any(tier > 100 for tier in tiers):
            problems.append("Sell percentage tiers must be at most 100.")
        try:
            _ = self.minimum_trigger_raw
        except ConfigError as error:
            problems.append(str(error))
        if self.stream_reconnect_max_seconds < self.stream_reconnect_base_seconds:
            problems.append("STREAM_RECONNECT_MAX_SECONDS must be >= STREAM_RECONNECT_BASE_SECONDS.")

        if problems:
            raise ConfigError("Invalid configuration: " + " ".join(problems))
