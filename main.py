from __future__ import annotations

import asyncio
import contextlib
import signal
import sys

from dotenv import load_dotenv

from countertrade.bot_runtime import (
    AppSettings,
    bootstrap_dependencies,
    build_stream_filter,
    load_blacklist,
    run_reactor,
    setup_logger,
)
from countertrade.common import LogNotifier, guarded_call, log_event
from countertrade.ingestion import StreamExhaustedError, StreamSubscriber, TradeClassifier, TransactionDecoder
from countertrade.trading import (
    ConcurrencyGate,
    ConfigError,
    DirectSubmitter,
    DryRunSubmitter,
    JitoBlockEngineClient,
    PoolKeysRegistry,
    PriorityRelaySubmitter,
    ReactionEngine,
    RetryController,
    RpcGateway,
    SwapExecutor,
    TransactionSubmitter,
    parse_private_key,
)


async def main() -> int:
    load_dotenv()
    app_settings = AppSettings.from_env()
    logger = setup_logger(app_settings.log_level)

    try:
        app_settings.validate()
        blacklist = load_blacklist(app_settings.blacklist_path)
    except ConfigError as error:
        log_event(logger, level="error", event="config_invalid", message=str(error))
        return 1

    signer = parse_private_key(app_settings.private_key)
    rpc = RpcGateway(
        logger=logger,
        rpc_url=app_settings.rpc_endpoint,
        commitment=app_settings.commitment.value,
    )

    if app_settings.dry_run:
        submitter: TransactionSubmitter = DryRunSubmitter(logger=logger)
    elif app_settings.transaction_executor == "jito":
        submitter = PriorityRelaySubmitter(
            logger=logger,
            rpc=rpc,
            block_engine=JitoBlockEngineClient(
                logger=logger,
                block_engine_url=app_settings.jito_block_engine_url,
            ),
            signer=signer,
            tip_lamports=app_settings.tip_lamports,
            confirm_timeout_seconds=app_settings.confirm_timeout_seconds,
            confirm_poll_interval_seconds=app_settings.confirm_poll_interval_seconds,
        )
    else:
        submitter = DirectSubmitter(
            logger=logger,
            rpc=rpc,
            confirm_timeout_seconds=app_settings.confirm_timeout_seconds,
            confirm_poll_interval_seconds=app_settings.confirm_poll_interval_seconds,
        )

    pools = PoolKeysRegistry(
        logger=logger,
        rpc=rpc,
        quote_mint=app_settings.quote_mint,
        pool_overrides={app_settings.tracked_mint: app_settings.pool_id} if app_settings.pool_id else None,
    )
    executor = SwapExecutor(
        logger=logger,
        rpc=rpc,
        pools=pools,
        signer=signer,
        quote_mint=app_settings.quote_mint,
        sell_percentage_tiers=app_settings.sell_percentage_tiers,
        sell_slippage_pct=app_settings.sell_slippage,
        buy_slippage_pct=app_settings.buy_slippage,
        compute_unit_limit=app_settings.compute_unit_limit,
        compute_unit_price=app_settings.compute_unit_price,
        carries_priority_fee=submitter.carries_priority_fee,
    )
    controller = RetryController(
        logger=logger,
        executor=executor,
        submitter=submitter,
        gate=ConcurrencyGate(enabled=app_settings.one_token_at_a_time),
        notifier=LogNotifier(logger=logger),
        max_attempts=app_settings.max_sell_retries,
        retry_backoff_seconds=app_settings.retry_backoff_seconds,
    )
    decoder = TransactionDecoder(logger=logger)
    classifier = TradeClassifier(
        logger=logger,
        tracked_mint=app_settings.tracked_mint,
        quote_mint=app_settings.quote_mint,
        minimum_trigger_raw=app_settings.minimum_trigger_raw,
        blacklist=blacklist,
        aggregator_program_ids=app_settings.aggregator_program_ids,
    )
    engine = ReactionEngine(
        logger=logger,
        decoder=decoder,
        classifier=classifier,
        controller=controller,
        post_buy_delay_seconds=app_settings.post_buy_delay_seconds,
        max_inflight_orders=app_settings.max_inflight_orders,
    )
    stream = StreamSubscriber(
        logger=logger,
        endpoint=app_settings.stream_endpoint,
        reconnect_base_seconds=app_settings.stream_reconnect_base_seconds,
        reconnect_max_seconds=app_settings.stream_reconnect_max_seconds,
        max_reconnect_attempts=app_settings.stream_max_reconnect_attempts,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    log_event(
        logger,
        level="info",
        event="bot_starting",
        message="Counter-trade reactor is starting",
        wallet=str(signer.pubkey()),
        tracked_mint=app_settings.tracked_mint,
        quote_mint=app_settings.quote_mint,
        submitter=type(submitter).__name__,
        dry_run=app_settings.dry_run,
        one_token_at_a_time=app_settings.one_token_at_a_time,
        sell_percentage_tiers=list(app_settings.sell_percentage_tiers),
        max_sell_retries=app_settings.max_sell_retries,
        minimum_trigger_raw=app_settings.minimum_trigger_raw,
        blacklist_size=len(blacklist),
    )

    exit_code = 0
    try:
        pool_keys = await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            settings=app_settings,
            rpc=rpc,
            submitter=submitter,
            pools=pools,
        )
        engine.tracked_pool_id = pool_keys.pool_id
        await run_reactor(
            logger=logger,
            stop_event=stop_event,
            stream=stream,
            decoder=decoder,
            engine=engine,
            stream_filter=build_stream_filter(settings=app_settings, pool_keys=pool_keys),
        )
    except StreamExhaustedError as error:
        log_event(
            logger,
            level="error",
            event="stream_exhausted",
            message="Stream could not be re-established; shutting down",
            attempts=error.attempts,
            error=str(error),
        )
        exit_code = 2
    except RuntimeError as error:
        if not stop_event.is_set():
            raise
        log_event(logger, level="info", event="bootstrap_aborted", message=str(error))
    finally:
        await guarded_call(
            submitter.close,
            logger=logger,
            event="submitter_close_failed",
            message="Failed to close submitter",
        )
        await guarded_call(
            rpc.close,
            logger=logger,
            event="rpc_close_failed",
            message="Failed to close RPC session",
        )
        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")

    return exit_code


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
