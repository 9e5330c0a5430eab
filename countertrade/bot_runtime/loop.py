from __future__ import annotations

import asyncio
import contextlib
import logging

from countertrade.common import guarded_call, log_event
from countertrade.common.async_utils import sleep_with_stop
from countertrade.ingestion import (
    RAYDIUM_AMM_V4_PROGRAM_ID,
    StreamFilter,
    StreamSubscriber,
    TransactionDecoder,
    TransactionFilter,
)
from countertrade.trading import (
    PoolKeys,
    PoolKeysRegistry,
    ReactionEngine,
    RpcGateway,
    TransactionSubmitter,
)

from .settings import AppSettings


def build_stream_filter(*, settings: AppSettings, pool_keys: PoolKeys) -> StreamFilter:
    """Successful transactions that touch both the exchange program and the tracked pool."""
    return StreamFilter(
        commitment=settings.commitment,
        transactions={
            "tracked_pool": TransactionFilter(
                vote=False,
                failed=False,
                account_required=(RAYDIUM_AMM_V4_PROGRAM_ID, pool_keys.pool_id),
            )
        },
    )


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    settings: AppSettings,
    rpc: RpcGateway,
    submitter: TransactionSubmitter,
    pools: PoolKeysRegistry,
    error_backoff_seconds: float = 2.0,
) -> PoolKeys:
    attempt = 0
    while not stop_event.is_set():
        attempt += 1
        try:
            await rpc.connect()
            await rpc.healthcheck()
            await submitter.connect()
            return await pools.resolve(settings.tracked_mint)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                attempt=attempt,
                error=str(error),
            )
            await guarded_call(
                submitter.close,
                logger=logger,
                event="bootstrap_submitter_close_failed",
                message="Failed to close submitter during bootstrap retry",
            )
            await guarded_call(
                rpc.close,
                logger=logger,
                event="bootstrap_rpc_close_failed",
                message="Failed to close RPC session during bootstrap retry",
            )
            backoff = min(30.0, error_backoff_seconds * float(2 ** min(attempt - 1, 4)))
            await sleep_with_stop(stop_event, backoff)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def run_reactor(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    stream: StreamSubscriber,
    decoder: TransactionDecoder,
    engine: ReactionEngine,
    stream_filter: StreamFilter,
) -> None:
    """Runs until a stop is requested or the stream gives up; always tears both down."""
    decoder.bind_filter(stream_filter)
    stream.on(engine.handle_raw)
    await stream.start(stream_filter)

    stop_task = asyncio.create_task(stop_event.wait(), name="stop-wait")
    stream_task = asyncio.create_task(stream.wait(), name="stream-wait")
    try:
        done, _ = await asyncio.wait({stop_task, stream_task}, return_when=asyncio.FIRST_COMPLETED)
        if stream_task in done:
            stream_task.result()
    finally:
        for task in (stop_task, stream_task):
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        await guarded_call(
            stream.stop,
            logger=logger,
            event="stream_stop_failed",
            message="Failed to stop stream subscriber",
        )
        await guarded_call(
            engine.shutdown,
            logger=logger,
            event="engine_shutdown_failed",
            message="Failed to cancel in-flight sell flows",
        )
        log_event(
            logger,
            level="info",
            event="reactor_stopped",
            message="Reactor stopped",
            reconnect_count=stream.reconnect_count,
            **engine.counters,
        )
