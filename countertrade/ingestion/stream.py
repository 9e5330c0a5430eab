from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import logging
import random
from typing import Any, Awaitable, Callable

import aiohttp

from countertrade.common import log_event

from .types import RawEvent, StreamExhaustedError, StreamFilter, StreamTransportError

RawEventHandler = Callable[[RawEvent], Awaitable[Any] | None]
SessionFactory = Callable[[], Any]


def compute_reconnect_backoff_seconds(
    *,
    attempt: int,
    base_seconds: float,
    max_seconds: float,
) -> float:
    if attempt <= 0:
        return 0.0
    exponential = min(max_seconds, base_seconds * float(2 ** (attempt - 1)))
    jitter = random.uniform(0.0, max(0.0, base_seconds * 0.25))
    return min(max_seconds, exponential + jitter)


class StreamSubscriber:
    """Owns one duplex websocket subscription and fans raw frames out to handlers.

    Transport failures are absorbed by an awaited backoff-then-resubscribe loop;
    the consecutive failure budget resets once the node answers a subscription.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        endpoint: str,
        reconnect_base_seconds: float = 1.0,
        reconnect_max_seconds: float = 30.0,
        max_reconnect_attempts: int = 20,
        heartbeat_seconds: float = 30.0,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._logger = logger
        self._endpoint = endpoint
        self._reconnect_base_seconds = max(0.0, float(reconnect_base_seconds))
        self._reconnect_max_seconds = max(self._reconnect_base_seconds, float(reconnect_max_seconds))
        self._max_reconnect_attempts = max(0, int(max_reconnect_attempts))
        self._heartbeat_seconds = heartbeat_seconds
        self._session_factory = session_factory or aiohttp.ClientSession
        self._session: Any | None = None
        self._ws: Any | None = None
        self._task: asyncio.Task[None] | None = None
        self._filter: StreamFilter | None = None
        self._handlers: list[RawEventHandler] = []
        self._handler_tasks: set[asyncio.Task[Any]] = set()
        self._sequence = itertools.count(1)
        self._stopping = False
        self._answered = False
        self.reconnect_count = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def on(self, handler: RawEventHandler) -> None:
        self._handlers.append(handler)

    async def start(self, stream_filter: StreamFilter) -> None:
        if self.active:
            raise RuntimeError("Stream subscription is already active.")
        if not stream_filter.build_requests():
            raise ValueError("Stream filter does not subscribe to anything.")

        self._filter = stream_filter
        self._stopping = False
        self.reconnect_count = 0
        self._task = asyncio.create_task(self._run(), name="stream-subscriber")
        log_event(
            self._logger,
            level="info",
            event="stream_started",
            message="Stream subscriber started",
            endpoint=self._endpoint,
            commitment=stream_filter.commitment.value,
        )

    async def stop(self) -> None:
        self._stopping = True
        self._handlers.clear()

        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        pending = [t for t in self._handler_tasks if not t.done()]
        for handler_task in pending:
            handler_task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._handler_tasks.clear()

        session, self._session = self._session, None
        if session is not None:
            with contextlib.suppress(Exception):
                await session.close()

        if task is not None:
            log_event(
                self._logger,
                level="info",
                event="stream_stopped",
                message="Stream subscriber stopped",
                reconnect_count=self.reconnect_count,
            )

    async def wait(self) -> None:
        """Block until the stream ends; re-raises StreamExhaustedError."""
        if self._task is None:
            return
        await asyncio.shield(self._task)

    async def _run(self) -> None:
        failures = 0
        while not self._stopping:
            self._answered = False
            try:
                await self._run_session()
                error: BaseException = StreamTransportError("Stream closed by remote")
            except asyncio.CancelledError:
                raise
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, StreamTransportError) as exc:
                error = exc
            if self._stopping:
                return

            failures = 1 if self._answered else failures + 1
            if self._max_reconnect_attempts and failures > self._max_reconnect_attempts:
                log_event(
                    self._logger,
                    level="error",
                    event="stream_reconnect_exhausted",
                    message="Stream reconnect budget exhausted",
                    failures=failures,
                    max_attempts=self._max_reconnect_attempts,
                    error=str(error),
                )
                raise StreamExhaustedError(
                    f"Stream failed {failures} consecutive times: {error}",
                    attempts=failures,
                ) from error

            delay = compute_reconnect_backoff_seconds(
                attempt=failures,
                base_seconds=self._reconnect_base_seconds,
                max_seconds=self._reconnect_max_seconds,
            )
            self.reconnect_count += 1
            log_event(
                self._logger,
                level="warning",
                event="stream_resubscribe_scheduled",
                message="Stream transport failed; resubscribing after backoff",
                attempt=failures,
                max_attempts=self._max_reconnect_attempts,
                backoff_seconds=round(delay, 3),
                error=str(error) or type(error).__name__,
            )
            await asyncio.sleep(delay)

    async def _run_session(self) -> None:
        if self._filter is None:
            raise RuntimeError("Stream filter is not set.")
        if self._session is None:
            self._session = self._session_factory()

        try:
            async with self._session.ws_connect(
                self._endpoint,
                heartbeat=self._heartbeat_seconds,
                max_msg_size=0,
            ) as ws:
                self._ws = ws
                for request in self._filter.build_requests():
                    await ws.send_json(request)
                log_event(
                    self._logger,
                    level="info",
                    event="stream_subscribed",
                    message="Subscription requests sent",
                    request_count=len(self._filter.build_requests()),
                )

                async for message in ws:
                    if message.type == aiohttp.WSMsgType.TEXT:
                        data = message.data.encode("utf-8")
                    elif message.type == aiohttp.WSMsgType.BINARY:
                        data = bytes(message.data)
                    elif message.type == aiohttp.WSMsgType.ERROR:
                        raise StreamTransportError(f"Websocket error: {ws.exception()}")
                    else:
                        break
                    self._answered = True
                    self._dispatch(
                        RawEvent(
                            data=data,
                            received_at=asyncio.get_running_loop().time(),
                            sequence=next(self._sequence),
                        )
                    )
        finally:
            self._ws = None

    def _dispatch(self, event: RawEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
            except Exception as error:
                log_event(
                    self._logger,
                    level="exception",
                    event="stream_handler_failed",
                    message="Stream handler raised; event dropped for this handler",
                    sequence=event.sequence,
                    error=str(error),
                )
                continue

            # handlers that schedule their own tasks keep ownership of them
            if inspect.iscoroutine(result):
                task = asyncio.create_task(result)
                self._handler_tasks.add(task)
                task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task[Any]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log_event(
                self._logger,
                level="error",
                event="stream_handler_failed",
                message="Async stream handler raised",
                error=str(error),
            )
