from __future__ import annotations

import asyncio
import logging
import unittest
from types import SimpleNamespace
from typing import Any

import aiohttp

from countertrade.ingestion.stream import StreamSubscriber, compute_reconnect_backoff_seconds
from countertrade.ingestion.types import RawEvent, StreamExhaustedError, StreamFilter, TransactionFilter

STREAM_FILTER = StreamFilter(transactions={"pool": TransactionFilter(account_required=("program", "pool"))})


def _text(payload: str) -> SimpleNamespace:
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=payload)


def _binary(payload: bytes) -> SimpleNamespace:
    return SimpleNamespace(type=aiohttp.WSMsgType.BINARY, data=payload)


class FakeWebSocket:
    def __init__(self, messages: list[SimpleNamespace], *, hang: bool = False) -> None:
        self._messages = list(messages)
        self._hang = hang
        self._closed = asyncio.Event()
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    async def close(self) -> None:
        self._closed.set()

    def exception(self) -> Exception | None:
        return None

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> SimpleNamespace:
        if self._messages:
            return self._messages.pop(0)
        if self._hang:
            await self._closed.wait()
        raise StopAsyncIteration


class _Connection:
    def __init__(self, step: Any) -> None:
        self._step = step

    async def __aenter__(self) -> FakeWebSocket:
        if isinstance(self._step, BaseException):
            raise self._step
        return self._step

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeSession:
    """Replays a script of websockets or connect errors; connect errors once the script runs out."""

    def __init__(self, steps: list[Any]) -> None:
        self._steps = list(steps)
        self.connects = 0
        self.closed = False

    def ws_connect(self, endpoint: str, **kwargs: Any) -> _Connection:
        self.connects += 1
        step = self._steps.pop(0) if self._steps else aiohttp.ClientConnectionError("refused")
        return _Connection(step)

    async def close(self) -> None:
        self.closed = True


async def _wait_until(predicate, *, timeout: float = 1.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout=timeout)


class StreamSubscriberTests(unittest.IsolatedAsyncioTestCase):
    def _subscriber(self, session: FakeSession, *, max_attempts: int = 20) -> StreamSubscriber:
        return StreamSubscriber(
            logger=logging.getLogger("test.stream"),
            endpoint="wss://stream.invalid",
            reconnect_base_seconds=0.0,
            reconnect_max_seconds=0.0,
            max_reconnect_attempts=max_attempts,
            session_factory=lambda: session,
        )

    async def test_stop_without_start_is_a_noop(self) -> None:
        subscriber = self._subscriber(FakeSession([]))

        await subscriber.stop()
        await subscriber.stop()

        self.assertFalse(subscriber.active)

    async def test_frames_dispatch_in_arrival_order(self) -> None:
        ws = FakeWebSocket([_text('{"n": 1}'), _binary(b'{"n": 2}')], hang=True)
        session = FakeSession([ws])
        subscriber = self._subscriber(session)
        received: list[RawEvent] = []
        subscriber.on(received.append)

        await subscriber.start(STREAM_FILTER)
        await _wait_until(lambda: len(received) == 2)

        self.assertEqual([event.sequence for event in received], [1, 2])
        self.assertEqual([event.data for event in received], [b'{"n": 1}', b'{"n": 2}'])
        self.assertEqual(ws.sent, STREAM_FILTER.build_requests())
        self.assertTrue(subscriber.active)

        await subscriber.stop()
        self.assertFalse(subscriber.active)
        self.assertTrue(session.closed)

    async def test_handler_failure_does_not_stop_other_handlers(self) -> None:
        ws = FakeWebSocket([_text("{}"), _text("{}")], hang=True)
        subscriber = self._subscriber(FakeSession([ws]))
        received: list[RawEvent] = []

        def broken(event: RawEvent) -> None:
            raise ValueError("boom")

        subscriber.on(broken)
        subscriber.on(received.append)

        await subscriber.start(STREAM_FILTER)
        await _wait_until(lambda: len(received) == 2)

        self.assertTrue(subscriber.active)
        await subscriber.stop()

    async def test_async_handlers_are_scheduled(self) -> None:
        ws = FakeWebSocket([_text("{}")], hang=True)
        subscriber = self._subscriber(FakeSession([ws]))
        handled = asyncio.Event()

        async def handler(event: RawEvent) -> None:
            handled.set()

        subscriber.on(handler)
        await subscriber.start(STREAM_FILTER)
        await asyncio.wait_for(handled.wait(), timeout=1.0)
        await subscriber.stop()

    async def test_consecutive_failures_exhaust_the_budget(self) -> None:
        session = FakeSession([])
        subscriber = self._subscriber(session, max_attempts=3)

        await subscriber.start(STREAM_FILTER)
        with self.assertRaises(StreamExhaustedError) as ctx:
            await asyncio.wait_for(subscriber.wait(), timeout=1.0)

        self.assertEqual(ctx.exception.attempts, 4)
        self.assertEqual(session.connects, 4)
        self.assertEqual(subscriber.reconnect_count, 3)
        self.assertFalse(subscriber.active)
        await subscriber.stop()

    async def test_answered_session_resets_the_failure_budget(self) -> None:
        refused = aiohttp.ClientConnectionError("refused")
        session = FakeSession(
            [
                refused,
                FakeWebSocket([_text("{}")]),
                aiohttp.ClientConnectionError("refused again"),
                FakeWebSocket([], hang=True),
            ]
        )
        subscriber = self._subscriber(session, max_attempts=2)

        await subscriber.start(STREAM_FILTER)
        await _wait_until(lambda: session.connects == 4)
        await asyncio.sleep(0.01)

        self.assertTrue(subscriber.active)
        self.assertEqual(subscriber.reconnect_count, 3)
        await subscriber.stop()

    async def test_second_start_is_rejected(self) -> None:
        subscriber = self._subscriber(FakeSession([FakeWebSocket([], hang=True)]))
        await subscriber.start(STREAM_FILTER)

        with self.assertRaises(RuntimeError):
            await subscriber.start(STREAM_FILTER)

        await subscriber.stop()

    async def test_empty_filter_is_rejected(self) -> None:
        subscriber = self._subscriber(FakeSession([]))

        with self.assertRaises(ValueError):
            await subscriber.start(StreamFilter())

        self.assertFalse(subscriber.active)


class ReconnectBackoffTests(unittest.TestCase):
    def test_backoff_grows_and_caps(self) -> None:
        self.assertEqual(compute_reconnect_backoff_seconds(attempt=0, base_seconds=1.0, max_seconds=30.0), 0.0)

        first = compute_reconnect_backoff_seconds(attempt=1, base_seconds=1.0, max_seconds=30.0)
        self.assertGreaterEqual(first, 1.0)
        self.assertLessEqual(first, 1.25)

        capped = compute_reconnect_backoff_seconds(attempt=12, base_seconds=1.0, max_seconds=30.0)
        self.assertEqual(capped, 30.0)


if __name__ == "__main__":
    unittest.main()
