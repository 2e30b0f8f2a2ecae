import asyncio
import json

import httpx

from flowbridge.service.analytics import AnalyticsDispatcher


async def test_disabled_without_webhook():
    dispatcher = AnalyticsDispatcher(None)
    assert dispatcher.enabled is False
    assert await dispatcher.submit("bot1", "u", "hello", "hi") is False
    assert dispatcher.running is False


async def test_event_carries_lengths_only():
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(200)

    dispatcher = AnalyticsDispatcher(
        "https://analytics.example.com/hook", transport=httpx.MockTransport(handler)
    )
    try:
        assert await dispatcher.submit("bot1", "15551234567@c.us", "hello", "hi there") is True
        await asyncio.wait_for(dispatcher.join(), timeout=5)
    finally:
        await dispatcher.stop()

    assert dispatcher.delivered == 1
    event = received[0]
    assert event["instanceId"] == "bot1"
    assert event["userId"] == "15551234567@c.us"
    assert event["userMessageLength"] == 5
    assert event["botResponseLength"] == 8
    assert "hello" not in json.dumps(event)
    assert "timestamp" in event


async def test_failed_delivery_is_retried_then_dropped():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(500)

    dispatcher = AnalyticsDispatcher(
        "https://analytics.example.com/hook",
        max_attempts=2,
        retry_delay=0,
        transport=httpx.MockTransport(handler),
    )
    try:
        await dispatcher.submit("bot1", "u", "a", "b")
        await asyncio.wait_for(dispatcher.join(), timeout=5)
    finally:
        await dispatcher.stop()

    assert len(attempts) == 2
    assert dispatcher.delivered == 0
    assert dispatcher.dropped == 1


async def test_full_queue_drops_new_events():
    release = asyncio.Event()

    async def slow_handler(request):
        await release.wait()
        return httpx.Response(200)

    dispatcher = AnalyticsDispatcher(
        "https://analytics.example.com/hook",
        queue_size=1,
        transport=httpx.MockTransport(slow_handler),
    )
    try:
        assert await dispatcher.submit("bot1", "u", "1", "r") is True
        # let the worker take the first event off the queue
        await asyncio.sleep(0.05)
        assert await dispatcher.submit("bot1", "u", "2", "r") is True
        assert await dispatcher.submit("bot1", "u", "3", "r") is False
        assert dispatcher.dropped == 1
        release.set()
        await asyncio.wait_for(dispatcher.join(), timeout=5)
    finally:
        await dispatcher.stop()

    assert dispatcher.delivered == 2
