from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from flowbridge.logging import get_logger

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 100
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_RETRY_DELAY_SECONDS = 1.0


class AnalyticsDispatcher:
    """Deliver per-message metrics to an analytics webhook from a bounded queue.

    ``submit`` never blocks: when the queue is full the new event is dropped.
    A single worker task POSTs each event up to ``max_attempts`` times and then
    gives up on it.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.queue_size = max(1, queue_size)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._transport = transport
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._client: Optional[httpx.AsyncClient] = None
        self.dropped = 0
        self.delivered = 0

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if not self.enabled or self.running:
            return
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._task = asyncio.create_task(self._run_loop())
        logger.info("analytics_dispatcher_started", queue_size=self.queue_size)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._client:
            await self._client.aclose()
            self._client = None
        logger.info("analytics_dispatcher_stopped", dropped=self.dropped)

    async def submit(
        self, instance_id: str, user_id: str, user_message: str, bot_response: str
    ) -> bool:
        """Queue one event; returns False when disabled or the queue is full."""
        if not self.enabled:
            return False
        if not self.running:
            await self.start()
        event = {
            "instanceId": instance_id,
            "userId": user_id,
            "userMessageLength": len(user_message),
            "botResponseLength": len(bot_response),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "analytics_event_dropped", instance_id=instance_id, reason="queue_full"
            )
            return False
        return True

    async def join(self) -> None:
        """Wait until every queued event has been delivered or given up on."""
        if self._queue is not None:
            await self._queue.join()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport, timeout=self.timeout
            )
        return self._client

    async def _deliver(self, event: Dict[str, Any]) -> None:
        client = await self._get_client()
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await client.post(self.webhook_url, json=event)
                response.raise_for_status()
                self.delivered += 1
                return
            except httpx.HTTPError as exc:
                logger.warning(
                    "analytics_delivery_failed",
                    instance_id=event.get("instanceId"),
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay)
        self.dropped += 1
        logger.error(
            "analytics_event_dropped",
            instance_id=event.get("instanceId"),
            reason="delivery_failed",
            attempts=self.max_attempts,
        )

    async def _run_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception as exc:
                logger.error(
                    "analytics_worker_error", error=str(exc), error_type=type(exc).__name__
                )
            finally:
                self._queue.task_done()
