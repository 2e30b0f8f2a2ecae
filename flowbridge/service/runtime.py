from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union

from flowbridge.config import Environment, get_settings, reset_settings_cache
from flowbridge.logging import get_logger
from flowbridge.service.analytics import AnalyticsDispatcher
from flowbridge.service.connection import ClientFactory
from flowbridge.service.instances import InstanceManager
from flowbridge.service.messages import MessageRouter
from flowbridge.service.pipeline import ResponsePipeline
from flowbridge.storage.conversations import ConversationStore
from flowbridge.storage.files import build_cipher
from flowbridge.storage.instances import InstanceConfigStore
from flowbridge.storage.pairing import PairingStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, *, client_factory: Optional[ClientFactory] = None):
        self.settings = get_settings()
        cipher = build_cipher(self.settings.encryption_key)
        if cipher is None and self.settings.environment == Environment.PRODUCTION:
            logger.warning(
                "storage_encryption_disabled",
                message="ENCRYPTION_KEY is not set; instance configs and conversations are stored in plain text",
            )

        self.configs = InstanceConfigStore(self.settings.instances_path, cipher=cipher)
        self.conversations = ConversationStore(
            self.settings.conversations_path, cipher=cipher
        )
        self.pairing = PairingStore(self.settings.sessions_path)
        self.pipeline = ResponsePipeline(
            fallback_model=self.settings.fallback_model,
            probe_timeout=self.settings.probe_timeout_seconds,
        )
        self.analytics = AnalyticsDispatcher(
            self.settings.analytics_webhook,
            queue_size=self.settings.analytics_queue_size,
            max_attempts=self.settings.analytics_max_attempts,
        )
        self.instances = InstanceManager(
            self.configs,
            self.pairing,
            self.pipeline,
            client_factory=client_factory,
            client_factory_path=self.settings.messaging_client_factory,
            reconnect_delay=self.settings.reconnect_delay_seconds,
        )
        self.messages = MessageRouter(
            self.instances, self.conversations, self.pipeline, self.analytics
        )
        self.instances.message_handler = self.messages.handle_inbound

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            environment=self.settings.environment.value,
            data_dir=self.settings.data_dir,
            encryption_enabled=cipher is not None,
            analytics_enabled=self.analytics.enabled,
            client_factory=self.settings.messaging_client_factory,
        )

    async def close(self) -> None:
        await self.instances.shutdown()
        await self.analytics.stop()
        await self.pipeline.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, client_factory: Optional[ClientFactory] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed when ENVIRONMENT=test")
        runtime = Runtime(client_factory=client_factory)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """In-process token bucket: ``limit`` tokens refilled evenly over ``window_seconds``.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int(((cost - tokens) / refill_rate)) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
