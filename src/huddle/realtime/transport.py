"""Redis pub/sub relay carrying realtime events between processes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_RECOVERY_BASE_DELAY = 0.5
_RECOVERY_MAX_DELAY = 30.0

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(slots=True)
class BrokerConfig:
    """Configuration used for wiring the relay."""

    redis_url: str
    redis_prefix: str = "huddle.realtime"
    node_id: str | None = None


class TransportUnavailableError(RuntimeError):
    """Raised when the relay cannot reach its broker."""


@dataclass(slots=True)
class _ChannelReader:
    topic: str
    channel: str
    handler: MessageHandler
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True


class RedisTransport:
    """Publishes JSON payloads to prefixed Redis channels and feeds subscribers."""

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._redis: Any | None = None
        self._readers: list[_ChannelReader] = []
        self._recovery_task: asyncio.Task[Any] | None = None

    @property
    def node_id(self) -> str | None:
        return self._config.node_id

    def channel_name(self, topic: str) -> str:
        prefix = self._config.redis_prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    async def start(self) -> None:
        if self._redis is not None:
            return
        client = redis_asyncio.from_url(
            self._config.redis_url, encoding="utf-8", decode_responses=True
        )
        try:
            await client.ping()
        except _REDIS_ERRORS as exc:
            logger.exception("Failed to connect to Redis realtime relay")
            await client.aclose()
            raise TransportUnavailableError("Redis relay is unavailable") from exc
        self._redis = client

    async def stop(self) -> None:
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        for reader in list(self._readers):
            reader.active = False
            await self._pause(reader)
        self._readers.clear()
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis relay is not started")
        channel = self.channel_name(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload))
        except _REDIS_ERRORS as exc:
            self._trigger_recovery("publish_failed")
            raise TransportUnavailableError("Redis relay is unavailable") from exc
        logger.debug("Relayed realtime payload", extra={"channel": channel})

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis relay is not started")
        reader = _ChannelReader(topic=topic, channel=self.channel_name(topic), handler=handler)
        self._readers.append(reader)
        await self._attach(reader)

    # ------------------------------------------------------------------
    # Readers and recovery
    # ------------------------------------------------------------------
    async def _attach(self, reader: _ChannelReader) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis relay is not started")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(reader.channel)
        except _REDIS_ERRORS as exc:
            with contextlib.suppress(Exception):
                await pubsub.aclose()
            raise TransportUnavailableError("Redis relay is unavailable") from exc
        reader.pubsub = pubsub
        reader.task = asyncio.create_task(self._read(reader, pubsub), name=f"realtime-{reader.channel}")
        reader.task.add_done_callback(lambda task: self._on_reader_done(reader, task))

    async def _read(self, reader: _ChannelReader, pubsub: Any) -> None:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            raw = message.get("data")
            if not isinstance(raw, str):
                continue
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Discarded malformed realtime payload", extra={"channel": reader.channel})
                continue
            try:
                await reader.handler(payload)
            except Exception:
                logger.exception("Realtime handler failed", extra={"channel": reader.channel})

    def _on_reader_done(self, reader: _ChannelReader, task: asyncio.Task[Any]) -> None:
        reader.task = None
        if not reader.active or task.cancelled():
            return
        exc = task.exception()
        logger.warning(
            "Redis relay reader stopped; scheduling recovery",
            exc_info=exc,
            extra={"channel": reader.channel},
        )
        self._trigger_recovery("reader_stopped")

    async def _pause(self, reader: _ChannelReader) -> None:
        task, pubsub = reader.task, reader.pubsub
        reader.task = None
        reader.pubsub = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if pubsub is not None:
            with contextlib.suppress(Exception):
                await pubsub.unsubscribe(reader.channel)
            with contextlib.suppress(Exception):
                await pubsub.aclose()

    def _trigger_recovery(self, reason: str) -> None:
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis relay recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(self._recover(reason), name="realtime-recovery")

    async def _recover(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(min(_RECOVERY_BASE_DELAY * (2**attempt), _RECOVERY_MAX_DELAY))
            try:
                for reader in self._readers:
                    reader.active = False
                    await self._pause(reader)
                if self._redis is not None:
                    with contextlib.suppress(Exception):
                        await self._redis.aclose()
                    self._redis = None
                await self.start()
                for reader in self._readers:
                    reader.active = True
                    await self._attach(reader)
            except TransportUnavailableError:
                attempt += 1
                logger.warning(
                    "Redis relay recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        logger.info("Redis relay recovered", extra={"reason": reason, "subscriptions": len(self._readers)})
        self._recovery_task = None
