"""Engine wiring and lifecycle.

``NotificationEngine`` builds every component from ``MainConfig`` and owns
the background work: the scheduled job runner, the retry re-driver, bus
consumers and the push gateway HTTP session. Use it as an async context manager or call
``start()`` / ``stop()`` explicitly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Self, TextIO

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # pyright: ignore[reportMissingTypeStubs]

from notification_router.channels.factory import build_channel_registry
from notification_router.core.batch import BatchOrchestrator
from notification_router.core.config import MainConfig
from notification_router.core.events import InMemoryEventBus, NotificationEventConsumer, NotificationEventProducer
from notification_router.core.pipeline import DeliveryPipeline
from notification_router.core.registry import ChannelRegistry
from notification_router.core.retry import DeadLetterQueue, RetryCoordinator, RetryRedriver
from notification_router.core.scheduler import NotificationScheduler
from notification_router.core.service import NotificationService
from notification_router.storage.memory import (
    InMemoryNotificationStore,
    InMemoryRecipientDirectory,
    InMemoryScheduledJobStore,
)
from notification_router.types import (
    Clock,
    NotificationStore,
    RecipientDirectory,
    ScheduledJobStore,
    Sleeper,
)
from notification_router.types.models import utc_now
from notification_router.utils.http_client import AIOHTTPClient
from notification_router.utils.logging import get_logger, log_with_context

__all__ = ["NotificationEngine"]


class NotificationEngine:
    """Composition root for the dispatch engine.

    Args:
        config: Validated configuration; defaults to a console-only setup
        directory: Recipient lookup (empty in-memory directory by default)
        store: Notification store (in-memory by default)
        job_store: Scheduled job store (in-memory by default)
        registry: Pre-built channel registry; built from config when omitted
        channel_stream: Output stream for console channels
        clock: Time source shared by every component
        sleeper: Awaitable pause shared by batch pauses and bus redelivery
        job_runner: APScheduler instance firing scheduled deliveries; the
            scheduler builds its own when omitted
    """

    def __init__(
        self,
        config: MainConfig | None = None,
        *,
        directory: RecipientDirectory | None = None,
        store: NotificationStore | None = None,
        job_store: ScheduledJobStore | None = None,
        registry: ChannelRegistry | None = None,
        channel_stream: TextIO | None = None,
        clock: Clock = utc_now,
        sleeper: Sleeper = asyncio.sleep,
        job_runner: AsyncIOScheduler | None = None,
        logger_obj: logging.Logger | None = None,
    ) -> None:
        self.config: MainConfig = config if config is not None else MainConfig()
        self._logger: logging.Logger = logger_obj or get_logger(__name__)
        self._started: bool = False

        self.directory: RecipientDirectory = directory if directory is not None else InMemoryRecipientDirectory()
        self.store: NotificationStore = store if store is not None else InMemoryNotificationStore()
        self.job_store: ScheduledJobStore = job_store if job_store is not None else InMemoryScheduledJobStore()

        self._http_client: AIOHTTPClient | None = None
        if registry is None:
            webhook = self.config.channels.push.webhook
            if webhook.enabled:
                self._http_client = AIOHTTPClient(
                    max_retries=webhook.max_retries,
                    default_timeout_seconds=webhook.timeout_seconds,
                )
            registry = build_channel_registry(
                self.config.channels,
                http_client=self._http_client,
                stream=channel_stream,
            )
        self.registry: ChannelRegistry = registry

        self.dead_letters: DeadLetterQueue = DeadLetterQueue()
        self.pipeline: DeliveryPipeline = DeliveryPipeline(
            self.registry,
            self.store,
            send_timeout_seconds=self.config.delivery.send_timeout_seconds,
            clock=clock,
        )
        self.coordinator: RetryCoordinator = RetryCoordinator(
            self.store,
            self.pipeline,
            self.dead_letters,
            max_retries=self.config.retry.max_retries,
            clock=clock,
        )
        self.redriver: RetryRedriver = RetryRedriver(
            self.coordinator,
            self.store,
            poll_seconds=self.config.retry.redrive_poll_seconds,
            clock=clock,
        )
        self.scheduler: NotificationScheduler = NotificationScheduler(
            self.job_store,
            self.pipeline.deliver_scheduled,
            runner=job_runner,
            job_group=self.config.scheduler.job_group,
            misfire_buffer_seconds=self.config.scheduler.misfire_buffer_seconds,
            recover_on_start=self.config.scheduler.recover_on_start,
            clock=clock,
        )

        self.bus: InMemoryEventBus | None = None
        self.producer: NotificationEventProducer | None = None
        self.consumer: NotificationEventConsumer | None = None
        if self.config.bus.enabled:
            self.bus = InMemoryEventBus()
            self.producer = NotificationEventProducer(self.bus, clock=clock)
            self.consumer = NotificationEventConsumer(
                self.store,
                self.pipeline,
                self.producer,
                self.dead_letters,
                max_transport_retries=self.config.bus.transport_max_retries,
                base_delay_ms=self.config.bus.retry_base_delay_ms,
                max_delay_ms=self.config.bus.retry_max_delay_ms,
                clock=clock,
                sleeper=sleeper,
            )
            self.consumer.subscribe(self.bus)
            self.coordinator.set_escalation_hook(self.producer.escalate_notification)

        self.batches: BatchOrchestrator = BatchOrchestrator(
            self.directory,
            self.store,
            self.pipeline,
            self.scheduler,
            defaults=self.config.batch.default_settings(),
            max_parallel_chunks=self.config.batch.max_parallel_chunks,
            clock=clock,
            sleeper=sleeper,
        )
        self.service: NotificationService = NotificationService(
            self.store,
            self.directory,
            self.pipeline,
            self.coordinator,
            self.scheduler,
            self.batches,
            producer=self.producer,
            clock=clock,
        )

    @property
    def is_running(self) -> bool:
        return self._started

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.stop()

    async def start(self) -> None:
        if self._started:
            return
        if self._http_client is not None:
            await self._http_client.open()
        await self.scheduler.start()
        await self.redriver.start()
        if self.bus is not None:
            await self.bus.start()
        self._started = True

        log_with_context(
            self._logger,
            logging.INFO,
            "Notification engine started",
            extra={
                "channels": [descriptor.name for descriptor in self.registry.list_all()],
                "bus_enabled": self.bus is not None,
            },
        )

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self.bus is not None:
            await self.bus.stop()
        if self.consumer is not None:
            await self.consumer.stop()
        await self.redriver.stop()
        await self.scheduler.shutdown()
        if self._http_client is not None:
            await self._http_client.close()
        self._logger.info("Notification engine stopped")

    async def drain(self) -> None:
        """Wait until the bus is idle and no redelivery is pending."""
        if self.bus is None or self.consumer is None:
            return
        while True:
            await self.bus.join()
            if not self.consumer.pending_redeliveries:
                break
            await self.consumer.wait_for_redeliveries()
