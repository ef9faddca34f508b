# donor_alerts/runtime.py
"""
Everything the process shares, built once at startup from Settings and
handed around by reference. No module-level singletons.
"""
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from donor_alerts.config import Settings
from donor_alerts.infra.memory_store import (
    InMemoryProfileStore,
    InMemoryQueueStore,
    InMemoryRequestStore,
)
from donor_alerts.infra.push_gateway import (
    FcmPushGateway,
    LoggingPushGateway,
    OneSignalTagGateway,
    PushGateway,
    TagGateway,
    load_fcm_credentials,
)
from donor_alerts.infra.servicebus_consumer import ServiceBusConsumer
from donor_alerts.infra.stores import ProfileStore, QueueStore, RequestStore
from donor_alerts.infra.table_client import (
    TableBackend,
    TableProfileStore,
    TableQueueStore,
    TableRequestStore,
)
from donor_alerts.models.events import NotificationQueued, RequestCreated, RequestStatusChanged
from donor_alerts.services.delivery_worker import DeliveryWorker
from donor_alerts.services.event_bus import EventBus
from donor_alerts.services.fanout import FanOutDispatcher
from donor_alerts.services.manual_trigger import ManualTrigger
from donor_alerts.services.notification_queue import NotificationQueue
from donor_alerts.services.requests import RequestService
from donor_alerts.services.scheduler import run_periodically
from donor_alerts.services.status_notifier import StatusChangeNotifier
from donor_alerts.services.sweepers import ExpirySweeper, RequeueSweeper, RetentionSweeper
from donor_alerts.services.tag_broadcast import TagBroadcastNotifier

logger = logging.getLogger(__name__)


def build_push_gateway(settings: Settings) -> PushGateway:
    if settings.fcm_configured:
        credentials = load_fcm_credentials(settings.fcm_credentials_file)
        project_id = settings.fcm_project_id or credentials.project_id
        return FcmPushGateway(project_id, credentials, settings.gateway_timeout_seconds)
    logger.warning("FCM_CREDENTIALS_FILE not set, push messages will only be logged")
    return LoggingPushGateway()


def build_tag_gateway(settings: Settings) -> Optional[TagGateway]:
    if settings.onesignal_configured:
        return OneSignalTagGateway(
            settings.onesignal_app_id, settings.onesignal_api_key, settings.gateway_timeout_seconds
        )
    return None


class Runtime:
    def __init__(
        self,
        settings: Settings,
        requests: RequestStore,
        profiles: ProfileStore,
        queue_store: QueueStore,
        push_gateway: PushGateway,
        tag_gateway: Optional[TagGateway] = None,
        table_backend=None,
    ):
        self.settings = settings
        self.requests = requests
        self.profiles = profiles
        self.queue_store = queue_store
        self.push_gateway = push_gateway
        self.tag_gateway = tag_gateway
        self.table_backend = table_backend

        timeout = settings.store_timeout_seconds
        self.bus = EventBus(max_redeliveries=settings.event_max_redeliveries)
        self.queue = NotificationQueue(queue_store, self.bus, timeout)

        self.request_service = RequestService(requests, self.bus, timeout)
        self.fanout = FanOutDispatcher(
            profiles, self.queue, settings.profile_lookup_batch_size, timeout
        )
        self.status_notifier = StatusChangeNotifier(profiles, self.queue, timeout)
        self.delivery_worker = DeliveryWorker(
            queue_store, push_gateway, timeout, settings.gateway_call_timeout_seconds
        )
        self.manual_trigger = ManualTrigger(profiles, self.queue, timeout)

        self.expiry_sweeper = ExpirySweeper(requests, timeout)
        self.retention_sweeper = RetentionSweeper(
            queue_store, timedelta(hours=settings.retention_hours), timeout
        )
        self.requeue_sweeper = RequeueSweeper(
            queue_store,
            self.queue,
            max_attempts=settings.delivery_max_attempts,
            lookback=timedelta(hours=settings.retention_hours),
            timeout=timeout,
        )

        self.tag_broadcast = (
            TagBroadcastNotifier(tag_gateway, settings.gateway_call_timeout_seconds)
            if tag_gateway is not None
            else None
        )
        self.consumer = ServiceBusConsumer(
            self.bus, settings.service_bus_connection_string, settings.service_bus_queue_name
        )

        self.bus.subscribe(RequestCreated, self.fanout.handle)
        if self.tag_broadcast is not None:
            self.bus.subscribe(RequestCreated, self.tag_broadcast.handle)
        self.bus.subscribe(RequestStatusChanged, self.status_notifier.handle)
        self.bus.subscribe(NotificationQueued, self.delivery_worker.handle)

        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "Runtime":
        if settings.store_backend == "azure":
            backend = TableBackend(settings)
            return cls(
                settings,
                TableRequestStore(backend.requests),
                TableProfileStore(backend.users),
                TableQueueStore(backend.queue),
                build_push_gateway(settings),
                build_tag_gateway(settings),
                table_backend=backend,
            )
        if settings.store_backend != "memory":
            raise ValueError(f"Unknown STORE_BACKEND {settings.store_backend!r}")
        return cls(
            settings,
            InMemoryRequestStore(),
            InMemoryProfileStore(),
            InMemoryQueueStore(),
            build_push_gateway(settings),
            build_tag_gateway(settings),
        )

    async def start(self) -> None:
        if self.table_backend is not None:
            await self.table_backend.ensure_tables()
        if not self.settings.background_tasks_enabled:
            logger.info("Background tasks disabled")
            return
        s = self.settings
        self._tasks = [
            asyncio.create_task(self.bus.run()),
            asyncio.create_task(self.consumer.run()),
            asyncio.create_task(
                run_periodically("expiry", self.expiry_sweeper.run, s.expiry_sweep_interval_seconds)
            ),
            asyncio.create_task(
                run_periodically("retention", self.retention_sweeper.run, s.retention_sweep_interval_seconds)
            ),
            asyncio.create_task(
                run_periodically("requeue", self.requeue_sweeper.run, s.requeue_sweep_interval_seconds)
            ),
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.table_backend is not None:
            await self.table_backend.close()
