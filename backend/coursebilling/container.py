"""
Explicit wiring of the billing components.

Every component receives its collaborators through its constructor; the
container is the only place that knows the whole graph.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine

from .core.config import Config
from .core.logging_config import get_logger
from .core.security import EncryptionManager
from .db import LedgerStore, create_db_engine
from .events.event_bus import EventBus
from .events.subscribers import register_subscribers
from .integrations.payment_client import PaymentClient
from .integrations.push_notification_client import PushNotificationClient
from .services.analytics import AnalyticsSink, EventBusAnalyticsSink
from .services.billing import BillingEngine
from .services.disputes import DisputeManager
from .services.enrollment import EnrollmentService
from .services.locks import KeyedLocks
from .services.notifications import EventBusNotificationSink, NotificationSink
from .services.payment_methods import PaymentMethodService
from .services.payments import PaymentService
from .services.renewal_scheduler import RenewalScheduler
from .services.reporting import ReportingService
from .services.webhooks import WebhookProcessor

logger = get_logger(__name__)


@dataclass
class Container:
    config: Config
    store: LedgerStore
    event_bus: EventBus
    gateway: PaymentClient
    push_client: PushNotificationClient
    notifier: NotificationSink
    analytics: AnalyticsSink
    enrollment: EnrollmentService
    payments: PaymentService
    payment_methods: PaymentMethodService
    billing: BillingEngine
    webhooks: WebhookProcessor
    disputes: DisputeManager
    reporting: ReportingService
    scheduler: RenewalScheduler

    async def start(self) -> None:
        """Create the schema and bring up background machinery."""
        self.store.create_all()
        await self.event_bus.initialize(num_workers=self.config.notification.event_bus_workers)
        await self.push_client.initialize()
        await self.gateway.initialize()
        if self.config.billing.scheduler_enabled:
            await self.scheduler.start()
        logger.info("Billing services started")

    async def stop(self) -> None:
        """Reverse of `start`; the scheduler finishes its current tick first."""
        await self.scheduler.stop()
        await self.gateway.cleanup()
        await self.event_bus.shutdown()
        await self.push_client.cleanup()
        self.store.dispose()
        logger.info("Billing services stopped")


def build_container(
    config: Config,
    engine: Optional[Engine] = None,
    gateway: Optional[PaymentClient] = None,
    notifier: Optional[NotificationSink] = None,
    analytics: Optional[AnalyticsSink] = None,
) -> Container:
    """
    Assemble the service graph.

    Tests pass their own engine, gateway and sinks; anything omitted is built
    from `config`.
    """
    store = LedgerStore(engine or create_db_engine(config.database))
    event_bus = EventBus(max_queue_size=config.notification.event_queue_size)
    push_client = PushNotificationClient(config.notification)
    register_subscribers(event_bus, push_client)

    gateway = gateway or PaymentClient.from_config(config.gateway)
    notifier = notifier or EventBusNotificationSink(event_bus)
    analytics = analytics or EventBusAnalyticsSink(event_bus)
    encryption = EncryptionManager(config.security)

    # One lock per subscription, shared by renewal, cancellation and webhooks
    subscription_locks = KeyedLocks()

    enrollment = EnrollmentService(store)
    payments = PaymentService(store, gateway, encryption, notifier, analytics, enrollment, config.billing)
    payment_methods = PaymentMethodService(store, gateway, encryption, analytics)
    billing = BillingEngine(store, payments, notifier, analytics, config.billing, subscription_locks)
    webhooks = WebhookProcessor(store, billing, notifier, analytics, config.webhook, subscription_locks)
    disputes = DisputeManager(store, notifier, analytics)
    reporting = ReportingService(store, analytics)
    scheduler = RenewalScheduler(billing, payments, config.billing.renewal_interval_seconds)

    return Container(
        config=config,
        store=store,
        event_bus=event_bus,
        gateway=gateway,
        push_client=push_client,
        notifier=notifier,
        analytics=analytics,
        enrollment=enrollment,
        payments=payments,
        payment_methods=payment_methods,
        billing=billing,
        webhooks=webhooks,
        disputes=disputes,
        reporting=reporting,
        scheduler=scheduler,
    )
