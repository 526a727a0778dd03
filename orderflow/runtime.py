"""
Service wiring

Builds one set of collaborators sharing a session factory, lock manager and
event bus. The app lifespan builds the default runtime; tests build their
own with in-memory fakes.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from orderflow.core.events import EventBus
from orderflow.core.locks import KeyedLockManager
from orderflow.jobs.scheduler import RetentionScheduler
from orderflow.services.effects import EffectDispatcher
from orderflow.services.ledger import LedgerSync, build_ledger
from orderflow.services.lifecycle import OrderLifecycleService
from orderflow.services.notifier import CompositeNotifier
from orderflow.services.order_service import OrderService
from orderflow.services.order_store import OrderStore
from orderflow.services.payment_gateway import PaymentGatewayClient, StripeGateway
from orderflow.services.refund_scheduler import RefundScheduler
from orderflow.services.retention import RetentionPipeline
from orderflow.services.statistics import StatisticsAggregator

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    store: OrderStore
    statistics: StatisticsAggregator
    events: EventBus
    ledger_sync: LedgerSync
    notifier: object
    gateway_client: PaymentGatewayClient
    dispatcher: EffectDispatcher
    lifecycle: OrderLifecycleService
    refunds: RefundScheduler
    retention: RetentionPipeline
    orders: OrderService
    scheduler: RetentionScheduler

    async def close(self):
        await self.scheduler.stop()
        await self.refunds.shutdown()
        await self.dispatcher.drain()
        for client in (self.notifier, self.ledger_sync.ledger):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def build_runtime(
    session_factory=None,
    ledger=None,
    gateway=None,
    notifier=None,
    gateway_client: Optional[PaymentGatewayClient] = None,
    refund_delay: Optional[float] = None,
    refund_sleep=None,
    background_effects: bool = False,
) -> Runtime:
    events = EventBus()
    store = OrderStore(session_factory=session_factory, locks=KeyedLockManager())
    statistics = StatisticsAggregator(session_factory=session_factory)
    ledger_sync = LedgerSync(ledger if ledger is not None else build_ledger(), store=store)
    notifier = notifier if notifier is not None else CompositeNotifier()
    gateway_client = gateway_client or PaymentGatewayClient(gateway if gateway is not None else StripeGateway())

    dispatcher = EffectDispatcher(
        ledger_sync=ledger_sync,
        notifier=notifier,
        statistics=statistics,
        events=events,
        run_in_background=background_effects,
    )
    lifecycle = OrderLifecycleService(store, dispatcher=dispatcher)

    scheduler_kwargs = {"default_delay": refund_delay}
    if refund_sleep is not None:
        scheduler_kwargs["sleep"] = refund_sleep
    refunds = RefundScheduler(store, gateway_client, lifecycle=lifecycle, **scheduler_kwargs)
    # Scheduler and engine reference each other
    dispatcher.refund_scheduler = refunds

    retention = RetentionPipeline(statistics, session_factory=session_factory, events=events)
    orders = OrderService(store, statistics, dispatcher=dispatcher, gateway_client=gateway_client)
    scheduler = RetentionScheduler(retention, ledger_sync=ledger_sync)

    return Runtime(
        store=store,
        statistics=statistics,
        events=events,
        ledger_sync=ledger_sync,
        notifier=notifier,
        gateway_client=gateway_client,
        dispatcher=dispatcher,
        lifecycle=lifecycle,
        refunds=refunds,
        retention=retention,
        orders=orders,
        scheduler=scheduler,
    )
