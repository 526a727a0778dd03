"""
Declared side effects and their dispatcher.

The lifecycle engine never performs I/O. Each transition returns an ordered
list of effect instructions; the Order Store applies the store-level ones
(tracking rows, marking payment paid) inside the transaction, and the
EffectDispatcher executes the rest after commit.

Every effect carries the order code and the status the transition moved to,
which together form the dedupe key consumers use to ignore replays.

Failures of mirrors and side channels (ledger, notifier, stats, events) are
logged and swallowed here. They never reach the caller of the transition.
"""
import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from orderflow.core.exceptions import OrderflowError

logger = logging.getLogger(__name__)


# =============================================================================
# EFFECTS
# =============================================================================

@dataclass(frozen=True)
class Effect:
    order_code: str
    target_status: str

    # Applied by the Order Store in the same transaction as the transition
    in_store: ClassVar[bool] = False

    @property
    def dedupe_key(self) -> Tuple:
        return (type(self).__name__, self.order_code, self.target_status)


@dataclass(frozen=True)
class AppendTracking(Effect):
    status: str = ""
    message: str = ""

    in_store: ClassVar[bool] = True


@dataclass(frozen=True)
class SetPaymentPaid(Effect):
    method: Optional[str] = None  # actual_payment_method: cash | upi

    in_store: ClassVar[bool] = True


@dataclass(frozen=True)
class ScheduleRefund(Effect):
    delay: Optional[float] = None  # None = scheduler default


@dataclass(frozen=True)
class CancelScheduledRefund(Effect):
    pass


@dataclass(frozen=True)
class SyncLedger(Effect):
    bucket: str = "new"

    @property
    def dedupe_key(self) -> Tuple:
        return ("SyncLedger", self.order_code, self.target_status, self.bucket)


@dataclass(frozen=True)
class UpdateLedgerPartner(Effect):
    partner_name: str = ""


@dataclass(frozen=True)
class Notify(Effect):
    template: str = ""
    channel: str = "whatsapp"
    recipient: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    # Distinguishes repeat sends within one status (reassignment, new ETA)
    discriminator: str = ""

    @property
    def dedupe_key(self) -> Tuple:
        return (
            "Notify", self.order_code, self.target_status, self.template,
            self.channel, self.recipient, self.discriminator,
        )


@dataclass(frozen=True)
class UpdateDailyRevenue(Effect):
    amount: int = 0
    at: Optional[datetime] = None


@dataclass(frozen=True)
class EmitEvent(Effect):
    name: str = "orders"


# =============================================================================
# DISPATCHER
# =============================================================================

@dataclass
class DispatchReport:
    executed: List[Effect] = field(default_factory=list)
    skipped: List[Effect] = field(default_factory=list)
    failed: List[Tuple[Effect, str]] = field(default_factory=list)


class EffectDispatcher:
    """
    Executes post-commit effects against the downstream collaborators.

    Collaborators are optional so tests can wire only what they observe.
    With ``run_in_background`` the whole batch runs as a task off the request
    path; ``drain()`` waits for outstanding batches (used on shutdown).
    """

    NOTIFY_MEMORY = 2048

    def __init__(
        self,
        ledger_sync=None,
        notifier=None,
        statistics=None,
        events=None,
        refund_scheduler=None,
        run_in_background: bool = False,
    ):
        self.ledger_sync = ledger_sync
        self.notifier = notifier
        self.statistics = statistics
        self.events = events
        self.refund_scheduler = refund_scheduler
        self.run_in_background = run_in_background
        self._sent: "OrderedDict[Tuple, bool]" = OrderedDict()
        self._tasks: set = set()

    async def dispatch(self, effects: List[Effect], order) -> Optional[DispatchReport]:
        pending = [e for e in effects if not e.in_store]
        if not pending:
            return DispatchReport()

        if self.run_in_background:
            task = asyncio.create_task(self._run(pending, order))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return None

        return await self._run(pending, order)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, effects: List[Effect], order) -> DispatchReport:
        report = DispatchReport()
        for effect in effects:
            try:
                handled = await self._execute(effect, order)
            except OrderflowError as e:
                logger.warning(
                    f"[Effects] {type(effect).__name__} failed for {effect.order_code}: "
                    f"{e.code} {e.message}"
                )
                report.failed.append((effect, e.message))
                continue
            except Exception as e:
                logger.error(
                    f"[Effects] {type(effect).__name__} failed for {effect.order_code}: {e}",
                    exc_info=True,
                )
                report.failed.append((effect, str(e)))
                continue

            if handled:
                report.executed.append(effect)
            else:
                report.skipped.append(effect)
        return report

    async def _execute(self, effect: Effect, order) -> bool:
        if isinstance(effect, SyncLedger):
            if self.ledger_sync is None:
                return False
            await self.ledger_sync.sync(order, effect.bucket)
            return True

        if isinstance(effect, UpdateLedgerPartner):
            if self.ledger_sync is None:
                return False
            await self.ledger_sync.update_partner(order, effect.partner_name)
            return True

        if isinstance(effect, Notify):
            if self.notifier is None or not effect.recipient:
                return False
            if self._already_sent(effect.dedupe_key):
                logger.info(f"[Effects] Duplicate notification suppressed: {effect.dedupe_key}")
                return False
            await self.notifier.send(effect.channel, effect.recipient, effect.template, effect.params)
            return True

        if isinstance(effect, UpdateDailyRevenue):
            if self.statistics is None:
                return False
            await self.statistics.record_completion(order, amount=effect.amount, now=effect.at)
            return True

        if isinstance(effect, ScheduleRefund):
            if self.refund_scheduler is None:
                logger.error(f"[Effects] No refund scheduler wired; refund for {effect.order_code} left pending")
                return False
            await self.refund_scheduler.schedule(effect.order_code, delay=effect.delay)
            return True

        if isinstance(effect, CancelScheduledRefund):
            if self.refund_scheduler is None:
                return False
            self.refund_scheduler.cancel(effect.order_code)
            return True

        if isinstance(effect, EmitEvent):
            if self.events is None:
                return False
            await self.events.emit(effect.name, {"order_code": effect.order_code, "status": effect.target_status})
            return True

        logger.warning(f"[Effects] Unhandled effect {effect!r}")
        return False

    def _already_sent(self, key: Tuple) -> bool:
        if key in self._sent:
            self._sent.move_to_end(key)
            return True
        self._sent[key] = True
        while len(self._sent) > self.NOTIFY_MEMORY:
            self._sent.popitem(last=False)
        return False
