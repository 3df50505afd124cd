"""Cost and budget tracking for generative backend calls."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .models import (
    AlertSeverity,
    Breakdown,
    Budget,
    BudgetAlert,
    BudgetPeriod,
    BudgetStatus,
    CostEvent,
    CostForecast,
    CostSummary,
    utcnow,
)

logger = logging.getLogger(__name__)

HIGH_COST_THRESHOLD = 1.0
EVENT_RETENTION = timedelta(days=90)
ALERT_RETENTION = timedelta(days=30)
SWEEP_INTERVAL = 24 * 60 * 60  # seconds

# (severity, band start); an alert fires when spend crosses into [start, start + 1)
ALERT_BANDS = [
    (AlertSeverity.CRITICAL, 90.0),
    (AlertSeverity.WARNING, 70.0),
]


def budget_health(percentage: float) -> str:
    if percentage >= 90:
        return "critical"
    if percentage >= 70:
        return "warning"
    return "healthy"


def seconds_until_midnight(now: datetime) -> float:
    """Seconds from a local ``now`` to the next local midnight."""
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (tomorrow - now).total_seconds()


def seconds_until_next_month(now: datetime) -> float:
    """Seconds from a local ``now`` to 00:00 on the first of the next month."""
    if now.month == 12:
        first = now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    else:
        first = now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return (first - now).total_seconds()


def as_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def analyze_trend(costs: list[float]) -> str:
    """Compare the mean of the last three daily costs with the three before."""
    recent = costs[-3:]
    earlier = costs[-6:-3]
    if len(costs) < 2 or not recent or not earlier:
        return "stable"

    recent_avg = sum(recent) / len(recent)
    earlier_avg = sum(earlier) / len(earlier)
    if earlier_avg == 0:
        return "increasing" if recent_avg > 0 else "stable"

    change = (recent_avg - earlier_avg) / earlier_avg * 100
    if change > 10:
        return "increasing"
    if change < -10:
        return "decreasing"
    return "stable"


class CostTracker:
    """Append-only cost event log with budgets, alerts and a kill switch.

    Every mutation of the log, the budgets or the alerts runs under one lock so
    that two concurrent events never accumulate from the same ``spent`` value.
    """

    def __init__(
        self,
        daily_limit: Optional[float] = 10.0,
        monthly_limit: Optional[float] = 200.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._events: list[CostEvent] = []
        self._alerts: list[BudgetAlert] = []
        self._budgets: dict[tuple[Optional[str], str], Budget] = {}
        self._tasks: list[asyncio.Task] = []
        self.stopped = False

        if daily_limit is not None:
            self._put_budget(Budget(key="default_daily", limit=daily_limit, period=BudgetPeriod.DAILY))
        if monthly_limit is not None:
            self._put_budget(Budget(key="default_monthly", limit=monthly_limit, period=BudgetPeriod.MONTHLY))

    @classmethod
    def from_config(cls, config) -> "CostTracker":
        return cls(daily_limit=config.budget.daily_limit, monthly_limit=config.budget.monthly_limit)

    def _put_budget(self, budget: Budget):
        self._budgets[(budget.user_id, budget.key)] = budget

    # ─────────────────────────────────────────────────────────────
    # Recording
    # ─────────────────────────────────────────────────────────────

    async def track(self, event: CostEvent) -> CostEvent:
        """Record one billable call and attribute it to every matching budget."""
        async with self._lock:
            self._events.append(event)
            for budget in self._budgets.values():
                if not budget.applies_to(event.user_id):
                    continue
                before = budget.percentage()
                budget.spent += event.cost
                self._check_thresholds(budget, before, event)

        if event.cost > HIGH_COST_THRESHOLD:
            logger.warning(
                f"High cost AI request: {event.cost:.4f} for {event.usage.total_tokens} tokens "
                f"({event.request_type.value}, user {event.user_id})"
            )
        logger.info(f"Cost tracked {event.id}: {event.cost:.4f} ({event.usage.total_tokens} tokens, {event.request_type.value})")
        return event

    def _check_thresholds(self, budget: Budget, before: float, event: CostEvent):
        after = budget.percentage()
        for severity, start in ALERT_BANDS:
            if before < start <= after < start + 1:
                label = "Critical" if severity == AlertSeverity.CRITICAL else "Warning"
                alert = BudgetAlert(
                    timestamp=self._clock(),
                    user_id=event.user_id,
                    budget_key=budget.key,
                    budget_type=budget.period,
                    limit=budget.limit,
                    spent=budget.spent,
                    severity=severity,
                    message=f"{label}: {after:.1f}% of {budget.period.value} budget used",
                )
                self._alerts.append(alert)
                logger.warning(f"Budget alert for {budget.key}: {alert.message}")

    # ─────────────────────────────────────────────────────────────
    # Reporting
    # ─────────────────────────────────────────────────────────────

    def events(self) -> list[CostEvent]:
        return list(self._events)

    def summarize(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> CostSummary:
        """Aggregate events in ``[start, end]`` (default: last 30 days). Naive bounds are UTC."""
        end = as_utc(end or self._clock())
        start = as_utc(start) if start else end - timedelta(days=30)
        summary = CostSummary(start=start, end=end)

        for event in self._events:
            if not start <= as_utc(event.timestamp) <= end:
                continue
            if user_id and event.user_id != user_id:
                continue
            if agent_id and event.agent_id != agent_id:
                continue
            if task_id and event.task_id != task_id:
                continue

            summary.total_cost += event.cost
            summary.total_tokens += event.usage.total_tokens
            summary.total_requests += 1

            day = as_utc(event.timestamp).astimezone(timezone.utc).date().isoformat()
            for breakdown, key in (
                (summary.by_model, event.model),
                (summary.by_request_type, event.request_type.value),
                (summary.by_day, day),
            ):
                entry = breakdown.setdefault(key, Breakdown())
                entry.cost += event.cost
                entry.tokens += event.usage.total_tokens
                entry.requests += 1

        return summary

    def forecast(self, days: int = 7) -> CostForecast:
        now = self._clock()
        last_week = self.summarize(start=now - timedelta(days=7), end=now)

        daily_average = last_week.total_cost / 7
        daily_costs = [last_week.by_day[day].cost for day in sorted(last_week.by_day)]
        if len(daily_costs) >= 5:
            confidence = "high"
        elif len(daily_costs) >= 3:
            confidence = "medium"
        else:
            confidence = "low"

        return CostForecast(
            days=days,
            projected_cost=daily_average * days,
            projected_tokens=last_week.total_tokens / 7 * days,
            confidence=confidence,
            daily_average=daily_average,
            trend=analyze_trend(daily_costs),
        )

    # ─────────────────────────────────────────────────────────────
    # Budgets and alerts
    # ─────────────────────────────────────────────────────────────

    async def set_budget(
        self, key: str, limit: float, period: BudgetPeriod, user_id: Optional[str] = None
    ) -> Budget:
        async with self._lock:
            if self.stopped:
                logger.warning(f"Emergency stop active - budget {key} pinned to zero")
                limit = 0.0
            budget = Budget(key=key, user_id=user_id, limit=limit, period=BudgetPeriod(period))
            self._put_budget(budget)
        logger.info(f"Budget set: {key} = {limit} ({budget.period.value}, user {user_id})")
        return budget

    def get_budget_status(self, key: str, user_id: Optional[str] = None) -> Optional[BudgetStatus]:
        budget = self._budgets.get((user_id, key))
        if budget is None:
            return None

        percentage = budget.percentage()
        return BudgetStatus(
            key=budget.key,
            user_id=budget.user_id,
            limit=budget.limit,
            spent=budget.spent,
            remaining=budget.limit - budget.spent,
            percentage=percentage,
            period=budget.period,
            status=budget_health(percentage),
        )

    def budgets(self) -> list[BudgetStatus]:
        return [self.get_budget_status(key, user_id) for user_id, key in self._budgets]

    def exhausted(self, user_id: Optional[str] = None) -> Optional[BudgetStatus]:
        """First budget applying to ``user_id`` that is at or above 100%.

        After an emergency stop there is always one, even if no budget applies.
        """
        for budget in self._budgets.values():
            if budget.applies_to(user_id) and budget.percentage() >= 100:
                return self.get_budget_status(budget.key, budget.user_id)
        if self.stopped:
            return BudgetStatus(
                key="emergency_stop",
                user_id=user_id,
                limit=0.0,
                spent=0.0,
                remaining=0.0,
                percentage=100.0,
                period=BudgetPeriod.PROJECT,
                status="critical",
            )
        return None

    def alerts(self, user_id: Optional[str] = None) -> list[BudgetAlert]:
        if user_id:
            return [a for a in self._alerts if a.user_id == user_id]
        return list(self._alerts)

    async def clear_alerts(self, user_id: Optional[str] = None):
        async with self._lock:
            if user_id:
                self._alerts = [a for a in self._alerts if a.user_id != user_id]
            else:
                self._alerts = []

    async def emergency_stop(self):
        """Zero every budget limit. Stays in effect until the process restarts."""
        logger.error("Emergency stop triggered - all AI budgets set to zero")
        async with self._lock:
            for budget in self._budgets.values():
                budget.limit = 0.0
            self.stopped = True

    # ─────────────────────────────────────────────────────────────
    # Rollover and retention
    # ─────────────────────────────────────────────────────────────

    async def reset_period(self, period: BudgetPeriod):
        async with self._lock:
            for budget in self._budgets.values():
                if budget.period == period:
                    budget.spent = 0.0
                    logger.info(f"{period.value.capitalize()} budget reset: {budget.key}")

    async def purge_expired(self, now: Optional[datetime] = None):
        now = as_utc(now or self._clock())
        async with self._lock:
            before = len(self._events), len(self._alerts)
            self._events = [e for e in self._events if e.timestamp > now - EVENT_RETENTION]
            self._alerts = [a for a in self._alerts if a.timestamp > now - ALERT_RETENTION]
        dropped_events = before[0] - len(self._events)
        dropped_alerts = before[1] - len(self._alerts)
        if dropped_events or dropped_alerts:
            logger.info(f"Retention sweep dropped {dropped_events} events and {dropped_alerts} alerts")

    async def _daily_reset_loop(self):
        while True:
            await asyncio.sleep(seconds_until_midnight(datetime.now()))
            await self.reset_period(BudgetPeriod.DAILY)

    async def _monthly_reset_loop(self):
        while True:
            await asyncio.sleep(seconds_until_next_month(datetime.now()))
            await self.reset_period(BudgetPeriod.MONTHLY)

    async def _retention_loop(self):
        while True:
            await asyncio.sleep(SWEEP_INTERVAL)
            await self.purge_expired()

    def start(self):
        """Arm the rollover and retention tasks on the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._daily_reset_loop()),
            asyncio.create_task(self._monthly_reset_loop()),
            asyncio.create_task(self._retention_loop()),
        ]

    async def stop(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
