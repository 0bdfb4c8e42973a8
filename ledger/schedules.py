import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from ledger.notifications import ScheduleAction, from_timestamp
from ledger.patch import plan_id_from

logger = logging.getLogger(__name__)

PERIOD_ACTIONS = (ScheduleAction.CREATED, ScheduleAction.UPDATED, ScheduleAction.COMPLETED)


@dataclass(frozen=True)
class ScheduleExpiry:
    plan_id: str
    schedule_id: Optional[str]
    expires_at: Optional[datetime]


ExpiryHook = Callable[[ScheduleExpiry], None]


def log_expiry(expiry: ScheduleExpiry):
    logger.warning(
        "Plan %s billing schedule %s ends at %s",
        expiry.plan_id, expiry.schedule_id, expiry.expires_at,
    )


class ScheduleTracker:
    """Keeps a plan's billing period in step with its subscription schedule."""

    def __init__(self, store, expiry_hooks: Optional[List[ExpiryHook]] = None):
        self.store = store
        self.expiry_hooks = list(expiry_hooks or [])

    def register_expiry_hook(self, hook: ExpiryHook):
        self.expiry_hooks.append(hook)

    def handle(self, notification):
        schedule = notification.object
        action = notification.action
        plan_id = plan_id_from(schedule)
        logger.info("subscription_schedule.%s: id=%s plan=%s", action.value, schedule.get("id"), plan_id)

        if not plan_id:
            return None
        if action in PERIOD_ACTIONS:
            return self.update_period(plan_id, schedule)
        if action == ScheduleAction.EXPIRING:
            return self.expiring(plan_id, schedule)
        if action == ScheduleAction.CANCELED:
            canceled_at = from_timestamp(schedule.get("canceled_at")) or notification.occurred_at
            return self.store.mark_plan_schedule_canceled(plan_id, canceled_at)
        if action == ScheduleAction.RELEASED:
            logger.info(
                "Schedule %s released subscription %s",
                schedule.get("id"), schedule.get("released_subscription") or schedule.get("subscription"),
            )
        return None

    def update_period(self, plan_id, schedule):
        phases = schedule.get("phases") or []
        if not phases:
            return None
        start = from_timestamp(phases[0].get("start_date"))
        end = from_timestamp(phases[0].get("end_date"))
        if start is None and end is None:
            return None

        plan = self.store.update_plan_period(plan_id, start, end)
        if plan is None:
            logger.warning("Schedule %s references unknown plan %s", schedule.get("id"), plan_id)
        else:
            logger.info("Plan %s period set to %s - %s", plan_id, start, end)
        return plan

    def expiring(self, plan_id, schedule) -> ScheduleExpiry:
        phases = schedule.get("phases") or []
        expires_at = from_timestamp(phases[-1].get("end_date")) if phases else None
        expiry = ScheduleExpiry(plan_id=plan_id, schedule_id=schedule.get("id"), expires_at=expires_at)
        logger.info("Schedule %s for plan %s expiring at %s", expiry.schedule_id, plan_id, expires_at)

        for hook in self.expiry_hooks:
            try:
                hook(expiry)
            except Exception:
                logger.exception("Expiry hook %r failed for plan %s", hook, plan_id)
        return expiry
