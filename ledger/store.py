import logging
from dataclasses import replace
from typing import List, NamedTuple, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from ledger.errors import PlanNotFound, UnresolvablePayment
from ledger.models import Payment, Plan, utcnow
from ledger.resolver import IdentityResolver

logger = logging.getLogger(__name__)

MAX_UPSERT_ATTEMPTS = 3

IDENTITY_COLUMNS = (
    ("checkout_session_id", Payment.stripe_checkout_session_id),
    ("payment_intent_id", Payment.stripe_payment_intent_id),
    ("charge_id", Payment.stripe_charge_id),
)


class UpsertResult(NamedTuple):
    payment: Payment
    created: bool


class LedgerStore:
    """Durable storage for payments and plan billing periods.

    Every payment mutation goes through ``upsert``, which runs the lookup and
    the write in one locked transaction.
    """

    def __init__(self, db: Session, resolver: Optional[IdentityResolver] = None):
        self.db = db
        self.resolver = resolver or IdentityResolver()

    def upsert(self, patch, on_insert: Optional[dict] = None) -> UpsertResult:
        """Find-or-create the payment ``patch`` refers to and merge it in.

        ``on_insert`` holds column values applied only when a new row is created.
        A duplicate insert rejected by a unique key means another writer won the
        race; the transaction is replayed and lands on that writer's row.
        """
        for attempt in range(1, MAX_UPSERT_ATTEMPTS + 1):
            try:
                result = self._find_or_create(patch, on_insert or {})
                self.db.commit()
                return result
            except IntegrityError:
                self.db.rollback()
                if attempt == MAX_UPSERT_ATTEMPTS:
                    raise
                logger.info("Concurrent insert for %s, retrying (attempt %s)", patch.describe(), attempt)
            except Exception:
                self.db.rollback()
                raise

    def _find_or_create(self, patch, on_insert):
        payment = self.resolver.resolve(self.db, patch)
        created = False

        if payment is None:
            if not patch.plan_id:
                raise UnresolvablePayment(f"No payment matches {patch.describe()} and no plan to create one")
            if self.db.get(Plan, patch.plan_id) is None:
                raise PlanNotFound(patch.plan_id)
            payment = Payment(plan_id=patch.plan_id, created_at=utcnow(), **on_insert)
            self.db.add(payment)
            created = True
        else:
            patch = self._drop_keys_owned_elsewhere(payment, patch)

        patch.apply_to(payment)
        self.db.flush()
        return UpsertResult(payment, created)

    def _drop_keys_owned_elsewhere(self, payment, patch):
        """Drop identity keys that already belong to a different payment."""
        changes = {}
        for attr, column in IDENTITY_COLUMNS:
            value = getattr(patch, attr)
            if not value or getattr(payment, column.key) == value:
                continue
            owner = self.db.execute(select(Payment.id).where(column == value)).scalar()
            if owner is not None and owner != payment.id:
                changes[attr] = None
        return replace(patch, **changes) if changes else patch

    def get_plan(self, plan_id) -> Optional[Plan]:
        try:
            return self.db.get(Plan, plan_id)
        finally:
            self.db.commit()

    def update_plan_period(self, plan_id, start=None, end=None) -> Optional[Plan]:
        values = {}
        if start is not None:
            values["current_period_start"] = start
        if end is not None:
            values["current_period_end"] = end
        return self._update_plan(plan_id, values)

    def mark_plan_schedule_canceled(self, plan_id, canceled_at) -> Optional[Plan]:
        return self._update_plan(plan_id, {"schedule_canceled_at": canceled_at})

    def _update_plan(self, plan_id, values) -> Optional[Plan]:
        try:
            plan = self.db.get(Plan, plan_id)
            if plan is None:
                return None
            for attr, value in values.items():
                setattr(plan, attr, value)
            self.db.commit()
            return plan
        except Exception:
            self.db.rollback()
            raise

    def update_subscription_period(self, subscription_id, start=None, end=None) -> int:
        values = {}
        if start is not None:
            values["current_period_start"] = start
        if end is not None:
            values["current_period_end"] = end
        if not values:
            return 0
        values["updated_at"] = utcnow()
        try:
            result = self.db.execute(
                update(Payment)
                .where(Payment.stripe_subscription_id == subscription_id)
                .values(**values)
            )
            self.db.commit()
            return result.rowcount
        except Exception:
            self.db.rollback()
            raise

    def payment_history(self, user_id) -> List[Payment]:
        try:
            stmt = (
                select(Payment)
                .options(selectinload(Payment.plan))
                .where(Payment.user_id == user_id)
                .order_by(Payment.created_at.desc(), Payment.id.desc())
            )
            return list(self.db.execute(stmt).scalars())
        finally:
            self.db.commit()
