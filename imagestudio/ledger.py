"""Period-scoped usage ledger.

One ``UsageRecord`` per email is current at any instant: the newest record
whose ``current_period_end`` lies in the future. Consumption goes through a
single conditional UPDATE so concurrent requests cannot push
``total_usage`` past the limit.
"""

import logging
from dataclasses import dataclass

from dateutil.relativedelta import relativedelta
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .entitlements import resolve_limit
from .errors import QuotaExceeded, StoreError, ValidationError
from .extensions import db
from .logs import log_step
from .models import Action, UsageRecord, utcnow

logger = logging.getLogger(__name__)

BILLING_PERIOD = relativedelta(months=1)

COUNTERS = {
    Action.GENERATE: UsageRecord.generation_count,
    Action.EDIT: UsageRecord.edit_count,
}


@dataclass(frozen=True)
class Accepted:
    usage: dict
    limit: int
    remaining: int

    @property
    def usage_after(self):
        return self.usage["total_usage"]

    def to_dict(self):
        return {
            "success": True,
            "usage": self.usage,
            "limit": self.limit,
            "remaining": self.remaining,
        }


@dataclass(frozen=True)
class Rejected:
    current_usage: int
    limit: int
    tier: str

    def to_error(self):
        return QuotaExceeded(self.current_usage, self.limit, self.tier)


def coerce_action(action):
    if isinstance(action, Action):
        return action
    try:
        return Action(str(action).strip().lower())
    except ValueError:
        raise ValidationError("action must be 'generate' or 'edit'") from None


def month_window(now):
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return start, start + BILLING_PERIOD


def _store_failure(step, email, err):
    db.session.rollback()
    log_step(logger, step, logging.ERROR, email=email, error=str(err))
    return StoreError(step.lower())


def _current_record(email, now):
    return (
        UsageRecord.query.filter(
            UsageRecord.email == email,
            UsageRecord.current_period_end > now,
        )
        .order_by(UsageRecord.current_period_start.desc())
        .first()
    )


def _latest_record(email):
    return (
        UsageRecord.query.filter(UsageRecord.email == email)
        .order_by(UsageRecord.current_period_end.desc())
        .first()
    )


def get_or_create_current_period(email, user_id=None, now=None) -> UsageRecord:
    now = now or utcnow()
    try:
        record = _current_record(email, now)
        if record is not None:
            return record

        start, end = month_window(now)
        # Start after a reset window that ran into this month.
        latest = _latest_record(email)
        if latest is not None and start < latest.current_period_end <= now:
            start = latest.current_period_end

        record = UsageRecord(
            email=email,
            user_id=user_id,
            generation_count=0,
            edit_count=0,
            total_usage=0,
            current_period_start=start,
            current_period_end=end,
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            # Another request created this period first; (email, start) is unique.
            db.session.rollback()
            log_step(logger, "Usage record created concurrently, re-reading", email=email)
            record = _current_record(email, now)
            if record is None:
                raise StoreError("failed to create usage record")
            return record
        log_step(logger, "Created new usage record", usage=record.to_dict())
    except SQLAlchemyError as e:
        raise _store_failure("Failed to create usage record", email, e) from e
    return record


def try_consume(email, action, user_id=None):
    """Consume one unit of quota for ``action``; returns Accepted or Rejected."""
    action = coerce_action(action)
    record = get_or_create_current_period(email, user_id=user_id)
    entitlement = resolve_limit(email)
    limit = entitlement.limit

    if record.total_usage >= limit:
        log_step(logger, "Usage limit reached", email=email, current=record.total_usage, limit=limit)
        return Rejected(record.total_usage, limit, entitlement.tier.value)

    counter = COUNTERS[action]
    stmt = (
        update(UsageRecord)
        .where(UsageRecord.id == record.id, UsageRecord.total_usage < limit)
        .values(
            {
                UsageRecord.total_usage: UsageRecord.total_usage + 1,
                counter: counter + 1,
                UsageRecord.updated_at: utcnow(),
            }
        )
        .execution_options(synchronize_session=False)
    )
    try:
        updated = db.session.execute(stmt).rowcount
        db.session.commit()
        db.session.refresh(record)
    except SQLAlchemyError as e:
        raise _store_failure("Failed to update usage", email, e) from e

    if updated == 0:
        # A concurrent request consumed the last unit between read and write.
        log_step(logger, "Usage limit reached", email=email, current=record.total_usage, limit=limit)
        return Rejected(record.total_usage, limit, entitlement.tier.value)

    remaining = max(0, limit - record.total_usage)
    log_step(
        logger,
        "Usage updated successfully",
        email=email,
        action=action.value,
        new_usage=record.total_usage,
        limit=limit,
        remaining=remaining,
    )
    return Accepted(record.to_dict(), limit, remaining)


def refund(email, action, now=None):
    """Give back one unit recorded for ``action`` in the current period."""
    action = coerce_action(action)
    now = now or utcnow()
    counter = COUNTERS[action]
    try:
        record = _current_record(email, now)
        if record is None:
            log_step(logger, "No current usage record to refund", logging.WARNING, email=email)
            return None
        refunded = db.session.execute(
            update(UsageRecord)
            .where(UsageRecord.id == record.id, UsageRecord.total_usage > 0, counter > 0)
            .values(
                {
                    UsageRecord.total_usage: UsageRecord.total_usage - 1,
                    counter: counter - 1,
                    UsageRecord.updated_at: utcnow(),
                }
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        db.session.commit()
        db.session.refresh(record)
    except SQLAlchemyError as e:
        raise _store_failure("Failed to refund usage", email, e) from e

    log_step(
        logger,
        "Usage refunded",
        email=email,
        action=action.value,
        refunded=bool(refunded),
        total_usage=record.total_usage,
    )
    return record


def reset_period(email, now=None) -> UsageRecord:
    """Start a fresh zeroed period ``[now, now + 1 month)`` for ``email``.

    The new row is inserted first, then every older row still open past
    ``now`` is closed at ``now``; two resets racing each other leave
    adjoining windows rather than overlapping ones.
    """
    now = now or utcnow()
    try:
        previous = _current_record(email, now)
        record = UsageRecord(
            email=email,
            user_id=previous.user_id if previous is not None else None,
            generation_count=0,
            edit_count=0,
            total_usage=0,
            current_period_start=now,
            current_period_end=now + BILLING_PERIOD,
        )
        db.session.add(record)
        db.session.flush()
        db.session.execute(
            update(UsageRecord)
            .where(
                UsageRecord.email == email,
                UsageRecord.id != record.id,
                UsageRecord.current_period_start < now,
                UsageRecord.current_period_end > now,
            )
            .values({UsageRecord.current_period_end: now, UsageRecord.updated_at: now})
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError as e:
        raise _store_failure("Error resetting usage tracking", email, e) from e

    log_step(logger, "Usage tracking reset successfully", email=email, period_end=record.current_period_end)
    return record


def usage_summary(email):
    """Current usage, entitlement and remaining quota; never writes."""
    now = utcnow()
    try:
        record = _current_record(email, now)
    except SQLAlchemyError as e:
        raise _store_failure("Failed to read usage", email, e) from e
    entitlement = resolve_limit(email)
    if record is None:
        start, end = month_window(now)
        usage = {
            "email": email,
            "generation_count": 0,
            "edit_count": 0,
            "total_usage": 0,
            "current_period_start": start.isoformat(),
            "current_period_end": end.isoformat(),
        }
    else:
        usage = record.to_dict()
    return {
        "usage": usage,
        "subscription_tier": entitlement.tier.value,
        "limit": entitlement.limit,
        "remaining": max(0, entitlement.limit - usage["total_usage"]),
    }
