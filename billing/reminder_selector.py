"""
Reminder eligibility.

``classify`` is a pure predicate: given a plan snapshot, the current
instant and a policy it decides which reminder, if any, the plan should
get right now. The storage query in ``PaymentPlan.objects.reminder_candidates``
is only a loose pre-filter; this module makes the actual decision.
"""
from dataclasses import dataclass, fields
from datetime import datetime, time, timedelta
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.conf import settings

from .exceptions import ValidationError


class ReminderCategory(str, Enum):
    PRE_DUE = "PRE_DUE"
    DUE_TODAY = "DUE_TODAY"
    OVERDUE = "OVERDUE"
    NONE = "NONE"


@dataclass(frozen=True)
class ReminderPolicy:
    pre_due_days: int = 3
    max_reminder_attempts: int = 5
    overdue_reminder_frequency_days: int = 7
    throttle_hours: int = 24
    timezone: str = "UTC"
    batch_limit: int = 200
    notifier_timeout_seconds: int = 10

    def __post_init__(self):
        for name in (
            "pre_due_days",
            "max_reminder_attempts",
            "overdue_reminder_frequency_days",
            "throttle_hours",
            "batch_limit",
            "notifier_timeout_seconds",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer", field=name)
        if self.batch_limit < 1:
            raise ValidationError("batch_limit must be at least 1", field="batch_limit")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError, TypeError):
            raise ValidationError(f"Unknown timezone '{self.timezone}'", field="timezone")

    @property
    def tz(self):
        return ZoneInfo(self.timezone)

    @classmethod
    def from_settings(cls):
        """Build the policy from ``settings.BILLING_REMINDER_POLICY``; unknown keys are rejected."""
        configured = dict(getattr(settings, "BILLING_REMINDER_POLICY", {}) or {})
        known = {f.name for f in fields(cls)}
        unknown = set(configured) - known
        if unknown:
            raise ValidationError(
                f"Unknown reminder policy settings: {', '.join(sorted(unknown))}",
                field="BILLING_REMINDER_POLICY",
            )
        return cls(**configured)


def start_of_day(now, policy):
    """Midnight of ``now``'s calendar day in the policy timezone."""
    tz = policy.tz
    today = now.astimezone(tz).date()
    return datetime.combine(today, time.min, tzinfo=tz)


def classify(plan, now, policy):
    """
    Decide the reminder category for ``plan`` at instant ``now``.

    ``plan`` only needs the reminder-related attributes of PaymentPlan, so a
    fresh row or a lightweight snapshot both work.
    """
    if plan.status != "ACTIVE":
        return ReminderCategory.NONE
    if not plan.reminder_enabled:
        return ReminderCategory.NONE
    if plan.next_due_date is None:
        return ReminderCategory.NONE
    # None means an open-ended subscription
    if plan.outstanding_amount is not None and plan.outstanding_amount <= 0:
        return ReminderCategory.NONE

    today_start = start_of_day(now, policy)
    today = today_start.date()
    due = plan.next_due_date
    last = plan.last_reminder_sent_at

    if (
        today <= due <= today + timedelta(days=policy.pre_due_days)
        and plan.pre_reminder_enabled
        and (last is None or last <= now - timedelta(hours=policy.throttle_hours))
    ):
        return ReminderCategory.PRE_DUE

    if due == today and (last is None or last < today_start):
        return ReminderCategory.DUE_TODAY

    if (
        due < today
        and plan.reminders_count < policy.max_reminder_attempts
        and (last is None or last < today_start - timedelta(days=policy.overdue_reminder_frequency_days))
    ):
        return ReminderCategory.OVERDUE

    return ReminderCategory.NONE
