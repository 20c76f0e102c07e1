from dataclasses import asdict, dataclass, field
from typing import List, Optional
import logging

from django.db.models import F
from django.utils import timezone

from .models import PaymentPlan
from .plan_generator import installments_needing_reminders
from .reminder_selector import ReminderCategory, classify, start_of_day

logger = logging.getLogger(__name__)

DEFAULT_ACADEMY_NAME = "Academy"
DEFAULT_STUDENT_NAME = "Student"

SENT = "sent"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class ReminderResult:
    plan_id: int
    tenant_id: str
    account_id: str
    account_name: str
    email: Optional[str]
    status: str
    reason: Optional[str] = None
    category: Optional[str] = None


@dataclass
class ReminderRunReport:
    total: int = 0
    cancelled: bool = False
    items: List[ReminderResult] = field(default_factory=list)

    def add(self, result):
        self.items.append(result)

    def _count(self, status):
        return sum(1 for item in self.items if item.status == status)

    @property
    def sent(self):
        return self._count(SENT)

    @property
    def skipped(self):
        return self._count(SKIPPED)

    @property
    def errors(self):
        return self._count(ERROR)

    def summary(self):
        return {
            "total": self.total,
            "sent": self.sent,
            "skipped": self.skipped,
            "errors": self.errors,
        }

    def as_dict(self, include_items=False):
        data = {"summary": self.summary(), "cancelled": self.cancelled}
        if include_items:
            data["results"] = [asdict(item) for item in self.items]
        return data


# ==================================================
#  REMINDER DISPATCHER
# ==================================================
class ReminderDispatcher:
    """
    Scans outstanding plans and sends at most one reminder per eligible plan.

    Safe to run concurrently with itself: every plan is re-read and
    re-classified right before sending, and the reminder counters are
    written with a compare-and-set on ``last_reminder_sent_at``.
    """

    def __init__(self, notifier, directory):
        self.notifier = notifier
        self.directory = directory

    def select(self, policy, now, limit=None):
        """Eligible (plan, category) pairs ordered by due date, at most ``limit``."""
        limit = limit or policy.batch_limit
        selected = []
        for plan in PaymentPlan.objects.reminder_candidates().iterator():
            category = classify(plan, now, policy)
            if category is ReminderCategory.NONE:
                continue
            selected.append((plan, category))
            if len(selected) >= limit:
                break
        return selected

    def run_batch(self, policy, now=None, limit=None, deadline=None, cancel_event=None):
        now = now or timezone.now()
        selected = self.select(policy, now, limit)
        report = ReminderRunReport(total=len(selected))

        logger.info(f"[ReminderDispatcher] {len(selected)} plan(s) eligible for reminders")

        by_tenant = {}
        for plan, category in selected:
            by_tenant.setdefault(plan.tenant_id, []).append(plan)

        for tenant_id, plans in by_tenant.items():
            if self._should_stop(deadline, cancel_event):
                report.cancelled = True
                break

            academy_name = self._academy_name(tenant_id)
            for plan in plans:
                if self._should_stop(deadline, cancel_event):
                    report.cancelled = True
                    break
                try:
                    report.add(self._process(plan, academy_name, policy, now))
                except Exception as e:
                    logger.exception(f"[ReminderDispatcher] Unexpected error for plan {plan.pk}")
                    report.add(self._result(plan, ERROR, None, reason=str(e)))

            if report.cancelled:
                break

        if report.cancelled:
            logger.warning(
                f"[ReminderDispatcher] Run cancelled after {len(report.items)} of {report.total} plan(s)"
            )
        logger.info(f"[ReminderDispatcher] Run finished: {report.summary()}")
        return report

    # --------------------------------------------------
    # Per-plan processing
    # --------------------------------------------------
    def _process(self, plan, academy_name, policy, now):
        fresh = PaymentPlan.objects.filter(pk=plan.pk).first()
        if fresh is None:
            return self._result(plan, SKIPPED, None, reason="Plan no longer exists")

        category = classify(fresh, now, policy)
        if category is ReminderCategory.NONE:
            return self._result(fresh, SKIPPED, None, reason="No longer eligible")

        account_name = self._account_name(fresh)
        contact = self._contact(fresh)
        if not contact:
            logger.warning(f"[ReminderDispatcher] No contact for plan {fresh.pk} (account {fresh.account_id})")
            return self._result(
                fresh, SKIPPED, None, reason="No contact found", category=category, account_name=account_name
            )

        params = self._template_params(fresh, category, academy_name, account_name, now, policy)

        try:
            delivered = self.notifier.send(contact, params, timeout=policy.notifier_timeout_seconds)
        except Exception as e:
            logger.error(f"[ReminderDispatcher] Send failed for plan {fresh.pk}: {str(e)}")
            return self._result(
                fresh, ERROR, contact, reason=str(e), category=category, account_name=account_name
            )

        if not delivered:
            return self._result(
                fresh, ERROR, contact, reason="Notifier reported failure", category=category,
                account_name=account_name
            )

        updated = PaymentPlan.objects.filter(
            pk=fresh.pk,
            last_reminder_sent_at=fresh.last_reminder_sent_at,
        ).update(
            reminders_count=F("reminders_count") + 1,
            last_reminder_sent_at=now,
            version=F("version") + 1,
        )
        reason = None
        if not updated:
            logger.warning(f"[ReminderDispatcher] Reminder counters for plan {fresh.pk} changed concurrently")
            reason = "Counters updated by concurrent run"

        logger.info(f"[ReminderDispatcher] {category.value} reminder sent for plan {fresh.pk} to {contact}")
        return self._result(fresh, SENT, contact, reason=reason, category=category, account_name=account_name)

    def _academy_name(self, tenant_id):
        try:
            name = self.directory.get_academy_name(tenant_id)
        except Exception as e:
            logger.error(f"[ReminderDispatcher] Academy lookup failed for tenant {tenant_id}: {str(e)}")
            name = None
        return name or DEFAULT_ACADEMY_NAME

    def _account_name(self, plan):
        if plan.account_name:
            return plan.account_name
        try:
            name = self.directory.get_account_display_name(plan.tenant_id, plan.account_id)
        except Exception as e:
            logger.error(f"[ReminderDispatcher] Name lookup failed for account {plan.account_id}: {str(e)}")
            name = None
        return name or DEFAULT_STUDENT_NAME

    def _contact(self, plan):
        channel = getattr(self.notifier, "channel", "email")
        if channel == "email" and plan.payer_email:
            return plan.payer_email
        try:
            return self.directory.get_account_contact(plan.tenant_id, plan.account_id, channel=channel)
        except Exception as e:
            logger.error(f"[ReminderDispatcher] Contact lookup failed for account {plan.account_id}: {str(e)}")
            return None

    def _template_params(self, plan, category, academy_name, account_name, now, policy):
        today = start_of_day(now, policy).date()
        amount_due = plan.expected_payment_amount
        # eligibility checks PRE_DUE first, the message still reads "due today"
        if category is ReminderCategory.PRE_DUE and plan.next_due_date == today:
            category = ReminderCategory.DUE_TODAY
        params = {
            "category": category.value,
            "academy_name": academy_name,
            "student_name": account_name,
            "course_name": plan.course_name,
            "plan_type": plan.plan_type,
            "amount_due": str(amount_due) if amount_due is not None else "",
            "outstanding_amount": str(plan.outstanding_amount) if plan.outstanding_amount is not None else "",
            "due_date": plan.next_due_date.isoformat(),
            "days_overdue": max(0, (today - plan.next_due_date).days),
        }
        if plan.is_installment_plan:
            installment = plan.next_unpaid_installment()
            if installment is not None:
                params["installment_number"] = installment.installment_number
                params["installment_count"] = plan.installment_count
                params["installments_due_soon"] = [
                    inst.installment_number
                    for inst in installments_needing_reminders(plan.installments.all(), today)
                    if inst.installment_number != installment.installment_number
                ]
        if plan.is_subscription:
            params["month_number"] = plan.current_month
        return params

    @staticmethod
    def _should_stop(deadline, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            return True
        return deadline is not None and timezone.now() >= deadline

    @staticmethod
    def _result(plan, status, email, reason=None, category=None, account_name=None):
        return ReminderResult(
            plan_id=plan.pk,
            tenant_id=plan.tenant_id,
            account_id=plan.account_id,
            account_name=account_name or plan.account_name,
            email=email,
            status=status,
            reason=reason,
            category=category.value if category is not None else None,
        )
