from decimal import Decimal
import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .exceptions import InvalidTransitionError, TransactionError, ValidationError
from .models import Installment, PaymentPlan, PaymentRecord, PlanAuditLog
from .plan_generator import expected_payment_for, is_month_discounted, subscription_due_dates


logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = Decimal("0.01")

ALLOWED_TRANSITIONS = {
    PaymentPlan.STATUS_ACTIVE: {PaymentPlan.STATUS_PAUSED, PaymentPlan.STATUS_CANCELLED},
    PaymentPlan.STATUS_PAUSED: {PaymentPlan.STATUS_ACTIVE, PaymentPlan.STATUS_CANCELLED},
    PaymentPlan.STATUS_CANCELLED: set(),
    PaymentPlan.STATUS_COMPLETED: set(),
}

VALID_STATUSES = {choice for choice, _ in PaymentPlan.STATUS_CHOICES}


def can_transition(current, requested):
    return requested in ALLOWED_TRANSITIONS.get(current, set())


# ==================================================
#  PLAN STATE MACHINE
# ==================================================
class PlanStateMachine:
    """
    The only code path allowed to mutate a persisted plan.

    Every public operation runs inside transaction.atomic(); the plan row,
    its installments, the new payment record and the audit entries commit
    together or not at all. Callers should hand in a row fetched with
    select_for_update() inside their own transaction.
    """

    def __init__(self, plan):
        self.plan = plan

    # --------------------------------------------------
    # Status changes
    # --------------------------------------------------
    def change_status(self, new_status, reason, actor):
        plan = self.plan
        current = plan.status

        if new_status not in VALID_STATUSES:
            raise ValidationError(f"Unknown status '{new_status}'", field="new_status")
        if not reason or not str(reason).strip():
            raise ValidationError("Reason for status change is required", field="reason")
        if not actor:
            raise ValidationError("Updated by field is required", field="updated_by")

        if plan.is_terminal:
            raise InvalidTransitionError(
                f"Plan {plan.pk} is already {current} and cannot change status",
                current=current,
                requested=new_status,
            )
        if not can_transition(current, new_status):
            raise InvalidTransitionError(
                f"Cannot change plan status from {current} to {new_status}",
                current=current,
                requested=new_status,
            )

        try:
            with transaction.atomic():
                snapshot = self.financial_snapshot() if new_status == PaymentPlan.STATUS_CANCELLED else None

                plan.status = new_status
                plan.last_updated_by = actor
                self._save()

                self._audit(
                    PlanAuditLog.STATUS_CHANGED,
                    actor,
                    {"old": current, "new": new_status, "reason": reason},
                    notes=reason,
                )
                if snapshot is not None:
                    self._audit(
                        PlanAuditLog.CANCELLATION_SNAPSHOT,
                        actor,
                        snapshot,
                        notes="Financial state before cancellation",
                    )
        except Exception:
            plan.status = current
            raise

        logger.info(f"[PlanStateMachine] Plan {plan.pk} status {current} -> {new_status} by {actor}")
        return plan

    def financial_snapshot(self):
        plan = self.plan
        snapshot = {
            "status": plan.status,
            "total_amount": str(plan.total_amount),
            "total_paid_amount": str(plan.total_paid_amount),
            "outstanding_amount": None if plan.outstanding_amount is None else str(plan.outstanding_amount),
            "next_due_date": plan.next_due_date.isoformat() if plan.next_due_date else None,
            "reminders_count": plan.reminders_count,
            "payment_records": plan.payments.count(),
        }
        if plan.is_subscription:
            snapshot["current_month"] = plan.current_month
            snapshot["is_currently_discounted"] = plan.is_currently_discounted
        if plan.is_installment_plan:
            snapshot["unpaid_installments"] = list(
                plan.installments.filter(status=Installment.STATUS_UNPAID)
                .order_by("installment_number")
                .values_list("installment_number", flat=True)
            )
        return snapshot

    # --------------------------------------------------
    # Payments
    # --------------------------------------------------
    def apply_payment(self, amount, metadata):
        """
        Apply one payment to the plan.

        Args:
            amount: Decimal-compatible amount, must be > 0
            metadata (dict):
                Required:
                    - received_by: str
                Optional:
                    - payment_date: date (defaults to today)
                    - payment_method: str (defaults to 'OTHER')
                    - transaction_id: str
                    - notes: str

        Returns:
            PaymentRecord
        """
        plan = self.plan

        try:
            amount = Decimal(str(amount))
        except Exception:
            raise ValidationError("Payment amount must be a number", field="amount")
        if amount <= 0:
            raise ValidationError("Payment amount must be positive", field="amount")

        received_by = metadata.get("received_by")
        if not received_by:
            raise ValidationError("Received by field is required", field="received_by")

        if plan.status != PaymentPlan.STATUS_ACTIVE:
            raise InvalidTransitionError(
                f"Cannot apply payment to a {plan.status} plan",
                current=plan.status,
                requested="PAYMENT",
            )

        payment = {
            "payment_date": metadata.get("payment_date") or timezone.localdate(),
            "payment_mode": metadata.get("payment_method") or "OTHER",
            "received_by": received_by,
            "transaction_id": metadata.get("transaction_id"),
            "notes": metadata.get("notes") or "",
        }

        with transaction.atomic():
            if plan.is_installment_plan:
                record, details = self._apply_installment_payment(amount, payment)
            elif plan.is_subscription:
                record, details = self._apply_subscription_payment(amount, payment)
            else:
                record, details = self._apply_one_time_payment(amount, payment)

            plan.total_paid_amount = plan.ledger_total()
            plan.last_payment_date = payment["payment_date"]
            plan.last_updated_by = received_by
            self._refresh_outstanding()
            completed = self._should_complete()
            if completed:
                plan.status = PaymentPlan.STATUS_COMPLETED
                plan.next_due_date = None
                plan.reminder_date = None
            self._save()

            details.update({
                "payment_record_id": record.pk,
                "amount": str(amount),
                "total_paid_amount": str(plan.total_paid_amount),
                "outstanding_amount": None if plan.outstanding_amount is None else str(plan.outstanding_amount),
            })
            self._audit(PlanAuditLog.PAYMENT_PROCESSED, received_by, details, notes=payment["notes"])
            if completed:
                self._audit(
                    PlanAuditLog.STATUS_CHANGED,
                    received_by,
                    {"old": PaymentPlan.STATUS_ACTIVE, "new": PaymentPlan.STATUS_COMPLETED,
                     "reason": "Fully paid"},
                    notes="Plan completed on full payment",
                )

        logger.info(
            f"[PlanStateMachine] Applied payment {amount} to plan {plan.pk} "
            f"(paid={plan.total_paid_amount}, status={plan.status})"
        )
        return record

    def _apply_installment_payment(self, amount, payment):
        plan = self.plan
        installment = (
            plan.installments.select_for_update()
            .filter(status=Installment.STATUS_UNPAID)
            .order_by("installment_number")
            .first()
        )
        if installment is None:
            raise ValidationError("All installments are already paid", field="amount")

        balance = installment.balance
        if plan.partial_payment_allowed:
            if amount > balance:
                raise ValidationError(
                    f"Payment amount ({amount}) exceeds installment balance ({balance})", field="amount"
                )
        elif amount != balance:
            raise ValidationError(
                f"Partial payments are not allowed; installment {installment.installment_number} "
                f"requires exactly {balance}",
                field="amount",
            )

        installment.paid_amount = (installment.paid_amount or Decimal("0.00")) + amount
        if payment["transaction_id"]:
            installment.transaction_id = payment["transaction_id"]
        if installment.paid_amount >= installment.amount:
            installment.status = Installment.STATUS_PAID
            installment.paid_date = payment["payment_date"]
        installment.save()

        record = PaymentRecord.objects.create(plan=plan, installment=installment, amount=amount, **payment)

        upcoming = plan.next_unpaid_installment()
        if upcoming is None:
            plan.next_due_date = None
            plan.reminder_date = None
        elif upcoming.due_date != plan.next_due_date:
            plan.next_due_date = upcoming.due_date
            plan.reminder_date = upcoming.reminder_date
            plan.reminders_count = 0

        return record, {
            "installment_number": installment.installment_number,
            "stage": installment.stage,
            "installment_status": installment.status,
            "invoice_on_payment": installment.invoice_on_payment,
            "final_invoice": installment.final_invoice,
        }

    def _apply_one_time_payment(self, amount, payment):
        plan = self.plan
        balance = plan.total_amount - plan.total_paid_amount
        if amount > balance:
            raise ValidationError(
                f"Payment amount ({amount}) exceeds remaining balance ({balance})", field="amount"
            )
        if not plan.partial_payment_allowed and amount != balance:
            raise ValidationError(
                f"Partial payments are not allowed; payment must be exactly {balance}", field="amount"
            )

        record = PaymentRecord.objects.create(plan=plan, amount=amount, **payment)
        if amount == balance:
            plan.next_due_date = None
            plan.reminder_date = None
        return record, {"balance_before": str(balance)}

    def _apply_subscription_payment(self, amount, payment):
        plan = self.plan
        month = plan.current_month
        expected = expected_payment_for(plan, month)
        if abs(amount - expected) > AMOUNT_TOLERANCE:
            raise ValidationError(
                f"Payment amount ({amount}) does not match expected amount ({expected})", field="amount"
            )

        is_discounted = is_month_discounted(plan, month)
        is_first = not plan.is_first_payment_completed
        record = PaymentRecord.objects.create(
            plan=plan,
            amount=amount,
            subscription_month=month,
            is_discounted_payment=is_discounted,
            is_first_subscription_payment=is_first,
            **payment,
        )

        plan.current_month = month + 1
        if plan.current_month == 2 and not plan.is_first_payment_completed:
            plan.is_first_payment_completed = True
        plan.next_due_date, plan.reminder_date = subscription_due_dates(payment["payment_date"])
        plan.reminders_count = 0

        return record, {
            "month_number": month,
            "expected_amount": str(expected),
            "is_discounted": is_discounted,
            "is_first_payment": is_first,
        }

    def _refresh_outstanding(self):
        plan = self.plan
        if plan.is_subscription:
            if plan.total_expected_amount is not None:
                plan.outstanding_amount = max(Decimal("0.00"), plan.total_expected_amount - plan.total_paid_amount)
            return
        plan.outstanding_amount = max(Decimal("0.00"), plan.total_amount - plan.total_paid_amount)

    def _should_complete(self):
        plan = self.plan
        if not plan.auto_stop_on_full_payment:
            return False
        if plan.is_installment_plan:
            return not plan.installments.filter(status=Installment.STATUS_UNPAID).exists()
        if plan.is_subscription:
            return bool(plan.total_expected_months) and plan.current_month > plan.total_expected_months
        return plan.outstanding_amount == 0

    # --------------------------------------------------
    # Persistence helpers
    # --------------------------------------------------
    def _save(self):
        """Compare-and-set on version, then persist the row."""
        plan = self.plan
        updated = PaymentPlan.objects.filter(pk=plan.pk, version=plan.version).update(version=F("version") + 1)
        if not updated:
            raise TransactionError(f"Plan {plan.pk} was modified concurrently", plan_id=plan.pk)
        plan.version += 1
        plan.save()

    def _audit(self, action, actor, details=None, notes=""):
        return PlanAuditLog.objects.create(
            plan=self.plan,
            action=action,
            performed_by=actor,
            details=details,
            notes=notes or "",
        )
