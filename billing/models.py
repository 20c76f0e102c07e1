from decimal import Decimal

from django.db import models
from django.db.models import Q, Sum

from .plan_generator import (
    INSTALLMENT_RULES,
    get_installment_stage,
    is_month_discounted,
    monthly_amount_for,
    expected_payment_for,
)


# ========================================
# PAYMENT PLAN MODEL
# ========================================

class PaymentPlanQuerySet(models.QuerySet):

    def for_tenant(self, tenant_id):
        return self.filter(tenant_id=tenant_id)

    def reminder_candidates(self):
        """
        Loose superset of plans that may need a reminder.
        The exact decision is made by reminder_selector.classify.
        """
        return (
            self.filter(
                status=PaymentPlan.STATUS_ACTIVE,
                reminder_enabled=True,
                next_due_date__isnull=False,
            )
            .filter(Q(outstanding_amount__gt=0) | Q(outstanding_amount__isnull=True))
            .order_by("next_due_date", "id")
        )


class PaymentPlan(models.Model):
    """
    A student's plan for paying a course fee over time.

    Plan Types:
    - ONE_TIME: single due date
    - ONE_TIME_WITH_INSTALLMENTS: three installments across the course duration
    - EMI: monthly installments
    - MONTHLY_SUBSCRIPTION: recurring monthly fee
    - MONTHLY_SUBSCRIPTION_DISCOUNTED: recurring fee, discounted for a commitment period

    Business Rules:
    - Created once at enrollment, mutated only through PlanStateMachine
    - CANCELLED and COMPLETED are terminal
    - total_paid_amount always equals the sum of the plan's PaymentRecords
    """

    ONE_TIME = "ONE_TIME"
    ONE_TIME_WITH_INSTALLMENTS = "ONE_TIME_WITH_INSTALLMENTS"
    MONTHLY_SUBSCRIPTION = "MONTHLY_SUBSCRIPTION"
    MONTHLY_SUBSCRIPTION_DISCOUNTED = "MONTHLY_SUBSCRIPTION_DISCOUNTED"
    EMI = "EMI"

    PLAN_TYPE_CHOICES = [
        (ONE_TIME, "One Time"),
        (ONE_TIME_WITH_INSTALLMENTS, "One Time With Installments"),
        (MONTHLY_SUBSCRIPTION, "Monthly Subscription"),
        (MONTHLY_SUBSCRIPTION_DISCOUNTED, "Monthly Subscription With Discounts"),
        (EMI, "EMI"),
    ]

    INSTALLMENT_TYPES = (ONE_TIME_WITH_INSTALLMENTS, EMI)
    SUBSCRIPTION_TYPES = (MONTHLY_SUBSCRIPTION, MONTHLY_SUBSCRIPTION_DISCOUNTED)

    STATUS_ACTIVE = "ACTIVE"
    STATUS_PAUSED = "PAUSED"
    STATUS_CANCELLED = "CANCELLED"
    STATUS_COMPLETED = "COMPLETED"

    STATUS_CHOICES = [
        (STATUS_ACTIVE, "Active"),
        (STATUS_PAUSED, "Paused"),
        (STATUS_CANCELLED, "Cancelled"),
        (STATUS_COMPLETED, "Completed"),
    ]

    TERMINAL_STATUSES = (STATUS_CANCELLED, STATUS_COMPLETED)

    DISCOUNT_TYPE_CHOICES = [
        ("percentage", "Percentage"),
        ("amount", "Amount"),
    ]

    COMMITMENT_PERIOD_CHOICES = [
        (3, "3 Months"),
        (6, "6 Months"),
        (9, "9 Months"),
        (12, "12 Months"),
        (24, "24 Months"),
    ]

    # Ownership
    tenant_id = models.CharField(max_length=64, db_index=True)
    account_id = models.CharField(max_length=64, help_text="Owning student account id")
    account_name = models.CharField(max_length=255, blank=True, default="")
    payer_email = models.EmailField(
        blank=True,
        default="",
        help_text="Denormalized contact; directory lookup is used when empty"
    )
    course_id = models.CharField(max_length=64)
    course_name = models.CharField(max_length=255, blank=True, default="")
    cohort_id = models.CharField(max_length=64, blank=True, default="")

    plan_type = models.CharField(max_length=40, choices=PLAN_TYPE_CHOICES)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_ACTIVE)

    # Amounts
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    total_paid_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Cached sum of payment records"
    )
    outstanding_amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Null for open-ended subscriptions"
    )

    # Scheduling
    next_due_date = models.DateField(null=True, blank=True)
    reminder_date = models.DateField(null=True, blank=True)
    last_payment_date = models.DateField(null=True, blank=True)

    # Reminders
    reminder_enabled = models.BooleanField(default=True)
    pre_reminder_enabled = models.BooleanField(default=True)
    reminders_count = models.PositiveIntegerField(default=0)
    last_reminder_sent_at = models.DateTimeField(null=True, blank=True)

    # Installment plans
    installment_count = models.PositiveIntegerField(null=True, blank=True)
    course_start_date = models.DateField(null=True, blank=True)
    course_end_date = models.DateField(null=True, blank=True)
    auto_stop_on_full_payment = models.BooleanField(default=True)
    partial_payment_allowed = models.BooleanField(default=False)

    # Subscriptions
    course_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    registration_fee = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0.00"))
    original_monthly_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    discounted_monthly_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    discount_type = models.CharField(max_length=20, choices=DISCOUNT_TYPE_CHOICES, null=True, blank=True)
    discount_value = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    commitment_period = models.PositiveIntegerField(choices=COMMITMENT_PERIOD_CHOICES, null=True, blank=True)
    current_month = models.PositiveIntegerField(default=1)
    is_first_payment_completed = models.BooleanField(default=False)
    total_expected_months = models.PositiveIntegerField(null=True, blank=True)
    total_expected_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)

    created_by = models.CharField(max_length=150)
    last_updated_by = models.CharField(max_length=150, blank=True, default="")
    notes = models.TextField(blank=True, default="")
    version = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = PaymentPlanQuerySet.as_manager()

    class Meta:
        db_table = "payment_plans"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["tenant_id", "account_id"], name="plan_tenant_account_idx"),
            models.Index(fields=["status", "next_due_date"], name="plan_status_due_idx"),
            models.Index(fields=["plan_type", "status"], name="plan_type_status_idx"),
        ]

    def __str__(self):
        return f"{self.plan_type} plan {self.id} for {self.account_id} ({self.status})"

    @property
    def is_installment_plan(self):
        return self.plan_type in self.INSTALLMENT_TYPES

    @property
    def is_subscription(self):
        return self.plan_type in self.SUBSCRIPTION_TYPES

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def is_currently_discounted(self):
        return is_month_discounted(self, self.current_month)

    @property
    def current_month_amount(self):
        if not self.is_subscription:
            return None
        return monthly_amount_for(self, self.current_month)

    @property
    def expected_payment_amount(self):
        """Amount the next payment must match, when the plan type fixes one."""
        if self.is_subscription:
            return expected_payment_for(self, self.current_month)
        if self.is_installment_plan:
            installment = self.next_unpaid_installment()
            return installment.balance if installment else None
        return self.outstanding_amount

    def ledger_total(self):
        """Sum of PaymentRecords; the source of truth for total_paid_amount."""
        return self.payments.aggregate(total=Sum("amount"))["total"] or Decimal("0.00")

    def next_unpaid_installment(self):
        return (
            self.installments.filter(status=Installment.STATUS_UNPAID)
            .order_by("installment_number")
            .first()
        )

    def installment_summary(self):
        installments = list(self.installments.all())
        if not installments:
            return None
        paid = [inst for inst in installments if inst.status == Installment.STATUS_PAID]
        amount_paid = sum((inst.paid_amount or Decimal("0.00") for inst in installments), Decimal("0.00"))
        return {
            "total_installments": len(installments),
            "paid_installments": len(paid),
            "unpaid_installments": len(installments) - len(paid),
            "total_amount": str(self.total_amount),
            "amount_paid": str(amount_paid),
            "balance_remaining": str(self.total_amount - amount_paid),
        }


# ========================================
# INSTALLMENT MODEL
# ========================================

class Installment(models.Model):
    """
    One scheduled payment of an installment or EMI plan.

    Stage (first/middle/last) and the stage policy flags are derived from
    position; they are not stored.
    """

    STATUS_UNPAID = "UNPAID"
    STATUS_PAID = "PAID"

    STATUS_CHOICES = [
        (STATUS_UNPAID, "Unpaid"),
        (STATUS_PAID, "Paid"),
    ]

    plan = models.ForeignKey(
        PaymentPlan,
        on_delete=models.CASCADE,
        related_name="installments"
    )
    installment_number = models.PositiveIntegerField(help_text="1-based position")
    due_date = models.DateField()
    reminder_date = models.DateField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=STATUS_UNPAID)

    paid_date = models.DateField(null=True, blank=True)
    paid_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    transaction_id = models.CharField(max_length=100, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "plan_installments"
        ordering = ["plan", "installment_number"]
        unique_together = ["plan", "installment_number"]
        indexes = [
            models.Index(fields=["due_date"], name="installment_due_date_idx"),
            models.Index(fields=["status"], name="installment_status_idx"),
        ]

    def __str__(self):
        return f"Installment {self.installment_number} of plan {self.plan_id}"

    @property
    def stage(self):
        return get_installment_stage(self.installment_number, self.plan.installment_count)

    @property
    def rules(self):
        return INSTALLMENT_RULES[self.stage]

    @property
    def invoice_on_payment(self):
        return self.rules["invoice_on_payment"]

    @property
    def final_invoice(self):
        return self.rules["final_invoice"]

    @property
    def stop_reminder_toggle(self):
        return self.rules["stop_reminder_toggle"]

    @property
    def stop_access_toggle(self):
        return self.rules["stop_access_toggle"]

    @property
    def balance(self):
        return self.amount - (self.paid_amount or Decimal("0.00"))


# ========================================
# PAYMENT RECORD MODEL
# ========================================

class PaymentRecord(models.Model):
    """
    Immutable evidence of a single payment applied to a plan.
    """

    PAYMENT_MODE_CHOICES = [
        ("CASH", "Cash"),
        ("BANK_TRANSFER", "Bank Transfer"),
        ("CARD", "Card"),
        ("CHEQUE", "Cheque"),
        ("UPI", "UPI"),
        ("OTHER", "Other"),
    ]

    plan = models.ForeignKey(
        PaymentPlan,
        on_delete=models.PROTECT,
        related_name="payments"
    )
    installment = models.ForeignKey(
        Installment,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="payments",
        help_text="Installment this payment was applied to"
    )
    subscription_month = models.PositiveIntegerField(null=True, blank=True)

    amount = models.DecimalField(max_digits=12, decimal_places=2)
    payment_date = models.DateField()
    payment_mode = models.CharField(max_length=20, choices=PAYMENT_MODE_CHOICES)
    received_by = models.CharField(max_length=150)
    transaction_id = models.CharField(max_length=100, null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    is_discounted_payment = models.BooleanField(default=False)
    is_first_subscription_payment = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "plan_payment_records"
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["plan", "payment_date"], name="payment_record_plan_date_idx"),
        ]

    def __str__(self):
        return f"Payment {self.amount} for plan {self.plan_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Payment records are immutable once saved")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Payment records cannot be deleted")


# ========================================
# AUDIT LOG MODEL
# ========================================

class PlanAuditLog(models.Model):
    """
    Append-only history of state-changing actions on a plan.
    """

    CREATED = "CREATED"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
    STATUS_CHANGED = "STATUS_CHANGED"
    CANCELLATION_SNAPSHOT = "CANCELLATION_SNAPSHOT"

    ACTION_CHOICES = [
        (CREATED, "Created"),
        (PAYMENT_PROCESSED, "Payment Processed"),
        (STATUS_CHANGED, "Status Changed"),
        (CANCELLATION_SNAPSHOT, "Cancellation Snapshot"),
    ]

    plan = models.ForeignKey(
        PaymentPlan,
        on_delete=models.PROTECT,
        related_name="audit_log"
    )
    action = models.CharField(max_length=40, choices=ACTION_CHOICES)
    performed_by = models.CharField(max_length=150)
    performed_at = models.DateTimeField(auto_now_add=True)
    details = models.JSONField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    class Meta:
        db_table = "plan_audit_logs"
        ordering = ["id"]
        indexes = [
            models.Index(fields=["plan", "id"], name="audit_plan_id_idx"),
            models.Index(fields=["action"], name="audit_action_idx"),
        ]

    def __str__(self):
        return f"{self.action} by {self.performed_by} at {self.performed_at}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Audit log entries are append-only")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Audit log entries cannot be deleted")
