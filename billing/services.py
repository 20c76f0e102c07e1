"""
BillingService façade.

Entry point for everything outside the billing app (views, management
commands, other apps). Plan creation goes through the generator, every
mutation of a persisted plan goes through PlanStateMachine inside a
per-plan transaction, and the reminder job goes through ReminderDispatcher.
"""
from decimal import Decimal
import logging

from django.db import OperationalError, transaction
from django.utils import timezone

from .directory import DirectoryService
from .dispatcher import ReminderDispatcher
from .exceptions import NotFoundError, TransactionError, ValidationError
from .models import Installment, PaymentPlan, PlanAuditLog
from .notifiers import get_notifier
from .plan_generator import (
    DEFAULT_INSTALLMENT_COUNT,
    DiscountConfig,
    generate_emi_schedule,
    generate_installments,
    generate_one_time,
    generate_subscription,
)
from .reminder_selector import ReminderPolicy
from .state_machine import PlanStateMachine

logger = logging.getLogger(__name__)

PLAN_TYPES = {choice for choice, _ in PaymentPlan.PLAN_TYPE_CHOICES}
MAX_ATTEMPTS = 2


class BillingService:

    def __init__(self, notifier=None, directory=None):
        self._notifier = notifier
        self._directory = directory

    @property
    def notifier(self):
        if self._notifier is None:
            self._notifier = get_notifier()
        return self._notifier

    @property
    def directory(self):
        if self._directory is None:
            self._directory = DirectoryService()
        return self._directory

    # ==================================================
    #  CREATE
    # ==================================================
    def create_plan(self, tenant_id, actor, data):
        """
        Generate and persist a plan with its installments and CREATED audit entry.

        ``data`` carries the plan type, ownership ids and the type-specific
        inputs (course dates and total for installments, first due date and
        term for EMI, due date for one-time, fees and optional discount for
        subscriptions).
        """
        self._require_tenant(tenant_id)
        plan_type = data.get("plan_type")
        if plan_type not in PLAN_TYPES:
            raise ValidationError(f"Invalid plan type '{plan_type}'", field="plan_type")
        for required in ("account_id", "course_id"):
            if not data.get(required):
                raise ValidationError(f"{required} is required", field=required)
        if not actor:
            raise ValidationError("created_by is required", field="created_by")

        plan = PaymentPlan(
            tenant_id=tenant_id,
            account_id=data["account_id"],
            account_name=data.get("account_name") or "",
            payer_email=data.get("payer_email") or "",
            course_id=data["course_id"],
            course_name=data.get("course_name") or "",
            cohort_id=data.get("cohort_id") or "",
            plan_type=plan_type,
            reminder_enabled=data.get("reminder_enabled", True),
            pre_reminder_enabled=data.get("pre_reminder_enabled", True),
            created_by=actor,
            last_updated_by=actor,
            notes=data.get("notes") or "",
        )

        if plan_type in PaymentPlan.INSTALLMENT_TYPES:
            installments = self._build_installment_plan(plan, data)
        elif plan_type in PaymentPlan.SUBSCRIPTION_TYPES:
            installments = self._build_subscription_plan(plan, data)
        else:
            installments = self._build_one_time_plan(plan, data)

        with transaction.atomic():
            plan.save()
            for installment in installments:
                installment.plan = plan
            Installment.objects.bulk_create(installments)
            PlanAuditLog.objects.create(
                plan=plan,
                action=PlanAuditLog.CREATED,
                performed_by=actor,
                details={
                    "plan_type": plan.plan_type,
                    "total_amount": str(plan.total_amount),
                    "installments": len(installments),
                    "next_due_date": plan.next_due_date.isoformat() if plan.next_due_date else None,
                },
                notes=f"{plan.get_plan_type_display()} plan created",
            )

        logger.info(f"[BillingService] Created {plan_type} plan {plan.pk} for tenant={tenant_id} account={plan.account_id}")
        return plan

    def _build_installment_plan(self, plan, data):
        if plan.plan_type == PaymentPlan.EMI:
            terms = generate_emi_schedule(
                data.get("first_due_date"),
                data.get("total_amount"),
                data.get("term_months"),
            )
            plan.course_start_date = data.get("course_start_date") or terms.start_date
            plan.course_end_date = data.get("course_end_date") or terms.end_date
        else:
            terms = generate_installments(
                data.get("course_start_date"),
                data.get("course_end_date"),
                data.get("total_amount"),
                data.get("installment_count") or DEFAULT_INSTALLMENT_COUNT,
            )
            plan.course_start_date = terms.start_date
            plan.course_end_date = terms.end_date

        plan.total_amount = terms.total_amount
        plan.outstanding_amount = terms.total_amount
        plan.installment_count = len(terms.installments)
        plan.auto_stop_on_full_payment = terms.auto_stop_on_full_payment
        plan.partial_payment_allowed = data.get("partial_payment_allowed", terms.partial_payment_allowed)
        plan.next_due_date = terms.installments[0].due_date
        plan.reminder_date = terms.installments[0].reminder_date

        return [
            Installment(
                installment_number=inst.installment_number,
                due_date=inst.due_date,
                reminder_date=inst.reminder_date,
                amount=inst.amount,
            )
            for inst in terms.installments
        ]

    def _build_one_time_plan(self, plan, data):
        terms = generate_one_time(data.get("total_amount"), data.get("due_date"))
        plan.total_amount = terms.total_amount
        plan.outstanding_amount = terms.total_amount
        plan.next_due_date = terms.due_date
        plan.reminder_date = terms.reminder_date
        plan.partial_payment_allowed = data.get("partial_payment_allowed", terms.partial_payment_allowed)
        return []

    def _build_subscription_plan(self, plan, data):
        discount = None
        if plan.plan_type == PaymentPlan.MONTHLY_SUBSCRIPTION_DISCOUNTED:
            discount = DiscountConfig(
                discount_type=data.get("discount_type"),
                discount_value=data.get("discount_value"),
                commitment_period=data.get("commitment_period"),
            )

        terms = generate_subscription(
            data.get("course_fee"),
            data.get("registration_fee"),
            data.get("monthly_amount"),
            discount=discount,
            anchor_date=data.get("anchor_date") or timezone.localdate(),
            total_expected_months=data.get("total_expected_months"),
        )

        plan.course_fee = terms.course_fee
        plan.registration_fee = terms.registration_fee
        plan.original_monthly_amount = terms.original_monthly_amount
        plan.discounted_monthly_amount = terms.discounted_monthly_amount
        plan.discount_type = terms.discount_type
        plan.discount_value = terms.discount_value
        plan.commitment_period = terms.commitment_period
        plan.current_month = terms.current_month
        plan.is_first_payment_completed = terms.is_first_payment_completed
        plan.total_expected_months = terms.total_expected_months
        plan.total_expected_amount = terms.total_expected_amount
        plan.total_amount = terms.total_expected_amount or Decimal("0.00")
        plan.outstanding_amount = terms.remaining_amount
        plan.next_due_date = terms.next_due_date
        plan.reminder_date = terms.reminder_date
        return []

    # ==================================================
    #  READ
    # ==================================================
    def get_plan(self, tenant_id, plan_id):
        self._require_tenant(tenant_id)
        plan = PaymentPlan.objects.for_tenant(tenant_id).filter(pk=plan_id).first()
        if plan is None:
            raise NotFoundError(f"Payment plan {plan_id} not found")
        return plan

    # ==================================================
    #  MUTATIONS
    # ==================================================
    def apply_payment(self, tenant_id, plan_id, amount, payment_method, payment_date, received_by,
                      transaction_id=None, notes=None):
        metadata = {
            "payment_method": payment_method,
            "payment_date": payment_date,
            "received_by": received_by,
            "transaction_id": transaction_id,
            "notes": notes,
        }
        plan, _record = self._mutate(
            tenant_id, plan_id, lambda machine: machine.apply_payment(amount, metadata)
        )
        return plan

    def change_status(self, tenant_id, plan_id, new_status, reason, updated_by):
        plan, _ = self._mutate(
            tenant_id, plan_id, lambda machine: machine.change_status(new_status, reason, updated_by)
        )
        return plan

    def _mutate(self, tenant_id, plan_id, operation):
        """
        Run ``operation`` against a locked plan row. A store conflict is
        retried once against a fresh read before it is surfaced.
        """
        self._require_tenant(tenant_id)
        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                with transaction.atomic():
                    plan = (
                        PaymentPlan.objects.select_for_update()
                        .for_tenant(tenant_id)
                        .filter(pk=plan_id)
                        .first()
                    )
                    if plan is None:
                        raise NotFoundError(f"Payment plan {plan_id} not found")
                    result = operation(PlanStateMachine(plan))
                return plan, result
            except (TransactionError, OperationalError) as e:
                if attempt >= MAX_ATTEMPTS:
                    logger.error(f"[BillingService] Plan {plan_id} update failed after retry: {str(e)}")
                    raise TransactionError(f"Could not update plan {plan_id}: {str(e)}", plan_id=plan_id) from e
                logger.warning(f"[BillingService] Plan {plan_id} update conflict, retrying: {str(e)}")

    # ==================================================
    #  REMINDERS
    # ==================================================
    def run_payment_reminders(self, policy=None, now=None, limit=None, deadline=None, cancel_event=None):
        policy = policy or ReminderPolicy.from_settings()
        dispatcher = ReminderDispatcher(self.notifier, self.directory)
        return dispatcher.run_batch(
            policy,
            now=now or timezone.now(),
            limit=limit,
            deadline=deadline,
            cancel_event=cancel_event,
        )

    @staticmethod
    def _require_tenant(tenant_id):
        if not tenant_id:
            raise ValidationError("Tenant id is required", field="tenant_id")
