"""
Plan generation.

Pure functions that turn a course's fee structure into a concrete payment
plan: three-stage one-time installments, EMI schedules, monthly
subscriptions (optionally discounted for a commitment period) and plain
one-time plans. Nothing here touches the database.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import List, Optional

from dateutil.relativedelta import relativedelta

from .exceptions import ValidationError


# ========================================
# STAGE RULES
# ========================================

INSTALLMENT_RULES = {
    "first": {
        "reminder_days_before": 2,
        "invoice_on_payment": False,  # invoice only once fully paid
        "final_invoice": False,
        "stop_reminder_toggle": False,
        "stop_access_toggle": False,
        "message_template": "default",
    },
    "middle": {
        "reminder_days_before": 2,
        "invoice_on_payment": True,
        "final_invoice": False,
        "stop_reminder_toggle": True,
        "stop_access_toggle": True,
        "message_template": "default",
    },
    "last": {
        "reminder_days_before": 2,
        "invoice_on_payment": True,
        "final_invoice": True,
        "stop_reminder_toggle": True,
        "stop_access_toggle": True,
        "message_template": "default",
    },
}

DEFAULT_INSTALLMENT_COUNT = 3
SUBSCRIPTION_REMINDER_DAYS_BEFORE = 5
ONE_TIME_REMINDER_DAYS_BEFORE = 2
COMMITMENT_PERIODS = (3, 6, 9, 12, 24)
DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_AMOUNT = "amount"
DISCOUNT_TYPES = (DISCOUNT_PERCENTAGE, DISCOUNT_AMOUNT)

CENT = Decimal("0.01")


@dataclass
class InstallmentTerms:
    installment_number: int
    stage: str
    due_date: date
    reminder_date: date
    amount: Decimal
    status: str = "UNPAID"

    @property
    def rules(self):
        return INSTALLMENT_RULES[self.stage]


@dataclass
class InstallmentPlanTerms:
    plan_type: str
    installments: List[InstallmentTerms]
    total_amount: Decimal
    start_date: date
    end_date: date
    duration_days: int
    auto_stop_on_full_payment: bool = True
    partial_payment_allowed: bool = False


@dataclass
class DiscountConfig:
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    commitment_period: Optional[int] = None


@dataclass
class SubscriptionTerms:
    plan_type: str
    course_fee: Decimal
    registration_fee: Decimal
    original_monthly_amount: Decimal
    next_due_date: date
    reminder_date: date
    discounted_monthly_amount: Optional[Decimal] = None
    discount_type: Optional[str] = None
    discount_value: Optional[Decimal] = None
    commitment_period: Optional[int] = None
    current_month: int = 1
    is_first_payment_completed: bool = False
    status: str = "ACTIVE"
    total_paid_amount: Decimal = Decimal("0.00")
    total_expected_months: Optional[int] = None
    total_expected_amount: Optional[Decimal] = None
    remaining_amount: Optional[Decimal] = None

    @property
    def is_discounted(self):
        return self.plan_type == "MONTHLY_SUBSCRIPTION_DISCOUNTED"

    @property
    def is_currently_discounted(self):
        return is_month_discounted(self, self.current_month)

    @property
    def current_month_amount(self):
        return monthly_amount_for(self, self.current_month)


@dataclass
class OneTimeTerms:
    total_amount: Decimal
    due_date: date
    reminder_date: date
    plan_type: str = "ONE_TIME"
    partial_payment_allowed: bool = False


# ========================================
# HELPERS
# ========================================

def _to_decimal(value, field_name):
    if value is None:
        raise ValidationError(f"{field_name} is required", field=field_name)
    try:
        return Decimal(str(value))
    except Exception:
        raise ValidationError(f"{field_name} must be a number", field=field_name)


def get_installment_stage(installment_number, total_installments):
    """Stage is derived from position only."""
    if installment_number == 1:
        return "first"
    if installment_number == total_installments:
        return "last"
    return "middle"


def split_duration(start_date, end_date, count=DEFAULT_INSTALLMENT_COUNT):
    """
    Split the course duration into ``count`` equal periods.

    Returns the list of due dates; the final one never exceeds ``end_date``.
    """
    total_days = (end_date - start_date).days
    days_per_installment = total_days // count
    if days_per_installment < 1:
        raise ValidationError(
            f"Course duration of {total_days} day(s) is too short for {count} installments",
            field="end_date",
        )

    due_dates = []
    for i in range(count):
        due_date = start_date + timedelta(days=(i + 1) * days_per_installment)
        if i == count - 1 and due_date > end_date:
            due_date = end_date
        due_dates.append(due_date)
    return due_dates


def split_amount(total_amount, count=DEFAULT_INSTALLMENT_COUNT):
    """
    Equal integral amounts; the whole remainder goes on the last installment.
    """
    base = (total_amount / count).to_integral_value(rounding=ROUND_FLOOR)
    remainder = total_amount - base * count
    amounts = [base] * (count - 1)
    amounts.append(base + remainder)
    return amounts


def _build_installments(due_dates, amounts):
    total = len(due_dates)
    installments = []
    for index, (due_date, amount) in enumerate(zip(due_dates, amounts), start=1):
        stage = get_installment_stage(index, total)
        reminder_date = due_date - timedelta(days=INSTALLMENT_RULES[stage]["reminder_days_before"])
        installments.append(
            InstallmentTerms(
                installment_number=index,
                stage=stage,
                due_date=due_date,
                reminder_date=reminder_date,
                amount=amount,
            )
        )
    return installments


# ========================================
# INSTALLMENT PLANS
# ========================================

def generate_installments(start_date, end_date, total_amount, count=DEFAULT_INSTALLMENT_COUNT):
    """
    Generate a One Time with Installments plan.

    Args:
        start_date: course start date
        end_date: course end date (last due date is clamped to it)
        total_amount: amount to collect, must be > 0
        count: installment count, fixed at 3 by product rule

    Returns:
        InstallmentPlanTerms
    """
    if count != DEFAULT_INSTALLMENT_COUNT:
        raise ValidationError(
            f"Installment count must be exactly {DEFAULT_INSTALLMENT_COUNT}", field="count"
        )
    if start_date is None:
        raise ValidationError("start_date is required", field="start_date")
    if end_date is None:
        raise ValidationError("end_date is required", field="end_date")
    if start_date >= end_date:
        raise ValidationError("Start date must be before end date", field="start_date")

    total_amount = _to_decimal(total_amount, "total_amount")
    if total_amount <= 0:
        raise ValidationError("Total amount must be greater than 0", field="total_amount")

    due_dates = split_duration(start_date, end_date, count)
    amounts = split_amount(total_amount, count)

    terms = InstallmentPlanTerms(
        plan_type="ONE_TIME_WITH_INSTALLMENTS",
        installments=_build_installments(due_dates, amounts),
        total_amount=total_amount,
        start_date=start_date,
        end_date=end_date,
        duration_days=(end_date - start_date).days,
    )
    validate_installment_terms(terms)
    return terms


def generate_emi_schedule(first_due_date, total_amount, term_months):
    """
    Generate a monthly EMI schedule starting at ``first_due_date``.
    """
    if first_due_date is None:
        raise ValidationError("first_due_date is required", field="first_due_date")
    if term_months is None or int(term_months) < 2:
        raise ValidationError("EMI term must be at least 2 months", field="term_months")
    term_months = int(term_months)

    total_amount = _to_decimal(total_amount, "total_amount")
    if total_amount <= 0:
        raise ValidationError("Total amount must be greater than 0", field="total_amount")

    due_dates = [first_due_date + relativedelta(months=i) for i in range(term_months)]
    amounts = split_amount(total_amount, term_months)

    terms = InstallmentPlanTerms(
        plan_type="EMI",
        installments=_build_installments(due_dates, amounts),
        total_amount=total_amount,
        start_date=first_due_date,
        end_date=due_dates[-1],
        duration_days=(due_dates[-1] - first_due_date).days,
    )
    validate_installment_terms(terms)
    return terms


def validate_installment_terms(terms):
    """Raise ValidationError if the generated plan breaks an invariant."""
    installments = terms.installments
    if sum(inst.amount for inst in installments) != terms.total_amount:
        raise ValidationError("Sum of installment amounts must equal total amount", field="total_amount")

    for previous, current in zip(installments, installments[1:]):
        if current.due_date <= previous.due_date:
            raise ValidationError("Installment due dates must be in ascending order", field="due_date")

    for inst in installments:
        if inst.reminder_date >= inst.due_date:
            raise ValidationError(
                f"Installment {inst.installment_number}: reminder date must be before due date",
                field="reminder_date",
            )
    return True


def installments_needing_reminders(installments, today):
    """Unpaid installments whose reminder window contains ``today``."""
    return [
        inst for inst in installments
        if inst.status != "PAID" and inst.reminder_date <= today <= inst.due_date
    ]


# ========================================
# ONE TIME
# ========================================

def generate_one_time(total_amount, due_date):
    total_amount = _to_decimal(total_amount, "total_amount")
    if total_amount <= 0:
        raise ValidationError("Total amount must be greater than 0", field="total_amount")
    if due_date is None:
        raise ValidationError("due_date is required", field="due_date")
    return OneTimeTerms(
        total_amount=total_amount,
        due_date=due_date,
        reminder_date=due_date - timedelta(days=ONE_TIME_REMINDER_DAYS_BEFORE),
    )


# ========================================
# MONTHLY SUBSCRIPTIONS
# ========================================

def validate_discount(discount, monthly_amount):
    """
    All three discount fields are mandatory; values are never clamped.
    """
    if discount.discount_type is None:
        raise ValidationError("Discount type is required for discounted subscriptions", field="discount_type")
    if discount.discount_type not in DISCOUNT_TYPES:
        raise ValidationError(
            f"Discount type must be one of {list(DISCOUNT_TYPES)}", field="discount_type"
        )
    if discount.discount_value is None:
        raise ValidationError("Discount value is required for discounted subscriptions", field="discount_value")
    if discount.commitment_period is None:
        raise ValidationError(
            "Commitment period is required for discounted subscriptions", field="commitment_period"
        )
    if int(discount.commitment_period) not in COMMITMENT_PERIODS:
        raise ValidationError(
            f"Commitment period must be one of {list(COMMITMENT_PERIODS)}", field="commitment_period"
        )

    value = _to_decimal(discount.discount_value, "discount_value")
    if discount.discount_type == DISCOUNT_PERCENTAGE:
        if value <= 0 or value >= 100:
            raise ValidationError("Percentage discount must be between 0 and 100", field="discount_value")
    else:
        if value <= 0:
            raise ValidationError("Discount amount must be greater than zero", field="discount_value")
        if value >= monthly_amount:
            raise ValidationError(
                "Discount amount cannot be greater than or equal to monthly amount", field="discount_value"
            )
    return value


def calculate_discounted_amount(monthly_amount, discount_type, discount_value):
    if discount_type == DISCOUNT_PERCENTAGE:
        amount = monthly_amount * (Decimal("1") - discount_value / Decimal("100"))
    else:
        amount = monthly_amount - discount_value
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def is_month_discounted(subscription, month):
    """
    ``subscription`` is anything exposing plan_type / commitment_period
    (SubscriptionTerms or a PaymentPlan row).
    """
    if subscription.plan_type != "MONTHLY_SUBSCRIPTION_DISCOUNTED":
        return False
    if not subscription.commitment_period:
        return False
    return month <= subscription.commitment_period


def monthly_amount_for(subscription, month):
    if is_month_discounted(subscription, month) and subscription.discounted_monthly_amount is not None:
        return subscription.discounted_monthly_amount
    return subscription.original_monthly_amount


def expected_payment_for(subscription, month):
    """Month amount plus the one-time fees when it is the first payment."""
    amount = monthly_amount_for(subscription, month)
    if not subscription.is_first_payment_completed:
        amount += (subscription.course_fee or Decimal("0")) + (subscription.registration_fee or Decimal("0"))
    return amount


def subscription_due_dates(anchor_date):
    """Next due date one calendar month after ``anchor_date`` and its reminder date."""
    next_due_date = anchor_date + relativedelta(months=1)
    return next_due_date, next_due_date - timedelta(days=SUBSCRIPTION_REMINDER_DAYS_BEFORE)


def generate_subscription(course_fee, registration_fee, monthly_amount, discount=None,
                          anchor_date=None, total_expected_months=None):
    """
    Initialize a monthly subscription.

    Args:
        course_fee: one-time course fee charged with the first payment
        registration_fee: one-time registration fee charged with the first payment
        monthly_amount: original monthly amount, must be > 0
        discount: optional DiscountConfig; presence makes the plan discounted
        anchor_date: date the subscription starts (defaults to today)
        total_expected_months: optional ceiling; enables remaining_amount

    Returns:
        SubscriptionTerms
    """
    course_fee = _to_decimal(course_fee if course_fee is not None else 0, "course_fee")
    registration_fee = _to_decimal(registration_fee if registration_fee is not None else 0, "registration_fee")
    monthly_amount = _to_decimal(monthly_amount, "original_monthly_amount")

    if course_fee < 0:
        raise ValidationError("Course fee cannot be negative", field="course_fee")
    if registration_fee < 0:
        raise ValidationError("Registration fee cannot be negative", field="registration_fee")
    if monthly_amount <= 0:
        raise ValidationError("Monthly amount must be greater than zero", field="original_monthly_amount")
    if total_expected_months is not None and int(total_expected_months) < 1:
        raise ValidationError("Total expected months must be at least 1", field="total_expected_months")

    anchor_date = anchor_date or date.today()
    next_due_date, reminder_date = subscription_due_dates(anchor_date)

    terms = SubscriptionTerms(
        plan_type="MONTHLY_SUBSCRIPTION",
        course_fee=course_fee,
        registration_fee=registration_fee,
        original_monthly_amount=monthly_amount,
        next_due_date=next_due_date,
        reminder_date=reminder_date,
    )

    if discount is not None:
        value = validate_discount(discount, monthly_amount)
        terms.plan_type = "MONTHLY_SUBSCRIPTION_DISCOUNTED"
        terms.discount_type = discount.discount_type
        terms.discount_value = value
        terms.commitment_period = int(discount.commitment_period)
        terms.discounted_monthly_amount = calculate_discounted_amount(
            monthly_amount, discount.discount_type, value
        )

    if total_expected_months is not None:
        terms.total_expected_months = int(total_expected_months)
        terms.total_expected_amount = course_fee + registration_fee + sum(
            (monthly_amount_for(terms, month) for month in range(1, terms.total_expected_months + 1)),
            Decimal("0"),
        )
        terms.remaining_amount = terms.total_expected_amount

    return terms
