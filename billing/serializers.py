from dateutil.relativedelta import relativedelta
from django.utils import timezone
from rest_framework import serializers

from .models import Installment, PaymentPlan, PaymentRecord, PlanAuditLog
from .plan_generator import COMMITMENT_PERIODS, DISCOUNT_TYPES


# ------------------------------
# Read Serializers
# ------------------------------
class InstallmentSerializer(serializers.ModelSerializer):
    stage = serializers.ReadOnlyField()
    invoice_on_payment = serializers.ReadOnlyField()
    final_invoice = serializers.ReadOnlyField()
    stop_reminder_toggle = serializers.ReadOnlyField()
    stop_access_toggle = serializers.ReadOnlyField()

    class Meta:
        model = Installment
        fields = [
            'id', 'installment_number', 'stage', 'due_date', 'reminder_date',
            'amount', 'status', 'paid_date', 'paid_amount', 'transaction_id',
            'invoice_on_payment', 'final_invoice', 'stop_reminder_toggle', 'stop_access_toggle',
        ]


class PaymentRecordSerializer(serializers.ModelSerializer):
    installment_number = serializers.SerializerMethodField()

    class Meta:
        model = PaymentRecord
        fields = [
            'id', 'amount', 'payment_date', 'payment_mode', 'received_by',
            'transaction_id', 'notes', 'installment_number', 'subscription_month',
            'is_discounted_payment', 'is_first_subscription_payment', 'created_at',
        ]

    def get_installment_number(self, obj):
        return obj.installment.installment_number if obj.installment_id else None


class PlanAuditLogSerializer(serializers.ModelSerializer):
    class Meta:
        model = PlanAuditLog
        fields = ['id', 'action', 'performed_by', 'performed_at', 'details', 'notes']


class PaymentPlanSerializer(serializers.ModelSerializer):
    installments = InstallmentSerializer(many=True, read_only=True)
    payments = PaymentRecordSerializer(many=True, read_only=True)
    audit_log = PlanAuditLogSerializer(many=True, read_only=True)
    installment_summary = serializers.SerializerMethodField()
    is_currently_discounted = serializers.ReadOnlyField()
    current_month_amount = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    expected_payment_amount = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = PaymentPlan
        fields = [
            'id', 'tenant_id', 'account_id', 'account_name', 'payer_email',
            'course_id', 'course_name', 'cohort_id', 'plan_type', 'status',
            'total_amount', 'total_paid_amount', 'outstanding_amount',
            'next_due_date', 'reminder_date', 'last_payment_date',
            'reminder_enabled', 'pre_reminder_enabled', 'reminders_count', 'last_reminder_sent_at',
            'installment_count', 'course_start_date', 'course_end_date',
            'auto_stop_on_full_payment', 'partial_payment_allowed',
            'course_fee', 'registration_fee', 'original_monthly_amount', 'discounted_monthly_amount',
            'discount_type', 'discount_value', 'commitment_period', 'current_month',
            'is_first_payment_completed', 'total_expected_months', 'total_expected_amount',
            'is_currently_discounted', 'current_month_amount', 'expected_payment_amount',
            'installments', 'installment_summary', 'payments', 'audit_log',
            'created_by', 'last_updated_by', 'notes', 'version', 'created_at', 'updated_at',
        ]
        read_only_fields = fields

    def get_installment_summary(self, obj):
        return obj.installment_summary()


# ------------------------------
# Input Serializers
# ------------------------------
class PaymentPlanCreateSerializer(serializers.Serializer):
    """
    Type-specific inputs:
    - ONE_TIME: total_amount, due_date
    - ONE_TIME_WITH_INSTALLMENTS: total_amount, course_start_date, course_end_date
    - EMI: total_amount, first_due_date, term_months
    - MONTHLY_SUBSCRIPTION(_DISCOUNTED): monthly_amount, course_fee, registration_fee,
      discount_type / discount_value / commitment_period when discounted
    """
    plan_type = serializers.ChoiceField(choices=PaymentPlan.PLAN_TYPE_CHOICES)
    account_id = serializers.CharField(max_length=64)
    account_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    payer_email = serializers.EmailField(required=False, allow_blank=True)
    course_id = serializers.CharField(max_length=64)
    course_name = serializers.CharField(max_length=255, required=False, allow_blank=True)
    cohort_id = serializers.CharField(max_length=64, required=False, allow_blank=True)

    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    due_date = serializers.DateField(required=False)
    course_start_date = serializers.DateField(required=False)
    course_end_date = serializers.DateField(required=False)
    installment_count = serializers.IntegerField(required=False)
    first_due_date = serializers.DateField(required=False)
    term_months = serializers.IntegerField(required=False)

    course_fee = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    registration_fee = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    monthly_amount = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    discount_type = serializers.ChoiceField(choices=DISCOUNT_TYPES, required=False)
    discount_value = serializers.DecimalField(max_digits=12, decimal_places=2, required=False)
    commitment_period = serializers.ChoiceField(choices=COMMITMENT_PERIODS, required=False)
    total_expected_months = serializers.IntegerField(required=False, min_value=1)
    anchor_date = serializers.DateField(required=False)

    reminder_enabled = serializers.BooleanField(required=False)
    pre_reminder_enabled = serializers.BooleanField(required=False)
    partial_payment_allowed = serializers.BooleanField(required=False)
    notes = serializers.CharField(required=False, allow_blank=True)


class PaymentCreateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    payment_method = serializers.ChoiceField(choices=PaymentRecord.PAYMENT_MODE_CHOICES)
    payment_date = serializers.DateField()
    received_by = serializers.CharField(max_length=150)
    transaction_id = serializers.CharField(max_length=100, required=False, allow_blank=True, allow_null=True)
    notes = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Payment amount must be positive")
        return value

    def validate_payment_date(self, value):
        today = timezone.localdate()
        if value > today:
            raise serializers.ValidationError("Payment date cannot be in the future")
        if value < today - relativedelta(years=1):
            raise serializers.ValidationError("Payment date cannot be more than 1 year old")
        return value


class StatusChangeSerializer(serializers.Serializer):
    new_status = serializers.ChoiceField(choices=PaymentPlan.STATUS_CHOICES)
    reason = serializers.CharField()
    updated_by = serializers.CharField(max_length=150)
