from django.contrib import admin

from .models import Installment, PaymentPlan, PaymentRecord, PlanAuditLog


class InstallmentInline(admin.TabularInline):
    model = Installment
    extra = 0
    readonly_fields = ['installment_number', 'due_date', 'reminder_date', 'amount', 'status', 'paid_date', 'paid_amount']
    can_delete = False


@admin.register(PaymentPlan)
class PaymentPlanAdmin(admin.ModelAdmin):
    list_display = ['id', 'tenant_id', 'account_id', 'plan_type', 'status', 'total_amount',
                    'total_paid_amount', 'next_due_date', 'reminders_count']
    list_filter = ['plan_type', 'status', 'reminder_enabled']
    search_fields = ['account_id', 'account_name', 'course_name', 'tenant_id']
    inlines = [InstallmentInline]
    # state changes go through the API so the audit log stays complete
    readonly_fields = [field.name for field in PaymentPlan._meta.fields]


@admin.register(PaymentRecord)
class PaymentRecordAdmin(admin.ModelAdmin):
    list_display = ['id', 'plan', 'amount', 'payment_date', 'payment_mode', 'received_by']
    list_filter = ['payment_mode']

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PlanAuditLog)
class PlanAuditLogAdmin(admin.ModelAdmin):
    list_display = ['id', 'plan', 'action', 'performed_by', 'performed_at']
    list_filter = ['action']

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
