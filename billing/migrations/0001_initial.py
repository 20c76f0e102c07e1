from decimal import Decimal

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='PaymentPlan',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('tenant_id', models.CharField(db_index=True, max_length=64)),
                ('account_id', models.CharField(help_text='Owning student account id', max_length=64)),
                ('account_name', models.CharField(blank=True, default='', max_length=255)),
                ('payer_email', models.EmailField(blank=True, default='', help_text='Denormalized contact; directory lookup is used when empty', max_length=254)),
                ('course_id', models.CharField(max_length=64)),
                ('course_name', models.CharField(blank=True, default='', max_length=255)),
                ('cohort_id', models.CharField(blank=True, default='', max_length=64)),
                ('plan_type', models.CharField(choices=[('ONE_TIME', 'One Time'), ('ONE_TIME_WITH_INSTALLMENTS', 'One Time With Installments'), ('MONTHLY_SUBSCRIPTION', 'Monthly Subscription'), ('MONTHLY_SUBSCRIPTION_DISCOUNTED', 'Monthly Subscription With Discounts'), ('EMI', 'EMI')], max_length=40)),
                ('status', models.CharField(choices=[('ACTIVE', 'Active'), ('PAUSED', 'Paused'), ('CANCELLED', 'Cancelled'), ('COMPLETED', 'Completed')], default='ACTIVE', max_length=20)),
                ('total_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('total_paid_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), help_text='Cached sum of payment records', max_digits=12)),
                ('outstanding_amount', models.DecimalField(blank=True, decimal_places=2, help_text='Null for open-ended subscriptions', max_digits=12, null=True)),
                ('next_due_date', models.DateField(blank=True, null=True)),
                ('reminder_date', models.DateField(blank=True, null=True)),
                ('last_payment_date', models.DateField(blank=True, null=True)),
                ('reminder_enabled', models.BooleanField(default=True)),
                ('pre_reminder_enabled', models.BooleanField(default=True)),
                ('reminders_count', models.PositiveIntegerField(default=0)),
                ('last_reminder_sent_at', models.DateTimeField(blank=True, null=True)),
                ('installment_count', models.PositiveIntegerField(blank=True, null=True)),
                ('course_start_date', models.DateField(blank=True, null=True)),
                ('course_end_date', models.DateField(blank=True, null=True)),
                ('auto_stop_on_full_payment', models.BooleanField(default=True)),
                ('partial_payment_allowed', models.BooleanField(default=False)),
                ('course_fee', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('registration_fee', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('original_monthly_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('discounted_monthly_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('discount_type', models.CharField(blank=True, choices=[('percentage', 'Percentage'), ('amount', 'Amount')], max_length=20, null=True)),
                ('discount_value', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('commitment_period', models.PositiveIntegerField(blank=True, choices=[(3, '3 Months'), (6, '6 Months'), (9, '9 Months'), (12, '12 Months'), (24, '24 Months')], null=True)),
                ('current_month', models.PositiveIntegerField(default=1)),
                ('is_first_payment_completed', models.BooleanField(default=False)),
                ('total_expected_months', models.PositiveIntegerField(blank=True, null=True)),
                ('total_expected_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('created_by', models.CharField(max_length=150)),
                ('last_updated_by', models.CharField(blank=True, default='', max_length=150)),
                ('notes', models.TextField(blank=True, default='')),
                ('version', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'payment_plans',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['tenant_id', 'account_id'], name='plan_tenant_account_idx'),
                    models.Index(fields=['status', 'next_due_date'], name='plan_status_due_idx'),
                    models.Index(fields=['plan_type', 'status'], name='plan_type_status_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Installment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('installment_number', models.PositiveIntegerField(help_text='1-based position')),
                ('due_date', models.DateField()),
                ('reminder_date', models.DateField()),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('status', models.CharField(choices=[('UNPAID', 'Unpaid'), ('PAID', 'Paid')], default='UNPAID', max_length=10)),
                ('paid_date', models.DateField(blank=True, null=True)),
                ('paid_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('transaction_id', models.CharField(blank=True, max_length=100, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('plan', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='installments', to='billing.paymentplan')),
            ],
            options={
                'db_table': 'plan_installments',
                'ordering': ['plan', 'installment_number'],
                'indexes': [
                    models.Index(fields=['due_date'], name='installment_due_date_idx'),
                    models.Index(fields=['status'], name='installment_status_idx'),
                ],
                'unique_together': {('plan', 'installment_number')},
            },
        ),
        migrations.CreateModel(
            name='PaymentRecord',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('subscription_month', models.PositiveIntegerField(blank=True, null=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('payment_date', models.DateField()),
                ('payment_mode', models.CharField(choices=[('CASH', 'Cash'), ('BANK_TRANSFER', 'Bank Transfer'), ('CARD', 'Card'), ('CHEQUE', 'Cheque'), ('UPI', 'UPI'), ('OTHER', 'Other')], max_length=20)),
                ('received_by', models.CharField(max_length=150)),
                ('transaction_id', models.CharField(blank=True, max_length=100, null=True)),
                ('notes', models.TextField(blank=True, default='')),
                ('is_discounted_payment', models.BooleanField(default=False)),
                ('is_first_subscription_payment', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('installment', models.ForeignKey(blank=True, help_text='Installment this payment was applied to', null=True, on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='billing.installment')),
                ('plan', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='billing.paymentplan')),
            ],
            options={
                'db_table': 'plan_payment_records',
                'ordering': ['created_at', 'id'],
                'indexes': [
                    models.Index(fields=['plan', 'payment_date'], name='payment_record_plan_date_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PlanAuditLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('action', models.CharField(choices=[('CREATED', 'Created'), ('PAYMENT_PROCESSED', 'Payment Processed'), ('STATUS_CHANGED', 'Status Changed'), ('CANCELLATION_SNAPSHOT', 'Cancellation Snapshot')], max_length=40)),
                ('performed_by', models.CharField(max_length=150)),
                ('performed_at', models.DateTimeField(auto_now_add=True)),
                ('details', models.JSONField(blank=True, null=True)),
                ('notes', models.TextField(blank=True, default='')),
                ('plan', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='audit_log', to='billing.paymentplan')),
            ],
            options={
                'db_table': 'plan_audit_logs',
                'ordering': ['id'],
                'indexes': [
                    models.Index(fields=['plan', 'id'], name='audit_plan_id_idx'),
                    models.Index(fields=['action'], name='audit_action_idx'),
                ],
            },
        ),
    ]
