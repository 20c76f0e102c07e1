import pytest
from datetime import date, datetime, timezone as dt_timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

from billing.exceptions import NotFoundError, ValidationError
from billing.models import Installment, PaymentPlan, PlanAuditLog
from billing.reminder_selector import ReminderPolicy
from billing.services import BillingService

TENANT = "academy-1"


@pytest.mark.django_db
class TestCreatePlan:

    @pytest.fixture
    def service(self):
        return BillingService()

    def test_installment_plan_persisted_with_audit(self, service):
        plan = service.create_plan(TENANT, "admin@academy.test", {
            "plan_type": PaymentPlan.ONE_TIME_WITH_INSTALLMENTS,
            "account_id": "student-1",
            "course_id": "course-1",
            "total_amount": Decimal("3000"),
            "course_start_date": date(2025, 1, 1),
            "course_end_date": date(2025, 1, 31),
        })

        plan.refresh_from_db()
        assert plan.status == "ACTIVE"
        assert plan.installment_count == 3
        assert plan.total_amount == Decimal("3000")
        assert plan.outstanding_amount == Decimal("3000")
        assert plan.next_due_date == date(2025, 1, 11)
        assert plan.reminder_date == date(2025, 1, 9)
        assert plan.partial_payment_allowed is False
        assert plan.created_by == "admin@academy.test"

        installments = list(plan.installments.order_by("installment_number"))
        assert [inst.amount for inst in installments] == [Decimal("1000")] * 3
        assert [inst.stage for inst in installments] == ["first", "middle", "last"]
        assert installments[1].invoice_on_payment is True
        assert installments[2].final_invoice is True

        audit = plan.audit_log.get()
        assert audit.action == PlanAuditLog.CREATED
        assert audit.details["installments"] == 3

        summary = plan.installment_summary()
        assert summary["unpaid_installments"] == 3
        assert summary["balance_remaining"] == "3000.00"

    def test_emi_plan(self, service):
        plan = service.create_plan(TENANT, "admin", {
            "plan_type": PaymentPlan.EMI,
            "account_id": "student-1",
            "course_id": "course-1",
            "total_amount": Decimal("6000"),
            "first_due_date": date(2025, 2, 1),
            "term_months": 6,
        })

        assert plan.installment_count == 6
        assert Installment.objects.filter(plan=plan).count() == 6
        last = plan.installments.get(installment_number=6)
        assert last.due_date == date(2025, 7, 1)
        assert last.stage == "last"

    def test_one_time_plan(self, service):
        plan = service.create_plan(TENANT, "admin", {
            "plan_type": PaymentPlan.ONE_TIME,
            "account_id": "student-1",
            "course_id": "course-1",
            "total_amount": Decimal("500"),
            "due_date": date(2025, 3, 1),
        })

        assert plan.next_due_date == date(2025, 3, 1)
        assert plan.reminder_date == date(2025, 2, 27)
        assert not plan.installments.exists()

    def test_discounted_subscription(self, service):
        plan = service.create_plan(TENANT, "admin", {
            "plan_type": PaymentPlan.MONTHLY_SUBSCRIPTION_DISCOUNTED,
            "account_id": "student-1",
            "course_id": "course-1",
            "monthly_amount": Decimal("1000"),
            "discount_type": "percentage",
            "discount_value": Decimal("20"),
            "commitment_period": 3,
            "anchor_date": date(2025, 1, 1),
        })

        plan.refresh_from_db()
        assert plan.discounted_monthly_amount == Decimal("800.00")
        assert plan.is_currently_discounted is True
        assert plan.current_month_amount == Decimal("800.00")
        assert plan.next_due_date == date(2025, 2, 1)
        assert plan.reminder_date == date(2025, 1, 27)
        assert plan.outstanding_amount is None

    def test_invalid_discount_persists_nothing(self, service):
        with pytest.raises(ValidationError) as exc:
            service.create_plan(TENANT, "admin", {
                "plan_type": PaymentPlan.MONTHLY_SUBSCRIPTION_DISCOUNTED,
                "account_id": "student-1",
                "course_id": "course-1",
                "monthly_amount": Decimal("1000"),
                "discount_type": "percentage",
                "discount_value": Decimal("20"),
                "commitment_period": 5,
            })

        assert exc.value.field == "commitment_period"
        assert PaymentPlan.objects.count() == 0

    def test_unknown_plan_type(self, service):
        with pytest.raises(ValidationError) as exc:
            service.create_plan(TENANT, "admin", {"plan_type": "LAYAWAY", "account_id": "s", "course_id": "c"})
        assert exc.value.field == "plan_type"

    def test_tenant_required(self, service):
        with pytest.raises(ValidationError) as exc:
            service.create_plan("", "admin", {"plan_type": PaymentPlan.ONE_TIME})
        assert exc.value.field == "tenant_id"


@pytest.mark.django_db
class TestGetPlan:

    def test_plans_are_tenant_scoped(self):
        service = BillingService()
        plan = service.create_plan(TENANT, "admin", {
            "plan_type": PaymentPlan.ONE_TIME,
            "account_id": "student-1",
            "course_id": "course-1",
            "total_amount": Decimal("500"),
            "due_date": date(2025, 3, 1),
        })

        assert service.get_plan(TENANT, plan.pk).pk == plan.pk
        with pytest.raises(NotFoundError):
            service.get_plan("another-academy", plan.pk)
        with pytest.raises(NotFoundError):
            service.change_status("another-academy", plan.pk, "PAUSED", "hold", "manager")


@pytest.mark.django_db
class TestRunPaymentReminders:

    def test_uses_injected_collaborators(self):
        notifier = MagicMock(channel="email")
        notifier.send.return_value = True
        directory = MagicMock()
        directory.get_academy_name.return_value = "Sunrise Academy"
        PaymentPlan.objects.create(
            tenant_id=TENANT,
            account_id="student-1",
            payer_email="asha@example.com",
            course_id="course-1",
            plan_type=PaymentPlan.ONE_TIME,
            total_amount=Decimal("500"),
            outstanding_amount=Decimal("500"),
            next_due_date=date(2025, 1, 11),
            created_by="admin",
        )

        report = BillingService(notifier=notifier, directory=directory).run_payment_reminders(
            policy=ReminderPolicy(),
            now=datetime(2025, 1, 10, 9, 0, tzinfo=dt_timezone.utc),
        )

        assert report.summary() == {"total": 1, "sent": 1, "skipped": 0, "errors": 0}

    @patch("billing.services.DirectoryService")
    @patch("billing.services.get_notifier")
    def test_builds_configured_collaborators(self, mock_get_notifier, mock_directory):
        report = BillingService().run_payment_reminders(policy=ReminderPolicy())

        assert report.total == 0
        mock_get_notifier.assert_called_once_with()
        mock_directory.assert_called_once_with()
