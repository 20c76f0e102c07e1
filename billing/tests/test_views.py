import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from billing.models import PaymentPlan, PlanAuditLog

User = get_user_model()

TENANT = "academy-1"


def installment_payload(**overrides):
    payload = {
        "plan_type": "ONE_TIME_WITH_INSTALLMENTS",
        "account_id": "student-1",
        "account_name": "Asha Rao",
        "payer_email": "asha@example.com",
        "course_id": "course-1",
        "course_name": "Piano Basics",
        "total_amount": "3000.00",
        "course_start_date": "2025-01-01",
        "course_end_date": "2025-01-31",
    }
    payload.update(overrides)
    return payload


@pytest.mark.django_db
class TestPaymentPlanAPI:

    @pytest.fixture
    def user(self):
        return User.objects.create_user(username="admin", email="admin@academy.test", password="pass123")

    @pytest.fixture
    def client(self, user):
        client = APIClient()
        client.force_authenticate(user=user)
        client.credentials(HTTP_X_TENANT_ID=TENANT)
        return client

    @pytest.fixture
    def plan_id(self, client):
        response = client.post(reverse("billing-plan-create"), installment_payload(), format="json")
        assert response.status_code == status.HTTP_201_CREATED
        return response.data["data"]["id"]

    # ------------------------------------------------------------------
    # CREATE
    # ------------------------------------------------------------------
    def test_create_installment_plan(self, client):
        response = client.post(reverse("billing-plan-create"), installment_payload(), format="json")

        assert response.status_code == status.HTTP_201_CREATED
        assert response.data["status"] == "success"
        data = response.data["data"]
        assert data["tenant_id"] == TENANT
        assert data["status"] == "ACTIVE"
        assert data["created_by"] == "admin@academy.test"
        assert [inst["amount"] for inst in data["installments"]] == ["1000.00"] * 3
        assert [inst["stage"] for inst in data["installments"]] == ["first", "middle", "last"]
        assert data["installment_summary"]["total_installments"] == 3
        assert data["audit_log"][0]["action"] == PlanAuditLog.CREATED

    def test_create_requires_tenant(self, user):
        client = APIClient()
        client.force_authenticate(user=user)

        response = client.post(reverse("billing-plan-create"), installment_payload(), format="json")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert PaymentPlan.objects.count() == 0

    def test_create_requires_authentication(self):
        client = APIClient()
        client.credentials(HTTP_X_TENANT_ID=TENANT)

        response = client.post(reverse("billing-plan-create"), installment_payload(), format="json")

        assert response.status_code in [401, 403]

    def test_create_invalid_input(self, client):
        response = client.post(reverse("billing-plan-create"), {"plan_type": "LAYAWAY"}, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["code"] == "VALIDATION_ERROR"
        assert "plan_type" in response.data["errors"]

    def test_create_rejects_reversed_dates(self, client):
        payload = installment_payload(course_start_date="2025-02-01", course_end_date="2025-01-01")

        response = client.post(reverse("billing-plan-create"), payload, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["code"] == "VALIDATION_ERROR"
        assert response.data["field"] == "start_date"

    def test_create_discounted_subscription(self, client):
        payload = {
            "plan_type": "MONTHLY_SUBSCRIPTION_DISCOUNTED",
            "account_id": "student-2",
            "course_id": "course-2",
            "course_fee": "500.00",
            "registration_fee": "100.00",
            "monthly_amount": "1000.00",
            "discount_type": "percentage",
            "discount_value": "20",
            "commitment_period": 3,
        }

        response = client.post(reverse("billing-plan-create"), payload, format="json")

        assert response.status_code == status.HTTP_201_CREATED
        data = response.data["data"]
        assert data["discounted_monthly_amount"] == "800.00"
        assert data["is_currently_discounted"] is True
        assert data["expected_payment_amount"] == "1400.00"

    # ------------------------------------------------------------------
    # RETRIEVE
    # ------------------------------------------------------------------
    def test_retrieve_plan(self, client, plan_id):
        response = client.get(reverse("billing-plan-detail", args=[plan_id]))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["data"]["id"] == plan_id

    def test_retrieve_other_tenant_is_not_found(self, client, plan_id):
        client.credentials(HTTP_X_TENANT_ID="another-academy")

        response = client.get(reverse("billing-plan-detail", args=[plan_id]))

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.data["code"] == "NOT_FOUND"

    # ------------------------------------------------------------------
    # PAYMENTS
    # ------------------------------------------------------------------
    def test_record_payment(self, client, plan_id):
        payload = {
            "amount": "1000.00",
            "payment_method": "UPI",
            "payment_date": timezone.localdate().isoformat(),
            "received_by": "cashier",
            "transaction_id": "UPI-123",
        }

        response = client.post(reverse("billing-plan-payment", args=[plan_id]), payload, format="json")

        assert response.status_code == status.HTTP_200_OK
        data = response.data["data"]
        assert data["total_paid_amount"] == "1000.00"
        assert data["outstanding_amount"] == "2000.00"
        assert data["installments"][0]["status"] == "PAID"
        assert data["installments"][0]["transaction_id"] == "UPI-123"
        assert data["payments"][0]["installment_number"] == 1

    def test_partial_payment_rejected(self, client, plan_id):
        payload = {
            "amount": "500.00",
            "payment_method": "CASH",
            "payment_date": timezone.localdate().isoformat(),
            "received_by": "cashier",
        }

        response = client.post(reverse("billing-plan-payment", args=[plan_id]), payload, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["code"] == "VALIDATION_ERROR"
        assert response.data["field"] == "amount"

    @pytest.mark.parametrize("days", [-1, 400])
    def test_payment_date_bounds(self, client, plan_id, days):
        payload = {
            "amount": "1000.00",
            "payment_method": "CASH",
            "payment_date": (timezone.localdate() - timedelta(days=days)).isoformat(),
            "received_by": "cashier",
        }

        response = client.post(reverse("billing-plan-payment", args=[plan_id]), payload, format="json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "payment_date" in response.data["errors"]

    def test_payment_for_missing_plan(self, client):
        payload = {
            "amount": "1000.00",
            "payment_method": "CASH",
            "payment_date": timezone.localdate().isoformat(),
            "received_by": "cashier",
        }

        response = client.post(reverse("billing-plan-payment", args=[9999]), payload, format="json")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    # ------------------------------------------------------------------
    # STATUS
    # ------------------------------------------------------------------
    def test_cancel_then_reactivate_rejected(self, client, plan_id):
        url = reverse("billing-plan-status", args=[plan_id])

        response = client.post(url, {"new_status": "CANCELLED", "reason": "Dropped out", "updated_by": "manager"}, format="json")
        assert response.status_code == status.HTTP_200_OK
        assert response.data["data"]["status"] == "CANCELLED"

        response = client.post(url, {"new_status": "ACTIVE", "reason": "Rejoined", "updated_by": "manager"}, format="json")
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.data["code"] == "INVALID_TRANSITION"
        assert PaymentPlan.objects.get(pk=plan_id).status == "CANCELLED"

    def test_status_requires_reason(self, client, plan_id):
        response = client.post(
            reverse("billing-plan-status", args=[plan_id]),
            {"new_status": "PAUSED", "updated_by": "manager"},
            format="json"
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "reason" in response.data["errors"]


@pytest.mark.django_db
class TestPaymentReminderCron:

    @pytest.fixture
    def notifier(self):
        notifier = MagicMock(channel="email")
        notifier.send.return_value = True
        return notifier

    @pytest.fixture
    def patched_collaborators(self, notifier):
        directory = MagicMock()
        directory.get_academy_name.return_value = "Sunrise Academy"
        directory.get_account_display_name.return_value = "Asha Rao"
        directory.get_account_contact.return_value = "asha@example.com"
        with patch("billing.services.get_notifier", return_value=notifier), \
                patch("billing.services.DirectoryService", return_value=directory):
            yield

    @pytest.fixture
    def eligible_plan(self):
        return PaymentPlan.objects.create(
            tenant_id=TENANT,
            account_id="student-1",
            account_name="Asha Rao",
            payer_email="asha@example.com",
            course_id="course-1",
            plan_type=PaymentPlan.ONE_TIME,
            total_amount=Decimal("500"),
            outstanding_amount=Decimal("500"),
            next_due_date=timezone.localdate() + timedelta(days=1),
            created_by="admin",
        )

    def test_summary_with_results_outside_production(self, settings, patched_collaborators, eligible_plan):
        settings.BILLING_ENVIRONMENT = "development"

        response = APIClient().get(reverse("billing-payment-reminders"))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["success"] is True
        assert response.data["summary"] == {"total": 1, "sent": 1, "skipped": 0, "errors": 0}
        assert response.data["results"][0]["plan_id"] == eligible_plan.pk
        assert "executionTimeMs" in response.data
        assert "timestamp" in response.data

    def test_post_runs_same_job(self, settings, patched_collaborators, eligible_plan):
        settings.BILLING_ENVIRONMENT = "development"

        response = APIClient().post(reverse("billing-payment-reminders"))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["summary"]["sent"] == 1

    def test_production_requires_cron_secret(self, settings, patched_collaborators, eligible_plan):
        settings.BILLING_ENVIRONMENT = "production"
        settings.CRON_SECRET = "s3cret"

        response = APIClient().get(reverse("billing-payment-reminders"))
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

        response = APIClient().get(
            reverse("billing-payment-reminders"), HTTP_AUTHORIZATION="Bearer wrong"
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

        response = APIClient().get(
            reverse("billing-payment-reminders"), HTTP_AUTHORIZATION="Bearer s3cret"
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.data["summary"]["sent"] == 1
        assert "results" not in response.data

    def test_item_failures_still_return_200(self, settings, notifier, patched_collaborators, eligible_plan):
        settings.BILLING_ENVIRONMENT = "development"
        notifier.send.side_effect = Exception("SMTP down")

        response = APIClient().get(reverse("billing-payment-reminders"))

        assert response.status_code == status.HTTP_200_OK
        assert response.data["summary"]["errors"] == 1

    @patch("billing.views.BillingService.run_payment_reminders", side_effect=DatabaseError("database unavailable"))
    def test_store_failure_returns_500(self, mock_run, settings):
        settings.BILLING_ENVIRONMENT = "development"

        response = APIClient().get(reverse("billing-payment-reminders"))

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.data["success"] is False
        assert response.data["details"] == "database unavailable"
