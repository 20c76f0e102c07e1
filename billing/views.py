# ============================================================
# Standard Library Imports
# ============================================================
import logging
from dataclasses import asdict

# ============================================================
# Third-Party Imports
# ============================================================
from django.utils import timezone
from drf_yasg import openapi
from drf_yasg.utils import swagger_auto_schema
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView

# ============================================================
# Local Application Imports
# ============================================================
from .exceptions import BillingError
from .permissions import IsAuthenticatedUser, get_actor, get_tenant_id, has_valid_cron_secret, is_production
from .serializers import (
    PaymentCreateSerializer,
    PaymentPlanCreateSerializer,
    PaymentPlanSerializer,
    StatusChangeSerializer,
)
from .services import BillingService

# ============================================================
# Logger Setup
# ============================================================
logger = logging.getLogger(__name__)


tenant_header = openapi.Parameter(
    'X-Tenant-ID', openapi.IN_HEADER, description="Tenant identifier", type=openapi.TYPE_STRING, required=True
)


def error_response(exc):
    return Response(exc.to_dict(), status=exc.status_code)


def invalid_input_response(errors):
    return Response(
        {
            "status": "error",
            "code": "VALIDATION_ERROR",
            "message": "Invalid input",
            "errors": errors,
        },
        status=status.HTTP_400_BAD_REQUEST
    )


def tenant_required_response():
    return Response(
        {
            "status": "error",
            "code": "TENANT_REQUIRED",
            "message": "Tenant id is required",
        },
        status=status.HTTP_401_UNAUTHORIZED
    )


def server_error_response():
    return Response(
        {
            "status": "error",
            "code": "INTERNAL_ERROR",
            "message": "Internal server error",
        },
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


def plan_payload(plan):
    return PaymentPlanSerializer(plan).data


# ============================================================
# Payment Plans
# ============================================================
class PaymentPlanCreateView(APIView):
    permission_classes = [IsAuthenticatedUser]

    @swagger_auto_schema(
        operation_summary="Create Payment Plan",
        operation_description="""
        Generates a payment plan for a student's course enrollment.

        **Plan types:**
        - ONE_TIME → `total_amount`, `due_date`
        - ONE_TIME_WITH_INSTALLMENTS → `total_amount`, `course_start_date`, `course_end_date` (3 installments)
        - EMI → `total_amount`, `first_due_date`, `term_months`
        - MONTHLY_SUBSCRIPTION → `monthly_amount`, `course_fee`, `registration_fee`
        - MONTHLY_SUBSCRIPTION_DISCOUNTED → as above plus `discount_type`, `discount_value`, `commitment_period`
        """,
        manual_parameters=[tenant_header],
        request_body=PaymentPlanCreateSerializer,
        responses={
            201: PaymentPlanSerializer,
            400: "Validation Error",
            401: "Tenant required",
            500: "Internal Server Error",
        },
        tags=["Billing"]
    )
    def post(self, request):
        tenant_id = get_tenant_id(request)
        if not tenant_id:
            return tenant_required_response()

        serializer = PaymentPlanCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid_input_response(serializer.errors)

        try:
            plan = BillingService().create_plan(tenant_id, get_actor(request), serializer.validated_data)
            return Response(
                {
                    "status": "success",
                    "message": "Payment plan created successfully",
                    "data": plan_payload(plan),
                },
                status=status.HTTP_201_CREATED
            )
        except BillingError as e:
            logger.warning(f"[BillingAPI] Plan creation rejected: {e.message}")
            return error_response(e)
        except Exception:
            logger.exception("[BillingAPI] Error creating payment plan")
            return server_error_response()


class PaymentPlanDetailView(APIView):
    permission_classes = [IsAuthenticatedUser]

    @swagger_auto_schema(
        operation_summary="Retrieve Payment Plan",
        operation_description="Plan with installments, installment summary, payment records and audit log.",
        manual_parameters=[tenant_header],
        responses={
            200: PaymentPlanSerializer,
            401: "Tenant required",
            404: "Payment plan not found",
        },
        tags=["Billing"]
    )
    def get(self, request, plan_id):
        tenant_id = get_tenant_id(request)
        if not tenant_id:
            return tenant_required_response()

        try:
            plan = BillingService().get_plan(tenant_id, plan_id)
            return Response(
                {
                    "status": "success",
                    "message": "Payment plan retrieved successfully",
                    "data": plan_payload(plan),
                },
                status=status.HTTP_200_OK
            )
        except BillingError as e:
            return error_response(e)
        except Exception:
            logger.exception(f"[BillingAPI] Error retrieving payment plan {plan_id}")
            return server_error_response()


class PlanPaymentView(APIView):
    permission_classes = [IsAuthenticatedUser]

    @swagger_auto_schema(
        operation_summary="Record Payment",
        operation_description=(
            "Applies a payment to the plan.\n\n"
            "**Business Rules:**\n"
            "- Installment plans → the next unpaid installment must be paid in full "
            "unless partial payments are enabled\n"
            "- Subscriptions → amount must match the expected month amount "
            "(first payment includes course and registration fees)\n"
            "- Payment date cannot be in the future or more than 1 year old\n"
            "- Only ACTIVE plans accept payments"
        ),
        manual_parameters=[tenant_header],
        request_body=PaymentCreateSerializer,
        responses={
            200: PaymentPlanSerializer,
            400: "Validation Error / Invalid transition",
            404: "Payment plan not found",
            500: "Internal Server Error",
        },
        tags=["Billing"]
    )
    def post(self, request, plan_id):
        tenant_id = get_tenant_id(request)
        if not tenant_id:
            return tenant_required_response()

        serializer = PaymentCreateSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid_input_response(serializer.errors)

        data = serializer.validated_data
        try:
            plan = BillingService().apply_payment(
                tenant_id,
                plan_id,
                amount=data['amount'],
                payment_method=data['payment_method'],
                payment_date=data['payment_date'],
                received_by=data['received_by'],
                transaction_id=data.get('transaction_id'),
                notes=data.get('notes'),
            )
            return Response(
                {
                    "status": "success",
                    "message": "Payment processed successfully",
                    "data": plan_payload(plan),
                },
                status=status.HTTP_200_OK
            )
        except BillingError as e:
            logger.warning(f"[BillingAPI] Payment for plan {plan_id} rejected: {e.message}")
            return error_response(e)
        except Exception:
            logger.exception(f"[BillingAPI] Error processing payment for plan {plan_id}")
            return server_error_response()


class PlanStatusView(APIView):
    permission_classes = [IsAuthenticatedUser]

    @swagger_auto_schema(
        operation_summary="Change Payment Plan Status",
        operation_description=(
            "Allowed transitions: ACTIVE → PAUSED / CANCELLED, PAUSED → ACTIVE / CANCELLED. "
            "CANCELLED and COMPLETED are terminal."
        ),
        manual_parameters=[tenant_header],
        request_body=StatusChangeSerializer,
        responses={
            200: PaymentPlanSerializer,
            400: "Validation Error / Invalid transition",
            404: "Payment plan not found",
        },
        tags=["Billing"]
    )
    def post(self, request, plan_id):
        tenant_id = get_tenant_id(request)
        if not tenant_id:
            return tenant_required_response()

        serializer = StatusChangeSerializer(data=request.data)
        if not serializer.is_valid():
            return invalid_input_response(serializer.errors)

        data = serializer.validated_data
        try:
            plan = BillingService().change_status(
                tenant_id,
                plan_id,
                new_status=data['new_status'],
                reason=data['reason'],
                updated_by=data['updated_by'],
            )
            return Response(
                {
                    "status": "success",
                    "message": f"Payment plan status changed to {plan.status}",
                    "data": plan_payload(plan),
                },
                status=status.HTTP_200_OK
            )
        except BillingError as e:
            logger.warning(f"[BillingAPI] Status change for plan {plan_id} rejected: {e.message}")
            return error_response(e)
        except Exception:
            logger.exception(f"[BillingAPI] Error changing status of plan {plan_id}")
            return server_error_response()


# ============================================================
# Scheduled Reminders
# ============================================================
class PaymentReminderCronView(APIView):
    """
    Daily payment reminder job. GET is the scheduler entrypoint,
    POST runs the same job manually.
    """
    authentication_classes = []
    permission_classes = [AllowAny]

    @swagger_auto_schema(
        operation_summary="Run Payment Reminders",
        operation_description=(
            "Scans active plans and sends pre-due, due-today and overdue reminders. "
            "In production requires `Authorization: Bearer <CRON_SECRET>`."
        ),
        responses={
            200: "Run summary",
            401: "Unauthorized",
            500: "Reminder run failed",
        },
        tags=["Billing Cron"]
    )
    def get(self, request):
        started = timezone.now()

        if not has_valid_cron_secret(request):
            logger.warning("[PaymentReminderCron] Unauthorized cron request")
            return Response({"success": False, "error": "Unauthorized"}, status=status.HTTP_401_UNAUTHORIZED)

        try:
            report = BillingService().run_payment_reminders()
        except Exception as e:
            logger.exception("[PaymentReminderCron] Reminder run failed")
            return Response(
                {
                    "success": False,
                    "error": "Failed to process payment reminders",
                    "details": str(e),
                    "executionTimeMs": self._elapsed_ms(started),
                    "timestamp": timezone.now().isoformat(),
                },
                status=status.HTTP_500_INTERNAL_SERVER_ERROR
            )

        data = {
            "success": True,
            "message": f"Processed {report.total} payment reminders",
            "summary": report.summary(),
            "executionTimeMs": self._elapsed_ms(started),
            "timestamp": timezone.now().isoformat(),
        }
        if not is_production():
            data["results"] = [asdict(item) for item in report.items]

        logger.info(f"[PaymentReminderCron] Completed in {data['executionTimeMs']}ms: {data['summary']}")
        return Response(data, status=status.HTTP_200_OK)

    @swagger_auto_schema(
        operation_summary="Run Payment Reminders (manual)",
        responses={200: "Run summary", 401: "Unauthorized", 500: "Reminder run failed"},
        tags=["Billing Cron"]
    )
    def post(self, request):
        return self.get(request)

    @staticmethod
    def _elapsed_ms(started):
        return int((timezone.now() - started).total_seconds() * 1000)
