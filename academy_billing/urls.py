from django.contrib import admin
from django.urls import path, include
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from rest_framework import permissions
from drf_yasg.views import get_schema_view
from drf_yasg import openapi


# Swagger Configuration
schema_view = get_schema_view(
    openapi.Info(
        title="Academy Billing API",
        default_version='v1',
        description="""
        # Academy Billing API

        Payment plans, payments and scheduled reminders for academy course fees.

        ## Features
        - One-time, installment, EMI and monthly subscription plans
        - Commitment discounts for subscriptions
        - Plan lifecycle (pause, resume, cancel) with audit trail
        - Daily pre-due, due-today and overdue reminders

        ## Authentication
        This API uses JWT (JSON Web Tokens) for authentication.
        Every plan request also carries the tenant in the `X-Tenant-ID` header.
        """,
        contact=openapi.Contact(email="support@academy.local"),
    ),
    public=True,
    permission_classes=(permissions.AllowAny,),
)

urlpatterns = [
    # Admin
    path('admin/', admin.site.urls),

    # API Documentation
    path('swagger/', schema_view.with_ui('swagger', cache_timeout=0), name='schema-swagger-ui'),
    path('redoc/', schema_view.with_ui('redoc', cache_timeout=0), name='schema-redoc'),
    path('swagger.json', schema_view.without_ui(cache_timeout=0), name='schema-json'),

    # API v1
    path('api/token/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('api/token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    path('api/v1/billing/', include('billing.urls')),
]
