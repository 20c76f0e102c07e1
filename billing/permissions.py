from django.conf import settings
from rest_framework import permissions


class IsAuthenticatedUser(permissions.BasePermission):
    """
    Permission for any authenticated user.
    """
    def has_permission(self, request, view):
        return bool(request.user and request.user.is_authenticated)


def is_production():
    return getattr(settings, 'BILLING_ENVIRONMENT', 'development') == 'production'


def has_valid_cron_secret(request):
    """
    Scheduled job check. Outside production, or when no CRON_SECRET is
    configured, every caller is accepted.
    """
    secret = getattr(settings, 'CRON_SECRET', '')
    if not is_production() or not secret:
        return True
    return request.headers.get('Authorization', '') == f"Bearer {secret}"


def get_tenant_id(request):
    """Tenant set by upstream middleware, else the X-Tenant-ID header."""
    return getattr(request, 'tenant_id', None) or request.headers.get('X-Tenant-ID') or None


def get_actor(request):
    user = request.user
    return getattr(user, 'email', '') or user.get_username()
