import logging

import requests
from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)


class DirectoryService:
    """
    Student / academy directory client.

    Read-only lookups of display names and contact emails by id. Successful
    lookups are cached; failures are logged and reported as ``None`` so the
    caller can fall back.
    """

    CACHE_PREFIX = "billing:directory"

    def __init__(self, base_url=None, api_key=None, timeout=None, cache_timeout=None):
        self.base_url = (base_url or getattr(settings, 'DIRECTORY_API_BASE_URL', '')).rstrip('/')
        self.api_key = api_key if api_key is not None else getattr(settings, 'DIRECTORY_API_KEY', '')
        self.timeout = timeout or getattr(settings, 'DIRECTORY_API_TIMEOUT', 10)
        self.cache_timeout = cache_timeout or getattr(settings, 'DIRECTORY_CACHE_TIMEOUT', 300)

    def _headers(self, tenant_id):
        return {
            'X-API-Key': self.api_key,
            'X-Tenant-ID': str(tenant_id),
            'Content-Type': 'application/json'
        }

    def _get(self, tenant_id, path, cache_key):
        data = cache.get(cache_key)
        if data is not None:
            return data

        if not self.base_url:
            logger.warning(f"[Directory] DIRECTORY_API_BASE_URL not configured; lookup {path} skipped")
            return None

        try:
            response = requests.get(
                f"{self.base_url}{path}",
                headers=self._headers(tenant_id),
                timeout=self.timeout
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"[Directory] Lookup {path} failed for tenant={tenant_id}: {str(e)}")
            return None

        cache.set(cache_key, data, self.cache_timeout)
        return data

    # ---------------------------------------------
    # Lookups
    # ---------------------------------------------
    def get_account(self, tenant_id, account_id):
        return self._get(
            tenant_id,
            f"/v1/accounts/{account_id}",
            f"{self.CACHE_PREFIX}:{tenant_id}:account:{account_id}"
        )

    def get_account_display_name(self, tenant_id, account_id):
        account = self.get_account(tenant_id, account_id)
        if not account:
            return None
        name = account.get('display_name') or " ".join(
            part for part in (account.get('first_name'), account.get('last_name')) if part
        )
        return name or None

    def get_account_contact(self, tenant_id, account_id, channel='email'):
        """Email address, or phone number for the whatsapp channel."""
        account = self.get_account(tenant_id, account_id)
        if not account:
            return None
        if channel == 'whatsapp':
            return account.get('phone') or None
        return account.get('email') or None

    def get_academy_name(self, tenant_id):
        academy = self._get(
            tenant_id,
            f"/v1/tenants/{tenant_id}",
            f"{self.CACHE_PREFIX}:{tenant_id}:academy"
        )
        if not academy:
            return None
        return academy.get('academy_name') or academy.get('name') or None
