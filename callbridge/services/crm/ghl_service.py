"""
GoHighLevel CRM Service
Keeps each tenant's OAuth access token fresh and wraps the contact and
calendar endpoints used for personalization and booking.
"""

import re
import httpx
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Callable

from callbridge.core.config import settings
from callbridge.core.logging import get_logger
from callbridge.core.exceptions import (
    TenantNotFoundError,
    TokenRefreshError,
    ValidationError,
    CRMServiceError,
    CRMAuthError
)
from callbridge.db import get_repository
from callbridge.db.base import TenantRepositoryInterface
from callbridge.models.tenant import Tenant

logger = get_logger(__name__)

TOKEN_REFRESH_BUFFER = timedelta(minutes=5)
CONTACTS_API_VERSION = "2021-07-28"
CALENDARS_API_VERSION = "2021-04-15"


def is_token_valid(
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
    buffer: timedelta = TOKEN_REFRESH_BUFFER
) -> bool:
    """A token is valid only if it expires strictly after now + buffer"""
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at > now + buffer


def normalize_phone(phone: str) -> str:
    """Digits only, as the contact search matches on them"""
    return re.sub(r"\D", "", phone or "")


class GHLService:
    """Service for interacting with the GoHighLevel API"""

    def __init__(
        self,
        repository: Optional[TenantRepositoryInterface] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.base_url = settings.ghl_api_base_url.rstrip("/")
        self.timeout = settings.ghl_http_timeout

    @property
    def repository(self) -> TenantRepositoryInterface:
        return self._repository or get_repository()

    # ==================== Tokens ====================

    async def ensure_valid_access_token(self, tenant_id: str) -> Dict[str, str]:
        """
        Return a usable access token for the tenant, refreshing it first if it
        is missing, expired, or within the refresh buffer.

        Returns:
            {"access_token": ..., "location_id": ...}

        Raises:
            TenantNotFoundError: unknown tenant
            TokenRefreshError: no refresh token, or the refresh call failed
        """
        tenant = await self.repository.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)

        if not tenant.refresh_token:
            logger.error(f"No refresh token available for tenant {tenant_id}")
            raise TokenRefreshError(
                f"No refresh token available for tenant {tenant_id}. "
                "Tenant may need to re-authorize with GHL."
            )

        access_token = tenant.access_token
        if not access_token or not is_token_valid(tenant.token_expires_at, self._clock()):
            logger.info(f"Token expired or missing for tenant {tenant_id}, refreshing")
            access_token = await self.refresh_access_token(tenant)

        return {"access_token": access_token, "location_id": tenant.tenant_id}

    async def refresh_access_token(self, tenant: Tenant) -> str:
        """Exchange the refresh token and persist the new token pair before returning"""
        form = {
            "grant_type": "refresh_token",
            "refresh_token": tenant.refresh_token,
            "client_id": settings.ghl_client_id or "",
            "client_secret": settings.ghl_client_secret or "",
            "redirect_uri": settings.ghl_redirect_uri or "",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/oauth/token",
                    data=form,
                    headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as e:
            logger.error(f"Token refresh request failed for tenant {tenant.tenant_id}: {e}")
            raise TokenRefreshError(str(e))

        if response.status_code >= 400:
            logger.error(
                f"Token refresh failed for tenant {tenant.tenant_id}: "
                f"{response.status_code} - {response.text}"
            )
            raise TokenRefreshError(response.text)

        data = response.json()
        access_token = data.get("access_token")
        if not access_token:
            raise TokenRefreshError("access token missing from response")

        expires_at = self._clock() + timedelta(seconds=int(data.get("expires_in", 0)))
        new_refresh_token = data.get("refresh_token")

        def store_tokens(t: Tenant) -> None:
            t.access_token = access_token
            t.token_expires_at = expires_at
            if new_refresh_token:
                t.refresh_token = new_refresh_token

        saved = await self.repository.update_tenant(tenant.tenant_id, store_tokens)
        if saved is None:
            raise TokenRefreshError(f"tenant {tenant.tenant_id} disappeared during refresh")

        logger.info(f"GHL token refreshed for tenant {tenant.tenant_id}, expires {expires_at.isoformat()}")
        return access_token

    async def refresh_tenant_token(self, tenant_id: str, force: bool = False) -> Dict[str, Any]:
        """
        Operator-triggered refresh. Without force the token is only exchanged
        when ensure_valid_access_token would refresh it anyway.
        """
        tenant = await self.repository.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        if not tenant.refresh_token:
            raise ValidationError("Tenant does not have GHL integration set up (no refresh token)", field="refresh_token")

        if force:
            logger.info(f"Forced GHL token refresh for tenant {tenant_id}")
            await self.refresh_access_token(tenant)
            refreshed = True
        else:
            await self.ensure_valid_access_token(tenant_id)
            after = await self.repository.get_tenant(tenant_id)
            refreshed = after is not None and (
                after.access_token != tenant.access_token or after.token_expires_at != tenant.token_expires_at
            )

        status = await self.token_status(tenant_id)
        status.update(token_refreshed=refreshed, forced=force)
        return status

    async def token_status(self, tenant_id: str) -> Dict[str, Any]:
        tenant = await self.repository.get_tenant(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return {
            "tenant_id": tenant_id,
            "has_refresh_token": bool(tenant.refresh_token),
            "has_access_token": bool(tenant.access_token),
            "token_expires_at": tenant.token_expires_at.isoformat() if tenant.token_expires_at else None,
            "token_valid": bool(tenant.access_token) and is_token_valid(tenant.token_expires_at, self._clock()),
        }

    # ==================== API calls ====================

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        version: str,
        **kwargs
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Version": version,
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"GHL request {method} {path} failed: {e}")
            raise CRMServiceError(f"GHL request failed: {e}")

        if response.status_code in (401, 403):
            logger.error(f"GHL rejected credentials on {path}: {response.status_code}")
            raise CRMAuthError(response.status_code)
        if response.status_code >= 400:
            logger.error(f"GHL API error on {path}: {response.status_code} - {response.text}")
            raise CRMServiceError(
                f"GHL API error: {response.status_code}",
                upstream_status=response.status_code,
                body=response.text
            )
        return response.json()

    async def find_contact_by_phone(
        self,
        access_token: str,
        phone: str,
        tenant_id: str,
        page_limit: int = 10
    ) -> Optional[Dict[str, Any]]:
        """Newest contact whose phone contains the caller's digits, or None"""
        digits = normalize_phone(phone)
        if not digits:
            return None

        body = {
            "locationId": tenant_id,
            "page": 1,
            "pageLimit": page_limit,
            "filters": [{"field": "phone", "operator": "contains", "value": digits}],
            "sort": [{"field": "dateAdded", "direction": "desc"}],
        }
        data = await self._request("POST", "/contacts/search", access_token, CONTACTS_API_VERSION, json=body)
        contacts = data.get("contacts") or []
        return contacts[0] if contacts else None

    async def create_contact(
        self,
        access_token: str,
        tenant_id: str,
        contact: Dict[str, Any]
    ) -> Dict[str, Any]:
        body = {"locationId": tenant_id, **contact}
        data = await self._request("POST", "/contacts/", access_token, CONTACTS_API_VERSION, json=body)
        return data.get("contact", data)

    async def get_free_slots(
        self,
        access_token: str,
        cal_id: str,
        start_ms: int,
        end_ms: int,
        timezone_name: str
    ) -> Dict[str, Any]:
        params = {"startDate": start_ms, "endDate": end_ms, "timezone": timezone_name}
        return await self._request(
            "GET", f"/calendars/{cal_id}/free-slots", access_token, CALENDARS_API_VERSION, params=params
        )

    async def create_appointment(self, access_token: str, appointment: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "POST", "/calendars/events/appointments", access_token, CALENDARS_API_VERSION, json=appointment
        )

    async def list_calendar_events(
        self,
        access_token: str,
        tenant_id: str,
        cal_id: str,
        start_ms: int,
        end_ms: int
    ) -> List[Dict[str, Any]]:
        params = {"locationId": tenant_id, "calendarId": cal_id, "startTime": start_ms, "endTime": end_ms}
        data = await self._request("GET", "/calendars/events", access_token, CALENDARS_API_VERSION, params=params)
        return data.get("events", [])


# Singleton
_ghl_service: Optional[GHLService] = None


def get_ghl_service() -> GHLService:
    """Get or create GHL service instance"""
    global _ghl_service
    if _ghl_service is None:
        _ghl_service = GHLService()
    return _ghl_service
