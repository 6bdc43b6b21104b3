"""
Delivery — Base infrastructure shared by every outbound channel client.

Provides:
- DeliveryError: structured error hierarchy (retryable vs fatal)
- DeliveryCredentials / CredentialProvider: per-tenant send credentials
- DeliveryClient: abstract client that performs one upstream send
- OutboundSender: the delivery collaborator used by the engine and the
  dispatcher; refreshes expired credentials once and retries
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from database.store_base import DispatchStore
from models.schemas import RecipientType

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class DeliveryError(Exception):
    """Base exception for all delivery operations."""

    def __init__(self, message: str, retryable: bool = False, code: Optional[int] = None,
                 channel: str = "instagram"):
        self.retryable = retryable
        self.code = code
        self.channel = channel
        super().__init__(message)


class RetryableDeliveryError(DeliveryError):
    """Transient: network, upstream 5xx, upstream throttling."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message, retryable=True, code=code)


class FatalDeliveryError(DeliveryError):
    """Permanent: permissions, invalid recipient, rejected payload."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message, retryable=False, code=code)


class CredentialExpiredError(DeliveryError):
    """Access token expired; recoverable by refreshing credentials."""

    def __init__(self, message: str = "Access token expired", code: Optional[int] = 190):
        super().__init__(message, retryable=True, code=code)


class CredentialsMissingError(DeliveryError):
    """The tenant has no usable connection; retrying cannot help."""

    def __init__(self, tenant_id: str):
        super().__init__(f"No delivery credentials for tenant {tenant_id}", retryable=False)


def is_fatal(exc: BaseException) -> bool:
    """Classify an arbitrary send failure. Unknown exceptions are retryable."""
    if isinstance(exc, DeliveryError):
        return not exc.retryable
    return False


# ══════════════════════════════════════════════════════════════
#  CREDENTIALS
# ══════════════════════════════════════════════════════════════

class DeliveryCredentials(BaseModel):
    business_id: str
    access_token: str
    auth_type: str = "facebook"          # "facebook" (Page token) | "instagram" (IG Login)

    @classmethod
    def from_blob(cls, blob: dict[str, Any]) -> Optional[DeliveryCredentials]:
        business_id = blob.get("ig_business_id") or blob.get("business_id")
        token = (blob.get("ig_access_token") or blob.get("page_access_token")
                 or blob.get("access_token"))
        if not business_id or not token:
            return None
        return cls(business_id=str(business_id), access_token=token,
                   auth_type=blob.get("auth_type") or "facebook")


class CredentialProvider(abc.ABC):

    @abc.abstractmethod
    async def get(self, tenant_id: str) -> DeliveryCredentials:
        ...

    @abc.abstractmethod
    async def refresh(self, tenant_id: str) -> DeliveryCredentials:
        ...


CredentialRefresher = Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]]


class StoreCredentialProvider(CredentialProvider):
    """
    Reads the credentials blob stored on the tenant row.

    Token exchange lives outside this service; `refresher` is an optional
    callable (tenant_id, current_blob) -> new_blob that performs it.
    """

    def __init__(self, store: DispatchStore, refresher: Optional[CredentialRefresher] = None):
        self.store = store
        self.refresher = refresher

    async def _blob(self, tenant_id: str) -> dict[str, Any]:
        tenant = await self.store.get_tenant(tenant_id)
        return dict(tenant.credentials) if tenant else {}

    async def get(self, tenant_id: str) -> DeliveryCredentials:
        creds = DeliveryCredentials.from_blob(await self._blob(tenant_id))
        if creds is None:
            raise CredentialsMissingError(tenant_id)
        return creds

    async def refresh(self, tenant_id: str) -> DeliveryCredentials:
        if self.refresher is None:
            raise FatalDeliveryError("Access token expired and no refresher is configured", code=190)
        fresh = await self.refresher(tenant_id, await self._blob(tenant_id))
        await self.store.update_credentials(tenant_id, fresh)
        logger.info("credentials_refreshed", tenant_id=tenant_id)
        creds = DeliveryCredentials.from_blob(fresh)
        if creds is None:
            raise CredentialsMissingError(tenant_id)
        return creds


# ══════════════════════════════════════════════════════════════
#  DELIVERY CLIENT — Abstract Base
# ══════════════════════════════════════════════════════════════

class DeliveryClient(abc.ABC):
    """
    One upstream send. Implementations raise DeliveryError subclasses so
    callers can tell retryable from fatal failures.
    """

    @abc.abstractmethod
    async def send(
        self,
        credentials: DeliveryCredentials,
        recipient: str,
        text: str,
        recipient_type: RecipientType = RecipientType.USER,
    ) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        pass


class OutboundSender:
    """
    Sends one reply for a tenant: resolve credentials, send, and on an
    expired token refresh once and send again.
    """

    def __init__(self, client: DeliveryClient, credentials: CredentialProvider):
        self.client = client
        self.credentials = credentials

    async def send(
        self,
        tenant_id: str,
        recipient: str,
        text: str,
        recipient_type: RecipientType = RecipientType.USER,
    ) -> dict[str, Any]:
        creds = await self.credentials.get(tenant_id)
        try:
            return await self.client.send(creds, recipient, text, recipient_type)
        except CredentialExpiredError:
            logger.warning("delivery_credentials_expired", tenant_id=tenant_id)
            creds = await self.credentials.refresh(tenant_id)
            return await self.client.send(creds, recipient, text, recipient_type)
