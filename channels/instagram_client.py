"""
Instagram Messaging Client — Graph API send for DMs and private comment replies.

Two hosts, chosen by the tenant's auth type:
  facebook   → graph.facebook.com, Page access token as query param
  instagram  → graph.instagram.com, Instagram Login token as Bearer header

Endpoint: POST /{ig_business_id}/messages
  DM:             {"recipient": {"id": <igsid>},        "message": {"text": ...}}
  comment reply:  {"recipient": {"comment_id": <id>},   "message": {"text": ...}}

API Docs: https://developers.facebook.com/docs/messenger-platform/instagram/
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import (
    CredentialExpiredError, DeliveryClient, DeliveryCredentials,
    FatalDeliveryError, RetryableDeliveryError,
)
from config.settings import InstagramConfig
from models.schemas import RecipientType

logger = structlog.get_logger()

# Graph error codes
TOKEN_EXPIRED_CODES = {190}
THROTTLING_CODES = {4, 17, 32, 613}
PERMISSION_CODES = {10, 200, 551}


def classify_graph_error(status_code: int, body: dict[str, Any]) -> Exception:
    """Map a failed Graph response to the delivery error taxonomy."""
    error = body.get("error") or {}
    code = error.get("code")
    message = error.get("message") or f"HTTP {status_code}"
    text = f"Instagram API error: {message} (Code: {code})"

    if code in TOKEN_EXPIRED_CODES:
        return CredentialExpiredError(text, code=code)
    if code in THROTTLING_CODES or status_code == 429 or status_code >= 500:
        return RetryableDeliveryError(text, code=code)
    if code in PERMISSION_CODES:
        return FatalDeliveryError(text, code=code)
    if error.get("is_transient"):
        return RetryableDeliveryError(text, code=code)
    return FatalDeliveryError(text, code=code)


class InstagramDeliveryClient(DeliveryClient):
    """Graph API client implementing one send per call."""

    def __init__(self, config: Optional[InstagramConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or InstagramConfig()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=5.0),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    def _base_url(self, auth_type: str) -> str:
        host = (self.config.instagram_base_url if auth_type == "instagram"
                else self.config.graph_base_url)
        return f"{host.rstrip('/')}/{self.config.api_version}"

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=0.5, max=2),
        reraise=True,
    )
    async def _post(self, url: str, payload: dict[str, Any],
                    params: dict[str, str], headers: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(url, json=payload, params=params, headers=headers)

    async def send(
        self,
        credentials: DeliveryCredentials,
        recipient: str,
        text: str,
        recipient_type: RecipientType = RecipientType.USER,
    ) -> dict[str, Any]:
        url = f"{self._base_url(credentials.auth_type)}/{credentials.business_id}/messages"
        key = "comment_id" if recipient_type == RecipientType.COMMENT else "id"
        payload = {"recipient": {key: str(recipient)}, "message": {"text": text}}

        params: dict[str, str] = {}
        headers: dict[str, str] = {}
        if credentials.auth_type == "instagram":
            headers["Authorization"] = f"Bearer {credentials.access_token}"
        else:
            params["access_token"] = credentials.access_token

        try:
            resp = await self._post(url, payload, params, headers)
        except httpx.HTTPError as e:
            logger.warning("instagram_send_transport_error", error=str(e))
            raise RetryableDeliveryError(f"Network error: {e}") from e

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}

        if resp.status_code >= 400 or body.get("error"):
            exc = classify_graph_error(resp.status_code, body)
            logger.error("instagram_api_error",
                         status=resp.status_code,
                         code=getattr(exc, "code", None),
                         body=resp.text[:500])
            raise exc

        logger.info("instagram_message_sent",
                    recipient_type=recipient_type.value,
                    message_id=body.get("message_id", ""))
        return {
            "status": "sent",
            "message_id": body.get("message_id", ""),
            "recipient_id": body.get("recipient_id", ""),
        }

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
