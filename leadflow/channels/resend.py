"""Email delivery through the Resend HTTP API."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .base import BaseChannelSender, SendResult

logger = logging.getLogger(__name__)


class ResendEmailSender(BaseChannelSender):
    """Send email with Resend's ``POST /emails`` endpoint."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        from_name: str = "Notifications",
        api_url: str = "https://api.resend.com",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.sender = f"{from_name} <{from_email}>"
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _post(self, payload: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.api_url}/emails"
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload, headers=headers)

    async def send(self, destination: str, subject: str, body: str) -> SendResult:
        payload = {
            "from": self.sender,
            "to": [destination],
            "subject": subject,
            "html": body,
        }
        try:
            response = await self._post(payload)
        except httpx.HTTPError as exc:
            logger.error(f"Resend request failed: {exc}")
            return SendResult(success=False, error=str(exc))

        if response.status_code >= 300:
            logger.error(
                f"Resend rejected email to {destination}: {response.status_code} {response.text}"
            )
            return SendResult(
                success=False, error=f"HTTP {response.status_code}: {response.text}"
            )
        return SendResult(success=True, message_id=response.json().get("id"))
