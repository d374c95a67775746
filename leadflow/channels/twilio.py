"""SMS delivery through the Twilio REST API."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .base import BaseChannelSender, SendResult

logger = logging.getLogger(__name__)


class TwilioSmsSender(BaseChannelSender):
    """Send SMS with Twilio's Messages resource."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_url: str = "https://api.twilio.com",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    @property
    def messages_url(self) -> str:
        return f"{self.api_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    async def _post(self, form: dict) -> httpx.Response:
        auth = (self.account_sid, self.auth_token)
        if self._client is not None:
            return await self._client.post(
                self.messages_url, data=form, auth=auth, timeout=self.timeout
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.messages_url, data=form, auth=auth)

    async def send(self, destination: str, subject: str, body: str) -> SendResult:
        # SMS has no subject line
        form = {"To": destination, "From": self.from_number, "Body": body}
        try:
            response = await self._post(form)
        except httpx.HTTPError as exc:
            logger.error(f"Twilio request failed: {exc}")
            return SendResult(success=False, error=str(exc))

        if response.status_code >= 300:
            logger.error(
                f"Twilio rejected SMS to {destination}: {response.status_code} {response.text}"
            )
            return SendResult(
                success=False, error=f"HTTP {response.status_code}: {response.text}"
            )
        return SendResult(success=True, message_id=response.json().get("sid"))
