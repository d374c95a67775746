"""Notification dispatch across in-app, email and SMS channels."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel

from .channels.base import BaseChannelSender
from .errors import ChannelDeliveryError
from .models import (
    CHANNEL_ORDER,
    Channel,
    NotificationEvent,
    NotificationPreference,
    QuietHours,
    UserContact,
)
from .persistence.models import DeliveryRecord, DeliveryStatus, Notification
from .persistence.repository import AutomationRepository

logger = logging.getLogger(__name__)


class ChannelResult(BaseModel):
    channel: Channel
    status: DeliveryStatus
    external_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED


class NotificationDispatcher:
    """Resolve channel preferences for a user and fan a notification out.

    Every channel is attempted independently. Quiet hours drop email and SMS
    (they are not queued for later); in-app delivery always goes through.
    """

    def __init__(
        self,
        repository: AutomationRepository,
        senders: Optional[Dict[Channel, BaseChannelSender]] = None,
        default_channels: Optional[Iterable[Channel]] = None,
        default_timezone: str = "UTC",
    ) -> None:
        self.repository = repository
        self.senders: Dict[Channel, BaseChannelSender] = dict(senders or {})
        self.default_channels = list(default_channels or [Channel.IN_APP, Channel.EMAIL])
        self.default_timezone = default_timezone

    # ------------------------------------------------------------------
    # Preferences
    async def get_preferences(
        self, user_id: str, notification_type: str
    ) -> List[NotificationPreference]:
        """Return stored preferences, creating the defaults when none exist."""
        prefs = await self.repository.get_preferences(user_id, notification_type)
        if prefs:
            return prefs
        prefs = [
            NotificationPreference(
                user_id=user_id,
                notification_type=notification_type,
                channel=channel,
                enabled=True,
                quiet_hours=QuietHours(timezone=self.default_timezone),
            )
            for channel in self.default_channels
        ]
        for pref in prefs:
            await self.repository.save_preference(pref)
        logger.debug(
            f"Created default preferences for {user_id}/{notification_type}: "
            f"{[p.channel.value for p in prefs]}"
        )
        return prefs

    async def set_preference(self, preference: NotificationPreference) -> None:
        await self.repository.save_preference(preference)

    # ------------------------------------------------------------------
    # Fan-out
    async def send(self, event: NotificationEvent, now: datetime) -> List[ChannelResult]:
        """Deliver ``event`` to each of the user's enabled channels."""
        prefs = await self.get_preferences(event.user_id, event.type)
        by_channel = {p.channel: p for p in prefs}
        results: List[ChannelResult] = []

        for channel in CHANNEL_ORDER:
            pref = by_channel.get(channel)
            if pref is None:
                continue
            if not pref.enabled:
                results.append(ChannelResult(channel=channel, status=DeliveryStatus.DISABLED))
                continue
            if channel != Channel.IN_APP and pref.quiet_hours.contains(now):
                logger.info(
                    f"Quiet hours: dropping {channel.value} '{event.type}' for {event.user_id}"
                )
                result = ChannelResult(channel=channel, status=DeliveryStatus.SUPPRESSED)
                await self._record(event, result)
                results.append(result)
                continue
            if event.idempotency_key and await self.repository.has_delivery(
                event.idempotency_key, channel
            ):
                results.append(ChannelResult(channel=channel, status=DeliveryStatus.DUPLICATE))
                continue

            try:
                result = await self._dispatch(channel, event, now)
            except Exception as exc:
                logger.exception(f"{channel.value} delivery to {event.user_id} failed")
                result = ChannelResult(
                    channel=channel, status=DeliveryStatus.FAILED, error=str(exc)
                )
            await self._record(event, result)
            results.append(result)

        return results

    async def _dispatch(
        self, channel: Channel, event: NotificationEvent, now: datetime
    ) -> ChannelResult:
        if channel == Channel.IN_APP:
            notification = Notification(
                user_id=event.user_id,
                type=event.type,
                title=event.title,
                message=event.message,
                data=event.data,
                priority=event.priority,
                created_at=now,
            )
            await self.repository.add_notification(notification)
            return ChannelResult(
                channel=channel, status=DeliveryStatus.DELIVERED, external_id=notification.id
            )

        contact = await self.repository.get_contact(event.user_id) or UserContact(
            user_id=event.user_id
        )
        destination = contact.email if channel == Channel.EMAIL else contact.phone
        if not destination:
            return ChannelResult(
                channel=channel,
                status=DeliveryStatus.FAILED,
                error=f"no {channel.value} address for user {event.user_id}",
            )
        sender = self.senders.get(channel)
        if sender is None:
            return ChannelResult(
                channel=channel,
                status=DeliveryStatus.FAILED,
                error=f"no sender configured for {channel.value}",
            )
        outcome = await sender.send(destination, event.title, event.message)
        if not outcome.success:
            logger.warning(f"{channel.value} sender rejected '{event.type}': {outcome.error}")
            return ChannelResult(
                channel=channel, status=DeliveryStatus.FAILED, error=outcome.error
            )
        return ChannelResult(
            channel=channel, status=DeliveryStatus.DELIVERED, external_id=outcome.message_id
        )

    async def _record(self, event: NotificationEvent, result: ChannelResult) -> None:
        await self.repository.add_delivery(
            DeliveryRecord(
                channel=result.channel,
                status=result.status,
                user_id=event.user_id,
                notification_type=event.type,
                idempotency_key=event.idempotency_key,
                external_id=result.external_id,
                error=result.error,
            )
        )

    # ------------------------------------------------------------------
    # Direct messaging
    async def deliver(
        self,
        channel: Channel,
        destination: str,
        subject: str,
        body: str,
        idempotency_key: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> ChannelResult:
        """Send one message straight to an address, bypassing preferences.

        Used by workflow actions that message a lead. Raises
        :class:`ChannelDeliveryError` on failure so the caller can retry.
        A key that was already delivered on this channel is not sent again.
        """
        channel = Channel(channel)
        if idempotency_key and await self.repository.has_delivery(idempotency_key, channel):
            logger.info(f"Skipping {channel.value} to {destination}: already delivered ({idempotency_key})")
            return ChannelResult(channel=channel, status=DeliveryStatus.DUPLICATE)

        sender = self.senders.get(channel)
        if sender is None:
            raise ChannelDeliveryError(channel.value, "no sender configured")

        outcome = await sender.send(destination, subject, body)
        record = DeliveryRecord(
            channel=channel,
            status=DeliveryStatus.DELIVERED if outcome.success else DeliveryStatus.FAILED,
            user_id=user_id,
            destination=destination,
            idempotency_key=idempotency_key,
            external_id=outcome.message_id,
            error=outcome.error,
        )
        await self.repository.add_delivery(record)
        if not outcome.success:
            raise ChannelDeliveryError(channel.value, outcome.error or "send failed")
        return ChannelResult(
            channel=channel, status=DeliveryStatus.DELIVERED, external_id=outcome.message_id
        )
