import datetime as dt

import pytest

from leadflow.channels import InMemoryChannelSender
from leadflow.channels.base import BaseChannelSender
from leadflow.errors import ChannelDeliveryError
from leadflow.models import Channel, NotificationEvent, NotificationPreference, QuietHours, UserContact
from leadflow.notifications import NotificationDispatcher
from leadflow.persistence import DeliveryStatus

NOON = dt.datetime(2024, 3, 4, 12, 0, tzinfo=dt.timezone.utc)
LATE = dt.datetime(2024, 3, 4, 23, 0, tzinfo=dt.timezone.utc)


class ExplodingSender(BaseChannelSender):
    async def send(self, destination, subject, body):
        raise RuntimeError("connection reset")


def _event(**overrides):
    data = {
        "user_id": "user-1",
        "type": "stage_transition",
        "title": "Application Progress",
        "message": "Your application has moved to \"Decision\"",
    }
    data.update(overrides)
    return NotificationEvent(**data)


async def _prefs(repository, *channels, quiet=None, enabled=True):
    for channel in channels:
        await repository.save_preference(
            NotificationPreference(
                user_id="user-1",
                notification_type="stage_transition",
                channel=channel,
                enabled=enabled,
                quiet_hours=quiet or QuietHours(),
            )
        )


@pytest.fixture
def dispatcher(repository, senders):
    return NotificationDispatcher(repository, senders)


@pytest.mark.asyncio
async def test_default_preferences_are_created_lazily(dispatcher, repository):
    await repository.save_contact(UserContact(user_id="user-1", email="u1@example.com"))

    results = await dispatcher.send(_event(), NOON)

    assert [(r.channel, r.status) for r in results] == [
        (Channel.IN_APP, DeliveryStatus.DELIVERED),
        (Channel.EMAIL, DeliveryStatus.DELIVERED),
    ]
    stored = await repository.get_preferences("user-1", "stage_transition")
    assert {p.channel for p in stored} == {Channel.IN_APP, Channel.EMAIL}
    notifications = await repository.list_notifications("user-1")
    assert notifications[0].title == "Application Progress"


@pytest.mark.asyncio
async def test_quiet_hours_suppress_email_but_not_in_app(dispatcher, repository, senders):
    await repository.save_contact(UserContact(user_id="user-1", email="u1@example.com"))
    await _prefs(repository, Channel.IN_APP, Channel.EMAIL, quiet=QuietHours(enabled=True))

    late = await dispatcher.send(_event(), LATE)
    assert [r.status for r in late] == [DeliveryStatus.DELIVERED, DeliveryStatus.SUPPRESSED]
    assert senders[Channel.EMAIL].outbox == []

    noon = await dispatcher.send(_event(), NOON)
    assert [r.status for r in noon] == [DeliveryStatus.DELIVERED, DeliveryStatus.DELIVERED]
    assert len(senders[Channel.EMAIL].outbox) == 1

    deliveries = await repository.list_deliveries("user-1")
    assert DeliveryStatus.SUPPRESSED in {d.status for d in deliveries}


@pytest.mark.asyncio
async def test_failed_channel_does_not_block_others(repository):
    senders = {
        Channel.EMAIL: InMemoryChannelSender(fail_with="mailbox full"),
        Channel.SMS: InMemoryChannelSender(),
    }
    dispatcher = NotificationDispatcher(repository, senders)
    await repository.save_contact(
        UserContact(user_id="user-1", email="u1@example.com", phone="+15550100")
    )
    await _prefs(repository, Channel.IN_APP, Channel.EMAIL, Channel.SMS)

    results = await dispatcher.send(_event(), NOON)

    by_channel = {r.channel: r for r in results}
    assert by_channel[Channel.IN_APP].delivered
    assert by_channel[Channel.EMAIL].status == DeliveryStatus.FAILED
    assert by_channel[Channel.EMAIL].error == "mailbox full"
    assert by_channel[Channel.SMS].delivered
    assert senders[Channel.SMS].outbox[0].destination == "+15550100"


@pytest.mark.asyncio
async def test_sender_exception_is_isolated(repository):
    dispatcher = NotificationDispatcher(repository, {Channel.EMAIL: ExplodingSender()})
    await repository.save_contact(UserContact(user_id="user-1", email="u1@example.com"))

    results = await dispatcher.send(_event(), NOON)

    assert results[0].delivered
    assert results[1].status == DeliveryStatus.FAILED
    assert "connection reset" in results[1].error


@pytest.mark.asyncio
async def test_missing_contact_fails_only_that_channel(dispatcher):
    results = await dispatcher.send(_event(), NOON)

    assert results[0].delivered
    assert results[1].status == DeliveryStatus.FAILED
    assert results[1].error == "no email address for user user-1"


@pytest.mark.asyncio
async def test_disabled_preference_is_skipped(dispatcher, repository, senders):
    await repository.save_contact(UserContact(user_id="user-1", email="u1@example.com"))
    await _prefs(repository, Channel.EMAIL, enabled=False)

    results = await dispatcher.send(_event(), NOON)

    assert [(r.channel, r.status) for r in results] == [(Channel.EMAIL, DeliveryStatus.DISABLED)]
    assert senders[Channel.EMAIL].outbox == []


@pytest.mark.asyncio
async def test_idempotency_key_prevents_resend(dispatcher, repository, senders):
    await repository.save_contact(UserContact(user_id="user-1", email="u1@example.com"))
    event = _event(idempotency_key="transition:log-1:student")

    await dispatcher.send(event, NOON)
    again = await dispatcher.send(event, NOON)

    assert {r.status for r in again} == {DeliveryStatus.DUPLICATE}
    assert len(senders[Channel.EMAIL].outbox) == 1
    assert len(await repository.list_notifications("user-1")) == 1


@pytest.mark.asyncio
async def test_deliver_sends_and_records(dispatcher, repository, senders):
    result = await dispatcher.deliver(
        Channel.SMS, "+15550100", "", "Hello", idempotency_key="enr:1", user_id="student-1"
    )
    assert result.delivered
    duplicate = await dispatcher.deliver(Channel.SMS, "+15550100", "", "Hello", idempotency_key="enr:1")
    assert duplicate.status == DeliveryStatus.DUPLICATE
    assert len(senders[Channel.SMS].outbox) == 1
    deliveries = await repository.list_deliveries("student-1")
    assert deliveries[0].destination == "+15550100"


@pytest.mark.asyncio
async def test_deliver_raises_on_failure(repository):
    dispatcher = NotificationDispatcher(
        repository, {Channel.EMAIL: InMemoryChannelSender(fail_with="HTTP 500")}
    )
    with pytest.raises(ChannelDeliveryError) as exc:
        await dispatcher.deliver(Channel.EMAIL, "a@example.com", "Hi", "Body", idempotency_key="k")
    assert "HTTP 500" in str(exc.value)
    assert not await repository.has_delivery("k", Channel.EMAIL)

    with pytest.raises(ChannelDeliveryError):
        await NotificationDispatcher(repository).deliver(Channel.SMS, "+1", "", "Body")
