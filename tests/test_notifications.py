import asyncio
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import TypeAdapter
from sqlalchemy.orm import Session

from bookflix import notifications
from bookflix.internal_message import RabbitMQManager, publish_intents
from bookflix.schemas import IntentEnvelope, NotificationIntent


def _intent(member_id):
    return notifications.fine_paid(SimpleNamespace(id=9, member_id=member_id, amount=2.5))


def test_emit_stores_in_app_notification(db_session: Session, member, notifier):
    notifier.emit(_intent(member.id))
    db_session.commit()

    stored = notifications.list_notifications(db_session, member.id)
    assert len(stored) == 1
    assert stored[0].type == "payment_received"
    assert stored[0].send_email is True
    assert stored[0].payload["amount"] == 2.5
    assert notifications.unread_count(db_session, member.id) == 1


def test_checkpoint_and_rollback(db_session: Session, member, notifier):
    notifier.emit(_intent(member.id))
    mark = notifier.checkpoint()
    notifier.emit(_intent(member.id))

    notifier.rollback_to(mark)

    assert len(notifier.drain()) == 1
    assert notifier.drain() == []


def test_mark_read(db_session: Session, member, notifier):
    notifier.emit(_intent(member.id))
    notifier.emit(_intent(member.id))
    db_session.commit()
    first = notifications.list_notifications(db_session, member.id)[0]

    read = notifications.mark_read(db_session, first.id, datetime(2024, 1, 1))
    assert read.read is True
    assert notifications.unread_count(db_session, member.id) == 1

    assert notifications.mark_all_read(db_session, member.id) == 1
    assert notifications.unread_count(db_session, member.id) == 0
    assert notifications.list_notifications(db_session, member.id, unread_only=True) == []


def test_intent_union_decodes_by_kind():
    intent = _intent(3)
    decoded = TypeAdapter(NotificationIntent).validate_python(intent.model_dump(mode="json"))

    assert type(decoded) is type(intent)
    envelope = IntentEnvelope.model_validate({"intent": intent.model_dump(mode="json")})
    assert envelope.intent.fine_id == 9


def test_manager_publishes_persistent_json():
    manager = RabbitMQManager("amqp://test", "test_queue")
    manager.channel = MagicMock()
    manager.channel.default_exchange.publish = AsyncMock()

    published = asyncio.run(manager.publish_intents([_intent(1), _intent(2)]))

    assert published == 2
    message = manager.channel.default_exchange.publish.call_args.args[0]
    assert message.type == "payment_received"
    assert b'"recipient_id": 2' in message.body
    assert manager.channel.default_exchange.publish.call_args.kwargs["routing_key"] == "test_queue"


def test_manager_keeps_going_after_publish_failure():
    manager = RabbitMQManager("amqp://test", "test_queue")
    manager.channel = MagicMock()
    manager.channel.default_exchange.publish = AsyncMock(
        side_effect=[ConnectionError("broker gone"), None]
    )

    assert asyncio.run(manager.publish_intents([_intent(1), _intent(2)])) == 1


@pytest.mark.parametrize("state", [SimpleNamespace(), SimpleNamespace(rabbitmq_manager=None)])
def test_publish_without_messaging(state):
    app = SimpleNamespace(state=state)
    assert asyncio.run(publish_intents(app, [_intent(1)])) == 0
