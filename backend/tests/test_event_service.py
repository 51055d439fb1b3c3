import pytest

from orderledger.extensions import db
from orderledger.models import DomainEvent
from orderledger.services import event_service, order_service


@pytest.fixture
def received(app):
    """Collect order.status_changed events delivered to this app."""
    events = []

    def handler(sender, event):
        events.append((sender, event))

    event_service.subscribe(app, event_service.ORDER_STATUS_CHANGED, handler)
    yield events
    event_service.unsubscribe(app, event_service.ORDER_STATUS_CHANGED, handler)


def test_subscriber_receives_event_after_commit(app, received, make_order, p1):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    order_service.transition(order.id, "CONFIRMED", "ops")

    assert len(received) == 1
    sender, event = received[0]
    assert sender is app
    assert event["event_type"] == "order.status_changed"
    assert event["payload"]["new_status"] == "CONFIRMED"


def test_rolled_back_events_are_not_delivered(app, received, db_session):
    event_service.append_event(
        event_type=event_service.ORDER_STATUS_CHANGED,
        entity_type="order",
        entity_id=1,
        payload={"new_status": "CONFIRMED"},
    )
    db.session.rollback()

    assert event_service.publish_pending() == 0
    assert received == []
    assert DomainEvent.query.count() == 0


def test_failing_subscriber_does_not_break_engine(app, received, make_order, p1):
    def broken(sender, event):
        raise RuntimeError("mail server down")

    event_service.subscribe(app, event_service.ORDER_STATUS_CHANGED, broken)
    try:
        order = make_order([{"product_id": p1.id, "quantity": 1}])
        confirmed = order_service.transition(order.id, "CONFIRMED")
    finally:
        event_service.unsubscribe(app, event_service.ORDER_STATUS_CHANGED, broken)

    assert confirmed.status == "CONFIRMED"
    assert len(received) == 1


def test_unknown_event_type_rejected(app, db_session):
    with pytest.raises(ValueError):
        event_service.append_event(event_type="order.teleported", entity_type="order", entity_id=1)
    with pytest.raises(ValueError):
        event_service.subscribe(app, "order.teleported", lambda sender, event: None)


def test_list_events_polls_by_id(make_order, p1):
    order = make_order([{"product_id": p1.id, "quantity": 1}])
    order_service.transition(order.id, "CONFIRMED")
    order_service.transition(order.id, "PROCESSING")

    all_events = event_service.list_events(event_type=event_service.ORDER_STATUS_CHANGED)
    assert [e.data["new_status"] for e in all_events] == ["CONFIRMED", "PROCESSING"]

    newer = event_service.list_events(after_id=all_events[0].id, event_type=event_service.ORDER_STATUS_CHANGED)
    assert [e.id for e in newer] == [all_events[1].id]
