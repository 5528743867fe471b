"""Tests for joining a barber's queue."""
from __future__ import annotations

import pytest

from barbershop.errors import (AlreadyInQueue, BarberUnavailable, InvalidPayload,
                               InvalidServices, NotFound)
from barbershop.extensions import db
from barbershop.models import QueueEntry, QueueServiceLink


def test_join_creates_waiting_entry_with_one_link_per_service(queue_service, shop, make_user):
    customer = make_user()

    entry = queue_service.join(customer, shop.barber.barber_id, [shop.cut.service_id, shop.beard.service_id])

    stored = db.session.get(QueueEntry, entry.queue_id)
    assert stored.status == "waiting"
    assert stored.barber_id == shop.barber.barber_id
    assert sorted(link.service_id for link in stored.service_links) == sorted(
        [shop.cut.service_id, shop.beard.service_id]
    )


def test_join_twice_is_rejected(queue_service, shop, make_user):
    customer = make_user()
    queue_service.join(customer, shop.barber.barber_id, [shop.cut.service_id])

    with pytest.raises(AlreadyInQueue):
        queue_service.join(customer, shop.barber.barber_id, [shop.beard.service_id])

    assert QueueEntry.query.filter_by(user_id=customer.user_id, status="waiting").count() == 1


def test_join_allowed_again_after_cancelling(queue_service, shop, make_user):
    customer = make_user()
    queue_service.join(customer, shop.barber.barber_id, [shop.cut.service_id])
    queue_service.cancel(customer)

    entry = queue_service.join(customer, shop.barber.barber_id, [shop.cut.service_id])

    assert entry.status == "waiting"


@pytest.mark.parametrize(
    "status, queue_status",
    [("inactive", "open"), ("active", "closed"), ("inactive", "closed")],
)
def test_join_rejected_when_barber_not_accepting(queue_service, shop, make_user, status, queue_status):
    shop.barber.status = status
    shop.barber.queue_status = queue_status
    db.session.commit()

    with pytest.raises(BarberUnavailable):
        queue_service.join(make_user(), shop.barber.barber_id, [shop.cut.service_id])

    assert QueueEntry.query.count() == 0


def test_join_unknown_barber(queue_service, shop, make_user):
    with pytest.raises(NotFound):
        queue_service.join(make_user(), 999, [shop.cut.service_id])


def test_join_unknown_service_creates_nothing(queue_service, shop, make_user):
    with pytest.raises(InvalidServices):
        queue_service.join(make_user(), shop.barber.barber_id, [shop.cut.service_id, 999])

    assert QueueEntry.query.count() == 0
    assert QueueServiceLink.query.count() == 0


def test_join_requires_services(queue_service, shop, make_user):
    with pytest.raises(InvalidPayload):
        queue_service.join(make_user(), shop.barber.barber_id, [])


def test_join_notifies_streams(queue_service, shop, make_user, broadcaster):
    channel = broadcaster.open_channel()

    queue_service.join(make_user(), shop.barber.barber_id, [shop.cut.service_id])

    event = channel.receive(timeout=0)
    assert event["type"] == "queue_update"


def test_add_route_returns_queue_id(client, shop, make_user, auth_header):
    customer = make_user()

    response = client.post(
        "/queue/add",
        json={"serviceIds": [shop.cut.service_id], "barberId": shop.barber.barber_id},
        headers=auth_header(customer),
    )
    data = response.get_json()

    assert response.status_code == 201
    assert data["queueId"] == QueueEntry.query.filter_by(user_id=customer.user_id).one().queue_id


def test_add_route_already_in_queue_400(client, shop, make_user, auth_header):
    customer = make_user()
    body = {"serviceIds": [shop.cut.service_id], "barberId": shop.barber.barber_id}
    client.post("/queue/add", json=body, headers=auth_header(customer))

    response = client.post("/queue/add", json=body, headers=auth_header(customer))

    assert response.status_code == 400
    assert response.get_json()["error"] == "already_in_queue"


def test_add_route_closed_queue_400(client, shop, make_user, auth_header):
    shop.barber.queue_status = "closed"
    db.session.commit()

    response = client.post(
        "/queue/add",
        json={"serviceIds": [shop.cut.service_id], "barberId": shop.barber.barber_id},
        headers=auth_header(make_user()),
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "barber_unavailable"


def test_add_route_missing_fields_400(client, shop, make_user, auth_header):
    response = client.post("/queue/add", json={"barberId": shop.barber.barber_id}, headers=auth_header(make_user()))

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_payload"


def test_add_route_requires_session_401(client, shop):
    response = client.post(
        "/queue/add",
        json={"serviceIds": [shop.cut.service_id], "barberId": shop.barber.barber_id},
    )

    assert response.status_code == 401
    assert response.get_json()["error"] == "unauthorized"


def test_add_route_unknown_barber_404(client, shop, make_user, auth_header):
    response = client.post(
        "/queue/add",
        json={"serviceIds": [shop.cut.service_id], "barberId": 999},
        headers=auth_header(make_user()),
    )

    assert response.status_code == 404
    assert response.get_json()["error"] == "not_found"


def test_waiting_index_rejects_second_barber(queue_service, shop, make_user, monkeypatch):
    from barbershop.models import Barber
    from barbershop.queue_service import QueueService

    other = Barber(name="Otto")
    db.session.add(other)
    db.session.commit()
    customer = make_user()
    queue_service.join(customer, shop.barber.barber_id, [shop.cut.service_id])

    # Both application checks miss the existing entry, as in a race.
    monkeypatch.setattr(QueueService, "_waiting_entry_for", lambda self, user: None)

    with pytest.raises(AlreadyInQueue):
        queue_service.join(customer, other.barber_id, [shop.cut.service_id])

    assert QueueEntry.query.filter_by(user_id=customer.user_id, status="waiting").count() == 1
