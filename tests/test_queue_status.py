"""Tests for queue position and wait estimates."""
from __future__ import annotations


def test_status_not_in_queue(queue_service, shop, make_user):
    assert queue_service.status(make_user()) == {"inQueue": False}


def test_status_for_first_and_second_customer(queue_service, shop, make_user):
    alice = make_user(name="Alice")
    carol = make_user(name="Carol")
    queue_service.join(alice, shop.barber.barber_id, [shop.cut.service_id, shop.beard.service_id])

    first = queue_service.status(alice)
    assert first["inQueue"] is True
    assert first["position"] == 1
    assert first["peopleAhead"] == 0
    assert first["totalPriceCents"] == 4000
    assert first["estimatedTime"] == 45
    assert first["estimatedWaitTime"] == 0

    queue_service.join(carol, shop.barber.barber_id, [shop.cut.service_id])

    second = queue_service.status(carol)
    assert second["position"] == 2
    assert second["peopleAhead"] == 1
    assert second["totalPeople"] == 2
    assert second["estimatedWaitTime"] == 45
    assert second["totalPriceCents"] == 2500
    assert second["barber"] == {"id": shop.barber.barber_id, "name": "Bruno"}


def test_kth_joiner_reports_position_k(queue_service, shop, make_user):
    customers = [make_user() for _ in range(4)]
    for customer in customers:
        queue_service.join(customer, shop.barber.barber_id, [shop.beard.service_id])

    for k, customer in enumerate(customers, start=1):
        status = queue_service.status(customer)
        assert status["position"] == k
        assert status["peopleAhead"] == k - 1
        assert status["estimatedWaitTime"] == 15 * (k - 1)


def test_queue_list_is_anonymized(queue_service, shop, make_user):
    alice = make_user(name="Alice")
    carol = make_user(name="Carol")
    queue_service.join(alice, shop.barber.barber_id, [shop.cut.service_id])
    queue_service.join(carol, shop.barber.barber_id, [shop.beard.service_id])

    status = queue_service.status(carol)
    names = [item["name"] for item in status["queueList"]]

    assert names == ["Client 1", "You"]
    assert [item["isCurrentUser"] for item in status["queueList"]] == [False, True]
    assert [item["status"] for item in status["queueList"]] == ["in_progress", "waiting"]
    assert status["currentlyServing"] == {"name": "Client 1", "position": 1, "isCurrentUser": False}
    assert "Alice" not in str(status)


def test_queues_of_other_barbers_do_not_count(queue_service, shop, make_user):
    from barbershop.extensions import db
    from barbershop.models import Barber

    other = Barber(name="Otto")
    db.session.add(other)
    db.session.commit()
    queue_service.join(make_user(), other.barber_id, [shop.cut.service_id])
    customer = make_user()
    queue_service.join(customer, shop.barber.barber_id, [shop.cut.service_id])

    status = queue_service.status(customer)

    assert status["position"] == 1
    assert status["totalPeople"] == 1


def test_status_route(client, queue_service, shop, make_user, auth_header):
    customer = make_user()
    queue_service.join(customer, shop.barber.barber_id, [shop.cut.service_id])

    response = client.get("/queue/status", headers=auth_header(customer))
    data = response.get_json()

    assert response.status_code == 200
    assert data["inQueue"] is True
    assert data["position"] == 1


def test_status_route_accepts_session_cookie(app, client, queue_service, shop, make_user):
    from barbershop.auth import build_token

    customer = make_user()
    client.set_cookie(app.config["AUTH_COOKIE_NAME"], build_token(customer))

    response = client.get("/queue/status")

    assert response.status_code == 200
    assert response.get_json() == {"inQueue": False}


def test_status_route_rejects_bad_token(client):
    response = client.get("/queue/status", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401


def test_queue_board_numbers_positions_per_barber(client, queue_service, shop, make_user, auth_header):
    from barbershop.extensions import db
    from barbershop.models import Barber

    other = Barber(name="Otto")
    db.session.add(other)
    db.session.commit()
    queue_service.join(make_user(), shop.barber.barber_id, [shop.cut.service_id])
    queue_service.join(make_user(), other.barber_id, [shop.beard.service_id])
    queue_service.join(make_user(), shop.barber.barber_id, [shop.beard.service_id])

    response = client.get("/queue", headers=auth_header(shop.admin))
    board = response.get_json()["queue"]

    assert response.status_code == 200
    assert [(row["barber"]["name"], row["position"]) for row in board] == [
        ("Bruno", 1),
        ("Bruno", 2),
        ("Otto", 1),
    ]
