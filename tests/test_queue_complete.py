"""Tests for completing a queue entry and recording history."""
from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from barbershop.errors import InsufficientStock, InvalidPayload, InvalidServices, NotFound, NotInQueue
from barbershop.extensions import db
from barbershop.models import History, HistoryItem, HistoryService, Product, QueueEntry
from barbershop.queue_service import ExtraServiceLine, ProductLine, QueueService, ServiceLine


@pytest.fixture
def waiting_entry(queue_service, shop, make_user):
    customer = make_user(name="Alice")
    return queue_service.join(customer, shop.barber.barber_id, [shop.cut.service_id, shop.beard.service_id])


def requested_services(shop):
    return [
        ServiceLine(shop.cut.service_id, 2500),
        ServiceLine(shop.beard.service_id, 1500),
    ]


def test_complete_credit_card_two_installments(queue_service, shop, waiting_entry):
    history = queue_service.complete(
        waiting_entry.queue_id, requested_services(shop), [], [], "credit_card", 2,
    )

    assert history.total_cents == 4000
    assert history.fee_rate == Decimal("0.045")
    assert history.fee_cents == 180
    assert history.net_cents == 3820
    assert history.installments == 2
    assert db.session.get(QueueEntry, waiting_entry.queue_id).status == "completed"
    assert HistoryService.query.filter_by(history_id=history.history_id).count() == 2


def test_complete_totals_products_and_extras(queue_service, shop, waiting_entry):
    history = queue_service.complete(
        waiting_entry.queue_id,
        requested_services(shop),
        [ProductLine(shop.pomade.product_id, quantity=2)],
        [ExtraServiceLine(shop.beard.service_id, quantity=3, unit_price_cents=1000)],
        "cash",
    )

    # 4000 services + 2 x 1800 product + 3 x 1000 extra
    assert history.total_cents == 10600
    assert history.fee_cents == 0
    assert history.net_cents == 10600
    extras = HistoryService.query.filter_by(history_id=history.history_id, is_extra=True).all()
    assert len(extras) == 3
    item = HistoryItem.query.filter_by(history_id=history.history_id).one()
    assert (item.quantity, item.unit_price_cents, item.total_price_cents) == (2, 1800, 3600)
    assert db.session.get(Product, shop.pomade.product_id).stock_quantity == 3


def test_complete_uses_catalog_price_when_not_given(queue_service, shop, waiting_entry):
    history = queue_service.complete(
        waiting_entry.queue_id, [ServiceLine(shop.cut.service_id)], [], [], "pix",
    )

    assert history.total_cents == 2500


def test_complete_records_commission(queue_service, shop, waiting_entry):
    shop.barber.commission_rate = Decimal("0.4")
    db.session.commit()

    history = queue_service.complete(
        waiting_entry.queue_id, requested_services(shop), [], [], "debit_card",
    )

    # fee 2.5% of 4000 = 100, commission 40% of 3900
    assert history.net_cents == 3900
    assert history.commission_cents == 1560


def test_complete_rolls_back_when_a_write_fails(queue_service, shop, waiting_entry, monkeypatch):
    def broken_decrement(self, product_id, quantity):
        raise SQLAlchemyError("simulated failure")

    monkeypatch.setattr(QueueService, "_decrement_stock", broken_decrement)

    with pytest.raises(SQLAlchemyError):
        queue_service.complete(
            waiting_entry.queue_id,
            requested_services(shop),
            [ProductLine(shop.pomade.product_id, quantity=1)],
            [],
            "cash",
        )

    assert History.query.count() == 0
    assert HistoryService.query.count() == 0
    assert HistoryItem.query.count() == 0
    assert db.session.get(QueueEntry, waiting_entry.queue_id).status == "waiting"
    assert db.session.get(Product, shop.pomade.product_id).stock_quantity == 5


def test_complete_insufficient_stock_commits_nothing(queue_service, shop, waiting_entry):
    with pytest.raises(InsufficientStock):
        queue_service.complete(
            waiting_entry.queue_id,
            requested_services(shop),
            [ProductLine(shop.pomade.product_id, quantity=6)],
            [],
            "cash",
        )

    assert History.query.count() == 0
    assert db.session.get(QueueEntry, waiting_entry.queue_id).status == "waiting"
    assert db.session.get(Product, shop.pomade.product_id).stock_quantity == 5


def test_complete_twice_is_rejected(queue_service, shop, waiting_entry):
    queue_service.complete(waiting_entry.queue_id, requested_services(shop), [], [], "cash")

    with pytest.raises(NotInQueue):
        queue_service.complete(waiting_entry.queue_id, requested_services(shop), [], [], "cash")


def test_complete_validates_input(queue_service, shop, waiting_entry):
    with pytest.raises(InvalidPayload):
        queue_service.complete(waiting_entry.queue_id, [], [], [], "bitcoin")
    with pytest.raises(InvalidPayload):
        queue_service.complete(waiting_entry.queue_id, [], [], [], "credit_card", 0)
    with pytest.raises(InvalidServices):
        queue_service.complete(waiting_entry.queue_id, [ServiceLine(999)], [], [], "cash")
    with pytest.raises(NotFound):
        queue_service.complete(waiting_entry.queue_id, [], [ProductLine(999)], [], "cash")
    with pytest.raises(NotFound):
        queue_service.complete(999, [], [], [], "cash")


def test_complete_route(client, shop, waiting_entry, auth_header):
    response = client.post(
        "/queue/complete",
        json={
            "queueId": waiting_entry.queue_id,
            "services": [
                {"serviceId": shop.cut.service_id, "priceCents": 2500},
                {"serviceId": shop.beard.service_id, "priceCents": 1500},
            ],
            "products": [{"id": shop.pomade.product_id, "quantity": 1}],
            "extraServices": [],
            "paymentMethod": "credit_card",
            "installments": 3,
        },
        headers=auth_header(shop.admin),
    )
    data = response.get_json()

    assert response.status_code == 200
    assert data["userId"] == waiting_entry.user_id
    assert data["history"]["total_cents"] == 5800
    # 5.5% of 5800
    assert data["history"]["fee_cents"] == 319
    assert data["history"]["net_cents"] == 5481


def test_complete_route_requires_payment_method(client, shop, waiting_entry, auth_header):
    response = client.post(
        "/queue/complete",
        json={"queueId": waiting_entry.queue_id, "services": []},
        headers=auth_header(shop.admin),
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_payload"


def test_complete_route_rejects_clients(client, shop, waiting_entry, make_user, auth_header):
    response = client.post(
        "/queue/complete",
        json={"queueId": waiting_entry.queue_id, "paymentMethod": "cash"},
        headers=auth_header(make_user()),
    )

    assert response.status_code == 403
