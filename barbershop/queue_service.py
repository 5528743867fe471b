"""Queue business rules: join, status, move, cancel, complete."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterator

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .errors import (AlreadyInQueue, BarberUnavailable, CannotRemoveLastService,
                     Forbidden, InsufficientStock, InvalidDirection, InvalidPayload,
                     InvalidServices, NotFound, NotInQueue, QueueError)
from .models import (QUEUE_ACTIVE_STATUSES, Barber, History, HistoryItem,
                     HistoryService, Product, QueueEntry, QueueServiceLink, Service,
                     Settings, User)
from .notifier import QueueBroadcaster

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("credit_card", "debit_card", "cash", "pix")
MAX_INSTALLMENTS = 12


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def fee_rate(settings: Settings, payment_method: str, installments: int = 1) -> Decimal:
    """Return the fee rate charged for a payment method and installment count.

    Credit card payments in 2 or 3 installments use their own tier when it is
    configured; any other installment count falls back to the single payment
    rate. Unknown methods carry no fee.
    """
    if payment_method == "credit_card":
        tiers = {
            2: settings.credit_card_fee_2x,
            3: settings.credit_card_fee_3x,
        }
        rate = tiers.get(installments)
        return Decimal(rate if rate is not None else settings.credit_card_fee)
    if payment_method == "debit_card":
        return Decimal(settings.debit_card_fee)
    if payment_method == "cash":
        return Decimal(settings.cash_fee)
    if payment_method == "pix":
        return Decimal(settings.pix_fee)
    return Decimal("0")


def as_id(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise InvalidPayload(f"{field} must be an integer id")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidPayload(f"{field} must be an integer id") from None


def _as_count(value: Any, field: str, default: int | None = None) -> int:
    if value is None and default is not None:
        return default
    number = as_id(value, field)
    if number < 1:
        raise InvalidPayload(f"{field} must be at least 1")
    return number


def _as_cents(value: Any, field: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise InvalidPayload(f"{field} must be a number of cents")
    try:
        cents = int(value)
    except (TypeError, ValueError):
        raise InvalidPayload(f"{field} must be a number of cents") from None
    if cents < 0:
        raise InvalidPayload(f"{field} cannot be negative")
    return cents


@dataclass(frozen=True)
class ServiceLine:
    service_id: int
    price_cents: int | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> "ServiceLine":
        if not isinstance(raw, dict):
            raise InvalidPayload("each service must be an object")
        return cls(
            service_id=as_id(raw.get("serviceId", raw.get("id")), "serviceId"),
            price_cents=_as_cents(raw.get("priceCents"), "priceCents"),
        )


@dataclass(frozen=True)
class ExtraServiceLine:
    service_id: int
    quantity: int = 1
    unit_price_cents: int | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> "ExtraServiceLine":
        if not isinstance(raw, dict):
            raise InvalidPayload("each extra service must be an object")
        return cls(
            service_id=as_id(raw.get("id", raw.get("serviceId")), "id"),
            quantity=_as_count(raw.get("quantity"), "quantity", default=1),
            unit_price_cents=_as_cents(raw.get("priceCents"), "priceCents"),
        )


@dataclass(frozen=True)
class ProductLine:
    product_id: int
    quantity: int = 1
    unit_price_cents: int | None = None

    @classmethod
    def from_payload(cls, raw: Any) -> "ProductLine":
        if not isinstance(raw, dict):
            raise InvalidPayload("each product must be an object")
        return cls(
            product_id=as_id(raw.get("id", raw.get("productId")), "id"),
            quantity=_as_count(raw.get("quantity"), "quantity", default=1),
            unit_price_cents=_as_cents(raw.get("priceCents"), "priceCents"),
        )


class BarberLocks:
    """Process-local mutex per barber queue."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    @contextmanager
    def hold(self, barber_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(barber_id, threading.Lock())
        with lock:
            yield


class QueueService:
    """Enforces the queue invariants over one database session.

    Every mutating method commits its own transaction and then tells the
    broadcaster that the visible queue changed.
    """

    def __init__(
        self,
        session: Session,
        broadcaster: QueueBroadcaster,
        locks: BarberLocks | None = None,
    ) -> None:
        self.session = session
        self.broadcaster = broadcaster
        self.locks = locks or BarberLocks()

    # -------------------- helpers --------------------

    def _commit(self) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def _lock_barber_row(self, barber_id: int) -> Barber | None:
        return (
            self.session.query(Barber)
            .filter(Barber.barber_id == barber_id)
            .with_for_update()
            .first()
        )

    def _active_entries(self, barber_id: int) -> list[QueueEntry]:
        return (
            self.session.query(QueueEntry)
            .options(selectinload(QueueEntry.service_links).selectinload(QueueServiceLink.service))
            .filter(
                QueueEntry.barber_id == barber_id,
                QueueEntry.status.in_(QUEUE_ACTIVE_STATUSES),
            )
            .order_by(QueueEntry.sequence.asc(), QueueEntry.queue_id.asc())
            .populate_existing()
            .all()
        )

    def _get_entry(self, queue_id: int) -> QueueEntry:
        entry = self.session.get(QueueEntry, queue_id)
        if entry is None:
            raise NotFound("Queue entry not found")
        return entry

    def _waiting_entry_for(self, user: User) -> QueueEntry | None:
        return (
            self.session.query(QueueEntry)
            .filter(QueueEntry.user_id == user.user_id, QueueEntry.status == "waiting")
            .first()
        )

    # -------------------- operations --------------------

    def join(self, user: User, barber_id: int, service_ids: list[int]) -> QueueEntry:
        if not isinstance(service_ids, list) or not service_ids:
            raise InvalidPayload("serviceIds must be a non-empty list")
        wanted = list(dict.fromkeys(as_id(sid, "serviceIds") for sid in service_ids))

        if self._waiting_entry_for(user) is not None:
            raise AlreadyInQueue()

        barber = self.session.get(Barber, barber_id)
        if barber is None:
            raise NotFound("Barber not found")
        if barber.status != "active":
            raise BarberUnavailable()
        if barber.queue_status != "open":
            raise BarberUnavailable("This barber's queue is closed at the moment")

        found = self.session.query(Service).filter(Service.service_id.in_(wanted)).count()
        if found != len(wanted):
            raise InvalidServices()

        with self.locks.hold(barber.barber_id):
            self._lock_barber_row(barber.barber_id)
            # Re-check under the lock; a concurrent join may have committed meanwhile.
            if self._waiting_entry_for(user) is not None:
                self.session.rollback()
                raise AlreadyInQueue()
            last = (
                self.session.query(func.max(QueueEntry.sequence))
                .filter(QueueEntry.barber_id == barber.barber_id)
                .scalar()
            )
            entry = QueueEntry(
                user_id=user.user_id,
                barber_id=barber.barber_id,
                status="waiting",
                sequence=(last or 0) + 1,
            )
            entry.service_links = [QueueServiceLink(service_id=sid) for sid in wanted]
            self.session.add(entry)
            try:
                self._commit()
            except IntegrityError:
                # Unique waiting-entry index: a join to another barber won the race.
                raise AlreadyInQueue() from None

        logger.info(
            "User %s joined queue of barber %s as entry %s",
            user.user_id, barber.barber_id, entry.queue_id,
        )
        self.broadcaster.notify()
        return entry

    def status(self, user: User) -> dict[str, Any]:
        entry = (
            self.session.query(QueueEntry)
            .filter(
                QueueEntry.user_id == user.user_id,
                QueueEntry.status.in_(QUEUE_ACTIVE_STATUSES),
            )
            .order_by(QueueEntry.sequence.asc())
            .first()
        )
        if entry is None:
            return {"inQueue": False}

        entries = self._active_entries(entry.barber_id)
        index = next(i for i, e in enumerate(entries) if e.queue_id == entry.queue_id)
        ahead = entries[:index]

        queue_list = []
        for position, other in enumerate(entries, start=1):
            mine = other.user_id == user.user_id
            queue_list.append({
                "id": other.queue_id,
                "position": position,
                "name": "You" if mine else f"Client {position}",
                "isCurrentUser": mine,
                "services": [service.to_dict_basic() for service in other.services],
                "estimatedTime": other.total_minutes,
                "status": "in_progress" if position == 1 else "waiting",
            })

        head = queue_list[0]
        return {
            "inQueue": True,
            "queueId": entry.queue_id,
            "position": index + 1,
            "peopleAhead": index,
            "totalPeople": len(entries),
            "estimatedTime": entry.total_minutes,
            "estimatedWaitTime": sum(other.total_minutes for other in ahead),
            "totalPriceCents": entry.total_price_cents,
            "barber": entry.barber.to_dict_basic() if entry.barber else None,
            "services": [service.to_dict_basic() for service in entry.services],
            "queueList": queue_list,
            "currentlyServing": {
                "name": head["name"],
                "position": 1,
                "isCurrentUser": head["isCurrentUser"],
            },
            "createdAt": entry.created_at.isoformat() if entry.created_at else None,
            "updatedAt": entry.updated_at.isoformat() if entry.updated_at else None,
        }

    def list_active(self) -> list[QueueEntry]:
        """Active entries of every active barber, in queue order."""
        return (
            self.session.query(QueueEntry)
            .join(Barber, Barber.barber_id == QueueEntry.barber_id)
            .options(selectinload(QueueEntry.service_links).selectinload(QueueServiceLink.service))
            .filter(
                Barber.status == "active",
                QueueEntry.status.in_(QUEUE_ACTIVE_STATUSES),
            )
            .order_by(QueueEntry.barber_id.asc(), QueueEntry.sequence.asc(), QueueEntry.queue_id.asc())
            .all()
        )

    def move(self, queue_id: int, direction: str) -> None:
        if direction not in ("up", "down"):
            raise InvalidPayload("direction must be 'up' or 'down'")

        entry = self._get_entry(queue_id)
        if entry.status != "waiting":
            raise NotInQueue()

        with self.locks.hold(entry.barber_id):
            self._lock_barber_row(entry.barber_id)
            waiting = [e for e in self._active_entries(entry.barber_id) if e.status == "waiting"]
            index = next((i for i, e in enumerate(waiting) if e.queue_id == entry.queue_id), None)
            if index is None:
                raise NotInQueue()

            target_index = index - 1 if direction == "up" else index + 1
            if target_index < 0 or target_index >= len(waiting):
                raise InvalidDirection()

            target = waiting[target_index]
            entry.sequence, target.sequence = target.sequence, entry.sequence
            self._commit()

        logger.info("Queue entry %s moved %s past entry %s", entry.queue_id, direction, target.queue_id)
        self.broadcaster.notify()

    def cancel(self, user: User, queue_id: int | None = None) -> QueueEntry:
        if queue_id is None:
            entry = self._waiting_entry_for(user)
            if entry is None:
                raise NotInQueue("You are not in the queue")
        else:
            entry = self._get_entry(queue_id)
            if user.role == "client" and entry.user_id != user.user_id:
                raise Forbidden("You can only leave your own queue entry")
            if entry.status != "waiting":
                raise NotInQueue()

        entry.status = "cancelled"
        self._commit()
        logger.info("Queue entry %s cancelled by user %s", entry.queue_id, user.user_id)
        self.broadcaster.notify()
        return entry

    def complete(
        self,
        queue_id: int,
        services: list[ServiceLine],
        products: list[ProductLine],
        extra_services: list[ExtraServiceLine],
        payment_method: str,
        installments: int = 1,
    ) -> History:
        if payment_method not in PAYMENT_METHODS:
            raise InvalidPayload(f"paymentMethod must be one of: {', '.join(PAYMENT_METHODS)}")
        if installments < 1 or installments > MAX_INSTALLMENTS:
            raise InvalidPayload(f"installments must be between 1 and {MAX_INSTALLMENTS}")

        entry = self._get_entry(queue_id)
        if entry.status not in QUEUE_ACTIVE_STATUSES:
            raise NotInQueue()

        service_ids = {line.service_id for line in services} | {line.service_id for line in extra_services}
        catalog = {
            service.service_id: service
            for service in self.session.query(Service).filter(Service.service_id.in_(service_ids))
        } if service_ids else {}
        if len(catalog) != len(service_ids):
            raise InvalidServices()

        product_ids = {line.product_id for line in products}
        stock = {
            product.product_id: product
            for product in self.session.query(Product).filter(Product.product_id.in_(product_ids))
        } if product_ids else {}
        missing = product_ids - stock.keys()
        if missing:
            raise NotFound(f"Product {min(missing)} not found")

        def price_of(line_price: int | None, catalog_price: int) -> int:
            return catalog_price if line_price is None else line_price

        service_rows = [
            (line.service_id, price_of(line.price_cents, catalog[line.service_id].price_cents))
            for line in services
        ]
        extra_rows = []
        for line in extra_services:
            unit = price_of(line.unit_price_cents, catalog[line.service_id].price_cents)
            extra_rows.extend([(line.service_id, unit)] * line.quantity)
        item_rows = [
            (line, price_of(line.unit_price_cents, stock[line.product_id].price_cents))
            for line in products
        ]

        total_cents = (
            sum(price for _, price in service_rows)
            + sum(unit * line.quantity for line, unit in item_rows)
            + sum(price for _, price in extra_rows)
        )

        try:
            settings = Settings.current()
            rate = fee_rate(settings, payment_method, installments)
            fee_cents = round_cents(Decimal(total_cents) * rate)
            net_cents = total_cents - fee_cents
            barber = entry.barber
            commission_rate = Decimal(
                barber.commission_rate
                if barber is not None and barber.commission_rate is not None
                else settings.commission_rate
            )

            entry.status = "completed"
            history = History(
                user_id=entry.user_id,
                barber_id=entry.barber_id,
                queue_id=entry.queue_id,
                total_cents=total_cents,
                payment_method=payment_method,
                installments=installments,
                fee_rate=rate,
                fee_cents=fee_cents,
                net_cents=net_cents,
                commission_rate=commission_rate,
                commission_cents=round_cents(Decimal(net_cents) * commission_rate),
            )
            self.session.add(history)
            self.session.flush()

            for service_id, price in service_rows:
                self.session.add(HistoryService(
                    history_id=history.history_id, service_id=service_id, price_cents=price,
                ))
            for service_id, price in extra_rows:
                self.session.add(HistoryService(
                    history_id=history.history_id, service_id=service_id, price_cents=price, is_extra=True,
                ))
            for line, unit in item_rows:
                self.session.add(HistoryItem(
                    history_id=history.history_id,
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price_cents=unit,
                    total_price_cents=unit * line.quantity,
                ))
                self._decrement_stock(line.product_id, line.quantity)

            self.session.commit()
        except (QueueError, SQLAlchemyError):
            self.session.rollback()
            raise

        logger.info(
            "Queue entry %s completed: total=%s fee=%s net=%s (%s x%s)",
            entry.queue_id, total_cents, fee_cents, net_cents, payment_method, installments,
        )
        self.broadcaster.notify()
        return history

    def _decrement_stock(self, product_id: int, quantity: int) -> None:
        result = self.session.execute(
            update(Product)
            .where(Product.product_id == product_id, Product.stock_quantity >= quantity)
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise InsufficientStock(f"Not enough stock for product {product_id}")

    def remove_service(self, queue_id: int, service_id: int) -> QueueEntry:
        entry = self._get_entry(queue_id)
        if entry.status != "waiting":
            raise NotInQueue()
        if len(entry.service_links) <= 1:
            raise CannotRemoveLastService()

        link = next((l for l in entry.service_links if l.service_id == service_id), None)
        if link is None:
            raise NotFound("Service is not part of this queue entry")

        entry.service_links.remove(link)
        self._commit()
        logger.info("Service %s removed from queue entry %s", service_id, entry.queue_id)
        self.broadcaster.notify()
        return entry
