"""Database models for the barbershop queue backend."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import text

from .extensions import db


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _rate(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


QUEUE_ACTIVE_STATUSES = ("waiting", "in_progress")


class User(db.Model):
    __tablename__ = "users"

    user_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    phone = db.Column(db.String(30))
    role = db.Column(
        db.Enum(
            "client",
            "barber",
            "admin",
            name="user_role",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="client",
        server_default="client",
    )
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    auth_account = db.relationship("AuthAccount", back_populates="user", uselist=False)

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "phone": self.phone,
        }


class AuthAccount(db.Model):
    __tablename__ = "auth_accounts"

    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), primary_key=True)
    password_hash = db.Column(db.String(255), nullable=False)
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = db.relationship("User", back_populates="auth_account")


class Barber(db.Model):
    """A barber and the state of their personal queue."""

    __tablename__ = "barbers"

    barber_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    name = db.Column(db.String(100), nullable=False)
    status = db.Column(
        db.Enum(
            "active",
            "inactive",
            name="barber_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="active",
        server_default="active",
    )
    queue_status = db.Column(
        db.Enum(
            "open",
            "closed",
            name="barber_queue_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="open",
        server_default="open",
    )
    # Overrides Settings.commission_rate when set.
    commission_rate = db.Column(db.Numeric(6, 4), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    user = db.relationship("User")

    @property
    def accepts_entries(self) -> bool:
        return self.status == "active" and self.queue_status == "open"

    def to_dict_basic(self) -> dict[str, object]:
        return {"id": self.barber_id, "name": self.name}

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.barber_id,
            "user_id": self.user_id,
            "name": self.name,
            "status": self.status,
            "queue_status": self.queue_status,
            "commission_rate": _rate(self.commission_rate),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Service(db.Model):
    """A service on the barbershop menu."""

    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    price_cents = db.Column(db.Integer, nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "name": self.name,
            "price_cents": self.price_cents,
            "duration_minutes": self.duration_minutes,
        }

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "price_dollars": self.price_cents / 100.0,
            "duration_minutes": self.duration_minutes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Product(db.Model):
    __tablename__ = "products"

    product_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    price_cents = db.Column(db.Integer, nullable=False)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    category = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.product_id,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "price_dollars": self.price_cents / 100.0,
            "stock_quantity": self.stock_quantity,
            "category": self.category,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class QueueEntry(db.Model):
    """One customer's slot in a barber's queue.

    Entries are never deleted: they leave the queue by moving to
    ``completed`` or ``cancelled``. Order inside a barber's queue is the
    ascending ``sequence``.
    """

    __tablename__ = "queue_entries"
    __table_args__ = (
        # At most one waiting entry per customer, across all barbers.
        db.Index(
            "uq_queue_entries_waiting_user",
            "user_id",
            unique=True,
            sqlite_where=text("status = 'waiting'"),
            postgresql_where=text("status = 'waiting'"),
        ).ddl_if(dialect=("sqlite", "postgresql")),
    )

    queue_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    barber_id = db.Column(db.Integer, db.ForeignKey("barbers.barber_id"), nullable=False, index=True)
    status = db.Column(
        db.Enum(
            "waiting",
            "in_progress",
            "completed",
            "cancelled",
            name="queue_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="waiting",
        server_default="waiting",
    )
    sequence = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    user = db.relationship("User")
    barber = db.relationship("Barber")
    service_links = db.relationship(
        "QueueServiceLink",
        back_populates="queue_entry",
        cascade="all, delete-orphan",
        order_by="QueueServiceLink.link_id",
    )

    @property
    def services(self) -> list[Service]:
        return [link.service for link in self.service_links if link.service is not None]

    @property
    def total_minutes(self) -> int:
        return sum(service.duration_minutes or 0 for service in self.services)

    @property
    def total_price_cents(self) -> int:
        return sum(service.price_cents or 0 for service in self.services)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.queue_id,
            "user": self.user.to_dict_basic() if self.user else None,
            "barber": self.barber.to_dict_basic() if self.barber else None,
            "status": self.status,
            "sequence": self.sequence,
            "services": [service.to_dict_basic() for service in self.services],
            "estimated_minutes": self.total_minutes,
            "total_price_cents": self.total_price_cents,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class QueueServiceLink(db.Model):
    __tablename__ = "queue_services"

    link_id = db.Column(db.Integer, primary_key=True)
    queue_id = db.Column(db.Integer, db.ForeignKey("queue_entries.queue_id"), nullable=False, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)

    queue_entry = db.relationship("QueueEntry", back_populates="service_links")
    service = db.relationship("Service")


class History(db.Model):
    """Immutable record of a completed queue entry."""

    __tablename__ = "history"

    history_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False, index=True)
    barber_id = db.Column(db.Integer, db.ForeignKey("barbers.barber_id"), nullable=False, index=True)
    queue_id = db.Column(db.Integer, db.ForeignKey("queue_entries.queue_id"), nullable=True)
    total_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(30), nullable=False)
    installments = db.Column(db.Integer, nullable=False, default=1)
    fee_rate = db.Column(db.Numeric(6, 4), nullable=False)
    fee_cents = db.Column(db.Integer, nullable=False)
    net_cents = db.Column(db.Integer, nullable=False)
    commission_rate = db.Column(db.Numeric(6, 4), nullable=False)
    commission_cents = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    user = db.relationship("User")
    barber = db.relationship("Barber")
    services = db.relationship("HistoryService", back_populates="history", order_by="HistoryService.id")
    items = db.relationship("HistoryItem", back_populates="history", order_by="HistoryItem.id")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.history_id,
            "queue_id": self.queue_id,
            "user": self.user.to_dict_basic() if self.user else None,
            "barber": self.barber.to_dict_basic() if self.barber else None,
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "installments": self.installments,
            "fee_rate": _rate(self.fee_rate),
            "fee_cents": self.fee_cents,
            "net_cents": self.net_cents,
            "commission_rate": _rate(self.commission_rate),
            "commission_cents": self.commission_cents,
            "services": [row.to_dict() for row in self.services],
            "items": [row.to_dict() for row in self.items],
            "created_at": _iso(self.created_at),
        }


class HistoryService(db.Model):
    __tablename__ = "history_services"

    id = db.Column(db.Integer, primary_key=True)
    history_id = db.Column(db.Integer, db.ForeignKey("history.history_id"), nullable=False, index=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    is_extra = db.Column(db.Boolean, nullable=False, default=False, server_default="0")

    history = db.relationship("History", back_populates="services")
    service = db.relationship("Service")

    def to_dict(self) -> dict[str, object]:
        return {
            "service_id": self.service_id,
            "name": self.service.name if self.service else None,
            "price_cents": self.price_cents,
            "is_extra": bool(self.is_extra),
        }


class HistoryItem(db.Model):
    __tablename__ = "history_items"

    id = db.Column(db.Integer, primary_key=True)
    history_id = db.Column(db.Integer, db.ForeignKey("history.history_id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.product_id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_price_cents = db.Column(db.Integer, nullable=False)

    history = db.relationship("History", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict[str, object]:
        return {
            "product_id": self.product_id,
            "name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_price_cents": self.total_price_cents,
        }


class Settings(db.Model):
    """Single-row fee and commission configuration."""

    __tablename__ = "settings"

    DEFAULTS = {
        "commission_rate": Decimal("0.15"),
        "credit_card_fee": Decimal("0.035"),
        "credit_card_fee_2x": Decimal("0.045"),
        "credit_card_fee_3x": Decimal("0.055"),
        "debit_card_fee": Decimal("0.025"),
        "cash_fee": Decimal("0"),
        "pix_fee": Decimal("0"),
    }

    settings_id = db.Column(db.Integer, primary_key=True)
    commission_rate = db.Column(db.Numeric(6, 4), nullable=False)
    credit_card_fee = db.Column(db.Numeric(6, 4), nullable=False)
    credit_card_fee_2x = db.Column(db.Numeric(6, 4), nullable=True)
    credit_card_fee_3x = db.Column(db.Numeric(6, 4), nullable=True)
    debit_card_fee = db.Column(db.Numeric(6, 4), nullable=False)
    cash_fee = db.Column(db.Numeric(6, 4), nullable=False)
    pix_fee = db.Column(db.Numeric(6, 4), nullable=False)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    @classmethod
    def current(cls) -> "Settings":
        """Return the settings row, creating it with defaults on first use."""
        settings = cls.query.order_by(cls.settings_id).first()
        if settings is None:
            settings = cls(**cls.DEFAULTS)
            db.session.add(settings)
            db.session.flush()
        return settings

    def to_dict(self) -> dict[str, object]:
        return {
            "commission_rate": _rate(self.commission_rate),
            "credit_card_fee": _rate(self.credit_card_fee),
            "credit_card_fee_2x": _rate(self.credit_card_fee_2x),
            "credit_card_fee_3x": _rate(self.credit_card_fee_3x),
            "debit_card_fee": _rate(self.debit_card_fee),
            "cash_fee": _rate(self.cash_fee),
            "pix_fee": _rate(self.pix_fee),
            "updated_at": _iso(self.updated_at),
        }
