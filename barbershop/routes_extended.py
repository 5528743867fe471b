"""Auth, catalog, settings and history routes around the queue."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from flask import Blueprint, Response, current_app, g, jsonify, request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload
from werkzeug.security import check_password_hash, generate_password_hash

from .auth import build_token, login_required
from .errors import InternalError, InvalidPayload, NotFound, Unauthorized
from .extensions import db
from .models import (AuthAccount, Barber, History, HistoryService, Product,
                     QueueServiceLink, Service, Settings, User)
from .queue_service import PAYMENT_METHODS, as_id

bp_ext = Blueprint("api_ext", __name__)

SETTINGS_FIELDS = (
    "commission_rate",
    "credit_card_fee",
    "credit_card_fee_2x",
    "credit_card_fee_3x",
    "debit_card_fee",
    "cash_fee",
    "pix_fee",
)


def _database_error(exc: SQLAlchemyError, action: str) -> tuple[Response, int]:
    db.session.rollback()
    current_app.logger.exception("Failed to %s", action, exc_info=exc)
    error = InternalError()
    return jsonify(error.to_dict()), error.status_code


def _notify_queue() -> None:
    current_app.extensions["queue_broadcaster"].notify()


def _parse_rate(value: object, field: str) -> Decimal:
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidPayload(f"{field} must be a number") from None
    if rate < 0 or rate >= 1:
        raise InvalidPayload(f"{field} must be a fraction between 0 and 1")
    return rate


def _parse_non_negative(payload: dict, field: str, required: bool) -> int | None:
    value = payload.get(field)
    if value is None:
        if required:
            raise InvalidPayload(f"{field} is required")
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidPayload(f"{field} must be a non-negative integer")
    return value


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@bp_ext.get("/health")
def health_check() -> tuple[Response, int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp_ext.get("/db-health")
def database_health() -> tuple[Response, int]:
    """Check connectivity to the configured database."""
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def _session_response(user: User, status: int) -> tuple[Response, int]:
    token = build_token(user)
    response = jsonify({"token": token, "user": user.to_dict_basic()})
    response.set_cookie(
        current_app.config["AUTH_COOKIE_NAME"],
        token,
        max_age=current_app.config["AUTH_TOKEN_MAX_AGE"],
        httponly=True,
        samesite="Lax",
    )
    return response, status


@bp_ext.post("/auth/register")
def register_user() -> tuple[Response, int]:
    """Register a new client.
    ---
    tags:
      - Authentication
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            name:
              type: string
            email:
              type: string
            password:
              type: string
            phone:
              type: string
          required:
            - name
            - email
            - password
    responses:
      201:
        description: User registered and logged in
      400:
        description: Invalid payload
      409:
        description: Email already in use
    """
    payload = request.get_json(silent=True) or {}

    name = (payload.get("name") or "").strip()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    phone = (payload.get("phone") or "").strip() or None

    if not name or not email or not password:
        raise InvalidPayload("name, email, and password are required")

    if User.query.filter_by(email=email).first():
        return jsonify({"error": "conflict", "message": "email address is already in use"}), 409

    try:
        # Staff accounts are created by an admin, never through self sign-up.
        user = User(name=name, email=email, phone=phone, role="client")
        db.session.add(user)
        db.session.flush()
        db.session.add(AuthAccount(user_id=user.user_id, password_hash=generate_password_hash(password)))
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "register new user")

    return _session_response(user, 201)


@bp_ext.post("/auth/login")
def login() -> tuple[Response, int]:
    """Authenticate by email/password and start a session.
    ---
    tags:
      - Authentication
    responses:
      200:
        description: Login successful, returns access token
      401:
        description: Invalid email or password
    """
    payload = request.get_json(silent=True) or {}

    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""

    if not email or not password:
        raise InvalidPayload("email and password are required")

    record = (
        db.session.query(User, AuthAccount)
        .join(AuthAccount, AuthAccount.user_id == User.user_id)
        .filter(User.email == email)
        .first()
    )
    if not record or not check_password_hash(record[1].password_hash, password):
        raise Unauthorized("invalid email or password")

    user, auth_account = record
    auth_account.last_login_at = datetime.now(timezone.utc)
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "update last login timestamp")

    return _session_response(user, 200)


@bp_ext.post("/auth/logout")
def logout() -> tuple[Response, int]:
    response = jsonify({"message": "Logged out"})
    response.delete_cookie(current_app.config["AUTH_COOKIE_NAME"])
    return response, 200


@bp_ext.get("/auth/me")
@login_required()
def me() -> tuple[Response, int]:
    user_data = g.current_user.to_dict_basic()
    if g.current_user.role == "barber":
        barber = Barber.query.filter_by(user_id=g.current_user.user_id).first()
        user_data["barber_id"] = barber.barber_id if barber else None
    return jsonify({"user": user_data}), 200


# ---------------------------------------------------------------------------
# Barbers
# ---------------------------------------------------------------------------

@bp_ext.get("/barbers")
def list_barbers() -> tuple[Response, int]:
    """List barbers; ``?available=true`` keeps only those accepting entries."""
    try:
        query = Barber.query.order_by(Barber.name.asc())
        if request.args.get("available", "false").lower() == "true":
            query = query.filter(Barber.status == "active", Barber.queue_status == "open")
        barbers = query.all()
    except SQLAlchemyError as exc:
        return _database_error(exc, "list barbers")
    return jsonify({"barbers": [barber.to_dict() for barber in barbers]}), 200


def _apply_barber_fields(barber: Barber, payload: dict) -> None:
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            raise InvalidPayload("name cannot be empty")
        barber.name = name
    if "status" in payload:
        if payload["status"] not in ("active", "inactive"):
            raise InvalidPayload("status must be 'active' or 'inactive'")
        barber.status = payload["status"]
    if "queue_status" in payload:
        if payload["queue_status"] not in ("open", "closed"):
            raise InvalidPayload("queue_status must be 'open' or 'closed'")
        barber.queue_status = payload["queue_status"]
    if "commission_rate" in payload:
        value = payload["commission_rate"]
        barber.commission_rate = None if value is None else _parse_rate(value, "commission_rate")
    if "user_id" in payload:
        user_id = payload["user_id"]
        if user_id is not None and db.session.get(User, as_id(user_id, "user_id")) is None:
            raise NotFound("user not found")
        barber.user_id = None if user_id is None else as_id(user_id, "user_id")


@bp_ext.post("/barbers")
@login_required("admin")
def create_barber() -> tuple[Response, int]:
    """Add a barber.
    ---
    tags:
      - Barbers
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            name:
              type: string
            user_id:
              type: integer
            status:
              type: string
              enum: [active, inactive]
            queue_status:
              type: string
              enum: [open, closed]
            commission_rate:
              type: number
          required:
            - name
    responses:
      201:
        description: Barber created
    """
    payload = request.get_json(silent=True) or {}
    if not (payload.get("name") or "").strip():
        raise InvalidPayload("name is required")

    barber = Barber()
    _apply_barber_fields(barber, payload)
    try:
        db.session.add(barber)
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "create barber")
    _notify_queue()
    return jsonify({"message": "Barber created", "barber": barber.to_dict()}), 201


@bp_ext.put("/barbers/<int:barber_id>")
@login_required("admin")
def update_barber(barber_id: int) -> tuple[Response, int]:
    """Update a barber, including opening/closing their queue."""
    barber = db.session.get(Barber, barber_id)
    if barber is None:
        raise NotFound("barber not found")

    _apply_barber_fields(barber, request.get_json(silent=True) or {})
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "update barber")
    _notify_queue()
    return jsonify({"message": "Barber updated", "barber": barber.to_dict()}), 200


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@bp_ext.get("/services")
def list_services() -> tuple[Response, int]:
    try:
        services = Service.query.order_by(Service.name.asc()).all()
    except SQLAlchemyError as exc:
        return _database_error(exc, "list services")
    return jsonify({"services": [service.to_dict() for service in services]}), 200


@bp_ext.post("/services")
@login_required("admin")
def create_service() -> tuple[Response, int]:
    """Create a service.
    ---
    tags:
      - Services
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            name:
              type: string
            description:
              type: string
            price_cents:
              type: integer
            duration_minutes:
              type: integer
    responses:
      201:
        description: Service created
      400:
        description: Invalid payload
    """
    payload = request.get_json(silent=True) or {}
    name = (payload.get("name") or "").strip()
    if not name:
        raise InvalidPayload("name is required")
    price_cents = _parse_non_negative(payload, "price_cents", required=True)
    duration = _parse_non_negative(payload, "duration_minutes", required=True)
    if duration == 0:
        raise InvalidPayload("duration_minutes must be positive")

    service = Service(
        name=name,
        description=payload.get("description"),
        price_cents=price_cents,
        duration_minutes=duration,
    )
    try:
        db.session.add(service)
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "create service")
    return jsonify({"message": "Service created successfully", "service": service.to_dict()}), 201


@bp_ext.put("/services/<int:service_id>")
@login_required("admin")
def update_service(service_id: int) -> tuple[Response, int]:
    service = db.session.get(Service, service_id)
    if service is None:
        raise NotFound("service not found")

    payload = request.get_json(silent=True) or {}
    if "name" in payload:
        name = (payload.get("name") or "").strip()
        if not name:
            raise InvalidPayload("name cannot be empty")
        service.name = name
    if "description" in payload:
        service.description = payload.get("description")
    price_cents = _parse_non_negative(payload, "price_cents", required=False)
    if price_cents is not None:
        service.price_cents = price_cents
    duration = _parse_non_negative(payload, "duration_minutes", required=False)
    if duration is not None:
        if duration == 0:
            raise InvalidPayload("duration_minutes must be positive")
        service.duration_minutes = duration

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "update service")
    return jsonify({"message": "Service updated successfully", "service": service.to_dict()}), 200


@bp_ext.delete("/services/<int:service_id>")
@login_required("admin")
def delete_service(service_id: int) -> tuple[Response, int]:
    service = db.session.get(Service, service_id)
    if service is None:
        raise NotFound("service not found")

    referenced = (
        HistoryService.query.filter_by(service_id=service_id).first() is not None
        or QueueServiceLink.query.filter_by(service_id=service_id).first() is not None
    )
    if referenced:
        return jsonify({
            "error": "conflict",
            "message": "service is referenced by queue entries or history and cannot be deleted",
        }), 409

    try:
        db.session.delete(service)
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "delete service")
    return jsonify({"message": "Service deleted successfully"}), 200


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

@bp_ext.get("/items")
def list_items() -> tuple[Response, int]:
    try:
        products = Product.query.order_by(Product.name.asc()).all()
    except SQLAlchemyError as exc:
        return _database_error(exc, "list products")
    return jsonify({"items": [product.to_dict() for product in products]}), 200


@bp_ext.post("/items")
@login_required("admin")
def create_item() -> tuple[Response, int]:
    payload = request.get_json(silent=True) or {}
    name = (payload.get("name") or "").strip()
    if not name:
        raise InvalidPayload("name is required")

    product = Product(
        name=name,
        description=payload.get("description"),
        category=payload.get("category"),
        price_cents=_parse_non_negative(payload, "price_cents", required=True),
        stock_quantity=_parse_non_negative(payload, "stock_quantity", required=False) or 0,
    )
    try:
        db.session.add(product)
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "create product")
    return jsonify({"message": "Product created successfully", "item": product.to_dict()}), 201


@bp_ext.put("/items/<int:product_id>")
@login_required("admin")
def update_item(product_id: int) -> tuple[Response, int]:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound("product not found")

    payload = request.get_json(silent=True) or {}
    for field in ("name", "description", "category"):
        if field in payload:
            product_value = payload.get(field)
            if field == "name" and not (product_value or "").strip():
                raise InvalidPayload("name cannot be empty")
            setattr(product, field, product_value)
    for field in ("price_cents", "stock_quantity"):
        value = _parse_non_negative(payload, field, required=False)
        if value is not None:
            setattr(product, field, value)

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "update product")
    return jsonify({"message": "Product updated successfully", "item": product.to_dict()}), 200


# ---------------------------------------------------------------------------
# Settings and fees
# ---------------------------------------------------------------------------

@bp_ext.get("/settings")
@login_required("barber", "admin")
def get_settings() -> tuple[Response, int]:
    try:
        settings = Settings.current()
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "load settings")
    return jsonify({"settings": settings.to_dict()}), 200


@bp_ext.put("/settings")
@login_required("admin")
def update_settings() -> tuple[Response, int]:
    """Update fee and commission rates (fractions, e.g. 0.035 for 3.5%).
    ---
    tags:
      - Settings
    responses:
      200:
        description: Updated settings
      400:
        description: Rate out of range
    """
    payload = request.get_json(silent=True) or {}
    try:
        settings = Settings.current()
        for field in SETTINGS_FIELDS:
            if field not in payload:
                continue
            value = payload[field]
            if value is None and field in ("credit_card_fee_2x", "credit_card_fee_3x"):
                setattr(settings, field, None)
            else:
                setattr(settings, field, _parse_rate(value, field))
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "update settings")
    except InvalidPayload:
        db.session.rollback()
        raise
    current_app.logger.info("Fee settings updated by user %s", g.current_user.user_id)
    return jsonify({"settings": settings.to_dict()}), 200


@bp_ext.get("/payment-fees")
def payment_fees() -> tuple[Response, int]:
    """Fee percentages per payment method, as shown at checkout."""
    try:
        settings = Settings.current()
        db.session.commit()
    except SQLAlchemyError as exc:
        return _database_error(exc, "load payment fees")

    def percent(value: Decimal | None) -> float:
        return float(value if value is not None else settings.credit_card_fee) * 100

    return jsonify({
        "credit_card": percent(settings.credit_card_fee),
        "credit_card_2x": percent(settings.credit_card_fee_2x),
        "credit_card_3x": percent(settings.credit_card_fee_3x),
        "debit_card": percent(settings.debit_card_fee),
        "cash": percent(settings.cash_fee),
        "pix": percent(settings.pix_fee),
        "methods": list(PAYMENT_METHODS),
    }), 200


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

@bp_ext.get("/history")
@login_required()
def list_history() -> tuple[Response, int]:
    """Completed services, newest first.
    ---
    tags:
      - History
    parameters:
      - name: barberId
        in: query
        type: integer
      - name: page
        in: query
        type: integer
        default: 1
      - name: limit
        in: query
        type: integer
        default: 20
        maximum: 100
    responses:
      200:
        description: History rows with pagination metadata
    """
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = min(100, max(1, int(request.args.get("limit", 20))))
        barber_id = request.args.get("barberId")
        barber_id = int(barber_id) if barber_id else None
    except (TypeError, ValueError) as exc:
        current_app.logger.warning(f"Invalid history parameters: {exc}")
        return jsonify({"error": "invalid_parameters", "message": "page, limit and barberId must be integers"}), 400

    try:
        query = History.query.options(
            selectinload(History.services).selectinload(HistoryService.service),
            selectinload(History.items),
        )
        if g.current_user.role == "client":
            query = query.filter(History.user_id == g.current_user.user_id)
        elif barber_id is not None:
            query = query.filter(History.barber_id == barber_id)

        total = query.count()
        rows = (
            query.order_by(History.created_at.desc(), History.history_id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
            .all()
        )
    except SQLAlchemyError as exc:
        return _database_error(exc, "list history")

    return jsonify({
        "history": [row.to_dict() for row in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }), 200
