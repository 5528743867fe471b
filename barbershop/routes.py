"""HTTP routes for the live queue."""
from __future__ import annotations

from flask import (Blueprint, Flask, Response, current_app, g, jsonify, request,
                   stream_with_context)
from sqlalchemy.exc import SQLAlchemyError

from .auth import login_required
from .errors import InternalError, InvalidPayload, QueueError
from .extensions import db
from .queue_service import (ExtraServiceLine, ProductLine, QueueService, ServiceLine,
                            as_id)
from .stream import SSE_HEADERS, event_stream

bp = Blueprint("queue", __name__, url_prefix="/queue")


def _queue_service() -> QueueService:
    return QueueService(
        db.session,
        current_app.extensions["queue_broadcaster"],
        current_app.extensions["queue_locks"],
    )


def _database_error(exc: SQLAlchemyError, action: str) -> tuple[Response, int]:
    db.session.rollback()
    current_app.logger.exception("Failed to %s", action, exc_info=exc)
    error = InternalError()
    return jsonify(error.to_dict()), error.status_code


def _lines(payload: dict, key: str, parser) -> list:
    raw = payload.get(key) or []
    if not isinstance(raw, list):
        raise InvalidPayload(f"{key} must be a list")
    return [parser(item) for item in raw]


@bp.get("")
@login_required("barber", "admin")
def list_queue() -> tuple[Response, int]:
    """List active queue entries of every active barber.
    ---
    tags:
      - Queue
    responses:
      200:
        description: Entries ordered by barber and queue position
      401:
        description: Missing or invalid session
      403:
        description: Caller is not staff
    """
    try:
        entries = _queue_service().list_active()
    except SQLAlchemyError as exc:
        return _database_error(exc, "list queue")

    payload = []
    position = 0
    previous_barber = None
    for entry in entries:
        position = position + 1 if entry.barber_id == previous_barber else 1
        previous_barber = entry.barber_id
        data = entry.to_dict()
        data["position"] = position
        payload.append(data)
    return jsonify({"queue": payload}), 200


@bp.post("/add")
@login_required()
def add_to_queue() -> tuple[Response, int]:
    """Join a barber's queue.
    ---
    tags:
      - Queue
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            serviceIds:
              type: array
              items:
                type: integer
            barberId:
              type: integer
          required:
            - serviceIds
            - barberId
    responses:
      201:
        description: Added to the queue
      400:
        description: Already in queue, barber unavailable or unknown services
    """
    payload = request.get_json(silent=True) or {}
    service_ids = payload.get("serviceIds")
    if not isinstance(service_ids, list) or not service_ids:
        raise InvalidPayload("serviceIds must be a non-empty list")
    if payload.get("barberId") in (None, ""):
        raise InvalidPayload("barberId is required")
    barber_id = as_id(payload["barberId"], "barberId")

    try:
        entry = _queue_service().join(g.current_user, barber_id, service_ids)
    except SQLAlchemyError as exc:
        return _database_error(exc, "add user to queue")

    return jsonify({"message": "Added to the queue", "queueId": entry.queue_id}), 201


@bp.get("/status")
@login_required()
def queue_status() -> tuple[Response, int]:
    """Position, wait estimate and anonymized queue of the caller.
    ---
    tags:
      - Queue
    responses:
      200:
        description: "{inQueue: false} or the caller's queue status"
    """
    try:
        status = _queue_service().status(g.current_user)
    except SQLAlchemyError as exc:
        return _database_error(exc, "read queue status")
    return jsonify(status), 200


@bp.post("/move")
@login_required("barber", "admin")
def move_entry() -> tuple[Response, int]:
    """Move a waiting entry one position up or down.
    ---
    tags:
      - Queue
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            queueId:
              type: integer
            direction:
              type: string
              enum: [up, down]
    responses:
      200:
        description: Position changed
      400:
        description: Invalid direction or boundary move
      404:
        description: Entry not found
    """
    payload = request.get_json(silent=True) or {}
    if payload.get("queueId") in (None, "") or not payload.get("direction"):
        raise InvalidPayload("queueId and direction are required")
    queue_id = as_id(payload["queueId"], "queueId")

    try:
        _queue_service().move(queue_id, payload["direction"])
    except SQLAlchemyError as exc:
        return _database_error(exc, "move queue entry")
    return jsonify({"message": "Position changed"}), 200


@bp.post("/cancel")
@login_required()
def cancel_entry() -> tuple[Response, int]:
    """Leave the queue, or cancel a given entry when called by staff.
    ---
    tags:
      - Queue
    parameters:
      - in: body
        name: body
        schema:
          type: object
          properties:
            queueId:
              type: integer
    responses:
      200:
        description: Entry cancelled
      403:
        description: Client tried to cancel someone else's entry
      404:
        description: Nothing to cancel
    """
    payload = request.get_json(silent=True) or {}
    queue_id = payload.get("queueId")
    if queue_id is not None:
        queue_id = as_id(queue_id, "queueId")

    try:
        _queue_service().cancel(g.current_user, queue_id)
    except SQLAlchemyError as exc:
        return _database_error(exc, "cancel queue entry")
    return jsonify({"message": "Queue entry cancelled"}), 200


@bp.post("/complete")
@login_required("barber", "admin")
def complete_entry() -> tuple[Response, int]:
    """Finish serving an entry and record it in history.
    ---
    tags:
      - Queue
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            queueId:
              type: integer
            services:
              type: array
              items:
                type: object
                properties:
                  serviceId:
                    type: integer
                  priceCents:
                    type: integer
            products:
              type: array
              items:
                type: object
                properties:
                  id:
                    type: integer
                  quantity:
                    type: integer
                  priceCents:
                    type: integer
            extraServices:
              type: array
              items:
                type: object
            paymentMethod:
              type: string
              enum: [credit_card, debit_card, cash, pix]
            installments:
              type: integer
              default: 1
    responses:
      200:
        description: Completed, returns the history id
      400:
        description: Invalid payload
      404:
        description: Entry or product not found
      409:
        description: Not enough product stock
    """
    payload = request.get_json(silent=True) or {}
    if payload.get("queueId") in (None, ""):
        raise InvalidPayload("queueId is required")
    if not payload.get("paymentMethod"):
        raise InvalidPayload("paymentMethod is required")

    queue_id = as_id(payload["queueId"], "queueId")
    installments = as_id(payload.get("installments", 1), "installments")
    services = _lines(payload, "services", ServiceLine.from_payload)
    products = _lines(payload, "products", ProductLine.from_payload)
    extra_services = _lines(payload, "extraServices", ExtraServiceLine.from_payload)

    try:
        history = _queue_service().complete(
            queue_id,
            services,
            products,
            extra_services,
            payload["paymentMethod"],
            installments,
        )
    except SQLAlchemyError as exc:
        return _database_error(exc, "complete queue entry")

    return jsonify({
        "message": "Service completed",
        "historyId": history.history_id,
        "userId": history.user_id,
        "history": history.to_dict(),
    }), 200


@bp.post("/update-services")
@login_required("admin")
def update_entry_services() -> tuple[Response, int]:
    """Remove one requested service from a waiting entry.
    ---
    tags:
      - Queue
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          properties:
            queueId:
              type: integer
            serviceIdToRemove:
              type: integer
    responses:
      200:
        description: Service removed
      400:
        description: Last service cannot be removed
      404:
        description: Entry or service not found
    """
    payload = request.get_json(silent=True) or {}
    if payload.get("queueId") in (None, "") or payload.get("serviceIdToRemove") in (None, ""):
        raise InvalidPayload("queueId and serviceIdToRemove are required")
    queue_id = as_id(payload["queueId"], "queueId")
    service_id = as_id(payload["serviceIdToRemove"], "serviceIdToRemove")

    try:
        entry = _queue_service().remove_service(queue_id, service_id)
    except SQLAlchemyError as exc:
        return _database_error(exc, "update queue services")
    return jsonify({"message": "Service removed from the queue entry", "entry": entry.to_dict()}), 200


@bp.get("/stream")
@login_required()
def queue_stream() -> Response:
    """Server-sent events announcing queue changes.
    ---
    tags:
      - Queue
    produces:
      - text/event-stream
    responses:
      200:
        description: connected, heartbeat and queue_update events
    """
    broadcaster = current_app.extensions["queue_broadcaster"]
    heartbeat = current_app.config["QUEUE_HEARTBEAT_SECONDS"]
    # The stream never touches the database; release the connection now.
    db.session.remove()
    return Response(
        stream_with_context(event_stream(broadcaster, heartbeat)),
        mimetype="text/event-stream",
        headers=SSE_HEADERS,
    )


def handle_queue_error(exc: QueueError) -> tuple[Response, int]:
    if exc.status_code >= 500:
        current_app.logger.error("Request failed: %s", exc.message)
    return jsonify(exc.to_dict()), exc.status_code


def register_routes(app: Flask) -> None:
    from .routes_extended import bp_ext

    app.register_blueprint(bp)
    app.register_blueprint(bp_ext)
    app.register_error_handler(QueueError, handle_queue_error)
