"""Error taxonomy for queue and catalog operations.

Every error carries the HTTP status it maps to and a stable machine code, so
route handlers can answer with ``{"error": code, "message": message}``.
"""
from __future__ import annotations


class QueueError(Exception):
    status_code = 400
    error = "bad_request"
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "message": self.message}


class Unauthorized(QueueError):
    status_code = 401
    error = "unauthorized"
    default_message = "Authentication required"


class Forbidden(QueueError):
    status_code = 403
    error = "forbidden"
    default_message = "You are not allowed to perform this action"


class InvalidPayload(QueueError):
    error = "invalid_payload"
    default_message = "Invalid request payload"


class AlreadyInQueue(QueueError):
    error = "already_in_queue"
    default_message = "You are already in the queue"


class BarberUnavailable(QueueError):
    error = "barber_unavailable"
    default_message = "Barber is not available"


class InvalidServices(QueueError):
    error = "invalid_services"
    default_message = "Some services were not found"


class NotInQueue(QueueError):
    status_code = 404
    error = "not_in_queue"
    default_message = "Entry is not waiting in the queue"


class InvalidDirection(QueueError):
    error = "invalid_direction"
    default_message = "Cannot move in this direction"


class CannotRemoveLastService(QueueError):
    error = "cannot_remove_last_service"
    default_message = "Cannot remove the last service of a queue entry"


class NotFound(QueueError):
    status_code = 404
    error = "not_found"
    default_message = "Resource not found"


class InsufficientStock(QueueError):
    status_code = 409
    error = "insufficient_stock"
    default_message = "Not enough stock for product"


class InternalError(QueueError):
    status_code = 500
    error = "internal_error"
    default_message = "Internal server error"
