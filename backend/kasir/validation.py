# Overview: Error taxonomy shared by services and routes, plus request input coercion.

from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """
    Base for every domain failure surfaced by the service layer.

    Routes translate these into `{"error": message, "details": details}` with
    `status_code`. Anything that is not a ServiceError is an infrastructure
    failure and is reported as a generic 500.
    """
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class ValidationError(ServiceError):
    """400-level input problem."""
    status_code = 400


class AccessDeniedError(ServiceError):
    """403-level authorization failure (no store access, not admin, not subscribed)."""
    status_code = 403


class NotFoundError(ServiceError):
    """404-level missing entity."""
    status_code = 404


class ConflictError(ServiceError):
    """409-level business rule conflict (e.g., insufficient stock, duplicate subscription)."""
    status_code = 409


class ExternalServiceError(ServiceError):
    """502-level failure of an external dependency (payment gateway)."""
    status_code = 502


def require_fields(data: dict | None, *fields: str) -> dict:
    """Raise ValidationError naming every missing/empty field."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    return data


def coerce_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion for request input.

    Rejects bools, floats with a fractional part, and non-numeric strings.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, float) and value.is_integer():
        result = int(value)
    elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
        result = int(value.strip())
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be at least {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} cannot exceed {maximum}")
    return result
