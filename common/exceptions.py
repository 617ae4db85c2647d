from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from django.core.exceptions import PermissionDenied as DjangoPermissionDenied
from django.core.exceptions import ValidationError as DjangoValidationError
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    ParseError,
    PermissionDenied,
    Throttled,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

SERVER_ERROR_MESSAGE = "An unexpected error occurred."


class DomainError(APIException):
    """Business rule violation raised by service code.

    Subclasses set ``default_code``; the handler uses it verbatim as the
    envelope ``code`` so clients can branch on it.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "The request violates a business rule."
    default_code = "domain_error"


class ConflictError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "The resource is not in a state that allows this operation."
    default_code = "conflict"


STABLE_CODES: tuple[tuple[type[Exception], str], ...] = (
    (ValidationError, "validation_error"),
    (NotAuthenticated, "not_authenticated"),
    (AuthenticationFailed, "authentication_failed"),
    (PermissionDenied, "permission_denied"),
    (NotFound, "not_found"),
    (MethodNotAllowed, "method_not_allowed"),
    (ParseError, "parse_error"),
    (Throttled, "throttled"),
)


def envelope(code: str, message: str, errors: Any, status_code: int) -> dict[str, Any]:
    return {"code": code, "message": message, "errors": errors, "status": status_code}


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    # Django-native errors map onto their DRF counterparts.
    if isinstance(exc, Http404):
        exc = NotFound(*exc.args)
    elif isinstance(exc, DjangoPermissionDenied):
        exc = PermissionDenied(*exc.args)
    elif isinstance(exc, DjangoValidationError):
        exc = ValidationError(detail=exc.message_dict if hasattr(exc, "error_dict") else exc.messages)

    response = drf_exception_handler(exc, context)
    if response is None:
        view = context.get("view")
        logger.exception("Unhandled API exception in %s", type(view).__name__ if view else "unknown")
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
        return Response(envelope("internal_server_error", SERVER_ERROR_MESSAGE, None, code), status=code)

    response.data = envelope(
        _stable_code(exc),
        _message_for(exc, response.data),
        _errors_from(response.data),
        response.status_code,
    )
    return response


def _stable_code(exc: Exception) -> str:
    if isinstance(exc, DomainError):
        return str(exc.default_code)
    for exception_type, code in STABLE_CODES:
        if isinstance(exc, exception_type):
            return code
    return str(getattr(exc, "default_code", "api_error"))


def _message_for(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."
    detail = data.get("detail") if isinstance(data, Mapping) else data if isinstance(data, str) else None
    if detail:
        return str(detail)
    if isinstance(exc, Throttled):
        return "Request was throttled."
    return str(getattr(exc, "detail", "Request failed."))


def _errors_from(data: Any) -> Any:
    if isinstance(data, Mapping):
        return None if set(data) == {"detail"} else data
    if isinstance(data, Sequence) and not isinstance(data, str):
        return data
    return None
