from rest_framework.exceptions import APIException
from rest_framework import status
from rest_framework.views import exception_handler
from rest_framework.response import Response
from django.core.exceptions import (
    ObjectDoesNotExist,
    ValidationError as DjangoValidationError,
)
from rest_framework.exceptions import ValidationError as DRFValidationError
from utils.constants import (
    GeneralMessage,
    PaymentMessage,
)
import logging

logger = logging.getLogger("payment")


def custom_exception_handler(exc, context):
    # Handle Django's DoesNotExist as 404
    if isinstance(exc, ObjectDoesNotExist):
        return Response(
            {"success": False, "error": "Not found."},
            status=status.HTTP_404_NOT_FOUND
        )

    # Handle Django and DRF validation errors as 400
    if isinstance(exc, (DjangoValidationError, DRFValidationError)):
        return Response(
            {
                "success": False,
                "error": exc.detail if hasattr(exc, "detail") else exc.messages,
            },
            status=status.HTTP_400_BAD_REQUEST,
        )

    # Handle all APIException (including the custom ones below)
    if isinstance(exc, APIException):
        detail = exc.detail if hasattr(exc, "detail") else str(exc)
        code = (
            exc.status_code
            if hasattr(exc, "status_code")
            else status.HTTP_400_BAD_REQUEST
        )
        if code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.error(f"{exc.__class__.__name__}: {detail}")
        return Response({"success": False, "error": detail}, status=code)

    # Fallback to DRF's default handler (Http404, PermissionDenied, ...)
    response = exception_handler(exc, context)
    if response is not None:
        response.data = {"success": False, "error": response.data}
        return response

    logger.exception(f"Unhandled error in {context.get('view').__class__.__name__}")
    return Response(
        {
            "success": False,
            "error": GeneralMessage.SOMETHING_WENT_WRONG,
            "detail": str(exc),
        },
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


class NotFoundException(APIException):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "not_found"
    default_code = "not_found"


class PermissionDeniedException(APIException):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = GeneralMessage.PERMISSION_DENIED
    default_code = "permission_denied"


class InvalidInputException(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = GeneralMessage.INVALID_INPUT
    default_code = "invalid_input"


class InvalidStatusException(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_status"


class InvalidStateTransitionException(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_code = "invalid_state_transition"


class GatewayUnavailableException(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = PaymentMessage.GATEWAY_UNAVAILABLE
    default_code = "gateway_unavailable"


class InconsistentStateException(APIException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = PaymentMessage.INCONSISTENT_STATE
    default_code = "inconsistent"

