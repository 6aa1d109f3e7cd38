# src/clinic_backend/exceptions.py

from fastapi import status


class LoginFlowError(Exception):
    """Base class for failures that terminate a login leg.

    Every subclass maps to a fixed HTTP status; the message is returned to
    the caller verbatim as ``{"message": ...}``.
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(LoginFlowError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class CsrfValidationError(LoginFlowError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidCallbackError(LoginFlowError):
    status_code = status.HTTP_400_BAD_REQUEST


class UnknownProviderError(LoginFlowError):
    status_code = status.HTTP_404_NOT_FOUND


class ProviderCommunicationError(LoginFlowError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ProviderDataError(ProviderCommunicationError):
    """The provider answered, but without a field the flow requires."""


class RedirectValidationError(ValueError):
    """Raised by the strict redirect validator.

    Never reaches a handler: the login leg downgrades the target to ``"/"``.
    """
