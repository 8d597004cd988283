"""Map agreement engine errors onto HTTP responses."""

from fastapi import HTTPException, status

from coliving_platform.domain.errors import (
    AgreementDataError,
    AgreementEngineError,
    AgreementNotCompletedError,
    AgreementNotFoundError,
    ConcurrentModificationError,
    ConfigValidationError,
    InvalidTransitionError,
    SigningProviderError,
    TemplateNotFoundError,
    TemplateValidationError,
    WebhookSignatureError,
)

_STATUS_BY_ERROR: list[tuple[type[AgreementEngineError], int]] = [
    (AgreementNotFoundError, status.HTTP_404_NOT_FOUND),
    (TemplateNotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ConcurrentModificationError, status.HTTP_409_CONFLICT),
    (AgreementNotCompletedError, status.HTTP_409_CONFLICT),
    (TemplateValidationError, status.HTTP_400_BAD_REQUEST),
    (AgreementDataError, status.HTTP_400_BAD_REQUEST),
    (ConfigValidationError, status.HTTP_400_BAD_REQUEST),
    (WebhookSignatureError, status.HTTP_401_UNAUTHORIZED),
    (SigningProviderError, status.HTTP_502_BAD_GATEWAY),
]


def to_http_exception(exc: AgreementEngineError) -> HTTPException:
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, error_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            code = error_code
            break
    detail = {"message": exc.message}
    if exc.details:
        detail.update(exc.details)
    return HTTPException(status_code=code, detail=detail)
