import logging
from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ContractError(Exception):
    """Base for domain failures; carries the HTTP status and a machine-readable reason."""

    status_code = 400
    reason = "error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.reason.replace("_", " ")
        super().__init__(self.detail)


class NotFound(ContractError):
    status_code = 404
    reason = "not_found"


class InvalidState(ContractError):
    status_code = 409
    reason = "invalid_state"


class AlreadySigned(InvalidState):
    reason = "already_signed"


class AlreadyDeclined(InvalidState):
    reason = "already_declined"


class OrderingViolation(InvalidState):
    reason = "ordering_violation"


class InvalidToken(ContractError):
    status_code = 404
    reason = "invalid_token"


class TokenExpired(ContractError):
    status_code = 410
    reason = "token_expired"


class TokenConsumed(ContractError):
    status_code = 410
    reason = "token_consumed"


class InvalidSession(ContractError):
    status_code = 401
    reason = "invalid_session"


class ValidationError(ContractError):
    status_code = 422
    reason = "validation_error"


class TermsNotAgreed(ValidationError):
    reason = "terms_not_agreed"


class InvalidSignatureImage(ValidationError):
    reason = "invalid_signature_image"


class AuthorizationError(ContractError):
    status_code = 403
    reason = "forbidden"


class EmailMismatch(AuthorizationError):
    reason = "email_mismatch"


class IntegrationFailure(ContractError):
    status_code = 502
    reason = "integration_failure"


async def contract_error_handler(request: Request, exc: ContractError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(level, "%s %s -> %s (%s)", request.method, request.url.path, exc.status_code, exc.reason)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "reason": exc.reason},
    )
