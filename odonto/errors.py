"""Error taxonomy for the protocol pipeline.

Every error carries the HTTP ``status_code`` and a machine-readable
``code`` so the API layer can render ``{error, code, message?}`` without
knowing which component raised it.  Internal details stay in the logs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from odonto.services.rate_limit import RateLimitResult


class OdontoError(Exception):
    """Base class for every error surfaced to API callers."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    public_message: str = "Erro interno. Tente novamente."

    def __init__(self, message: str | None = None, *, status_code: int | None = None):
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message or self.public_message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": str(self), "code": self.code}


class RequestValidationError(OdontoError):
    """Malformed or out-of-range input.  The caller must fix the request."""

    status_code = 400
    code = "INVALID_REQUEST"
    public_message = "Dados inválidos"


class AuthorizationError(OdontoError):
    """Missing identity (401) or a resource owned by someone else (403)."""

    status_code = 401
    code = "UNAUTHORIZED"
    public_message = "Não autorizado"

    def __init__(self, message: str | None = None, *, status_code: int = 401):
        super().__init__(message, status_code=status_code)
        self.code = "UNAUTHORIZED" if status_code == 401 else "ACCESS_DENIED"


class RateLimitError(OdontoError):
    status_code = 429
    code = "RATE_LIMITED"
    public_message = "Limite de requisições excedido. Tente novamente em alguns instantes."

    def __init__(self, result: RateLimitResult, message: str | None = None):
        self.result = result
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.result.retry_after
        return body


class InsufficientCreditsError(OdontoError):
    status_code = 402
    code = "INSUFFICIENT_CREDITS"
    public_message = "Créditos insuficientes"

    def __init__(self, credits_available: int, credits_required: int, *, is_free_user: bool = True):
        self.credits_available = credits_available
        self.credits_required = credits_required
        self.is_free_user = is_free_user
        super().__init__()

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body.update(
            credits_available=self.credits_available,
            credits_required=self.credits_required,
            is_free_user=self.is_free_user,
            upgrade_url="/pricing",
        )
        return body


class AIProviderError(OdontoError):
    """The AI call failed.

    ``transient`` separates timeouts / provider 429 / 5xx from structural
    failures (missing tool call, schema mismatch, empty protocol).  Callers
    see the same response for both; only the server-side log differs.
    """

    status_code = 502
    code = "AI_ERROR"
    public_message = "Erro ao gerar recomendação. Tente novamente."

    def __init__(self, detail: str, *, transient: bool):
        self.detail = detail
        self.transient = transient
        super().__init__()


class PersistenceError(OdontoError):
    """The AI call succeeded but the result could not be saved."""

    status_code = 500
    code = "SAVE_FAILED"
    public_message = "Recomendação gerada, mas não foi possível salvar. Tente novamente."


class DispatchError(OdontoError):
    """A dispatch request is missing the parameters its treatment needs."""

    status_code = 400
    code = "MISSING_PARAMS"
    public_message = "Parâmetros ausentes para o tratamento"


class NotFoundError(OdontoError):
    status_code = 404
    code = "NOT_FOUND"
    public_message = "Registro não encontrado"


class ServiceUnavailableError(OdontoError):
    """A dependency the request cannot proceed without is down."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    public_message = "Serviço temporariamente indisponível. Tente novamente."
