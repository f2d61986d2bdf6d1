"""Error taxonomy for guided look actions.

Provider and transport failures are reduced to one canonical code before
they reach the session; the raw text is only ever logged.  Status codes
are checked first, then an ordered keyword table.
"""

from __future__ import annotations

import asyncio

import httpx


RATE_LIMITED = "RATE_LIMITED"
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
NOT_CONFIGURED = "NOT_CONFIGURED"
NETWORK_ERROR = "NETWORK_ERROR"
INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
TIMEOUT = "TIMEOUT"
VALIDATION_MISSING_FIELD = "VALIDATION_MISSING_FIELD"
UNKNOWN = "UNKNOWN"

ERROR_CODES: tuple[str, ...] = (
    RATE_LIMITED,
    SERVICE_UNAVAILABLE,
    NOT_CONFIGURED,
    NETWORK_ERROR,
    INSUFFICIENT_CREDITS,
    TIMEOUT,
    VALIDATION_MISSING_FIELD,
    UNKNOWN,
)

ERROR_MESSAGES = {
    RATE_LIMITED: "Hay mucha demanda en este momento. Esperá un momento e intentá nuevamente.",
    SERVICE_UNAVAILABLE: "El servicio de IA está temporalmente sobrecargado. Intentá nuevamente en unos segundos.",
    NOT_CONFIGURED: "La generación con IA no está disponible en este momento.",
    NETWORK_ERROR: "No pudimos conectarnos. Revisá tu conexión e intentá de nuevo.",
    INSUFFICIENT_CREDITS: "No tenés créditos suficientes para esta acción. Hacé upgrade o sumá créditos para continuar.",
    TIMEOUT: "La generación tardó más de lo esperado. Podés volver a confirmarla cuando quieras.",
    VALIDATION_MISSING_FIELD: "Me falta un dato para continuar.",
    UNKNOWN: "No pudimos completar la acción. Intentá nuevamente.",
}

UPGRADE_PROMPT_CODES = frozenset({INSUFFICIENT_CREDITS})

STATUS_RULES: tuple[tuple[tuple[int, ...], str], ...] = (
    ((402,), INSUFFICIENT_CREDITS),
    ((429,), RATE_LIMITED),
    ((408, 504), TIMEOUT),
    ((502, 503), SERVICE_UNAVAILABLE),
    ((501,), NOT_CONFIGURED),
)

KEYWORD_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("crédito", "credito", "insufficient", "402", "upgrade"), INSUFFICIENT_CREDITS),
    (("timed out", "timeout", "deadline"), TIMEOUT),
    (("429", "rate limit", "resource_exhausted", "demasiadas solicitudes", "rate_limited", "blocked"), RATE_LIMITED),
    (("503", "502", "overloaded", "unavailable", "sobrecargado"), SERVICE_UNAVAILABLE),
    (("not configured", "not_configured", "api key", "missing config", "no configurado"), NOT_CONFIGURED),
    (("network", "connection", "fetch failed", "econnreset", "dns", "unreachable"), NETWORK_ERROR),
)


class ProviderError(Exception):
    """A generation or try-on backend reported a failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class WorkflowError(Exception):
    """A workflow step failed with a canonical error code."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        super().__init__(detail or code)
        self.code = code if code in ERROR_CODES else UNKNOWN
        self.detail = detail

    @property
    def user_message(self) -> str:
        return user_message_for(self.code)

    @property
    def triggers_upgrade(self) -> bool:
        return self.code in UPGRADE_PROMPT_CODES


def map_provider_error(message: str | None, status_code: int | None = None) -> str:
    if status_code is not None:
        for codes, error_code in STATUS_RULES:
            if status_code in codes:
                return error_code
    normalized = (message or "").lower()
    if not normalized:
        return UNKNOWN
    for keywords, error_code in KEYWORD_RULES:
        if any(keyword in normalized for keyword in keywords):
            return error_code
    return UNKNOWN


def map_exception(exc: BaseException) -> str:
    if isinstance(exc, WorkflowError):
        return exc.code
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        return map_provider_error(exc.response.text, exc.response.status_code)
    if isinstance(exc, httpx.TransportError):
        return NETWORK_ERROR
    if isinstance(exc, ProviderError):
        return map_provider_error(exc.message, exc.status_code)
    return map_provider_error(str(exc))


def user_message_for(code: str | None) -> str:
    return ERROR_MESSAGES.get(code or UNKNOWN, ERROR_MESSAGES[UNKNOWN])
