"""Exception hierarchy shared by tools, providers and the agent runtime."""

from __future__ import annotations


class ToolError(Exception):
    """Base class for tool registry failures."""


class ToolNotFound(ToolError):
    def __init__(self, name: str) -> None:
        super().__init__(f'Error: herramienta "{name}" no encontrada.')
        self.name = name


class ToolDisabled(ToolError):
    def __init__(self, name: str) -> None:
        super().__init__(f'Error: herramienta "{name}" está deshabilitada.')
        self.name = name


class ProviderError(Exception):
    """Model provider failure, optionally carrying the HTTP status code."""

    classification = "provider error"
    fallback_eligible = False

    def __init__(self, detail: str, status_code: int | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return f"{self.classification}: {self.detail}"
        return f"{self.classification} (HTTP {self.status_code}): {self.detail}"


class RateLimited(ProviderError):
    classification = "rate limit"
    fallback_eligible = True


class AuthError(ProviderError):
    classification = "auth error"
    fallback_eligible = True


class PaymentRequired(ProviderError):
    classification = "payment required"
    fallback_eligible = True


class PolicyOrNotFound(ProviderError):
    classification = "model not found or blocked by policy"
    fallback_eligible = True


class ServiceUnavailable(ProviderError):
    classification = "service unavailable"
    fallback_eligible = True


class ProviderConnectionError(ProviderError):
    classification = "connection error"
    fallback_eligible = True


class NoCredentials(Exception):
    """No runtime or static configuration matches the requested model."""

    fallback_eligible = True

    def __init__(self, model_key: str) -> None:
        super().__init__(f'No credentials configured for model "{model_key}"')
        self.model_key = model_key


class AllModelsExhausted(Exception):
    """Every candidate model failed to produce a usable answer."""

    def __init__(self, attempts: list[tuple[str, str]]) -> None:
        self.attempts = attempts
        summary = "; ".join(f"{model}: {reason}" for model, reason in attempts) or "no models configured"
        super().__init__(f"All models exhausted ({summary})")


_STATUS_ERRORS: dict[int, type[ProviderError]] = {
    401: AuthError,
    402: PaymentRequired,
    404: PolicyOrNotFound,
    429: RateLimited,
    503: ServiceUnavailable,
}


def provider_error_for_status(status_code: int, detail: str) -> ProviderError:
    """Map an HTTP status returned by a provider to the matching error type."""

    error_cls = _STATUS_ERRORS.get(status_code, ProviderError)
    return error_cls(detail[:500], status_code=status_code)
