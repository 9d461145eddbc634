from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for identity-service failures.

    Each class carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so an outer transport can map failures without
    inspecting messages. Security-sensitive failures keep their message
    vague; ``detail`` only holds data a caller may safely show.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account, wrong password or inactive account; never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    status_code = 423
    error_code = "account_locked"

    def __init__(self, retry_after: int, message: str = "account temporarily locked") -> None:
        self.retry_after = max(0, int(retry_after))
        super().__init__(message, detail={"retry_after": self.retry_after})


class DeviceBlockedError(ForbiddenError):
    error_code = "device_blocked"

    def __init__(self, message: str = "login from this device is blocked") -> None:
        super().__init__(message)


class MfaRequiredError(AuthenticationError):
    """Password accepted; a second factor must be presented."""
    error_code = "mfa_required"

    def __init__(self, mfa_type: str, message: str = "multi-factor code required") -> None:
        self.mfa_type = mfa_type
        super().__init__(message, detail={"mfa_type": mfa_type})


class InvalidMfaCodeError(AuthenticationError):
    error_code = "invalid_mfa_code"

    def __init__(self, message: str = "invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token") -> None:
        super().__init__(message)


class DuplicateEmailError(ConflictError):
    error_code = "duplicate_email"

    def __init__(self, message: str = "an account with this email already exists") -> None:
        super().__init__(message, detail={"field": "email"})


class WeakPasswordError(ValidationError):
    """Password policy rejection naming the rule that failed."""
    error_code = "weak_password"

    def __init__(self, rule: str, message: str) -> None:
        self.rule = rule
        super().__init__(message, detail={"rule": rule})


class UnsupportedOAuthProviderError(ValidationError):
    error_code = "unsupported_provider"

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(
            f"unsupported oauth provider: {provider}", detail={"provider": provider}
        )


class OAuthExchangeFailedError(AuthenticationError):
    error_code = "oauth_exchange_failed"

    def __init__(self, provider: str, message: str = "oauth sign-in failed") -> None:
        self.provider = provider
        super().__init__(message, detail={"provider": provider})


class TrustedDeviceLimitError(ConflictError):
    error_code = "trusted_device_limit"

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(
            f"at most {limit} devices may be trusted", detail={"limit": limit}
        )


class LastAuthMethodError(ConflictError):
    error_code = "last_auth_method"

    def __init__(self, message: str = "cannot remove the only sign-in method") -> None:
        super().__init__(message)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "DeviceBlockedError",
    "MfaRequiredError",
    "InvalidMfaCodeError",
    "InvalidOrExpiredTokenError",
    "DuplicateEmailError",
    "WeakPasswordError",
    "UnsupportedOAuthProviderError",
    "OAuthExchangeFailedError",
    "TrustedDeviceLimitError",
    "LastAuthMethodError",
]
