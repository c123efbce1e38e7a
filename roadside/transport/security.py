# roadside/transport/security.py
"""
Security helpers for the dispatch API.

- Admin endpoints: Bearer token, constant-time comparison
- Link endpoints: the capability token in the path *is* the credential,
  so they are rate limited per client IP instead
- OWASP response headers
"""
import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from roadside.config import Settings
from roadside.infra.logging_config import get_logger

logger = get_logger(__name__)

# Security scheme for OpenAPI docs - shows "Authorize" button
bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Enter your admin token (without 'Bearer ' prefix)",
    auto_error=False,
)


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def verify_bearer_token(
    credentials: HTTPAuthorizationCredentials | None,
    expected: str,
) -> tuple[bool, str | None]:
    """Returns (is_valid, error_message)."""
    if credentials is None:
        return False, "Missing Authorization header"
    if credentials.scheme.lower() != "bearer":
        return False, "Invalid authentication scheme"
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        return False, "Invalid token"
    return True, None


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> None:
    """
    Admin Bearer authentication.

    Usage:
        @app.post("/jobs", dependencies=[Depends(require_admin_auth)])
        async def create_job(...):
            ...
    """
    admin_token = _settings(request).admin_token
    if not admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable",
        )

    valid, error = verify_bearer_token(credentials, admin_token)
    if not valid:
        logger.warning(f"Admin auth failed: {error}", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )


class SecurityHeaders:
    """OWASP recommended headers for a JSON API."""

    @staticmethod
    def add_security_headers(response, *, hsts: bool = False):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if "Cache-Control" not in response.headers:
            # link-token responses must never be cached by intermediaries
            response.headers["Cache-Control"] = "no-store"
        if hsts:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """Detailed messages in dev, generic ones in production."""
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }
    return generic_messages.get(type(error).__name__, "An error occurred")
