"""Service API key authentication and rate limiting."""

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from slowapi import Limiter
from slowapi.util import get_remote_address

from esim_reseller.config import settings

api_key_header = APIKeyHeader(
    name=settings.api_key_header,
    auto_error=False,
)


async def verify_api_key(
    request: Request,  # noqa: ARG001
    api_key: str | None = Security(api_key_header),
) -> str | None:
    """Verify the service API key sent by the web frontend.

    Returns the API key if valid, None if authentication is disabled.
    """
    if not settings.require_api_key:
        return None

    if not settings.get_api_keys():
        raise HTTPException(
            status_code=500,
            detail="API authentication is enabled but no API keys are configured",
        )

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail=f"Missing API key. Include it in the {settings.api_key_header} header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not settings.is_valid_api_key(api_key):
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return api_key


def get_client_identifier(request: Request) -> str:
    """Rate limit per valid API key, else per client IP.

    The agent header is caller supplied and is never used as the key.
    """
    api_key = request.headers.get(settings.api_key_header)
    if api_key and settings.is_valid_api_key(api_key):
        return f"key:{api_key[:8]}..."
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_identifier,
    default_limits=[f"{settings.rate_limit_requests}/{settings.rate_limit_window}"],
)
