"""
Rate limiting for the trigger gateway.

The webhook endpoint is public by nature; limiting it keeps a flood of
notifications (signed or not) from burning CPU on HMAC checks and log writes.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from push_deployer.config.settings import GatewayConfig

logger = logging.getLogger(__name__)


def create_limiter(config: GatewayConfig) -> Limiter:
    """
    Create a limiter keyed on the client IP address.

    Args:
        config: Gateway configuration

    Returns:
        Limiter instance; a disabled one passes every request through
    """
    return Limiter(
        key_func=get_remote_address,
        storage_uri="memory://",
        enabled=config.rate_limit_enabled,
    )


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """
    Custom handler for rate limit exceeded errors.

    Args:
        request: The request that exceeded the rate limit
        exc: The RateLimitExceeded exception

    Returns:
        JSON response with 429 status code
    """
    response = JSONResponse(
        status_code=429,
        content={
            "detail": f"Rate limit exceeded: {exc.detail}",
            "error": "rate_limit_exceeded",
        },
    )

    client_ip = get_remote_address(request)
    logger.warning(f"Rate limit exceeded for {client_ip} on {request.url.path}: {exc.detail}")
    return response
