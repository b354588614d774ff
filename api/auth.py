"""
Authentication for the FastAPI API.

Bearer tokens are mapped to verified user ids. The user id returned here is
the only owner identity the inventory core ever sees.
"""

import hmac
from typing import Dict

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = structlog.get_logger(__name__)

# Security scheme
security = HTTPBearer()


def _token_table() -> Dict[str, str]:
    from api.config import config
    return config.token_table()


def lookup_user_id(token: str, table: Dict[str, str]) -> str:
    """
    Resolve a bearer token to its user id.

    Raises:
        HTTPException: token is unknown
    """
    for known_token, user_id in table.items():
        if hmac.compare_digest(known_token, token):
            return user_id

    logger.warning("Invalid bearer token attempted", token=token[:6] + "...")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired token",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> str:
    """
    Verify the bearer token and return the caller's user id.

    Args:
        credentials: HTTP authorization credentials

    Returns:
        Verified user id

    Raises:
        HTTPException: If the token is invalid
    """
    return lookup_user_id(credentials.credentials, _token_table())
