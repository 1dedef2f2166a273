"""Bearer token verification.

Tokens are issued by the identity service; this module only verifies them and
extracts the user id from the ``sub`` claim. ``create_access_token`` exists for
local development and tests.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError, ExpiredSignatureError
from config import settings_conf

# Configure logging
logger = logging.getLogger(__name__)

DEFAULT_TOKEN_EXPIRY = timedelta(hours=12)

class AuthError(Exception):
    """Base exception for authentication errors."""
    pass

class TokenExpiredError(AuthError):
    """Raised when a token has expired."""
    pass

class TokenVerifier:
    """Verifies HS-signed JWTs against the configured secret."""

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        self.secret = secret or settings_conf['jwt_secret']
        self.algorithm = algorithm or settings_conf['jwt_algorithm']

    def create_access_token(
        self,
        user_id: str,
        expires_in: timedelta = DEFAULT_TOKEN_EXPIRY,
        claims: Optional[Dict[str, Any]] = None
    ) -> str:
        now = datetime.now(timezone.utc)
        payload = dict(claims or {})
        payload.update({
            'sub': user_id,
            'iat': int(now.timestamp()),
            'exp': int((now + expires_in).timestamp())
        })
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify_token(self, token: str) -> str:
        """Verify a token and return its user id.

        Raises:
            TokenExpiredError: If the token has expired
            AuthError: If the token is invalid or has no subject
        """
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise TokenExpiredError("Token has expired")
        except JWTError as e:
            logger.debug(f"Rejected token: {e}")
            raise AuthError("Invalid token")

        user_id = payload.get('sub')
        if not user_id:
            raise AuthError("Token has no subject")
        return str(user_id)

# Create global instance
verifier = TokenVerifier()

def create_access_token(user_id: str, expires_in: timedelta = DEFAULT_TOKEN_EXPIRY) -> str:
    return verifier.create_access_token(user_id, expires_in)

# FastAPI security scheme
auth_scheme = HTTPBearer(
    auto_error=True,  # Return 401 automatically if token is missing
    description="JWT Bearer token required"
)

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)
) -> str:
    """FastAPI dependency for getting the authenticated user id.

    Raises:
        HTTPException: If authentication fails
    """
    try:
        return verifier.verify_token(credentials.credentials)
    except TokenExpiredError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired"
        )
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e)
        )

# Export public interface
__all__ = [
    'verifier',
    'TokenVerifier',
    'create_access_token',
    'get_current_user',
    'AuthError',
    'TokenExpiredError'
]
