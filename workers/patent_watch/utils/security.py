"""Bearer-token verification for requests that act on behalf of a user."""

from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional

import jwt
import structlog

from .errors import AuthenticationError

logger = structlog.get_logger(__name__)


class JWTManager:
    """JWT token management for Supabase-issued access tokens."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", audience: Optional[str] = "authenticated"):
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.audience = audience

    def create_token(self, user_id: str, expires_in: int = 3600, **claims) -> str:
        """Create a JWT token."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "exp": now + timedelta(seconds=expires_in),
            "iat": now,
            **claims,
        }
        if self.audience:
            payload["aud"] = self.audience
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> Optional[Dict[str, Any]]:
        """Verify and decode JWT token."""
        try:
            return jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("JWT token expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning("Invalid JWT token", error=str(e))
            return None


def require_user_id(token: Optional[str], jwt_manager: JWTManager) -> str:
    """Return the verified user id or raise ``AuthenticationError``."""
    if not token:
        raise AuthenticationError("Missing bearer token")
    payload = jwt_manager.verify_token(token)
    if payload is None:
        raise AuthenticationError("Invalid or expired token")
    user_id = payload.get("sub") or payload.get("user_id")
    if not user_id:
        raise AuthenticationError("Token has no subject")
    return str(user_id)
