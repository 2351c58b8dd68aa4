"""Identity resolution for live connections and API calls."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from . import db
from .config import AuthConfig
from .db import AsyncDatabase
from .errors import AuthError, PersistenceFailure
from .models import UserIdentity

logger = logging.getLogger(__name__)

JWT_EXPIRATION_HOURS = 24


def generate_token(
    user_id: str, email: str, config: AuthConfig, expires_hours: int = JWT_EXPIRATION_HOURS
) -> str:
    """Generate a signed bearer token for a user."""
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "email": email,
        "exp": now + timedelta(hours=expires_hours),
        "iat": now,
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def verify_token(token: str, config: AuthConfig) -> Dict[str, Any]:
    """
    Verify and decode a bearer token.

    Raises:
        AuthError: If the token is expired, badly signed or missing user_id.
    """
    try:
        payload = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")
    if not payload.get("user_id"):
        raise AuthError("Invalid token")
    return payload


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an `Authorization: Bearer <token>` header value."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None


class IdentityResolver:
    """Turns an opaque bearer credential into a UserIdentity."""

    def __init__(self, config: AuthConfig, database: AsyncDatabase):
        self.config = config
        self.database = database
        if config.dev_mode:
            logger.warning(
                f"Development credential enabled; '{config.dev_token}' resolves to {config.dev_user_email}"
            )

    async def resolve(self, credential: Optional[str]) -> UserIdentity:
        """
        Resolve a credential to the user it belongs to.

        Args:
            credential: Bearer token from the handshake or Authorization header.

        Returns:
            The user's identity, with profile fields from the users table.

        Raises:
            AuthError: If the credential is missing, invalid, or its user is unknown.
        """
        if not credential:
            raise AuthError("Authentication error: No token provided")

        if credential == self.config.dev_token:
            if not self.config.dev_mode:
                raise AuthError("Authentication error: Invalid token")
            return await self._lookup(db.get_user_by_email, self.config.dev_user_email)

        payload = verify_token(credential, self.config)
        return await self._lookup(db.get_user, payload["user_id"])

    async def _lookup(self, fn, key: str) -> UserIdentity:
        try:
            user = await self.database.run(fn, key)
        except PersistenceFailure as e:
            raise AuthError("Authentication error") from e
        if user is None:
            raise AuthError("Authentication error: User not found")
        return user
