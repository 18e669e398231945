from __future__ import annotations
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from newsfeed.core.errors import Forbidden, Unauthenticated
from newsfeed.domain.models import UserId
from newsfeed.ports.storage import UserDirectoryPort

log = logging.getLogger("newsfeed.services.auth_service")


def issue_token(user_id: UserId, secret: str, algorithm: str = "HS256",
                expires_minutes: int = 60 * 24, now: Optional[datetime] = None) -> str:
    """Token in the shape the issuance side produces: `sub` = user UUID, `exp` required."""
    now = now or datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm=algorithm)


class CredentialVerifier:
    """
    token -> user id. Signature/expiry checks are local CPU work; the only I/O is the
    directory lookup that tells us whether the identity is disabled. No side effects.
    """
    def __init__(self, directory: UserDirectoryPort, secret: str, algorithm: str = "HS256"):
        self.directory = directory
        self.secret = secret
        self.algorithm = algorithm

    def decode(self, token: str) -> UserId:
        if not token or token.count(".") != 2:
            raise Unauthenticated("malformed token", stage="auth")
        try:
            payload = jwt.decode(
                token, self.secret, algorithms=[self.algorithm],
                options={"require_exp": True, "require_sub": True},
            )
        except JWTError as e:
            raise Unauthenticated(f"invalid token ({e})", stage="auth") from e
        try:
            return uuid.UUID(str(payload["sub"]))
        except (KeyError, ValueError) as e:
            raise Unauthenticated("invalid token subject", stage="auth") from e

    async def verify(self, token: str) -> UserId:
        uid = self.decode(token)
        user = await self.directory.get_user(uid)
        if user is None:
            raise Unauthenticated("unknown user", stage="auth")
        if not user.is_active:
            log.info("disabled user %s rejected", uid)
            raise Forbidden("user is disabled", stage="auth")
        return uid
