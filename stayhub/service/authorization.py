from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import AbstractSet, Optional, Union

from stayhub.logging import get_logger
from stayhub.service.auth import SessionManager
from stayhub.service.errors import (
    ForbiddenError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
    UnauthorizedError,
)
from stayhub.service.tokens import TokenCodec, TokenError, TokenExpired, TokenKind
from stayhub.storage.models import Role

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    account_id: str
    role: str
    token: str
    expires_at: datetime


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AuthorizationGate:
    """Resolves the caller behind an access token and checks its role."""

    def __init__(self, codec: TokenCodec, sessions: SessionManager) -> None:
        self.codec = codec
        self.sessions = sessions

    async def authenticate(self, token: Optional[str]) -> CallerIdentity:
        """Resolve ``token`` to a caller.

        Checks run cheapest first: presence, then signature and expiry, and
        only then the revocation lookup, so malformed tokens never reach the
        revocation store.
        """
        if not token:
            raise UnauthorizedError("No token provided")
        try:
            claims = self.codec.verify(token, TokenKind.ACCESS)
        except TokenExpired:
            logger.info("auth_token_rejected", reason="expired")
            raise TokenExpiredError("Token expired") from None
        except TokenError as exc:
            logger.info("auth_token_rejected", reason="invalid", detail=type(exc).__name__)
            raise TokenInvalidError("Invalid token") from None
        if await self.sessions.is_revoked(token):
            logger.info("auth_token_rejected", reason="revoked", account_id=claims.identity)
            raise TokenRevokedError("Token has been revoked")
        return CallerIdentity(
            account_id=claims.identity,
            role=str(claims.role),
            token=token,
            expires_at=claims.expires_at,
        )

    @staticmethod
    def require_role(
        caller: Optional[CallerIdentity], allowed_roles: AbstractSet[Union[Role, str]]
    ) -> CallerIdentity:
        """Admit ``caller`` only when its role is in ``allowed_roles``.

        A missing caller is ``UnauthorizedError`` (401); a caller with the
        wrong role is ``ForbiddenError`` (403).
        """
        if caller is None or not caller.role:
            raise UnauthorizedError("Authentication required")
        allowed = {r.value if isinstance(r, Role) else r for r in allowed_roles}
        if caller.role not in allowed:
            logger.info(
                "role_check_failed", account_id=caller.account_id, role=caller.role
            )
            raise ForbiddenError("You do not have permission to perform this action")
        return caller
