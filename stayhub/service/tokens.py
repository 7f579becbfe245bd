from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from stayhub.config import Settings
from stayhub.logging import get_logger

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    VERIFICATION = "verification"
    RESET = "reset"


class TokenError(Exception):
    """Base class for token decoding failures."""


class MalformedToken(TokenError):
    """Token is not a three-segment HS256 structure with JSON claims."""


class InvalidSignature(TokenError):
    """Signature, token type, issuer or audience does not match."""


class TokenExpired(TokenError):
    """Signature is valid but ``exp`` has passed (beyond the leeway)."""


@dataclass
class TokenClaims:
    identity: str
    role: Optional[str]
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class TokenCodec:
    """Signs and verifies session tokens.

    Access, verification and reset tokens are signed with ``jwt_secret``;
    refresh tokens use ``jwt_refresh_secret`` so a leak of one key cannot
    mint the other kind. The codec holds no state besides settings.
    """

    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.settings = settings
        self._clock = clock

    def _now(self) -> float:
        return self._clock()

    def _secret_for(self, kind: TokenKind) -> bytes:
        secret = (
            self.settings.jwt_refresh_secret
            if kind == TokenKind.REFRESH
            else self.settings.jwt_secret
        )
        return secret.encode()

    def _ttl_seconds(self, kind: TokenKind) -> int:
        minutes = {
            TokenKind.ACCESS: self.settings.access_token_ttl_minutes,
            TokenKind.REFRESH: self.settings.refresh_token_ttl_minutes,
            TokenKind.VERIFICATION: self.settings.verification_token_ttl_minutes,
            TokenKind.RESET: self.settings.reset_token_ttl_minutes,
        }[kind]
        return minutes * 60

    def ttl_seconds(self, kind: TokenKind) -> int:
        return self._ttl_seconds(kind)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(
            self._secret_for(kind), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _issue(
        self, kind: TokenKind, identity: str, *, role: Optional[str] = None
    ) -> str:
        # Millisecond NumericDate so tokens minted within one second still order
        now = round(self._now(), 3)
        payload: dict[str, Any] = {
            "sub": identity,
            "token_type": kind.value,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": round(now + self._ttl_seconds(kind), 3),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        if role is not None:
            payload["role"] = role
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def issue_access_token(self, identity: str, role: str) -> str:
        return self._issue(TokenKind.ACCESS, identity, role=role)

    def issue_refresh_token(self, identity: str) -> str:
        return self._issue(TokenKind.REFRESH, identity)

    def issue_verification_token(self, identity: str) -> str:
        return self._issue(TokenKind.VERIFICATION, identity)

    def issue_reset_token(self, identity: str) -> str:
        return self._issue(TokenKind.RESET, identity)

    def _split(self, token: str) -> tuple[str, str, str, dict[str, Any]]:
        if not isinstance(token, str):
            raise MalformedToken("token must be a string")
        if not token.isascii():
            raise MalformedToken("token must be ASCII")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise MalformedToken("token must have three segments") from None
        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            raise MalformedToken("token segments are not valid JSON") from exc
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise MalformedToken("token segments are not JSON objects")
        # Reject "none" and asymmetric algorithms outright
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidSignature("unsupported algorithm")
        return header_b64, payload_b64, sig_b64, payload

    def _claims(self, payload: dict[str, Any]) -> TokenClaims:
        try:
            return TokenClaims(
                identity=str(payload["sub"]),
                role=payload.get("role"),
                token_type=str(payload["token_type"]),
                jti=str(payload.get("jti", "")),
                issued_at=_from_timestamp(payload.get("iat", 0)),
                expires_at=_from_timestamp(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError, OverflowError, OSError) as exc:
            raise MalformedToken("token claims are incomplete") from exc

    def verify(self, token: str, kind: TokenKind) -> TokenClaims:
        """Check signature, type, issuer, audience and expiry.

        Raises ``MalformedToken``, ``InvalidSignature`` or ``TokenExpired``.
        The signature is checked before any claim is trusted.
        """
        header_b64, payload_b64, sig_b64, payload = self._split(token)
        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidSignature("signature mismatch")
        if payload.get("token_type") != kind.value:
            raise InvalidSignature("unexpected token type")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidSignature("unexpected issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidSignature("unexpected audience")
        claims = self._claims(payload)
        if kind == TokenKind.ACCESS and not claims.role:
            raise MalformedToken("access token carries no role")
        if claims.expires_at.timestamp() <= self._now() - self.settings.jwt_leeway_seconds:
            raise TokenExpired("token expired")
        return claims

    def decode_unverified(self, token: str) -> TokenClaims:
        """Read claims without checking the signature or expiry."""
        _, _, _, payload = self._split(token)
        return self._claims(payload)
