"""Unit tests for the token codec.

Tests for:
- Issuing each token kind with the expected claims
- Signature, type, issuer and audience checks
- Expiry and leeway
- Unverified decoding used by revocation
"""

import base64
import json

import pytest

from stayhub.service.tokens import (
    InvalidSignature,
    MalformedToken,
    TokenCodec,
    TokenExpired,
    TokenKind,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock=clock)


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


def _reencode(token: str, payload: dict) -> str:
    header, _, sig = token.split(".")
    body = base64.urlsafe_b64encode(
        json.dumps(payload, separators=(",", ":")).encode()
    ).decode().rstrip("=")
    return f"{header}.{body}.{sig}"


class TestIssue:
    def test_access_token_carries_identity_and_role(self, codec):
        token = codec.issue_access_token("acct-1", "landlord")
        claims = codec.verify(token, TokenKind.ACCESS)

        assert claims.identity == "acct-1"
        assert claims.role == "landlord"
        assert claims.token_type == "access"

    def test_refresh_token_has_no_role(self, codec):
        token = codec.issue_refresh_token("acct-1")
        claims = codec.verify(token, TokenKind.REFRESH)

        assert claims.identity == "acct-1"
        assert claims.role is None
        assert "role" not in _payload(token)

    def test_expiry_matches_configured_ttl(self, codec, settings, clock):
        token = codec.issue_access_token("acct-1", "renter")
        payload = _payload(token)

        assert payload["iat"] == int(clock.now)
        assert payload["exp"] - payload["iat"] == settings.access_token_ttl_minutes * 60
        assert codec.ttl_seconds(TokenKind.REFRESH) == settings.refresh_token_ttl_minutes * 60

    def test_tokens_issued_in_same_second_differ(self, codec):
        first = codec.issue_refresh_token("acct-1")
        second = codec.issue_refresh_token("acct-1")

        assert first != second
        assert _payload(first)["jti"] != _payload(second)["jti"]

    def test_sub_second_issues_order_by_expiry(self, codec, clock):
        first = codec.verify(codec.issue_access_token("acct-1", "renter"), TokenKind.ACCESS)
        clock.now += 0.25
        second = codec.verify(codec.issue_access_token("acct-1", "renter"), TokenKind.ACCESS)

        assert second.expires_at > first.expires_at
        assert second.issued_at > first.issued_at


class TestVerify:
    def test_kind_mismatch_is_rejected(self, codec):
        access = codec.issue_access_token("acct-1", "renter")
        verification = codec.issue_verification_token("acct-1")

        with pytest.raises(InvalidSignature):
            codec.verify(access, TokenKind.REFRESH)
        with pytest.raises(InvalidSignature):
            codec.verify(verification, TokenKind.RESET)

    def test_refresh_secret_differs_from_access_secret(self, codec):
        refresh = codec.issue_refresh_token("acct-1")
        forged = _reencode(refresh, {**_payload(refresh), "token_type": "access", "role": "admin"})

        with pytest.raises(InvalidSignature):
            codec.verify(forged, TokenKind.ACCESS)

    def test_tampered_payload_fails_signature(self, codec):
        token = codec.issue_access_token("acct-1", "renter")
        tampered = _reencode(token, {**_payload(token), "role": "admin"})

        with pytest.raises(InvalidSignature):
            codec.verify(tampered, TokenKind.ACCESS)

    def test_none_algorithm_is_rejected(self, codec):
        token = codec.issue_access_token("acct-1", "renter")
        _, body, sig = token.split(".")
        header = base64.urlsafe_b64encode(b'{"alg":"none","typ":"JWT"}').decode().rstrip("=")

        with pytest.raises(InvalidSignature):
            codec.verify(f"{header}.{body}.{sig}", TokenKind.ACCESS)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "not.a.token", "a.b.c.d"])
    def test_malformed_tokens(self, codec, garbage):
        with pytest.raises(MalformedToken):
            codec.verify(garbage, TokenKind.ACCESS)

    @pytest.mark.parametrize("segment", ["sig", "payload", "header"])
    def test_non_ascii_segment_is_malformed(self, codec, segment):
        header, payload, sig = codec.issue_refresh_token("acct-1").split(".")
        parts = {"header": header, "payload": payload, "sig": sig}
        parts[segment] = parts[segment][:-1] + "é"
        token = ".".join((parts["header"], parts["payload"], parts["sig"]))

        with pytest.raises(MalformedToken):
            codec.verify(token, TokenKind.REFRESH)
        with pytest.raises(MalformedToken):
            codec.decode_unverified(token)

    def test_wrong_audience_is_rejected(self, settings, clock):
        other = TokenCodec(settings.model_copy(update={"jwt_audience": "elsewhere"}), clock=clock)
        token = other.issue_access_token("acct-1", "renter")

        with pytest.raises(InvalidSignature):
            TokenCodec(settings, clock=clock).verify(token, TokenKind.ACCESS)


class TestExpiry:
    def test_expired_token_raises_token_expired(self, codec, settings, clock):
        token = codec.issue_access_token("acct-1", "renter")
        clock.now += settings.access_token_ttl_minutes * 60 + settings.jwt_leeway_seconds + 1

        with pytest.raises(TokenExpired):
            codec.verify(token, TokenKind.ACCESS)

    def test_leeway_tolerates_small_skew(self, codec, settings, clock):
        token = codec.issue_access_token("acct-1", "renter")
        clock.now += settings.access_token_ttl_minutes * 60

        assert codec.verify(token, TokenKind.ACCESS).identity == "acct-1"

    def test_decode_unverified_ignores_expiry(self, codec, clock):
        token = codec.issue_reset_token("acct-9")
        clock.now += 10 * 24 * 3600

        claims = codec.decode_unverified(token)
        assert claims.identity == "acct-9"
        assert claims.token_type == "reset"
