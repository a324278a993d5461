"""Unit tests for the access token codec."""

import base64
import json

import pytest

from shopauth.service.errors import InvalidTokenError
from shopauth.service.tokens import TokenCodec
from shopauth.storage.models import User

SECRET = "unit-test-signing-secret-" + "x" * 64


@pytest.fixture
def user():
    return User.new("alice@example.com", "alice", role="USER")


@pytest.fixture
def codec(clock):
    return TokenCodec(
        SECRET, issuer="shopauth", audience="shop-clients", ttl_seconds=3600, clock=clock
    )


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestMintAndVerify:
    def test_verify_returns_minted_claims(self, codec, user, clock):
        issued = codec.mint(user)
        claims = codec.verify(issued.token)

        assert claims.user_id == user.id
        assert claims.email == "alice@example.com"
        assert claims.username == "alice"
        assert claims.role == "USER"
        assert claims.issued_at == issued.issued_at
        assert claims.expires_at == issued.issued_at + 3600

    def test_issued_at_is_floored_to_milliseconds(self, codec, user, clock):
        clock.now = 1_700_000_000.123789
        issued = codec.mint(user)
        assert issued.issued_at == pytest.approx(1_700_000_000.123)
        assert issued.issued_at <= clock.now

    def test_tokens_minted_later_are_distinct(self, codec, user, clock):
        first = codec.mint(user)
        clock.advance(0.001)
        second = codec.mint(user)
        assert first.token != second.token
        assert second.issued_at > first.issued_at


class TestValidityWindow:
    def test_token_valid_just_before_expiry(self, codec, user, clock):
        issued = codec.mint(user)
        clock.now = issued.expires_at - 0.001
        assert codec.verify(issued.token).user_id == user.id

    def test_token_rejected_at_expiry(self, codec, user, clock):
        issued = codec.mint(user)
        clock.now = issued.expires_at
        with pytest.raises(InvalidTokenError, match="expired"):
            codec.verify(issued.token)

    def test_token_from_the_future_is_rejected(self, codec, user, clock):
        issued = codec.mint(user)
        clock.now = issued.issued_at - 1
        with pytest.raises(InvalidTokenError, match="not yet valid"):
            codec.verify(issued.token)

    def test_remaining_ttl_rounds_up(self, codec, user, clock):
        issued = codec.mint(user)
        clock.advance(10.5)
        assert codec.remaining_ttl(issued.token) == 3590

    def test_remaining_ttl_is_zero_for_expired_or_garbage(self, codec, user, clock):
        issued = codec.mint(user)
        clock.advance(7200)
        assert codec.remaining_ttl(issued.token) == 0
        assert codec.remaining_ttl("not-a-token") == 0


class TestTampering:
    def test_signature_from_other_secret_is_rejected(self, codec, user, clock):
        other = TokenCodec(
            "another-secret-" + "y" * 64,
            issuer="shopauth",
            audience="shop-clients",
            clock=clock,
        )
        with pytest.raises(InvalidTokenError, match="signature"):
            codec.verify(other.mint(user).token)

    def test_modified_payload_is_rejected(self, codec, user):
        header, _, signature = codec.mint(user).token.split(".")
        forged = _b64({"iss": "shopauth", "aud": "shop-clients", "sub": "someone-else"})
        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{forged}.{signature}")

    def test_none_algorithm_is_rejected(self, codec, user):
        _, payload, _ = codec.mint(user).token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(InvalidTokenError, match="algorithm"):
            codec.verify(f"{header}.{payload}.")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens_are_rejected(self, codec, token):
        with pytest.raises(InvalidTokenError):
            codec.verify(token)

    def test_wrong_audience_is_rejected(self, user, clock):
        minting = TokenCodec(SECRET, issuer="shopauth", audience="admin-console", clock=clock)
        verifying = TokenCodec(SECRET, issuer="shopauth", audience="shop-clients", clock=clock)
        with pytest.raises(InvalidTokenError, match="audience"):
            verifying.verify(minting.mint(user).token)

    def test_wrong_issuer_is_rejected(self, user, clock):
        minting = TokenCodec(SECRET, issuer="elsewhere", audience="shop-clients", clock=clock)
        verifying = TokenCodec(SECRET, issuer="shopauth", audience="shop-clients", clock=clock)
        with pytest.raises(InvalidTokenError, match="issuer"):
            verifying.verify(minting.mint(user).token)


def test_empty_secret_is_refused():
    with pytest.raises(ValueError):
        TokenCodec("", issuer="shopauth", audience="shop-clients")
