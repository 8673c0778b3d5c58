"""Tests for the HS256 token codec and the refresh-token registry."""

import base64
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from hackemon.service.tokens import ACCESS, REFRESH, RefreshTokenRegistry, TokenCodec
from hackemon.storage.memory import MemoryStore
from hackemon.storage.models import Identity

SECRET = "unit-test-secret-that-is-long-enough-0123456789"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, issuer="hackemon-app", audience="hackemon-users", clock=clock)


@pytest.fixture
def identity():
    return Identity(id="2f1c4c8e-6b7a-4c8e-9d7e-0a1b2c3d4e5f", email="alice@example.com", username="alice")


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestTokenCodec:
    def test_access_token_carries_profile_claims(self, codec, identity):
        claims = codec.verify(codec.sign_access(identity), token_type=ACCESS)

        assert claims["sub"] == identity.id
        assert claims["username"] == "alice"
        assert claims["email"] == "alice@example.com"
        assert claims["role"] == "user"
        assert claims["level"] == 1
        assert claims["iss"] == "hackemon-app"
        assert claims["aud"] == "hackemon-users"
        assert claims["exp"] - claims["iat"] == 3600

    def test_refresh_token_is_minimal(self, codec, identity):
        claims = codec.verify(codec.sign_refresh(identity), token_type=REFRESH)

        assert claims["sub"] == identity.id
        assert "email" not in claims
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    def test_tokens_minted_together_differ(self, codec, identity):
        assert codec.sign_refresh(identity) != codec.sign_refresh(identity)

    def test_token_type_is_enforced(self, codec, identity):
        assert codec.verify(codec.sign_access(identity), token_type=REFRESH) is None
        assert codec.verify(codec.sign_refresh(identity), token_type=ACCESS) is None

    def test_tampered_payload_is_rejected(self, codec, identity):
        header, payload, signature = codec.sign_access(identity).split(".")
        claims = codec.decode_unsafe(codec.sign_access(identity))
        claims["role"] = "admin"

        assert codec.verify(f"{header}.{_b64(claims)}.{signature}") is None

    def test_expiry_honours_leeway(self, codec, clock, identity):
        token = codec.sign_access(identity)

        clock.advance(minutes=60, seconds=10)
        assert codec.verify(token) is not None

        clock.advance(seconds=30)
        assert codec.verify(token) is None

    def test_wrong_issuer_or_audience_is_rejected(self, clock, identity):
        other_iss = TokenCodec(SECRET, issuer="someone-else", audience="hackemon-users", clock=clock)
        other_aud = TokenCodec(SECRET, issuer="hackemon-app", audience="other-users", clock=clock)
        codec = TokenCodec(SECRET, issuer="hackemon-app", audience="hackemon-users", clock=clock)

        assert codec.verify(other_iss.sign_access(identity)) is None
        assert codec.verify(other_aud.sign_access(identity)) is None

    def test_rotating_secret_invalidates_tokens(self, codec, clock, identity):
        rotated = TokenCodec(SECRET + "-v2", issuer="hackemon-app", audience="hackemon-users", clock=clock)

        assert rotated.verify(codec.sign_access(identity)) is None

    def test_alg_none_is_rejected(self, codec, identity):
        claims = codec.decode_unsafe(codec.sign_access(identity))
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(claims)}."

        assert codec.verify(forged) is None

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b", "a.b.c.d", "###.###.###", "é.é.é"])
    def test_garbage_never_raises(self, codec, token):
        assert codec.verify(token) is None

    def test_decode_unsafe_ignores_signature(self, codec, identity):
        header, payload, _ = codec.sign_access(identity).split(".")

        claims = codec.decode_unsafe(f"{header}.{payload}.invalid")
        assert claims["username"] == "alice"
        assert codec.decode_unsafe("not-a-token") is None

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            TokenCodec("", issuer="i", audience="a")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registered(store):
    return store.create_identity("alice", "alice@example.com", "hash", "argon2id")


@pytest.fixture
def registry(store, codec):
    return RefreshTokenRegistry(store, codec)


class TestRefreshTokenRegistry:
    def test_add_then_valid(self, registry, codec, registered):
        token = codec.sign_refresh(registered)
        registry.add(registered.id, token)

        assert registry.is_valid(registered.id, token)

    def test_tokens_are_stored_as_digests(self, registry, codec, store, registered):
        token = codec.sign_refresh(registered)
        registry.add(registered.id, token)

        stored = store.refresh_tokens[registered.id]
        assert token not in stored
        assert all(len(digest) == 64 for digest in stored)

    def test_not_valid_for_another_identity(self, registry, codec, store, registered):
        other = store.create_identity("bob", "bob@example.com", "hash", "argon2id")
        token = codec.sign_refresh(registered)
        registry.add(registered.id, token)

        assert not registry.is_valid(other.id, token)

    def test_access_token_is_not_a_refresh_token(self, registry, codec, registered):
        assert not registry.is_valid(registered.id, codec.sign_access(registered))

    def test_add_rejects_invalid_token(self, registry, registered):
        with pytest.raises(ValueError):
            registry.add(registered.id, "not.a.token")

    def test_remove_is_idempotent(self, registry, codec, registered):
        token = codec.sign_refresh(registered)
        registry.add(registered.id, token)

        assert registry.remove(registered.id, token) is True
        assert registry.remove(registered.id, token) is False
        assert not registry.is_valid(registered.id, token)

    def test_rotate_is_single_use(self, registry, codec, registered):
        old = codec.sign_refresh(registered)
        registry.add(registered.id, old)
        new = codec.sign_refresh(registered)

        assert registry.rotate(registered.id, old, new)
        assert not registry.is_valid(registered.id, old)
        assert registry.is_valid(registered.id, new)
        assert not registry.rotate(registered.id, old, codec.sign_refresh(registered))

    def test_concurrent_rotation_has_one_winner(self, registry, codec, registered):
        old = codec.sign_refresh(registered)
        registry.add(registered.id, old)
        replacements = [codec.sign_refresh(registered) for _ in range(8)]
        results = []
        barrier = threading.Barrier(len(replacements))

        def worker(new_token):
            barrier.wait()
            results.append(registry.rotate(registered.id, old, new_token))

        threads = [threading.Thread(target=worker, args=(t,)) for t in replacements]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        live = [t for t in replacements if registry.is_valid(registered.id, t)]
        assert len(live) == 1

    def test_clear_all(self, registry, codec, registered):
        tokens = [codec.sign_refresh(registered) for _ in range(3)]
        for token in tokens:
            registry.add(registered.id, token)

        assert registry.clear_all(registered.id) == 3
        assert not any(registry.is_valid(registered.id, t) for t in tokens)
        assert registry.clear_all(registered.id) == 0

    def test_prune_expired(self, registry, codec, clock, registered):
        stale = codec.sign_refresh(registered)
        registry.add(registered.id, stale)
        clock.advance(days=6)
        fresh = codec.sign_refresh(registered)
        registry.add(registered.id, fresh)

        clock.advance(days=2)
        assert registry.prune_expired() == 1
        assert registry.is_valid(registered.id, fresh)
