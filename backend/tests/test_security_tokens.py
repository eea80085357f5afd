from datetime import timedelta

import pytest
from jose import jwt

from changelog_auth.core.result import Err, Ok, VerificationFailure
from changelog_auth.core.security import (
    TokenCodec,
    generate_refresh_token,
    get_password_hash,
    hash_token,
    verify_password,
)

from conftest import SECRET


def test_access_token_round_trip(clock):
    codec = TokenCodec(SECRET, clock=clock)
    issued = codec.issue(7, timedelta(minutes=15))

    assert issued.subject == "7"
    assert issued.expires_at - issued.issued_at == timedelta(minutes=15)
    assert codec.verify(issued.token) == Ok("7")


def test_issue_is_deterministic_for_fixed_key_and_clock(clock):
    first = TokenCodec(SECRET, clock=clock).issue(1, timedelta(minutes=5))
    second = TokenCodec(SECRET, clock=clock).issue(1, timedelta(minutes=5))
    assert first.token == second.token


def test_token_expires_after_ttl(clock):
    codec = TokenCodec(SECRET, clock=clock)
    token = codec.issue(3, timedelta(minutes=15)).token

    clock.advance(minutes=14, seconds=59)
    assert isinstance(codec.verify(token), Ok)

    clock.advance(seconds=1)
    result = codec.verify(token)
    assert isinstance(result, Err)
    assert result.kind is VerificationFailure.EXPIRED


def test_wrong_key_is_signature_invalid(clock):
    token = TokenCodec("another-secret-key-of-sufficient-size", clock=clock).issue(1, timedelta(minutes=5)).token
    result = TokenCodec(SECRET, clock=clock).verify(token)
    assert result.kind is VerificationFailure.SIGNATURE_INVALID


def test_tampered_payload_is_signature_invalid(clock):
    codec = TokenCodec(SECRET, clock=clock)
    token = codec.issue(1, timedelta(minutes=5)).token
    header, _, signature = token.split(".")
    forged_payload = jwt.encode({"sub": "2", "exp": 9999999999, "typ": "access"}, "x").split(".")[1]

    result = codec.verify(f"{header}.{forged_payload}.{signature}")
    assert result.kind is VerificationFailure.SIGNATURE_INVALID


@pytest.mark.parametrize("token", ["", "not-a-token", "a.b.c", "....."])
def test_garbage_is_malformed(clock, token):
    result = TokenCodec(SECRET, clock=clock).verify(token)
    assert isinstance(result, Err)
    assert result.kind is VerificationFailure.MALFORMED


def test_token_of_another_type_is_malformed(clock):
    foreign = jwt.encode({"sub": "1", "exp": 9999999999, "typ": "refresh"}, SECRET, algorithm="HS256")
    result = TokenCodec(SECRET, clock=clock).verify(foreign)
    assert result.kind is VerificationFailure.MALFORMED


def test_token_without_expiry_is_malformed(clock):
    unbounded = jwt.encode({"sub": "1", "typ": "access"}, SECRET, algorithm="HS256")
    result = TokenCodec(SECRET, clock=clock).verify(unbounded)
    assert result.kind is VerificationFailure.MALFORMED


def test_codec_requires_signing_key():
    with pytest.raises(ValueError):
        TokenCodec("")


def test_password_hash_round_trip():
    hashed = get_password_hash("correct horse battery")
    assert verify_password("correct horse battery", hashed)
    assert not verify_password("wrong horse battery", hashed)


def test_refresh_tokens_are_opaque_and_hashed():
    raw = generate_refresh_token(48)
    assert len(raw) == 64
    assert raw != generate_refresh_token(48)

    digest = hash_token(raw)
    assert len(digest) == 64
    assert digest == hash_token(raw)
    assert raw not in digest
