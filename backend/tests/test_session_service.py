from datetime import timedelta

import pytest

from changelog_auth.core.exceptions import AuthenticationError
from changelog_auth.core.result import AuthFailure, Err, Ok, RefreshFailure
from changelog_auth.core.security import TokenCodec, hash_token
from changelog_auth.models.audit import AuditEvent, AuditTarget
from changelog_auth.models.security import RefreshToken
from changelog_auth.services.audit_service import audit_service
from changelog_auth.services.refresh_store import RefreshStore
from changelog_auth.services.session_service import SessionService

from conftest import SECRET


def _service(clock):
    return SessionService(
        TokenCodec(SECRET, clock=clock),
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        clock=clock,
        store=RefreshStore(),
    )


def _record(db, raw_token):
    db.expire_all()
    return db.query(RefreshToken).filter(RefreshToken.token_hash == hash_token(raw_token)).one()


def test_issue_persists_one_active_record(db, clock, user_factory):
    user = user_factory()
    pair = _service(clock).issue(db, user)

    record = _record(db, pair.refresh_token)
    assert record.user_id == user.id
    assert record.invalidated is False
    assert db.query(RefreshToken).count() == 1
    assert pair.refresh_token not in {r.token_hash for r in db.query(RefreshToken)}


def test_validate_request_resolves_user(db, clock, user_factory):
    user = user_factory()
    service = _service(clock)
    pair = service.issue(db, user)

    result = service.validate_request(db, pair.access_token)
    assert isinstance(result, Ok)
    assert result.value.id == user.id


def test_validate_request_reports_expiry(db, clock, user_factory):
    service = _service(clock)
    pair = service.issue(db, user_factory())

    clock.advance(minutes=16)
    result = service.validate_request(db, pair.access_token)
    assert result.kind is AuthFailure.EXPIRED


def test_validate_request_for_deleted_user(db, clock, user_factory):
    user = user_factory()
    service = _service(clock)
    pair = service.issue(db, user)

    db.delete(user)
    db.commit()

    result = service.validate_request(db, pair.access_token)
    assert result.kind is AuthFailure.USER_NOT_FOUND


def test_validate_request_rejects_non_numeric_subject(db, clock):
    service = _service(clock)
    token = service.codec.issue("not-a-number", timedelta(minutes=5)).token
    assert service.validate_request(db, token).kind is AuthFailure.MALFORMED
    assert service.validate_request(db, None).kind is AuthFailure.MALFORMED


def test_rotation_example(db, clock, user_factory):
    service = _service(clock)
    user = user_factory()
    first = service.issue(db, user)

    rotated = service.refresh(db, first.refresh_token)
    assert isinstance(rotated, Ok)
    second = rotated.value.tokens
    assert rotated.value.user.id == user.id
    assert second.refresh_token != first.refresh_token
    assert _record(db, first.refresh_token).invalidated is True

    replay = service.refresh(db, first.refresh_token)
    assert isinstance(replay, Err)
    assert replay.kind is RefreshFailure.INVALIDATED

    third = service.refresh(db, second.refresh_token)
    assert isinstance(third, Ok)
    assert third.value.tokens.refresh_token not in {first.refresh_token, second.refresh_token}


def test_rotation_links_successor_to_predecessor(db, clock, user_factory):
    service = _service(clock)
    first = service.issue(db, user_factory())
    second = service.refresh(db, first.refresh_token).value.tokens

    predecessor = _record(db, first.refresh_token)
    successor = _record(db, second.refresh_token)
    assert successor.rotated_from_id == predecessor.id
    assert predecessor.invalidated_at is not None


def test_replay_is_audited(db, clock, user_factory):
    service = _service(clock)
    user = user_factory()
    first = service.issue(db, user)
    service.refresh(db, first.refresh_token)

    service.refresh(db, first.refresh_token, ip_address="10.0.0.9")

    events = db.query(AuditEvent).filter(AuditEvent.action == "refresh_token_reuse").all()
    assert len(events) == 1
    assert events[0].user_id == user.id
    assert events[0].ip_address == "10.0.0.9"


def test_refresh_failures(db, clock, user_factory):
    service = _service(clock)
    pair = service.issue(db, user_factory())

    assert service.refresh(db, "").kind is RefreshFailure.MALFORMED
    assert service.refresh(db, "x" * 64).kind is RefreshFailure.NOT_FOUND

    clock.advance(days=7)
    assert service.refresh(db, pair.refresh_token).kind is RefreshFailure.EXPIRED
    assert _record(db, pair.refresh_token).invalidated is False


def test_invalidated_wins_over_expired(db, clock, user_factory):
    service = _service(clock)
    pair = service.issue(db, user_factory())
    service.revoke(db, pair.refresh_token)

    clock.advance(days=30)
    assert service.refresh(db, pair.refresh_token).kind is RefreshFailure.INVALIDATED


def test_revoke_is_idempotent(db, clock, user_factory):
    service = _service(clock)
    pair = service.issue(db, user_factory())

    assert service.revoke(db, pair.refresh_token) is True
    assert service.revoke(db, pair.refresh_token) is False
    assert service.revoke(db, "unknown-token-value") is False
    assert service.revoke(db, None) is False

    records = db.query(RefreshToken).all()
    assert len(records) == 1
    assert records[0].invalidated is True


def test_refresh_after_logout_is_invalidated(db, clock, user_factory):
    service = _service(clock)
    pair = service.issue(db, user_factory())
    service.revoke(db, pair.refresh_token)

    assert service.refresh(db, pair.refresh_token).kind is RefreshFailure.INVALIDATED


def test_access_token_survives_revocation_until_ttl(db, clock, user_factory):
    service = _service(clock)
    pair = service.issue(db, user_factory())
    service.revoke(db, pair.refresh_token)

    assert isinstance(service.validate_request(db, pair.access_token), Ok)
    clock.advance(minutes=15)
    assert service.validate_request(db, pair.access_token).kind is AuthFailure.EXPIRED


def test_active_for_user_lists_only_live_records(db, clock, user_factory):
    service = _service(clock)
    user = user_factory()
    first = service.issue(db, user)
    service.issue(db, user)
    service.refresh(db, first.refresh_token)

    active = RefreshStore.active_for_user(db, user.id, clock())
    assert len(active) == 2
    assert all(not record.invalidated for record in active)


def test_failure_messages_name_the_right_token():
    assert AuthenticationError.from_failure(AuthFailure.EXPIRED).message == "Access token has expired"
    assert AuthenticationError.from_failure(RefreshFailure.EXPIRED).message == "Refresh token has expired"
    assert AuthenticationError.from_failure(AuthFailure.MALFORMED).message == "Malformed access token"
    assert AuthenticationError.from_failure(RefreshFailure.MALFORMED).message == "Malformed refresh token"
    assert AuthenticationError.from_failure(AuthFailure.EXPIRED).code == "expired"


def test_audit_events_only_accept_session_targets(db):
    event = audit_service.log_event(db, user_id=None, action="logout", target_type=AuditTarget.REFRESH_TOKEN)
    assert event.target_type == "refresh_token"

    with pytest.raises(ValueError):
        audit_service.log_event(db, user_id=None, action="export", target_type="changelog")
    assert db.query(AuditEvent).count() == 1
