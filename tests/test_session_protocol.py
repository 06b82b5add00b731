"""Tests for docvault.engine.security — SessionProtocol login/refresh/logout/authenticate."""

import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from docvault.db.base import utcnow
from docvault.db.models import RefreshToken
from docvault.db.session import transaction
from docvault.engine.errors import (
    ExpiredTokenError,
    InvalidAccessTokenError,
    InvalidCredentialsError,
    InvalidRefreshSecretError,
    RefreshTokenNotFoundError,
    ReusedTokenError,
    SessionHijackSuspectedError,
    UserNotFoundError,
)
from docvault.engine.security import SessionProtocol, bearer_token, hash_password, verify_password
from docvault.integrations.webhook import WebhookNotifier
from tests.conftest import ADMIN_TOKEN, PASSWORD

UA = "Mozilla/5.0 (X11; Linux x86_64)"
IP = "203.0.113.10"


def _record(session_factory, token_id):
    with transaction(session_factory) as session:
        return session.query(RefreshToken).filter(RefreshToken.id == token_id).first()


def _all_records(session_factory, user_id):
    with transaction(session_factory) as session:
        return session.query(RefreshToken).filter(RefreshToken.user_id == user_id).all()


class TestLogin:
    """Password login."""

    def test_login_issues_pair(self, protocol, issuer, users, session_factory):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        claims = issuer.verify(tokens.access_token)
        assert claims.user_id == users["owner"]
        record = _record(session_factory, claims.refresh_token_id)
        assert record.user_agent == UA
        assert record.ip_address == IP
        assert record.used is False

    def test_unknown_login(self, protocol, users):
        with pytest.raises(UserNotFoundError) as exc_info:
            protocol.login("nobody0001", PASSWORD, UA, IP)
        assert exc_info.value.lookup == "login"
        assert exc_info.value.to_response() == {"error": "invalid login or password", "status": 401}

    def test_wrong_password(self, protocol, users):
        with pytest.raises(InvalidCredentialsError):
            protocol.login("owner0001", "Wr0ng!pass", UA, IP)

    def test_failures_share_public_message(self, protocol, users):
        with pytest.raises(UserNotFoundError) as unknown:
            protocol.login("nobody0001", PASSWORD, UA, IP)
        with pytest.raises(InvalidCredentialsError) as wrong:
            protocol.login("owner0001", "Wr0ng!pass", UA, IP)
        assert unknown.value.to_response() == wrong.value.to_response()


class TestRefresh:
    """Rotation and the check order."""

    def test_rotation_marks_old_used_and_links_parent(self, protocol, issuer, users, session_factory):
        first = protocol.login("owner0001", PASSWORD, UA, IP)
        old_id = issuer.verify(first.access_token).refresh_token_id

        second = protocol.refresh(UA, IP, first.access_token, first.refresh_token)
        new_id = issuer.verify(second.access_token).refresh_token_id

        old = _record(session_factory, old_id)
        new = _record(session_factory, new_id)
        assert old.used is True
        assert old.revoke_reason == "rotated"
        assert new.used is False
        assert new.parent_id == old_id

    def test_reuse_after_rotation(self, protocol, users):
        first = protocol.login("owner0001", PASSWORD, UA, IP)
        protocol.refresh(UA, IP, first.access_token, first.refresh_token)
        with pytest.raises(ReusedTokenError):
            protocol.refresh(UA, IP, first.access_token, first.refresh_token)

    def test_invalid_access_token(self, protocol, users):
        with pytest.raises(InvalidAccessTokenError):
            protocol.refresh(UA, IP, "not-a-jwt", "secret")

    def test_missing_record(self, protocol, issuer, users):
        orphan = issuer.issue_pair(users["owner"])
        with pytest.raises(RefreshTokenNotFoundError):
            protocol.refresh(UA, IP, orphan.tokens.access_token, orphan.tokens.refresh_token)

    def test_expired_record(self, protocol, issuer, users, session_factory):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        token_id = issuer.verify(tokens.access_token).refresh_token_id
        with transaction(session_factory) as session:
            session.query(RefreshToken).filter(RefreshToken.id == token_id).update(
                {RefreshToken.expire_at: utcnow() - timedelta(seconds=1)}
            )
        with pytest.raises(ExpiredTokenError):
            protocol.refresh(UA, IP, tokens.access_token, tokens.refresh_token)

    def test_wrong_secret_does_not_burn(self, protocol, issuer, users, session_factory):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        with pytest.raises(InvalidRefreshSecretError):
            protocol.refresh(UA, IP, tokens.access_token, "d3Jvbmc=")
        token_id = issuer.verify(tokens.access_token).refresh_token_id
        assert _record(session_factory, token_id).used is False
        # Still usable with the right secret
        protocol.refresh(UA, IP, tokens.access_token, tokens.refresh_token)

    def test_foreign_access_token_rejected(self, protocol, issuer, users):
        owner = protocol.login("owner0001", PASSWORD, UA, IP)
        owner_claims = issuer.verify(owner.access_token)
        forged = issuer.sign(owner_claims.__class__(
            user_id=users["stranger"],
            refresh_token_id=owner_claims.refresh_token_id,
            is_admin=False,
            issued_at=owner_claims.issued_at,
            expires_at=owner_claims.expires_at,
        ))
        with pytest.raises(InvalidAccessTokenError):
            protocol.refresh(UA, IP, forged, owner.refresh_token)

    def test_lost_race_reports_reuse(self, protocol, users):
        """A conditional update that affects no row means another refresh won."""
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        with patch.object(protocol._credentials, "mark_used", return_value=False):
            with pytest.raises(ReusedTokenError):
                protocol.refresh(UA, IP, tokens.access_token, tokens.refresh_token)


class TestSingleUseUnderConcurrency:
    """Concurrent refreshes of one token: exactly one succeeds."""

    def test_exactly_one_winner(self, protocol, issuer, users, session_factory):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        n = 8
        barrier = threading.Barrier(n)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                pair = protocol.refresh(UA, IP, tokens.access_token, tokens.refresh_token)
                outcome = ("ok", pair)
            except ReusedTokenError as e:
                outcome = ("reused", e)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        winners = [r for r in results if r[0] == "ok"]
        losers = [r for r in results if r[0] == "reused"]
        assert len(results) == n
        assert len(winners) == 1
        assert len(losers) == n - 1

        records = _all_records(session_factory, users["owner"])
        original_id = issuer.verify(tokens.access_token).refresh_token_id
        children = [r for r in records if r.parent_id == original_id]
        assert len(children) == 1


class TestUserAgentPinning:
    """A changed user agent burns the token."""

    def test_ua_mismatch_burns(self, protocol, issuer, users, session_factory):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        with pytest.raises(SessionHijackSuspectedError):
            protocol.refresh("curl/8.0", IP, tokens.access_token, tokens.refresh_token)

        token_id = issuer.verify(tokens.access_token).refresh_token_id
        record = _record(session_factory, token_id)
        assert record.used is True
        assert record.revoke_reason == "user_agent_mismatch"

        # The original client cannot continue either
        with pytest.raises(ReusedTokenError):
            protocol.refresh(UA, IP, tokens.access_token, tokens.refresh_token)


class TestIpChange:
    """A changed IP notifies the webhook without blocking the refresh."""

    def test_notifier_called_with_ips(self, protocol, notifier, users):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        protocol.refresh(UA, "198.51.100.7", tokens.access_token, tokens.refresh_token)
        notifier.notify_ip_change.assert_called_once()
        args = notifier.notify_ip_change.call_args[0]
        assert args[1:] == ("198.51.100.7", IP)

    def test_same_ip_no_notification(self, protocol, notifier, users):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        protocol.refresh(UA, IP, tokens.access_token, tokens.refresh_token)
        notifier.notify_ip_change.assert_not_called()

    def test_new_pair_carries_new_ip(self, protocol, issuer, users, session_factory):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        pair = protocol.refresh(UA, "198.51.100.7", tokens.access_token, tokens.refresh_token)
        record = _record(session_factory, issuer.verify(pair.access_token).refresh_token_id)
        assert record.ip_address == "198.51.100.7"

    def test_slow_webhook_does_not_block(self, session_factory, issuer, users):
        started = threading.Event()
        release = threading.Event()
        client = MagicMock()

        def slow_post(*args, **kwargs):
            started.set()
            release.wait(10)
            return MagicMock()

        client.post.side_effect = slow_post
        notifier = WebhookNotifier(url="http://hooks.test/ip", timeout=10, client=client)
        protocol = SessionProtocol(session_factory, issuer, notifier=notifier)

        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        t0 = time.monotonic()
        pair = protocol.refresh(UA, "198.51.100.7", tokens.access_token, tokens.refresh_token)
        elapsed = time.monotonic() - t0

        assert pair.access_token
        assert started.wait(5)
        assert not release.is_set()
        assert elapsed < 5
        release.set()

        for thread in threading.enumerate():
            if thread.name == "docvault-webhook":
                thread.join(timeout=5)
        _, kwargs = client.post.call_args
        assert kwargs["json"] == {
            "user_id": users["owner"],
            "new_ip": "198.51.100.7",
            "old_ip": IP,
        }

    def test_notifier_thread_failure_does_not_fail_refresh(self, protocol, notifier, users):
        notifier.notify_ip_change.side_effect = RuntimeError("can't start new thread")
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        assert protocol.refresh(UA, "198.51.100.7", tokens.access_token, tokens.refresh_token)


class TestLogout:

    def test_logout_burns(self, protocol, issuer, users, session_factory):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        token_id = issuer.verify(tokens.access_token).refresh_token_id
        protocol.logout(token_id)
        record = _record(session_factory, token_id)
        assert record.used is True
        assert record.revoke_reason == "logout"
        with pytest.raises(ReusedTokenError):
            protocol.refresh(UA, IP, tokens.access_token, tokens.refresh_token)

    def test_logout_twice_succeeds(self, protocol, issuer, users):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        token_id = issuer.verify(tokens.access_token).refresh_token_id
        protocol.logout(token_id)
        protocol.logout(token_id)

    def test_logout_unknown(self, protocol, users):
        with pytest.raises(RefreshTokenNotFoundError):
            protocol.logout("00000000-0000-0000-0000-000000000000")

    def test_logout_logs_owner(self, protocol, issuer, users):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        token_id = issuer.verify(tokens.access_token).refresh_token_id
        with patch("docvault.engine.security.log") as log:
            protocol.logout(token_id)
            protocol.logout(token_id)
        entries = [c.args[0] for c in log.call_args_list]
        assert [e.data["event"] for e in entries] == ["logout", "logout"]
        assert [e.data["user_id"] for e in entries] == [users["owner"], users["owner"]]


class TestAuthenticate:
    """Bearer credential → Principal."""

    def test_no_bearer_is_anonymous(self, protocol):
        assert protocol.authenticate(None).is_anonymous
        assert protocol.authenticate("").is_anonymous

    def test_admin_token(self, protocol):
        principal = protocol.authenticate(ADMIN_TOKEN)
        assert principal.kind == "admin"
        assert principal.has_admin_rights

    def test_user_token(self, protocol, users):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        principal = protocol.authenticate(tokens.access_token)
        assert principal.is_user(users["owner"])
        assert not principal.has_admin_rights

    def test_access_token_dies_with_its_refresh_token(self, protocol, issuer, users):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        protocol.logout(issuer.verify(tokens.access_token).refresh_token_id)
        with pytest.raises(InvalidAccessTokenError):
            protocol.authenticate(tokens.access_token)

    def test_rotated_access_token_rejected(self, protocol, users):
        tokens = protocol.login("owner0001", PASSWORD, UA, IP)
        protocol.refresh(UA, IP, tokens.access_token, tokens.refresh_token)
        with pytest.raises(InvalidAccessTokenError):
            protocol.authenticate(tokens.access_token)

    def test_orphan_access_token_rejected(self, protocol, issuer, users):
        orphan = issuer.issue_pair(users["owner"])
        with pytest.raises(InvalidAccessTokenError):
            protocol.authenticate(orphan.tokens.access_token)


class TestScenario:
    """Login, rotate, then replay the stale pair."""

    def test_replay_after_rotation(self, protocol, issuer, users, session_factory):
        first = protocol.login("owner0001", PASSWORD, UA, IP)
        second = protocol.refresh(UA, IP, first.access_token, first.refresh_token)

        with pytest.raises(ReusedTokenError):
            protocol.refresh(UA, IP, first.access_token, first.refresh_token)

        # The legitimate successor still works
        third = protocol.refresh(UA, IP, second.access_token, second.refresh_token)
        assert protocol.authenticate(third.access_token).is_user(users["owner"])
        assert len(_all_records(session_factory, users["owner"])) == 3


class TestHelpers:

    @pytest.mark.parametrize("header,expected", [
        ("Bearer abc", "abc"),
        ("bearer abc ", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("", None),
        (None, None),
    ])
    def test_bearer_token(self, header, expected):
        assert bearer_token(header) == expected

    def test_password_hashing(self):
        hashed = hash_password("Secr3t!pass", rounds=4)
        assert verify_password("Secr3t!pass", hashed)
        assert not verify_password("other", hashed)
        assert not verify_password("x", "not-a-hash")
