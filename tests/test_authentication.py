import logging

import pytest

from challenge_cache import ChallengeKind
from tests.helpers import ORIGIN, EVIL_ORIGIN, register
from crypto_utils import base64url_decode, base64url_encode
from errors import (
    CounterRegression,
    CredentialNotFound,
    NoCredentials,
    NoPendingChallenge,
    UnknownUser,
    ValidationError,
    VerificationFailure,
)
from verifier import counter_regressed

AUTH = ChallengeKind.AUTHENTICATION


def stored_counter(server, username):
    return server.store.get(username).credentials[0].sign_counter


def login(server, authenticator, username, origin=ORIGIN, sign_count=None):
    options = server.authentication_options(username)
    assertion = authenticator.get_assertion(options, origin, sign_count=sign_count)
    return server.verify_authentication(username, assertion)


class TestAuthenticationOptions:
    def test_unknown_user(self, server):
        with pytest.raises(UnknownUser):
            server.authentication_options("nobody")
        assert server.cache.peek("nobody", AUTH) is None

    def test_user_without_credentials(self, server):
        server.registration_options("bob")
        with pytest.raises(NoCredentials):
            server.authentication_options("bob")
        assert server.cache.peek("bob", AUTH) is None

    def test_missing_username(self, server):
        with pytest.raises(ValidationError):
            server.authentication_options("")

    def test_allow_list_and_policy(self, server, authenticator):
        attestation = register(server, authenticator, "alice")
        options = server.authentication_options("alice")
        assert options["rpId"] == "localhost"
        assert options["userVerification"] == "preferred"
        assert options["allowCredentials"] == [
            {"id": attestation["id"], "type": "public-key", "transports": ["internal", "hybrid"]}
        ]
        assert base64url_encode(server.cache.peek("alice", AUTH).challenge) == options["challenge"]


class TestAuthenticationVerify:
    def test_success_advances_counter(self, server, authenticator):
        register(server, authenticator, "alice")
        assert login(server, authenticator, "alice") == {"verified": True}
        assert stored_counter(server, "alice") == 1
        assert login(server, authenticator, "alice") == {"verified": True}
        assert stored_counter(server, "alice") == 2
        assert server.cache.peek("alice", AUTH) is None

    @pytest.mark.parametrize("asserted", [5, 3])
    def test_counter_not_advanced_is_rejected(self, server, authenticator, asserted):
        register(server, authenticator, "alice", sign_count=5)
        with pytest.raises(CounterRegression) as info:
            login(server, authenticator, "alice", sign_count=asserted)
        assert isinstance(info.value, VerificationFailure)
        assert info.value.stored == 5
        assert info.value.asserted == asserted
        assert stored_counter(server, "alice") == 5

    def test_counter_advanced_is_accepted(self, server, authenticator):
        register(server, authenticator, "alice", sign_count=5)
        assert login(server, authenticator, "alice", sign_count=6) == {"verified": True}
        assert stored_counter(server, "alice") == 6

    def test_zero_counters_are_accepted(self, server, authenticator):
        register(server, authenticator, "alice")
        assert login(server, authenticator, "alice", sign_count=0) == {"verified": True}
        assert stored_counter(server, "alice") == 0

    def test_counter_regression_is_logged_as_error(self, server, authenticator, caplog):
        register(server, authenticator, "alice", sign_count=5)
        with caplog.at_level(logging.WARNING, logger="ceremonies"):
            with pytest.raises(CounterRegression):
                login(server, authenticator, "alice", sign_count=5)
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "cloned" in errors[0].getMessage()

    def test_tampered_origin(self, server, authenticator):
        register(server, authenticator, "alice")
        with pytest.raises(VerificationFailure) as info:
            login(server, authenticator, "alice", origin=EVIL_ORIGIN)
        assert not isinstance(info.value, CounterRegression)
        assert stored_counter(server, "alice") == 0

    def test_tampered_challenge(self, server, authenticator):
        register(server, authenticator, "alice")
        options = server.authentication_options("alice")
        raw = bytearray(base64url_decode(options["challenge"]))
        raw[0] ^= 0xFF
        forged = dict(options, challenge=base64url_encode(bytes(raw)))
        assertion = authenticator.get_assertion(forged, ORIGIN)
        with pytest.raises(VerificationFailure):
            server.verify_authentication("alice", assertion)
        assert stored_counter(server, "alice") == 0

    def test_bad_signature(self, server, authenticator):
        register(server, authenticator, "alice")
        options = server.authentication_options("alice")
        assertion = authenticator.get_assertion(options, ORIGIN)
        signature = bytearray(base64url_decode(assertion["response"]["signature"]))
        signature[-1] ^= 0x01
        assertion["response"]["signature"] = base64url_encode(bytes(signature))
        with pytest.raises(VerificationFailure):
            server.verify_authentication("alice", assertion)
        assert stored_counter(server, "alice") == 0

    def test_replay_after_success(self, server, authenticator):
        register(server, authenticator, "alice")
        options = server.authentication_options("alice")
        assertion = authenticator.get_assertion(options, ORIGIN)
        assert server.verify_authentication("alice", assertion) == {"verified": True}
        with pytest.raises(NoPendingChallenge):
            server.verify_authentication("alice", assertion)

    def test_replay_against_new_challenge(self, server, authenticator):
        register(server, authenticator, "alice")
        options = server.authentication_options("alice")
        assertion = authenticator.get_assertion(options, ORIGIN)
        assert server.verify_authentication("alice", assertion) == {"verified": True}
        server.authentication_options("alice")
        with pytest.raises(VerificationFailure):
            server.verify_authentication("alice", assertion)
        assert stored_counter(server, "alice") == 1

    def test_failed_verify_cannot_be_retried(self, server, authenticator):
        register(server, authenticator, "alice")
        options = server.authentication_options("alice")
        with pytest.raises(VerificationFailure):
            server.verify_authentication("alice", authenticator.get_assertion(options, EVIL_ORIGIN))
        with pytest.raises(NoPendingChallenge):
            server.verify_authentication("alice", authenticator.get_assertion(options, ORIGIN))

    def test_credential_of_another_user(self, server, authenticator):
        from authenticator import SoftwareAuthenticator

        register(server, authenticator, "alice")
        mallory = SoftwareAuthenticator()
        register(server, mallory, "mallory")
        server.authentication_options("alice")
        options = server.authentication_options("mallory")
        assertion = mallory.get_assertion(options, ORIGIN)
        with pytest.raises(CredentialNotFound):
            server.verify_authentication("alice", assertion)
        assert server.cache.peek("alice", AUTH) is None

    def test_no_begin(self, server, authenticator):
        register(server, authenticator, "alice")
        options = server.authentication_options("alice")
        assertion = authenticator.get_assertion(options, ORIGIN)
        server.cache.take_and_clear("alice", AUTH)
        with pytest.raises(NoPendingChallenge):
            server.verify_authentication("alice", assertion)

    def test_missing_credential_id(self, server, authenticator):
        register(server, authenticator, "alice")
        server.authentication_options("alice")
        with pytest.raises(ValidationError):
            server.verify_authentication("alice", {"type": "public-key", "response": {}})
        assert server.cache.peek("alice", AUTH) is None
        assert stored_counter(server, "alice") == 0

    def test_missing_credential_id_without_begin(self, server):
        with pytest.raises(NoPendingChallenge):
            server.verify_authentication("alice", {"type": "public-key"})

    def test_authenticator_refuses_other_rp_id(self, server, authenticator):
        register(server, authenticator, "alice")
        options = server.authentication_options("alice")
        options["rpId"] = "evil.example"
        with pytest.raises(PermissionError):
            authenticator.get_assertion(options, ORIGIN)


@pytest.mark.parametrize("stored, asserted, regressed", [
    (0, 0, False),
    (0, 1, False),
    (5, 6, False),
    (5, 5, True),
    (5, 3, True),
    (5, 0, True),
])
def test_counter_regressed(stored, asserted, regressed):
    assert counter_regressed(stored, asserted) is regressed
