"""
ceremonies.py
=============
The two WebAuthn ceremonies run by the relying party.

Each ceremony is a begin/finish pair per username:

    NoChallenge --begin--> Pending --finish (success or failure)--> NoChallenge

- begin: build options, bind a fresh challenge to the username, return options
- finish: consume the challenge, delegate verification, update the store

The challenge is removed from the cache the moment finish acquires it, so a
failed finish can never be retried against the same challenge; the client
has to start again from begin.

All begin/finish calls for one username are serialized; different usernames
never wait on each other.
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
)
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from challenge_cache import ChallengeCache, ChallengeKind, PendingChallenge
from credential_store import Credential, CredentialStore, User
from crypto_utils import base64url_decode, generate_challenge, user_handle_for
from errors import (
    CounterRegression,
    CredentialNotFound,
    NoCredentials,
    NoPendingChallenge,
    UnknownUser,
    ValidationError,
    VerificationFailure,
)
from rp_policy import RpPolicy
from verifier import CredentialVerifier

logger = logging.getLogger(__name__)


class UserLocks:
    """One lock per username, created on first use."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, username: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(username, threading.Lock())
        with lock:
            yield


def require_username(username: object) -> str:
    if not isinstance(username, str) or not username:
        raise ValidationError("Missing username")
    return username


def require_credential(response: object) -> dict:
    if not isinstance(response, dict) or not response:
        raise ValidationError("Missing credential")
    return response


def credential_descriptors(credentials: List[Credential]) -> List[PublicKeyCredentialDescriptor]:
    """Exclude/allow list entries (id + transports) for the given credentials."""
    return [
        PublicKeyCredentialDescriptor(
            id=base64url_decode(c.id),
            transports=[AuthenticatorTransport(t) for t in c.transports] or None,
        )
        for c in credentials
    ]


class _Ceremony:
    """Shared wiring and challenge handling for both ceremonies."""

    kind: ChallengeKind

    def __init__(
        self,
        policy: RpPolicy,
        store: CredentialStore,
        cache: ChallengeCache,
        verifier: CredentialVerifier,
        locks: Optional[UserLocks] = None,
    ) -> None:
        self.policy = policy
        self.store = store
        self.cache = cache
        self.verifier = verifier
        self.locks = locks or UserLocks()

    @contextmanager
    def _pending(self, username: str) -> Iterator[Tuple[User, PendingChallenge]]:
        """
        Acquire the user and their pending challenge for a finish call.

        Step-by-step:
        1. Take the per-username lock (released on every exit path)
        2. Take-and-clear the pending challenge; from here on it is spent
           whatever the outcome of verification
        3. Require the user to exist
        """
        with self.locks.hold(username):
            pending = self.cache.take_and_clear(username, self.kind)
            if pending is None:
                raise NoPendingChallenge(f"No active {self.kind.value} options for {username!r}")
            user = self.store.get(username)
            if user is None:
                raise UnknownUser(f"User {username!r} does not exist")
            yield user, pending


class RegistrationCeremony(_Ceremony):
    """Creates passkeys: registration options, then attestation verification."""

    kind = ChallengeKind.REGISTRATION

    def begin(self, username: str) -> dict:
        """
        Issue PublicKeyCredentialCreationOptions for username.

        The user is created on first call. Credentials already registered for
        the user go into excludeCredentials so an authenticator holding one of
        them can refuse to register again.
        """
        username = require_username(username)
        with self.locks.hold(username):
            user = self.store.get_or_create(username)
            challenge = generate_challenge()
            options = generate_registration_options(
                rp_id=self.policy.rp_id,
                rp_name=self.policy.rp_name,
                user_name=username,
                user_id=user_handle_for(username),
                user_display_name=username,
                challenge=challenge,
                timeout=self.policy.timeout_ms,
                attestation=AttestationConveyancePreference(self.policy.attestation),
                authenticator_selection=AuthenticatorSelectionCriteria(
                    resident_key=ResidentKeyRequirement(self.policy.resident_key),
                    user_verification=UserVerificationRequirement(self.policy.user_verification),
                ),
                exclude_credentials=credential_descriptors(user.credentials),
            )
            self.cache.put(username, self.kind, challenge)

        payload = json.loads(options_to_json(options))
        payload.setdefault("excludeCredentials", [])
        return payload

    def finish(self, username: str, response: dict) -> dict:
        """
        Verify an attestation response and store the new credential.

        Step-by-step:
        1. Validate inputs, then acquire user + pending challenge (challenge is spent)
        2. Delegate verification against challenge, accepted origins and RP ID
        3. On success append exactly one Credential; on failure store nothing
        """
        username = require_username(username)
        response = require_credential(response)

        with self._pending(username) as (user, pending):
            try:
                result = self.verifier.verify_registration(
                    response,
                    expected_challenge=pending.challenge,
                    expected_origins=self.policy.origins,
                    expected_rp_id=self.policy.rp_id,
                )
            except VerificationFailure as exc:
                logger.warning("Registration failed for %r: %s", username, exc)
                raise

            if not result.verified:
                return {"verified": False}

            if user.find_credential(result.credential_id) is not None:
                raise VerificationFailure("Credential is already registered for this user")

            credential = Credential(
                id=result.credential_id,
                public_key=result.public_key,
                sign_counter=result.sign_count,
                transports=list(result.transports),
                device_type=result.device_type,
                backed_up=result.backed_up,
            )
            if not self.store.add_credential(username, credential):
                raise UnknownUser(f"User {username!r} does not exist")

        logger.info("Passkey registered for %r (credential %s)", username, credential.id)
        return {"verified": True}


class AuthenticationCeremony(_Ceremony):
    """Signs users in with an existing passkey and advances its counter."""

    kind = ChallengeKind.AUTHENTICATION

    def begin(self, username: str) -> dict:
        username = require_username(username)
        with self.locks.hold(username):
            user = self.store.get(username)
            if user is None:
                raise UnknownUser(f"User {username!r} does not exist")
            if not user.credentials:
                raise NoCredentials(f"User {username!r} has no passkeys")

            challenge = generate_challenge()
            options = generate_authentication_options(
                rp_id=self.policy.rp_id,
                challenge=challenge,
                timeout=self.policy.timeout_ms,
                allow_credentials=credential_descriptors(user.credentials),
                user_verification=UserVerificationRequirement(self.policy.user_verification),
            )
            self.cache.put(username, self.kind, challenge)

        return json.loads(options_to_json(options))

    def finish(self, username: str, response: dict) -> dict:
        """
        Verify an assertion response and advance the stored sign counter.

        The credential must be one registered for this user. The verifier
        rejects a counter that does not exceed the stored one; that case is
        logged as a probable cloned authenticator.
        """
        username = require_username(username)
        response = require_credential(response)

        with self._pending(username) as (user, pending):
            credential_id = response.get("id")
            if not isinstance(credential_id, str) or not credential_id:
                raise ValidationError("Missing credential id")
            credential = user.find_credential(credential_id)
            if credential is None:
                raise CredentialNotFound(f"Credential {credential_id} is not registered for {username!r}")

            try:
                result = self.verifier.verify_authentication(
                    response,
                    expected_challenge=pending.challenge,
                    expected_origins=self.policy.origins,
                    expected_rp_id=self.policy.rp_id,
                    public_key=credential.public_key,
                    current_sign_count=credential.sign_counter,
                )
            except CounterRegression as exc:
                logger.error(
                    "Possible cloned authenticator for %r: credential %s asserted counter %d, stored %d",
                    username, credential.id, exc.asserted, exc.stored,
                )
                raise
            except VerificationFailure as exc:
                logger.warning("Authentication failed for %r: %s", username, exc)
                raise

            if not result.verified:
                return {"verified": False}
            if result.credential_id != credential.id:
                raise VerificationFailure("Assertion was produced by a different credential")

            self.store.update_sign_counter(username, credential.id, result.new_sign_count)

        logger.info("User %r authenticated with credential %s", username, credential.id)
        return {"verified": True}
