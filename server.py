"""
server.py
=========
The WebAuthn Relying Party (RP) server.

PasskeyServer wires the pieces together:
- RpPolicy: RP ID, RP name, accepted origins, user-verification preference
- CredentialStore: users and their public keys / sign counters
- ChallengeCache: the single outstanding challenge per username and ceremony
- CredentialVerifier: signature / client-data verification (py_webauthn)

Security properties:
- Replay attack resistance: each challenge is single-use and spent on first verify
- Clone detection: sign counter must strictly increase across logins
- Phishing resistance: origin must be one of the accepted origins and the
  authenticator data must carry this RP ID's hash
"""

from __future__ import annotations

from typing import List, Optional

from ceremonies import AuthenticationCeremony, RegistrationCeremony, UserLocks
from challenge_cache import ChallengeCache, InMemoryChallengeCache
from credential_store import CredentialStore, InMemoryCredentialStore
from rp_policy import RpPolicy
from verifier import CredentialVerifier, WebAuthnVerifier


class PasskeyServer:
    """Relying party for passkey registration and login."""

    def __init__(
        self,
        policy: Optional[RpPolicy] = None,
        store: Optional[CredentialStore] = None,
        cache: Optional[ChallengeCache] = None,
        verifier: Optional[CredentialVerifier] = None,
    ) -> None:
        """
        Build the RP with in-memory storage unless other implementations are given.

        Both ceremonies share one UserLocks registry, so a registration and a
        login for the same username are serialized too.
        """
        self.policy = policy or RpPolicy()
        self.store = store or InMemoryCredentialStore()
        self.cache = cache or InMemoryChallengeCache(ttl_seconds=self.policy.challenge_ttl_seconds)
        self.verifier = verifier or WebAuthnVerifier(
            require_user_verification=self.policy.user_verification == "required"
        )

        locks = UserLocks()
        self.registration = RegistrationCeremony(self.policy, self.store, self.cache, self.verifier, locks)
        self.authentication = AuthenticationCeremony(self.policy, self.store, self.cache, self.verifier, locks)

    def registration_options(self, username: str) -> dict:
        return self.registration.begin(username)

    def verify_registration(self, username: str, credential: dict) -> dict:
        return self.registration.finish(username, credential)

    def authentication_options(self, username: str) -> dict:
        return self.authentication.begin(username)

    def verify_authentication(self, username: str, credential: dict) -> dict:
        return self.authentication.finish(username, credential)

    def debug_dump(self) -> List[dict]:
        """
        Return a JSON-friendly view of every user and passkey.

        Public keys are base64url encoded. Not meant for production exposure.
        """
        return [user.to_json() for user in self.store.all_users()]
