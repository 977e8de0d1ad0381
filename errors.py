"""
errors.py
=========
Error taxonomy for the passkey ceremonies.

Every error here is a client-side (400-class) failure of a single request.
None of them is fatal to the process; the HTTP layer turns each one into
`{"error": "<message>"}` with the class' status code.
"""

from __future__ import annotations


class CeremonyError(Exception):
    """Base class for every ceremony failure surfaced to the caller."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(CeremonyError):
    """A required request field (username / credential) is missing or malformed."""


class UnknownUser(CeremonyError):
    """No user record exists for the given username."""


class NoCredentials(CeremonyError):
    """The user exists but has no registered passkeys."""


class NoPendingChallenge(CeremonyError):
    """Begin was never called, or its challenge was already consumed."""


class CredentialNotFound(CeremonyError):
    """The assertion references a credential id not on file for this user."""


class VerificationFailure(CeremonyError):
    """Cryptographic or protocol check failed (challenge, origin, RP ID, signature)."""


class CounterRegression(VerificationFailure):
    """
    The asserted signature counter did not move past the stored one.

    This is the signal of a probable cloned authenticator and is logged
    separately from ordinary verification failures.
    """

    def __init__(self, message: str, *, stored: int, asserted: int) -> None:
        super().__init__(message)
        self.stored = stored
        self.asserted = asserted
