"""
verifier.py
===========
Cryptographic verification of attestation and assertion responses.

The ceremonies only see the CredentialVerifier contract: given a client
response and the expected challenge / origins / RP ID, either return the
extracted credential material (registration) or the new signature counter
(authentication), or raise VerificationFailure.

WebAuthnVerifier fulfils the contract with py_webauthn, which checks:
- clientDataJSON type, challenge and origin (exact match against the list)
- RP ID hash and user-presence flag in authenticator data
- the signature over authenticatorData || SHA256(clientDataJSON)

Sign counter monotonicity is enforced on top of that, once the signature holds.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Sequence

from webauthn import verify_authentication_response, verify_registration_response
from webauthn.helpers import (
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.exceptions import WebAuthnException

from credential_store import DeviceType
from crypto_utils import base64url_encode
from errors import CounterRegression, VerificationFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistrationResult:
    """Credential material extracted from a verified attestation."""

    credential_id: str
    public_key: bytes
    sign_count: int
    transports: List[str] = field(default_factory=list)
    device_type: DeviceType = DeviceType.SINGLE_DEVICE
    backed_up: bool = False
    verified: bool = True


@dataclass(frozen=True)
class AuthenticationResult:
    credential_id: str
    new_sign_count: int
    verified: bool = True


def counter_regressed(stored: int, asserted: int) -> bool:
    """
    True when an asserted counter fails to move past the stored one.

    A pair of zeros is accepted: authenticators without a counter always
    report 0.
    """
    return (asserted > 0 or stored > 0) and asserted <= stored


class CredentialVerifier(ABC):
    """Capability the ceremonies delegate signature checking to."""

    @abstractmethod
    def verify_registration(
        self,
        response: dict,
        *,
        expected_challenge: bytes,
        expected_origins: Sequence[str],
        expected_rp_id: str,
    ) -> RegistrationResult:
        """Verify an attestation response; raise VerificationFailure if it does not hold."""

    @abstractmethod
    def verify_authentication(
        self,
        response: dict,
        *,
        expected_challenge: bytes,
        expected_origins: Sequence[str],
        expected_rp_id: str,
        public_key: bytes,
        current_sign_count: int,
    ) -> AuthenticationResult:
        """
        Verify an assertion response against a stored public key.

        Raises CounterRegression if the asserted counter does not exceed the
        stored one, VerificationFailure for any other failed check.
        """


class WebAuthnVerifier(CredentialVerifier):
    """CredentialVerifier backed by py_webauthn."""

    def __init__(self, require_user_verification: bool = False) -> None:
        self.require_user_verification = require_user_verification

    def verify_registration(
        self,
        response: dict,
        *,
        expected_challenge: bytes,
        expected_origins: Sequence[str],
        expected_rp_id: str,
    ) -> RegistrationResult:
        """
        Verify a registration (attestation) response.

        Step-by-step:
        1. Parse the client JSON into a RegistrationCredential
        2. Let py_webauthn check client data, RP ID hash, flags and attestation
        3. Map the verified result and the reported transports into a RegistrationResult
        """
        try:
            credential = parse_registration_credential_json(response)
            verification = verify_registration_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_origin=list(expected_origins),
                expected_rp_id=expected_rp_id,
                require_user_verification=self.require_user_verification,
            )
        except WebAuthnException as exc:
            raise VerificationFailure(f"Registration verification failed: {exc}") from exc

        transports = []
        for transport in credential.response.transports or []:
            if transport.value not in transports:
                transports.append(transport.value)

        return RegistrationResult(
            credential_id=base64url_encode(verification.credential_id),
            public_key=verification.credential_public_key,
            sign_count=verification.sign_count,
            transports=transports,
            device_type=DeviceType(verification.credential_device_type.value),
            backed_up=verification.credential_backed_up,
        )

    def verify_authentication(
        self,
        response: dict,
        *,
        expected_challenge: bytes,
        expected_origins: Sequence[str],
        expected_rp_id: str,
        public_key: bytes,
        current_sign_count: int,
    ) -> AuthenticationResult:
        """
        Verify an authentication (assertion) response.

        The counter is checked here rather than inside py_webauthn (which is
        handed a current count of 0) so that a regression is only reported
        for an otherwise valid, correctly signed assertion.
        """
        try:
            verification = verify_authentication_response(
                credential=parse_authentication_credential_json(response),
                expected_challenge=expected_challenge,
                expected_origin=list(expected_origins),
                expected_rp_id=expected_rp_id,
                credential_public_key=public_key,
                credential_current_sign_count=0,
                require_user_verification=self.require_user_verification,
            )
        except WebAuthnException as exc:
            raise VerificationFailure(f"Authentication verification failed: {exc}") from exc

        if counter_regressed(current_sign_count, verification.new_sign_count):
            raise CounterRegression(
                f"Sign counter {verification.new_sign_count} is not greater than "
                f"stored counter {current_sign_count}",
                stored=current_sign_count,
                asserted=verification.new_sign_count,
            )

        return AuthenticationResult(
            credential_id=base64url_encode(verification.credential_id),
            new_sign_count=verification.new_sign_count,
        )
