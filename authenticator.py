"""
authenticator.py
================
A software WebAuthn authenticator plus the browser glue around it.

It stands in for navigator.credentials.create()/get() and produces the same
JSON a browser would post to the relying party, so responses go through real
py_webauthn verification. Key behaviors:
- Private key NEVER leaves the authenticator; only the COSE public key is sent
- RP ID binding: a passkey refuses to sign for a different RP ID
- excludeCredentials: refuses to register twice for the same account
- Sign counter: incremented on every assertion (can be forced to simulate a clone)

Credentials use ES256 (ECDSA P-256) and "none" attestation.
"""

from __future__ import annotations

import json
import os
import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import cbor2
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec

from crypto_utils import base64url_decode, base64url_encode, sha256

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_BE = 0x08
FLAG_BS = 0x10
FLAG_AT = 0x40

COSE_ALG_ES256 = -7


def cose_public_key(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Encode a P-256 public key as a COSE_Key (kty EC2, alg ES256, crv P-256)."""
    numbers = public_key.public_numbers()
    return cbor2.dumps({
        1: 2,
        3: COSE_ALG_ES256,
        -1: 1,
        -2: numbers.x.to_bytes(32, "big"),
        -3: numbers.y.to_bytes(32, "big"),
    })


def client_data_json(ceremony_type: str, challenge_b64u: str, origin: str) -> bytes:
    return json.dumps(
        {
            "type": ceremony_type,
            "challenge": challenge_b64u,
            "origin": origin,
            "crossOrigin": False,
        },
        separators=(",", ":"),
    ).encode("utf-8")


@dataclass
class Passkey:
    """A credential held by the authenticator (private half included)."""

    credential_id: bytes
    private_key: ec.EllipticCurvePrivateKey
    rp_id: str
    user_handle: bytes
    sign_counter: int = 0


@dataclass
class SoftwareAuthenticator:
    """
    Software authenticator: keeps passkeys in memory and signs server challenges.

    synced=True marks credentials as backup eligible and backed up (a
    multi-device passkey); otherwise they are single-device.
    """

    transports: List[str] = field(default_factory=lambda: ["internal", "hybrid"])
    synced: bool = False
    aaguid: bytes = b"\x00" * 16
    passkeys: Dict[bytes, Passkey] = field(default_factory=dict)

    def _flags(self, *flags: int) -> int:
        value = FLAG_UP | FLAG_UV
        if self.synced:
            value |= FLAG_BE | FLAG_BS
        for flag in flags:
            value |= flag
        return value

    def make_credential(self, options: dict, origin: str, *, sign_count: int = 0) -> dict:
        """
        Create a new passkey for the creation options and return the attestation JSON.

        Step-by-step:
        1. Refuse if this authenticator already holds a credential in excludeCredentials
        2. Generate a P-256 key pair and a random 32-byte credential id
        3. Build clientDataJSON (type webauthn.create, challenge, origin)
        4. Build authenticator data: RP ID hash | flags | counter | attested credential data
        5. Wrap it in a "none" attestation object
        """
        rp_id = options["rp"]["id"]
        for excluded in options.get("excludeCredentials", []):
            if base64url_decode(excluded["id"]) in self.passkeys:
                raise PermissionError("Authenticator already holds a credential for this account.")

        private_key = ec.generate_private_key(ec.SECP256R1())
        credential_id = os.urandom(32)
        self.passkeys[credential_id] = Passkey(
            credential_id=credential_id,
            private_key=private_key,
            rp_id=rp_id,
            user_handle=base64url_decode(options["user"]["id"]),
            sign_counter=sign_count,
        )

        client_data = client_data_json("webauthn.create", options["challenge"], origin)
        auth_data = (
            sha256(rp_id.encode("utf-8"))
            + struct.pack(">BI", self._flags(FLAG_AT), sign_count)
            + self.aaguid
            + struct.pack(">H", len(credential_id))
            + credential_id
            + cose_public_key(private_key.public_key())
        )
        attestation_object = cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth_data})

        return {
            "id": base64url_encode(credential_id),
            "rawId": base64url_encode(credential_id),
            "type": "public-key",
            "response": {
                "clientDataJSON": base64url_encode(client_data),
                "attestationObject": base64url_encode(attestation_object),
                "transports": list(self.transports),
            },
            "authenticatorAttachment": "platform",
            "clientExtensionResults": {},
        }

    def get_assertion(
        self,
        options: dict,
        origin: str,
        *,
        credential_id: Optional[bytes] = None,
        sign_count: Optional[int] = None,
    ) -> dict:
        """
        Sign the request options' challenge with a held passkey.

        The passkey is the given credential_id or the first allowCredentials
        entry this authenticator holds. sign_count overrides the normal
        increment (a cloned authenticator replaying an old counter).
        Raises PermissionError when the RP ID does not match the passkey's.
        """
        if credential_id is None:
            for allowed in options.get("allowCredentials", []):
                candidate = base64url_decode(allowed["id"])
                if candidate in self.passkeys:
                    credential_id = candidate
                    break
        if credential_id is None or credential_id not in self.passkeys:
            raise ValueError("No matching passkey in this authenticator.")

        passkey = self.passkeys[credential_id]
        rp_id = options.get("rpId", passkey.rp_id)
        if rp_id != passkey.rp_id:
            raise PermissionError(f"RP ID mismatch (stored={passkey.rp_id}, requested={rp_id}).")

        if sign_count is None:
            passkey.sign_counter += 1
        else:
            passkey.sign_counter = sign_count

        client_data = client_data_json("webauthn.get", options["challenge"], origin)
        auth_data = sha256(rp_id.encode("utf-8")) + struct.pack(">BI", self._flags(), passkey.sign_counter)
        signature = passkey.private_key.sign(auth_data + sha256(client_data), ec.ECDSA(hashes.SHA256()))

        return {
            "id": base64url_encode(credential_id),
            "rawId": base64url_encode(credential_id),
            "type": "public-key",
            "response": {
                "clientDataJSON": base64url_encode(client_data),
                "authenticatorData": base64url_encode(auth_data),
                "signature": base64url_encode(signature),
                "userHandle": base64url_encode(passkey.user_handle),
            },
            "authenticatorAttachment": "platform",
            "clientExtensionResults": {},
        }

    def debug_dump(self) -> dict:
        """Credential id -> {rp_id, sign_counter}. Private keys are not shown."""
        return {
            base64url_encode(cid): {"rp_id": p.rp_id, "sign_counter": p.sign_counter}
            for cid, p in self.passkeys.items()
        }
