"""
crypto_utils.py
===============
Small cryptographic helpers shared by the relying party and the software
authenticator.

It provides:
- Base64url encoding/decoding (WebAuthn wire format for ids and challenges)
- SHA-256 hashing (RP ID hash, clientDataJSON hash)
- Challenge generation
- User handle derivation

Signature verification itself is NOT done here; see verifier.py.
"""

from __future__ import annotations

import base64
import os

from cryptography.hazmat.primitives import hashes

# WebAuthn requires at least 16 random bytes; 32 matches common RP libraries.
CHALLENGE_LENGTH = 32


def base64url_encode(raw_bytes: bytes) -> str:
    """
    Encode raw bytes using URL-safe base64 without '=' padding (WebAuthn-style).

    Credential ids, challenges and user handles all travel in this form.
    """
    return base64.urlsafe_b64encode(raw_bytes).decode("utf-8").rstrip("=")


def base64url_decode(encoded: str) -> bytes:
    """Decode URL-safe base64 string back to raw bytes, handling missing padding."""
    padding = "=" * (-len(encoded) % 4)
    return base64.urlsafe_b64decode(encoded + padding)


def sha256(data: bytes) -> bytes:
    """Compute the SHA-256 digest of data."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


def generate_challenge(length: int = CHALLENGE_LENGTH) -> bytes:
    """
    Generate a fresh, unpredictable challenge.

    Every call returns new bytes from the OS CSPRNG; a challenge is bound
    to exactly one ceremony and is never reissued.
    """
    if length < 16:
        raise ValueError("challenge must be at least 16 bytes")
    return os.urandom(length)


def user_handle_for(username: str) -> bytes:
    """
    Derive the WebAuthn user handle for a username.

    The handle is the UTF-8 encoding of the username, so it is stable across
    registrations but not secret.
    """
    return username.encode("utf-8")
