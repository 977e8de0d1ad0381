"""
rp_policy.py
============
Static relying-party policy and process settings.

The policy is what the ceremonies verify against:
- rp_id: domain the credentials are scoped to (RP ID hash in authenticator data)
- origins: exact origin strings accepted in clientDataJSON (no prefix matching)
- user_verification / resident_key / attestation: preferences echoed in options

Everything is read from the environment once at start-up; the ceremonies
themselves never touch os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

DEFAULT_ORIGINS = ("http://localhost:3000", "http://localhost:5173")

_USER_VERIFICATION_VALUES = ("required", "preferred", "discouraged")
_RESIDENT_KEY_VALUES = ("required", "preferred", "discouraged")
_FALSE_VALUES = ("0", "false", "no", "off")


def parse_origins(raw: str) -> Tuple[str, ...]:
    """Split a comma separated ORIGINS value, trimming blanks and dropping duplicates."""
    origins = []
    for part in raw.split(","):
        origin = part.strip()
        if origin and origin not in origins:
            origins.append(origin)
    return tuple(origins)


@dataclass(frozen=True)
class RpPolicy:
    """
    Relying-party configuration shared by both ceremonies.

    challenge_ttl_seconds is optional: when unset, a pending challenge lives
    until it is consumed or replaced by the next begin call.
    """

    rp_id: str = "localhost"
    rp_name: str = "Demo Passkeys"
    origins: Tuple[str, ...] = DEFAULT_ORIGINS
    user_verification: str = "preferred"
    resident_key: str = "preferred"
    attestation: str = "none"
    timeout_ms: int = 60000
    challenge_ttl_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.rp_id:
            raise ValueError("rp_id must not be empty")
        if not self.origins:
            raise ValueError("at least one accepted origin is required")
        if self.user_verification not in _USER_VERIFICATION_VALUES:
            raise ValueError(f"invalid user_verification: {self.user_verification!r}")
        if self.resident_key not in _RESIDENT_KEY_VALUES:
            raise ValueError(f"invalid resident_key: {self.resident_key!r}")
        if self.challenge_ttl_seconds is not None and self.challenge_ttl_seconds <= 0:
            raise ValueError("challenge_ttl_seconds must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RpPolicy":
        """
        Build the policy from RPID, RP_NAME, ORIGINS and CHALLENGE_TTL_SECONDS.

        Unset variables fall back to the dataclass defaults.
        """
        env = os.environ if environ is None else environ
        kwargs = {}
        if env.get("RPID"):
            kwargs["rp_id"] = env["RPID"].strip()
        if env.get("RP_NAME"):
            kwargs["rp_name"] = env["RP_NAME"].strip()
        if env.get("ORIGINS") is not None:
            kwargs["origins"] = parse_origins(env["ORIGINS"])
        if env.get("CHALLENGE_TTL_SECONDS"):
            kwargs["challenge_ttl_seconds"] = float(env["CHALLENGE_TTL_SECONDS"])
        return cls(**kwargs)


@dataclass(frozen=True)
class ServerSettings:
    """Process-level settings for the HTTP entry point."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug_endpoints: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerSettings":
        env = os.environ if environ is None else environ
        return cls(
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "8000")),
            debug_endpoints=env.get("DEBUG_ENDPOINTS", "1").strip().lower() not in _FALSE_VALUES,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
