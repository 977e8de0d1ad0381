"""
credential_store.py
===================
Server-side storage for users and their registered passkeys.

The store keeps ONLY public material: credential id, public key (COSE bytes),
signature counter and authenticator metadata. Private keys never reach the
relying party.

CredentialStore is the contract the ceremonies depend on; InMemoryCredentialStore
is the process-lifetime implementation. A table with a unique username index
would satisfy the same contract.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from crypto_utils import base64url_encode
from errors import CounterRegression

logger = logging.getLogger(__name__)


class DeviceType(Enum):
    """Whether the credential is bound to one authenticator or synced across devices."""

    SINGLE_DEVICE = "single_device"
    MULTI_DEVICE = "multi_device"


@dataclass
class Credential:
    """
    Server-side record for a registered passkey.

    - id: base64url credential id, unique per user
    - public_key: COSE-encoded public key bytes
    - sign_counter: last accepted counter value (only mutable field)
    - transports: hints reported by the client, in the order reported
    """

    id: str
    public_key: bytes
    sign_counter: int = 0
    transports: List[str] = field(default_factory=list)
    device_type: DeviceType = DeviceType.SINGLE_DEVICE
    backed_up: bool = False

    def descriptor(self) -> dict:
        """Id + transports, the shape used for exclude/allow lists."""
        return {"id": self.id, "transports": list(self.transports)}

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "publicKey": base64url_encode(self.public_key),
            "counter": self.sign_counter,
            "transports": list(self.transports),
            "deviceType": self.device_type.value,
            "backedUp": self.backed_up,
        }


@dataclass
class User:
    """A username and its credentials in registration order."""

    username: str
    credentials: List[Credential] = field(default_factory=list)

    def find_credential(self, credential_id: str) -> Optional[Credential]:
        for credential in self.credentials:
            if credential.id == credential_id:
                return credential
        return None

    def to_json(self) -> dict:
        return {
            "username": self.username,
            "passkeys": [c.to_json() for c in self.credentials],
        }


class CredentialStore(ABC):
    """Storage contract for users and credentials, keyed by username."""

    @abstractmethod
    def get_or_create(self, username: str) -> User:
        """Return the existing user, or create one with no credentials."""

    @abstractmethod
    def get(self, username: str) -> Optional[User]:
        """Return the user, or None."""

    @abstractmethod
    def add_credential(self, username: str, credential: Credential) -> bool:
        """Append a credential; False if the user does not exist."""

    @abstractmethod
    def find_credential(self, username: str, credential_id: str) -> Optional[Credential]:
        """Return the user's credential with this id, or None."""

    @abstractmethod
    def update_sign_counter(self, username: str, credential_id: str, new_counter: int) -> bool:
        """
        Overwrite the stored counter; False if user or credential is absent.

        Raises CounterRegression if new_counter is lower than the stored value.
        """

    @abstractmethod
    def all_users(self) -> List[User]:
        """Every user, in creation order (debug view)."""


class InMemoryCredentialStore(CredentialStore):
    """Process-lifetime credential store backed by a dict."""

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._lock = threading.RLock()

    def get_or_create(self, username: str) -> User:
        with self._lock:
            user = self._users.get(username)
            if user is None:
                user = User(username=username)
                self._users[username] = user
                logger.info("Created user %r", username)
            return user

    def get(self, username: str) -> Optional[User]:
        with self._lock:
            return self._users.get(username)

    def add_credential(self, username: str, credential: Credential) -> bool:
        with self._lock:
            user = self._users.get(username)
            if user is None:
                return False
            user.credentials.append(credential)
            return True

    def find_credential(self, username: str, credential_id: str) -> Optional[Credential]:
        with self._lock:
            user = self._users.get(username)
            if user is None:
                return None
            return user.find_credential(credential_id)

    def update_sign_counter(self, username: str, credential_id: str, new_counter: int) -> bool:
        with self._lock:
            credential = self.find_credential(username, credential_id)
            if credential is None:
                return False
            if new_counter < credential.sign_counter:
                raise CounterRegression(
                    f"Sign counter for credential {credential_id} went backwards",
                    stored=credential.sign_counter,
                    asserted=new_counter,
                )
            credential.sign_counter = new_counter
            return True

    def all_users(self) -> List[User]:
        with self._lock:
            return list(self._users.values())
