"""
challenge_cache.py
==================
Short-lived storage for the single outstanding challenge per (username, kind).

Lifecycle of an entry:
- put(): created when options are issued, silently replacing any older entry
- take_and_clear(): read once and deleted in the same step by the verify call

A challenge is therefore never consumable twice, whether verification
succeeded or not.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class ChallengeKind(Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass(frozen=True)
class PendingChallenge:
    """A challenge issued to a username and not yet consumed."""

    username: str
    challenge: bytes
    created_at: float
    kind: ChallengeKind


class ChallengeCache(ABC):
    """Contract for pending-challenge storage, keyed by (username, kind)."""

    @abstractmethod
    def put(self, username: str, kind: ChallengeKind, challenge: bytes) -> PendingChallenge:
        """Store a challenge, overwriting any existing entry for (username, kind)."""

    @abstractmethod
    def take_and_clear(self, username: str, kind: ChallengeKind) -> Optional[PendingChallenge]:
        """Atomically return and delete the entry, or None if there is none."""


class InMemoryChallengeCache(ChallengeCache):
    """
    Dict-backed challenge cache.

    With ttl_seconds unset, entries never expire on their own ("next write
    wins"). With a TTL, an entry older than the TTL is treated as absent and
    dropped when it is next touched.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: Dict[Tuple[str, ChallengeKind], PendingChallenge] = {}
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()

    def _expired(self, entry: PendingChallenge) -> bool:
        return self._ttl is not None and self._clock() - entry.created_at > self._ttl

    def put(self, username: str, kind: ChallengeKind, challenge: bytes) -> PendingChallenge:
        entry = PendingChallenge(
            username=username,
            challenge=challenge,
            created_at=self._clock(),
            kind=kind,
        )
        with self._lock:
            replaced = self._entries.get((username, kind))
            self._entries[(username, kind)] = entry
        if replaced is not None:
            logger.debug("Replaced unconsumed %s challenge for %r", kind.value, username)
        else:
            logger.debug("Issued %s challenge for %r", kind.value, username)
        return entry

    def take_and_clear(self, username: str, kind: ChallengeKind) -> Optional[PendingChallenge]:
        with self._lock:
            entry = self._entries.pop((username, kind), None)
        if entry is None:
            return None
        if self._expired(entry):
            logger.debug("Dropped expired %s challenge for %r", kind.value, username)
            return None
        logger.debug("Consumed %s challenge for %r", kind.value, username)
        return entry

    def peek(self, username: str, kind: ChallengeKind) -> Optional[PendingChallenge]:
        """Return the entry without consuming it."""
        with self._lock:
            entry = self._entries.get((username, kind))
            if entry is not None and self._expired(entry):
                del self._entries[(username, kind)]
                return None
            return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
