import threading
import time

from ceremonies import UserLocks
from credential_store import DeviceType
from errors import NoPendingChallenge
from rp_policy import RpPolicy
from server import PasskeyServer
from verifier import CredentialVerifier, RegistrationResult


class SlowVerifier(CredentialVerifier):
    """Accepts every attestation, slowly, and records overlapping calls."""

    def __init__(self, barrier=None):
        self.barrier = barrier
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self._ids = iter(range(1000))

    def verify_registration(self, response, *, expected_challenge, expected_origins, expected_rp_id):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            credential_id = f"cred-{next(self._ids)}"
        if self.barrier is not None:
            self.barrier.wait()
        else:
            time.sleep(0.05)
        with self._lock:
            self.active -= 1
        return RegistrationResult(
            credential_id=credential_id,
            public_key=b"key",
            sign_count=0,
            device_type=DeviceType.SINGLE_DEVICE,
        )

    def verify_authentication(self, response, **kwargs):
        raise NotImplementedError


def test_user_locks_reuse_one_lock_per_username():
    locks = UserLocks()
    with locks.hold("alice"):
        pass
    with locks.hold("alice"):
        with locks.hold("bob"):
            pass
    assert sorted(locks._locks) == ["alice", "bob"]


def test_same_username_is_serialized():
    verifier = SlowVerifier()
    server = PasskeyServer(RpPolicy(), verifier=verifier)
    outcomes = []

    def run():
        server.registration_options("alice")
        try:
            outcomes.append(server.verify_registration("alice", {"id": "x"}))
        except NoPendingChallenge:
            outcomes.append("no-challenge")

    threads = [threading.Thread(target=run) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert verifier.max_active == 1
    registered = len(server.store.get("alice").credentials)
    assert registered == outcomes.count({"verified": True})
    assert registered >= 1


def test_different_usernames_run_in_parallel():
    verifier = SlowVerifier(barrier=threading.Barrier(4, timeout=5))
    server = PasskeyServer(RpPolicy(), verifier=verifier)

    def run(name):
        server.registration_options(name)
        server.verify_registration(name, {"id": "x"})

    threads = [threading.Thread(target=run, args=(f"user{i}",)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert verifier.max_active > 1
    assert all(len(server.store.get(f"user{i}").credentials) == 1 for i in range(4))
