"""
main.py
=======
Interactive demo of passkey registration and authentication.

This script drives, in-process:
- PasskeyServer: issues options, verifies responses, stores public keys
- SoftwareAuthenticator: holds passkeys and signs challenges like a browser would

Demo options:
1. Register - create a passkey and store its public key
2. Login - authenticate with a passkey, counter advances
3. Phishing attempt - response signed on an origin the RP does not accept
4. Tampered challenge - authenticator signs a challenge the RP never issued
5. Cloned authenticator - assertion replays an old sign counter
6. Show stored data - server user table and authenticator contents
"""

from __future__ import annotations

import json
import logging

from authenticator import SoftwareAuthenticator
from crypto_utils import base64url_decode, base64url_encode
from errors import CeremonyError
from rp_policy import RpPolicy
from server import PasskeyServer

ORIGIN = "http://localhost:3000"
PHISHING_ORIGIN = "https://login.examp1e.com"


def _login(server: PasskeyServer, authenticator: SoftwareAuthenticator, username: str, **tamper) -> None:
    """Run one authentication ceremony, optionally with a tampered response."""
    options = server.authentication_options(username)
    print(f"[Server] Issued challenge: {options['challenge']}")

    origin = tamper.get("origin", ORIGIN)
    if tamper.get("flip_challenge"):
        raw = bytearray(base64url_decode(options["challenge"]))
        raw[0] ^= 0xFF
        options = dict(options, challenge=base64url_encode(bytes(raw)))
        print(f"[Attacker] Tampered challenge: {options['challenge']}")

    sign_count = None
    if tamper.get("stale_counter"):
        for allowed in options["allowCredentials"]:
            passkey = authenticator.passkeys.get(base64url_decode(allowed["id"]))
            if passkey is not None:
                sign_count = passkey.sign_counter
                print(f"[Clone] Replaying counter {sign_count}")
                break

    assertion = authenticator.get_assertion(options, origin, sign_count=sign_count)
    print(f"[Authenticator] Signed challenge for {origin}.")

    result = server.verify_authentication(username, assertion)
    print(f"[Server] Verify login: {'OK' if result['verified'] else 'FAIL'}")


def main() -> None:
    """
    Main entry point: run the interactive demo loop.

    Ceremony errors are printed and the menu continues; nothing a single
    request does can stop the server.
    """
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    server = PasskeyServer(RpPolicy(origins=(ORIGIN,)))
    authenticator = SoftwareAuthenticator()

    while True:
        print("\n=== PASSKEY DEMO ===")
        print("1) Register (create passkey)")
        print("2) Login (use passkey)")
        print("3) Phishing attempt (unaccepted origin)")
        print("4) Tampered challenge (verification fails)")
        print("5) Cloned authenticator (stale sign counter)")
        print("6) Show stored data (server + authenticator)")
        print("0) Exit")

        choice = input("Choose: ").strip()

        if choice == "0":
            break

        if choice == "6":
            print("\n--- SERVER USERS ---")
            print(json.dumps(server.debug_dump(), indent=2))
            print("\n--- AUTHENTICATOR ---")
            print(json.dumps(authenticator.debug_dump(), indent=2))
            continue

        if choice not in ("1", "2", "3", "4", "5"):
            print("Invalid option.")
            continue

        username = input("Username: ").strip()
        try:
            if choice == "1":
                options = server.registration_options(username)
                print(f"[Server] Issued challenge: {options['challenge']}")
                attestation = authenticator.make_credential(options, ORIGIN)
                print(f"[Authenticator] Passkey created. credential_id={attestation['id']}")
                result = server.verify_registration(username, attestation)
                print(f"[Server] Verify registration: {'OK' if result['verified'] else 'FAIL'}")

            elif choice == "2":
                _login(server, authenticator, username)

            elif choice == "3":
                _login(server, authenticator, username, origin=PHISHING_ORIGIN)

            elif choice == "4":
                _login(server, authenticator, username, flip_challenge=True)

            elif choice == "5":
                _login(server, authenticator, username, stale_counter=True)

        except CeremonyError as e:
            print(f"[Server] Rejected ({type(e).__name__}): {e}")
        except (PermissionError, ValueError) as e:
            print(f"[Authenticator] Refused: {e}")


if __name__ == "__main__":
    main()
